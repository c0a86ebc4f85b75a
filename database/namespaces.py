"""Database and collection naming rules for tenant/subject scoped data."""
from __future__ import annotations

from config.settings import MongoConfig


class StorageNamespaces:
    """
    Resolves where a tenant's data lives.

    The reserved system tenant maps to a fixed database; every other tenant
    gets `<tenant><reseller suffix>`. Per-subject collections are
    `<subjectId><suffix>`; users live in one shared collection per database.
    """

    def __init__(self, config: MongoConfig = None):
        self.config = config or MongoConfig()

    def database_for(self, tenant: str) -> str:
        if tenant == self.config.system_tenant:
            return self.config.system_db
        return f"{tenant}{self.config.reseller_db_suffix}"

    @property
    def users_collection(self) -> str:
        return self.config.users_collection

    def templates_collection(self, subject_id: str) -> str:
        return f"{subject_id}{self.config.templates_suffix}"

    def pricing_collection(self, subject_id: str) -> str:
        return f"{subject_id}{self.config.pricing_suffix}"

    def sessions_collection(self, subject_id: str) -> str:
        return f"{subject_id}{self.config.session_suffix}"

    def live_chat_collection(self, subject_id: str) -> str:
        return f"{subject_id}{self.config.live_chat_suffix}"
