"""
Abstract Dispatch Store — Interface for all storage backends.

Implementations:
  - MongoDispatchStore    (MongoDB via the pymongo async client)
  - InMemoryDispatchStore (dict-based, single-process, no persistence)

Reads are addressed by (tenant, subject); the store resolves database and
collection names through StorageNamespaces. Bulk writes are addressed by
(database, collection) because the batch writer has already grouped them.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from database.namespaces import StorageNamespaces
from models.mutations import SessionMutation
from models.schemas import TemplateRecord, UserRecord


class StoreError(Exception):
    """A storage operation failed as a whole."""


class BaseDispatchStore(ABC):
    """Interface that all dispatch store backends must implement."""

    def __init__(self, namespaces: StorageNamespaces = None):
        self.namespaces = namespaces or StorageNamespaces()

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return True

    # ── Lookups ───────────────────────────────────────────────

    @abstractmethod
    async def get_user(self, tenant: str, subject_id: str) -> Optional[UserRecord]:
        ...

    @abstractmethod
    async def get_template(self, tenant: str, subject_id: str, name: str) -> Optional[TemplateRecord]:
        ...

    @abstractmethod
    async def get_unit_price(self, tenant: str, subject_id: str, pricing_key: str) -> Optional[float]:
        """Price of one send for a template category, or None if unpriced."""
        ...

    @abstractmethod
    async def set_template_status(self, tenant: str, subject_id: str, name: str, status: str) -> None:
        ...

    # ── Bulk writes ───────────────────────────────────────────

    @abstractmethod
    async def bulk_upsert_sessions(self, database: str, collection: str,
                                   mutations: list[SessionMutation]) -> int:
        """Apply all mutations as one bulk operation. Returns upserted+modified count."""
        ...

    @abstractmethod
    async def insert_log_entries(self, database: str, collection: str,
                                 documents: list[dict[str, Any]]) -> int:
        """Insert all documents as one bulk operation. Returns inserted count."""
        ...
