"""
InMemoryDispatchStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no MongoDB)
  - Same interface as MongoDispatchStore
  - Mongo-like upsert semantics ($set always, $setOnInsert on insert only)
  - Duplicate attemptId inserts are skipped, like the unique index in Mongo
  - Counts bulk calls so tests can assert on write amplification

Best for: local development, unit tests.
"""
from __future__ import annotations

import copy
import structlog
from collections import defaultdict
from typing import Any, Optional

from database.namespaces import StorageNamespaces
from database.store_base import BaseDispatchStore
from models.mutations import SessionMutation
from models.schemas import TemplateRecord, UserRecord

logger = structlog.get_logger()


class InMemoryDispatchStore(BaseDispatchStore):
    """Full-featured in-memory store with the same interface as MongoDispatchStore."""

    def __init__(self, namespaces: StorageNamespaces = None):
        super().__init__(namespaces)
        # database → collection → [documents]
        self._data: dict[str, dict[str, list[dict[str, Any]]]] = defaultdict(lambda: defaultdict(list))
        self.bulk_write_calls: list[tuple[str, str, int]] = []
        self.insert_calls: list[tuple[str, str, int]] = []
        self.lookup_calls: int = 0
        logger.info("inmemory_store_initialized")

    # ── Seeding (tests / dev) ─────────────────────────────

    def add_user(self, tenant: str, user: dict[str, Any]) -> None:
        db = self.namespaces.database_for(tenant)
        self._data[db][self.namespaces.users_collection].append(copy.deepcopy(user))

    def add_template(self, tenant: str, subject_id: str, template: dict[str, Any]) -> None:
        db = self.namespaces.database_for(tenant)
        self._data[db][self.namespaces.templates_collection(subject_id)].append(copy.deepcopy(template))

    def set_pricing(self, tenant: str, subject_id: str, prices: dict[str, float],
                    dial_code: str = None) -> None:
        db = self.namespaces.database_for(tenant)
        code = dial_code or self.namespaces.config.pricing_dial_code
        self._data[db][self.namespaces.pricing_collection(subject_id)].append({"dial_code": code, **prices})

    def documents(self, database: str, collection: str) -> list[dict[str, Any]]:
        return self._data[database][collection]

    @property
    def write_calls(self) -> int:
        return len(self.bulk_write_calls) + len(self.insert_calls)

    # ── Lookups ───────────────────────────────────────────

    def _find_one(self, database: str, collection: str, query: dict[str, Any]) -> Optional[dict[str, Any]]:
        for doc in self._data[database][collection]:
            if all(doc.get(k) == v for k, v in query.items()):
                return doc
        return None

    async def get_user(self, tenant: str, subject_id: str) -> Optional[UserRecord]:
        self.lookup_calls += 1
        db = self.namespaces.database_for(tenant)
        for doc in self._data[db][self.namespaces.users_collection]:
            if str(doc.get("_id")) == subject_id:
                return UserRecord.from_document(doc)
        return None

    async def get_template(self, tenant: str, subject_id: str, name: str) -> Optional[TemplateRecord]:
        self.lookup_calls += 1
        db = self.namespaces.database_for(tenant)
        doc = self._find_one(db, self.namespaces.templates_collection(subject_id), {"name": name})
        return TemplateRecord.from_document(doc) if doc else None

    async def get_unit_price(self, tenant: str, subject_id: str, pricing_key: str) -> Optional[float]:
        self.lookup_calls += 1
        db = self.namespaces.database_for(tenant)
        doc = self._find_one(
            db, self.namespaces.pricing_collection(subject_id),
            {"dial_code": self.namespaces.config.pricing_dial_code},
        )
        if not doc or doc.get(pricing_key) is None:
            return None
        return float(doc[pricing_key])

    async def set_template_status(self, tenant: str, subject_id: str, name: str, status: str) -> None:
        db = self.namespaces.database_for(tenant)
        doc = self._find_one(db, self.namespaces.templates_collection(subject_id), {"name": name})
        if doc is not None:
            doc["status"] = status

    # ── Bulk writes ───────────────────────────────────────

    async def bulk_upsert_sessions(self, database: str, collection: str,
                                   mutations: list[SessionMutation]) -> int:
        self.bulk_write_calls.append((database, collection, len(mutations)))
        docs = self._data[database][collection]
        for mutation in mutations:
            existing = self._find_one(database, collection, mutation.filter)
            if existing is None:
                doc = {**copy.deepcopy(mutation.filter),
                       **copy.deepcopy(mutation.set_on_insert),
                       **copy.deepcopy(mutation.set_fields)}
                docs.append(doc)
            else:
                existing.update(copy.deepcopy(mutation.set_fields))
        return len(mutations)

    async def insert_log_entries(self, database: str, collection: str,
                                 documents: list[dict[str, Any]]) -> int:
        self.insert_calls.append((database, collection, len(documents)))
        docs = self._data[database][collection]
        seen = {d.get("attemptId") for d in docs if d.get("attemptId")}
        inserted = 0
        for document in documents:
            attempt_id = document.get("attemptId")
            if attempt_id and attempt_id in seen:
                logger.warning("duplicate_log_entry_skipped", attempt_id=attempt_id)
                continue
            docs.append(copy.deepcopy(document))
            if attempt_id:
                seen.add(attempt_id)
            inserted += 1
        return inserted
