"""
MongoDispatchStore — MongoDB backend using the pymongo async client.

One client (and connection pool) per worker process. Timeouts are enforced
by the driver: connect, socket and server-selection limits come from
MongoConfig, so no storage call can hang the worker indefinitely.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from bson import ObjectId
from pymongo import AsyncMongoClient, UpdateOne
from pymongo.errors import BulkWriteError, ConnectionFailure, PyMongoError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import MongoConfig
from database.namespaces import StorageNamespaces
from database.store_base import BaseDispatchStore, StoreError
from models.mutations import SessionMutation
from models.schemas import TemplateRecord, UserRecord

logger = structlog.get_logger()

DUPLICATE_KEY = 11000


class MongoDispatchStore(BaseDispatchStore):

    def __init__(self, config: MongoConfig = None, client: AsyncMongoClient = None):
        self.config = config or MongoConfig()
        super().__init__(StorageNamespaces(self.config))
        self._client = client
        self._indexed: set[tuple[str, str]] = set()

    @property
    def client(self) -> AsyncMongoClient:
        if self._client is None:
            self._client = AsyncMongoClient(
                self.config.url,
                maxPoolSize=self.config.max_pool_size,
                connectTimeoutMS=self.config.connect_timeout_ms,
                socketTimeoutMS=self.config.socket_timeout_ms,
                serverSelectionTimeoutMS=self.config.server_selection_timeout_ms,
                retryWrites=True,
                retryReads=True,
            )
        return self._client

    @retry(
        retry=retry_if_exception_type(ConnectionFailure),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def connect(self) -> None:
        await self.client.admin.command("ping")
        logger.info("mongo_store_connected", pool=self.config.max_pool_size)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def ping(self) -> bool:
        try:
            await self.client.admin.command("ping")
            return True
        except PyMongoError:
            return False

    def _collection(self, database: str, collection: str):
        return self.client[database][collection]

    # ── Lookups ───────────────────────────────────────────

    async def get_user(self, tenant: str, subject_id: str) -> Optional[UserRecord]:
        db = self.namespaces.database_for(tenant)
        doc = await self._collection(db, self.namespaces.users_collection).find_one(
            {"_id": ObjectId(subject_id)}
        )
        return UserRecord.from_document(doc) if doc else None

    async def get_template(self, tenant: str, subject_id: str, name: str) -> Optional[TemplateRecord]:
        db = self.namespaces.database_for(tenant)
        doc = await self._collection(db, self.namespaces.templates_collection(subject_id)).find_one(
            {"name": name}
        )
        return TemplateRecord.from_document(doc) if doc else None

    async def get_unit_price(self, tenant: str, subject_id: str, pricing_key: str) -> Optional[float]:
        db = self.namespaces.database_for(tenant)
        doc = await self._collection(db, self.namespaces.pricing_collection(subject_id)).find_one(
            {"dial_code": self.config.pricing_dial_code},
            projection={pricing_key: 1},
        )
        if not doc or doc.get(pricing_key) is None:
            return None
        return float(doc[pricing_key])

    async def set_template_status(self, tenant: str, subject_id: str, name: str, status: str) -> None:
        db = self.namespaces.database_for(tenant)
        await self._collection(db, self.namespaces.templates_collection(subject_id)).update_one(
            {"name": name}, {"$set": {"status": status}}
        )

    # ── Bulk writes ───────────────────────────────────────

    async def bulk_upsert_sessions(self, database: str, collection: str,
                                   mutations: list[SessionMutation]) -> int:
        if not mutations:
            return 0
        ops = [UpdateOne(m.filter, m.update, upsert=True) for m in mutations]
        # same-contact upserts must apply in batch order so the last $set wins
        try:
            result = await self._collection(database, collection).bulk_write(ops, ordered=True)
        except PyMongoError as e:
            raise StoreError(f"session bulk upsert failed on {database}.{collection}: {e}") from e
        return result.upserted_count + result.matched_count

    async def _ensure_attempt_index(self, database: str, collection: str) -> None:
        key = (database, collection)
        if key in self._indexed:
            return
        await self._collection(database, collection).create_index(
            "attemptId",
            unique=True,
            partialFilterExpression={"attemptId": {"$type": "string"}},
        )
        self._indexed.add(key)

    async def insert_log_entries(self, database: str, collection: str,
                                 documents: list[dict[str, Any]]) -> int:
        if not documents:
            return 0
        try:
            await self._ensure_attempt_index(database, collection)
            # insert_many adds _id to its arguments
            result = await self._collection(database, collection).insert_many(
                [dict(d) for d in documents], ordered=False,
            )
            return len(result.inserted_ids)
        except BulkWriteError as e:
            errors = e.details.get("writeErrors", [])
            if errors and all(err.get("code") == DUPLICATE_KEY for err in errors):
                logger.warning("duplicate_log_entries_skipped",
                               database=database,
                               collection=collection,
                               duplicates=len(errors))
                return e.details.get("nInserted", 0)
            raise StoreError(f"log insert failed on {database}.{collection}: {e}") from e
        except PyMongoError as e:
            raise StoreError(f"log insert failed on {database}.{collection}: {e}") from e
