"""
Dispatch Queue — Abstract interface with Redis and in-memory backends.

Queue Topology:
  webengage_requests          — Redis list of pending send requests (FIFO:
                                producers RPUSH, workers pop from the left)
  webengage_requests:leases   — Sorted set of popped-but-unacked payloads,
                                scored by lease deadline (unix seconds)

A pop hands the item to exactly one worker together with a lease. The
worker acks the lease once the batch is committed. Leases that expire
(worker crashed mid-batch) are pushed back onto the head of the queue by
reclaim_expired(), so processing is at-least-once.

Message Schema:
  {
      "tenant":      storage namespace of the submitter (URL segment "under"),
      "subjectId":   24-hex user id (URL segment "id"),
      "data":        raw WebEngage request body,
      "submittedAt": ISO timestamp when ingestion accepted the request,
      "attemptId":   stable id reused across redeliveries,
  }
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Queue Item
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class QueueItem:
    """A unit of work on the queue."""
    tenant: str
    subject_id: str
    data: dict[str, Any] = field(default_factory=dict)
    submitted_at: str = ""
    attempt_id: str = ""

    @classmethod
    def create(cls, tenant: str, subject_id: str, data: dict[str, Any]) -> QueueItem:
        return cls(
            tenant=tenant,
            subject_id=subject_id,
            data=data,
            submitted_at=datetime.now(timezone.utc).isoformat(),
            attempt_id=uuid.uuid4().hex,
        )

    @property
    def metadata(self) -> dict[str, Any]:
        meta = self.data.get("metadata") if isinstance(self.data, dict) else None
        return meta if isinstance(meta, dict) else {}

    @property
    def message_id(self) -> Optional[str]:
        return self.metadata.get("messageId")

    @property
    def timestamp(self) -> Optional[str]:
        return self.metadata.get("timestamp")

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant": self.tenant,
            "subjectId": self.subject_id,
            "data": self.data,
            "submittedAt": self.submitted_at,
            "attemptId": self.attempt_id,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueItem:
        # "under"/"id"/"timestamp" are the keys older producers wrote
        return cls(
            tenant=str(data.get("tenant", data.get("under", "")) or ""),
            subject_id=str(data.get("subjectId", data.get("id", "")) or ""),
            data=data.get("data") or {},
            submitted_at=data.get("submittedAt", data.get("timestamp", "")) or "",
            attempt_id=data.get("attemptId") or "",
        )

    @classmethod
    def from_json(cls, raw: str) -> QueueItem:
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            raise ValueError("queue payload is not a JSON object")
        return cls.from_dict(parsed)


@dataclass(frozen=True)
class Lease:
    """Ownership handle for a popped item. Must be acked after commit."""
    item: QueueItem
    raw: str
    deadline: float


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class DispatchQueue(ABC):
    """Abstract dispatch queue interface."""

    def __init__(self, queue_name: str = "webengage_requests", lease_timeout: float = 300.0):
        self.queue_name = queue_name
        self.lease_key = f"{queue_name}:leases"
        self.lease_timeout = lease_timeout

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def enqueue(self, item: QueueItem) -> None:
        """Append an item to the tail of the queue."""
        ...

    @abstractmethod
    async def dequeue_batch(self, max_items: int) -> list[Lease]:
        """Atomically pop up to max_items from the head and lease them."""
        ...

    @abstractmethod
    async def ack(self, leases: list[Lease]) -> None:
        """Release leases for items whose outcome has been committed."""
        ...

    @abstractmethod
    async def reclaim_expired(self) -> int:
        """Requeue items whose lease deadline has passed. Returns the count."""
        ...

    @abstractmethod
    async def queue_length(self) -> int:
        ...

    @abstractmethod
    async def peek(self, count: int = 10) -> list[QueueItem]:
        """Look at the head of the queue without consuming."""
        ...

    def _decode(self, raws: list[str], deadline: float) -> tuple[list[Lease], list[str]]:
        leases, malformed = [], []
        for raw in raws:
            try:
                leases.append(Lease(item=QueueItem.from_json(raw), raw=raw, deadline=deadline))
            except (ValueError, TypeError) as e:
                logger.error("queue_item_malformed",
                             queue=self.queue_name,
                             preview=str(raw)[:160],
                             error=str(e))
                malformed.append(raw)
        return leases, malformed


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

# LPOP with a count needs Redis >= 6.2
_DEQUEUE_SCRIPT = """
local items = redis.call('LPOP', KEYS[1], ARGV[1])
if not items then
    return {}
end
for _, v in ipairs(items) do
    redis.call('ZADD', KEYS[2], ARGV[2], v)
end
return items
"""

_RECLAIM_SCRIPT = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for i = #expired, 1, -1 do
    redis.call('LPUSH', KEYS[1], expired[i])
    redis.call('ZREM', KEYS[2], expired[i])
end
return #expired
"""


class RedisDispatchQueue(DispatchQueue):
    """
    Production queue backed by a Redis list + lease sorted set.

    Pop and lease happen in one Lua script so no two workers can receive
    the same payload and no payload is ever off both structures.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        queue_name: str = "webengage_requests",
        lease_timeout: float = 300.0,
        client=None,
    ):
        super().__init__(queue_name, lease_timeout)
        self._redis_url = redis_url
        self._redis = client
        self._dequeue = None
        self._reclaim = None

    async def connect(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
            )
        await self._redis.ping()
        self._dequeue = self._redis.register_script(_DEQUEUE_SCRIPT)
        self._reclaim = self._redis.register_script(_RECLAIM_SCRIPT)
        logger.info("redis_queue_connected", url=self._redis_url, queue=self.queue_name)

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def enqueue(self, item: QueueItem) -> None:
        await self._redis.rpush(self.queue_name, item.to_json())
        logger.debug("item_enqueued",
                     queue=self.queue_name,
                     tenant=item.tenant,
                     attempt_id=item.attempt_id)

    async def dequeue_batch(self, max_items: int) -> list[Lease]:
        deadline = time.time() + self.lease_timeout
        raws = await self._dequeue(
            keys=[self.queue_name, self.lease_key],
            args=[max_items, deadline],
        )
        if not raws:
            return []
        leases, malformed = self._decode(list(raws), deadline)
        if malformed:
            # unparseable payloads are dropped, not redelivered forever
            await self._redis.zrem(self.lease_key, *malformed)
        return leases

    async def ack(self, leases: list[Lease]) -> None:
        if not leases:
            return
        await self._redis.zrem(self.lease_key, *[lease.raw for lease in leases])

    async def reclaim_expired(self) -> int:
        count = int(await self._reclaim(
            keys=[self.queue_name, self.lease_key],
            args=[time.time()],
        ))
        if count:
            logger.warning("expired_leases_reclaimed", queue=self.queue_name, count=count)
        return count

    async def queue_length(self) -> int:
        return await self._redis.llen(self.queue_name)

    async def peek(self, count: int = 10) -> list[QueueItem]:
        raws = await self._redis.lrange(self.queue_name, 0, count - 1)
        leases, _ = self._decode(raws, 0.0)
        return [lease.item for lease in leases]


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryDispatchQueue(DispatchQueue):
    """
    Development/test queue backed by a deque.
    Single-process only — leases live in a dict, nothing is persisted.
    """

    def __init__(self, queue_name: str = "webengage_requests", lease_timeout: float = 300.0):
        super().__init__(queue_name, lease_timeout)
        self._items: deque[str] = deque()
        self._leases: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def connect(self):
        logger.info("inmemory_queue_connected", queue=self.queue_name)

    async def close(self):
        pass

    async def ping(self) -> bool:
        return True

    async def enqueue(self, item: QueueItem) -> None:
        self._items.append(item.to_json())

    async def enqueue_raw(self, raw: str) -> None:
        self._items.append(raw)

    async def dequeue_batch(self, max_items: int) -> list[Lease]:
        async with self._lock:
            deadline = time.time() + self.lease_timeout
            raws = []
            while self._items and len(raws) < max_items:
                raws.append(self._items.popleft())
            leases, _ = self._decode(raws, deadline)
            for lease in leases:
                self._leases[lease.raw] = deadline
            return leases

    async def ack(self, leases: list[Lease]) -> None:
        for lease in leases:
            self._leases.pop(lease.raw, None)

    async def reclaim_expired(self) -> int:
        async with self._lock:
            now = time.time()
            expired = [raw for raw, deadline in self._leases.items() if deadline <= now]
            for raw in reversed(expired):
                self._items.appendleft(raw)
                del self._leases[raw]
        if expired:
            logger.warning("expired_leases_reclaimed", queue=self.queue_name, count=len(expired))
        return len(expired)

    @property
    def leased_count(self) -> int:
        return len(self._leases)

    async def queue_length(self) -> int:
        return len(self._items)

    async def peek(self, count: int = 10) -> list[QueueItem]:
        leases, _ = self._decode(list(self._items)[:count], 0.0)
        return [lease.item for lease in leases]


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[DispatchQueue] = None


def create_dispatch_queue(queue_config: dict[str, Any] = None) -> DispatchQueue:
    """Factory: create the appropriate queue backend."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")
    name = config.get("queue_name", "webengage_requests")
    lease_timeout = float(config.get("lease_timeout_seconds", 300.0))

    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        _instance = RedisDispatchQueue(redis_url=url, queue_name=name, lease_timeout=lease_timeout)
    else:
        _instance = InMemoryDispatchQueue(queue_name=name, lease_timeout=lease_timeout)

    return _instance


def get_dispatch_queue() -> DispatchQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_dispatch_queue()
    return _instance


def reset_dispatch_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
