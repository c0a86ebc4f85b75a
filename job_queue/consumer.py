"""
Dispatch Worker — drains the queue in batches and drives dispatch.

One worker runs per process. Each loop iteration:

  ┌──────────────┐  pop ≤ B   ┌───────────────────┐  outcomes  ┌──────────────┐
  │ Redis list   │───────────▶│ DispatchProcessor │───────────▶│ route (match)│
  │ (+ leases)   │            │  × B, ≤ C at once │            └──┬────────┬──┘
  └──────▲───────┘            └───────────────────┘  Delivered /  │        │ HardError
         │ ack                                       SoftFailure  ▼        ▼
         └──────────────────────────────────────────────── BatchWriter  ErrorNotifier

A full batch (== B) loops again immediately; a short or empty one sleeps
the idle backoff first. Leases are acked once every item has settled and
the batch write has returned, whatever its result.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass, field
from typing import Optional

from core.batch_writer import BatchWriter, BatchWriteReport
from core.notifier import ErrorNotifier
from core.outcomes import Delivered, DispatchOutcome, HardError, SoftFailure
from core.processor import DispatchProcessor
from job_queue.message_queue import DispatchQueue, Lease, QueueItem
from models.mutations import StorageDirective
from models.schemas import ErrorKind

logger = structlog.get_logger()


@dataclass
class BatchResult:
    size: int = 0
    delivered: int = 0
    soft_failures: int = 0
    hard_errors: int = 0
    notified: int = 0
    write: Optional[BatchWriteReport] = None


@dataclass
class WorkerStats:
    batches: int = 0
    items: int = 0
    delivered: int = 0
    soft_failures: int = 0
    hard_errors: int = 0
    loop_errors: int = 0
    reclaimed: int = 0
    started_at: float = field(default_factory=time.monotonic)


class DispatchWorker:
    """
    Usage:
        worker = DispatchWorker(queue, processor, writer, notifier)
        await worker.run()           # blocks until stop()
        await worker.run_once()      # single poll, for tests / tooling
        worker.stop()
    """

    def __init__(
        self,
        queue: DispatchQueue,
        processor: DispatchProcessor,
        writer: BatchWriter,
        notifier: ErrorNotifier,
        batch_size: int = 70,
        concurrency: int = 0,
        idle_backoff: float = 1.0,
        error_backoff: float = 5.0,
        reclaim_interval: float = 30.0,
        worker_id: str = "",
    ):
        self.queue = queue
        self.processor = processor
        self.writer = writer
        self.notifier = notifier
        self.batch_size = batch_size
        self.concurrency = concurrency or batch_size
        self.idle_backoff = idle_backoff
        self.error_backoff = error_backoff
        self.reclaim_interval = reclaim_interval
        self.worker_id = worker_id
        self.stats = WorkerStats()
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._stop = asyncio.Event()
        self._last_reclaim: Optional[float] = None

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        """Poll until stop() is called."""
        self._stop.clear()
        logger.info("dispatch_worker_started",
                    worker_id=self.worker_id,
                    batch_size=self.batch_size,
                    concurrency=self.concurrency)

        while self.running:
            try:
                await self._maybe_reclaim()
                result = await self.run_once()
                if result.size < self.batch_size:
                    await self._sleep(self.idle_backoff)
            except asyncio.CancelledError:
                logger.info("dispatch_worker_cancelled", worker_id=self.worker_id, items=self.stats.items)
                raise
            except Exception as e:
                self.stats.loop_errors += 1
                logger.error("dispatch_loop_error",
                             worker_id=self.worker_id,
                             error=str(e),
                             exc_info=True)
                await self._sleep(self.error_backoff)

        logger.info("dispatch_worker_stopped", worker_id=self.worker_id, items=self.stats.items)

    async def run_once(self) -> BatchResult:
        """Pop one batch, process it, route the outcomes, and ack the leases."""
        leases = await self.queue.dequeue_batch(self.batch_size)
        if not leases:
            return BatchResult()

        logger.info("batch_started", worker_id=self.worker_id, size=len(leases))
        outcomes = await self._process_all([lease.item for lease in leases])
        result = await self._route(leases, outcomes)
        await self.queue.ack(leases)

        self.stats.batches += 1
        self.stats.items += result.size
        self.stats.delivered += result.delivered
        self.stats.soft_failures += result.soft_failures
        self.stats.hard_errors += result.hard_errors

        logger.info("batch_processed",
                    worker_id=self.worker_id,
                    size=result.size,
                    delivered=result.delivered,
                    soft_failures=result.soft_failures,
                    hard_errors=result.hard_errors)
        return result

    async def _process_one(self, item: QueueItem) -> DispatchOutcome:
        async with self._semaphore:
            return await self.processor.process(item)

    async def _process_all(self, items: list[QueueItem]) -> list[DispatchOutcome]:
        results = await asyncio.gather(
            *(self._process_one(item) for item in items),
            return_exceptions=True,
        )
        outcomes: list[DispatchOutcome] = []
        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                logger.error("dispatch_task_crashed",
                             worker_id=self.worker_id,
                             attempt_id=item.attempt_id,
                             error=str(result))
                result = HardError(ErrorKind.INTERNAL_ERROR, str(result) or type(result).__name__)
            outcomes.append(result)
        return outcomes

    async def _route(self, leases: list[Lease], outcomes: list[DispatchOutcome]) -> BatchResult:
        result = BatchResult(size=len(leases))
        directives: list[StorageDirective] = []
        rejected: list[tuple[QueueItem, HardError]] = []

        for lease, outcome in zip(leases, outcomes):
            match outcome:
                case Delivered(mutations=mutations):
                    result.delivered += 1
                    directives.append(mutations)
                case SoftFailure(mutations=mutations):
                    result.soft_failures += 1
                    directives.append(mutations)
                case HardError():
                    result.hard_errors += 1
                    rejected.append((lease.item, outcome))

        # storage and callbacks touch disjoint items; run them side by side
        write_task = self.writer.write(directives, worker_id=self.worker_id)
        notify_tasks = [self.notifier.notify(item, error) for item, error in rejected]
        write_report, *notified = await asyncio.gather(write_task, *notify_tasks)

        result.write = write_report
        result.notified = sum(1 for ok in notified if ok)
        return result

    async def _maybe_reclaim(self) -> None:
        now = time.monotonic()
        if self._last_reclaim is not None and now - self._last_reclaim < self.reclaim_interval:
            return
        self._last_reclaim = now
        try:
            self.stats.reclaimed += await self.queue.reclaim_expired()
        except Exception as e:
            logger.error("lease_reclaim_failed", worker_id=self.worker_id, error=str(e))

    async def _sleep(self, seconds: float) -> None:
        """Sleep, but wake immediately when stop() is called."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
