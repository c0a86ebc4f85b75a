"""
Tests for the batch worker loop.

Coverage:
  Routing:     delivered/soft failures to storage, hard errors to the notifier only
  Leases:      acked after the batch settles
  Scheduling:  concurrency ceiling, full-batch fast path, idle and error backoff
"""
import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

from core.batch_writer import BatchWriter
from core.outcomes import HardError
from core.processor import DispatchProcessor
from job_queue.consumer import DispatchWorker
from models.schemas import ErrorKind

from conftest import SUBJECT_ID, TENANT_DB, make_item


@pytest.fixture
def notifier():
    notifier = MagicMock()
    notifier.notify = AsyncMock(return_value=True)
    return notifier


def make_worker(queue, store, adapter, notifier, **kwargs) -> DispatchWorker:
    return DispatchWorker(
        queue=queue,
        processor=DispatchProcessor(store, adapter),
        writer=BatchWriter(store),
        notifier=notifier,
        worker_id="worker-test-0",
        **kwargs,
    )


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_valid_batch_writes_one_log_per_item(self, queue, store, adapter, notifier):
        for i in range(10):
            await queue.enqueue(make_item(to=f"9198000000{i:02d}", message_id=f"m{i}"))
        worker = make_worker(queue, store, adapter, notifier, batch_size=70)

        result = await worker.run_once()

        assert result.size == 10
        assert result.delivered == 10
        assert len(store.documents(TENANT_DB, f"{SUBJECT_ID}_livechat")) == 10
        assert len(store.documents(TENANT_DB, f"{SUBJECT_ID}_sessions")) == 10
        assert len(store.bulk_write_calls) == 1
        assert len(store.insert_calls) == 1
        notifier.notify.assert_not_called()

    @pytest.mark.asyncio
    async def test_hard_error_goes_to_notifier_only(self, queue, store, adapter, notifier):
        await queue.enqueue(make_item(message_id="ok"))
        bad = make_item(subject_id="abc123defg", message_id="bad")
        await queue.enqueue(bad)
        worker = make_worker(queue, store, adapter, notifier)

        result = await worker.run_once()

        assert result.delivered == 1
        assert result.hard_errors == 1
        assert result.notified == 1
        notifier.notify.assert_awaited_once()
        item, error = notifier.notify.await_args.args
        assert item.message_id == "bad"
        assert error.kind is ErrorKind.UNAUTHORIZED

        logs = store.documents(TENANT_DB, f"{SUBJECT_ID}_livechat")
        assert [doc["messageId"] for doc in logs] == ["ok"]

    @pytest.mark.asyncio
    async def test_template_missing_notifies_without_storage(self, queue, store, adapter, notifier):
        await queue.enqueue(make_item(template="nope"))
        worker = make_worker(queue, store, adapter, notifier)

        await worker.run_once()

        _, error = notifier.notify.await_args.args
        assert error.kind is ErrorKind.TEMPLATE_NOT_FOUND
        assert store.write_calls == 0

    @pytest.mark.asyncio
    async def test_soft_failures_are_stored_not_notified(self, queue, store, adapter, notifier):
        await queue.enqueue(make_item(template="paused_promo"))
        worker = make_worker(queue, store, adapter, notifier)

        result = await worker.run_once()

        assert result.soft_failures == 1
        notifier.notify.assert_not_called()
        logs = store.documents(TENANT_DB, f"{SUBJECT_ID}_livechat")
        assert logs[0]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_leases_acked_after_batch(self, queue, store, adapter, notifier):
        await queue.enqueue(make_item())
        await queue.enqueue(make_item(subject_id="abc123defg"))
        worker = make_worker(queue, store, adapter, notifier)

        await worker.run_once()
        assert queue.leased_count == 0
        assert await queue.queue_length() == 0

    @pytest.mark.asyncio
    async def test_processor_crash_becomes_internal_error(self, queue, store, adapter, notifier):
        await queue.enqueue(make_item())
        worker = make_worker(queue, store, adapter, notifier)
        worker.processor.process = AsyncMock(side_effect=RuntimeError("bug"))

        result = await worker.run_once()

        assert result.hard_errors == 1
        _, error = notifier.notify.await_args.args
        assert error == HardError(ErrorKind.INTERNAL_ERROR, "bug")

    @pytest.mark.asyncio
    async def test_empty_queue(self, queue, store, adapter, notifier):
        worker = make_worker(queue, store, adapter, notifier)
        result = await worker.run_once()
        assert result.size == 0
        assert worker.stats.batches == 0


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_in_flight_dispatches_bounded(self, queue, store, adapter, notifier):
        in_flight = 0
        peak = 0

        async def slow_process(item):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return HardError(ErrorKind.INTERNAL_ERROR, "x")

        for _ in range(8):
            await queue.enqueue(make_item())
        worker = make_worker(queue, store, adapter, notifier, batch_size=8, concurrency=2)
        worker.processor.process = slow_process

        result = await worker.run_once()
        assert result.size == 8
        assert peak == 2

    def test_concurrency_defaults_to_batch_size(self, queue, store, adapter, notifier):
        worker = make_worker(queue, store, adapter, notifier, batch_size=25)
        assert worker.concurrency == 25


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_full_batches_loop_without_backoff(self, queue, store, adapter, notifier):
        for _ in range(6):
            await queue.enqueue(make_item())
        worker = make_worker(queue, store, adapter, notifier, batch_size=2, idle_backoff=30.0)

        task = asyncio.create_task(worker.run())
        await asyncio.sleep(0.1)
        worker.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert worker.stats.items == 6
        assert worker.stats.batches == 3

    @pytest.mark.asyncio
    async def test_stop_interrupts_idle_backoff(self, queue, store, adapter, notifier):
        worker = make_worker(queue, store, adapter, notifier, idle_backoff=30.0)

        task = asyncio.create_task(worker.run())
        await asyncio.sleep(0.02)
        assert worker.running
        worker.stop()
        await asyncio.wait_for(task, timeout=1.0)
        assert not worker.running

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, queue, store, adapter, notifier):
        worker = make_worker(queue, store, adapter, notifier, idle_backoff=30.0)

        task = asyncio.create_task(worker.run())
        await asyncio.sleep(0.02)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_loop_error_backs_off_and_continues(self, queue, store, adapter, notifier):
        worker = make_worker(queue, store, adapter, notifier, error_backoff=0.01, idle_backoff=0.01)
        calls = 0

        async def flaky_dequeue(max_items):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ConnectionError("redis gone")
            return []

        queue.dequeue_batch = AsyncMock(side_effect=flaky_dequeue)

        task = asyncio.create_task(worker.run())
        await asyncio.sleep(0.05)
        worker.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert worker.stats.loop_errors == 1
        assert queue.dequeue_batch.await_count >= 2

    @pytest.mark.asyncio
    async def test_reclaims_expired_leases(self, queue, store, adapter, notifier):
        worker = make_worker(queue, store, adapter, notifier, idle_backoff=30.0)
        queue.reclaim_expired = AsyncMock(return_value=3)

        task = asyncio.create_task(worker.run())
        await asyncio.sleep(0.02)
        worker.stop()
        await asyncio.wait_for(task, timeout=1.0)

        queue.reclaim_expired.assert_awaited_once()
        assert worker.stats.reclaimed == 3
