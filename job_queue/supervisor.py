"""
Worker Supervisor — owns the lifecycles of the dispatch worker processes.

Starts one process per CPU (or `workers.count`), each running its own
asyncio loop with its own Redis and Mongo connections. A worker that
exits for any reason while the supervisor is running is restarted after
`workers.restart_delay_seconds`. SIGINT/SIGTERM terminate all workers.

Run:
    python -m job_queue.supervisor --config config/settings.yaml
"""
from __future__ import annotations

import argparse
import asyncio
import multiprocessing
import os
import signal
import socket
import time
import structlog
from multiprocessing.connection import wait
from typing import Callable, Optional

from dotenv import load_dotenv

from config.logging import configure_logging
from config.settings import Settings, load_settings

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Worker process body
# ──────────────────────────────────────────────────────────────

async def run_worker(settings: Settings, worker_id: str) -> None:
    """Wire up one worker's dependencies and run its loop until signalled."""
    from channels.whatsapp_adapter import WhatsAppAdapter
    from core.batch_writer import BatchWriter
    from core.notifier import ErrorNotifier
    from core.processor import DispatchProcessor
    from database.store_factory import create_store
    from job_queue.consumer import DispatchWorker
    from job_queue.message_queue import create_dispatch_queue

    structlog.contextvars.bind_contextvars(worker_id=worker_id)

    q = settings.queue
    queue = create_dispatch_queue({
        "backend": q.backend,
        "redis_url": q.redis_url,
        "queue_name": q.queue_name,
        "lease_timeout_seconds": q.lease_timeout_seconds,
    })
    store = create_store(settings.mongo)
    adapter = WhatsAppAdapter(settings.provider)
    notifier = ErrorNotifier(store, settings.callback)

    await queue.connect()
    await store.connect()

    worker = DispatchWorker(
        queue=queue,
        processor=DispatchProcessor(store, adapter),
        writer=BatchWriter(store),
        notifier=notifier,
        batch_size=q.batch_size,
        concurrency=q.effective_concurrency,
        idle_backoff=q.idle_backoff_seconds,
        error_backoff=q.error_backoff_seconds,
        reclaim_interval=q.reclaim_interval_seconds,
        worker_id=worker_id,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.run()
    finally:
        await adapter.shutdown()
        await notifier.close()
        await store.close()
        await queue.close()


def worker_main(worker_id: str, config_path: Optional[str] = None) -> None:
    """Process entry point (must stay importable for the spawn start method)."""
    load_dotenv()
    settings = load_settings(config_path)
    configure_logging(settings.logging.level, settings.logging.json)
    try:
        asyncio.run(run_worker(settings, worker_id))
    except Exception as e:
        logger.error("worker_startup_failed", worker_id=worker_id, error=str(e), exc_info=True)
        raise SystemExit(1)


# ──────────────────────────────────────────────────────────────
#  Supervisor
# ──────────────────────────────────────────────────────────────

def _worker_id(slot: int) -> str:
    host = os.environ.get("HOSTNAME") or socket.gethostname()
    return f"worker-{host}-{slot}"


class Supervisor:
    """
    Usage:
        supervisor = Supervisor(settings, config_path)
        supervisor.run()             # blocks until SIGINT/SIGTERM

    `process_factory(slot)` returns an unstarted process; tests inject fakes.
    """

    def __init__(
        self,
        settings: Settings,
        config_path: Optional[str] = None,
        process_factory: Callable[[int], multiprocessing.process.BaseProcess] = None,
    ):
        self.settings = settings
        self.config_path = config_path
        self.worker_count = settings.workers.effective_count
        self.restart_delay = settings.workers.restart_delay_seconds
        self._process_factory = process_factory or self._spawn_process
        self._ctx = multiprocessing.get_context("spawn")
        self.processes: dict[int, multiprocessing.process.BaseProcess] = {}
        self.restarts = 0
        self._running = False

    def _spawn_process(self, slot: int):
        return self._ctx.Process(
            target=worker_main,
            args=(_worker_id(slot), self.config_path),
            name=f"dispatch-worker-{slot}",
        )

    def _start_slot(self, slot: int) -> None:
        process = self._process_factory(slot)
        process.start()
        self.processes[slot] = process
        logger.info("worker_process_started", slot=slot, pid=process.pid)

    def start(self) -> None:
        self._running = True
        logger.info("supervisor_starting", workers=self.worker_count)
        for slot in range(self.worker_count):
            self._start_slot(slot)

    def supervise_once(self) -> int:
        """Restart every dead worker. Returns how many were restarted."""
        restarted = 0
        for slot, process in list(self.processes.items()):
            if not self._running:
                break
            if process.is_alive():
                continue
            logger.warning("worker_process_exited",
                           slot=slot,
                           pid=process.pid,
                           exitcode=process.exitcode)
            if self.restart_delay:
                time.sleep(self.restart_delay)
            self._start_slot(slot)
            restarted += 1
        self.restarts += restarted
        return restarted

    def stop(self, *_args) -> None:
        self._running = False

    def shutdown(self, timeout: float = 10.0) -> None:
        self._running = False
        for process in self.processes.values():
            if process.is_alive():
                process.terminate()
        for process in self.processes.values():
            process.join(timeout)
        logger.info("supervisor_stopped", restarts=self.restarts)

    def run(self) -> None:
        signal.signal(signal.SIGINT, self.stop)
        signal.signal(signal.SIGTERM, self.stop)
        self.start()
        try:
            while self._running:
                sentinels = [p.sentinel for p in self.processes.values()]
                wait(sentinels, timeout=1.0)
                self.supervise_once()
        finally:
            self.shutdown()


def main(argv: list[str] = None) -> None:
    parser = argparse.ArgumentParser(description="Run the WhatsApp dispatch worker pool")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--workers", type=int, default=None, help="Override worker count")
    args = parser.parse_args(argv)

    load_dotenv()
    settings = load_settings(args.config)
    if args.workers is not None:
        settings.workers.count = args.workers
    configure_logging(settings.logging.level, settings.logging.json)

    Supervisor(settings, args.config).run()


if __name__ == "__main__":
    main()
