"""
Batch Writer — commits one worker batch's storage directives with bulk ops.

Directives are grouped by destination database (two tenants never share a
bulk call), then by collection. Each collection gets one bulk upsert for
session summaries and one insert_many for live-chat entries. Groups commit
independently; a failed group is logged and abandoned, never retried here.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from database.store_base import BaseDispatchStore
from models.mutations import SessionMutation, StorageDirective

logger = structlog.get_logger()


@dataclass
class DatabaseGroup:
    database: str
    sessions: dict[str, list[SessionMutation]] = field(default_factory=lambda: defaultdict(list))
    live_chat: dict[str, list[dict[str, Any]]] = field(default_factory=lambda: defaultdict(list))


@dataclass
class BatchWriteReport:
    directives: int = 0
    groups: int = 0
    sessions_written: int = 0
    logs_written: int = 0
    failed_writes: int = 0


class BatchWriter:

    def __init__(self, store: BaseDispatchStore):
        self.store = store

    def group(self, directives: list[StorageDirective]) -> dict[str, DatabaseGroup]:
        """Group directives by database; collections resolve per directive's subject."""
        ns = self.store.namespaces
        groups: dict[str, DatabaseGroup] = {}
        for directive in directives:
            database = ns.database_for(directive.tenant)
            group = groups.setdefault(database, DatabaseGroup(database))
            group.sessions[ns.sessions_collection(directive.subject_id)].append(
                _normalize_session(directive.session_update)
            )
            group.live_chat[ns.live_chat_collection(directive.subject_id)].append(
                directive.live_chat_insert.to_document()
            )
        return groups

    async def write(self, directives: list[StorageDirective], worker_id: str = "") -> BatchWriteReport:
        report = BatchWriteReport(directives=len(directives))
        if not directives:
            return report

        start = time.monotonic()
        groups = self.group(directives)
        report.groups = len(groups)

        await asyncio.gather(*(self._commit_group(group, report) for group in groups.values()))

        logger.info("batch_committed",
                    worker_id=worker_id,
                    directives=report.directives,
                    databases=report.groups,
                    sessions=report.sessions_written,
                    logs=report.logs_written,
                    failed_writes=report.failed_writes,
                    elapsed_ms=round((time.monotonic() - start) * 1000, 1))
        return report

    async def _commit_group(self, group: DatabaseGroup, report: BatchWriteReport) -> None:
        writes = []
        labels = []
        for collection, mutations in group.sessions.items():
            writes.append(self.store.bulk_upsert_sessions(group.database, collection, mutations))
            labels.append(("sessions", collection))
        for collection, documents in group.live_chat.items():
            writes.append(self.store.insert_log_entries(group.database, collection, documents))
            labels.append(("live_chat", collection))

        results = await asyncio.gather(*writes, return_exceptions=True)

        for (kind, collection), result in zip(labels, results):
            if isinstance(result, BaseException):
                report.failed_writes += 1
                logger.error("batch_write_failed",
                             database=group.database,
                             collection=collection,
                             kind=kind,
                             error=str(result))
            elif kind == "sessions":
                report.sessions_written += result
            else:
                report.logs_written += result


def _normalize_session(mutation: SessionMutation) -> SessionMutation:
    """Mutations that went through JSON carry lastMessageTime as a string."""
    last = mutation.set_fields.get("lastMessageTime")
    if isinstance(last, str):
        try:
            parsed = datetime.fromisoformat(last.replace("Z", "+00:00"))
        except ValueError:
            return mutation
        return SessionMutation(
            filter=mutation.filter,
            set_fields={**mutation.set_fields, "lastMessageTime": parsed},
            set_on_insert=mutation.set_on_insert,
        )
    return mutation
