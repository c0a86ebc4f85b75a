"""
Storage mutations produced by one dispatch attempt.

Every attempt that reaches a stored template and user yields exactly one
SessionMutation (contact summary upsert) and one LogEntry (append-only
live-chat record), bundled as a StorageDirective.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from models.schemas import BILLING_CATEGORIES, LogStatus, utcnow


def _zeroed_counters() -> dict[str, Any]:
    return {
        category: {"id": None, "expiration": None, "cost": 0}
        for category in BILLING_CATEGORIES
    }


@dataclass
class SessionMutation:
    """Upsert of a contact's session summary, keyed by contact number."""
    filter: dict[str, Any]
    set_fields: dict[str, Any]
    set_on_insert: dict[str, Any] = field(default_factory=_zeroed_counters)

    @property
    def update(self) -> dict[str, Any]:
        return {"$set": self.set_fields, "$setOnInsert": self.set_on_insert}

    @classmethod
    def for_contact(cls, chat_message: dict[str, Any], at: Optional[datetime] = None) -> SessionMutation:
        template = chat_message.get("template") or {}
        return cls(
            filter={"contactNumber": chat_message.get("to")},
            set_fields={
                "sentBy": "system",
                "lastMessage": template.get("message"),
                "lastMessageType": template.get("headerType"),
                "lastMessageTime": at or utcnow(),
                "isBlocked": False,
                "intervene": False,
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {"filter": self.filter, "update": self.update}


@dataclass
class LogEntry:
    """One delivery attempt as shown in the live-chat history. Never updated."""
    data: dict[str, Any]
    status: LogStatus
    attempt_id: str = ""
    message_request_id: Optional[str] = ""
    message_id: Optional[str] = ""
    timestamp: Optional[str] = ""
    wamid: Optional[str] = None
    error: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_document(self) -> dict[str, Any]:
        doc = {
            "data": self.data,
            "sentBy": "system",
            "messageRequestId": self.message_request_id,
            "messageId": self.message_id,
            "timestamp": self.timestamp,
            "wamid": self.wamid,
            "status": self.status.value,
            "error": self.error,
            "erpType": "webengage",
            "createdAt": self.created_at,
        }
        if self.attempt_id:
            doc["attemptId"] = self.attempt_id
        return doc


@dataclass
class StorageDirective:
    """The pair of writes one attempt hands to the batch writer."""
    tenant: str
    subject_id: str
    session_update: SessionMutation
    live_chat_insert: LogEntry

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant": self.tenant,
            "subjectId": self.subject_id,
            "sessionUpdate": self.session_update.to_dict(),
            "liveChatInsert": self.live_chat_insert.to_document(),
        }
