"""
Core data models for the dispatch pipeline.
These are the storage-facing record types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ErrorKind(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    TEMPLATE_PAUSED = "TEMPLATE_PAUSED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    DELIVERY_TIMEOUT = "DELIVERY_TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class LogStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class TemplateStatus(str, Enum):
    APPROVED = "APPROVED"
    PAUSED = "PAUSED"


# Billing categories that get zeroed counters on first contact
BILLING_CATEGORIES = ("utility", "marketing", "authentication", "service")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Stored records
# ──────────────────────────────────────────────────────────────

class WebEngageConfig(BaseModel):
    """Per-subject callback settings."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    endpoint: Optional[str] = None
    auth_token: Optional[str] = Field(default=None, alias="authToken")


class UserRecord(BaseModel):
    """A subject account, as stored in the tenant's `users` collection."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(alias="_id")
    balance: float = 0.0
    business_whatsapp_number: Optional[str] = Field(default=None, alias="businessWhatsappNumber")
    waba_id: Optional[str] = Field(default=None, alias="wabaId")
    webengage_config: Optional[WebEngageConfig] = Field(default=None, alias="webEngageConfig")

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> UserRecord:
        data = dict(doc)
        data["_id"] = str(data.get("_id", ""))
        return cls.model_validate(data)


class TemplateRecord(BaseModel):
    """A stored WhatsApp template definition."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    template_id: Optional[str] = Field(default=None, alias="templateId")
    status: str = TemplateStatus.APPROVED.value
    type: str = "MARKETING"                   # billing category
    category: Optional[str] = None
    message: Optional[str] = ""
    header: Optional[str] = None
    header_type: Optional[str] = Field(default=None, alias="headerType")
    footer: Optional[str] = None
    actions: Optional[Any] = None
    sub_type: Optional[str] = Field(default=None, alias="subType")
    cards: Optional[list[Any]] = None

    @property
    def is_paused(self) -> bool:
        return (self.status or "").lower() == "paused"

    @property
    def pricing_key(self) -> str:
        return (self.type or "").lower()

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> TemplateRecord:
        data = {k: v for k, v in doc.items() if k != "_id"}
        return cls.model_validate(data)
