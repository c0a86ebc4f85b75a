"""Shared test fixtures for the dispatch pipeline."""
import pytest
from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId

from channels.base import DeliveryAdapter, ChannelError
from config.settings import MongoConfig, reset_settings
from database.namespaces import StorageNamespaces
from database.store_factory import reset_store
from database.store_memory import InMemoryDispatchStore
from job_queue.message_queue import InMemoryDispatchQueue, QueueItem, reset_dispatch_queue

TENANT = "acme"
TENANT_DB = "acme_reseller"
SUBJECT_ID = "64b7f0c2a1d3e4f5a6b7c8d9"
OTHER_TENANT = "globex"
OTHER_SUBJECT_ID = "650a1b2c3d4e5f6a7b8c9d0e"
FIXED_NOW = datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)


# ── Request builders ──────────────────────────────────

def make_request(
    to: str = "919812345678",
    template: str = "welcome_offer",
    variables: Optional[list] = None,
    template_type: str = "text",
    message_id: str = "msg-001",
    **template_data: Any,
) -> dict[str, Any]:
    return {
        "version": "1.0",
        "whatsAppData": {
            "toNumber": to,
            "fromNumber": "919000000000",
            "templateData": {
                "templateName": template,
                "type": template_type,
                "templateVariables": ["Asha", "SAVE10"] if variables is None else variables,
                **template_data,
            },
        },
        "metadata": {
            "messageId": message_id,
            "timestamp": "2026-01-15T09:29:58+0000",
        },
    }


def make_item(tenant: str = TENANT, subject_id: str = SUBJECT_ID, **request: Any) -> QueueItem:
    return QueueItem.create(tenant=tenant, subject_id=subject_id, data=make_request(**request))


# ── Fakes ─────────────────────────────────────────────

class FakeAdapter(DeliveryAdapter):
    """Records payloads; raises `error` when set."""

    channel = "whatsapp"

    def __init__(self, error: Optional[ChannelError] = None):
        super().__init__()
        self.error = error
        self.sent: list[dict[str, Any]] = []

    async def _do_send(self, payload: dict[str, Any]) -> Optional[str]:
        self.sent.append(payload)
        if self.error is not None:
            raise self.error
        return f"mrid-{len(self.sent)}"


def seed_subject(store: InMemoryDispatchStore, tenant: str, subject_id: str,
                 balance: float = 10.0, webengage_config: Optional[dict] = None) -> None:
    store.add_user(tenant, {
        "_id": ObjectId(subject_id),
        "balance": balance,
        "businessWhatsappNumber": "919000000001",
        "wabaId": "waba-1",
        "webEngageConfig": webengage_config,
    })
    store.add_template(tenant, subject_id, {
        "name": "welcome_offer",
        "templateId": "tpl-1",
        "status": "APPROVED",
        "type": "MARKETING",
        "category": "MARKETING",
        "message": "Hi {{1}}, use code {{2}} today",
        "header": "Welcome!",
        "headerType": "text",
        "footer": "Reply STOP to opt out",
    })
    store.add_template(tenant, subject_id, {
        "name": "paused_promo",
        "templateId": "tpl-2",
        "status": "PAUSED",
        "type": "MARKETING",
        "message": "Flash sale for {{1}}",
        "headerType": "text",
        "header": "Sale",
    })
    store.add_template(tenant, subject_id, {
        "name": "invoice_ready",
        "templateId": "tpl-3",
        "status": "APPROVED",
        "type": "UTILITY",
        "message": "Invoice {{1}} is ready",
        "headerType": "document",
    })
    store.set_pricing(tenant, subject_id, {
        "marketing": 0.8,
        "utility": 0.2,
        "authentication": 0.15,
        "service": 0.0,
    })


# ── Fixtures ──────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_singletons():
    reset_dispatch_queue()
    reset_store()
    reset_settings()
    yield
    reset_dispatch_queue()
    reset_store()
    reset_settings()


@pytest.fixture
def namespaces() -> StorageNamespaces:
    return StorageNamespaces(MongoConfig())


@pytest.fixture
def store(namespaces) -> InMemoryDispatchStore:
    store = InMemoryDispatchStore(namespaces)
    seed_subject(store, TENANT, SUBJECT_ID, webengage_config={
        "endpoint": "https://webengage.example.com/acme/callback",
        "authToken": "we-token",
    })
    return store


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def queue() -> InMemoryDispatchQueue:
    return InMemoryDispatchQueue(queue_name="test_requests", lease_timeout=60.0)
