"""
Dispatch Processor — the per-item state machine.

Flow for one queue item (each step may exit):
  1. subject id must be a well-formed ObjectId          → HardError UNAUTHORIZED
  2. template + user looked up concurrently
  3. template missing (checked first)                   → HardError TEMPLATE_NOT_FOUND
     user missing                                       → HardError UNAUTHORIZED
  4. render chat record + provider payload              → HardError INTERNAL_ERROR on fault
  5. template paused                                    → SoftFailure TEMPLATE_PAUSED
  6. balance below unit price                           → SoftFailure INSUFFICIENT_BALANCE
  7. provider call                                      → Delivered | SoftFailure DELIVERY_*

Nothing here writes to storage; soft failures and deliveries carry the
StorageDirective the batch writer will commit.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Any, Callable, Optional

from channels.base import ChannelError, DeliveryAdapter, DeliveryError, DeliveryTimeout
from channels.whatsapp_adapter import UNDELIVERED_MESSAGE
from core.outcomes import Delivered, DispatchOutcome, HardError, SoftFailure
from database.store_base import BaseDispatchStore
from job_queue.message_queue import QueueItem
from models.mutations import LogEntry, SessionMutation, StorageDirective
from models.schemas import ErrorKind, LogStatus, TemplateRecord, utcnow
from templates.transformer import TransformError, build_api_message, build_chat_message
from utils.identifiers import is_valid_subject_id

logger = structlog.get_logger()

PAUSED_TITLE = "Template is Paused!"
INSUFFICIENT_BALANCE_TITLE = "Message failed due to insufficient balance!"


class DispatchProcessor:
    """Runs one queue item through authorization, rendering and delivery."""

    def __init__(
        self,
        store: BaseDispatchStore,
        adapter: DeliveryAdapter,
        clock: Callable[[], Any] = utcnow,
    ):
        self.store = store
        self.adapter = adapter
        self._clock = clock

    async def process(self, item: QueueItem) -> DispatchOutcome:
        """Never raises: unexpected faults become HardError(INTERNAL_ERROR)."""
        try:
            return await self._process(item)
        except Exception as e:
            logger.error("dispatch_internal_error",
                         tenant=item.tenant,
                         subject_id=item.subject_id,
                         attempt_id=item.attempt_id,
                         error=str(e),
                         exc_info=True)
            return HardError(ErrorKind.INTERNAL_ERROR, str(e) or type(e).__name__)

    async def _process(self, item: QueueItem) -> DispatchOutcome:
        if not is_valid_subject_id(item.subject_id):
            logger.info("dispatch_invalid_subject", tenant=item.tenant, subject_id=item.subject_id)
            return HardError(ErrorKind.UNAUTHORIZED, "User not found")

        template_name = _template_name(item.data)
        template, user = await asyncio.gather(
            self.store.get_template(item.tenant, item.subject_id, template_name),
            self.store.get_user(item.tenant, item.subject_id),
        )

        if template is None:
            logger.info("dispatch_template_not_found",
                        tenant=item.tenant,
                        subject_id=item.subject_id,
                        template=template_name)
            return HardError(ErrorKind.TEMPLATE_NOT_FOUND, "Template not found in collection")
        if user is None:
            logger.info("dispatch_user_not_found", tenant=item.tenant, subject_id=item.subject_id)
            return HardError(ErrorKind.UNAUTHORIZED, "User not found")

        try:
            chat_message = build_chat_message(template, item.data)
            api_message = build_api_message(template.template_id, item.data, user)
        except TransformError as e:
            logger.warning("dispatch_transform_failed",
                           tenant=item.tenant,
                           template=template.name,
                           error=str(e))
            return HardError(ErrorKind.INTERNAL_ERROR, str(e))

        if template.is_paused:
            return SoftFailure(
                ErrorKind.TEMPLATE_PAUSED,
                "Template is Paused",
                self._directive(item, chat_message, LogStatus.FAILED,
                                error={"title": PAUSED_TITLE, "code": ""}),
            )

        price = await self.store.get_unit_price(item.tenant, item.subject_id, template.pricing_key)
        if price is None:
            return HardError(ErrorKind.INTERNAL_ERROR,
                             f"No unit price configured for '{template.pricing_key}'")
        if user.balance < price:
            logger.info("dispatch_insufficient_balance",
                        tenant=item.tenant,
                        subject_id=item.subject_id,
                        balance=user.balance,
                        price=price)
            return SoftFailure(
                ErrorKind.INSUFFICIENT_BALANCE,
                "User has insufficient balance",
                self._directive(item, chat_message, LogStatus.FAILED,
                                error={"title": INSUFFICIENT_BALANCE_TITLE, "code": ""}),
            )

        return await self._deliver(item, template, api_message, chat_message)

    async def _deliver(
        self,
        item: QueueItem,
        template: TemplateRecord,
        api_message: dict[str, Any],
        chat_message: dict[str, Any],
    ) -> DispatchOutcome:
        start = time.monotonic()
        try:
            receipt = await self.adapter.send(api_message)
        except DeliveryTimeout as e:
            kind, title, code = ErrorKind.DELIVERY_TIMEOUT, str(e), None
        except DeliveryError as e:
            kind, title, code = ErrorKind.DELIVERY_FAILED, e.provider_message or UNDELIVERED_MESSAGE, e.provider_code
        except ChannelError as e:
            kind, title, code = ErrorKind.DELIVERY_FAILED, str(e) or UNDELIVERED_MESSAGE, None
        else:
            logger.info("dispatch_delivered",
                        tenant=item.tenant,
                        template=template.name,
                        message_request_id=receipt.provider_message_id,
                        response_ms=round((time.monotonic() - start) * 1000, 1))
            return Delivered(
                receipt.provider_message_id,
                self._directive(item, chat_message, LogStatus.SENT,
                                message_request_id=receipt.provider_message_id, wamid=""),
            )

        logger.warning("dispatch_delivery_failed",
                       tenant=item.tenant,
                       template=template.name,
                       kind=kind.value,
                       error=title,
                       code=code,
                       response_ms=round((time.monotonic() - start) * 1000, 1))
        return SoftFailure(
            kind,
            title,
            self._directive(item, chat_message, LogStatus.FAILED,
                            error={"title": title, "code": code}, wamid=""),
        )

    def _directive(
        self,
        item: QueueItem,
        chat_message: dict[str, Any],
        status: LogStatus,
        message_request_id: Optional[str] = "",
        error: Optional[dict[str, Any]] = None,
        wamid: Optional[str] = None,
    ) -> StorageDirective:
        # wamid is "" once the provider was called, None when it never was
        now = self._clock()
        return StorageDirective(
            tenant=item.tenant,
            subject_id=item.subject_id,
            session_update=SessionMutation.for_contact(chat_message, at=now),
            live_chat_insert=LogEntry(
                data=chat_message,
                status=status,
                attempt_id=item.attempt_id,
                message_request_id=message_request_id,
                message_id=item.message_id,
                timestamp=item.timestamp,
                wamid=wamid,
                error=error,
                created_at=now,
            ),
        )


def _template_name(data: dict[str, Any]) -> str:
    whatsapp_data = data.get("whatsAppData") or {}
    template_data = whatsapp_data.get("templateData") or {}
    return template_data.get("templateName") or ""
