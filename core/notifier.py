"""
Error Notifier — tells WebEngage that a request could not be processed.

Only HardError outcomes reach here. The callback is posted once; any
failure to post is logged and dropped so the worker never blocks on it.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from config.settings import CallbackConfig
from core.outcomes import HardError
from database.store_base import BaseDispatchStore
from job_queue.message_queue import QueueItem
from models.schemas import ErrorKind
from utils.identifiers import is_valid_subject_id

logger = structlog.get_logger()

DEFAULT_STATUS_CODE = 2019
DEFAULT_MESSAGE = "The message format is invalid"

# kind → (statusCode, fixed message or None to keep the error's own)
_STATUS_MAP: dict[ErrorKind, tuple[int, Optional[str]]] = {
    ErrorKind.TEMPLATE_NOT_FOUND: (2023, None),
    ErrorKind.INSUFFICIENT_BALANCE: (2000, "Insufficient credit balance"),
    ErrorKind.UNAUTHORIZED: (2005, "Authorization failure - User not found"),
}


def build_error_response(
    kind: ErrorKind,
    message: str = "",
    timestamp: Optional[str] = None,
    message_id: Optional[str] = None,
) -> dict[str, Any]:
    """Map an internal error kind onto the WebEngage rejection payload."""
    status_code, fixed_message = _STATUS_MAP.get(kind, (DEFAULT_STATUS_CODE, None))
    return {
        "version": "1.0",
        "status": "whatsapp_rejected",
        "statusCode": status_code,
        "message": fixed_message or message or DEFAULT_MESSAGE,
        "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
        "messageId": message_id,
    }


class ErrorNotifier:

    def __init__(self, store: BaseDispatchStore, config: CallbackConfig = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.store = store
        self.config = config or CallbackConfig()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds or None)
        return self._client

    async def _resolve_target(self, item: QueueItem) -> tuple[Optional[str], Optional[str]]:
        """Subject's configured endpoint and token, else the process-wide default."""
        endpoint, token = None, None
        if is_valid_subject_id(item.subject_id):
            try:
                user = await self.store.get_user(item.tenant, item.subject_id)
            except Exception as e:
                logger.warning("callback_user_lookup_failed",
                               tenant=item.tenant,
                               subject_id=item.subject_id,
                               error=str(e))
                user = None
            if user and user.webengage_config:
                endpoint = user.webengage_config.endpoint
                token = user.webengage_config.auth_token
        return endpoint or self.config.default_endpoint or None, token

    async def notify(self, item: QueueItem, error: HardError) -> bool:
        """Post the rejection callback. Returns True only on a 2xx answer."""
        try:
            endpoint, token = await self._resolve_target(item)
            if not endpoint:
                logger.error("callback_endpoint_missing", tenant=item.tenant, subject_id=item.subject_id)
                return False

            payload = build_error_response(error.kind, error.message, item.timestamp, item.message_id)
            headers = {"Content-Type": "application/json"}
            if token:
                headers["Authorization"] = f"Bearer {token}"

            response = await self._get_client().post(endpoint, json=payload, headers=headers)
            response.raise_for_status()
            logger.info("callback_sent",
                        tenant=item.tenant,
                        kind=error.kind.value,
                        status_code=payload["statusCode"])
            return True
        except Exception as e:
            logger.error("callback_failed",
                         tenant=item.tenant,
                         subject_id=item.subject_id,
                         kind=error.kind.value,
                         error=str(e))
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
