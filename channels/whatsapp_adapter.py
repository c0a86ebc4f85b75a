"""
WhatsApp Channel Adapter — Airtel IQ WhatsApp gateway integration.

Provides:
- Outbound template sends (POST to the gateway's send-message API)
- HTTP Basic authentication from provider credentials
- Bounded per-call timeout, surfaced as DeliveryTimeout
- Provider rejection normalization ({message, code} body → DeliveryError)
- Template lookup against the content-manager API (for status sync)
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import ProviderConfig
from channels.base import (
    DeliveryAdapter, DeliveryError, DeliveryTimeout, TokenBucketRateLimiter,
)

logger = structlog.get_logger()

UNDELIVERED_MESSAGE = "Message undelivered!"


class WhatsAppAdapter(DeliveryAdapter):
    """
    Sends rendered template payloads to the WhatsApp gateway.

    The gateway answers 2xx with {"messageRequestId": ...} on acceptance,
    and a non-2xx with {"message": ..., "code": ...} on rejection.
    """

    channel = "whatsapp"

    def __init__(self, config: ProviderConfig, client: Optional[httpx.AsyncClient] = None):
        limiter = None
        if config.rate_per_second > 0:
            limiter = TokenBucketRateLimiter(rate=config.rate_per_second, burst=config.burst)
        super().__init__(rate_limiter=limiter)
        self.config = config
        self._timeout = config.timeout_seconds or None
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                auth=httpx.BasicAuth(self.config.username, self.config.password),
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
            )
        return self._client

    async def _do_send(self, payload: dict[str, Any]) -> Optional[str]:
        client = self._get_client()
        try:
            response = await client.post(self.config.send_url, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException:
            raise DeliveryTimeout(self._timeout or 0.0, self.channel)
        except httpx.HTTPStatusError as e:
            body = _json_or_empty(e.response)
            raise DeliveryError(
                body.get("message") or str(e) or UNDELIVERED_MESSAGE,
                body.get("code"),
                self.channel,
            )
        except httpx.HTTPError as e:
            raise DeliveryError(str(e) or UNDELIVERED_MESSAGE, None, self.channel)

        message_request_id = _json_or_empty(response).get("messageRequestId")
        logger.debug("whatsapp_template_sent",
                     to=payload.get("to"),
                     template_id=payload.get("templateId"),
                     message_request_id=message_request_id)
        return message_request_id

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def fetch_template(self, waba_id: str, template_id: str) -> dict[str, Any]:
        """Fetch a template definition (including its status) from the content manager."""
        client = self._get_client()
        response = await client.get(
            self.config.template_url,
            params={
                "customerId": self.config.customer_id,
                "subAccountId": self.config.sub_account_id,
                "wabaId": waba_id,
                "templateId": template_id,
            },
        )
        response.raise_for_status()
        return response.json()

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
