"""Tests for the WebEngage rejection callback."""
import json

import httpx
import pytest
from unittest.mock import AsyncMock

from config.settings import CallbackConfig
from core.notifier import ErrorNotifier, build_error_response
from core.outcomes import HardError
from models.schemas import ErrorKind

from conftest import OTHER_SUBJECT_ID, make_item

SUBJECT_ENDPOINT = "https://webengage.example.com/acme/callback"
DEFAULT_ENDPOINT = "https://webengage.example.com/default"


class TestBuildErrorResponse:
    def test_template_not_found_keeps_message(self):
        body = build_error_response(ErrorKind.TEMPLATE_NOT_FOUND, "Template not found in collection",
                                    "2026-01-15T09:29:58+0000", "msg-9")
        assert body == {
            "version": "1.0",
            "status": "whatsapp_rejected",
            "statusCode": 2023,
            "message": "Template not found in collection",
            "timestamp": "2026-01-15T09:29:58+0000",
            "messageId": "msg-9",
        }

    def test_unauthorized(self):
        body = build_error_response(ErrorKind.UNAUTHORIZED, "User not found")
        assert body["statusCode"] == 2005
        assert body["message"] == "Authorization failure - User not found"

    def test_insufficient_balance(self):
        body = build_error_response(ErrorKind.INSUFFICIENT_BALANCE, "whatever")
        assert body["statusCode"] == 2000
        assert body["message"] == "Insufficient credit balance"

    @pytest.mark.parametrize("kind", [ErrorKind.INTERNAL_ERROR, ErrorKind.DELIVERY_FAILED])
    def test_everything_else_is_invalid_format(self, kind):
        body = build_error_response(kind, "")
        assert body["statusCode"] == 2019
        assert body["message"] == "The message format is invalid"

    def test_missing_timestamp_is_filled(self):
        body = build_error_response(ErrorKind.INTERNAL_ERROR, "boom")
        assert body["timestamp"]
        assert body["messageId"] is None


class Recorder:
    """httpx transport handler that records requests and answers with `status`."""

    def __init__(self, status: int = 200, error: Exception = None):
        self.status = status
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def make_notifier(store, recorder: Recorder, default_endpoint: str = DEFAULT_ENDPOINT) -> ErrorNotifier:
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return ErrorNotifier(store, CallbackConfig(default_endpoint=default_endpoint), client=client)


class TestErrorNotifier:
    @pytest.mark.asyncio
    async def test_posts_to_subject_endpoint_with_token(self, store):
        recorder = Recorder()
        notifier = make_notifier(store, recorder)
        item = make_item(template="missing_one", message_id="msg-42")

        ok = await notifier.notify(item, HardError(ErrorKind.TEMPLATE_NOT_FOUND, "Template not found in collection"))

        assert ok is True
        assert len(recorder.requests) == 1
        request = recorder.last
        assert str(request.url) == SUBJECT_ENDPOINT
        assert request.headers["Authorization"] == "Bearer we-token"
        payload = json.loads(request.content)
        assert payload["statusCode"] == 2023
        assert payload["messageId"] == "msg-42"
        assert payload["timestamp"] == "2026-01-15T09:29:58+0000"
        await notifier.close()

    @pytest.mark.asyncio
    async def test_invalid_subject_uses_default_endpoint(self, store):
        recorder = Recorder()
        notifier = make_notifier(store, recorder)

        ok = await notifier.notify(make_item(subject_id="abc123defg"),
                                   HardError(ErrorKind.UNAUTHORIZED, "User not found"))

        assert ok is True
        request = recorder.last
        assert str(request.url) == DEFAULT_ENDPOINT
        assert "Authorization" not in request.headers
        assert json.loads(request.content)["statusCode"] == 2005
        assert store.lookup_calls == 0
        await notifier.close()

    @pytest.mark.asyncio
    async def test_unknown_user_uses_default_endpoint(self, store):
        recorder = Recorder(status=204)
        notifier = make_notifier(store, recorder)

        ok = await notifier.notify(make_item(subject_id=OTHER_SUBJECT_ID),
                                   HardError(ErrorKind.TEMPLATE_NOT_FOUND, "Template not found in collection"))

        assert ok is True
        assert str(recorder.last.url) == DEFAULT_ENDPOINT
        await notifier.close()

    @pytest.mark.asyncio
    async def test_callback_failure_is_swallowed(self, store):
        notifier = make_notifier(store, Recorder(status=503))
        ok = await notifier.notify(make_item(), HardError(ErrorKind.INTERNAL_ERROR, "boom"))
        assert ok is False
        await notifier.close()

    @pytest.mark.asyncio
    async def test_transport_error_is_swallowed(self, store):
        notifier = make_notifier(store, Recorder(error=httpx.ConnectError("refused")))
        ok = await notifier.notify(make_item(), HardError(ErrorKind.INTERNAL_ERROR, "boom"))
        assert ok is False
        await notifier.close()

    @pytest.mark.asyncio
    async def test_user_lookup_failure_falls_back(self, store):
        recorder = Recorder()
        notifier = make_notifier(store, recorder)
        store.get_user = AsyncMock(side_effect=RuntimeError("db down"))

        ok = await notifier.notify(make_item(), HardError(ErrorKind.INTERNAL_ERROR, "boom"))

        assert ok is True
        assert str(recorder.last.url) == DEFAULT_ENDPOINT
        await notifier.close()

    @pytest.mark.asyncio
    async def test_no_endpoint_anywhere(self, store):
        recorder = Recorder()
        notifier = make_notifier(store, recorder, default_endpoint="")
        ok = await notifier.notify(make_item(subject_id="abc123defg"),
                                   HardError(ErrorKind.UNAUTHORIZED, "User not found"))
        assert ok is False
        assert recorder.requests == []
        await notifier.close()
