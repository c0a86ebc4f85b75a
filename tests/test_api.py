"""Integration tests for the ingestion API."""
import json

import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock

from api.main import create_app, validate_webengage_request
from config.settings import ApiConfig, Settings, WorkerConfig
from job_queue.message_queue import InMemoryDispatchQueue, QueueItem

from conftest import SUBJECT_ID, TENANT, FakeAdapter, make_request

WEBHOOK = f"/webhook/webengage/{TENANT}/{SUBJECT_ID}"


@pytest.fixture
def api_queue() -> InMemoryDispatchQueue:
    return InMemoryDispatchQueue()


@pytest.fixture
def settings() -> Settings:
    return Settings(workers=WorkerConfig(count=4), api=ApiConfig(max_body_bytes=4096))


@pytest.fixture
def client(settings, api_queue, store):
    app = create_app(settings, queue=api_queue, store=store, adapter=FakeAdapter())
    with TestClient(app) as client:
        yield client


class TestValidateWebEngageRequest:
    def test_valid(self):
        assert validate_webengage_request(TENANT, SUBJECT_ID, make_request()) is None

    def test_missing_params(self):
        assert validate_webengage_request("", SUBJECT_ID, make_request()) == "Required params not found"

    def test_missing_body(self):
        assert validate_webengage_request(TENANT, SUBJECT_ID, {}) == "Request body is missing"

    def test_missing_recipient(self):
        body = make_request(to="")
        assert validate_webengage_request(TENANT, SUBJECT_ID, body) == "Recipient phone number is required"

    def test_missing_template_name(self):
        body = make_request(template="")
        assert validate_webengage_request(TENANT, SUBJECT_ID, body) == "Template name is required"


class TestWebhook:
    def test_accepted_request_is_queued(self, client, api_queue):
        response = client.post(WEBHOOK, json=make_request(message_id="we-1"))

        assert response.status_code == 202
        assert response.json() == {
            "status": "whatsapp_accepted",
            "statusCode": 0,
            "message": "Request queued for processing",
        }
        [raw] = list(api_queue._items)
        item = QueueItem.from_json(raw)
        assert item.tenant == TENANT
        assert item.subject_id == SUBJECT_ID
        assert item.message_id == "we-1"
        assert item.attempt_id

    def test_subject_id_not_checked_at_ingestion(self, client):
        # shape errors on the subject surface later, via the callback
        response = client.post(f"/webhook/webengage/{TENANT}/not-an-id", json=make_request())
        assert response.status_code == 202

    def test_missing_recipient_rejected(self, client):
        response = client.post(WEBHOOK, json=make_request(to=""))
        assert response.status_code == 400
        assert response.json() == {
            "status": "whatsapp_rejected",
            "statusCode": 2019,
            "message": "Recipient phone number is required",
        }

    def test_missing_template_rejected(self, client):
        response = client.post(WEBHOOK, json=make_request(template=""))
        assert response.status_code == 400
        assert response.json()["message"] == "Template name is required"

    def test_invalid_json_rejected(self, client):
        response = client.post(WEBHOOK, content=b"{broken", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["message"] == "The message format is invalid"

    def test_empty_body_rejected(self, client):
        response = client.post(WEBHOOK)
        assert response.status_code == 400
        assert response.json()["message"] == "Request body is missing"

    def test_oversized_body_rejected(self, client, api_queue):
        body = make_request(variables=["x" * 5000])
        response = client.post(WEBHOOK, content=json.dumps(body), headers={"Content-Type": "application/json"})
        assert response.status_code == 413
        assert len(api_queue._items) == 0

    def test_oversized_chunked_body_rejected(self, client, api_queue):
        raw = json.dumps(make_request(variables=["x" * 50000])).encode()

        def chunks():
            for start in range(0, len(raw), 1024):
                yield raw[start:start + 1024]

        response = client.post(WEBHOOK, content=chunks(), headers={"Content-Type": "application/json"})

        assert response.status_code == 413
        assert response.json()["message"] == "Request body is too large"
        assert len(api_queue._items) == 0

    def test_small_chunked_body_accepted(self, client, api_queue):
        raw = json.dumps(make_request()).encode()
        response = client.post(WEBHOOK, content=iter([raw[:10], raw[10:]]),
                               headers={"Content-Type": "application/json"})
        assert response.status_code == 202
        assert len(api_queue._items) == 1

    def test_non_numeric_content_length_rejected(self, client, api_queue):
        response = client.post(WEBHOOK, content=json.dumps(make_request()),
                               headers={"Content-Type": "application/json", "Content-Length": "lots"})
        assert response.status_code == 400
        assert response.json()["statusCode"] == 2019
        assert len(api_queue._items) == 0

    def test_enqueue_failure_rejected(self, client, api_queue):
        api_queue.enqueue = AsyncMock(side_effect=ConnectionError("redis gone"))
        response = client.post(WEBHOOK, json=make_request())
        assert response.status_code == 400
        assert response.json()["statusCode"] == 2019


class TestHealth:
    def test_healthy(self, client, api_queue):
        api_queue._items.append("{}")
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "workers": 4,
            "queue": "InMemoryDispatchQueue",
            "queue_length": 1,
        }

    def test_unhealthy(self, client, api_queue):
        api_queue.ping = AsyncMock(side_effect=ConnectionError("redis gone"))
        response = client.get("/health")
        assert response.status_code == 500
        assert response.json()["status"] == "unhealthy"


class TestTemplateSync:
    def test_sync_endpoint(self, settings, api_queue, store):
        adapter = MagicMock()
        adapter.fetch_template = AsyncMock(return_value={"template": {"status": "INACTIVE"}})
        adapter.shutdown = AsyncMock()
        app = create_app(settings, queue=api_queue, store=store, adapter=adapter)

        with TestClient(app) as client:
            response = client.post(f"/api/v1/templates/{TENANT}/{SUBJECT_ID}/welcome_offer/sync")

        assert response.status_code == 200
        assert response.json() == {"template": "welcome_offer", "updated": True, "status": "PAUSED"}
