"""
FastAPI Application — WebEngage ingestion endpoint.

Provides:
- POST /webhook/webengage/{under}/{id}: shape-check a send request, push it
  onto the dispatch queue, answer 202 immediately
- GET  /health: queue connectivity and backlog
- POST /api/v1/templates/{under}/{id}/{template_name}/sync: refresh a stored
  template's status from the provider

Dispatch itself happens in the worker processes (job_queue.supervisor).
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config.logging import configure_logging
from config.settings import Settings, get_settings
from channels.whatsapp_adapter import WhatsAppAdapter
from database.store_base import BaseDispatchStore
from database.store_factory import create_store
from job_queue.message_queue import DispatchQueue, QueueItem, create_dispatch_queue
from templates.status_sync import TemplateStatusSync

logger = structlog.get_logger()

INVALID_FORMAT = "The message format is invalid"
TOO_LARGE = "Request body is too large"


def _rejected(message: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "whatsapp_rejected", "statusCode": 2019, "message": message},
    )


def validate_webengage_request(under: str, subject_id: str, body: Any) -> Optional[str]:
    """Return an error message, or None when the request is acceptable."""
    if not under or not subject_id:
        return "Required params not found"
    if not body or not isinstance(body, dict):
        return "Request body is missing"
    whatsapp_data = body.get("whatsAppData")
    if not isinstance(whatsapp_data, dict) or not whatsapp_data.get("toNumber"):
        return "Recipient phone number is required"
    template_data = whatsapp_data.get("templateData")
    if not isinstance(template_data, dict) or not template_data.get("templateName"):
        return "Template name is required"
    return None


def create_app(
    settings: Settings = None,
    queue: DispatchQueue = None,
    store: BaseDispatchStore = None,
    adapter: WhatsAppAdapter = None,
) -> FastAPI:
    settings = settings or get_settings()
    queue = queue or create_dispatch_queue({
        "backend": settings.queue.backend,
        "redis_url": settings.queue.redis_url,
        "queue_name": settings.queue.queue_name,
        "lease_timeout_seconds": settings.queue.lease_timeout_seconds,
    })
    store = store or create_store(settings.mongo)
    adapter = adapter or WhatsAppAdapter(settings.provider)
    template_sync = TemplateStatusSync(store, adapter)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await queue.connect()
        await store.connect()
        logger.info("ingestion_api_started", queue_backend=type(queue).__name__)
        yield
        await adapter.shutdown()
        await store.close()
        await queue.close()
        logger.info("ingestion_api_stopped")

    app = FastAPI(
        title="WhatsApp Dispatch API",
        description="WebEngage → WhatsApp send-request ingestion",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.queue = queue
    app.state.store = store

    # ══════════════════════════════════════════════════════════
    #  INGESTION
    # ══════════════════════════════════════════════════════════

    @app.post("/webhook/webengage/{under}/{subject_id}")
    async def webengage_webhook(under: str, subject_id: str, request: Request):
        limit = settings.api.max_body_bytes
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                declared = int(content_length)
            except ValueError:
                return _rejected(INVALID_FORMAT)
            if declared > limit:
                return _rejected(TOO_LARGE, status_code=413)

        # chunked uploads carry no Content-Length, so count as we read
        chunks, received = [], 0
        async for chunk in request.stream():
            received += len(chunk)
            if received > limit:
                logger.info("webengage_request_too_large", under=under, received=received)
                return _rejected(TOO_LARGE, status_code=413)
            chunks.append(chunk)

        try:
            raw = b"".join(chunks)
            body = json.loads(raw) if raw else None
        except (ValueError, UnicodeDecodeError):
            return _rejected(INVALID_FORMAT)

        error = validate_webengage_request(under, subject_id, body)
        if error:
            logger.info("webengage_request_rejected", under=under, error=error)
            return _rejected(error)

        item = QueueItem.create(tenant=under, subject_id=subject_id, data=body)
        try:
            await queue.enqueue(item)
        except Exception as e:
            logger.error("webengage_enqueue_failed", under=under, error=str(e))
            return _rejected(INVALID_FORMAT)

        return JSONResponse(
            status_code=202,
            content={
                "status": "whatsapp_accepted",
                "statusCode": 0,
                "message": "Request queued for processing",
            },
        )

    # ══════════════════════════════════════════════════════════
    #  HEALTH & TEMPLATES
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        try:
            await queue.ping()
            backlog = await queue.queue_length()
        except Exception as e:
            return JSONResponse(status_code=500, content={"status": "unhealthy", "error": str(e)})
        return {
            "status": "healthy",
            "workers": settings.workers.effective_count,
            "queue": type(queue).__name__,
            "queue_length": backlog,
        }

    @app.post("/api/v1/templates/{under}/{subject_id}/{template_name}/sync")
    async def sync_template(under: str, subject_id: str, template_name: str):
        status = await template_sync.sync(under, subject_id, template_name)
        return {"template": template_name, "updated": status is not None, "status": status}

    return app


def _build_default_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.logging.level, settings.logging.json)
    return create_app(settings)


app = _build_default_app()


if __name__ == "__main__":
    import uvicorn
    _settings = get_settings()
    uvicorn.run(app, host=_settings.api.host, port=_settings.api.port)
