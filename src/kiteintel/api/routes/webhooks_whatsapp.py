"""WhatsApp webhook routes - Evolution API push integration.

Message events (messages.upsert, send.message) run through the same
ingestion path as polling, so a message delivered by both webhook and poll
is stored once. Other events are acknowledged and ignored.

Security:
- Requests must carry X-Webhook-Secret matching EVOLUTION_WEBHOOK_SECRET
  (fail-closed outside local dev).
- Logs contain NO PII (no remote_jid, phone or text).
"""

import hmac
import os
from typing import Any

import psycopg2
from fastapi import APIRouter, Header, Request, Response

from kiteintel.domain import ingestion
from kiteintel.infra.settings import load_ingestion_settings
from kiteintel.infra.time import utc_now
from kiteintel.observability.correlation import get_correlation_id
from kiteintel.observability.logging import get_logger
from kiteintel.observability.redaction import safe_log_context
from kiteintel.tasks.client import TasksClient
from kiteintel.whatsapp.evolution_adapter import InvalidPayloadError, parse_webhook_event

router = APIRouter(prefix="/webhooks/whatsapp", tags=["webhooks"])

logger = get_logger(__name__)

# Inline tasks client for dev (same instance across requests)
_tasks_client = TasksClient()

_LOCAL_DEV_AUDIENCE = "kiteintel-tasks-local"


def _get_tasks_client() -> TasksClient:
    """Get tasks client instance (allows test injection)."""
    return _tasks_client


def _secret_ok(x_webhook_secret: str | None, correlation_id: str) -> bool:
    expected_secret = os.environ.get("EVOLUTION_WEBHOOK_SECRET", "")
    if not expected_secret:
        if os.environ.get("TASKS_OIDC_AUDIENCE", "") == _LOCAL_DEV_AUDIENCE:
            logger.warning(
                "EVOLUTION_WEBHOOK_SECRET not set - skipping validation (local dev)",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
            )
            return True
        logger.error(
            "EVOLUTION_WEBHOOK_SECRET not configured - rejecting webhook (fail-closed)",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return False
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected_secret):
        logger.warning(
            "evolution webhook secret mismatch",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return False
    return True


@router.post("/evolution")
async def evolution_webhook(
    request: Request,
    x_webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
) -> Response:
    """Receive an Evolution API webhook.

    ACK 2xx only after every message item was stored (or skipped as
    unusable); a store failure returns 500 so the gateway redelivers, which
    is safe because ingestion is idempotent by message id.

    When new inbound messages were queued for analysis, one follow-up
    /tasks/analysis/process task is sent per minute.

    Returns:
        200 OK if processed or ignored.
        400 Bad Request if payload invalid.
        401 Unauthorized if secret validation fails.
        500 Internal Server Error if storing fails.
    """
    correlation_id = get_correlation_id()

    if not _secret_ok(x_webhook_secret, correlation_id):
        return Response(status_code=401, content="unauthorized")

    try:
        payload: Any = await request.json()
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid json")

    try:
        event = parse_webhook_event(payload)
    except InvalidPayloadError:
        logger.warning(
            "invalid evolution payload shape",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=400, content="invalid payload shape")

    if not event.is_message:
        logger.info(
            "evolution webhook ignored",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, event=event.event)},
        )
        return Response(status_code=200, content="ignored")

    instance = payload.get("instance") if isinstance(payload.get("instance"), str) else None
    settings = load_ingestion_settings()
    summary = ingestion.RunSummary()

    try:
        for item in event.items:
            summary.merge(ingestion.ingest_webhook_message(item, settings, instance))
    except psycopg2.Error:
        # Transaction rolled back - do NOT return 2xx
        logger.exception(
            "webhook processing failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return Response(status_code=500, content="processing failed")

    logger.info(
        "evolution webhook processed",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                event=event.event,
                items=len(event.items),
                created=summary.created,
                updated=summary.updated,
                skipped=summary.skipped,
                enqueued=summary.enqueued,
            )
        },
    )

    if summary.enqueued:
        task_id = f"analysis-process:{utc_now().strftime('%Y%m%d%H%M')}"
        _get_tasks_client().enqueue_http(
            task_id=task_id,
            url_path="/tasks/analysis/process",
            payload={},
            correlation_id=correlation_id,
        )

    return Response(status_code=200, content="ok")
