"""Worker routes for the analysis queue.

POST /tasks/analysis/enqueue    request analysis for one contact
POST /tasks/analysis/process    run one bounded worker batch
GET  /tasks/analysis/failed     operational view of items in 'erro'
POST /tasks/analysis/requeue    give a failed item a fresh retry budget
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from kiteintel.api.task_auth import require_task_auth
from kiteintel.domain import analysis_queue, analysis_worker
from kiteintel.domain.contacts import ContactNotFoundError, get_contact
from kiteintel.infra.db import txn
from kiteintel.infra.settings import load_analysis_settings, load_llm_settings
from kiteintel.llm.client import ChatCompletionClient
from kiteintel.observability.logging import get_logger
from kiteintel.observability.redaction import safe_log_context

router = APIRouter(prefix="/tasks/analysis", tags=["tasks"])

logger = get_logger(__name__)

MAX_FAILED_LIST = 200

# Module-level LLM client (lazy init, can be overridden for tests)
_llm_client: ChatCompletionClient | None = None


def _get_llm_client() -> ChatCompletionClient:
    """Get LLM client; missing config becomes a 500."""
    global _llm_client
    if _llm_client is None:
        try:
            _llm_client = ChatCompletionClient(load_llm_settings())
        except RuntimeError as e:
            logger.error(
                "llm config missing",
                extra={"extra_fields": safe_log_context(error=str(e))},
            )
            raise HTTPException(status_code=500, detail="llm not configured") from e
    return _llm_client


def _set_llm_client(client: ChatCompletionClient | None) -> None:
    """Set LLM client (for tests)."""
    global _llm_client
    _llm_client = client


def _serialize_item(item: dict) -> dict:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in item.items()
    }


# ── Schemas ───────────────────────────────────────────────


class EnqueueRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    contact_id: UUID
    priority_rank: int = Field(default=analysis_queue.DEFAULT_PRIORITY_RANK, ge=0, le=100)


class ProcessRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    batch_size: int | None = Field(default=None, ge=1, le=20)


class RequeueRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    item_id: int = Field(ge=1)


# ── Handlers ──────────────────────────────────────────────


@router.post("/enqueue")
def enqueue(request: Request, body: EnqueueRequest) -> dict:
    """Enqueue analysis; a no-op when the contact already has one in flight."""
    require_task_auth(request)
    contact_id = str(body.contact_id)

    try:
        with txn() as cur:
            get_contact(cur, contact_id)
            enqueued = analysis_queue.enqueue(cur, contact_id, body.priority_rank)
    except ContactNotFoundError as e:
        raise HTTPException(status_code=404, detail="contact not found") from e
    return {"ok": True, "enqueued": enqueued}


@router.post("/process")
def process(request: Request, body: ProcessRequest | None = None) -> dict:
    """Claim and analyse one batch of queue items."""
    require_task_auth(request)
    body = body or ProcessRequest()

    summary = analysis_worker.process_batch(
        _get_llm_client(), load_analysis_settings(), batch_size=body.batch_size
    )
    return {"ok": True, **summary.to_dict()}


@router.get("/failed")
def failed(
    request: Request,
    limit: int = Query(default=50, ge=1, le=MAX_FAILED_LIST),
) -> dict:
    """List permanently failed items for manual re-enqueue."""
    require_task_auth(request)

    with txn() as cur:
        items = analysis_queue.list_failed(cur, limit)
    return {"items": [_serialize_item(item) for item in items]}


@router.post("/requeue")
def requeue(request: Request, body: RequeueRequest) -> dict:
    """Move an 'erro' item back to 'pendente' with attempts reset."""
    require_task_auth(request)

    try:
        with txn() as cur:
            requeued = analysis_queue.requeue_failed(cur, body.item_id)
    except analysis_queue.QueueItemNotFoundError as e:
        raise HTTPException(status_code=404, detail="queue item not found") from e
    return {"ok": True, "requeued": requeued}
