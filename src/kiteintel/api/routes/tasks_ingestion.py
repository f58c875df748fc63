"""Worker routes that trigger WhatsApp ingestion runs.

POST /tasks/ingestion/poll            general poll of recent chats
POST /tasks/ingestion/poll-contact    targeted poll for one contact
POST /tasks/ingestion/fetch-history   ad-hoc history by contact id or phone
POST /tasks/ingestion/sync            full sync (contacts / messages / full)

Every run is bounded: limits have defaults from IngestionSettings and hard
caps enforced by the request models. Only callers passing task auth (OIDC,
or the internal secret in local dev) are accepted.
"""

from __future__ import annotations

from typing import Literal
from uuid import UUID

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field, model_validator

from kiteintel.api.task_auth import require_task_auth
from kiteintel.domain import ingestion
from kiteintel.domain.contacts import ContactNotFoundError
from kiteintel.infra.settings import load_evolution_settings, load_ingestion_settings
from kiteintel.observability.logging import get_logger
from kiteintel.observability.redaction import safe_log_context
from kiteintel.whatsapp.evolution_client import EvolutionClient, GatewayError

router = APIRouter(prefix="/tasks/ingestion", tags=["tasks"])

logger = get_logger(__name__)

GATEWAY_UNAVAILABLE = "WhatsApp gateway unavailable, please try again in a few minutes"

# Module-level gateway client (lazy init, can be overridden for tests)
_evolution_client: EvolutionClient | None = None


def _get_evolution_client() -> EvolutionClient:
    """Get gateway client; missing config becomes a 500."""
    global _evolution_client
    if _evolution_client is None:
        try:
            _evolution_client = EvolutionClient(load_evolution_settings())
        except RuntimeError as e:
            logger.error(
                "gateway config missing",
                extra={"extra_fields": safe_log_context(error=str(e))},
            )
            raise HTTPException(status_code=500, detail="gateway not configured") from e
    return _evolution_client


def _set_evolution_client(client: EvolutionClient | None) -> None:
    """Set gateway client (for tests)."""
    global _evolution_client
    _evolution_client = client


def _gateway_failed(operation: str, e: GatewayError) -> HTTPException:
    logger.warning(
        "ingestion gateway failure",
        extra={"extra_fields": safe_log_context(operation=operation, status=e.status)},
    )
    return HTTPException(status_code=502, detail=GATEWAY_UNAVAILABLE)


# ── Schemas ───────────────────────────────────────────────


class PollRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    chat_limit: int | None = Field(default=None, ge=1, le=100)
    message_limit: int | None = Field(default=None, ge=1, le=200)
    time_budget_seconds: float | None = Field(default=None, gt=0, le=540)


class PollContactRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    contact_id: UUID
    limit: int | None = Field(default=None, ge=1, le=200)


class FetchHistoryRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    contact_id: UUID | None = None
    phone: str | None = Field(default=None, max_length=32)
    limit: int | None = Field(default=None, ge=1, le=500)

    @model_validator(mode="after")
    def _one_target(self) -> "FetchHistoryRequest":
        if self.contact_id is None and not self.phone:
            raise ValueError("contact_id or phone is required")
        return self


class SyncRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: Literal["contacts", "messages", "full"] = "full"
    batch_size: int | None = Field(default=None, ge=1, le=50)
    contact_limit: int | None = Field(default=None, ge=1, le=5000)
    time_budget_seconds: float | None = Field(default=None, gt=0, le=3600)


# ── Handlers ──────────────────────────────────────────────


@router.post("/poll")
def poll(request: Request, body: PollRequest | None = None) -> dict:
    """General poll of recently active chats."""
    require_task_auth(request)
    body = body or PollRequest()

    try:
        summary = ingestion.poll_recent_chats(
            _get_evolution_client(),
            load_ingestion_settings(),
            chat_limit=body.chat_limit,
            message_limit=body.message_limit,
            time_budget_seconds=body.time_budget_seconds,
        )
    except GatewayError as e:
        raise _gateway_failed("poll", e) from e
    return {"ok": True, **summary.to_dict()}


@router.post("/poll-contact")
def poll_contact(request: Request, body: PollContactRequest) -> dict:
    """Targeted poll for one contact."""
    require_task_auth(request)

    try:
        summary = ingestion.poll_contact(
            _get_evolution_client(),
            load_ingestion_settings(),
            str(body.contact_id),
            limit=body.limit,
        )
    except ContactNotFoundError as e:
        raise HTTPException(status_code=404, detail="contact not found") from e
    except GatewayError as e:
        raise _gateway_failed("poll_contact", e) from e
    return {"ok": True, **summary.to_dict()}


@router.post("/fetch-history")
def fetch_history(request: Request, body: FetchHistoryRequest) -> dict:
    """Ad-hoc history fetch by contact id or phone."""
    require_task_auth(request)

    try:
        summary = ingestion.fetch_history(
            _get_evolution_client(),
            load_ingestion_settings(),
            contact_id=str(body.contact_id) if body.contact_id else None,
            phone=body.phone,
            limit=body.limit,
        )
    except ingestion.InvalidIdentityError as e:
        raise HTTPException(status_code=400, detail=f"invalid phone: {e}") from e
    except ContactNotFoundError as e:
        raise HTTPException(status_code=404, detail="contact not found") from e
    except GatewayError as e:
        raise _gateway_failed("fetch_history", e) from e
    return {"ok": True, **summary.to_dict()}


@router.post("/sync")
def sync(request: Request, body: SyncRequest | None = None) -> dict:
    """Full sync in bounded batches, tracked in sync_runs."""
    require_task_auth(request)
    body = body or SyncRequest()

    try:
        summary = ingestion.full_sync(
            _get_evolution_client(),
            load_ingestion_settings(),
            body.mode,
            batch_size=body.batch_size,
            contact_limit=body.contact_limit,
            time_budget_seconds=body.time_budget_seconds,
        )
    except GatewayError as e:
        raise _gateway_failed("sync", e) from e
    return {"ok": True, "mode": body.mode, **summary.to_dict()}
