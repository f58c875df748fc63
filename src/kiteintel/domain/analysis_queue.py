"""Analysis queue - state machine for per-contact AI analysis work.

States:
    pendente ──claim──▶ processando ──complete──▶ concluido
        ▲                    │
        └──── retry ─────────┤
                             └──── fail (budget exhausted / permanent) ──▶ erro

- At most one pendente/processando item per contact (partial unique index).
- attempts is incremented at claim time. Returning an item to pendente keeps
  the claimed attempt, so every retry consumes budget.
- An item in erro is never claimed again unless requeued by an operator.
- A claim is a lease. An item left in processando past the lease (its worker
  died) is claimed again, or moved to erro when its budget is used up.
"""

from __future__ import annotations

from typing import Literal

from psycopg2.extensions import cursor as PgCursor

from kiteintel.infra.repositories import queue_repository
from kiteintel.observability.logging import get_logger
from kiteintel.observability.redaction import id_prefix, safe_log_context

logger = get_logger(__name__)

DEFAULT_PRIORITY_RANK = 5
MAX_ATTEMPTS = 3
DEFAULT_LEASE_SECONDS = 600

# Stored as last_error on items that can never succeed
NO_CONVERSATION_ERROR = "no conversation"

MAX_ERROR_LENGTH = 500

FailOutcome = Literal["pendente", "erro"]


class QueueItemNotFoundError(Exception):
    """Raised when a queue item id does not exist."""

    pass


def enqueue(cur: PgCursor, contact_id: str, priority_rank: int = DEFAULT_PRIORITY_RANK) -> bool:
    """Request analysis for a contact.

    Returns:
        True if a new item was created, False if one was already in flight.
    """
    item_id = queue_repository.insert_pending(cur, contact_id, priority_rank)
    logger.info(
        "analysis enqueue",
        extra={
            "extra_fields": safe_log_context(
                contact_id=id_prefix(contact_id),
                priority_rank=priority_rank,
                created=item_id is not None,
            )
        },
    )
    return item_id is not None


def claim_batch(
    cur: PgCursor,
    batch_size: int,
    *,
    lease_seconds: float = DEFAULT_LEASE_SECONDS,
    max_attempts: int = MAX_ATTEMPTS,
) -> list[dict]:
    """Claim up to batch_size items in (priority_rank, created_at) order.

    Lease-expired items with budget left are claimed again; those without
    are moved to erro first.
    """
    if batch_size <= 0:
        return []
    expired = queue_repository.expire_leases(cur, lease_seconds, max_attempts)
    if expired:
        logger.warning(
            "analysis leases expired",
            extra={"extra_fields": safe_log_context(expired=expired)},
        )
    return queue_repository.claim(cur, batch_size, lease_seconds)


def complete(cur: PgCursor, item: dict) -> None:
    queue_repository.mark_done(cur, item["id"])


def fail(
    cur: PgCursor,
    item: dict,
    error: str,
    *,
    permanent: bool = False,
    retryable: bool = False,
    max_attempts: int = MAX_ATTEMPTS,
) -> FailOutcome:
    """Record a failed attempt for a claimed item.

    Args:
        cur: Database cursor (within transaction).
        item: Claimed item (attempts already includes this claim).
        error: Error description stored as last_error (no PII).
        permanent: The item can never succeed (e.g. no conversation).
        retryable: Transient condition (rate limit); the item always goes
            back to 'pendente' whatever its attempts.
        max_attempts: Retry budget.

    Returns:
        The resulting status: 'pendente' when it will be retried, 'erro'
        when it is terminal.
    """
    error = error[:MAX_ERROR_LENGTH]
    if permanent or (not retryable and item["attempts"] >= max_attempts):
        queue_repository.mark_error(cur, item["id"], error)
        outcome: FailOutcome = "erro"
    else:
        queue_repository.mark_pending(cur, item["id"], error)
        outcome = "pendente"

    logger.warning(
        "analysis attempt failed",
        extra={
            "extra_fields": safe_log_context(
                item_id=item["id"],
                contact_id=id_prefix(item["contact_id"]),
                attempts=item["attempts"],
                permanent=permanent,
                retryable=retryable,
                outcome=outcome,
            )
        },
    )
    return outcome


def requeue_failed(cur: PgCursor, item_id: int) -> bool:
    """Give an 'erro' item a fresh retry budget.

    Returns:
        True if requeued, False if the item is not in 'erro' or the contact
        already has another item in flight.

    Raises:
        QueueItemNotFoundError: If the item does not exist.
    """
    if queue_repository.get_item(cur, item_id) is None:
        raise QueueItemNotFoundError(str(item_id))
    requeued = queue_repository.reset_failed(cur, item_id)
    logger.info(
        "analysis requeue",
        extra={"extra_fields": safe_log_context(item_id=item_id, requeued=requeued)},
    )
    return requeued


def list_failed(cur: PgCursor, limit: int = 50) -> list[dict]:
    """Items in 'erro', most recent first."""
    return queue_repository.list_by_status(cur, "erro", limit)
