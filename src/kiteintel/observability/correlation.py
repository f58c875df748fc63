"""Correlation ID management for request and batch-run tracing."""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

# Shared by HTTP-triggered runs and scheduled ticks alike
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def generate_correlation_id(prefix: str | None = None) -> str:
    """Generate a new correlation ID, optionally tagged with a run prefix."""
    cid = str(uuid.uuid4())
    return f"{prefix}-{cid}" if prefix else cid


def get_correlation_id() -> str:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    """Set correlation ID in context."""
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    """Reset correlation ID to previous value."""
    correlation_id_var.reset(token)


@contextmanager
def correlation_scope(prefix: str) -> Iterator[str]:
    """Bind a correlation ID for the duration of a batch run.

    Reuses the caller's ID when one is already bound (e.g. inside an HTTP
    request), otherwise generates a fresh one.
    """
    existing = get_correlation_id()
    if existing:
        yield existing
        return

    token = set_correlation_id(generate_correlation_id(prefix))
    try:
        yield get_correlation_id()
    finally:
        reset_correlation_id(token)
