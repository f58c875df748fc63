"""Worker routes (APP_ROLE=worker) outside the task prefixes."""

import psycopg2
from fastapi import APIRouter, Response

from kiteintel.infra.db import txn
from kiteintel.observability.logging import get_logger

router = APIRouter(tags=["health"])

logger = get_logger(__name__)


@router.get("/tasks/health")
def tasks_health() -> dict:
    """Tasks subsystem health check."""
    return {"status": "ok", "subsystem": "tasks"}


@router.get("/tasks/ready")
def tasks_ready(response: Response) -> dict:
    """Readiness: the worker can reach its database."""
    try:
        with txn() as cur:
            cur.execute("SELECT 1")
    except (psycopg2.Error, RuntimeError):
        logger.exception("readiness check failed")
        response.status_code = 503
        return {"status": "unavailable", "subsystem": "database"}
    return {"status": "ok", "subsystem": "database"}
