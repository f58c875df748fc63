"""HTTP backend for tasks - sends tasks to the worker via HTTP POST.

Used where the public api and the worker run as separate services.
"""

import os
from datetime import datetime

import requests
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.id_token import fetch_id_token

from kiteintel.observability.logging import get_logger
from kiteintel.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Must match task_auth._LOCAL_DEV_AUDIENCE
_LOCAL_DEV_AUDIENCE = "kiteintel-tasks-local"


def _worker_base_url() -> str:
    return os.environ.get("WORKER_BASE_URL", "http://worker:8000").rstrip("/")


def _fetch_oidc_token(audience: str) -> str | None:
    """Fetch a GCP ID token for the given audience.

    Relies on the metadata server or application default credentials.

    Returns:
        Signed ID token string, or None if fetching fails.
    """
    try:
        return fetch_id_token(GoogleRequest(), audience)
    except GoogleAuthError as e:
        logger.error(
            "failed to fetch OIDC ID token",
            extra={"extra_fields": safe_log_context(error_type=type(e).__name__)},
        )
        return None


def enqueue_http(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
) -> bool:
    """Enqueue task via HTTP POST to the worker.

    Returns:
        True if the request succeeded (2xx), False otherwise.
    """
    if schedule_time is not None:
        logger.warning(
            "HTTP backend does not support scheduled tasks, sending now",
            extra={"extra_fields": safe_log_context(task_id=task_id)},
        )

    base_url = _worker_base_url()
    url = f"{base_url}{url_path}"
    headers = {
        "Content-Type": "application/json",
        "X-Correlation-Id": correlation_id or "",
        "X-Task-Id": task_id,
    }

    # Shared secret for local dev, real OIDC token elsewhere
    if os.environ.get("TASKS_OIDC_AUDIENCE", "") == _LOCAL_DEV_AUDIENCE:
        secret = os.environ.get("INTERNAL_TASK_SECRET", "")
        if secret:
            headers["X-Internal-Task-Secret"] = secret
    else:
        token = _fetch_oidc_token(base_url)
        if not token:
            logger.error(
                "HTTP task enqueue aborted: OIDC token unavailable",
                extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
            )
            return False
        headers["Authorization"] = f"Bearer {token}"

    try:
        response = requests.post(
            url,
            json=payload,
            headers=headers,
            timeout=int(os.environ.get("TASKS_HTTP_TIMEOUT", "30")),
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(
            "HTTP task enqueue failed",
            extra={
                "extra_fields": safe_log_context(
                    task_id=task_id, url_path=url_path, error_type=type(e).__name__
                )
            },
        )
        return False

    logger.info(
        "HTTP task enqueued",
        extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
    )
    return True
