"""Authentication for worker task routes.

Scheduled ticks and follow-up tasks call the worker with a Google-signed
OIDC token. Local dev may use a shared secret instead.
"""

from __future__ import annotations

import base64
import hmac
import json
import os

from fastapi import HTTPException, Request
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from kiteintel.observability.correlation import get_correlation_id
from kiteintel.observability.logging import get_logger
from kiteintel.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Local dev audience - enables X-Internal-Task-Secret fallback
_LOCAL_DEV_AUDIENCE = "kiteintel-tasks-local"


def _unverified_audience(token: str) -> str | None:
    """Read the aud claim without verification, for diagnostics only."""
    try:
        segment = token.split(".")[1]
        segment += "=" * (-len(segment) % 4)
        payload = json.loads(base64.urlsafe_b64decode(segment))
    except (IndexError, ValueError):
        return None
    aud = payload.get("aud") if isinstance(payload, dict) else None
    return str(aud) if aud is not None else None


def extract_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[7:]


def verify_task_oidc(token: str) -> bool:
    """Verify a Google-signed OIDC token against TASKS_OIDC_AUDIENCE.

    Optionally pins the caller via TASKS_OIDC_SERVICE_ACCOUNT. Fails closed
    when no audience is configured.
    """
    if not token:
        return False

    audience = os.environ.get("TASKS_OIDC_AUDIENCE")
    if not audience:
        logger.error(
            "TASKS_OIDC_AUDIENCE not configured - fail closed",
            extra={"extra_fields": safe_log_context(reason="missing_audience_env")},
        )
        return False

    try:
        claims = id_token.verify_oauth2_token(token, google_requests.Request(), audience=audience)
    except ValueError as e:
        logger.warning(
            "OIDC token verification failed",
            extra={
                "extra_fields": safe_log_context(
                    error=str(e),
                    expected_audience=audience,
                    received_audience=_unverified_audience(token),
                )
            },
        )
        return False

    expected_email = os.environ.get("TASKS_OIDC_SERVICE_ACCOUNT")
    if expected_email and claims.get("email", "") != expected_email:
        logger.warning(
            "OIDC service account mismatch",
            extra={"extra_fields": safe_log_context(reason="service_account_mismatch")},
        )
        return False

    return True


def verify_task_auth(request: Request) -> bool:
    """Verify task authentication via OIDC or internal secret (local dev only).

    In local dev (TASKS_OIDC_AUDIENCE == "kiteintel-tasks-local") the
    X-Internal-Task-Secret header is accepted as an alternative to OIDC.
    """
    if os.environ.get("TASKS_OIDC_AUDIENCE", "") == _LOCAL_DEV_AUDIENCE:
        internal_secret = os.environ.get("INTERNAL_TASK_SECRET", "")
        request_secret = request.headers.get("X-Internal-Task-Secret", "")
        if internal_secret and hmac.compare_digest(request_secret, internal_secret):
            return True

    token = extract_bearer_token(request)
    if not token:
        logger.warning(
            "task auth failed: missing Bearer token",
            extra={"extra_fields": safe_log_context(reason="missing_bearer_token")},
        )
        return False
    return verify_task_oidc(token)


def require_task_auth(request: Request) -> None:
    """Raise 401 unless verify_task_auth passes."""
    if not verify_task_auth(request):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(correlationId=get_correlation_id())},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")
