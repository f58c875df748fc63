"""Evolution API gateway client (read side).

Consumed operations: recent chats, messages per address, contact profile and
profile picture. Responses are returned already normalized by
evolution_adapter.

Security: NEVER log remote_jid. Only log hashes and counts.
"""

from __future__ import annotations

import hashlib
import http.client
import json
import time
import urllib.error
import urllib.request
from typing import Any

from kiteintel.infra.settings import EvolutionSettings
from kiteintel.observability.logging import get_logger
from kiteintel.observability.redaction import safe_log_context

from .evolution_adapter import (
    parse_chat_list,
    parse_message_list,
    parse_picture_url,
    parse_profile,
)
from .models import ChatSummary, ContactProfile, MessagePage

logger = get_logger(__name__)

# Backoff base for network errors / 5xx (seconds): 1, 2, 4, ...
BACKOFF_BASE = 1.0

# Default wait when a 429 carries no usable Retry-After
DEFAULT_RETRY_AFTER = 5.0
MAX_RETRY_AFTER = 30.0

_UNDECODABLE = (json.JSONDecodeError, UnicodeDecodeError)


class GatewayError(Exception):
    """Gateway call failed (non-2xx after retries, timeout or network error)."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def _hash_identifier(value: str) -> str:
    """Create non-reversible hash for logging. Returns first 12 chars of sha256."""
    return hashlib.sha256(value.encode()).hexdigest()[:12]


def _do_request(url: str, data: bytes, headers: dict[str, str], timeout: float) -> Any:
    """Execute HTTP POST request and decode JSON. Raises on error."""
    req = urllib.request.Request(url, data=data, headers=headers, method="POST")
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        body = resp.read().decode()
    return json.loads(body) if body.strip() else None


def _retry_after_seconds(error: urllib.error.HTTPError) -> float:
    raw = error.headers.get("Retry-After") if error.headers else None
    try:
        value = float(raw) if raw else DEFAULT_RETRY_AFTER
    except ValueError:
        value = DEFAULT_RETRY_AFTER
    return max(0.0, min(value, MAX_RETRY_AFTER))


def _same_chat(item: dict[str, Any], remote_jid: str) -> bool:
    key = item.get("key")
    if not isinstance(key, dict) or not key.get("remoteJid"):
        return True
    item_user = str(key["remoteJid"]).split("@", 1)[0].split(":", 1)[0]
    return item_user == remote_jid.split("@", 1)[0]


class EvolutionClient:
    """Thin client over the Evolution chat endpoints.

    Every call is a blocking I/O boundary; callers must not hold row locks
    across it.
    """

    def __init__(self, settings: EvolutionSettings) -> None:
        self._settings = settings

    @property
    def instance(self) -> str:
        return self._settings.instance

    def _post(self, operation: str, body: dict[str, Any]) -> Any:
        """POST to /chat/{operation}/{instance} with retry.

        Retries 429 (honouring Retry-After), 5xx and network errors up to
        max_retries times; other HTTP errors fail immediately.

        Raises:
            GatewayError: When the call ultimately fails.
        """
        url = f"{self._settings.base_url}/chat/{operation}/{self._settings.instance}"
        headers = {
            "Content-Type": "application/json",
            "apikey": self._settings.api_key,
        }
        data = json.dumps(body).encode("utf-8")
        max_retries = self._settings.max_retries

        for attempt in range(max_retries + 1):
            try:
                return _do_request(url, data, headers, self._settings.timeout_seconds)
            except urllib.error.HTTPError as e:
                retryable = e.code == 429 or 500 <= e.code < 600
                if not retryable or attempt >= max_retries:
                    logger.error(
                        "gateway call failed",
                        extra={
                            "extra_fields": safe_log_context(
                                operation=operation, status=e.code, attempt=attempt
                            )
                        },
                    )
                    raise GatewayError(f"{operation} failed: HTTP {e.code}", status=e.code) from e

                delay = _retry_after_seconds(e) if e.code == 429 else BACKOFF_BASE * (2**attempt)
                logger.warning(
                    "gateway call throttled or failed, retrying",
                    extra={
                        "extra_fields": safe_log_context(
                            operation=operation, status=e.code, attempt=attempt, delay=delay
                        )
                    },
                )
                time.sleep(delay)
            except (OSError, http.client.HTTPException, *_UNDECODABLE) as e:
                # Connection drops and truncated reads are retried, undecodable bodies are not
                if attempt >= max_retries or isinstance(e, _UNDECODABLE):
                    logger.error(
                        "gateway call failed",
                        extra={
                            "extra_fields": safe_log_context(
                                operation=operation,
                                attempt=attempt,
                                error_type=type(e).__name__,
                            )
                        },
                    )
                    raise GatewayError(f"{operation} failed: {type(e).__name__}") from e

                delay = BACKOFF_BASE * (2**attempt)
                logger.warning(
                    "gateway network error, retrying",
                    extra={
                        "extra_fields": safe_log_context(
                            operation=operation,
                            attempt=attempt,
                            error_type=type(e).__name__,
                            delay=delay,
                        )
                    },
                )
                time.sleep(delay)

        # Loop always returns or raises
        raise GatewayError(f"{operation} failed")

    def find_chats(self, limit: int | None = None) -> list[ChatSummary]:
        """Fetch recently active chats, most recent first (all when limit is None)."""
        chats = parse_chat_list(self._post("findChats", {}))
        # Most recently active first; chats without a timestamp go last
        chats.sort(key=lambda c: c.last_message_epoch or 0, reverse=True)
        logger.info(
            "chats fetched",
            extra={"extra_fields": safe_log_context(total=len(chats), limit=limit)},
        )
        return chats[:limit] if limit is not None else chats

    def find_messages(
        self,
        remote_jid: str,
        *,
        limit: int | None = None,
        page: int | None = None,
        page_size: int | None = None,
    ) -> MessagePage:
        """Fetch messages for one address.

        Either a flat `limit` (recent messages) or `page`/`page_size`
        (paginated backfill) is sent, matching the two findMessages forms.
        """
        body: dict[str, Any] = {"where": {"key": {"remoteJid": remote_jid}}}
        if page is not None:
            body["page"] = page
            body["offset"] = page_size or 500
        if limit is not None:
            body["limit"] = limit

        result = parse_message_list(self._post("findMessages", body))

        # Some gateway versions ignore the where-filter on paginated queries
        items = [m for m in result.items if _same_chat(m, remote_jid)]
        if limit is not None:
            items = items[:limit]

        logger.info(
            "messages fetched",
            extra={
                "extra_fields": safe_log_context(
                    jid_hash=_hash_identifier(remote_jid),
                    count=len(items),
                    page=result.current_page,
                    pages=result.pages,
                )
            },
        )
        return MessagePage(
            items=items,
            pages=result.pages,
            current_page=result.current_page,
            total=result.total,
        )

    def fetch_profile(self, remote_jid: str) -> ContactProfile:
        """Fetch display name and business flag for one address."""
        return parse_profile(self._post("fetchProfile", {"number": remote_jid}))

    def fetch_profile_picture_url(self, remote_jid: str) -> str | None:
        """Fetch the avatar URL for one address, None when hidden."""
        return parse_picture_url(self._post("fetchProfilePictureUrl", {"number": remote_jid}))
