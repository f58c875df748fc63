"""Chat-completion client for an OpenAI-compatible endpoint.

One call per analysis, no retries here: retry policy belongs to the analysis
queue, which needs HTTP 429 surfaced distinctly (LLMRateLimitError).

Security: NEVER log prompts or completions, they carry conversation text.
"""

from __future__ import annotations

import http.client
import json
import urllib.error
import urllib.request
from typing import Any

from kiteintel.infra.settings import LLMSettings
from kiteintel.observability.logging import get_logger
from kiteintel.observability.redaction import safe_log_context

logger = get_logger(__name__)


class LLMError(Exception):
    """LLM call failed (non-2xx, timeout, network error or empty content)."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class LLMRateLimitError(LLMError):
    """Provider answered HTTP 429. The work item should be retried later."""

    pass


def _do_request(url: str, data: bytes, headers: dict[str, str], timeout: float) -> Any:
    """Execute HTTP POST request and decode JSON. Raises on error."""
    req = urllib.request.Request(url, data=data, headers=headers, method="POST")
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read().decode())


def _extract_content(response: Any) -> str | None:
    if not isinstance(response, dict):
        return None
    choices = response.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str) and content.strip():
        return content
    return None


class ChatCompletionClient:
    """Blocking client for POST {base_url}/chat/completions."""

    def __init__(self, settings: LLMSettings) -> None:
        self._settings = settings

    @property
    def model(self) -> str:
        return self._settings.model

    def complete(self, system: str, user: str) -> str:
        """Send a system + user prompt and return the completion text.

        Raises:
            LLMRateLimitError: On HTTP 429.
            LLMError: On any other failure or an empty completion.
        """
        url = f"{self._settings.base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self._settings.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self._settings.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        data = json.dumps(payload).encode("utf-8")

        try:
            response = _do_request(url, data, headers, self._settings.timeout_seconds)
        except urllib.error.HTTPError as e:
            logger.warning(
                "llm call failed",
                extra={
                    "extra_fields": safe_log_context(model=self._settings.model, status=e.code)
                },
            )
            if e.code == 429:
                raise LLMRateLimitError("LLM rate limit", status=429) from e
            raise LLMError(f"LLM error: HTTP {e.code}", status=e.code) from e
        except (
            OSError, http.client.HTTPException, json.JSONDecodeError, UnicodeDecodeError
        ) as e:
            logger.warning(
                "llm call failed",
                extra={
                    "extra_fields": safe_log_context(
                        model=self._settings.model, error_type=type(e).__name__
                    )
                },
            )
            raise LLMError(f"LLM error: {type(e).__name__}") from e

        content = _extract_content(response)
        if content is None:
            raise LLMError("LLM returned empty content")
        return content
