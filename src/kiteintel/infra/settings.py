"""Runtime configuration for the ingestion and analysis pipeline.

Every orchestrator and worker call receives its settings explicitly; nothing
here is cached at module level. Values come from environment variables with
conservative defaults for the bounded-batch knobs.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from e


@dataclass(frozen=True)
class EvolutionSettings:
    """Connection settings for the Evolution API gateway."""

    base_url: str
    instance: str
    api_key: str
    timeout_seconds: float = 15.0
    max_retries: int = 3


@dataclass(frozen=True)
class LLMSettings:
    """Chat-completion provider settings (OpenAI-compatible endpoint)."""

    base_url: str
    api_key: str
    model: str = "google/gemini-2.5-flash-lite"
    timeout_seconds: float = 60.0


@dataclass(frozen=True)
class IngestionSettings:
    """Bounds for ingestion runs.

    Attributes:
        chat_limit: Chats fetched per general poll.
        message_limit: Messages fetched per chat on poll/history.
        sync_batch_size: Chats processed between pauses on full sync.
        sync_contact_limit: Contacts backfilled per "messages" sync.
        sync_page_size: Messages requested per page on backfill.
        sync_max_pages: Hard page cap per contact on backfill.
        batch_pause_seconds: Pause between sync batches (gateway rate limits).
        enqueue_priority: Queue rank used when new inbound messages arrive.
    """

    chat_limit: int = 20
    message_limit: int = 50
    sync_batch_size: int = 10
    sync_contact_limit: int = 500
    sync_page_size: int = 500
    sync_max_pages: int = 50
    batch_pause_seconds: float = 0.2
    enqueue_priority: int = 5


@dataclass(frozen=True)
class AnalysisSettings:
    """Bounds for the analysis queue worker."""

    batch_size: int = 5
    transcript_messages: int = 30
    transcript_char_limit: int = 8000
    delay_seconds: float = 0.5
    max_attempts: int = 3
    lease_seconds: int = 600


def load_evolution_settings() -> EvolutionSettings:
    """Load gateway settings from the environment.

    Required env vars:
    - EVOLUTION_BASE_URL: Base URL (e.g., http://localhost:8080)
    - EVOLUTION_INSTANCE: Instance name
    - EVOLUTION_API_KEY: API token

    Raises:
        RuntimeError: If any required variable is missing.
    """
    base_url = os.environ.get("EVOLUTION_BASE_URL", "")
    instance = os.environ.get("EVOLUTION_INSTANCE", "")
    api_key = os.environ.get("EVOLUTION_API_KEY", "")

    if not base_url or not instance or not api_key:
        raise RuntimeError(
            "Missing Evolution config: EVOLUTION_BASE_URL, EVOLUTION_INSTANCE, EVOLUTION_API_KEY"
        )

    return EvolutionSettings(
        base_url=base_url.rstrip("/"),
        instance=instance,
        api_key=api_key,
        timeout_seconds=_env_float("EVOLUTION_TIMEOUT_SECONDS", 15.0),
        max_retries=_env_int("EVOLUTION_MAX_RETRIES", 3),
    )


def load_llm_settings() -> LLMSettings:
    """Load LLM provider settings from the environment.

    Required env vars:
    - LLM_API_KEY: Bearer token for the provider

    Optional:
    - LLM_BASE_URL: defaults to the AI gateway used in production
    - LLM_MODEL: model identifier

    Raises:
        RuntimeError: If LLM_API_KEY is missing.
    """
    api_key = os.environ.get("LLM_API_KEY", "")
    if not api_key:
        raise RuntimeError("Missing LLM config: LLM_API_KEY")

    return LLMSettings(
        base_url=os.environ.get("LLM_BASE_URL", "https://ai.gateway.lovable.dev/v1").rstrip("/"),
        api_key=api_key,
        model=os.environ.get("LLM_MODEL", LLMSettings.model),
        timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 60.0),
    )


def load_ingestion_settings() -> IngestionSettings:
    """Load ingestion bounds, falling back to defaults."""
    return IngestionSettings(
        chat_limit=_env_int("INGEST_CHAT_LIMIT", IngestionSettings.chat_limit),
        message_limit=_env_int("INGEST_MESSAGE_LIMIT", IngestionSettings.message_limit),
        sync_batch_size=_env_int("SYNC_BATCH_SIZE", IngestionSettings.sync_batch_size),
        sync_contact_limit=_env_int("SYNC_CONTACT_LIMIT", IngestionSettings.sync_contact_limit),
        sync_page_size=_env_int("SYNC_PAGE_SIZE", IngestionSettings.sync_page_size),
        sync_max_pages=_env_int("SYNC_MAX_PAGES", IngestionSettings.sync_max_pages),
        batch_pause_seconds=_env_float(
            "SYNC_BATCH_PAUSE_SECONDS", IngestionSettings.batch_pause_seconds
        ),
        enqueue_priority=_env_int("ANALYSIS_DEFAULT_PRIORITY", IngestionSettings.enqueue_priority),
    )


def load_analysis_settings() -> AnalysisSettings:
    """Load analysis worker bounds, falling back to defaults."""
    return AnalysisSettings(
        batch_size=_env_int("ANALYSIS_BATCH_SIZE", AnalysisSettings.batch_size),
        transcript_messages=_env_int(
            "ANALYSIS_TRANSCRIPT_MESSAGES", AnalysisSettings.transcript_messages
        ),
        transcript_char_limit=_env_int(
            "ANALYSIS_TRANSCRIPT_CHARS", AnalysisSettings.transcript_char_limit
        ),
        delay_seconds=_env_float("ANALYSIS_DELAY_SECONDS", AnalysisSettings.delay_seconds),
        max_attempts=_env_int("ANALYSIS_MAX_ATTEMPTS", AnalysisSettings.max_attempts),
        lease_seconds=_env_int("ANALYSIS_LEASE_SECONDS", AnalysisSettings.lease_seconds),
    )
