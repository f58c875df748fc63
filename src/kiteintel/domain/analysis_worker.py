"""Analysis worker - turn queued contacts into commercial insight.

For each claimed queue item:
  1. Load the contact and its most recent messages (own short txn).
  2. Render a bounded transcript and call the LLM (no txn open).
  3. Parse the first balanced JSON object from the reply.
  4. Upsert the insight record, update contact scoring and mark the item
     concluido (one txn).

Failures go through analysis_queue.fail; a contact without messages is a
permanent failure ("no conversation") and never reaches the LLM.

Security: transcripts and completions carry PII and are never logged.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Literal

import psycopg2
from psycopg2.extensions import cursor as PgCursor
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from kiteintel.domain import analysis_queue, scoring
from kiteintel.infra.db import txn
from kiteintel.infra.repositories import (
    contacts_repository,
    insights_repository,
    messages_repository,
)
from kiteintel.infra.settings import AnalysisSettings
from kiteintel.llm.client import ChatCompletionClient, LLMError, LLMRateLimitError
from kiteintel.observability.correlation import correlation_scope
from kiteintel.observability.logging import get_logger
from kiteintel.observability.redaction import id_prefix, safe_log_context

logger = get_logger(__name__)

SYSTEM_PROMPT = """Você é um analista de CRM de uma escola de kitesurf. Analise a conversa \
entre a escola (empresa) e o cliente e extraia insights comerciais.

RESPONDA APENAS EM JSON VÁLIDO, sem texto antes ou depois:
{
  "sentimento": "positivo" | "neutro" | "negativo",
  "probabilidade_conversao": 0-100,
  "score_engajamento": 0-100,
  "interesses": ["aulas, pacotes ou equipamentos citados"],
  "objecoes": ["preço, agenda, medo, clima..."],
  "gatilhos_compra": ["o que motiva o cliente a fechar"],
  "proxima_acao": "próxima ação comercial sugerida, em uma frase",
  "horario_preferido": "manhã" | "tarde" | "noite" | null,
  "dia_preferido": "dia da semana ou período citado" | null,
  "resumo": "1 frase resumindo o interesse do cliente"
}"""

Sentiment = Literal["positivo", "neutro", "negativo"]


class AnalysisParseError(Exception):
    """LLM reply has no usable JSON object."""

    pass


class AnalysisResult(BaseModel):
    """Validated LLM analysis. Scores are clamped to 0-100."""

    model_config = ConfigDict(extra="ignore")

    sentimento: Sentiment = "neutro"
    probabilidade_conversao: int = 0
    score_engajamento: int = 0
    interesses: list[str] = []
    objecoes: list[str] = []
    gatilhos_compra: list[str] = []
    proxima_acao: str | None = None
    horario_preferido: str | None = None
    dia_preferido: str | None = None
    resumo: str | None = None

    @field_validator("sentimento", mode="before")
    @classmethod
    def _normalize_sentiment(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip().lower() in ("positivo", "neutro", "negativo"):
            return value.strip().lower()
        return "neutro"

    @field_validator("probabilidade_conversao", "score_engajamento", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> int:
        return scoring.clamp_score(value)

    @field_validator("interesses", "objecoes", "gatilhos_compra", mode="before")
    @classmethod
    def _as_list(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value] if value.strip() else []
        if isinstance(value, list):
            return [str(v).strip() for v in value if v is not None and str(v).strip()]
        return []

    @field_validator("proxima_acao", "horario_preferido", "dia_preferido", "resumo", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


@dataclass
class WorkerSummary:
    claimed: int = 0
    processed: int = 0
    retried: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


# ── Parsing ──────────────────────────────────────────────────────────────────


def _balanced_object_end(text: str, start: int) -> int | None:
    """Index just past the object starting at text[start] == "{", or None."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def extract_json_object(text: str) -> dict:
    """Return the first balanced JSON object embedded in text.

    Surrounding prose and markdown fences are tolerated.

    Raises:
        AnalysisParseError: If no balanced object decodes to a dict.
    """
    start = text.find("{")
    while start != -1:
        end = _balanced_object_end(text, start)
        if end is None:
            break
        try:
            value = json.loads(text[start:end])
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    raise AnalysisParseError("no JSON object in LLM reply")


def parse_analysis(text: str) -> AnalysisResult:
    """Extract and validate the analysis JSON.

    Raises:
        AnalysisParseError: If no object is found or it fails validation.
    """
    data = extract_json_object(text)
    try:
        return AnalysisResult.model_validate(data)
    except ValidationError as e:
        raise AnalysisParseError(f"invalid analysis JSON ({e.error_count()} errors)") from e


# ── Transcript ───────────────────────────────────────────────────────────────


def _speaker(direction: str) -> str:
    return "empresa" if direction == "from_me" else "cliente"


def render_transcript(messages: list[dict], char_limit: int) -> str:
    """Render chronological messages as "[ISO] cliente|empresa: text" lines.

    When over char_limit, the oldest lines are dropped so the most recent
    conversation is kept.
    """
    lines = [
        f"[{m['sent_at'].isoformat()}] {_speaker(m['direction'])}: {m['content']}"
        for m in messages
    ]

    kept: list[str] = []
    size = 0
    for line in reversed(lines):
        added = len(line) + (1 if kept else 0)
        if size + added > char_limit:
            if not kept:
                # A single oversized line keeps its tail
                kept.append(line[-char_limit:])
            break
        kept.append(line)
        size += added

    kept.reverse()
    return "\n".join(kept)


def build_user_prompt(contact: dict, transcript: str) -> str:
    name = contact.get("display_name") or contact.get("profile_name") or "Desconhecido"
    return (
        f"Contato: {name}\n"
        f"Status: {contact.get('status') or 'não classificado'}\n"
        f"\n"
        f"ÚLTIMAS MENSAGENS:\n"
        f"{transcript}\n"
        f"\n"
        f"Retorne APENAS o JSON."
    )


def average_response_minutes(messages: list[dict]) -> float | None:
    """Mean minutes between a client message and the next business reply."""
    waiting_since: datetime | None = None
    gaps: list[float] = []
    for m in messages:
        if m["direction"] == "from_contact":
            if waiting_since is None:
                waiting_since = m["sent_at"]
        elif waiting_since is not None:
            gaps.append((m["sent_at"] - waiting_since).total_seconds() / 60)
            waiting_since = None
    if not gaps:
        return None
    return round(sum(gaps) / len(gaps), 1)


# ── Worker ───────────────────────────────────────────────────────────────────


def _apply_result(
    cur: PgCursor, contact: dict, result: AnalysisResult, messages: list[dict]
) -> scoring.Priority:
    stats = messages_repository.stats_for_contact(cur, contact["id"])
    priority = scoring.priority_bucket(result.probabilidade_conversao)

    insights_repository.upsert_insight(
        cur,
        contact_id=contact["id"],
        sentiment=result.sentimento,
        engagement_score=result.score_engajamento,
        conversion_probability=result.probabilidade_conversao,
        interests=result.interesses,
        objections=result.objecoes,
        purchase_triggers=result.gatilhos_compra,
        next_action=result.proxima_acao,
        preferred_time=result.horario_preferido,
        preferred_day=result.dia_preferido,
        summary=result.resumo,
        total_messages=stats["total"],
        sent_messages=stats["sent"],
        received_messages=stats["received"],
        first_interaction_at=stats["first_at"],
        last_interaction_at=stats["last_at"],
        avg_response_minutes=average_response_minutes(messages),
    )
    contacts_repository.update_scoring(
        cur,
        contact["id"],
        interest_score=result.probabilidade_conversao,
        engagement_score=result.score_engajamento,
        sentiment=result.sentimento,
        priority=priority,
        ai_summary=result.resumo,
        status=scoring.next_status(contact.get("status"), priority),
    )
    return priority


def _process_item(
    llm: ChatCompletionClient, settings: AnalysisSettings, item: dict
) -> str:
    """Process one claimed item. Returns the item's resulting status."""
    contact_id = item["contact_id"]

    with txn() as cur:
        contact = contacts_repository.find_by_id(cur, contact_id)
        recent = (
            messages_repository.recent_for_contact(cur, contact_id, settings.transcript_messages)
            if contact is not None
            else []
        )

    if not recent:
        with txn() as cur:
            return analysis_queue.fail(
                cur, item, analysis_queue.NO_CONVERSATION_ERROR, permanent=True
            )

    messages = list(reversed(recent))
    transcript = render_transcript(messages, settings.transcript_char_limit)

    try:
        result = parse_analysis(llm.complete(SYSTEM_PROMPT, build_user_prompt(contact, transcript)))
    except LLMRateLimitError:
        with txn() as cur:
            return analysis_queue.fail(cur, item, "rate limit", retryable=True)
    except (LLMError, AnalysisParseError) as e:
        with txn() as cur:
            return analysis_queue.fail(cur, item, str(e), max_attempts=settings.max_attempts)

    try:
        with txn() as cur:
            priority = _apply_result(cur, contact, result, messages)
            analysis_queue.complete(cur, item)
    except psycopg2.Error:
        logger.exception(
            "analysis store failure",
            extra={"extra_fields": safe_log_context(item_id=item["id"])},
        )
        with txn() as cur:
            return analysis_queue.fail(
                cur, item, "store failure", max_attempts=settings.max_attempts
            )

    logger.info(
        "contact analysed",
        extra={
            "extra_fields": safe_log_context(
                contact_id=id_prefix(contact_id),
                conversion_probability=result.probabilidade_conversao,
                priority=priority,
                messages=len(messages),
            )
        },
    )
    return "concluido"


def _fail_unexpected(settings: AnalysisSettings, item: dict, error: Exception) -> str:
    """Record an unexpected per-item failure as a budgeted attempt."""
    logger.exception(
        "analysis item failed",
        extra={
            "extra_fields": safe_log_context(
                item_id=item["id"], error_type=type(error).__name__
            )
        },
    )
    try:
        with txn() as cur:
            return analysis_queue.fail(
                cur,
                item,
                f"unexpected error: {type(error).__name__}",
                max_attempts=settings.max_attempts,
            )
    except psycopg2.Error:
        # Item stays processando until its claim lease expires
        logger.exception(
            "analysis failure not recorded",
            extra={"extra_fields": safe_log_context(item_id=item["id"])},
        )
        return "processando"


def process_batch(
    llm: ChatCompletionClient,
    settings: AnalysisSettings,
    batch_size: int | None = None,
) -> WorkerSummary:
    """Claim and analyse one bounded batch of queue items.

    Args:
        llm: Chat-completion client.
        settings: Worker bounds (transcript size, delay, retry budget).
        batch_size: Items to claim; defaults to settings.batch_size.

    Returns:
        WorkerSummary with claimed/processed/retried/failed counts.
    """
    batch_size = batch_size or settings.batch_size
    summary = WorkerSummary()

    with correlation_scope("analysis"):
        with txn() as cur:
            items = analysis_queue.claim_batch(
                cur,
                batch_size,
                lease_seconds=settings.lease_seconds,
                max_attempts=settings.max_attempts,
            )
        summary.claimed = len(items)

        for index, item in enumerate(items):
            if index and settings.delay_seconds > 0:
                time.sleep(settings.delay_seconds)

            try:
                outcome = _process_item(llm, settings, item)
            except Exception as e:
                outcome = _fail_unexpected(settings, item, e)
            if outcome == "concluido":
                summary.processed += 1
            elif outcome == "pendente":
                summary.retried += 1
            else:
                summary.failed += 1

        logger.info(
            "analysis batch finished",
            extra={"extra_fields": safe_log_context(**summary.to_dict())},
        )
    return summary
