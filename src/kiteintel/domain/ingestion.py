"""Ingestion orchestrator - pull WhatsApp messages into the contact store.

Entry points (each independently invokable, each bounded):
- poll_contact:       recent messages for one stored contact
- poll_recent_chats:  recently active chats, then their recent messages
- fetch_history:      ad-hoc history by contact id or phone
- full_sync:          contacts import and/or paginated message backfill
- ingest_webhook_message: one pushed message from the gateway webhook

All of them funnel messages through ingest_messages, where
messages.message_id is the only idempotency key: an already-stored id only
ever gets its delivery status updated.

Per-item isolation: a gateway or store failure on one chat is logged and
counted as failed; the batch continues. Every chat's writes run in their own
transaction and no transaction is held open across a gateway call.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Literal

import psycopg2
from psycopg2.extensions import cursor as PgCursor

from kiteintel.domain import analysis_queue, contacts
from kiteintel.domain.sync_runs import SyncRunTracker
from kiteintel.infra.db import txn
from kiteintel.infra.repositories import contacts_repository, messages_repository
from kiteintel.infra.settings import IngestionSettings
from kiteintel.observability.correlation import correlation_scope
from kiteintel.observability.logging import get_logger
from kiteintel.observability.redaction import id_prefix, safe_log_context
from kiteintel.whatsapp.evolution_adapter import InvalidPayloadError, map_message
from kiteintel.whatsapp.evolution_client import EvolutionClient, GatewayError
from kiteintel.whatsapp.identity import (
    Address,
    Invalid,
    Phone,
    address_for_phone,
    normalize_address,
    normalize_phone,
    resolve_identity,
)
from kiteintel.whatsapp.models import ContactProfile, MappedMessage, ProfileHints, Skip

logger = get_logger(__name__)

SyncMode = Literal["contacts", "messages", "full"]

# Cap on error lines carried in a summary
MAX_SUMMARY_ERRORS = 20

# Failures isolated per chat/contact; anything else propagates
_ITEM_ERRORS = (GatewayError, InvalidPayloadError, psycopg2.Error)


class InvalidIdentityError(ValueError):
    """Raised when a caller-supplied phone or address is not usable."""

    pass


@dataclass
class RunSummary:
    """Counts reported by every ingestion entry point."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    contacts_created: int = 0
    contacts_updated: int = 0
    chats_processed: int = 0
    enqueued: int = 0
    errors: list[str] = field(default_factory=list)
    run_id: str | None = None

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_SUMMARY_ERRORS:
            self.errors.append(message)

    def merge(self, other: "RunSummary") -> None:
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed
        self.contacts_created += other.contacts_created
        self.contacts_updated += other.contacts_updated
        self.chats_processed += other.chats_processed
        self.enqueued += other.enqueued
        for error in other.errors:
            self.add_error(error)

    def count_contact(self, created: bool) -> None:
        if created:
            self.contacts_created += 1
        else:
            self.contacts_updated += 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class _Deadline:
    """Optional wall-clock budget for a batch operation."""

    def __init__(self, seconds: float | None) -> None:
        self._expires = time.monotonic() + seconds if seconds else None

    def exceeded(self) -> bool:
        return self._expires is not None and time.monotonic() >= self._expires


def _log_summary(operation: str, summary: RunSummary) -> None:
    counts = summary.to_dict()
    counts.pop("errors")
    logger.info(
        f"{operation} finished",
        extra={"extra_fields": safe_log_context(operation=operation, **counts)},
    )


def _record_item_failure(summary: RunSummary, operation: str, error: Exception) -> None:
    summary.failed += 1
    summary.add_error(f"{operation}: {type(error).__name__}")
    if isinstance(error, psycopg2.Error):
        logger.exception(
            "store failure, item skipped",
            extra={"extra_fields": safe_log_context(operation=operation)},
        )
    else:
        logger.warning(
            "gateway failure, item skipped",
            extra={
                "extra_fields": safe_log_context(
                    operation=operation,
                    error_type=type(error).__name__,
                    status=getattr(error, "status", None),
                )
            },
        )


# ── Core message path ────────────────────────────────────────────────────────


def _belongs_to(contact: dict, mapped: MappedMessage) -> bool:
    user = mapped.remote_jid.split("@", 1)[0].split(":", 1)[0]
    known = {contact["phone"]}
    if contact.get("remote_jid"):
        known.add(contact["remote_jid"].split("@", 1)[0])
    return user in known


def ingest_messages(
    cur: PgCursor,
    contact: dict,
    raw_items: Iterable[Any],
    instance: str | None = None,
    *,
    enqueue_priority: int = analysis_queue.DEFAULT_PRIORITY_RANK,
) -> RunSummary:
    """Store a batch of raw gateway messages for one contact.

    For every item: map it, skip it when unusable, update delivery status
    when the message id is already stored, insert it otherwise. Then, for the
    batch as a whole: advance recency to the newest message timestamp,
    refresh display name and message count, and enqueue analysis when at
    least one new inbound message was stored.

    Args:
        cur: Database cursor (within transaction).
        contact: Owning contact dict.
        raw_items: Raw gateway message payloads.
        instance: Gateway instance name stored with each message.
        enqueue_priority: Queue rank when analysis is requested.

    Returns:
        RunSummary with created/updated/skipped/enqueued counts.
    """
    summary = RunSummary()
    mapped_batch: list[MappedMessage] = []
    new_inbound = False

    for raw in raw_items:
        mapped = map_message(raw)
        if isinstance(mapped, Skip):
            summary.skipped += 1
            logger.debug(
                "message skipped",
                extra={"extra_fields": safe_log_context(reason=mapped.reason)},
            )
            continue
        if not _belongs_to(contact, mapped):
            summary.skipped += 1
            logger.debug(
                "message skipped",
                extra={"extra_fields": safe_log_context(reason="foreign_chat")},
            )
            continue

        mapped_batch.append(mapped)

        existing = messages_repository.find_by_message_id(cur, mapped.message_id)
        if existing is None:
            inserted = messages_repository.insert_if_absent(
                cur,
                message_id=mapped.message_id,
                contact_id=contact["id"],
                phone=contact["phone"],
                direction=mapped.direction,
                content=mapped.content,
                media_kind=mapped.media_kind,
                sent_at=mapped.sent_at,
                delivery_status=mapped.delivery_status,
                push_name=mapped.push_name,
                media_url=mapped.media_url,
                media_mimetype=mapped.media_mimetype,
                instance_name=instance,
            )
            if inserted:
                summary.created += 1
                new_inbound = new_inbound or mapped.is_inbound
                continue

        # Already stored (possibly by a concurrent run): only status may change
        if mapped.delivery_status and messages_repository.update_delivery_status(
            cur, mapped.message_id, mapped.delivery_status
        ):
            summary.updated += 1
        else:
            summary.skipped += 1

    if not mapped_batch:
        return summary

    contacts.apply_recency(cur, contact["id"], (m.sent_at for m in mapped_batch))

    ordered = sorted(mapped_batch, key=lambda m: m.sent_at)
    contacts.refresh_display_name(cur, contact, (m.push_name for m in ordered if m.is_inbound))

    if summary.created:
        contacts_repository.refresh_message_count(cur, contact["id"])

    if new_inbound and analysis_queue.enqueue(cur, contact["id"], enqueue_priority):
        summary.enqueued += 1

    return summary


def _address_for_contact(contact: dict) -> Address:
    """Stored address, or the default individual address for its phone."""
    if contact.get("remote_jid"):
        address = normalize_address(contact["remote_jid"])
        if not isinstance(address, Invalid):
            return address
    return address_for_phone(Phone(contact["phone"]))


def _ingest_chat(
    client: EvolutionClient,
    settings: IngestionSettings,
    address: Address,
    phone: Phone,
    hints: ProfileHints,
    message_limit: int,
) -> RunSummary:
    """Fetch one chat's recent messages, then resolve and store in one txn."""
    page = client.find_messages(address.jid, limit=message_limit)

    with txn() as cur:
        contact, created = contacts.resolve(cur, address, phone, hints)
        summary = ingest_messages(
            cur,
            contact,
            page.items,
            client.instance,
            enqueue_priority=settings.enqueue_priority,
        )
    summary.count_contact(created)
    summary.chats_processed = 1
    return summary


# ── Entry points ─────────────────────────────────────────────────────────────


def poll_contact(
    client: EvolutionClient,
    settings: IngestionSettings,
    contact_id: str,
    limit: int | None = None,
) -> RunSummary:
    """Targeted poll: fetch recent messages for one stored contact.

    Raises:
        ContactNotFoundError: If the contact does not exist.
        GatewayError: If the gateway call fails (single-target operation).
    """
    limit = limit or settings.message_limit

    with txn() as cur:
        contact = contacts.get_contact(cur, contact_id)
    address = _address_for_contact(contact)

    page = client.find_messages(address.jid, limit=limit)

    with txn() as cur:
        summary = ingest_messages(
            cur,
            contact,
            page.items,
            client.instance,
            enqueue_priority=settings.enqueue_priority,
        )
    summary.chats_processed = 1
    _log_summary("poll_contact", summary)
    return summary


def poll_recent_chats(
    client: EvolutionClient,
    settings: IngestionSettings,
    chat_limit: int | None = None,
    message_limit: int | None = None,
    time_budget_seconds: float | None = None,
) -> RunSummary:
    """General poll: recently active chats and their recent messages.

    Non-individual chats (groups, broadcast, ...) and too-short phones are
    counted as skipped and never create rows.

    Raises:
        GatewayError: If the chat list itself cannot be fetched.
    """
    chat_limit = chat_limit or settings.chat_limit
    message_limit = message_limit or settings.message_limit
    deadline = _Deadline(time_budget_seconds)
    summary = RunSummary()

    chats = client.find_chats(limit=chat_limit)

    for chat in chats:
        if deadline.exceeded():
            summary.add_error("time budget exhausted")
            break

        identity = resolve_identity(chat.raw_id)
        if isinstance(identity, Invalid):
            summary.skipped += 1
            logger.debug(
                "chat skipped",
                extra={"extra_fields": safe_log_context(reason=identity.reason)},
            )
            continue
        address, phone = identity

        hints = ProfileHints(name=chat.name, avatar_url=chat.avatar_url)
        try:
            summary.merge(_ingest_chat(client, settings, address, phone, hints, message_limit))
        except _ITEM_ERRORS as e:
            _record_item_failure(summary, "poll_recent_chats", e)

    _log_summary("poll_recent_chats", summary)
    return summary


def fetch_history(
    client: EvolutionClient,
    settings: IngestionSettings,
    *,
    contact_id: str | None = None,
    phone: str | None = None,
    limit: int | None = None,
) -> RunSummary:
    """Ad-hoc history fetch by contact id or by phone.

    The stored address is preferred; otherwise <phone>@s.whatsapp.net is
    used. Fetching by an unknown phone creates the contact.

    Raises:
        ValueError: If neither contact_id nor phone is given.
        InvalidIdentityError: If the phone is not a usable number.
        ContactNotFoundError: If contact_id does not exist.
        GatewayError: If the gateway call fails.
    """
    if not contact_id and not phone:
        raise ValueError("contact_id or phone is required")
    limit = limit or settings.message_limit
    summary = RunSummary()

    contact: dict | None = None
    if contact_id:
        with txn() as cur:
            contact = contacts.get_contact(cur, contact_id)
        canonical_phone = Phone(contact["phone"])
    else:
        normalized = normalize_phone(phone)
        if isinstance(normalized, Invalid):
            raise InvalidIdentityError(normalized.reason)
        canonical_phone = normalized
        with txn() as cur:
            contact = contacts_repository.find_by_phone(cur, canonical_phone.digits)

    address = (
        _address_for_contact(contact) if contact is not None else address_for_phone(canonical_phone)
    )

    page = client.find_messages(address.jid, limit=limit)

    with txn() as cur:
        if contact is None:
            contact, created = contacts.resolve(
                cur, address, canonical_phone, ProfileHints(origin="evolution")
            )
            summary.count_contact(created)
        elif not contact.get("remote_jid") and page.items:
            # The default address worked: remember it
            contacts_repository.update_profile(cur, contact["id"], remote_jid=address.jid)
            contact = {**contact, "remote_jid": address.jid}
        summary.merge(
            ingest_messages(
                cur,
                contact,
                page.items,
                client.instance,
                enqueue_priority=settings.enqueue_priority,
            )
        )
    summary.chats_processed = 1
    _log_summary("fetch_history", summary)
    return summary


def _import_contacts(
    client: EvolutionClient,
    settings: IngestionSettings,
    tracker: SyncRunTracker,
    summary: RunSummary,
    batch_size: int,
    deadline: _Deadline,
) -> None:
    """Profile-only import of every individual chat, with enrichment."""
    chats = client.find_chats()

    targets: list[tuple[Address, Phone, Any]] = []
    for chat in chats:
        identity = resolve_identity(chat.raw_id)
        if isinstance(identity, Invalid):
            summary.skipped += 1
            continue
        targets.append((identity[0], identity[1], chat))

    tracker.add_total(len(targets))
    tracker.log(f"contacts: {len(targets)} individual chats, {summary.skipped} skipped")

    for start in range(0, len(targets), batch_size):
        if deadline.exceeded():
            summary.add_error("time budget exhausted")
            tracker.log("time budget exhausted")
            return
        if start:
            time.sleep(settings.batch_pause_seconds)

        batch = targets[start : start + batch_size]
        for address, phone, chat in batch:
            try:
                profile = _fetch_profile(client, address)
                avatar_url = chat.avatar_url or _fetch_picture(client, address)
                hints = ProfileHints(
                    name=profile.name or profile.business_name or chat.name,
                    avatar_url=avatar_url,
                    is_business=profile.is_business,
                    origin="evolution",
                )
                with txn() as cur:
                    _, created = contacts.resolve(cur, address, phone, hints)
                summary.count_contact(created)
            except _ITEM_ERRORS as e:
                _record_item_failure(summary, "sync_contacts", e)

        tracker.log(f"contacts batch {start // batch_size + 1}: {len(batch)} processed")
        tracker.progress(len(batch), summary.to_dict())


def _fetch_profile(client: EvolutionClient, address: Address) -> ContactProfile:
    """Profile enrichment is best-effort: a failure leaves hints empty."""
    try:
        return client.fetch_profile(address.jid)
    except GatewayError as e:
        logger.warning(
            "profile enrichment failed",
            extra={"extra_fields": safe_log_context(status=e.status)},
        )
        return ContactProfile()


def _fetch_picture(client: EvolutionClient, address: Address) -> str | None:
    try:
        return client.fetch_profile_picture_url(address.jid)
    except GatewayError as e:
        logger.warning(
            "picture enrichment failed",
            extra={"extra_fields": safe_log_context(status=e.status)},
        )
        return None


def _backfill_contact(
    client: EvolutionClient,
    settings: IngestionSettings,
    contact: dict,
) -> RunSummary:
    """Page through a contact's full history, up to sync_max_pages pages."""
    summary = RunSummary()
    address = _address_for_contact(contact)

    for page_number in range(1, settings.sync_max_pages + 1):
        page = client.find_messages(
            address.jid, page=page_number, page_size=settings.sync_page_size
        )
        with txn() as cur:
            summary.merge(
                ingest_messages(
                    cur,
                    contact,
                    page.items,
                    client.instance,
                    enqueue_priority=settings.enqueue_priority,
                )
            )
        if not page.items or not page.has_more:
            break
    else:
        logger.warning(
            "backfill page cap reached",
            extra={
                "extra_fields": safe_log_context(
                    contact_id=id_prefix(contact["id"]), max_pages=settings.sync_max_pages
                )
            },
        )

    summary.chats_processed = 1
    return summary


def _backfill_messages(
    client: EvolutionClient,
    settings: IngestionSettings,
    tracker: SyncRunTracker,
    summary: RunSummary,
    batch_size: int,
    contact_limit: int,
    deadline: _Deadline,
) -> None:
    with txn() as cur:
        targets = contacts_repository.list_with_address(cur, contact_limit)

    tracker.add_total(len(targets))
    tracker.log(f"messages: {len(targets)} contacts to backfill")

    for start in range(0, len(targets), batch_size):
        if deadline.exceeded():
            summary.add_error("time budget exhausted")
            tracker.log("time budget exhausted")
            return
        if start:
            time.sleep(settings.batch_pause_seconds)

        batch = targets[start : start + batch_size]
        for contact in batch:
            try:
                summary.merge(_backfill_contact(client, settings, contact))
            except _ITEM_ERRORS as e:
                _record_item_failure(summary, "sync_messages", e)

        tracker.log(
            f"messages batch {start // batch_size + 1}: {len(batch)} contacts, "
            f"{summary.created} messages stored so far"
        )
        tracker.progress(len(batch), summary.to_dict())


def full_sync(
    client: EvolutionClient,
    settings: IngestionSettings,
    mode: SyncMode = "full",
    *,
    batch_size: int | None = None,
    contact_limit: int | None = None,
    time_budget_seconds: float | None = None,
) -> RunSummary:
    """Full sync in bounded batches, tracked in a sync_runs row.

    Modes:
        contacts: import all individual chats as contacts (profile only).
        messages: paginated history backfill for contacts with an address.
        full:     contacts, then messages.

    Returns:
        RunSummary with run_id set to the sync_runs row.

    Raises:
        GatewayError: If the chat list cannot be fetched (the run is
            recorded as 'erro').
    """
    if mode not in ("contacts", "messages", "full"):
        raise ValueError(f"unknown sync mode: {mode}")
    batch_size = batch_size or settings.sync_batch_size
    contact_limit = contact_limit or settings.sync_contact_limit
    deadline = _Deadline(time_budget_seconds)

    with correlation_scope("sync"):
        tracker = SyncRunTracker.start(mode)
        summary = RunSummary(run_id=tracker.run_id)
        try:
            if mode in ("contacts", "full"):
                _import_contacts(client, settings, tracker, summary, batch_size, deadline)
            if mode in ("messages", "full") and not deadline.exceeded():
                _backfill_messages(
                    client, settings, tracker, summary, batch_size, contact_limit, deadline
                )
        except Exception as e:
            tracker.finish(summary.to_dict(), error=type(e).__name__)
            raise

        tracker.finish(summary.to_dict())
        _log_summary("full_sync", summary)
        return summary


def ingest_webhook_message(
    raw: Any,
    settings: IngestionSettings,
    instance: str | None = None,
) -> RunSummary:
    """Run one pushed webhook message through the ingestion path.

    Same idempotency, recency and enqueue rules as polling; a message already
    stored by a poll only updates its delivery status.
    """
    summary = RunSummary()

    mapped = map_message(raw)
    if isinstance(mapped, Skip):
        summary.skipped += 1
        return summary

    identity = resolve_identity(mapped.remote_jid)
    if isinstance(identity, Invalid):
        summary.skipped += 1
        logger.debug(
            "webhook message skipped",
            extra={"extra_fields": safe_log_context(reason=identity.reason)},
        )
        return summary
    address, phone = identity

    hints = ProfileHints(name=mapped.push_name if mapped.is_inbound else None)
    with txn() as cur:
        contact, created = contacts.resolve(cur, address, phone, hints)
        summary.merge(
            ingest_messages(
                cur,
                contact,
                [raw],
                instance,
                enqueue_priority=settings.enqueue_priority,
            )
        )
    summary.count_contact(created)
    summary.chats_processed = 1
    return summary
