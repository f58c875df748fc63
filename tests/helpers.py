"""Shared test helpers for kiteintel tests.

This module contains helpers that can be imported by both conftest.py and
individual test files. These are NOT fixtures - they are regular classes and
functions.

FakeStore is an in-memory stand-in for the repository layer: it replaces
the repository module functions (and the txn() bindings of the modules that
open transactions) so domain code runs unchanged without Postgres.
"""

from __future__ import annotations

import itertools
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from kiteintel.infra.repositories import (
    contacts_repository,
    insights_repository,
    messages_repository,
    queue_repository,
    sync_runs_repository,
)

# Modules that bind txn at import time
TXN_MODULES = (
    "kiteintel.domain.ingestion",
    "kiteintel.domain.analysis_worker",
    "kiteintel.domain.sync_runs",
    "kiteintel.api.routes.tasks_analysis",
    "kiteintel.api.routers.worker",
)

BASE_EPOCH = 1_700_000_000


def ts(offset_seconds: int = 0) -> datetime:
    """UTC datetime at BASE_EPOCH + offset."""
    return datetime.fromtimestamp(BASE_EPOCH + offset_seconds, tz=timezone.utc)


class FakeStore:
    """In-memory contacts/messages/queue/insights/sync_runs tables."""

    def __init__(self) -> None:
        self.contacts: dict[str, dict] = {}
        self.messages: dict[str, dict] = {}
        self.queue: dict[int, dict] = {}
        self.insights: dict[str, dict] = {}
        self.sync_runs: dict[str, dict] = {}
        self.txn_count = 0
        self.cursor = MagicMock(name="cursor")
        self._queue_ids = itertools.count(1)
        self._message_ids = itertools.count(1)
        # Database clock used for claim leases
        self.now = ts(10_000)

    # ── Wiring ───────────────────────────────────────────

    @contextmanager
    def txn(self, conn=None):
        self.txn_count += 1
        yield self.cursor

    def install(self, monkeypatch) -> "FakeStore":
        for module in TXN_MODULES:
            monkeypatch.setattr(f"{module}.txn", self.txn)

        patches = {
            contacts_repository: (
                "find_by_id",
                "find_by_address",
                "find_by_phone",
                "insert_if_absent",
                "update_profile",
                "bump_recency",
                "update_display_name",
                "refresh_message_count",
                "update_scoring",
                "list_with_address",
            ),
            messages_repository: (
                "find_by_message_id",
                "insert_if_absent",
                "update_delivery_status",
                "recent_for_contact",
                "stats_for_contact",
            ),
            queue_repository: (
                "insert_pending",
                "claim",
                "expire_leases",
                "get_item",
                "mark_done",
                "mark_pending",
                "mark_error",
                "reset_failed",
                "list_by_status",
            ),
            insights_repository: ("upsert_insight",),
            sync_runs_repository: ("insert_run", "update_progress", "finish_run"),
        }
        prefixes = {
            contacts_repository: "contact_",
            messages_repository: "message_",
            queue_repository: "queue_",
            insights_repository: "insight_",
            sync_runs_repository: "run_",
        }
        for module, names in patches.items():
            for name in names:
                monkeypatch.setattr(module, name, getattr(self, prefixes[module] + name))
        return self

    # ── Seeding ──────────────────────────────────────────

    def add_contact(
        self,
        phone: str = "5511999990001",
        remote_jid: str | None = "5511999990001@s.whatsapp.net",
        **fields,
    ) -> dict:
        contact = {
            "id": str(uuid.uuid4()),
            "phone": phone,
            "remote_jid": remote_jid,
            "display_name": None,
            "profile_name": None,
            "avatar_url": None,
            "is_business": None,
            "status": "lead",
            "origin": "whatsapp",
            "last_message_at": None,
            "last_contact_at": None,
            "message_count": 0,
            "interest_score": None,
            "engagement_score": None,
            "sentiment": None,
            "priority": None,
            "ai_summary": None,
            "classified_at": None,
        }
        contact.update(fields)
        self.contacts[contact["id"]] = contact
        return dict(contact)

    def add_message(
        self, contact: dict, message_id: str, direction: str, content: str, sent_at: datetime
    ) -> None:
        self.messages[message_id] = {
            "seq": next(self._message_ids),
            "message_id": message_id,
            "contact_id": contact["id"],
            "phone": contact["phone"],
            "direction": direction,
            "content": content,
            "media_kind": "texto",
            "sent_at": sent_at,
            "delivery_status": None,
            "push_name": None,
        }

    def add_queue_item(self, contact_id: str, **fields) -> dict:
        item_id = next(self._queue_ids)
        item = {
            "id": item_id,
            "contact_id": contact_id,
            "priority_rank": 5,
            "attempts": 0,
            "status": "pendente",
            "last_error": None,
            "created_at": ts(item_id),
            "processed_at": None,
            "claimed_at": None,
        }
        item.update(fields)
        self.queue[item_id] = item
        return dict(item)

    def messages_for(self, contact_id: str) -> list[dict]:
        return [m for m in self.messages.values() if m["contact_id"] == contact_id]

    def queue_for(self, contact_id: str) -> list[dict]:
        return [q for q in self.queue.values() if q["contact_id"] == contact_id]

    # ── contacts_repository ──────────────────────────────

    def contact_find_by_id(self, cur, contact_id):
        contact = self.contacts.get(contact_id)
        return dict(contact) if contact else None

    def contact_find_by_address(self, cur, remote_jid):
        for contact in self.contacts.values():
            if contact["remote_jid"] == remote_jid:
                return dict(contact)
        return None

    def contact_find_by_phone(self, cur, phone):
        for contact in self.contacts.values():
            if contact["phone"] == phone:
                return dict(contact)
        return None

    def contact_insert_if_absent(
        self, cur, *, phone, remote_jid, display_name, avatar_url, is_business, origin
    ):
        for contact in self.contacts.values():
            if contact["phone"] == phone or (remote_jid and contact["remote_jid"] == remote_jid):
                return None
        contact = self.add_contact(
            phone=phone,
            remote_jid=remote_jid,
            display_name=display_name,
            avatar_url=avatar_url,
            is_business=is_business,
            origin=origin,
        )
        return contact["id"]

    def contact_update_profile(
        self,
        cur,
        contact_id,
        *,
        display_name=None,
        profile_name=None,
        avatar_url=None,
        is_business=None,
        remote_jid=None,
    ):
        contact = self.contacts[contact_id]
        for key, value in (
            ("display_name", display_name),
            ("profile_name", profile_name),
            ("avatar_url", avatar_url),
            ("is_business", is_business),
        ):
            if value is not None:
                contact[key] = value
        if contact["remote_jid"] is None and remote_jid is not None:
            contact["remote_jid"] = remote_jid

    def contact_bump_recency(self, cur, contact_id, latest):
        contact = self.contacts[contact_id]
        for key in ("last_message_at", "last_contact_at"):
            if contact[key] is None or latest > contact[key]:
                contact[key] = latest

    def contact_update_display_name(self, cur, contact_id, display_name):
        self.contacts[contact_id]["display_name"] = display_name

    def contact_refresh_message_count(self, cur, contact_id):
        count = len(self.messages_for(contact_id))
        self.contacts[contact_id]["message_count"] = count
        return count

    def contact_update_scoring(
        self,
        cur,
        contact_id,
        *,
        interest_score,
        engagement_score,
        sentiment,
        priority,
        ai_summary,
        status=None,
    ):
        contact = self.contacts[contact_id]
        contact.update(
            interest_score=interest_score,
            engagement_score=engagement_score,
            sentiment=sentiment,
            priority=priority,
            ai_summary=ai_summary,
            classified_at=ts(),
        )
        if status is not None:
            contact["status"] = status

    def contact_list_with_address(self, cur, limit):
        return [dict(c) for c in self.contacts.values() if c["remote_jid"]][:limit]

    # ── messages_repository ──────────────────────────────

    def message_find_by_message_id(self, cur, message_id):
        row = self.messages.get(message_id)
        if row is None:
            return None
        return {
            "message_id": message_id,
            "contact_id": row["contact_id"],
            "direction": row["direction"],
            "sent_at": row["sent_at"],
            "delivery_status": row["delivery_status"],
        }

    def message_insert_if_absent(self, cur, *, message_id, **fields):
        if message_id in self.messages:
            return False
        self.messages[message_id] = {
            "seq": next(self._message_ids),
            "message_id": message_id,
            **fields,
        }
        return True

    def message_update_delivery_status(self, cur, message_id, delivery_status):
        row = self.messages.get(message_id)
        if row is None or row["delivery_status"] == delivery_status:
            return False
        row["delivery_status"] = delivery_status
        return True

    def message_recent_for_contact(self, cur, contact_id, limit):
        rows = sorted(
            self.messages_for(contact_id),
            key=lambda m: (m["sent_at"], m["seq"]),
            reverse=True,
        )[:limit]
        return [
            {
                "message_id": m["message_id"],
                "direction": m["direction"],
                "content": m["content"],
                "sent_at": m["sent_at"],
            }
            for m in rows
        ]

    def message_stats_for_contact(self, cur, contact_id):
        rows = self.messages_for(contact_id)
        times = [m["sent_at"] for m in rows]
        return {
            "total": len(rows),
            "sent": sum(1 for m in rows if m["direction"] == "from_me"),
            "received": sum(1 for m in rows if m["direction"] == "from_contact"),
            "first_at": min(times, default=None),
            "last_at": max(times, default=None),
        }

    # ── queue_repository ─────────────────────────────────

    def _in_flight(self, contact_id, exclude=None):
        return any(
            q["status"] in ("pendente", "processando") and q["id"] != exclude
            for q in self.queue_for(contact_id)
        )

    def queue_insert_pending(self, cur, contact_id, priority_rank):
        if self._in_flight(contact_id):
            return None
        return self.add_queue_item(contact_id, priority_rank=priority_rank)["id"]

    def _lease_expired(self, item, lease_seconds):
        return (
            item["status"] == "processando"
            and item["claimed_at"] is not None
            and item["claimed_at"] < self.now - timedelta(seconds=lease_seconds)
        )

    def queue_claim(self, cur, batch_size, lease_seconds):
        claimable = sorted(
            (
                q
                for q in self.queue.values()
                if q["status"] == "pendente" or self._lease_expired(q, lease_seconds)
            ),
            key=lambda q: (q["priority_rank"], q["created_at"], q["id"]),
        )[:batch_size]
        for item in claimable:
            item["status"] = "processando"
            item["attempts"] += 1
            item["claimed_at"] = self.now
        return [dict(item) for item in claimable]

    def queue_expire_leases(self, cur, lease_seconds, max_attempts):
        expired = [
            q
            for q in self.queue.values()
            if self._lease_expired(q, lease_seconds) and q["attempts"] >= max_attempts
        ]
        for item in expired:
            item.update(status="erro", last_error="lease expired", processed_at=self.now)
        return len(expired)

    def queue_get_item(self, cur, item_id):
        item = self.queue.get(item_id)
        return dict(item) if item else None

    def _transition(self, item_id, status, **fields):
        item = self.queue[item_id]
        if item["status"] == "processando":
            item["status"] = status
            item.update(fields)

    def queue_mark_done(self, cur, item_id):
        self._transition(item_id, "concluido", last_error=None, processed_at=ts())

    def queue_mark_pending(self, cur, item_id, error):
        self._transition(item_id, "pendente", last_error=error)

    def queue_mark_error(self, cur, item_id, error):
        self._transition(item_id, "erro", last_error=error, processed_at=ts())

    def queue_reset_failed(self, cur, item_id):
        item = self.queue.get(item_id)
        if item is None or item["status"] != "erro":
            return False
        if self._in_flight(item["contact_id"], exclude=item_id):
            return False
        item.update(status="pendente", attempts=0, last_error=None, processed_at=None)
        return True

    def queue_list_by_status(self, cur, status, limit):
        return [dict(q) for q in self.queue.values() if q["status"] == status][:limit]

    # ── insights_repository ──────────────────────────────

    def insight_upsert_insight(self, cur, *, contact_id, **fields):
        self.insights[contact_id] = {"contact_id": contact_id, **fields}

    # ── sync_runs_repository ─────────────────────────────

    def run_insert_run(self, cur, mode):
        run_id = str(uuid.uuid4())
        self.sync_runs[run_id] = {
            "id": run_id,
            "mode": mode,
            "status": "em_andamento",
            "summary": {},
            "progress_current": 0,
            "progress_total": 0,
            "logs": [],
            "error": None,
        }
        return run_id

    def run_update_progress(
        self, cur, run_id, *, progress_current, progress_total, summary, logs
    ):
        self.sync_runs[run_id].update(
            progress_current=progress_current,
            progress_total=progress_total,
            summary=summary,
            logs=logs,
        )

    def run_finish_run(self, cur, run_id, *, status, summary, logs, error=None):
        self.sync_runs[run_id].update(status=status, summary=summary, logs=logs, error=error)


class FakeEvolutionClient:
    """Scripted gateway client.

    chats: list of ChatSummary returned by find_chats.
    messages: address -> list of raw items (or an Exception to raise).
    """

    instance = "kite-test"

    def __init__(self, chats=None, messages=None, profiles=None, pages=None):
        self.chats = chats or []
        self.messages = messages or {}
        self.profiles = profiles or {}
        self.pages = pages or {}
        self.message_calls: list[tuple[str, dict]] = []
        self.chat_calls: list[int | None] = []

    def find_chats(self, limit=None):
        self.chat_calls.append(limit)
        if isinstance(self.chats, Exception):
            raise self.chats
        return self.chats[:limit] if limit is not None else list(self.chats)

    def find_messages(self, remote_jid, *, limit=None, page=None, page_size=None):
        from kiteintel.whatsapp.models import MessagePage

        self.message_calls.append((remote_jid, {"limit": limit, "page": page}))
        if page is not None and remote_jid in self.pages:
            pages = self.pages[remote_jid]
            return MessagePage(items=pages[page - 1], pages=len(pages), current_page=page)

        items = self.messages.get(remote_jid, [])
        if isinstance(items, Exception):
            raise items
        return MessagePage(items=items[:limit] if limit is not None else list(items))

    def fetch_profile(self, remote_jid):
        from kiteintel.whatsapp.models import ContactProfile

        profile = self.profiles.get(remote_jid, ContactProfile())
        if isinstance(profile, Exception):
            raise profile
        return profile

    def fetch_profile_picture_url(self, remote_jid):
        return None


class FakeLLM:
    """Scripted chat-completion client: returns or raises replies in order."""

    model = "test-model"

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls: list[tuple[str, str]] = []

    def complete(self, system: str, user: str) -> str:
        self.calls.append((system, user))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class LogRecorder:
    """Simple recorder to capture log calls deterministically."""

    def __init__(self):
        self.calls: list[tuple[str, tuple, dict]] = []

    def _record(self, level: str, *args, **kwargs):
        self.calls.append((level, args, kwargs))

    def info(self, *args, **kwargs):
        self._record("info", *args, **kwargs)

    def warning(self, *args, **kwargs):
        self._record("warning", *args, **kwargs)

    def error(self, *args, **kwargs):
        self._record("error", *args, **kwargs)

    def exception(self, *args, **kwargs):
        self._record("exception", *args, **kwargs)

    def debug(self, *args, **kwargs):
        self._record("debug", *args, **kwargs)

    def get_all_logged_content(self) -> str:
        """Concatenate all args and kwargs from all calls into one string."""
        parts = []
        for level, args, kwargs in self.calls:
            parts.append(str(args))
            parts.append(str(kwargs))
        return " ".join(parts)


# ── Raw payload builders ─────────────────────────────────


def raw_message(
    message_id: str,
    remote_jid: str = "5511999990001@s.whatsapp.net",
    text: str = "Oi, quero saber das aulas",
    *,
    from_me: bool = False,
    epoch: int | None = BASE_EPOCH,
    status: str | None = None,
    push_name: str | None = None,
) -> dict:
    """Bare findMessages-style item."""
    item: dict = {
        "key": {"id": message_id, "remoteJid": remote_jid, "fromMe": from_me},
        "message": {"conversation": text},
    }
    if epoch is not None:
        item["messageTimestamp"] = epoch
    if status is not None:
        item["status"] = status
    if push_name is not None:
        item["pushName"] = push_name
    return item
