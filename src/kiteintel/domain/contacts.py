"""Contact resolution - one Contact per real-world WhatsApp identity.

Identity resolution strategy
─────────────────────────────
Callers pass an already-validated Address and Phone (see whatsapp.identity).

  1. Look up by address (authoritative).
  2. If not found, look up by phone and backfill the address.
  3. Not found → INSERT ... ON CONFLICT DO NOTHING, then re-read. Two
     concurrent creators converge on the same row.

New contacts start as status 'lead' with no last_message_at. Recency is set
only by apply_recency, from real message timestamps.

The caller owns the transaction (with txn() as cur:).
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from psycopg2.extensions import cursor as PgCursor

from kiteintel.infra.repositories import contacts_repository
from kiteintel.observability.logging import get_logger
from kiteintel.observability.redaction import id_prefix, safe_log_context
from kiteintel.whatsapp.identity import Address, Phone
from kiteintel.whatsapp.models import ProfileHints

logger = get_logger(__name__)

# Names the inbox shows for the business side of a chat
AGENT_PLACEHOLDER_NAMES = frozenset({"Você", "EQA", "Eu (Suporte)", "Suporte"})

MIN_NAME_LENGTH = 3


class ContactNotFoundError(Exception):
    """Raised when a contact id does not exist."""

    pass


def is_usable_name(name: str | None) -> bool:
    """True when a gateway-provided name is good enough to display."""
    if not name:
        return False
    name = name.strip()
    if len(name) < MIN_NAME_LENGTH:
        return False
    if name.replace("+", "").replace(" ", "").isdigit():
        return False
    return name not in AGENT_PLACEHOLDER_NAMES


def get_contact(cur: PgCursor, contact_id: str) -> dict:
    """Load a contact by id.

    Raises:
        ContactNotFoundError: If no such contact exists.
    """
    contact = contacts_repository.find_by_id(cur, contact_id)
    if contact is None:
        raise ContactNotFoundError(contact_id)
    return contact


def _merge_profile(cur: PgCursor, contact: dict, address: Address, hints: ProfileHints) -> bool:
    """Merge hints into an existing contact. Returns True if anything changed."""
    name = hints.name.strip() if is_usable_name(hints.name) else None

    display_name = None
    if name and not is_usable_name(contact.get("display_name")):
        display_name = name

    profile_name = name if name and name != contact.get("profile_name") else None
    avatar_url = (
        hints.avatar_url if hints.avatar_url and hints.avatar_url != contact.get("avatar_url") else None
    )
    is_business = (
        hints.is_business
        if hints.is_business is not None and hints.is_business != contact.get("is_business")
        else None
    )
    remote_jid = address.jid if not contact.get("remote_jid") else None

    if not any(
        v is not None for v in (display_name, profile_name, avatar_url, is_business, remote_jid)
    ):
        return False

    contacts_repository.update_profile(
        cur,
        contact["id"],
        display_name=display_name,
        profile_name=profile_name,
        avatar_url=avatar_url,
        is_business=is_business,
        remote_jid=remote_jid,
    )
    return True


def resolve(
    cur: PgCursor,
    address: Address,
    phone: Phone,
    hints: ProfileHints | None = None,
) -> tuple[dict, bool]:
    """Find or create the contact for an address/phone pair.

    Args:
        cur: Database cursor (must be inside a transaction).
        address: Canonical individual address.
        phone: Canonical phone extracted from the address.
        hints: Profile data from the gateway. Optional.

    Returns:
        Tuple of (contact, created). `contact` reflects any profile merge.

    Raises:
        RuntimeError: If the insert conflicted but no row can be re-read.
    """
    hints = hints or ProfileHints()

    contact = contacts_repository.find_by_address(cur, address.jid)
    if contact is None:
        contact = contacts_repository.find_by_phone(cur, phone.digits)

    if contact is not None:
        if _merge_profile(cur, contact, address, hints):
            contact = contacts_repository.find_by_id(cur, contact["id"]) or contact
        return contact, False

    name = hints.name.strip() if is_usable_name(hints.name) else None
    new_id = contacts_repository.insert_if_absent(
        cur,
        phone=phone.digits,
        remote_jid=address.jid,
        display_name=name,
        avatar_url=hints.avatar_url,
        is_business=hints.is_business,
        origin=hints.origin,
    )

    if new_id is not None:
        logger.info(
            "contact created",
            extra={
                "extra_fields": safe_log_context(
                    contact_id=id_prefix(new_id), is_lid=address.is_lid, origin=hints.origin
                )
            },
        )
        return contacts_repository.find_by_id(cur, new_id), True

    # Lost the race: another writer inserted the same phone or address
    contact = contacts_repository.find_by_address(cur, address.jid) or (
        contacts_repository.find_by_phone(cur, phone.digits)
    )
    if contact is None:
        raise RuntimeError("contact insert conflicted but no row was found")
    return contact, False


def apply_recency(
    cur: PgCursor, contact_id: str, timestamps: Iterable[datetime]
) -> datetime | None:
    """Advance last_message_at/last_contact_at to the newest timestamp.

    The stored value never moves backwards. An empty batch is a no-op.

    Returns:
        The batch maximum, or None for an empty batch.
    """
    latest = max(timestamps, default=None)
    if latest is None:
        return None
    contacts_repository.bump_recency(cur, contact_id, latest)
    return latest


def refresh_display_name(cur: PgCursor, contact: dict, push_names: Iterable[str | None]) -> bool:
    """Adopt the latest usable inbound push name as display name.

    Args:
        cur: Database cursor (within transaction).
        contact: Contact dict.
        push_names: Push names of inbound messages, oldest first.

    Returns:
        True if the display name changed.
    """
    candidate = None
    for name in push_names:
        if is_usable_name(name):
            candidate = name.strip()

    if candidate is None or candidate == contact.get("display_name"):
        return False

    contacts_repository.update_display_name(cur, contact["id"], candidate)
    return True
