"""Contacts repository - one row per real-world WhatsApp identity.

Uses raw SQL with psycopg2 (no ORM).

Uniqueness lives in the database: UNIQUE(phone) and UNIQUE(remote_jid) when
not null. Concurrent creators race on insert_if_absent and converge on the
same row by re-reading after the conflict.
"""

from datetime import datetime

from psycopg2.extensions import cursor as PgCursor

_COLUMNS = """
    id, phone, remote_jid, display_name, profile_name, avatar_url,
    is_business, status, origin, last_message_at, last_contact_at,
    message_count, interest_score, engagement_score, sentiment,
    priority, ai_summary, classified_at
"""


def _row_to_contact(row: tuple) -> dict:
    return {
        "id": str(row[0]),
        "phone": row[1],
        "remote_jid": row[2],
        "display_name": row[3],
        "profile_name": row[4],
        "avatar_url": row[5],
        "is_business": row[6],
        "status": row[7],
        "origin": row[8],
        "last_message_at": row[9],
        "last_contact_at": row[10],
        "message_count": row[11],
        "interest_score": row[12],
        "engagement_score": row[13],
        "sentiment": row[14],
        "priority": row[15],
        "ai_summary": row[16],
        "classified_at": row[17],
    }


def find_by_id(cur: PgCursor, contact_id: str) -> dict | None:
    """Fetch a contact by id, or None."""
    cur.execute(f"SELECT {_COLUMNS} FROM contacts WHERE id = %s", (contact_id,))
    row = cur.fetchone()
    return _row_to_contact(row) if row else None


def find_by_address(cur: PgCursor, remote_jid: str) -> dict | None:
    """Fetch a contact by canonical WhatsApp address, or None."""
    cur.execute(f"SELECT {_COLUMNS} FROM contacts WHERE remote_jid = %s", (remote_jid,))
    row = cur.fetchone()
    return _row_to_contact(row) if row else None


def find_by_phone(cur: PgCursor, phone: str) -> dict | None:
    """Fetch a contact by canonical phone (digits only), or None."""
    cur.execute(f"SELECT {_COLUMNS} FROM contacts WHERE phone = %s", (phone,))
    row = cur.fetchone()
    return _row_to_contact(row) if row else None


def insert_if_absent(
    cur: PgCursor,
    *,
    phone: str,
    remote_jid: str | None,
    display_name: str | None = None,
    avatar_url: str | None = None,
    is_business: bool | None = None,
    origin: str = "whatsapp",
) -> str | None:
    """Insert a new contact with status 'lead' and no recency.

    Conflicts on either unique key (phone or remote_jid) are ignored.

    Args:
        cur: Database cursor (within transaction).
        phone: Canonical phone (digits only).
        remote_jid: Canonical individual address, if known.
        display_name: Initial display name. Optional.
        avatar_url: Profile picture URL. Optional.
        is_business: Business account flag. Optional.
        origin: Where the contact came from (whatsapp, evolution, import).

    Returns:
        The new contact id, or None when another row already holds the
        phone or address.
    """
    cur.execute(
        """
        INSERT INTO contacts (
            phone, remote_jid, display_name, profile_name,
            avatar_url, is_business, status, origin
        )
        VALUES (%s, %s, %s, %s, %s, COALESCE(%s, FALSE), 'lead', %s)
        ON CONFLICT DO NOTHING
        RETURNING id
        """,
        (phone, remote_jid, display_name, display_name, avatar_url, is_business, origin),
    )
    row = cur.fetchone()
    return str(row[0]) if row else None


def update_profile(
    cur: PgCursor,
    contact_id: str,
    *,
    display_name: str | None = None,
    profile_name: str | None = None,
    avatar_url: str | None = None,
    is_business: bool | None = None,
    remote_jid: str | None = None,
) -> None:
    """Merge profile fields into an existing contact.

    None never overwrites a stored value. remote_jid is only backfilled when
    the contact has no address yet.
    """
    cur.execute(
        """
        UPDATE contacts
        SET display_name = COALESCE(%s, display_name),
            profile_name = COALESCE(%s, profile_name),
            avatar_url   = COALESCE(%s, avatar_url),
            is_business  = COALESCE(%s, is_business),
            remote_jid   = COALESCE(remote_jid, %s),
            updated_at   = now()
        WHERE id = %s
        """,
        (display_name, profile_name, avatar_url, is_business, remote_jid, contact_id),
    )


def bump_recency(cur: PgCursor, contact_id: str, latest: datetime) -> None:
    """Move last_message_at/last_contact_at forward to `latest`.

    GREATEST ignores NULL, so the first batch sets the value and later
    batches with older timestamps leave it unchanged.
    """
    cur.execute(
        """
        UPDATE contacts
        SET last_message_at = GREATEST(last_message_at, %s),
            last_contact_at = GREATEST(last_contact_at, %s),
            updated_at      = now()
        WHERE id = %s
        """,
        (latest, latest, contact_id),
    )


def update_display_name(cur: PgCursor, contact_id: str, display_name: str) -> None:
    cur.execute(
        """
        UPDATE contacts
        SET display_name = %s, updated_at = now()
        WHERE id = %s
        """,
        (display_name, contact_id),
    )


def refresh_message_count(cur: PgCursor, contact_id: str) -> int:
    """Recompute message_count from stored messages and return it."""
    cur.execute(
        """
        UPDATE contacts
        SET message_count = (
                SELECT count(*) FROM messages WHERE contact_id = %s
            ),
            updated_at = now()
        WHERE id = %s
        RETURNING message_count
        """,
        (contact_id, contact_id),
    )
    row = cur.fetchone()
    return row[0] if row else 0


def update_scoring(
    cur: PgCursor,
    contact_id: str,
    *,
    interest_score: int,
    engagement_score: int,
    sentiment: str | None,
    priority: str,
    ai_summary: str | None,
    status: str | None = None,
) -> None:
    """Write analysis results onto the contact.

    Args:
        cur: Database cursor (within transaction).
        contact_id: Contact UUID.
        interest_score: Conversion probability 0-100.
        engagement_score: Engagement score 0-100.
        sentiment: positivo, neutro or negativo.
        priority: Bucket from scoring.priority_bucket.
        ai_summary: One-line summary.
        status: New pipeline status, or None to keep the current one.
    """
    cur.execute(
        """
        UPDATE contacts
        SET interest_score   = %s,
            engagement_score = %s,
            sentiment        = %s,
            priority         = %s,
            ai_summary       = %s,
            status           = COALESCE(%s, status),
            classified_at    = now(),
            updated_at       = now()
        WHERE id = %s
        """,
        (
            interest_score,
            engagement_score,
            sentiment,
            priority,
            ai_summary,
            status,
            contact_id,
        ),
    )


def list_with_address(cur: PgCursor, limit: int) -> list[dict]:
    """List contacts that have an address, most recently active first."""
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM contacts
        WHERE remote_jid IS NOT NULL
        ORDER BY last_message_at DESC NULLS LAST, created_at
        LIMIT %s
        """,
        (limit,),
    )
    return [_row_to_contact(row) for row in cur.fetchall()]
