"""Messages repository - stored WhatsApp messages.

Uses raw SQL with psycopg2 (no ORM).

messages.message_id (the gateway key) is UNIQUE and is the only idempotency
key for every ingestion path. After insert only delivery_status changes.
"""

from datetime import datetime

from psycopg2.extensions import cursor as PgCursor


def find_by_message_id(cur: PgCursor, message_id: str) -> dict | None:
    """Fetch the stored row for a gateway message id, or None."""
    cur.execute(
        """
        SELECT contact_id, direction, sent_at, delivery_status
        FROM messages
        WHERE message_id = %s
        """,
        (message_id,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return {
        "message_id": message_id,
        "contact_id": str(row[0]),
        "direction": row[1],
        "sent_at": row[2],
        "delivery_status": row[3],
    }


def insert_if_absent(
    cur: PgCursor,
    *,
    message_id: str,
    contact_id: str,
    phone: str,
    direction: str,
    content: str,
    media_kind: str,
    sent_at: datetime,
    delivery_status: str | None = None,
    push_name: str | None = None,
    media_url: str | None = None,
    media_mimetype: str | None = None,
    instance_name: str | None = None,
) -> bool:
    """Insert a message unless its gateway id is already stored.

    Returns:
        True if a new row was inserted, False on conflict.
    """
    cur.execute(
        """
        INSERT INTO messages (
            message_id, contact_id, phone, direction, content,
            media_kind, sent_at, delivery_status, push_name,
            media_url, media_mimetype, instance_name
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (message_id) DO NOTHING
        RETURNING id
        """,
        (
            message_id,
            contact_id,
            phone,
            direction,
            content,
            media_kind,
            sent_at,
            delivery_status,
            push_name,
            media_url,
            media_mimetype,
            instance_name,
        ),
    )
    return cur.fetchone() is not None


def update_delivery_status(cur: PgCursor, message_id: str, delivery_status: str) -> bool:
    """Set delivery_status when it differs from the stored one.

    Returns:
        True if the row changed.
    """
    cur.execute(
        """
        UPDATE messages
        SET delivery_status = %s
        WHERE message_id = %s
          AND delivery_status IS DISTINCT FROM %s
        """,
        (delivery_status, message_id, delivery_status),
    )
    return cur.rowcount > 0


def recent_for_contact(cur: PgCursor, contact_id: str, limit: int) -> list[dict]:
    """Return up to `limit` messages for a contact, most recent first."""
    cur.execute(
        """
        SELECT message_id, direction, content, sent_at
        FROM messages
        WHERE contact_id = %s
        ORDER BY sent_at DESC, id DESC
        LIMIT %s
        """,
        (contact_id, limit),
    )
    return [
        {
            "message_id": row[0],
            "direction": row[1],
            "content": row[2],
            "sent_at": row[3],
        }
        for row in cur.fetchall()
    ]


def stats_for_contact(cur: PgCursor, contact_id: str) -> dict:
    """Aggregate counts and first/last interaction for a contact."""
    cur.execute(
        """
        SELECT count(*),
               count(*) FILTER (WHERE direction = 'from_me'),
               count(*) FILTER (WHERE direction = 'from_contact'),
               min(sent_at),
               max(sent_at)
        FROM messages
        WHERE contact_id = %s
        """,
        (contact_id,),
    )
    row = cur.fetchone()
    return {
        "total": row[0],
        "sent": row[1],
        "received": row[2],
        "first_at": row[3],
        "last_at": row[4],
    }
