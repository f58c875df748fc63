"""Analysis queue repository - persisted analysis work items.

Uses raw SQL with psycopg2 (no ORM).

The partial unique index uq_analysis_queue_in_flight allows at most one
'pendente' or 'processando' row per contact. Claims use FOR UPDATE SKIP LOCKED
so concurrent workers never pick the same row. A claim is a lease: a
'processando' row whose claimed_at is older than the lease belongs to a
worker that died, and is claimable again.
"""

from psycopg2.extensions import cursor as PgCursor

_COLUMNS = """
    id, contact_id, priority_rank, attempts, status,
    last_error, created_at, processed_at, claimed_at
"""


def _row_to_item(row: tuple) -> dict:
    return {
        "id": row[0],
        "contact_id": str(row[1]),
        "priority_rank": row[2],
        "attempts": row[3],
        "status": row[4],
        "last_error": row[5],
        "created_at": row[6],
        "processed_at": row[7],
        "claimed_at": row[8],
    }


def insert_pending(cur: PgCursor, contact_id: str, priority_rank: int) -> int | None:
    """Insert a 'pendente' item unless the contact already has one in flight.

    Returns:
        The new item id, or None when an in-flight item already exists.
    """
    cur.execute(
        """
        INSERT INTO analysis_queue (contact_id, priority_rank, status)
        VALUES (%s, %s, 'pendente')
        ON CONFLICT (contact_id) WHERE status IN ('pendente', 'processando')
        DO NOTHING
        RETURNING id
        """,
        (contact_id, priority_rank),
    )
    row = cur.fetchone()
    return row[0] if row else None


def claim(cur: PgCursor, batch_size: int, lease_seconds: float) -> list[dict]:
    """Claim up to batch_size items and flip them to 'processando'.

    Picks 'pendente' items and 'processando' items whose lease expired,
    ordered by (priority_rank, created_at). attempts is incremented and
    claimed_at stamped at claim time.
    """
    cur.execute(
        """
        WITH picked AS (
            SELECT id FROM analysis_queue
            WHERE status = 'pendente'
               OR (status = 'processando'
                   AND claimed_at < now() - make_interval(secs => %s))
            ORDER BY priority_rank, created_at, id
            LIMIT %s
            FOR UPDATE SKIP LOCKED
        )
        UPDATE analysis_queue q
        SET status = 'processando',
            attempts = q.attempts + 1,
            claimed_at = now()
        FROM picked
        WHERE q.id = picked.id
        RETURNING q.id, q.contact_id, q.priority_rank, q.attempts, q.status,
                  q.last_error, q.created_at, q.processed_at, q.claimed_at
        """,
        (float(lease_seconds), batch_size),
    )
    items = [_row_to_item(row) for row in cur.fetchall()]
    # UPDATE ... RETURNING does not preserve the CTE order
    items.sort(key=lambda i: (i["priority_rank"], i["created_at"], i["id"]))
    return items


def expire_leases(cur: PgCursor, lease_seconds: float, max_attempts: int) -> int:
    """Move lease-expired items that already used their budget to 'erro'.

    Returns:
        Number of items moved.
    """
    cur.execute(
        """
        UPDATE analysis_queue
        SET status = 'erro', last_error = 'lease expired', processed_at = now()
        WHERE status = 'processando'
          AND claimed_at < now() - make_interval(secs => %s)
          AND attempts >= %s
        """,
        (float(lease_seconds), max_attempts),
    )
    return cur.rowcount


def get_item(cur: PgCursor, item_id: int) -> dict | None:
    cur.execute(f"SELECT {_COLUMNS} FROM analysis_queue WHERE id = %s", (item_id,))
    row = cur.fetchone()
    return _row_to_item(row) if row else None


def mark_done(cur: PgCursor, item_id: int) -> None:
    cur.execute(
        """
        UPDATE analysis_queue
        SET status = 'concluido', last_error = NULL, processed_at = now()
        WHERE id = %s AND status = 'processando'
        """,
        (item_id,),
    )


def mark_pending(cur: PgCursor, item_id: int, error: str) -> None:
    """Return a claimed item to 'pendente', keeping its attempts."""
    cur.execute(
        """
        UPDATE analysis_queue
        SET status = 'pendente', last_error = %s
        WHERE id = %s AND status = 'processando'
        """,
        (error, item_id),
    )


def mark_error(cur: PgCursor, item_id: int, error: str) -> None:
    cur.execute(
        """
        UPDATE analysis_queue
        SET status = 'erro', last_error = %s, processed_at = now()
        WHERE id = %s AND status = 'processando'
        """,
        (error, item_id),
    )


def reset_failed(cur: PgCursor, item_id: int) -> bool:
    """Move an 'erro' item back to 'pendente' with attempts reset.

    No-op when the contact already has another item in flight.

    Returns:
        True if the item was reset.
    """
    cur.execute(
        """
        UPDATE analysis_queue q
        SET status = 'pendente',
            attempts = 0,
            last_error = NULL,
            processed_at = NULL
        WHERE q.id = %s
          AND q.status = 'erro'
          AND NOT EXISTS (
              SELECT 1 FROM analysis_queue o
              WHERE o.contact_id = q.contact_id
                AND o.status IN ('pendente', 'processando')
          )
        """,
        (item_id,),
    )
    return cur.rowcount > 0


def list_by_status(cur: PgCursor, status: str, limit: int) -> list[dict]:
    """List items in a status, most recently processed first."""
    cur.execute(
        f"""
        SELECT {_COLUMNS} FROM analysis_queue
        WHERE status = %s
        ORDER BY processed_at DESC NULLS LAST, id DESC
        LIMIT %s
        """,
        (status, limit),
    )
    return [_row_to_item(row) for row in cur.fetchall()]
