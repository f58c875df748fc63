"""Sync runs repository - progress tracking for full sync jobs.

Uses raw SQL with psycopg2 (no ORM).
"""

import json

from psycopg2.extensions import cursor as PgCursor


def insert_run(cur: PgCursor, mode: str) -> str:
    """Create a run in 'em_andamento' and return its id."""
    cur.execute(
        """
        INSERT INTO sync_runs (mode, status)
        VALUES (%s, 'em_andamento')
        RETURNING id
        """,
        (mode,),
    )
    return str(cur.fetchone()[0])


def update_progress(
    cur: PgCursor,
    run_id: str,
    *,
    progress_current: int,
    progress_total: int,
    summary: dict,
    logs: list[str],
) -> None:
    cur.execute(
        """
        UPDATE sync_runs
        SET progress_current = %s,
            progress_total   = %s,
            summary          = %s::jsonb,
            logs             = %s::jsonb
        WHERE id = %s
        """,
        (progress_current, progress_total, json.dumps(summary), json.dumps(logs), run_id),
    )


def finish_run(
    cur: PgCursor,
    run_id: str,
    *,
    status: str,
    summary: dict,
    logs: list[str],
    error: str | None = None,
) -> None:
    """Close a run as 'concluido' or 'erro'."""
    cur.execute(
        """
        UPDATE sync_runs
        SET status      = %s,
            summary     = %s::jsonb,
            logs        = %s::jsonb,
            error       = %s,
            finished_at = now()
        WHERE id = %s
        """,
        (status, json.dumps(summary), json.dumps(logs), error, run_id),
    )
