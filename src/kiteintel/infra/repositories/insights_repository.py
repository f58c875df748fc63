"""Contact insights repository - one AI analysis record per contact.

Uses raw SQL with psycopg2 (no ORM).
"""

from datetime import datetime

from psycopg2.extensions import cursor as PgCursor


def upsert_insight(
    cur: PgCursor,
    *,
    contact_id: str,
    sentiment: str | None,
    engagement_score: int,
    conversion_probability: int,
    interests: list[str],
    objections: list[str],
    purchase_triggers: list[str],
    next_action: str | None,
    preferred_time: str | None,
    preferred_day: str | None,
    summary: str | None,
    total_messages: int,
    sent_messages: int,
    received_messages: int,
    first_interaction_at: datetime | None,
    last_interaction_at: datetime | None,
    avg_response_minutes: float | None,
) -> None:
    """Insert or replace the insight record for a contact (UNIQUE contact_id)."""
    cur.execute(
        """
        INSERT INTO contact_insights (
            contact_id, sentiment, engagement_score, conversion_probability,
            interests, objections, purchase_triggers, next_action,
            preferred_time, preferred_day, summary,
            total_messages, sent_messages, received_messages,
            first_interaction_at, last_interaction_at, avg_response_minutes,
            analyzed_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, now())
        ON CONFLICT (contact_id) DO UPDATE
        SET sentiment              = EXCLUDED.sentiment,
            engagement_score       = EXCLUDED.engagement_score,
            conversion_probability = EXCLUDED.conversion_probability,
            interests              = EXCLUDED.interests,
            objections             = EXCLUDED.objections,
            purchase_triggers      = EXCLUDED.purchase_triggers,
            next_action            = EXCLUDED.next_action,
            preferred_time         = EXCLUDED.preferred_time,
            preferred_day          = EXCLUDED.preferred_day,
            summary                = EXCLUDED.summary,
            total_messages         = EXCLUDED.total_messages,
            sent_messages          = EXCLUDED.sent_messages,
            received_messages      = EXCLUDED.received_messages,
            first_interaction_at   = EXCLUDED.first_interaction_at,
            last_interaction_at    = EXCLUDED.last_interaction_at,
            avg_response_minutes   = EXCLUDED.avg_response_minutes,
            analyzed_at            = now()
        """,
        (
            contact_id,
            sentiment,
            engagement_score,
            conversion_probability,
            interests,
            objections,
            purchase_triggers,
            next_action,
            preferred_time,
            preferred_day,
            summary,
            total_messages,
            sent_messages,
            received_messages,
            first_interaction_at,
            last_interaction_at,
            avg_response_minutes,
        ),
    )
