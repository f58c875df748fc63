"""Pipeline schema: contacts, messages, analysis queue, insights, sync runs.

Revision ID: 001_pipeline_schema
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from pathlib import Path

from alembic import op

# revision identifiers, used by Alembic.
revision = "001_pipeline_schema"
down_revision = None
branch_labels = None
depends_on = None


def _read_sql() -> str:
    sql_path = Path(__file__).resolve().parents[1] / "sql" / "001_pipeline.sql"
    return sql_path.read_text(encoding="utf-8")


def upgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql(_read_sql())


def downgrade() -> None:
    op.execute(
        "DROP TABLE IF EXISTS sync_runs, contact_insights, analysis_queue, messages, contacts"
    )
