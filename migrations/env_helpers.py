"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without triggering
alembic.context at import time.
"""

from __future__ import annotations

import os
from urllib.parse import quote_plus, urlparse, urlunparse


def get_database_url() -> str:
    """Return DATABASE_URL as a SQLAlchemy psycopg2 URL.

    postgres:// and postgresql:// schemes are rewritten to
    postgresql+psycopg2://. DB_PASSWORD is injected when the URL has none.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")

    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        url = "postgresql+psycopg2://" + url[len("postgresql://"):]

    db_password = os.environ.get("DB_PASSWORD", "")
    if db_password:
        parsed = urlparse(url)
        if not parsed.password and parsed.hostname:
            netloc = f"{quote_plus(parsed.username or '')}:{quote_plus(db_password)}@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            url = urlunparse(parsed._replace(netloc=netloc))
    return url
