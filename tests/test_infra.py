"""Tests for infra helpers: db transactions, time and settings."""

import os
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest


class TestTxn:
    """Tests for txn() commit/rollback - no real DB needed."""

    def test_commits_and_closes(self):
        from kiteintel.infra.db import txn

        conn = MagicMock()
        with patch("kiteintel.infra.db.get_conn", return_value=conn):
            with txn() as cur:
                cur.execute("SELECT 1")

        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()
        conn.close.assert_called_once()

    def test_rolls_back_on_error(self):
        from kiteintel.infra.db import txn

        conn = MagicMock()
        with patch("kiteintel.infra.db.get_conn", return_value=conn):
            with pytest.raises(ValueError):
                with txn():
                    raise ValueError("boom")

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        conn.close.assert_called_once()

    def test_borrowed_connection_not_closed(self):
        from kiteintel.infra.db import txn

        conn = MagicMock()
        with txn(conn):
            pass

        conn.commit.assert_called_once()
        conn.close.assert_not_called()

    def test_missing_database_url(self):
        from kiteintel.infra.db import get_conn

        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="DATABASE_URL"):
                get_conn()


class TestFromEpoch:
    def test_seconds(self):
        from kiteintel.infra.time import from_epoch

        assert from_epoch(1_700_000_000) == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)

    def test_milliseconds(self):
        from kiteintel.infra.time import from_epoch

        assert from_epoch(1_700_000_000_123).replace(microsecond=0) == datetime.fromtimestamp(
            1_700_000_000, tz=timezone.utc
        )

    @pytest.mark.parametrize("value", [0, -1])
    def test_non_positive_rejected(self, value):
        from kiteintel.infra.time import from_epoch

        with pytest.raises(ValueError):
            from_epoch(value)

    def test_utc_now_is_aware(self):
        from kiteintel.infra.time import utc_now

        assert utc_now().tzinfo == timezone.utc


class TestSettings:
    def test_evolution_required_vars(self):
        from kiteintel.infra.settings import load_evolution_settings

        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="EVOLUTION_BASE_URL"):
                load_evolution_settings()

    def test_evolution_trailing_slash_stripped(self):
        from kiteintel.infra.settings import load_evolution_settings

        env = {
            "EVOLUTION_BASE_URL": "http://evolution.local/",
            "EVOLUTION_INSTANCE": "kite",
            "EVOLUTION_API_KEY": "key",
            "EVOLUTION_MAX_RETRIES": "5",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = load_evolution_settings()

        assert settings.base_url == "http://evolution.local"
        assert settings.max_retries == 5

    def test_llm_key_required(self):
        from kiteintel.infra.settings import load_llm_settings

        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(RuntimeError, match="LLM_API_KEY"):
                load_llm_settings()

    def test_ingestion_defaults(self):
        from kiteintel.infra.settings import IngestionSettings, load_ingestion_settings

        with patch.dict(os.environ, {}, clear=True):
            assert load_ingestion_settings() == IngestionSettings()

    def test_analysis_override(self):
        from kiteintel.infra.settings import load_analysis_settings

        env = {
            "ANALYSIS_BATCH_SIZE": "2",
            "ANALYSIS_DELAY_SECONDS": "0",
            "ANALYSIS_LEASE_SECONDS": "120",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = load_analysis_settings()

        assert settings.batch_size == 2
        assert settings.delay_seconds == 0.0
        assert settings.lease_seconds == 120

    def test_bad_integer(self):
        from kiteintel.infra.settings import load_ingestion_settings

        with patch.dict(os.environ, {"INGEST_CHAT_LIMIT": "many"}, clear=True):
            with pytest.raises(RuntimeError, match="INGEST_CHAT_LIMIT"):
                load_ingestion_settings()
