"""Sync run tracking - persisted progress for long full-sync runs.

A run row is written at start, after every batch and at the end, each in its
own short transaction, so progress stays visible while the sync is still
running and survives a crash mid-run.
"""

from __future__ import annotations

from collections import deque

from kiteintel.infra.db import txn
from kiteintel.infra.repositories import sync_runs_repository
from kiteintel.infra.time import utc_now

# Only the tail of the run log is kept on the row
MAX_LOG_LINES = 100


class SyncRunTracker:
    """Progress recorder for one full-sync run.

    Log lines must not contain PII (counts and batch numbers only).
    """

    def __init__(self, run_id: str, mode: str) -> None:
        self.run_id = run_id
        self.mode = mode
        self.total = 0
        self.current = 0
        self._logs: deque[str] = deque(maxlen=MAX_LOG_LINES)

    @classmethod
    def start(cls, mode: str) -> "SyncRunTracker":
        with txn() as cur:
            run_id = sync_runs_repository.insert_run(cur, mode)
        tracker = cls(run_id, mode)
        tracker.log(f"sync started (mode={mode})")
        return tracker

    @property
    def logs(self) -> list[str]:
        return list(self._logs)

    def log(self, line: str) -> None:
        self._logs.append(f"[{utc_now().strftime('%H:%M:%S')}] {line}")

    def add_total(self, count: int) -> None:
        self.total += count

    def progress(self, done: int, summary: dict) -> None:
        """Advance progress by `done` items and persist the snapshot."""
        self.current += done
        with txn() as cur:
            sync_runs_repository.update_progress(
                cur,
                self.run_id,
                progress_current=self.current,
                progress_total=self.total,
                summary=summary,
                logs=self.logs,
            )

    def finish(self, summary: dict, error: str | None = None) -> None:
        """Close the run as 'concluido', or 'erro' when error is given."""
        self.log("sync failed" if error else "sync finished")
        with txn() as cur:
            sync_runs_repository.finish_run(
                cur,
                self.run_id,
                status="erro" if error else "concluido",
                summary=summary,
                logs=self.logs,
                error=error,
            )
