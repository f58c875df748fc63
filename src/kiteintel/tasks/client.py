"""Tasks client with idempotent enqueue of follow-up worker tasks.

Backends, selectable via TASKS_BACKEND env var:
- inline (default): registers the task without executing it (dev/tests)
- http: sends the task to the worker via HTTP POST
"""

import os
from datetime import datetime


class TasksClient:
    """Tasks client with idempotent enqueue by task_id.

    Tracks task_ids seen by this instance so the same follow-up (e.g. one
    analysis run per time bucket) is only sent once.
    """

    def __init__(self, backend: str | None = None) -> None:
        self._executed_ids: set[str] = set()
        self._scheduled_tasks: list[dict] = []
        self._backend = backend or os.environ.get("TASKS_BACKEND", "inline")

    def enqueue_http(
        self,
        task_id: str,
        url_path: str,
        payload: dict,
        correlation_id: str | None = None,
        schedule_time: datetime | None = None,
    ) -> bool:
        """Enqueue a worker task.

        Args:
            task_id: Unique identifier for idempotency.
            url_path: Worker endpoint path (e.g., "/tasks/analysis/process").
            payload: Task data (must not contain PII).
            correlation_id: Optional correlation ID for tracing.
            schedule_time: Optional future execution time.

        Returns:
            True if the task was enqueued, False if the task_id was already
            seen or the HTTP backend failed (the id is then forgotten).

        Raises:
            ValueError: If TASKS_BACKEND is unknown.
        """
        if task_id in self._executed_ids:
            return False

        self._executed_ids.add(task_id)

        if self._backend == "inline":
            self._scheduled_tasks.append({
                "task_id": task_id,
                "url_path": url_path,
                "payload": payload,
                "correlation_id": correlation_id,
                "schedule_time": schedule_time,
            })
            return True

        elif self._backend == "http":
            from kiteintel.tasks.http_backend import enqueue_http

            sent = enqueue_http(task_id, url_path, payload, correlation_id, schedule_time)
            if not sent:
                # Let a later webhook in the same bucket retry the follow-up
                self._executed_ids.discard(task_id)
            return sent

        else:
            raise ValueError(f"Unknown TASKS_BACKEND: {self._backend}")

    def was_executed(self, task_id: str) -> bool:
        return task_id in self._executed_ids

    def get_scheduled_tasks(self) -> list[dict]:
        """Get tasks registered by the inline backend (useful for testing)."""
        return list(self._scheduled_tasks)

    def clear(self) -> None:
        """Clear seen task_ids and registered tasks (useful for testing)."""
        self._executed_ids.clear()
        self._scheduled_tasks.clear()
