"""Shared pytest fixtures for kiteintel tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from .helpers import FakeStore  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_module_clients():
    """Reset module-level clients to avoid cross-test contamination.

    Route modules cache their gateway/LLM clients and the webhook keeps one
    inline TasksClient; a client injected by one test must not leak into the
    next.
    """
    from kiteintel.api.routes import tasks_analysis, tasks_ingestion, webhooks_whatsapp

    tasks_ingestion._set_evolution_client(None)
    tasks_analysis._set_llm_client(None)
    webhooks_whatsapp._tasks_client.clear()
    yield
    tasks_ingestion._set_evolution_client(None)
    tasks_analysis._set_llm_client(None)
    webhooks_whatsapp._tasks_client.clear()


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    """In-memory repository layer installed in place of Postgres."""
    return FakeStore().install(monkeypatch)


@pytest.fixture
def local_task_auth(monkeypatch):
    """Enable the local-dev shared-secret task auth and return the headers."""
    monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "kiteintel-tasks-local")
    monkeypatch.setenv("INTERNAL_TASK_SECRET", "test-task-secret")
    return {"X-Internal-Task-Secret": "test-task-secret"}
