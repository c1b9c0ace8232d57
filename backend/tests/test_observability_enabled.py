from __future__ import annotations

import importlib
import os
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from habitpilot.core.context import get_user_id
from habitpilot.db import models  # noqa: F401
from habitpilot.db.base import Base
from habitpilot.db.deps import get_db
from habitpilot.db.models.user import User
from habitpilot.observability import client as client_module
from habitpilot.services.job_queue import LLM_RETRY_QUEUE, JobQueue
from habitpilot.services.job_runner import run_job_batch


class _DummyTrace:
    def __init__(self, name=None, metadata=None, **kwargs):
        self.name = name
        self.metadata = metadata or {}
        self.ended = False

    def update(self, metadata=None, **kwargs):
        if metadata:
            self.metadata = metadata

    def end(self):
        self.ended = True


class _DummyOpik:
    def __init__(self, *args, **kwargs):
        self.traces = []

    def trace(self, **kwargs):
        trace = _DummyTrace(name=kwargs.get("name"), metadata=kwargs.get("metadata"))
        self.traces.append(trace)
        return trace


@pytest.fixture()
def sqlite_override():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )

    @event.listens_for(engine, "connect")
    def set_fk(conn, record):  # pragma: no cover - sqlite setup
        cursor = conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    return override_get_db


@pytest.mark.skipif("OPIK_API_KEY" not in os.environ, reason="OPIK_API_KEY env var required for Opik tests")
def test_app_runs_with_opik_enabled(monkeypatch, sqlite_override):
    api_key = os.environ["OPIK_API_KEY"]
    monkeypatch.setenv("OPIK_ENABLED", "true")
    monkeypatch.setenv("OPIK_PROJECT", "habitpilot-test")
    monkeypatch.setenv("OPIK_API_KEY", api_key)

    import habitpilot.core.config as config_module
    import habitpilot.main as main_module

    importlib.reload(config_module)
    importlib.reload(client_module)
    monkeypatch.setattr(client_module, "Opik", _DummyOpik)
    client_module._client = None
    client_module._init_attempted = False
    reloaded_main = importlib.reload(main_module)

    reloaded_main.app.dependency_overrides[get_db] = sqlite_override

    with TestClient(reloaded_main.app) as test_client:
        assert test_client.get("/health").status_code == 200
        resp = test_client.post(
            "/checkins",
            json={"user_id": str(uuid4()), "local_time": "20:00", "day_offset": 1},
        )
        assert resp.status_code == 200
        assert resp.json()["created"] is True

    names = [trace.name for trace in client_module.get_opik_client().traces]
    assert "http.health_check" in names
    assert "checkins.schedule" in names
    reloaded_main.app.dependency_overrides.clear()

    monkeypatch.setenv("OPIK_ENABLED", "false")
    importlib.reload(config_module)
    importlib.reload(client_module)
    client_module._client = None
    client_module._init_attempted = False
    importlib.reload(main_module)


def test_job_batch_is_traced_with_queue_metadata(monkeypatch, sqlite_override):
    dummy = _DummyOpik()
    monkeypatch.setattr(client_module, "_client", dummy)
    db = next(sqlite_override())
    user = User(id=uuid4())
    db.add(user)
    db.commit()
    JobQueue(db).enqueue(LLM_RETRY_QUEUE, {"message": "tu es là ?"}, user_id=user.id)
    seen_users = []

    def replay(session, job):
        seen_users.append(get_user_id())

    result = run_job_batch(db, LLM_RETRY_QUEUE, 5, "worker-trace", handlers={LLM_RETRY_QUEUE: replay})
    db.close()

    assert result.completed == 1
    assert seen_users == [str(user.id)]
    batch = [trace for trace in dummy.traces if trace.name == "jobs.run_batch"]
    assert len(batch) == 1
    assert batch[0].metadata["queue"] == LLM_RETRY_QUEUE
    assert batch[0].metadata["worker_id"] == "worker-trace"
    assert batch[0].ended
    assert "metric:jobs.batch.claimed" in [trace.name for trace in dummy.traces]
