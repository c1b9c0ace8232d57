from __future__ import annotations

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from habitpilot.db import models  # noqa: F401
from habitpilot.db.base import Base
from habitpilot.db.deps import get_db
from habitpilot.db.models.scheduled_message import ScheduledMessage
from habitpilot.db.models.user import User
from habitpilot.main import app


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )

    @event.listens_for(engine, "connect")
    def set_fk(conn, record):  # pragma: no cover
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

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client, TestingSessionLocal
    app.dependency_overrides.clear()


def test_create_checkin_is_idempotent(client):
    test_client, session_factory = client
    user_id = uuid4()
    payload = {
        "user_id": str(user_id),
        "local_time": "20:00",
        "day_offset": 1,
        "event_context": "bilan_du_soir",
        "draft_message": "Alors, cette marche ?",
    }

    first = test_client.post("/checkins", json=payload)
    second = test_client.post("/checkins", json=payload)

    assert first.status_code == 200
    assert first.json()["created"] is True
    assert second.status_code == 200
    assert second.json()["created"] is False
    assert second.json()["scheduled_for"] == first.json()["scheduled_for"]

    session = session_factory()
    assert session.get(User, user_id) is not None
    rows = session.execute(select(ScheduledMessage)).scalars().all()
    assert len(rows) == 1
    assert rows[0].event_context == "bilan_du_soir"
    assert rows[0].draft_message == "Alors, cette marche ?"
    assert rows[0].message_payload["source"] == "api"
    session.close()


def test_create_checkin_rejects_unparseable_time(client):
    test_client, session_factory = client

    resp = test_client.post("/checkins", json={"user_id": str(uuid4()), "local_time": "midi"})

    assert resp.status_code == 422
    session = session_factory()
    assert session.execute(select(ScheduledMessage)).scalars().all() == []
    session.close()


def test_preview_converts_local_time_to_utc(client):
    test_client, _ = client

    resp = test_client.get(
        "/checkins/preview",
        params={"local_time": "20:00", "timezone": "Europe/Paris", "now": "2025-01-15T12:00:00+00:00"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["timezone"] == "Europe/Paris"
    assert body["scheduled_for"].startswith("2025-01-15T19:00:00")


def test_preview_applies_day_offset_in_summer(client):
    test_client, _ = client

    resp = test_client.get(
        "/checkins/preview",
        params={
            "local_time": "08:30",
            "timezone": "Europe/Paris",
            "day_offset": 2,
            "now": "2025-07-01T12:00:00+00:00",
        },
    )

    assert resp.status_code == 200
    assert resp.json()["scheduled_for"].startswith("2025-07-03T06:30:00")


def test_preview_rejects_invalid_time(client):
    test_client, _ = client

    resp = test_client.get("/checkins/preview", params={"local_time": "vingt heures"})

    assert resp.status_code == 422


def test_preview_rejects_unknown_timezone(client):
    test_client, _ = client

    resp = test_client.get("/checkins/preview", params={"local_time": "20:00", "timezone": "Mars/Olympus"})

    assert resp.status_code == 422
    assert "Unknown timezone" in resp.json()["detail"]
