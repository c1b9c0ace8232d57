from __future__ import annotations

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from habitpilot.api.routes.chat import get_dispatcher
from habitpilot.db import models  # noqa: F401
from habitpilot.db.base import Base
from habitpilot.db.deps import get_db
from habitpilot.main import app
from habitpilot.services.dispatcher import TurnResult
from habitpilot.services.modes import AgentMode


class RecordingDispatcher:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def process_turn(self, user_id, scope, message, recent_history=None, **kwargs):
        self.calls.append(
            {"user_id": user_id, "scope": scope, "message": message, "history": recent_history, **kwargs}
        )
        return self.result


@pytest.fixture()
def client(monkeypatch):
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

    dispatcher = RecordingDispatcher(
        TurnResult(reply_text="Top, on en reparle demain ?", resolved_mode=AgentMode.COMPANION)
    )
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    with TestClient(app) as test_client:
        yield test_client, dispatcher
    app.dependency_overrides.clear()


def test_chat_turn_returns_reply_and_mode(client):
    test_client, dispatcher = client
    user_id = uuid4()

    resp = test_client.post(
        "/chat/turn",
        json={"user_id": str(user_id), "message": "j'ai fait ma séance de sport"},
        headers={"X-Request-Id": "req-chat-1"},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["reply"] == "Top, on en reparle demain ?"
    assert body["mode"] == "companion"
    assert body["degraded"] is False
    assert body["reasons"] == []
    assert body["request_id"] == "req-chat-1"

    call = dispatcher.calls[0]
    assert call["user_id"] == user_id
    assert call["scope"] == "web"
    assert call["history"] is None
    assert call["channel"] == "web"
    assert call["assistant_metadata"] == {"request_id": "req-chat-1"}


def test_chat_turn_forwards_recent_history(client):
    test_client, dispatcher = client

    resp = test_client.post(
        "/chat/turn",
        json={
            "user_id": str(uuid4()),
            "message": "oui",
            "scope": "whatsapp",
            "channel": "whatsapp",
            "recent_history": [{"role": "assistant", "content": "Petit bilan rapide ?"}],
        },
    )

    assert resp.status_code == 200
    call = dispatcher.calls[0]
    assert call["scope"] == "whatsapp"
    assert call["channel"] == "whatsapp"
    assert call["history"] == [{"role": "assistant", "content": "Petit bilan rapide ?"}]


def test_chat_turn_reports_degraded_reply(client):
    test_client, dispatcher = client
    dispatcher.result = TurnResult(
        reply_text="Petit souci technique, je reviens vers toi.",
        resolved_mode=AgentMode.ARCHITECT,
        degraded=True,
        reasons=["handler_failed"],
    )

    resp = test_client.post("/chat/turn", json={"user_id": str(uuid4()), "message": "aide-moi à planifier"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["degraded"] is True
    assert body["mode"] == "architect"
    assert body["reasons"] == ["handler_failed"]


def test_chat_turn_rejects_empty_message(client):
    test_client, dispatcher = client

    resp = test_client.post("/chat/turn", json={"user_id": str(uuid4()), "message": ""})

    assert resp.status_code == 422
    assert dispatcher.calls == []


def test_chat_turn_rejects_unknown_history_role(client):
    test_client, _ = client

    resp = test_client.post(
        "/chat/turn",
        json={"user_id": str(uuid4()), "message": "salut", "recent_history": [{"role": "system", "content": "x"}]},
    )

    assert resp.status_code == 422
