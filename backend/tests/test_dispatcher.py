from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from habitpilot.core.config import settings
from habitpilot.core.errors import ClassificationFailure, HandlerFailure
from habitpilot.db import models  # noqa: F401
from habitpilot.db.base import Base
from habitpilot.db.models.chat_message import ChatMessage
from habitpilot.db.models.job_record import JOB_PENDING, JobRecord
from habitpilot.db.models.user import User
from habitpilot.services.background import InlineBackgroundRunner
from habitpilot.services.dispatcher import Dispatcher
from habitpilot.services.emergency import OUTAGE_TEMPLATE
from habitpilot.services.handlers.base import HandlerResult, ModeHandler
from habitpilot.services.intent_classifier import ClassifierResult
from habitpilot.services.job_queue import LLM_RETRY_QUEUE
from habitpilot.services.modes import AgentMode
from habitpilot.services.routing.investigation import POST_CHECKUP
from habitpilot.services.routing.parking_lot import opened_after_checkup
from habitpilot.services.state_store import StateStore

DAILY_CHECKIN_TEXT = (
    "Bonsoir 🙂 Petit bilan rapide ?\n\n1) Un truc dont tu es fier(e) aujourd'hui ?\n"
    "2) Un truc à ajuster pour demain ?"
)


def _session():
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

    TestingSession = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(bind=engine)
    return TestingSession


class FakeClassifier:
    def __init__(self, mode=AgentMode.COMPANION, risk=0, error=None):
        self.mode = mode
        self.risk = risk
        self.error = error

    def classify(self, message, state, last_assistant_text=None):
        if self.error:
            raise self.error
        return ClassifierResult(mode=self.mode, risk_score=self.risk)


class FakeHandler(ModeHandler):
    def __init__(self, mode, reply=None, respond=None, error=None):
        self.mode = mode
        self.reply = reply or f"reply from {mode.value}"
        self.respond = respond
        self.error = error
        self.contexts = []

    def run(self, ctx):
        self.contexts.append(ctx)
        if self.error:
            raise self.error
        if self.respond:
            return self.respond(ctx)
        return HandlerResult(reply=self.reply)


class FakeEmergency:
    def __init__(self, reply=None, error=None):
        self.text = reply
        self.error = error
        self.calls = []

    def reply(self, message, mode, *, checkup_active, post_checkup):
        self.calls.append((mode, checkup_active, post_checkup))
        if self.error:
            raise self.error
        return self.text


class FakeVerifier:
    def __init__(self):
        self.variants = []

    def verify(self, draft, mode, state_snapshot=None, *, variant, user_message=None):
        self.variants.append(variant)
        return f"{draft} (vérifié)"


class FakeSummarizer:
    def __init__(self):
        self.calls = []

    def run(self, user_id, scope):
        self.calls.append((user_id, scope))


def _handlers(**overrides):
    handlers = {mode: FakeHandler(mode) for mode in AgentMode}
    for name, handler in overrides.items():
        handlers[AgentMode(name)] = handler
    return handlers


def _dispatcher(Session, session, **kwargs):
    return Dispatcher(
        session,
        classifier=kwargs.pop("classifier", FakeClassifier()),
        handlers=kwargs.pop("handlers", _handlers()),
        verifier=kwargs.pop("verifier", None),
        emergency=kwargs.pop("emergency", FakeEmergency(reply="Je suis là, raconte-moi.")),
        background=kwargs.pop("background", InlineBackgroundRunner()),
        session_factory=Session,
        **kwargs,
    )


def _seed_state(session, user_id, state, scope="web"):
    store = StateStore(session)
    store.load(user_id, scope)
    store.mutate(user_id, scope, lambda s: s.copy(investigation_state=state))


def _active_interview(topics=None, turns=2):
    return {
        "started_at": "2025-01-15T19:50:00+00:00",
        "turns": turns,
        "temp_memory": {"deferred_topics": list(topics or []), "current_topic_index": 0},
    }


def _transcript(session, user_id):
    return (
        session.execute(
            select(ChatMessage).where(ChatMessage.user_id == user_id).order_by(ChatMessage.created_at.asc())
        )
        .scalars()
        .all()
    )


def test_companion_turn_persists_state_and_transcript():
    Session = _session()
    session = Session()
    user_id = uuid4()
    dispatcher = _dispatcher(Session, session)

    result = dispatcher.process_turn(user_id, "web", "salut !")

    assert result.reply_text == "reply from companion"
    assert result.resolved_mode is AgentMode.COMPANION
    assert not result.degraded

    snapshot = StateStore(session).load(user_id)
    assert snapshot.current_mode is AgentMode.COMPANION
    assert snapshot.unprocessed_msg_count == 1

    messages = {m.role: m for m in _transcript(session, user_id)}
    assert messages["user"].content == "salut !"
    assert messages["assistant"].content == "reply from companion"
    assert messages["assistant"].agent_used == "companion"
    assert messages["assistant"].metadata_json["classifier_mode"] == "companion"
    assert session.get(User, user_id).last_inbound_at is not None
    session.close()


def test_explicit_checkup_request_runs_investigator():
    Session = _session()
    session = Session()
    user_id = uuid4()

    def interview(ctx):
        state = dict(ctx.investigation_state)
        state["turns"] = 1
        return HandlerResult(reply="Comment s'est passée ta journée ?", investigation_state=state, updates_state=True)

    investigator = FakeHandler(AgentMode.INVESTIGATOR, respond=interview)
    dispatcher = _dispatcher(Session, session, handlers=_handlers(investigator=investigator))

    result = dispatcher.process_turn(user_id, "web", "je veux faire mon bilan")

    assert result.resolved_mode is AgentMode.INVESTIGATOR
    assert "interview_started" in result.reasons
    assert investigator.contexts[0].investigation_state["turns"] == 0
    snapshot = StateStore(session).load(user_id)
    assert snapshot.current_mode is AgentMode.INVESTIGATOR
    assert snapshot.investigation_state["turns"] == 1
    session.close()


def test_provided_history_feeds_daily_checkin_detection():
    Session = _session()
    session = Session()
    user_id = uuid4()
    dispatcher = _dispatcher(Session, session)

    result = dispatcher.process_turn(
        user_id,
        "web",
        "j'ai couru 20 minutes",
        recent_history=[{"role": "assistant", "content": DAILY_CHECKIN_TEXT}],
    )

    assert result.resolved_mode is AgentMode.INVESTIGATOR
    assert StateStore(session).load(user_id).investigation_state["started_at"]
    session.close()


def test_classifier_failure_fails_open_to_companion():
    Session = _session()
    session = Session()
    user_id = uuid4()
    classifier = FakeClassifier(error=ClassificationFailure("bad json"))
    dispatcher = _dispatcher(Session, session, classifier=classifier)

    result = dispatcher.process_turn(user_id, "web", "coucou")

    assert result.resolved_mode is AgentMode.COMPANION
    assert result.reply_text == "reply from companion"
    assert not result.degraded
    session.close()


def test_handler_failure_uses_emergency_reply():
    Session = _session()
    session = Session()
    user_id = uuid4()
    emergency = FakeEmergency(reply="Je suis là, raconte-moi.")
    handlers = _handlers(architect=FakeHandler(AgentMode.ARCHITECT, error=RuntimeError("model down")))
    dispatcher = _dispatcher(
        Session,
        session,
        classifier=FakeClassifier(mode=AgentMode.ARCHITECT),
        handlers=handlers,
        emergency=emergency,
    )

    result = dispatcher.process_turn(user_id, "web", "aide-moi à organiser ma semaine")

    assert result.reply_text == "Je suis là, raconte-moi."
    assert result.degraded
    assert result.resolved_mode is AgentMode.ARCHITECT
    assert emergency.calls == [(AgentMode.ARCHITECT, False, False)]
    assert StateStore(session).load(user_id).current_mode is AgentMode.COMPANION
    assert session.execute(select(JobRecord)).scalars().all() == []
    session.close()


def test_empty_handler_reply_counts_as_failure():
    Session = _session()
    session = Session()
    handlers = _handlers(companion=FakeHandler(AgentMode.COMPANION, reply="   "))
    dispatcher = _dispatcher(Session, session, handlers=handlers)

    result = dispatcher.process_turn(uuid4(), "web", "coucou")

    assert result.degraded
    assert result.reply_text == "Je suis là, raconte-moi."
    session.close()


def test_total_outage_returns_template_and_enqueues_retry():
    Session = _session()
    session = Session()
    user_id = uuid4()
    background = InlineBackgroundRunner()
    handlers = _handlers(companion=FakeHandler(AgentMode.COMPANION, error=RuntimeError("model down")))
    dispatcher = _dispatcher(
        Session,
        session,
        handlers=handlers,
        emergency=FakeEmergency(error=RuntimeError("still down")),
        background=background,
    )

    result = dispatcher.process_turn(user_id, "web", "tu es là ?")

    assert result.reply_text == OUTAGE_TEMPLATE
    assert result.degraded
    assert background.submitted == ["llm_retry.enqueue"]

    jobs = session.execute(select(JobRecord)).scalars().all()
    assert len(jobs) == 1
    job = jobs[0]
    assert job.queue_name == LLM_RETRY_QUEUE
    assert job.status == JOB_PENDING
    assert job.attempt_count == 0
    assert job.user_id == user_id
    assert job.payload["message"] == "tu es là ?"
    assert job.payload["mode"] == "companion"
    assert job.payload["reason"] == "RuntimeError"

    reply = [m for m in _transcript(session, user_id) if m.role == "assistant"][0]
    assert reply.content == OUTAGE_TEMPLATE
    assert reply.metadata_json["outage"] is True
    session.close()


def test_outage_raises_when_replaying():
    Session = _session()
    session = Session()
    user_id = uuid4()
    background = InlineBackgroundRunner()
    handlers = _handlers(companion=FakeHandler(AgentMode.COMPANION, error=RuntimeError("model down")))
    dispatcher = _dispatcher(
        Session,
        session,
        handlers=handlers,
        emergency=FakeEmergency(error=RuntimeError("still down")),
        background=background,
    )

    with pytest.raises(HandlerFailure):
        dispatcher.process_turn(user_id, "web", "tu es là ?", log_user_message=False, raise_on_outage=True)

    assert background.submitted == []
    assert _transcript(session, user_id) == []
    session.close()


def test_user_deferral_during_checkup_is_captured():
    Session = _session()
    session = Session()
    user_id = uuid4()
    _seed_state(session, user_id, _active_interview())

    def interview(ctx):
        state = dict(ctx.investigation_state)
        state["turns"] = state["turns"] + 1
        return HandlerResult(reply="Ça marche. Et ta séance de sport ?", investigation_state=state, updates_state=True)

    handlers = _handlers(investigator=FakeHandler(AgentMode.INVESTIGATOR, respond=interview))
    dispatcher = _dispatcher(
        Session,
        session,
        classifier=FakeClassifier(mode=AgentMode.INVESTIGATOR),
        handlers=handlers,
    )

    dispatcher.process_turn(user_id, "web", "Mon stress au travail me bouffe, on en reparle après")

    state = StateStore(session).load(user_id).investigation_state
    assert state["turns"] == 3
    assert state["temp_memory"]["deferred_topics"] == ["Mon stress au travail"]
    session.close()


def test_not_now_deferral_keeps_interview_running():
    Session = _session()
    session = Session()
    user_id = uuid4()
    _seed_state(session, user_id, _active_interview())

    def interview(ctx):
        state = dict(ctx.investigation_state)
        state["turns"] = state["turns"] + 1
        return HandlerResult(reply="Ok, on garde ça. Et ton sport ?", investigation_state=state, updates_state=True)

    investigator = FakeHandler(AgentMode.INVESTIGATOR, respond=interview)
    dispatcher = _dispatcher(
        Session,
        session,
        classifier=FakeClassifier(mode=AgentMode.INVESTIGATOR),
        handlers=_handlers(investigator=investigator),
    )

    result = dispatcher.process_turn(user_id, "web", "Pas maintenant, on en reparle plus tard de mon sommeil")

    assert result.resolved_mode is AgentMode.INVESTIGATOR
    assert "checkup_stopped" not in result.reasons
    assert len(investigator.contexts) == 1
    state = StateStore(session).load(user_id).investigation_state
    assert "status" not in state
    assert state["turns"] == 3
    assert state["temp_memory"]["deferred_topics"] == ["mon sommeil"]
    session.close()


def test_deferral_on_closing_turn_opens_parking_lot():
    Session = _session()
    session = Session()
    user_id = uuid4()
    _seed_state(session, user_id, _active_interview(turns=3))

    def finish(ctx):
        return HandlerResult(reply="Merci pour ce bilan.", updates_state=True, interview_complete=True)

    dispatcher = _dispatcher(
        Session,
        session,
        classifier=FakeClassifier(mode=AgentMode.INVESTIGATOR),
        handlers=_handlers(investigator=FakeHandler(AgentMode.INVESTIGATOR, respond=finish)),
    )

    result = dispatcher.process_turn(user_id, "web", "Mon stress au travail, on en reparle après")

    assert result.reply_text == "Merci pour ce bilan."
    state = StateStore(session).load(user_id).investigation_state
    assert state["status"] == POST_CHECKUP
    assert state["temp_memory"]["deferred_topics"] == ["Mon stress au travail"]
    assert state["temp_memory"]["current_topic_index"] == 0
    assert state["temp_memory"]["awaiting_confirmation"] is True
    session.close()


def test_completed_interview_opens_parking_lot():
    Session = _session()
    session = Session()
    user_id = uuid4()
    _seed_state(session, user_id, _active_interview(topics=["le sport"], turns=3))

    def finish(ctx):
        return HandlerResult(
            reply="Bravo pour cette journée.",
            investigation_state=dict(ctx.investigation_state),
            updates_state=True,
            interview_complete=True,
        )

    handlers = _handlers(investigator=FakeHandler(AgentMode.INVESTIGATOR, respond=finish))
    dispatcher = _dispatcher(
        Session,
        session,
        classifier=FakeClassifier(mode=AgentMode.INVESTIGATOR),
        handlers=handlers,
    )

    result = dispatcher.process_turn(user_id, "web", "ça m'a fait du bien")

    assert "Tu voulais qu'on reparle de le sport." in result.reply_text
    state = StateStore(session).load(user_id).investigation_state
    assert state["status"] == POST_CHECKUP
    assert state["temp_memory"]["deferred_topics"] == ["le sport"]
    assert state["temp_memory"]["awaiting_confirmation"] is True
    session.close()


def test_completed_interview_without_topics_clears_state():
    Session = _session()
    session = Session()
    user_id = uuid4()
    _seed_state(session, user_id, _active_interview(turns=3))

    def finish(ctx):
        return HandlerResult(reply="Bravo pour cette journée.", updates_state=True, interview_complete=True)

    handlers = _handlers(investigator=FakeHandler(AgentMode.INVESTIGATOR, respond=finish))
    dispatcher = _dispatcher(
        Session,
        session,
        classifier=FakeClassifier(mode=AgentMode.INVESTIGATOR),
        handlers=handlers,
    )

    result = dispatcher.process_turn(user_id, "web", "ça m'a fait du bien")

    assert result.reply_text == "Bravo pour cette journée."
    assert StateStore(session).load(user_id).investigation_state is None
    session.close()


def test_non_investigator_reply_during_checkup_is_verified():
    Session = _session()
    session = Session()
    user_id = uuid4()
    _seed_state(session, user_id, _active_interview())
    verifier = FakeVerifier()
    dispatcher = _dispatcher(
        Session,
        session,
        classifier=FakeClassifier(mode=AgentMode.ARCHITECT),
        verifier=verifier,
    )

    result = dispatcher.process_turn(user_id, "web", "mon planning est ingérable")

    assert result.resolved_mode is AgentMode.ARCHITECT
    assert result.reply_text == "reply from architect (vérifié)"
    assert verifier.variants == ["checkup"]
    session.close()


def test_parking_lot_topic_gets_directive_and_post_checkup_verification():
    Session = _session()
    session = Session()
    user_id = uuid4()
    _seed_state(session, user_id, opened_after_checkup(["le sport"]))
    verifier = FakeVerifier()
    companion = FakeHandler(AgentMode.COMPANION)
    dispatcher = _dispatcher(Session, session, handlers=_handlers(companion=companion), verifier=verifier)

    result = dispatcher.process_turn(user_id, "web", "oui")

    assert result.reply_text.endswith("(vérifié)")
    assert '"le sport"' in companion.contexts[0].directive
    assert verifier.variants == ["post_checkup"]
    state = StateStore(session).load(user_id).investigation_state
    assert state["status"] == POST_CHECKUP
    assert "awaiting_confirmation" not in state["temp_memory"]
    session.close()


def test_sentry_reply_is_never_verified():
    Session = _session()
    session = Session()
    user_id = uuid4()
    _seed_state(session, user_id, _active_interview())
    verifier = FakeVerifier()
    dispatcher = _dispatcher(
        Session,
        session,
        classifier=FakeClassifier(mode=AgentMode.SENTRY, risk=9),
        verifier=verifier,
    )

    result = dispatcher.process_turn(user_id, "web", "je ne vois plus d'issue")

    assert result.reply_text == "reply from sentry"
    assert verifier.variants == []
    session.close()


def test_summarizer_runs_every_threshold_messages():
    Session = _session()
    session = Session()
    user_id = uuid4()
    summarizer = FakeSummarizer()
    background = InlineBackgroundRunner()
    config = settings.model_copy(update={"summarizer_threshold": 2})
    dispatcher = _dispatcher(Session, session, summarizer=summarizer, background=background, config=config)

    dispatcher.process_turn(user_id, "web", "un")
    assert summarizer.calls == []
    dispatcher.process_turn(user_id, "web", "deux")
    assert summarizer.calls == [(user_id, "web")]
    dispatcher.process_turn(user_id, "web", "trois")
    assert background.submitted == ["summarizer"]
    session.close()
