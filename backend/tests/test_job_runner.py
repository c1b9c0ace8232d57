from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from habitpilot.core.config import settings
from habitpilot.core.errors import JobPermanentFailure
from habitpilot.db import models  # noqa: F401
from habitpilot.db.base import Base
from habitpilot.db.models.agent_action_log import AgentActionLog
from habitpilot.db.models.job_record import JOB_COMPLETED, JOB_FAILED, JOB_PENDING, JobRecord
from habitpilot.db.models.user import User
from habitpilot.services import job_runner
from habitpilot.services.chat_log import log_message
from habitpilot.services.dispatcher import TurnResult
from habitpilot.services.job_queue import EVAL_JUDGE_QUEUE, LLM_RETRY_QUEUE, JobQueue
from habitpilot.services.modes import AgentMode


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


def _seed_user(session):
    user_id = uuid4()
    session.add(User(id=user_id))
    session.commit()
    return user_id


def _jobs(session):
    return {job.payload.get("n"): job for job in session.execute(select(JobRecord)).scalars().all()}


def test_batch_limit_is_clamped_per_queue():
    assert job_runner.batch_limit(LLM_RETRY_QUEUE) == settings.llm_retry_batch_default
    assert job_runner.batch_limit(LLM_RETRY_QUEUE, 10_000) == settings.llm_retry_batch_max
    assert job_runner.batch_limit(EVAL_JUDGE_QUEUE) == settings.eval_batch_default
    assert job_runner.batch_limit(EVAL_JUDGE_QUEUE, 10_000) == settings.eval_batch_max
    assert job_runner.batch_limit(EVAL_JUDGE_QUEUE, 0) == 1


def test_run_batch_counts_outcomes():
    Session = _session()
    session = Session()
    queue = JobQueue(session)
    queue.enqueue(LLM_RETRY_QUEUE, {"n": "ok"})
    queue.enqueue(LLM_RETRY_QUEUE, {"n": "flaky"})
    queue.enqueue(LLM_RETRY_QUEUE, {"n": "broken"})
    queue.enqueue(LLM_RETRY_QUEUE, {"n": "last_try"}, max_attempts=1)

    def handler(db, job):
        kind = job.payload["n"]
        if kind in ("flaky", "last_try"):
            raise RuntimeError("model down")
        if kind == "broken":
            raise JobPermanentFailure("bad payload")

    result = job_runner.run_job_batch(session, LLM_RETRY_QUEUE, 10, "worker-a", handlers={LLM_RETRY_QUEUE: handler})

    assert result.claimed == 4
    assert result.completed == 1
    assert result.rescheduled == 1
    assert result.failed == 2

    jobs = _jobs(session)
    assert jobs["ok"].status == JOB_COMPLETED
    assert jobs["flaky"].status == JOB_PENDING
    assert jobs["flaky"].attempt_count == 1
    assert jobs["flaky"].last_error == "RuntimeError: model down"
    assert jobs["broken"].status == JOB_FAILED
    assert jobs["last_try"].status == JOB_FAILED
    session.close()


def test_run_batch_rejects_unknown_queue():
    Session = _session()
    with pytest.raises(ValueError):
        job_runner.run_job_batch(Session(), "nope", None, "worker-a")


def test_replay_failed_turn_reruns_dispatcher(monkeypatch):
    Session = _session()
    session = Session()
    user_id = _seed_user(session)
    calls = []

    class RecordingDispatcher:
        def process_turn(self, user_id, scope, message, **kwargs):
            calls.append((user_id, scope, message, kwargs))
            return TurnResult(reply_text="Me revoilà !", resolved_mode=AgentMode.COMPANION)

    monkeypatch.setattr(job_runner, "build_dispatcher", lambda db: RecordingDispatcher())
    JobQueue(session).enqueue(
        LLM_RETRY_QUEUE,
        {"user_id": str(user_id), "scope": "web", "channel": "whatsapp", "message": "tu es là ?"},
        user_id=user_id,
    )

    result = job_runner.run_job_batch(session, LLM_RETRY_QUEUE, None, "worker-a")

    assert result.completed == 1
    (called_user, scope, message, kwargs) = calls[0]
    assert called_user == user_id
    assert (scope, message) == ("web", "tu es là ?")
    assert kwargs["channel"] == "whatsapp"
    assert kwargs["log_user_message"] is False
    assert kwargs["raise_on_outage"] is True
    assert kwargs["assistant_metadata"]["source"] == LLM_RETRY_QUEUE
    assert kwargs["assistant_metadata"]["attempt"] == 1
    session.close()


def test_replay_without_message_fails_permanently(monkeypatch):
    Session = _session()
    session = Session()
    user_id = _seed_user(session)
    monkeypatch.setattr(job_runner, "build_dispatcher", lambda db: pytest.fail("dispatcher should not run"))
    JobQueue(session).enqueue(LLM_RETRY_QUEUE, {"user_id": str(user_id), "message": "  "}, user_id=user_id)

    result = job_runner.run_job_batch(session, LLM_RETRY_QUEUE, None, "worker-a")

    assert result.failed == 1
    job = session.execute(select(JobRecord)).scalar_one()
    assert job.status == JOB_FAILED
    assert "no message" in job.last_error
    session.close()


class FakeJudge:
    def __init__(self, verdict):
        self.verdict = verdict
        self.prompts = []

    def generate_json(self, system_prompt, user_prompt, **kwargs):
        self.prompts.append(user_prompt)
        return self.verdict


def test_eval_job_writes_judgement(monkeypatch):
    Session = _session()
    session = Session()
    user_id = _seed_user(session)
    log_message(session, user_id=user_id, scope="web", role="user", content="j'ai marché 20 minutes")
    log_message(session, user_id=user_id, scope="web", role="assistant", content="Bravo ! On continue ?")
    session.commit()
    judge = FakeJudge({"score": 9, "issues": ["un peu long"], "summary": "Bon échange"})
    monkeypatch.setattr(job_runner, "get_llm_client", lambda: judge)

    job_id = job_runner.enqueue_eval_job(session, user_id, reason="nightly")
    result = job_runner.run_job_batch(session, EVAL_JUDGE_QUEUE, None, "worker-a")

    assert result.completed == 1
    assert session.get(JobRecord, job_id).max_attempts == settings.eval_job_max_attempts
    log = session.execute(select(AgentActionLog)).scalar_one()
    assert log.action_type == "conversation_eval_judged"
    assert log.reason == "nightly"
    assert log.action_payload["score"] == 5
    assert log.action_payload["issues"] == ["un peu long"]
    assert log.action_payload["messages_evaluated"] == 2
    assert "j'ai marché 20 minutes" in judge.prompts[0]
    session.close()


def test_eval_job_without_transcript_fails_permanently(monkeypatch):
    Session = _session()
    session = Session()
    user_id = _seed_user(session)
    monkeypatch.setattr(job_runner, "get_llm_client", lambda: FakeJudge({"score": 3}))
    job_runner.enqueue_eval_job(session, user_id)

    result = job_runner.run_job_batch(session, EVAL_JUDGE_QUEUE, None, "worker-a")

    assert result.failed == 1
    assert session.execute(select(AgentActionLog)).scalars().all() == []
    session.close()


def test_eval_job_with_invalid_score_is_rescheduled(monkeypatch):
    Session = _session()
    session = Session()
    user_id = _seed_user(session)
    log_message(session, user_id=user_id, scope="web", role="user", content="salut")
    session.commit()
    monkeypatch.setattr(job_runner, "get_llm_client", lambda: FakeJudge({"score": "excellent"}))
    job_runner.enqueue_eval_job(session, user_id)

    result = job_runner.run_job_batch(session, EVAL_JUDGE_QUEUE, None, "worker-a")

    assert result.rescheduled == 1
    job = session.execute(select(JobRecord)).scalar_one()
    assert job.status == JOB_PENDING
    assert "invalid score" in job.last_error
    session.close()


def test_list_recent_jobs_filters_by_queue():
    Session = _session()
    session = Session()
    queue = JobQueue(session)
    queue.enqueue(LLM_RETRY_QUEUE, {"n": 1})
    queue.enqueue(EVAL_JUDGE_QUEUE, {"n": 2})

    assert len(job_runner.list_recent_jobs(session)) == 2
    only_eval = job_runner.list_recent_jobs(session, EVAL_JUDGE_QUEUE)
    assert [job.payload["n"] for job in only_eval] == [2]
    session.close()
