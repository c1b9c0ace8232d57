from __future__ import annotations

from uuid import uuid4

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from habitpilot.db import models  # noqa: F401
from habitpilot.db.base import Base
from habitpilot.db.models.job_record import JOB_FAILED, JobRecord
from habitpilot.db.models.scheduled_message import ScheduledMessage
from habitpilot.db.models.user import User
from habitpilot.services.job_queue import LLM_RETRY_QUEUE, JobQueue
from habitpilot.services.scheduling.orchestrator import DAILY_CHECKIN_CONTEXT
from habitpilot.worker import scheduler_main


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


def test_register_jobs_adds_every_tick():
    scheduler = BackgroundScheduler(timezone="UTC")

    scheduler_main._register_jobs(scheduler)

    assert {job.id for job in scheduler.get_jobs()} == {
        "llm_retry_job",
        "eval_judge_job",
        "proactive_job",
        "daily_checkin_producer",
    }


def test_queue_tick_runs_a_batch_with_its_own_session(monkeypatch):
    Session = _session()
    monkeypatch.setattr(scheduler_main, "SessionLocal", Session)
    session = Session()
    JobQueue(session).enqueue(LLM_RETRY_QUEUE, {"message": "tu es là ?"})
    session.close()

    scheduler_main._run_llm_retry_job()

    session = Session()
    job = session.execute(select(JobRecord)).scalar_one()
    # no user id in the payload, so the replay cannot succeed
    assert job.status == JOB_FAILED
    assert job.locked_by is None
    session.close()


def test_daily_producer_tick_does_not_duplicate_rows(monkeypatch):
    Session = _session()
    monkeypatch.setattr(scheduler_main, "SessionLocal", Session)
    session = Session()
    session.add(User(id=uuid4(), timezone="Europe/Paris", phone_number="+33600000000", opted_in=True))
    session.commit()
    session.close()

    scheduler_main._run_daily_checkin_producer()
    scheduler_main._run_daily_checkin_producer()

    session = Session()
    rows = session.execute(select(ScheduledMessage)).scalars().all()
    assert len(rows) == 1
    assert rows[0].event_context == DAILY_CHECKIN_CONTEXT
    session.close()
