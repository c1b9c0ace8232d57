"""Dedicated APScheduler worker process."""
from __future__ import annotations

import logging
import os
import signal
import socket
import threading

from apscheduler.schedulers.background import BackgroundScheduler

from habitpilot.core.config import settings
from habitpilot.core.logging import configure_logging
from habitpilot.db.session import SessionLocal
from habitpilot.observability.client import init_opik
from habitpilot.services.job_queue import EVAL_JUDGE_QUEUE, LLM_RETRY_QUEUE
from habitpilot.services.job_runner import run_job_batch
from habitpilot.services.llm_client import get_llm_client
from habitpilot.services.notifications.factory import get_outbound_sender
from habitpilot.services.scheduling.orchestrator import ProactiveOrchestrator, schedule_daily_checkins


logger = logging.getLogger(__name__)

WORKER_ID = f"{socket.gethostname()}:{os.getpid()}"


def main() -> None:
    configure_logging(log_level=settings.log_level, process_label="worker")
    init_opik()
    logger.info("Scheduler worker %s starting (enabled=%s)", WORKER_ID, settings.scheduler_enabled)

    scheduler = BackgroundScheduler(timezone=settings.scheduler_timezone)

    if settings.scheduler_enabled:
        _register_jobs(scheduler)
        scheduler.start()
        if settings.jobs_run_on_startup:
            logger.info("Running jobs once on startup")
            _run_daily_checkin_producer()
            _run_llm_retry_job()
            _run_eval_judge_job()
            _run_proactive_job()
    else:
        logger.warning("Scheduler disabled via config; worker will idle")

    stop_event = threading.Event()

    def shutdown(signum, frame):  # pragma: no cover - signal handler
        logger.info("Scheduler worker shutting down (signal=%s)", signum)
        if scheduler.running:
            scheduler.shutdown(wait=False)
        stop_event.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    try:
        stop_event.wait()
    except KeyboardInterrupt:  # pragma: no cover - manual stop
        shutdown(signal.SIGINT, None)


def _register_jobs(scheduler: BackgroundScheduler) -> None:
    scheduler.add_job(
        _run_llm_retry_job,
        trigger="interval",
        seconds=settings.job_queue_interval_seconds,
        id="llm_retry_job",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        _run_eval_judge_job,
        trigger="interval",
        seconds=settings.job_queue_interval_seconds,
        id="eval_judge_job",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        _run_proactive_job,
        trigger="interval",
        seconds=settings.proactive_interval_seconds,
        id="proactive_job",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        _run_daily_checkin_producer,
        trigger="cron",
        hour=settings.daily_checkin_producer_hour,
        minute=0,
        id="daily_checkin_producer",
        replace_existing=True,
    )
    logger.info(
        "Registered scheduler jobs (queues every %ss, proactive every %ss, producer at %02d:00 %s)",
        settings.job_queue_interval_seconds,
        settings.proactive_interval_seconds,
        settings.daily_checkin_producer_hour,
        settings.scheduler_timezone,
    )


def _run_queue(queue_name: str) -> None:
    session = SessionLocal()
    try:
        result = run_job_batch(session, queue_name, None, WORKER_ID)
        if result.claimed:
            logger.info(
                "%s batch complete: claimed=%s completed=%s rescheduled=%s failed=%s",
                queue_name,
                result.claimed,
                result.completed,
                result.rescheduled,
                result.failed,
            )
    except Exception:  # pragma: no cover
        logger.exception("%s batch failed", queue_name)
    finally:
        session.close()


def _run_llm_retry_job() -> None:
    _run_queue(LLM_RETRY_QUEUE)


def _run_eval_judge_job() -> None:
    _run_queue(EVAL_JUDGE_QUEUE)


def _run_proactive_job() -> None:
    session = SessionLocal()
    try:
        orchestrator = ProactiveOrchestrator(session, sender=get_outbound_sender(), llm=get_llm_client())
        actions = orchestrator.process_pending_actions()
        due = orchestrator.process_due_scheduled_messages()
        if actions.processed or due.processed:
            logger.info("Proactive tick: actions=%s due=%s", actions.outcomes, due.outcomes)
    except Exception:  # pragma: no cover
        logger.exception("Proactive tick failed")
    finally:
        session.close()


def _run_daily_checkin_producer() -> None:
    session = SessionLocal()
    try:
        created = schedule_daily_checkins(session)
        logger.info("Daily check-in producer complete: scheduled=%s", created)
    except Exception:  # pragma: no cover
        logger.exception("Daily check-in producer failed")
    finally:
        session.close()


if __name__ == "__main__":  # pragma: no cover - manual launch
    main()
