"""Persistent job queue with exclusive claims and jittered retries."""
from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from habitpilot.core.config import settings
from habitpilot.core.timeutils import utcnow
from habitpilot.db.models.job_record import JOB_COMPLETED, JOB_FAILED, JOB_PENDING, JobRecord
from habitpilot.observability.metrics import log_metric

logger = logging.getLogger(__name__)

LLM_RETRY_QUEUE = "llm_retry"
EVAL_JUDGE_QUEUE = "eval_judge"


class JobQueue:
    """Enqueue, claim, complete and fail jobs stored in ``job_queue``.

    ``claim`` first selects candidates with ``FOR UPDATE SKIP LOCKED`` and then
    takes each one with a conditional update, so two workers can never both
    own a job even on backends without row locks. Locks older than the
    configured timeout are considered abandoned and may be reclaimed.
    """

    def __init__(
        self,
        db: Session,
        *,
        base_delay_seconds: Optional[int] = None,
        jitter_seconds: Optional[int] = None,
        lock_timeout_seconds: Optional[int] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.base_delay_seconds = settings.job_base_delay_seconds if base_delay_seconds is None else base_delay_seconds
        self.jitter_seconds = settings.job_jitter_seconds if jitter_seconds is None else jitter_seconds
        self.lock_timeout_seconds = (
            settings.job_lock_timeout_seconds if lock_timeout_seconds is None else lock_timeout_seconds
        )
        self.rng = rng or random.Random()
        self.clock = clock

    def enqueue(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        *,
        user_id: Optional[UUID] = None,
        max_attempts: Optional[int] = None,
    ) -> UUID:
        job = JobRecord(
            queue_name=queue_name,
            user_id=user_id,
            payload=payload,
            status=JOB_PENDING,
            attempt_count=0,
            max_attempts=max_attempts or settings.job_max_attempts,
            next_attempt_at=self.clock(),
        )
        self.db.add(job)
        self.db.commit()
        logger.info("Enqueued %s job %s for user %s", queue_name, job.id, user_id)
        log_metric("jobs.enqueued", 1, metadata={"queue": queue_name})
        return job.id

    def claim(self, queue_name: str, limit: int, worker_id: str) -> List[JobRecord]:
        """Lock up to ``limit`` due jobs for ``worker_id``.

        Errors roll back and propagate; callers retry the whole batch later.
        """
        if limit <= 0:
            return []
        now = self.clock()
        stale_before = now - timedelta(seconds=self.lock_timeout_seconds)
        claimable = (
            JobRecord.queue_name == queue_name,
            JobRecord.status == JOB_PENDING,
            JobRecord.next_attempt_at <= now,
            or_(JobRecord.locked_by.is_(None), JobRecord.locked_at < stale_before),
        )
        try:
            candidate_ids = (
                self.db.execute(
                    select(JobRecord.id)
                    .where(*claimable)
                    .order_by(JobRecord.next_attempt_at.asc())
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )
            claimed_ids: List[UUID] = []
            for job_id in candidate_ids:
                result = self.db.execute(
                    update(JobRecord)
                    .where(JobRecord.id == job_id, *claimable)
                    .values(locked_by=worker_id, locked_at=now, last_attempt_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(job_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if not claimed_ids:
            return []
        rows = (
            self.db.execute(
                select(JobRecord)
                .where(JobRecord.id.in_(claimed_ids))
                .execution_options(populate_existing=True)
            )
            .scalars()
            .all()
        )
        by_id = {row.id: row for row in rows}
        jobs = [by_id[job_id] for job_id in claimed_ids if job_id in by_id]
        logger.debug("Worker %s claimed %s %s job(s)", worker_id, len(jobs), queue_name)
        return jobs

    def complete(self, job: JobRecord, worker_id: str) -> bool:
        now = self.clock()
        result = self.db.execute(
            update(JobRecord)
            .where(JobRecord.id == job.id, JobRecord.locked_by == worker_id)
            .values(
                status=JOB_COMPLETED,
                completed_at=now,
                locked_by=None,
                locked_at=None,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            logger.warning("Job %s was no longer locked by %s when completing", job.id, worker_id)
            return False
        return True

    def fail(self, job: JobRecord, worker_id: str, error: str, *, permanent: bool = False) -> str:
        """Record a failed attempt and return the job's new status."""
        now = self.clock()
        attempts = int(job.attempt_count or 0) + 1
        max_attempts = int(job.max_attempts or settings.job_max_attempts)
        values: Dict[str, Any] = {
            "attempt_count": attempts,
            "last_error": (error or "")[:2000],
            "locked_by": None,
            "locked_at": None,
        }
        if permanent or attempts >= max_attempts:
            values["status"] = JOB_FAILED
        else:
            values["status"] = JOB_PENDING
            values["next_attempt_at"] = now + self.backoff()

        result = self.db.execute(
            update(JobRecord)
            .where(JobRecord.id == job.id, JobRecord.locked_by == worker_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            logger.warning("Job %s was no longer locked by %s when failing", job.id, worker_id)
            return job.status

        if values["status"] == JOB_FAILED:
            logger.error(
                "Job %s (%s) failed permanently after %s attempt(s): %s",
                job.id,
                job.queue_name,
                attempts,
                values["last_error"],
            )
            log_metric("jobs.failed_permanently", 1, metadata={"queue": job.queue_name})
        return values["status"]

    def backoff(self) -> timedelta:
        jitter = self.rng.randint(-self.jitter_seconds, self.jitter_seconds) if self.jitter_seconds else 0
        return timedelta(seconds=max(0, self.base_delay_seconds + jitter))
