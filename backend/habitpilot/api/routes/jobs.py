"""Operational endpoints for the job queues."""
from __future__ import annotations

import socket
from time import perf_counter

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from habitpilot.api.schemas.jobs import EvalJobRequest, EvalJobResponse, JobBatchRequest, JobBatchResponse
from habitpilot.core.config import settings
from habitpilot.db.deps import get_db
from habitpilot.db.models.user import User
from habitpilot.observability.metrics import log_metric
from habitpilot.observability.tracing import trace
from habitpilot.services.job_queue import EVAL_JUDGE_QUEUE
from habitpilot.services.job_runner import enqueue_eval_job, list_recent_jobs, run_job_batch

router = APIRouter()


@router.get("/jobs", tags=["jobs"])
def get_jobs_config(request: Request, db: Session = Depends(get_db)) -> dict:
    request_id = getattr(request.state, "request_id", None)
    with trace("jobs.config", metadata={"request_id": request_id}, request_id=request_id):
        recent = list_recent_jobs(db, limit=20)
        data = {
            "scheduler_enabled": settings.scheduler_enabled,
            "schedule": {
                "timezone": settings.scheduler_timezone,
                "job_queue_interval_seconds": settings.job_queue_interval_seconds,
                "proactive_interval_seconds": settings.proactive_interval_seconds,
                "daily_checkin_time": settings.daily_checkin_time,
            },
            "retry_policy": {
                "base_delay_seconds": settings.job_base_delay_seconds,
                "jitter_seconds": settings.job_jitter_seconds,
                "max_attempts": settings.job_max_attempts,
                "eval_max_attempts": settings.eval_job_max_attempts,
            },
            "recent_jobs": [
                {
                    "id": str(job.id),
                    "queue": job.queue_name,
                    "status": job.status,
                    "attempt_count": job.attempt_count,
                    "next_attempt_at": job.next_attempt_at.isoformat() if job.next_attempt_at else None,
                }
                for job in recent
            ],
        }
    return {**data, "request_id": request_id or ""}


@router.post("/jobs/run-batch", response_model=JobBatchResponse, tags=["jobs"])
def run_batch_now(
    request: Request,
    payload: JobBatchRequest,
    db: Session = Depends(get_db),
) -> JobBatchResponse:
    if not settings.debug:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Run-batch only allowed in debug mode")

    request_id = getattr(request.state, "request_id", None)
    worker_id = payload.worker_id or f"api:{socket.gethostname()}"
    start = perf_counter()
    with trace("jobs.run_batch_now", metadata={"queue": payload.queue, "request_id": request_id}, request_id=request_id):
        result = run_job_batch(db, payload.queue, payload.limit, worker_id)

    log_metric("jobs.run_batch.success", 1, metadata={"queue": payload.queue})
    log_metric("jobs.run_batch.latency_ms", (perf_counter() - start) * 1000, metadata={"queue": payload.queue})
    return JobBatchResponse(
        queue=result.queue_name,
        claimed=result.claimed,
        completed=result.completed,
        rescheduled=result.rescheduled,
        failed=result.failed,
        request_id=request_id or "",
    )


@router.post("/jobs/evals", response_model=EvalJobResponse, status_code=status.HTTP_202_ACCEPTED, tags=["jobs"])
def enqueue_eval(
    request: Request,
    payload: EvalJobRequest,
    db: Session = Depends(get_db),
) -> EvalJobResponse:
    request_id = getattr(request.state, "request_id", None)
    if db.get(User, payload.user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    with trace("jobs.enqueue_eval", metadata={"scope": payload.scope}, user_id=str(payload.user_id), request_id=request_id):
        job_id = enqueue_eval_job(db, payload.user_id, payload.scope, reason=payload.reason)
    log_metric("jobs.evals.enqueued", 1)
    return EvalJobResponse(job_id=job_id, queue=EVAL_JUDGE_QUEUE, request_id=request_id or "")
