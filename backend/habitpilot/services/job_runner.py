"""Batch runners for the persistent job queues."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from habitpilot.core.config import settings
from habitpilot.core.context import user_id_ctx_var
from habitpilot.core.errors import JobPermanentFailure
from habitpilot.db.models.agent_action_log import AgentActionLog
from habitpilot.db.models.job_record import JOB_FAILED, JobRecord
from habitpilot.db.models.user import User
from habitpilot.observability.metrics import log_metric
from habitpilot.observability.tracing import trace
from habitpilot.services.chat_log import load_recent_history
from habitpilot.services.dispatcher import build_dispatcher
from habitpilot.services.job_queue import EVAL_JUDGE_QUEUE, LLM_RETRY_QUEUE, JobQueue
from habitpilot.services.llm_client import get_llm_client
from habitpilot.services.state_store import DEFAULT_SCOPE

logger = logging.getLogger(__name__)

JobHandler = Callable[[Session, JobRecord], None]

EVAL_TRANSCRIPT_MESSAGES = 30

EVAL_JUDGE_PROMPT = (
    "Tu évalues la qualité d'un coach d'habitudes sur une conversation récente. Note de 1 à 5: "
    "pertinence, empathie, respect du bilan en cours, concision. "
    'Réponds en JSON: {"score": 1-5, "issues": ["..."], "summary": "..."}.'
)


@dataclass
class JobBatchResult:
    queue_name: str
    claimed: int
    completed: int
    rescheduled: int
    failed: int = 0


def batch_limit(queue_name: str, requested: Optional[int] = None) -> int:
    """Clamp a requested batch size to the queue's bounds."""
    if queue_name == EVAL_JUDGE_QUEUE:
        default, ceiling = settings.eval_batch_default, settings.eval_batch_max
    else:
        default, ceiling = settings.llm_retry_batch_default, settings.llm_retry_batch_max
    if requested is None:
        return default
    return max(1, min(int(requested), ceiling))


def run_job_batch(
    db: Session,
    queue_name: str,
    limit: Optional[int],
    worker_id: str,
    *,
    handlers: Optional[Dict[str, JobHandler]] = None,
    queue: Optional[JobQueue] = None,
) -> JobBatchResult:
    """Claim up to ``limit`` jobs and run each through the queue's handler.

    Claim errors propagate. Handler errors are recorded on the job and never
    abort the rest of the batch.
    """
    registry = handlers if handlers is not None else DEFAULT_HANDLERS
    handler = registry.get(queue_name)
    if handler is None:
        raise ValueError(f"No handler registered for queue {queue_name!r}")

    job_queue = queue or JobQueue(db)
    size = batch_limit(queue_name, limit)
    start = perf_counter()
    with trace("jobs.run_batch", metadata={"queue": queue_name, "limit": size, "worker_id": worker_id}):
        jobs = job_queue.claim(queue_name, size, worker_id)
        completed = rescheduled = failed = 0
        for job in jobs:
            token = user_id_ctx_var.set(str(job.user_id) if job.user_id else None)
            try:
                handler(db, job)
            except JobPermanentFailure as exc:
                db.rollback()
                logger.warning("Job %s (%s) cannot succeed: %s", job.id, queue_name, exc)
                job_queue.fail(job, worker_id, str(exc), permanent=True)
                failed += 1
            except Exception as exc:
                db.rollback()
                logger.exception("Job %s (%s) attempt failed", job.id, queue_name)
                status = job_queue.fail(job, worker_id, f"{type(exc).__name__}: {exc}")
                if status == JOB_FAILED:
                    failed += 1
                else:
                    rescheduled += 1
            else:
                if job_queue.complete(job, worker_id):
                    completed += 1
            finally:
                user_id_ctx_var.reset(token)

    log_metric("jobs.batch.claimed", len(jobs), metadata={"queue": queue_name})
    log_metric("jobs.batch.latency_ms", (perf_counter() - start) * 1000, metadata={"queue": queue_name})
    logger.info(
        "Batch %s done: claimed=%s completed=%s rescheduled=%s failed=%s",
        queue_name,
        len(jobs),
        completed,
        rescheduled,
        failed,
    )
    return JobBatchResult(
        queue_name=queue_name,
        claimed=len(jobs),
        completed=completed,
        rescheduled=rescheduled,
        failed=failed,
    )


def replay_failed_turn(db: Session, job: JobRecord) -> None:
    """Re-run a turn whose handler and emergency reply both failed.

    The user message was already logged by the original turn; only the
    assistant reply is written, tagged with the job id.
    """
    payload = job.payload or {}
    user_id = _require_user_id(job, payload)
    message = str(payload.get("message") or "").strip()
    if not message:
        raise JobPermanentFailure("retry payload has no message")

    dispatcher = build_dispatcher(db)
    result = dispatcher.process_turn(
        user_id,
        payload.get("scope") or DEFAULT_SCOPE,
        message,
        channel=payload.get("channel") or "web",
        log_user_message=False,
        raise_on_outage=True,
        assistant_metadata={"source": LLM_RETRY_QUEUE, "job_id": str(job.id), "attempt": job.attempt_count + 1},
    )
    logger.info("Replayed turn for job %s in mode %s", job.id, result.resolved_mode.value)


def enqueue_eval_job(db: Session, user_id: UUID, scope: str = DEFAULT_SCOPE, *, reason: str = "manual") -> UUID:
    return JobQueue(db).enqueue(
        EVAL_JUDGE_QUEUE,
        {"user_id": str(user_id), "scope": scope, "reason": reason},
        user_id=user_id,
        max_attempts=settings.eval_job_max_attempts,
    )


def judge_conversation(db: Session, job: JobRecord) -> None:
    payload = job.payload or {}
    user_id = _require_user_id(job, payload)
    if db.get(User, user_id) is None:
        raise JobPermanentFailure(f"user {user_id} no longer exists")
    scope = payload.get("scope") or DEFAULT_SCOPE

    history = load_recent_history(db, user_id, scope, limit=EVAL_TRANSCRIPT_MESSAGES)
    if not history:
        raise JobPermanentFailure("no transcript to evaluate")

    verdict = get_llm_client().generate_json(
        EVAL_JUDGE_PROMPT,
        json.dumps({"transcript": history}, ensure_ascii=False),
        temperature=0.0,
        operation="jobs.eval_judge",
    )
    try:
        score = max(1, min(5, int(verdict.get("score"))))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"judge returned an invalid score: {verdict.get('score')!r}") from exc

    db.add(
        AgentActionLog(
            user_id=user_id,
            action_type="conversation_eval_judged",
            action_payload={
                "job_id": str(job.id),
                "scope": scope,
                "score": score,
                "issues": [str(item) for item in verdict.get("issues") or []][:10],
                "summary": str(verdict.get("summary") or "")[:1000],
                "messages_evaluated": len(history),
            },
            reason=payload.get("reason") or "eval_judge",
        )
    )
    db.commit()
    log_metric("jobs.eval_judge.score", score)


def _require_user_id(job: JobRecord, payload: Dict[str, Any]) -> UUID:
    raw = payload.get("user_id") or job.user_id
    if raw is None:
        raise JobPermanentFailure("job has no user_id")
    try:
        return raw if isinstance(raw, UUID) else UUID(str(raw))
    except ValueError as exc:
        raise JobPermanentFailure(f"invalid user_id {raw!r}") from exc


def list_recent_jobs(db: Session, queue_name: Optional[str] = None, limit: int = 20) -> list[JobRecord]:
    stmt = select(JobRecord).order_by(JobRecord.created_at.desc()).limit(limit)
    if queue_name:
        stmt = stmt.where(JobRecord.queue_name == queue_name)
    return list(db.execute(stmt).scalars().all())


DEFAULT_HANDLERS: Dict[str, JobHandler] = {
    LLM_RETRY_QUEUE: replay_failed_turn,
    EVAL_JUDGE_QUEUE: judge_conversation,
}
