"""Proactive messaging: idempotent scheduling and gated delivery."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from habitpilot.core.config import settings
from habitpilot.core.errors import InvalidRecipient, NotOptedIn, OutboundError, RateLimited
from habitpilot.core.timeutils import ensure_utc, utcnow
from habitpilot.db.models.agent_action_log import AgentActionLog
from habitpilot.db.models.chat_message import ChatMessage
from habitpilot.db.models.pending_action import (
    ACTION_CANCELLED,
    ACTION_DONE,
    ACTION_EXPIRED,
    ACTION_PENDING,
    KIND_AWAITING_USER,
    KIND_DEFERRED_SEND,
    PendingAction,
)
from habitpilot.db.models.scheduled_message import (
    SCHEDULED_AWAITING_USER,
    SCHEDULED_CANCELLED,
    SCHEDULED_DEFERRED,
    SCHEDULED_PENDING,
    SCHEDULED_SENT,
    ScheduledMessage,
)
from habitpilot.db.models.user import User
from habitpilot.observability.metrics import log_metric
from habitpilot.observability.tracing import trace
from habitpilot.services.chat_log import load_recent_history, log_message
from habitpilot.services.handlers.prompting import format_history
from habitpilot.services.llm_client import LLMClient
from habitpilot.services.notifications.base import OutboundChannelSender
from habitpilot.services.scheduling.clock import build_user_time_context, next_occurrence, quiet_window_decision

logger = logging.getLogger(__name__)

DAILY_CHECKIN_CONTEXT = "daily_checkin"
OUTBOUND_CHANNEL = "whatsapp"
IN_APP_SCOPE = "web"

DAILY_CHECKIN_MESSAGE = (
    "Bonsoir 🙂 Petit bilan rapide ?\n\n"
    "1) Un truc dont tu es fier(e) aujourd'hui ?\n"
    "2) Un truc à ajuster pour demain ?"
)
CONSENT_TEMPLATE = "Coucou 🙂 J'ai un petit message pour toi. Tu es dispo pour qu'on en parle ?"
FALLBACK_DRAFT = "Petit check-in: comment ça va depuis tout à l'heure ?"

DRAFT_SYSTEM_PROMPT = (
    "Tu es un coach d'habitudes bienveillant. Écris un court message proactif (2 phrases maximum, tutoiement, "
    "une seule question) adapté au moment de la journée et à la conversation récente. Pas de markdown."
)

OUTCOME_SENT = "sent"
OUTCOME_DEFERRED = "deferred"
OUTCOME_THROTTLED = "throttled"
OUTCOME_AWAITING_USER = "awaiting_user"
OUTCOME_RATE_LIMITED = "rate_limited"
OUTCOME_FALLBACK_IN_APP = "fallback_in_app"
OUTCOME_SKIPPED = "skipped"
OUTCOME_SEND_FAILED = "send_failed"

DELIVERABLE_STATUSES = (SCHEDULED_PENDING, SCHEDULED_DEFERRED, SCHEDULED_AWAITING_USER)


@dataclass
class ProactiveTickResult:
    processed: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)


def schedule_message(
    db: Session,
    *,
    user_id: UUID,
    event_context: str,
    scheduled_for: datetime,
    draft_message: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> bool:
    """Insert a scheduled message unless one exists for the same key.

    Returns True when a new row was written.
    """
    values = {
        "user_id": user_id,
        "event_context": event_context,
        "scheduled_for": ensure_utc(scheduled_for).replace(second=0, microsecond=0),
        "draft_message": draft_message,
        "message_payload": payload or {},
        "status": SCHEDULED_PENDING,
    }
    dialect = db.get_bind().dialect.name
    insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
    stmt = (
        insert_fn(ScheduledMessage)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["user_id", "event_context", "scheduled_for"])
    )
    result = db.execute(stmt)
    db.commit()
    created = result.rowcount == 1
    if created:
        logger.info("Scheduled %s for user %s at %s", event_context, user_id, values["scheduled_for"].isoformat())
    return created


def eligible_for_checkins(db: Session, user_ids: Optional[Iterable[UUID]] = None) -> List[User]:
    stmt = select(User).where(
        User.opted_in.is_(True),
        User.phone_invalid.is_(False),
        User.phone_number.is_not(None),
    )
    if user_ids is not None:
        stmt = stmt.where(User.id.in_(list(dict.fromkeys(user_ids))))
    return list(db.execute(stmt).scalars().all())


def schedule_daily_checkins(
    db: Session,
    *,
    now: Optional[datetime] = None,
    user_ids: Optional[Iterable[UUID]] = None,
    local_time: Optional[str] = None,
) -> int:
    """Schedule each eligible user's next daily check-in; safe to re-run."""
    reference = ensure_utc(now) or utcnow()
    hhmm = local_time or settings.daily_checkin_time
    created = 0
    with trace("proactive.schedule_daily_checkins", metadata={"local_time": hhmm}):
        for user in eligible_for_checkins(db, user_ids):
            try:
                scheduled_for = next_occurrence(user.timezone, hhmm, now=reference)
            except ValueError:
                logger.warning("User %s has an unusable timezone %r; using default", user.id, user.timezone)
                scheduled_for = next_occurrence(settings.default_timezone, hhmm, now=reference)
            if schedule_message(
                db,
                user_id=user.id,
                event_context=DAILY_CHECKIN_CONTEXT,
                scheduled_for=scheduled_for,
                draft_message=DAILY_CHECKIN_MESSAGE,
                payload={"purpose": DAILY_CHECKIN_CONTEXT, "local_time": hhmm},
            ):
                created += 1
    log_metric("proactive.daily_checkins_scheduled", created)
    return created


class ProactiveOrchestrator:
    """Delivers scheduled messages through the outbound channel.

    Every delivery passes, in order: the quiet window, the per-user throttle
    and the channel window. Outcomes are written to ``agent_actions_log``.
    """

    def __init__(
        self,
        db: Session,
        *,
        sender: OutboundChannelSender,
        llm: Optional[LLMClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.sender = sender
        self.llm = llm
        self.clock = clock

    def process_due_scheduled_messages(self, limit: Optional[int] = None) -> ProactiveTickResult:
        now = self.clock()
        rows = (
            self.db.execute(
                select(ScheduledMessage)
                .where(
                    ScheduledMessage.status == SCHEDULED_PENDING,
                    ScheduledMessage.scheduled_for <= now,
                    or_(ScheduledMessage.not_before.is_(None), ScheduledMessage.not_before <= now),
                )
                .order_by(ScheduledMessage.scheduled_for.asc())
                .limit(limit or settings.proactive_batch_size)
                .with_for_update(skip_locked=True)
            )
            .scalars()
            .all()
        )
        outcomes: Counter = Counter()
        rate_limited: Set[UUID] = set()
        with trace("proactive.process_due", metadata={"due": len(rows)}):
            for message in rows:
                if message.user_id in rate_limited:
                    outcomes[OUTCOME_RATE_LIMITED] += 1
                    continue
                outcome = self.deliver(message, now=now)
                outcomes[outcome] += 1
                if outcome == OUTCOME_RATE_LIMITED:
                    rate_limited.add(message.user_id)
        self.db.commit()
        for name, count in outcomes.items():
            log_metric(f"proactive.outcome.{name}", count)
        return ProactiveTickResult(processed=len(rows), outcomes=dict(outcomes))

    def process_pending_actions(self, limit: Optional[int] = None) -> ProactiveTickResult:
        now = self.clock()
        outcomes: Counter = Counter()
        expired = self._expire_actions(now)
        if expired:
            outcomes[ACTION_EXPIRED] = expired

        actions = (
            self.db.execute(
                select(PendingAction)
                .where(
                    PendingAction.status == ACTION_PENDING,
                    or_(PendingAction.not_before.is_(None), PendingAction.not_before <= now),
                )
                .order_by(PendingAction.created_at.asc())
                .limit(limit or settings.proactive_batch_size)
                .with_for_update(skip_locked=True)
            )
            .scalars()
            .all()
        )
        rate_limited: Set[UUID] = set()
        with trace("proactive.process_pending_actions", metadata={"due": len(actions)}):
            for action in actions:
                if action.user_id in rate_limited:
                    outcomes[OUTCOME_RATE_LIMITED] += 1
                    continue
                outcome = self._run_action(action, now)
                outcomes[outcome] += 1
                if outcome == OUTCOME_RATE_LIMITED:
                    rate_limited.add(action.user_id)
        self.db.commit()
        return ProactiveTickResult(processed=len(actions) + expired, outcomes=dict(outcomes))

    def deliver(
        self,
        message: ScheduledMessage,
        *,
        now: Optional[datetime] = None,
        action: Optional[PendingAction] = None,
    ) -> str:
        """Attempt one delivery and return the outcome name.

        The row is re-read under a row lock first. A message another worker
        holds or has already moved out of a deliverable status is skipped.
        """
        now = ensure_utc(now) or self.clock()
        if not self._lock_for_delivery(message):
            logger.info("Scheduled message %s already handled elsewhere; skipping", message.id)
            return OUTCOME_SKIPPED

        user = self.db.get(User, message.user_id)
        if user is None:
            message.status = SCHEDULED_CANCELLED
            message.processed_at = now
            self.db.commit()
            return OUTCOME_SKIPPED

        with trace(
            "proactive.deliver",
            metadata={"event_context": message.event_context, "scheduled_message_id": str(message.id)},
            user_id=str(user.id),
        ):
            quiet = quiet_window_decision(user.last_inbound_at, user.last_outbound_at, now, settings.quiet_window_minutes)
            if not quiet.send_now:
                return self._defer(message, user, quiet.defer_until, now, action)

            retry_at = self._throttled_until(user.id, now)
            if retry_at is not None:
                message.not_before = retry_at
                if action is not None:
                    action.not_before = retry_at
                self._record(user.id, message, OUTCOME_THROTTLED, {"retry_at": retry_at.isoformat()})
                self.db.commit()
                logger.info("Throttled %s for user %s until %s", message.id, user.id, retry_at.isoformat())
                return OUTCOME_THROTTLED

            if not self._channel_open(user, now) and message.status != SCHEDULED_AWAITING_USER:
                return self._request_consent(message, user, now, action)

            text = message.draft_message or self._generate_draft(user, now)
            return self._send(message, user, text, now, action)

    def _lock_for_delivery(self, message: ScheduledMessage) -> bool:
        current = self.db.execute(
            select(ScheduledMessage)
            .where(ScheduledMessage.id == message.id)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return current is not None and current.status in DELIVERABLE_STATUSES

    def _run_action(self, action: PendingAction, now: datetime) -> str:
        payload = action.payload or {}
        message = self._scheduled_for_action(payload)
        if message is None or message.status in (SCHEDULED_SENT, SCHEDULED_CANCELLED):
            action.status = ACTION_CANCELLED
            action.processed_at = now
            self.db.commit()
            return OUTCOME_SKIPPED

        if action.kind == KIND_AWAITING_USER:
            user = self.db.get(User, action.user_id)
            requested_at = _parse_instant(payload.get("requested_at"))
            last_inbound = ensure_utc(user.last_inbound_at) if user else None
            if last_inbound is None or (requested_at is not None and last_inbound <= requested_at):
                return OUTCOME_AWAITING_USER
        return self.deliver(message, now=now, action=action)

    def _scheduled_for_action(self, payload: Dict[str, Any]) -> Optional[ScheduledMessage]:
        raw = payload.get("scheduled_message_id")
        if not raw:
            return None
        try:
            return self.db.get(ScheduledMessage, UUID(str(raw)))
        except ValueError:
            logger.warning("Pending action references an invalid scheduled message id %r", raw)
            return None

    def _expire_actions(self, now: datetime) -> int:
        actions = (
            self.db.execute(
                select(PendingAction).where(
                    PendingAction.status == ACTION_PENDING,
                    PendingAction.expires_at.is_not(None),
                    PendingAction.expires_at < now,
                )
            )
            .scalars()
            .all()
        )
        for action in actions:
            action.status = ACTION_EXPIRED
            action.processed_at = now
            message = self._scheduled_for_action(action.payload or {})
            if message is not None and message.status in (SCHEDULED_AWAITING_USER, SCHEDULED_DEFERRED):
                message.status = SCHEDULED_CANCELLED
                message.processed_at = now
            self._record(action.user_id, message, "expired", {"kind": action.kind})
        if actions:
            self.db.commit()
            logger.info("Expired %s pending action(s)", len(actions))
        return len(actions)

    def _defer(
        self,
        message: ScheduledMessage,
        user: User,
        defer_until: datetime,
        now: datetime,
        action: Optional[PendingAction],
    ) -> str:
        message.status = SCHEDULED_DEFERRED
        message.not_before = defer_until
        if action is not None:
            action.not_before = defer_until
        else:
            self.db.add(
                PendingAction(
                    user_id=user.id,
                    kind=KIND_DEFERRED_SEND,
                    status=ACTION_PENDING,
                    payload={"scheduled_message_id": str(message.id), "requested_at": now.isoformat()},
                    not_before=defer_until,
                    expires_at=now + timedelta(hours=settings.pending_action_ttl_hours),
                )
            )
        self._record(user.id, message, OUTCOME_DEFERRED, {"defer_until": defer_until.isoformat()})
        self.db.commit()
        logger.info("Deferred %s for user %s until %s (quiet window)", message.id, user.id, defer_until.isoformat())
        return OUTCOME_DEFERRED

    def _throttled_until(self, user_id: UUID, now: datetime) -> Optional[datetime]:
        """Return when the next proactive send is allowed, or None if allowed now."""
        window = timedelta(hours=settings.proactive_throttle_window_hours)
        recent = (
            self.db.execute(
                select(ChatMessage.created_at)
                .where(
                    ChatMessage.user_id == user_id,
                    ChatMessage.role == "assistant",
                    ChatMessage.is_proactive.is_(True),
                    ChatMessage.created_at > now - window,
                )
                .order_by(ChatMessage.created_at.asc())
            )
            .scalars()
            .all()
        )
        if len(recent) < settings.proactive_throttle_max_sends:
            return None
        oldest_counted = ensure_utc(recent[len(recent) - settings.proactive_throttle_max_sends])
        return oldest_counted + window

    def _channel_open(self, user: User, now: datetime) -> bool:
        last_inbound = ensure_utc(user.last_inbound_at)
        if last_inbound is None:
            return False
        return now - last_inbound <= timedelta(hours=settings.channel_window_hours)

    def _request_consent(
        self,
        message: ScheduledMessage,
        user: User,
        now: datetime,
        action: Optional[PendingAction],
    ) -> str:
        outcome = self._send(message, user, CONSENT_TEMPLATE, now, action, consent=True)
        if outcome != OUTCOME_SENT:
            return outcome
        message.status = SCHEDULED_AWAITING_USER
        message.processed_at = None
        if action is not None:
            action.status = ACTION_DONE
            action.processed_at = now
        self.db.add(
            PendingAction(
                user_id=user.id,
                kind=KIND_AWAITING_USER,
                status=ACTION_PENDING,
                payload={"scheduled_message_id": str(message.id), "requested_at": now.isoformat()},
                expires_at=now + timedelta(hours=settings.pending_action_ttl_hours),
            )
        )
        self._record(user.id, message, OUTCOME_AWAITING_USER, {})
        self.db.commit()
        return OUTCOME_AWAITING_USER

    def _send(
        self,
        message: ScheduledMessage,
        user: User,
        text: str,
        now: datetime,
        action: Optional[PendingAction],
        *,
        consent: bool = False,
    ) -> str:
        metadata = {"purpose": message.event_context, "scheduled_message_id": str(message.id), "consent": consent}
        try:
            result = self.sender.send(user, text)
        except RateLimited as exc:
            # Left untouched; the next tick retries without counting an attempt.
            logger.info("Outbound rate limited for user %s: %s", user.id, exc)
            self.db.rollback()
            return OUTCOME_RATE_LIMITED
        except (NotOptedIn, InvalidRecipient) as exc:
            content = (message.draft_message or FALLBACK_DRAFT) if consent else text
            return self._fallback_in_app(message, user, content, now, action, exc)
        except OutboundError as exc:
            logger.warning("Outbound send failed for user %s: %s", user.id, exc)
            self.db.rollback()
            return OUTCOME_SEND_FAILED

        log_message(
            self.db,
            user_id=user.id,
            scope=OUTBOUND_CHANNEL,
            role="assistant",
            content=text,
            agent_used="companion",
            channel=OUTBOUND_CHANNEL,
            is_proactive=True,
            metadata={**metadata, "delivery_id": result.delivery_id, "provider": self.sender.name},
            created_at=now,
        )
        user.last_outbound_at = now
        if consent:
            return OUTCOME_SENT
        self._mark_sent(message, action, now)
        self._record(user.id, message, OUTCOME_SENT, {"delivery_id": result.delivery_id})
        self.db.commit()
        return OUTCOME_SENT

    def _fallback_in_app(
        self,
        message: ScheduledMessage,
        user: User,
        text: str,
        now: datetime,
        action: Optional[PendingAction],
        exc: OutboundError,
    ) -> str:
        if isinstance(exc, InvalidRecipient):
            user.phone_invalid = True
        log_message(
            self.db,
            user_id=user.id,
            scope=IN_APP_SCOPE,
            role="assistant",
            content=text,
            agent_used="companion",
            channel="in_app",
            is_proactive=True,
            metadata={"purpose": message.event_context, "fallback": exc.code},
            created_at=now,
        )
        self._mark_sent(message, action, now)
        self._record(user.id, message, OUTCOME_FALLBACK_IN_APP, {"error": exc.code})
        self.db.commit()
        logger.info("Delivered %s in-app for user %s (%s)", message.id, user.id, exc.code)
        return OUTCOME_FALLBACK_IN_APP

    def _mark_sent(self, message: ScheduledMessage, action: Optional[PendingAction], now: datetime) -> None:
        message.status = SCHEDULED_SENT
        message.processed_at = now
        message.not_before = None
        if action is not None:
            action.status = ACTION_DONE
            action.processed_at = now

    def _generate_draft(self, user: User, now: datetime) -> str:
        if self.llm is None or not self.llm.configured:
            return FALLBACK_DRAFT
        time_context = build_user_time_context(user.timezone, user.locale, now)
        history = load_recent_history(self.db, user.id, OUTBOUND_CHANNEL, limit=10)
        user_prompt = f"{time_context.prompt_block}\n\nConversation récente:\n{format_history(history)}"
        try:
            text = self.llm.generate(DRAFT_SYSTEM_PROMPT, user_prompt, temperature=0.6, operation="proactive.draft")
        except Exception:
            logger.exception("Draft generation failed for user %s; using fallback", user.id)
            return FALLBACK_DRAFT
        return text.strip() or FALLBACK_DRAFT

    def _record(
        self,
        user_id: UUID,
        message: Optional[ScheduledMessage],
        outcome: str,
        extra: Dict[str, Any],
    ) -> None:
        payload = {"outcome": outcome, **extra}
        if message is not None:
            payload.update({"scheduled_message_id": str(message.id), "event_context": message.event_context})
        self.db.add(
            AgentActionLog(
                user_id=user_id,
                action_type="proactive_delivery",
                action_payload=payload,
                reason=outcome,
            )
        )


def _parse_instant(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        return None
