"""Turn dispatcher: classify, route, run the handler, verify and persist."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from habitpilot.core.config import Settings, settings as default_settings
from habitpilot.core.context import user_id_ctx_var
from habitpilot.core.errors import HandlerFailure
from habitpilot.core.timeutils import utcnow
from habitpilot.db.session import SessionLocal
from habitpilot.observability.metrics import log_metric
from habitpilot.observability.tracing import annotate, trace
from habitpilot.services.background import BackgroundRunner, get_background_runner, run_with_timeout
from habitpilot.services.chat_log import last_assistant_text, load_recent_history, log_message
from habitpilot.services.emergency import OUTAGE_TEMPLATE, EmergencyResponder
from habitpilot.services.handlers.base import HandlerContext, HandlerResult, ModeHandler
from habitpilot.services.handlers.registry import build_default_handlers
from habitpilot.services.intent_classifier import FAIL_OPEN_RESULT, ClassifierResult, IntentClassifier
from habitpilot.services.job_queue import LLM_RETRY_QUEUE, JobQueue
from habitpilot.services.llm_client import LLMClient, get_llm_client
from habitpilot.services.modes import AgentMode
from habitpilot.services.routing import guards, parking_lot
from habitpilot.services.routing.deferred_topics import (
    append_deferred_topic,
    assistant_deferred_topic,
    deferred_topics,
    extract_deferred_topic,
    user_explicitly_defers_topic,
)
from habitpilot.services.routing.investigation import is_interview_active, is_parking_lot_open
from habitpilot.services.scheduling.clock import build_user_time_context
from habitpilot.services.state_store import ConversationSnapshot, StateStore
from habitpilot.services.summarizer import ContextSummarizer
from habitpilot.services.user_service import get_or_create_user, touch_inbound
from habitpilot.services.verifier import VARIANT_CHECKUP, VARIANT_POST_CHECKUP, Verifier

logger = logging.getLogger(__name__)

FALLBACK_TOPIC = "Sujet à reprendre"
MAX_RAW_TOPIC_LENGTH = 240


@dataclass
class TurnResult:
    reply_text: str
    resolved_mode: AgentMode
    degraded: bool = False
    reasons: List[str] = field(default_factory=list)


@dataclass
class _HandlerOutcome:
    reply: str
    result: Optional[HandlerResult]
    failed: bool = False
    outage: bool = False


class Dispatcher:
    """Runs one conversational turn end to end.

    Only the summarizer trigger and the retry-job enqueue leave the request
    path; both go through ``background`` and open their own sessions.
    """

    def __init__(
        self,
        db: Session,
        *,
        classifier: IntentClassifier,
        handlers: Mapping[AgentMode, ModeHandler],
        verifier: Optional[Verifier],
        emergency: EmergencyResponder,
        background: BackgroundRunner,
        session_factory: Callable[[], Session],
        summarizer: Optional[ContextSummarizer] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self.db = db
        self.classifier = classifier
        self.handlers = dict(handlers)
        self.verifier = verifier
        self.emergency = emergency
        self.background = background
        self.session_factory = session_factory
        self.summarizer = summarizer
        self.config = config or default_settings
        self.clock = clock

    def process_turn(
        self,
        user_id: UUID,
        scope: str,
        message: str,
        recent_history: Optional[List[Dict[str, str]]] = None,
        *,
        channel: str = "web",
        log_user_message: bool = True,
        raise_on_outage: bool = False,
        assistant_metadata: Optional[Dict[str, Any]] = None,
    ) -> TurnResult:
        token = user_id_ctx_var.set(str(user_id))
        start = perf_counter()
        try:
            with trace("dispatcher.process_turn", metadata={"scope": scope, "channel": channel}) as span:
                result = self._process(
                    user_id,
                    scope,
                    message,
                    recent_history,
                    channel=channel,
                    log_user_message=log_user_message,
                    raise_on_outage=raise_on_outage,
                    assistant_metadata=assistant_metadata,
                )
                annotate(
                    span,
                    resolved_mode=result.resolved_mode.value,
                    degraded=result.degraded,
                    reasons=result.reasons,
                    llm_output_text=result.reply_text[:500],
                )
        finally:
            user_id_ctx_var.reset(token)
        log_metric(
            "dispatcher.turn_latency_ms",
            (perf_counter() - start) * 1000,
            metadata={"mode": result.resolved_mode.value, "degraded": result.degraded},
        )
        return result

    def _process(
        self,
        user_id: UUID,
        scope: str,
        message: str,
        recent_history: Optional[List[Dict[str, str]]],
        *,
        channel: str,
        log_user_message: bool,
        raise_on_outage: bool,
        assistant_metadata: Optional[Dict[str, Any]],
    ) -> TurnResult:
        now = self.clock()
        user = get_or_create_user(self.db, user_id)
        if log_user_message:
            touch_inbound(self.db, user, now)
        self.db.commit()

        store = StateStore(self.db)
        snapshot = store.load(user_id, scope)
        history = recent_history if recent_history is not None else load_recent_history(self.db, user_id, scope)
        last_assistant = last_assistant_text(history)

        classification = self._classify(message, snapshot, last_assistant)
        decision = guards.resolve(
            guards.RoutingContext(
                message=message,
                investigation_state=snapshot.investigation_state,
                classification=classification,
                last_assistant_text=last_assistant,
                now=now,
                low_risk_ceiling=self.config.low_risk_crisis_ceiling,
            )
        )
        mode = decision.mode
        logger.info(
            "Routing %s -> %s (risk=%s, reasons=%s)",
            classification.mode.value,
            mode.value,
            decision.risk_score,
            ",".join(decision.reasons) or "-",
        )

        time_context = build_user_time_context(user.timezone, user.locale, now)
        ctx = HandlerContext(
            user_id=user_id,
            scope=scope,
            message=message,
            recent_history=history,
            investigation_state=decision.investigation_state,
            risk_level=decision.risk_score,
            short_term_context=snapshot.short_term_context,
            directive=decision.directive,
            time_context=time_context.prompt_block,
        )
        outcome = self._invoke_handler(mode, ctx, decision, channel=channel, raise_on_outage=raise_on_outage)

        reply, final_state = self._apply_handler_state(mode, outcome, decision.investigation_state)
        final_state = self._capture_deferred_topic(decision, message, outcome.reply, final_state)

        if not outcome.failed:
            reply = self._verify(reply, mode, decision, final_state, message)

        next_mode = AgentMode.COMPANION if outcome.failed else mode

        def persist(current: ConversationSnapshot) -> ConversationSnapshot:
            current.current_mode = next_mode
            current.risk_level = decision.risk_score
            current.investigation_state = final_state
            current.unprocessed_msg_count = current.unprocessed_msg_count + 1
            return current

        written = store.mutate(user_id, scope, persist)
        if written is None:
            logger.warning("Conversation state for %s/%s was not persisted this turn", user_id, scope)

        metadata = {
            "reasons": list(decision.reasons),
            "classifier_mode": classification.mode.value,
            "risk": decision.risk_score,
            "degraded": outcome.failed,
            "outage": outcome.outage,
        }
        metadata.update(assistant_metadata or {})
        if log_user_message:
            log_message(self.db, user_id=user_id, scope=scope, role="user", content=message, channel=channel)
        log_message(
            self.db,
            user_id=user_id,
            scope=scope,
            role="assistant",
            content=reply,
            agent_used=mode.value,
            channel=channel,
            metadata=metadata,
        )
        self.db.commit()

        if written is not None:
            self._maybe_trigger_summarizer(user_id, scope, written.unprocessed_msg_count)

        return TurnResult(reply_text=reply, resolved_mode=mode, degraded=outcome.failed, reasons=list(decision.reasons))

    def _classify(
        self,
        message: str,
        snapshot: ConversationSnapshot,
        last_assistant: Optional[str],
    ) -> ClassifierResult:
        try:
            return run_with_timeout(
                "dispatcher.classify",
                self.config.classifier_timeout_seconds,
                self.classifier.classify,
                message,
                snapshot,
                last_assistant,
            )
        except Exception as exc:
            logger.warning("Classifier unavailable, failing open to companion: %s", exc)
            log_metric("dispatcher.classifier_fail_open", 1)
            return FAIL_OPEN_RESULT

    def _invoke_handler(
        self,
        mode: AgentMode,
        ctx: HandlerContext,
        decision: guards.RoutingDecision,
        *,
        channel: str,
        raise_on_outage: bool,
    ) -> _HandlerOutcome:
        try:
            handler = self.handlers[mode]
            result = run_with_timeout(f"handler.{mode.value}", self.config.handler_timeout_seconds, handler.run, ctx)
            if not result.reply.strip():
                raise HandlerFailure(mode.value, "empty reply")
            return _HandlerOutcome(reply=result.reply, result=result)
        except Exception as exc:
            logger.exception("Handler %s failed", mode.value)
            log_metric("dispatcher.handler_failure", 1, metadata={"mode": mode.value})
            handler_error = exc

        post_checkup = is_parking_lot_open(decision.investigation_state)
        try:
            reply = run_with_timeout(
                "dispatcher.emergency_reply",
                self.config.emergency_timeout_seconds,
                self.emergency.reply,
                ctx.message,
                mode,
                checkup_active=decision.checkup_active,
                post_checkup=post_checkup,
            )
            return _HandlerOutcome(reply=reply, result=None, failed=True)
        except Exception:
            logger.exception("Emergency reply failed for mode %s", mode.value)

        if raise_on_outage:
            raise HandlerFailure(mode.value, str(handler_error)) from handler_error

        payload = {
            "user_id": str(ctx.user_id),
            "scope": ctx.scope,
            "channel": channel,
            "message": ctx.message,
            "mode": mode.value,
            "reason": type(handler_error).__name__,
            "investigation_active": decision.checkup_active,
        }
        self.background.submit("llm_retry.enqueue", self._enqueue_retry, ctx.user_id, payload)
        log_metric("dispatcher.outage_template", 1, metadata={"mode": mode.value})
        return _HandlerOutcome(reply=OUTAGE_TEMPLATE, result=None, failed=True, outage=True)

    def _enqueue_retry(self, user_id: UUID, payload: Dict[str, Any]) -> None:
        session = self.session_factory()
        try:
            JobQueue(session).enqueue(
                LLM_RETRY_QUEUE,
                payload,
                user_id=user_id,
                max_attempts=self.config.job_max_attempts,
            )
        finally:
            session.close()

    def _apply_handler_state(
        self,
        mode: AgentMode,
        outcome: _HandlerOutcome,
        routed_state: Optional[Dict[str, Any]],
    ) -> Tuple[str, Optional[Dict[str, Any]]]:
        result = outcome.result
        if result is None or mode is not AgentMode.INVESTIGATOR or not result.updates_state:
            return outcome.reply, routed_state

        state = result.investigation_state
        if not result.interview_complete:
            return outcome.reply, state

        topic_list = deferred_topics(state)
        if not topic_list:
            logger.info("Interview complete without deferred topics")
            return outcome.reply, None
        logger.info("Interview complete; opening parking lot with %s topic(s)", len(topic_list))
        return parking_lot.announce_first_topic(topic_list[0]), parking_lot.opened_after_checkup(topic_list)

    def _capture_deferred_topic(
        self,
        decision: guards.RoutingDecision,
        message: str,
        reply: str,
        state: Optional[Dict[str, Any]],
    ) -> Optional[Dict[str, Any]]:
        if not decision.checkup_active or decision.stop_requested:
            return state
        user_deferred = user_explicitly_defers_topic(message)
        if not user_deferred and not assistant_deferred_topic(reply):
            return state

        topic = extract_deferred_topic(message) or message.strip()[:MAX_RAW_TOPIC_LENGTH] or FALLBACK_TOPIC
        if state is None:
            # The handler closed the interview this turn; keep the topic in a fresh parking lot.
            updated = append_deferred_topic(parking_lot.opened_after_checkup([]), topic)
            if not deferred_topics(updated):
                return None
            logger.info("Deferred topic captured after interview closed")
            return updated
        updated = append_deferred_topic(state, topic)
        if updated is not state:
            logger.info("Deferred topic captured (%s total)", len(deferred_topics(updated)))
        return updated

    def _verify(
        self,
        reply: str,
        mode: AgentMode,
        decision: guards.RoutingDecision,
        final_state: Optional[Dict[str, Any]],
        message: str,
    ) -> str:
        if self.verifier is None or mode is AgentMode.SENTRY:
            return reply
        if decision.parking_lot_active and is_parking_lot_open(final_state):
            variant = VARIANT_POST_CHECKUP
        elif decision.checkup_active and is_interview_active(final_state) and mode is not AgentMode.INVESTIGATOR:
            variant = VARIANT_CHECKUP
        else:
            return reply
        try:
            return run_with_timeout(
                f"verifier.{variant}",
                self.config.handler_timeout_seconds,
                self.verifier.verify,
                reply,
                mode,
                final_state,
                variant=variant,
                user_message=message,
            )
        except Exception:
            logger.exception("Verifier pass failed; keeping the handler reply")
            return reply

    def _maybe_trigger_summarizer(self, user_id: UUID, scope: str, count: int) -> None:
        threshold = self.config.summarizer_threshold
        if self.summarizer is None or threshold <= 0:
            return
        if count >= threshold and count % threshold == 0:
            logger.info("Unprocessed count %s reached threshold; scheduling summarizer", count)
            self.background.submit("summarizer", self.summarizer.run, user_id, scope)


def build_dispatcher(
    db: Session,
    *,
    llm: Optional[LLMClient] = None,
    background: Optional[BackgroundRunner] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> Dispatcher:
    """Wire a dispatcher with the default collaborators."""
    client = llm or get_llm_client()
    factory = session_factory or SessionLocal
    return Dispatcher(
        db,
        classifier=IntentClassifier(client),
        handlers=build_default_handlers(client),
        verifier=Verifier(client),
        emergency=EmergencyResponder(client),
        background=background or get_background_runner(),
        session_factory=factory,
        summarizer=ContextSummarizer(client, factory),
    )
