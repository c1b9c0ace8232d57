"""Ordered routing guards that turn a classification into the final mode.

Each guard is a pure function ``(decision, ctx) -> decision``. Guards run in
the order of ``GUARDS``; a guard may override the mode or the investigation
state and appends a short reason so every override can be traced.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from habitpilot.services.intent_classifier import ClassifierResult
from habitpilot.services.modes import AgentMode
from habitpilot.services.routing import parking_lot, patterns
from habitpilot.services.routing.investigation import (
    POST_CHECKUP_DONE,
    is_interview_active,
    is_parking_lot_terminal,
    new_interview_state,
    status_of,
)


@dataclass(frozen=True)
class RoutingContext:
    message: str
    investigation_state: Optional[Dict[str, Any]]
    classification: ClassifierResult
    last_assistant_text: Optional[str]
    now: datetime
    low_risk_ceiling: int = 1


@dataclass(frozen=True)
class RoutingDecision:
    mode: AgentMode
    risk_score: int
    investigation_state: Optional[Dict[str, Any]]
    checkup_active: bool
    stop_requested: bool
    safety_locked: bool = False
    resumed: bool = False
    parking_lot_active: bool = False
    directive: Optional[str] = None
    reasons: Tuple[str, ...] = field(default_factory=tuple)

    def override(self, reason: str, **changes: Any) -> "RoutingDecision":
        return replace(self, reasons=self.reasons + (reason,), **changes)


Guard = Callable[[RoutingDecision, RoutingContext], RoutingDecision]


def safety_guard(decision: RoutingDecision, ctx: RoutingContext) -> RoutingDecision:
    if decision.mode is AgentMode.SENTRY:
        return decision.override("safety_sentry", safety_locked=True)
    if decision.mode is not AgentMode.FIREFIGHTER:
        return decision
    acute = patterns.looks_like_acute_distress(ctx.message)
    if decision.risk_score > ctx.low_risk_ceiling or acute:
        return decision.override("safety_crisis", safety_locked=True)
    if decision.checkup_active and not decision.stop_requested:
        return decision.override("low_risk_crisis_kept_in_checkup", mode=AgentMode.INVESTIGATOR)
    return decision.override("low_risk_crisis", safety_locked=True)


def checkup_lock_guard(decision: RoutingDecision, ctx: RoutingContext) -> RoutingDecision:
    if not decision.checkup_active or decision.stop_requested or decision.safety_locked:
        return decision
    if patterns.looks_like_acute_distress(ctx.message):
        return decision.override("checkup_crisis_handoff", mode=AgentMode.FIREFIGHTER, safety_locked=True)
    if patterns.is_deep_work_pain(ctx.message, decision.mode):
        return decision.override("checkup_deep_work_interrupt")
    if decision.mode is AgentMode.INVESTIGATOR:
        return decision
    return decision.override("checkup_locked", mode=AgentMode.INVESTIGATOR)


def stop_guard(decision: RoutingDecision, ctx: RoutingContext) -> RoutingDecision:
    if not decision.stop_requested:
        return decision
    changes: Dict[str, Any] = {}
    if is_interview_active(decision.investigation_state):
        changes["investigation_state"] = None
    if decision.mode is AgentMode.INVESTIGATOR:
        changes["mode"] = AgentMode.COMPANION
    if not changes:
        return decision
    return decision.override("checkup_stopped", **changes)


def resume_guard(decision: RoutingDecision, ctx: RoutingContext) -> RoutingDecision:
    if decision.safety_locked or decision.stop_requested:
        return decision
    if not is_parking_lot_terminal(decision.investigation_state):
        return decision
    if not patterns.is_explicit_resume_checkup(ctx.message):
        return decision
    return decision.override(
        "checkup_resumed",
        mode=AgentMode.INVESTIGATOR,
        investigation_state=None,
        resumed=True,
    )


def planning_activation_guard(decision: RoutingDecision, ctx: RoutingContext) -> RoutingDecision:
    if decision.safety_locked or decision.mode is AgentMode.ARCHITECT:
        return decision
    if not patterns.looks_like_planning_activation(ctx.message):
        return decision
    return decision.override("planning_activation", mode=AgentMode.ARCHITECT)


def start_gating_guard(decision: RoutingDecision, ctx: RoutingContext) -> RoutingDecision:
    state = decision.investigation_state
    if is_interview_active(state) or decision.safety_locked or decision.stop_requested:
        return decision
    can_start = state is None or status_of(state) == POST_CHECKUP_DONE
    explicit = patterns.is_explicit_checkup_intent(ctx.message) or patterns.looks_like_daily_checkin_reply(
        ctx.message, ctx.last_assistant_text
    )
    if can_start and (explicit or decision.resumed):
        return decision.override(
            "interview_started",
            mode=AgentMode.INVESTIGATOR,
            investigation_state=new_interview_state(ctx.now.isoformat()),
        )
    if decision.mode is not AgentMode.INVESTIGATOR:
        return decision
    if can_start and patterns.looks_like_action_progress(ctx.message):
        return decision.override(
            "interview_started_on_progress",
            investigation_state=new_interview_state(ctx.now.isoformat()),
        )
    return decision.override("interview_start_gated", mode=AgentMode.COMPANION)


def parking_lot_guard(decision: RoutingDecision, ctx: RoutingContext) -> RoutingDecision:
    if decision.mode is AgentMode.SENTRY:
        return decision
    outcome = parking_lot.step(decision.investigation_state, ctx.message, stop_requested=decision.stop_requested)
    if outcome is None:
        return decision
    # A crisis keeps its handler; the topic bookkeeping still moves.
    return decision.override(
        outcome.reason,
        mode=decision.mode if decision.safety_locked else outcome.mode,
        investigation_state=outcome.investigation_state,
        directive=outcome.directive,
        parking_lot_active=not outcome.closed,
    )


GUARDS: List[Guard] = [
    safety_guard,
    checkup_lock_guard,
    stop_guard,
    resume_guard,
    planning_activation_guard,
    start_gating_guard,
    parking_lot_guard,
]


def resolve(ctx: RoutingContext, guards: Optional[List[Guard]] = None) -> RoutingDecision:
    """Run the guard pipeline and return the final routing decision."""
    decision = RoutingDecision(
        mode=ctx.classification.mode,
        risk_score=ctx.classification.risk_score,
        investigation_state=ctx.investigation_state,
        checkup_active=is_interview_active(ctx.investigation_state),
        stop_requested=patterns.is_explicit_stop_checkup(ctx.message),
    )
    for guard in guards or GUARDS:
        decision = guard(decision, ctx)
    return decision
