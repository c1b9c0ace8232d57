"""Safety triage handler; deterministic so it never depends on the LLM."""
from __future__ import annotations

import logging

from habitpilot.services.handlers.base import HandlerContext, HandlerResult, ModeHandler
from habitpilot.services.modes import AgentMode

logger = logging.getLogger(__name__)

SENTRY_REPLY = (
    "Ce que tu décris m'inquiète et ta sécurité passe avant tout. "
    "Si tu es en danger immédiat, appelle le 112 maintenant. "
    "Si tu as des idées suicidaires, tu peux appeler le 3114 (24h/24, gratuit). "
    "Tu n'es pas seul·e: est-ce que quelqu'un peut être avec toi en ce moment ?"
)


class SentryHandler(ModeHandler):
    mode = AgentMode.SENTRY

    def run(self, ctx: HandlerContext) -> HandlerResult:
        logger.warning("Safety triage triggered for user %s (risk=%s)", ctx.user_id, ctx.risk_level)
        return HandlerResult(reply=SENTRY_REPLY)
