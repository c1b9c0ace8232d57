"""Checkup interview handler."""
from __future__ import annotations

import copy
import logging

from habitpilot.services.handlers.base import HandlerContext, HandlerResult, ModeHandler
from habitpilot.services.handlers.prompting import build_system_prompt, build_user_prompt
from habitpilot.services.llm_client import LLMClient
from habitpilot.services.modes import AgentMode

logger = logging.getLogger(__name__)

MAX_INTERVIEW_TURNS = 12

INVESTIGATOR_PROMPT = (
    "Tu mènes le bilan du jour de l'utilisateur: comment il se sent, ce qu'il a fait de ses actions, "
    "un truc dont il est fier, un truc à ajuster. Une seule question par message, ton chaleureux et bref. "
    "Si l'utilisateur veut parler d'un autre sujet, propose d'en reparler après le bilan. "
    'Réponds en JSON: {"reply": "...", "complete": false}. Mets complete à true seulement quand tous les '
    "points ont été couverts et que ton message conclut le bilan."
)


class InvestigatorHandler(ModeHandler):
    mode = AgentMode.INVESTIGATOR

    def __init__(self, llm: LLMClient) -> None:
        self.llm = llm

    def run(self, ctx: HandlerContext) -> HandlerResult:
        state = copy.deepcopy(ctx.investigation_state) or {}
        turns_before = int(state.get("turns") or 0)
        system_prompt = build_system_prompt(
            INVESTIGATOR_PROMPT,
            directive=ctx.directive,
            short_term_context=ctx.short_term_context,
            time_context=ctx.time_context,
        )
        payload = self.llm.generate_json(
            system_prompt,
            build_user_prompt(ctx.message, ctx.recent_history),
            temperature=0.4,
            operation="handler.investigator",
        )
        reply = str(payload.get("reply") or "").strip()
        if not reply:
            raise ValueError("investigator returned an empty reply")

        state["turns"] = turns_before + 1
        # The opening turn can never close the interview.
        complete = turns_before >= 1 and bool(payload.get("complete"))
        if state["turns"] >= MAX_INTERVIEW_TURNS:
            logger.info("Interview for user %s reached %s turns; closing", ctx.user_id, state["turns"])
            complete = True
        return HandlerResult(reply=reply, investigation_state=state, updates_state=True, interview_complete=complete)
