"""Default handler set keyed by mode."""
from __future__ import annotations

from typing import Dict

from habitpilot.services.handlers.base import ModeHandler
from habitpilot.services.handlers.conversational import (
    ArchitectHandler,
    AssistantHandler,
    CompanionHandler,
    FirefighterHandler,
)
from habitpilot.services.handlers.investigator import InvestigatorHandler
from habitpilot.services.handlers.sentry import SentryHandler
from habitpilot.services.llm_client import LLMClient
from habitpilot.services.modes import AgentMode


def build_default_handlers(llm: LLMClient) -> Dict[AgentMode, ModeHandler]:
    handlers = [
        SentryHandler(),
        FirefighterHandler(llm),
        InvestigatorHandler(llm),
        ArchitectHandler(llm),
        CompanionHandler(llm),
        AssistantHandler(llm),
    ]
    return {handler.mode: handler for handler in handlers}
