"""Prompt-driven handlers for companion, planning, crisis and support modes."""
from __future__ import annotations

from habitpilot.services.handlers.base import HandlerContext, HandlerResult, ModeHandler
from habitpilot.services.handlers.prompting import build_system_prompt, build_user_prompt
from habitpilot.services.llm_client import LLMClient
from habitpilot.services.modes import AgentMode


class PromptedHandler(ModeHandler):
    system_prompt: str = ""
    temperature: float = 0.6

    def __init__(self, llm: LLMClient) -> None:
        self.llm = llm

    def run(self, ctx: HandlerContext) -> HandlerResult:
        system_prompt = build_system_prompt(
            self.system_prompt,
            directive=ctx.directive,
            short_term_context=ctx.short_term_context,
            time_context=ctx.time_context,
        )
        reply = self.llm.generate(
            system_prompt,
            build_user_prompt(ctx.message, ctx.recent_history),
            temperature=self.temperature,
            operation=f"handler.{self.mode.value}",
        )
        return HandlerResult(reply=reply)


class CompanionHandler(PromptedHandler):
    mode = AgentMode.COMPANION
    temperature = 0.7
    system_prompt = (
        "Tu es un coach d'habitudes bienveillant qui discute par messages courts. "
        "Réponds naturellement, en français, en 2 à 4 phrases. Une seule question au maximum. "
        "N'invente jamais d'action technique que tu n'as pas faite."
    )


class ArchitectHandler(PromptedHandler):
    mode = AgentMode.ARCHITECT
    temperature = 0.4
    system_prompt = (
        "Tu aides l'utilisateur à organiser son plan d'habitudes: priorités, planning, découpage en petites "
        "étapes réalistes. Sois concret et structuré, sans jargon. Propose au plus trois étapes et termine "
        "par une seule question de validation."
    )


class FirefighterHandler(PromptedHandler):
    mode = AgentMode.FIREFIGHTER
    temperature = 0.3
    system_prompt = (
        "L'utilisateur traverse un moment difficile. Accueille l'émotion, aide à faire redescendre la pression "
        "avec une technique simple (respiration, ancrage), puis propose un tout petit pas. Phrases courtes, "
        "ton calme, aucune injonction."
    )


class AssistantHandler(PromptedHandler):
    mode = AgentMode.ASSISTANT
    temperature = 0.2
    system_prompt = (
        "Tu es le support technique de l'application de coaching. Explique simplement comment résoudre le "
        "problème décrit. Si tu ne sais pas, dis-le et propose de contacter le support. Ne promets aucune "
        "action que tu ne peux pas effectuer."
    )
