"""Prompt assembly shared by LLM-backed handlers."""
from __future__ import annotations

from typing import Dict, List, Optional

HISTORY_LIMIT = 12

ROLE_LABELS = {"user": "Utilisateur", "assistant": "Coach"}


def format_history(history: List[Dict[str, str]], limit: int = HISTORY_LIMIT) -> str:
    lines = []
    for item in history[-limit:]:
        label = ROLE_LABELS.get(item.get("role", ""), item.get("role", ""))
        content = (item.get("content") or "").strip()
        if content:
            lines.append(f"{label}: {content}")
    return "\n".join(lines)


def build_system_prompt(
    base: str,
    *,
    directive: Optional[str] = None,
    short_term_context: Optional[str] = None,
    time_context: Optional[str] = None,
) -> str:
    sections = [base.strip()]
    if directive:
        sections.append(directive.strip())
    if time_context:
        sections.append(f"=== REPÈRES TEMPORELS ===\n{time_context.strip()}")
    if short_term_context:
        sections.append(f"=== CONTEXTE RÉCENT ===\n{short_term_context.strip()}")
    return "\n\n".join(sections)


def build_user_prompt(message: str, history: List[Dict[str, str]]) -> str:
    transcript = format_history(history)
    if transcript:
        return f"Historique récent:\n{transcript}\n\nMessage de l'utilisateur:\n{message}"
    return f"Message de l'utilisateur:\n{message}"
