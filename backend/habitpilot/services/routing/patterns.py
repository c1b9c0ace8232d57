"""Named message predicates used by the routing guards.

Every predicate works on folded text (lowercase, no accents, straight
apostrophes) so the expressions below are written without accents.
"""
from __future__ import annotations

import re

from habitpilot.services.modes import AgentMode
from habitpilot.services.routing.text import fold

# Deferrals ("plus tard", "pas maintenant") are not stops; they go to the parking lot.
_STOP_CHECKUP = re.compile(
    r"\b(stop|stoppe|stopper|pause|arrete|arreter|arretons|on arrete|on peut arreter|je veux arreter|"
    r"annule|annuler|annulons|laisse tomber|on laisse tomber|c'est trop lourd|c'est lourd|pas de bilan)\b"
)
_CHECKUP_WORD = re.compile(r"\b(bilan|check ?-?up|check ?-?in|point du jour|faire le point)\b")
_RESUME_CHECKUP = re.compile(
    r"\b(reprend\w*|repren\w*|termin\w*|finir|finis\w*|continu\w*|relanc\w*|refai\w*|recommenc\w*)\b"
    r".{0,40}\b(bilan|check ?-?up)\b"
    r"|\b(bilan|check ?-?up)\b.{0,30}\b(reprend\w*|termin\w*|finir|continu\w*)\b"
)
_PROGRESS_VERB = re.compile(
    r"\b(j'ai (?:bien )?(?:fait|termine|fini|reussi|valide|coche|tenu)|c'est fait|pas (?:fait|reussi|tenu)|"
    r"j'ai (?:rate|zappe|oublie|saute))\b"
)
_PROGRESS_OBJECT = re.compile(
    r"\b(action|actions|habitude|routine|exercice|exercices|objectif|seance|sport|meditation|lecture|"
    r"marche|course|respiration|etirements?)\b"
)
_ACUTE_DISTRESS = re.compile(
    r"\b(je craque|j'en peux plus|je n'en peux plus|panique|crise d'angoisse|crise de panique|je suffoque|"
    r"j'arrive pas a respirer|du mal a respirer|je vais exploser|au bout du rouleau|effondre\w*|detresse|"
    r"je tremble|je pleure|envie de tout lacher)\b"
)
_DEEP_WORK_PAIN = re.compile(
    r"\b(planning|agenda|organisation|organisatio|priorites?|ingerable|deborde\w*|trop de trucs|overbook\w*|"
    r"surcharge\w*|charge mentale)\b"
)
_PLANNING_ACTIVATION = re.compile(
    r"\b(active|activer|lance|lancer|demarre|demarrer|debloque|debloquer)\b.{0,40}"
    r"\b(plan|programme|phase|exercice|attrape[- ]reves)\b"
    r"|\b(cree|creer|construis|construire|refais|refaire)\b.{0,20}\b(mon plan|un plan|mon programme)\b"
)
_TOPIC_DONE = re.compile(
    r"\b(oui|c'est bon|ok|merci|suivant|passons|on avance|continue|on continue|ca va|c'est clair)\b"
)
_TOPIC_PLANNING = re.compile(r"\b(planning|agenda|organisation|programme|plan)\b")
_TOPIC_CRISIS = re.compile(r"\b(panique|crise|je craque|detresse|urgence)\b")

DAILY_CHECKIN_ANCHORS = ("un truc dont tu es fier", "un truc a ajuster")


def is_explicit_stop_checkup(message: str) -> bool:
    return bool(_STOP_CHECKUP.search(fold(message)))


def is_explicit_resume_checkup(message: str) -> bool:
    return bool(_RESUME_CHECKUP.search(fold(message)))


def is_explicit_checkup_intent(message: str) -> bool:
    text = fold(message)
    if not _CHECKUP_WORD.search(text):
        return False
    return not _STOP_CHECKUP.search(text)


def looks_like_action_progress(message: str) -> bool:
    text = fold(message)
    return bool(_PROGRESS_VERB.search(text) and _PROGRESS_OBJECT.search(text))


def looks_like_daily_checkin_reply(message: str, last_assistant_text: str | None) -> bool:
    """True when the user answers the daily check-in invitation."""
    if not fold(message):
        return False
    last = fold(last_assistant_text)
    return all(anchor in last for anchor in DAILY_CHECKIN_ANCHORS)


def looks_like_acute_distress(message: str) -> bool:
    return bool(_ACUTE_DISTRESS.search(fold(message)))


def is_deep_work_pain(message: str, target_mode: AgentMode) -> bool:
    """Concrete planning pain that may interrupt an active checkup."""
    if target_mode is not AgentMode.ARCHITECT:
        return False
    return bool(_DEEP_WORK_PAIN.search(fold(message)))


def looks_like_planning_activation(message: str) -> bool:
    return bool(_PLANNING_ACTIVATION.search(fold(message)))


def user_signals_topic_done(message: str) -> bool:
    return bool(_TOPIC_DONE.search(fold(message)))


def mode_for_topic(topic: str) -> AgentMode:
    text = fold(topic)
    if _TOPIC_PLANNING.search(text):
        return AgentMode.ARCHITECT
    if _TOPIC_CRISIS.search(text):
        return AgentMode.FIREFIGHTER
    return AgentMode.COMPANION
