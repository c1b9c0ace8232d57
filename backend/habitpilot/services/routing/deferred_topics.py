"""Detection, extraction and storage of topics postponed during a checkup."""
from __future__ import annotations

import copy
import re
from typing import Any, Dict, List, Optional

from habitpilot.services.routing.text import fold

MAX_DEFERRED_TOPICS = 3
MAX_TOPIC_LENGTH = 120
MAX_EXTRACTED_LENGTH = 160
MIN_TOPIC_LENGTH = 4

_I = re.IGNORECASE

# Assistant side: "on pourra en reparler après", "on garde ça pour la fin", "on y reviendra".
_ASSISTANT_LATER = re.compile(
    r"\b(apres|plus tard|tout a l'?heure|quand on aura fini|fin du bilan|a la fin|quand tu veux|quand tu voudr\w*)\b"
)
_ASSISTANT_VERB = re.compile(
    r"\b(on pourra|on peut|on gard\w*|on verra|on reviendr\w*|on revien\w*|on reprendr\w*|on repren\w*|"
    r"on prendr\w*|on prend\w*|on en reparl\w*|on en parl\w*|on en discut\w*|on met ca de cote|"
    r"on le met de cote)\b"
)
_ASSISTANT_EXPLICIT = re.compile(
    r"\bon en reparl\w*\b|\bon en discut\w*\b|\bon (?:pourra|peut) (?:en reparler|en discuter|y revenir|revenir)\b"
    r"|\bon y reviendr\w*\b|\bon reviendr\w*\b"
)

# User side: a "talk about it" verb plus a "later" anchor.
_USER_TALK = re.compile(r"\bon (?:en )?(?:reparl\w*|parl\w*|discut\w*|y revien\w*|revien\w*)\b")
_USER_LATER = re.compile(r"\b(apres|plus tard)\b")

_DEFERRAL_SPLIT = re.compile(r"\bon\s+(?:en\s+)?(?:reparl\w*|parl\w*|discut\w*|y\s+revien\w*|revien\w*)\b", _I)
_LEADING_FILLERS = re.compile(r"^(?:mais|en\s+fait|du\s+coup|bon|bref|alors|ok)\b[,:]?\s*", _I)
_LEADING_TRUISM = re.compile(r"^c['’]est\s+vrai\s+que\s+", _I)
_QUOTES = re.compile(r"^[\"'“”‘’«»\s]+|[\"'“”‘’«»\s]+$")
_AFTER_CHECKUP = re.compile(r"\bapr[èe]s\s+(?:le\s+)?bilan\b", _I)
_CLAUSE_MARKER = re.compile(r"^(d['’]?ailleurs|au\s+fait|sinon|bon|bref|du\s+coup|tiens|ok|alors)$", _I)
_TRAILING_FILLERS = re.compile(
    r"\s+(?:s['’]il\s+te\s+pla[iî]t|s['’]il\s+vous\s+pla[iî]t|si\s+tu\s+veux|si\s+vous\s+voulez|du\s+coup|enfin|bref)\s*$",
    _I,
)
_TRAILING_CONJUNCTION = re.compile(r"\s*(?:,|\.)?\s*(?:mais|par\s+contre|donc)\s*$", _I)

_POSSESSIVE_SHORTCUTS = (
    re.compile(r"\b(?:mon|ma|mes)\s+organisation(?:\s+(?:au|du)\s+travail)?\b", _I),
    re.compile(r"\b(?:mon|ma|mes)\s+stress(?:\s+(?:au|du)\s+travail)?\b", _I),
)
_TALK_ABOUT_OBJECT = re.compile(
    r"\bon\s+en\s+(?:reparl\w*|parl\w*|discut\w*)\s+(?:(?:apr[èe]s|plus\s+tard)\s+)?(?:de|du|des|d['’])\s*(.+?)(?:\b(?:apr[èe]s|plus\s+tard)\b|[.?!]|$)",
    _I,
)
_FOR_X_TALK_LATER = re.compile(
    r"\b(?:pour|concernant|sur)\s+(.+?)[,;:]\s*on\s+en\s+(?:reparl\w*|parl\w*|discut\w*)\s+(?:apr[èe]s|plus\s+tard)\b",
    _I,
)
_CLAUSE_BEFORE_MARKER = re.compile(
    r"(?:j['’]ai\s+l['’]impression\s+que|je\s+pense\s+que|je\s+crois\s+que|c['’]est\s+que)\s+(.+?)(?:[,.!?]\s*)?"
    r"(?:on\s+(?:pourra|peut)\s+(?:en\s+parler|en\s+reparler|en\s+discuter|y\s+revenir|revenir)\s+(?:plus\s+tard|apr[èe]s)"
    r"|on\s+y\s+reviendr\w*|on\s+en\s+reparler\w*)\b",
    _I,
)
_SENTENCE_SPLIT = re.compile(r"[.?!]")
_PURE_DEFERRAL = re.compile(r"^\s*on\s+(?:en\s+)?reparl\w*", _I)
_NOISE_TOPICS = re.compile(r"^(d'ailleurs|bref|ok|oui|merci|c'est bon|je sais pas|je ne sais pas)$")


def assistant_deferred_topic(assistant_text: str) -> bool:
    """True when a reply postpones something ("on en reparlera après le bilan")."""
    text = fold(assistant_text)
    if not text:
        return False
    if _ASSISTANT_EXPLICIT.search(text):
        return True
    return bool(_ASSISTANT_LATER.search(text) and _ASSISTANT_VERB.search(text))


def user_explicitly_defers_topic(message: str) -> bool:
    text = fold(message)
    if not text:
        return False
    return bool(_USER_TALK.search(text) and _USER_LATER.search(text))


def normalize_topic(raw: str) -> str:
    value = str(raw or "").strip()
    if not value:
        return ""
    value = _LEADING_FILLERS.sub("", value).strip()
    value = _LEADING_TRUISM.sub("", value).strip()
    value = _QUOTES.sub("", value).strip()
    value = _DEFERRAL_SPLIT.split(value, maxsplit=1)[0].strip() or value
    value = _AFTER_CHECKUP.sub("", value).strip()
    if "," in value:
        parts = [part.strip() for part in value.split(",") if part.strip()]
        if parts:
            first = parts[0]
            value = parts[1] if _CLAUSE_MARKER.match(first) and len(parts) > 1 else first
    for _ in range(4):
        before = value
        value = _TRAILING_FILLERS.sub("", value)
        value = _TRAILING_CONJUNCTION.sub("", value).strip()
        if value == before:
            break
    return value[:MAX_EXTRACTED_LENGTH]


def extract_deferred_topic(message: str) -> str:
    """Best-effort topic text from a message containing a deferral marker.

    Tries a few known noun phrases, then the object of the talk-about-it
    verb, then the clause introduced before the marker, and finally the last
    meaningful sentence.
    """
    text = str(message or "").strip()
    if not text:
        return ""

    for shortcut in _POSSESSIVE_SHORTCUTS:
        match = shortcut.search(text)
        if match:
            return normalize_topic(match.group(0))

    for pattern in (_TALK_ABOUT_OBJECT, _FOR_X_TALK_LATER, _CLAUSE_BEFORE_MARKER):
        match = pattern.search(text)
        if match and match.group(1).strip():
            return normalize_topic(match.group(1))

    sentences = [part.strip() for part in _SENTENCE_SPLIT.split(text) if part.strip()]
    tail = sentences[-1] if sentences else text
    if len(sentences) >= 2 and len(tail) <= 80 and user_explicitly_defers_topic(tail):
        tail = sentences[-2]
    elif len(sentences) >= 2 and _PURE_DEFERRAL.match(tail):
        tail = sentences[-2]
    return normalize_topic(tail)


def _dedupe_key(topic: str) -> str:
    return re.sub(r"[\"'“”«»]", "", fold(topic)).strip()


def deferred_topics(investigation_state: Optional[Dict[str, Any]]) -> List[str]:
    memory = (investigation_state or {}).get("temp_memory") or {}
    topics = memory.get("deferred_topics") or []
    return [str(topic) for topic in topics if str(topic or "").strip()] if isinstance(topics, list) else []


def append_deferred_topic(investigation_state: Optional[Dict[str, Any]], topic: str) -> Optional[Dict[str, Any]]:
    """Return a copy of the state with ``topic`` appended.

    Near-duplicates (equal or contained after folding) are ignored, noisy or
    too-short topics are dropped and the list keeps the newest three entries.
    """
    cleaned = str(topic or "").strip()
    key = _dedupe_key(cleaned)
    if len(key) < MIN_TOPIC_LENGTH or _NOISE_TOPICS.match(key):
        return investigation_state

    existing = deferred_topics(investigation_state)
    for current in existing:
        current_key = _dedupe_key(current)
        if current_key == key or key in current_key or current_key in key:
            return investigation_state

    updated = copy.deepcopy(investigation_state) if investigation_state else {}
    memory = dict(updated.get("temp_memory") or {})
    memory["deferred_topics"] = (existing + [cleaned[:MAX_TOPIC_LENGTH]])[-MAX_DEFERRED_TOPICS:]
    updated["temp_memory"] = memory
    return updated
