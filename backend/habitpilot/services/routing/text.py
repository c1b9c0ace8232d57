"""Text normalization shared by the routing predicates."""
from __future__ import annotations

import re
import unicodedata

_APOSTROPHES = str.maketrans({"’": "'", "‘": "'", "`": "'", "´": "'"})
_WHITESPACE = re.compile(r"\s+")


def fold(text: str | None) -> str:
    """Lowercase, unify apostrophes, strip accents and collapse whitespace."""
    value = str(text or "").translate(_APOSTROPHES).lower()
    value = unicodedata.normalize("NFKD", value)
    value = "".join(ch for ch in value if not unicodedata.combining(ch))
    return _WHITESPACE.sub(" ", value).strip()
