"""
Satisfaction rating extraction — free-text survey replies to a 0–10 score.

Short replies (≤ 50 chars) are read generously: "9", "nota 8", "oito!".
Longer text is ordinary conversation unless it states a rating outright
("dou nota 10 pro atendimento"), so incidental digits never count.
"""
from __future__ import annotations

import re
from typing import Optional

SHORT_REPLY_MAX_LENGTH = 50
DETRACTOR_MAX_RATING = 6

_N = r"(10|[0-9])"

PHRASE_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(rf"\bnota\s*(?:é|e|:)\s*{_N}\b"),
    re.compile(rf"\b(?:dou|daria)\s+(?:uma\s+)?nota\s+{_N}\b"),
    re.compile(rf"(?<!\d){_N}\s*pontos?\b"),
    re.compile(rf"(?:avalio|avaliação|avaliacao)\s+(?:com\s+)?(?:nota\s+)?{_N}\b"),
)

_BARE_NUMBER = re.compile(rf"^{_N}[!.]?$")
_NOTA_N = re.compile(rf"\bnota\s*{_N}\s*(?:pontos?)?\s*[!.]?$")

NUMBER_WORDS: dict[str, int] = {
    "zero": 0, "um": 1, "uma": 1, "dois": 2, "duas": 2, "três": 3, "tres": 3,
    "quatro": 4, "cinco": 5, "seis": 6, "sete": 7, "oito": 8, "nove": 9, "dez": 10,
}
_NUMBER_WORD = re.compile(r"^(" + "|".join(NUMBER_WORDS) + r")\s*[!.]?$")


def _match_phrase(text: str) -> Optional[int]:
    for pattern in PHRASE_PATTERNS:
        match = pattern.search(text)
        if match:
            return int(match.group(1))
    return None


def extract_rating(text: Optional[str]) -> Optional[int]:
    """Return the 0–10 rating stated in `text`, or None. First matching rule wins."""
    cleaned = (text or "").strip().lower()
    if not cleaned:
        return None

    if len(cleaned) > SHORT_REPLY_MAX_LENGTH:
        return _match_phrase(cleaned)

    match = _BARE_NUMBER.match(cleaned)
    if match:
        return int(match.group(1))

    match = _NOTA_N.search(cleaned)
    if match:
        return int(match.group(1))

    rating = _match_phrase(cleaned)
    if rating is not None:
        return rating

    match = _NUMBER_WORD.match(cleaned)
    if match:
        return NUMBER_WORDS[match.group(1)]
    return None


def is_detractor(rating: Optional[int]) -> bool:
    return rating is not None and rating <= DETRACTOR_MAX_RATING
