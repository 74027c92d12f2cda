"""
Ordinal selection parser ("first", "2", "option 3", "the last one").

Two modes:
- strict: the whole utterance must be an ordinal form. An ordinal word inside
  an unrelated phrase ("show the last note I edited") is never a selection.
- embedded: additionally extracts an ordinal from a longer phrase
  ("I pick the second one").
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

from command_arbiter.classifier.normalization import levenshtein


class OrdinalMode(str, Enum):
    STRICT = "strict"
    EMBEDDED = "embedded"


ORDINAL_TARGETS = ("first", "second", "third", "fourth", "fifth", "last")

LAST = -1

_POLITE_SUFFIX = re.compile(r"\s*(pls|plz|please|thx|thanks|ty)\.?$", re.IGNORECASE)
_REPEATED = re.compile(r"(.)\1+")
_CONCATENATED = re.compile(r"^(first|second|third|fourth|fifth|last)(option|one)$")

_STRICT_PATTERN = re.compile(
    r"^(first|second|third|fourth|fifth|last|[1-9]|option\s*[1-9]|"
    r"the\s+(first|second|third|fourth|fifth|last)(\s+(one|option))?|"
    r"(first|second|third|fourth|fifth|last)\s+(one|option)|[a-e])$"
)

_STRICT_MAP: Dict[str, int] = {
    "first": 0, "1": 0, "option 1": 0, "option1": 0,
    "second": 1, "2": 1, "option 2": 1, "option2": 1,
    "third": 2, "3": 2, "option 3": 2, "option3": 2,
    "fourth": 3, "4": 3, "option 4": 3, "option4": 3,
    "fifth": 4, "5": 4, "option 5": 4, "option5": 4,
    "last": LAST,
}

# Ordered: specific phrases before bare words
_EMBEDDED_PATTERNS = (
    (re.compile(r"\bnumber\s+one\b"), 0),
    (re.compile(r"\bnumber\s+two\b"), 1),
    (re.compile(r"\bnumber\s+three\b"), 2),
    (re.compile(r"\b(first|1st)\b"), 0),
    (re.compile(r"\b(second|2nd)\b"), 1),
    (re.compile(r"\b(third|3rd)\b"), 2),
    (re.compile(r"\b(fourth|4th)\b"), 3),
    (re.compile(r"\b(fifth|5th)\b"), 4),
    (re.compile(r"\blast\b"), LAST),
)

_OPTION_NUMBER = re.compile(r"^option\s*([1-9])$")


@dataclass
class OrdinalMatch:
    is_selection: bool
    index: Optional[int] = None


NO_SELECTION = OrdinalMatch(is_selection=False)


def normalize_ordinal_typos(text: str) -> str:
    """
    Fix common ordinal typos before matching.

    "ffirst" -> "first", "sedond" -> "second", "secondoption" -> "second option"
    """
    normalized = text.lower().strip()
    normalized = _POLITE_SUFFIX.sub("", normalized).strip()
    normalized = _REPEATED.sub(r"\1", normalized)
    normalized = _CONCATENATED.sub(r"\1 \2", normalized)

    tokens = []
    for token in normalized.split():
        # Short tokens never fold: "for" must not become "fourth"
        if len(token) < 4 or token in ORDINAL_TARGETS:
            tokens.append(token)
            continue
        best, best_distance = None, 3
        for ordinal in ORDINAL_TARGETS:
            distance = levenshtein(token, ordinal)
            if 0 < distance <= 2 and distance < best_distance:
                best, best_distance = ordinal, distance
        tokens.append(best or token)
    return " ".join(tokens)


def _resolve_index(raw_index: int, option_count: int) -> Optional[int]:
    index = option_count - 1 if raw_index == LAST else raw_index
    if 0 <= index < option_count:
        return index
    return None


def _letter_badge_index(letter: str, labels: Sequence[str]) -> Optional[int]:
    """'b' picks the option whose label ends with the badge ' B'."""
    badge = f" {letter.upper()}"
    for i, label in enumerate(labels):
        if label.upper().endswith(badge):
            return i
    return None


def _match_strict(normalized: str, option_count: int, labels: Sequence[str]) -> OrdinalMatch:
    if not _STRICT_PATTERN.match(normalized):
        return NO_SELECTION

    if re.fullmatch(r"[a-e]", normalized):
        if not labels:
            return NO_SELECTION
        index = _letter_badge_index(normalized, labels)
        return OrdinalMatch(True, index) if index is not None else NO_SELECTION

    key = normalized
    if key.startswith("the "):
        key = key[4:]
    key = re.sub(r"\s+(one|option)$", "", key)

    raw = _STRICT_MAP.get(key)
    if raw is None:
        number = _OPTION_NUMBER.match(normalized)
        if not number:
            return NO_SELECTION
        raw = int(number.group(1)) - 1

    index = _resolve_index(raw, option_count)
    return OrdinalMatch(True, index) if index is not None else NO_SELECTION


def _match_embedded(normalized: str, option_count: int, labels: Sequence[str]) -> OrdinalMatch:
    strict = _match_strict(normalized, option_count, labels)
    if strict.is_selection:
        return strict

    for pattern, raw in _EMBEDDED_PATTERNS:
        if pattern.search(normalized):
            index = _resolve_index(raw, option_count)
            if index is not None:
                return OrdinalMatch(True, index)

    # Standalone numbers 1-5 only when the list is short enough to be unambiguous
    if option_count <= 5:
        number = re.search(r"\b([1-5])\b", normalized)
        if number:
            index = _resolve_index(int(number.group(1)) - 1, option_count)
            if index is not None:
                return OrdinalMatch(True, index)

    if normalized in ("the other one", "the other", "other one") and option_count == 2:
        return OrdinalMatch(True, 1)

    return NO_SELECTION


def parse_ordinal(
    text: str,
    option_count: int,
    labels: Optional[List[str]] = None,
    mode: OrdinalMode = OrdinalMode.STRICT,
) -> OrdinalMatch:
    """
    Parse an ordinal selection against a list of `option_count` options.

    Args:
        text: Raw utterance
        option_count: Number of options on screen
        labels: Option labels (for letter badges)
        mode: strict or embedded

    Returns:
        OrdinalMatch with a 0-based index when the utterance is a selection
    """
    if option_count <= 0:
        return NO_SELECTION

    normalized = normalize_ordinal_typos(text)
    labels = labels or []
    if mode == OrdinalMode.STRICT:
        return _match_strict(normalized, option_count, labels)
    return _match_embedded(normalized, option_count, labels)
