"""
Text normalization and intent-pattern detectors shared by every stage.

The scope resolver, the confidence gate, the continuity tie-break and the
replay resolver all normalize through this module so that no two stages drift
apart on what "the same input" means.
"""

import re
from typing import FrozenSet, List, Optional, Tuple


# =============================================================================
# Patterns
# =============================================================================

AFFIRMATION_PATTERN = re.compile(
    r"^(yes|yeah|yep|yup|sure|ok|okay|k|ya|ye|yea|mhm|go ahead|do it|proceed|"
    r"correct|right|exactly|confirm|confirmed)(\s+please)?$",
    re.IGNORECASE,
)

QUESTION_INTENT_PATTERN = re.compile(
    r"^(what|how|where|when|why|who|which|can|could|would|should|tell|explain|help|is|are|do|does)\b",
    re.IGNORECASE,
)

ACTION_VERB_PATTERN = re.compile(
    r"\b(open|close|show|list|go|view|launch|create|rename|delete|remove|add|"
    r"navigate|edit|modify|change|update|pick|choose|select|use)\b",
    re.IGNORECASE,
)

POLITE_COMMAND_PREFIXES: Tuple[str, ...] = (
    "can you", "could you", "would you", "will you",
    "please", "pls", "hey", "can u", "could u",
)

ORDINAL_WORD_PATTERN = re.compile(r"\b(first|second|third|fourth|fifth|last|[1-9])\b", re.IGNORECASE)

# Pronoun follow-ups that reference the active option set
FOLLOWUP_REFERENCE_PATTERN = re.compile(r"^(that|that one|this|this one|it|the other one|the other)$", re.IGNORECASE)

_TRAILING_PUNCT = re.compile(r"[?!.,;:]+$")
_WS = re.compile(r"\s+")
_TOKEN = re.compile(r"[a-z0-9]+")

# Polite/verb prefixes, longest first so a short prefix never shadows a long one
_COMMAND_PREFIXES: Tuple[str, ...] = tuple(sorted((
    "hey can you please open", "hey can you please show",
    "hey can you pls open", "hey can you pls show",
    "hey can you open", "hey can you show",
    "hey could you please open", "hey could you please show",
    "hey could you open", "hey could you show",
    "hey can you please", "hey can you pls",
    "hey could you please", "hey could you pls",
    "can you please open", "can you please show",
    "can you pls open", "can you pls show",
    "can you please", "can you pls",
    "could you please open", "could you please show",
    "could you pls open", "could you pls show",
    "could you please", "could you pls",
    "would you please open", "would you please show",
    "would you please", "would you pls",
    "can you open", "can you show",
    "could you open", "could you show",
    "would you open", "would you show",
    "please open", "pls open", "please show", "pls show",
    "hey open", "hey show", "hey",
    "open", "show", "view", "go to", "launch", "select", "pick", "choose",
), key=len, reverse=True))

_LEADING_ARTICLE = re.compile(r"^(the|a|an)\s+", re.IGNORECASE)
_TRAILING_FILLER = re.compile(
    r"(\s+(pls|please|plz|thanks|thank you|thx|ty|now|for me))+$", re.IGNORECASE
)

# Singular/plural folding for label comparison
CANONICAL_TOKENS = {
    "panel": "panel", "panels": "panel",
    "widget": "widget", "widgets": "widget",
    "link": "links", "links": "links",
    "option": "option", "options": "option",
    "dashboard": "dashboard", "dashboards": "dashboard",
    "workspace": "workspace", "workspaces": "workspace",
    "note": "note", "notes": "note",
}

# Verbs and articles dropped from canonical token sets. Politeness is not
# dropped here: "pls show X thank you" must stay a soft match.
VERB_ARTICLE_TOKENS: FrozenSet[str] = frozenset({
    "the", "a", "an", "open", "show", "view", "launch", "go", "to", "select",
    "pick", "choose",
})


# =============================================================================
# Normalization
# =============================================================================

def normalize_text(text: str) -> str:
    """Lowercase, trim, drop trailing punctuation, collapse whitespace."""
    normalized = text.lower().strip()
    normalized = _TRAILING_PUNCT.sub("", normalized)
    return _WS.sub(" ", normalized).strip()


def canonicalize_command_input(text: str) -> str:
    """
    Strip polite prefixes, leading articles and trailing filler.

    "hey can you please open the Links Panel D thanks" -> "links panel d"
    """
    normalized = normalize_text(text)

    for prefix in _COMMAND_PREFIXES:
        if normalized == prefix:
            normalized = ""
            break
        if normalized.startswith(prefix + " "):
            normalized = normalized[len(prefix):].strip()
            break

    normalized = _LEADING_ARTICLE.sub("", normalized).strip()
    normalized = _TRAILING_FILLER.sub("", normalized).strip()
    return _WS.sub(" ", normalized).strip()


def tokenize(text: str) -> List[str]:
    return _TOKEN.findall(text.lower())


def canonical_token(token: str) -> str:
    if token in CANONICAL_TOKENS:
        return CANONICAL_TOKENS[token]
    # Generic plural fold: "items" -> "item", never "class" -> "clas"
    if len(token) > 3 and token.endswith("s") and not token.endswith(("ss", "us", "is")):
        return token[:-1]
    return token


def strip_verbs_and_articles(text: str) -> str:
    return " ".join(t for t in tokenize(normalize_text(text)) if t not in VERB_ARTICLE_TOKENS)


def canonical_token_set(text: str) -> FrozenSet[str]:
    """Token set after verb/article stripping and plural folding."""
    return frozenset(canonical_token(t) for t in tokenize(strip_verbs_and_articles(text)))


def levenshtein(a: str, b: str) -> int:
    """Classic edit distance (insert/delete/substitute, unit cost)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


# =============================================================================
# Intent detectors
# =============================================================================

def is_affirmation(text: str) -> bool:
    return bool(AFFIRMATION_PATTERN.match(normalize_text(text)))


def is_followup_reference(text: str) -> bool:
    return bool(FOLLOWUP_REFERENCE_PATTERN.match(normalize_text(text)))


def is_polite_imperative(text: str) -> bool:
    """'can you open panel d?' is a command dressed as a question."""
    normalized = normalize_text(text)
    has_prefix = any(
        normalized == p or normalized.startswith(p + " ") for p in POLITE_COMMAND_PREFIXES
    )
    return has_prefix and bool(ACTION_VERB_PATTERN.search(normalized))


def has_question_intent(text: str) -> bool:
    """
    Genuine question, not a polite command.

    A trailing '?' alone does not make a question: "ope panel d pls?" is a
    polite command.
    """
    raw = text.strip()
    if is_polite_imperative(raw):
        return False
    normalized = normalize_text(raw)
    if QUESTION_INTENT_PATTERN.match(normalized):
        return True
    return raw.endswith("?") and not ACTION_VERB_PATTERN.search(normalized)


def is_command_or_selection(text: str) -> bool:
    """
    Command-like or selection-like utterance.

    Covers imperatives, ordinals, follow-up references ("that one") and
    affirmations; excludes questions.
    """
    if has_question_intent(text):
        return False
    normalized = normalize_text(text)
    if not normalized:
        return False
    return bool(
        ACTION_VERB_PATTERN.search(normalized)
        or ORDINAL_WORD_PATTERN.search(normalized)
        or FOLLOWUP_REFERENCE_PATTERN.match(normalized)
        or AFFIRMATION_PATTERN.match(normalized)
    )


def strip_leading_affirmation(text: str, affirmations: List[str]) -> Tuple[str, Optional[str]]:
    """
    Remove a leading affirmation token ("yes", "ok, ...").

    Returns:
        (remainder, stripped_affirmation or None)
    """
    normalized = normalize_text(text)
    for phrase in sorted(affirmations, key=len, reverse=True):
        phrase = phrase.lower()
        if normalized == phrase:
            return "", phrase
        if normalized.startswith(phrase + " ") or normalized.startswith(phrase + ","):
            remainder = normalized[len(phrase):].lstrip(" ,").strip()
            return remainder, phrase
    return normalized, None
