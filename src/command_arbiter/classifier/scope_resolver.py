"""
ScopeResolver: explicit scope cues ("from chat", "in the active widget").

Tiers, strictly ordered:
1. high: exact trigger + scope word from the closed vocabulary
2. low_typo: exact trigger, scope word within a small edit distance
3. scope_uncertain: trigger and scope word both within a looser distance

Typo tiers are never executable: the engine always answers them with a
"did you mean" clarifier. A token that is itself an exact vocabulary word is
never read as a typo of a different scope.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from command_arbiter.classifier.normalization import levenshtein, normalize_text
from command_arbiter.models import ScopeConfidence, ScopeCueResult, ScopeKind
from command_arbiter.settings import settings


# Multi-cue precedence when several exact cues are present
SCOPE_PRECEDENCE = (ScopeKind.CHAT, ScopeKind.WIDGET, ScopeKind.DASHBOARD, ScopeKind.WORKSPACE)

# Function words close to "in"/"from" by edit distance that are never trigger typos
NON_TRIGGER_WORDS = frozenset({
    "is", "it", "on", "if", "at", "to", "of", "an", "as", "or", "by", "i", "a",
    "up", "so", "no", "me", "my", "we", "us", "for", "and", "the",
})

_WORD = re.compile(r"[a-z0-9']+")
_BADGE = re.compile(r"^[a-z0-9]$")


@dataclass
class ScopeVocabulary:
    """Closed vocabulary and tolerance thresholds."""
    triggers: List[str] = field(default_factory=lambda: ["from", "in"])
    fillers: List[str] = field(default_factory=lambda: ["the", "active", "current", "this", "my"])
    words: Dict[ScopeKind, List[str]] = field(default_factory=dict)
    compound_cues: Dict[ScopeKind, List[str]] = field(default_factory=dict)
    typo_max_distance: int = 1
    uncertain_max_distance: int = 2
    min_uncertain_token_length: int = 3
    # Name tokens allowed between fillers and a widget word ("from links panel d")
    max_name_tokens: int = 2

    @classmethod
    def from_settings(cls) -> "ScopeVocabulary":
        scope = settings.scope
        return cls(
            triggers=list(scope.triggers),
            fillers=list(scope.fillers),
            words={ScopeKind(k): list(v) for k, v in scope.vocabulary.items()},
            compound_cues={ScopeKind(k): list(v or []) for k, v in scope.compound_cues.items()},
            typo_max_distance=scope.typo_max_distance,
            uncertain_max_distance=scope.uncertain_max_distance,
            min_uncertain_token_length=scope.min_uncertain_token_length,
        )

    def scope_of(self, word: str) -> Optional[ScopeKind]:
        for kind in SCOPE_PRECEDENCE:
            if word in self.words.get(kind, ()):
                return kind
        return None

    @property
    def all_words(self) -> List[Tuple[str, ScopeKind]]:
        return [(w, kind) for kind in SCOPE_PRECEDENCE for w in self.words.get(kind, ())]


@dataclass
class _Cue:
    scope: ScopeKind
    start: int
    end: int  # exclusive token index
    distance: int = 0
    named_hint: Optional[str] = None


class ScopeResolver:
    """
    Parse scope cues out of an utterance.

    Usage:
        resolver = ScopeResolver()
        cue = resolver.resolve("open links panel d from active widgetss")
        cue.confidence  # ScopeConfidence.LOW_TYPO
    """

    def __init__(self, vocabulary: Optional[ScopeVocabulary] = None):
        self.vocabulary = vocabulary or ScopeVocabulary.from_settings()

    # =========================================================================
    # Public API
    # =========================================================================

    def resolve(self, utterance: str, label_phrases: Sequence[str] = ()) -> ScopeCueResult:
        """
        Args:
            utterance: Raw user text
            label_phrases: Candidate labels of the implicitly bound pool. A typo
                cue whose words run inside one of them ("Form Widget") is
                label text, not a cue.
        """
        normalized = normalize_text(utterance)
        tokens = _WORD.findall(normalized)
        if not tokens:
            return ScopeCueResult(stripped_input=normalized)

        exact = self._find_compound_cues(tokens) + self._find_exact_cues(tokens)
        if exact:
            return self._result_from_exact(tokens, exact)

        typo = self._find_typo_cues(tokens, trigger_distance=0, scope_distance=self.vocabulary.typo_max_distance)
        typo = self._outside_labels(tokens, typo, label_phrases)
        if typo:
            return self._result_from_typo(tokens, typo, ScopeConfidence.LOW_TYPO)

        uncertain = self._find_typo_cues(
            tokens,
            trigger_distance=self.vocabulary.uncertain_max_distance,
            scope_distance=self.vocabulary.uncertain_max_distance,
        )
        uncertain = self._outside_labels(tokens, uncertain, label_phrases)
        if uncertain:
            return self._result_from_typo(tokens, uncertain, ScopeConfidence.SCOPE_UNCERTAIN)

        return ScopeCueResult(stripped_input=" ".join(tokens))

    def correct_trigger_word(self, utterance: str) -> Tuple[str, bool]:
        """
        One-shot trigger-word correction: "rom active widget" -> "from active widget".

        Only a token that directly precedes (fillers aside) a vocabulary word,
        or a typo of one, is eligible.
        """
        tokens = _WORD.findall(normalize_text(utterance))
        for i, token in enumerate(tokens):
            if token in self.vocabulary.triggers:
                continue
            trigger = self._nearest_trigger(token, max_distance=1)
            if trigger is None:
                continue
            j = self._skip_fillers(tokens, i + 1)
            if j < len(tokens) and self._nearest_scope(tokens[j], self.vocabulary.uncertain_max_distance):
                corrected = tokens[:i] + [trigger] + tokens[i + 1:]
                return " ".join(corrected), True
        return " ".join(tokens), False

    # =========================================================================
    # Exact tier
    # =========================================================================

    def _find_compound_cues(self, tokens: List[str]) -> List[_Cue]:
        cues = []
        for kind in SCOPE_PRECEDENCE:
            for phrase in self.vocabulary.compound_cues.get(kind, ()):
                phrase_tokens = phrase.split()
                n = len(phrase_tokens)
                for start in range(len(tokens) - n + 1):
                    if tokens[start:start + n] == phrase_tokens:
                        cues.append(_Cue(kind, start, start + n))
        return cues

    def _find_exact_cues(self, tokens: List[str]) -> List[_Cue]:
        cues = []
        for i, token in enumerate(tokens):
            if token not in self.vocabulary.triggers:
                continue
            j = self._skip_fillers(tokens, i + 1)
            cue = self._exact_scope_at(tokens, i, j)
            if cue:
                cues.append(cue)
        return cues

    def _exact_scope_at(self, tokens: List[str], start: int, j: int) -> Optional[_Cue]:
        if j >= len(tokens):
            return None
        kind = self.vocabulary.scope_of(tokens[j])
        if kind == ScopeKind.WIDGET:
            end, hint = self._consume_badge(tokens, j, [])
            return _Cue(kind, start, end, named_hint=hint)
        if kind is not None:
            return _Cue(kind, start, j + 1)

        # "from links panel d": name tokens, then a widget word
        for k in range(1, self.vocabulary.max_name_tokens + 1):
            if j + k >= len(tokens):
                break
            name_tokens = tokens[j:j + k]
            if any(self.vocabulary.scope_of(t) or t in self.vocabulary.triggers for t in name_tokens):
                break
            if self.vocabulary.scope_of(tokens[j + k]) == ScopeKind.WIDGET:
                end, hint = self._consume_badge(tokens, j + k, name_tokens)
                return _Cue(ScopeKind.WIDGET, start, end, named_hint=hint)
        return None

    def _consume_badge(self, tokens: List[str], scope_index: int, name_tokens: List[str]) -> Tuple[int, Optional[str]]:
        end = scope_index + 1
        badge = None
        if end < len(tokens) and _BADGE.match(tokens[end]):
            badge = tokens[end]
            end += 1
        if not name_tokens and badge is None:
            return end, None
        parts = name_tokens + [tokens[scope_index]] + ([badge] if badge else [])
        return end, " ".join(parts)

    def _result_from_exact(self, tokens: List[str], cues: List[_Cue]) -> ScopeCueResult:
        kinds = {c.scope for c in cues}
        stripped = self._strip(tokens, cues)

        if ScopeKind.CHAT in kinds and ScopeKind.WIDGET in kinds:
            return ScopeCueResult(
                scope=ScopeKind.NONE,
                confidence=ScopeConfidence.NONE,
                stripped_input=stripped,
                has_conflict=True,
                cue_text=" | ".join(" ".join(tokens[c.start:c.end]) for c in cues),
                suggested_scopes=[ScopeKind.CHAT, ScopeKind.WIDGET],
            )

        winner = min(cues, key=lambda c: (SCOPE_PRECEDENCE.index(c.scope), c.start))
        return ScopeCueResult(
            scope=winner.scope,
            confidence=ScopeConfidence.HIGH,
            stripped_input=stripped,
            named_hint=winner.named_hint,
            cue_text=" ".join(tokens[winner.start:winner.end]),
        )

    # =========================================================================
    # Typo tiers
    # =========================================================================

    def _find_typo_cues(self, tokens: List[str], trigger_distance: int, scope_distance: int) -> List[_Cue]:
        cues = []
        for i, token in enumerate(tokens):
            if token in self.vocabulary.triggers:
                t_dist = 0
            else:
                trigger = self._nearest_trigger(token, trigger_distance) if trigger_distance else None
                if trigger is None:
                    continue
                t_dist = levenshtein(token, trigger)

            j = self._skip_fillers(tokens, i + 1)
            if j >= len(tokens):
                continue
            word = tokens[j]

            exact_kind = self.vocabulary.scope_of(word)
            if exact_kind is not None:
                # Exact alternate-scope token: only its own scope, and only
                # reachable here through a misspelled trigger
                if t_dist > 0:
                    cues.append(_Cue(exact_kind, i, j + 1, distance=t_dist))
                continue

            if len(word) < self.vocabulary.min_uncertain_token_length and t_dist > 0:
                continue
            if word in self.vocabulary.triggers or word in self.vocabulary.fillers:
                continue

            for kind, distance in self._scopes_within(word, scope_distance):
                cues.append(_Cue(kind, i, j + 1, distance=max(distance, t_dist)))
        return cues

    def _result_from_typo(self, tokens: List[str], cues: List[_Cue], confidence: ScopeConfidence) -> ScopeCueResult:
        ordered = sorted(cues, key=lambda c: (c.distance, SCOPE_PRECEDENCE.index(c.scope)))
        suggested: List[ScopeKind] = []
        for cue in ordered:
            if cue.scope not in suggested:
                suggested.append(cue.scope)
        best = ordered[0]
        return ScopeCueResult(
            scope=best.scope,
            confidence=confidence,
            stripped_input=self._strip(tokens, [best]),
            cue_text=" ".join(tokens[best.start:best.end]),
            suggested_scopes=suggested,
        )

    @staticmethod
    def _outside_labels(tokens: List[str], cues: List[_Cue], label_phrases: Sequence[str]) -> List[_Cue]:
        if not cues or not label_phrases:
            return cues
        labels = [_WORD.findall(normalize_text(phrase)) for phrase in label_phrases]
        kept = []
        for cue in cues:
            span = tokens[cue.start:cue.end]
            n = len(span)
            if any(label[k:k + n] == span for label in labels for k in range(len(label) - n + 1)):
                continue
            kept.append(cue)
        return kept

    # =========================================================================
    # Helpers
    # =========================================================================

    def _skip_fillers(self, tokens: Sequence[str], j: int) -> int:
        while j < len(tokens) and tokens[j] in self.vocabulary.fillers:
            j += 1
        return j

    def _nearest_trigger(self, token: str, max_distance: int) -> Optional[str]:
        if token in NON_TRIGGER_WORDS:
            return None
        best, best_distance = None, max_distance + 1
        for trigger in self.vocabulary.triggers:
            # Never allow a distance that rewrites the whole trigger
            limit = min(max_distance, max(1, len(trigger) // 2))
            distance = levenshtein(token, trigger)
            if 0 < distance <= limit and distance < best_distance:
                best, best_distance = trigger, distance
        return best

    def _nearest_scope(self, word: str, max_distance: int) -> Optional[ScopeKind]:
        exact = self.vocabulary.scope_of(word)
        if exact is not None:
            return exact
        matches = self._scopes_within(word, max_distance)
        return matches[0][0] if matches else None

    def _scopes_within(self, word: str, max_distance: int) -> List[Tuple[ScopeKind, int]]:
        best: Dict[ScopeKind, int] = {}
        for vocab_word, kind in self.vocabulary.all_words:
            distance = levenshtein(word, vocab_word)
            if 0 < distance <= max_distance and distance < best.get(kind, max_distance + 1):
                best[kind] = distance
        return sorted(best.items(), key=lambda item: (item[1], SCOPE_PRECEDENCE.index(item[0])))

    @staticmethod
    def _strip(tokens: List[str], cues: List[_Cue]) -> str:
        drop = set()
        for cue in cues:
            drop.update(range(cue.start, cue.end))
        return " ".join(t for i, t in enumerate(tokens) if i not in drop)


# Singleton instance
_resolver_instance: Optional[ScopeResolver] = None


def get_scope_resolver() -> ScopeResolver:
    global _resolver_instance
    if _resolver_instance is None:
        _resolver_instance = ScopeResolver()
    return _resolver_instance


def resolve_scope_cue(utterance: str) -> ScopeCueResult:
    """Shortcut over the default resolver."""
    return get_scope_resolver().resolve(utterance)
