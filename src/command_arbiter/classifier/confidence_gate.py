"""
ConfidenceGate: the single deterministic match classifier.

Tiers, strictly ordered by precedence:
- exact_label / exact_sublabel: normalized equality, unique -> execute
- ordinal: "first", "option 2" over the pool order -> execute
- exact_canonical: verb/article stripping + plural folding, token sets equal,
  unique -> execute (disabled in strict mode: downgraded to llm)
- soft_contains / soft_starts_with / soft_label_contains: unique -> llm
- several soft matches -> llm (low)
- nothing -> llm when a pool exists, clarify when it does not

outcome == execute <=> confidence == high holds for every decision; the
DeterministicDecision constructor refuses anything else.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from command_arbiter.classifier.normalization import (
    canonical_token_set,
    canonicalize_command_input,
    normalize_text,
    strip_verbs_and_articles,
)
from command_arbiter.classifier.ordinals import OrdinalMode, parse_ordinal
from command_arbiter.errors import InvariantViolation
from command_arbiter.logger import logger
from command_arbiter.models import (
    Candidate,
    DeterministicDecision,
    GateConfidence,
    GateReason,
    Outcome,
)
from command_arbiter.settings import settings


class GateMode(str, Enum):
    STANDARD = "standard"
    STRICT = "strict"


def _contains_phrase(haystack: str, needle: str) -> bool:
    """Whole-word containment."""
    return bool(needle) and f" {needle} " in f" {haystack} "


def _starts_with_phrase(haystack: str, needle: str) -> bool:
    return bool(needle) and (haystack == needle or haystack.startswith(needle + " "))


def assert_gate_invariant(decision: DeterministicDecision) -> None:
    """Raise if a decision executes without high confidence (or the reverse)."""
    if (decision.outcome == Outcome.EXECUTE) != (decision.confidence == GateConfidence.HIGH):
        raise InvariantViolation(
            f"outcome={decision.outcome.value} confidence={decision.confidence.value}"
        )


class ConfidenceGate:
    """
    Deterministic confidence gate.

    Usage:
        gate = ConfidenceGate()
        decision = gate.evaluate("Links Panel D", pool.candidates)
        decision.outcome  # Outcome.EXECUTE
    """

    def __init__(self, soft_min_input_length: Optional[int] = None):
        self.soft_min_input_length = (
            soft_min_input_length
            if soft_min_input_length is not None
            else settings.gate.soft_min_input_length
        )

        self._total = 0
        self._reasons_count: Dict[GateReason, int] = {r: 0 for r in GateReason}

    def evaluate(
        self,
        text: str,
        candidates: Sequence[Candidate],
        mode: GateMode = GateMode.STANDARD,
        ordinal_mode: Optional[OrdinalMode] = None,
    ) -> DeterministicDecision:
        """
        Classify how well `text` matches the candidates.

        Args:
            text: Utterance with any scope cue already stripped
            candidates: The bound pool
            mode: STRICT disables the exact_canonical tier
            ordinal_mode: Ordinal parser mode; strict gate mode forces strict

        Returns:
            DeterministicDecision
        """
        decision = self._evaluate(text, list(candidates), mode, ordinal_mode)
        assert_gate_invariant(decision)

        self._total += 1
        self._reasons_count[decision.reason] += 1
        logger.debug(
            "Gate decision",
            outcome=decision.outcome.value,
            confidence=decision.confidence.value,
            reason=decision.reason.value,
            matched=decision.matched_candidate_id,
            mode=mode.value,
        )
        return decision

    def _evaluate(
        self,
        text: str,
        candidates: List[Candidate],
        mode: GateMode,
        ordinal_mode: Optional[OrdinalMode],
    ) -> DeterministicDecision:
        if not candidates:
            return DeterministicDecision(Outcome.CLARIFY, GateConfidence.NONE, GateReason.EMPTY_POOL)

        normalized = normalize_text(text)
        if not normalized:
            return DeterministicDecision(Outcome.LLM, GateConfidence.NONE, GateReason.NO_MATCH)

        # Tier 1: exact label / sublabel
        exact = self._exact_tier(normalized, candidates)
        if exact is not None:
            return exact

        # Tier 1b: ordinal over pool order
        ordinal = self.match_ordinal(text, candidates, mode, ordinal_mode)
        if ordinal is not None:
            return ordinal

        # Tier 2: canonical token set
        canonical = self._canonical_tier(text, candidates, mode)
        if canonical is not None:
            return canonical

        # Tier 3: soft
        return self._soft_tier(text, normalized, candidates)

    # =========================================================================
    # Tiers
    # =========================================================================

    def _exact_tier(self, normalized: str, candidates: List[Candidate]) -> Optional[DeterministicDecision]:
        label_hits = [c for c in candidates if normalize_text(c.label) == normalized]
        if len(label_hits) == 1:
            return DeterministicDecision(
                Outcome.EXECUTE, GateConfidence.HIGH, GateReason.EXACT_LABEL,
                matched_candidate_id=label_hits[0].id,
                matched_candidate_ids=(label_hits[0].id,),
            )
        if len(label_hits) > 1:
            return DeterministicDecision(
                Outcome.LLM, GateConfidence.LOW, GateReason.AMBIGUOUS_EXACT,
                matched_candidate_ids=tuple(c.id for c in label_hits),
            )

        sublabel_hits = [
            c for c in candidates
            if c.sublabel and normalize_text(c.sublabel) == normalized
        ]
        if len(sublabel_hits) == 1:
            return DeterministicDecision(
                Outcome.EXECUTE, GateConfidence.HIGH, GateReason.EXACT_SUBLABEL,
                matched_candidate_id=sublabel_hits[0].id,
                matched_candidate_ids=(sublabel_hits[0].id,),
            )
        if len(sublabel_hits) > 1:
            return DeterministicDecision(
                Outcome.LLM, GateConfidence.LOW, GateReason.AMBIGUOUS_EXACT,
                matched_candidate_ids=tuple(c.id for c in sublabel_hits),
            )
        return None

    def match_ordinal(
        self,
        text: str,
        candidates: Sequence[Candidate],
        mode: GateMode = GateMode.STANDARD,
        ordinal_mode: Optional[OrdinalMode] = None,
    ) -> Optional[DeterministicDecision]:
        """Ordinal reference over the pool order, or None."""
        if mode == GateMode.STRICT or ordinal_mode is None:
            ordinal_mode = OrdinalMode.STRICT
        labels = [c.label for c in candidates]
        match = parse_ordinal(text, len(candidates), labels, ordinal_mode)
        if not match.is_selection or match.index is None:
            return None
        winner = candidates[match.index]
        return DeterministicDecision(
            Outcome.EXECUTE, GateConfidence.HIGH, GateReason.ORDINAL,
            matched_candidate_id=winner.id,
            matched_candidate_ids=(winner.id,),
        )

    def _canonical_tier(self, text: str, candidates: List[Candidate], mode: GateMode) -> Optional[DeterministicDecision]:
        tokens = canonical_token_set(text)
        if not tokens:
            return None
        hits = [c for c in candidates if canonical_token_set(c.label) == tokens]
        if len(hits) != 1:
            return None
        winner = hits[0]
        if mode == GateMode.STRICT:
            return DeterministicDecision(
                Outcome.LLM, GateConfidence.MEDIUM, GateReason.CANONICAL_BLOCKED_STRICT,
                matched_candidate_ids=(winner.id,),
            )
        return DeterministicDecision(
            Outcome.EXECUTE, GateConfidence.HIGH, GateReason.EXACT_CANONICAL,
            matched_candidate_id=winner.id,
            matched_candidate_ids=(winner.id,),
        )

    def _soft_tier(self, text: str, normalized: str, candidates: List[Candidate]) -> DeterministicDecision:
        stripped = strip_verbs_and_articles(text)
        matches: List[Tuple[Candidate, GateReason]] = []

        for candidate in candidates:
            label = normalize_text(candidate.label)
            reason = None
            if len(stripped) >= self.soft_min_input_length:
                if _starts_with_phrase(label, stripped):
                    reason = GateReason.SOFT_STARTS_WITH
                elif _contains_phrase(label, stripped):
                    reason = GateReason.SOFT_CONTAINS
            if reason is None and _contains_phrase(normalized, label):
                reason = GateReason.SOFT_LABEL_CONTAINS
            if reason is not None:
                matches.append((candidate, reason))

        if len(matches) == 1:
            candidate, reason = matches[0]
            return DeterministicDecision(
                Outcome.LLM, GateConfidence.MEDIUM, reason,
                matched_candidate_ids=(candidate.id,),
            )
        if len(matches) > 1:
            return DeterministicDecision(
                Outcome.LLM, GateConfidence.LOW, GateReason.MULTI_SOFT_MATCH,
                matched_candidate_ids=tuple(c.id for c, _ in matches),
            )
        return DeterministicDecision(Outcome.LLM, GateConfidence.NONE, GateReason.NO_MATCH)

    # =========================================================================
    # Post-decision check
    # =========================================================================

    @staticmethod
    def canonical_tie_break(text: str, candidates: Sequence[Candidate]) -> Optional[str]:
        """
        Id of the single candidate whose label equals the lightly normalized
        utterance, or None.

        Used to confirm an advisory LLM select: polite wrappers and trailing
        filler are removed, nothing else.
        """
        normalized = canonicalize_command_input(text)
        if not normalized:
            return None
        hits = [c.id for c in candidates if normalize_text(c.label) == normalized]
        return hits[0] if len(hits) == 1 else None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_evaluations": self._total,
            "reasons": {r.value: count for r, count in self._reasons_count.items()},
            "soft_min_input_length": self.soft_min_input_length,
        }


# Singleton instance
_gate_instance: Optional[ConfidenceGate] = None


def get_confidence_gate() -> ConfidenceGate:
    global _gate_instance
    if _gate_instance is None:
        _gate_instance = ConfidenceGate()
    return _gate_instance


def evaluate(text: str, candidates: Sequence[Candidate], mode: GateMode = GateMode.STANDARD) -> DeterministicDecision:
    """Shortcut over the default gate."""
    return get_confidence_gate().evaluate(text, candidates, mode)
