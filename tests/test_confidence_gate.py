"""
Tests for the deterministic confidence gate.
"""

import pytest

from command_arbiter.classifier.confidence_gate import ConfidenceGate, GateMode, assert_gate_invariant
from command_arbiter.classifier.ordinals import OrdinalMode
from command_arbiter.errors import InvariantViolation
from command_arbiter.models import (
    Candidate,
    DeterministicDecision,
    GateConfidence,
    GateReason,
    OptionType,
    Outcome,
)
from helpers import WIDGET_A, make_candidates


@pytest.fixture
def gate():
    return ConfidenceGate()


class TestExactTier:
    """Exact label and sublabel matches"""

    def test_exact_label_executes(self, gate, links_candidates):
        """'Links Panel D' executes candidate 1"""
        decision = gate.evaluate("Links Panel D", links_candidates)
        assert decision.outcome == Outcome.EXECUTE
        assert decision.confidence == GateConfidence.HIGH
        assert decision.reason == GateReason.EXACT_LABEL
        assert decision.matched_candidate_id == "1"

    def test_exact_label_ignores_case_and_punctuation(self, gate, links_candidates):
        """Case, extra whitespace and trailing punctuation are normalized"""
        decision = gate.evaluate("  links   panel e! ", links_candidates)
        assert decision.matched_candidate_id == "2"
        assert decision.is_execute

    def test_exact_sublabel(self, gate):
        """Sublabel equality executes"""
        candidates = [
            Candidate(id="r1", label="Report", type=OptionType.WIDGET_ITEM, source_scope=WIDGET_A, sublabel="Q1 2024"),
            Candidate(id="r2", label="Report", type=OptionType.WIDGET_ITEM, source_scope=WIDGET_A, sublabel="Q2 2024"),
        ]
        decision = gate.evaluate("q2 2024", candidates)
        assert decision.reason == GateReason.EXACT_SUBLABEL
        assert decision.matched_candidate_id == "r2"

    def test_duplicate_labels_never_execute(self, gate):
        """Two candidates with the same label go to the LLM lane"""
        candidates = make_candidates(WIDGET_A, ["Budget", "Budget"], ids=["b1", "b2"])
        decision = gate.evaluate("budget", candidates)
        assert decision.outcome == Outcome.LLM
        assert decision.reason == GateReason.AMBIGUOUS_EXACT
        assert set(decision.matched_candidate_ids) == {"b1", "b2"}


class TestCanonicalTier:
    """Verb/article stripping and plural folding"""

    def test_verb_and_article_stripped(self, gate, links_candidates):
        """'open the links panel d' canonicalizes to the label"""
        decision = gate.evaluate("open the links panel d", links_candidates)
        assert decision.reason == GateReason.EXACT_CANONICAL
        assert decision.matched_candidate_id == "1"
        assert decision.is_execute

    def test_strict_mode_downgrades_canonical(self, gate, links_candidates):
        """Strict mode never executes a canonical match"""
        decision = gate.evaluate("open the links panel d", links_candidates, GateMode.STRICT)
        assert decision.outcome == Outcome.LLM
        assert decision.confidence == GateConfidence.MEDIUM
        assert decision.reason == GateReason.CANONICAL_BLOCKED_STRICT

    def test_politeness_keeps_it_soft(self, gate, links_candidates):
        """'pls show the Links Panel D thank you' is a soft match, not an execute"""
        decision = gate.evaluate("pls show the Links Panel D thank you", links_candidates)
        assert decision.outcome == Outcome.LLM
        assert decision.confidence == GateConfidence.MEDIUM
        assert decision.reason == GateReason.SOFT_LABEL_CONTAINS
        assert decision.matched_candidate_ids == ("1",)


class TestSoftTier:
    """Partial matches never execute"""

    def test_unique_soft_starts_with(self, gate):
        """Unique prefix -> medium / llm"""
        candidates = make_candidates(WIDGET_A, ["Quarterly revenue", "Team roster"])
        decision = gate.evaluate("quarterly", candidates)
        assert decision.outcome == Outcome.LLM
        assert decision.reason == GateReason.SOFT_STARTS_WITH
        assert decision.matched_candidate_ids == ("1",)

    def test_multiple_soft_matches(self, gate, links_candidates):
        """'links' matches every label -> low / llm"""
        decision = gate.evaluate("links", links_candidates)
        assert decision.outcome == Outcome.LLM
        assert decision.confidence == GateConfidence.LOW
        assert decision.reason == GateReason.MULTI_SOFT_MATCH

    def test_no_match(self, gate, links_candidates):
        """Unrelated input -> none / llm"""
        decision = gate.evaluate("weather tomorrow", links_candidates)
        assert decision.outcome == Outcome.LLM
        assert decision.confidence == GateConfidence.NONE
        assert decision.reason == GateReason.NO_MATCH

    def test_empty_pool_clarifies(self, gate):
        """Empty pool -> none / clarify"""
        decision = gate.evaluate("links panel d", [])
        assert decision.outcome == Outcome.CLARIFY
        assert decision.reason == GateReason.EMPTY_POOL


class TestOrdinals:
    """Ordinal picks over the pool order"""

    def test_strict_ordinal(self, gate, links_candidates):
        """'second' executes the second candidate"""
        decision = gate.evaluate("second", links_candidates)
        assert decision.reason == GateReason.ORDINAL
        assert decision.matched_candidate_id == "2"

    def test_the_last_one(self, gate, links_candidates):
        """'last' resolves against the pool length"""
        decision = gate.evaluate("the last one", links_candidates)
        assert decision.matched_candidate_id == "3"

    def test_embedded_ordinal_ignored_in_strict(self, gate, links_candidates):
        """Strict mode never reads an ordinal inside a phrase"""
        decision = gate.evaluate("i pick the second one", links_candidates)
        assert decision.reason != GateReason.ORDINAL

    def test_embedded_ordinal_mode(self, gate, links_candidates):
        """Embedded mode extracts the ordinal"""
        decision = gate.evaluate(
            "i pick the second one", links_candidates, GateMode.STANDARD, OrdinalMode.EMBEDDED,
        )
        assert decision.reason == GateReason.ORDINAL
        assert decision.matched_candidate_id == "2"

    def test_strict_gate_forces_strict_ordinals(self, gate, links_candidates):
        """Strict gate mode overrides an embedded ordinal request"""
        decision = gate.evaluate(
            "i pick the second one", links_candidates, GateMode.STRICT, OrdinalMode.EMBEDDED,
        )
        assert decision.reason != GateReason.ORDINAL


class TestInvariant:
    """execute <=> high"""

    @pytest.mark.parametrize("text", [
        "Links Panel D", "links panel", "links", "pls show the Links Panel D thank you",
        "open the links panel d", "second", "", "zzz", "links panels", "from chat",
    ])
    def test_execute_iff_high(self, gate, links_candidates, text):
        """Holds for every input"""
        for mode in GateMode:
            decision = gate.evaluate(text, links_candidates, mode)
            assert (decision.outcome == Outcome.EXECUTE) == (decision.confidence == GateConfidence.HIGH)

    def test_constructor_rejects_execute_without_high(self):
        """execute requires high confidence"""
        with pytest.raises(InvariantViolation):
            DeterministicDecision(Outcome.EXECUTE, GateConfidence.MEDIUM, GateReason.SOFT_CONTAINS, "1")

    def test_constructor_rejects_high_without_execute(self):
        """high confidence requires execute"""
        with pytest.raises(InvariantViolation):
            DeterministicDecision(Outcome.LLM, GateConfidence.HIGH, GateReason.EXACT_LABEL, "1")

    def test_assert_gate_invariant_accepts_valid(self):
        decision = DeterministicDecision(Outcome.LLM, GateConfidence.LOW, GateReason.MULTI_SOFT_MATCH)
        assert_gate_invariant(decision)

    def test_same_input_same_decision(self, gate, links_candidates):
        """Evaluation is deterministic"""
        first = gate.evaluate("links panel", links_candidates)
        second = gate.evaluate("links panel", links_candidates)
        assert first == second


class TestCanonicalTieBreak:
    """Post-check used for advisory LLM selects"""

    def test_polite_wrapper_confirms(self, links_candidates):
        """Politeness around an exact label still confirms"""
        assert ConfidenceGate.canonical_tie_break("pls show the Links Panel D thank you", links_candidates) == "1"

    def test_partial_does_not_confirm(self, links_candidates):
        """A label fragment never confirms"""
        assert ConfidenceGate.canonical_tie_break("links", links_candidates) is None

    def test_get_stats_counts_reasons(self, gate, links_candidates):
        """Stats count evaluations by reason"""
        gate.evaluate("Links Panel D", links_candidates)
        gate.evaluate("links", links_candidates)
        stats = gate.get_stats()
        assert stats["total_evaluations"] == 2
        assert stats["reasons"]["exact_label"] == 1
        assert stats["reasons"]["multi_soft_match"] == 1
