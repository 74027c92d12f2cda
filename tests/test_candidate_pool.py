"""
Tests for scope binding and pool construction.
"""

import pytest

from command_arbiter.candidate_pool import BindingSource, CandidatePoolBuilder, ScopeBinding
from command_arbiter.classifier.scope_resolver import ScopeResolver
from command_arbiter.clarifier import ClarifierBuilder
from command_arbiter.models import (
    CHAT_SCOPE,
    ActiveSnapshot,
    CandidatePool,
    Scope,
    ScopeCueResult,
    ScopeKind,
)
from helpers import WIDGET_A, WIDGET_B, FakeHost, make_candidates


@pytest.fixture
def builder(host):
    return CandidatePoolBuilder(host)


@pytest.fixture
def no_cue():
    return ScopeCueResult()


class TestBindScope:
    """Binding order"""

    def test_explicit_cue_wins(self, builder, host):
        """An explicit cue beats the latch"""
        cue = ScopeResolver().resolve("summarize from chat")
        binding = builder.bind_scope(cue, host.snapshot, latch_target="notes_panel")
        assert binding.scope == CHAT_SCOPE
        assert binding.source == BindingSource.EXPLICIT_CUE

    def test_widget_cue_uses_latch(self, builder, host):
        """'from active widget' resolves to the latched widget"""
        cue = ScopeResolver().resolve("open it from active widget")
        binding = builder.bind_scope(cue, host.snapshot, latch_target="notes_panel")
        assert binding.scope == WIDGET_B

    def test_named_widget_cue(self, builder):
        """'from notes panel' picks that open widget by name"""
        cue = ScopeResolver().resolve("open item from notes panel")
        snapshot = ActiveSnapshot(active_widget_id="links_panel", open_widget_ids=["links_panel", "notes_panel"])
        binding = builder.bind_scope(cue, snapshot)
        assert binding.scope == WIDGET_B

    def test_widget_cue_without_open_widget(self, builder):
        """No open widget: an empty widget pool, not chat"""
        cue = ScopeResolver().resolve("open it from active widget")
        binding = builder.bind_scope(cue, ActiveSnapshot())
        assert binding.scope == Scope(ScopeKind.WIDGET, None)
        assert len(builder.build(binding)) == 0

    def test_active_clarifier_restricts(self, builder, host, links_pool, no_cue):
        """The previous turn's clarifier limits the pool to its options"""
        clarifier = ClarifierBuilder().build_candidates(links_pool.restricted_to(["1", "2"]))
        binding = builder.bind_scope(no_cue, host.snapshot, active_clarifier=clarifier)
        assert binding.source == BindingSource.ACTIVE_CLARIFIER
        assert binding.restrict_to == ["1", "2"]
        assert builder.build(binding).ids() == ["1", "2"]

    def test_restricted_pool_follows_pill_order(self, builder, host, links_pool, no_cue):
        """Ordinals on the next turn index the pills as shown"""
        clarifier = ClarifierBuilder().build_candidates(links_pool, preferred_ids=["3"])
        binding = builder.bind_scope(no_cue, host.snapshot, active_clarifier=clarifier)
        assert builder.build(binding).ids() == ["3", "1", "2"]

    def test_latch_before_snapshot(self, builder, host, no_cue):
        """A latch target outranks the snapshot's active widget"""
        binding = builder.bind_scope(no_cue, host.snapshot, latch_target="notes_panel")
        assert binding.source == BindingSource.FOCUS_LATCH
        assert binding.scope == WIDGET_B

    def test_snapshot_then_chat(self, builder, host, no_cue):
        """Snapshot widget, and chat when nothing is active"""
        assert builder.bind_scope(no_cue, host.snapshot).source == BindingSource.SNAPSHOT
        binding = builder.bind_scope(no_cue, ActiveSnapshot())
        assert binding.source == BindingSource.DEFAULT_CHAT
        assert binding.scope == CHAT_SCOPE


class TestBuild:
    def test_single_source(self, builder):
        """Built pools hold one source only"""
        pool = builder.build(ScopeBinding(WIDGET_A, BindingSource.SNAPSHOT))
        assert isinstance(pool, CandidatePool)
        assert pool.scope == WIDGET_A
        assert pool.ids() == ["1", "2", "3"]

    def test_foreign_and_duplicate_candidates_dropped(self):
        """Foreign-scope and repeated ids from the host are dropped"""
        mixed = (
            make_candidates(WIDGET_A, ["A", "B"])
            + make_candidates(WIDGET_B, ["Foreign"], ids=["9"])
            + make_candidates(WIDGET_A, ["A again"], ids=["1"])
        )
        host = FakeHost(pools={WIDGET_A.key: mixed})
        pool = CandidatePoolBuilder(host).build(ScopeBinding(WIDGET_A, BindingSource.SNAPSHOT))
        assert pool.ids() == ["1", "2"]
        assert pool.get("1").label == "A"

    def test_unknown_scope_is_empty(self, builder):
        pool = builder.build(ScopeBinding(Scope.widget("closed"), BindingSource.SNAPSHOT))
        assert len(pool) == 0
