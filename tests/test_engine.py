"""
End-to-end tests for ArbitrationEngine.resolve_turn.

Tests cover:
- Deterministic execution (exact, canonical, ordinal)
- LLM arbitration lane and its fallbacks
- Continuity tie-break after rejections
- Scope-typo clarifier and one-shot replay
- Focus latch effects
- Failure paths (execution failure, empty pool, scope conflict)
- Session boundary and telemetry isolation
"""

import pytest

from command_arbiter.engine import ArbitrationEngine
from command_arbiter.errors import InvariantViolation, LLMTransportError, ReplayDepthExceeded
from command_arbiter.feature_flags import flags
from command_arbiter.focus_latch import LatchState
from command_arbiter.models import (
    CHAT_SCOPE,
    DASHBOARD_SCOPE,
    ActiveSnapshot,
    Candidate,
    Clarify,
    ClarifierKind,
    EntityRef,
    Execute,
    OptionType,
    ReplaySignal,
)
from command_arbiter.session import SessionContext
from command_arbiter.telemetry import (
    CANDIDATE_EXECUTED,
    CLARIFIER_EMITTED,
    FOCUS_LATCH_CHANGED,
    REPLAY_CLEARED,
    REPLAY_FIRED,
    TURN_STARTED,
)
from helpers import WIDGET_A, WIDGET_B, FakeHost, make_candidates, need_more_info, select


POLITE = "can you please open links panel d thanks"


@pytest.fixture
def two_widget_host(host):
    """Both links_panel and notes_panel are open; links_panel is active."""
    host.pools[WIDGET_B.key] = make_candidates(WIDGET_B, ["Meeting Notes", "Todo"], ids=["n1", "n2"])
    host.snapshot = ActiveSnapshot(active_widget_id="links_panel", open_widget_ids=["links_panel", "notes_panel"])
    return host


class TestDeterministic:
    def test_exact_label_executes(self, engine, host, session):
        """An exact label runs without the model"""
        result = engine.resolve_turn("Links Panel D", session)
        assert isinstance(result, Execute)
        assert result.candidate_id == "1"
        assert result.scope_key == WIDGET_A.key
        assert result.reason == "exact_label"
        assert host.executed == [("1", WIDGET_A.key)]
        assert host.llm_requests == []

    def test_verb_prefix_executes_canonical(self, engine, session):
        """'open' in front of a label is canonical, not soft"""
        result = engine.resolve_turn("open links panel d", session)
        assert result.reason == "exact_canonical"
        assert result.candidate_id == "1"

    def test_strict_mode_blocks_canonical(self, engine, host, session):
        """Strict exact mode sends canonical matches to clarify"""
        flags.set_override("strict_exact_mode", True)
        result = engine.resolve_turn("open links panel d", session)
        assert isinstance(result, Clarify)
        assert result.trace.decision.reason.value == "canonical_blocked_strict"
        assert host.executed == []

    def test_ordinal(self, engine, session):
        """'the second one' picks by position"""
        result = engine.resolve_turn("the second one", session)
        assert result.reason == "ordinal"
        assert result.candidate_id == "2"

    def test_explicit_chat_cue(self, engine, host, session):
        """A chat cue binds chat and suspends the latch"""
        result = engine.resolve_turn("summarize from chat", session)
        assert result.candidate_id == "c1"
        assert result.scope_key == CHAT_SCOPE.key
        assert session.focus_latch.suspended

    @pytest.mark.parametrize("label, candidate_id", [("Form Widget", "f1"), ("Pin Panel", "f2")])
    def test_label_that_looks_like_a_cue_executes(self, engine, host, session, label, candidate_id):
        """Typing a label exactly runs it even when its words resemble a scope cue"""
        host.pools[WIDGET_A.key] = make_candidates(WIDGET_A, ["Form Widget", "Pin Panel"], ids=["f1", "f2"])
        result = engine.resolve_turn(label, session)
        assert isinstance(result, Execute)
        assert result.candidate_id == candidate_id
        assert result.reason == "exact_label"
        assert session.pending_typo is None

    def test_same_input_same_decision(self, host):
        """Two sessions in the same state decide the same way"""
        first = ArbitrationEngine(host).resolve_turn("open links panel d", SessionContext("a"))
        second = ArbitrationEngine(host).resolve_turn("open links panel d", SessionContext("b"))
        assert (first.candidate_id, first.reason) == (second.candidate_id, second.reason)

    def test_trace_and_metrics(self, engine, session):
        """The trace lists stages and metrics count the turn"""
        result = engine.resolve_turn("Links Panel D", session)
        assert result.trace.stages[:2] == ["scope", "bind:focus_latch"]
        assert "execute" in result.trace.stages
        summary = session.metrics.get_summary()
        assert summary["turns"] == 1
        assert summary["executions"] == 1


class TestLLMLane:
    def test_polite_command_confirmed_by_post_check(self, engine, host, session):
        """The model's pick runs once the utterance names it"""
        host.llm_responses = [select("1")]
        result = engine.resolve_turn(POLITE, session)
        assert isinstance(result, Execute)
        assert result.reason == "llm_select"
        assert len(host.llm_requests) == 1

    def test_abstain_clarifies_with_match_first(self, engine, host, session):
        """Soft matches lead the fallback pills"""
        host.llm_responses = [need_more_info()]
        result = engine.resolve_turn(POLITE, session)
        assert isinstance(result, Clarify)
        message = result.message
        assert message.kind == ClarifierKind.LLM_FALLBACK
        assert message.reason == "abstain"
        assert message.candidate_ids[0] == "1"
        assert set(message.candidate_ids) <= {"1", "2", "3"}
        assert host.executed == []

    def test_transport_error_clarifies(self, engine, host, session):
        """Host transport errors end in a clarifier"""
        host.llm_error = LLMTransportError("boom", status_code=500)
        result = engine.resolve_turn(POLITE, session)
        assert result.message.reason == "transport_error"

    def test_non_llm_exception_clarifies(self, engine, host, session):
        """A raw socket error from the host is reported as a transport error"""
        host.llm_error = ConnectionError("socket reset")
        result = engine.resolve_turn("panel", session)
        assert isinstance(result, Clarify)
        assert result.message.reason == "transport_error"
        assert host.executed == []

    def test_ordinal_follows_pill_order(self, engine, host, session):
        """Ordinal "first" picks the first pill, not the first host candidate"""
        host.llm_responses = [select("2")]
        clarify = engine.resolve_turn("panel", session)
        assert isinstance(clarify, Clarify)
        assert clarify.message.candidate_ids[0] == "2"

        result = engine.resolve_turn("first", session)
        assert isinstance(result, Execute)
        assert result.candidate_id == "2"
        assert host.executed == [("2", WIDGET_A.key)]

    def test_loop_guard_skips_identical_repeat(self, engine, host, session):
        """The same ambiguous input twice calls the model once"""
        first = engine.resolve_turn("panel", session)
        second = engine.resolve_turn("panel", session)
        assert isinstance(first, Clarify)
        assert isinstance(second, Clarify)
        assert second.message.reason == "loop_guard"
        assert len(host.llm_requests) == 1

    def test_disabled(self, engine, host, session):
        """Arbitration off: no call, clarify with feature_disabled"""
        flags.set_override("llm_arbitration", False)
        result = engine.resolve_turn("panel", session)
        assert result.message.reason == "feature_disabled"
        assert host.llm_requests == []


class TestTieBreak:
    def test_single_survivor_after_rejections(self, engine, host, session):
        """One unrejected option left runs on 'open it'"""
        clarify = engine.resolve_turn("panel", session)
        assert clarify.message.candidate_ids == ["1", "2", "3"]

        engine.record_rejection(session, ["2", "3"])
        result = engine.resolve_turn("open it", session)
        assert isinstance(result, Execute)
        assert result.candidate_id == "1"
        assert result.reason == "continuity_deterministic"
        assert result.trace.stages[1] == "bind:active_clarifier"

    def test_question_never_tie_breaks(self, engine, host, session):
        """Questions are never resolved by elimination"""
        engine.resolve_turn("panel", session)
        engine.record_rejection(session, ["2", "3"])
        result = engine.resolve_turn("what is that?", session)
        assert isinstance(result, Clarify)
        assert host.executed == []

    def test_disabled_by_flag(self, engine, host, session):
        """Tie-break off: rejections alone do not execute"""
        flags.set_override("continuity_tie_break", False)
        engine.resolve_turn("panel", session)
        engine.record_rejection(session, ["2", "3"])
        assert isinstance(engine.resolve_turn("open it", session), Clarify)

    def test_clarifier_only_answerable_next_turn(self, engine, host, session):
        """A clarifier two turns old no longer binds"""
        engine.resolve_turn("panel", session)
        engine.record_rejection(session, ["2", "3"])
        session.next_turn()
        result = engine.resolve_turn("open it", session)
        assert "bind:active_clarifier" not in result.trace.stages


class TestScopeTypoReplay:
    TYPO = "open links panel d from active widgetss"

    def test_typo_asks_and_remembers(self, engine, host, session):
        """A misspelled scope asks and keeps the command for replay"""
        result = engine.resolve_turn(self.TYPO, session)
        assert isinstance(result, Clarify)
        assert result.message.kind == ClarifierKind.SCOPE_TYPO
        assert result.message.prompt == "Did you mean: from widget?"
        assert session.pending_typo.original_input_without_scope_cue == "open links panel d"
        assert host.executed == []
        assert host.llm_requests == []

    def test_confirmation_replays_once(self, engine, host, session):
        """Confirming replays the command and clears the pending entry"""
        engine.resolve_turn(self.TYPO, session)
        result = engine.resolve_turn("yes from active widget", session)

        assert isinstance(result, ReplaySignal)
        assert result.replayed_input == "open links panel d from active widget"
        assert isinstance(result.result, Execute)
        assert result.result.candidate_id == "1"
        assert REPLAY_FIRED in host.event_names()
        assert session.pending_typo is None

        engine.resolve_turn("yes from active widget", session)
        assert host.executed == [("1", WIDGET_A.key)]

    def test_bare_yes_does_not_replay(self, engine, host, session):
        """A bare 'yes' names no scope, so the turn routes normally"""
        engine.resolve_turn(self.TYPO, session)
        result = engine.resolve_turn("yes", session)
        assert not isinstance(result, ReplaySignal)
        assert REPLAY_CLEARED in host.event_names()
        assert REPLAY_FIRED not in host.event_names()
        assert session.pending_typo is None
        assert host.executed == []

    def test_replayed_widget_item_re_anchors_latch(self, engine, host, session):
        """Replayed widget item executions anchor the latch like direct ones"""
        engine.resolve_turn(self.TYPO, session)
        result = engine.resolve_turn("yes from active widget", session)
        assert isinstance(result, ReplaySignal)
        assert session.focus_latch.state == LatchState.PENDING
        assert session.focus_latch.target_id == "links_panel"
        assert FOCUS_LATCH_CHANGED in host.event_names()

        engine.resolve_turn("panel", session)
        assert session.focus_latch.state == LatchState.RESOLVED
        assert session.focus_latch.entity_id == "links_panel"

    def test_still_misspelled_narrows(self, engine, host, session):
        """A second typo gets a scope-only clarifier and no replay"""
        engine.resolve_turn(self.TYPO, session)
        result = engine.resolve_turn("yes from widgts", session)
        assert result.message.kind == ClarifierKind.SCOPE_ONLY
        assert session.pending_typo is None
        assert host.executed == []

    def test_new_command_clears_pending(self, engine, host, session):
        """A fresh command drops the pending replay and runs"""
        engine.resolve_turn(self.TYPO, session)
        result = engine.resolve_turn("summarize from chat", session)
        assert result.candidate_id == "c1"
        assert REPLAY_CLEARED in host.event_names()
        assert session.pending_typo is None

    def test_expired_pending_is_ignored(self, engine, host, session):
        """A confirmation after the TTL routes normally"""
        engine.resolve_turn(self.TYPO, session)
        session.next_turn()
        result = engine.resolve_turn("yes from active widget", session)
        assert not isinstance(result, ReplaySignal)
        assert REPLAY_CLEARED in host.event_names()
        assert host.executed == []

    def test_snapshot_drift_is_ignored(self, engine, two_widget_host, session):
        """UI changes since the typo invalidate the replay"""
        engine.resolve_turn(self.TYPO, session)
        two_widget_host.snapshot = ActiveSnapshot(active_widget_id="notes_panel", open_widget_ids=["notes_panel"])
        result = engine.resolve_turn("yes from active widget", session)
        assert not isinstance(result, ReplaySignal)
        assert session.pending_typo is None

    def test_replay_disabled_by_flag(self, engine, session):
        """Replay off: nothing is remembered"""
        flags.set_override("scope_typo_replay", False)
        engine.resolve_turn(self.TYPO, session)
        assert session.pending_typo is None

    def test_depth_guard(self, host, session):
        """Replays nest no deeper than max_replay_depth"""
        engine = ArbitrationEngine(host, max_replay_depth=0)
        engine.resolve_turn(self.TYPO, session)
        with pytest.raises(ReplayDepthExceeded):
            engine.resolve_turn("yes from active widget", session)


class TestFocusLatch:
    def test_opened_scope_wins_over_snapshot(self, engine, two_widget_host, session):
        """A newly opened widget scopes the next turn"""
        engine.on_scope_opened(session, "notes_panel")
        assert session.focus_latch.state == LatchState.PENDING

        result = engine.resolve_turn("meeting notes", session)
        assert result.candidate_id == "n1"
        assert result.scope_key == WIDGET_B.key
        assert session.focus_latch.state == LatchState.RESOLVED
        assert FOCUS_LATCH_CHANGED in two_widget_host.event_names()

    def test_opened_scope_replaces_resolved_latch(self, engine, two_widget_host, session):
        """A resolved latch on A moves to B once B is opened"""
        engine.on_scope_opened(session, "links_panel")
        engine.resolve_turn("Links Panel D", session)
        assert session.focus_latch.state == LatchState.RESOLVED
        assert session.focus_latch.entity_id == "links_panel"

        engine.on_scope_opened(session, "notes_panel")
        result = engine.resolve_turn("notes", session)
        assert isinstance(result, Clarify)
        assert "bind:focus_latch" in result.trace.stages
        assert result.trace.bound_scope == WIDGET_B.key
        assert set(result.message.candidate_ids) <= {"n1", "n2"}
        assert two_widget_host.executed == [("1", WIDGET_A.key)]

    def test_widget_item_execution_anchors(self, engine, session):
        """Running a widget item latches its widget"""
        engine.resolve_turn("Links Panel D", session)
        assert session.focus_latch.target_id == "links_panel"

    def test_panel_execution_re_anchors(self, engine, host, session):
        """Opening a panel from chat re-anchors and resumes the latch"""
        host.pools[CHAT_SCOPE.key] = [
            Candidate(id="p1", label="Notes Panel", type=OptionType.PANEL, source_scope=CHAT_SCOPE,
                      ref=EntityRef("chat", "notes_panel")),
        ]
        result = engine.resolve_turn("notes panel from chat", session)
        assert result.candidate_id == "p1"
        assert session.focus_latch.state == LatchState.PENDING
        assert session.focus_latch.target_id == "notes_panel"
        assert not session.focus_latch.suspended

    def test_dashboard_item_releases(self, engine, host, session):
        """Dashboard items release the latch"""
        host.pools[DASHBOARD_SCOPE.key] = make_candidates(
            DASHBOARD_SCOPE, ["Quarterly Report"], OptionType.DASHBOARD_ITEM, ids=["d1"],
        )
        engine.on_scope_opened(session, "links_panel")
        result = engine.resolve_turn("quarterly report from dashboard", session)
        assert result.candidate_id == "d1"
        assert session.focus_latch.state == LatchState.UNSET

    def test_pending_latch_expires(self, engine, host, session):
        """A target that never shows up expires"""
        engine.on_scope_opened(session, "notes_panel")
        engine.resolve_turn("summarize from chat", session)
        engine.resolve_turn("summarize from chat", session)
        assert session.focus_latch.state == LatchState.EXPIRED


class TestFailures:
    def test_execution_failure_clarifies(self, engine, host, session):
        """A failed execution re-asks and records no resolution"""
        host.execute_ok = False
        result = engine.resolve_turn("Links Panel D", session)
        assert result.message.kind == ClarifierKind.EXECUTION_FAILED
        assert result.message.prompt.startswith("I couldn't open Links Panel D. ")
        assert session.continuity.last_resolved_action is None

    def test_host_exception_clarifies(self, engine, host, session):
        """Exceptions from execute_candidate count as failure"""
        host.execute_error = RuntimeError("widget crashed")
        result = engine.resolve_turn("Links Panel D", session)
        assert result.message.kind == ClarifierKind.EXECUTION_FAILED

    def test_empty_pool(self, session):
        """No candidates anywhere: pool-empty clarifier"""
        engine = ArbitrationEngine(FakeHost())
        result = engine.resolve_turn("open something", session)
        assert result.message.kind == ClarifierKind.POOL_EMPTY
        assert result.message.prompt == "No items found in the chat options."

    def test_widget_cue_without_widget(self, session):
        """A widget cue with no widget open answers pool-empty"""
        engine = ArbitrationEngine(FakeHost())
        result = engine.resolve_turn("open it from active widget", session)
        assert result.message.kind == ClarifierKind.POOL_EMPTY
        assert result.message.prompt == "No items found in the active widget."

    def test_scope_conflict(self, engine, host, session):
        """Chat and widget cues together ask which one"""
        result = engine.resolve_turn("open summary from chat from the widget", session)
        assert result.message.kind == ClarifierKind.SCOPE_CONFLICT
        assert host.llm_requests == []

    def test_out_of_pool_execution_refused(self, engine, host, session, links_pool):
        """Executing outside the bound pool is a programming error"""
        stray = make_candidates(WIDGET_B, ["Stray"], ids=["9"])[0]
        with pytest.raises(InvariantViolation):
            engine._execute(stray, links_pool, "test", session, None, None)

    def test_telemetry_sink_errors_swallowed(self, links_candidates, session):
        """A failing telemetry sink never breaks the turn"""
        class NoisyHost(FakeHost):
            def emit_telemetry(self, event_name, fields):
                raise ConnectionError("sink down")

        host = NoisyHost(
            pools={WIDGET_A.key: links_candidates},
            snapshot=ActiveSnapshot(active_widget_id="links_panel", open_widget_ids=["links_panel"]),
        )
        result = ArbitrationEngine(host).resolve_turn("Links Panel D", session)
        assert isinstance(result, Execute)


class TestSessionBoundary:
    def test_boundary_resets_state(self, engine, host, session):
        """Session boundary clears every piece of session state"""
        engine.resolve_turn("open links panel d from active widgetss", session)
        engine.on_scope_opened(session, "links_panel")
        session.loop_guard.remember("k")

        engine.on_session_boundary(session)

        assert session.pending_typo is None
        assert session.active_clarifier is None
        assert session.focus_latch.state == LatchState.UNSET
        assert session.continuity.active_option_set_id is None
        assert session.loop_guard.last_key is None
        assert session.metrics.turns == 0

    def test_events(self, engine, host, session):
        """Events are tagged with the session id"""
        engine.resolve_turn("panel", session)
        names = host.event_names()
        assert names[0] == TURN_STARTED
        assert CLARIFIER_EMITTED in names
        assert CANDIDATE_EXECUTED not in names
        assert all(fields["session_id"] == "test-session" for _, fields in host.events)
