"""
Tests for the scope-typo replay side channel.
"""

import pytest

from command_arbiter.classifier.scope_resolver import ScopeResolver
from command_arbiter.errors import StaleReplay
from command_arbiter.models import PendingScopeTypoClarifier, ScopeKind
from command_arbiter.replay import ReplayAction, ReplayResolver
from command_arbiter.session import SessionContext


FINGERPRINT = "fp-1"


@pytest.fixture
def replay():
    return ReplayResolver(ScopeResolver(), ttl_turns=1)


def pending_session(scopes=(ScopeKind.WIDGET,), created=1, turn=2):
    session = SessionContext("replay")
    session.turn = turn
    session.pending_typo = PendingScopeTypoClarifier(
        original_input_without_scope_cue="open links panel d",
        suggested_scopes=list(scopes),
        detected_scope=scopes[0] if scopes else None,
        created_at_turn_count=created,
        snapshot_fingerprint=FINGERPRINT,
        clarifier_message_id="m1",
    )
    return session


class TestReplay:
    @pytest.mark.parametrize("utterance,expected,cause", [
        ("yes from active widget", "open links panel d from active widget", "scope_confirmed"),
        ("from the widget", "open links panel d from the widget", "scope_confirmed"),
        ("widget", "open links panel d from widget", "bare_scope_word"),
        ("yes rom active widget", "open links panel d from active widget", "trigger_corrected"),
    ])
    def test_replays(self, replay, utterance, expected, cause):
        """Confirmations that name the scope replay the stored command with that cue"""
        session = pending_session()
        outcome = replay.try_replay(utterance, session, FINGERPRINT)
        assert outcome.action == ReplayAction.REPLAY
        assert outcome.replay_input == expected
        assert outcome.cause == cause
        assert session.pending_typo is None

    def test_still_ambiguous_narrows(self, replay):
        """A confirmation that is still a typo narrows instead of replaying"""
        session = pending_session()
        outcome = replay.try_replay("yes from widgts", session, FINGERPRINT)
        assert outcome.action == ReplayAction.NARROW_RECLARIFY
        assert outcome.suggested_scopes == [ScopeKind.WIDGET]
        assert session.pending_typo is None

    @pytest.mark.parametrize("scopes", [
        (ScopeKind.WIDGET,),
        (ScopeKind.WIDGET, ScopeKind.WORKSPACE),
    ])
    def test_bare_affirmation_falls_through(self, replay, scopes):
        """A bare "yes" never replays, even with a single suggested scope"""
        session = pending_session(scopes=scopes)
        outcome = replay.try_replay("yes", session, FINGERPRINT)
        assert outcome.action == ReplayAction.FALL_THROUGH
        assert outcome.cause == "bare_affirmation"
        assert outcome.replay_input is None
        assert session.pending_typo is None

    @pytest.mark.parametrize("utterance,cause", [
        ("show notes from chat", "new_command"),
        ("hello there", "no_match"),
    ])
    def test_falls_through(self, replay, utterance, cause):
        """Anything that is not a confirmation routes normally"""
        session = pending_session()
        outcome = replay.try_replay(utterance, session, FINGERPRINT)
        assert outcome.action == ReplayAction.FALL_THROUGH
        assert outcome.cause == cause
        assert session.pending_typo is None


class TestStale:
    def test_ttl_mismatch(self, replay):
        """Entries older than the TTL are stale"""
        session = pending_session(created=1, turn=3)
        with pytest.raises(StaleReplay) as exc_info:
            replay.try_replay("yes from active widget", session, FINGERPRINT)
        assert exc_info.value.cause.startswith("ttl")
        assert session.pending_typo is None

    def test_snapshot_drift(self, replay):
        """A changed snapshot fingerprint makes the entry stale"""
        session = pending_session()
        with pytest.raises(StaleReplay) as exc_info:
            replay.try_replay("yes from active widget", session, "fp-2")
        assert exc_info.value.cause == "snapshot_drift"
        assert session.pending_typo is None
