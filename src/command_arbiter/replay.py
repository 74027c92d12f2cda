"""
ReplayResolver: one-turn side channel for scope-typo confirmations.

After "open links panel d from active widgetss" the engine asks "Did you
mean: from widget?" and remembers the command without its cue. On the next
turn:

- stale: the turn counter moved by anything but the TTL, or the UI changed
  -> StaleReplay, normal routing
- "yes from active widget" -> replay "open links panel d from active widget"
- "yes from widgts" -> scope-only clarifier, nothing remembered
- bare "yes", a new command, anything else -> normal routing

Every exit path clears the pending entry.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from command_arbiter.classifier.normalization import normalize_text, strip_leading_affirmation
from command_arbiter.classifier.scope_resolver import ScopeResolver
from command_arbiter.clarifier import scope_option_label
from command_arbiter.errors import StaleReplay
from command_arbiter.logger import logger
from command_arbiter.models import PendingScopeTypoClarifier, ScopeKind
from command_arbiter.settings import settings


class ReplayAction(str, Enum):
    REPLAY = "replay"
    NARROW_RECLARIFY = "narrow_reclarify"
    FALL_THROUGH = "fall_through"


@dataclass
class ReplayOutcome:
    action: ReplayAction
    replay_input: Optional[str] = None
    suggested_scopes: List[ScopeKind] = field(default_factory=list)
    cause: str = ""


class ReplayResolver:
    """
    Usage:
        replay = ReplayResolver(resolver)
        outcome = replay.try_replay("yes from active widget", session, snapshot_fp)
    """

    def __init__(
        self,
        resolver: ScopeResolver,
        ttl_turns: Optional[int] = None,
        affirmations: Optional[List[str]] = None,
    ):
        self.resolver = resolver
        self.ttl_turns = ttl_turns if ttl_turns is not None else settings.replay.ttl_turns
        self.affirmations = list(affirmations if affirmations is not None else settings.replay.affirmations)

    def try_replay(self, utterance: str, session, snapshot_fingerprint: str) -> ReplayOutcome:
        """
        Consume the session's pending scope-typo entry.

        Raises:
            StaleReplay: TTL mismatch or snapshot drift (pending already cleared)
        """
        pending: PendingScopeTypoClarifier = session.pending_typo
        session.pending_typo = None

        age = session.turn - pending.created_at_turn_count
        if age != self.ttl_turns:
            raise StaleReplay(f"ttl (age={age})")
        if snapshot_fingerprint != pending.snapshot_fingerprint:
            raise StaleReplay("snapshot_drift")

        outcome = self._resolve(utterance, pending)
        logger.debug(
            "Replay resolved",
            action=outcome.action.value,
            cause=outcome.cause,
            replay_input=outcome.replay_input,
        )
        return outcome

    def _resolve(self, utterance: str, pending: PendingScopeTypoClarifier) -> ReplayOutcome:
        remainder, _ = strip_leading_affirmation(utterance, self.affirmations)

        # A bare "yes" does not name a scope
        if not remainder:
            return ReplayOutcome(ReplayAction.FALL_THROUGH, cause="bare_affirmation")

        # "widget" alone names the scope
        bare_scope = self.resolver.vocabulary.scope_of(normalize_text(remainder))
        if bare_scope is not None:
            return self._replay(pending, scope_option_label(bare_scope), "bare_scope_word")

        corrected, changed = self.resolver.correct_trigger_word(remainder)
        cue = self.resolver.resolve(corrected)

        if cue.is_bound and not cue.stripped_input:
            return self._replay(pending, cue.cue_text, "trigger_corrected" if changed else "scope_confirmed")

        if cue.is_typo_tier and not cue.stripped_input:
            return ReplayOutcome(
                ReplayAction.NARROW_RECLARIFY,
                suggested_scopes=list(cue.suggested_scopes),
                cause="still_ambiguous",
            )

        if cue.is_bound or cue.is_typo_tier or cue.has_conflict:
            return ReplayOutcome(ReplayAction.FALL_THROUGH, cause="new_command")
        return ReplayOutcome(ReplayAction.FALL_THROUGH, cause="no_match")

    @staticmethod
    def _replay(pending: PendingScopeTypoClarifier, cue_text: str, cause: str) -> ReplayOutcome:
        replay_input = f"{pending.original_input_without_scope_cue} {cue_text}".strip()
        return ReplayOutcome(ReplayAction.REPLAY, replay_input=replay_input, cause=cause)
