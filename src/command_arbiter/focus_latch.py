r"""
FocusLatch: which widget/panel is implicitly "in focus" across turns.

    unset -> pending(target, created_at_turn) -> resolved(entity) -> unset
                         \-> expired

Opening a scope always re-anchors: the previous resolved value is dropped and
a pending entry for the new target takes its place, because the host UI may
not have registered the new target yet. The pending entry is promoted when a
later snapshot confirms the target, and expires after a fixed number of turns
otherwise.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from command_arbiter.errors import InvalidTransition
from command_arbiter.logger import logger
from command_arbiter.models import NO_SCOPE, ActiveSnapshot, Scope
from command_arbiter.settings import settings


class LatchState(str, Enum):
    UNSET = "unset"
    PENDING = "pending"
    RESOLVED = "resolved"
    EXPIRED = "expired"


_ALLOWED = {
    LatchState.UNSET: {LatchState.PENDING},
    LatchState.PENDING: {LatchState.PENDING, LatchState.RESOLVED, LatchState.EXPIRED},
    LatchState.RESOLVED: {LatchState.PENDING, LatchState.UNSET},
    LatchState.EXPIRED: {LatchState.PENDING, LatchState.UNSET},
}


@dataclass
class LatchChange:
    from_state: LatchState
    to_state: LatchState
    target_id: Optional[str]


class FocusLatch:
    """
    Session-scoped focus latch.

    Usage:
        latch = FocusLatch()
        latch.re_anchor("widget_b", turn=3)
        latch.observe(snapshot, turn=4)   # pending -> resolved if B is open
        latch.implicit_target(snapshot)   # "widget_b"
    """

    def __init__(self, pending_expiry_turns: Optional[int] = None):
        self.pending_expiry_turns = (
            pending_expiry_turns
            if pending_expiry_turns is not None
            else settings.focus_latch.pending_expiry_turns
        )
        self.state = LatchState.UNSET
        self.candidate_hint: Optional[str] = None
        self.created_at_turn: Optional[int] = None
        self.entity_id: Optional[str] = None
        self.suspended = False

    def __repr__(self) -> str:
        return (
            f"FocusLatch(state={self.state.value}, hint={self.candidate_hint!r}, "
            f"entity={self.entity_id!r}, suspended={self.suspended})"
        )

    # =========================================================================
    # Transitions
    # =========================================================================

    def _transition(self, to_state: LatchState) -> LatchChange:
        if to_state not in _ALLOWED[self.state]:
            raise InvalidTransition("FocusLatch", self.state.value, to_state.value)
        change = LatchChange(self.state, to_state, self.candidate_hint or self.entity_id)
        self.state = to_state
        logger.debug(
            "Focus latch transition",
            from_state=change.from_state.value,
            to_state=to_state.value,
            target=change.target_id,
        )
        return change

    def re_anchor(self, target_id: str, turn: int) -> LatchChange:
        """Drop any resolved value and wait for `target_id` to show up."""
        change = self._transition(LatchState.PENDING)
        self.entity_id = None
        self.candidate_hint = target_id
        self.created_at_turn = turn
        self.suspended = False
        change.target_id = target_id
        return change

    def observe(self, snapshot: ActiveSnapshot, turn: int) -> Optional[LatchChange]:
        """
        Advance a pending latch against the turn's snapshot.

        Returns:
            The transition taken, or None when nothing changed
        """
        if self.state != LatchState.PENDING:
            return None

        if snapshot.has_target(self.candidate_hint):
            change = self._transition(LatchState.RESOLVED)
            self.entity_id = self.candidate_hint
            self.candidate_hint = None
            return change

        if turn - self.created_at_turn >= self.pending_expiry_turns:
            change = self._transition(LatchState.EXPIRED)
            self.candidate_hint = None
            return change
        return None

    def release(self) -> Optional[LatchChange]:
        """User switched context: resolved/expired -> unset. No-op otherwise."""
        if self.state not in (LatchState.RESOLVED, LatchState.EXPIRED):
            return None
        change = self._transition(LatchState.UNSET)
        self.entity_id = None
        self.created_at_turn = None
        return change

    def reset(self) -> None:
        """Session boundary: back to unset from anywhere."""
        self.state = LatchState.UNSET
        self.candidate_hint = None
        self.created_at_turn = None
        self.entity_id = None
        self.suspended = False

    def suspend(self) -> None:
        self.suspended = True

    def resume(self) -> None:
        self.suspended = False

    # =========================================================================
    # Reads
    # =========================================================================

    @property
    def target_id(self) -> Optional[str]:
        if self.state == LatchState.RESOLVED:
            return self.entity_id
        if self.state == LatchState.PENDING:
            return self.candidate_hint
        return None

    def implicit_target(self, snapshot: ActiveSnapshot) -> Optional[str]:
        """
        Widget/panel id to scope an utterance without an explicit cue.

        resolved -> the latched entity; pending -> the pending target;
        expired/unset -> the live snapshot's active widget, then panel.
        """
        if self.suspended:
            return None
        if self.target_id is not None:
            return self.target_id
        return snapshot.active_widget_id or snapshot.active_panel_id

    def implicit_scope(self, snapshot: ActiveSnapshot) -> Scope:
        target = self.implicit_target(snapshot)
        return Scope.widget(target) if target else NO_SCOPE

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "candidate_hint": self.candidate_hint,
            "created_at_turn": self.created_at_turn,
            "entity_id": self.entity_id,
            "suspended": self.suspended,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], pending_expiry_turns: Optional[int] = None) -> "FocusLatch":
        latch = cls(pending_expiry_turns)
        latch.state = LatchState(data.get("state", LatchState.UNSET.value))
        latch.candidate_hint = data.get("candidate_hint")
        latch.created_at_turn = data.get("created_at_turn")
        latch.entity_id = data.get("entity_id")
        latch.suspended = data.get("suspended", False)
        return latch
