"""
Continuity state and the deterministic tie-break.

Short, bounded, session-scoped memory of the last resolved action, the active
option set and recently accepted/rejected candidate ids. Every list is a
fixed-size newest-first ring. The state is mutated only at clarifier emission,
successful resolution, explicit rejection and session boundary.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence

from command_arbiter.logger import logger
from command_arbiter.models import Candidate, ClarifierKind, ResolvedAction
from command_arbiter.settings import settings


class RecentIds:
    """Newest-first ring of ids. Re-adding an id moves it to the front."""

    def __init__(self, capacity: int, items: Iterable[str] = ()):
        self.capacity = capacity
        self._items: Deque[str] = deque(maxlen=capacity)
        for item in reversed(list(items)[:capacity]):
            self.push(item)

    def push(self, item: str) -> None:
        if item in self._items:
            self._items.remove(item)
        self._items.appendleft(item)

    def extend(self, items: Iterable[str]) -> None:
        for item in items:
            self.push(item)

    def clear(self) -> None:
        self._items.clear()

    def as_list(self) -> List[str]:
        return list(self._items)

    def __contains__(self, item: object) -> bool:
        return item in self._items

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class ContinuityState:
    """Read-only view handed to the host and to the tie-break."""
    active_option_set_id: Optional[str] = None
    active_scope: Optional[str] = None
    last_resolved_action: Optional[ResolvedAction] = None
    recent_action_trace: List[ResolvedAction] = field(default_factory=list)
    recent_accepted_choice_ids: List[str] = field(default_factory=list)
    recent_rejected_choice_ids: List[str] = field(default_factory=list)
    pending_clarifier_type: Optional[ClarifierKind] = None


@dataclass
class TieBreakResult:
    resolved: bool
    winner_id: Optional[str]
    reason: str


class ContinuityStore:
    """
    Single writer of ContinuityState for one session.

    Usage:
        store = ContinuityStore()
        store.record_clarifier("opt_1", "widget:w1", ClarifierKind.CANDIDATE)
        store.record_rejection(["2", "3"])
        result = store.try_tie_break(pool.candidates, "opt_1", "widget:w1", True, False)
    """

    def __init__(self, capacity: Optional[int] = None):
        self.capacity = capacity if capacity is not None else settings.continuity.ring_capacity
        self.reset()

    def reset(self) -> None:
        self.active_option_set_id: Optional[str] = None
        self.active_scope: Optional[str] = None
        self.last_resolved_action: Optional[ResolvedAction] = None
        self.pending_clarifier_type: Optional[ClarifierKind] = None
        self._trace: Deque[ResolvedAction] = deque(maxlen=self.capacity)
        self._accepted = RecentIds(self.capacity)
        self._rejected = RecentIds(self.capacity)

    # =========================================================================
    # Writers
    # =========================================================================

    def record_clarifier(self, option_set_id: Optional[str], scope_key: Optional[str], kind: ClarifierKind) -> None:
        self.active_option_set_id = option_set_id
        self.active_scope = scope_key
        self.pending_clarifier_type = kind

    def record_resolution(self, candidate: Candidate, scope_key: str, turn: int) -> ResolvedAction:
        action = ResolvedAction(
            candidate_id=candidate.id,
            label=candidate.label,
            scope_key=scope_key,
            option_set_id=self.active_option_set_id,
            turn=turn,
        )
        self._trace.appendleft(action)
        self._accepted.push(candidate.id)
        self.last_resolved_action = action
        self.pending_clarifier_type = None
        return action

    def record_rejection(self, candidate_ids: Sequence[str]) -> None:
        self._rejected.extend(candidate_ids)

    # =========================================================================
    # Reads
    # =========================================================================

    @property
    def recent_rejected_choice_ids(self) -> List[str]:
        return self._rejected.as_list()

    @property
    def recent_accepted_choice_ids(self) -> List[str]:
        return self._accepted.as_list()

    @property
    def recent_action_trace(self) -> List[ResolvedAction]:
        return list(self._trace)

    def snapshot(self) -> ContinuityState:
        return ContinuityState(
            active_option_set_id=self.active_option_set_id,
            active_scope=self.active_scope,
            last_resolved_action=self.last_resolved_action,
            recent_action_trace=self.recent_action_trace,
            recent_accepted_choice_ids=self.recent_accepted_choice_ids,
            recent_rejected_choice_ids=self.recent_rejected_choice_ids,
            pending_clarifier_type=self.pending_clarifier_type,
        )

    # =========================================================================
    # Deterministic tie-break
    # =========================================================================

    def try_tie_break(
        self,
        candidates: Sequence[Candidate],
        option_set_id: Optional[str],
        scope_key: Optional[str],
        is_command_or_selection: bool,
        is_question: bool,
    ) -> TieBreakResult:
        """
        Resolve to the single non-rejected candidate when every gate passes.

        Gates, in order:
        1. command/selection-like utterance
        2. not a question
        3. option set ids present and equal
        4. same scope
        5. exactly one candidate left after removing rejected ids
        6. loop guard: not the action just resolved in this option-set cycle
        """
        result = self._tie_break(candidates, option_set_id, scope_key, is_command_or_selection, is_question)
        logger.debug(
            "Continuity tie-break",
            resolved=result.resolved,
            winner=result.winner_id,
            reason=result.reason,
        )
        return result

    def _tie_break(
        self,
        candidates: Sequence[Candidate],
        option_set_id: Optional[str],
        scope_key: Optional[str],
        is_command_or_selection: bool,
        is_question: bool,
    ) -> TieBreakResult:
        if not is_command_or_selection:
            return TieBreakResult(False, None, "not_command_or_selection")
        if is_question:
            return TieBreakResult(False, None, "question_intent")
        if option_set_id is None or self.active_option_set_id is None:
            return TieBreakResult(False, None, "null_option_set_id")
        if option_set_id != self.active_option_set_id:
            return TieBreakResult(False, None, "option_set_mismatch")
        if scope_key != self.active_scope:
            return TieBreakResult(False, None, "scope_mismatch")

        eligible = [c for c in candidates if c.id not in self._rejected]
        if not eligible:
            return TieBreakResult(False, None, "all_candidates_rejected")
        if len(eligible) != 1:
            return TieBreakResult(False, None, f"ambiguous_{len(eligible)}_candidates")

        winner = eligible[0]
        last = self.last_resolved_action
        if last is not None and last.option_set_id == option_set_id and last.candidate_id == winner.id:
            return TieBreakResult(False, None, "loop_guard_same_cycle")

        return TieBreakResult(True, winner.id, "continuity_deterministic")

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active_option_set_id": self.active_option_set_id,
            "active_scope": self.active_scope,
            "last_resolved_action": self.last_resolved_action.to_dict() if self.last_resolved_action else None,
            "recent_action_trace": [a.to_dict() for a in self._trace],
            "recent_accepted_choice_ids": self.recent_accepted_choice_ids,
            "recent_rejected_choice_ids": self.recent_rejected_choice_ids,
            "pending_clarifier_type": self.pending_clarifier_type.value if self.pending_clarifier_type else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], capacity: Optional[int] = None) -> "ContinuityStore":
        store = cls(capacity)
        store.active_option_set_id = data.get("active_option_set_id")
        store.active_scope = data.get("active_scope")
        last = data.get("last_resolved_action")
        store.last_resolved_action = ResolvedAction.from_dict(last) if last else None
        for action in reversed(data.get("recent_action_trace", [])[:store.capacity]):
            store._trace.appendleft(ResolvedAction.from_dict(action))
        store._accepted = RecentIds(store.capacity, data.get("recent_accepted_choice_ids", []))
        store._rejected = RecentIds(store.capacity, data.get("recent_rejected_choice_ids", []))
        pending = data.get("pending_clarifier_type")
        store.pending_clarifier_type = ClarifierKind(pending) if pending else None
        return store
