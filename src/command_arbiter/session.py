"""
SessionContext: all per-session state the engine reads and writes.

The engine holds no session state of its own; hosts keep one SessionContext
per conversation and persist it with to_dict()/from_dict().
"""

import uuid
from typing import Any, Dict, Optional

from command_arbiter.arbitration import LLMCallTimer, LoopGuard
from command_arbiter.continuity import ContinuityStore
from command_arbiter.focus_latch import FocusLatch
from command_arbiter.models import ClarifierMessage, PendingScopeTypoClarifier
from command_arbiter.telemetry import SessionMetrics


class SessionContext:
    """
    Usage:
        session = SessionContext("user-42")
        result = engine.resolve_turn("open links panel d", session)
        store.save(session.to_dict())
    """

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id or uuid.uuid4().hex
        self.turn = 0
        self.continuity = ContinuityStore()
        self.focus_latch = FocusLatch()
        self.pending_typo: Optional[PendingScopeTypoClarifier] = None
        self.active_clarifier: Optional[ClarifierMessage] = None
        self.active_clarifier_turn: Optional[int] = None
        self.loop_guard = LoopGuard()
        self.replay_depth = 0
        self.timer = LLMCallTimer()
        self.metrics = SessionMetrics(self.session_id)

    def __repr__(self) -> str:
        return f"SessionContext(id={self.session_id!r}, turn={self.turn})"

    def next_turn(self) -> int:
        self.turn += 1
        return self.turn

    def set_clarifier(self, message: ClarifierMessage) -> None:
        self.active_clarifier = message
        self.active_clarifier_turn = self.turn

    def clear_clarifier(self) -> None:
        self.active_clarifier = None
        self.active_clarifier_turn = None

    def clarifier_for_turn(self) -> Optional[ClarifierMessage]:
        """The clarifier shown on the previous turn, if it is still answerable."""
        if self.active_clarifier is None or self.active_clarifier_turn is None:
            return None
        if self.turn - self.active_clarifier_turn != 1:
            return None
        return self.active_clarifier

    def reset(self) -> None:
        """Session boundary. The turn counter keeps counting."""
        self.timer.cancel()
        self.continuity.reset()
        self.focus_latch.reset()
        self.pending_typo = None
        self.clear_clarifier()
        self.loop_guard.reset()
        self.replay_depth = 0

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "turn": self.turn,
            "continuity": self.continuity.to_dict(),
            "focus_latch": self.focus_latch.to_dict(),
            "pending_typo": self.pending_typo.to_dict() if self.pending_typo else None,
            "active_clarifier": self.active_clarifier.to_dict() if self.active_clarifier else None,
            "active_clarifier_turn": self.active_clarifier_turn,
            "loop_guard_key": self.loop_guard.last_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionContext":
        session = cls(data.get("session_id"))
        session.turn = data.get("turn", 0)
        session.continuity = ContinuityStore.from_dict(data.get("continuity", {}))
        session.focus_latch = FocusLatch.from_dict(data.get("focus_latch", {}))
        pending = data.get("pending_typo")
        session.pending_typo = PendingScopeTypoClarifier.from_dict(pending) if pending else None
        clarifier = data.get("active_clarifier")
        session.active_clarifier = ClarifierMessage.from_dict(clarifier) if clarifier else None
        session.active_clarifier_turn = data.get("active_clarifier_turn")
        session.loop_guard = LoopGuard(data.get("loop_guard_key"))
        return session
