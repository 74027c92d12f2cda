"""
Telemetry for the command arbiter.

TelemetryEmitter forwards pipeline events to the host sink (fire-and-forget)
and mirrors them into the structured log. SessionMetrics keeps per-session
counters for analysis.

Usage:
    telemetry = TelemetryEmitter(host.emit_telemetry, session_id="s1")
    telemetry.emit("gate_decision", turn=3, outcome="llm", reason="soft_contains")

    metrics = SessionMetrics("s1")
    metrics.record_execution("exact_label")
    summary = metrics.get_summary()
"""

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from command_arbiter.logger import logger


TURN_STARTED = "turn_started"
SCOPE_CUE_RESOLVED = "scope_cue_resolved"
GATE_DECISION = "gate_decision"
TIE_BREAK_ATTEMPTED = "tie_break_attempted"
ARBITRATION_CALL = "arbitration_call"
ARBITRATION_FALLBACK = "arbitration_fallback"
ARBITRATION_RETRY_SKIPPED = "arbitration_retry_skipped"
CLARIFIER_EMITTED = "clarifier_emitted"
CANDIDATE_EXECUTED = "candidate_executed"
REPLAY_FIRED = "replay_fired"
REPLAY_CLEARED = "replay_cleared"
FOCUS_LATCH_CHANGED = "focus_latch_changed"

EVENTS = (
    TURN_STARTED,
    SCOPE_CUE_RESOLVED,
    GATE_DECISION,
    TIE_BREAK_ATTEMPTED,
    ARBITRATION_CALL,
    ARBITRATION_FALLBACK,
    ARBITRATION_RETRY_SKIPPED,
    CLARIFIER_EMITTED,
    CANDIDATE_EXECUTED,
    REPLAY_FIRED,
    REPLAY_CLEARED,
    FOCUS_LATCH_CHANGED,
)

TelemetrySink = Callable[[str, Dict[str, Any]], None]


class TelemetryEmitter:
    """Fire-and-forget wrapper around the host telemetry sink."""

    def __init__(self, sink: Optional[TelemetrySink] = None, session_id: Optional[str] = None):
        self.sink = sink
        self.session_id = session_id
        self.sink_errors = 0

    def emit(self, event_name: str, turn: Optional[int] = None, **fields: Any) -> None:
        payload = {"session_id": self.session_id, "turn": turn, **fields}
        logger.event(event_name, **payload)

        if self.sink is None:
            return
        try:
            self.sink(event_name, payload)
        except Exception as e:
            # Sink failures never reach the turn
            self.sink_errors += 1
            logger.warning("Telemetry sink failed", event_name=event_name, error=str(e))


class SessionMetrics:
    """Per-session counters."""

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id
        self.created_at = datetime.now(timezone.utc)
        self.reset()

    def reset(self) -> None:
        self.turns = 0
        self.executions = 0
        self.executions_by_reason: Dict[str, int] = defaultdict(int)
        self.clarifiers = 0
        self.clarifiers_by_kind: Dict[str, int] = defaultdict(int)
        self.llm_calls = 0
        self.fallbacks_by_reason: Dict[str, int] = defaultdict(int)
        self.replays = 0
        self.tie_breaks = 0

    def record_turn(self) -> None:
        self.turns += 1

    def record_execution(self, reason: str) -> None:
        self.executions += 1
        self.executions_by_reason[reason] += 1

    def record_clarifier(self, kind: str) -> None:
        self.clarifiers += 1
        self.clarifiers_by_kind[kind] += 1

    def record_llm_calls(self, count: int) -> None:
        self.llm_calls += count

    def record_fallback(self, reason: str) -> None:
        self.fallbacks_by_reason[reason] += 1

    def record_replay(self) -> None:
        self.replays += 1

    def record_tie_break(self) -> None:
        self.tie_breaks += 1

    def get_execution_rate(self) -> float:
        if self.turns == 0:
            return 0.0
        return self.executions / self.turns

    def get_summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "turns": self.turns,
            "executions": self.executions,
            "executions_by_reason": dict(self.executions_by_reason),
            "clarifiers": self.clarifiers,
            "clarifiers_by_kind": dict(self.clarifiers_by_kind),
            "llm_calls": self.llm_calls,
            "fallbacks_by_reason": dict(self.fallbacks_by_reason),
            "replays": self.replays,
            "tie_breaks": self.tie_breaks,
            "execution_rate": round(self.get_execution_rate(), 3),
        }
