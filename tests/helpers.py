"""
Test doubles and builders shared across the test suite.
"""

from typing import Any, Dict, List, Optional, Sequence

from command_arbiter.llm.schemas import ArbitrationResponse
from command_arbiter.models import (
    ActiveSnapshot,
    Candidate,
    ExecutionResult,
    OptionType,
    Scope,
)


WIDGET_A = Scope.widget("links_panel")
WIDGET_B = Scope.widget("notes_panel")
LINKS_LABELS = ["Links Panel D", "Links Panel E", "Links Panels"]


class FakeHost:
    """In-memory HostAdapter with a scripted LLM."""

    def __init__(
        self,
        pools: Optional[Dict[str, List[Candidate]]] = None,
        snapshot: Optional[ActiveSnapshot] = None,
        llm_responses: Optional[Sequence[Any]] = None,
    ):
        self.pools: Dict[str, List[Candidate]] = pools or {}
        self.snapshot = snapshot or ActiveSnapshot()
        self.llm_responses = list(llm_responses or [])
        self.llm_error: Optional[Exception] = None
        self.llm_requests = []
        self.executed = []
        self.execute_ok = True
        self.execute_error: Optional[Exception] = None
        self.events = []

    def get_candidate_pool(self, scope: Scope) -> List[Candidate]:
        return list(self.pools.get(scope.key, []))

    def get_active_snapshot(self) -> ActiveSnapshot:
        return self.snapshot

    def execute_candidate(self, candidate_id: str, scope: Scope) -> ExecutionResult:
        self.executed.append((candidate_id, scope.key))
        if self.execute_error is not None:
            raise self.execute_error
        return ExecutionResult(ok=self.execute_ok)

    def call_bounded_llm(self, request):
        self.llm_requests.append(request)
        if self.llm_error is not None:
            raise self.llm_error
        if not self.llm_responses:
            return ArbitrationResponse(decision="need_more_info", confidence=0.0, reason="no script")
        return self.llm_responses.pop(0)

    def emit_telemetry(self, event_name: str, fields: Dict[str, Any]) -> None:
        self.events.append((event_name, fields))

    def event_names(self) -> List[str]:
        return [name for name, _ in self.events]


def make_candidates(
    scope: Scope,
    labels: Sequence[str],
    option_type: OptionType = OptionType.WIDGET_ITEM,
    ids: Optional[Sequence[str]] = None,
) -> List[Candidate]:
    ids = ids or [str(i) for i in range(1, len(labels) + 1)]
    return [
        Candidate(id=cid, label=label, type=option_type, source_scope=scope)
        for cid, label in zip(ids, labels)
    ]


def select(candidate_id: str, confidence: float = 0.9) -> ArbitrationResponse:
    return ArbitrationResponse(decision="select", candidate_id=candidate_id, confidence=confidence, reason="test")


def need_more_info() -> ArbitrationResponse:
    return ArbitrationResponse(decision="need_more_info", confidence=0.2, reason="test")


def request_context(evidence_type: str = "widget_items") -> ArbitrationResponse:
    return ArbitrationResponse(decision="request_context", evidence_type=evidence_type, confidence=0.3, reason="test")
