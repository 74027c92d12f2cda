"""
Host collaborator contracts.

The engine never renders UI, stores sessions or talks to a model on its own:
everything outside the arbitration logic comes through a HostAdapter.
"""

from typing import Any, Dict, List, Protocol, runtime_checkable

from command_arbiter.llm.schemas import ArbitrationRequest, ArbitrationResponse
from command_arbiter.models import ActiveSnapshot, Candidate, ExecutionResult, Scope


@runtime_checkable
class HostAdapter(Protocol):
    """Everything the engine needs from the host application."""

    def get_candidate_pool(self, scope: Scope) -> List[Candidate]:
        """Selectable entities for one scope, in display order."""
        ...

    def get_active_snapshot(self) -> ActiveSnapshot:
        ...

    def execute_candidate(self, candidate_id: str, scope: Scope) -> ExecutionResult:
        ...

    def call_bounded_llm(self, request: ArbitrationRequest) -> ArbitrationResponse:
        """
        May raise LLMTimeout, LLMRateLimited or LLMTransportError.
        """
        ...

    def emit_telemetry(self, event_name: str, fields: Dict[str, Any]) -> None:
        ...
