"""
Conversational command arbitration.

Turns a free-text utterance plus UI/session state into exactly one of:
deterministic execution, a bounded LLM consultation, or a clarifying question.

Exports:
- ArbitrationEngine: resolve_turn / on_session_boundary / on_scope_opened
- SessionContext: per-session state
- HostAdapter: host collaborator protocol
- data model types and the turn result union
"""

from .engine import ArbitrationEngine
from .errors import ArbitrationError, FallbackReason, InvariantViolation
from .host import HostAdapter
from .models import (
    ActiveSnapshot,
    Candidate,
    CandidatePool,
    Clarify,
    ClarifierKind,
    ClarifierMessage,
    EntityRef,
    Execute,
    ExecutionResult,
    OptionType,
    ReplaySignal,
    Scope,
    ScopeKind,
    TurnResult,
)
from .session import SessionContext

__version__ = "0.1.0"

__all__ = [
    # Engine
    'ArbitrationEngine',
    'SessionContext',
    'HostAdapter',
    # Model
    'ActiveSnapshot',
    'Candidate',
    'CandidatePool',
    'EntityRef',
    'ExecutionResult',
    'OptionType',
    'Scope',
    'ScopeKind',
    # Results
    'Clarify',
    'ClarifierKind',
    'ClarifierMessage',
    'Execute',
    'ReplaySignal',
    'TurnResult',
    # Errors
    'ArbitrationError',
    'FallbackReason',
    'InvariantViolation',
]
