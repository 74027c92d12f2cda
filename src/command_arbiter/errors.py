"""
Error taxonomy for the command arbiter.

Recoverable errors (ArbitrationError subclasses) are caught by the engine at
the stage that raised them and turned into a clarifying question. Programming
errors (invariant breaks, malformed pools, illegal state transitions) are not
recovered and propagate to the host.
"""

from enum import Enum
from typing import Optional, Sequence


class FallbackReason(str, Enum):
    """Normalized reason attached to every LLM-lane fallback."""
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport_error"
    RATE_LIMITED = "rate_limited"
    ABSTAIN = "abstain"
    LOW_CONFIDENCE = "low_confidence"
    SELECT_REJECTED = "select_rejected"
    LOOP_GUARD = "loop_guard"
    FEATURE_DISABLED = "feature_disabled"
    CIRCUIT_OPEN = "circuit_open"
    NO_NEW_EVIDENCE = "no_new_evidence"
    RETRY_BUDGET_EXHAUSTED = "retry_budget_exhausted"


# =============================================================================
# Recoverable errors
# =============================================================================

class ArbitrationError(Exception):
    """Base class for errors the engine recovers into a clarifier."""

    reason: str = "arbitration_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)


class ScopeAmbiguous(ArbitrationError):
    """Scope cue was a typo or too uncertain to bind."""

    reason = "scope_ambiguous"

    def __init__(self, suggested_scopes: Sequence[str], detected_scope: Optional[str] = None):
        self.suggested_scopes = list(suggested_scopes)
        self.detected_scope = detected_scope
        super().__init__(f"Scope cue ambiguous, suggestions: {', '.join(self.suggested_scopes) or 'none'}")


class PoolEmpty(ArbitrationError):
    """No candidates in the bound scope."""

    reason = "pool_empty"

    def __init__(self, scope_key: str):
        self.scope_key = scope_key
        super().__init__(f"No candidates in scope '{scope_key}'")


class LLMError(ArbitrationError):
    """Any LLM-lane failure. All subclasses share one fallback outcome."""

    reason = "llm_fallback"
    fallback_reason: FallbackReason = FallbackReason.TRANSPORT_ERROR


class LLMTimeout(LLMError):
    fallback_reason = FallbackReason.TIMEOUT


class LLMTransportError(LLMError):
    fallback_reason = FallbackReason.TRANSPORT_ERROR

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class LLMRateLimited(LLMTransportError):
    fallback_reason = FallbackReason.RATE_LIMITED


class LLMCircuitOpen(LLMTransportError):
    """Client refused the call because its circuit breaker is open."""
    fallback_reason = FallbackReason.CIRCUIT_OPEN


class LLMAbstain(LLMError):
    fallback_reason = FallbackReason.ABSTAIN


class LLMLowConfidence(LLMError):
    fallback_reason = FallbackReason.LOW_CONFIDENCE

    def __init__(self, confidence: float, threshold: float):
        self.confidence = confidence
        self.threshold = threshold
        super().__init__(f"LLM confidence {confidence:.2f} below {threshold:.2f}")


class LLMSelectRejected(LLMError):
    """Advisory select failed the deterministic post-check."""
    fallback_reason = FallbackReason.SELECT_REJECTED

    def __init__(self, selected_id: Optional[str], cause: str):
        self.selected_id = selected_id
        self.cause = cause
        super().__init__(f"Select of '{selected_id}' rejected: {cause}")


class LLMLoopGuard(LLMError):
    """Identical repeat against the clarifier just shown; no new call."""
    fallback_reason = FallbackReason.LOOP_GUARD


class LLMDisabled(LLMError):
    fallback_reason = FallbackReason.FEATURE_DISABLED


class NoNewEvidence(ArbitrationError):
    """Retry skipped because the evidence fingerprint did not change."""

    reason = "no_new_evidence"

    def __init__(self, fingerprint: str):
        self.fingerprint = fingerprint
        super().__init__(f"Evidence fingerprint unchanged ({fingerprint[:12]})")


class RetryBudgetExhausted(ArbitrationError):
    reason = "retry_budget_exhausted"


class StaleReplay(ArbitrationError):
    """Pending scope-typo state expired or drifted."""

    reason = "stale_replay"

    def __init__(self, cause: str):
        self.cause = cause
        super().__init__(f"Pending replay is stale: {cause}")


# =============================================================================
# Programming errors
# =============================================================================

class InvariantViolation(Exception):
    """A decision broke the execute <=> high confidence contract."""


class MixedScopePoolError(ValueError):
    """Raised when a pool is built from candidates of different sources."""

    def __init__(self, pool_scope: str, candidate_id: str, candidate_scope: str):
        self.pool_scope = pool_scope
        self.candidate_id = candidate_id
        self.candidate_scope = candidate_scope
        super().__init__(
            f"Candidate '{candidate_id}' belongs to '{candidate_scope}', pool is '{pool_scope}'"
        )


class DuplicateCandidateError(ValueError):
    def __init__(self, candidate_id: str):
        self.candidate_id = candidate_id
        super().__init__(f"Duplicate candidate id '{candidate_id}' in pool")


class InvalidTransition(Exception):
    """Raised when a state machine is asked for an illegal transition."""

    def __init__(self, machine: str, from_state: str, to_state: str):
        self.machine = machine
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"{machine}: illegal transition {from_state} -> {to_state}")


class ReplayDepthExceeded(Exception):
    def __init__(self, depth: int, max_depth: int):
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(f"Replay depth {depth} exceeds maximum {max_depth}")


class UnhandledOptionType(Exception):
    """An option type reached the executor without a dispatch branch."""

    def __init__(self, option_type: object):
        self.option_type = option_type
        super().__init__(f"No execution branch for option type {option_type!r}")
