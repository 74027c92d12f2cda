r"""
Bounded arbitration loop: at most one LLM call plus one evidence-justified
retry, followed by a deterministic post-check on any select.

    init -> llm_call_1 -> resolved -> terminal_execute
                      \-> enrich -> llm_call_2 -> resolved
                      \-> terminal_clarify (from any non-terminal phase)

The model is advisory. A select executes only when the lightly normalized
utterance names exactly the selected candidate; everything else ends in a
clarifier with a normalized FallbackReason.
"""

import hashlib
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from command_arbiter.classifier.confidence_gate import ConfidenceGate
from command_arbiter.classifier.normalization import normalize_text
from command_arbiter.errors import (
    FallbackReason,
    InvalidTransition,
    LLMDisabled,
    LLMError,
    LLMAbstain,
    LLMLoopGuard,
    LLMLowConfidence,
    LLMSelectRejected,
    LLMTimeout,
    LLMTransportError,
    NoNewEvidence,
    RetryBudgetExhausted,
)
from command_arbiter.feature_flags import flags
from command_arbiter.fingerprint import compute_evidence_fingerprint
from command_arbiter.llm.schemas import ArbitrationRequest, ArbitrationResponse, LLMCandidate
from command_arbiter.logger import logger
from command_arbiter.models import ActiveSnapshot, CandidatePool, ResolvedAction, ScopeKind
from command_arbiter.settings import settings
from command_arbiter import telemetry as events


# =============================================================================
# Phase state machine
# =============================================================================

class ArbitrationPhase(str, Enum):
    INIT = "init"
    LLM_CALL_1 = "llm_call_1"
    ENRICH = "enrich"
    LLM_CALL_2 = "llm_call_2"
    RESOLVED = "resolved"
    TERMINAL_EXECUTE = "terminal_execute"
    TERMINAL_CLARIFY = "terminal_clarify"


_PHASE_TRANSITIONS = {
    ArbitrationPhase.INIT: {ArbitrationPhase.LLM_CALL_1, ArbitrationPhase.TERMINAL_CLARIFY},
    ArbitrationPhase.LLM_CALL_1: {
        ArbitrationPhase.RESOLVED, ArbitrationPhase.ENRICH, ArbitrationPhase.TERMINAL_CLARIFY,
    },
    ArbitrationPhase.ENRICH: {ArbitrationPhase.LLM_CALL_2, ArbitrationPhase.TERMINAL_CLARIFY},
    ArbitrationPhase.LLM_CALL_2: {ArbitrationPhase.RESOLVED, ArbitrationPhase.TERMINAL_CLARIFY},
    ArbitrationPhase.RESOLVED: {ArbitrationPhase.TERMINAL_EXECUTE, ArbitrationPhase.TERMINAL_CLARIFY},
    ArbitrationPhase.TERMINAL_EXECUTE: set(),
    ArbitrationPhase.TERMINAL_CLARIFY: set(),
}


class ArbitrationStateMachine:
    def __init__(self):
        self.phase = ArbitrationPhase.INIT
        self.history: List[ArbitrationPhase] = [ArbitrationPhase.INIT]

    def advance(self, to_phase: ArbitrationPhase) -> None:
        if to_phase not in _PHASE_TRANSITIONS[self.phase]:
            raise InvalidTransition("ArbitrationPhase", self.phase.value, to_phase.value)
        self.phase = to_phase
        self.history.append(to_phase)

    @property
    def is_terminal(self) -> bool:
        return self.phase in (ArbitrationPhase.TERMINAL_EXECUTE, ArbitrationPhase.TERMINAL_CLARIFY)


# =============================================================================
# Call timer
# =============================================================================

class LLMCallTimer:
    """
    One owned worker for the LLM boundary.

    Each call runs under `timeout_ms`. A call that outlives its timeout is
    abandoned together with its worker, so a hung request never blocks the
    next one. `cancel()` (session boundary) drops the in-flight call; a
    response stamped with a turn other than the current one is discarded.
    """

    def __init__(self, timeout_ms: Optional[int] = None):
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.llm.timeout_ms
        self._executor: Optional[ThreadPoolExecutor] = None
        self._future = None
        self._generation = 0

    def run(
        self,
        fn: Callable[[ArbitrationRequest], Any],
        request: ArbitrationRequest,
        turn_stamp: Optional[int] = None,
        current_turn: Optional[Callable[[], int]] = None,
    ) -> Any:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="arbiter-llm")
        generation = self._generation
        self._future = self._executor.submit(fn, request)
        try:
            result = self._future.result(timeout=self.timeout_ms / 1000.0)
        except FuturesTimeout:
            self._abandon()
            raise LLMTimeout(f"no response within {self.timeout_ms} ms")
        except LLMError:
            raise
        except Exception as e:
            # Host adapters may surface raw socket/HTTP errors
            logger.warning("LLM call raised", error_type=type(e).__name__, error=str(e))
            raise LLMTransportError(f"{type(e).__name__}: {e}") from e
        finally:
            self._future = None

        if generation != self._generation:
            raise LLMTimeout("response arrived after cancellation")
        if turn_stamp is not None and current_turn is not None and current_turn() != turn_stamp:
            logger.warning("Discarding stale arbitration response", turn_stamp=turn_stamp, current_turn=current_turn())
            raise LLMTimeout("stale response")
        return result

    def cancel(self) -> None:
        self._generation += 1
        if self._future is not None:
            self._future.cancel()
        self._abandon()

    def _abandon(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    @property
    def in_flight(self) -> bool:
        return self._future is not None and not self._future.done()


# =============================================================================
# Loop guard
# =============================================================================

class LoopGuard:
    """Remembers the last (input, option ids, clarifier) triple answered by a fallback."""

    def __init__(self, last_key: Optional[str] = None):
        self.last_key = last_key

    @staticmethod
    def key_for(utterance: str, candidate_ids: Sequence[str], clarifier_message_id: Optional[str]) -> str:
        canonical = f"{normalize_text(utterance)}|{','.join(sorted(candidate_ids))}|{clarifier_message_id or ''}"
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def is_repeat(self, key: str) -> bool:
        return self.last_key is not None and self.last_key == key

    def remember(self, key: str) -> None:
        self.last_key = key

    def reset(self) -> None:
        self.last_key = None


# =============================================================================
# Context enrichment
# =============================================================================

@dataclass
class EnrichmentResult:
    evidence_type: str
    status: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class ContextEnricher:
    """
    Evidence for the single retry. Only metadata about the already-bound
    pool is produced; candidates the host adds meanwhile are ignored.
    """

    def __init__(self, host, allowlist: Optional[Sequence[str]] = None):
        self.host = host
        self.allowlist = list(allowlist if allowlist is not None else settings.arbitration.evidence_allowlist)

    def enrich(
        self,
        evidence_type: Optional[str],
        pool: CandidatePool,
        snapshot: Optional[ActiveSnapshot] = None,
        recent_actions: Sequence[ResolvedAction] = (),
    ) -> EnrichmentResult:
        if evidence_type not in self.allowlist:
            return EnrichmentResult(str(evidence_type), "not_allowed")
        if pool.scope.kind in (ScopeKind.DASHBOARD, ScopeKind.WORKSPACE):
            return EnrichmentResult(evidence_type, "scope_not_available")

        if evidence_type == "widget_items":
            if pool.scope.kind != ScopeKind.WIDGET:
                return EnrichmentResult(evidence_type, "scope_not_available")
            return self._refresh_pool(evidence_type, pool)

        if evidence_type == "chat_options":
            if pool.scope.kind != ScopeKind.CHAT:
                return EnrichmentResult(evidence_type, "scope_not_available")
            return self._refresh_pool(evidence_type, pool)

        if evidence_type == "panel_list":
            open_ids = sorted(snapshot.open_widget_ids) if snapshot else []
            if not open_ids:
                return EnrichmentResult(evidence_type, "empty")
            return EnrichmentResult(evidence_type, "ok", {"panel_list": open_ids})

        if evidence_type == "recent_actions":
            trace = [
                {"candidate_id": a.candidate_id, "label": a.label, "scope": a.scope_key}
                for a in recent_actions
            ]
            if not trace:
                return EnrichmentResult(evidence_type, "empty")
            return EnrichmentResult(evidence_type, "ok", {"recent_actions": trace})

        return EnrichmentResult(evidence_type, "not_allowed")

    def _refresh_pool(self, evidence_type: str, pool: CandidatePool) -> EnrichmentResult:
        refreshed = self.host.get_candidate_pool(pool.scope)
        changed: Dict[str, Dict[str, Optional[str]]] = {}
        ignored = 0
        for candidate in refreshed:
            current = pool.get(candidate.id)
            if current is None or candidate.source_scope != pool.scope:
                ignored += 1
                continue
            if (candidate.label, candidate.sublabel) != (current.label, current.sublabel):
                changed[candidate.id] = {"label": candidate.label, "sublabel": candidate.sublabel}

        if ignored:
            logger.debug("Enrichment ignored new candidates", count=ignored, scope=pool.scope.key)
        if not changed:
            return EnrichmentResult(evidence_type, "empty")
        return EnrichmentResult(evidence_type, "ok", {evidence_type: changed})


# =============================================================================
# Loop
# =============================================================================

@dataclass
class ArbitrationOutcome:
    executed_id: Optional[str] = None
    fallback_reason: Optional[FallbackReason] = None
    suggested_id: Optional[str] = None
    need_more_info: bool = False
    llm_calls: int = 0
    phases: List[str] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.executed_id is not None


class BoundedArbitrationLoop:
    """
    Usage:
        loop = BoundedArbitrationLoop(host)
        outcome = loop.run("links panel", pool, timer=session.timer, turn=3)
        outcome.executed_id or outcome.fallback_reason
    """

    def __init__(
        self,
        host,
        enricher: Optional[ContextEnricher] = None,
        max_retries: Optional[int] = None,
        min_confidence_select: Optional[float] = None,
        min_confidence_ask: Optional[float] = None,
    ):
        self.host = host
        self.enricher = enricher or ContextEnricher(host)
        cfg = settings.arbitration
        self.max_retries = max_retries if max_retries is not None else cfg.max_retries
        self.min_confidence_select = (
            min_confidence_select if min_confidence_select is not None else cfg.min_confidence_select
        )
        self.min_confidence_ask = min_confidence_ask if min_confidence_ask is not None else cfg.min_confidence_ask
        self.contract_version = str(cfg.contract_version)

    def run(
        self,
        utterance: str,
        pool: CandidatePool,
        timer: LLMCallTimer,
        turn: int,
        rejected_ids: Sequence[str] = (),
        snapshot: Optional[ActiveSnapshot] = None,
        recent_actions: Sequence[ResolvedAction] = (),
        loop_guard: Optional[LoopGuard] = None,
        loop_guard_key: Optional[str] = None,
        current_turn: Optional[Callable[[], int]] = None,
        telemetry=None,
    ) -> ArbitrationOutcome:
        machine = ArbitrationStateMachine()
        outcome = ArbitrationOutcome()

        try:
            if not flags.llm_arbitration:
                raise LLMDisabled("llm arbitration disabled")
            if loop_guard is not None and loop_guard_key is not None and loop_guard.is_repeat(loop_guard_key):
                raise LLMLoopGuard("identical repeat")

            machine.advance(ArbitrationPhase.LLM_CALL_1)
            request = self._request(utterance, pool, rejected_ids, {}, attempt=1)
            first_fingerprint = compute_evidence_fingerprint(pool.candidates, pool.scope.key, {})
            response = self._call(request, timer, turn, current_turn, outcome, telemetry)

            if response.decision == "need_more_info":
                outcome.need_more_info = True
                raise LLMAbstain(response.reason or "need_more_info")

            if response.decision == "request_context":
                if self.max_retries < 1 or not flags.context_enrichment_retry:
                    raise RetryBudgetExhausted("retry disabled")
                machine.advance(ArbitrationPhase.ENRICH)
                enrichment = self.enricher.enrich(response.evidence_type, pool, snapshot, recent_actions)
                fingerprint = compute_evidence_fingerprint(pool.candidates, pool.scope.key, enrichment.metadata)
                if fingerprint == first_fingerprint:
                    if telemetry is not None:
                        telemetry.emit(
                            events.ARBITRATION_RETRY_SKIPPED, turn=turn,
                            evidence_type=enrichment.evidence_type, status=enrichment.status,
                        )
                    raise NoNewEvidence(fingerprint)

                machine.advance(ArbitrationPhase.LLM_CALL_2)
                request = self._request(utterance, pool, rejected_ids, enrichment.metadata, attempt=2)
                response = self._call(request, timer, turn, current_turn, outcome, telemetry)
                if response.decision != "select":
                    outcome.need_more_info = response.decision == "need_more_info"
                    raise RetryBudgetExhausted(f"second call returned {response.decision}")

            machine.advance(ArbitrationPhase.RESOLVED)
            outcome.executed_id = self._check_select(response, utterance, pool, outcome)
            machine.advance(ArbitrationPhase.TERMINAL_EXECUTE)

        except LLMError as e:
            self._fallback(machine, outcome, e.fallback_reason, str(e), turn, telemetry)
        except NoNewEvidence as e:
            self._fallback(machine, outcome, FallbackReason.NO_NEW_EVIDENCE, str(e), turn, telemetry)
        except RetryBudgetExhausted as e:
            self._fallback(machine, outcome, FallbackReason.RETRY_BUDGET_EXHAUSTED, str(e), turn, telemetry)

        outcome.phases = [p.value for p in machine.history]
        return outcome

    # =========================================================================
    # Steps
    # =========================================================================

    def _request(
        self,
        utterance: str,
        pool: CandidatePool,
        rejected_ids: Sequence[str],
        evidence: Dict[str, Any],
        attempt: int,
    ) -> ArbitrationRequest:
        return ArbitrationRequest(
            contract_version=self.contract_version,
            utterance=normalize_text(utterance),
            scope=pool.scope.key,
            candidates=[LLMCandidate(id=c.id, label=c.label, sublabel=c.sublabel) for c in pool],
            rejected_candidate_ids=[i for i in rejected_ids if i in pool],
            evidence=evidence,
            attempt=attempt,
        )

    def _call(
        self,
        request: ArbitrationRequest,
        timer: LLMCallTimer,
        turn: int,
        current_turn: Optional[Callable[[], int]],
        outcome: ArbitrationOutcome,
        telemetry,
    ) -> ArbitrationResponse:
        outcome.llm_calls += 1
        raw = timer.run(self.host.call_bounded_llm, request, turn_stamp=turn, current_turn=current_turn)
        try:
            response = raw if isinstance(raw, ArbitrationResponse) else ArbitrationResponse.model_validate(raw)
        except ValidationError as e:
            raise LLMTransportError(f"invalid response: {str(e)[:100]}") from e

        if telemetry is not None:
            telemetry.emit(
                events.ARBITRATION_CALL, turn=turn, attempt=request.attempt,
                decision=response.decision, confidence=response.confidence,
            )
        logger.debug(
            "Arbitration response",
            attempt=request.attempt,
            decision=response.decision,
            candidate_id=response.candidate_id,
            confidence=response.confidence,
        )
        return response

    def _check_select(
        self,
        response: ArbitrationResponse,
        utterance: str,
        pool: CandidatePool,
        outcome: ArbitrationOutcome,
    ) -> str:
        selected = response.candidate_id
        if selected not in pool:
            raise LLMSelectRejected(selected, "not_in_pool")

        if response.confidence < self.min_confidence_select:
            if response.confidence >= self.min_confidence_ask:
                outcome.suggested_id = selected
            raise LLMLowConfidence(response.confidence, self.min_confidence_select)

        outcome.suggested_id = selected
        confirmed = ConfidenceGate.canonical_tie_break(utterance, pool.candidates)
        if confirmed != selected:
            raise LLMSelectRejected(selected, "post_check_mismatch")
        return selected

    @staticmethod
    def _fallback(
        machine: ArbitrationStateMachine,
        outcome: ArbitrationOutcome,
        reason: FallbackReason,
        detail: str,
        turn: int,
        telemetry,
    ) -> None:
        machine.advance(ArbitrationPhase.TERMINAL_CLARIFY)
        outcome.fallback_reason = reason
        logger.info("Arbitration fallback", reason=reason.value, detail=detail, llm_calls=outcome.llm_calls)
        if telemetry is not None:
            telemetry.emit(
                events.ARBITRATION_FALLBACK, turn=turn,
                reason=reason.value, llm_calls=outcome.llm_calls,
            )
