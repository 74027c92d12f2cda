"""
ArbitrationEngine: one utterance in, one TurnResult out.

Pipeline for a turn:

    replay side channel (only while a scope-typo clarifier is pending)
    -> scope cue -> scope binding -> candidate pool
    -> confidence gate -> continuity tie-break -> bounded arbitration
    -> execute | clarify

Recoverable errors are caught at the stage that raised them and become a
clarifier. Programming errors (invariant breaks, malformed pools, illegal
transitions) propagate to the host.

Usage:
    engine = ArbitrationEngine(host)
    session = SessionContext("user-42")
    result = engine.resolve_turn("open links panel d", session)
    if result.kind == "execute":
        ...
"""

from typing import Optional, Sequence, Union

from command_arbiter.arbitration import BoundedArbitrationLoop, LoopGuard
from command_arbiter.candidate_pool import CandidatePoolBuilder
from command_arbiter.clarifier import ClarifierBuilder
from command_arbiter.classifier.confidence_gate import ConfidenceGate, GateMode
from command_arbiter.classifier.normalization import has_question_intent, is_command_or_selection
from command_arbiter.classifier.ordinals import OrdinalMode
from command_arbiter.classifier.scope_resolver import ScopeResolver
from command_arbiter.errors import (
    FallbackReason,
    InvariantViolation,
    PoolEmpty,
    ReplayDepthExceeded,
    ScopeAmbiguous,
    StaleReplay,
    UnhandledOptionType,
)
from command_arbiter.feature_flags import flags
from command_arbiter.fingerprint import compute_option_set_id, compute_snapshot_fingerprint
from command_arbiter.focus_latch import LatchChange, LatchState
from command_arbiter.logger import logger
from command_arbiter.models import (
    ActiveSnapshot,
    Candidate,
    CandidatePool,
    Clarify,
    ClarifierKind,
    ClarifierMessage,
    Execute,
    OptionType,
    PendingScopeTypoClarifier,
    ReplaySignal,
    Scope,
    ScopeCueResult,
    ScopeKind,
    TurnResult,
    TurnTrace,
)
from command_arbiter.replay import ReplayAction, ReplayResolver
from command_arbiter.session import SessionContext
from command_arbiter.settings import settings
from command_arbiter.telemetry import (
    CANDIDATE_EXECUTED,
    CLARIFIER_EMITTED,
    FOCUS_LATCH_CHANGED,
    GATE_DECISION,
    REPLAY_CLEARED,
    REPLAY_FIRED,
    SCOPE_CUE_RESOLVED,
    TIE_BREAK_ATTEMPTED,
    TURN_STARTED,
    TelemetryEmitter,
)


class ArbitrationEngine:
    """Public entry point. Holds collaborators only, never session state."""

    def __init__(
        self,
        host,
        gate: Optional[ConfidenceGate] = None,
        resolver: Optional[ScopeResolver] = None,
        clarifier: Optional[ClarifierBuilder] = None,
        arbitration: Optional[BoundedArbitrationLoop] = None,
        replay: Optional[ReplayResolver] = None,
        max_replay_depth: Optional[int] = None,
    ):
        self.host = host
        self.gate = gate or ConfidenceGate()
        self.resolver = resolver or ScopeResolver()
        self.clarifier = clarifier or ClarifierBuilder()
        self.arbitration = arbitration or BoundedArbitrationLoop(host)
        self.replay = replay or ReplayResolver(self.resolver)
        self.pools = CandidatePoolBuilder(host)
        self.max_replay_depth = max_replay_depth if max_replay_depth is not None else settings.replay.max_depth

    # =========================================================================
    # Public API
    # =========================================================================

    def resolve_turn(self, utterance: str, session: SessionContext) -> TurnResult:
        turn = session.next_turn()
        logger.set_session(session.session_id, turn=turn)
        telemetry = TelemetryEmitter(self.host.emit_telemetry, session.session_id)
        session.metrics.record_turn()
        trace = TurnTrace(turn=turn, utterance=utterance)
        telemetry.emit(TURN_STARTED, turn=turn, length=len(utterance))

        snapshot = self.host.get_active_snapshot()
        self._latch_changed(session.focus_latch.observe(snapshot, turn), session, telemetry)

        if session.pending_typo is not None:
            replayed = self._try_replay(utterance, session, snapshot, trace, telemetry)
            if replayed is not None:
                return replayed

        return self._route(utterance, session, snapshot, trace, telemetry, allow_pending=True)

    def on_session_boundary(self, session: SessionContext) -> None:
        """Reset continuity, latch, pending replay and loop guard; cancel any LLM call."""
        session.reset()
        session.metrics.reset()
        logger.info("Session boundary", session_id=session.session_id, turn=session.turn)

    def on_scope_opened(self, session: SessionContext, target_id: str) -> None:
        telemetry = TelemetryEmitter(self.host.emit_telemetry, session.session_id)
        change = session.focus_latch.re_anchor(target_id, session.turn)
        self._latch_changed(change, session, telemetry)

    def record_rejection(self, session: SessionContext, candidate_ids: Sequence[str]) -> None:
        session.continuity.record_rejection(candidate_ids)
        logger.debug("Candidates rejected", ids=list(candidate_ids))

    # =========================================================================
    # Replay side channel
    # =========================================================================

    def _try_replay(
        self,
        utterance: str,
        session: SessionContext,
        snapshot: ActiveSnapshot,
        trace: TurnTrace,
        telemetry: TelemetryEmitter,
    ) -> Optional[TurnResult]:
        try:
            outcome = self.replay.try_replay(utterance, session, compute_snapshot_fingerprint(snapshot))
        except StaleReplay as e:
            trace.add("replay:stale")
            telemetry.emit(REPLAY_CLEARED, turn=session.turn, cause=e.cause)
            return None

        trace.add(f"replay:{outcome.action.value}")

        if outcome.action == ReplayAction.REPLAY:
            if session.replay_depth >= self.max_replay_depth:
                raise ReplayDepthExceeded(session.replay_depth + 1, self.max_replay_depth)
            telemetry.emit(REPLAY_FIRED, turn=session.turn, cause=outcome.cause)
            session.metrics.record_replay()
            session.replay_depth += 1
            trace.replay_depth = session.replay_depth
            try:
                result = self._route(
                    outcome.replay_input, session, snapshot, trace, telemetry, allow_pending=False,
                )
            finally:
                session.replay_depth -= 1
            return ReplaySignal(replayed_input=outcome.replay_input, result=result, trace=trace)

        if outcome.action == ReplayAction.NARROW_RECLARIFY:
            message = self.clarifier.build_scopes(
                ClarifierKind.SCOPE_ONLY, outcome.suggested_scopes,
                reason=outcome.cause, continuity=session.continuity,
            )
            return self._clarify(message, session, trace, telemetry)

        telemetry.emit(REPLAY_CLEARED, turn=session.turn, cause=outcome.cause)
        return None

    # =========================================================================
    # Main pipeline
    # =========================================================================

    def _route(
        self,
        utterance: str,
        session: SessionContext,
        snapshot: ActiveSnapshot,
        trace: TurnTrace,
        telemetry: TelemetryEmitter,
        allow_pending: bool,
    ) -> Union[Execute, Clarify]:
        turn = session.turn
        cue = self.resolver.resolve(utterance)
        if cue.is_typo_tier:
            cue = self.resolver.resolve(utterance, label_phrases=self._implicit_labels(session, snapshot))
        trace.scope_cue = cue
        trace.add("scope")
        telemetry.emit(
            SCOPE_CUE_RESOLVED, turn=turn, scope=cue.scope.value,
            confidence=cue.confidence.value, conflict=cue.has_conflict,
        )

        if cue.has_conflict:
            message = self.clarifier.build_scopes(
                ClarifierKind.SCOPE_CONFLICT, cue.suggested_scopes,
                reason="scope_conflict", continuity=session.continuity,
            )
            return self._clarify(message, session, trace, telemetry)

        try:
            pool = self._bind_pool(cue, session, snapshot, trace)
        except ScopeAmbiguous as e:
            return self._scope_typo(e, cue, session, snapshot, trace, telemetry, allow_pending)
        except PoolEmpty as e:
            message = self.clarifier.build_pool_empty(Scope.parse(e.scope_key), continuity=session.continuity)
            return self._clarify(message, session, trace, telemetry)

        text = cue.stripped_input if cue.is_bound else utterance
        decision = self.gate.evaluate(text, pool.candidates, self._gate_mode(), self._ordinal_mode())
        trace.decision = decision
        trace.add("gate")
        telemetry.emit(
            GATE_DECISION, turn=turn, outcome=decision.outcome.value,
            confidence=decision.confidence.value, reason=decision.reason.value,
        )

        if decision.is_execute:
            return self._execute(pool.get(decision.matched_candidate_id), pool, decision.reason.value,
                                 session, trace, telemetry)

        if flags.continuity_tie_break:
            winner = self._tie_break(utterance, pool, session, trace, telemetry)
            if winner is not None:
                return self._execute(winner, pool, "continuity_deterministic", session, trace, telemetry)

        return self._arbitrate(text, utterance, pool, decision.matched_candidate_ids,
                               session, snapshot, trace, telemetry)

    def _bind_pool(
        self,
        cue: ScopeCueResult,
        session: SessionContext,
        snapshot: ActiveSnapshot,
        trace: TurnTrace,
    ) -> CandidatePool:
        if cue.is_typo_tier:
            raise ScopeAmbiguous(
                [s.value for s in cue.suggested_scopes],
                cue.scope.value if cue.scope != ScopeKind.NONE else None,
            )

        latch = session.focus_latch
        if cue.is_bound:
            if cue.scope == ScopeKind.CHAT:
                latch.suspend()
            else:
                latch.resume()

        latch_target = latch.implicit_target(snapshot) if flags.focus_latch else None
        binding = self.pools.bind_scope(cue, snapshot, latch_target, session.clarifier_for_turn())
        trace.bound_scope = binding.scope.key
        trace.add(f"bind:{binding.source.value}")

        pool = self.pools.build(binding)
        if not len(pool):
            raise PoolEmpty(binding.scope.key)
        return pool

    def _implicit_labels(self, session: SessionContext, snapshot: ActiveSnapshot) -> Sequence[str]:
        """Labels of the pool this turn would bind to without any cue."""
        latch_target = session.focus_latch.implicit_target(snapshot) if flags.focus_latch else None
        binding = self.pools.bind_scope(ScopeCueResult(), snapshot, latch_target, session.clarifier_for_turn())
        return [c.label for c in self.pools.build(binding)]

    def _tie_break(
        self,
        utterance: str,
        pool: CandidatePool,
        session: SessionContext,
        trace: TurnTrace,
        telemetry: TelemetryEmitter,
    ) -> Optional[Candidate]:
        result = session.continuity.try_tie_break(
            pool.candidates,
            compute_option_set_id(pool.scope.key, pool.ids()),
            pool.scope.key,
            is_command_or_selection(utterance),
            has_question_intent(utterance),
        )
        trace.tie_break_reason = result.reason
        trace.add("tie_break")
        telemetry.emit(TIE_BREAK_ATTEMPTED, turn=session.turn, resolved=result.resolved, reason=result.reason)
        if not result.resolved:
            return None
        session.metrics.record_tie_break()
        return pool.get(result.winner_id)

    def _arbitrate(
        self,
        text: str,
        utterance: str,
        pool: CandidatePool,
        matched_ids: Sequence[str],
        session: SessionContext,
        snapshot: ActiveSnapshot,
        trace: TurnTrace,
        telemetry: TelemetryEmitter,
    ) -> Union[Execute, Clarify]:
        active = session.clarifier_for_turn()
        guard_key = LoopGuard.key_for(text, pool.ids(), active.message_id if active else None)

        outcome = self.arbitration.run(
            text,
            pool,
            timer=session.timer,
            turn=session.turn,
            rejected_ids=session.continuity.recent_rejected_choice_ids,
            snapshot=snapshot,
            recent_actions=session.continuity.recent_action_trace,
            loop_guard=session.loop_guard,
            loop_guard_key=guard_key,
            current_turn=lambda: session.turn,
            telemetry=telemetry,
        )
        trace.llm_calls += outcome.llm_calls
        trace.add("arbitration")
        session.metrics.record_llm_calls(outcome.llm_calls)

        if outcome.resolved:
            return self._execute(pool.get(outcome.executed_id), pool, "llm_select", session, trace, telemetry)

        reason = outcome.fallback_reason or FallbackReason.ABSTAIN
        trace.fallback_reason = reason.value
        session.metrics.record_fallback(reason.value)

        # need_more_info: the tie-break gets one veto before the clarifier
        if outcome.need_more_info and flags.continuity_tie_break:
            winner = self._tie_break(utterance, pool, session, trace, telemetry)
            if winner is not None:
                return self._execute(winner, pool, "continuity_deterministic", session, trace, telemetry)

        preferred = ([outcome.suggested_id] if outcome.suggested_id else []) + list(matched_ids)
        message = self.clarifier.build_candidates(
            pool, ClarifierKind.LLM_FALLBACK, preferred_ids=preferred,
            reason=reason.value, continuity=session.continuity,
        )
        session.loop_guard.remember(LoopGuard.key_for(text, message.candidate_ids, message.message_id))
        return self._clarify(message, session, trace, telemetry)

    # =========================================================================
    # Terminal stages
    # =========================================================================

    def _execute(
        self,
        candidate: Candidate,
        pool: CandidatePool,
        reason: str,
        session: SessionContext,
        trace: TurnTrace,
        telemetry: TelemetryEmitter,
    ) -> Union[Execute, Clarify]:
        if candidate is None or candidate.id not in pool:
            raise InvariantViolation("execution target outside the bound pool")

        try:
            result = self.host.execute_candidate(candidate.id, pool.scope)
            ok, detail = result.ok, result.message
        except Exception as e:
            logger.exception("Host execution failed", candidate_id=candidate.id, scope=pool.scope.key)
            ok, detail = False, str(e)

        if not ok:
            logger.warning("Execution failed", candidate_id=candidate.id, detail=detail)
            message = self.clarifier.build_candidates(
                pool, ClarifierKind.EXECUTION_FAILED, reason="execution_failed",
                continuity=session.continuity, failed_label=candidate.label,
            )
            return self._clarify(message, session, trace, telemetry)

        session.continuity.record_resolution(candidate, pool.scope.key, session.turn)
        self._apply_focus_effect(candidate, session, telemetry)
        session.clear_clarifier()
        session.loop_guard.reset()
        session.metrics.record_execution(reason)
        trace.add("execute")
        telemetry.emit(CANDIDATE_EXECUTED, turn=session.turn, candidate_id=candidate.id,
                       scope=pool.scope.key, reason=reason)
        logger.info("Candidate executed", candidate_id=candidate.id, scope=pool.scope.key, reason=reason)
        return Execute(candidate_id=candidate.id, scope_key=pool.scope.key, reason=reason, trace=trace)

    def _apply_focus_effect(self, candidate: Candidate, session: SessionContext, telemetry: TelemetryEmitter) -> None:
        latch = session.focus_latch
        option_type = candidate.type
        if option_type == OptionType.PANEL:
            change = latch.re_anchor(candidate.ref.entity_id, session.turn)
        elif option_type == OptionType.WIDGET_ITEM:
            source = candidate.source_scope.target_id
            if source is None or (latch.state == LatchState.RESOLVED and latch.entity_id == source):
                change = None
            else:
                change = latch.re_anchor(source, session.turn)
        elif option_type in (OptionType.DASHBOARD_ITEM, OptionType.WORKSPACE_ITEM):
            change = latch.release()
        elif option_type == OptionType.CHAT_OPTION:
            change = None
        else:
            raise UnhandledOptionType(option_type)
        self._latch_changed(change, session, telemetry)

    def _clarify(
        self,
        message: ClarifierMessage,
        session: SessionContext,
        trace: TurnTrace,
        telemetry: TelemetryEmitter,
    ) -> Clarify:
        session.set_clarifier(message)
        session.metrics.record_clarifier(message.kind.value)
        trace.add(f"clarify:{message.kind.value}")
        telemetry.emit(
            CLARIFIER_EMITTED, turn=session.turn, kind=message.kind.value,
            options=len(message.options), reason=message.reason,
        )
        return Clarify(message=message, trace=trace)

    def _scope_typo(
        self,
        error: ScopeAmbiguous,
        cue: ScopeCueResult,
        session: SessionContext,
        snapshot: ActiveSnapshot,
        trace: TurnTrace,
        telemetry: TelemetryEmitter,
        allow_pending: bool,
    ) -> Clarify:
        message = self.clarifier.build_scopes(
            ClarifierKind.SCOPE_TYPO, cue.suggested_scopes,
            reason=cue.confidence.value, continuity=session.continuity,
        )
        if allow_pending and flags.scope_typo_replay:
            session.pending_typo = PendingScopeTypoClarifier(
                original_input_without_scope_cue=cue.stripped_input,
                suggested_scopes=list(cue.suggested_scopes),
                detected_scope=ScopeKind(error.detected_scope) if error.detected_scope else None,
                created_at_turn_count=session.turn,
                snapshot_fingerprint=compute_snapshot_fingerprint(snapshot),
                clarifier_message_id=message.message_id,
            )
        return self._clarify(message, session, trace, telemetry)

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _gate_mode() -> GateMode:
        if flags.strict_exact_mode:
            return GateMode.STRICT
        return GateMode(settings.gate.default_mode)

    @staticmethod
    def _ordinal_mode() -> OrdinalMode:
        return OrdinalMode.EMBEDDED if flags.embedded_ordinals else OrdinalMode.STRICT

    @staticmethod
    def _latch_changed(change: Optional[LatchChange], session: SessionContext, telemetry: TelemetryEmitter) -> None:
        if change is None:
            return
        telemetry.emit(
            FOCUS_LATCH_CHANGED, turn=session.turn, from_state=change.from_state.value,
            to_state=change.to_state.value, target=change.target_id,
        )

