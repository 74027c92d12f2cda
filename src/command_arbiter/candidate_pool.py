"""
CandidatePoolBuilder: binds the turn to one scope and loads its pool.

Binding order:
1. explicit high-confidence scope cue
2. the active clarifier's scope (restricted to the clarifier's options)
3. the focus latch target
4. the live snapshot's active widget
5. chat

A pool always comes from exactly one source. Host candidates that carry a
different source scope are dropped (and logged), never mixed in.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from command_arbiter.logger import logger
from command_arbiter.models import (
    CHAT_SCOPE,
    DASHBOARD_SCOPE,
    WORKSPACE_SCOPE,
    ActiveSnapshot,
    Candidate,
    CandidatePool,
    ClarifierMessage,
    Scope,
    ScopeCueResult,
    ScopeKind,
)


class BindingSource(str, Enum):
    EXPLICIT_CUE = "explicit_cue"
    ACTIVE_CLARIFIER = "active_clarifier"
    FOCUS_LATCH = "focus_latch"
    SNAPSHOT = "snapshot"
    DEFAULT_CHAT = "default_chat"


@dataclass
class ScopeBinding:
    scope: Scope
    source: BindingSource
    # Candidate ids the pool is restricted to (active clarifier only)
    restrict_to: Optional[List[str]] = None


class CandidatePoolBuilder:
    """
    Usage:
        builder = CandidatePoolBuilder(host)
        binding = builder.bind_scope(cue, snapshot, latch_target, clarifier)
        pool = builder.build(binding)
    """

    def __init__(self, host):
        self.host = host

    # =========================================================================
    # Binding
    # =========================================================================

    def bind_scope(
        self,
        cue: ScopeCueResult,
        snapshot: ActiveSnapshot,
        latch_target: Optional[str] = None,
        active_clarifier: Optional[ClarifierMessage] = None,
    ) -> ScopeBinding:
        if cue.is_bound:
            return ScopeBinding(self._scope_for_cue(cue, snapshot, latch_target), BindingSource.EXPLICIT_CUE)

        if active_clarifier is not None and active_clarifier.scope_key and active_clarifier.candidate_ids:
            return ScopeBinding(
                Scope.parse(active_clarifier.scope_key),
                BindingSource.ACTIVE_CLARIFIER,
                restrict_to=active_clarifier.candidate_ids,
            )

        if latch_target:
            return ScopeBinding(Scope.widget(latch_target), BindingSource.FOCUS_LATCH)

        if snapshot.active_widget_id:
            return ScopeBinding(Scope.widget(snapshot.active_widget_id), BindingSource.SNAPSHOT)

        return ScopeBinding(CHAT_SCOPE, BindingSource.DEFAULT_CHAT)

    def _scope_for_cue(self, cue: ScopeCueResult, snapshot: ActiveSnapshot, latch_target: Optional[str]) -> Scope:
        if cue.scope == ScopeKind.CHAT:
            return CHAT_SCOPE
        if cue.scope == ScopeKind.DASHBOARD:
            return DASHBOARD_SCOPE
        if cue.scope == ScopeKind.WORKSPACE:
            return WORKSPACE_SCOPE

        named = self._match_named_widget(cue.named_hint, snapshot.open_widget_ids)
        target = named or latch_target or snapshot.active_widget_id
        if target is None and snapshot.open_widget_ids:
            target = snapshot.open_widget_ids[0]
        # No widget open at all: an empty widget pool, answered by a pool-empty clarifier
        return Scope(ScopeKind.WIDGET, target)

    @staticmethod
    def _match_named_widget(named_hint: Optional[str], open_widget_ids: Sequence[str]) -> Optional[str]:
        if not named_hint:
            return None
        wanted = named_hint.replace(" ", "").replace("_", "").replace("-", "")
        for widget_id in open_widget_ids:
            flat = widget_id.lower().replace(" ", "").replace("_", "").replace("-", "")
            if flat == wanted:
                return widget_id
        return None

    # =========================================================================
    # Pool
    # =========================================================================

    def build(self, binding: ScopeBinding) -> CandidatePool:
        scope = binding.scope
        if scope.kind == ScopeKind.WIDGET and scope.target_id is None:
            return CandidatePool.empty(scope)

        raw = self.host.get_candidate_pool(scope)
        pool = CandidatePool(scope, self._filter(scope, raw))
        if binding.restrict_to is not None:
            pool = pool.restricted_to(binding.restrict_to)

        logger.debug(
            "Candidate pool built",
            scope=scope.key,
            source=binding.source.value,
            size=len(pool),
        )
        return pool

    @staticmethod
    def _filter(scope: Scope, raw: Sequence[Candidate]) -> List[Candidate]:
        kept: List[Candidate] = []
        seen = set()
        for candidate in raw:
            if candidate.source_scope != scope:
                logger.warning(
                    "Dropping foreign-scope candidate",
                    candidate_id=candidate.id,
                    candidate_scope=candidate.source_scope.key,
                    pool_scope=scope.key,
                )
                continue
            if candidate.id in seen:
                logger.warning("Dropping duplicate candidate", candidate_id=candidate.id, pool_scope=scope.key)
                continue
            seen.add(candidate.id)
            kept.append(candidate)
        return kept
