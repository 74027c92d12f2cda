"""
ClarifierBuilder: "did you mean" messages with option pills.

Prompt format follows the option count:
- one option: "Did you mean X?"
- two options: inline "Did you mean X or Y?"
- more: numbered list

Options only ever come from the turn's bounded pool (or, for scope
clarifiers, from the closed scope vocabulary). Every emission is recorded in
the session's continuity store.
"""

import uuid
from typing import List, Optional, Sequence

from command_arbiter.fingerprint import compute_option_set_id
from command_arbiter.logger import logger
from command_arbiter.models import (
    Candidate,
    CandidatePool,
    ClarifierKind,
    ClarifierMessage,
    OptionPill,
    Scope,
    ScopeKind,
)
from command_arbiter.settings import settings


# Scope names as spoken in clarifier prompts
SCOPE_PHRASES = {
    ScopeKind.CHAT: "the chat options",
    ScopeKind.WIDGET: "the active widget",
    ScopeKind.DASHBOARD: "the active dashboard",
    ScopeKind.WORKSPACE: "the active workspace",
    ScopeKind.NONE: "this view",
}


def scope_option_label(scope: ScopeKind) -> str:
    return f"from {scope.value}"


class ClarifierBuilder:
    """
    Usage:
        builder = ClarifierBuilder()
        message = builder.build_candidates(pool, continuity=session.continuity)
        message.prompt   # "Did you mean Links Panel D or Links Panel E?"
    """

    def __init__(self, max_options: Optional[int] = None):
        self.max_options = max_options if max_options is not None else settings.clarifier.max_options

    def build(
        self,
        kind: ClarifierKind,
        pool: Optional[CandidatePool] = None,
        scopes: Sequence[ScopeKind] = (),
        **kwargs,
    ) -> ClarifierMessage:
        """Dispatch on kind: scope kinds take `scopes`, the rest take `pool`."""
        if kind in (ClarifierKind.SCOPE_TYPO, ClarifierKind.SCOPE_ONLY, ClarifierKind.SCOPE_CONFLICT):
            return self.build_scopes(kind, scopes, **kwargs)
        if pool is None:
            raise ValueError(f"{kind.value} clarifier needs a pool")
        if kind == ClarifierKind.POOL_EMPTY:
            return self.build_pool_empty(pool.scope, continuity=kwargs.get("continuity"))
        return self.build_candidates(pool, kind=kind, **kwargs)

    # =========================================================================
    # Candidate clarifiers
    # =========================================================================

    def build_candidates(
        self,
        pool: CandidatePool,
        kind: ClarifierKind = ClarifierKind.CANDIDATE,
        preferred_ids: Sequence[str] = (),
        reason: Optional[str] = None,
        continuity=None,
        failed_label: Optional[str] = None,
    ) -> ClarifierMessage:
        """
        Clarifier over the bound pool.

        Args:
            pool: Bounded pool; options never come from anywhere else
            kind: Clarifier kind
            preferred_ids: Ids offered first, in order (LLM pick, soft matches)
            reason: Fallback/decision reason for the trace
            continuity: ContinuityStore to record the emission in
            failed_label: Label of a candidate whose execution failed
        """
        ordered = self._order(pool, preferred_ids)[:self.max_options]
        options = tuple(
            OptionPill(
                index=i,
                label=c.label,
                candidate_id=c.id,
                sublabel=c.sublabel,
                type=c.type,
                scope=c.source_scope.kind,
            )
            for i, c in enumerate(ordered, 1)
        )

        prompt = self.format_prompt([self._option_label(c) for c in ordered])
        if failed_label:
            prompt = f"I couldn't open {failed_label}. {prompt}"

        message = ClarifierMessage(
            message_id=uuid.uuid4().hex,
            kind=kind,
            prompt=prompt,
            options=options,
            option_set_id=compute_option_set_id(pool.scope.key, [o.candidate_id for o in options]),
            scope_key=pool.scope.key,
            reason=reason,
        )
        return self._emit(message, continuity)

    @staticmethod
    def _order(pool: CandidatePool, preferred_ids: Sequence[str]) -> List[Candidate]:
        ordered: List[Candidate] = []
        for candidate_id in preferred_ids:
            candidate = pool.get(candidate_id)
            if candidate is not None and candidate not in ordered:
                ordered.append(candidate)
        ordered.extend(c for c in pool if c not in ordered)
        return ordered

    # =========================================================================
    # Scope clarifiers
    # =========================================================================

    def build_scopes(
        self,
        kind: ClarifierKind,
        scopes: Sequence[ScopeKind],
        reason: Optional[str] = None,
        continuity=None,
    ) -> ClarifierMessage:
        """Scope typo / scope-only / scope conflict clarifier."""
        scopes = [s for s in scopes if s != ScopeKind.NONE][:self.max_options]
        options = tuple(
            OptionPill(index=i, label=scope_option_label(s), scope=s)
            for i, s in enumerate(scopes, 1)
        )
        labels = [o.label for o in options]

        if kind == ClarifierKind.SCOPE_CONFLICT:
            prompt = "You mentioned more than one place. Which one: " + " or ".join(labels) + "?"
        elif labels:
            prompt = "Did you mean: " + " or ".join(labels) + "?"
        else:
            prompt = "Which place did you mean?"

        message = ClarifierMessage(
            message_id=uuid.uuid4().hex,
            kind=kind,
            prompt=prompt,
            options=options,
            option_set_id=compute_option_set_id("scope", [s.value for s in scopes]),
            reason=reason,
        )
        return self._emit(message, continuity)

    def build_pool_empty(self, scope: Scope, continuity=None) -> ClarifierMessage:
        message = ClarifierMessage(
            message_id=uuid.uuid4().hex,
            kind=ClarifierKind.POOL_EMPTY,
            prompt=f"No items found in {SCOPE_PHRASES[scope.kind]}.",
            option_set_id=None,
            scope_key=scope.key,
            reason="pool_empty",
        )
        return self._emit(message, continuity)

    # =========================================================================
    # Formatting
    # =========================================================================

    def format_prompt(self, labels: Sequence[str]) -> str:
        if not labels:
            return "What would you like to open?"
        if len(labels) == 1:
            return f"Did you mean {labels[0]}?"
        if len(labels) == 2:
            return self._format_inline(labels)
        return self._format_numbered(labels)

    @staticmethod
    def _format_inline(labels: Sequence[str]) -> str:
        return f"Did you mean {labels[0]} or {labels[1]}?"

    @staticmethod
    def _format_numbered(labels: Sequence[str]) -> str:
        lines = ["Which one did you mean?"]
        for i, label in enumerate(labels, 1):
            lines.append(f"{i}. {label}")
        return "\n".join(lines)

    @staticmethod
    def _option_label(candidate: Candidate) -> str:
        if candidate.sublabel:
            return f"{candidate.label} ({candidate.sublabel})"
        return candidate.label

    @staticmethod
    def _emit(message: ClarifierMessage, continuity) -> ClarifierMessage:
        if continuity is not None:
            continuity.record_clarifier(message.option_set_id, message.scope_key, message.kind)
        logger.debug(
            "Clarifier built",
            kind=message.kind.value,
            options=len(message.options),
            option_set_id=message.option_set_id,
            reason=message.reason,
        )
        return message
