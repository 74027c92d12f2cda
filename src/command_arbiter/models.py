"""
Data model for the command arbiter.

Candidates, pools, scope cues, gate decisions, session-scoped records and the
turn result union. Everything here is plain data: no I/O, no logging.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from command_arbiter.errors import (
    DuplicateCandidateError,
    InvariantViolation,
    MixedScopePoolError,
)


# =============================================================================
# Enums
# =============================================================================

class ScopeKind(str, Enum):
    CHAT = "chat"
    WIDGET = "widget"
    DASHBOARD = "dashboard"
    WORKSPACE = "workspace"
    NONE = "none"


class ScopeConfidence(str, Enum):
    """How firmly a scope cue was recognised."""
    HIGH = "high"
    LOW_TYPO = "low_typo"
    SCOPE_UNCERTAIN = "scope_uncertain"
    NONE = "none"


class Outcome(str, Enum):
    EXECUTE = "execute"
    LLM = "llm"
    CLARIFY = "clarify"


class GateConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class GateReason(str, Enum):
    """Which tier of the confidence gate produced a decision."""
    EXACT_LABEL = "exact_label"
    EXACT_SUBLABEL = "exact_sublabel"
    EXACT_CANONICAL = "exact_canonical"
    CANONICAL_BLOCKED_STRICT = "canonical_blocked_strict"
    AMBIGUOUS_EXACT = "ambiguous_exact"
    ORDINAL = "ordinal"
    SOFT_CONTAINS = "soft_contains"
    SOFT_STARTS_WITH = "soft_starts_with"
    SOFT_LABEL_CONTAINS = "soft_label_contains"
    MULTI_SOFT_MATCH = "multi_soft_match"
    NO_MATCH = "no_match"
    EMPTY_POOL = "empty_pool"


class OptionType(str, Enum):
    """Closed set of selectable entity kinds."""
    CHAT_OPTION = "chat_option"
    WIDGET_ITEM = "widget_item"
    PANEL = "panel"
    DASHBOARD_ITEM = "dashboard_item"
    WORKSPACE_ITEM = "workspace_item"


# =============================================================================
# Scope and identity
# =============================================================================

@dataclass(frozen=True)
class Scope:
    """A bound candidate source: chat, widget:<id>, dashboard or workspace."""
    kind: ScopeKind
    target_id: Optional[str] = None

    @property
    def key(self) -> str:
        if self.kind == ScopeKind.WIDGET and self.target_id:
            return f"widget:{self.target_id}"
        return self.kind.value

    @classmethod
    def parse(cls, key: str) -> "Scope":
        """Parse 'chat', 'dashboard', 'widget:<id>'..."""
        if ":" in key:
            kind, target = key.split(":", 1)
            return cls(ScopeKind(kind), target or None)
        return cls(ScopeKind(key))

    @classmethod
    def widget(cls, widget_id: str) -> "Scope":
        return cls(ScopeKind.WIDGET, widget_id)

    def __str__(self) -> str:
        return self.key


CHAT_SCOPE = Scope(ScopeKind.CHAT)
DASHBOARD_SCOPE = Scope(ScopeKind.DASHBOARD)
WORKSPACE_SCOPE = Scope(ScopeKind.WORKSPACE)
NO_SCOPE = Scope(ScopeKind.NONE)


@dataclass(frozen=True)
class EntityRef:
    """Typed identifier of the entity behind a candidate."""
    scope_id: str
    entity_id: str


# =============================================================================
# Candidates
# =============================================================================

@dataclass(frozen=True)
class Candidate:
    """One selectable entity. Immutable for the duration of a turn."""
    id: str
    label: str
    type: OptionType
    source_scope: Scope
    sublabel: Optional[str] = None
    ref: Optional[EntityRef] = None

    def __post_init__(self):
        if self.ref is None:
            object.__setattr__(self, "ref", EntityRef(self.source_scope.key, self.id))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "type": self.type.value,
            "source_scope": self.source_scope.key,
            "sublabel": self.sublabel,
            "ref": {"scope_id": self.ref.scope_id, "entity_id": self.ref.entity_id},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Candidate":
        ref = data.get("ref")
        return cls(
            id=data["id"],
            label=data["label"],
            type=OptionType(data["type"]),
            source_scope=Scope.parse(data["source_scope"]),
            sublabel=data.get("sublabel"),
            ref=EntityRef(**ref) if ref else None,
        )


class CandidatePool:
    """
    Ordered, single-source set of candidates for one turn.

    A pool never mixes sources: every candidate must carry the pool's scope.
    """

    def __init__(self, scope: Scope, candidates: Sequence[Candidate] = ()):
        seen = set()
        for candidate in candidates:
            if candidate.source_scope != scope:
                raise MixedScopePoolError(scope.key, candidate.id, candidate.source_scope.key)
            if candidate.id in seen:
                raise DuplicateCandidateError(candidate.id)
            seen.add(candidate.id)
        self.scope = scope
        self._candidates: Tuple[Candidate, ...] = tuple(candidates)
        self._by_id = {c.id: c for c in self._candidates}

    @classmethod
    def empty(cls, scope: Scope) -> "CandidatePool":
        return cls(scope, ())

    @property
    def candidates(self) -> Tuple[Candidate, ...]:
        return self._candidates

    def __iter__(self) -> Iterator[Candidate]:
        return iter(self._candidates)

    def __len__(self) -> int:
        return len(self._candidates)

    def __contains__(self, candidate_id: object) -> bool:
        return candidate_id in self._by_id

    def __repr__(self) -> str:
        return f"CandidatePool(scope={self.scope.key!r}, ids={self.ids()!r})"

    def ids(self) -> List[str]:
        return [c.id for c in self._candidates]

    def labels(self) -> List[str]:
        return [c.label for c in self._candidates]

    def get(self, candidate_id: str) -> Optional[Candidate]:
        return self._by_id.get(candidate_id)

    def index_of(self, candidate_id: str) -> int:
        return self.ids().index(candidate_id)

    def restricted_to(self, candidate_ids: Sequence[str]) -> "CandidatePool":
        """Subset of this pool in the order of `candidate_ids`; unknown ids are dropped."""
        picked: List[Candidate] = []
        for candidate_id in candidate_ids:
            candidate = self._by_id.get(candidate_id)
            if candidate is not None and candidate not in picked:
                picked.append(candidate)
        return CandidatePool(self.scope, picked)

    def without(self, candidate_ids: Sequence[str]) -> "CandidatePool":
        excluded = set(candidate_ids)
        return CandidatePool(self.scope, [c for c in self._candidates if c.id not in excluded])


# =============================================================================
# Host snapshot
# =============================================================================

@dataclass
class ActiveSnapshot:
    """What the host UI reports as active right now."""
    active_widget_id: Optional[str] = None
    active_panel_id: Optional[str] = None
    active_dashboard_id: Optional[str] = None
    active_workspace_id: Optional[str] = None
    open_widget_ids: List[str] = field(default_factory=list)

    def has_target(self, target_id: str) -> bool:
        return (
            target_id in self.open_widget_ids
            or target_id in (self.active_widget_id, self.active_panel_id)
        )


@dataclass
class ExecutionResult:
    ok: bool = True
    message: Optional[str] = None


# =============================================================================
# Scope resolver / gate outputs
# =============================================================================

@dataclass
class ScopeCueResult:
    """Scope cue parsed from one utterance. Never persisted."""
    scope: ScopeKind = ScopeKind.NONE
    confidence: ScopeConfidence = ScopeConfidence.NONE
    stripped_input: str = ""
    named_hint: Optional[str] = None
    has_conflict: bool = False
    cue_text: Optional[str] = None
    suggested_scopes: List[ScopeKind] = field(default_factory=list)

    @property
    def is_bound(self) -> bool:
        return self.confidence == ScopeConfidence.HIGH and self.scope != ScopeKind.NONE

    @property
    def is_typo_tier(self) -> bool:
        return self.confidence in (ScopeConfidence.LOW_TYPO, ScopeConfidence.SCOPE_UNCERTAIN)


@dataclass(frozen=True)
class DeterministicDecision:
    """
    Output of the confidence gate.

    Construction enforces outcome == EXECUTE <=> confidence == HIGH.
    """
    outcome: Outcome
    confidence: GateConfidence
    reason: GateReason
    matched_candidate_id: Optional[str] = None
    matched_candidate_ids: Tuple[str, ...] = ()

    def __post_init__(self):
        executes = self.outcome == Outcome.EXECUTE
        high = self.confidence == GateConfidence.HIGH
        if executes != high:
            raise InvariantViolation(
                f"outcome={self.outcome.value} with confidence={self.confidence.value}"
            )
        if executes and self.matched_candidate_id is None:
            raise InvariantViolation("execute decision without a matched candidate")

    @property
    def is_execute(self) -> bool:
        return self.outcome == Outcome.EXECUTE


# =============================================================================
# Session-scoped records
# =============================================================================

@dataclass(frozen=True)
class ResolvedAction:
    candidate_id: str
    label: str
    scope_key: str
    option_set_id: Optional[str]
    turn: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "label": self.label,
            "scope_key": self.scope_key,
            "option_set_id": self.option_set_id,
            "turn": self.turn,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResolvedAction":
        return cls(**data)


@dataclass
class PendingScopeTypoClarifier:
    """One-turn memory of a command whose scope cue looked like a typo."""
    original_input_without_scope_cue: str
    suggested_scopes: List[ScopeKind]
    detected_scope: Optional[ScopeKind]
    created_at_turn_count: int
    snapshot_fingerprint: str
    clarifier_message_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_input_without_scope_cue": self.original_input_without_scope_cue,
            "suggested_scopes": [s.value for s in self.suggested_scopes],
            "detected_scope": self.detected_scope.value if self.detected_scope else None,
            "created_at_turn_count": self.created_at_turn_count,
            "snapshot_fingerprint": self.snapshot_fingerprint,
            "clarifier_message_id": self.clarifier_message_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingScopeTypoClarifier":
        detected = data.get("detected_scope")
        return cls(
            original_input_without_scope_cue=data["original_input_without_scope_cue"],
            suggested_scopes=[ScopeKind(s) for s in data.get("suggested_scopes", [])],
            detected_scope=ScopeKind(detected) if detected else None,
            created_at_turn_count=data["created_at_turn_count"],
            snapshot_fingerprint=data["snapshot_fingerprint"],
            clarifier_message_id=data["clarifier_message_id"],
        )


# =============================================================================
# Clarifier output
# =============================================================================

class ClarifierKind(str, Enum):
    CANDIDATE = "candidate"
    SCOPE_TYPO = "scope_typo"
    SCOPE_ONLY = "scope_only"
    SCOPE_CONFLICT = "scope_conflict"
    POOL_EMPTY = "pool_empty"
    LLM_FALLBACK = "llm_fallback"
    EXECUTION_FAILED = "execution_failed"


@dataclass(frozen=True)
class OptionPill:
    """A selectable option shown under a clarifier prompt."""
    index: int
    label: str
    candidate_id: Optional[str] = None
    sublabel: Optional[str] = None
    type: Optional[OptionType] = None
    scope: Optional[ScopeKind] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "label": self.label,
            "candidate_id": self.candidate_id,
            "sublabel": self.sublabel,
            "type": self.type.value if self.type else None,
            "scope": self.scope.value if self.scope else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OptionPill":
        return cls(
            index=data["index"],
            label=data["label"],
            candidate_id=data.get("candidate_id"),
            sublabel=data.get("sublabel"),
            type=OptionType(data["type"]) if data.get("type") else None,
            scope=ScopeKind(data["scope"]) if data.get("scope") else None,
        )


@dataclass(frozen=True)
class ClarifierMessage:
    message_id: str
    kind: ClarifierKind
    prompt: str
    options: Tuple[OptionPill, ...] = ()
    option_set_id: Optional[str] = None
    scope_key: Optional[str] = None
    reason: Optional[str] = None

    @property
    def candidate_ids(self) -> List[str]:
        return [o.candidate_id for o in self.options if o.candidate_id is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "kind": self.kind.value,
            "prompt": self.prompt,
            "options": [o.to_dict() for o in self.options],
            "option_set_id": self.option_set_id,
            "scope_key": self.scope_key,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClarifierMessage":
        return cls(
            message_id=data["message_id"],
            kind=ClarifierKind(data["kind"]),
            prompt=data["prompt"],
            options=tuple(OptionPill.from_dict(o) for o in data.get("options", [])),
            option_set_id=data.get("option_set_id"),
            scope_key=data.get("scope_key"),
            reason=data.get("reason"),
        )


# =============================================================================
# Turn result
# =============================================================================

@dataclass
class TurnTrace:
    """Stages visited during one resolve_turn call."""
    turn: int
    utterance: str
    stages: List[str] = field(default_factory=list)
    scope_cue: Optional[ScopeCueResult] = None
    bound_scope: Optional[str] = None
    decision: Optional[DeterministicDecision] = None
    tie_break_reason: Optional[str] = None
    llm_calls: int = 0
    fallback_reason: Optional[str] = None
    replay_depth: int = 0

    def add(self, stage: str) -> None:
        self.stages.append(stage)


@dataclass
class Execute:
    candidate_id: str
    scope_key: str
    reason: str
    trace: Optional[TurnTrace] = None
    kind: str = "execute"


@dataclass
class Clarify:
    message: ClarifierMessage
    trace: Optional[TurnTrace] = None
    kind: str = "clarify"


@dataclass
class ReplaySignal:
    """The engine replayed a remembered command; `result` is the replay's outcome."""
    replayed_input: str
    result: Union[Execute, Clarify]
    trace: Optional[TurnTrace] = None
    kind: str = "replay"


TurnResult = Union[Execute, Clarify, ReplaySignal]
