"""
Deterministic classifiers.

Exports:
- ScopeResolver: explicit scope cues with typo-tolerant tiers
- ConfidenceGate, GateMode: match-strength gate (execute / llm / clarify)
- parse_ordinal, OrdinalMode: ordinal selection parser
- normalization helpers
"""

from .confidence_gate import ConfidenceGate, GateMode, assert_gate_invariant
from .normalization import (
    canonicalize_command_input,
    has_question_intent,
    is_command_or_selection,
    normalize_text,
)
from .ordinals import OrdinalMatch, OrdinalMode, parse_ordinal
from .scope_resolver import ScopeResolver, ScopeVocabulary, resolve_scope_cue

__all__ = [
    # Gate
    'ConfidenceGate',
    'GateMode',
    'assert_gate_invariant',
    # Scope
    'ScopeResolver',
    'ScopeVocabulary',
    'resolve_scope_cue',
    # Ordinals
    'OrdinalMatch',
    'OrdinalMode',
    'parse_ordinal',
    # Normalization
    'canonicalize_command_input',
    'has_question_intent',
    'is_command_or_selection',
    'normalize_text',
]
