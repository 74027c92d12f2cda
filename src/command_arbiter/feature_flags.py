"""
Feature flags for the command arbiter.

Gate each arbitration lane so any of them can be switched off without a deploy.

Usage:
    from command_arbiter.feature_flags import flags

    if flags.llm_arbitration:
        ...

    if flags.is_enabled("scope_typo_replay"):
        ...
"""

import os
from typing import Dict, List, Set

from command_arbiter.settings import settings


class FeatureFlags:
    """
    Feature flag registry.

    Resolution order:
    - DEFAULTS
    - settings.yaml `feature_flags` section
    - FF_<NAME> environment variables
    - runtime overrides (tests, admin tooling)
    """

    DEFAULTS: Dict[str, bool] = {
        # Confidence gate
        "strict_exact_mode": False,        # Only literal exact matches auto-execute
        "embedded_ordinals": False,        # Ordinals extracted from longer phrases

        # Deterministic lanes
        "continuity_tie_break": True,      # Tie-break from continuity state
        "focus_latch": True,               # Implicit scope from the focus latch

        # LLM lanes
        "llm_arbitration": True,           # Bounded LLM consultation
        "context_enrichment_retry": True,  # One evidence-justified retry

        # Replay side channel
        "scope_typo_replay": True,         # Remember scope typo commands for one turn
    }

    GROUPS: Dict[str, List[str]] = {
        "llm": ["llm_arbitration", "context_enrichment_retry"],
        "deterministic": ["continuity_tie_break", "focus_latch"],
        "strict": ["strict_exact_mode"],
        "safe": ["continuity_tie_break", "focus_latch", "scope_typo_replay"],
    }

    def __init__(self):
        self._flags: Dict[str, bool] = {}
        self._overrides: Dict[str, bool] = {}
        self._load_flags()

    def _load_flags(self) -> None:
        """Load flags from settings and environment"""
        self._flags = self.DEFAULTS.copy()

        settings_flags = settings.get_nested("feature_flags", {})
        if isinstance(settings_flags, dict):
            for key, value in settings_flags.items():
                if isinstance(value, bool):
                    self._flags[key] = value

        for key in self._flags:
            env_key = f"FF_{key.upper()}"
            env_value = os.environ.get(env_key)
            if env_value is not None:
                self._flags[key] = env_value.lower() in ("true", "1", "yes", "on")

    def reload(self) -> None:
        """Reload flags from settings"""
        self._overrides.clear()
        self._load_flags()

    def is_enabled(self, flag: str) -> bool:
        if flag in self._overrides:
            return self._overrides[flag]
        return self._flags.get(flag, False)

    def set_override(self, flag: str, value: bool) -> None:
        """
        Set a runtime override.

        Args:
            flag: Flag name
            value: Value
        """
        self._overrides[flag] = value

    def clear_override(self, flag: str) -> None:
        self._overrides.pop(flag, None)

    def clear_all_overrides(self) -> None:
        self._overrides.clear()

    def get_all_flags(self) -> Dict[str, bool]:
        result = self._flags.copy()
        result.update(self._overrides)
        return result

    def get_enabled_flags(self) -> Set[str]:
        return {k for k, v in self.get_all_flags().items() if v}

    def is_group_enabled(self, group: str, require_all: bool = False) -> bool:
        flags_in_group = self.GROUPS.get(group, [])
        if not flags_in_group:
            return False

        if require_all:
            return all(self.is_enabled(f) for f in flags_in_group)
        return any(self.is_enabled(f) for f in flags_in_group)

    def enable_group(self, group: str) -> None:
        for flag in self.GROUPS.get(group, []):
            self.set_override(flag, True)

    def disable_group(self, group: str) -> None:
        for flag in self.GROUPS.get(group, []):
            self.set_override(flag, False)

    # =========================================================================
    # Typed properties
    # =========================================================================

    @property
    def strict_exact_mode(self) -> bool:
        """Disable the exact_canonical tier"""
        return self.is_enabled("strict_exact_mode")

    @property
    def embedded_ordinals(self) -> bool:
        return self.is_enabled("embedded_ordinals")

    @property
    def continuity_tie_break(self) -> bool:
        return self.is_enabled("continuity_tie_break")

    @property
    def focus_latch(self) -> bool:
        return self.is_enabled("focus_latch")

    @property
    def llm_arbitration(self) -> bool:
        return self.is_enabled("llm_arbitration")

    @property
    def context_enrichment_retry(self) -> bool:
        return self.is_enabled("context_enrichment_retry")

    @property
    def scope_typo_replay(self) -> bool:
        return self.is_enabled("scope_typo_replay")


# Singleton
flags = FeatureFlags()
