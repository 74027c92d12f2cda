"""
Settings loader for settings.yaml

Usage:
    from command_arbiter.settings import settings

    max_typo = settings.scope.typo_max_distance
    timeout = settings.get_nested("llm.timeout_ms", 800)
"""

import yaml
from pathlib import Path
from typing import List, Any


# Settings file path
SETTINGS_FILE = Path(__file__).parent / "settings.yaml"

# Defaults (used when a key is missing from the YAML file)
DEFAULTS = {
    "scope": {
        "typo_max_distance": 1,
        "uncertain_max_distance": 2,
        "min_uncertain_token_length": 3,
        "triggers": ["from", "in"],
        "fillers": ["the", "active", "current", "this", "my"],
        "vocabulary": {
            "chat": ["chat", "chats", "options", "option"],
            "widget": ["widget", "widgets", "panel", "panels"],
            "dashboard": ["dashboard", "dashboards"],
            "workspace": ["workspace", "workspaces"],
        },
        "compound_cues": {
            "chat": ["back to options", "from earlier options", "from chat options"],
            "widget": ["from recent"],
            "dashboard": [],
            "workspace": [],
        },
    },
    "gate": {
        "default_mode": "standard",
        "soft_min_input_length": 3,
    },
    "continuity": {
        "ring_capacity": 5,
    },
    "focus_latch": {
        "pending_expiry_turns": 2,
    },
    "replay": {
        "ttl_turns": 1,
        "max_depth": 1,
        "affirmations": [
            "yes", "yeah", "yep", "ok", "okay", "sure", "correct", "right",
            "please do", "yes please",
        ],
    },
    "arbitration": {
        "max_retries": 1,
        "min_confidence_select": 0.6,
        "min_confidence_ask": 0.4,
        "evidence_allowlist": ["widget_items", "panel_list", "chat_options", "recent_actions"],
        "contract_version": "1",
    },
    "llm": {
        "model": "gpt-4o-mini",
        "base_url": "https://api.openai.com/v1",
        "timeout_ms": 800,
        "api_key_env": "OPENAI_API_KEY",
        "max_tokens": 256,
    },
    "clarifier": {
        "max_options": 5,
    },
    "logging": {
        "level": "INFO",
        "log_llm_requests": False,
    },
    "feature_flags": {},
}


class DotDict(dict):
    """Dict with attribute access: d.key instead of d['key']"""

    def __getattr__(self, key: str) -> Any:
        try:
            value = self[key]
            if isinstance(value, dict):
                return DotDict(value)
            return value
        except KeyError:
            raise AttributeError(f"Setting '{key}' not found")

    def __setattr__(self, key: str, value: Any) -> None:
        self[key] = value

    def get_nested(self, path: str, default: Any = None) -> Any:
        """Get a value by dotted path: 'llm.model'"""
        keys = path.split('.')
        value = self
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts (override wins)"""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_settings(filepath: Path = None) -> DotDict:
    """
    Load settings from a YAML file.

    Priority:
    1. Values from the YAML file (highest)
    2. DEFAULTS

    Args:
        filepath: Path to the settings file (settings.yaml by default)

    Returns:
        DotDict with settings
    """
    filepath = filepath or SETTINGS_FILE

    config = _deep_merge({}, DEFAULTS)

    if filepath.exists():
        with open(filepath, "r", encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        config = _deep_merge(config, yaml_config)

    return DotDict(config)


def validate_settings(settings: DotDict) -> List[str]:
    """
    Validate settings.

    Returns:
        List of error strings (empty when everything is OK)
    """
    errors = []

    # Scope tolerance tiers
    typo = settings.scope.typo_max_distance
    uncertain = settings.scope.uncertain_max_distance
    if typo < 0:
        errors.append("scope.typo_max_distance must be >= 0")
    if uncertain < typo:
        errors.append("scope.uncertain_max_distance must be >= scope.typo_max_distance")

    if settings.continuity.ring_capacity < 1:
        errors.append("continuity.ring_capacity must be >= 1")
    if settings.focus_latch.pending_expiry_turns < 1:
        errors.append("focus_latch.pending_expiry_turns must be >= 1")
    if settings.replay.ttl_turns < 1:
        errors.append("replay.ttl_turns must be >= 1")
    if settings.replay.max_depth < 1:
        errors.append("replay.max_depth must be >= 1")

    # Arbitration
    if settings.arbitration.max_retries not in (0, 1):
        errors.append("arbitration.max_retries must be 0 or 1")
    select = settings.arbitration.min_confidence_select
    ask = settings.arbitration.min_confidence_ask
    if not (0 <= ask <= select <= 1):
        errors.append("arbitration thresholds must satisfy 0 <= min_confidence_ask <= min_confidence_select <= 1")

    # LLM
    if not settings.llm.model:
        errors.append("llm.model is not set")
    if settings.llm.timeout_ms <= 0:
        errors.append("llm.timeout_ms must be > 0")

    if settings.clarifier.max_options < 1:
        errors.append("clarifier.max_options must be >= 1")

    return errors


# Global settings instance (lazy)
_settings = None


def get_settings() -> DotDict:
    """Get global settings (singleton)"""
    global _settings
    if _settings is None:
        _settings = load_settings()
        errors = validate_settings(_settings)
        if errors:
            raise ValueError("Invalid settings: " + "; ".join(errors))
    return _settings


def reload_settings() -> DotDict:
    """Reload settings from file"""
    global _settings
    _settings = None
    return get_settings()


# For convenient import: from command_arbiter.settings import settings
settings = get_settings()
