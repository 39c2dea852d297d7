"""
Feature Flags — subsystem kill switches.

Each flag controls whether a subsystem is active. When disabled, the
engine boots without that subsystem and its API routes answer 503.

Environment variables:
    FEATURE_HEARTBEAT       — default: true (proactive scanner loop)
    FEATURE_LEARNING        — default: true (feedback → rules pipeline)
    FEATURE_SEMANTIC_MEMORY — default: true (vector search; fallback-only when off)
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)


def _env_bool(key: str, default: bool = True) -> bool:
    """Read a boolean from env, falling back to the default when unset."""
    val = os.environ.get(key, "").strip().lower()
    if not val:
        return default
    return val in ("true", "1", "yes")


FEATURE_HEARTBEAT: bool = _env_bool("FEATURE_HEARTBEAT")
FEATURE_LEARNING: bool = _env_bool("FEATURE_LEARNING")
FEATURE_SEMANTIC_MEMORY: bool = _env_bool("FEATURE_SEMANTIC_MEMORY")


def set_flag(name: str, value: bool) -> None:
    """Set a feature flag at runtime.

    Raises:
        ValueError: If the flag name is not recognized.
    """
    import src.core.feature_flags as _self
    current = getattr(_self, name, None)
    if not name.startswith("FEATURE_") or not isinstance(current, bool):
        raise ValueError(f"Unknown flag: {name}")
    setattr(_self, name, value)
    os.environ[name] = "true" if value else "false"
    logger.info("Flag set: %s = %s", name, value)


def reload_flags() -> None:
    """Re-read feature flags from environment. Used in tests."""
    global FEATURE_HEARTBEAT, FEATURE_LEARNING, FEATURE_SEMANTIC_MEMORY
    FEATURE_HEARTBEAT = _env_bool("FEATURE_HEARTBEAT")
    FEATURE_LEARNING = _env_bool("FEATURE_LEARNING")
    FEATURE_SEMANTIC_MEMORY = _env_bool("FEATURE_SEMANTIC_MEMORY")


def get_all_flags() -> dict[str, bool]:
    """Return a snapshot of all feature flag values."""
    return {
        "FEATURE_HEARTBEAT": FEATURE_HEARTBEAT,
        "FEATURE_LEARNING": FEATURE_LEARNING,
        "FEATURE_SEMANTIC_MEMORY": FEATURE_SEMANTIC_MEMORY,
    }


def log_feature_flags() -> None:
    """Log current feature flag state at startup."""
    logger.info(
        "Feature flags: HEARTBEAT=%s, LEARNING=%s, SEMANTIC_MEMORY=%s",
        FEATURE_HEARTBEAT, FEATURE_LEARNING, FEATURE_SEMANTIC_MEMORY,
    )
