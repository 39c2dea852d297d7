"""
Autonomy Settings — per-user preset plus per-category tier overrides.

Tiers run 1 (ask before everything) to 5 (act freely). Overrides are
stored as "L1".."L5" strings.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from src.core.catalog.models import MAX_TIER, MIN_TIER, ActionCategory
from src.core.storage import SQLiteStore, dump_json, from_iso, load_json, to_iso, utc_now

logger = logging.getLogger(__name__)


class AutonomyPreset(str, Enum):
    CAUTIOUS = "cautious"
    BALANCED = "balanced"
    HANDS_OFF = "hands_off"


PRESET_TIERS: Dict[AutonomyPreset, Dict[str, int]] = {
    AutonomyPreset.CAUTIOUS: {
        "query": 5, "action": 2, "generate": 3, "external": 2,
        "integration": 2, "workflow": 1, "memory": 5, "planning": 4,
    },
    AutonomyPreset.BALANCED: {
        "query": 5, "action": 3, "generate": 4, "external": 4,
        "integration": 3, "workflow": 2, "memory": 5, "planning": 4,
    },
    AutonomyPreset.HANDS_OFF: {
        "query": 5, "action": 4, "generate": 5, "external": 5,
        "integration": 4, "workflow": 3, "memory": 5, "planning": 4,
    },
}

DEFAULT_TIER = 3

_LEVEL_RE = re.compile(r"^\s*L?\s*([0-9])\s*$", re.IGNORECASE)


def parse_tier(value: object, default: int = DEFAULT_TIER) -> int:
    """Parse "L3" / "3" / 3 into a tier, clamped to 1-5."""
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return max(MIN_TIER, min(MAX_TIER, value))
    if isinstance(value, str):
        match = _LEVEL_RE.match(value)
        if match:
            return max(MIN_TIER, min(MAX_TIER, int(match.group(1))))
    return default


def format_tier(tier: object) -> str:
    return f"L{parse_tier(tier)}"


@dataclass
class AutonomySettings:
    """A user's autonomy preference."""
    user_id: str
    preset: AutonomyPreset = AutonomyPreset.BALANCED
    category_overrides: Dict[str, str] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=utc_now)

    def tier_for(self, category: str | ActionCategory) -> int:
        """Effective tier: the override when present, else the preset's."""
        key = category.value if isinstance(category, ActionCategory) else str(category)
        override = self.category_overrides.get(key)
        if override is not None:
            return parse_tier(override)
        return PRESET_TIERS[self.preset].get(key, DEFAULT_TIER)

    def to_dict(self) -> Dict[str, object]:
        return {
            "user_id": self.user_id,
            "preset": self.preset.value,
            "category_overrides": dict(self.category_overrides),
            "effective_tiers": {c.value: self.tier_for(c) for c in ActionCategory},
            "updated_at": self.updated_at.isoformat(),
        }


def normalize_overrides(overrides: Optional[Dict[str, object]]) -> Dict[str, str]:
    """Validate category keys and canonicalise values to "L<n>".

    Raises:
        ValueError: On an unknown category or unparsable level.
    """
    result: Dict[str, str] = {}
    valid = {c.value for c in ActionCategory}
    for category, level in (overrides or {}).items():
        if category not in valid:
            raise ValueError(f"Unknown category '{category}'")
        tier = parse_tier(level, default=-1)
        if tier < 0:
            raise ValueError(f"Invalid autonomy level '{level}' for {category}")
        result[category] = format_tier(tier)
    return result


class AutonomySettingsStore(SQLiteStore):
    """Upserted per-user autonomy settings."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS autonomy_settings (
        user_id TEXT PRIMARY KEY,
        preset TEXT NOT NULL,
        category_overrides TEXT NOT NULL DEFAULT '{}',
        updated_at TEXT NOT NULL
    );
    """

    def get(self, user_id: str) -> AutonomySettings:
        """Stored settings, or balanced defaults for unknown users."""
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM autonomy_settings WHERE user_id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return AutonomySettings(user_id=user_id)
        return AutonomySettings(
            user_id=row["user_id"],
            preset=AutonomyPreset(row["preset"]),
            category_overrides=load_json(row["category_overrides"], {}),
            updated_at=from_iso(row["updated_at"]),
        )

    def save(self, settings: AutonomySettings) -> AutonomySettings:
        settings.category_overrides = normalize_overrides(settings.category_overrides)
        settings.updated_at = utc_now()
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO autonomy_settings (user_id, preset, category_overrides, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET
                     preset = excluded.preset,
                     category_overrides = excluded.category_overrides,
                     updated_at = excluded.updated_at""",
                (
                    settings.user_id, settings.preset.value,
                    dump_json(settings.category_overrides), to_iso(settings.updated_at),
                ),
            )
        logger.info(
            "Autonomy settings saved for %s: preset=%s overrides=%s",
            settings.user_id, settings.preset.value, settings.category_overrides,
        )
        return settings

    def set_override(self, user_id: str, category: str, tier: int) -> AutonomySettings:
        settings = self.get(user_id)
        settings.category_overrides[category] = format_tier(tier)
        return self.save(settings)
