"""
Action Catalog Registry — lookup of action definitions and their handlers.

The catalog holds immutable ActionDefinitions keyed by name. The handler
registry maps each action name to exactly one callable; validate() is run
at startup so every catalog entry has a handler and every handler names a
catalog entry.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

import yaml

from src.core.catalog.models import (
    MAX_TIER,
    MIN_TIER,
    ActionCategory,
    ActionDefinition,
    ResiliencePolicy,
    RiskLevel,
)
from src.core.errors import CatalogError

logger = logging.getLogger(__name__)


# ── Handler Interface ─────────────────────────────────────────────

@dataclass(frozen=True)
class ExecutionContext:
    """Per-invocation context handed to an action handler."""
    user_id: str
    decision_id: str
    action_name: str
    attempt: int = 1
    conversation_id: str = ""


class ActionHandler(Protocol):
    def __call__(self, parameters: Dict[str, Any], context: ExecutionContext) -> Any:
        ...


# ── Action Catalog ────────────────────────────────────────────────

class ActionCatalog:
    """Static registry of executable action types."""

    def __init__(self, definitions: Iterable[ActionDefinition] = ()) -> None:
        self._definitions: Dict[str, ActionDefinition] = {}
        for definition in definitions:
            self.add(definition)

    def add(self, definition: ActionDefinition) -> None:
        if definition.name in self._definitions:
            raise CatalogError(f"Action '{definition.name}' is already defined")
        if not MIN_TIER <= definition.min_autonomy_tier <= MAX_TIER:
            raise CatalogError(
                f"Action '{definition.name}' min_autonomy_tier must be "
                f"{MIN_TIER}-{MAX_TIER}, got {definition.min_autonomy_tier}"
            )
        self._definitions[definition.name] = definition

    def get(self, name: str) -> Optional[ActionDefinition]:
        return self._definitions.get(name)

    def require(self, name: str) -> ActionDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            raise CatalogError(f"Unknown action '{name}'")
        return definition

    def names(self) -> List[str]:
        return sorted(self._definitions)

    def list(self, category: Optional[ActionCategory] = None) -> List[ActionDefinition]:
        items = sorted(self._definitions.values(), key=lambda d: d.name)
        if category is not None:
            items = [d for d in items if d.category == category]
        return items

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def validate(self) -> None:
        """Check cross-references between entries.

        Raises:
            CatalogError: If a compensation action is missing or is the
                action itself.
        """
        for definition in self._definitions.values():
            comp = definition.compensation_action
            if comp is None:
                continue
            if comp == definition.name:
                raise CatalogError(f"Action '{definition.name}' cannot compensate itself")
            if comp not in self._definitions:
                raise CatalogError(
                    f"Action '{definition.name}' references unknown "
                    f"compensation action '{comp}'"
                )


# ── Handler Registry ──────────────────────────────────────────────

class HandlerRegistry:
    """Maps action names to handlers. One handler per action."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: Dict[str, ActionHandler] = {}

    def register(self, action_name: str, handler: ActionHandler) -> None:
        """Register a handler.

        Raises:
            CatalogError: If a handler is already registered for the name
        """
        if not callable(handler):
            raise CatalogError(f"Handler for '{action_name}' is not callable")
        with self._lock:
            if action_name in self._handlers:
                raise CatalogError(f"Handler for '{action_name}' is already registered")
            self._handlers[action_name] = handler

    def get(self, action_name: str) -> Optional[ActionHandler]:
        with self._lock:
            return self._handlers.get(action_name)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._handlers)

    def validate(self, catalog: ActionCatalog) -> None:
        """Ensure the registry and catalog describe the same action set.

        Raises:
            CatalogError: Listing actions without handlers and handlers
                without catalog entries.
        """
        catalog.validate()
        registered = set(self.names())
        defined = set(catalog.names())
        missing = sorted(defined - registered)
        orphaned = sorted(registered - defined)
        problems = []
        if missing:
            problems.append(f"no handler for: {', '.join(missing)}")
        if orphaned:
            problems.append(f"handler without catalog entry: {', '.join(orphaned)}")
        if problems:
            raise CatalogError("Handler registry invalid; " + "; ".join(problems))
        logger.info("Handler registry validated (%d actions)", len(defined))


# ── YAML Loading ──────────────────────────────────────────────────

def definition_from_dict(name: str, raw: Dict[str, Any]) -> ActionDefinition:
    """Build an ActionDefinition from a YAML mapping."""
    try:
        resilience = None
        if raw.get("resilience"):
            resilience = ResiliencePolicy(**raw["resilience"])
        return ActionDefinition(
            name=name,
            category=ActionCategory(raw["category"]),
            risk_level=RiskLevel.parse(raw.get("risk_level", "none")),
            min_autonomy_tier=int(raw["min_autonomy_tier"]),
            reversible=bool(raw.get("reversible", False)),
            compensation_action=raw.get("compensation_action"),
            resilience=resilience,
            description=raw.get("description", ""),
        )
    except (KeyError, ValueError, TypeError) as exc:
        raise CatalogError(f"Invalid definition for '{name}': {exc}") from exc


def load_catalog(path: str | Path) -> ActionCatalog:
    """Load an action catalog from YAML (``actions: {name: {...}}``).

    Raises:
        CatalogError: If the file is missing or invalid.
    """
    path = Path(path)
    if not path.exists():
        raise CatalogError(f"Catalog file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    actions = raw.get("actions") or {}
    if not isinstance(actions, dict):
        raise CatalogError("'actions' must be a mapping of name to definition")
    catalog = ActionCatalog(definition_from_dict(n, d or {}) for n, d in actions.items())
    catalog.validate()
    logger.info("Loaded %d actions from %s", len(catalog), path)
    return catalog
