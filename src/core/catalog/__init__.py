"""
Action Catalog

Static registry of executable action types and the handlers behind them:
- Data models (models.py)
- Catalog and handler registry (registry.py)
- Default property-management catalog (actions.py)
- Retry / timeout execution (resilience.py)
"""

from src.core.catalog.models import (
    ActionCategory,
    ActionDefinition,
    ErrorCategory,
    ExecutionResult,
    ResiliencePolicy,
    RiskLevel,
)
from src.core.catalog.registry import (
    ActionCatalog,
    ActionHandler,
    ExecutionContext,
    HandlerRegistry,
    load_catalog,
)

__all__ = [
    "ActionCatalog",
    "ActionCategory",
    "ActionDefinition",
    "ActionHandler",
    "ErrorCategory",
    "ExecutionContext",
    "ExecutionResult",
    "HandlerRegistry",
    "ResiliencePolicy",
    "RiskLevel",
    "load_catalog",
]
