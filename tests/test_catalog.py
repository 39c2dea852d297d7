"""
Tests for the Action Catalog, handler registry and resilient execution.

These tests validate:
- Default catalog invariants (critical actions, compensation references)
- Catalog / registry validation errors
- YAML catalog loading
- Error classification and retry behaviour
"""

import time

import pytest

from src.core.catalog.actions import DEFAULT_ACTIONS, default_catalog
from src.core.catalog.models import (
    TIMEOUT_TIERS,
    ActionCategory,
    ActionDefinition,
    ErrorCategory,
    ResiliencePolicy,
    RiskLevel,
)
from src.core.catalog.registry import ActionCatalog, HandlerRegistry, load_catalog
from src.core.catalog.resilience import ResilientRunner, classify_error
from src.core.errors import ActionExecutionError, CatalogError, GateViolation


def _make_definition(name="do_thing", category=ActionCategory.ACTION, tier=3, **kwargs):
    return ActionDefinition(
        name=name,
        category=category,
        risk_level=kwargs.pop("risk", RiskLevel.LOW),
        min_autonomy_tier=tier,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Default catalog
# ---------------------------------------------------------------------------
class TestDefaultCatalog:
    def test_all_actions_loaded(self):
        catalog = default_catalog()
        assert len(catalog) == len(DEFAULT_ACTIONS)
        assert "send_rent_reminder" in catalog

    def test_critical_actions(self):
        catalog = default_catalog()
        critical = {d.name for d in catalog.list() if d.is_critical}
        assert {"process_payment", "terminate_lease", "claim_bond",
                "send_breach_notice", "refund_payment"} <= critical
        for name in critical:
            assert catalog.require(name).min_autonomy_tier == 5

    def test_queries_are_read_only(self):
        catalog = default_catalog()
        for definition in catalog.list(ActionCategory.QUERY):
            assert definition.is_read_only
            assert definition.risk_level == RiskLevel.NONE

    def test_compensations_reference_catalog(self):
        catalog = default_catalog()
        publish = catalog.require("publish_listing")
        assert publish.reversible
        assert publish.compensation_action == "pause_listing"
        assert catalog.require("create_property").compensation_action == "delete_property"

    def test_require_unknown(self):
        with pytest.raises(CatalogError, match="Unknown action"):
            default_catalog().require("launch_rocket")

    def test_to_dict(self):
        d = default_catalog().require("send_rent_reminder").to_dict()
        assert d["category"] == "action"
        assert d["risk_level"] == "low"
        assert d["min_autonomy_tier"] == 2
        assert d["resilience"]["max_attempts"] == 2


class TestCatalogValidation:
    def test_duplicate_rejected(self):
        catalog = ActionCatalog([_make_definition()])
        with pytest.raises(CatalogError, match="already defined"):
            catalog.add(_make_definition())

    @pytest.mark.parametrize("tier", [0, 6])
    def test_tier_out_of_range(self, tier):
        with pytest.raises(CatalogError, match="min_autonomy_tier"):
            ActionCatalog([_make_definition(tier=tier)])

    def test_unknown_compensation(self):
        catalog = ActionCatalog([_make_definition(reversible=True, compensation_action="undo_thing")])
        with pytest.raises(CatalogError, match="unknown compensation"):
            catalog.validate()

    def test_self_compensation(self):
        catalog = ActionCatalog([_make_definition(reversible=True, compensation_action="do_thing")])
        with pytest.raises(CatalogError, match="cannot compensate itself"):
            catalog.validate()


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------
class TestHandlerRegistry:
    def test_register_and_get(self):
        registry = HandlerRegistry()
        handler = lambda params, ctx: "ok"
        registry.register("do_thing", handler)
        assert registry.get("do_thing") is handler
        assert registry.names() == ["do_thing"]

    def test_duplicate_registration(self):
        registry = HandlerRegistry()
        registry.register("do_thing", lambda p, c: None)
        with pytest.raises(CatalogError, match="already registered"):
            registry.register("do_thing", lambda p, c: None)

    def test_non_callable(self):
        with pytest.raises(CatalogError, match="not callable"):
            HandlerRegistry().register("do_thing", "nope")

    def test_validate_missing_and_orphaned(self):
        catalog = ActionCatalog([_make_definition(), _make_definition("other_thing")])
        registry = HandlerRegistry()
        registry.register("do_thing", lambda p, c: None)
        registry.register("stray", lambda p, c: None)
        with pytest.raises(CatalogError) as exc_info:
            registry.validate(catalog)
        message = str(exc_info.value)
        assert "no handler for: other_thing" in message
        assert "handler without catalog entry: stray" in message

    def test_validate_ok(self):
        catalog = ActionCatalog([_make_definition()])
        registry = HandlerRegistry()
        registry.register("do_thing", lambda p, c: None)
        registry.validate(catalog)


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------
class TestLoadCatalog:
    def test_load(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text(
            "actions:\n"
            "  book_trade:\n"
            "    category: action\n"
            "    risk_level: medium\n"
            "    min_autonomy_tier: 3\n"
            "    reversible: true\n"
            "    compensation_action: cancel_trade\n"
            "    resilience: {max_attempts: 4, timeout_tier: extended}\n"
            "  cancel_trade:\n"
            "    category: action\n"
            "    min_autonomy_tier: 2\n"
        )
        catalog = load_catalog(path)
        book = catalog.require("book_trade")
        assert book.risk_level == RiskLevel.MEDIUM
        assert book.policy.max_attempts == 4
        assert book.policy.timeout_s == 30.0
        assert catalog.require("cancel_trade").risk_level == RiskLevel.NONE

    def test_missing_file(self, tmp_path):
        with pytest.raises(CatalogError, match="not found"):
            load_catalog(tmp_path / "nope.yaml")

    def test_invalid_category(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text("actions:\n  x:\n    category: teleport\n    min_autonomy_tier: 2\n")
        with pytest.raises(CatalogError, match="Invalid definition"):
            load_catalog(path)


# ---------------------------------------------------------------------------
# Resilience
# ---------------------------------------------------------------------------
class TestResiliencePolicy:
    def test_category_preset(self):
        definition = _make_definition(category=ActionCategory.QUERY)
        assert definition.policy.max_attempts == 3
        assert definition.policy.fallback == "cache"

    def test_backoff(self):
        policy = ResiliencePolicy(backoff_base_s=0.5, backoff_max_s=8.0)
        assert policy.backoff_for(1) == 0.5
        assert policy.backoff_for(2) == 1.0
        assert policy.backoff_for(10) == 8.0

    def test_unknown_timeout_tier(self):
        assert ResiliencePolicy(timeout_tier="glacial").timeout_s == 10.0


class _Degraded(Exception):
    error_category = "degraded"


class TestClassifyError:
    @pytest.mark.parametrize("exc,expected", [
        (TimeoutError("slow"), ErrorCategory.TRANSIENT),
        (ConnectionError("reset"), ErrorCategory.TRANSIENT),
        (PermissionError("nope"), ErrorCategory.USER_ACTION_REQUIRED),
        (GateViolation("no grant"), ErrorCategory.SAFETY_HALT),
        (RuntimeError("upstream returned 503"), ErrorCategory.TRANSIENT),
        (RuntimeError("account not connected"), ErrorCategory.USER_ACTION_REQUIRED),
        (ValueError("bad postcode"), ErrorCategory.PERMANENT_LOGIC),
        (RuntimeError("boom"), ErrorCategory.PERMANENT_SYSTEM),
        (_Degraded("partial"), ErrorCategory.DEGRADED),
    ])
    def test_classification(self, exc, expected):
        assert classify_error(exc) == expected


class TestResilientRunner:
    def _run(self, definition, handler, sleeps=None):
        runner = ResilientRunner(sleep=(sleeps.append if sleeps is not None else lambda _: None))
        return runner.run(definition, handler, {}, "u1", "d1")

    def test_success_first_attempt(self):
        result = self._run(_make_definition(), lambda p, c: {"sent": True})
        assert result.success
        assert result.data == {"sent": True}
        assert result.attempts == 1

    def test_transient_retried_then_succeeds(self):
        calls = []

        def flaky(params, ctx):
            calls.append(ctx.attempt)
            if ctx.attempt == 1:
                raise ConnectionError("connection reset")
            return "ok"

        sleeps = []
        result = self._run(_make_definition(), flaky, sleeps)
        assert result.attempts == 2
        assert calls == [1, 2]
        assert sleeps == [0.5]

    def test_transient_exhausted(self):
        definition = _make_definition(resilience=ResiliencePolicy(max_attempts=3, backoff_base_s=0))

        def always_down(params, ctx):
            raise TimeoutError("gateway timeout")

        with pytest.raises(ActionExecutionError) as exc_info:
            self._run(definition, always_down)
        assert exc_info.value.attempts == 3
        assert exc_info.value.error_category == "transient"
        assert exc_info.value.decision_id == "d1"

    def test_permanent_not_retried(self):
        calls = []

        def broken(params, ctx):
            calls.append(ctx.attempt)
            raise ValueError("missing tenancy_id")

        with pytest.raises(ActionExecutionError) as exc_info:
            self._run(_make_definition(), broken)
        assert calls == [1]
        assert exc_info.value.error_category == "permanent_logic"

    def test_timeout_is_transient(self, monkeypatch):
        monkeypatch.setitem(TIMEOUT_TIERS, "fast", 0.05)
        definition = _make_definition(
            resilience=ResiliencePolicy(max_attempts=2, timeout_tier="fast", backoff_base_s=0),
        )

        def slow(params, ctx):
            time.sleep(0.5)

        with pytest.raises(ActionExecutionError) as exc_info:
            self._run(definition, slow)
        assert exc_info.value.attempts == 2
        assert exc_info.value.error_category == "transient"
