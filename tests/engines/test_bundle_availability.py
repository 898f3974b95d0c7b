"""
Bundle Engine — Availability Calculator Tests
==============================================
Gate order: status/schedule → components → capacity → final.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from core.time import ScheduleWindow
from engines.bundle.availability_engine import (
    AvailabilityStatus,
    compute_a_shell,
    compute_availability,
)
from engines.bundle.errors import ConfigurationError, IntegrityViolation
from engines.bundle.models import (
    BundleDefinition,
    BundleStatus,
    Component,
    ComponentState,
    DiscountMode,
    StockSnapshot,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _bundle(**overrides) -> BundleDefinition:
    bundle = BundleDefinition(
        bundle_id="B-1",
        name="Starter Kit",
        discount_mode=DiscountMode.PERCENT,
        percent_off=10,
        status=BundleStatus.ACTIVE,
        components=(
            Component("shaker", quantity_per_bundle=1, unit_price_snapshot=1500, name="Shaker"),
            Component("whey", quantity_per_bundle=2, unit_price_snapshot=4000, name="Whey"),
        ),
    )
    return replace(bundle, **overrides)


def _stock(shaker=100, whey=200, whey_allocated=0):
    return [
        StockSnapshot("shaker", on_hand=shaker),
        StockSnapshot("whey", on_hand=whey, allocated=whey_allocated),
    ]


# ══════════════════════════════════════════════════════════════
# STATUS / SCHEDULE GATE
# ══════════════════════════════════════════════════════════════

class TestStatusGate:
    @pytest.mark.parametrize("status", [BundleStatus.DRAFT, BundleStatus.ARCHIVED])
    def test_non_active_bundle_is_unavailable_regardless_of_stock(self, status):
        result = compute_availability(_bundle(status=status), _stock(10_000, 10_000), now=NOW)
        assert not result.is_available
        assert result.max_quantity == 0
        assert result.status == status.value
        assert result.insufficient_items == ()

    def test_not_started(self):
        bundle = _bundle(schedule=ScheduleWindow(valid_from=NOW + timedelta(days=1)))
        result = compute_availability(bundle, _stock(), now=NOW)
        assert result.status == AvailabilityStatus.SCHEDULED
        assert result.max_quantity == 0
        assert result.reason.startswith("Available from")

    def test_expired(self):
        bundle = _bundle(schedule=ScheduleWindow(valid_to=NOW - timedelta(seconds=1)))
        result = compute_availability(bundle, _stock(), now=NOW)
        assert result.status == AvailabilityStatus.EXPIRED
        assert not result.is_available

    def test_window_bounds_inclusive(self):
        bundle = _bundle(schedule=ScheduleWindow(valid_from=NOW, valid_to=NOW))
        assert compute_availability(bundle, _stock(), now=NOW).is_available

    def test_status_gate_runs_before_integrity(self):
        bundle = _bundle(status=BundleStatus.DRAFT).with_component_states({"shaker": ComponentState.OK})
        result = compute_availability(bundle, _stock(), now=NOW)
        assert result.status == AvailabilityStatus.DRAFT


# ══════════════════════════════════════════════════════════════
# COMPONENT GATE
# ══════════════════════════════════════════════════════════════

class TestComponentGate:
    def test_min_over_components(self):
        result = compute_availability(_bundle(), _stock(shaker=30, whey=50), now=NOW)
        assert result.a_components == 25
        assert result.max_quantity == 25
        assert result.status == AvailabilityStatus.AVAILABLE
        assert result.a_shell is None

    def test_allocated_stock_is_not_available(self):
        result = compute_availability(_bundle(), _stock(whey=50, whey_allocated=40), now=NOW)
        assert result.max_quantity == 5

    def test_over_allocated_counts_as_zero(self):
        result = compute_availability(_bundle(), _stock(whey=10, whey_allocated=40), now=NOW)
        assert result.max_quantity == 0
        assert result.insufficient_items[0].available == 0

    def test_insufficient_items_diagnostics(self):
        result = compute_availability(_bundle(), _stock(shaker=5, whey=1), now=NOW)
        assert not result.is_available
        assert result.status == AvailabilityStatus.OUT_OF_STOCK
        assert len(result.insufficient_items) == 1
        item = result.insufficient_items[0]
        assert item.variant_id == "whey"
        assert item.required == 2
        assert item.available == 1
        assert item.shortfall == 1
        assert "Whey" in result.reason

    def test_missing_snapshot_counts_as_zero(self):
        result = compute_availability(_bundle(), [StockSnapshot("shaker", 10)], now=NOW)
        assert result.max_quantity == 0
        assert result.insufficient_items[0].variant_id == "whey"

    def test_accepts_mapping_of_snapshots(self):
        stock = {s.variant_id: s for s in _stock(shaker=3)}
        assert compute_availability(_bundle(), stock, now=NOW).max_quantity == 3

    def test_zero_components_is_invalid(self):
        with pytest.raises(ConfigurationError):
            compute_availability(_bundle(components=()), [], now=NOW)

    def test_broken_component_raises(self):
        bundle = _bundle().with_component_states({"shaker": ComponentState.OK})
        with pytest.raises(IntegrityViolation) as exc:
            compute_availability(bundle, _stock(), now=NOW)
        assert exc.value.variant_ids == ("whey",)


# ══════════════════════════════════════════════════════════════
# CAPACITY GATE
# ══════════════════════════════════════════════════════════════

class TestCapacityGate:
    def test_capacity_limits_final_quantity(self):
        bundle = _bundle(bundle_cap=50)
        result = compute_availability(bundle, _stock(), 45, now=NOW)
        assert result.a_components == 100
        assert result.a_shell == 5
        assert result.max_quantity == 5

    def test_reserved_defaults_to_definition_value(self):
        bundle = _bundle(bundle_cap=50, bundle_reserved_open=48)
        assert compute_availability(bundle, _stock(), now=NOW).max_quantity == 2

    def test_capacity_exhausted(self):
        result = compute_availability(_bundle(bundle_cap=10), _stock(), 10, now=NOW)
        assert not result.is_available
        assert result.status == AvailabilityStatus.CAPACITY_EXHAUSTED
        assert "capacity" in result.reason

    def test_overbooked_degrades_to_zero(self, caplog):
        with caplog.at_level("WARNING", logger="bundles.availability"):
            result = compute_availability(_bundle(bundle_cap=10), _stock(), 12, now=NOW)
        assert result.a_shell == 0
        assert result.max_quantity == 0
        assert "overbooked" in caplog.text

    def test_a_shell_unbounded(self):
        assert compute_a_shell(None, 1_000) is None
        assert compute_a_shell(5, 7) == 0

    def test_negative_reserved_rejected(self):
        with pytest.raises(ValueError):
            compute_availability(_bundle(), _stock(), -1, now=NOW)


# ══════════════════════════════════════════════════════════════
# REQUESTED QUANTITY
# ══════════════════════════════════════════════════════════════

class TestRequestedQuantity:
    def test_satisfiable_up_to_max(self):
        bundle = _bundle(bundle_cap=50)
        assert compute_availability(bundle, _stock(), 45, now=NOW, requested_quantity=5).is_satisfiable
        assert not compute_availability(bundle, _stock(), 45, now=NOW, requested_quantity=6).is_satisfiable

    def test_unavailable_never_satisfiable(self):
        result = compute_availability(
            _bundle(status=BundleStatus.DRAFT), _stock(), now=NOW, requested_quantity=1,
        )
        assert not result.is_satisfiable

    def test_rejects_non_positive_request(self):
        with pytest.raises(ValueError):
            compute_availability(_bundle(), _stock(), now=NOW, requested_quantity=0)

    def test_to_dict(self):
        data = compute_availability(_bundle(), _stock(shaker=0), now=NOW, requested_quantity=1).to_dict()
        assert data["is_available"] is False
        assert data["is_satisfiable"] is False
        assert data["insufficient_items"][0]["shortfall"] == 1


# ══════════════════════════════════════════════════════════════
# PROPERTIES
# ══════════════════════════════════════════════════════════════

class TestAvailabilityProperties:
    @settings(max_examples=200, deadline=None)
    @given(
        shaker=st.integers(min_value=0, max_value=500),
        whey=st.integers(min_value=0, max_value=500),
        cap=st.one_of(st.none(), st.integers(min_value=0, max_value=300)),
        reserved=st.integers(min_value=0, max_value=400),
    )
    def test_monotonic_capacity(self, shaker, whey, cap, reserved):
        result = compute_availability(
            _bundle(bundle_cap=cap), _stock(shaker, whey), reserved, now=NOW,
        )
        assert result.max_quantity >= 0
        assert result.max_quantity <= result.a_components
        if result.a_shell is not None:
            assert result.max_quantity <= result.a_shell
        assert result.is_available == (result.max_quantity > 0)
