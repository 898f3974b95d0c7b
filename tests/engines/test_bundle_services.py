"""
Bundle Engine — Service & Recompute Worker Tests
=================================================
Add-to-cart, checkout revalidation, lifecycle, single-flight recompute.
"""

import threading
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from core.time import FixedClock
from engines.bundle.commands import (
    ReconcileReservationCommand,
    RecomputeBundleCommand,
    RecomputeReason,
)
from engines.bundle.config import InMemoryPolicyStore
from engines.bundle.errors import ConfigurationError, IntegrityViolation
from engines.bundle.events import (
    BUNDLE_ARCHIVED_V1,
    BUNDLE_PUBLISHED_V1,
    BUNDLE_RECOMPUTED_V1,
    BUNDLE_RESERVATION_RECONCILED_V1,
    InMemoryEventSink,
)
from engines.bundle.models import (
    BundleDefinition,
    BundleStatus,
    Component,
    ComponentState,
    DiscountMode,
    PromotionPolicy,
    PromotionRef,
)
from engines.bundle.reservation_ledger import (
    InMemoryOrderStore,
    InMemoryReservationStore,
    OrderState,
    ReservationLedger,
)
from engines.bundle.services import (
    BundleProjectionStore,
    BundleService,
    InMemoryBundleRepository,
    InMemoryStockProvider,
    JobOutcome,
    RecomputeQueue,
    RecomputeWorker,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _bundle(bundle_id="B-1", status=BundleStatus.ACTIVE, **overrides):
    bundle = BundleDefinition(
        bundle_id=bundle_id,
        name="Gym Starter",
        discount_mode=DiscountMode.FIXED,
        fixed_price_cents=900,
        status=status,
        bundle_cap=50,
        components=(
            Component("V1", 1, 333),
            Component("V2", 1, 333),
            Component("V3", 1, 334),
        ),
    )
    return replace(bundle, **overrides)


class _Env:
    def __init__(self, bundles=None, reserved=None):
        self.repository = InMemoryBundleRepository(bundles if bundles is not None else [_bundle()])
        self.stock = InMemoryStockProvider()
        for variant in ("V1", "V2", "V3"):
            self.stock.set_stock(variant, on_hand=100)
        self.orders = InMemoryOrderStore()
        self.ledger = ReservationLedger(InMemoryReservationStore(reserved or {}), self.orders)
        self.clock = FixedClock(NOW)
        self.events = InMemoryEventSink()
        self.policies = InMemoryPolicyStore(PromotionPolicy(global_default="Allow"))
        self.service = BundleService(
            self.repository, self.stock, self.ledger, self.clock, self.policies, self.events,
        )


# ══════════════════════════════════════════════════════════════
# ADD TO ORDER / CHECKOUT
# ══════════════════════════════════════════════════════════════

class TestAddBundleToOrder:
    def test_adds_header_and_component_lines(self):
        env = _Env()
        result = env.service.add_bundle_to_order("B-1", 2, bundle_key="cart-1")
        assert result.added
        assert result.bundle_key == "cart-1"
        assert len(result.lines) == 4
        assert result.lines[0].is_bundle_header
        assert -sum(l.bundle_adj_amount for l in result.lines[1:]) == 200

    def test_generates_bundle_key(self):
        result = _Env().service.add_bundle_to_order("B-1", 1)
        assert result.bundle_key
        assert {l.bundle_key for l in result.lines} == {result.bundle_key}

    def test_capacity_limits_add(self):
        env = _Env(reserved={"B-1": 45})
        assert env.service.add_bundle_to_order("B-1", 5).added
        result = env.service.add_bundle_to_order("B-1", 6)
        assert not result.added
        assert result.availability.max_quantity == 5
        assert result.lines == ()

    def test_draft_bundle_cannot_be_added(self):
        env = _Env(bundles=[_bundle(status=BundleStatus.DRAFT)])
        result = env.service.add_bundle_to_order("B-1", 1)
        assert not result.added
        assert result.availability.status == "DRAFT"

    def test_unknown_bundle(self):
        with pytest.raises(ValueError, match="not found"):
            _Env().service.add_bundle_to_order("nope", 1)


class TestValidateCheckout:
    def test_passes_when_stock_still_there(self):
        env = _Env()
        lines = env.service.add_bundle_to_order("B-1", 3).lines
        assert env.service.validate_checkout(lines).ok

    def test_fails_when_stock_moved_since_add(self):
        env = _Env()
        lines = env.service.add_bundle_to_order("B-1", 3).lines
        env.stock.set_stock("V2", on_hand=100, allocated=98)
        validation = env.service.validate_checkout(lines)
        assert not validation.ok
        assert validation.failures["B-1"].max_quantity == 2

    def test_sums_purchases_of_the_same_bundle(self):
        env = _Env(reserved={"B-1": 45})
        first = env.service.add_bundle_to_order("B-1", 3).lines
        second = env.service.add_bundle_to_order("B-1", 3).lines
        assert not env.service.validate_checkout(first + second).ok


class TestPricingAndGuard:
    def test_preview_price(self):
        preview = _Env().service.preview_price("B-1")
        assert preview.total_bundle_price == 900
        assert preview.total_discount == 100

    def test_guard_promotion_uses_store_policy(self):
        env = _Env()
        lines = env.service.add_bundle_to_order("B-1", 1).lines
        batch = env.service.guard_promotion(lines, PromotionRef(name="Extra 5%"))
        assert len(batch.blocked_lines) == 1
        assert len(batch.allowed_lines) == 3

    def test_reservation_status(self):
        env = _Env(reserved={"B-1": 10})
        status = env.service.reservation_status("B-1")
        assert status.bundle_cap == 50
        assert status.virtual_stock == 40


# ══════════════════════════════════════════════════════════════
# LIFECYCLE
# ══════════════════════════════════════════════════════════════

class TestLifecycle:
    def test_create_publish_archive(self):
        env = _Env(bundles=[])
        env.service.create(_bundle(status=BundleStatus.DRAFT))
        assert env.service.publish("B-1").status == BundleStatus.ACTIVE
        assert env.service.archive("B-1").status == BundleStatus.ARCHIVED
        assert env.repository.get("B-1").status == BundleStatus.ARCHIVED
        assert [kind for kind, _ in env.events.events] == [BUNDLE_PUBLISHED_V1, BUNDLE_ARCHIVED_V1]

    def test_create_rejects_invalid(self):
        env = _Env(bundles=[])
        with pytest.raises(ConfigurationError):
            env.service.create(_bundle(status=BundleStatus.DRAFT, percent_off=10))

    def test_create_rejects_duplicates(self):
        with pytest.raises(ValueError, match="already exists"):
            _Env().service.create(_bundle(status=BundleStatus.DRAFT))

    def test_publish_requires_draft(self):
        with pytest.raises(ValueError, match="DRAFT"):
            _Env().service.publish("B-1")

    def test_publish_refuses_broken_bundle(self):
        broken = _bundle(status=BundleStatus.DRAFT).with_component_states({"V1": ComponentState.OK})
        env = _Env(bundles=[broken])
        with pytest.raises(IntegrityViolation):
            env.service.publish("B-1")
        assert env.repository.get("B-1").status == BundleStatus.DRAFT

    def test_archive_requires_active(self):
        env = _Env(bundles=[_bundle(status=BundleStatus.DRAFT)])
        with pytest.raises(ValueError, match="ACTIVE"):
            env.service.archive("B-1")


# ══════════════════════════════════════════════════════════════
# RECOMPUTE WORKER
# ══════════════════════════════════════════════════════════════

def _recompute(bundle_id="B-1"):
    return RecomputeBundleCommand(bundle_id=bundle_id, reason=RecomputeReason.MANUAL, requested_at=NOW)


class TestRecomputeWorker:
    def _worker(self, env, projections=None):
        return RecomputeWorker(env.repository, env.stock, env.ledger, env.clock, projections, env.events)

    def test_recompute_updates_projection(self):
        env = _Env(reserved={"B-1": 20})
        projections = BundleProjectionStore()
        assert self._worker(env, projections).process(_recompute()) == JobOutcome.DONE
        latest = projections.get("B-1")
        assert latest["max_quantity"] == 30
        assert latest["total_bundle_price"] == 900
        assert len(env.events.of_type(BUNDLE_RECOMPUTED_V1)) == 1

    def test_unknown_bundle(self):
        assert self._worker(_Env()).process(_recompute("nope")) == JobOutcome.NOT_FOUND

    def test_broken_bundle(self):
        env = _Env(bundles=[_bundle().with_component_states({})])
        assert self._worker(env).process(_recompute()) == JobOutcome.BROKEN

    def test_reconcile_command(self):
        env = _Env(reserved={"B-1": 9})
        env.orders.record("O-1", OrderState.PAYMENT_SETTLED, {"B-1": 2})
        command = ReconcileReservationCommand(bundle_id="B-1", requested_at=NOW)
        assert self._worker(env).process(command) == JobOutcome.DONE
        assert env.ledger.get("B-1") == 2
        assert env.events.of_type(BUNDLE_RESERVATION_RECONCILED_V1)[0]["previous"] == 9

    def test_run_pending_drains_queue(self):
        env = _Env(bundles=[_bundle("B-1"), _bundle("B-2")])
        queue = RecomputeQueue()
        assert queue.enqueue(_recompute("B-1"))
        assert not queue.enqueue(_recompute("B-1"))
        assert queue.enqueue(_recompute("B-2"))
        assert queue.enqueue(ReconcileReservationCommand(bundle_id="B-1", requested_at=NOW))
        counts = self._worker(env).run_pending(queue)
        assert counts == {JobOutcome.DONE: 3}
        assert len(queue) == 0

    def test_second_recompute_in_flight_is_skipped(self):
        env = _Env()
        entered = threading.Event()
        release = threading.Event()
        original = env.stock.get_stock_snapshot

        def slow_snapshot(variant_id):
            entered.set()
            release.wait(timeout=5)
            return original(variant_id)

        env.stock.get_stock_snapshot = slow_snapshot
        worker = self._worker(env)
        outcomes = []
        thread = threading.Thread(target=lambda: outcomes.append(worker.process(_recompute())))
        thread.start()
        assert entered.wait(timeout=5)

        assert worker.process(_recompute()) == JobOutcome.SKIPPED
        release.set()
        thread.join()
        assert outcomes == [JobOutcome.DONE]

    def test_invalid_command_fields(self):
        with pytest.raises(ValueError):
            RecomputeBundleCommand(bundle_id="B-1", reason="because", requested_at=NOW)
        with pytest.raises(ValueError):
            RecomputeBundleCommand(bundle_id="", reason=RecomputeReason.MANUAL, requested_at=NOW)
