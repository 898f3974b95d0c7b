"""
Bundle Engine — Application Service
====================================
Orchestrates the pure engines against host collaborators:

  BundleService     — add-to-cart, checkout revalidation, price preview,
                      promotion guarding, lifecycle (publish / archive)
  RecomputeQueue    — pending recompute/reconcile commands, deduplicated
  RecomputeWorker   — single-flight per bundle id; re-reads fresh data and
                      re-invokes allocation / availability
  BundleProjectionStore — latest recompute outputs (display cache)

The "read snapshot → compute availability → commit" sequence belongs to
the host's transaction boundary; this service re-runs availability at
add-to-cart time and again in validate_checkout.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Protocol, Sequence, Set, Tuple

from core.time import Clock
from engines.bundle.allocation_engine import AllocationResult, allocate, build_bundle_lines
from engines.bundle.availability_engine import AvailabilityResult, compute_availability
from engines.bundle.commands import ReconcileReservationCommand, RecomputeBundleCommand
from engines.bundle.config import PolicyStore
from engines.bundle.errors import ConfigurationError, IntegrityViolation
from engines.bundle.events import (
    BUNDLE_ARCHIVED_V1,
    BUNDLE_PUBLISHED_V1,
    BUNDLE_RECOMPUTED_V1,
    BUNDLE_RESERVATION_RECONCILED_V1,
    build_recomputed_payload,
    build_reservation_reconciled_payload,
    build_status_changed_payload,
)
from engines.bundle.models import (
    BundleDefinition,
    BundleLineMetadata,
    BundleStatus,
    PromotionRef,
    StockSnapshot,
)
from engines.bundle.policies import GuardBatch, evaluate_promotion_for_lines
from engines.bundle.reservation_ledger import ReservationLedger, ReservationStatus
from engines.bundle.single_flight import SingleFlight

logger = logging.getLogger("bundles.jobs")


# ══════════════════════════════════════════════════════════════
# PROTOCOLS & IN-MEMORY COLLABORATORS
# ══════════════════════════════════════════════════════════════

class BundleRepository(Protocol):
    def get(self, bundle_id: str) -> Optional[BundleDefinition]:
        ...

    def save(self, bundle: BundleDefinition) -> None:
        ...

    def list_bundles(self, status: Optional[BundleStatus] = None) -> List[BundleDefinition]:
        ...

    def find_bundles_containing_variant(self, variant_id: str) -> List[BundleDefinition]:
        ...


class InMemoryBundleRepository:
    def __init__(self, bundles: Sequence[BundleDefinition] = ()):
        self._lock = threading.Lock()
        self._bundles: Dict[str, BundleDefinition] = {b.bundle_id: b for b in bundles}

    def get(self, bundle_id: str) -> Optional[BundleDefinition]:
        with self._lock:
            return self._bundles.get(bundle_id)

    def save(self, bundle: BundleDefinition) -> None:
        with self._lock:
            self._bundles[bundle.bundle_id] = bundle

    def list_bundles(self, status: Optional[BundleStatus] = None) -> List[BundleDefinition]:
        with self._lock:
            return [
                b for _, b in sorted(self._bundles.items())
                if status is None or b.status == status
            ]

    def find_bundles_containing_variant(self, variant_id: str) -> List[BundleDefinition]:
        return [b for b in self.list_bundles() if b.contains_variant(variant_id)]


class StockProvider(Protocol):
    def get_stock_snapshot(self, variant_id: str) -> Optional[StockSnapshot]:
        ...


class InMemoryStockProvider:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stock: Dict[str, StockSnapshot] = {}

    def set_stock(self, variant_id: str, on_hand: int, allocated: int = 0) -> None:
        with self._lock:
            self._stock[variant_id] = StockSnapshot(variant_id, on_hand, allocated)

    def get_stock_snapshot(self, variant_id: str) -> Optional[StockSnapshot]:
        with self._lock:
            return self._stock.get(variant_id)


def read_snapshots(stock: StockProvider, bundle: BundleDefinition) -> Dict[str, StockSnapshot]:
    snapshots = {}
    for comp in bundle.components:
        snapshot = stock.get_stock_snapshot(comp.variant_id)
        if snapshot is not None:
            snapshots[comp.variant_id] = snapshot
    return snapshots


# ══════════════════════════════════════════════════════════════
# RECOMPUTE QUEUE
# ══════════════════════════════════════════════════════════════

class RecomputeQueue:
    """
    FIFO of pending commands. A command whose (type, bundle_id) is
    already pending is dropped; the pending one will read fresh data.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: Deque = deque()
        self._pending: Set[Tuple[str, str]] = set()

    def enqueue(self, command) -> bool:
        key = (command.command_type, command.bundle_id)
        with self._lock:
            if key in self._pending:
                return False
            self._pending.add(key)
            self._items.append(command)
            return True

    def pop(self):
        with self._lock:
            if not self._items:
                return None
            command = self._items.popleft()
            self._pending.discard((command.command_type, command.bundle_id))
            return command

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


# ══════════════════════════════════════════════════════════════
# PROJECTION STORE
# ══════════════════════════════════════════════════════════════

class BundleProjectionStore:
    """Latest recompute output per bundle, built from emitted events."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latest: Dict[str, dict] = {}

    def apply(self, event_type: str, payload: dict) -> None:
        if event_type != BUNDLE_RECOMPUTED_V1:
            return
        with self._lock:
            self._latest[payload["bundle_id"]] = dict(payload)

    def get(self, bundle_id: str) -> Optional[dict]:
        with self._lock:
            return self._latest.get(bundle_id)


# ══════════════════════════════════════════════════════════════
# RECOMPUTE WORKER
# ══════════════════════════════════════════════════════════════

class JobOutcome:
    DONE = "DONE"
    SKIPPED = "SKIPPED"
    NOT_FOUND = "NOT_FOUND"
    BROKEN = "BROKEN"
    FAILED = "FAILED"

    ALL = frozenset({"DONE", "SKIPPED", "NOT_FOUND", "BROKEN", "FAILED"})


class RecomputeWorker:
    """
    Processes recompute and reconcile commands.

    Single-flight per bundle id: a command for a bundle that is already
    being processed is skipped. Distinct bundles may run in parallel.
    """

    def __init__(
        self,
        repository: BundleRepository,
        stock: StockProvider,
        ledger: ReservationLedger,
        clock: Clock,
        projections: Optional[BundleProjectionStore] = None,
        events=None,
    ):
        self._repository = repository
        self._stock = stock
        self._ledger = ledger
        self._clock = clock
        self._projections = projections
        self._events = events
        self._flights = SingleFlight()

    def process(self, command) -> str:
        with self._flights.claim(command.bundle_id) as acquired:
            if not acquired:
                logger.debug("Bundle %s already in flight; skipped", command.bundle_id)
                return JobOutcome.SKIPPED
            if isinstance(command, ReconcileReservationCommand):
                return self._reconcile(command)
            if isinstance(command, RecomputeBundleCommand):
                return self._recompute(command)
            raise ValueError(f"Unsupported command {type(command).__name__}.")

    def run_pending(self, queue: RecomputeQueue) -> Dict[str, int]:
        """Drain the queue; returns a count per outcome."""
        counts: Dict[str, int] = {}
        while True:
            command = queue.pop()
            if command is None:
                break
            outcome = self.process(command)
            counts[outcome] = counts.get(outcome, 0) + 1
        return counts

    def _recompute(self, command: RecomputeBundleCommand) -> str:
        bundle = self._repository.get(command.bundle_id)
        if bundle is None:
            logger.warning("Recompute requested for unknown bundle %s", command.bundle_id)
            return JobOutcome.NOT_FOUND

        now = self._clock.now_utc()
        try:
            availability = compute_availability(
                bundle,
                read_snapshots(self._stock, bundle),
                self._ledger.get(bundle.bundle_id),
                now=now,
            )
            price = allocate(bundle, 1).total_bundle_price
        except IntegrityViolation as exc:
            logger.error(str(exc))
            return JobOutcome.BROKEN
        except ConfigurationError as exc:
            logger.error("Recompute failed for bundle %s: %s", bundle.bundle_id, exc)
            return JobOutcome.FAILED

        self._emit(
            BUNDLE_RECOMPUTED_V1,
            build_recomputed_payload(bundle.bundle_id, availability, price, now),
        )
        logger.info(
            "Recomputed bundle %s (%s): max %d, price %d",
            bundle.bundle_id, command.reason, availability.max_quantity, price,
        )
        return JobOutcome.DONE

    def _reconcile(self, command: ReconcileReservationCommand) -> str:
        result = self._ledger.reconcile(command.bundle_id)
        if result.skipped:
            return JobOutcome.SKIPPED
        self._emit(
            BUNDLE_RESERVATION_RECONCILED_V1,
            build_reservation_reconciled_payload(result, self._clock.now_utc()),
        )
        return JobOutcome.DONE

    def _emit(self, event_type: str, payload: dict) -> None:
        if self._events is not None:
            self._events.emit(event_type, payload)
        if self._projections is not None:
            self._projections.apply(event_type, payload)


# ══════════════════════════════════════════════════════════════
# BUNDLE SERVICE
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AddBundleResult:
    """lines is empty when the request could not be satisfied."""
    availability: AvailabilityResult
    bundle_key: Optional[str] = None
    lines: Tuple[BundleLineMetadata, ...] = ()

    @property
    def added(self) -> bool:
        return bool(self.lines)


@dataclass(frozen=True)
class CheckoutValidation:
    results: Dict[str, AvailabilityResult] = field(default_factory=dict)

    @property
    def failures(self) -> Dict[str, AvailabilityResult]:
        return {k: r for k, r in self.results.items() if not r.is_satisfiable}

    @property
    def ok(self) -> bool:
        return not self.failures


class BundleService:
    def __init__(
        self,
        repository: BundleRepository,
        stock: StockProvider,
        ledger: ReservationLedger,
        clock: Clock,
        policy_store: Optional[PolicyStore] = None,
        events=None,
    ):
        self._repository = repository
        self._stock = stock
        self._ledger = ledger
        self._clock = clock
        self._policy_store = policy_store
        self._events = events

    def _require(self, bundle_id: str) -> BundleDefinition:
        bundle = self._repository.get(bundle_id)
        if bundle is None:
            raise ValueError(f"Bundle '{bundle_id}' not found.")
        return bundle

    # ── Availability & pricing ────────────────────────────────

    def check_availability(
        self, bundle_id: str, quantity: Optional[int] = None,
    ) -> AvailabilityResult:
        bundle = self._require(bundle_id)
        return compute_availability(
            bundle,
            read_snapshots(self._stock, bundle),
            self._ledger.get(bundle_id),
            now=self._clock.now_utc(),
            requested_quantity=quantity,
        )

    def preview_price(self, bundle_id: str, quantity: int = 1) -> AllocationResult:
        return allocate(self._require(bundle_id), quantity)

    def add_bundle_to_order(
        self,
        bundle_id: str,
        quantity: int,
        bundle_key: Optional[str] = None,
    ) -> AddBundleResult:
        """Availability first; allocate only when the quantity can be sold."""
        availability = self.check_availability(bundle_id, quantity)
        if not availability.is_satisfiable:
            logger.info(
                "Bundle %s x%d not added: %s",
                bundle_id, quantity, availability.reason or availability.status,
            )
            return AddBundleResult(availability=availability)

        bundle_key = bundle_key or str(uuid.uuid4())
        lines = build_bundle_lines(self._require(bundle_id), quantity, bundle_key)
        return AddBundleResult(
            availability=availability,
            bundle_key=bundle_key,
            lines=tuple(lines),
        )

    def validate_checkout(self, lines: Sequence[BundleLineMetadata]) -> CheckoutValidation:
        """
        Re-run availability right before commit. Quantities of every
        purchase of the same bundle are summed; results are keyed by bundle_id.
        """
        quantities: Dict[str, int] = {}
        for line in lines:
            if line.is_bundle_header:
                quantities[line.bundle_id] = quantities.get(line.bundle_id, 0) + line.quantity
        return CheckoutValidation(results={
            bundle_id: self.check_availability(bundle_id, qty)
            for bundle_id, qty in sorted(quantities.items())
        })

    def guard_promotion(
        self,
        lines: Sequence[Optional[BundleLineMetadata]],
        promotion: PromotionRef,
    ) -> GuardBatch:
        if self._policy_store is None:
            raise ValueError("guard_promotion requires a PolicyStore.")
        policy = self._policy_store.get_promotion_policy()
        return evaluate_promotion_for_lines(lines, promotion, policy)

    def reservation_status(self, bundle_id: str) -> ReservationStatus:
        return self._ledger.status(bundle_id, self._require(bundle_id).bundle_cap)

    # ── Lifecycle ─────────────────────────────────────────────

    def create(self, bundle: BundleDefinition) -> BundleDefinition:
        """Register a new bundle in DRAFT. Invalid definitions are rejected."""
        if self._repository.get(bundle.bundle_id) is not None:
            raise ValueError(f"Bundle '{bundle.bundle_id}' already exists.")
        if bundle.status != BundleStatus.DRAFT:
            raise ValueError("New bundles start in DRAFT.")
        bundle.ensure_valid()
        self._repository.save(bundle)
        return bundle

    def publish(self, bundle_id: str) -> BundleDefinition:
        bundle = self._require(bundle_id)
        if bundle.status != BundleStatus.DRAFT:
            raise ValueError(f"Only DRAFT bundles can be published, '{bundle_id}' is {bundle.status.value}.")
        bundle.ensure_valid()
        bundle.ensure_intact()
        return self._transition(bundle, BundleStatus.ACTIVE, BUNDLE_PUBLISHED_V1)

    def archive(self, bundle_id: str) -> BundleDefinition:
        bundle = self._require(bundle_id)
        if bundle.status != BundleStatus.ACTIVE:
            raise ValueError(f"Only ACTIVE bundles can be archived, '{bundle_id}' is {bundle.status.value}.")
        return self._transition(bundle, BundleStatus.ARCHIVED, BUNDLE_ARCHIVED_V1)

    def _transition(self, bundle: BundleDefinition, status: BundleStatus, event_type: str) -> BundleDefinition:
        updated = bundle.with_status(status)
        self._repository.save(updated)
        logger.info("Bundle %s: %s → %s", bundle.bundle_id, bundle.status.value, status.value)
        if self._events is not None:
            self._events.emit(
                event_type,
                build_status_changed_payload(bundle.bundle_id, status.value, self._clock.now_utc()),
            )
        return updated
