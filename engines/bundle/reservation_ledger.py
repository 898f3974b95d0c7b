"""
Bundle Engine — Reservation Ledger
===================================
Tracks bundle_reserved_open: bundles sold (paid) but not yet fulfilled.
This is capacity accounting, independent of component stock.

Primary path:   increment / decrement, driven by order state transitions.
Safety net:     reconcile, which recounts open orders and replaces the value.

RULES:
- The counter is never negative; decrements clamp at 0.
- Every mutation is a single atomic store operation (no read-then-write).
- reconcile is single-flight per bundle id; a concurrent second call
  for the same bundle is skipped.
- reserved > bundle_cap is "overbooked": logged as a warning, and
  virtual stock degrades to 0, never below.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from engines.bundle.single_flight import SingleFlight

logger = logging.getLogger("bundles.reservations")


class OrderState:
    """Host order states the ledger cares about."""
    ARRANGING_PAYMENT = "ArrangingPayment"
    PAYMENT_AUTHORIZED = "PaymentAuthorized"
    PAYMENT_SETTLED = "PaymentSettled"
    PARTIALLY_SHIPPED = "PartiallyShipped"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"

    # paid, not yet fulfilled
    OPEN = frozenset({"PaymentSettled", "PartiallyShipped"})
    CLOSING = frozenset({"Shipped", "Delivered", "Cancelled"})


# ══════════════════════════════════════════════════════════════
# COLLABORATORS
# ══════════════════════════════════════════════════════════════

class ReservationStore(Protocol):
    """Persistent home of the per-bundle counter. All writes are atomic."""

    def get(self, bundle_id: str) -> int:
        ...

    def add(self, bundle_id: str, delta: int) -> int:
        """Atomically add delta (may be negative), clamp at 0, return the new value."""
        ...

    def replace(self, bundle_id: str, value: int) -> int:
        ...


class InMemoryReservationStore:
    """Thread-safe in-memory counter store. Used in tests and bootstrap."""

    def __init__(self, initial: Optional[Dict[str, int]] = None):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = dict(initial or {})

    def get(self, bundle_id: str) -> int:
        with self._lock:
            return self._counters.get(bundle_id, 0)

    def add(self, bundle_id: str, delta: int) -> int:
        with self._lock:
            value = max(0, self._counters.get(bundle_id, 0) + delta)
            self._counters[bundle_id] = value
            return value

    def replace(self, bundle_id: str, value: int) -> int:
        if value < 0:
            raise ValueError(f"Reserved count cannot be negative, got {value}.")
        with self._lock:
            self._counters[bundle_id] = value
            return value


@dataclass(frozen=True)
class OpenOrderRef:
    order_id: str
    quantity: int


class OrderStore(Protocol):
    """Authoritative order records, read by reconcile."""

    def find_open_orders_containing_bundle(self, bundle_id: str) -> Iterable[OpenOrderRef]:
        ...


class InMemoryOrderStore:
    """Order records keyed by order id: (state, {bundle_id: bundle quantity})."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._orders: Dict[str, Tuple[str, Dict[str, int]]] = {}

    def record(self, order_id: str, state: str, bundles: Dict[str, int]) -> None:
        with self._lock:
            self._orders[order_id] = (state, dict(bundles))

    def set_state(self, order_id: str, state: str) -> None:
        with self._lock:
            _, bundles = self._orders[order_id]
            self._orders[order_id] = (state, bundles)

    def find_open_orders_containing_bundle(self, bundle_id: str) -> List[OpenOrderRef]:
        with self._lock:
            return [
                OpenOrderRef(order_id=order_id, quantity=bundles[bundle_id])
                for order_id, (state, bundles) in sorted(self._orders.items())
                if state in OrderState.OPEN and bundle_id in bundles
            ]


# ══════════════════════════════════════════════════════════════
# RESULTS
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ReservationStatus:
    bundle_id: str
    bundle_cap: Optional[int]
    reserved: int
    virtual_stock: Optional[int]    # None = unbounded
    overbooked: bool

    def to_dict(self) -> dict:
        return {
            "bundle_id": self.bundle_id,
            "bundle_cap": self.bundle_cap,
            "reserved": self.reserved,
            "virtual_stock": self.virtual_stock,
            "overbooked": self.overbooked,
        }


@dataclass(frozen=True)
class ReconcileResult:
    bundle_id: str
    skipped: bool
    previous: Optional[int] = None
    recomputed: Optional[int] = None
    open_orders: int = 0

    @property
    def corrected(self) -> bool:
        return not self.skipped and self.previous != self.recomputed


# ══════════════════════════════════════════════════════════════
# LEDGER
# ══════════════════════════════════════════════════════════════

def _require_positive(qty: int) -> None:
    if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
        raise ValueError(f"Quantity must be a positive integer, got {qty!r}.")


class ReservationLedger:
    """
    Usage:
        ledger = ReservationLedger(InMemoryReservationStore(), orders)
        ledger.increment("bundle-1", 2)
        ledger.reconcile("bundle-1")
    """

    def __init__(self, store: ReservationStore, orders: Optional[OrderStore] = None):
        self._store = store
        self._orders = orders
        self._flights = SingleFlight()

    def get(self, bundle_id: str) -> int:
        return self._store.get(bundle_id)

    def increment(self, bundle_id: str, qty: int, *, bundle_cap: Optional[int] = None) -> int:
        _require_positive(qty)
        value = self._store.add(bundle_id, qty)
        logger.info("Reserved %d of bundle %s (open: %d)", qty, bundle_id, value)
        if bundle_cap is not None and value > bundle_cap:
            logger.warning(
                "Bundle %s is overbooked: %d reserved against a cap of %d",
                bundle_id, value, bundle_cap,
            )
        return value

    def decrement(self, bundle_id: str, qty: int) -> int:
        _require_positive(qty)
        value = self._store.add(bundle_id, -qty)
        logger.info("Released %d of bundle %s (open: %d)", qty, bundle_id, value)
        return value

    def adjust(self, bundle_id: str, delta: int, *, bundle_cap: Optional[int] = None) -> int:
        """Signed adjustment; returns the new reserved count."""
        if delta > 0:
            return self.increment(bundle_id, delta, bundle_cap=bundle_cap)
        if delta < 0:
            return self.decrement(bundle_id, -delta)
        return self._store.get(bundle_id)

    def reconcile(self, bundle_id: str) -> ReconcileResult:
        """Recount open orders for the bundle and replace the stored value."""
        if self._orders is None:
            raise RuntimeError("reconcile requires an OrderStore.")
        with self._flights.claim(bundle_id) as acquired:
            if not acquired:
                logger.debug("Reconcile for bundle %s already in flight; skipped", bundle_id)
                return ReconcileResult(bundle_id=bundle_id, skipped=True)

            previous = self._store.get(bundle_id)
            open_orders = list(self._orders.find_open_orders_containing_bundle(bundle_id))
            recomputed = sum(o.quantity for o in open_orders)
            self._store.replace(bundle_id, recomputed)
            if recomputed != previous:
                logger.warning(
                    "Reservation drift on bundle %s: stored %d, recounted %d",
                    bundle_id, previous, recomputed,
                )
            return ReconcileResult(
                bundle_id=bundle_id,
                skipped=False,
                previous=previous,
                recomputed=recomputed,
                open_orders=len(open_orders),
            )

    def status(self, bundle_id: str, bundle_cap: Optional[int]) -> ReservationStatus:
        reserved = self._store.get(bundle_id)
        overbooked = bundle_cap is not None and reserved > bundle_cap
        if overbooked:
            logger.warning(
                "Bundle %s is overbooked: %d reserved against a cap of %d",
                bundle_id, reserved, bundle_cap,
            )
        return ReservationStatus(
            bundle_id=bundle_id,
            bundle_cap=bundle_cap,
            reserved=reserved,
            virtual_stock=None if bundle_cap is None else max(0, bundle_cap - reserved),
            overbooked=overbooked,
        )
