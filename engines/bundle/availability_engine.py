"""
Bundle Engine — Availability Calculator
========================================
How many bundles can be sold right now.

Gate order (each gate is a hard stop):
  1. Status / schedule — ACTIVE and inside [valid_from, valid_to]
  2. Components        — min(floor(effective_available / qty_per_bundle))
  3. Capacity          — bundle_cap - bundle_reserved_open (None = unbounded)
  4. Final             — min(components, capacity)

Outcomes are returned, never raised. Only invalid definitions
(ConfigurationError) and broken components (IntegrityViolation) raise.

Re-evaluate at add-to-cart time and again right before checkout commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Mapping, Optional, Tuple, Union

from engines.bundle.models import (
    BundleDefinition,
    BundleStatus,
    StockSnapshot,
    index_snapshots,
)

logger = logging.getLogger("bundles.availability")


class AvailabilityStatus:
    AVAILABLE = "AVAILABLE"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    CAPACITY_EXHAUSTED = "CAPACITY_EXHAUSTED"
    SCHEDULED = "SCHEDULED"
    EXPIRED = "EXPIRED"
    DRAFT = "DRAFT"
    ARCHIVED = "ARCHIVED"

    ALL = frozenset({
        "AVAILABLE", "OUT_OF_STOCK", "CAPACITY_EXHAUSTED",
        "SCHEDULED", "EXPIRED", "DRAFT", "ARCHIVED",
    })


@dataclass(frozen=True)
class InsufficientItem:
    """A component that cannot cover even one bundle."""
    variant_id: str
    required: int
    available: int
    name: str = ""

    @property
    def shortfall(self) -> int:
        return self.required - self.available

    def to_dict(self) -> dict:
        return {
            "variant_id": self.variant_id,
            "name": self.name,
            "required": self.required,
            "available": self.available,
            "shortfall": self.shortfall,
        }


@dataclass(frozen=True)
class AvailabilityResult:
    """
    max_quantity is A_final. a_shell None means no capacity limit.
    is_satisfiable is only meaningful when requested_quantity was given.
    """
    bundle_id: str
    is_available: bool
    max_quantity: int
    status: str
    reason: Optional[str] = None
    insufficient_items: Tuple[InsufficientItem, ...] = ()
    a_components: Optional[int] = None
    a_shell: Optional[int] = None
    requested_quantity: Optional[int] = None

    @property
    def is_satisfiable(self) -> bool:
        if self.requested_quantity is None:
            return self.is_available
        return 0 < self.requested_quantity <= self.max_quantity

    def to_dict(self) -> dict:
        data = {
            "bundle_id": self.bundle_id,
            "is_available": self.is_available,
            "max_quantity": self.max_quantity,
            "status": self.status,
        }
        if self.reason is not None:
            data["reason"] = self.reason
        if self.insufficient_items:
            data["insufficient_items"] = [i.to_dict() for i in self.insufficient_items]
        if self.requested_quantity is not None:
            data["requested_quantity"] = self.requested_quantity
            data["is_satisfiable"] = self.is_satisfiable
        return data


def compute_a_shell(bundle_cap: Optional[int], reserved_open: int) -> Optional[int]:
    """Remaining marketing capacity; None when the bundle has no cap."""
    if bundle_cap is None:
        return None
    return max(0, bundle_cap - reserved_open)


def compute_availability(
    bundle: BundleDefinition,
    stock_snapshots: Union[Mapping[str, StockSnapshot], Iterable[StockSnapshot]],
    bundle_reserved_open: Optional[int] = None,
    *,
    now: datetime,
    requested_quantity: Optional[int] = None,
) -> AvailabilityResult:
    """
    Evaluate every gate against the supplied snapshots.

    bundle_reserved_open defaults to the value carried on the definition.
    A component with no snapshot counts as zero available.
    """
    bundle.ensure_valid()
    if requested_quantity is not None and requested_quantity <= 0:
        raise ValueError(f"requested_quantity must be positive, got {requested_quantity}")
    reserved = bundle.bundle_reserved_open if bundle_reserved_open is None else bundle_reserved_open
    if reserved < 0:
        raise ValueError(f"bundle_reserved_open cannot be negative, got {reserved}")

    # ── Gate 1: status / schedule ─────────────────────────────
    blocked = _status_gate(bundle, now)
    if blocked is not None:
        status, reason = blocked
        return AvailabilityResult(
            bundle_id=bundle.bundle_id,
            is_available=False,
            max_quantity=0,
            status=status,
            reason=reason,
            requested_quantity=requested_quantity,
        )

    bundle.ensure_intact()

    # ── Gate 2: components ────────────────────────────────────
    if not isinstance(stock_snapshots, Mapping):
        stock_snapshots = index_snapshots(stock_snapshots)
    insufficient: List[InsufficientItem] = []
    a_components: Optional[int] = None
    for comp in bundle.components:
        snapshot = stock_snapshots.get(comp.variant_id)
        available = snapshot.effective_available if snapshot is not None else 0
        per_component = available // comp.quantity_per_bundle
        if available < comp.quantity_per_bundle:
            insufficient.append(InsufficientItem(
                variant_id=comp.variant_id,
                required=comp.quantity_per_bundle,
                available=available,
                name=comp.name,
            ))
        a_components = per_component if a_components is None else min(a_components, per_component)

    # ── Gate 3: capacity ──────────────────────────────────────
    a_shell = compute_a_shell(bundle.bundle_cap, reserved)
    if bundle.bundle_cap is not None and reserved > bundle.bundle_cap:
        logger.warning(
            "Bundle %s is overbooked: %d reserved against a cap of %d",
            bundle.bundle_id, reserved, bundle.bundle_cap,
        )

    # ── Gate 4: final ─────────────────────────────────────────
    a_final = a_components if a_shell is None else min(a_components, a_shell)

    if a_final > 0:
        status, reason = AvailabilityStatus.AVAILABLE, None
    elif a_components == 0:
        status = AvailabilityStatus.OUT_OF_STOCK
        reason = "Insufficient stock for: " + ", ".join(
            i.name or i.variant_id for i in insufficient
        )
    else:
        status = AvailabilityStatus.CAPACITY_EXHAUSTED
        reason = f"Bundle capacity reached ({reserved} of {bundle.bundle_cap} reserved)"

    if requested_quantity is not None and requested_quantity > a_final:
        logger.debug(
            "Bundle %s: requested %d exceeds sellable %d",
            bundle.bundle_id, requested_quantity, a_final,
        )

    return AvailabilityResult(
        bundle_id=bundle.bundle_id,
        is_available=a_final > 0,
        max_quantity=a_final,
        status=status,
        reason=reason,
        insufficient_items=tuple(insufficient),
        a_components=a_components,
        a_shell=a_shell,
        requested_quantity=requested_quantity,
    )


def _status_gate(bundle: BundleDefinition, now: datetime):
    if bundle.status == BundleStatus.DRAFT:
        return AvailabilityStatus.DRAFT, "Bundle is not published"
    if bundle.status == BundleStatus.ARCHIVED:
        return AvailabilityStatus.ARCHIVED, "Bundle is archived"
    if not bundle.schedule.has_started(now):
        return AvailabilityStatus.SCHEDULED, f"Available from {bundle.schedule.valid_from.isoformat()}"
    if bundle.schedule.has_ended(now):
        return AvailabilityStatus.EXPIRED, f"Expired on {bundle.schedule.valid_to.isoformat()}"
    return None
