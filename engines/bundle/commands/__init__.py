"""
Bundle Engine — Recompute Commands
===================================
Explicit requests processed by the single-flight recompute worker.
A component change notification turns into one of these; nothing in
the engine subscribes to catalogue events implicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


# ══════════════════════════════════════════════════════════════
# COMMAND TYPE CONSTANTS
# ══════════════════════════════════════════════════════════════

BUNDLE_RECOMPUTE_REQUEST = "bundle.recompute.request"
BUNDLE_RESERVATION_RECONCILE_REQUEST = "bundle.reservation.reconcile.request"

BUNDLE_COMMAND_TYPES = frozenset({
    BUNDLE_RECOMPUTE_REQUEST,
    BUNDLE_RESERVATION_RECONCILE_REQUEST,
})


class ChangeType:
    """What changed on a component variant."""
    PRICE = "price"
    STOCK = "stock"
    AVAILABILITY = "availability"
    DELETION = "deletion"
    STATUS = "status"

    ALL = frozenset({"price", "stock", "availability", "deletion", "status"})


class RecomputeReason:
    VARIANT_UPDATED = "variant_updated"
    VARIANT_DELETED = "variant_deleted"
    HEALTH_CHANGED = "health_changed"
    MANUAL = "manual"

    ALL = frozenset({"variant_updated", "variant_deleted", "health_changed", "manual"})


# ══════════════════════════════════════════════════════════════
# REQUEST COMMANDS
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RecomputeBundleCommand:
    """Refresh derived pricing/availability outputs for one bundle."""
    bundle_id: str
    reason: str
    requested_at: datetime
    variant_id: Optional[str] = None
    change_type: Optional[str] = None

    command_type = BUNDLE_RECOMPUTE_REQUEST

    def __post_init__(self):
        if not self.bundle_id:
            raise ValueError("bundle_id must be non-empty.")
        if self.reason not in RecomputeReason.ALL:
            raise ValueError(f"reason '{self.reason}' not valid.")
        if self.change_type is not None and self.change_type not in ChangeType.ALL:
            raise ValueError(f"change_type '{self.change_type}' not valid.")

    def to_payload(self) -> dict:
        return {
            "command_type": self.command_type,
            "bundle_id": self.bundle_id,
            "reason": self.reason,
            "variant_id": self.variant_id,
            "change_type": self.change_type,
            "requested_at": self.requested_at.isoformat(),
        }


@dataclass(frozen=True)
class ReconcileReservationCommand:
    """Recount open orders for one bundle and replace its reserved counter."""
    bundle_id: str
    requested_at: datetime

    command_type = BUNDLE_RESERVATION_RECONCILE_REQUEST

    def __post_init__(self):
        if not self.bundle_id:
            raise ValueError("bundle_id must be non-empty.")

    def to_payload(self) -> dict:
        return {
            "command_type": self.command_type,
            "bundle_id": self.bundle_id,
            "requested_at": self.requested_at.isoformat(),
        }
