"""
Bundle Engine — Event Types and Payload Builders
=================================================
Diagnostics emitted by the engine for the host to record or forward.
The engine builds payloads only; delivery belongs to the host.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from engines.bundle.availability_engine import AvailabilityResult


# ══════════════════════════════════════════════════════════════
# EVENT TYPE CONSTANTS
# ══════════════════════════════════════════════════════════════

BUNDLE_PUBLISHED_V1 = "bundle.published.v1"
BUNDLE_ARCHIVED_V1 = "bundle.archived.v1"
BUNDLE_RECOMPUTED_V1 = "bundle.recomputed.v1"
BUNDLE_HEALTH_CHANGED_V1 = "bundle.health_changed.v1"
BUNDLE_RESERVATION_ADJUSTED_V1 = "bundle.reservation.adjusted.v1"
BUNDLE_RESERVATION_RECONCILED_V1 = "bundle.reservation.reconciled.v1"

BUNDLE_EVENT_TYPES = (
    BUNDLE_PUBLISHED_V1,
    BUNDLE_ARCHIVED_V1,
    BUNDLE_RECOMPUTED_V1,
    BUNDLE_HEALTH_CHANGED_V1,
    BUNDLE_RESERVATION_ADJUSTED_V1,
    BUNDLE_RESERVATION_RECONCILED_V1,
)


# ══════════════════════════════════════════════════════════════
# PAYLOAD BUILDERS
# ══════════════════════════════════════════════════════════════

def build_status_changed_payload(bundle_id: str, status: str, at: datetime) -> dict:
    return {"bundle_id": bundle_id, "status": status, "changed_at": at}


def build_recomputed_payload(
    bundle_id: str,
    availability: AvailabilityResult,
    total_bundle_price: Optional[int],
    at: datetime,
) -> dict:
    return {
        "bundle_id": bundle_id,
        "is_available": availability.is_available,
        "max_quantity": availability.max_quantity,
        "availability_status": availability.status,
        "total_bundle_price": total_bundle_price,
        "recomputed_at": at,
    }


def build_health_changed_payload(previous, current, at: datetime) -> dict:
    return {
        "bundle_id": current.bundle_id,
        "previous": previous.to_dict() if previous is not None else None,
        "current": current.to_dict(),
        "detected_at": at,
    }


def build_reservation_adjusted_payload(
    bundle_id: str,
    delta: int,
    reserved_open: int,
    order_id: Optional[str],
    at: datetime,
) -> dict:
    return {
        "bundle_id": bundle_id,
        "delta": delta,
        "reserved_open": reserved_open,
        "order_id": order_id,
        "adjusted_at": at,
    }


def build_reservation_reconciled_payload(result, at: datetime) -> dict:
    return {
        "bundle_id": result.bundle_id,
        "previous": result.previous,
        "recomputed": result.recomputed,
        "open_orders": result.open_orders,
        "reconciled_at": at,
    }


# ══════════════════════════════════════════════════════════════
# SINKS
# ══════════════════════════════════════════════════════════════

class EventSink(Protocol):
    def emit(self, event_type: str, payload: dict) -> None:
        ...


class InMemoryEventSink:
    """Collects emitted events in order. Used in tests and bootstrap."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[Tuple[str, dict]] = []

    def emit(self, event_type: str, payload: dict) -> None:
        if event_type not in BUNDLE_EVENT_TYPES:
            raise ValueError(f"Unknown bundle event type '{event_type}'.")
        with self._lock:
            self._events.append((event_type, payload))

    @property
    def events(self) -> List[Tuple[str, dict]]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: str) -> List[dict]:
        return [payload for kind, payload in self.events if kind == event_type]
