"""
Bundle Engine — Order State Subscriptions
==========================================
Turns host order-state transitions into reservation ledger updates.

  → PaymentSettled (from a non-open state)            increment
  open state → Shipped / Delivered / Cancelled         decrement
  anything else                                        no-op

Open states are PaymentSettled and PartiallyShipped. Requiring the
previous state to be open keeps Shipped → Delivered from releasing the
same bundles twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from core.time import Clock
from engines.bundle.events import (
    BUNDLE_RESERVATION_ADJUSTED_V1,
    build_reservation_adjusted_payload,
)
from engines.bundle.reservation_ledger import OrderState, ReservationLedger

logger = logging.getLogger("bundles.reservations")


BUNDLE_SUBSCRIPTIONS: Dict[str, str] = {
    "order.state_transition": "handle_event",
}


@dataclass(frozen=True)
class OrderStateTransition:
    order_id: str
    from_state: str
    to_state: str
    bundle_id: str
    quantity: int

    def __post_init__(self):
        if not self.order_id:
            raise ValueError("order_id must be non-empty.")
        if not self.bundle_id:
            raise ValueError("bundle_id must be non-empty.")
        if not isinstance(self.quantity, int) or self.quantity <= 0:
            raise ValueError("quantity must be positive integer.")

    @property
    def delta(self) -> int:
        opens = (
            self.to_state == OrderState.PAYMENT_SETTLED
            and self.from_state not in OrderState.OPEN
        )
        if opens:
            return self.quantity
        closes = (
            self.to_state in OrderState.CLOSING
            and self.from_state in OrderState.OPEN
        )
        if closes:
            return -self.quantity
        return 0


class BundleOrderSubscriptionHandler:
    """
    Handles order-state notifications from the host.
    One notification per (order, bundle) pair.
    """

    def __init__(self, ledger: ReservationLedger, clock: Clock, events=None, bundle_caps=None):
        self._ledger = ledger
        self._clock = clock
        self._events = events
        self._bundle_caps = bundle_caps

    def handle_transition(self, transition: OrderStateTransition) -> Optional[int]:
        """Apply the transition; returns the new reserved count, or None if ignored."""
        delta = transition.delta
        if delta == 0:
            logger.debug(
                "Order %s %s → %s does not affect bundle %s reservations",
                transition.order_id, transition.from_state, transition.to_state,
                transition.bundle_id,
            )
            return None

        if delta > 0:
            cap = self._bundle_caps(transition.bundle_id) if self._bundle_caps else None
            reserved = self._ledger.increment(transition.bundle_id, delta, bundle_cap=cap)
        else:
            reserved = self._ledger.decrement(transition.bundle_id, -delta)

        if self._events is not None:
            self._events.emit(
                BUNDLE_RESERVATION_ADJUSTED_V1,
                build_reservation_adjusted_payload(
                    transition.bundle_id, delta, reserved,
                    transition.order_id, self._clock.now_utc(),
                ),
            )
        return reserved

    def handle_event(self, event_data: dict) -> Optional[int]:
        """
        Event payload fields used:
            order_id, from_state, to_state, bundle_id, quantity
        Malformed payloads are ignored.
        """
        payload = event_data.get("payload", {})
        try:
            transition = OrderStateTransition(
                order_id=str(payload.get("order_id") or ""),
                from_state=str(payload.get("from_state") or ""),
                to_state=str(payload.get("to_state") or ""),
                bundle_id=str(payload.get("bundle_id") or ""),
                quantity=int(payload.get("quantity", 0)),
            )
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed order transition payload: %r", payload)
            return None
        return self.handle_transition(transition)
