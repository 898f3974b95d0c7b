from __future__ import annotations

import pytest

from core.reservation_store.models import BundleReservation
from core.reservation_store.provider import DbReservationStore
from engines.bundle.reservation_ledger import (
    InMemoryOrderStore,
    OrderState,
    ReservationLedger,
)

pytestmark = pytest.mark.django_db(transaction=True)


def test_db_store_starts_at_zero_without_a_row() -> None:
    store = DbReservationStore()
    assert store.get("bundle-unknown") == 0
    assert not BundleReservation.objects.filter(bundle_id="bundle-unknown").exists()


def test_db_store_add_creates_row_and_accumulates() -> None:
    store = DbReservationStore()
    assert store.add("bundle-a", 3) == 3
    assert store.add("bundle-a", 4) == 7
    assert store.get("bundle-a") == 7
    assert BundleReservation.objects.get(bundle_id="bundle-a").reserved_open == 7


def test_db_store_decrement_clamps_at_zero() -> None:
    store = DbReservationStore()
    store.add("bundle-a", 2)
    assert store.add("bundle-a", -5) == 0
    assert store.add("bundle-a", -1) == 0
    assert store.get("bundle-a") == 0


def test_db_store_replace_overwrites_counter() -> None:
    store = DbReservationStore()
    store.add("bundle-a", 9)
    assert store.replace("bundle-a", 4) == 4
    assert store.get("bundle-a") == 4
    assert store.replace("bundle-b", 1) == 1
    assert BundleReservation.objects.count() == 2


def test_db_store_replace_rejects_negative() -> None:
    with pytest.raises(ValueError):
        DbReservationStore().replace("bundle-a", -1)


def test_ledger_over_db_store_reconciles_from_open_orders() -> None:
    orders = InMemoryOrderStore()
    orders.record("order-1", OrderState.PAYMENT_SETTLED, {"bundle-a": 2})
    orders.record("order-2", OrderState.SHIPPED, {"bundle-a": 5})
    ledger = ReservationLedger(DbReservationStore(), orders)

    ledger.increment("bundle-a", 6)
    ledger.decrement("bundle-a", 1)
    assert ledger.get("bundle-a") == 5

    result = ledger.reconcile("bundle-a")
    assert result.previous == 5
    assert result.recomputed == 2
    assert ledger.get("bundle-a") == 2
