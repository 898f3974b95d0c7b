"""
Bundles Reservation Store - DB-backed Provider
==============================================
ReservationStore implementation over BundleReservation rows.

Every mutation is one conditional UPDATE evaluated by the database
(F expressions), so concurrent transitions on the same bundle id never
lose an update. Decrements clamp at zero inside the same statement.
"""

from __future__ import annotations

from django.db import transaction
from django.db.models import F, IntegerField, Value
from django.db.models.functions import Greatest, Now

from core.reservation_store.models import BundleReservation


class DbReservationStore:
    def get(self, bundle_id: str) -> int:
        row = (
            BundleReservation.objects.filter(bundle_id=bundle_id)
            .values_list("reserved_open", flat=True)
            .first()
        )
        return row or 0

    def add(self, bundle_id: str, delta: int) -> int:
        with transaction.atomic():
            BundleReservation.objects.get_or_create(bundle_id=bundle_id)
            rows = BundleReservation.objects.filter(bundle_id=bundle_id)
            if delta >= 0:
                rows.update(reserved_open=F("reserved_open") + delta, updated_at=Now())
            else:
                rows.update(
                    reserved_open=Greatest(
                        F("reserved_open") - (-delta),
                        Value(0),
                        output_field=IntegerField(),
                    ),
                    updated_at=Now(),
                )
            return rows.values_list("reserved_open", flat=True).get()

    def replace(self, bundle_id: str, value: int) -> int:
        if value < 0:
            raise ValueError(f"Reserved count cannot be negative, got {value}.")
        with transaction.atomic():
            BundleReservation.objects.update_or_create(
                bundle_id=bundle_id,
                defaults={"reserved_open": value},
            )
        return value
