"""
Bundles Reservation Store - App Configuration
=============================================
Persistent per-bundle reserved-but-not-fulfilled counters.

This app:
- Stores one counter row per bundle
- Applies increments / decrements as single UPDATE statements

This app does NOT:
- Decide when a reservation opens or closes (ReservationLedger does)
- Know about bundle caps or availability
"""

from django.apps import AppConfig


class CoreReservationStoreConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "core.reservation_store"
    label = "core_reservation_store"
    verbose_name = "Bundle Reservation Store"
