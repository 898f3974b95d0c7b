"""
Bundles Reservation Store - Relational Counters
===============================================
BundleReservation holds bundle_reserved_open for one bundle.
Rows are created lazily on first mutation.
"""

from __future__ import annotations

from django.db import models


class BundleReservation(models.Model):
    bundle_id = models.CharField(max_length=128, unique=True)
    reserved_open = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "bundle_reservations"
        ordering = ["bundle_id"]

    def __str__(self) -> str:
        return f"{self.bundle_id}:{self.reserved_open}"
