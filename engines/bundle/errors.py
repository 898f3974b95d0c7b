"""
Bundle Engine — Errors
=======================
Structured errors for bundle operations.

Taxonomy:
    ConfigurationError  — invalid bundle definition or policy, raised at
                          creation/edit time and before any pricing.
    IntegrityViolation  — a component referenced by the bundle is missing,
                          deleted or disabled; pricing and availability
                          are refused for the bundle.
    DriftError          — allocation invariant failure. Never reachable
                          through a correct allocation; fail-fast.

Availability outcomes ("insufficient stock", "out of schedule",
"capacity exhausted") are NOT errors. They are returned as
AvailabilityResult values.
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple


class BundleError(Exception):
    """Base error for bundle engine operations."""
    pass


class ConfigurationError(BundleError):
    """Bundle definition (or promotion policy) failed validation."""

    def __init__(self, problems: Iterable[str], bundle_id: Optional[str] = None):
        self.problems: Tuple[str, ...] = tuple(problems)
        self.bundle_id = bundle_id
        prefix = f"Bundle '{bundle_id}' is invalid" if bundle_id else "Invalid configuration"
        super().__init__(f"{prefix}: {'; '.join(self.problems)}")


class IntegrityViolation(BundleError):
    """A bundle references components that are missing, deleted or disabled."""

    def __init__(self, bundle_id: str, variant_ids: Iterable[str]):
        self.bundle_id = bundle_id
        self.variant_ids: Tuple[str, ...] = tuple(variant_ids)
        super().__init__(
            f"Bundle '{bundle_id}' is broken: unavailable component(s) "
            f"{', '.join(self.variant_ids)}."
        )


class DriftError(BundleError):
    """Allocated discounts do not reconcile with the bundle total, or a price went negative."""

    def __init__(self, bundle_id: str, expected: int, actual: int, detail: str):
        self.bundle_id = bundle_id
        self.expected = expected
        self.actual = actual
        self.detail = detail
        super().__init__(
            f"Allocation drift on bundle '{bundle_id}': {detail} "
            f"(expected {expected}, got {actual})."
        )
