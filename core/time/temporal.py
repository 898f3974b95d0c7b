"""
Bundles Core Time — Schedule Windows
=====================================
Pure interval helpers. Every function takes the instant to test
explicitly; nothing here reads a clock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class ScheduleWindow:
    """
    A closed interval [valid_from, valid_to] where either bound may be
    missing. A missing bound is unbounded on that side.

    Invariant: valid_from <= valid_to when both are present.
    """

    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None

    def __post_init__(self) -> None:
        if (
            self.valid_from is not None
            and self.valid_to is not None
            and self.valid_from > self.valid_to
        ):
            raise ValueError(
                f"valid_from ({self.valid_from}) must be <= valid_to ({self.valid_to})."
            )

    @property
    def is_unbounded(self) -> bool:
        return self.valid_from is None and self.valid_to is None

    def contains(self, now: datetime) -> bool:
        """Inclusive on both bounds."""
        if self.valid_from is not None and now < self.valid_from:
            return False
        if self.valid_to is not None and now > self.valid_to:
            return False
        return True

    def has_started(self, now: datetime) -> bool:
        return self.valid_from is None or now >= self.valid_from

    def has_ended(self, now: datetime) -> bool:
        return self.valid_to is not None and now > self.valid_to


def availability_message(window: ScheduleWindow, now: datetime) -> str:
    """Human-readable reason a window does or does not cover ``now``."""
    if not window.has_started(now):
        return f"Available from {window.valid_from.isoformat()}"
    if window.has_ended(now):
        return f"Expired on {window.valid_to.isoformat()}"
    return "Available"
