"""
Bundles Core Time — Public API
===============================
Explicit clock protocol and schedule-window helpers.
"""

from core.time.clock import Clock, FixedClock, SystemClock
from core.time.temporal import ScheduleWindow, availability_message

__all__ = [
    "Clock",
    "FixedClock",
    "SystemClock",
    "ScheduleWindow",
    "availability_message",
]
