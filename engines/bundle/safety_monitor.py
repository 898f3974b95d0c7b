"""
Bundle Engine — Safety Monitor
===============================
Computed bundle health and out-of-band consistency checks.

  is_broken    = any component missing, deleted or disabled
  is_expired   = now > valid_to
  is_available = ACTIVE and within schedule and not broken

Health is computed, never persisted. The monitor never touches
bundle_reserved_open or price snapshots; when a bundle's health changes
it only enqueues a RecomputeBundleCommand for downstream refresh.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from core.time import Clock
from engines.bundle.commands import ChangeType, RecomputeBundleCommand, RecomputeReason
from engines.bundle.events import BUNDLE_HEALTH_CHANGED_V1, build_health_changed_payload
from engines.bundle.models import BundleDefinition, BundleStatus, ComponentState

logger = logging.getLogger("bundles.safety")


# ══════════════════════════════════════════════════════════════
# HEALTH
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BundleHealth:
    bundle_id: str
    is_broken: bool
    is_expired: bool
    is_available: bool
    broken_variant_ids: Tuple[str, ...] = ()

    @property
    def signature(self) -> Tuple[bool, bool, bool]:
        return (self.is_broken, self.is_expired, self.is_available)

    def to_dict(self) -> dict:
        return {
            "bundle_id": self.bundle_id,
            "is_broken": self.is_broken,
            "is_expired": self.is_expired,
            "is_available": self.is_available,
            "broken_variant_ids": list(self.broken_variant_ids),
        }


def compute_health(bundle: BundleDefinition, now: datetime) -> BundleHealth:
    return BundleHealth(
        bundle_id=bundle.bundle_id,
        is_broken=bundle.is_broken,
        is_expired=bundle.is_expired(now),
        is_available=bundle.is_available(now),
        broken_variant_ids=tuple(c.variant_id for c in bundle.components if c.is_broken),
    )


# ══════════════════════════════════════════════════════════════
# INTEGRITY
# ══════════════════════════════════════════════════════════════

class IssueType:
    MISSING_VARIANT = "missing_variant"
    ARCHIVED_VARIANT = "archived_variant"
    DISABLED_VARIANT = "disabled_variant"

    ALL = frozenset({"missing_variant", "archived_variant", "disabled_variant"})


_ISSUE_FOR_STATE = {
    ComponentState.MISSING: (IssueType.MISSING_VARIANT, "Variant not found"),
    ComponentState.DELETED: (IssueType.ARCHIVED_VARIANT, "Variant is archived"),
    ComponentState.DISABLED: (IssueType.DISABLED_VARIANT, "Variant is disabled"),
}


@dataclass(frozen=True)
class IntegrityIssue:
    issue_type: str
    variant_id: str
    message: str


@dataclass(frozen=True)
class IntegrityReport:
    bundle_id: str
    issues: Tuple[IntegrityIssue, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.issues


def validate_bundle_integrity(bundle: BundleDefinition) -> IntegrityReport:
    issues = []
    for comp in bundle.components:
        if comp.state in _ISSUE_FOR_STATE:
            issue_type, message = _ISSUE_FOR_STATE[comp.state]
            issues.append(IntegrityIssue(issue_type, comp.variant_id, message))
    return IntegrityReport(bundle_id=bundle.bundle_id, issues=tuple(issues))


@dataclass(frozen=True)
class BlockingBundle:
    bundle_id: str
    name: str
    status: str


@dataclass(frozen=True)
class VariantDeletionCheck:
    variant_id: str
    blocking_bundles: Tuple[BlockingBundle, ...] = ()

    @property
    def can_delete(self) -> bool:
        return not self.blocking_bundles


def can_delete_variant(
    variant_id: str,
    bundles: Iterable[BundleDefinition],
) -> VariantDeletionCheck:
    """A variant used by any DRAFT or ACTIVE bundle must not be deleted."""
    blocking = tuple(
        BlockingBundle(bundle_id=b.bundle_id, name=b.name, status=b.status.value)
        for b in bundles
        if b.status in (BundleStatus.DRAFT, BundleStatus.ACTIVE)
        and b.contains_variant(variant_id)
    )
    return VariantDeletionCheck(variant_id=variant_id, blocking_bundles=blocking)


# ══════════════════════════════════════════════════════════════
# MONITOR
# ══════════════════════════════════════════════════════════════

@dataclass
class ConsistencyReport:
    checked: int = 0
    broken: int = 0
    expired: int = 0
    changed: int = 0
    enqueued: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "broken": self.broken,
            "expired": self.expired,
            "changed": self.changed,
            "enqueued": self.enqueued,
            "errors": list(self.errors),
        }


class SafetyMonitor:
    """
    Periodic health pass plus component-change handling.

    repository: provides list_bundles(status=None) and
                find_bundles_containing_variant(variant_id)
    queue:      provides enqueue(command) -> bool
    """

    def __init__(self, repository, queue, clock: Clock, events=None):
        self._repository = repository
        self._queue = queue
        self._clock = clock
        self._events = events
        self._lock = threading.Lock()
        self._last_health: Dict[str, BundleHealth] = {}

    def last_health(self, bundle_id: str) -> Optional[BundleHealth]:
        with self._lock:
            return self._last_health.get(bundle_id)

    def run_consistency_check(self) -> ConsistencyReport:
        """
        Recompute health for every ACTIVE bundle. Only bundles whose health
        changed since the previous pass get a recompute request. A bundle
        seen for the first time is compared against a healthy baseline.
        """
        now = self._clock.now_utc()
        report = ConsistencyReport()
        for bundle in self._repository.list_bundles(status=BundleStatus.ACTIVE):
            report.checked += 1
            try:
                health = compute_health(bundle, now)
            except Exception as exc:
                logger.exception("Consistency check failed for bundle %s", bundle.bundle_id)
                report.errors.append(f"Bundle {bundle.bundle_id}: {exc}")
                continue

            if health.is_broken:
                report.broken += 1
                integrity = validate_bundle_integrity(bundle)
                logger.error(
                    "Active bundle %s (%s) failed consistency check: %s",
                    bundle.bundle_id, bundle.name,
                    ", ".join(f"{i.variant_id}: {i.message}" for i in integrity.issues),
                )
            if health.is_expired:
                report.expired += 1

            with self._lock:
                previous = self._last_health.get(bundle.bundle_id)
                self._last_health[bundle.bundle_id] = health
            baseline = previous.signature if previous is not None else (False, False, True)
            if health.signature == baseline:
                continue

            report.changed += 1
            if self._events is not None:
                self._events.emit(
                    BUNDLE_HEALTH_CHANGED_V1,
                    build_health_changed_payload(previous, health, now),
                )
            if self._queue.enqueue(RecomputeBundleCommand(
                bundle_id=bundle.bundle_id,
                reason=RecomputeReason.HEALTH_CHANGED,
                requested_at=now,
            )):
                report.enqueued += 1

        logger.info(
            "Consistency check: %d checked, %d broken, %d expired, %d changed",
            report.checked, report.broken, report.expired, report.changed,
        )
        return report

    def handle_variant_changed(self, variant_id: str, change_type: str) -> List[str]:
        """
        Enqueue a recompute for every bundle that contains the variant.
        Returns the affected bundle ids.
        """
        if change_type not in ChangeType.ALL:
            raise ValueError(f"change_type '{change_type}' not valid.")
        now = self._clock.now_utc()
        affected = list(self._repository.find_bundles_containing_variant(variant_id))
        if not affected:
            return []

        if change_type == ChangeType.DELETION:
            live = [b for b in affected if b.status == BundleStatus.ACTIVE]
            if live:
                logger.error(
                    "Variant %s was deleted but is used in %d active bundle(s): %s",
                    variant_id, len(live), ", ".join(b.bundle_id for b in live),
                )
            reason = RecomputeReason.VARIANT_DELETED
        else:
            logger.debug(
                "Variant %s %s change affects %d bundle(s)",
                variant_id, change_type, len(affected),
            )
            reason = RecomputeReason.VARIANT_UPDATED

        for bundle in affected:
            self._queue.enqueue(RecomputeBundleCommand(
                bundle_id=bundle.bundle_id,
                reason=reason,
                requested_at=now,
                variant_id=variant_id,
                change_type=change_type,
            ))
        return [b.bundle_id for b in affected]
