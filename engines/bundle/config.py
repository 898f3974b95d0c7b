"""
Bundle Engine — Promotion Policy Store
=======================================
Callers source a PromotionPolicy once per request from a PolicyStore and
pass it explicitly to the guard. The guard never reads settings itself.

Settings shape (config/settings.py):

    BUNDLE_PROMOTION_POLICY = {
        "site_wide_promos_affect_bundles": "Exclude",   # or "Allow"
        "max_cumulative_discount_pct": 0.5,             # fraction, or None
        "excluded_promotion_patterns": [],              # regexes
        "allowed_promotion_codes": [],                  # whitelist
        "bundle_overrides": {},                         # bundle_id → yes/no/inherit
        "promotion_overrides": {},                      # code → always/never/inherit
        "log_guard_decisions": False,
    }
"""

from __future__ import annotations

import threading
from typing import Any, Mapping, Optional, Protocol

from engines.bundle.errors import ConfigurationError
from engines.bundle.models import GlobalPromoPolicy, PromotionPolicy

SETTINGS_KEY = "BUNDLE_PROMOTION_POLICY"

_KNOWN_KEYS = frozenset({
    "site_wide_promos_affect_bundles",
    "max_cumulative_discount_pct",
    "excluded_promotion_patterns",
    "allowed_promotion_codes",
    "bundle_overrides",
    "promotion_overrides",
    "log_guard_decisions",
})


def policy_from_mapping(data: Optional[Mapping[str, Any]]) -> PromotionPolicy:
    """Build a PromotionPolicy from a settings-style dict. Missing keys use defaults."""
    data = data or {}
    unknown = sorted(set(data) - _KNOWN_KEYS)
    if unknown:
        raise ConfigurationError([f"unknown promotion policy key '{key}'" for key in unknown])

    cap = data.get("max_cumulative_discount_pct")
    return PromotionPolicy(
        global_default=data.get("site_wide_promos_affect_bundles", GlobalPromoPolicy.EXCLUDE),
        bundle_overrides=dict(data.get("bundle_overrides") or {}),
        promotion_overrides=dict(data.get("promotion_overrides") or {}),
        excluded_patterns=tuple(data.get("excluded_promotion_patterns") or ()),
        allowed_codes=tuple(data.get("allowed_promotion_codes") or ()),
        max_cumulative_discount_pct=float(cap) if cap is not None else None,
        log_decisions=bool(data.get("log_guard_decisions", False)),
    )


class PolicyStore(Protocol):
    def get_promotion_policy(self) -> PromotionPolicy:
        ...  # pragma: no cover


class InMemoryPolicyStore:
    """Holds one policy value. Used in tests and bootstrap."""

    def __init__(self, policy: Optional[PromotionPolicy] = None):
        self._lock = threading.Lock()
        self._policy = policy or PromotionPolicy()

    def get_promotion_policy(self) -> PromotionPolicy:
        with self._lock:
            return self._policy

    def set_promotion_policy(self, policy: PromotionPolicy) -> None:
        with self._lock:
            self._policy = policy


class SettingsPolicyStore:
    """Reads BUNDLE_PROMOTION_POLICY from Django settings on every call."""

    def get_promotion_policy(self) -> PromotionPolicy:
        from django.conf import settings

        return policy_from_mapping(getattr(settings, SETTINGS_KEY, None))
