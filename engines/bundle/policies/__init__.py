"""
Bundle Engine — Promotion Guard
================================
Decides whether an external promotion may add further discount to a
bundle component order line.

Ordered chain. The first rule that decides wins; nothing falls through
once a decision is made:

  1. header      — header lines are always blocked
  2. pattern     — promotion code matches an exclusion regex → block
  3. whitelist   — whitelist configured and code not in it → block
  4. bundle      — bundle override: no → block, yes → allow*
  5. promotion   — promotion override / bundle rules: never → block, always → allow*
  6. global      — Exclude → block, Allow → allow*

  * every allow is subject to the cumulative discount cap (discount_cap).

Lines that are not part of a bundle are always allowed.

The policy is a PromotionPolicy value passed in by the caller, sourced
once per request. Evaluation never raises and never reads global state.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from engines.bundle.models import (
    BundleLineMetadata,
    BundlePromoOverride,
    GlobalPromoPolicy,
    PromotionOverride,
    PromotionPolicy,
    PromotionRef,
    to_decimal,
)

logger = logging.getLogger("bundles.guard")

DEFAULT_ESTIMATED_DISCOUNT_PCT = 10.0

_PERCENT_RE = re.compile(r"(\d+)%")
_AMOUNT_RE = re.compile(r"\$(\d+)")


class DecidingRule:
    NOT_BUNDLE = "not_bundle"
    HEADER = "header"
    PATTERN = "pattern"
    WHITELIST = "whitelist"
    BUNDLE = "bundle"
    PROMOTION = "promotion"
    GLOBAL = "global"
    DISCOUNT_CAP = "discount_cap"

    ALL = frozenset({
        "not_bundle", "header", "pattern", "whitelist",
        "bundle", "promotion", "global", "discount_cap",
    })


@dataclass(frozen=True)
class GuardResult:
    """
    The decision and its justification.

    cumulative_discount_pct is the bundle discount plus the estimated
    promotion discount, in percentage points, when the cap was evaluated.
    """
    allowed: bool
    reason: str
    deciding_rule: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    cumulative_discount_pct: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "deciding_rule": self.deciding_rule,
            "metadata": dict(self.metadata),
            "cumulative_discount_pct": self.cumulative_discount_pct,
        }


# ══════════════════════════════════════════════════════════════
# DISCOUNT ESTIMATION
# ══════════════════════════════════════════════════════════════

def estimate_promotion_discount_pct(
    promotion: PromotionRef,
    line: Optional[BundleLineMetadata] = None,
) -> float:
    """
    Additional discount, in percentage points, the promotion would grant.

    Explicit estimate first; otherwise "N%" in the name/code; otherwise
    "$N" converted against the line's base unit price; otherwise 10%.
    """
    if promotion.estimated_discount_pct is not None:
        return float(to_decimal(promotion.estimated_discount_pct))

    text = f"{promotion.name} {promotion.coupon_code or ''}".lower()
    match = _PERCENT_RE.search(text)
    if match:
        return float(match.group(1))

    match = _AMOUNT_RE.search(text)
    if match:
        if line is None or line.base_unit_price <= 0:
            return 0.0
        cents = Decimal(int(match.group(1)) * 100)
        return float(cents * 100 / Decimal(line.base_unit_price))

    return DEFAULT_ESTIMATED_DISCOUNT_PCT


# ══════════════════════════════════════════════════════════════
# GUARD
# ══════════════════════════════════════════════════════════════

def evaluate_promotion_guard(
    line: Optional[BundleLineMetadata],
    promotion: PromotionRef,
    policy: PromotionPolicy,
) -> GuardResult:
    """May `promotion` discount `line` further? None means a non-bundle line."""
    if line is not None and line.is_bundle_header:
        return _result(
            policy, False, "Bundle header lines do not receive promotions",
            DecidingRule.HEADER, bundle_id=line.bundle_id,
        )

    if line is None or not line.bundle_key:
        return _result(policy, True, "Not a bundle line", DecidingRule.NOT_BUNDLE)

    code = promotion.code
    context = {"promotion_code": code, "bundle_id": line.bundle_id}

    # ── pattern ───────────────────────────────────────────────
    for pattern in policy.excluded_patterns:
        if re.search(pattern, code):
            return _result(
                policy, False, f"Promotion matches exclusion pattern: {pattern}",
                DecidingRule.PATTERN, pattern=pattern, **context,
            )

    # ── whitelist ─────────────────────────────────────────────
    if policy.allowed_codes:
        allowed = {c.lower() for c in policy.allowed_codes}
        if code.lower() not in allowed:
            return _result(
                policy, False, "Promotion not in whitelist",
                DecidingRule.WHITELIST, **context,
            )

    # ── bundle override ───────────────────────────────────────
    bundle_override = line.allow_external_promos
    if bundle_override == BundlePromoOverride.INHERIT:
        bundle_override = policy.bundle_overrides.get(line.bundle_id, BundlePromoOverride.INHERIT)
    if bundle_override == BundlePromoOverride.NO:
        return _result(
            policy, False, "Bundle override excludes external promotions",
            DecidingRule.BUNDLE, bundle_override=bundle_override, **context,
        )
    if bundle_override == BundlePromoOverride.YES:
        return _capped(
            line, promotion, policy,
            _result(
                policy, True, "Bundle override allows external promotions",
                DecidingRule.BUNDLE, bundle_override=bundle_override, **context,
            ),
        )

    # ── promotion override ────────────────────────────────────
    if line.bundle_id in promotion.excluded_bundles:
        return _result(
            policy, False, "Promotion excludes this bundle",
            DecidingRule.PROMOTION, **context,
        )
    if promotion.allowed_bundles and line.bundle_id not in promotion.allowed_bundles:
        return _result(
            policy, False, "Promotion is limited to other bundles",
            DecidingRule.PROMOTION, **context,
        )
    promotion_override = promotion.bundle_policy
    if promotion_override == PromotionOverride.INHERIT:
        promotion_override = policy.promotion_overrides.get(code, PromotionOverride.INHERIT)
    if promotion_override == PromotionOverride.NEVER:
        return _result(
            policy, False, "Promotion override excludes bundle components",
            DecidingRule.PROMOTION, promotion_override=promotion_override, **context,
        )
    if promotion_override == PromotionOverride.ALWAYS:
        return _capped(
            line, promotion, policy,
            _result(
                policy, True, "Promotion override allows bundle components",
                DecidingRule.PROMOTION, promotion_override=promotion_override, **context,
            ),
        )

    # ── global ────────────────────────────────────────────────
    if policy.global_default == GlobalPromoPolicy.EXCLUDE:
        return _result(
            policy, False, "Global policy excludes promotions from bundle components",
            DecidingRule.GLOBAL, **context,
        )
    return _capped(
        line, promotion, policy,
        _result(
            policy, True, "Global policy allows promotions on bundle components",
            DecidingRule.GLOBAL, **context,
        ),
    )


def _capped(
    line: BundleLineMetadata,
    promotion: PromotionRef,
    policy: PromotionPolicy,
    allowed: GuardResult,
) -> GuardResult:
    """Turn an allow into a block when the cumulative discount passes the cap."""
    cap = policy.max_cumulative_discount_pct
    if cap is None:
        return allowed
    cumulative = line.bundle_pct_applied + estimate_promotion_discount_pct(promotion, line)
    if cumulative / 100 > cap:
        return _result(
            policy, False,
            f"Cumulative discount cap exceeded: {cumulative:.1f}% > {cap * 100:.1f}%",
            DecidingRule.DISCOUNT_CAP,
            cumulative_discount_pct=cumulative,
            promotion_code=promotion.code,
            bundle_id=line.bundle_id,
        )
    return GuardResult(
        allowed=True,
        reason=allowed.reason,
        deciding_rule=allowed.deciding_rule,
        metadata=allowed.metadata,
        cumulative_discount_pct=cumulative,
    )


def _result(
    policy: PromotionPolicy,
    allowed: bool,
    reason: str,
    deciding_rule: str,
    cumulative_discount_pct: Optional[float] = None,
    **metadata: Any,
) -> GuardResult:
    metadata["global_policy"] = policy.global_default
    if policy.log_decisions:
        logger.debug(
            "Promotion guard %s: %s (%s) %s",
            "ALLOW" if allowed else "BLOCK", reason, deciding_rule, metadata,
        )
    return GuardResult(
        allowed=allowed,
        reason=reason,
        deciding_rule=deciding_rule,
        metadata=metadata,
        cumulative_discount_pct=cumulative_discount_pct,
    )


# ══════════════════════════════════════════════════════════════
# BATCH EVALUATION
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GuardBatch:
    results: Tuple[Tuple[Optional[BundleLineMetadata], GuardResult], ...]

    @property
    def allowed_lines(self) -> List[Optional[BundleLineMetadata]]:
        return [line for line, result in self.results if result.allowed]

    @property
    def blocked_lines(self) -> List[Optional[BundleLineMetadata]]:
        return [line for line, result in self.results if not result.allowed]


@dataclass(frozen=True)
class GuardStatistics:
    total_lines: int
    bundle_lines: int
    allowed_lines: int
    blocked_lines: int
    block_reasons: Dict[str, int]
    deciding_rules: Dict[str, int]


def evaluate_promotion_for_lines(
    lines: Sequence[Optional[BundleLineMetadata]],
    promotion: PromotionRef,
    policy: PromotionPolicy,
) -> GuardBatch:
    return GuardBatch(results=tuple(
        (line, evaluate_promotion_guard(line, promotion, policy)) for line in lines
    ))


def summarize_guard_results(batch: GuardBatch) -> GuardStatistics:
    block_reasons: Counter = Counter()
    deciding_rules: Counter = Counter()
    bundle_lines = 0
    allowed = 0
    for line, result in batch.results:
        if line is not None and line.bundle_key:
            bundle_lines += 1
        if result.allowed:
            allowed += 1
        else:
            block_reasons[result.reason] += 1
        deciding_rules[result.deciding_rule] += 1
    return GuardStatistics(
        total_lines=len(batch.results),
        bundle_lines=bundle_lines,
        allowed_lines=allowed,
        blocked_lines=len(batch.results) - allowed,
        block_reasons=dict(block_reasons),
        deciding_rules=dict(deciding_rules),
    )
