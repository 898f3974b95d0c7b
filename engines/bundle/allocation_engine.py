"""
Bundle Engine — Pricing Allocator
==================================
Spreads one bundle-level discount across the bundle's components,
down to the cent.

RULES (NON-NEGOTIABLE):
- All arithmetic is integer cents; fractional intermediates use Decimal
  with ROUND_HALF_UP, never binary floats.
- PERCENT: every component gets the same percentage of its subtotal.
- FIXED: the discount is prorated by subtotal (optionally weighted).
  No component's share exceeds its subtotal; the excess goes to the
  components that still have room.
- Effective unit price is base + adj / qty, half-way cases rounded up.
- Rounding drift is pushed onto the component with the largest subtotal
  (first one wins on ties), so sum(-adj) == total_discount exactly.
  Whatever would push that component outside [0, subtotal] moves on to
  the next largest.
- A fixed price that is not cheaper than the components grants no
  discount. This is a warning, not an error.
- Any residual mismatch or a component discounted below zero is a
  DriftError. The allocation is refused, never patched up elsewhere.

Pure and deterministic: same definition + quantity → same result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import List, Optional, Tuple

from engines.bundle.errors import ConfigurationError, DriftError
from engines.bundle.models import (
    BundleDefinition,
    BundleLineMetadata,
    DiscountMode,
    to_decimal,
)

logger = logging.getLogger("bundles.pricing")

_HUNDRED = Decimal(100)


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


# ══════════════════════════════════════════════════════════════
# RESULTS
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ComponentAllocation:
    """Allocated price breakdown for one component line."""
    variant_id: str
    component_qty: int          # quantity per bundle
    quantity: int               # component_qty × bundle quantity
    base_unit_price: int
    effective_unit_price: int
    bundle_adj_amount: int      # signed, <= 0
    bundle_pct_applied: float   # percentage points
    bundle_share: float         # subtotal / total_pre_discount
    subtotal: int               # base_unit_price × quantity
    name: str = ""

    @property
    def discounted_subtotal(self) -> int:
        return self.subtotal + self.bundle_adj_amount


@dataclass(frozen=True)
class AllocationResult:
    """Outcome of allocating a bundle's discount for a bundle quantity."""
    bundle_id: str
    bundle_quantity: int
    discount_mode: DiscountMode
    total_pre_discount: int
    total_bundle_price: int
    total_discount: int
    components: Tuple[ComponentAllocation, ...]
    drift_applied: int = 0
    drift_variant_id: Optional[str] = None
    warnings: Tuple[str, ...] = ()

    @property
    def allocated_discount(self) -> int:
        return -sum(c.bundle_adj_amount for c in self.components)

    @property
    def savings_pct(self) -> float:
        if self.total_pre_discount == 0:
            return 0.0
        return float(
            (Decimal(self.total_discount) * _HUNDRED / Decimal(self.total_pre_discount))
            .quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        )

    def get(self, variant_id: str) -> Optional[ComponentAllocation]:
        for comp in self.components:
            if comp.variant_id == variant_id:
                return comp
        return None

    def to_dict(self) -> dict:
        return {
            "bundle_id": self.bundle_id,
            "bundle_quantity": self.bundle_quantity,
            "discount_mode": self.discount_mode.value,
            "total_pre_discount": self.total_pre_discount,
            "total_bundle_price": self.total_bundle_price,
            "total_discount": self.total_discount,
            "savings_pct": self.savings_pct,
            "drift_applied": self.drift_applied,
            "drift_variant_id": self.drift_variant_id,
            "warnings": list(self.warnings),
            "components": [
                {
                    "variant_id": c.variant_id,
                    "quantity": c.quantity,
                    "base_unit_price": c.base_unit_price,
                    "effective_unit_price": c.effective_unit_price,
                    "bundle_adj_amount": c.bundle_adj_amount,
                    "bundle_pct_applied": c.bundle_pct_applied,
                    "bundle_share": c.bundle_share,
                }
                for c in self.components
            ],
        }


# ══════════════════════════════════════════════════════════════
# ALLOCATION
# ══════════════════════════════════════════════════════════════

def allocate(bundle: BundleDefinition, quantity: int) -> AllocationResult:
    """
    Produce the per-component discount allocation for `quantity` bundles.

    Raises:
        ConfigurationError  — invalid definition or quantity.
        IntegrityViolation  — a component is missing/deleted/disabled.
        DriftError          — internal invariant failure.
    """
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ConfigurationError(
            [f"bundle quantity must be a positive integer, got {quantity!r}"],
            bundle_id=bundle.bundle_id,
        )
    bundle.ensure_valid()
    bundle.ensure_intact()

    # ── Step 1: subtotals ─────────────────────────────────────
    quantities = [c.quantity_per_bundle * quantity for c in bundle.components]
    subtotals = [
        c.unit_price_snapshot * q for c, q in zip(bundle.components, quantities)
    ]
    total_pre_discount = sum(subtotals)

    # ── Step 2: bundle price and total discount ───────────────
    warnings: List[str] = []
    percent: Optional[Decimal] = None
    if bundle.discount_mode == DiscountMode.FIXED:
        fixed_total = bundle.fixed_price_cents * quantity
        total_discount = total_pre_discount - fixed_total
        if total_discount <= 0:
            message = (
                f"Fixed price {fixed_total} is not below component total "
                f"{total_pre_discount}; no bundle discount applied."
            )
            logger.warning("Bundle %s: %s", bundle.bundle_id, message)
            warnings.append(message)
            total_discount = 0
    else:
        percent = to_decimal(bundle.percent_off)
        total_discount = _round_half_up(Decimal(total_pre_discount) * percent / _HUNDRED)
    total_bundle_price = total_pre_discount - total_discount

    shares = [
        float(Decimal(s) / Decimal(total_pre_discount)) if total_pre_discount else 0.0
        for s in subtotals
    ]

    # ── Step 3: nothing to allocate ───────────────────────────
    if total_discount == 0:
        components = tuple(
            ComponentAllocation(
                variant_id=c.variant_id,
                component_qty=c.quantity_per_bundle,
                quantity=q,
                base_unit_price=c.unit_price_snapshot,
                effective_unit_price=c.unit_price_snapshot,
                bundle_adj_amount=0,
                bundle_pct_applied=float(percent) if percent is not None else 0.0,
                bundle_share=share,
                subtotal=s,
                name=c.name,
            )
            for c, q, s, share in zip(bundle.components, quantities, subtotals, shares)
        )
        return AllocationResult(
            bundle_id=bundle.bundle_id,
            bundle_quantity=quantity,
            discount_mode=bundle.discount_mode,
            total_pre_discount=total_pre_discount,
            total_bundle_price=total_bundle_price,
            total_discount=0,
            components=components,
            warnings=tuple(warnings),
        )

    # ── Step 4: provisional per-component adjustments ─────────
    if percent is not None:
        adjustments = [-_round_half_up(Decimal(s) * percent / _HUNDRED) for s in subtotals]
    else:
        weights = [c.effective_weight for c in bundle.components]
        adjustments = [
            -_round_half_up(share)
            for share in _weighted_shares(total_discount, subtotals, weights)
        ]

    # ── Step 5: drift correction on the largest subtotal ──────
    drift = total_discount - (-sum(adjustments))
    drift_variant_id = None
    if drift != 0:
        by_subtotal = sorted(range(len(subtotals)), key=lambda i: (-subtotals[i], i))
        drift_variant_id = bundle.components[by_subtotal[0]].variant_id
        _spread_drift(adjustments, subtotals, by_subtotal, drift)
        logger.debug(
            "Bundle %s drift correction: %d cents applied to component %s",
            bundle.bundle_id, drift, drift_variant_id,
        )

    # ── Step 6: effective prices ──────────────────────────────
    components = tuple(
        _component_allocation(c, q, s, share, adj, percent)
        for c, q, s, share, adj in zip(
            bundle.components, quantities, subtotals, shares, adjustments
        )
    )

    result = AllocationResult(
        bundle_id=bundle.bundle_id,
        bundle_quantity=quantity,
        discount_mode=bundle.discount_mode,
        total_pre_discount=total_pre_discount,
        total_bundle_price=total_bundle_price,
        total_discount=total_discount,
        components=components,
        drift_applied=drift,
        drift_variant_id=drift_variant_id,
        warnings=tuple(warnings),
    )
    _verify(result)
    return result


def _weighted_shares(
    total_discount: int,
    subtotals: List[int],
    weights: List[Decimal],
) -> List[Decimal]:
    """
    Exact FIXED-mode shares, proportional to subtotal × weight.

    A share larger than its component's subtotal is capped there and the
    excess is prorated over the components that still have room, until
    nothing is left over. total_discount <= sum(subtotals), so it fits.
    """
    shares = [Decimal(0)] * len(subtotals)
    open_ = list(range(len(subtotals)))
    remaining = Decimal(total_discount)
    while open_:
        pool = sum(Decimal(subtotals[i]) * weights[i] for i in open_)
        if pool == 0:
            break
        provisional = {
            i: remaining * Decimal(subtotals[i]) * weights[i] / pool for i in open_
        }
        over = [i for i in open_ if provisional[i] > subtotals[i]]
        if not over:
            for i in open_:
                shares[i] = provisional[i]
            break
        for i in over:
            shares[i] = Decimal(subtotals[i])
            remaining -= subtotals[i]
        open_ = [i for i in open_ if i not in over]
    return shares


def _spread_drift(adjustments, subtotals, order, drift) -> None:
    """
    Apply drift to the largest component. A component's discount stays
    within [0, subtotal]; anything that does not fit there moves on to
    the next largest component.
    """
    remaining = drift
    for i in order:
        if remaining == 0:
            break
        current = -adjustments[i]
        corrected = min(max(current + remaining, 0), subtotals[i])
        adjustments[i] = -corrected
        remaining -= corrected - current


def _component_allocation(comp, quantity, subtotal, share, adj, percent) -> ComponentAllocation:
    if percent is not None:
        pct_applied = float(percent)
    elif subtotal > 0:
        pct_applied = float(Decimal(-adj) * _HUNDRED / Decimal(subtotal))
    else:
        pct_applied = 0.0
    # signed adjustment, half-way cases round toward +inf
    per_unit = int(
        (Decimal(adj) / Decimal(quantity) + Decimal("0.5")).to_integral_value(rounding=ROUND_FLOOR)
    )
    return ComponentAllocation(
        variant_id=comp.variant_id,
        component_qty=comp.quantity_per_bundle,
        quantity=quantity,
        base_unit_price=comp.unit_price_snapshot,
        effective_unit_price=max(0, comp.unit_price_snapshot + per_unit),
        bundle_adj_amount=adj,
        bundle_pct_applied=pct_applied,
        bundle_share=share,
        subtotal=subtotal,
        name=comp.name,
    )


def _verify(result: AllocationResult) -> None:
    """Fail fast on any invariant breach; log it as a bug first."""
    allocated = result.allocated_discount
    if allocated != result.total_discount:
        error = DriftError(
            result.bundle_id, result.total_discount, allocated,
            "allocated discount does not sum to the total discount",
        )
        logger.error(str(error))
        raise error
    for comp in result.components:
        if comp.bundle_adj_amount > 0 or -comp.bundle_adj_amount > comp.subtotal:
            error = DriftError(
                result.bundle_id, comp.subtotal, -comp.bundle_adj_amount,
                f"component {comp.variant_id} discount falls outside [0, subtotal]",
            )
            logger.error(str(error))
            raise error


# ══════════════════════════════════════════════════════════════
# ORDER LINE EXPLOSION
# ══════════════════════════════════════════════════════════════

def build_bundle_lines(
    bundle: BundleDefinition,
    quantity: int,
    bundle_key: str,
) -> List[BundleLineMetadata]:
    """
    Header line first (display only, zero price), then one line per
    component carrying its allocation.
    """
    if not bundle_key:
        raise ValueError("bundle_key must be non-empty.")
    allocation = allocate(bundle, quantity)
    header = BundleLineMetadata(
        bundle_key=bundle_key,
        bundle_id=bundle.bundle_id,
        is_bundle_header=True,
        base_unit_price=0,
        effective_unit_price=0,
        bundle_adj_amount=0,
        bundle_pct_applied=0.0,
        bundle_share=0.0,
        quantity=allocation.bundle_quantity,
        bundle_name=bundle.name,
        allow_external_promos=bundle.allow_external_promos,
    )
    lines = [header]
    for comp in allocation.components:
        lines.append(BundleLineMetadata(
            bundle_key=bundle_key,
            bundle_id=bundle.bundle_id,
            is_bundle_header=False,
            base_unit_price=comp.base_unit_price,
            effective_unit_price=comp.effective_unit_price,
            bundle_adj_amount=comp.bundle_adj_amount,
            bundle_pct_applied=comp.bundle_pct_applied,
            bundle_share=comp.bundle_share,
            quantity=comp.quantity,
            variant_id=comp.variant_id,
            bundle_name=bundle.name,
            allow_external_promos=bundle.allow_external_promos,
        ))
    return lines


def recompute_lines_for_quantity(
    bundle: BundleDefinition,
    lines: List[BundleLineMetadata],
    quantity: int,
) -> List[BundleLineMetadata]:
    """
    Quantity change before checkout: re-run the allocation and re-stamp
    the existing bundle_key. Identical inputs give identical lines.
    """
    keys = {line.bundle_key for line in lines}
    if len(keys) != 1:
        raise ValueError("Lines must belong to exactly one bundle_key.")
    return build_bundle_lines(bundle, quantity, keys.pop())


def bundle_discount_total(lines: List[BundleLineMetadata]) -> int:
    """Sum of discounts over non-header lines (positive cents)."""
    return -sum(line.bundle_adj_amount for line in lines if not line.is_bundle_header)


def with_snapshot_prices(bundle: BundleDefinition, prices: dict) -> BundleDefinition:
    """Capture current unit prices into the definition's snapshots."""
    return replace(bundle, components=tuple(
        replace(c, unit_price_snapshot=prices.get(c.variant_id, c.unit_price_snapshot))
        for c in bundle.components
    ))
