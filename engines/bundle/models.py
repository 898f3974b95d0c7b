"""
Bundle Engine — Data Model
===========================
Plain, immutable records exchanged with the host platform.

RULES:
- All money is integer minor units (cents), tax-inclusive.
- A bundle carries exactly one discount field, matching its discount mode.
- Components are referenced by variant_id; the host supplies their
  current catalogue state (ComponentState) when loading a definition.
- Expired and broken are computed at read time; only DRAFT / ACTIVE /
  ARCHIVED are persisted statuses.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from core.time import ScheduleWindow
from engines.bundle.errors import ConfigurationError, IntegrityViolation

Number = Union[int, float, Decimal]


# ══════════════════════════════════════════════════════════════
# ENUMS & CONSTANTS
# ══════════════════════════════════════════════════════════════

class BundleStatus(Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class DiscountMode(Enum):
    FIXED = "FIXED"      # bundle sells at fixed_price_cents per bundle
    PERCENT = "PERCENT"  # percent_off applied to every component


class ComponentState:
    """Catalogue state of a component's variant, as last loaded."""
    OK = "OK"
    MISSING = "MISSING"
    DELETED = "DELETED"
    DISABLED = "DISABLED"

    BROKEN = frozenset({"MISSING", "DELETED", "DISABLED"})
    ALL = frozenset({"OK", "MISSING", "DELETED", "DISABLED"})


class BundlePromoOverride:
    """Per-bundle external promotion setting."""
    YES = "yes"
    NO = "no"
    INHERIT = "inherit"

    ALL = frozenset({"yes", "no", "inherit"})


class PromotionOverride:
    """Per-promotion bundle setting."""
    ALWAYS = "always"
    NEVER = "never"
    INHERIT = "inherit"

    ALL = frozenset({"always", "never", "inherit"})


class GlobalPromoPolicy:
    """Site-wide default for external promotions on bundle components."""
    EXCLUDE = "Exclude"
    ALLOW = "Allow"

    ALL = frozenset({"Exclude", "Allow"})


def to_decimal(value: Number) -> Decimal:
    """Exact Decimal for ints/Decimals; floats go through str() to avoid binary noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


# ══════════════════════════════════════════════════════════════
# BUNDLE DEFINITION
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Component:
    """
    One stocked item and its required quantity within a bundle.

    unit_price_snapshot is the tax-inclusive base unit price in cents,
    captured when the definition was loaded for allocation.
    weight only affects fixed-price proration; missing means 1.
    """

    variant_id: str
    quantity_per_bundle: int
    unit_price_snapshot: int
    weight: Optional[Number] = None
    name: str = ""
    state: str = ComponentState.OK
    display_order: int = 0

    @property
    def effective_weight(self) -> Decimal:
        return to_decimal(self.weight) if self.weight is not None else Decimal(1)

    @property
    def is_broken(self) -> bool:
        return self.state in ComponentState.BROKEN


@dataclass(frozen=True)
class BundleDefinition:
    """
    A composite offer made of several independently stocked components.

    bundle_cap:            marketing capacity (None = unlimited).
    bundle_reserved_open:  bundles sold but not yet fulfilled. Mutated only
                           by the reservation ledger; carried here as the
                           value read together with the definition.
    allow_external_promos: per-bundle promotion override (yes/no/inherit).
    """

    bundle_id: str
    name: str
    discount_mode: DiscountMode
    components: Tuple[Component, ...]
    fixed_price_cents: Optional[int] = None
    percent_off: Optional[Number] = None
    status: BundleStatus = BundleStatus.DRAFT
    schedule: ScheduleWindow = field(default_factory=ScheduleWindow)
    bundle_cap: Optional[int] = None
    bundle_reserved_open: int = 0
    allow_external_promos: str = BundlePromoOverride.INHERIT

    def ensure_valid(self) -> None:
        """Raise ConfigurationError listing every problem found."""
        problems = validate_bundle(self)
        if problems:
            raise ConfigurationError(problems, bundle_id=self.bundle_id)

    def ensure_intact(self) -> None:
        """Raise IntegrityViolation if any component is missing, deleted or disabled."""
        broken = [c.variant_id for c in self.components if c.is_broken]
        if broken:
            raise IntegrityViolation(self.bundle_id, broken)

    @property
    def is_broken(self) -> bool:
        return any(c.is_broken for c in self.components)

    def is_expired(self, now: datetime) -> bool:
        return self.schedule.has_ended(now)

    def is_within_schedule(self, now: datetime) -> bool:
        return self.schedule.contains(now)

    def is_available(self, now: datetime) -> bool:
        return (
            self.status == BundleStatus.ACTIVE
            and self.is_within_schedule(now)
            and not self.is_broken
        )

    def contains_variant(self, variant_id: str) -> bool:
        return any(c.variant_id == variant_id for c in self.components)

    def with_status(self, status: BundleStatus) -> "BundleDefinition":
        return replace(self, status=status)

    def with_component_states(self, states: Mapping[str, str]) -> "BundleDefinition":
        """Return a copy with component states refreshed from a catalogue read."""
        return replace(self, components=tuple(
            replace(c, state=states.get(c.variant_id, ComponentState.MISSING))
            for c in self.components
        ))


def validate_bundle(bundle: BundleDefinition) -> List[str]:
    """
    Structural validation. Returns a list of problems (empty = valid).
    Never coerces; callers decide whether to raise.
    """
    problems: List[str] = []

    if not bundle.bundle_id:
        problems.append("bundle_id is required")

    if not bundle.components:
        problems.append("bundle must contain at least one component")

    has_fixed = bundle.fixed_price_cents is not None
    has_percent = bundle.percent_off is not None

    if has_fixed and has_percent:
        problems.append("only one of fixed_price_cents / percent_off may be set")

    if bundle.discount_mode == DiscountMode.FIXED:
        if not has_fixed:
            problems.append("FIXED bundle requires fixed_price_cents")
        elif not isinstance(bundle.fixed_price_cents, int) or bundle.fixed_price_cents < 0:
            problems.append(
                f"fixed_price_cents must be a non-negative integer, got {bundle.fixed_price_cents!r}"
            )
    elif bundle.discount_mode == DiscountMode.PERCENT:
        if not has_percent:
            problems.append("PERCENT bundle requires percent_off")
        elif not (0 <= to_decimal(bundle.percent_off) <= 100):
            problems.append(f"percent_off must be within [0, 100], got {bundle.percent_off}")
    else:
        problems.append(f"unknown discount mode {bundle.discount_mode!r}")

    seen: Dict[str, int] = {}
    for index, comp in enumerate(bundle.components):
        if not comp.variant_id:
            problems.append(f"component #{index} has no variant_id")
            continue
        if comp.variant_id in seen:
            problems.append(f"duplicate component {comp.variant_id}")
        seen[comp.variant_id] = index
        if not isinstance(comp.quantity_per_bundle, int) or comp.quantity_per_bundle <= 0:
            problems.append(
                f"component {comp.variant_id} quantity must be a positive integer, "
                f"got {comp.quantity_per_bundle!r}"
            )
        if not isinstance(comp.unit_price_snapshot, int) or comp.unit_price_snapshot < 0:
            problems.append(
                f"component {comp.variant_id} unit price must be a non-negative integer"
            )
        if comp.weight is not None and to_decimal(comp.weight) <= 0:
            problems.append(f"component {comp.variant_id} weight must be positive")
        if comp.state not in ComponentState.ALL:
            problems.append(f"component {comp.variant_id} has unknown state {comp.state!r}")

    if bundle.bundle_cap is not None and bundle.bundle_cap < 0:
        problems.append("bundle_cap cannot be negative")
    if bundle.bundle_reserved_open < 0:
        problems.append("bundle_reserved_open cannot be negative")
    if bundle.allow_external_promos not in BundlePromoOverride.ALL:
        problems.append(f"allow_external_promos must be one of {sorted(BundlePromoOverride.ALL)}")

    return problems


# ══════════════════════════════════════════════════════════════
# ORDER LINE METADATA
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BundleLineMetadata:
    """
    Attached to an order line at add-to-cart time.

    All lines from one bundle purchase share bundle_key. The header line
    is cosmetic: zero price, never discounted further. For non-header
    lines of one bundle_key, sum(bundle_adj_amount) == -total_discount.
    """

    bundle_key: str
    bundle_id: str
    is_bundle_header: bool
    base_unit_price: int
    effective_unit_price: int
    bundle_adj_amount: int
    bundle_pct_applied: float
    bundle_share: float
    quantity: int
    variant_id: Optional[str] = None
    bundle_name: str = ""
    allow_external_promos: str = BundlePromoOverride.INHERIT

    @property
    def line_total(self) -> int:
        return self.base_unit_price * self.quantity + self.bundle_adj_amount

    def to_dict(self) -> dict:
        return {
            "bundle_key": self.bundle_key,
            "bundle_id": self.bundle_id,
            "is_bundle_header": self.is_bundle_header,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "base_unit_price": self.base_unit_price,
            "effective_unit_price": self.effective_unit_price,
            "bundle_adj_amount": self.bundle_adj_amount,
            "bundle_pct_applied": self.bundle_pct_applied,
            "bundle_share": self.bundle_share,
            "bundle_name": self.bundle_name,
            "allow_external_promos": self.allow_external_promos,
        }


# ══════════════════════════════════════════════════════════════
# STOCK
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StockSnapshot:
    """Stock level for one variant at read time."""

    variant_id: str
    on_hand: int
    allocated: int = 0

    @property
    def effective_available(self) -> int:
        return max(0, self.on_hand - self.allocated)


def index_snapshots(snapshots: Iterable[StockSnapshot]) -> Dict[str, StockSnapshot]:
    return {s.variant_id: s for s in snapshots}


# ══════════════════════════════════════════════════════════════
# PROMOTIONS
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PromotionRef:
    """
    The slice of an external promotion the guard needs.

    code falls back to name when the promotion has no coupon code.
    estimated_discount_pct is in percentage points (15 = 15%); when not
    given the guard estimates it from the name/code.
    """

    name: str
    coupon_code: Optional[str] = None
    bundle_policy: str = PromotionOverride.INHERIT
    estimated_discount_pct: Optional[Number] = None
    allowed_bundles: Tuple[str, ...] = ()
    excluded_bundles: Tuple[str, ...] = ()

    @property
    def code(self) -> str:
        return self.coupon_code or self.name


@dataclass(frozen=True)
class PromotionPolicy:
    """
    Promotion stacking policy, sourced once per request and passed in.

    global_default:            Exclude | Allow
    bundle_overrides:          bundle_id → yes/no/inherit (used when the
                               line itself says inherit)
    promotion_overrides:       promotion code → always/never/inherit (used
                               when the promotion itself says inherit)
    excluded_patterns:         regexes matched (search) against the code
    allowed_codes:             whitelist; empty means no whitelist
    max_cumulative_discount_pct: fraction cap, e.g. 0.5; None = no cap
    """

    global_default: str = GlobalPromoPolicy.EXCLUDE
    bundle_overrides: Mapping[str, str] = field(default_factory=dict)
    promotion_overrides: Mapping[str, str] = field(default_factory=dict)
    excluded_patterns: Tuple[str, ...] = ()
    allowed_codes: Tuple[str, ...] = ()
    max_cumulative_discount_pct: Optional[float] = None
    log_decisions: bool = False

    def __post_init__(self) -> None:
        problems: List[str] = []
        if self.global_default not in GlobalPromoPolicy.ALL:
            problems.append(
                f"global_default must be one of {sorted(GlobalPromoPolicy.ALL)}, "
                f"got {self.global_default!r}"
            )
        for bundle_id, value in self.bundle_overrides.items():
            if value not in BundlePromoOverride.ALL:
                problems.append(f"bundle override for {bundle_id} is invalid: {value!r}")
        for code, value in self.promotion_overrides.items():
            if value not in PromotionOverride.ALL:
                problems.append(f"promotion override for {code} is invalid: {value!r}")
        for pattern in self.excluded_patterns:
            try:
                re.compile(pattern)
            except re.error as exc:
                problems.append(f"exclusion pattern {pattern!r} does not compile: {exc}")
        cap = self.max_cumulative_discount_pct
        if cap is not None and not (0 <= cap <= 1):
            problems.append(f"max_cumulative_discount_pct must be a fraction in [0, 1], got {cap}")
        if problems:
            raise ConfigurationError(problems)
