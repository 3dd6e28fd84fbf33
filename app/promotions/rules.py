"""
app/promotions/rules.py
-----------------------
Plain data types shared by the promotion engine.

PromotionRule is the canonical, storage-independent form of a promotion.
OrderContext is everything the engine needs to know about one checkout.
Both round-trip through the camelCase JSON used on the wire.
"""
from __future__ import annotations
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional


class _ParseMixin:
    """`parse()` returns the member for a value, or None if unrecognised."""

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or '').strip().upper())
        except ValueError:
            return None


class PromotionType(_ParseMixin, str, enum.Enum):
    PERCENT       = 'PERCENT'
    FIXED_AMOUNT  = 'FIXED_AMOUNT'
    FREE_SHIPPING = 'FREE_SHIPPING'


class StackingPolicy(_ParseMixin, str, enum.Enum):
    EXCLUSIVE  = 'EXCLUSIVE'
    COMBINABLE = 'COMBINABLE'


class TargetingMode(_ParseMixin, str, enum.Enum):
    ALL       = 'ALL'
    ALLOWLIST = 'ALLOWLIST'
    SEGMENT   = 'SEGMENT'
    ROLE      = 'ROLE'


# ── Promotion parts ───────────────────────────────────────────────

@dataclass
class ScopeSide:
    products:   List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    brands:     List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.products or self.categories or self.brands)

    def to_dict(self) -> dict:
        return {
            'products':   list(self.products),
            'categories': list(self.categories),
            'brands':     list(self.brands),
        }


@dataclass
class Scope:
    storewide: bool = True
    include:   ScopeSide = field(default_factory=ScopeSide)
    exclude:   ScopeSide = field(default_factory=ScopeSide)

    def to_dict(self) -> dict:
        return {
            'storewide': self.storewide,
            'include':   self.include.to_dict(),
            'exclude':   self.exclude.to_dict(),
        }


@dataclass
class Targeting:
    mode:             str = TargetingMode.ALL.value
    allowed_user_ids: List[str] = field(default_factory=list)
    allowed_segments: List[str] = field(default_factory=list)
    allowed_roles:    List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'mode':           self.mode,
            'allowedUserIds': list(self.allowed_user_ids),
            'allowedSegments': list(self.allowed_segments),
            'allowedRoles':   list(self.allowed_roles),
        }


@dataclass
class Eligibility:
    min_subtotal_minor: int = 0
    max_discount_minor: Optional[int] = None
    cities:             Optional[List[str]] = None   # None = any city

    def to_dict(self) -> dict:
        return {
            'minSubtotalMinor': self.min_subtotal_minor,
            'maxDiscountMinor': self.max_discount_minor,
            'cities':           list(self.cities) if self.cities is not None else None,
        }


@dataclass
class Limits:
    max_uses_total:    Optional[int] = None
    max_uses_per_user: Optional[int] = None
    uses_total:        int = 0           # server-owned counter

    def to_dict(self) -> dict:
        return {
            'maxUsesTotal':   self.max_uses_total,
            'maxUsesPerUser': self.max_uses_per_user,
            'usesTotal':      self.uses_total,
        }


@dataclass
class PromotionRule:
    """Canonical promotion definition, as produced by the normalizer."""
    name:            str
    type:            str
    id:              Any = None
    description:     str = ''
    value:           Decimal = Decimal('0')
    code:            Optional[str] = None
    auto_apply:      bool = False
    starts_at:       Optional[datetime] = None
    ends_at:         Optional[datetime] = None
    is_active:       bool = True
    priority:        int = 0
    stacking_policy: str = StackingPolicy.EXCLUSIVE.value
    scope:           Scope = field(default_factory=Scope)
    targeting:       Targeting = field(default_factory=Targeting)
    eligibility:     Eligibility = field(default_factory=Eligibility)
    limits:          Limits = field(default_factory=Limits)

    @property
    def promotion_type(self) -> Optional[PromotionType]:
        return PromotionType.parse(self.type)

    @property
    def is_exclusive(self) -> bool:
        return StackingPolicy.parse(self.stacking_policy) != StackingPolicy.COMBINABLE

    def to_dict(self) -> dict:
        value = self.value
        if isinstance(value, Decimal) and value == value.to_integral_value():
            value = int(value)
        elif isinstance(value, Decimal):
            value = float(value)
        return {
            'id':             self.id,
            'name':           self.name,
            'description':    self.description,
            'type':           self.type,
            'value':          value,
            'code':           self.code,
            'autoApply':      self.auto_apply,
            'startsAt':       isoformat(self.starts_at),
            'endsAt':         isoformat(self.ends_at),
            'isActive':       self.is_active,
            'priority':       self.priority,
            'stackingPolicy': self.stacking_policy,
            'scope':          self.scope.to_dict(),
            'targeting':      self.targeting.to_dict(),
            'eligibility':    self.eligibility.to_dict(),
            'limits':         self.limits.to_dict(),
        }


# ── Order context ─────────────────────────────────────────────────

@dataclass
class UserContext:
    user_id:  Optional[str] = None
    roles:    List[str] = field(default_factory=list)
    segments: List[str] = field(default_factory=list)


@dataclass
class OrderItem:
    product_id:          Optional[str] = None
    category_ids:        List[str] = field(default_factory=list)
    brand:               Optional[str] = None
    quantity:            int = 1
    unit_price_minor:    int = 0
    line_subtotal_minor: Optional[int] = None

    def __post_init__(self):
        if self.line_subtotal_minor is None:
            self.line_subtotal_minor = self.unit_price_minor * self.quantity


@dataclass
class OrderContext:
    """Everything the evaluator needs to know about one checkout."""
    user:             UserContext = field(default_factory=UserContext)
    items:            List[OrderItem] = field(default_factory=list)
    subtotal_minor:   Optional[int] = None
    shipping_minor:   int = 0
    city:             Optional[str] = None
    code:             Optional[str] = None
    now:              Optional[datetime] = None
    user_usage_count: Optional[Dict[Any, int]] = None

    def __post_init__(self):
        if self.subtotal_minor is None:
            self.subtotal_minor = sum(it.line_subtotal_minor for it in self.items)
        if self.now is None:
            self.now = utcnow()
        else:
            self.now = as_utc(self.now)


# ── Time helpers ──────────────────────────────────────────────────

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(value) -> Optional[datetime]:
    """Parse an ISO-8601 instant (trailing 'Z' allowed). Returns None when unparseable."""
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat().replace('+00:00', 'Z')
