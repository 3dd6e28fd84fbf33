"""
app/promotions/calculator.py
----------------------------
Exact discount for one eligible promotion, in integer minor units.

Rounding is always truncation (floor). A discount is never negative and
never exceeds the base it applies to: the matched subtotal, or the
shipping fee for FREE_SHIPPING.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Optional

from app.promotions.rules import PromotionRule, PromotionType


UNKNOWN_TYPE = 'UNKNOWN_TYPE'


@dataclass(frozen=True)
class Discount:
    amount_minor: int
    reason:       Optional[str] = None     # set when no discount could be computed


def _percent_off(base: int, percent: Decimal) -> int:
    raw = (Decimal(base) * percent / Decimal('100')).to_integral_value(rounding=ROUND_FLOOR)
    return min(max(int(raw), 0), base)


def _fixed_off(base: int, amount: Decimal) -> int:
    return max(min(int(amount), base), 0)


def _shipping_waiver(shipping_minor) -> int:
    if not isinstance(shipping_minor, int) or isinstance(shipping_minor, bool):
        return 0
    return max(shipping_minor, 0)


def applies_to_shipping(rule: PromotionRule) -> bool:
    return rule.promotion_type is PromotionType.FREE_SHIPPING


def compute_discount(rule: PromotionRule, matched_subtotal_minor: int,
                     shipping_minor: int = 0) -> Discount:
    """Dispatch on the promotion type, then apply the max-discount cap."""
    base  = max(int(matched_subtotal_minor or 0), 0)
    ptype = rule.promotion_type

    if ptype is PromotionType.PERCENT:
        amount = _percent_off(base, Decimal(rule.value))
    elif ptype is PromotionType.FIXED_AMOUNT:
        amount = _fixed_off(base, Decimal(rule.value))
    elif ptype is PromotionType.FREE_SHIPPING:
        amount = _shipping_waiver(shipping_minor)
    else:
        return Discount(0, UNKNOWN_TYPE)

    cap = rule.eligibility.max_discount_minor
    if cap is not None:
        amount = min(amount, max(int(cap), 0))
    return Discount(amount)
