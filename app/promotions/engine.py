"""
app/promotions/engine.py
------------------------
Pure-Python promotion evaluation and selection engine.

evaluate_promotions() scores each promotion against an OrderContext and
explains why it does or does not apply. select_promotions() resolves the
stacking policy and returns the winning, non-overlapping set.

No DB access happens here. The caller loads the promotions, supplies
the usage-count snapshot, clamps the result against the order totals
and persists whatever it decides to apply.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from app.promotions.calculator import compute_discount, applies_to_shipping
from app.promotions.rules import (
    OrderContext, OrderItem, PromotionRule, PromotionType, TargetingMode,
    as_utc,
)

logger = logging.getLogger(__name__)


# Reason tokens
INACTIVE             = 'INACTIVE'
OUT_OF_WINDOW        = 'OUT_OF_WINDOW'
NOT_TARGETED         = 'NOT_TARGETED'
BELOW_MIN_SUBTOTAL   = 'BELOW_MIN_SUBTOTAL'
CITY_NOT_ELIGIBLE    = 'CITY_NOT_ELIGIBLE'
CODE_REQUIRED        = 'CODE_REQUIRED'
CODE_MISMATCH        = 'CODE_MISMATCH'
GLOBAL_LIMIT_REACHED = 'GLOBAL_LIMIT_REACHED'
USER_REQUIRED        = 'USER_REQUIRED'
USER_USAGE_UNKNOWN   = 'USER_USAGE_UNKNOWN'
USER_LIMIT_REACHED   = 'USER_LIMIT_REACHED'
SCOPE_NO_MATCH       = 'SCOPE_NO_MATCH'
EVALUATION_FAILED    = 'EVALUATION_FAILED'


@dataclass
class EvaluationResult:
    """How one promotion fares against one order context."""
    promotion:              PromotionRule
    eligible:               bool
    matched_subtotal_minor: int = 0
    discount_minor:         int = 0
    reasons:                List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'promotionId':          self.promotion.id,
            'eligible':             self.eligible,
            'matchedSubtotalMinor': self.matched_subtotal_minor,
            'discountMinor':        self.discount_minor,
            'reasons':              list(self.reasons),
        }


@dataclass
class SelectedPromotion:
    promotion_id:   Any
    discount_minor: int
    reasons:        List[str]
    promotion:      PromotionRule

    def to_dict(self) -> dict:
        return {
            'promotionId':   self.promotion_id,
            'discountMinor': self.discount_minor,
            'reasons':       list(self.reasons),
        }


@dataclass
class SelectionResult:
    """Winning promotions, in application order, and their aggregate."""
    selected:                List[SelectedPromotion] = field(default_factory=list)
    total_discount_minor:    int = 0
    subtotal_discount_minor: int = 0
    shipping_discount_minor: int = 0

    def to_dict(self) -> dict:
        return {
            'selected':              [s.to_dict() for s in self.selected],
            'totalDiscountMinor':    self.total_discount_minor,
            'subtotalDiscountMinor': self.subtotal_discount_minor,
            'shippingDiscountMinor': self.shipping_discount_minor,
        }


# ── Individual checks ─────────────────────────────────────────────
# Each returns None when the check passes, or the reason token.

def _check_active(promo: PromotionRule, ctx: OrderContext) -> Optional[str]:
    return None if promo.is_active else INACTIVE


def _check_window(promo: PromotionRule, ctx: OrderContext) -> Optional[str]:
    now = ctx.now
    if promo.starts_at is not None and as_utc(promo.starts_at) > now:
        return OUT_OF_WINDOW
    if promo.ends_at is not None and as_utc(promo.ends_at) <= now:
        return OUT_OF_WINDOW
    return None


def _lowered(values) -> set:
    return {str(v).strip().lower() for v in values or [] if str(v).strip()}


def _check_targeting(promo: PromotionRule, ctx: OrderContext) -> Optional[str]:
    targeting = promo.targeting
    mode = TargetingMode.parse(targeting.mode)
    user = ctx.user

    if mode is TargetingMode.ALL:
        return None
    if mode is TargetingMode.ALLOWLIST:
        allowed = {str(uid) for uid in targeting.allowed_user_ids}
        if user.user_id is not None and str(user.user_id) in allowed:
            return None
    elif mode is TargetingMode.SEGMENT:
        if _lowered(user.segments) & _lowered(targeting.allowed_segments):
            return None
    elif mode is TargetingMode.ROLE:
        if _lowered(user.roles) & _lowered(targeting.allowed_roles):
            return None
    return NOT_TARGETED


def _check_min_subtotal(promo: PromotionRule, ctx: OrderContext) -> Optional[str]:
    if ctx.subtotal_minor < (promo.eligibility.min_subtotal_minor or 0):
        return BELOW_MIN_SUBTOTAL
    return None


def _check_city(promo: PromotionRule, ctx: OrderContext) -> Optional[str]:
    cities = _lowered(promo.eligibility.cities)
    if not cities:
        return None
    city = str(ctx.city or '').strip().lower()
    return None if city in cities else CITY_NOT_ELIGIBLE


def _check_code(promo: PromotionRule, ctx: OrderContext) -> Optional[str]:
    # Auto-apply promotions are considered whatever code was submitted.
    if promo.auto_apply or not promo.code:
        return None
    submitted = str(ctx.code or '').strip().upper()
    if not submitted:
        return CODE_REQUIRED
    return None if submitted == promo.code.strip().upper() else CODE_MISMATCH


def _check_global_limit(promo: PromotionRule, ctx: OrderContext) -> Optional[str]:
    limits = promo.limits
    if limits.max_uses_total is not None and (limits.uses_total or 0) >= limits.max_uses_total:
        return GLOBAL_LIMIT_REACHED
    return None


def _check_user_limit(promo: PromotionRule, ctx: OrderContext) -> Optional[str]:
    per_user = promo.limits.max_uses_per_user
    if per_user is None:
        return None
    if not ctx.user.user_id:
        return USER_REQUIRED
    counts = ctx.user_usage_count or {}
    used = counts.get(promo.id, counts.get(str(promo.id)))
    if used is None:
        return USER_USAGE_UNKNOWN
    return USER_LIMIT_REACHED if used >= per_user else None


ORDERED_CHECKS = (
    _check_active,
    _check_window,
    _check_targeting,
    _check_min_subtotal,
    _check_city,
    _check_code,
    _check_global_limit,
    _check_user_limit,
)


# ── Scope ─────────────────────────────────────────────────────────

def _side_matches(item: OrderItem, products: set, categories: set, brands: set) -> bool:
    if item.product_id is not None and str(item.product_id).strip() in products:
        return True
    if any(str(c).strip() in categories for c in item.category_ids or []):
        return True
    brand = str(item.brand or '').strip().lower()
    return bool(brand) and brand in brands


def matched_items(promo: PromotionRule, items: List[OrderItem]) -> List[OrderItem]:
    """Items the promotion's scope covers. Exclude always overrides include."""
    scope = promo.scope
    inc = scope.include
    exc = scope.exclude
    inc_sets = (set(inc.products), set(inc.categories), _lowered(inc.brands))
    exc_sets = (set(exc.products), set(exc.categories), _lowered(exc.brands))
    open_scope = scope.storewide and inc.is_empty

    out = []
    for item in items:
        if _side_matches(item, *exc_sets):
            continue
        if open_scope or _side_matches(item, *inc_sets):
            out.append(item)
    return out


# ── Evaluation ────────────────────────────────────────────────────

def _evaluate_one(promo: PromotionRule, ctx: OrderContext, diagnostics: bool) -> EvaluationResult:
    reasons: List[str] = []
    for check in ORDERED_CHECKS:
        reason = check(promo, ctx)
        if reason:
            reasons.append(reason)
            if not diagnostics:
                return EvaluationResult(promo, False, reasons=reasons)

    lines   = matched_items(promo, ctx.items)
    matched = sum(int(it.line_subtotal_minor or 0) for it in lines)
    if not lines:
        reasons.append(SCOPE_NO_MATCH)
        if not diagnostics:
            return EvaluationResult(promo, False, matched, reasons=reasons)

    discount = compute_discount(promo, matched, ctx.shipping_minor)
    if discount.reason:
        reasons.append(discount.reason)

    if reasons:
        return EvaluationResult(promo, False, matched, 0, reasons)
    return EvaluationResult(promo, True, matched, discount.amount_minor, [])


def evaluate_promotions(promotions: List[PromotionRule], ctx: OrderContext,
                        include_ineligible: bool = False) -> List[EvaluationResult]:
    """
    Evaluate each promotion against the order context, in input order.

    Checks run in a fixed order: active flag, date window, targeting,
    minimum subtotal, city, code, global limit, per-user limit, scope,
    then the discount itself. By default evaluation stops at the first
    failing check and ineligible promotions are dropped. With
    include_ineligible=True every promotion is returned together with
    the full list of reasons it fails.
    """
    out: List[EvaluationResult] = []
    for promo in promotions or []:
        try:
            result = _evaluate_one(promo, ctx, include_ineligible)
        except Exception:
            logger.exception('Promotion %r could not be evaluated', getattr(promo, 'id', None))
            result = EvaluationResult(promo, False, reasons=[EVALUATION_FAILED])

        if result.eligible or include_ineligible:
            out.append(result)
        else:
            logger.debug('Promotion %r ineligible: %s', promo.id, ', '.join(result.reasons))
    return out


# ── Selection ─────────────────────────────────────────────────────

def _id_key(pid) -> Tuple[int, int, str]:
    # Integer ids sort numerically, anything else as text.
    if isinstance(pid, int) and not isinstance(pid, bool):
        return (0, pid, '')
    return (1, 0, '' if pid is None else str(pid))


def _rank(result: EvaluationResult):
    """priority desc, discount desc, id asc."""
    return (-int(result.promotion.priority or 0), -result.discount_minor, _id_key(result.promotion.id))


def _is_free_shipping(result: EvaluationResult) -> bool:
    return result.promotion.promotion_type is PromotionType.FREE_SHIPPING


def select_promotions(evaluated: List[EvaluationResult], allow_zero: bool = False) -> SelectionResult:
    """
    Resolve stacking policy over evaluated promotions.

    The best EXCLUSIVE promotion (priority, then discount, then id)
    competes against the sum of all COMBINABLE ones; the larger total
    wins and a tie goes to the combinable set. At most one free-shipping
    promotion is ever combined. With allow_zero=False, zero-discount
    promotions are never returned.
    """
    eligible = [
        r for r in evaluated or []
        if r.eligible and (allow_zero or r.discount_minor > 0)
    ]

    exclusive  = sorted((r for r in eligible if r.promotion.is_exclusive), key=_rank)
    combinable = []
    shipping_taken = False
    for r in sorted((r for r in eligible if not r.promotion.is_exclusive), key=_rank):
        if _is_free_shipping(r):
            if shipping_taken:
                continue
            shipping_taken = True
        combinable.append(r)

    combinable_total = sum(r.discount_minor for r in combinable)

    if exclusive and (not combinable or exclusive[0].discount_minor > combinable_total):
        winners = [exclusive[0]]
    else:
        winners = combinable

    selected = [
        SelectedPromotion(
            promotion_id=r.promotion.id,
            discount_minor=r.discount_minor,
            reasons=list(r.reasons),
            promotion=r.promotion,
        )
        for r in winners
    ]
    shipping = sum(s.discount_minor for s in selected if applies_to_shipping(s.promotion))
    subtotal = sum(s.discount_minor for s in selected if not applies_to_shipping(s.promotion))

    return SelectionResult(
        selected=selected,
        total_discount_minor=shipping + subtotal,
        subtotal_discount_minor=subtotal,
        shipping_discount_minor=shipping,
    )


def clamp_to_order(selection: SelectionResult, subtotal_minor: int,
                   shipping_minor: int) -> Tuple[int, int]:
    """Return (items_discount, shipping_discount), each capped by its own base."""
    items    = min(selection.subtotal_discount_minor, max(int(subtotal_minor or 0), 0))
    shipping = min(selection.shipping_discount_minor, max(int(shipping_minor or 0), 0))
    return items, shipping


def build_snapshot(selected: SelectedPromotion) -> dict:
    """
    Frozen copy of an applied promotion. Stored with the order so the
    record survives later edits or deletion of the promotion.
    """
    promo = selected.promotion
    return {
        'promotionId':            selected.promotion_id,
        'nameSnapshot':           promo.name or '',
        'codeSnapshot':           promo.code,
        'type':                   promo.type,
        'discountMinor':          int(selected.discount_minor),
        'prioritySnapshot':       int(promo.priority or 0),
        'stackingPolicySnapshot': promo.stacking_policy,
    }
