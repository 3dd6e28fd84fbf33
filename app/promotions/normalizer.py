"""
app/promotions/normalizer.py
----------------------------
Merge an admin-authored patch into the stored canonical promotion.

normalize(patch, existing) is pure: any key present in the patch wins,
any key absent falls back to `existing`, an explicit None clears a
nullable field. Optional input is sanitized, never rejected. Only a
missing name or type raises PromotionValidationError.

Patch keys are the camelCase wire names, e.g.
    {"name": "Summer", "type": "PERCENT", "value": 10,
     "scope": {"include": {"brands": ["Acme"]}},
     "eligibility": {"maxDiscountMinor": None}}
"""
from __future__ import annotations
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Optional

from app.promotions.rules import (
    PromotionRule, PromotionType, StackingPolicy, TargetingMode,
    Scope, ScopeSide, Targeting, Eligibility, Limits, parse_instant,
)


MAX_LIST_ENTRIES = 200

# Older names still found in stored rules and admin tooling.
TYPE_ALIASES     = {'FIXED': PromotionType.FIXED_AMOUNT.value}
STACKING_ALIASES = {
    'STACKABLE': StackingPolicy.COMBINABLE.value,
    'STACKABLE_SAME_PRIORITY_ONLY': StackingPolicy.COMBINABLE.value,
}
MODE_ALIASES = {
    'WHITELIST': TargetingMode.ALLOWLIST.value,
    'SEGMENTS':  TargetingMode.SEGMENT.value,
    'ROLES':     TargetingMode.ROLE.value,
}

_MISSING = object()


class PromotionValidationError(ValueError):
    """A structurally required promotion field is missing."""

    def __init__(self, field: str, message: str = ''):
        self.field = field
        super().__init__(message or f'{field} is required')


# ── List / scalar sanitizers ──────────────────────────────────────

def normalize_id_list(values, limit: int = MAX_LIST_ENTRIES) -> list:
    """Trim, drop empties, de-duplicate preserving order, cap at `limit`."""
    if not isinstance(values, (list, tuple)):
        return []
    out, seen = [], set()
    for raw in values:
        if raw is None:
            continue
        v = str(raw).strip()
        if not v or v in seen:
            continue
        seen.add(v)
        out.append(v)
        if len(out) >= limit:
            break
    return out


def normalize_string_list(values, limit: int = MAX_LIST_ENTRIES) -> list:
    """Like normalize_id_list, but lower-cased."""
    if not isinstance(values, (list, tuple)):
        return []
    return normalize_id_list(
        [str(v).strip().lower() for v in values if v is not None], limit
    )


def normalize_code(code) -> Optional[str]:
    if code is None:
        return None
    v = str(code).strip().upper()
    return v or None


def _minor(value, fallback):
    """Coerce to a non-negative int of minor units; unusable input keeps `fallback`."""
    if value is None or isinstance(value, bool):
        return fallback
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return fallback
    if not d.is_finite():
        return fallback
    return max(0, int(d.to_integral_value(rounding=ROUND_DOWN)))


def _nullable_minor(patch: dict, key: str, existing):
    if key not in patch:
        return existing
    if patch[key] is None:
        return None
    return _minor(patch[key], existing)


def _decimal(value, fallback: Decimal) -> Decimal:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return fallback
    if not d.is_finite():
        return fallback
    return max(Decimal('0'), d)


def _int(value, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


def _text(value, fallback):
    if value is None:
        return fallback
    return str(value).strip()


def _pick(patch, key):
    if not isinstance(patch, dict):
        return _MISSING
    return patch.get(key, _MISSING)


# ── Record reducers ───────────────────────────────────────────────

def merge_scope_side(patch, existing: Optional[ScopeSide]) -> ScopeSide:
    ex = existing or ScopeSide()
    inc = patch if isinstance(patch, dict) else {}
    return ScopeSide(
        products=normalize_id_list(inc['products']) if 'products' in inc else normalize_id_list(ex.products),
        categories=normalize_id_list(inc['categories']) if 'categories' in inc else normalize_id_list(ex.categories),
        brands=normalize_string_list(inc['brands']) if 'brands' in inc else normalize_string_list(ex.brands),
    )


def merge_scope(patch, existing: Optional[Scope]) -> Scope:
    ex = existing or Scope()
    inc = patch if isinstance(patch, dict) else {}
    storewide = inc.get('storewide')
    return Scope(
        storewide=bool(storewide) if storewide is not None else ex.storewide,
        include=merge_scope_side(inc.get('include'), ex.include),
        exclude=merge_scope_side(inc.get('exclude'), ex.exclude),
    )


def merge_targeting(patch, existing: Optional[Targeting]) -> Targeting:
    ex = existing or Targeting()
    inc = patch if isinstance(patch, dict) else {}

    mode = ex.mode
    if inc.get('mode') is not None:
        mode = str(inc['mode']).strip().upper()
        mode = MODE_ALIASES.get(mode, mode)

    return Targeting(
        mode=mode,
        allowed_user_ids=normalize_id_list(
            inc['allowedUserIds'] if 'allowedUserIds' in inc else ex.allowed_user_ids),
        allowed_segments=normalize_string_list(
            inc['allowedSegments'] if 'allowedSegments' in inc else ex.allowed_segments),
        allowed_roles=normalize_string_list(
            inc['allowedRoles'] if 'allowedRoles' in inc else ex.allowed_roles),
    )


def merge_eligibility(patch, existing: Optional[Eligibility]) -> Eligibility:
    ex = existing or Eligibility()
    inc = patch if isinstance(patch, dict) else {}

    cities = ex.cities
    if 'cities' in inc:
        cities = None if inc['cities'] is None else normalize_string_list(inc['cities'])
    elif cities is not None:
        cities = normalize_string_list(cities)

    return Eligibility(
        min_subtotal_minor=_minor(inc.get('minSubtotalMinor'), ex.min_subtotal_minor),
        max_discount_minor=_nullable_minor(inc, 'maxDiscountMinor', ex.max_discount_minor),
        cities=cities,
    )


def merge_limits(patch, existing: Optional[Limits]) -> Limits:
    ex = existing or Limits()
    inc = patch if isinstance(patch, dict) else {}
    return Limits(
        max_uses_total=_nullable_minor(inc, 'maxUsesTotal', ex.max_uses_total),
        max_uses_per_user=_nullable_minor(inc, 'maxUsesPerUser', ex.max_uses_per_user),
        uses_total=ex.uses_total,      # never from the patch
    )


# ── Main entry point ──────────────────────────────────────────────

def normalize(patch: dict, existing: Optional[PromotionRule] = None) -> PromotionRule:
    """Return the canonical rule obtained by applying `patch` on top of `existing`."""
    patch = patch if isinstance(patch, dict) else {}

    def field(key, attr, default, convert=lambda v, fb: v):
        fallback = getattr(existing, attr) if existing is not None else default
        raw = patch.get(key, _MISSING)
        if raw is _MISSING:
            return fallback
        return convert(raw, fallback)

    name = field('name', 'name', '', _text)
    if not name:
        raise PromotionValidationError('name')

    promo_type = field('type', 'type', '', lambda v, fb: _text(v, fb).upper())
    promo_type = TYPE_ALIASES.get(promo_type, promo_type)
    if not promo_type:
        raise PromotionValidationError('type')

    value = field('value', 'value', Decimal('0'), _decimal)
    if promo_type == PromotionType.FREE_SHIPPING.value:
        value = Decimal('0')
    elif promo_type == PromotionType.FIXED_AMOUNT.value:
        value = Decimal(_minor(value, 0))

    stacking = field('stackingPolicy', 'stacking_policy', StackingPolicy.EXCLUSIVE.value,
                     lambda v, fb: _text(v, fb).upper())
    stacking = STACKING_ALIASES.get(stacking, stacking)
    if StackingPolicy.parse(stacking) is None:
        stacking = StackingPolicy.EXCLUSIVE.value

    def instant(v, fb):
        if v is None:
            return None
        parsed = parse_instant(v)
        return parsed if parsed is not None else fb

    return PromotionRule(
        id=existing.id if existing is not None else None,
        name=name,
        description=field('description', 'description', '', lambda v, fb: _text(v, '')),
        type=promo_type,
        value=value,
        code=field('code', 'code', None, lambda v, fb: normalize_code(v)),
        auto_apply=field('autoApply', 'auto_apply', False, lambda v, fb: bool(v)),
        starts_at=field('startsAt', 'starts_at', None, instant),
        ends_at=field('endsAt', 'ends_at', None, instant),
        is_active=field('isActive', 'is_active', True,
                        lambda v, fb: fb if v is None else bool(v)),
        priority=field('priority', 'priority', 0, _int),
        stacking_policy=stacking,
        scope=merge_scope(_pick(patch, 'scope'), existing.scope if existing else None),
        targeting=merge_targeting(_pick(patch, 'targeting'), existing.targeting if existing else None),
        eligibility=merge_eligibility(_pick(patch, 'eligibility'), existing.eligibility if existing else None),
        limits=merge_limits(_pick(patch, 'limits'), existing.limits if existing else None),
    )
