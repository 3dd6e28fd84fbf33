"""
test_selector.py — Tests for the discount calculator and stacking selection.
Run: pytest test_selector.py -v
"""
from decimal import Decimal

import pytest

from app.promotions.calculator import compute_discount, applies_to_shipping, UNKNOWN_TYPE
from app.promotions.engine import (
    EvaluationResult, select_promotions, clamp_to_order, build_snapshot,
)
from app.promotions.normalizer import normalize


def make_promo(promo_id, **patch):
    data = dict(name=f'Promo {promo_id}', type='FIXED_AMOUNT', value=0)
    data.update(patch)
    rule = normalize(data)
    rule.id = promo_id
    return rule


def scored(promo_id, discount, policy='EXCLUSIVE', priority=0, ptype='FIXED_AMOUNT', eligible=True):
    promo = make_promo(promo_id, type=ptype, stackingPolicy=policy, priority=priority)
    return EvaluationResult(promo, eligible, 10000, discount if eligible else 0,
                            [] if eligible else ['NOT_TARGETED'])


# ── 1. Calculator ─────────────────────────────────────────────────

@pytest.mark.parametrize('value,base,expected', [
    (10, 12345, 1234),
    (Decimal('12.5'), 999, 124),
    (100, 5000, 5000),
    (0, 5000, 0),
])
def test_percent(value, base, expected):
    rule = make_promo(1, type='PERCENT', value=value)
    assert compute_discount(rule, base).amount_minor == expected


def test_fixed_amount_never_exceeds_base():
    rule = make_promo(1, value=800)
    assert compute_discount(rule, 500).amount_minor == 500
    assert compute_discount(rule, 5000).amount_minor == 800


def test_free_shipping_uses_shipping_fee():
    rule = make_promo(1, type='FREE_SHIPPING')
    assert applies_to_shipping(rule)
    assert compute_discount(rule, 10000, shipping_minor=1200).amount_minor == 1200
    assert compute_discount(rule, 10000, shipping_minor=-5).amount_minor == 0


def test_cap_applies_after_type_dispatch():
    rule = make_promo(1, type='PERCENT', value=30, eligibility={'maxDiscountMinor': 250})
    assert compute_discount(rule, 10000).amount_minor == 250


def test_unknown_type_returns_zero_with_reason():
    rule = make_promo(1, type='MYSTERY_BOX')
    discount = compute_discount(rule, 10000)
    assert discount.amount_minor == 0
    assert discount.reason == UNKNOWN_TYPE


# ── 2. Exclusive ranking ──────────────────────────────────────────

def test_priority_beats_raw_discount():
    a = scored('A', 500, priority=10)
    b = scored('B', 900, priority=5)
    result = select_promotions([b, a])
    assert [s.promotion_id for s in result.selected] == ['A']
    assert result.total_discount_minor == 500


def test_equal_priority_prefers_larger_discount_then_lower_id():
    result = select_promotions([scored(3, 400), scored(2, 700), scored(1, 700)])
    assert [s.promotion_id for s in result.selected] == [1]


def test_integer_ids_sort_numerically():
    result = select_promotions([scored(10, 700), scored(9, 700)])
    assert result.selected[0].promotion_id == 9


# ── 3. Exclusive vs combinable ────────────────────────────────────

def test_combinable_sum_beats_smaller_exclusive():
    result = select_promotions([
        scored(1, 600),
        scored(2, 400, 'COMBINABLE'),
        scored(3, 300, 'COMBINABLE'),
    ])
    assert [s.promotion_id for s in result.selected] == [2, 3]
    assert result.total_discount_minor == 700


def test_exclusive_beats_smaller_combinable_sum():
    result = select_promotions([
        scored(1, 800),
        scored(2, 400, 'COMBINABLE'),
        scored(3, 300, 'COMBINABLE'),
    ])
    assert [s.promotion_id for s in result.selected] == [1]


def test_tie_favours_combinable_set():
    result = select_promotions([
        scored(1, 700),
        scored(2, 400, 'COMBINABLE'),
        scored(3, 300, 'COMBINABLE'),
    ])
    assert [s.promotion_id for s in result.selected] == [2, 3]


def test_combinable_order_is_deterministic():
    result = select_promotions([
        scored(5, 100, 'COMBINABLE'),
        scored(4, 300, 'COMBINABLE', priority=1),
        scored(3, 300, 'COMBINABLE'),
        scored(2, 200, 'COMBINABLE'),
    ])
    assert [s.promotion_id for s in result.selected] == [4, 3, 2, 5]


def test_only_one_free_shipping_is_combined():
    result = select_promotions([
        scored(1, 900, 'COMBINABLE', ptype='FREE_SHIPPING'),
        scored(2, 900, 'COMBINABLE', ptype='FREE_SHIPPING'),
        scored(3, 250, 'COMBINABLE'),
    ])
    assert [s.promotion_id for s in result.selected] == [1, 3]
    assert result.shipping_discount_minor == 900
    assert result.subtotal_discount_minor == 250
    assert result.total_discount_minor == 1150


# ── 4. Filtering ──────────────────────────────────────────────────

def test_ineligible_entries_are_ignored():
    result = select_promotions([scored(1, 5000, eligible=False), scored(2, 100, 'COMBINABLE')])
    assert [s.promotion_id for s in result.selected] == [2]


def test_zero_discounts_only_kept_in_preview():
    entries = [scored(1, 0, 'COMBINABLE'), scored(2, 300, 'COMBINABLE')]
    assert [s.promotion_id for s in select_promotions(entries).selected] == [2]
    preview = select_promotions(entries, allow_zero=True)
    assert [s.promotion_id for s in preview.selected] == [2, 1]


def test_nothing_eligible():
    result = select_promotions([])
    assert result.selected == []
    assert result.total_discount_minor == 0


# ── 5. Caller helpers ─────────────────────────────────────────────

def test_clamp_to_order():
    result = select_promotions([
        scored(1, 9000, 'COMBINABLE'),
        scored(2, 5000, 'COMBINABLE'),
        scored(3, 700, 'COMBINABLE', ptype='FREE_SHIPPING'),
    ])
    assert clamp_to_order(result, subtotal_minor=10000, shipping_minor=500) == (10000, 500)


def test_snapshot_freezes_promotion_fields():
    entry = select_promotions([scored(1, 450, priority=2)]).selected[0]
    snap = build_snapshot(entry)
    assert snap == {
        'promotionId': 1,
        'nameSnapshot': 'Promo 1',
        'codeSnapshot': None,
        'type': 'FIXED_AMOUNT',
        'discountMinor': 450,
        'prioritySnapshot': 2,
        'stackingPolicySnapshot': 'EXCLUSIVE',
    }
