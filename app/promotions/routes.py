"""
app/promotions/routes.py
------------------------
JSON routes for managing promotions, previewing them against sample
orders, quoting a checkout and counting applied promotions per order.

Every response is an envelope:
    {"ok": true,  "data": ...}
    {"ok": false, "error": {"code": ..., "message": ...}}
"""
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation

from flask import request, jsonify, session, current_app
from sqlalchemy.exc import IntegrityError

from app import db
from app.auth.decorators import login_required, admin_required, roles_required
from app.auth.models import User
from app.promotions import promotions
from app.promotions.engine import (
    evaluate_promotions, select_promotions, clamp_to_order, build_snapshot,
)
from app.promotions.models import Promotion, AppliedPromotion, PROMO_TYPE_CHOICES
from app.promotions.normalizer import (
    normalize, normalize_code, PromotionValidationError, TYPE_ALIASES,
)
from app.promotions.redemption import (
    reserve_promotions_for_order, release_promotions_for_order,
    confirm_promotions_for_order, redemptions_held_by_order,
    user_usage_snapshot, PromotionRedemptionError,
)
from app.promotions.rules import (
    OrderContext, OrderItem, UserContext, parse_instant, utcnow,
)


CODE_RE = re.compile(r'^[A-Z0-9][A-Z0-9_-]*$')


# ── Response helpers ──────────────────────────────────────────────

def ok(data, status=200):
    return jsonify({'ok': True, 'data': data}), status


def fail(code, message, status=400, details=None):
    error = {'code': code, 'message': message}
    if details is not None:
        error['details'] = details
    return jsonify({'ok': False, 'error': error}), status


# ── Request validation ────────────────────────────────────────────

def _validate_promotion_body(body: dict, partial: bool, current_type: str = None) -> list:
    """
    Return a list of issue codes for an admin create/patch body.

    On a patch, `value` is checked against the stored type when the body
    does not change it.
    """
    issues = []
    promo_type = body.get('type')
    if promo_type is not None:
        promo_type = str(promo_type).strip().upper()
        promo_type = TYPE_ALIASES.get(promo_type, promo_type)
        if promo_type not in PROMO_TYPE_CHOICES:
            issues.append('PROMO_INVALID_TYPE')
    elif partial and 'value' in body:
        promo_type = current_type

    if 'name' in body and len(str(body.get('name') or '').strip()) > 120:
        issues.append('PROMO_NAME_TOO_LONG')

    value = body.get('value')
    if promo_type == 'PERCENT':
        if value is None:
            issues.append('PROMO_VALUE_REQUIRED')
        else:
            try:
                pct = Decimal(str(value))
                if not (Decimal('0') < pct <= Decimal('100')):
                    issues.append('PROMO_INVALID_PERCENT')
            except InvalidOperation:
                issues.append('PROMO_INVALID_PERCENT')
    elif promo_type == 'FIXED_AMOUNT':
        if value is None:
            issues.append('PROMO_VALUE_REQUIRED')
        elif isinstance(value, bool) or not isinstance(value, int) or value < 0:
            issues.append('PROMO_INVALID_FIXED_VALUE')

    code = body.get('code')
    if code is not None:
        normalized = normalize_code(code)
        if normalized and (len(normalized) > 60 or not CODE_RE.match(normalized)):
            issues.append('INVALID_PROMO_CODE')

    starts, ends = parse_instant(body.get('startsAt')), parse_instant(body.get('endsAt'))
    if starts and ends and starts > ends:
        issues.append('PROMO_INVALID_DATE_RANGE')

    if partial and not body:
        issues.append('EMPTY_UPDATE')
    return issues


def _json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


# ── Order context helpers ─────────────────────────────────────────

def _items_from_body(body: dict) -> list:
    items = []
    for it in body.get('items') or []:
        if not isinstance(it, dict):
            continue
        try:
            qty = int(it.get('quantity', 1))
            unit = int(it.get('unitPriceMinor', 0))
        except (TypeError, ValueError):
            continue
        if qty <= 0 or unit < 0:
            continue
        items.append(OrderItem(
            product_id=str(it['productId']) if it.get('productId') is not None else None,
            category_ids=[str(c) for c in it.get('categoryIds') or []],
            brand=it.get('brand'),
            quantity=qty,
            unit_price_minor=unit,
        ))
    return items


def _stored_user(user_id):
    if not user_id or not str(user_id).isdigit():
        return None
    return db.session.get(User, int(user_id))


def _user_context(user_id, roles=None, segments=None) -> UserContext:
    """Fill roles / segments from the stored user when the caller did not supply them."""
    roles = list(roles or [])
    segments = list(segments or [])
    if user_id and (not roles or not segments):
        user = _stored_user(user_id)
        if user is not None:
            roles = roles or [user.role.value]
            segments = segments or user.segments_list
    return UserContext(user_id=str(user_id) if user_id else None, roles=roles, segments=segments)


def _build_context(body: dict, user: UserContext, promo_ids) -> OrderContext:
    now = parse_instant(body.get('now')) or utcnow()
    try:
        shipping = max(int(body.get('shippingMinor') or 0), 0)
    except (TypeError, ValueError):
        shipping = 0

    city = body.get('city')
    if not city:
        stored = _stored_user(user.user_id)
        city = stored.city if stored is not None else None

    return OrderContext(
        user=user,
        items=_items_from_body(body),
        shipping_minor=shipping,
        city=city or '',
        code=body.get('code') or '',
        now=now,
        user_usage_count=user_usage_snapshot(user.user_id, promo_ids),
    )


def _exclude_own_usage(rules: list, ctx: OrderContext, held: list) -> None:
    """
    Take an order's own redemptions out of the usage snapshot so that
    repricing the order is not blocked by the uses it already holds.
    """
    counts = ctx.user_usage_count or {}
    for row in held:
        for rule in rules:
            if rule.id == row.promotion_id:
                rule.limits.uses_total = max((rule.limits.uses_total or 0) - 1, 0)
        if row.user_id == ctx.user.user_id and counts.get(row.promotion_id):
            counts[row.promotion_id] -= 1


def get_active_promotions(now: datetime = None, code: str = None) -> list:
    """
    Active, date-valid promotions a checkout can consider: auto-apply ones,
    code-less ones and the one matching the submitted code.
    """
    now = (now or utcnow()).replace(tzinfo=None)
    code_filters = [Promotion.auto_apply.is_(True), Promotion.code.is_(None)]
    normalized = normalize_code(code)
    if normalized:
        code_filters.append(Promotion.code == normalized)

    return Promotion.query.filter(
        Promotion.is_active.is_(True),
        db.or_(Promotion.starts_at.is_(None), Promotion.starts_at <= now),
        db.or_(Promotion.ends_at.is_(None),   Promotion.ends_at > now),
        db.or_(*code_filters),
    ).order_by(Promotion.priority.desc(), Promotion.id).all()


def _quote(body: dict, user: UserContext, held: list = ()):
    """Evaluate and select over the active promotions for one checkout."""
    now = parse_instant(body.get('now')) or utcnow()
    rows = get_active_promotions(now, body.get('code'))
    rules = [row.to_rule() for row in rows]
    ctx = _build_context(body, user, [r.id for r in rules])
    _exclude_own_usage(rules, ctx, held)

    evaluated = evaluate_promotions(rules, ctx)
    selection = select_promotions(evaluated)
    items_discount, shipping_discount = clamp_to_order(
        selection, ctx.subtotal_minor, ctx.shipping_minor)

    totals = {
        'subtotalMinor':         ctx.subtotal_minor,
        'shippingMinor':         ctx.shipping_minor,
        'itemsDiscountMinor':    items_discount,
        'shippingDiscountMinor': shipping_discount,
        'totalMinor':            ctx.subtotal_minor + ctx.shipping_minor
                                 - items_discount - shipping_discount,
    }
    return ctx, selection, totals


def _session_user() -> UserContext:
    return _user_context(session.get('user_id'))


# ── List ──────────────────────────────────────────────────────────

@promotions.route('/', methods=['GET'])
@roles_required('admin', 'staff')
def index():
    default_limit = current_app.config.get('PROMOTIONS_PAGE_LIMIT', 20)
    max_limit     = current_app.config.get('PROMOTIONS_MAX_PAGE_LIMIT', 100)
    page  = max(1, request.args.get('page', 1, type=int) or 1)
    limit = min(max_limit, max(1, request.args.get('limit', default_limit, type=int) or default_limit))

    query = Promotion.query
    q = request.args.get('q', '').strip()
    if q:
        query = query.filter(db.or_(Promotion.name.ilike(f'%{q}%'), Promotion.code.ilike(f'%{q}%')))

    flags = {
        'isActive':  Promotion.is_active,
        'autoApply': Promotion.auto_apply,
    }
    for arg, column in flags.items():
        value = request.args.get(arg, '').strip().lower()
        if value == 'true':
            query = query.filter(column.is_(True))
        elif value == 'false':
            query = query.filter(column.is_(False))

    has_code = request.args.get('hasCode', '').strip().lower()
    if has_code == 'true':
        query = query.filter(Promotion.code.isnot(None))
    elif has_code == 'false':
        query = query.filter(Promotion.code.is_(None))

    active_at = parse_instant(request.args.get('activeAt'))
    if active_at:
        when = active_at.replace(tzinfo=None)
        query = query.filter(
            db.or_(Promotion.starts_at.is_(None), Promotion.starts_at <= when),
            db.or_(Promotion.ends_at.is_(None),   Promotion.ends_at > when),
        )

    total = query.count()
    rows = (query.order_by(Promotion.priority.desc(), Promotion.id.desc())
                 .offset((page - 1) * limit).limit(limit).all())

    return ok({
        'items': [row.to_dict() for row in rows],
        'meta':  {'page': page, 'limit': limit, 'total': total,
                  'pages': (total + limit - 1) // limit},
    })


# ── Get ───────────────────────────────────────────────────────────

@promotions.route('/<int:promo_id>', methods=['GET'])
@roles_required('admin', 'staff')
def get_promo(promo_id):
    promo = db.session.get(Promotion, promo_id)
    if promo is None:
        return fail('PROMO_NOT_FOUND', 'Promotion not found', 404)
    return ok({'promotion': promo.to_dict()})


# ── Create ────────────────────────────────────────────────────────

@promotions.route('/', methods=['POST'])
@admin_required
def create_promo():
    body = _json_body()
    issues = _validate_promotion_body(body, partial=False)
    if issues:
        return fail('VALIDATION_ERROR', 'Invalid promotion', 400, issues)

    try:
        rule = normalize(body)
    except PromotionValidationError as e:
        return fail('VALIDATION_ERROR', str(e), 400, [e.field])

    promo = Promotion(created_by=session.get('user_id'), uses_total=0)
    promo.apply_rule(rule)
    try:
        db.session.add(promo)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return fail('PROMO_CODE_EXISTS', 'Promotion code already exists', 409)

    current_app.logger.info(f'Promotion {promo.id} "{promo.name}" created.')
    return ok({'promotion': promo.to_dict()}, 201)


# ── Update ────────────────────────────────────────────────────────

@promotions.route('/<int:promo_id>', methods=['PATCH'])
@admin_required
def update_promo(promo_id):
    promo = db.session.get(Promotion, promo_id)
    if promo is None:
        return fail('PROMO_NOT_FOUND', 'Promotion not found', 404)

    body = _json_body()
    issues = _validate_promotion_body(body, partial=True, current_type=promo.promo_type)
    if 'type' in body and str(body['type']).strip().upper() != 'FREE_SHIPPING' and 'value' not in body:
        issues.append('PROMO_VALUE_REQUIRED_WHEN_CHANGING_TYPE')
    if issues:
        return fail('VALIDATION_ERROR', 'Invalid promotion', 400, issues)

    try:
        rule = normalize(body, promo.to_rule())
    except PromotionValidationError as e:
        return fail('VALIDATION_ERROR', str(e), 400, [e.field])

    promo.apply_rule(rule)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return fail('PROMO_CODE_EXISTS', 'Promotion code already exists', 409)

    current_app.logger.info(f'Promotion {promo.id} "{promo.name}" updated.')
    return ok({'promotion': promo.to_dict()})


# ── Preview ───────────────────────────────────────────────────────

@promotions.route('/<int:promo_id>/preview', methods=['POST'])
@roles_required('admin', 'staff')
def preview_promo(promo_id):
    """
    Evaluate one promotion against a sample order with full diagnostics.
    Nothing is written; the same body always yields the same answer.
    """
    promo = db.session.get(Promotion, promo_id)
    if promo is None:
        return fail('PROMO_NOT_FOUND', 'Promotion not found', 404)

    body = _json_body()
    if not _items_from_body(body):
        return fail('VALIDATION_ERROR', 'At least one valid item is required', 400)

    rule = promo.to_rule()
    user = _user_context(body.get('userId'), body.get('roles'), body.get('segments'))
    ctx = _build_context(body, user, [rule.id])

    evaluated = evaluate_promotions([rule], ctx, include_ineligible=True)
    selection = select_promotions(evaluated, allow_zero=True)

    return ok({
        'promotion':  promo.to_dict(),
        'evaluation': evaluated[0].to_dict() if evaluated else None,
        'selected':   [s.to_dict() for s in selection.selected],
    })


# ── Quote ─────────────────────────────────────────────────────────

@promotions.route('/quote', methods=['POST'])
@login_required
def quote():
    body = _json_body()
    ctx, selection, totals = _quote(body, _session_user())
    return ok({'selection': selection.to_dict(), 'totals': totals})


# ── Apply / confirm / release per order ───────────────────────────

@promotions.route('/orders/<order_ref>/apply', methods=['POST'])
@login_required
def apply_to_order(order_ref):
    """
    Quote the order and count the winning promotions against their limits.
    Re-applying the same order replaces its snapshot without counting twice.
    """
    body = _json_body()
    user = _session_user()

    held = redemptions_held_by_order(order_ref)
    if any(row.user_id != user.user_id for row in held):
        return fail('PROMO_ORDER_USER_MISMATCH', 'Order belongs to another user', 409)

    ctx, selection, totals = _quote(body, user, held)

    try:
        kept = {s.promotion_id for s in selection.selected}
        previous = {a.promotion_id for a in AppliedPromotion.query.filter_by(order_ref=order_ref)}
        dropped = [pid for pid in previous if pid not in kept]
        if dropped:
            release_promotions_for_order(order_ref, dropped)

        reserve_promotions_for_order(order_ref, user.user_id, selection.selected)

        AppliedPromotion.query.filter_by(order_ref=order_ref).delete()
        for entry in selection.selected:
            db.session.add(AppliedPromotion.from_snapshot(order_ref, build_snapshot(entry)))
        db.session.commit()
    except PromotionRedemptionError as e:
        db.session.rollback()
        current_app.logger.warning(f'Order {order_ref}: promotion {e.promotion_id} rejected ({e.code}).')
        return fail(e.code, str(e), e.status)

    applied = AppliedPromotion.query.filter_by(order_ref=order_ref).all()
    return ok({
        'orderRef':  order_ref,
        'applied':   [a.to_dict() for a in applied],
        'selection': selection.to_dict(),
        'totals':    totals,
    })


@promotions.route('/orders/<order_ref>/confirm', methods=['POST'])
@admin_required
def confirm_order(order_ref):
    """Mark the order's reserved promotions as used for good (order paid)."""
    confirmed = confirm_promotions_for_order(order_ref)
    db.session.commit()
    current_app.logger.info(f'Order {order_ref}: {confirmed} promotion(s) confirmed.')
    return ok({'orderRef': order_ref, 'confirmed': confirmed})


@promotions.route('/orders/<order_ref>/release', methods=['POST'])
@admin_required
def release_order(order_ref):
    released = release_promotions_for_order(order_ref)
    db.session.commit()
    return ok({'orderRef': order_ref, 'released': released})
