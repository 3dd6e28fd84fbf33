"""
app/promotions/redemption.py
----------------------------
Counts applied promotions against their usage limits.

The engine only reads a snapshot of the counters. Here they are written,
each with a single conditional UPDATE so that concurrent checkouts can
never push a promotion past max_uses_total / max_uses_per_user.

None of these functions commit. The caller commits on success and rolls
back the session when a PromotionRedemptionError is raised.
"""
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from app import db
from app.promotions.engine import SelectedPromotion
from app.promotions.models import (
    Promotion, PromotionRedemption, PromotionUserUsage,
    REDEMPTION_RESERVED, REDEMPTION_CONFIRMED, REDEMPTION_RELEASED,
)

logger = logging.getLogger(__name__)


class PromotionRedemptionError(Exception):
    """A promotion could not be counted against its limits."""

    def __init__(self, code: str, message: str, status: int = 409, promotion_id=None):
        super().__init__(message)
        self.code = code
        self.status = status
        self.promotion_id = promotion_id


# ── Counters ──────────────────────────────────────────────────────

def _increment_total(promotion_id: int) -> bool:
    stmt = (
        update(Promotion)
        .where(
            Promotion.id == promotion_id,
            or_(Promotion.max_uses_total.is_(None),
                Promotion.uses_total < Promotion.max_uses_total),
        )
        .values(uses_total=Promotion.uses_total + 1)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


def _decrement_total(promotion_id: int) -> None:
    db.session.execute(
        update(Promotion)
        .where(Promotion.id == promotion_id, Promotion.uses_total > 0)
        .values(uses_total=Promotion.uses_total - 1)
        .execution_options(synchronize_session=False)
    )


def _bump_user_usage(promotion_id: int, user_id: str, limit: int) -> bool:
    stmt = (
        update(PromotionUserUsage)
        .where(
            PromotionUserUsage.promotion_id == promotion_id,
            PromotionUserUsage.user_id == user_id,
            PromotionUserUsage.uses_total < limit,
        )
        .values(uses_total=PromotionUserUsage.uses_total + 1)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


def _increment_user(promotion_id: int, user_id: str, limit: int) -> bool:
    if limit <= 0:
        return False
    if _bump_user_usage(promotion_id, user_id, limit):
        return True

    exists = db.session.query(PromotionUserUsage.id).filter_by(
        promotion_id=promotion_id, user_id=user_id).first()
    if exists:
        return False

    # First use: insert the counter row. A concurrent insert for the same
    # pair loses on the unique constraint and falls back to the UPDATE.
    try:
        with db.session.begin_nested():
            db.session.add(PromotionUserUsage(
                promotion_id=promotion_id, user_id=user_id, uses_total=1))
        return True
    except IntegrityError:
        return _bump_user_usage(promotion_id, user_id, limit)


def _decrement_user(promotion_id: int, user_id: str) -> None:
    db.session.execute(
        update(PromotionUserUsage)
        .where(
            PromotionUserUsage.promotion_id == promotion_id,
            PromotionUserUsage.user_id == user_id,
            PromotionUserUsage.uses_total > 0,
        )
        .values(uses_total=PromotionUserUsage.uses_total - 1)
        .execution_options(synchronize_session=False)
    )


# ── Public API ────────────────────────────────────────────────────

def user_usage_snapshot(user_id: Optional[str], promotion_ids: Iterable[int]) -> Dict[int, int]:
    """{promotion_id: uses} for one user. Promotions never used map to 0."""
    ids = [pid for pid in promotion_ids if pid is not None]
    if not user_id or not ids:
        return {}
    rows = PromotionUserUsage.query.filter(
        PromotionUserUsage.user_id == str(user_id),
        PromotionUserUsage.promotion_id.in_(ids),
    ).all()
    counts = {pid: 0 for pid in ids}
    counts.update({row.promotion_id: row.uses_total for row in rows})
    return counts


def redemptions_held_by_order(order_ref: str) -> List[PromotionRedemption]:
    """Reserved or confirmed redemptions of one order."""
    return PromotionRedemption.query.filter(
        PromotionRedemption.order_ref == order_ref,
        PromotionRedemption.status.in_([REDEMPTION_RESERVED, REDEMPTION_CONFIRMED]),
    ).all()


def _upsert_redemption(promotion_id: int, order_ref: str, user_id: Optional[str]) -> bool:
    """Mark (promotion, order) reserved. Returns True when it must be counted."""
    row = PromotionRedemption.query.filter_by(
        promotion_id=promotion_id, order_ref=order_ref).first()
    if row is None:
        db.session.add(PromotionRedemption(
            promotion_id=promotion_id, order_ref=order_ref,
            user_id=user_id, status=REDEMPTION_RESERVED,
        ))
        db.session.flush()
        return True

    if row.status == REDEMPTION_RELEASED:
        row.status = REDEMPTION_RESERVED
        row.user_id = user_id
        return True

    # A held redemption stays with the user it was counted against.
    if row.user_id != user_id:
        raise PromotionRedemptionError(
            'PROMO_ORDER_USER_MISMATCH', 'Order belongs to another user', 409, promotion_id)
    return False


def reserve_promotions_for_order(order_ref: str, user_id: Optional[str],
                                 selected: List[SelectedPromotion]) -> List[SelectedPromotion]:
    """
    Count each selected promotion against its limits for this order.

    Reserving the same order twice counts once. Raises
    PromotionRedemptionError when a limit has been reached in the
    meantime, a per-user limited promotion has no user, or the order's
    redemptions are held by another user.
    """
    user_id = str(user_id) if user_id else None
    applied = []

    for entry in selected:
        promo = entry.promotion
        pid = entry.promotion_id
        if pid is None:
            continue

        if not _upsert_redemption(pid, order_ref, user_id):
            applied.append(entry)
            continue

        per_user = promo.limits.max_uses_per_user
        if per_user is not None:
            if not user_id:
                raise PromotionRedemptionError(
                    'PROMO_USER_REQUIRED', 'Promotion requires a user account', 403, pid)
            if not _increment_user(pid, user_id, per_user):
                raise PromotionRedemptionError(
                    'PROMO_MAX_USES_PER_USER_REACHED',
                    'Promotion maximum uses per user reached', 409, pid)

        if not _increment_total(pid):
            raise PromotionRedemptionError(
                'PROMO_MAX_USES_REACHED', 'Promotion maximum uses reached', 409, pid)

        logger.info('Promotion %s reserved for order %s', pid, order_ref)
        applied.append(entry)

    return applied


def release_promotions_for_order(order_ref: str, promotion_ids: Optional[List[int]] = None) -> int:
    """Release reserved redemptions and give their uses back. Returns the count."""
    query = PromotionRedemption.query.filter_by(order_ref=order_ref, status=REDEMPTION_RESERVED)
    if promotion_ids:
        query = query.filter(PromotionRedemption.promotion_id.in_(promotion_ids))
    rows = query.all()

    for row in rows:
        row.status = REDEMPTION_RELEASED
        _decrement_total(row.promotion_id)
        if row.user_id:
            _decrement_user(row.promotion_id, row.user_id)

    if rows:
        logger.info('Released %d promotion(s) for order %s', len(rows), order_ref)
    return len(rows)


def confirm_promotions_for_order(order_ref: str) -> int:
    rows = PromotionRedemption.query.filter_by(order_ref=order_ref, status=REDEMPTION_RESERVED).all()
    for row in rows:
        row.status = REDEMPTION_CONFIRMED
    return len(rows)
