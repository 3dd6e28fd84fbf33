"""
app/promotions/models.py
------------------------
Promotion, PromotionRedemption, PromotionUserUsage and AppliedPromotion models.

Promotion.scope / targeting / eligibility are JSON-encoded dicts in the
camelCase wire form, e.g.
  scope       → {"storewide": true, "include": {"brands": ["acme"]}, "exclude": {}}
  targeting   → {"mode": "SEGMENT", "allowedSegments": ["vip"]}
  eligibility → {"minSubtotalMinor": 5000, "maxDiscountMinor": null, "cities": null}

Usage counters are plain integer columns so the redemption step can
increment them with a single conditional UPDATE.
"""
import json
from datetime import datetime
from decimal import Decimal

from app import db
from app.promotions.normalizer import merge_scope, merge_targeting, merge_eligibility
from app.promotions.rules import (
    PromotionRule, PromotionType, Limits, as_utc,
)


PROMO_TYPES = [
    (PromotionType.PERCENT.value,       '% Off Matched Items'),
    (PromotionType.FIXED_AMOUNT.value,  'Fixed Amount Off'),
    (PromotionType.FREE_SHIPPING.value, 'Free Shipping'),
]
PROMO_TYPE_CHOICES = [p[0] for p in PROMO_TYPES]

REDEMPTION_RESERVED  = 'reserved'
REDEMPTION_CONFIRMED = 'confirmed'
REDEMPTION_RELEASED  = 'released'


def _load_json(raw) -> dict:
    try:
        value = json.loads(raw or '{}')
    except (ValueError, TypeError):
        return {}
    return value if isinstance(value, dict) else {}


class Promotion(db.Model):
    """A stored discount rule."""
    __tablename__ = 'promotions'

    id                = db.Column(db.Integer, primary_key=True)
    name              = db.Column(db.String(120), nullable=False)
    description       = db.Column(db.String(500), nullable=False, default='')
    promo_type        = db.Column(db.String(30),  nullable=False)   # see PROMO_TYPE_CHOICES
    value             = db.Column(db.Numeric(12, 4), nullable=False, default=0)
    code              = db.Column(db.String(60),  nullable=True, unique=True)
    auto_apply        = db.Column(db.Boolean,     nullable=False, default=False, index=True)
    starts_at         = db.Column(db.DateTime,    nullable=True)    # naive UTC, None = open
    ends_at           = db.Column(db.DateTime,    nullable=True)
    is_active         = db.Column(db.Boolean,     nullable=False, default=True, index=True)
    priority          = db.Column(db.Integer,     nullable=False, default=0)
    stacking_policy   = db.Column(db.String(20),  nullable=False, default='EXCLUSIVE')
    scope             = db.Column(db.Text,        nullable=False, default='{}')
    targeting         = db.Column(db.Text,        nullable=False, default='{}')
    eligibility       = db.Column(db.Text,        nullable=False, default='{}')
    max_uses_total    = db.Column(db.Integer,     nullable=True)    # None = unlimited
    max_uses_per_user = db.Column(db.Integer,     nullable=True)
    uses_total        = db.Column(db.Integer,     nullable=False, default=0)
    created_by        = db.Column(db.Integer,     db.ForeignKey('users.id'), nullable=True)
    created_at        = db.Column(db.DateTime,    nullable=False, default=datetime.utcnow)
    updated_at        = db.Column(db.DateTime,    nullable=False, default=datetime.utcnow,
                                  onupdate=datetime.utcnow)

    # ── JSON helpers ──────────────────────────────────────────────

    @property
    def scope_dict(self) -> dict:
        return _load_json(self.scope)

    @scope_dict.setter
    def scope_dict(self, value: dict):
        self.scope = json.dumps(value)

    @property
    def targeting_dict(self) -> dict:
        return _load_json(self.targeting)

    @targeting_dict.setter
    def targeting_dict(self, value: dict):
        self.targeting = json.dumps(value)

    @property
    def eligibility_dict(self) -> dict:
        return _load_json(self.eligibility)

    @eligibility_dict.setter
    def eligibility_dict(self, value: dict):
        self.eligibility = json.dumps(value)

    @property
    def type_label(self) -> str:
        return dict(PROMO_TYPES).get(self.promo_type, self.promo_type)

    # ── Conversion to / from the engine's canonical form ──────────

    def to_rule(self) -> PromotionRule:
        """Canonical rule for the engine. Stored JSON is re-sanitized on the way out."""
        return PromotionRule(
            id=self.id,
            name=self.name,
            description=self.description or '',
            type=self.promo_type,
            value=Decimal(str(self.value if self.value is not None else 0)),
            code=self.code,
            auto_apply=bool(self.auto_apply),
            starts_at=as_utc(self.starts_at) if self.starts_at else None,
            ends_at=as_utc(self.ends_at) if self.ends_at else None,
            is_active=bool(self.is_active),
            priority=self.priority or 0,
            stacking_policy=self.stacking_policy,
            scope=merge_scope(self.scope_dict, None),
            targeting=merge_targeting(self.targeting_dict, None),
            eligibility=merge_eligibility(self.eligibility_dict, None),
            limits=Limits(
                max_uses_total=self.max_uses_total,
                max_uses_per_user=self.max_uses_per_user,
                uses_total=self.uses_total or 0,
            ),
        )

    def apply_rule(self, rule: PromotionRule) -> None:
        """Copy a normalized rule onto this row. uses_total is left untouched."""
        self.name              = rule.name
        self.description       = rule.description
        self.promo_type        = rule.type
        self.value             = rule.value
        self.code              = rule.code
        self.auto_apply        = rule.auto_apply
        self.starts_at         = _naive_utc(rule.starts_at)
        self.ends_at           = _naive_utc(rule.ends_at)
        self.is_active         = rule.is_active
        self.priority          = rule.priority
        self.stacking_policy   = rule.stacking_policy
        self.scope_dict        = rule.scope.to_dict()
        self.targeting_dict    = rule.targeting.to_dict()
        self.eligibility_dict  = rule.eligibility.to_dict()
        self.max_uses_total    = rule.limits.max_uses_total
        self.max_uses_per_user = rule.limits.max_uses_per_user

    def to_dict(self) -> dict:
        data = self.to_rule().to_dict()
        data['createdAt'] = self.created_at.isoformat() if self.created_at else None
        return data

    def __repr__(self):
        return f'<Promotion {self.name!r} {self.promo_type}>'


def _naive_utc(value):
    if value is None:
        return None
    return as_utc(value).replace(tzinfo=None)


class PromotionRedemption(db.Model):
    """One promotion counted against one order. Status: reserved → confirmed | released."""
    __tablename__ = 'promotion_redemptions'
    __table_args__ = (
        db.UniqueConstraint('promotion_id', 'order_ref', name='uq_redemption_promo_order'),
    )

    id           = db.Column(db.Integer, primary_key=True)
    promotion_id = db.Column(db.Integer, db.ForeignKey('promotions.id'), nullable=False, index=True)
    order_ref    = db.Column(db.String(64), nullable=False, index=True)
    user_id      = db.Column(db.String(64), nullable=True, index=True)
    status       = db.Column(db.String(20), nullable=False, default=REDEMPTION_RESERVED, index=True)
    created_at   = db.Column(db.DateTime,   nullable=False, default=datetime.utcnow)
    updated_at   = db.Column(db.DateTime,   nullable=False, default=datetime.utcnow,
                             onupdate=datetime.utcnow)

    promotion = db.relationship('Promotion', backref=db.backref('redemptions', lazy='dynamic'))

    def __repr__(self):
        return f'<PromotionRedemption promo={self.promotion_id} order={self.order_ref!r} {self.status}>'


class PromotionUserUsage(db.Model):
    """Per-user redemption counter, bumped with a conditional UPDATE."""
    __tablename__ = 'promotion_user_usage'
    __table_args__ = (
        db.UniqueConstraint('promotion_id', 'user_id', name='uq_usage_promo_user'),
    )

    id           = db.Column(db.Integer, primary_key=True)
    promotion_id = db.Column(db.Integer, db.ForeignKey('promotions.id'), nullable=False, index=True)
    user_id      = db.Column(db.String(64), nullable=False, index=True)
    uses_total   = db.Column(db.Integer, nullable=False, default=0)

    def __repr__(self):
        return f'<PromotionUserUsage promo={self.promotion_id} user={self.user_id!r} uses={self.uses_total}>'


class AppliedPromotion(db.Model):
    """
    Records a promotion that was applied to an order.
    Stores a snapshot of the promo so historical records survive
    even if the Promotion row is later edited or deleted.
    """
    __tablename__ = 'applied_promotions'

    id                = db.Column(db.Integer, primary_key=True)
    order_ref         = db.Column(db.String(64), nullable=False, index=True)
    promotion_id      = db.Column(db.Integer, db.ForeignKey('promotions.id'), nullable=True)
    promo_name        = db.Column(db.String(120), nullable=False)   # snapshot
    code              = db.Column(db.String(60),  nullable=True)
    promo_type        = db.Column(db.String(30),  nullable=False)
    discount_minor    = db.Column(db.Integer,     nullable=False)
    priority          = db.Column(db.Integer,     nullable=False, default=0)
    stacking_policy   = db.Column(db.String(20),  nullable=True)
    created_at        = db.Column(db.DateTime,    nullable=False, default=datetime.utcnow)

    @classmethod
    def from_snapshot(cls, order_ref: str, snapshot: dict) -> 'AppliedPromotion':
        return cls(
            order_ref=order_ref,
            promotion_id=snapshot['promotionId'],
            promo_name=snapshot['nameSnapshot'],
            code=snapshot['codeSnapshot'],
            promo_type=snapshot['type'],
            discount_minor=snapshot['discountMinor'],
            priority=snapshot['prioritySnapshot'],
            stacking_policy=snapshot['stackingPolicySnapshot'],
        )

    def to_dict(self) -> dict:
        return {
            'promotionId':   self.promotion_id,
            'name':          self.promo_name,
            'code':          self.code,
            'type':          self.promo_type,
            'discountMinor': self.discount_minor,
        }

    def __repr__(self):
        return f'<AppliedPromo order={self.order_ref!r} promo={self.promo_name!r} disc={self.discount_minor}>'
