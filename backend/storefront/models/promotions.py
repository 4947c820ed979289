from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import and_, or_

from ..extensions import db
from ..services.pricing import (
    DISCOUNT_FIXED,
    DISCOUNT_PERCENT,
    DISCOUNT_PERCENTAGE,
    apply_fixed,
    apply_percentage,
    to_money,
)
from .targets import (
    TARGET_ALL,
    TARGET_CATEGORY,
    TARGET_PRODUCT,
    Target,
    target_from_columns,
    target_id_of,
    target_to_dict,
)
from storefront.time_utils import to_utc_z, utcnow


class Sale(db.Model):
    """
    Time-bounded discount rule.

    The target is stored as (target_type, target_id) but only ever read and
    written through `Sale.target`, so "all" with an id (or "product" without
    one) cannot be constructed; the CHECK constraint enforces the same in SQL.

    Activity is computed, never stored:
    is_enabled AND (start_date null OR start_date <= now) AND (end_date null OR end_date >= now)
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.CheckConstraint(
            "(target_type = 'all' AND target_id IS NULL)"
            " OR (target_type IN ('product', 'category') AND target_id IS NOT NULL)",
            name="ck_sales_target",
        ),
        db.CheckConstraint("discount_value >= 0", name="ck_sales_discount_value"),
        db.Index("ix_sales_target", "target_type", "target_id"),
        db.Index("ix_sales_window", "is_enabled", "start_date", "end_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    target_type = db.Column(db.String(16), nullable=False, default=TARGET_ALL)
    target_id = db.Column(db.Integer, nullable=True)

    discount_type = db.Column(db.String(16), nullable=False, default=DISCOUNT_PERCENTAGE)  # percentage, fixed
    discount_value = db.Column(db.Numeric(12, 2), nullable=False)
    max_discount_amount = db.Column(db.Numeric(12, 2), nullable=True)  # percentage only

    start_date = db.Column(db.DateTime, nullable=True)
    end_date = db.Column(db.DateTime, nullable=True)

    is_enabled = db.Column(db.Boolean, nullable=False, default=True)
    priority = db.Column(db.Integer, nullable=False, default=0)
    badge_text = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __init__(self, *, target: Target | None = None, **kwargs):
        super().__init__(**kwargs)
        if target is not None:
            self.target = target
        elif self.target_type is None:
            self.target_type = TARGET_ALL
        if self.is_enabled is None:
            self.is_enabled = True
        if self.priority is None:
            self.priority = 0

    @property
    def target(self) -> Target:
        return target_from_columns(self.target_type, self.target_id)

    @target.setter
    def target(self, value: Target) -> None:
        self.target_type = value.type
        self.target_id = target_id_of(value)

    @classmethod
    def active_clause(cls, now: datetime):
        # Two independent OR-groups ANDed together; folding them into one
        # OR-group would let an expired sale with no start_date through.
        return and_(
            cls.is_enabled.is_(True),
            or_(cls.start_date.is_(None), cls.start_date <= now),
            or_(cls.end_date.is_(None), cls.end_date >= now),
        )

    @classmethod
    def target_clause(cls, product_id: int, category_ids):
        clauses = [
            cls.target_type == TARGET_ALL,
            and_(cls.target_type == TARGET_PRODUCT, cls.target_id == product_id),
        ]
        if category_ids:
            clauses.append(and_(cls.target_type == TARGET_CATEGORY, cls.target_id.in_(list(category_ids))))
        return or_(*clauses)

    def is_active(self, now: datetime | None = None) -> bool:
        if not self.is_enabled:
            return False
        now = now or utcnow()
        if self.start_date is not None and self.start_date > now:
            return False
        if self.end_date is not None and self.end_date < now:
            return False
        return True

    def calculate_discounted_price(self, original_price, now: datetime | None = None) -> Decimal:
        if not self.is_active(now):
            return to_money(original_price)
        if self.discount_type == DISCOUNT_PERCENTAGE:
            return apply_percentage(original_price, self.discount_value, self.max_discount_amount)
        if self.discount_type == DISCOUNT_FIXED:
            return apply_fixed(original_price, self.discount_value)
        return to_money(original_price)

    def discount_amount(self, original_price, now: datetime | None = None) -> Decimal:
        return to_money(original_price) - self.calculate_discounted_price(original_price, now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "target": target_to_dict(self.target),
            "discount_type": self.discount_type,
            "discount_value": str(self.discount_value),
            "max_discount_amount": str(self.max_discount_amount) if self.max_discount_amount is not None else None,
            "start_date": to_utc_z(self.start_date),
            "end_date": to_utc_z(self.end_date),
            "is_enabled": self.is_enabled,
            "priority": self.priority,
            "badge_text": self.badge_text,
            "created_at": to_utc_z(self.created_at),
        }

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "discount_type": self.discount_type,
            "discount_value": str(self.discount_value),
            "badge_text": self.badge_text,
            "end_date": to_utc_z(self.end_date),
        }


class PromoCode(db.Model):
    """
    Customer-entered discount code, stacked on top of the best sale.

    Codes are stored upper-cased. times_used only grows, one step per
    committed checkout; usage_limit is enforced when validating and again by
    the guarded increment in redeem.
    """
    __tablename__ = "promo_codes"
    __table_args__ = (
        db.CheckConstraint("times_used >= 0", name="ck_promo_codes_times_used"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False, unique=True, index=True)
    description = db.Column(db.Text, nullable=True)

    discount_type = db.Column(db.String(16), nullable=False, default=DISCOUNT_PERCENT)  # percent, fixed
    discount_value = db.Column(db.Numeric(12, 2), nullable=False)

    applicable_type = db.Column(db.String(16), nullable=False, default=TARGET_ALL)
    applicable_category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)
    applicable_product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)

    min_purchase_amount = db.Column(db.Numeric(12, 2), nullable=True)
    expiration_date = db.Column(db.DateTime, nullable=True)
    usage_limit = db.Column(db.Integer, nullable=True)
    times_used = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    category = db.relationship("Category", foreign_keys=[applicable_category_id])
    product = db.relationship("Product", foreign_keys=[applicable_product_id])

    def __init__(self, *, target: Target | None = None, **kwargs):
        super().__init__(**kwargs)
        if target is not None:
            self.target = target
        elif self.applicable_type is None:
            self.applicable_type = TARGET_ALL
        if self.times_used is None:
            self.times_used = 0
        if self.is_active is None:
            self.is_active = True

    @property
    def target(self) -> Target:
        if self.applicable_type == TARGET_CATEGORY:
            return target_from_columns(TARGET_CATEGORY, self.applicable_category_id)
        if self.applicable_type == TARGET_PRODUCT:
            return target_from_columns(TARGET_PRODUCT, self.applicable_product_id)
        return target_from_columns(TARGET_ALL, None)

    @target.setter
    def target(self, value: Target) -> None:
        self.applicable_type = value.type
        self.applicable_category_id = target_id_of(value) if value.type == TARGET_CATEGORY else None
        self.applicable_product_id = target_id_of(value) if value.type == TARGET_PRODUCT else None

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expiration_date is not None and self.expiration_date < (now or utcnow())

    def is_exhausted(self) -> bool:
        return self.usage_limit is not None and (self.times_used or 0) >= self.usage_limit

    def is_valid(self, now: datetime | None = None) -> bool:
        return bool(self.is_active) and not self.is_expired(now) and not self.is_exhausted()

    def meets_minimum_purchase(self, amount) -> bool:
        if self.min_purchase_amount is None:
            return True
        return to_money(amount) >= to_money(self.min_purchase_amount)

    def apply(self, original_price) -> Decimal:
        if self.discount_type == DISCOUNT_PERCENT:
            return apply_percentage(original_price, self.discount_value)
        if self.discount_type == DISCOUNT_FIXED:
            return apply_fixed(original_price, self.discount_value)
        return to_money(original_price)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "description": self.description,
            "discount_type": self.discount_type,
            "discount_value": str(self.discount_value),
            "target": target_to_dict(self.target),
            "min_purchase_amount": str(self.min_purchase_amount) if self.min_purchase_amount is not None else None,
            "expiration_date": to_utc_z(self.expiration_date),
            "usage_limit": self.usage_limit,
            "times_used": self.times_used,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
