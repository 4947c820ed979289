# Overview: Service-layer operations for promo codes; encapsulates business logic and database work.

"""
PromoCode Evaluator

Validation is a pure read: it can back a "does my code work?" preview as
well as checkout. Only checkout calls redeem(), inside the transaction that
creates the order, so a code is counted once per committed order.

FAILURE REASONS (first match wins):
- blank code                -> ValidationError
- unknown code              -> NotFoundError
- inactive                  -> ValidationError
- expired                   -> ValidationError
- usage limit reached       -> ConflictError
- below minimum purchase    -> ValidationError
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Protocol

from sqlalchemy import or_, update

from ..extensions import db
from ..models import PromoCode
from ..models.targets import AllTarget, CategoryTarget, ProductTarget, VALID_TARGET_TYPES, TARGET_ALL, TARGET_PRODUCT
from ..validation import ValidationError, NotFoundError, ConflictError, coerce_amount, coerce_datetime, coerce_int
from .pricing import DISCOUNT_FIXED, DISCOUNT_PERCENT, HUNDRED, ZERO, to_money
from storefront.time_utils import utcnow


VALID_PROMO_DISCOUNT_TYPES = [DISCOUNT_PERCENT, DISCOUNT_FIXED]


class CartLine(Protocol):
    product_id: int
    quantity: int
    final_price: Decimal
    category_ids: frozenset


@dataclass(frozen=True)
class PromoQuote:
    promo_code: PromoCode
    cart_total: Decimal
    applicable_amount: Decimal
    discount_amount: Decimal
    valid: bool = True

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "code": self.promo_code.code,
            "discount_type": self.promo_code.discount_type,
            "discount_value": str(self.promo_code.discount_value),
            "applicable_type": self.promo_code.applicable_type,
            "applicable_amount": str(self.applicable_amount),
            "discount_amount": str(self.discount_amount),
            "original_total": str(self.cart_total),
            "final_total": str(self.cart_total - self.discount_amount),
        }


def normalize_code(code) -> str:
    if code is None:
        return ""
    if not isinstance(code, str):
        raise ValidationError("Promo code must be a string")
    return code.strip().upper()


def get_promo_code_by_code(code: str) -> PromoCode | None:
    return db.session.query(PromoCode).filter(PromoCode.code == normalize_code(code)).first()


def applicable_amount_for(promo: PromoCode, cart_total: Decimal, cart_items: Iterable[CartLine]) -> Decimal:
    """
    The part of the cart the code discounts.

    `all` codes see the whole post-sale cart total; targeted codes only see
    final_price * quantity of the lines they match.
    """
    target = promo.target
    if isinstance(target, AllTarget):
        return to_money(cart_total)
    amount = ZERO
    for line in cart_items:
        if target.matches(line.product_id, line.category_ids):
            amount += to_money(line.final_price) * line.quantity
    return to_money(amount)


def validate_promo_code(code: str, cart_total, cart_items: Iterable[CartLine] = (), now: datetime | None = None) -> PromoQuote:
    """
    Validate a code against a priced cart and compute its discount.

    Args:
        code: user input, any case
        cart_total: post-sale cart total
        cart_items: priced lines (product_id, quantity, final_price, category_ids)

    Returns:
        PromoQuote with the discount; nothing is written.
    """
    now = now or utcnow()
    if not normalize_code(code):
        raise ValidationError("Please enter a promo code")
    cart_total = to_money(coerce_amount("cart_total", cart_total))

    promo = get_promo_code_by_code(code)
    if promo is None:
        raise NotFoundError("Promo code not found")

    if not promo.is_valid(now):
        if not promo.is_active:
            raise ValidationError("This promo code is inactive")
        if promo.is_expired(now):
            raise ValidationError("This promo code has expired")
        if promo.is_exhausted():
            raise ConflictError("This promo code has reached its usage limit")

    if not promo.meets_minimum_purchase(cart_total):
        raise ValidationError(f"Order total must be at least {to_money(promo.min_purchase_amount)}")

    applicable = applicable_amount_for(promo, cart_total, list(cart_items))
    discount = applicable - promo.apply(applicable)
    return PromoQuote(
        promo_code=promo,
        cart_total=cart_total,
        applicable_amount=applicable,
        discount_amount=to_money(discount),
    )


def redeem(promo: PromoCode) -> None:
    """
    Count one use of `promo` inside the caller's transaction.

    The increment is guarded on the usage limit in SQL, so two checkouts
    racing for the last use cannot both succeed.

    Raises:
        ConflictError: the limit was reached after validation
    """
    stmt = (
        update(PromoCode)
        .where(
            PromoCode.id == promo.id,
            or_(PromoCode.usage_limit.is_(None), PromoCode.times_used < PromoCode.usage_limit),
        )
        .values(times_used=PromoCode.times_used + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        raise ConflictError("This promo code has reached its usage limit")
    db.session.refresh(promo)


# =============================================================================
# ADMINISTRATION
# =============================================================================

def _build_applicable_target(data: dict):
    applicable_type = data.get("applicable_type") or TARGET_ALL
    if applicable_type not in VALID_TARGET_TYPES:
        raise ValidationError(f"Invalid applicable_type: {applicable_type}. Must be one of {VALID_TARGET_TYPES}")
    if applicable_type == TARGET_ALL:
        return AllTarget()
    if applicable_type == TARGET_PRODUCT:
        return ProductTarget(coerce_int("applicable_product_id", data.get("applicable_product_id")))
    return CategoryTarget(coerce_int("applicable_category_id", data.get("applicable_category_id")))


def _promo_fields(data: dict) -> dict:
    """Validate a full set of promo code inputs and return model field values."""
    code = normalize_code(data.get("code"))
    if not code:
        raise ValidationError("code is required")

    discount_type = data.get("discount_type", DISCOUNT_PERCENT)
    if discount_type not in VALID_PROMO_DISCOUNT_TYPES:
        raise ValidationError(f"Invalid discount_type: {discount_type}. Must be one of {VALID_PROMO_DISCOUNT_TYPES}")
    discount_value = coerce_amount("discount_value", data.get("discount_value"))
    if discount_type == DISCOUNT_PERCENT and discount_value > HUNDRED:
        raise ValidationError("Percent discount cannot exceed 100")

    usage_limit = coerce_int("usage_limit", data.get("usage_limit"), allow_none=True)
    if usage_limit is not None and usage_limit < 0:
        raise ValidationError("usage_limit must be >= 0")

    return {
        "code": code,
        "description": data.get("description"),
        "discount_type": discount_type,
        "discount_value": discount_value,
        "target": _build_applicable_target(data),
        "min_purchase_amount": coerce_amount("min_purchase_amount", data.get("min_purchase_amount"), allow_none=True),
        "expiration_date": coerce_datetime("expiration_date", data.get("expiration_date")),
        "usage_limit": usage_limit,
        "is_active": bool(data.get("is_active", True)),
    }


def _ensure_code_free(code: str, promo_id: int | None = None) -> None:
    existing = get_promo_code_by_code(code)
    if existing is not None and existing.id != promo_id:
        raise ConflictError(f"Promo code {code} already exists")


def create_promo_code(data: dict) -> PromoCode:
    """
    Create a promo code.

    The code is stored upper-cased; the id not matching applicable_type is
    dropped.

    Raises:
        ValidationError: bad discount or target
        ConflictError: code already exists
    """
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    fields = _promo_fields(data)
    _ensure_code_free(fields["code"])

    promo = PromoCode(**fields)
    db.session.add(promo)
    db.session.commit()
    return promo


def update_promo_code(promo_id: int, data: dict) -> PromoCode:
    """
    Edit a promo code. Omitted fields keep their current value; times_used
    is never editable.

    Raises:
        NotFoundError: unknown promo code
        ValidationError: the edited code would be invalid
        ConflictError: the new code belongs to another promo code
    """
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    promo = get_promo_code(promo_id)

    merged = {
        "code": promo.code,
        "description": promo.description,
        "discount_type": promo.discount_type,
        "discount_value": promo.discount_value,
        "applicable_type": promo.applicable_type,
        "applicable_category_id": promo.applicable_category_id,
        "applicable_product_id": promo.applicable_product_id,
        "min_purchase_amount": promo.min_purchase_amount,
        "expiration_date": promo.expiration_date,
        "usage_limit": promo.usage_limit,
        "is_active": promo.is_active,
    }
    merged.update(data)
    fields = _promo_fields(merged)
    _ensure_code_free(fields["code"], promo.id)

    for name, value in fields.items():
        setattr(promo, name, value)
    db.session.commit()
    return promo


def get_promo_code(promo_id: int) -> PromoCode:
    promo = db.session.get(PromoCode, promo_id)
    if promo is None:
        raise NotFoundError(f"Promo code {promo_id} not found")
    return promo


def list_promo_codes() -> list[PromoCode]:
    return db.session.query(PromoCode).order_by(PromoCode.created_at.desc(), PromoCode.id.desc()).all()


def toggle_promo_code(promo_id: int) -> PromoCode:
    promo = get_promo_code(promo_id)
    promo.is_active = not promo.is_active
    db.session.commit()
    return promo
