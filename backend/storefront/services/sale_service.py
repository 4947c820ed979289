# Overview: Service-layer operations for sales (discount rules); encapsulates business logic and database work.

"""
Sale Evaluator

WHY: Checkout, the product price endpoint and the product listing all need
"what does this product cost right now". They all go through best_sale /
price_product so the answer cannot drift between call sites.

SELECTION RULES:
- Candidates: active sales targeting all products, this product, or one of
  its categories.
- Fetch order: priority DESC, created_at DESC, id DESC.
- Winner: the first candidate with the strictly greatest discount amount.
  A sale that discounts nothing never wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from ..extensions import db
from ..models import Product, Sale
from ..models.targets import AllTarget, CategoryTarget, ProductTarget, VALID_TARGET_TYPES, TARGET_ALL, TARGET_PRODUCT
from ..validation import ValidationError, NotFoundError, coerce_amount, coerce_datetime, coerce_int
from .pricing import DISCOUNT_FIXED, DISCOUNT_PERCENTAGE, HUNDRED, ZERO, to_money
from storefront.time_utils import utcnow


VALID_SALE_DISCOUNT_TYPES = [DISCOUNT_PERCENTAGE, DISCOUNT_FIXED]


@dataclass(frozen=True)
class ProductPrice:
    product_id: int
    original_price: Decimal
    sale_price: Decimal
    discount_amount: Decimal
    sale: Sale | None

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "original_price": str(self.original_price),
            "sale_price": str(self.sale_price) if self.sale else None,
            "discount_amount": str(self.discount_amount),
            "sale": self.sale.to_summary() if self.sale else None,
        }


# =============================================================================
# EVALUATION
# =============================================================================

def _category_ids_for(product_id: int) -> set[int] | None:
    product = db.session.get(Product, product_id)
    if product is None:
        return None
    return product.category_ids


def find_active_sales(product_id: int, now: datetime | None = None, *, category_ids=None) -> list[Sale]:
    """
    All currently active sales applicable to a product, in fetch order.

    Returns [] for an unknown product. Pass `category_ids` when the caller
    already holds the product to skip the extra lookup.
    """
    now = now or utcnow()
    if category_ids is None:
        category_ids = _category_ids_for(product_id)
        if category_ids is None:
            return []

    sales = (
        db.session.query(Sale)
        .filter(Sale.active_clause(now), Sale.target_clause(product_id, category_ids))
        .order_by(Sale.priority.desc(), Sale.created_at.desc(), Sale.id.desc())
        .all()
    )
    # The SQL filter already applied the window; is_active keeps the two in lockstep.
    return [s for s in sales if s.is_active(now)]


def best_sale(product_id: int, original_price, now: datetime | None = None, *, category_ids=None) -> Sale | None:
    """The sale giving the largest discount on `original_price`, or None."""
    now = now or utcnow()
    best = None
    best_discount = ZERO
    for sale in find_active_sales(product_id, now, category_ids=category_ids):
        discount = sale.discount_amount(original_price, now)
        if discount > best_discount:
            best_discount = discount
            best = sale
    return best


def price_product(product: Product, now: datetime | None = None) -> ProductPrice:
    now = now or utcnow()
    original = to_money(product.price)
    sale = best_sale(product.id, original, now, category_ids=product.category_ids)
    if sale is None:
        return ProductPrice(product.id, original, original, ZERO, None)
    sale_price = sale.calculate_discounted_price(original, now)
    return ProductPrice(product.id, original, sale_price, original - sale_price, sale)


def get_product_sale_price(product_id: int, now: datetime | None = None) -> ProductPrice:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    return price_product(product, now)


def list_products_with_sale_prices(now: datetime | None = None) -> list[dict]:
    now = now or utcnow()
    products = (
        db.session.query(Product)
        .filter(Product.is_visible.is_(True))
        .order_by(Product.id)
        .all()
    )
    rows = []
    for product in products:
        row = product.to_dict()
        row.update(price_product(product, now).to_dict())
        rows.append(row)
    return rows


def list_active_sales(now: datetime | None = None) -> list[Sale]:
    now = now or utcnow()
    return (
        db.session.query(Sale)
        .filter(Sale.active_clause(now))
        .order_by(Sale.priority.desc(), Sale.created_at.desc(), Sale.id.desc())
        .all()
    )


# =============================================================================
# ADMINISTRATION
# =============================================================================

def _build_target(target_type: str | None, target_id):
    target_type = target_type or TARGET_ALL
    if target_type not in VALID_TARGET_TYPES:
        raise ValidationError(f"Invalid target_type: {target_type}. Must be one of {VALID_TARGET_TYPES}")
    if target_type == TARGET_ALL:
        if target_id is not None:
            raise ValidationError("target_id must be omitted when target_type is 'all'")
        return AllTarget()
    target_id = coerce_int("target_id", target_id)
    if target_type == TARGET_PRODUCT:
        return ProductTarget(target_id)
    return CategoryTarget(target_id)


def _sale_fields(data: dict) -> dict:
    """Validate a full set of sale inputs and return model field values."""
    title = str(data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required")

    discount_type = data.get("discount_type", DISCOUNT_PERCENTAGE)
    if discount_type not in VALID_SALE_DISCOUNT_TYPES:
        raise ValidationError(f"Invalid discount_type: {discount_type}. Must be one of {VALID_SALE_DISCOUNT_TYPES}")

    discount_value = coerce_amount("discount_value", data.get("discount_value"))
    if discount_type == DISCOUNT_PERCENTAGE and discount_value > HUNDRED:
        raise ValidationError("Percentage discount cannot exceed 100")

    max_discount_amount = coerce_amount("max_discount_amount", data.get("max_discount_amount"), allow_none=True)
    if max_discount_amount is not None and discount_type != DISCOUNT_PERCENTAGE:
        raise ValidationError("max_discount_amount only applies to percentage sales")

    start_date = coerce_datetime("start_date", data.get("start_date"))
    end_date = coerce_datetime("end_date", data.get("end_date"))
    if start_date and end_date and start_date > end_date:
        raise ValidationError("start_date must be before end_date")

    return {
        "title": title,
        "description": data.get("description"),
        "target": _build_target(data.get("target_type"), data.get("target_id")),
        "discount_type": discount_type,
        "discount_value": discount_value,
        "max_discount_amount": max_discount_amount,
        "start_date": start_date,
        "end_date": end_date,
        "is_enabled": bool(data.get("is_enabled", True)),
        "priority": coerce_int("priority", data.get("priority", 0)),
        "badge_text": data.get("badge_text"),
    }


def _current_inputs(sale: Sale) -> dict:
    return {
        "title": sale.title,
        "description": sale.description,
        "target_type": sale.target_type,
        "target_id": sale.target_id,
        "discount_type": sale.discount_type,
        "discount_value": sale.discount_value,
        "max_discount_amount": sale.max_discount_amount,
        "start_date": sale.start_date,
        "end_date": sale.end_date,
        "is_enabled": sale.is_enabled,
        "priority": sale.priority,
        "badge_text": sale.badge_text,
    }


def create_sale(data: dict) -> Sale:
    """
    Create a sale rule after validating its discount and window.

    Raises:
        ValidationError: bad discount, window, or target combination
    """
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    sale = Sale(**_sale_fields(data))
    db.session.add(sale)
    db.session.commit()
    return sale


def update_sale(sale_id: int, data: dict) -> Sale:
    """
    Edit a sale rule. Omitted fields keep their current value.

    The merged rule goes through the same checks as create_sale. Changing
    target_type without a target_id drops the old id; switching to a fixed
    discount without a cap drops the old cap.

    Raises:
        NotFoundError: unknown sale
        ValidationError: the edited rule would be invalid
    """
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    sale = get_sale(sale_id)

    merged = _current_inputs(sale)
    if "target_type" in data and "target_id" not in data:
        merged["target_id"] = None
    if data.get("discount_type") == DISCOUNT_FIXED and "max_discount_amount" not in data:
        merged["max_discount_amount"] = None
    merged.update(data)

    for name, value in _sale_fields(merged).items():
        setattr(sale, name, value)
    db.session.commit()
    return sale


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError(f"Sale {sale_id} not found")
    return sale


def list_sales() -> list[Sale]:
    """Every sale rule, active or not, in evaluation order."""
    return (
        db.session.query(Sale)
        .order_by(Sale.priority.desc(), Sale.created_at.desc(), Sale.id.desc())
        .all()
    )


def toggle_sale(sale_id: int) -> Sale:
    sale = get_sale(sale_id)
    sale.is_enabled = not sale.is_enabled
    db.session.commit()
    return sale
