# Overview: Service-layer operations for checkout; encapsulates business logic and database work.

"""
Checkout Orchestrator

WHY: Turns a cart into an immutable order snapshot that a payment can be
reconciled against.

PRICE BREAKDOWN:
- subtotal          = sum(original unit price * qty)
- sale_discount     = sum((original - best-sale price) * qty)
- total_after_sales = subtotal - sale_discount
- promo_discount    = one promo code over total_after_sales (or its matching lines)
- total             = total_after_sales - promo_discount
- vat               = 10% of total; informational, already inside total

DESIGN PRINCIPLES:
- Validate everything before the first write; a failed checkout leaves no rows.
- An invalid promo code fails the checkout rather than being dropped.
- Contact, order, lines, promo redemption, payment code and payment request
  commit together.
- Line prices are the post-sale, pre-promo unit price; the promo discount
  lives on the order only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import Order, OrderContact, OrderItem, PaymentRequest, Product, Sale
from ..models.orders import ORDER_AWAITING_PAYMENT, PAYMENT_PENDING
from ..validation import ValidationError, NotFoundError, coerce_int, require_fields
from . import promo_code_service, sale_service
from .concurrency import run_with_sequence_retry
from .pricing import ZERO, to_money, vat_of
from .promo_code_service import PromoQuote
from .sequence_service import allocate_payment_code
from storefront.time_utils import utcnow


CONTACT_FIELDS = ("name", "address", "phone", "email")


@dataclass(frozen=True)
class CartItem:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class PricedLine:
    product: Product
    quantity: int
    original_price: Decimal
    final_price: Decimal
    sale: Sale | None
    category_ids: frozenset = field(default_factory=frozenset)

    @property
    def product_id(self) -> int:
        return self.product.id

    @property
    def sale_discount(self) -> Decimal:
        return (self.original_price - self.final_price) * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "original_price": str(self.original_price),
            "final_price": str(self.final_price),
            "sale_discount": str(self.sale_discount),
            "sale": self.sale.to_summary() if self.sale else None,
        }


@dataclass(frozen=True)
class CartQuote:
    lines: list[PricedLine]
    subtotal: Decimal
    sale_discount: Decimal
    promo: PromoQuote | None = None

    @property
    def total_after_sales(self) -> Decimal:
        return self.subtotal - self.sale_discount

    @property
    def promo_discount(self) -> Decimal:
        return self.promo.discount_amount if self.promo else ZERO

    @property
    def total(self) -> Decimal:
        return self.total_after_sales - self.promo_discount

    @property
    def vat(self) -> Decimal:
        return vat_of(self.total)

    def to_dict(self) -> dict:
        return {
            "lines": [line.to_dict() for line in self.lines],
            "subtotal": str(self.subtotal),
            "sale_discount": str(self.sale_discount),
            "total_after_sales": str(self.total_after_sales),
            "promo_discount": str(self.promo_discount),
            "promo": self.promo.to_dict() if self.promo else None,
            "total": str(self.total),
            "vat": str(self.vat),
        }


# =============================================================================
# INPUT VALIDATION
# =============================================================================

def parse_items(items) -> list[CartItem]:
    if not items or not isinstance(items, list):
        raise ValidationError("Please provide items to order")
    parsed = []
    for raw in items:
        if not isinstance(raw, dict):
            raise ValidationError("Each item must be an object with product_id and quantity")
        product_id = coerce_int("product_id", raw.get("product_id"))
        quantity = coerce_int("quantity", raw.get("quantity"))
        if quantity <= 0:
            raise ValidationError("quantity must be a positive integer")
        parsed.append(CartItem(product_id=product_id, quantity=quantity))
    return parsed


def validate_contact(contact) -> dict:
    require_fields(contact, CONTACT_FIELDS, label="contact information")
    return {f: str(contact[f]).strip() for f in CONTACT_FIELDS}


def _load_products(items: list[CartItem]) -> dict[int, Product]:
    ids = {item.product_id for item in items}
    products = {p.id: p for p in db.session.query(Product).filter(Product.id.in_(ids)).all()}
    for item in items:
        if item.product_id not in products:
            raise NotFoundError(f"Product with id {item.product_id} not found")
    return products


# =============================================================================
# PRICING
# =============================================================================

def price_cart(items: list[CartItem], now: datetime | None = None) -> CartQuote:
    """Price every line at the live product price with its best sale. Read-only."""
    now = now or utcnow()
    products = _load_products(items)

    lines = []
    subtotal = ZERO
    sale_discount = ZERO
    for item in items:
        product = products[item.product_id]
        price = sale_service.price_product(product, now)
        line = PricedLine(
            product=product,
            quantity=item.quantity,
            original_price=price.original_price,
            final_price=price.sale_price,
            sale=price.sale,
            category_ids=frozenset(product.category_ids),
        )
        lines.append(line)
        subtotal += line.original_price * line.quantity
        sale_discount += line.sale_discount

    return CartQuote(lines=lines, subtotal=to_money(subtotal), sale_discount=to_money(sale_discount))


def _with_promo(quote: CartQuote, promo_code: str | None, now: datetime) -> CartQuote:
    if promo_code is None or not str(promo_code).strip():
        return quote
    promo = promo_code_service.validate_promo_code(promo_code, quote.total_after_sales, quote.lines, now)
    return CartQuote(lines=quote.lines, subtotal=quote.subtotal, sale_discount=quote.sale_discount, promo=promo)


def quote_cart(items, promo_code: str | None = None, now: datetime | None = None) -> CartQuote:
    """
    Price breakdown for a cart without writing anything.

    Same rules and errors as checkout, minus the contact check.
    """
    now = now or utcnow()
    return _with_promo(price_cart(parse_items(items), now), promo_code, now)


# =============================================================================
# CHECKOUT
# =============================================================================

def checkout(
    items,
    contact,
    promo_code: str | None = None,
    user_id: int | None = None,
    now: datetime | None = None,
) -> Order:
    """
    Create an order, its contact snapshot, lines and pending payment request.

    Args:
        items: [{"product_id": int, "quantity": int}, ...]
        contact: {"name", "address", "phone", "email"}
        promo_code: optional code, any case
        user_id: None for guest checkout
        now: pricing instant (defaults to server time)

    Returns:
        The committed Order

    Raises:
        ValidationError: empty cart, bad item, incomplete contact, bad user_id, invalid promo
        NotFoundError: unknown product or promo code
        ConflictError: promo usage limit reached
    """
    parsed_items = parse_items(items)
    contact_data = validate_contact(contact)
    user_id = coerce_int("user_id", user_id, allow_none=True)
    now = now or utcnow()

    def _op() -> Order:
        try:
            return _create_order(parsed_items, contact_data, promo_code, user_id, now)
        except Exception:
            db.session.rollback()
            raise

    order = run_with_sequence_retry(_op)
    current_app.logger.info(
        "Checkout created order %s total=%s payment_code=%s",
        order.id, order.total, order.payment_request.code,
    )
    return order


def _create_order(parsed_items, contact_data, promo_code, user_id, now) -> Order:
    quote = _with_promo(price_cart(parsed_items, now), promo_code, now)

    order_contact = OrderContact(**contact_data, created_by=user_id)
    db.session.add(order_contact)
    db.session.flush()

    promo = quote.promo.promo_code if quote.promo else None
    order = Order(
        user_id=user_id,
        contact_id=order_contact.id,
        subtotal=quote.subtotal,
        sale_discount=quote.sale_discount,
        promo_discount=quote.promo_discount,
        promo_code_id=promo.id if promo else None,
        promo_code_used=promo.code if promo else None,
        total=quote.total,
        vat=quote.vat,
        status=ORDER_AWAITING_PAYMENT,
    )
    db.session.add(order)
    db.session.flush()

    for line in quote.lines:
        db.session.add(OrderItem(
            order_id=order.id,
            product_id=line.product_id,
            quantity=line.quantity,
            original_price=line.original_price,
            price=line.final_price,
            sale_id=line.sale.id if line.sale else None,
        ))

    if promo is not None:
        promo_code_service.redeem(promo)

    payment_request = PaymentRequest(
        order_id=order.id,
        amount=order.total,
        code=allocate_payment_code(now),
        status=PAYMENT_PENDING,
    )
    db.session.add(payment_request)
    db.session.commit()
    return order
