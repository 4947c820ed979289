from __future__ import annotations

import uuid

from ..extensions import db
from storefront.time_utils import to_utc_z, utcnow


# =============================================================================
# STATUS CONSTANTS
# =============================================================================

ORDER_AWAITING_PAYMENT = "Awaiting Payment"
ORDER_PROCESSING = "Processing"
ORDER_SHIPPED = "Shipped"
ORDER_DONE = "Done"
ORDER_CANCELLED = "Cancelled"

ORDER_STATUSES = [
    ORDER_AWAITING_PAYMENT,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_DONE,
    ORDER_CANCELLED,
]

PAYMENT_PENDING = "Pending"
PAYMENT_PAID = "Paid"
PAYMENT_FAILED = "Failed"
PAYMENT_CANCELLED = "Cancelled"

PAYMENT_STATUSES = [PAYMENT_PENDING, PAYMENT_PAID, PAYMENT_FAILED, PAYMENT_CANCELLED]


def _money(value) -> str | None:
    return str(value) if value is not None else None


class OrderContact(db.Model):
    """
    Delivery contact snapshot.

    A new row is written for every checkout, even for repeat customers, so
    later edits to a customer's address never rewrite past orders.
    """
    __tablename__ = "order_contacts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    address = db.Column(db.String(512), nullable=False)
    phone = db.Column(db.String(64), nullable=False, index=True)
    email = db.Column(db.String(255), nullable=False)
    created_by = db.Column(db.Integer, nullable=True)  # user id, null for guests
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "phone": self.phone,
            "email": self.email,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


class Order(db.Model):
    """
    Order snapshot with its full price breakdown.

    subtotal       sum of original unit price * quantity
    sale_discount  sum of per-line best-sale discounts
    promo_discount order-level promo discount (not spread over lines)
    total          subtotal - sale_discount - promo_discount
    vat            10% of total, informational (already inside total)

    Only `status` and the linked PaymentRequest change after creation.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)
    contact_id = db.Column(db.Integer, db.ForeignKey("order_contacts.id"), nullable=False, index=True)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    sale_discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    promo_discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    promo_code_id = db.Column(db.Integer, db.ForeignKey("promo_codes.id"), nullable=True)
    promo_code_used = db.Column(db.String(64), nullable=True)
    total = db.Column(db.Numeric(12, 2), nullable=False)
    vat = db.Column(db.Numeric(12, 2), nullable=False)

    status = db.Column(db.String(32), nullable=False, default=ORDER_AWAITING_PAYMENT, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    contact = db.relationship("OrderContact")
    promo_code = db.relationship("PromoCode")
    items = db.relationship("OrderItem", backref="order", lazy="selectin", order_by="OrderItem.id")
    payment_request = db.relationship("PaymentRequest", backref="order", uselist=False, lazy="selectin")
    __mapper_args__ = {"version_id_col": version_id}

    def breakdown(self) -> dict:
        return {
            "subtotal": _money(self.subtotal),
            "sale_discount": _money(self.sale_discount),
            "promo_discount": _money(self.promo_discount),
            "total": _money(self.total),
            "vat": _money(self.vat),
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "contact_id": self.contact_id,
            "contact": self.contact.to_dict() if self.contact else None,
            "status": self.status,
            "promo_code_id": self.promo_code_id,
            "promo_code_used": self.promo_code_used,
            **self.breakdown(),
            "items": [i.to_dict() for i in self.items],
            "payment_request": self.payment_request.to_dict() if self.payment_request else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class OrderItem(db.Model):
    """Order line; `price` is the frozen post-sale, pre-promo unit price."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    original_price = db.Column(db.Numeric(12, 2), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    sale_id = db.Column(db.Integer, nullable=True)  # best sale applied, snapshot only

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "original_price": _money(self.original_price),
            "price": _money(self.price),
            "sale_id": self.sale_id,
        }


class PaymentRequest(db.Model):
    """
    Payable side of an order (1:1).

    STATUS: Pending -> Paid | Failed | Cancelled. All three targets are
    terminal. Transitions go through settlement_service, which swaps the
    status only while it still holds the expected value.

    Gateway fields stay null until an invoice is created and are cleared
    again when the invoice is cancelled.
    """
    __tablename__ = "payment_requests"
    __table_args__ = (
        db.CheckConstraint(
            "status IN ({})".format(", ".join(f"'{s}'" for s in PAYMENT_STATUSES)),
            name="ck_payment_requests_status",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    code = db.Column(db.String(32), nullable=False, unique=True)
    status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING, index=True)
    payment_type = db.Column(db.String(32), nullable=True)  # qpay, admin_confirmed
    paid_date = db.Column(db.DateTime, nullable=True)

    sender_invoice_no = db.Column(db.String(128), nullable=True)
    qpay_invoice_id = db.Column(db.String(128), nullable=True, index=True)
    qr_text = db.Column(db.Text, nullable=True)
    qr_image = db.Column(db.Text, nullable=True)
    qpay_short_url = db.Column(db.String(512), nullable=True)
    urls = db.Column(db.JSON, nullable=True)
    payment_info = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "amount": _money(self.amount),
            "code": self.code,
            "status": self.status,
            "payment_type": self.payment_type,
            "paid_date": to_utc_z(self.paid_date),
            "qpay_invoice_id": self.qpay_invoice_id,
            "qpay_short_url": self.qpay_short_url,
            "created_at": to_utc_z(self.created_at),
        }


class SalesTransaction(db.Model):
    """
    Append-only ledger of financial events.

    TYPES: order_payment, qpay_payment, bank_transfer, refund, discount,
    shipping_fee, cancelled

    IMMUTABLE: Records are never updated or deleted. Each payment capture,
    failure, cancellation or admin override writes exactly one row.
    """
    __tablename__ = "sales_transactions"
    __table_args__ = (
        db.Index("ix_sales_txns_order_date", "order_id", "transaction_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(32), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="MNT")
    description = db.Column(db.String(255), nullable=True)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)
    payment_request_id = db.Column(db.String(36), db.ForeignKey("payment_requests.id"), nullable=True, index=True)

    original_amount = db.Column(db.Numeric(12, 2), nullable=True)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=True, default=0)
    payment_method = db.Column(db.String(32), nullable=True, index=True)
    external_reference = db.Column(db.String(128), nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="completed", index=True)
    transaction_date = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    # Customer snapshot (guest orders have no user row)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "amount": _money(self.amount),
            "currency": self.currency,
            "description": self.description,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "payment_request_id": self.payment_request_id,
            "original_amount": _money(self.original_amount),
            "discount_amount": _money(self.discount_amount),
            "payment_method": self.payment_method,
            "external_reference": self.external_reference,
            "metadata": self.meta,
            "status": self.status,
            "transaction_date": to_utc_z(self.transaction_date),
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
        }


class Sequence(db.Model):
    """
    Per-day payment code counter keyed by YYMMDD (business timezone).

    The only source of payment code uniqueness; see sequence_service.
    """
    __tablename__ = "sequences"

    day_key = db.Column(db.String(6), primary_key=True)
    value = db.Column(db.Integer, nullable=False, default=1)

    def to_dict(self) -> dict:
        return {"day_key": self.day_key, "value": self.value}
