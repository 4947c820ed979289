# Overview: Service-layer operations for ledger; encapsulates business logic and database work.

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from ..extensions import db
from ..models import Order, SalesTransaction
from .pricing import to_money
from storefront.time_utils import utcnow
"""
Sales Ledger Invariants (authoritative)

- Append-only: rows are never updated or deleted.
- Rows are written inside the same DB transaction as the state change they
  record, so a rolled-back settlement leaves no ledger trace.
- Exactly one row per financial event (capture, failure, cancellation,
  admin override); idempotency is enforced by the caller's status swap.
- transaction_date is business time; created_at is system time.
"""


TXN_ORDER_PAYMENT = "order_payment"
TXN_QPAY_PAYMENT = "qpay_payment"
TXN_BANK_TRANSFER = "bank_transfer"
TXN_REFUND = "refund"
TXN_DISCOUNT = "discount"
TXN_SHIPPING_FEE = "shipping_fee"
TXN_CANCELLED = "cancelled"

VALID_TRANSACTION_TYPES = [
    TXN_ORDER_PAYMENT,
    TXN_QPAY_PAYMENT,
    TXN_BANK_TRANSFER,
    TXN_REFUND,
    TXN_DISCOUNT,
    TXN_SHIPPING_FEE,
    TXN_CANCELLED,
]

TXN_STATUS_PENDING = "pending"
TXN_STATUS_COMPLETED = "completed"
TXN_STATUS_FAILED = "failed"
TXN_STATUS_REFUNDED = "refunded"
TXN_STATUS_CANCELLED = "cancelled"

VALID_TRANSACTION_STATUSES = [
    TXN_STATUS_PENDING,
    TXN_STATUS_COMPLETED,
    TXN_STATUS_FAILED,
    TXN_STATUS_REFUNDED,
    TXN_STATUS_CANCELLED,
]


def append_sales_transaction(
    *,
    order: Order,
    transaction_type: str,
    amount: Decimal,
    status: str = TXN_STATUS_COMPLETED,
    description: Optional[str] = None,
    payment_request_id: Optional[str] = None,
    payment_method: Optional[str] = None,
    external_reference: Optional[str] = None,
    metadata: Optional[dict] = None,
    transaction_date: Optional[datetime] = None,
) -> SalesTransaction:
    """
    Append one ledger row for `order`.

    - No domain logic here.
    - Flushes but never commits; the caller owns the transaction.
    """
    if transaction_type not in VALID_TRANSACTION_TYPES:
        raise ValueError(f"Invalid transaction type: {transaction_type}. Must be one of {VALID_TRANSACTION_TYPES}")
    if status not in VALID_TRANSACTION_STATUSES:
        raise ValueError(f"Invalid transaction status: {status}. Must be one of {VALID_TRANSACTION_STATUSES}")

    contact = order.contact
    txn = SalesTransaction(
        type=transaction_type,
        amount=to_money(amount),
        currency="MNT",
        description=description,
        order_id=order.id,
        user_id=order.user_id,
        payment_request_id=payment_request_id,
        original_amount=to_money(order.subtotal),
        discount_amount=to_money(order.sale_discount) + to_money(order.promo_discount),
        payment_method=payment_method,
        external_reference=external_reference,
        meta=metadata,
        status=status,
        transaction_date=transaction_date or utcnow(),
        customer_name=contact.name if contact else None,
        customer_email=contact.email if contact else None,
        customer_phone=contact.phone if contact else None,
    )
    db.session.add(txn)
    db.session.flush()  # ensures txn.id is assigned without committing
    return txn


def list_sales_transactions(order_id: int | None = None, transaction_type: str | None = None) -> list[SalesTransaction]:
    """Ledger read for audit/export, oldest first."""
    q = db.session.query(SalesTransaction)
    if order_id is not None:
        q = q.filter(SalesTransaction.order_id == order_id)
    if transaction_type:
        q = q.filter(SalesTransaction.type == transaction_type)
    return q.order_by(SalesTransaction.transaction_date, SalesTransaction.id).all()
