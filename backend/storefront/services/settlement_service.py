# Overview: Service-layer operations for payment settlement; encapsulates business logic and database work.

"""
Settlement Reconciler

WHY: A payment can be reported by the gateway webhook, discovered by a
client poll, or confirmed by an admin. Those paths race, and every one of
them must settle a PaymentRequest at most once.

STATE MACHINE (per PaymentRequest):
    Pending -> Paid | Failed | Cancelled      (all terminal)
    admin override may also move Failed/Cancelled -> Paid

CONCURRENCY:
- Every transition is a compare-and-swap UPDATE on `status`, inside the
  transaction that also writes the order status and the ledger row.
- The loser of a race matches zero rows and raises IdempotencyViolation,
  which callers absorb into a success answer. It never reaches HTTP.

LEDGER:
- qpay_payment   gateway capture (webhook or poll)
- order_payment  admin confirmation
- cancelled      gateway failure, payment cancellation, order cancellation
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import Order, PaymentRequest
from ..models.orders import (
    ORDER_AWAITING_PAYMENT,
    ORDER_CANCELLED,
    ORDER_PROCESSING,
    ORDER_STATUSES,
    PAYMENT_CANCELLED,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
)
from ..validation import ConflictError, NotFoundError, ValidationError, coerce_int
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import (
    TXN_CANCELLED,
    TXN_ORDER_PAYMENT,
    TXN_QPAY_PAYMENT,
    TXN_STATUS_CANCELLED,
    TXN_STATUS_COMPLETED,
    TXN_STATUS_FAILED,
    append_sales_transaction,
)
from .pricing import to_money
from .qpay_client import QPayClient
from storefront.time_utils import to_utc_z, utcnow


MIN_INVOICE_AMOUNT = Decimal("100")

PAYMENT_TYPE_QPAY = "qpay"
PAYMENT_TYPE_ADMIN = "admin_confirmed"

# CallbackResult outcomes
CALLBACK_OK = "ok"
CALLBACK_ALREADY_PROCESSED = "already_processed"
CALLBACK_REJECTED = "rejected"
CALLBACK_INVALID = "invalid"
CALLBACK_NOT_FOUND = "not_found"
CALLBACK_UNDERPAID = "underpaid"
CALLBACK_IGNORED = "ignored"
CALLBACK_ERROR = "error"

_SUCCESS_OUTCOMES = {CALLBACK_OK, CALLBACK_ALREADY_PROCESSED, CALLBACK_IGNORED}

GATEWAY_PAID = {"PAID"}
GATEWAY_FAILED = {"FAILED", "CANCELLED"}


class IdempotencyViolation(Exception):
    """The payment request was no longer in the expected status."""
    pass


@dataclass(frozen=True)
class CallbackResult:
    outcome: str
    message: str
    order_id: int | None = None

    @property
    def success(self) -> bool:
        return self.outcome in _SUCCESS_OUTCOMES

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "outcome": self.outcome,
            "message": self.message,
            "order_id": self.order_id,
        }


def get_client() -> QPayClient:
    return current_app.extensions["qpay"]


# =============================================================================
# LOOKUPS
# =============================================================================

def _get_order(order_id) -> Order:
    order_id = coerce_int("order_id", order_id)
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def _get_payment_request(order: Order) -> PaymentRequest:
    if order.payment_request is None:
        raise NotFoundError(f"Payment request for order {order.id} not found")
    return order.payment_request


def _payment_view(order: Order, payment_request: PaymentRequest) -> dict:
    return {
        "order_id": order.id,
        "status": payment_request.status,
        "amount": str(payment_request.amount),
        "paid_at": to_utc_z(payment_request.paid_date),
        "order_status": order.status,
    }


# =============================================================================
# TRANSITIONS
# =============================================================================

def _swap_status(payment_request: PaymentRequest, expected: str, new: str, **values) -> None:
    """
    Compare-and-swap the request status; raise IdempotencyViolation on a lost race.

    Does not commit. The in-session object is refreshed afterwards.
    """
    stmt = (
        update(PaymentRequest)
        .where(PaymentRequest.id == payment_request.id, PaymentRequest.status == expected)
        .values(status=new, **values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        raise IdempotencyViolation(
            f"Payment request {payment_request.id} is no longer {expected}"
        )
    db.session.refresh(payment_request)


def _mark_paid(
    payment_request: PaymentRequest,
    *,
    transaction_type: str,
    payment_method: str,
    description: str,
    payment_info=None,
    payment_type: str | None = None,
    expected: str = PAYMENT_PENDING,
    advance_order: bool = True,
    now: datetime | None = None,
) -> None:
    """Paid transition shared by webhook, poll and admin confirmation."""
    now = now or utcnow()
    values = {"paid_date": now}
    if payment_info is not None:
        values["payment_info"] = payment_info
    if payment_type is not None:
        values["payment_type"] = payment_type
    _swap_status(payment_request, expected, PAYMENT_PAID, **values)

    order = payment_request.order
    if advance_order and order.status == ORDER_AWAITING_PAYMENT:
        order.status = ORDER_PROCESSING

    append_sales_transaction(
        order=order,
        transaction_type=transaction_type,
        amount=payment_request.amount,
        status=TXN_STATUS_COMPLETED,
        description=description,
        payment_request_id=payment_request.id,
        payment_method=payment_method,
        external_reference=payment_request.qpay_invoice_id,
        metadata=payment_info,
        transaction_date=now,
    )


def _mark_failed(payment_request: PaymentRequest, *, payment_info, now: datetime | None = None) -> None:
    now = now or utcnow()
    _swap_status(payment_request, PAYMENT_PENDING, PAYMENT_FAILED, payment_info=payment_info)
    append_sales_transaction(
        order=payment_request.order,
        transaction_type=TXN_CANCELLED,
        amount=payment_request.amount,
        status=TXN_STATUS_FAILED,
        description=f"QPay payment failed - Order #{payment_request.order_id}",
        payment_request_id=payment_request.id,
        payment_method=PAYMENT_TYPE_QPAY,
        external_reference=payment_request.qpay_invoice_id,
        metadata=payment_info,
        transaction_date=now,
    )


def _settle(op) -> bool:
    """
    Run a transition and commit it.

    Returns False when another path settled the request first.
    """
    def _unit() -> None:
        op()
        db.session.commit()

    try:
        run_with_retry(_unit)
    except IdempotencyViolation:
        db.session.rollback()
        return False
    except Exception:
        db.session.rollback()
        raise
    return True


# =============================================================================
# INVOICES
# =============================================================================

def create_invoice(order_id, client: QPayClient, callback_url: str) -> dict:
    """
    Create a gateway invoice for an order's pending payment request.

    Raises:
        NotFoundError: unknown order or missing payment request
        ConflictError: already paid
        ValidationError: not pending, or below the gateway minimum
        ExternalServiceError: gateway failure; nothing is written
    """
    order = _get_order(order_id)
    payment_request = _get_payment_request(order)
    if payment_request.status == PAYMENT_PAID:
        raise ConflictError("This order has already been paid")
    if payment_request.status != PAYMENT_PENDING:
        raise ValidationError(f"Payment request is {payment_request.status}; only pending payments can be invoiced")

    amount = to_money(payment_request.amount)
    if amount < MIN_INVOICE_AMOUNT:
        raise ValidationError(f"Minimum payable amount is {MIN_INVOICE_AMOUNT}")

    invoice_no = client.generate_invoice_no(order.id, "order")
    invoice = client.create_invoice(
        sender_invoice_no=invoice_no,
        amount=amount,
        description=f"Order #{order.id} - {payment_request.code}",
        callback_url=callback_url,
    )

    payment_request.payment_type = PAYMENT_TYPE_QPAY
    payment_request.sender_invoice_no = invoice_no
    payment_request.qpay_invoice_id = invoice["invoice_id"]
    payment_request.qr_text = invoice["qr_text"]
    payment_request.qr_image = invoice["qr_image"]
    payment_request.qpay_short_url = invoice["qpay_shorturl"]
    payment_request.urls = invoice["urls"]
    db.session.commit()

    current_app.logger.info(
        "QPay invoice %s created for order %s (%s)", invoice["invoice_id"], order.id, payment_request.code
    )
    return {
        "order_id": order.id,
        "payment_request_id": payment_request.id,
        "payment_code": payment_request.code,
        "invoice_no": invoice_no,
        "qpay_invoice_id": invoice["invoice_id"],
        "amount": str(amount),
        "qr_text": invoice["qr_text"],
        "qr_image": invoice["qr_image"],
        "qpay_shorturl": invoice["qpay_shorturl"],
        "urls": invoice["urls"],
    }


def get_payment_info(order_id) -> dict:
    order = _get_order(order_id)
    payment_request = order.payment_request
    if payment_request is None or not payment_request.qpay_invoice_id:
        return {
            "has_qpay": False,
            "order_id": order.id,
            "amount": str(payment_request.amount if payment_request else order.total),
            "status": payment_request.status if payment_request else PAYMENT_PENDING,
        }
    return {
        "has_qpay": True,
        **_payment_view(order, payment_request),
        "payment_code": payment_request.code,
        "qr_text": payment_request.qr_text,
        "qr_image": payment_request.qr_image,
        "qpay_shorturl": payment_request.qpay_short_url,
        "urls": payment_request.urls,
    }


# =============================================================================
# WEBHOOK
# =============================================================================

def handle_callback(payload, raw_body: bytes, signature: str | None, client: QPayClient) -> CallbackResult:
    """
    Apply a gateway webhook. Never raises.

    Failures are logged and reported through CallbackResult.outcome; the
    HTTP layer answers 200 regardless so the gateway does not retry.
    """
    try:
        return _handle_callback(payload, raw_body, signature, client)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("QPay webhook processing failed")
        return CallbackResult(CALLBACK_ERROR, "Webhook processing failed")


def _handle_callback(payload, raw_body, signature, client) -> CallbackResult:
    if not client.verify_webhook_signature(raw_body, signature):
        current_app.logger.warning("QPay webhook rejected: invalid signature")
        return CallbackResult(CALLBACK_REJECTED, "Invalid signature")

    if not isinstance(payload, dict) or not payload.get("invoice_id"):
        current_app.logger.warning("QPay webhook without invoice_id: %r", payload)
        return CallbackResult(CALLBACK_INVALID, "Missing invoice_id")

    invoice_id = str(payload["invoice_id"])
    payment_request = (
        db.session.query(PaymentRequest)
        .filter(PaymentRequest.qpay_invoice_id == invoice_id)
        .first()
    )
    if payment_request is None:
        current_app.logger.error("QPay webhook for unknown invoice %s", invoice_id)
        return CallbackResult(CALLBACK_NOT_FOUND, "Payment request not found")

    order_id = payment_request.order_id
    if payment_request.status == PAYMENT_PAID:
        return CallbackResult(CALLBACK_ALREADY_PROCESSED, "Already processed", order_id)

    gateway_status = str(payload.get("payment_status") or "").upper()

    if gateway_status in GATEWAY_PAID:
        reported = payload.get("amount")
        if reported is not None:
            try:
                paid_amount = to_money(reported)
            except (InvalidOperation, ValueError):
                current_app.logger.warning("QPay webhook for %s has unreadable amount %r", invoice_id, reported)
                return CallbackResult(CALLBACK_INVALID, "Invalid amount", order_id)
            if paid_amount < to_money(payment_request.amount):
                current_app.logger.warning(
                    "QPay webhook underpaid for order %s: paid %s of %s",
                    order_id, paid_amount, payment_request.amount,
                )
                return CallbackResult(CALLBACK_UNDERPAID, "Paid amount is less than requested", order_id)

        settled = _settle(lambda: _mark_paid(
            payment_request,
            transaction_type=TXN_QPAY_PAYMENT,
            payment_method=PAYMENT_TYPE_QPAY,
            description=f"QPay payment (webhook) - Order #{order_id}",
            payment_info=payload,
        ))
        if not settled:
            return CallbackResult(CALLBACK_ALREADY_PROCESSED, "Already processed", order_id)
        current_app.logger.info("QPay webhook settled order %s (invoice %s)", order_id, invoice_id)
        return CallbackResult(CALLBACK_OK, "Payment processed successfully", order_id)

    if gateway_status in GATEWAY_FAILED:
        settled = _settle(lambda: _mark_failed(payment_request, payment_info=payload))
        if not settled:
            return CallbackResult(CALLBACK_ALREADY_PROCESSED, "Already processed", order_id)
        current_app.logger.info("QPay webhook marked order %s payment failed", order_id)
        return CallbackResult(CALLBACK_OK, "Payment marked failed", order_id)

    return CallbackResult(CALLBACK_IGNORED, f"Ignored payment_status {gateway_status or 'missing'}", order_id)


# =============================================================================
# POLL
# =============================================================================

def check_payment(order_id, client: QPayClient) -> dict:
    """
    Ask the gateway whether an order's invoice has been paid.

    Settles the order the same way the webhook does. If the webhook won the
    race, the current Paid view is returned.
    """
    order = _get_order(order_id)
    payment_request = _get_payment_request(order)
    if not payment_request.qpay_invoice_id:
        raise ValidationError("QPay invoice has not been created for this order")

    if payment_request.status == PAYMENT_PAID:
        return _payment_view(order, payment_request)

    result = client.check_payment(payment_request.qpay_invoice_id)
    if result["count"] > 0 and result["paid_amount"] >= to_money(payment_request.amount):
        row = result["rows"][0] if result["rows"] else None
        settled = _settle(lambda: _mark_paid(
            payment_request,
            transaction_type=TXN_QPAY_PAYMENT,
            payment_method=PAYMENT_TYPE_QPAY,
            description=f"QPay payment - Order #{order.id}",
            payment_info=row,
        ))
        if settled:
            current_app.logger.info("QPay poll settled order %s", order.id)
        db.session.refresh(payment_request)
        db.session.refresh(order)
        return _payment_view(order, payment_request)

    return {
        **_payment_view(order, payment_request),
        "paid_amount": str(result["paid_amount"]),
    }


# =============================================================================
# ADMIN / CANCELLATION
# =============================================================================

def update_order_status(order_id, status: str, actor_user_id: int | None = None) -> Order:
    """
    Admin status change.

    Moving an order forward (Processing, Shipped, Done) confirms an unpaid
    payment request as admin_confirmed with one order_payment ledger row.
    Moving to Cancelled appends one cancelled ledger row.
    """
    if status not in ORDER_STATUSES:
        raise ValidationError(f"Invalid status: {status}. Must be one of {ORDER_STATUSES}")
    order_pk = coerce_int("order_id", order_id)

    def _op() -> Order:
        order = lock_for_update(db.session.query(Order).filter(Order.id == order_pk)).first()
        if order is None:
            raise NotFoundError(f"Order {order_pk} not found")
        payment_request = order.payment_request
        previous = order.status
        order.status = status

        if status not in (ORDER_AWAITING_PAYMENT, ORDER_CANCELLED) and payment_request is not None \
                and payment_request.status != PAYMENT_PAID:
            try:
                _mark_paid(
                    payment_request,
                    expected=payment_request.status,
                    payment_type=PAYMENT_TYPE_ADMIN,
                    transaction_type=TXN_ORDER_PAYMENT,
                    payment_method=PAYMENT_TYPE_ADMIN,
                    description=f"Admin confirmed payment - Order #{order.id}",
                    payment_info={"actor_user_id": actor_user_id, "previous_order_status": previous},
                    advance_order=False,
                )
            except IdempotencyViolation:
                current_app.logger.info("Order %s was settled concurrently; no admin confirmation", order.id)

        if status == ORDER_CANCELLED and previous != ORDER_CANCELLED:
            append_sales_transaction(
                order=order,
                transaction_type=TXN_CANCELLED,
                amount=order.total,
                status=TXN_STATUS_CANCELLED,
                description=f"Order cancelled - Order #{order.id}",
                payment_request_id=payment_request.id if payment_request else None,
                metadata={"actor_user_id": actor_user_id, "previous_order_status": previous},
            )

        db.session.commit()
        current_app.logger.info("Order %s status %s -> %s by %s", order.id, previous, status, actor_user_id)
        return order

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise


def cancel_payment(order_id, client: QPayClient) -> dict:
    """
    Cancel a pending payment and its gateway invoice.

    A gateway failure propagates before anything is written.
    """
    order = _get_order(order_id)
    payment_request = _get_payment_request(order)
    if payment_request.status == PAYMENT_PAID:
        raise ConflictError("This order has already been paid")
    if payment_request.status != PAYMENT_PENDING:
        raise ValidationError("Only pending payments can be cancelled")

    invoice_id = payment_request.qpay_invoice_id
    if invoice_id:
        client.cancel_invoice(invoice_id)

    def _cancel() -> None:
        _swap_status(
            payment_request,
            PAYMENT_PENDING,
            PAYMENT_CANCELLED,
            qpay_invoice_id=None,
            qr_text=None,
            qr_image=None,
            qpay_short_url=None,
            urls=None,
        )
        append_sales_transaction(
            order=order,
            transaction_type=TXN_CANCELLED,
            amount=payment_request.amount,
            status=TXN_STATUS_CANCELLED,
            description=f"QPay payment cancelled - Order #{order.id}",
            payment_request_id=payment_request.id,
            payment_method=PAYMENT_TYPE_QPAY,
            external_reference=invoice_id,
        )

    if not _settle(_cancel):
        db.session.refresh(payment_request)
        raise ConflictError(f"Payment status changed to {payment_request.status}")

    current_app.logger.info("Payment for order %s cancelled", order.id)
    return _payment_view(order, payment_request)
