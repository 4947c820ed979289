"""
Settlement reconciler tests.

Every path (webhook, poll, admin, cancel) must settle a payment request at
most once and write exactly one ledger row per financial event.
"""

import hashlib
import hmac
import json
from decimal import Decimal

import pytest

from storefront.extensions import db
from storefront.models import Order, PaymentRequest
from storefront.services import ledger_service, settlement_service
from storefront.services.qpay_client import ExternalServiceError
from storefront.validation import ConflictError, NotFoundError, ValidationError

from conftest import WEBHOOK_SECRET


CALLBACK_URL = "https://shop.test/api/qpay/callback"


def _ledger(order_id, transaction_type=None):
    return ledger_service.list_sales_transactions(order_id=order_id, transaction_type=transaction_type)


def _reload(order_id):
    db.session.expire_all()
    order = db.session.get(Order, order_id)
    return order, order.payment_request


def _callback(fake, payload, *, sign=False, signature=None):
    raw = json.dumps(payload).encode()
    if sign:
        signature = hmac.new(WEBHOOK_SECRET.encode(), raw, hashlib.sha256).hexdigest()
    return settlement_service.handle_callback(payload, raw, signature, fake.client)


@pytest.fixture
def invoiced_order(place_order, fake_qpay):
    order = place_order(price="10000", quantity=2)
    settlement_service.create_invoice(order.id, fake_qpay.client, CALLBACK_URL)
    return _reload(order.id)[0]


# =============================================================================
# INVOICES
# =============================================================================

class TestCreateInvoice:
    def test_invoice_fields_are_stored(self, place_order, fake_qpay):
        order = place_order(price="10000")
        result = settlement_service.create_invoice(order.id, fake_qpay.client, CALLBACK_URL)

        _, payment = _reload(order.id)
        assert result["qpay_invoice_id"] == "INV-1"
        assert result["payment_code"] == payment.code
        assert payment.payment_type == "qpay"
        assert payment.qpay_invoice_id == "INV-1"
        assert payment.qr_text == "qr-INV-1"
        assert payment.qpay_short_url == "https://s.qpay.mn/INV-1"
        assert payment.sender_invoice_no.startswith(f"ORDER-{order.id}-")
        assert payment.status == "Pending"

    def test_below_gateway_minimum(self, place_order, fake_qpay):
        order = place_order(price="50")
        with pytest.raises(ValidationError, match="Minimum"):
            settlement_service.create_invoice(order.id, fake_qpay.client, CALLBACK_URL)
        assert fake_qpay.paths("POST") == []

    def test_gateway_failure_writes_nothing(self, place_order, fake_qpay):
        order = place_order()
        fake_qpay.fail("/v2/invoice")
        with pytest.raises(ExternalServiceError):
            settlement_service.create_invoice(order.id, fake_qpay.client, CALLBACK_URL)

        _, payment = _reload(order.id)
        assert payment.status == "Pending"
        assert payment.qpay_invoice_id is None
        assert payment.payment_type is None

    def test_paid_order_conflicts(self, invoiced_order, fake_qpay):
        _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "PAID"})
        with pytest.raises(ConflictError):
            settlement_service.create_invoice(invoiced_order.id, fake_qpay.client, CALLBACK_URL)

    def test_unknown_order(self, db_session, fake_qpay):
        with pytest.raises(NotFoundError):
            settlement_service.create_invoice(4040, fake_qpay.client, CALLBACK_URL)


class TestPaymentInfo:
    def test_without_invoice(self, place_order):
        order = place_order()
        info = settlement_service.get_payment_info(order.id)
        assert info == {"has_qpay": False, "order_id": order.id, "amount": "10000.00", "status": "Pending"}

    def test_with_invoice(self, invoiced_order):
        info = settlement_service.get_payment_info(invoiced_order.id)
        assert info["has_qpay"] is True
        assert info["qr_text"] == "qr-INV-1"
        assert info["urls"][0]["name"] == "Khan bank"


# =============================================================================
# WEBHOOK
# =============================================================================

class TestCallback:
    def test_paid_settles_order(self, invoiced_order, fake_qpay):
        result = _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "PAID", "amount": 20000}, sign=True)

        assert result.outcome == "ok"
        order, payment = _reload(invoiced_order.id)
        assert payment.status == "Paid"
        assert payment.paid_date is not None
        assert payment.payment_info["invoice_id"] == "INV-1"
        assert order.status == "Processing"

        [txn] = _ledger(order.id)
        assert txn.type == "qpay_payment"
        assert txn.amount == Decimal("20000.00")
        assert txn.status == "completed"
        assert txn.external_reference == "INV-1"
        assert txn.customer_phone == "99112233"

    def test_duplicate_callback_is_absorbed(self, invoiced_order, fake_qpay):
        payload = {"invoice_id": "INV-1", "payment_status": "PAID", "amount": 20000}
        _callback(fake_qpay, payload)
        second = _callback(fake_qpay, payload)

        assert second.outcome == "already_processed"
        assert second.success is True
        assert len(_ledger(invoiced_order.id)) == 1

    def test_underpaid_changes_nothing(self, invoiced_order, fake_qpay):
        result = _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "PAID", "amount": 19999})

        assert result.outcome == "underpaid"
        order, payment = _reload(invoiced_order.id)
        assert payment.status == "Pending"
        assert order.status == "Awaiting Payment"
        assert _ledger(order.id) == []

    def test_paid_without_amount_is_trusted(self, invoiced_order, fake_qpay):
        result = _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "paid"})
        assert result.outcome == "ok"
        assert _reload(invoiced_order.id)[1].status == "Paid"

    def test_bad_signature_is_rejected(self, invoiced_order, fake_qpay):
        result = _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "PAID"}, signature="deadbeef")

        assert result.outcome == "rejected"
        assert _reload(invoiced_order.id)[1].status == "Pending"

    def test_missing_invoice_id(self, db_session, fake_qpay):
        assert _callback(fake_qpay, {"payment_status": "PAID"}).outcome == "invalid"

    def test_non_object_payload(self, db_session, fake_qpay):
        assert settlement_service.handle_callback(None, b"", None, fake_qpay.client).outcome == "invalid"

    def test_unknown_invoice(self, db_session, fake_qpay):
        assert _callback(fake_qpay, {"invoice_id": "INV-404", "payment_status": "PAID"}).outcome == "not_found"

    def test_failed_payment(self, invoiced_order, fake_qpay):
        result = _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "FAILED"})

        assert result.outcome == "ok"
        order, payment = _reload(invoiced_order.id)
        assert payment.status == "Failed"
        assert order.status == "Awaiting Payment"
        [txn] = _ledger(order.id)
        assert txn.type == "cancelled"
        assert txn.status == "failed"

    def test_repeated_failure_is_absorbed(self, invoiced_order, fake_qpay):
        _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "CANCELLED"})
        again = _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "CANCELLED"})
        assert again.outcome == "already_processed"
        assert len(_ledger(invoiced_order.id)) == 1

    def test_unknown_status_is_ignored(self, invoiced_order, fake_qpay):
        result = _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "NEW"})
        assert result.outcome == "ignored"
        assert _reload(invoiced_order.id)[1].status == "Pending"

    def test_internal_error_is_reported_not_raised(self, invoiced_order, fake_qpay, monkeypatch):
        def _boom(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(settlement_service, "_mark_paid", _boom)
        result = _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "PAID"})

        assert result.outcome == "error"
        assert result.success is False
        assert _reload(invoiced_order.id)[1].status == "Pending"


# =============================================================================
# POLL
# =============================================================================

class TestCheckPayment:
    def test_unpaid_invoice_stays_pending(self, invoiced_order, fake_qpay):
        result = settlement_service.check_payment(invoiced_order.id, fake_qpay.client)
        assert result["status"] == "Pending"
        assert result["paid_amount"] == "0"

    def test_paid_invoice_settles_order(self, invoiced_order, fake_qpay):
        fake_qpay.paid_count = 1
        fake_qpay.paid_amount = Decimal("20000")

        result = settlement_service.check_payment(invoiced_order.id, fake_qpay.client)

        assert result["status"] == "Paid"
        assert result["order_status"] == "Processing"
        [txn] = _ledger(invoiced_order.id)
        assert txn.type == "qpay_payment"
        assert txn.meta == {"payment_id": "PAY-1", "payment_status": "PAID"}

    def test_partial_payment_does_not_settle(self, invoiced_order, fake_qpay):
        fake_qpay.paid_count = 1
        fake_qpay.paid_amount = Decimal("5000")

        result = settlement_service.check_payment(invoiced_order.id, fake_qpay.client)
        assert result["status"] == "Pending"
        assert _ledger(invoiced_order.id) == []

    def test_already_paid_skips_gateway(self, invoiced_order, fake_qpay):
        _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "PAID"})
        checks_before = fake_qpay.paths().count("/v2/payment/check")

        result = settlement_service.check_payment(invoiced_order.id, fake_qpay.client)

        assert result["status"] == "Paid"
        assert fake_qpay.paths().count("/v2/payment/check") == checks_before

    def test_webhook_winning_the_race_is_absorbed(self, invoiced_order, fake_qpay):
        fake_qpay.paid_count = 1
        fake_qpay.paid_amount = Decimal("20000")
        fake_qpay.on_check = lambda: _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "PAID"})

        result = settlement_service.check_payment(invoiced_order.id, fake_qpay.client)

        assert result["status"] == "Paid"
        [txn] = _ledger(invoiced_order.id)
        assert txn.description.startswith("QPay payment (webhook)")

    def test_webhook_after_poll_is_absorbed(self, invoiced_order, fake_qpay):
        fake_qpay.paid_count = 1
        fake_qpay.paid_amount = Decimal("20000")
        settlement_service.check_payment(invoiced_order.id, fake_qpay.client)

        result = _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "PAID"})
        assert result.outcome == "already_processed"
        assert len(_ledger(invoiced_order.id)) == 1

    def test_without_invoice(self, place_order, fake_qpay):
        order = place_order()
        with pytest.raises(ValidationError):
            settlement_service.check_payment(order.id, fake_qpay.client)

    def test_gateway_failure_propagates(self, invoiced_order, fake_qpay):
        fake_qpay.fail("/v2/payment/check")
        with pytest.raises(ExternalServiceError):
            settlement_service.check_payment(invoiced_order.id, fake_qpay.client)


def test_double_paid_transition_raises_idempotency_violation(invoiced_order):
    payment = invoiced_order.payment_request
    kwargs = dict(transaction_type="qpay_payment", payment_method="qpay", description="test")
    settlement_service._mark_paid(payment, **kwargs)
    db.session.commit()

    with pytest.raises(settlement_service.IdempotencyViolation):
        settlement_service._mark_paid(payment, **kwargs)
    db.session.rollback()
    assert len(_ledger(invoiced_order.id)) == 1


# =============================================================================
# ADMIN / CANCELLATION
# =============================================================================

class TestAdminStatus:
    def test_processing_confirms_unpaid_payment(self, place_order):
        order = place_order()
        settlement_service.update_order_status(order.id, "Processing", actor_user_id=1)

        order, payment = _reload(order.id)
        assert order.status == "Processing"
        assert payment.status == "Paid"
        assert payment.payment_type == "admin_confirmed"
        [txn] = _ledger(order.id)
        assert txn.type == "order_payment"
        assert txn.meta["actor_user_id"] == 1

    def test_paid_order_moves_without_new_ledger_row(self, invoiced_order, fake_qpay):
        _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "PAID"})
        settlement_service.update_order_status(invoiced_order.id, "Shipped")
        settlement_service.update_order_status(invoiced_order.id, "Done")

        order, payment = _reload(invoiced_order.id)
        assert order.status == "Done"
        assert payment.payment_type == "qpay"
        assert [t.type for t in _ledger(order.id)] == ["qpay_payment"]

    def test_cancel_appends_one_row(self, place_order):
        order = place_order()
        settlement_service.update_order_status(order.id, "Cancelled")
        settlement_service.update_order_status(order.id, "Cancelled")

        order, payment = _reload(order.id)
        assert order.status == "Cancelled"
        assert payment.status == "Pending"
        [txn] = _ledger(order.id)
        assert txn.type == "cancelled"
        assert txn.status == "cancelled"

    def test_back_to_awaiting_payment_does_not_confirm(self, place_order):
        order = place_order()
        settlement_service.update_order_status(order.id, "Awaiting Payment")
        assert _reload(order.id)[1].status == "Pending"
        assert _ledger(order.id) == []

    def test_invalid_status(self, place_order):
        order = place_order()
        with pytest.raises(ValidationError):
            settlement_service.update_order_status(order.id, "Teleported")

    def test_unknown_order(self, db_session):
        with pytest.raises(NotFoundError):
            settlement_service.update_order_status(31337, "Processing")


class TestCancelPayment:
    def test_cancel_clears_invoice(self, invoiced_order, fake_qpay):
        result = settlement_service.cancel_payment(invoiced_order.id, fake_qpay.client)

        assert result["status"] == "Cancelled"
        assert fake_qpay.paths("DELETE") == ["/v2/invoice/INV-1"]
        _, payment = _reload(invoiced_order.id)
        assert payment.status == "Cancelled"
        assert payment.qpay_invoice_id is None
        assert payment.qr_text is None
        assert payment.urls is None
        [txn] = _ledger(invoiced_order.id)
        assert txn.type == "cancelled"
        assert txn.external_reference == "INV-1"

    def test_cancel_without_invoice_skips_gateway(self, place_order, fake_qpay):
        order = place_order()
        settlement_service.cancel_payment(order.id, fake_qpay.client)
        assert fake_qpay.paths("DELETE") == []
        assert _reload(order.id)[1].status == "Cancelled"

    def test_gateway_failure_leaves_payment_pending(self, invoiced_order, fake_qpay):
        fake_qpay.fail("/v2/invoice/INV-1")
        with pytest.raises(ExternalServiceError):
            settlement_service.cancel_payment(invoiced_order.id, fake_qpay.client)

        _, payment = _reload(invoiced_order.id)
        assert payment.status == "Pending"
        assert payment.qpay_invoice_id == "INV-1"
        assert _ledger(invoiced_order.id) == []

    def test_paid_payment_cannot_be_cancelled(self, invoiced_order, fake_qpay):
        _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "PAID"})
        with pytest.raises(ConflictError):
            settlement_service.cancel_payment(invoiced_order.id, fake_qpay.client)

    def test_cancelled_payment_cannot_be_cancelled_again(self, invoiced_order, fake_qpay):
        settlement_service.cancel_payment(invoiced_order.id, fake_qpay.client)
        with pytest.raises(ValidationError):
            settlement_service.cancel_payment(invoiced_order.id, fake_qpay.client)

    def test_stale_callback_after_cancel_is_not_found(self, invoiced_order, fake_qpay):
        settlement_service.cancel_payment(invoiced_order.id, fake_qpay.client)
        result = _callback(fake_qpay, {"invoice_id": "INV-1", "payment_status": "PAID"})
        assert result.outcome == "not_found"
        assert db.session.query(PaymentRequest).filter_by(status="Paid").count() == 0
