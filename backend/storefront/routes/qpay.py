# Overview: Flask API routes for QPay payments; parses input and returns JSON responses.

# backend/storefront/routes/qpay.py
"""
QPay Payment API Routes

WHY: Customers pay orders through QPay invoices (QR code / bank app deep
links). Settlement reaches us two ways, the gateway webhook and client
polling, and both end in settlement_service.

DESIGN:
- Invoice creation, polling, info and cancellation are public: the order id
  plus payment code is what the customer holds after a guest checkout.
- The callback ALWAYS answers 200. Failures are only logged so the gateway
  does not retry into a loop.
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import settlement_service
from ..services.qpay_client import ExternalServiceError
from ..validation import ValidationError, NotFoundError, ConflictError


qpay_bp = Blueprint("qpay", __name__, url_prefix="/api/qpay")


@qpay_bp.post("/invoices/<int:order_id>")
def create_invoice_route(order_id: int):
    """
    Create a QPay invoice for an order.

    Returns:
        201: Invoice id, QR text/image, short URL and bank deep links
        400: Payment not pending or below the gateway minimum
        404: Unknown order
        409: Already paid
        502: Gateway unavailable (safe to retry)
    """
    try:
        invoice = settlement_service.create_invoice(
            order_id,
            settlement_service.get_client(),
            current_app.config["QPAY_CALLBACK_URL"],
        )
        return jsonify(invoice), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except ExternalServiceError as e:
        current_app.logger.error("QPay invoice creation failed for order %s: %s", order_id, e)
        return jsonify({"error": "Payment gateway unavailable, please try again"}), 502


@qpay_bp.get("/check/<int:order_id>")
def check_payment_route(order_id: int):
    try:
        result = settlement_service.check_payment(order_id, settlement_service.get_client())
        return jsonify(result)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ExternalServiceError as e:
        current_app.logger.error("QPay payment check failed for order %s: %s", order_id, e)
        return jsonify({"error": "Payment gateway unavailable, please try again"}), 502


@qpay_bp.get("/payment-info/<int:order_id>")
def payment_info_route(order_id: int):
    try:
        return jsonify(settlement_service.get_payment_info(order_id))
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@qpay_bp.delete("/cancel/<int:order_id>")
def cancel_payment_route(order_id: int):
    try:
        result = settlement_service.cancel_payment(order_id, settlement_service.get_client())
        return jsonify(result)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except ExternalServiceError as e:
        current_app.logger.error("QPay invoice cancellation failed for order %s: %s", order_id, e)
        return jsonify({"error": "Payment gateway unavailable, please try again"}), 502


@qpay_bp.post("/callback")
def callback_route():
    raw_body = request.get_data(cache=True)
    payload = request.get_json(silent=True)
    signature = request.headers.get("X-QPay-Signature") or request.headers.get("QPay-Signature")

    current_app.logger.info("QPay webhook received: %s", raw_body[:2048])
    result = settlement_service.handle_callback(payload, raw_body, signature, settlement_service.get_client())
    return jsonify(result.to_dict()), 200
