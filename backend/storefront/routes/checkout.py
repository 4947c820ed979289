# Overview: Flask API routes for checkout; parses input and returns JSON responses.

"""
Checkout API Routes

Guest checkout is allowed: user_id is optional and only recorded on the
order and its contact snapshot.
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import checkout_service
from ..validation import ValidationError, NotFoundError, ConflictError


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


@checkout_bp.post("")
def create_checkout_route():
    """
    Create an order with its pending payment request.

    Request body:
    {
        "items": [{"product_id": 1, "quantity": 2}],
        "contact": {"name": "...", "address": "...", "phone": "...", "email": "..."},
        "promo_code": "SAVE10",  (optional)
        "user_id": 7  (optional)
    }

    Returns:
        201: Order with price breakdown and payment code
        400: Invalid cart, contact or promo code
        404: Unknown product or promo code
        409: Promo code usage limit reached
    """
    data = request.get_json(silent=True) or {}
    try:
        order = checkout_service.checkout(
            items=data.get("items"),
            contact=data.get("contact"),
            promo_code=data.get("promo_code"),
            user_id=data.get("user_id"),
        )
        return jsonify({"order": order.to_dict(), "payment_code": order.payment_request.code}), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Checkout failed")
        return jsonify({"error": "Checkout failed"}), 500


@checkout_bp.post("/quote")
def quote_checkout_route():
    """Price breakdown for a cart; nothing is written and no promo use is counted."""
    data = request.get_json(silent=True) or {}
    try:
        quote = checkout_service.quote_cart(data.get("items"), data.get("promo_code"))
        return jsonify(quote.to_dict())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
