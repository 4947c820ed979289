# Overview: Flask API routes for promo codes; parses input and returns JSON responses.

from __future__ import annotations

from flask import Blueprint, jsonify, request, current_app

from ..decorators import require_admin
from ..services import checkout_service, promo_code_service
from ..validation import ValidationError, NotFoundError, ConflictError

promo_codes_bp = Blueprint("promo_codes", __name__, url_prefix="/api/promo-codes")


@promo_codes_bp.route("/validate", methods=["POST"])
def validate_promo_code():
    """Preview a code against a cart total; does not count a use."""
    data = request.get_json(silent=True) or {}
    if "code" not in data or "cart_total" not in data:
        return jsonify({"error": "Missing required fields: code, cart_total"}), 400
    try:
        quote = promo_code_service.validate_promo_code(
            data.get("code"),
            data.get("cart_total"),
            _cart_lines(data.get("cart_items") or []),
        )
        return jsonify(quote.to_dict())
    except ValidationError as e:
        return jsonify({"valid": False, "error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"valid": False, "error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"valid": False, "error": str(e)}), 409


def _cart_lines(items):
    """Targeted codes need priced lines; price them the way checkout does."""
    if not items:
        return []
    return checkout_service.price_cart(checkout_service.parse_items(items)).lines


@promo_codes_bp.route("", methods=["POST"])
@require_admin
def create_promo_code():
    data = request.get_json(silent=True) or {}
    try:
        promo = promo_code_service.create_promo_code(data)
        current_app.logger.info("Promo code %s created", promo.code)
        return jsonify(promo.to_dict()), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409


@promo_codes_bp.route("/<int:promo_id>/toggle", methods=["PATCH"])
@require_admin
def toggle_promo_code(promo_id: int):
    try:
        promo = promo_code_service.toggle_promo_code(promo_id)
        return jsonify(promo.to_dict())
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@promo_codes_bp.route("", methods=["GET"])
@require_admin
def list_promo_codes():
    promos = promo_code_service.list_promo_codes()
    return jsonify({"promo_codes": [p.to_dict() for p in promos]})


@promo_codes_bp.route("/<int:promo_id>", methods=["GET"])
@require_admin
def get_promo_code(promo_id: int):
    try:
        return jsonify(promo_code_service.get_promo_code(promo_id).to_dict())
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@promo_codes_bp.route("/<int:promo_id>", methods=["PUT"])
@require_admin
def update_promo_code(promo_id: int):
    """Partial edit; omitted fields keep their value."""
    data = request.get_json(silent=True) or {}
    try:
        promo = promo_code_service.update_promo_code(promo_id, data)
        current_app.logger.info("Promo code %s updated", promo.code)
        return jsonify(promo.to_dict())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
