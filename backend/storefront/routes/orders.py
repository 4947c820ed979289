# Overview: Flask API routes for orders; parses input and returns JSON responses.

from __future__ import annotations

from flask import Blueprint, jsonify, request, current_app

from ..decorators import require_admin
from ..extensions import db
from ..models import Order
from ..services import ledger_service, settlement_service
from ..validation import ValidationError, NotFoundError

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.route("/<int:order_id>", methods=["GET"])
def get_order(order_id: int):
    order = db.session.get(Order, order_id)
    if order is None:
        return jsonify({"error": "Order not found"}), 404
    return jsonify(order.to_dict())


@orders_bp.route("/<int:order_id>/status", methods=["PUT"])
@require_admin
def update_order_status(order_id: int):
    """
    Admin status change.

    Request body: {"status": "Processing", "actor_user_id": 1}
    Moving past Awaiting Payment confirms an unpaid payment as admin_confirmed.
    """
    data = request.get_json(silent=True) or {}
    if not data.get("status"):
        return jsonify({"error": "Missing required fields: status"}), 400
    try:
        order = settlement_service.update_order_status(order_id, data["status"], data.get("actor_user_id"))
        return jsonify(order.to_dict())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Order status update failed for order %s", order_id)
        return jsonify({"error": "Order status update failed"}), 500


@orders_bp.route("/<int:order_id>/transactions", methods=["GET"])
@require_admin
def list_order_transactions(order_id: int):
    transaction_type = request.args.get("type")
    rows = ledger_service.list_sales_transactions(order_id=order_id, transaction_type=transaction_type)
    return jsonify({"transactions": [t.to_dict() for t in rows]})
