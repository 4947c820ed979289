# Overview: Flask API routes for sales (discount rules); parses input and returns JSON responses.

"""
Sales API Routes

Read endpoints are public and all go through sale_service, so the product
page, the listing and checkout always quote the same price.
"""

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_admin
from ..services import sale_service
from ..validation import ValidationError, NotFoundError


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


# =============================================================================
# PRICING
# =============================================================================

@sales_bp.get("/active")
def list_active_sales_route():
    sales = sale_service.list_active_sales()
    return jsonify({"sales": [s.to_dict() for s in sales]})


@sales_bp.get("/products/<int:product_id>/price")
def get_product_price_route(product_id: int):
    """
    Current price of a product with its best active sale.

    Returns:
        200: original_price, sale_price (null without a sale), discount_amount, sale
        404: Unknown product
    """
    try:
        price = sale_service.get_product_sale_price(product_id)
        return jsonify(price.to_dict())
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@sales_bp.get("/products-with-prices")
def list_products_with_prices_route():
    return jsonify({"products": sale_service.list_products_with_sale_prices()})


# =============================================================================
# ADMINISTRATION
# =============================================================================

@sales_bp.post("")
@require_admin
def create_sale_route():
    """
    Create a sale rule.

    Request body:
    {
        "title": "Winter sale",
        "target_type": "category",  (all | product | category)
        "target_id": 3,  (omitted for "all")
        "discount_type": "percentage",  (percentage | fixed)
        "discount_value": 20,
        "max_discount_amount": 5000,  (optional, percentage only)
        "start_date": "2026-01-01T00:00:00Z",  (optional)
        "end_date": "2026-01-31T23:59:59Z",  (optional)
        "priority": 10,  (optional)
        "badge_text": "-20%"  (optional)
    }
    """
    data = request.get_json(silent=True) or {}
    try:
        sale = sale_service.create_sale(data)
        current_app.logger.info("Sale %s created: %s", sale.id, sale.title)
        return jsonify(sale.to_dict()), 201
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400


@sales_bp.patch("/<int:sale_id>/toggle")
@require_admin
def toggle_sale_route(sale_id: int):
    try:
        sale = sale_service.toggle_sale(sale_id)
        return jsonify(sale.to_dict())
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@sales_bp.get("")
@require_admin
def list_sales_route():
    """Every sale rule including disabled and expired ones."""
    return jsonify({"sales": [s.to_dict() for s in sale_service.list_sales()]})


@sales_bp.get("/<int:sale_id>")
@require_admin
def get_sale_route(sale_id: int):
    try:
        return jsonify(sale_service.get_sale(sale_id).to_dict())
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404


@sales_bp.put("/<int:sale_id>")
@require_admin
def update_sale_route(sale_id: int):
    """Partial edit of a sale rule; body uses the create fields."""
    data = request.get_json(silent=True) or {}
    try:
        sale = sale_service.update_sale(sale_id, data)
        current_app.logger.info("Sale %s updated", sale.id)
        return jsonify(sale.to_dict())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
