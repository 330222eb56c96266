# Overview: Flask API routes for checkout and order lifecycle; parses input and returns JSON responses.

# backend/storefront/routes/orders.py
"""
Order API Routes

- POST /api/orders                 checkout (any signed-in user)
- GET  /api/orders/<id>            owner or admin
- POST /api/orders/<id>/cancel     owner or admin, pending/failed only
- POST /api/orders/<id>/status     admin console status change

Errors come back as {error, code, details?} with the status attached to
the raised FulfillmentError / ValidationError.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import FulfillmentError, OrderNotFound
from ..services import order_service, payment_service
from ..validation import ValidationError, require_payload, parse_cart_items, coerce_text
from ..decorators import require_auth, require_role
from ..models.auth import ROLE_ADMIN


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _require_owner_or_admin(order_id: int) -> None:
    """Hide other users' orders behind a 404."""
    if g.current_user.is_admin:
        return
    if order_service.get_order_owner(order_id) != g.current_user.id:
        raise OrderNotFound(order_id)


@orders_bp.post("")
@require_auth
def create_order_route():
    """
    Place an order.

    Request body:
    {
        "items": [{"product_id": 1, "variant_id": 3, "quantity": 2}],
        "payment_method": "cash" | "gcash"
    }

    Prices and totals are computed server-side.

    Returns:
        201: {order_id, total_amount, payment_status}
        400: EMPTY_CART / INVALID_ITEM / VALIDATION_ERROR
        409: INSUFFICIENT_STOCK / TRANSACTION_CONFLICT
    """
    try:
        data = require_payload(request.get_json(silent=True))
        items = parse_cart_items(data.get("items"))
        payment_method = data.get("payment_method") or "cash"

        order = order_service.create_order(g.current_user.id, items, payment_method)

        return jsonify({
            "order_id": order.id,
            "total_amount": str(order.total_amount),
            "payment_status": order.payment_status,
        }), 201

    except (FulfillmentError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        _require_owner_or_admin(order_id)
        return jsonify({"order": order_service.get_order(order_id)}), 200

    except FulfillmentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_auth
def cancel_order_route(order_id: int):
    """
    Cancel a pending or failed order; reserved stock goes back on the shelf.

    Request body (optional): {"reason": "..."}
    Cancelling an already-cancelled order succeeds with changed=false.
    """
    try:
        data = require_payload(request.get_json(silent=True))
        reason = coerce_text(data.get("reason"), "reason")

        _require_owner_or_admin(order_id)
        result = payment_service.cancel(order_id, g.current_user.id, reason)

        return jsonify(result.to_dict()), 200

    except (FulfillmentError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/status")
@require_auth
@require_role(ROLE_ADMIN)
def update_order_status_route(order_id: int):
    """
    Admin status change.

    Request body:
    {
        "status": "paid" | "failed" | "cancelled" | "refunded",
        "reason": "optional note"
    }

    Returns:
        200: {order_id, payment_status, previous_status, changed}
        409: INVALID_TRANSITION
    """
    try:
        data = require_payload(request.get_json(silent=True))
        status = coerce_text(data.get("status"), "status", max_length=16, required=True)
        reason = coerce_text(data.get("reason"), "reason")

        result = payment_service.apply_admin_status(order_id, status, g.current_user.id, reason)

        return jsonify(result.to_dict()), 200

    except (FulfillmentError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update status of order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500
