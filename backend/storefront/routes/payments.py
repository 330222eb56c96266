# Overview: Flask API routes for payments; gateway webhook and payment selection.

# backend/storefront/routes/payments.py
"""
Payment API Routes

- POST /api/payments/webhook                gateway callback (signed when
                                            PAYMENT_WEBHOOK_SECRET is set)
- POST /api/payments/orders/<id>/intent     owner selects cash / gcash
- GET  /api/payments/orders/<id>            status + transactions

Webhook deliveries that repeat an already-applied transaction return 200 so
the gateway stops retrying.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import FulfillmentError, OrderNotFound
from ..services import order_service, payment_service
from ..services.payment_service import GATEWAY_PAID_STATUSES, GATEWAY_FAILED_STATUSES
from ..validation import ValidationError, require_payload, coerce_int, coerce_text
from ..decorators import require_auth, verify_webhook_signature


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.post("/webhook")
@verify_webhook_signature
def payment_webhook_route():
    """
    Gateway payment notification.

    Request body:
    {
        "transaction_id": "gcash_abc123",
        "order_id": 42,
        "amount": "900.00",
        "status": "paid" | "completed" | "succeeded" | "failed"
    }

    Returns:
        200: applied or duplicate ({..., changed})
        400: malformed payload / unknown status
        404: ORDER_NOT_FOUND
        409: AMOUNT_MISMATCH / INVALID_TRANSITION
    """
    try:
        data = require_payload(request.get_json(silent=True))
        order_id = coerce_int(data.get("order_id"), "order_id")
        transaction_id = coerce_text(data.get("transaction_id"), "transaction_id", max_length=128, required=True)
        status = (coerce_text(data.get("status"), "status", max_length=32, required=True) or "").lower()

        if status in GATEWAY_PAID_STATUSES:
            result = payment_service.mark_paid(order_id, transaction_id, data.get("amount"), gateway_response=data)
        elif status in GATEWAY_FAILED_STATUSES:
            result = payment_service.mark_failed(
                order_id,
                reason=coerce_text(data.get("reason"), "reason") or "Gateway reported failure",
                transaction_id=transaction_id,
                amount=data.get("amount"),
                gateway_response=data,
            )
        else:
            raise ValidationError(f"Unsupported payment status: {status}")

        return jsonify(result.to_dict()), 200

    except (FulfillmentError, ValidationError) as e:
        current_app.logger.warning("Webhook rejected: %s", e)
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to process payment webhook")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/orders/<int:order_id>/intent")
@require_auth
def initiate_payment_route(order_id: int):
    """
    Choose how a pending order will be paid.

    Request body: {"payment_method": "gcash" | "cash"}

    Returns:
        200: {order_id, payment_method, tracking_id, amount}
    """
    try:
        data = require_payload(request.get_json(silent=True))
        payment_method = coerce_text(data.get("payment_method"), "payment_method", max_length=32, required=True)

        txn = payment_service.initiate_payment(order_id, g.current_user.id, payment_method)

        return jsonify({
            "order_id": order_id,
            "payment_method": payment_method,
            "tracking_id": txn.transaction_id if txn is not None else None,
            "amount": str(txn.amount) if txn is not None else None,
        }), 200

    except (FulfillmentError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to start payment for order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/orders/<int:order_id>")
@require_auth
def get_payment_status_route(order_id: int):
    try:
        if not g.current_user.is_admin and order_service.get_order_owner(order_id) != g.current_user.id:
            raise OrderNotFound(order_id)
        return jsonify(payment_service.get_payment_status(order_id)), 200

    except FulfillmentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load payment status for order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500
