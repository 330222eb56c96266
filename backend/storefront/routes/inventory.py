# backend/storefront/routes/inventory.py
"""
Inventory routes.

All routes require authentication. Writes and ledger views are admin-only;
the stock level of a single product is visible to any signed-in user.

Time semantics:
- start / end accept ISO-8601 with Z/offsets, normalized to UTC-naive,
  or a bare date. A bare end date covers that whole day.
- Both bounds are inclusive.
"""
from flask import Blueprint, request, g, current_app

from storefront.time_utils import parse_filter_bound
from ..errors import FulfillmentError
from ..validation import ValidationError, require_payload, coerce_int, coerce_positive_int, coerce_text
from ..decorators import require_auth, require_role
from ..models.auth import ROLE_ADMIN
from ..services import inventory_service


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


def _query_int(name: str, default=None):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    return coerce_int(raw, name)


def _query_datetime(name: str, *, end_of_day: bool = False):
    try:
        return parse_filter_bound(request.args.get(name), end_of_day=end_of_day)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date or datetime")


@inventory_bp.post("/<int:product_id>/restock")
@require_auth
@require_role(ROLE_ADMIN)
def restock_route(product_id: int):
    """
    Receive stock for a product or one of its sizes.

    Body: {"variant_id": 3?, "quantity": 10, "reason": "supplier delivery"}
    """
    try:
        payload = require_payload(request.get_json(silent=True))
        movement = inventory_service.restock(
            product_id=product_id,
            variant_id=coerce_int(payload.get("variant_id"), "variant_id", allow_none=True),
            quantity=coerce_positive_int(payload.get("quantity"), "quantity"),
            reason=coerce_text(payload.get("reason"), "reason"),
            actor_user_id=g.current_user.id,
        )
    except (FulfillmentError, ValidationError) as e:
        return e.to_dict(), e.status_code

    level = inventory_service.get_stock_level(product_id, movement.variant_id)
    return {"movement": movement.to_dict(), "stock": level}, 201


@inventory_bp.post("/<int:product_id>/adjust")
@require_auth
@require_role(ROLE_ADMIN)
def adjust_route(product_id: int):
    """
    Set stock to a physical count.

    Body: {"variant_id": 3?, "physical_count": 7, "reason": "cycle count"}

    Returns 200 with movement=null when the count already matches.
    """
    try:
        payload = require_payload(request.get_json(silent=True))
        variant_id = coerce_int(payload.get("variant_id"), "variant_id", allow_none=True)
        movement = inventory_service.adjust_to_count(
            product_id=product_id,
            variant_id=variant_id,
            physical_count=coerce_int(payload.get("physical_count"), "physical_count"),
            reason=coerce_text(payload.get("reason"), "reason"),
            actor_user_id=g.current_user.id,
        )
    except (FulfillmentError, ValidationError) as e:
        return e.to_dict(), e.status_code

    level = inventory_service.get_stock_level(product_id, variant_id)
    if movement is None:
        return {"movement": None, "stock": level}, 200
    return {"movement": movement.to_dict(), "stock": level}, 201


@inventory_bp.get("/<int:product_id>/stock")
@require_auth
def stock_level_route(product_id: int):
    try:
        variant_id = _query_int("variant_id")
        return inventory_service.get_stock_level(product_id, variant_id), 200
    except (FulfillmentError, ValidationError) as e:
        return e.to_dict(), e.status_code


@inventory_bp.get("/movements")
@require_auth
@require_role(ROLE_ADMIN)
def list_movements_route():
    """
    Stock movement history, newest first.

    Query params: product_id, variant_id, movement_type, start, end, page, limit
    """
    try:
        return inventory_service.list_movements(
            product_id=_query_int("product_id"),
            variant_id=_query_int("variant_id"),
            movement_type=request.args.get("movement_type") or None,
            start=_query_datetime("start"),
            end=_query_datetime("end", end_of_day=True),
            page=_query_int("page", 1),
            limit=_query_int("limit", 50),
        ), 200
    except (FulfillmentError, ValidationError) as e:
        return e.to_dict(), e.status_code


@inventory_bp.get("/movements/summary")
@require_auth
@require_role(ROLE_ADMIN)
def movement_summary_route():
    try:
        days = _query_int("days", 30)
        if days <= 0:
            raise ValidationError("days must be > 0")
        return inventory_service.movement_summary(days=days, product_id=_query_int("product_id")), 200
    except ValidationError as e:
        return e.to_dict(), e.status_code


@inventory_bp.get("/low-stock")
@require_auth
@require_role(ROLE_ADMIN)
def low_stock_route():
    alerts = inventory_service.low_stock_report()
    return {"alerts": alerts, "count": len(alerts)}, 200


@inventory_bp.get("/reconcile")
@require_auth
@require_role(ROLE_ADMIN)
def reconcile_route():
    """
    Replay the movement log against current stock.

    Query params: product_id (+ variant_id) for one unit; omit for all.
    """
    try:
        product_id = _query_int("product_id")
        if product_id is not None:
            reports = [inventory_service.reconcile(product_id, _query_int("variant_id"))]
        else:
            reports = inventory_service.reconcile_all()
    except (FulfillmentError, ValidationError) as e:
        return e.to_dict(), e.status_code

    inconsistent = [r for r in reports if not r.is_consistent]
    if inconsistent:
        current_app.logger.error(
            "Stock reconciliation found %d inconsistent unit(s)", len(inconsistent)
        )
    return {
        "consistent": not inconsistent,
        "checked": len(reports),
        "reports": [r.to_dict() for r in reports],
    }, 200
