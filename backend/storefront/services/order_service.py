# Overview: Service-layer operations for checkout; turns a cart into an order atomically.

"""
Order Service - cart to durable order

Checkout runs as one transaction:
  lock products, then sizes (ascending ids) -> check stock -> price lines
  from the database -> insert order + items -> stock_out per line through
  the ledger -> commit -> new_order notifications.

Stock is reserved at creation: a pending order already holds its units.
Cancelling or expiring the order returns them (see payment_service.cancel).
"""

from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..errors import EmptyCart, InsufficientStock, InvalidItem, OrderNotFound
from ..extensions import db
from ..models import Order, OrderItem, OrderStatusLog, Product, ProductVariant
from ..models.inventory import MOVEMENT_STOCK_OUT
from ..models.orders import STATUS_PENDING, VALID_PAYMENT_METHODS
from ..validation import CENT, ValidationError, coerce_int
from storefront.time_utils import utcnow
from .concurrency import begin_immediate, lock_rows_in_order, run_with_retry
from .inventory_service import apply_movement
from .notification_service import notify_new_order


def _normalize_lines(items) -> list[dict]:
    """
    Validate quantities and merge repeated product/size lines.

    Keeps first-seen order so order items mirror the cart.
    """
    if not items:
        raise EmptyCart()

    merged: dict[tuple, dict] = {}
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise InvalidItem(f"items[{index}] must be an object")
        try:
            product_id = coerce_int(raw.get("product_id"), f"items[{index}].product_id")
            variant_id = coerce_int(raw.get("variant_id"), f"items[{index}].variant_id", allow_none=True)
            quantity = coerce_int(raw.get("quantity"), f"items[{index}].quantity")
        except ValidationError as exc:
            raise InvalidItem(str(exc), product_id=raw.get("product_id"), variant_id=raw.get("variant_id"))
        if quantity <= 0:
            raise InvalidItem(
                f"items[{index}].quantity must be > 0",
                product_id=product_id,
                variant_id=variant_id,
            )

        key = (product_id, variant_id)
        if key in merged:
            merged[key]["quantity"] += quantity
        else:
            merged[key] = {"product_id": product_id, "variant_id": variant_id, "quantity": quantity}
    return list(merged.values())


def _resolve_line(line: dict, products: dict, variants: dict, sized_product_ids: set) -> tuple:
    product_id = line["product_id"]
    variant_id = line["variant_id"]

    product = products.get(product_id)
    if product is None or not product.is_active:
        raise InvalidItem(f"Product {product_id} not found or inactive", product_id=product_id, variant_id=variant_id)

    if variant_id is None:
        if product_id in sized_product_ids:
            raise InvalidItem(
                f"Product {product.name} requires a size",
                product_id=product_id,
                variant_id=None,
            )
        return product, None, int(product.stock or 0)

    variant = variants.get(variant_id)
    if variant is None or variant.product_id != product_id:
        raise InvalidItem(
            f"Size {variant_id} does not belong to product {product_id}",
            product_id=product_id,
            variant_id=variant_id,
        )
    return product, variant, int(variant.stock or 0)


def _unit_price(product: Product, variant: ProductVariant | None) -> Decimal:
    price = variant.price if variant is not None and variant.price is not None else product.price
    return Decimal(price).quantize(CENT)


def create_order(user_id: int, items, payment_method: str) -> Order:
    """
    Create an order from cart lines and consume their stock.

    Prices come from the database at lock time; anything the client sent
    besides product_id/variant_id/quantity is ignored.

    Raises:
        EmptyCart, InvalidItem, InsufficientStock
        ValidationError: unknown payment method
        TransactionConflict: lock contention survived every retry
    """
    if payment_method not in VALID_PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {list(VALID_PAYMENT_METHODS)}")

    lines = _normalize_lines(items)

    def _op():
        begin_immediate()

        products = lock_rows_in_order(Product, [line["product_id"] for line in lines])
        variants = lock_rows_in_order(ProductVariant, [line["variant_id"] for line in lines])
        sized_product_ids = {
            product_id
            for (product_id,) in db.session.query(ProductVariant.product_id)
            .filter(ProductVariant.product_id.in_(list(products)))
            .distinct()
        }

        resolved = []
        insufficient = None
        for line in lines:
            product, variant, available = _resolve_line(line, products, variants, sized_product_ids)
            if insufficient is None and available < line["quantity"]:
                insufficient = InsufficientStock(
                    product_id=product.id,
                    variant_id=variant.id if variant is not None else None,
                    requested=line["quantity"],
                    available=available,
                    name=product.name if variant is None else f"{product.name} ({variant.size})",
                )
            resolved.append((line, product, variant))
        if insufficient is not None:
            raise insufficient

        total = Decimal("0.00")
        priced = []
        for line, product, variant in resolved:
            unit_price = _unit_price(product, variant)
            total += unit_price * line["quantity"]
            priced.append((line, product, variant, unit_price))

        now = utcnow()
        order = Order(
            user_id=user_id,
            total_amount=total.quantize(CENT),
            payment_method=payment_method,
            payment_status=STATUS_PENDING,
            created_at=now,
            updated_at=now,
        )
        db.session.add(order)
        db.session.flush()

        db.session.add(OrderStatusLog(
            order_id=order.id,
            old_status=None,
            new_status=STATUS_PENDING,
            reason="Order placed",
            actor_user_id=user_id,
            created_at=now,
        ))

        for line, product, variant, unit_price in priced:
            db.session.add(OrderItem(
                order_id=order.id,
                product_id=product.id,
                variant_id=variant.id if variant is not None else None,
                product_name=product.name,
                size=variant.size if variant is not None else None,
                quantity=line["quantity"],
                unit_price=unit_price,
                created_at=now,
            ))
            apply_movement(
                product_id=product.id,
                variant_id=variant.id if variant is not None else None,
                movement_type=MOVEMENT_STOCK_OUT,
                quantity=line["quantity"],
                reason=f"Order #{order.id}",
                actor_user_id=user_id,
                order_id=order.id,
            )

        notify_new_order(order)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info(
        "Order %s created for user %s: %s line(s), total %s",
        order.id, user_id, len(lines), order.total_amount,
    )
    return order


def get_order(order_id: int) -> dict:
    """Order with its items and status history."""
    order = db.session.query(Order).filter_by(id=order_id).first()
    if order is None:
        raise OrderNotFound(order_id)

    history = (
        db.session.query(OrderStatusLog)
        .filter_by(order_id=order_id)
        .order_by(OrderStatusLog.created_at.asc(), OrderStatusLog.id.asc())
        .all()
    )
    data = order.to_dict(include_items=True)
    data["status_history"] = [entry.to_dict() for entry in history]
    return data


def get_order_owner(order_id: int) -> int:
    user_id = db.session.query(Order.user_id).filter_by(id=order_id).scalar()
    if user_id is None:
        raise OrderNotFound(order_id)
    return user_id
