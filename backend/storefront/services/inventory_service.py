# Overview: Service-layer operations for inventory; the append-only stock ledger.

# backend/storefront/services/inventory_service.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..errors import InvalidItem, NegativeStock
from ..extensions import db
from ..models import Product, ProductVariant, StockMovement
from ..models.inventory import (
    MOVEMENT_STOCK_IN,
    MOVEMENT_STOCK_OUT,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_COMPENSATING_RESTORE,
    VALID_MOVEMENT_TYPES,
)
from ..validation import ValidationError
from storefront.time_utils import days_ago, utcnow, to_utc_z
from .concurrency import begin_immediate, lock_for_update, run_with_retry
from .notification_service import notify_low_stock
"""
Stock Ledger Invariants (authoritative)

Stock model:
- products.stock (no sizes) and product_sizes.stock (sized products) are the
  read-fast current values.
- stock_movements is the append-only history behind them. Every write to a
  stock column happens in apply_movement, in the same DB transaction as the
  StockMovement row that explains it.

Business invariants:
- Stock may never go negative. apply_movement re-checks this on every call,
  whoever the caller is (checkout, admin restock, cancellation).
- stock_in / compensating_restore add; stock_out subtracts; adjustment
  carries its own sign.
- Replaying movements for a unit in (created_at, id) order reproduces the
  current column value (see reconcile).

Transactions:
- apply_movement never commits. Callers own the transaction boundary.
- restock / adjust_to_count are the stand-alone entry points for the admin
  console and commit on their own.
"""


STATUS_CRITICAL = "CRITICAL"
STATUS_LOW = "LOW"
STATUS_MEDIUM = "MEDIUM"
STATUS_GOOD = "GOOD"


def low_stock_threshold(product: Product) -> int:
    if product.reorder_point is not None:
        return product.reorder_point
    return int(current_app.config.get("LOW_STOCK_THRESHOLD", 5))


def stock_status(stock: int, threshold: int) -> str:
    if stock <= 0:
        return STATUS_CRITICAL
    if stock <= threshold:
        return STATUS_LOW
    if stock <= threshold * 2:
        return STATUS_MEDIUM
    return STATUS_GOOD


def signed_delta(movement_type: str, quantity: int) -> int:
    """
    Translate a movement into the change applied to stock.

    adjustment is the only type whose sign comes from the caller
    (negative = outgoing correction).
    """
    if movement_type in (MOVEMENT_STOCK_IN, MOVEMENT_COMPENSATING_RESTORE):
        return quantity
    if movement_type == MOVEMENT_STOCK_OUT:
        return -quantity
    if movement_type == MOVEMENT_ADJUSTMENT:
        return quantity
    raise ValidationError(f"Invalid movement type: {movement_type}. Must be one of {list(VALID_MOVEMENT_TYPES)}")


def _validate_quantity(movement_type: str, quantity) -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool):
        raise ValidationError("quantity must be an integer")
    if movement_type == MOVEMENT_ADJUSTMENT:
        if quantity == 0:
            raise ValidationError("quantity must be non-zero for adjustment")
    elif quantity <= 0:
        raise ValidationError(f"quantity must be > 0 for {movement_type}")


def _load_stock_unit(product_id: int, variant_id: int | None, *, lock: bool):
    """
    Resolve (product, variant, stock_row) for a stock unit.

    stock_row is the row whose `stock` column holds the truth: the variant
    when the product is sized, otherwise the product itself.
    """
    query = db.session.query(Product).filter_by(id=product_id)
    if lock and variant_id is None:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise InvalidItem(f"Product {product_id} not found", product_id=product_id, variant_id=variant_id)

    if variant_id is None:
        has_variants = db.session.query(ProductVariant.id).filter_by(product_id=product_id).first() is not None
        if has_variants:
            raise InvalidItem(
                f"Product {product_id} is sold by size; variant_id is required",
                product_id=product_id,
                variant_id=None,
            )
        return product, None, product

    query = db.session.query(ProductVariant).filter_by(id=variant_id)
    if lock:
        query = lock_for_update(query)
    variant = query.first()
    if variant is None or variant.product_id != product.id:
        raise InvalidItem(
            f"Size {variant_id} not found for product {product_id}",
            product_id=product_id,
            variant_id=variant_id,
        )
    return product, variant, variant


def apply_movement(
    *,
    product_id: int,
    variant_id: int | None,
    movement_type: str,
    quantity: int,
    reason: str | None,
    actor_user_id: int | None,
    order_id: int | None = None,
) -> StockMovement:
    """
    Append one stock movement and update the stock column to match.

    Runs inside the caller's transaction and never commits. The stock row is
    locked before it is read, so concurrent movements on the same unit are
    applied one after another.

    Raises:
        ValidationError: bad movement type or quantity
        InvalidItem: unknown product/variant
        NegativeStock: the movement would take stock below zero
    """
    if movement_type not in VALID_MOVEMENT_TYPES:
        raise ValidationError(f"Invalid movement type: {movement_type}. Must be one of {list(VALID_MOVEMENT_TYPES)}")
    _validate_quantity(movement_type, quantity)
    delta = signed_delta(movement_type, quantity)

    product, variant, stock_row = _load_stock_unit(product_id, variant_id, lock=True)

    previous_stock = int(stock_row.stock or 0)
    new_stock = previous_stock + delta
    if new_stock < 0:
        current_app.logger.error(
            "Refused %s of %s on product=%s variant=%s: stock is %s",
            movement_type, quantity, product_id, variant_id, previous_stock,
        )
        raise NegativeStock(
            product_id=product_id,
            variant_id=variant_id,
            previous_stock=previous_stock,
            delta=delta,
        )

    movement = StockMovement(
        product_id=product.id,
        variant_id=variant.id if variant is not None else None,
        movement_type=movement_type,
        quantity=abs(quantity),
        quantity_delta=delta,
        previous_stock=previous_stock,
        new_stock=new_stock,
        reason=reason,
        order_id=order_id,
        actor_user_id=actor_user_id,
        created_at=utcnow(),
    )
    db.session.add(movement)

    stock_row.stock = new_stock
    db.session.flush()

    threshold = low_stock_threshold(product)
    if previous_stock > threshold >= new_stock:
        notify_low_stock(product, variant, new_stock, threshold)

    return movement


# =============================================================================
# ADMIN ENTRY POINTS
# =============================================================================

def restock(
    *,
    product_id: int,
    variant_id: int | None,
    quantity: int,
    reason: str | None,
    actor_user_id: int | None,
) -> StockMovement:
    """Receive new stock (stock_in) in its own transaction."""
    def _op():
        begin_immediate()
        movement = apply_movement(
            product_id=product_id,
            variant_id=variant_id,
            movement_type=MOVEMENT_STOCK_IN,
            quantity=quantity,
            reason=reason or "restock",
            actor_user_id=actor_user_id,
        )
        db.session.commit()
        return movement

    movement = run_with_retry(_op)
    current_app.logger.info(
        "Restocked product=%s variant=%s by %s (now %s)",
        product_id, variant_id, quantity, movement.new_stock,
    )
    return movement


def adjust_to_count(
    *,
    product_id: int,
    variant_id: int | None,
    physical_count: int,
    reason: str | None,
    actor_user_id: int | None,
) -> StockMovement | None:
    """
    Set stock to a physical count by writing an adjustment movement.

    Returns None (and writes nothing) when the count already matches.
    """
    if not isinstance(physical_count, int) or isinstance(physical_count, bool):
        raise ValidationError("physical_count must be an integer")
    if physical_count < 0:
        raise ValidationError("physical_count cannot be negative")

    def _op():
        begin_immediate()
        _, _, stock_row = _load_stock_unit(product_id, variant_id, lock=True)
        delta = physical_count - int(stock_row.stock or 0)
        if delta == 0:
            db.session.rollback()
            return None
        movement = apply_movement(
            product_id=product_id,
            variant_id=variant_id,
            movement_type=MOVEMENT_ADJUSTMENT,
            quantity=delta,
            reason=reason or "physical count",
            actor_user_id=actor_user_id,
        )
        db.session.commit()
        return movement

    return run_with_retry(_op)


# =============================================================================
# READS
# =============================================================================

def get_stock_level(product_id: int, variant_id: int | None = None) -> dict:
    product, variant, stock_row = _load_stock_unit(product_id, variant_id, lock=False)
    threshold = low_stock_threshold(product)
    stock = int(stock_row.stock or 0)
    return {
        "product_id": product.id,
        "variant_id": variant.id if variant is not None else None,
        "name": product.name,
        "size": variant.size if variant is not None else None,
        "stock": stock,
        "threshold": threshold,
        "status": stock_status(stock, threshold),
    }


def list_movements(
    *,
    product_id: int | None = None,
    variant_id: int | None = None,
    movement_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict:
    if movement_type is not None and movement_type not in VALID_MOVEMENT_TYPES:
        raise ValidationError(f"movement_type must be one of {list(VALID_MOVEMENT_TYPES)}")
    page = max(1, page)
    limit = max(1, min(limit, 200))

    q = db.session.query(StockMovement)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)
    if variant_id is not None:
        q = q.filter(StockMovement.variant_id == variant_id)
    if movement_type is not None:
        q = q.filter(StockMovement.movement_type == movement_type)
    if start is not None:
        q = q.filter(StockMovement.created_at >= start)
    if end is not None:
        q = q.filter(StockMovement.created_at <= end)

    total = q.count()
    rows = (
        q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "movements": [m.to_dict() for m in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


def movement_summary(*, days: int = 30, product_id: int | None = None) -> dict:
    since = days_ago(days)
    q = db.session.query(
        StockMovement.movement_type,
        func.count(StockMovement.id),
        func.coalesce(func.sum(StockMovement.quantity), 0),
        func.coalesce(func.sum(StockMovement.quantity_delta), 0),
    ).filter(StockMovement.created_at >= since)
    if product_id is not None:
        q = q.filter(StockMovement.product_id == product_id)

    rows = q.group_by(StockMovement.movement_type).all()
    return {
        "since": to_utc_z(since),
        "days": days,
        "summary": [
            {
                "movement_type": movement_type,
                "movement_count": int(count),
                "total_quantity": int(total_quantity),
                "net_change": int(net_change),
            }
            for movement_type, count, total_quantity, net_change in rows
        ],
    }


def _stock_units():
    """Yield (product, variant_or_None, stock) for every active stock unit."""
    products = (
        db.session.query(Product)
        .filter(Product.is_active.is_(True))
        .order_by(Product.id)
        .all()
    )
    for product in products:
        if product.variants:
            for variant in product.variants:
                yield product, variant, int(variant.stock or 0)
        else:
            yield product, None, int(product.stock or 0)


def low_stock_report() -> list[dict]:
    alerts = []
    for product, variant, stock in _stock_units():
        threshold = low_stock_threshold(product)
        if stock > threshold:
            continue
        alerts.append({
            "product_id": product.id,
            "variant_id": variant.id if variant is not None else None,
            "name": product.name,
            "size": variant.size if variant is not None else None,
            "stock": stock,
            "threshold": threshold,
            "alert_level": STATUS_CRITICAL if stock == 0 else STATUS_LOW,
        })
    alerts.sort(key=lambda a: (a["stock"], a["name"]))
    return alerts


# =============================================================================
# RECONCILIATION
# =============================================================================

@dataclass
class ReconciliationReport:
    product_id: int
    variant_id: int | None
    current_stock: int
    replayed_stock: int | None
    movement_count: int
    breaks: list[dict] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.breaks

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "current_stock": self.current_stock,
            "replayed_stock": self.replayed_stock,
            "movement_count": self.movement_count,
            "consistent": self.is_consistent,
            "breaks": self.breaks,
        }


def reconcile(product_id: int, variant_id: int | None = None) -> ReconciliationReport:
    """
    Replay a unit's movement history against its stock column.

    The first movement's previous_stock is taken as the opening balance
    (stock loaded by catalog management before the ledger existed).
    """
    _, _, stock_row = _load_stock_unit(product_id, variant_id, lock=False)
    current = int(stock_row.stock or 0)

    q = db.session.query(StockMovement).filter(StockMovement.product_id == product_id)
    if variant_id is None:
        q = q.filter(StockMovement.variant_id.is_(None))
    else:
        q = q.filter(StockMovement.variant_id == variant_id)
    movements = q.order_by(StockMovement.created_at.asc(), StockMovement.id.asc()).all()

    report = ReconciliationReport(
        product_id=product_id,
        variant_id=variant_id,
        current_stock=current,
        replayed_stock=None,
        movement_count=len(movements),
    )
    if not movements:
        return report

    running = movements[0].previous_stock
    for movement in movements:
        if movement.previous_stock != running:
            report.breaks.append({
                "movement_id": movement.id,
                "kind": "chain",
                "expected_previous": running,
                "recorded_previous": movement.previous_stock,
            })
        if movement.previous_stock + movement.quantity_delta != movement.new_stock:
            report.breaks.append({
                "movement_id": movement.id,
                "kind": "arithmetic",
                "previous_stock": movement.previous_stock,
                "quantity_delta": movement.quantity_delta,
                "new_stock": movement.new_stock,
            })
        running = movement.new_stock

    report.replayed_stock = running
    if running != current:
        report.breaks.append({
            "movement_id": None,
            "kind": "drift",
            "replayed_stock": running,
            "current_stock": current,
        })
    return report


def reconcile_all() -> list[ReconciliationReport]:
    return [
        reconcile(product.id, variant.id if variant is not None else None)
        for product, variant, _ in _stock_units()
    ]
