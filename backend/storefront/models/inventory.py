from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


MOVEMENT_STOCK_IN = "stock_in"
MOVEMENT_STOCK_OUT = "stock_out"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_COMPENSATING_RESTORE = "compensating_restore"

VALID_MOVEMENT_TYPES = (
    MOVEMENT_STOCK_IN,
    MOVEMENT_STOCK_OUT,
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_COMPENSATING_RESTORE,
)


class StockMovement(db.Model):
    """
    Append-only stock ledger entry.

    IMMUTABLE: rows are never updated or deleted.

    `quantity` is the magnitude of the movement; `quantity_delta` is the
    signed change applied to stock. For any product/variant, walking the rows
    in (created_at, id) order must satisfy:
        previous_stock[n] == new_stock[n-1]
        new_stock[n] == previous_stock[n] + quantity_delta[n]
    and the last new_stock equals the current stock column.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_unit_created", "product_id", "variant_id", "created_at"),
        db.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        db.CheckConstraint("new_stock >= 0", name="ck_stock_movements_new_stock_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_sizes.id"), nullable=True, index=True)

    movement_type = db.Column(db.String(32), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    quantity_delta = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)

    # Set for order consumption and its compensation
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    product = db.relationship("Product")
    variant = db.relationship("ProductVariant")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "quantity_delta": self.quantity_delta,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "reason": self.reason,
            "order_id": self.order_id,
            "actor_user_id": self.actor_user_id,
            "created_at": to_utc_z(self.created_at),
        }
