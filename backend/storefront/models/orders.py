from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


PAYMENT_METHOD_CASH = "cash"
PAYMENT_METHOD_GCASH = "gcash"
VALID_PAYMENT_METHODS = (PAYMENT_METHOD_CASH, PAYMENT_METHOD_GCASH)

STATUS_PENDING = "pending"
STATUS_PAID = "paid"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
STATUS_REFUNDED = "refunded"
VALID_PAYMENT_STATUSES = (
    STATUS_PENDING,
    STATUS_PAID,
    STATUS_FAILED,
    STATUS_CANCELLED,
    STATUS_REFUNDED,
)

TXN_PENDING = "pending"
TXN_COMPLETED = "completed"
TXN_FAILED = "failed"
TXN_REFUNDED = "refunded"
TXN_CANCELLED = "cancelled"


class Order(db.Model):
    """
    Checkout result.

    total_amount is computed by the server from snapshotted line prices and
    never accepted from the client. After creation only payment_status and
    payment metadata (payment_intent_id, updated_at) change.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "payment_status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    total_amount = db.Column(db.Numeric(10, 2), nullable=False)
    payment_method = db.Column(db.String(32), nullable=False, default=PAYMENT_METHOD_CASH)
    payment_status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING, index=True)

    # Gateway correlation key (e.g. GCash tracking id)
    payment_intent_id = db.Column(db.String(128), nullable=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    user = db.relationship("User", backref=db.backref("orders", lazy=True))
    items = db.relationship("OrderItem", back_populates="order", lazy=True, order_by="OrderItem.id")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "total_amount": str(self.total_amount),
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "payment_intent_id": self.payment_intent_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Line item; created with its order and never updated."""
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_sizes.id"), nullable=True)

    # Snapshots taken at order time
    product_name = db.Column(db.String(200), nullable=False)
    size = db.Column(db.String(20), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(10, 2), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="items")

    @property
    def subtotal(self):
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "product_name": self.product_name,
            "size": self.size,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "subtotal": str(self.subtotal),
        }


class OrderStatusLog(db.Model):
    """Append-only history of payment status changes (old_status is NULL at creation)."""
    __tablename__ = "order_status_logs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    old_status = db.Column(db.String(16), nullable=True)
    new_status = db.Column(db.String(16), nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "old_status": self.old_status,
            "new_status": self.new_status,
            "reason": self.reason,
            "actor_user_id": self.actor_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class PaymentTransaction(db.Model):
    """
    Gateway (or counter) payment attempts for an order.

    One order can have many rows (retries, refunds), but at most one row in
    status 'completed'. transaction_id is the idempotency key for webhook
    redelivery.
    """
    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.UniqueConstraint("transaction_id", name="uq_payment_transactions_transaction_id"),
        db.Index("ix_payment_txns_order_status", "order_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    transaction_id = db.Column(db.String(128), nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=TXN_PENDING, index=True)
    payment_method = db.Column(db.String(32), nullable=True)

    # Opaque gateway payload, stored as received
    gateway_response = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    order = db.relationship("Order", backref=db.backref("payment_transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "transaction_id": self.transaction_id,
            "amount": str(self.amount),
            "status": self.status,
            "payment_method": self.payment_method,
            "gateway_response": self.gateway_response,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
