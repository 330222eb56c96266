# Overview: Service-layer operations for payment; the order payment state machine.

"""
Payment State Machine

Order payment_status lifecycle:

    pending --> paid --> refunded
       |  \
       |   --> cancelled
       v         ^
     failed -----+

Inputs arrive from the gateway webhook (mark_paid / mark_failed), the order
owner (cancel, initiate_payment) and the admin console (apply_admin_status).
Every applied change:
- locks the order row first, so deliveries for one order are serialized
- writes an OrderStatusLog row
- publishes order_status_updated after commit (admin + owner)

cancel and refund put the reserved units back through the ledger as
compensating_restore movements, one per order item, in the same transaction
as the status change. mark_paid / mark_failed never touch stock.

Idempotency:
- A repeated webhook with a completed transaction_id and the same amount is
  a no-op success; the same id with a different amount is AmountMismatch.
- A repeated failure webhook for a transaction_id already recorded as failed
  is a no-op success, even after the order was cancelled.
- cancel on an already-cancelled order is a no-op success.
Each returns TransitionResult(changed=False).
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import (
    AmountMismatch,
    DuplicateTransaction,
    FulfillmentError,
    InvalidTransition,
    OrderNotFound,
)
from ..extensions import db
from ..models import Order, OrderItem, OrderStatusLog, PaymentTransaction, Product, ProductVariant
from ..models.inventory import MOVEMENT_COMPENSATING_RESTORE
from ..models.orders import (
    PAYMENT_METHOD_CASH,
    PAYMENT_METHOD_GCASH,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PAID,
    STATUS_PENDING,
    STATUS_REFUNDED,
    TXN_CANCELLED,
    TXN_COMPLETED,
    TXN_FAILED,
    TXN_PENDING,
    TXN_REFUNDED,
    VALID_PAYMENT_METHODS,
    VALID_PAYMENT_STATUSES,
)
from ..validation import CENT, ValidationError, coerce_amount, coerce_text
from storefront.time_utils import minutes_ago, utcnow
from .concurrency import begin_immediate, lock_for_update, lock_rows_in_order, run_with_retry
from .inventory_service import apply_movement
from .notification_service import notify_order_status


logger = logging.getLogger(__name__)


# =============================================================================
# TRANSITION TABLE
# =============================================================================

ALLOWED_TRANSITIONS = {
    STATUS_PENDING: frozenset({STATUS_PAID, STATUS_FAILED, STATUS_CANCELLED}),
    STATUS_PAID: frozenset({STATUS_REFUNDED}),
    STATUS_FAILED: frozenset({STATUS_CANCELLED}),
    STATUS_CANCELLED: frozenset(),
    STATUS_REFUNDED: frozenset(),
}

# Gateway statuses accepted by the webhook
GATEWAY_PAID_STATUSES = frozenset({"paid", "completed", "succeeded"})
GATEWAY_FAILED_STATUSES = frozenset({"failed"})


@dataclass
class TransitionResult:
    order: Order
    previous_status: str
    changed: bool

    def to_dict(self) -> dict:
        return {
            "order_id": self.order.id,
            "payment_status": self.order.payment_status,
            "previous_status": self.previous_status,
            "changed": self.changed,
        }


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _check_transition(order: Order, target: str) -> None:
    if not can_transition(order.payment_status, target):
        raise InvalidTransition(order.payment_status, target)


def _local_transaction_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(8)}"


def _lock_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise OrderNotFound(order_id)
    return order


def _load_order(order_id: int) -> Order:
    order = db.session.query(Order).filter_by(id=order_id).first()
    if order is None:
        raise OrderNotFound(order_id)
    return order


def _apply_transition(order: Order, target: str, *, actor_user_id: int | None, reason: str | None) -> str:
    """Flip status, log it, and schedule the post-commit notification."""
    _check_transition(order, target)
    previous = order.payment_status
    now = utcnow()
    order.payment_status = target
    order.updated_at = now
    db.session.add(OrderStatusLog(
        order_id=order.id,
        old_status=previous,
        new_status=target,
        reason=reason,
        actor_user_id=actor_user_id,
        created_at=now,
    ))
    notify_order_status(order, previous)
    return previous


def _restore_items(order: Order, *, actor_user_id: int | None, reason: str) -> None:
    """Return every item's units to stock, locking rows in ascending id order."""
    items = (
        db.session.query(OrderItem)
        .filter_by(order_id=order.id)
        .order_by(OrderItem.product_id.asc(), OrderItem.variant_id.asc(), OrderItem.id.asc())
        .all()
    )
    lock_rows_in_order(Product, [item.product_id for item in items])
    lock_rows_in_order(ProductVariant, [item.variant_id for item in items])
    for item in items:
        apply_movement(
            product_id=item.product_id,
            variant_id=item.variant_id,
            movement_type=MOVEMENT_COMPENSATING_RESTORE,
            quantity=item.quantity,
            reason=reason,
            actor_user_id=actor_user_id,
            order_id=order.id,
        )


def _close_pending_transactions(order: Order, *, except_id: int | None = None) -> int:
    pending = (
        db.session.query(PaymentTransaction)
        .filter_by(order_id=order.id, status=TXN_PENDING)
        .all()
    )
    closed = 0
    for txn in pending:
        if txn.id == except_id:
            continue
        txn.status = TXN_CANCELLED
        txn.updated_at = utcnow()
        closed += 1
    return closed


def _as_amount(value) -> Decimal:
    if isinstance(value, Decimal):
        return value.quantize(CENT)
    return coerce_amount(value)


# =============================================================================
# GATEWAY EVENTS
# =============================================================================

def mark_paid(
    order_id: int,
    transaction_id: str,
    amount,
    gateway_response: dict | None = None,
    *,
    actor_user_id: int | None = None,
    reason: str | None = None,
) -> TransitionResult:
    """
    Record a successful payment and move the order pending -> paid.

    Raises:
        OrderNotFound
        AmountMismatch: amount differs from the order total, or a replay of
            a completed transaction_id carries a different amount
        InvalidTransition: order is not pending
        TransactionConflict
    """
    transaction_id = coerce_text(transaction_id, "transaction_id", max_length=128, required=True)
    amount = _as_amount(amount)

    def _op():
        begin_immediate()
        order = _lock_order(order_id)

        txn = db.session.query(PaymentTransaction).filter_by(transaction_id=transaction_id).first()
        if txn is not None and txn.order_id != order.id:
            raise ValidationError(f"transaction_id {transaction_id} belongs to another order")

        if txn is not None and txn.status == TXN_COMPLETED:
            if Decimal(txn.amount).quantize(CENT) != amount:
                raise AmountMismatch(
                    f"Transaction {transaction_id} was already completed with a different amount",
                    expected=txn.amount,
                    received=amount,
                )
            raise DuplicateTransaction(transaction_id)

        expected = Decimal(order.total_amount).quantize(CENT)
        if amount != expected:
            raise AmountMismatch(
                f"Payment amount {amount} does not match order total {expected}",
                expected=expected,
                received=amount,
            )

        _check_transition(order, STATUS_PAID)

        now = utcnow()
        if txn is None:
            txn = PaymentTransaction(
                order_id=order.id,
                transaction_id=transaction_id,
                created_at=now,
            )
            db.session.add(txn)
        txn.amount = amount
        txn.status = TXN_COMPLETED
        txn.payment_method = txn.payment_method or order.payment_method
        txn.gateway_response = gateway_response
        txn.updated_at = now
        db.session.flush()
        _close_pending_transactions(order, except_id=txn.id)

        previous = _apply_transition(
            order,
            STATUS_PAID,
            actor_user_id=actor_user_id,
            reason=reason or f"Payment {transaction_id} received",
        )
        db.session.commit()
        return TransitionResult(order=order, previous_status=previous, changed=True)

    def _attempt():
        try:
            return run_with_retry(_op)
        except DuplicateTransaction:
            current_app.logger.info("Duplicate payment %s for order %s ignored", transaction_id, order_id)
            order = _load_order(order_id)
            return TransitionResult(order=order, previous_status=order.payment_status, changed=False)

    try:
        result = _attempt()
    except IntegrityError:
        # Lost an insert race on transaction_id; the rerun sees the winner's row.
        current_app.logger.warning("Concurrent delivery of payment %s, rechecking", transaction_id)
        result = _attempt()

    if result.changed:
        current_app.logger.info("Order %s paid (%s, %s)", order_id, transaction_id, amount)
    return result


def mark_failed(
    order_id: int,
    reason: str | None = None,
    transaction_id: str | None = None,
    amount=None,
    gateway_response: dict | None = None,
    *,
    actor_user_id: int | None = None,
) -> TransitionResult:
    """Move a pending order to failed. Stock stays reserved until cancel."""
    transaction_id = coerce_text(transaction_id, "transaction_id", max_length=128)
    if amount is not None:
        amount = _as_amount(amount)

    def _op():
        begin_immediate()
        order = _lock_order(order_id)

        txn = None
        if transaction_id is not None:
            txn = db.session.query(PaymentTransaction).filter_by(transaction_id=transaction_id).first()
            if txn is not None and txn.order_id != order.id:
                raise ValidationError(f"transaction_id {transaction_id} belongs to another order")
            # Redelivery of a recorded failure, whatever the order has moved on to
            if txn is not None and txn.status == TXN_FAILED:
                raise DuplicateTransaction(transaction_id)

        _check_transition(order, STATUS_FAILED)

        if transaction_id is not None:
            now = utcnow()
            if txn is None:
                txn = PaymentTransaction(
                    order_id=order.id,
                    transaction_id=transaction_id,
                    amount=amount if amount is not None else order.total_amount,
                    payment_method=order.payment_method,
                    created_at=now,
                )
                db.session.add(txn)
            txn.status = TXN_FAILED
            txn.gateway_response = gateway_response
            txn.updated_at = now

        previous = _apply_transition(
            order,
            STATUS_FAILED,
            actor_user_id=actor_user_id,
            reason=reason or "Payment failed",
        )
        db.session.commit()
        return TransitionResult(order=order, previous_status=previous, changed=True)

    try:
        result = run_with_retry(_op)
    except DuplicateTransaction:
        order = _load_order(order_id)
        return TransitionResult(order=order, previous_status=order.payment_status, changed=False)

    current_app.logger.info("Order %s payment failed: %s", order_id, reason)
    return result


# =============================================================================
# COMPENSATING TRANSITIONS
# =============================================================================

def cancel(order_id: int, actor_user_id: int | None, reason: str | None = None) -> TransitionResult:
    """
    Cancel a pending or failed order and put its units back on the shelf.

    Already cancelled -> no-op success.
    """
    def _op():
        begin_immediate()
        order = _lock_order(order_id)
        if order.payment_status == STATUS_CANCELLED:
            db.session.rollback()
            return TransitionResult(order=order, previous_status=STATUS_CANCELLED, changed=False)

        _check_transition(order, STATUS_CANCELLED)
        _close_pending_transactions(order)
        previous = _apply_transition(
            order,
            STATUS_CANCELLED,
            actor_user_id=actor_user_id,
            reason=reason or "Order cancelled",
        )
        _restore_items(order, actor_user_id=actor_user_id, reason=f"Order #{order.id} cancelled")
        db.session.commit()
        return TransitionResult(order=order, previous_status=previous, changed=True)

    result = run_with_retry(_op)
    if result.changed:
        current_app.logger.info("Order %s cancelled by %s", order_id, actor_user_id)
    return result


def refund(order_id: int, actor_user_id: int | None, reason: str | None = None) -> TransitionResult:
    """Refund a paid order: refunded transaction row, status flip, stock restored."""
    def _op():
        begin_immediate()
        order = _lock_order(order_id)
        _check_transition(order, STATUS_REFUNDED)

        completed = (
            db.session.query(PaymentTransaction)
            .filter_by(order_id=order.id, status=TXN_COMPLETED)
            .order_by(PaymentTransaction.id.desc())
            .first()
        )
        now = utcnow()
        db.session.add(PaymentTransaction(
            order_id=order.id,
            transaction_id=_local_transaction_id("refund"),
            amount=completed.amount if completed is not None else order.total_amount,
            status=TXN_REFUNDED,
            payment_method=order.payment_method,
            gateway_response={
                "refund_of": completed.transaction_id if completed is not None else None,
                "reason": reason,
            },
            created_at=now,
            updated_at=now,
        ))

        previous = _apply_transition(
            order,
            STATUS_REFUNDED,
            actor_user_id=actor_user_id,
            reason=reason or "Order refunded",
        )
        _restore_items(order, actor_user_id=actor_user_id, reason=f"Order #{order.id} refunded")
        db.session.commit()
        return TransitionResult(order=order, previous_status=previous, changed=True)

    result = run_with_retry(_op)
    current_app.logger.info("Order %s refunded by %s", order_id, actor_user_id)
    return result


# =============================================================================
# CUSTOMER AND ADMIN ENTRY POINTS
# =============================================================================

def initiate_payment(order_id: int, user_id: int, payment_method: str) -> PaymentTransaction | None:
    """
    Customer picks how a pending order will be paid.

    gcash: issues a tracking id (stored as payment_intent_id) and a pending
    transaction for the order total; the gateway later reports against it.
    cash: paid at the counter, so any open gateway attempt is closed.

    Returns the pending transaction, or None for cash.
    """
    if payment_method not in VALID_PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {list(VALID_PAYMENT_METHODS)}")

    def _op():
        begin_immediate()
        order = _lock_order(order_id)
        if order.user_id != user_id:
            raise OrderNotFound(order_id)
        if order.payment_status != STATUS_PENDING:
            raise InvalidTransition(order.payment_status, STATUS_PAID)

        _close_pending_transactions(order)
        now = utcnow()
        order.payment_method = payment_method
        order.updated_at = now

        txn = None
        if payment_method == PAYMENT_METHOD_GCASH:
            tracking_id = _local_transaction_id("gcash")
            txn = PaymentTransaction(
                order_id=order.id,
                transaction_id=tracking_id,
                amount=order.total_amount,
                status=TXN_PENDING,
                payment_method=PAYMENT_METHOD_GCASH,
                gateway_response={"tracking_id": tracking_id},
                created_at=now,
                updated_at=now,
            )
            db.session.add(txn)
            order.payment_intent_id = tracking_id
        elif payment_method == PAYMENT_METHOD_CASH:
            order.payment_intent_id = None

        db.session.commit()
        return txn

    txn = run_with_retry(_op)
    current_app.logger.info("Order %s payment method set to %s", order_id, payment_method)
    return txn


def apply_admin_status(order_id: int, status: str, actor_user_id: int, reason: str | None = None) -> TransitionResult:
    """
    Admin console status change, routed through the same transitions the
    gateway and customers use.
    """
    if status not in VALID_PAYMENT_STATUSES:
        raise ValidationError(f"status must be one of {list(VALID_PAYMENT_STATUSES)}")

    order = _load_order(order_id)
    if status == STATUS_PAID:
        return mark_paid(
            order_id,
            _local_transaction_id("counter"),
            Decimal(order.total_amount).quantize(CENT),
            {"source": "admin", "actor_user_id": actor_user_id},
            actor_user_id=actor_user_id,
            reason=reason or "Marked paid by admin",
        )
    if status == STATUS_FAILED:
        return mark_failed(order_id, reason or "Marked failed by admin", actor_user_id=actor_user_id)
    if status == STATUS_CANCELLED:
        return cancel(order_id, actor_user_id, reason)
    if status == STATUS_REFUNDED:
        return refund(order_id, actor_user_id, reason)
    raise InvalidTransition(order.payment_status, status)


def expire_pending_orders(older_than_minutes: int | None = None) -> dict:
    """
    Cancel pending orders older than the payment window.

    Each order is cancelled in its own transaction; one failure is logged
    and the sweep moves on.
    """
    if older_than_minutes is None:
        older_than_minutes = int(current_app.config.get("PENDING_ORDER_TTL_MINUTES", 1440))
    cutoff = minutes_ago(older_than_minutes)

    order_ids = [
        order_id
        for (order_id,) in db.session.query(Order.id)
        .filter(Order.payment_status == STATUS_PENDING, Order.created_at < cutoff)
        .order_by(Order.id.asc())
    ]
    db.session.rollback()

    expired, failed = [], []
    for order_id in order_ids:
        try:
            result = cancel(order_id, None, f"Not paid within {older_than_minutes} minutes")
        except FulfillmentError as exc:
            logger.warning("Could not expire order %s: %s", order_id, exc)
            failed.append(order_id)
            continue
        if result.changed:
            expired.append(order_id)

    if expired:
        logger.info("Expired %d pending order(s): %s", len(expired), expired)
    return {"expired": expired, "failed": failed, "cutoff_minutes": older_than_minutes}


def get_payment_status(order_id: int) -> dict:
    order = _load_order(order_id)
    transactions = (
        db.session.query(PaymentTransaction)
        .filter_by(order_id=order_id)
        .order_by(PaymentTransaction.created_at.asc(), PaymentTransaction.id.asc())
        .all()
    )
    return {
        "order_id": order.id,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "payment_intent_id": order.payment_intent_id,
        "total_amount": str(order.total_amount),
        "allowed_transitions": sorted(ALLOWED_TRANSITIONS.get(order.payment_status, ())),
        "transactions": [txn.to_dict() for txn in transactions],
    }
