# Overview: Post-commit fanout of order/stock events to admin and per-user channels.

"""
Notification fanout.

Services never talk to a transport. Inside their transaction they call
notify(...), which only queues the event on the SQLAlchemy session. When that
session commits, the after_commit listener
  1. stores the bell rows (Notification) in a separate short transaction,
     logging and dropping any failure, then
  2. hands every queued event to NotificationFanout.publish.
On rollback the queue is dropped. Nothing is ever published for a transaction
that did not commit, and a notification that cannot be stored never undoes
the order or payment change that caused it.

The hub lives in the worker process: subscribers only receive events raised
by the same process, so the stream endpoint assumes a single-process
(threaded) server.

Delivery is at-most-once per connected subscriber: each subscriber owns a
bounded queue and publish uses non-blocking puts, so a slow or vanished
client loses events instead of stalling a checkout. Clients reconcile by
re-fetching; envelopes carry identifiers only.
"""

from __future__ import annotations

import logging
import queue
import threading

from flask import current_app
from sqlalchemy import event, or_
from sqlalchemy.orm import Session

from ..extensions import db
from ..models import Notification, User
from storefront.time_utils import utcnow, to_utc_z


logger = logging.getLogger(__name__)


SCOPE_ADMIN = "admin"

EVENT_NEW_ORDER = "new_order"
EVENT_ORDER_STATUS_UPDATED = "order_status_updated"
EVENT_LOW_STOCK = "low_stock"

# Wire names pushed to clients, per (scope kind, event type)
ADMIN_EVENT_NAMES = {
    EVENT_NEW_ORDER: "new-order-alert",
    EVENT_ORDER_STATUS_UPDATED: "admin-order-updated",
    EVENT_LOW_STOCK: "low-stock-alert",
}
USER_EVENT_NAME = "user-data-refresh"

_PENDING_KEY = "storefront.pending_notifications"

EXTENSION_KEY = "notification_fanout"


def user_scope(user_id: int) -> str:
    return f"user:{user_id}"


def scopes_for_user(user: User) -> list[str]:
    scopes = [user_scope(user.id)]
    if user.is_admin:
        scopes.append(SCOPE_ADMIN)
    return scopes


def build_envelope(scope: str, event_type: str, payload: dict) -> dict:
    if scope == SCOPE_ADMIN:
        name = ADMIN_EVENT_NAMES.get(event_type, event_type)
    else:
        name = USER_EVENT_NAME
    envelope = {"event": name, "type": event_type}
    envelope.update(payload)
    envelope["timestamp"] = to_utc_z(utcnow())
    return envelope


class Subscription:
    """One connected client session listening on a fixed set of scopes."""

    def __init__(self, scopes, maxsize: int):
        self.scopes = frozenset(scopes)
        self.queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def get(self, timeout: float | None = None) -> dict | None:
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[dict]:
        events = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events


class NotificationFanout:
    """In-process publish/subscribe hub keyed by scope."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: dict[str, set[Subscription]] = {}

    def subscribe(self, *scopes: str) -> Subscription:
        subscription = Subscription(scopes, self.queue_size)
        with self._lock:
            for scope in subscription.scopes:
                self._subscribers.setdefault(scope, set()).add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            for scope in subscription.scopes:
                members = self._subscribers.get(scope)
                if members is None:
                    continue
                members.discard(subscription)
                if not members:
                    del self._subscribers[scope]

    def subscriber_count(self, scope: str) -> int:
        with self._lock:
            return len(self._subscribers.get(scope, ()))

    def publish(self, scope: str, event_type: str, payload: dict) -> int:
        """
        Deliver one event to every subscriber of `scope`.

        Never raises. Returns how many subscribers received it.
        """
        try:
            envelope = build_envelope(scope, event_type, payload)
            with self._lock:
                targets = list(self._subscribers.get(scope, ()))
            delivered = 0
            for subscription in targets:
                try:
                    subscription.queue.put_nowait(envelope)
                    delivered += 1
                except queue.Full:
                    subscription.dropped += 1
                    logger.warning("Dropped %s event for slow subscriber on %s", envelope["event"], scope)
            return delivered
        except Exception:
            logger.exception("Failed to publish %s event to %s", event_type, scope)
            return 0


def init_app(app) -> NotificationFanout:
    fanout = NotificationFanout(queue_size=app.config.get("NOTIFICATION_QUEUE_SIZE", 100))
    app.extensions[EXTENSION_KEY] = fanout
    return fanout


def get_fanout() -> NotificationFanout:
    return current_app.extensions[EXTENSION_KEY]


# =============================================================================
# TRANSACTION HOOKS
# =============================================================================

@event.listens_for(Session, "after_commit")
def _publish_pending_notifications(session):
    pending = session.info.pop(_PENDING_KEY, None)
    if not pending:
        return
    rows_by_engine: dict = {}
    for _, engine, _, _, _, row in pending:
        if row is not None:
            rows_by_engine.setdefault(engine, []).append(row)
    for engine, rows in rows_by_engine.items():
        _store_notifications(engine, rows)
    for fanout, _, scope, event_type, payload, _ in pending:
        fanout.publish(scope, event_type, payload)


@event.listens_for(Session, "after_rollback")
def _discard_pending_notifications(session):
    session.info.pop(_PENDING_KEY, None)


def _store_notifications(engine, rows: list[dict]) -> int:
    """
    Write bell rows in their own short transaction, after the business
    transaction has committed. Failures are logged and dropped.
    """
    try:
        with engine.begin() as connection:
            connection.execute(Notification.__table__.insert(), rows)
        return len(rows)
    except Exception:
        logger.exception("Failed to store %d notification(s)", len(rows))
        return 0


def notify(
    scope: str,
    event_type: str,
    payload: dict,
    *,
    title: str | None = None,
    message: str | None = None,
    persist: bool = True,
) -> None:
    """
    Queue an event on the current transaction.

    Call from inside the transaction that causes the event. Nothing is
    written here: after commit the bell row (when persist) is stored in a
    separate transaction and the event is published.
    """
    row = None
    if persist:
        user_id = None
        if scope.startswith("user:"):
            user_id = int(scope.split(":", 1)[1])
        row = {
            "recipient_scope": scope,
            "user_id": user_id,
            "type": event_type,
            "title": title,
            "message": message,
            "payload": dict(payload),
            "is_read": False,
            "created_at": utcnow(),
        }
    db.session().info.setdefault(_PENDING_KEY, []).append(
        (get_fanout(), db.engine, scope, event_type, dict(payload), row)
    )


# =============================================================================
# DOMAIN EVENTS
# =============================================================================

def notify_new_order(order) -> None:
    payload = {"orderId": order.id, "status": order.payment_status}
    notify(
        SCOPE_ADMIN,
        EVENT_NEW_ORDER,
        payload,
        title="New Order",
        message=f"Order #{order.id} was placed ({order.total_amount}).",
    )
    notify(
        user_scope(order.user_id),
        EVENT_NEW_ORDER,
        payload,
        title="Order Placed",
        message=f"Your order #{order.id} has been placed.",
    )


def notify_order_status(order, previous_status: str) -> None:
    payload = {"orderId": order.id, "status": order.payment_status, "previousStatus": previous_status}
    notify(
        SCOPE_ADMIN,
        EVENT_ORDER_STATUS_UPDATED,
        payload,
        title="Order Updated",
        message=f"Order #{order.id} changed from {previous_status} to {order.payment_status}.",
    )
    notify(
        user_scope(order.user_id),
        EVENT_ORDER_STATUS_UPDATED,
        payload,
        title="Order Status Updated",
        message=f"Your order #{order.id} is now {order.payment_status}.",
    )


def notify_low_stock(product, variant, new_stock: int, threshold: int) -> None:
    payload = {
        "productId": product.id,
        "variantId": variant.id if variant is not None else None,
        "stock": new_stock,
    }
    label = product.name if variant is None else f"{product.name} ({variant.size})"
    notify(
        SCOPE_ADMIN,
        EVENT_LOW_STOCK,
        payload,
        title="Low Stock",
        message=f"{label} is down to {new_stock} (threshold {threshold}).",
    )


# =============================================================================
# NOTIFICATION BELL
# =============================================================================

def _visible_to(user: User):
    return or_(*[Notification.recipient_scope == scope for scope in scopes_for_user(user)])


def list_notifications(user: User, *, page: int = 1, limit: int = 20, unread_only: bool = False) -> dict:
    page = max(1, page)
    limit = max(1, min(limit, 100))
    q = db.session.query(Notification).filter(_visible_to(user))
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    total = q.count()
    rows = (
        q.order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "notifications": [n.to_dict() for n in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


def unread_count(user: User) -> int:
    return (
        db.session.query(Notification)
        .filter(_visible_to(user), Notification.is_read.is_(False))
        .count()
    )


def mark_read(user: User, notification_id: int) -> Notification | None:
    notification = (
        db.session.query(Notification)
        .filter(Notification.id == notification_id, _visible_to(user))
        .first()
    )
    if notification is None:
        return None
    if not notification.is_read:
        notification.is_read = True
        db.session.commit()
    return notification
