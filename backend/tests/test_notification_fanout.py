"""
Notification fanout tests.

Verifies:
- Envelopes carry the per-scope wire names
- Publishing never blocks or raises (no subscribers, full queues, bad payloads)
- Events queued by notify() are published on commit and dropped on rollback
- A bell row that cannot be stored never undoes the order change
- The notification bell only shows rows in the caller's scopes
"""

import logging

import pytest

from storefront.extensions import db
from storefront.models import Notification, Order, ProductVariant, StockMovement
from storefront.services import notification_service, order_service, payment_service
from storefront.services.notification_service import (
    EVENT_LOW_STOCK,
    EVENT_NEW_ORDER,
    EVENT_ORDER_STATUS_UPDATED,
    SCOPE_ADMIN,
    NotificationFanout,
    build_envelope,
    user_scope,
)


class TestEnvelope:

    @pytest.mark.parametrize(
        "event_type,name",
        [
            (EVENT_NEW_ORDER, "new-order-alert"),
            (EVENT_ORDER_STATUS_UPDATED, "admin-order-updated"),
            (EVENT_LOW_STOCK, "low-stock-alert"),
        ],
    )
    def test_admin_event_names(self, event_type, name):
        envelope = build_envelope(SCOPE_ADMIN, event_type, {"orderId": 1})

        assert envelope["event"] == name
        assert envelope["type"] == event_type
        assert envelope["orderId"] == 1
        assert envelope["timestamp"].endswith("Z")

    def test_user_events_share_one_name(self):
        envelope = build_envelope(user_scope(7), EVENT_ORDER_STATUS_UPDATED, {"orderId": 3})

        assert envelope["event"] == "user-data-refresh"
        assert envelope["type"] == EVENT_ORDER_STATUS_UPDATED


class TestFanout:

    def test_publish_without_subscribers(self):
        fanout = NotificationFanout()

        assert fanout.publish(SCOPE_ADMIN, EVENT_NEW_ORDER, {"orderId": 1}) == 0

    def test_delivers_to_matching_scope_only(self):
        fanout = NotificationFanout()
        admin = fanout.subscribe(SCOPE_ADMIN)
        alice = fanout.subscribe(user_scope(1))
        bob = fanout.subscribe(user_scope(2))

        assert fanout.publish(user_scope(1), EVENT_NEW_ORDER, {"orderId": 5}) == 1

        assert admin.drain() == []
        assert [e["orderId"] for e in alice.drain()] == [5]
        assert bob.drain() == []

    def test_admin_session_listens_on_both_scopes(self):
        fanout = NotificationFanout()
        session = fanout.subscribe(SCOPE_ADMIN, user_scope(1))

        fanout.publish(SCOPE_ADMIN, EVENT_NEW_ORDER, {"orderId": 5})
        fanout.publish(user_scope(1), EVENT_NEW_ORDER, {"orderId": 5})

        assert [e["event"] for e in session.drain()] == ["new-order-alert", "user-data-refresh"]

    def test_full_queue_drops_instead_of_blocking(self):
        fanout = NotificationFanout(queue_size=2)
        slow = fanout.subscribe(SCOPE_ADMIN)
        fast = fanout.subscribe(SCOPE_ADMIN)

        for order_id in range(3):
            fanout.publish(SCOPE_ADMIN, EVENT_NEW_ORDER, {"orderId": order_id})
            fast.drain()

        assert slow.dropped == 1
        assert [e["orderId"] for e in slow.drain()] == [0, 1]
        assert fast.dropped == 0

    def test_unsubscribe_stops_delivery(self):
        fanout = NotificationFanout()
        subscription = fanout.subscribe(SCOPE_ADMIN)
        fanout.unsubscribe(subscription)

        assert fanout.subscriber_count(SCOPE_ADMIN) == 0
        assert fanout.publish(SCOPE_ADMIN, EVENT_NEW_ORDER, {"orderId": 1}) == 0

    def test_bad_payload_is_swallowed(self):
        fanout = NotificationFanout()
        fanout.subscribe(SCOPE_ADMIN)

        assert fanout.publish(SCOPE_ADMIN, EVENT_NEW_ORDER, None) == 0

    def test_get_times_out_with_none(self):
        fanout = NotificationFanout()
        subscription = fanout.subscribe(SCOPE_ADMIN)

        assert subscription.get(timeout=0.01) is None


class TestTransactionalNotify:

    def test_published_on_commit(self, db_session, admin_events):
        notification_service.notify(SCOPE_ADMIN, EVENT_NEW_ORDER, {"orderId": 11}, title="New Order")
        assert admin_events.drain() == []

        db_session.commit()

        events = admin_events.drain()
        assert [e["orderId"] for e in events] == [11]
        row = db_session.query(Notification).one()
        assert row.recipient_scope == SCOPE_ADMIN
        assert row.user_id is None
        assert row.payload == {"orderId": 11}

    def test_dropped_on_rollback(self, db_session, admin_events):
        notification_service.notify(SCOPE_ADMIN, EVENT_NEW_ORDER, {"orderId": 11})

        db_session.rollback()
        db_session.commit()

        assert admin_events.drain() == []
        assert db_session.query(Notification).count() == 0

    def test_user_scope_sets_user_id(self, db_session, student, student_events):
        notification_service.notify(user_scope(student.id), EVENT_NEW_ORDER, {"orderId": 3})
        db_session.commit()

        assert db_session.query(Notification).one().user_id == student.id
        assert len(student_events.drain()) == 1

    def test_persist_false_only_publishes(self, db_session, admin_events):
        notification_service.notify(SCOPE_ADMIN, EVENT_LOW_STOCK, {"productId": 1}, persist=False)
        db_session.commit()

        assert len(admin_events.drain()) == 1
        assert db_session.query(Notification).count() == 0

    def test_order_commits_when_bell_cannot_be_stored(
        self, db_session, student, shirt, size_m, admin_events, student_events, caplog,
    ):
        db_session.commit()
        Notification.__table__.drop(db.engine)
        try:
            with caplog.at_level(logging.ERROR, logger=notification_service.__name__):
                order = order_service.create_order(
                    student.id,
                    [{"product_id": shirt.id, "variant_id": size_m.id, "quantity": 2}],
                    "cash",
                )
                paid = payment_service.mark_paid(order.id, "gcash_tx_1", "900.00")
        finally:
            db_session.rollback()
            Notification.__table__.create(db.engine)

        assert paid.changed
        db_session.expire_all()
        assert db_session.get(Order, order.id).payment_status == "paid"
        assert db_session.get(ProductVariant, size_m.id).stock == 3
        assert db_session.query(StockMovement).filter_by(order_id=order.id).count() == 1
        assert "new-order-alert" in [e["event"] for e in admin_events.drain()]
        assert [e["status"] for e in student_events.drain()][-1:] == ["paid"]
        assert "Failed to store" in caplog.text


class TestNotificationBell:

    @pytest.fixture
    def rows(self, db_session, student, other_student):
        notification_service.notify(SCOPE_ADMIN, EVENT_NEW_ORDER, {"orderId": 1})
        notification_service.notify(user_scope(student.id), EVENT_NEW_ORDER, {"orderId": 1})
        notification_service.notify(user_scope(other_student.id), EVENT_NEW_ORDER, {"orderId": 2})
        db_session.commit()

    def test_student_sees_own_rows(self, db_session, rows, student):
        page = notification_service.list_notifications(student)

        assert page["pagination"]["total"] == 1
        assert page["notifications"][0]["recipient_scope"] == user_scope(student.id)

    def test_admin_sees_admin_rows(self, db_session, rows, admin_user):
        page = notification_service.list_notifications(admin_user)

        assert [n["recipient_scope"] for n in page["notifications"]] == [SCOPE_ADMIN]

    def test_mark_read_is_scoped(self, db_session, rows, student, other_student):
        theirs = db_session.query(Notification).filter_by(user_id=other_student.id).one()
        mine = db_session.query(Notification).filter_by(user_id=student.id).one()

        assert notification_service.mark_read(student, theirs.id) is None
        assert notification_service.unread_count(student) == 1

        assert notification_service.mark_read(student, mine.id).is_read
        assert notification_service.unread_count(student) == 0
        assert notification_service.list_notifications(student, unread_only=True)["pagination"]["total"] == 0
