"""
Stock ledger tests.

Verifies:
- Every stock change writes a movement with consistent snapshots
- Stock never goes negative
- Admin restock / physical count adjustments
- Stock level classification and low-stock reporting
- Reconciliation replays the log against the stock column
- Low-stock events fire once, on the threshold crossing, after commit
"""

from datetime import timedelta

import pytest

from storefront.errors import InvalidItem, NegativeStock
from storefront.extensions import db
from storefront.models import Product, ProductVariant, StockMovement
from storefront.models.inventory import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_COMPENSATING_RESTORE,
    MOVEMENT_STOCK_IN,
    MOVEMENT_STOCK_OUT,
)
from storefront.services import inventory_service
from storefront.services.inventory_service import (
    STATUS_CRITICAL,
    STATUS_GOOD,
    STATUS_LOW,
    STATUS_MEDIUM,
    stock_status,
)
from storefront.time_utils import utcnow
from storefront.validation import ValidationError


def _stock(model, pk):
    db.session.expire_all()
    return db.session.get(model, pk).stock


def _movements(product_id):
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.id.asc())
        .all()
    )


# =============================================================================
# APPLY MOVEMENT
# =============================================================================


class TestApplyMovement:

    def test_stock_out_updates_variant_and_records_snapshots(self, db_session, shirt, size_m, admin_user):
        movement = inventory_service.apply_movement(
            product_id=shirt.id,
            variant_id=size_m.id,
            movement_type=MOVEMENT_STOCK_OUT,
            quantity=2,
            reason="test",
            actor_user_id=admin_user.id,
        )
        db_session.commit()

        assert movement.quantity == 2
        assert movement.quantity_delta == -2
        assert movement.previous_stock == 5
        assert movement.new_stock == 3
        assert movement.actor_user_id == admin_user.id
        assert _stock(ProductVariant, size_m.id) == 3

    def test_stock_in_on_plain_product(self, db_session, mug):
        inventory_service.apply_movement(
            product_id=mug.id,
            variant_id=None,
            movement_type=MOVEMENT_STOCK_IN,
            quantity=4,
            reason="delivery",
            actor_user_id=None,
        )
        db_session.commit()

        assert _stock(Product, mug.id) == 14

    def test_compensating_restore_adds(self, db_session, mug):
        movement = inventory_service.apply_movement(
            product_id=mug.id,
            variant_id=None,
            movement_type=MOVEMENT_COMPENSATING_RESTORE,
            quantity=3,
            reason="cancel",
            actor_user_id=None,
        )
        db_session.commit()

        assert movement.quantity_delta == 3
        assert _stock(Product, mug.id) == 13

    def test_adjustment_keeps_caller_sign(self, db_session, mug):
        movement = inventory_service.apply_movement(
            product_id=mug.id,
            variant_id=None,
            movement_type=MOVEMENT_ADJUSTMENT,
            quantity=-4,
            reason="damaged",
            actor_user_id=None,
        )
        db_session.commit()

        assert movement.quantity == 4
        assert movement.quantity_delta == -4
        assert _stock(Product, mug.id) == 6

    def test_oversell_is_refused(self, db_session, shirt, size_m):
        with pytest.raises(NegativeStock) as exc_info:
            inventory_service.apply_movement(
                product_id=shirt.id,
                variant_id=size_m.id,
                movement_type=MOVEMENT_STOCK_OUT,
                quantity=6,
                reason="too many",
                actor_user_id=None,
            )
        db_session.rollback()

        assert exc_info.value.details["previous_stock"] == 5
        assert exc_info.value.details["quantity_delta"] == -6
        assert _stock(ProductVariant, size_m.id) == 5
        assert _movements(shirt.id) == []

    @pytest.mark.parametrize(
        "movement_type,quantity",
        [
            (MOVEMENT_STOCK_OUT, 0),
            (MOVEMENT_STOCK_OUT, -1),
            (MOVEMENT_STOCK_IN, True),
            (MOVEMENT_STOCK_IN, 1.5),
            (MOVEMENT_ADJUSTMENT, 0),
            ("teleport", 1),
        ],
    )
    def test_rejects_bad_type_or_quantity(self, db_session, mug, movement_type, quantity):
        with pytest.raises(ValidationError):
            inventory_service.apply_movement(
                product_id=mug.id,
                variant_id=None,
                movement_type=movement_type,
                quantity=quantity,
                reason=None,
                actor_user_id=None,
            )

    def test_sized_product_requires_variant(self, db_session, shirt):
        with pytest.raises(InvalidItem):
            inventory_service.apply_movement(
                product_id=shirt.id,
                variant_id=None,
                movement_type=MOVEMENT_STOCK_IN,
                quantity=1,
                reason=None,
                actor_user_id=None,
            )

    def test_variant_must_belong_to_product(self, db_session, shirt, size_m, mug):
        with pytest.raises(InvalidItem):
            inventory_service.apply_movement(
                product_id=mug.id,
                variant_id=size_m.id,
                movement_type=MOVEMENT_STOCK_IN,
                quantity=1,
                reason=None,
                actor_user_id=None,
            )

    def test_unknown_product(self, db_session):
        with pytest.raises(InvalidItem):
            inventory_service.apply_movement(
                product_id=999999,
                variant_id=None,
                movement_type=MOVEMENT_STOCK_IN,
                quantity=1,
                reason=None,
                actor_user_id=None,
            )


# =============================================================================
# ADMIN ENTRY POINTS
# =============================================================================


class TestRestockAndAdjust:

    def test_restock_commits_stock_in(self, db_session, shirt, size_m, admin_user):
        movement = inventory_service.restock(
            product_id=shirt.id,
            variant_id=size_m.id,
            quantity=10,
            reason=None,
            actor_user_id=admin_user.id,
        )

        assert movement.movement_type == MOVEMENT_STOCK_IN
        assert movement.reason == "restock"
        assert _stock(ProductVariant, size_m.id) == 15

    def test_restock_rejects_non_positive(self, db_session, mug):
        with pytest.raises(ValidationError):
            inventory_service.restock(product_id=mug.id, variant_id=None, quantity=0, reason=None, actor_user_id=None)
        assert _stock(Product, mug.id) == 10

    def test_adjust_to_count_writes_difference(self, db_session, mug, admin_user):
        movement = inventory_service.adjust_to_count(
            product_id=mug.id,
            variant_id=None,
            physical_count=7,
            reason="cycle count",
            actor_user_id=admin_user.id,
        )

        assert movement.movement_type == MOVEMENT_ADJUSTMENT
        assert movement.quantity_delta == -3
        assert movement.previous_stock == 10
        assert movement.new_stock == 7
        assert _stock(Product, mug.id) == 7

    def test_adjust_to_matching_count_is_noop(self, db_session, mug):
        movement = inventory_service.adjust_to_count(
            product_id=mug.id,
            variant_id=None,
            physical_count=10,
            reason=None,
            actor_user_id=None,
        )

        assert movement is None
        assert _movements(mug.id) == []

    def test_adjust_rejects_negative_count(self, db_session, mug):
        with pytest.raises(ValidationError):
            inventory_service.adjust_to_count(
                product_id=mug.id,
                variant_id=None,
                physical_count=-1,
                reason=None,
                actor_user_id=None,
            )


# =============================================================================
# READS
# =============================================================================


class TestStockLevels:

    @pytest.mark.parametrize(
        "stock,expected",
        [
            (0, STATUS_CRITICAL),
            (1, STATUS_LOW),
            (5, STATUS_LOW),
            (6, STATUS_MEDIUM),
            (10, STATUS_MEDIUM),
            (11, STATUS_GOOD),
        ],
    )
    def test_stock_status_bands(self, stock, expected):
        assert stock_status(stock, 5) == expected

    def test_get_stock_level_for_variant(self, db_session, shirt, size_m):
        level = inventory_service.get_stock_level(shirt.id, size_m.id)

        assert level["stock"] == 5
        assert level["size"] == "M"
        assert level["threshold"] == 5
        assert level["status"] == STATUS_LOW

    def test_reorder_point_overrides_default_threshold(self, db_session, mug):
        mug.reorder_point = 2
        db_session.commit()

        level = inventory_service.get_stock_level(mug.id)

        assert level["threshold"] == 2
        assert level["status"] == STATUS_GOOD

    def test_low_stock_report_lists_units_at_or_below_threshold(self, db_session, shirt, size_m, size_xl, mug):
        inventory_service.adjust_to_count(
            product_id=mug.id, variant_id=None, physical_count=0, reason=None, actor_user_id=None,
        )

        alerts = inventory_service.low_stock_report()
        keys = [(a["product_id"], a["variant_id"]) for a in alerts]

        assert (mug.id, None) in keys
        assert (shirt.id, size_m.id) in keys
        assert (shirt.id, size_xl.id) not in keys
        assert alerts[0]["product_id"] == mug.id
        assert alerts[0]["alert_level"] == STATUS_CRITICAL

    def test_list_movements_filters_and_paginates(self, db_session, shirt, size_m, mug):
        for _ in range(3):
            inventory_service.restock(product_id=mug.id, variant_id=None, quantity=1, reason=None, actor_user_id=None)
        inventory_service.restock(product_id=shirt.id, variant_id=size_m.id, quantity=2, reason=None, actor_user_id=None)

        page = inventory_service.list_movements(product_id=mug.id, page=1, limit=2)

        assert page["pagination"]["total"] == 3
        assert page["pagination"]["pages"] == 2
        assert len(page["movements"]) == 2
        assert page["movements"][0]["id"] > page["movements"][1]["id"]

        by_type = inventory_service.list_movements(movement_type=MOVEMENT_STOCK_IN)
        assert by_type["pagination"]["total"] == 4

        future = inventory_service.list_movements(start=utcnow() + timedelta(days=1))
        assert future["pagination"]["total"] == 0

    def test_list_movements_rejects_unknown_type(self, db_session):
        with pytest.raises(ValidationError):
            inventory_service.list_movements(movement_type="bogus")

    def test_movement_summary_groups_by_type(self, db_session, mug):
        inventory_service.restock(product_id=mug.id, variant_id=None, quantity=5, reason=None, actor_user_id=None)
        inventory_service.restock(product_id=mug.id, variant_id=None, quantity=3, reason=None, actor_user_id=None)
        inventory_service.adjust_to_count(product_id=mug.id, variant_id=None, physical_count=15, reason=None, actor_user_id=None)

        summary = {row["movement_type"]: row for row in inventory_service.movement_summary(days=7)["summary"]}

        assert summary[MOVEMENT_STOCK_IN]["movement_count"] == 2
        assert summary[MOVEMENT_STOCK_IN]["total_quantity"] == 8
        assert summary[MOVEMENT_ADJUSTMENT]["net_change"] == -3


# =============================================================================
# RECONCILIATION
# =============================================================================


class TestReconcile:

    def test_unit_without_movements_is_consistent(self, db_session, mug):
        report = inventory_service.reconcile(mug.id)

        assert report.is_consistent
        assert report.movement_count == 0
        assert report.replayed_stock is None

    def test_replay_matches_after_mixed_movements(self, db_session, shirt, size_m):
        inventory_service.restock(product_id=shirt.id, variant_id=size_m.id, quantity=4, reason=None, actor_user_id=None)
        inventory_service.adjust_to_count(product_id=shirt.id, variant_id=size_m.id, physical_count=6, reason=None, actor_user_id=None)
        inventory_service.apply_movement(
            product_id=shirt.id,
            variant_id=size_m.id,
            movement_type=MOVEMENT_STOCK_OUT,
            quantity=1,
            reason=None,
            actor_user_id=None,
        )
        db_session.commit()

        report = inventory_service.reconcile(shirt.id, size_m.id)

        assert report.is_consistent
        assert report.movement_count == 3
        assert report.replayed_stock == 5 == report.current_stock

    def test_direct_column_write_is_reported_as_drift(self, db_session, mug):
        inventory_service.restock(product_id=mug.id, variant_id=None, quantity=2, reason=None, actor_user_id=None)
        product = db_session.get(Product, mug.id)
        product.stock = 99
        db_session.commit()

        report = inventory_service.reconcile(mug.id)

        assert not report.is_consistent
        assert report.breaks[-1]["kind"] == "drift"
        assert report.breaks[-1]["replayed_stock"] == 12
        assert report.breaks[-1]["current_stock"] == 99

    def test_reconcile_all_covers_every_unit(self, db_session, shirt, mug):
        reports = inventory_service.reconcile_all()

        assert len(reports) == 3
        assert all(r.is_consistent for r in reports)


# =============================================================================
# LOW STOCK EVENTS
# =============================================================================


class TestLowStockEvents:

    def test_crossing_threshold_publishes_once_after_commit(self, db_session, mug, admin_events):
        inventory_service.apply_movement(
            product_id=mug.id,
            variant_id=None,
            movement_type=MOVEMENT_STOCK_OUT,
            quantity=6,
            reason=None,
            actor_user_id=None,
        )
        assert admin_events.drain() == []

        db_session.commit()
        events = admin_events.drain()

        assert len(events) == 1
        assert events[0]["event"] == "low-stock-alert"
        assert events[0]["productId"] == mug.id
        assert events[0]["stock"] == 4

        inventory_service.apply_movement(
            product_id=mug.id,
            variant_id=None,
            movement_type=MOVEMENT_STOCK_OUT,
            quantity=1,
            reason=None,
            actor_user_id=None,
        )
        db_session.commit()

        assert admin_events.drain() == []

    def test_rolled_back_movement_publishes_nothing(self, db_session, mug, admin_events):
        inventory_service.apply_movement(
            product_id=mug.id,
            variant_id=None,
            movement_type=MOVEMENT_STOCK_OUT,
            quantity=8,
            reason=None,
            actor_user_id=None,
        )
        db_session.rollback()

        assert admin_events.drain() == []
        assert _stock(Product, mug.id) == 10
