"""Tests for dashboard aggregates: sales, low stock, lost demand and commissions."""

from datetime import datetime
from decimal import Decimal

import pytest

from fulfillment import crud, dashboard, models, schemas, workflow
from fulfillment.errors import ValidationError

NOW = datetime(2026, 3, 10, 15, 0, 0)


def _backdate(db, order_id, created_at):
    db.query(models.Order).filter(models.Order.id == order_id).update(
        {models.Order.created_at: created_at}, synchronize_session=False,
    )
    db.commit()


def _lost(db, text):
    crud.record_lost_demand(db, schemas.LostDemandCreate(search_text=text), user_id="agent-1")


class TestLocalDayBounds:
    def test_utc(self) -> None:
        start, end = dashboard.local_day_bounds(NOW, "UTC")
        assert start == datetime(2026, 3, 10)
        assert end == datetime(2026, 3, 11)

    def test_business_timezone_shifts_the_day(self) -> None:
        # 03:00 UTC is still the previous evening in Bogota (UTC-5)
        start, end = dashboard.local_day_bounds(datetime(2026, 3, 10, 3, 0), "America/Bogota")
        assert start == datetime(2026, 3, 9, 5, 0)
        assert end == datetime(2026, 3, 10, 5, 0)


class TestTodaysSales:
    def test_counts_only_verified_orders_of_the_day(
        self, db, agent, auditor, product, warehouse, add_stock, submitted_order,
    ) -> None:
        add_stock(product.id, warehouse.id, 50)
        verified = submitted_order(agent, [(product.id, 2, Decimal("10.00"))], shipping_cost=Decimal("5.00"))
        workflow.verify_payment(db, verified.id, auditor)
        pending = submitted_order(agent, [(product.id, 1, Decimal("10.00"))])
        cancelled = submitted_order(agent, [(product.id, 1, Decimal("10.00"))])
        workflow.verify_payment(db, cancelled.id, auditor)
        workflow.cancel(db, cancelled.id, auditor)
        yesterday = submitted_order(agent, [(product.id, 1, Decimal("10.00"))])
        workflow.verify_payment(db, yesterday.id, auditor)

        for order_id in (verified.id, pending.id, cancelled.id):
            _backdate(db, order_id, datetime(2026, 3, 10, 9, 0))
        _backdate(db, yesterday.id, datetime(2026, 3, 9, 23, 59))

        assert dashboard.todays_sales(db, NOW) == Decimal("25.00")

    def test_no_sales(self, db) -> None:
        assert dashboard.todays_sales(db, NOW) == Decimal("0.00")


class TestLowStock:
    @pytest.mark.parametrize("configured, expected", [
        (None, 10),
        (0, 10),
        (-3, 1),
        (4, 4),
    ])
    def test_effective_threshold(self, configured, expected) -> None:
        assert dashboard.effective_threshold(configured) == expected

    def test_default_threshold_is_inclusive(self, db, warehouse, add_stock) -> None:
        at_threshold = crud.create_product(db, schemas.ProductCreate(sku="A", name="A", price=Decimal("1")))
        above = crud.create_product(db, schemas.ProductCreate(sku="B", name="B", price=Decimal("1")))
        add_stock(at_threshold.id, warehouse.id, 10)
        add_stock(above.id, warehouse.id, 11)

        items = dashboard.low_stock_items(db)

        assert [item.sku for item in items] == ["A"]
        assert items[0].threshold == 10
        assert items[0].total_stock == 10

    def test_stock_is_summed_across_warehouses(self, db, warehouse, second_warehouse, add_stock) -> None:
        tracked = crud.create_product(
            db, schemas.ProductCreate(sku="C", name="C", price=Decimal("1"), min_stock_threshold=5),
        )
        add_stock(tracked.id, warehouse.id, 3)
        add_stock(tracked.id, second_warehouse.id, 3)

        assert dashboard.low_stock_count(db) == 0

    def test_product_without_inventory_is_low(self, db, product) -> None:
        items = dashboard.low_stock_items(db)
        assert [(item.product_id, item.total_stock) for item in items] == [(product.id, 0)]


class TestLostDemand:
    def test_searches_grouped_case_insensitively(self, db) -> None:
        for text in ["casco integral", "CASCO INTEGRAL", "llanta 17", "casco integral"]:
            _lost(db, text)

        terms = dashboard.top_lost_demand(db)

        assert [(t.term, t.count) for t in terms] == [("CASCO INTEGRAL", 3), ("LLANTA 17", 1)]

    def test_whitespace_is_collapsed(self, db) -> None:
        _lost(db, "  casco   integral ")
        _lost(db, "Casco Integral")
        assert [(t.term, t.count) for t in dashboard.top_lost_demand(db)] == [("CASCO INTEGRAL", 2)]

    def test_top_five_with_ties_in_first_seen_order(self, db) -> None:
        for text in ["a", "b", "c", "d", "e", "f", "f"]:
            _lost(db, text)

        terms = dashboard.top_lost_demand(db)

        assert [t.term for t in terms] == ["F", "A", "B", "C", "D"]

    def test_blank_search_rejected(self, db) -> None:
        with pytest.raises(ValidationError):
            _lost(db, "   ")


class TestSummary:
    def test_summary_payload(self, db, product) -> None:
        _lost(db, "llanta 17")

        result = dashboard.summary(db, NOW)

        assert result.todays_sales == Decimal("0.00")
        assert result.low_stock_count == 1
        assert [t.term for t in result.top_lost_demand] == ["LLANTA 17"]


class TestAgentStats:
    def test_agent_daily_stats(
        self, db, agent, other_agent, auditor, product, warehouse, add_stock, submitted_order,
    ) -> None:
        add_stock(product.id, warehouse.id, 50)
        mine = submitted_order(agent, [(product.id, 3, Decimal("10.00"))], shipping_cost=Decimal("2.00"))
        workflow.verify_payment(db, mine.id, auditor)
        theirs = submitted_order(other_agent, [(product.id, 1, Decimal("10.00"))])
        workflow.verify_payment(db, theirs.id, auditor)
        for order_id in (mine.id, theirs.id):
            _backdate(db, order_id, datetime(2026, 3, 10, 9, 0))

        stats = dashboard.agent_daily_stats(db, agent.id, NOW)

        assert stats.total_orders == 1
        assert stats.total_items_sold == 3
        assert stats.total_sales_revenue == Decimal("32.00")
        assert stats.total_commission == Decimal("3.00")

    def test_commission_summary_excludes_voided(
        self, db, agent, other_agent, auditor, product, warehouse, add_stock, submitted_order,
    ) -> None:
        add_stock(product.id, warehouse.id, 50)
        for owner, quantity in ((agent, 2), (other_agent, 5), (agent, 1)):
            order = submitted_order(owner, [(product.id, quantity, Decimal("10.00"))])
            workflow.verify_payment(db, order.id, auditor)
        voided = submitted_order(other_agent, [(product.id, 4, Decimal("10.00"))])
        workflow.verify_payment(db, voided.id, auditor)
        workflow.cancel(db, voided.id, auditor)

        summary = dashboard.commission_summary(db)

        assert [(s.agent_id, s.total_orders, s.earned_commission) for s in summary] == [
            (other_agent.id, 1, Decimal("5.00")),
            (agent.id, 2, Decimal("3.00")),
        ]
        assert [s.agent_id for s in dashboard.commission_summary(db, agent_id=agent.id)] == [agent.id]
