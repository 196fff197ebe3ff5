from datetime import datetime, timezone
from decimal import Decimal

import pytest

from conftest import NOW, fixed_clock, tenant_scope_for
from storefront.errors import ValidationFailed
from storefront.ledger import LedgerStore, NewEntry
from storefront.models import PeriodType, TransactionCategory, TransactionType
from storefront.reconciliation import ReconciliationEngine, category_breakdown, fill_trend
from storefront.periods import last_buckets

UTC = timezone.utc


def _record(db, store, entry_type, category, amount, when=NOW) -> None:
    LedgerStore(db, tenant_scope_for(store), clock=fixed_clock).create(
        NewEntry(type=entry_type, category=category, amount=amount, description="entry", transaction_date=when)
    )


def test_summary_is_isolated_per_tenant(db, seed) -> None:
    tenant_a = seed.store()
    tenant_b = seed.store()
    _record(db, tenant_a, "INCOME", "SALES", 100000)
    _record(db, tenant_a, "EXPENSE", "MARKETING", 30000)

    summary_a = ReconciliationEngine(db, tenant_scope_for(tenant_a), clock=fixed_clock).summary()
    assert summary_a.total_income == Decimal("100000")
    assert summary_a.total_expenses == Decimal("30000")
    assert summary_a.net_profit == Decimal("70000")
    assert summary_a.transaction_count == 2

    summary_b = ReconciliationEngine(db, tenant_scope_for(tenant_b), clock=fixed_clock).summary()
    assert summary_b.total_income == 0
    assert summary_b.total_expenses == 0
    assert summary_b.net_profit == 0
    assert summary_b.breakdown == ()


def test_summary_rejects_inverted_range(db, seed) -> None:
    engine = ReconciliationEngine(db, tenant_scope_for(seed.store()), clock=fixed_clock)
    with pytest.raises(ValidationFailed):
        engine.summary(datetime(2026, 3, 10, tzinfo=UTC), datetime(2026, 3, 1, tzinfo=UTC))


def test_category_breakdown_is_relative_to_own_type(db, seed) -> None:
    store = seed.store()
    _record(db, store, "INCOME", "SALES", 75)
    _record(db, store, "INCOME", "SERVICE", 25)
    _record(db, store, "EXPENSE", "RENT", 40)

    shares = ReconciliationEngine(db, tenant_scope_for(store), clock=fixed_clock).summary().breakdown
    by_category = {share.category.value: share.percentage for share in shares}
    assert by_category == {"SALES": 75.0, "SERVICE": 25.0, "RENT": 100.0}


def test_category_breakdown_with_zero_total_reports_zero() -> None:
    shares = category_breakdown([(TransactionType.EXPENSE, TransactionCategory.RENT, Decimal("0"), 0)])
    assert [share.percentage for share in shares] == [0.0]


def test_trend_is_dense_for_empty_tenant(db, seed) -> None:
    engine = ReconciliationEngine(db, tenant_scope_for(seed.store()), clock=fixed_clock)
    points = engine.trend(12, PeriodType.MONTHLY)
    assert len(points) == 12
    assert [point.bucket.label for point in points][-2:] == ["Feb 2026", "Mar 2026"]
    assert all(point.ledger_income == 0 and point.order_revenue == 0 for point in points)
    starts = [point.bucket.start for point in points]
    assert starts == sorted(starts)


def test_trend_keeps_sources_separate(db, seed) -> None:
    store = seed.store()
    _record(db, store, "INCOME", "SALES", 500, when=datetime(2026, 2, 3, tzinfo=UTC))
    seed.order(store, 500, paid_at=datetime(2026, 2, 3, tzinfo=UTC))
    seed.order(store, 300, paid_at=datetime(2026, 3, 1, tzinfo=UTC))
    seed.subscription(store, "PRO", 299000, start_date=datetime(2026, 3, 2, tzinfo=UTC))

    points = ReconciliationEngine(db, tenant_scope_for(store), clock=fixed_clock).trend(3)
    feb, mar = points[1], points[2]
    assert feb.ledger_income == Decimal("500")
    assert feb.order_revenue == Decimal("500")
    assert feb.order_count == 1
    assert mar.ledger_income == 0
    assert mar.order_revenue == Decimal("300")
    assert mar.subscription_revenue == Decimal("299000")


def test_trend_bucket_count_is_bounded(db, seed) -> None:
    engine = ReconciliationEngine(db, tenant_scope_for(seed.store()), clock=fixed_clock, max_buckets=24)
    with pytest.raises(ValidationFailed):
        engine.trend(0)
    with pytest.raises(ValidationFailed):
        engine.trend(25)


def test_fill_trend_ignores_rows_outside_window() -> None:
    buckets = last_buckets(NOW, PeriodType.MONTHLY, 2)
    points = fill_trend(buckets, order_rows=[(Decimal("10"), datetime(2025, 1, 1, tzinfo=UTC))])
    assert [point.order_revenue for point in points] == [0, 0]


def test_dashboard_growth_and_recent(db, seed) -> None:
    store = seed.store()
    _record(db, store, "INCOME", "SALES", 100, when=datetime(2026, 2, 10, tzinfo=UTC))
    _record(db, store, "INCOME", "SALES", 150, when=datetime(2026, 3, 10, tzinfo=UTC))
    _record(db, store, "EXPENSE", "SUPPLIES", 20, when=datetime(2026, 3, 11, tzinfo=UTC))

    dashboard = ReconciliationEngine(db, tenant_scope_for(store), clock=fixed_clock).dashboard()
    assert dashboard["growth"]["income"] == 50.0
    assert dashboard["growth"]["expenses"] == 100.0
    assert dashboard["this_year"]["total_income"] == 250.0
    assert len(dashboard["recent_transactions"]) == 3
    assert dashboard["top_expense_categories"][0]["category"] == "SUPPLIES"


def test_report_validates_kind_and_period(db, seed) -> None:
    engine = ReconciliationEngine(db, tenant_scope_for(seed.store()), clock=fixed_clock)
    with pytest.raises(ValidationFailed):
        engine.report("pie_chart")
    with pytest.raises(ValidationFailed):
        engine.report("summary", "decade")
    with pytest.raises(ValidationFailed):
        engine.report("summary", "custom", start=datetime(2026, 1, 1, tzinfo=UTC))


def test_report_category_breakdown_filters_type(db, seed) -> None:
    store = seed.store()
    _record(db, store, "INCOME", "SALES", 100)
    _record(db, store, "EXPENSE", "RENT", 40)
    report = ReconciliationEngine(db, tenant_scope_for(store), clock=fixed_clock).report(
        "category_breakdown", "quarter", transaction_type=TransactionType.EXPENSE
    )
    assert report["report_type"] == "category_breakdown"
    assert [share["category"] for share in report["data"]] == ["RENT"]


def test_dashboard_average_order_value(db, seed) -> None:
    store = seed.store()
    seed.order(store, 1000, paid_at=datetime(2026, 3, 2, tzinfo=UTC))
    seed.order(store, 3000, paid_at=datetime(2026, 3, 3, tzinfo=UTC))

    orders = ReconciliationEngine(db, tenant_scope_for(store), clock=fixed_clock).dashboard()["order_revenue"]
    assert orders["avg_order_value_this_month"] == 2000.0
    assert orders["avg_order_value_last_month"] == 0.0
