"""Per-store revenue reconciliation.

Ledger entries, paid orders and the store's active subscriptions are
summed as three separate series. Ledger income and order revenue can
describe the same sale, so they are never added together here; callers
get both and a warning saying so.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from storefront.errors import ValidationFailed
from storefront.ledger import LedgerStore, parse_enum
from storefront.models import (
    FinancialTransaction,
    Order,
    PaymentStatus,
    PeriodType,
    Subscription,
    SubscriptionStatus,
    TransactionCategory,
    TransactionType,
)
from storefront.periods import (
    Bucket,
    add_months,
    average,
    bucket_index,
    bucket_start,
    growth_rate,
    last_buckets,
    percentage,
    shift_bucket,
    to_datetime,
    utcnow,
)
from storefront.tenancy import TenantScope

ZERO = Decimal("0")

LEDGER_ORDER_OVERLAP_WARNING = (
    "ledger income and paid-order revenue are reported as separate series; "
    "an order also recorded as ledger income appears in both"
)

REPORT_KINDS = ("comprehensive", "summary", "category_breakdown", "monthly_trends")
REPORT_WINDOWS = {"month": 1, "quarter": 3, "year": 12}


@dataclass(frozen=True)
class CategoryShare:
    type: TransactionType
    category: TransactionCategory
    total: Decimal
    count: int
    percentage: float

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "category": self.category.value,
            "total": float(self.total),
            "count": self.count,
            "percentage": self.percentage,
        }


@dataclass(frozen=True)
class Summary:
    start: datetime
    end: datetime
    total_income: Decimal
    total_expenses: Decimal
    transaction_count: int
    breakdown: tuple[CategoryShare, ...]

    @property
    def net_profit(self) -> Decimal:
        return self.total_income - self.total_expenses

    def top(self, entry_type: TransactionType, limit: int) -> list[CategoryShare]:
        shares = [share for share in self.breakdown if share.type == entry_type]
        return sorted(shares, key=lambda share: share.total, reverse=True)[:limit]

    def to_dict(self) -> dict:
        return {
            "period": {"start": self.start.isoformat(), "end": self.end.isoformat()},
            "total_income": float(self.total_income),
            "total_expenses": float(self.total_expenses),
            "net_profit": float(self.net_profit),
            "transaction_count": self.transaction_count,
            "category_breakdown": [share.to_dict() for share in self.breakdown],
        }


@dataclass(frozen=True)
class TrendPoint:
    bucket: Bucket
    ledger_income: Decimal = ZERO
    ledger_expenses: Decimal = ZERO
    order_revenue: Decimal = ZERO
    order_count: int = 0
    subscription_revenue: Decimal = ZERO
    subscription_count: int = 0

    @property
    def net_profit(self) -> Decimal:
        return self.ledger_income - self.ledger_expenses

    def to_dict(self) -> dict:
        return {
            "label": self.bucket.label,
            "period": self.bucket.period.value,
            "start": self.bucket.start.isoformat(),
            "end": self.bucket.end.isoformat(),
            "ledger_income": float(self.ledger_income),
            "ledger_expenses": float(self.ledger_expenses),
            "net_profit": float(self.net_profit),
            "order_revenue": float(self.order_revenue),
            "order_count": self.order_count,
            "subscription_revenue": float(self.subscription_revenue),
            "subscription_count": self.subscription_count,
        }


def category_breakdown(
    groups: Iterable[tuple[TransactionType, TransactionCategory, Decimal, int]],
) -> list[CategoryShare]:
    """Percentages are relative to the total of the group's own type."""
    groups = list(groups)
    type_totals: dict[TransactionType, Decimal] = {}
    for entry_type, _, total, _ in groups:
        type_totals[entry_type] = type_totals.get(entry_type, ZERO) + total
    shares = [
        CategoryShare(
            type=entry_type,
            category=category,
            total=total,
            count=count,
            percentage=percentage(total, type_totals[entry_type]),
        )
        for entry_type, category, total, count in groups
    ]
    shares.sort(key=lambda share: (share.type.value, -share.total, share.category.value))
    return shares


def fill_trend(
    buckets: list[Bucket],
    ledger_rows: Iterable[tuple[str, Decimal, datetime]] = (),
    order_rows: Iterable[tuple[Decimal, datetime]] = (),
    subscription_rows: Iterable[tuple[Decimal, datetime]] = (),
) -> list[TrendPoint]:
    """Sum each source into its bucket; buckets with no rows stay at zero."""
    income = [ZERO] * len(buckets)
    expenses = [ZERO] * len(buckets)
    orders = [ZERO] * len(buckets)
    order_counts = [0] * len(buckets)
    subscriptions = [ZERO] * len(buckets)
    subscription_counts = [0] * len(buckets)

    for entry_type, amount, occurred_at in ledger_rows:
        index = bucket_index(buckets, occurred_at)
        if index is None:
            continue
        if entry_type == TransactionType.INCOME.value:
            income[index] += Decimal(amount)
        else:
            expenses[index] += Decimal(amount)
    for total, occurred_at in order_rows:
        index = bucket_index(buckets, occurred_at)
        if index is not None:
            orders[index] += Decimal(total)
            order_counts[index] += 1
    for price, started_at in subscription_rows:
        index = bucket_index(buckets, started_at)
        if index is not None:
            subscriptions[index] += Decimal(price)
            subscription_counts[index] += 1

    return [
        TrendPoint(
            bucket=bucket,
            ledger_income=income[i],
            ledger_expenses=expenses[i],
            order_revenue=orders[i],
            order_count=order_counts[i],
            subscription_revenue=subscriptions[i],
            subscription_count=subscription_counts[i],
        )
        for i, bucket in enumerate(buckets)
    ]


def validate_bucket_count(count: int, max_buckets: int) -> int:
    if count < 1 or count > max_buckets:
        raise ValidationFailed(f"bucket count must be between 1 and {max_buckets}")
    return count


class ReconciliationEngine:
    def __init__(
        self,
        db: Session,
        scope: TenantScope,
        clock: Callable[[], datetime] = utcnow,
        max_buckets: int = 60,
        top_limit: int = 5,
    ) -> None:
        self.db = db
        self.scope = scope
        self.clock = clock
        self.max_buckets = max_buckets
        self.top_limit = top_limit

    def summary(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Summary:
        """Ledger totals over the inclusive range ``[start, end]``.

        Defaults to the current month up to now.
        """
        now = self.clock()
        start = to_datetime(start) if start else bucket_start(now, PeriodType.MONTHLY)
        end = to_datetime(end) if end else now
        if start > end:
            raise ValidationFailed("start date must not be after end date")
        groups = self._category_groups(start, end)
        income = sum((total for entry_type, _, total, _ in groups if entry_type == TransactionType.INCOME), ZERO)
        expenses = sum((total for entry_type, _, total, _ in groups if entry_type == TransactionType.EXPENSE), ZERO)
        return Summary(
            start=start,
            end=end,
            total_income=income,
            total_expenses=expenses,
            transaction_count=sum(count for _, _, _, count in groups),
            breakdown=tuple(category_breakdown(groups)),
        )

    def category_breakdown(
        self,
        start: datetime,
        end: datetime,
        entry_type: Optional[TransactionType] = None,
    ) -> list[CategoryShare]:
        shares = list(self.summary(start, end).breakdown)
        if entry_type is not None:
            entry_type = parse_enum(TransactionType, entry_type, "transaction type")
            shares = [share for share in shares if share.type == entry_type]
        return shares

    def trend(self, bucket_count: int = 12, period: PeriodType = PeriodType.MONTHLY) -> list[TrendPoint]:
        validate_bucket_count(bucket_count, self.max_buckets)
        period = parse_enum(PeriodType, period, "period")
        buckets = last_buckets(self.clock(), period, bucket_count)
        window_start, window_end = buckets[0].start, buckets[-1].end

        ledger_rows = self.db.query(
            FinancialTransaction.type,
            FinancialTransaction.amount,
            FinancialTransaction.transaction_date,
        ).filter(
            FinancialTransaction.store_id == self.scope.store_id,
            FinancialTransaction.transaction_date >= window_start,
            FinancialTransaction.transaction_date < window_end,
        ).all()

        settled_at = func.coalesce(Order.paid_at, Order.created_at)
        order_rows = self.db.query(Order.total, settled_at).filter(
            Order.store_id == self.scope.store_id,
            Order.payment_status == PaymentStatus.PAID.value,
            settled_at >= window_start,
            settled_at < window_end,
        ).all()

        subscription_rows = self.db.query(Subscription.price, Subscription.start_date).filter(
            Subscription.store_id == self.scope.store_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.start_date >= window_start,
            Subscription.start_date < window_end,
        ).all()

        return fill_trend(buckets, ledger_rows, order_rows, subscription_rows)

    def order_revenue(self, start: datetime, end: datetime) -> tuple[Decimal, int]:
        """Paid-order revenue and count over the inclusive range ``[start, end]``."""
        settled_at = func.coalesce(Order.paid_at, Order.created_at)
        total, count = self.db.query(func.sum(Order.total), func.count(Order.id)).filter(
            Order.store_id == self.scope.store_id,
            Order.payment_status == PaymentStatus.PAID.value,
            settled_at >= start,
            settled_at <= end,
        ).one()
        return Decimal(total or 0), int(count or 0)

    def dashboard(self) -> dict:
        now = self.clock()
        month_start = bucket_start(now, PeriodType.MONTHLY)
        last_month_start = shift_bucket(month_start, PeriodType.MONTHLY, -1)
        last_month_end = month_start - timedelta(microseconds=1)
        year_start = bucket_start(now, PeriodType.YEARLY)

        this_month = self.summary(month_start, now)
        last_month = self.summary(last_month_start, last_month_end)
        this_year = self.summary(year_start, now)
        orders_now, order_count_now = self.order_revenue(month_start, now)
        orders_before, order_count_before = self.order_revenue(last_month_start, last_month_end)
        recent = LedgerStore(self.db, self.scope, clock=self.clock).list(page=1, limit=5)

        return {
            "this_month": this_month.to_dict(),
            "last_month": last_month.to_dict(),
            "this_year": this_year.to_dict(),
            "growth": {
                "income": growth_rate(last_month.total_income, this_month.total_income),
                "expenses": growth_rate(last_month.total_expenses, this_month.total_expenses),
                "profit": growth_rate(last_month.net_profit, this_month.net_profit),
            },
            "order_revenue": {
                "this_month": float(orders_now),
                "last_month": float(orders_before),
                "orders_this_month": order_count_now,
                "orders_last_month": order_count_before,
                "avg_order_value_this_month": float(average(orders_now, order_count_now)),
                "avg_order_value_last_month": float(average(orders_before, order_count_before)),
                "growth": growth_rate(orders_before, orders_now),
            },
            "recent_transactions": [entry.to_dict() for entry in recent.items],
            "top_expense_categories": [
                share.to_dict() for share in this_month.top(TransactionType.EXPENSE, self.top_limit)
            ],
            "top_income_categories": [
                share.to_dict() for share in this_month.top(TransactionType.INCOME, self.top_limit)
            ],
        }

    def report(
        self,
        kind: str = "comprehensive",
        window: str = "month",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        transaction_type: Optional[TransactionType] = None,
        months: int = 12,
    ) -> dict:
        if kind not in REPORT_KINDS:
            raise ValidationFailed(f"invalid report type, expected one of: {', '.join(REPORT_KINDS)}")
        now = self.clock()
        if window == "custom":
            if start is None or end is None:
                raise ValidationFailed("start date and end date are required for custom period")
            default_start, default_end = start, end
        elif window in REPORT_WINDOWS:
            default_start, default_end = add_months(now, -REPORT_WINDOWS[window]), now
        else:
            raise ValidationFailed("invalid period, expected one of: month, quarter, year, custom")
        report_start = to_datetime(start or default_start)
        report_end = to_datetime(end or default_end)

        if kind == "summary":
            data = self.summary(report_start, report_end).to_dict()
        elif kind == "category_breakdown":
            shares = self.category_breakdown(report_start, report_end, transaction_type)
            data = [share.to_dict() for share in shares]
        elif kind == "monthly_trends":
            data = [point.to_dict() for point in self.trend(months, PeriodType.MONTHLY)]
        else:
            summary = self.summary(report_start, report_end)
            data = {
                "summary": summary.to_dict(),
                "monthly_trends": [point.to_dict() for point in self.trend(12, PeriodType.MONTHLY)],
                "top_expense_categories": [
                    share.to_dict() for share in summary.top(TransactionType.EXPENSE, self.top_limit)
                ],
                "top_income_categories": [
                    share.to_dict() for share in summary.top(TransactionType.INCOME, self.top_limit)
                ],
            }
        return {
            "report_type": kind,
            "period": {
                "type": window,
                "start": report_start.isoformat(),
                "end": report_end.isoformat(),
            },
            "data": data,
        }

    def _category_groups(
        self, start: datetime, end: datetime
    ) -> list[tuple[TransactionType, TransactionCategory, Decimal, int]]:
        rows = self.db.query(
            FinancialTransaction.type,
            FinancialTransaction.category,
            func.sum(FinancialTransaction.amount),
            func.count(FinancialTransaction.id),
        ).filter(
            FinancialTransaction.store_id == self.scope.store_id,
            FinancialTransaction.transaction_date >= start,
            FinancialTransaction.transaction_date <= end,
        ).group_by(
            FinancialTransaction.type,
            FinancialTransaction.category,
        ).all()
        return [
            (TransactionType(entry_type), TransactionCategory(category), Decimal(total or 0), int(count))
            for entry_type, category, total, count in rows
        ]
