"""Page-view ingestion and per-bucket traffic snapshots.

A snapshot is always recomputed from the raw page views, orders and
ledger rows inside its bucket and then written over the stored row, so
recording the same bucket twice yields the same counters.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.errors import NotFound
from storefront.ledger import parse_enum
from storefront.models import (
    AnalyticsSnapshot,
    FinancialTransaction,
    Order,
    PageView,
    PaymentStatus,
    PeriodType,
    Store,
    TransactionType,
)
from storefront.periods import (
    Bucket,
    as_utc,
    average,
    bucket_for,
    growth_rate,
    last_buckets,
    percentage,
    shift_bucket,
    utcnow,
)
from storefront.reconciliation import validate_bucket_count
from storefront.tenancy import TenantScope

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class SnapshotView:
    bucket: Bucket
    total_views: int = 0
    unique_visitors: int = 0
    total_orders: int = 0
    total_revenue: Decimal = ZERO
    total_income: Decimal = ZERO
    total_expenses: Decimal = ZERO
    avg_order_value: Decimal = ZERO
    conversion_rate: float = 0.0

    @property
    def net_profit(self) -> Decimal:
        return self.total_income - self.total_expenses

    @classmethod
    def from_row(cls, bucket: Bucket, row: AnalyticsSnapshot) -> "SnapshotView":
        return cls(
            bucket=bucket,
            total_views=row.total_views,
            unique_visitors=row.unique_visitors,
            total_orders=row.total_orders,
            total_revenue=Decimal(row.total_revenue),
            total_income=Decimal(row.total_income),
            total_expenses=Decimal(row.total_expenses),
            avg_order_value=Decimal(row.avg_order_value or 0),
            conversion_rate=row.conversion_rate,
        )

    def to_dict(self) -> dict:
        return {
            "period": self.bucket.period.value,
            "label": self.bucket.label,
            "bucket_start": self.bucket.start.isoformat(),
            "total_views": self.total_views,
            "unique_visitors": self.unique_visitors,
            "total_orders": self.total_orders,
            "total_revenue": float(self.total_revenue),
            "total_income": float(self.total_income),
            "total_expenses": float(self.total_expenses),
            "net_profit": float(self.net_profit),
            "avg_order_value": float(self.avg_order_value),
            "conversion_rate": self.conversion_rate,
        }


class TrafficRecorder:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
        max_buckets: int = 60,
    ) -> None:
        self.db = db
        self.clock = clock
        self.max_buckets = max_buckets

    def record_page_view(
        self,
        store_id: int,
        visitor_id: Optional[str] = None,
        page: Optional[str] = None,
    ) -> bool:
        """Store one raw page view. Storage failures drop the view and return False."""
        store = self.db.get(Store, store_id)
        if not store or not store.is_active:
            raise NotFound("store not found")
        try:
            self.db.add(
                PageView(
                    store_id=store_id,
                    visitor_id=(visitor_id or "").strip() or None,
                    page=page,
                    viewed_at=self.clock(),
                )
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning("dropped page view for store %s", store_id, exc_info=True)
            return False
        return True

    def compute_snapshot(self, scope: TenantScope, bucket: Bucket) -> SnapshotView:
        store_id = scope.store_id
        views, visitors = self.db.query(
            func.count(PageView.id),
            func.count(func.distinct(PageView.visitor_id)),
        ).filter(
            PageView.store_id == store_id,
            PageView.viewed_at >= bucket.start,
            PageView.viewed_at < bucket.end,
        ).one()

        order_count = self.db.query(func.count(Order.id)).filter(
            Order.store_id == store_id,
            Order.created_at >= bucket.start,
            Order.created_at < bucket.end,
        ).scalar()

        settled_at = func.coalesce(Order.paid_at, Order.created_at)
        revenue = self.db.query(func.sum(Order.total)).filter(
            Order.store_id == store_id,
            Order.payment_status == PaymentStatus.PAID.value,
            settled_at >= bucket.start,
            settled_at < bucket.end,
        ).scalar()

        ledger = dict(
            self.db.query(FinancialTransaction.type, func.sum(FinancialTransaction.amount)).filter(
                FinancialTransaction.store_id == store_id,
                FinancialTransaction.transaction_date >= bucket.start,
                FinancialTransaction.transaction_date < bucket.end,
            ).group_by(FinancialTransaction.type).all()
        )

        order_count = int(order_count or 0)
        visitors = int(visitors or 0)
        revenue = Decimal(revenue or 0)
        return SnapshotView(
            bucket=bucket,
            total_views=int(views or 0),
            unique_visitors=visitors,
            total_orders=order_count,
            total_revenue=revenue,
            total_income=Decimal(ledger.get(TransactionType.INCOME.value) or 0),
            total_expenses=Decimal(ledger.get(TransactionType.EXPENSE.value) or 0),
            avg_order_value=average(revenue, order_count),
            conversion_rate=percentage(order_count, visitors),
        )

    def record_snapshot(
        self,
        scope: TenantScope,
        when: Optional[Union[date, datetime]] = None,
        period: PeriodType = PeriodType.DAILY,
    ) -> SnapshotView:
        period = parse_enum(PeriodType, period, "period")
        bucket = bucket_for(when or self.clock(), period)
        view = self.compute_snapshot(scope, bucket)
        row = self._stored_row(scope.store_id, bucket)
        if row is None:
            row = AnalyticsSnapshot(
                store_id=scope.store_id,
                period=period.value,
                bucket_start=bucket.start,
            )
            self._apply(row, view)
            self.db.add(row)
            try:
                self.db.commit()
            except IntegrityError:
                # a concurrent writer inserted the same bucket first
                self.db.rollback()
                row = self._stored_row(scope.store_id, bucket)
                self._apply(row, view)
                self.db.commit()
        else:
            self._apply(row, view)
            self.db.commit()
        logger.info(
            "store %s snapshot %s %s: %s views, %s visitors",
            scope.store_id,
            period.value,
            bucket.start.date().isoformat(),
            view.total_views,
            view.unique_visitors,
        )
        return view

    def summary(
        self,
        scope: TenantScope,
        period: PeriodType = PeriodType.DAILY,
        when: Optional[Union[date, datetime]] = None,
    ) -> dict:
        period = parse_enum(PeriodType, period, "period")
        current_bucket = bucket_for(when or self.clock(), period)
        previous_bucket = bucket_for(shift_bucket(current_bucket.start, period, -1), period)
        current = self.record_snapshot(scope, current_bucket.start, period)
        previous = self.record_snapshot(scope, previous_bucket.start, period)
        return {
            "current": current.to_dict(),
            "previous": previous.to_dict(),
            "growth": {
                "revenue": growth_rate(previous.total_revenue, current.total_revenue),
                "orders": growth_rate(previous.total_orders, current.total_orders),
                "avg_order_value": growth_rate(previous.avg_order_value, current.avg_order_value),
                "views": growth_rate(previous.total_views, current.total_views),
                "visitors": growth_rate(previous.unique_visitors, current.unique_visitors),
                "conversion_rate": growth_rate(previous.conversion_rate, current.conversion_rate),
                "profit": growth_rate(previous.net_profit, current.net_profit),
            },
        }

    def trend(
        self,
        scope: TenantScope,
        period: PeriodType = PeriodType.DAILY,
        bucket_count: int = 7,
    ) -> list[SnapshotView]:
        """Stored snapshots for the last ``bucket_count`` buckets, zero-filled where missing."""
        validate_bucket_count(bucket_count, self.max_buckets)
        period = parse_enum(PeriodType, period, "period")
        buckets = last_buckets(self.clock(), period, bucket_count)
        rows = self.db.query(AnalyticsSnapshot).filter(
            AnalyticsSnapshot.store_id == scope.store_id,
            AnalyticsSnapshot.period == period.value,
            AnalyticsSnapshot.bucket_start >= buckets[0].start,
            AnalyticsSnapshot.bucket_start < buckets[-1].end,
        ).all()
        stored = {as_utc(row.bucket_start): row for row in rows}
        return [
            SnapshotView.from_row(bucket, stored[bucket.start]) if bucket.start in stored else SnapshotView(bucket=bucket)
            for bucket in buckets
        ]

    def _stored_row(self, store_id: int, bucket: Bucket) -> Optional[AnalyticsSnapshot]:
        return self.db.query(AnalyticsSnapshot).filter(
            AnalyticsSnapshot.store_id == store_id,
            AnalyticsSnapshot.period == bucket.period.value,
            AnalyticsSnapshot.bucket_start == bucket.start,
        ).first()

    def _apply(self, row: AnalyticsSnapshot, view: SnapshotView) -> None:
        row.total_views = view.total_views
        row.unique_visitors = view.unique_visitors
        row.total_orders = view.total_orders
        row.total_revenue = view.total_revenue
        row.total_income = view.total_income
        row.total_expenses = view.total_expenses
        row.net_profit = view.net_profit
        row.avg_order_value = view.avg_order_value
        row.conversion_rate = view.conversion_rate
        row.updated_at = self.clock()
