"""Platform-wide rollups for administrators.

Aggregates span every store but only counts, sums and fields already
shown on admin screens leave this module. Store ledgers are never read
here.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from storefront.errors import Forbidden
from storefront.models import (
    AdminActivityLog,
    Order,
    PaymentStatus,
    PeriodType,
    Store,
    Subscription,
    SubscriptionStatus,
    User,
)
from storefront.periods import (
    bucket_for,
    conversion_rate,
    growth_rate,
    last_buckets,
    percentage,
    shift_bucket,
    utcnow,
)
from storefront.reconciliation import TrendPoint, fill_trend, validate_bucket_count
from storefront.tenancy import PLATFORM_ROLE, PlatformScope, has_role


@dataclass(frozen=True)
class PlanShare:
    plan: str
    count: int
    revenue: Decimal
    percentage: float
    count_percentage: float

    def to_dict(self) -> dict:
        return {
            "plan": self.plan,
            "count": self.count,
            "revenue": float(self.revenue),
            "percentage": self.percentage,
            "count_percentage": self.count_percentage,
        }


def platform_trend_point(point: TrendPoint) -> dict:
    return {
        "label": point.bucket.label,
        "start": point.bucket.start.isoformat(),
        "end": point.bucket.end.isoformat(),
        "order_revenue": float(point.order_revenue),
        "order_count": point.order_count,
        "subscription_revenue": float(point.subscription_revenue),
        "subscriptions": point.subscription_count,
        "total_revenue": float(point.order_revenue + point.subscription_revenue),
    }


class RollupEngine:
    def __init__(
        self,
        db: Session,
        scope: PlatformScope,
        clock: Callable[[], datetime] = utcnow,
        max_buckets: int = 60,
        recent_payments_limit: int = 10,
        recent_activity_limit: int = 20,
    ) -> None:
        if not isinstance(scope, PlatformScope) or not has_role(scope.role, PLATFORM_ROLE):
            raise Forbidden("platform rollups require an administrator")
        self.db = db
        self.scope = scope
        self.clock = clock
        self.max_buckets = max_buckets
        self.recent_payments_limit = recent_payments_limit
        self.recent_activity_limit = recent_activity_limit

    def subscription_counts(self) -> dict:
        by_status = dict(
            self.db.query(Subscription.status, func.count(Subscription.id))
            .group_by(Subscription.status)
            .all()
        )
        active = int(by_status.get(SubscriptionStatus.ACTIVE.value, 0))
        trial = int(by_status.get(SubscriptionStatus.TRIAL.value, 0))
        return {
            "total": int(sum(by_status.values())),
            "active": active,
            "trial": trial,
            "expired": int(by_status.get(SubscriptionStatus.EXPIRED.value, 0)),
            "cancelled": int(by_status.get(SubscriptionStatus.CANCELLED.value, 0)),
            "conversion_rate": conversion_rate(active, trial),
        }

    def plan_breakdown(self) -> list[PlanShare]:
        rows = self.db.query(
            Subscription.plan,
            func.count(Subscription.id),
            func.sum(Subscription.price),
        ).filter(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
        ).group_by(Subscription.plan).all()
        total_count = sum(int(count) for _, count, _ in rows)
        total_revenue = sum((Decimal(revenue or 0) for _, _, revenue in rows), Decimal("0"))
        shares = [
            PlanShare(
                plan=plan,
                count=int(count),
                revenue=Decimal(revenue or 0),
                percentage=percentage(Decimal(revenue or 0), total_revenue),
                count_percentage=percentage(int(count), total_count),
            )
            for plan, count, revenue in rows
        ]
        return sorted(shares, key=lambda share: (-share.revenue, share.plan))

    def subscription_revenue(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> Decimal:
        """Active subscription prices, optionally limited to ``start <= start_date < end``."""
        query = self.db.query(func.sum(Subscription.price)).filter(
            Subscription.status == SubscriptionStatus.ACTIVE.value
        )
        if start is not None:
            query = query.filter(Subscription.start_date >= start)
        if end is not None:
            query = query.filter(Subscription.start_date < end)
        return Decimal(query.scalar() or 0)

    def order_revenue(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> Decimal:
        settled_at = func.coalesce(Order.paid_at, Order.created_at)
        query = self.db.query(func.sum(Order.total)).filter(
            Order.payment_status == PaymentStatus.PAID.value
        )
        if start is not None:
            query = query.filter(settled_at >= start)
        if end is not None:
            query = query.filter(settled_at < end)
        return Decimal(query.scalar() or 0)

    def revenue_trend(self, months: int = 12) -> list[TrendPoint]:
        validate_bucket_count(months, self.max_buckets)
        buckets = last_buckets(self.clock(), PeriodType.MONTHLY, months)
        window_start, window_end = buckets[0].start, buckets[-1].end
        settled_at = func.coalesce(Order.paid_at, Order.created_at)
        order_rows = self.db.query(Order.total, settled_at).filter(
            Order.payment_status == PaymentStatus.PAID.value,
            settled_at >= window_start,
            settled_at < window_end,
        ).all()
        subscription_rows = self.db.query(Subscription.price, Subscription.start_date).filter(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.start_date >= window_start,
            Subscription.start_date < window_end,
        ).all()
        return fill_trend(buckets, order_rows=order_rows, subscription_rows=subscription_rows)

    def recent_payments(self) -> list[dict]:
        paid_on = func.coalesce(Subscription.start_date, Subscription.created_at)
        rows = self.db.query(
            User.email,
            User.name,
            Subscription.plan,
            Subscription.price,
            Subscription.status,
            Subscription.billing_cycle,
            paid_on,
        ).join(
            User, User.id == Subscription.user_id
        ).filter(
            Subscription.status == SubscriptionStatus.ACTIVE.value
        ).order_by(paid_on.desc(), Subscription.id.desc()).limit(self.recent_payments_limit).all()
        return [
            {
                "user_email": email,
                "user_name": name,
                "plan": plan,
                "amount": float(price),
                "status": status,
                "billing_cycle": billing_cycle,
                "date": date.isoformat() if date else None,
            }
            for email, name, plan, price, status, billing_cycle, date in rows
        ]

    def recent_activity(self, limit: Optional[int] = None) -> list[dict]:
        rows = self.db.query(AdminActivityLog, User.name, User.email).join(
            User, User.id == AdminActivityLog.admin_id
        ).order_by(
            AdminActivityLog.created_at.desc(), AdminActivityLog.id.desc()
        ).limit(limit or self.recent_activity_limit).all()
        return [
            {
                "activity_id": log.id,
                "admin_name": name,
                "admin_email": email,
                "action": log.action,
                "target_type": log.target_type,
                "target_id": log.target_id,
                "description": log.description,
                "created_at": log.created_at.isoformat(),
            }
            for log, name, email in rows
        ]

    def billing(self) -> dict:
        this_month = bucket_for(self.clock(), PeriodType.MONTHLY)
        last_month_start = shift_bucket(this_month.start, PeriodType.MONTHLY, -1)
        this_month_revenue = self.subscription_revenue(this_month.start, this_month.end)
        last_month_revenue = self.subscription_revenue(last_month_start, this_month.start)
        return {
            "revenue": {
                "total": float(self.subscription_revenue()),
                "this_month": float(this_month_revenue),
                "last_month": float(last_month_revenue),
                "growth": growth_rate(last_month_revenue, this_month_revenue),
            },
            "subscriptions": self.subscription_counts(),
            "plans": [share.to_dict() for share in self.plan_breakdown()],
            "recent_payments": self.recent_payments(),
            "monthly_revenue": [platform_trend_point(point) for point in self.revenue_trend(12)],
        }

    def platform_stats(self) -> dict:
        this_month = bucket_for(self.clock(), PeriodType.MONTHLY)
        last_month_start = shift_bucket(this_month.start, PeriodType.MONTHLY, -1)

        store_total = self.db.query(func.count(Store.id)).scalar() or 0
        store_active = self.db.query(func.count(Store.id)).filter(Store.is_active.is_(True)).scalar() or 0
        store_verified = self.db.query(func.count(Store.id)).filter(Store.is_verified.is_(True)).scalar() or 0

        orders = {
            "total": self.order_revenue(),
            "this_month": self.order_revenue(this_month.start, this_month.end),
            "last_month": self.order_revenue(last_month_start, this_month.start),
        }
        subscriptions = {
            "total": self.subscription_revenue(),
            "this_month": self.subscription_revenue(this_month.start, this_month.end),
            "last_month": self.subscription_revenue(last_month_start, this_month.start),
        }
        combined = {key: orders[key] + subscriptions[key] for key in orders}

        def _series(values: dict) -> dict:
            return {
                "total": float(values["total"]),
                "this_month": float(values["this_month"]),
                "last_month": float(values["last_month"]),
                "growth": growth_rate(values["last_month"], values["this_month"]),
            }

        return {
            "stores": {
                "total": int(store_total),
                "active": int(store_active),
                "suspended": int(store_total) - int(store_active),
                "verified": int(store_verified),
            },
            "order_revenue": _series(orders),
            "subscription_revenue": _series(subscriptions),
            "total_revenue": _series(combined),
            "subscriptions": self.subscription_counts(),
        }
