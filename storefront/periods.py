"""Canonical time buckets and the shared percentage policies.

All bucket boundaries are UTC. A bucket is the half-open interval
``[start, end)`` where ``end`` is the next bucket's start.
"""
from __future__ import annotations

from bisect import bisect_right
from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Union

from storefront.models import PeriodType

UTC = timezone.utc
MONTH_ABBR = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

Number = Union[int, float, Decimal]


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_datetime(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime(value.year, value.month, value.day, tzinfo=UTC)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def bucket_start(value: Union[date, datetime], period: PeriodType) -> datetime:
    moment = to_datetime(value)
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == PeriodType.DAILY:
        return midnight
    if period == PeriodType.WEEKLY:
        # weeks start on Sunday
        return midnight - timedelta(days=(midnight.weekday() + 1) % 7)
    if period == PeriodType.MONTHLY:
        return midnight.replace(day=1)
    if period == PeriodType.QUARTERLY:
        return midnight.replace(month=(midnight.month - 1) // 3 * 3 + 1, day=1)
    if period == PeriodType.YEARLY:
        return midnight.replace(month=1, day=1)
    raise ValueError(f"unsupported period: {period}")


def shift_bucket(start: datetime, period: PeriodType, count: int) -> datetime:
    if period == PeriodType.DAILY:
        return start + timedelta(days=count)
    if period == PeriodType.WEEKLY:
        return start + timedelta(weeks=count)
    if period == PeriodType.MONTHLY:
        return add_months(start, count)
    if period == PeriodType.QUARTERLY:
        return add_months(start, 3 * count)
    if period == PeriodType.YEARLY:
        return start.replace(year=start.year + count)
    raise ValueError(f"unsupported period: {period}")


def end_of_day(day: date) -> datetime:
    return to_datetime(day) + timedelta(days=1) - timedelta(microseconds=1)


def next_bucket_start(start: datetime, period: PeriodType) -> datetime:
    return shift_bucket(start, period, 1)


def bucket_label(start: datetime, period: PeriodType) -> str:
    month = MONTH_ABBR[start.month - 1]
    if period == PeriodType.DAILY:
        return f"{month} {start.day:02d}, {start.year}"
    if period == PeriodType.WEEKLY:
        return f"Week of {month} {start.day:02d}, {start.year}"
    if period == PeriodType.MONTHLY:
        return f"{month} {start.year}"
    if period == PeriodType.QUARTERLY:
        return f"Q{(start.month - 1) // 3 + 1} {start.year}"
    return str(start.year)


@dataclass(frozen=True)
class Bucket:
    period: PeriodType
    start: datetime
    end: datetime

    @property
    def label(self) -> str:
        return bucket_label(self.start, self.period)

    def contains(self, value: datetime) -> bool:
        return self.start <= as_utc(value) < self.end


def bucket_for(value: Union[date, datetime], period: PeriodType) -> Bucket:
    start = bucket_start(value, period)
    return Bucket(period=period, start=start, end=next_bucket_start(start, period))


def last_buckets(now: datetime, period: PeriodType, count: int) -> list[Bucket]:
    """The ``count`` buckets ending with the one containing ``now``, oldest first."""
    current = bucket_start(now, period)
    buckets = []
    for offset in range(count - 1, -1, -1):
        start = shift_bucket(current, period, -offset)
        buckets.append(Bucket(period=period, start=start, end=next_bucket_start(start, period)))
    return buckets


def bucket_index(buckets: list[Bucket], value: datetime) -> Optional[int]:
    if not buckets:
        return None
    moment = as_utc(value)
    if moment < buckets[0].start or moment >= buckets[-1].end:
        return None
    starts = [bucket.start for bucket in buckets]
    return bisect_right(starts, moment) - 1


def growth_rate(previous: Number, current: Number) -> float:
    """Period-over-period change in percent.

    Zero to something counts as 100% growth, zero to zero as 0%.
    """
    previous = float(previous)
    current = float(current)
    if previous > 0:
        return (current - previous) / previous * 100
    if current > 0:
        return 100.0
    return 0.0


def conversion_rate(active: int, trialing: int) -> float:
    """Share of the trial-to-paid funnel that is paying, in percent."""
    funnel = active + trialing
    if funnel <= 0:
        return 0.0
    return active / funnel * 100


def percentage(part: Number, total: Number) -> float:
    total = float(total)
    if total <= 0:
        return 0.0
    return float(part) / total * 100


def average(total: Decimal, count: int) -> Decimal:
    """Mean value per item, rounded to cents; zero when there are no items."""
    if count <= 0:
        return Decimal("0")
    return (Decimal(total) / count).quantize(Decimal("0.01"))
