"""Derived statistics over the merged activity collection.

Everything here is a pure function of its arguments and is recomputed in
full on every call. Time-of-day and calendar bucketing use `tz` (default:
the local time zone).
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from typing import Callable, Iterable, Sequence

from dateutil.relativedelta import relativedelta

from wallet_trace.annotations import AnnotatedActivity, SpendingStatus
from wallet_trace.models import ActivityRecord

NO_PEAK_HOUR = "N/A"


@dataclass(frozen=True)
class Bucket:
    """One labelled histogram bucket (e.g. key=date(2024, 1, 1), label="Mon")."""

    key: date
    label: str
    detail: str
    count: int = 0


@dataclass(frozen=True)
class SpendingBreakdown:
    spent: int
    not_spent: int
    unannotated: int


@dataclass(frozen=True)
class DashboardSummary:
    total_opens: int
    opens_today: int
    device_count: int
    peak_hour: str
    spent_count: int
    not_spent_count: int
    unannotated_count: int


def _activity(item: ActivityRecord | AnnotatedActivity) -> ActivityRecord:
    return item.activity if isinstance(item, AnnotatedActivity) else item


def _local(record: ActivityRecord | AnnotatedActivity, tz: tzinfo | None) -> datetime:
    return _activity(record).occurred_at.astimezone(tz)


def _now(now: datetime | None, tz: tzinfo | None) -> datetime:
    if now is None:
        return datetime.now(tz).astimezone(tz)
    return now.astimezone(tz)


def format_hour(hour: int) -> str:
    """Format a 0-23 hour as '12 AM', '9 AM', '12 PM', '3 PM'."""
    if hour == 0:
        return "12 AM"
    if hour == 12:
        return "12 PM"
    if hour < 12:
        return f"{hour} AM"
    return f"{hour - 12} PM"


def total_count(records: Sequence[ActivityRecord | AnnotatedActivity]) -> int:
    return len(records)


def count_where(
    records: Iterable[ActivityRecord | AnnotatedActivity],
    predicate: Callable[[ActivityRecord | AnnotatedActivity], bool],
) -> int:
    return sum(1 for record in records if predicate(record))


def filter_range(
    records: Iterable[ActivityRecord | AnnotatedActivity],
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[ActivityRecord | AnnotatedActivity]:
    """Keep records with start <= occurred_at < end (either bound optional)."""
    result = []
    for record in records:
        occurred_at = _activity(record).occurred_at
        if start is not None and occurred_at < start:
            continue
        if end is not None and occurred_at >= end:
            continue
        result.append(record)
    return result


def opens_today(
    records: Iterable[ActivityRecord | AnnotatedActivity],
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> int:
    today = _now(now, tz).date()
    return count_where(records, lambda r: _local(r, tz).date() == today)


def within_last_days(
    records: Iterable[ActivityRecord | AnnotatedActivity],
    days: int,
    *,
    now: datetime | None = None,
) -> list[ActivityRecord | AnnotatedActivity]:
    """Records newer than `days` days before now (the weekly view uses 7)."""
    cutoff = _now(now, None) - timedelta(days=days)
    return [r for r in records if _activity(r).occurred_at > cutoff]


def histogram_by_hour(
    records: Iterable[ActivityRecord | AnnotatedActivity],
    *,
    tz: tzinfo | None = None,
) -> list[int]:
    """Count records per hour of day. Always returns 24 buckets."""
    counts = [0] * 24
    for record in records:
        counts[_local(record, tz).hour] += 1
    return counts


def histogram_by_day(
    records: Iterable[ActivityRecord | AnnotatedActivity],
    window_days: int = 7,
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> list[Bucket]:
    """Count records per calendar day over the trailing window, oldest first.

    Every day in the window has a bucket, including empty ones.
    """
    today = _now(now, tz).date()
    days = [today - timedelta(days=offset) for offset in range(window_days - 1, -1, -1)]
    counts = Counter(_local(record, tz).date() for record in records)
    return [
        Bucket(
            key=day,
            label=day.strftime("%a"),
            detail=f"{day.strftime('%b')} {day.day}",
            count=counts.get(day, 0),
        )
        for day in days
    ]


def histogram_by_month(
    records: Iterable[ActivityRecord | AnnotatedActivity],
    window_months: int = 12,
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> list[Bucket]:
    """Count records per calendar month over the trailing window, oldest first.

    Every month in the window has a bucket, including empty ones.
    """
    this_month = _now(now, tz).date().replace(day=1)
    months = [
        this_month - relativedelta(months=offset)
        for offset in range(window_months - 1, -1, -1)
    ]
    counts = Counter(_local(record, tz).date().replace(day=1) for record in records)
    return [
        Bucket(
            key=month,
            label=month.strftime("%b"),
            detail=month.strftime("%b %Y"),
            count=counts.get(month, 0),
        )
        for month in months
    ]


def peak_hour(
    records: Sequence[ActivityRecord | AnnotatedActivity],
    *,
    tz: tzinfo | None = None,
) -> str:
    """Label of the busiest hour; the earliest hour wins ties.

    Returns "N/A" for an empty collection rather than pretending midnight.
    """
    if not records:
        return NO_PEAK_HOUR
    counts = histogram_by_hour(records, tz=tz)
    # index() returns the first, i.e. lowest, hour with the maximum count
    return format_hour(counts.index(max(counts)))


def spending_breakdown(annotated: Iterable[AnnotatedActivity]) -> SpendingBreakdown:
    statuses = Counter(item.spending_status for item in annotated)
    return SpendingBreakdown(
        spent=statuses[SpendingStatus.SPENT],
        not_spent=statuses[SpendingStatus.NOT_SPENT],
        unannotated=statuses[SpendingStatus.UNKNOWN],
    )


def summarize(
    annotated: Sequence[AnnotatedActivity],
    device_count: int,
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> DashboardSummary:
    breakdown = spending_breakdown(annotated)
    return DashboardSummary(
        total_opens=total_count(annotated),
        opens_today=opens_today(annotated, now=now, tz=tz),
        device_count=device_count,
        peak_hour=peak_hour(annotated, tz=tz),
        spent_count=breakdown.spent,
        not_spent_count=breakdown.not_spent,
        unannotated_count=breakdown.unannotated,
    )
