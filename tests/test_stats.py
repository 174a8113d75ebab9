"""Tests for dashboard statistics."""

from datetime import date, datetime, timedelta, timezone

import pytest

from wallet_trace.annotations import AnnotatedActivity
from wallet_trace.models import ActivityRecord, AnnotationRecord
from wallet_trace.stats import (
    NO_PEAK_HOUR,
    filter_range,
    format_hour,
    histogram_by_day,
    histogram_by_hour,
    histogram_by_month,
    opens_today,
    peak_hour,
    spending_breakdown,
    summarize,
    total_count,
    within_last_days,
)

UTC = timezone.utc
NOW = datetime(2024, 3, 15, 18, 0, tzinfo=UTC)


def opened(when: datetime, record_id: str = "1") -> ActivityRecord:
    return ActivityRecord(id=record_id, source_id="a", occurred_at=when)


def at_hours(*hours: int) -> list[ActivityRecord]:
    return [
        opened(datetime(2024, 3, 15, hour, tzinfo=UTC), str(i)) for i, hour in enumerate(hours)
    ]


class TestFormatHour:
    @pytest.mark.parametrize(
        "hour,label",
        [(0, "12 AM"), (1, "1 AM"), (9, "9 AM"), (11, "11 AM"), (12, "12 PM"), (15, "3 PM"), (23, "11 PM")],
    )
    def test_labels(self, hour, label):
        assert format_hour(hour) == label


class TestHistogramByHour:
    def test_empty_input_gives_24_zero_buckets(self):
        assert histogram_by_hour([], tz=UTC) == [0] * 24

    def test_counts_in_given_zone(self):
        counts = histogram_by_hour(at_hours(9, 9, 23), tz=UTC)
        assert counts[9] == 2
        assert counts[23] == 1
        assert sum(counts) == 3

    def test_zone_shifts_the_bucket(self):
        counts = histogram_by_hour(at_hours(23), tz=timezone(timedelta(hours=2)))
        assert counts[1] == 1


class TestPeakHour:
    def test_empty_is_not_applicable(self):
        assert peak_hour([], tz=UTC) == NO_PEAK_HOUR == "N/A"

    def test_busiest_hour(self):
        assert peak_hour(at_hours(9, 14, 14), tz=UTC) == "2 PM"

    def test_tie_goes_to_earliest_hour(self):
        assert peak_hour(at_hours(15, 8, 15, 8), tz=UTC) == "8 AM"


class TestHistogramByDay:
    def test_window_is_pre_seeded_oldest_first(self):
        buckets = histogram_by_day([], now=NOW, tz=UTC)
        assert len(buckets) == 7
        assert buckets[0].key == date(2024, 3, 9)
        assert buckets[-1].key == date(2024, 3, 15)
        assert all(b.count == 0 for b in buckets)

    def test_labels(self):
        bucket = histogram_by_day([], now=NOW, tz=UTC)[-1]
        assert bucket.label == "Fri"
        assert bucket.detail == "Mar 15"

    def test_counts_and_ignores_outside_window(self):
        records = [
            opened(datetime(2024, 3, 15, 8, tzinfo=UTC), "1"),
            opened(datetime(2024, 3, 15, 9, tzinfo=UTC), "2"),
            opened(datetime(2024, 3, 10, 9, tzinfo=UTC), "3"),
            opened(datetime(2024, 3, 1, 9, tzinfo=UTC), "4"),
        ]
        counts = {b.key: b.count for b in histogram_by_day(records, now=NOW, tz=UTC)}
        assert counts[date(2024, 3, 15)] == 2
        assert counts[date(2024, 3, 10)] == 1
        assert sum(counts.values()) == 3


class TestHistogramByMonth:
    def test_window_is_pre_seeded_oldest_first(self):
        buckets = histogram_by_month([], now=NOW, tz=UTC)
        assert len(buckets) == 12
        assert buckets[0].key == date(2023, 4, 1)
        assert buckets[-1].key == date(2024, 3, 1)
        assert buckets[-1].label == "Mar"
        assert buckets[0].detail == "Apr 2023"

    def test_counts_per_month(self):
        records = [
            opened(datetime(2024, 3, 1, tzinfo=UTC), "1"),
            opened(datetime(2024, 1, 31, tzinfo=UTC), "2"),
            opened(datetime(2024, 1, 2, tzinfo=UTC), "3"),
            opened(datetime(2022, 1, 2, tzinfo=UTC), "4"),
        ]
        counts = {b.key: b.count for b in histogram_by_month(records, now=NOW, tz=UTC)}
        assert counts[date(2024, 3, 1)] == 1
        assert counts[date(2024, 1, 1)] == 2
        assert sum(counts.values()) == 3

    def test_custom_window(self):
        assert len(histogram_by_month([], 3, now=NOW, tz=UTC)) == 3


class TestFilters:
    def test_filter_range_is_half_open(self):
        records = at_hours(8, 9, 10)
        start = datetime(2024, 3, 15, 9, tzinfo=UTC)
        end = datetime(2024, 3, 15, 10, tzinfo=UTC)
        assert [r.occurred_at.hour for r in filter_range(records, start, end)] == [9]
        assert len(filter_range(records, start=start)) == 2
        assert len(filter_range(records, end=end)) == 2

    def test_opens_today(self):
        records = at_hours(1, 17) + [opened(datetime(2024, 3, 14, 23, tzinfo=UTC), "x")]
        assert opens_today(records, now=NOW, tz=UTC) == 2

    def test_within_last_days(self):
        records = [
            opened(NOW - timedelta(days=1), "1"),
            opened(NOW - timedelta(days=8), "2"),
        ]
        assert [r.id for r in within_last_days(records, 7, now=NOW)] == ["1"]


class TestSummary:
    def annotated(self):
        def note(doc_id, activity_id, spent):
            return AnnotationRecord(
                id=doc_id,
                activity_id=activity_id,
                is_spent=spent,
                spent_with="Coffee" if spent else "",
            )

        records = at_hours(9, 9, 14)
        return [
            AnnotatedActivity(records[0], note("r0", "0", True)),
            AnnotatedActivity(records[1], note("r1", "1", False)),
            AnnotatedActivity(records[2]),
        ]

    def test_spending_breakdown(self):
        breakdown = spending_breakdown(self.annotated())
        assert (breakdown.spent, breakdown.not_spent, breakdown.unannotated) == (1, 1, 1)

    def test_summarize(self):
        summary = summarize(self.annotated(), 2, now=NOW, tz=UTC)
        assert summary.total_opens == 3
        assert summary.opens_today == 3
        assert summary.device_count == 2
        assert summary.peak_hour == "9 AM"
        assert summary.spent_count == 1
        assert summary.not_spent_count == 1
        assert summary.unannotated_count == 1

    def test_summarize_empty(self):
        summary = summarize([], 0, now=NOW, tz=UTC)
        assert summary.total_opens == 0
        assert summary.peak_hour == "N/A"

    def test_total_count_accepts_either_record_kind(self):
        annotated = self.annotated()
        assert total_count(annotated) == 3
        assert total_count([item.activity for item in annotated]) == 3
