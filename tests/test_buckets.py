"""Tests for bucket arithmetic and granularity strategies."""
from datetime import date, datetime, timedelta, timezone

import pytest
from statlake_core.buckets import (
    BucketKey,
    Granularity,
    floor_hour,
    month_bounds,
    month_of,
    previous_month,
    to_naive_utc,
)

TS = datetime(2024, 3, 14, 9, 40, 12)


class TestGranularity:
    """Per-tier storage details."""

    def test_tables_and_key_columns(self):
        assert Granularity.HOUR.table == 'analytics_hourly'
        assert Granularity.DAY.key_column == 'date'
        assert Granularity.MONTH.key_column == 'year_month'

    def test_source_tiers(self):
        assert Granularity.HOUR.source is None
        assert Granularity.DAY.source is Granularity.HOUR
        assert Granularity.MONTH.source is Granularity.DAY

    def test_bucket_of(self):
        assert Granularity.HOUR.bucket_of(TS) == datetime(2024, 3, 14, 9)
        assert Granularity.DAY.bucket_of(TS) == date(2024, 3, 14)
        assert Granularity.MONTH.bucket_of(TS) == '2024-03'

    def test_normalize_strings(self):
        assert Granularity.HOUR.normalize('2024-03-14T09:40:00') == datetime(2024, 3, 14, 9)
        assert Granularity.DAY.normalize('2024-03-14') == date(2024, 3, 14)
        assert Granularity.MONTH.normalize('2024-03-14') == '2024-03'

    def test_normalize_rejects_bad_month(self):
        with pytest.raises(ValueError):
            Granularity.MONTH.normalize('2024-13')

    def test_labels(self):
        assert Granularity.HOUR.label(TS) == '2024-03-14T09'
        assert Granularity.DAY.label(TS) == '2024-03-14'
        assert Granularity.MONTH.label(TS) == '2024-03'

    def test_format_labels(self):
        """Test chart labels per tier."""
        assert Granularity.HOUR.format_label(TS) == '09:00'
        assert Granularity.DAY.format_label(TS) == 'Mar 14'
        assert Granularity.MONTH.format_label('2024-03') == 'Mar 2024'


class TestBucketHelpers:
    """Time helpers."""

    def test_to_naive_utc_converts_aware(self):
        aware = datetime(2024, 3, 14, 10, 0, tzinfo=timezone(timedelta(hours=1)))
        assert to_naive_utc(aware) == datetime(2024, 3, 14, 9, 0)

    def test_floor_hour(self):
        assert floor_hour(TS) == datetime(2024, 3, 14, 9)

    def test_month_bounds_december(self):
        assert month_bounds('2024-12') == (date(2024, 12, 1), date(2025, 1, 1))

    def test_previous_month_wraps_year(self):
        assert previous_month(date(2024, 1, 15)) == '2023-12'
        assert month_of(date(2024, 2, 29)) == '2024-02'

    def test_bucket_key_label(self):
        key = BucketKey.of(3, Granularity.DAY, '2024-03-14')
        assert key.bucket_start == date(2024, 3, 14)
        assert key.label() == 'daily:3:2024-03-14'

    def test_bucket_key_containing(self):
        key = BucketKey.containing(1, Granularity.HOUR, TS)
        assert key == BucketKey(1, Granularity.HOUR, datetime(2024, 3, 14, 9))
