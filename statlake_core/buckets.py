"""Time bucket keys and the per-granularity storage strategy.

Each :class:`Granularity` member carries everything that differs between the
hourly, daily and monthly tiers (table, key column, bucket arithmetic), so
callers pick a tier once instead of branching on strings per query.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Union

BucketStart = Union[datetime, date, str]


def utc_now() -> datetime:
    """Naive UTC now; all timestamps stored in DuckDB are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def floor_hour(ts: datetime) -> datetime:
    return to_naive_utc(ts).replace(minute=0, second=0, microsecond=0)


def month_of(value: Union[date, datetime]) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def month_bounds(year_month: str) -> tuple[date, date]:
    """Return [first day, first day of next month) for ``YYYY-MM``."""
    year, month = (int(p) for p in year_month.split("-", 1))
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, end


def previous_month(today: date) -> str:
    first = today.replace(day=1)
    return month_of(first - timedelta(days=1))


class Granularity(Enum):
    HOUR = "hourly"
    DAY = "daily"
    MONTH = "monthly"

    @property
    def table(self) -> str:
        return {
            Granularity.HOUR: "analytics_hourly",
            Granularity.DAY: "analytics_daily",
            Granularity.MONTH: "analytics_monthly",
        }[self]

    @property
    def key_column(self) -> str:
        return {
            Granularity.HOUR: "hour_start",
            Granularity.DAY: "date",
            Granularity.MONTH: "year_month",
        }[self]

    @property
    def source(self) -> "Granularity | None":
        """The next-lower tier this tier is derived from."""
        return {
            Granularity.HOUR: None,
            Granularity.DAY: Granularity.HOUR,
            Granularity.MONTH: Granularity.DAY,
        }[self]

    @property
    def rank(self) -> int:
        """Position from the finest tier (hourly is 0)."""
        return list(Granularity).index(self)

    def child_range(self, value: BucketStart) -> tuple[BucketStart, BucketStart]:
        """Half-open range of source-tier bucket starts that make up ``value``."""
        value = self.normalize(value)
        if self is Granularity.DAY:
            start = datetime(value.year, value.month, value.day)
            return start, start + timedelta(days=1)
        if self is Granularity.MONTH:
            return month_bounds(value)
        raise ValueError("Hourly rows are derived from raw events")

    def bucket_of(self, ts: datetime) -> BucketStart:
        """Bucket start containing ``ts`` in this tier's storage type."""
        ts = to_naive_utc(ts)
        if self is Granularity.HOUR:
            return floor_hour(ts)
        if self is Granularity.DAY:
            return ts.date()
        return month_of(ts)

    def normalize(self, value: BucketStart) -> BucketStart:
        """Coerce a user supplied bucket start to the storage type."""
        if self is Granularity.HOUR:
            if isinstance(value, str):
                value = datetime.fromisoformat(value)
            if not isinstance(value, datetime):
                value = datetime(value.year, value.month, value.day)
            return floor_hour(value)
        if self is Granularity.DAY:
            if isinstance(value, str):
                return date.fromisoformat(value[:10])
            if isinstance(value, datetime):
                return value.date()
            return value
        if isinstance(value, str):
            month_bounds(value[:7])  # validates YYYY-MM
            return value[:7]
        return month_of(value)

    def label(self, value: BucketStart) -> str:
        """Stable text form used in ledger ids and cache keys."""
        value = self.normalize(value)
        if self is Granularity.HOUR:
            return value.strftime("%Y-%m-%dT%H")
        if self is Granularity.DAY:
            return value.isoformat()
        return value

    def format_label(self, value: BucketStart) -> str:
        """Human chart label: ``09:00``, ``Mar 14`` or ``Mar 2024``."""
        value = self.normalize(value)
        if self is Granularity.HOUR:
            return value.strftime("%H:%M")
        if self is Granularity.DAY:
            return f"{value.strftime('%b')} {value.day}"
        start, _ = month_bounds(value)
        return start.strftime("%b %Y")


@dataclass(frozen=True)
class BucketKey:
    """Unique key of a rollup row: (site, granularity, bucket start)."""
    site_id: int
    granularity: Granularity
    bucket_start: BucketStart

    @classmethod
    def of(cls, site_id: int, granularity: Granularity, value: BucketStart) -> "BucketKey":
        return cls(int(site_id), granularity, granularity.normalize(value))

    @classmethod
    def containing(cls, site_id: int, granularity: Granularity, ts: datetime) -> "BucketKey":
        return cls(int(site_id), granularity, granularity.bucket_of(ts))

    def label(self) -> str:
        return f"{self.granularity.value}:{self.site_id}:{self.granularity.label(self.bucket_start)}"
