"""Rollup rows and the in-memory accumulator that builds them.

The same :class:`RollupBatch` feeds hourly aggregation from raw events and the
per-chunk import workers, so both paths produce identical breakdowns.
"""
from __future__ import annotations
import json
from dataclasses import dataclass, field, fields
from typing import Callable, Dict, Iterable, List, Optional, Set

from .buckets import BucketKey, BucketStart, Granularity
from .raw_events import RawEvent
from .topk import Pair, TopKAccumulator, from_json_list, merge_pairs, to_json_list

COUNTERS = ("page_views", "unique_visitors", "events")
DIMENSIONS = ("top_pages", "top_referrers", "devices", "browsers", "os", "screen_sizes", "top_events")


@dataclass
class RollupRow:
    site_id: int
    granularity: Granularity
    bucket_start: BucketStart
    page_views: int = 0
    unique_visitors: int = 0
    events: int = 0
    top_pages: List[Pair] = field(default_factory=list)
    top_referrers: List[Pair] = field(default_factory=list)
    devices: List[Pair] = field(default_factory=list)
    browsers: List[Pair] = field(default_factory=list)
    os: List[Pair] = field(default_factory=list)
    screen_sizes: List[Pair] = field(default_factory=list)
    top_events: List[Pair] = field(default_factory=list)

    @property
    def key(self) -> BucketKey:
        return BucketKey.of(self.site_id, self.granularity, self.bucket_start)

    @classmethod
    def empty(cls, key: BucketKey) -> "RollupRow":
        return cls(key.site_id, key.granularity, key.bucket_start)

    def breakdown(self, name: str) -> List[Pair]:
        return getattr(self, name)

    def merged(self, other: "RollupRow", k: int) -> "RollupRow":
        """Counters summed, breakdowns merged and cut to ``k``; keeps this row's key."""
        row = RollupRow(self.site_id, self.granularity, self.bucket_start)
        for name in COUNTERS:
            setattr(row, name, getattr(self, name) + getattr(other, name))
        for name in DIMENSIONS:
            setattr(row, name, merge_pairs([getattr(self, name), getattr(other, name)], k))
        return row

    def truncated(self, k: int) -> "RollupRow":
        row = RollupRow(self.site_id, self.granularity, self.bucket_start,
                        self.page_views, self.unique_visitors, self.events)
        for name in DIMENSIONS:
            setattr(row, name, merge_pairs([getattr(self, name)], k))
        return row

    def to_record(self) -> Dict[str, object]:
        """Column values with breakdowns JSON-encoded."""
        record: Dict[str, object] = {name: int(getattr(self, name)) for name in COUNTERS}
        for name in DIMENSIONS:
            record[name] = json.dumps(to_json_list(getattr(self, name)))
        return record

    @classmethod
    def from_record(cls, site_id: int, granularity: Granularity, bucket_start, record: Dict) -> "RollupRow":
        row = cls(site_id, granularity, granularity.normalize(bucket_start))
        for name in COUNTERS:
            setattr(row, name, int(record.get(name) or 0))
        for name in DIMENSIONS:
            raw = record.get(name)
            setattr(row, name, from_json_list(json.loads(raw) if raw else []))
        return row

    def same_values(self, other: "RollupRow") -> bool:
        return all(getattr(self, f.name) == getattr(other, f.name) for f in fields(self))


class RollupAccumulator:
    """Live counts for one bucket, built event by event."""

    def __init__(self, key: BucketKey, max_entries: Optional[int] = None):
        self.key = key
        self.page_views = 0
        self.events = 0
        self.sessions: Set[str] = set()
        self.dimensions: Dict[str, TopKAccumulator] = {
            name: TopKAccumulator(max_entries=max_entries) for name in DIMENSIONS
        }

    def observe(self, event: RawEvent) -> None:
        dims = self.dimensions
        if event.is_page_view:
            self.page_views += 1
            self.sessions.add(event.session_id)
            dims["top_pages"].observe(event.url or "/")
            dims["top_referrers"].observe(event.referrer or None)
            dims["devices"].observe(event.device_type or "unknown")
            dims["browsers"].observe(event.browser or "unknown")
            dims["os"].observe(event.os or "unknown")
            if event.screen_resolution:
                dims["screen_sizes"].observe(event.screen_resolution)
        else:
            self.events += 1
            dims["top_events"].observe(event.event_name or "unknown")

    def merge(self, other: "RollupAccumulator") -> "RollupAccumulator":
        merged = RollupAccumulator(self.key)
        merged.page_views = self.page_views + other.page_views
        merged.events = self.events + other.events
        merged.sessions = self.sessions | other.sessions
        merged.dimensions = {
            name: self.dimensions[name].merge(other.dimensions[name]) for name in DIMENSIONS
        }
        return merged

    @property
    def is_empty(self) -> bool:
        return self.page_views == 0 and self.events == 0

    def to_row(self, k: int) -> RollupRow:
        row = RollupRow.empty(self.key)
        row.page_views = self.page_views
        row.unique_visitors = len(self.sessions)
        row.events = self.events
        for name, acc in self.dimensions.items():
            setattr(row, name, acc.finalize(k))
        return row


class RollupBatch:
    """Accumulators for every bucket touched, across one or more tiers.

    Owned by a single aggregation call or import chunk worker; nothing is shared
    between instances.
    """

    def __init__(self, granularities: Iterable[Granularity] = tuple(Granularity),
                 max_entries: Optional[int] = None):
        self.granularities = tuple(granularities)
        self.max_entries = max_entries
        self.buckets: Dict[BucketKey, RollupAccumulator] = {}
        self.observed = 0

    def __len__(self) -> int:
        return len(self.buckets)

    def observe(self, event: RawEvent) -> None:
        self.observed += 1
        for granularity in self.granularities:
            key = BucketKey.containing(event.site_id, granularity, event.occurred_at)
            acc = self.buckets.get(key)
            if acc is None:
                acc = self.buckets[key] = RollupAccumulator(key, self.max_entries)
            acc.observe(event)

    def observe_all(self, events: Iterable[RawEvent]) -> "RollupBatch":
        for event in events:
            self.observe(event)
        return self

    def rows(self, top_k: Callable[[Granularity], int]) -> List[RollupRow]:
        """Finalized rows ordered finest tier first, then by key.

        A parent bucket is therefore always written after the children that
        carry the same events.
        """
        return [
            acc.to_row(top_k(key.granularity))
            for key, acc in sorted(
                self.buckets.items(),
                key=lambda item: (item[0].granularity.rank, item[0].site_id,
                                  item[0].granularity.label(item[0].bucket_start)),
            )
            if not acc.is_empty
        ]

    def clear(self) -> None:
        self.buckets = {}
        self.observed = 0
