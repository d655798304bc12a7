"""Rollup engine: raw events -> hourly -> daily -> monthly.

Whether an hour has been aggregated is tracked only by the existence of its
hourly row; absence of a row is the pending signal. Day and month rows are
re-derived from the tier below (overwrite), so re-running them is safe.
Within one sweep aggregation always runs before retention cleanup.
"""
from __future__ import annotations
import logging
import time
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

import duckdb

from .buckets import (BucketKey, BucketStart, Granularity, floor_hour,
                      month_of, previous_month, to_naive_utc, utc_now)
from .cache import StatsCache, get_cache
from .config import AnalyticsConfig, EventKind
from .exceptions import RollupIntegrityError
from .pipeline_timer import PipelineTimer
from .raw_events import RawEventSource
from .rollup_store import RollupStore
from .rollups import COUNTERS, DIMENSIONS, RollupBatch, RollupRow
from .sites import SiteRegistry
from .topk import merge_pairs

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)


class RollupEngine:
    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        config: Optional[AnalyticsConfig] = None,
        cache: Optional[StatsCache] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.conn = conn
        self.config = config or AnalyticsConfig()
        self.cache = cache if cache is not None else get_cache()
        self.clock = clock
        self.store = RollupStore(conn, self.config)
        self.source = RawEventSource(conn)
        self.sites = SiteRegistry(conn)

    # -- hourly ------------------------------------------------------------

    def settle_cutoff(self, now: Optional[datetime] = None) -> datetime:
        """Hours ending at or before this instant are eligible."""
        now = to_naive_utc(now or self.clock())
        return now - timedelta(hours=self.config.aggregation.settle_hours)

    def aggregate_hour(self, site_id: int, hour_start: datetime,
                       now: Optional[datetime] = None) -> Optional[RollupRow]:
        """Write the hourly row for one settled hour; None when nothing was written."""
        hour_start = floor_hour(hour_start)
        if hour_start + HOUR > self.settle_cutoff(now):
            logger.debug(f"Hour {hour_start} of site {site_id} not settled yet")
            return None
        key = BucketKey.of(site_id, Granularity.HOUR, hour_start)
        if self.store.exists(key):
            return None

        events = self.source.query_events(site_id, hour_start, hour_start + HOUR)
        if not events:
            return None
        batch = RollupBatch([Granularity.HOUR], self.config.aggregation.max_tracked_values)
        batch.observe_all(events)
        row = batch.buckets[key].to_row(self.store.top_k(Granularity.HOUR))
        if not self.store.insert_if_absent(key, row):
            return None
        return row

    def aggregate_site_hourly(self, site_id: int, now: Optional[datetime] = None) -> int:
        """Aggregate every settled hour of the site's backlog; returns rows written."""
        cutoff = floor_hour(self.settle_cutoff(now))
        written = 0
        for hour_start in self.source.pending_hours(site_id, cutoff):
            try:
                if self.aggregate_hour(site_id, hour_start, now) is not None:
                    written += 1
            except RollupIntegrityError as e:
                logger.error(f"Skipping hour {hour_start} of site {site_id}: {e}")
        return written

    # -- daily / monthly ---------------------------------------------------

    def _derive(self, key: BucketKey, rows: Iterable[RollupRow]) -> RollupRow:
        rows = list(rows)
        k = self.store.top_k(key.granularity)
        derived = RollupRow.empty(key)
        for name in COUNTERS:
            setattr(derived, name, sum(getattr(r, name) for r in rows))
        for name in DIMENSIONS:
            setattr(derived, name, merge_pairs([getattr(r, name) for r in rows], k))
        return derived

    def aggregate_day(self, site_id: int, day: BucketStart) -> Optional[RollupRow]:
        return self.store.refresh_parent(BucketKey.of(site_id, Granularity.DAY, day), self._derive)

    def aggregate_month(self, site_id: int, year_month: BucketStart) -> Optional[RollupRow]:
        return self.store.refresh_parent(BucketKey.of(site_id, Granularity.MONTH, year_month), self._derive)

    def catch_up(self, site_id: int, now: Optional[datetime] = None) -> Dict[str, int]:
        """Bring a site's backlog up to date across all three tiers."""
        now = to_naive_utc(now or self.clock())
        result = {'hourly': self.aggregate_site_hourly(site_id, now), 'daily': 0, 'monthly': 0}
        for day in self.store.stale_parents(site_id, Granularity.DAY, before=now.date()):
            if self.aggregate_day(site_id, day) is not None:
                result['daily'] += 1
        for ym in self.store.stale_parents(site_id, Granularity.MONTH, before=month_of(now)):
            if self.aggregate_month(site_id, ym) is not None:
                result['monthly'] += 1
        return result

    # -- sweeps ------------------------------------------------------------

    def _sweep(self, name: str, per_site: Callable[[int], int], cleanup: Callable[[], Dict]) -> Dict:
        timer = PipelineTimer()
        site_ids = self.sites.site_ids()
        failed: List[int] = []
        written = 0
        pause = self.config.aggregation.site_batch_pause_seconds

        with timer.phase('aggregate'):
            for site_id in site_ids:
                try:
                    written += per_site(site_id)
                except Exception as e:
                    failed.append(site_id)
                    logger.error(f"{name} aggregation failed for site {site_id}: {e}", exc_info=True)
                if pause:
                    time.sleep(pause)

        cleaned: Dict = {}
        if self.config.cleanup.enabled:
            with timer.phase('cleanup'):
                cleaned = cleanup()

        evicted = 0
        if self.config.cache.enabled:
            with timer.phase('cache'):
                evicted = self.invalidate_cache()

        summary = {
            'granularity': name,
            'sites': len(site_ids),
            'failed_sites': failed,
            'rows_written': written,
            'cleaned': cleaned,
            'cache_evicted': evicted,
            'timings': timer.get_summary(),
        }
        logger.info(
            f"{name} sweep: {len(site_ids)} sites, {written} rows, {len(failed)} failures "
            f"({timer.format_summary()})"
        )
        return summary

    def run_hourly(self, now: Optional[datetime] = None) -> Dict:
        now = to_naive_utc(now or self.clock())
        return self._sweep(
            'hourly',
            lambda site_id: self.aggregate_site_hourly(site_id, now),
            lambda: {'source': self.cleanup_source_data(now)},
        )

    def run_daily(self, day: Optional[date] = None, now: Optional[datetime] = None) -> Dict:
        """Derive ``day`` (default yesterday) plus any earlier stale day rows."""
        now = to_naive_utc(now or self.clock())
        target = Granularity.DAY.normalize(day) if day is not None else now.date() - timedelta(days=1)

        def per_site(site_id: int) -> int:
            written = 1 if self.aggregate_day(site_id, target) is not None else 0
            for stale in self.store.stale_parents(site_id, Granularity.DAY, before=target):
                if self.aggregate_day(site_id, stale) is not None:
                    written += 1
            return written

        def cleanup() -> Dict:
            return {
                'source': self.cleanup_source_data(now),
                'hourly': self.cleanup_hourly_rollups(now),
            }

        summary = self._sweep('daily', per_site, cleanup)
        summary['date'] = target.isoformat()
        return summary

    def run_monthly(self, year_month: Optional[str] = None, now: Optional[datetime] = None) -> Dict:
        """Derive ``year_month`` (default previous month) plus earlier stale month rows."""
        now = to_naive_utc(now or self.clock())
        target = Granularity.MONTH.normalize(year_month) if year_month is not None else previous_month(now.date())

        def per_site(site_id: int) -> int:
            written = 1 if self.aggregate_month(site_id, target) is not None else 0
            for stale in self.store.stale_parents(site_id, Granularity.MONTH, before=target):
                if self.aggregate_month(site_id, stale) is not None:
                    written += 1
            return written

        def cleanup() -> Dict:
            return {
                'source': self.cleanup_source_data(now),
                'daily': self.cleanup_daily_rollups(now),
                'monthly': self.cleanup_monthly_rollups(now),
            }

        summary = self._sweep('monthly', per_site, cleanup)
        summary['year_month'] = target
        return summary

    # -- retention ---------------------------------------------------------

    def cleanup_source_data(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Delete aggregated raw rows older than their retention horizon."""
        now = to_naive_utc(now or self.clock())
        retention = self.config.retention
        deleted = {
            'page_views': self.source.delete_events(
                None, now - timedelta(days=retention.page_views), EventKind.PAGE_VIEW),
            'events': self.source.delete_events(
                None, now - timedelta(days=retention.events), EventKind.CUSTOM_EVENT),
        }
        if any(deleted.values()):
            logger.info(f"Source cleanup deleted {deleted['page_views']} page views, {deleted['events']} events")
        return deleted

    def cleanup_hourly_rollups(self, now: Optional[datetime] = None) -> int:
        if not self.config.cleanup.rollups:
            return 0
        now = to_naive_utc(now or self.clock())
        before = floor_hour(now - timedelta(days=self.config.retention.hourly))
        deleted = self.store.delete_covered(Granularity.HOUR, before)
        logger.info(f"Deleted {deleted} hourly rollups before {before}")
        return deleted

    def cleanup_daily_rollups(self, now: Optional[datetime] = None) -> int:
        if not self.config.cleanup.rollups:
            return 0
        now = to_naive_utc(now or self.clock())
        before = (now - timedelta(days=self.config.retention.daily)).date()
        deleted = self.store.delete_covered(Granularity.DAY, before)
        logger.info(f"Deleted {deleted} daily rollups before {before}")
        return deleted

    def cleanup_monthly_rollups(self, now: Optional[datetime] = None) -> int:
        if not self.config.cleanup.rollups:
            return 0
        now = to_naive_utc(now or self.clock())
        before = month_of(now - timedelta(days=self.config.retention.monthly))
        deleted = self.store.delete_before(Granularity.MONTH, before)
        logger.info(f"Deleted {deleted} monthly rollups before {before}")
        return deleted

    # -- cache -------------------------------------------------------------

    def invalidate_cache(self, site_ids: Optional[Iterable[int]] = None) -> int:
        """Evict cached stats and chart entries; all sites when none are given."""
        targets = ['*'] if site_ids is None else [str(s) for s in site_ids]
        evicted = 0
        for target in targets:
            evicted += self.cache.evict(f"site_{target}_stats_*")
            evicted += self.cache.evict(f"site_{target}_chart_*")
        return evicted

    def status(self) -> Dict:
        cutoff = floor_hour(self.settle_cutoff())
        pending = {
            site_id: len(self.source.pending_hours(site_id, cutoff))
            for site_id in self.sites.site_ids()
        }
        return {
            'sites': len(pending),
            'pending_hours': sum(pending.values()),
            'rows': {g.value: self.store.count(g) for g in Granularity},
        }
