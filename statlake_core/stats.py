"""Read-side stats and chart data served from the rollup tiers.

Queries return pandas frames (``.df()``); the cached wrappers key entries as
``site_<id>_stats_*`` / ``site_<id>_chart_*`` so sweeps can evict them per site.
"""
from __future__ import annotations
import json
from typing import Any, Dict, Optional

import duckdb
import pandas as pd

from .buckets import BucketStart, Granularity
from .cache import StatsCache
from .config import AnalyticsConfig
from .topk import from_json_list, merge_pairs, to_json_list


def granularity_for(period: str) -> Granularity:
    """Tier for a period name; unknown names fall back to daily."""
    try:
        return Granularity(period)
    except ValueError:
        return Granularity.DAY


def _frame(conn: duckdb.DuckDBPyConnection, g: Granularity, site_id: int,
           start: BucketStart, end: BucketStart, columns: str) -> pd.DataFrame:
    key = f'"{g.key_column}"'
    with conn.cursor() as cur:
        return cur.execute(
            f"SELECT {key} AS bucket, {columns} FROM {g.table} "
            f"WHERE site_id = ? AND {key} BETWEEN ? AND ? ORDER BY {key}",
            [site_id, g.normalize(start), g.normalize(end)],
        ).df()


def _merged_breakdown(series: pd.Series, k: int):
    lists = [from_json_list(json.loads(raw)) for raw in series.dropna() if raw]
    return to_json_list(merge_pairs(lists, k))


def site_stats(conn: duckdb.DuckDBPyConnection, site_id: int, start: BucketStart, end: BucketStart,
               period: str = "daily", config: Optional[AnalyticsConfig] = None) -> Dict[str, Any]:
    """Totals and merged top pages/referrers for ``start..end`` (inclusive)."""
    config = config or AnalyticsConfig()
    g = granularity_for(period)
    df = _frame(conn, g, site_id, start, end,
                "page_views, unique_visitors, events, top_pages, top_referrers")
    k = config.top_k(g.value)
    return {
        'period': g.value,
        'total_page_views': int(df['page_views'].sum()) if len(df) else 0,
        'total_unique_visitors': int(df['unique_visitors'].sum()) if len(df) else 0,
        'total_events': int(df['events'].sum()) if len(df) else 0,
        'top_pages': _merged_breakdown(df['top_pages'], k),
        'top_referrers': _merged_breakdown(df['top_referrers'], k),
        'buckets': len(df),
    }


def chart_data(conn: duckdb.DuckDBPyConnection, site_id: int, start: BucketStart, end: BucketStart,
               period: str = "daily") -> Dict[str, list]:
    g = granularity_for(period)
    df = _frame(conn, g, site_id, start, end, "page_views, unique_visitors")
    return {
        'labels': [g.format_label(v) for v in df['bucket'].tolist()],
        'page_views': [int(v) for v in df['page_views'].tolist()],
        'unique_visitors': [int(v) for v in df['unique_visitors'].tolist()],
    }


def _cache_key(kind: str, site_id: int, period: str, start: BucketStart, end: BucketStart) -> str:
    g = granularity_for(period)
    return f"site_{site_id}_{kind}_{g.value}_{g.label(start)}_{g.label(end)}"


def cached_site_stats(cache: StatsCache, conn, site_id: int, start, end, period: str = "daily",
                      config: Optional[AnalyticsConfig] = None) -> Dict[str, Any]:
    config = config or AnalyticsConfig()
    ttl = config.cache_ttl(granularity_for(period).value)
    return cache.remember(
        _cache_key("stats", site_id, period, start, end), ttl,
        lambda: site_stats(conn, site_id, start, end, period, config),
    )


def cached_chart_data(cache: StatsCache, conn, site_id: int, start, end, period: str = "daily",
                      config: Optional[AnalyticsConfig] = None) -> Dict[str, list]:
    config = config or AnalyticsConfig()
    ttl = config.cache_ttl(granularity_for(period).value)
    return cache.remember(
        _cache_key("chart", site_id, period, start, end), ttl,
        lambda: chart_data(conn, site_id, start, end, period),
    )
