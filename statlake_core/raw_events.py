"""Raw page view and custom event storage in DuckDB."""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import duckdb

from .buckets import floor_hour, to_naive_utc
from .config import EventKind
from .user_agent_utils import classify

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawEvent:
    """Canonical event shared by live tracking, stored raw data and imports."""
    site_id: int
    session_id: str
    occurred_at: datetime
    kind: EventKind
    url: Optional[str] = None
    referrer: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    screen_resolution: Optional[str] = None
    is_bounce: bool = False
    time_on_page_seconds: Optional[int] = None
    event_name: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_page_view(self) -> bool:
        return self.kind is EventKind.PAGE_VIEW


_COMMON_COLUMNS = "site_id, session_id, occurred_at, url, referrer, device_type, browser, os, screen_resolution"

_QUERY_SQL = f"""
SELECT * FROM (
    SELECT 'page_view' AS kind, id, {_COMMON_COLUMNS},
           is_bounce, time_on_page_seconds, NULL AS event_name, NULL AS properties
    FROM page_views WHERE site_id = ? AND occurred_at >= ? AND occurred_at < ?
    UNION ALL
    SELECT 'custom_event' AS kind, id, {_COMMON_COLUMNS},
           FALSE, NULL, event_name, properties
    FROM events WHERE site_id = ? AND occurred_at >= ? AND occurred_at < ?
) ORDER BY occurred_at, kind, id
"""


class RawEventSource:
    """Read/write access to the ``page_views`` and ``events`` tables."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def record_page_view(
        self,
        site_id: int,
        session_id: str,
        occurred_at: datetime,
        url: str,
        referrer: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_type: Optional[str] = None,
        browser: Optional[str] = None,
        os: Optional[str] = None,
        screen_resolution: Optional[str] = None,
        is_bounce: bool = False,
        time_on_page_seconds: Optional[int] = None,
    ) -> int:
        if user_agent is not None and device_type is None:
            agent = classify(user_agent)
            device_type, browser, os = agent['device_type'], agent['browser'], agent['os']
        with self.conn.cursor() as cur:
            row = cur.execute(
                f"""
                INSERT INTO page_views ({_COMMON_COLUMNS}, is_bounce, time_on_page_seconds)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                [site_id, session_id, to_naive_utc(occurred_at), url, referrer or None,
                 device_type, browser, os, screen_resolution, is_bounce, time_on_page_seconds],
            ).fetchone()
        return row[0]

    def record_event(
        self,
        site_id: int,
        session_id: str,
        occurred_at: datetime,
        event_name: str,
        properties: Optional[Dict[str, Any]] = None,
        url: Optional[str] = None,
        referrer: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_type: Optional[str] = None,
        browser: Optional[str] = None,
        os: Optional[str] = None,
        screen_resolution: Optional[str] = None,
    ) -> int:
        if user_agent is not None and device_type is None:
            agent = classify(user_agent)
            device_type, browser, os = agent['device_type'], agent['browser'], agent['os']
        with self.conn.cursor() as cur:
            row = cur.execute(
                f"""
                INSERT INTO events ({_COMMON_COLUMNS}, event_name, properties)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                [site_id, session_id, to_naive_utc(occurred_at), url, referrer or None,
                 device_type, browser, os, screen_resolution, event_name,
                 json.dumps(properties or {})],
            ).fetchone()
        return row[0]

    def query_events(self, site_id: int, start: datetime, end: datetime) -> List[RawEvent]:
        """Events of a site in ``[start, end)``, ordered by time."""
        start, end = to_naive_utc(start), to_naive_utc(end)
        with self.conn.cursor() as cur:
            rows = cur.execute(_QUERY_SQL, [site_id, start, end, site_id, start, end]).fetchall()
        return [_to_event(row) for row in rows]

    def oldest_event_time(self, site_id: int) -> Optional[datetime]:
        with self.conn.cursor() as cur:
            row = cur.execute(
                """
                SELECT min(ts) FROM (
                    SELECT min(occurred_at) AS ts FROM page_views WHERE site_id = ?
                    UNION ALL
                    SELECT min(occurred_at) FROM events WHERE site_id = ?
                )
                """,
                [site_id, site_id],
            ).fetchone()
        return row[0] if row else None

    def delete_events(self, site_id: Optional[int], before: datetime, kind: Optional[EventKind] = None) -> int:
        """Delete raw rows older than ``before`` whose hour already has an hourly rollup.

        Rows of hours that are still pending aggregation are kept whatever their
        age, so cleanup can never run ahead of aggregation.
        """
        before = to_naive_utc(before)
        tables = {EventKind.PAGE_VIEW: "page_views", EventKind.CUSTOM_EVENT: "events"}
        selected = [tables[kind]] if kind else list(tables.values())
        deleted = 0
        for table in selected:
            params: List[Any] = [before]
            site_filter = ""
            if site_id is not None:
                site_filter = f"AND {table}.site_id = ?"
                params.append(site_id)
            with self.conn.cursor() as cur:
                result = cur.execute(
                    f"""
                    DELETE FROM {table}
                    WHERE {table}.occurred_at < ? {site_filter}
                      AND EXISTS (
                        SELECT 1 FROM analytics_hourly h
                        WHERE h.site_id = {table}.site_id
                          AND h.hour_start = date_trunc('hour', {table}.occurred_at)
                      )
                    """,
                    params,
                ).fetchone()
            count = result[0] if result else 0
            deleted += count
            logger.debug(f"Deleted {count} rows from {table} older than {before}")
        return deleted

    def pending_hours(self, site_id: int, before: datetime) -> List[datetime]:
        """Hours before ``before`` that hold raw events but no hourly rollup."""
        before = to_naive_utc(before)
        with self.conn.cursor() as cur:
            rows = cur.execute(
                """
                SELECT DISTINCT hr FROM (
                    SELECT date_trunc('hour', occurred_at) AS hr FROM page_views
                    WHERE site_id = ? AND occurred_at < ?
                    UNION
                    SELECT date_trunc('hour', occurred_at) FROM events
                    WHERE site_id = ? AND occurred_at < ?
                ) AS raw
                WHERE NOT EXISTS (
                    SELECT 1 FROM analytics_hourly h WHERE h.site_id = ? AND h.hour_start = raw.hr
                )
                ORDER BY hr
                """,
                [site_id, before, site_id, before, site_id],
            ).fetchall()
        return [floor_hour(r[0]) for r in rows]


def _to_event(row) -> RawEvent:
    (kind, _id, site_id, session_id, occurred_at, url, referrer, device_type, browser, os,
     screen, is_bounce, time_on_page, event_name, properties) = row
    return RawEvent(
        site_id=site_id,
        session_id=session_id,
        occurred_at=occurred_at,
        kind=EventKind(kind),
        url=url,
        referrer=referrer,
        device_type=device_type,
        browser=browser,
        os=os,
        screen_resolution=screen,
        is_bounce=bool(is_bounce),
        time_on_page_seconds=time_on_page,
        event_name=event_name,
        properties=json.loads(properties) if properties else {},
    )
