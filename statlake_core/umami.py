"""Umami dump tables mapped to canonical records.

Rows are read by column name when the INSERT carries a column list, otherwise
by Umami's positional column order.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from .buckets import to_naive_utc
from .config import EventKind
from .exceptions import DumpFormatError
from .raw_events import RawEvent
from .sql_parser import Scalar

WEBSITE_TABLE = "website"
SESSION_TABLE = "session"
EVENT_TABLE = "website_event"

WEBSITE_COLUMNS = [
    "website_id", "name", "domain", "share_id", "reset_at", "user_id",
    "created_at", "updated_at", "deleted_at", "created_by", "team_id",
]
SESSION_COLUMNS = [
    "session_id", "website_id", "browser", "os", "device", "screen",
    "language", "country", "region", "city", "created_at", "distinct_id",
]
WEBSITE_EVENT_COLUMNS = [
    "event_id", "website_id", "session_id", "created_at", "url_path", "url_query",
    "referrer_path", "referrer_query", "referrer_domain", "page_title", "event_type",
    "event_name", "visit_id", "tag", "fbclid", "gclid", "li_fat_id", "msclkid",
    "ttclid", "twclid", "utm_campaign", "utm_content", "utm_medium", "utm_source",
    "utm_term", "hostname",
]

# event_type 1 is a page view; anything else is a custom event
PAGE_VIEW_TYPE = "1"

_MIN_VALUES = {WEBSITE_TABLE: 3, SESSION_TABLE: 10, EVENT_TABLE: 10}
_DEFAULT_COLUMNS = {
    WEBSITE_TABLE: WEBSITE_COLUMNS,
    SESSION_TABLE: SESSION_COLUMNS,
    EVENT_TABLE: WEBSITE_EVENT_COLUMNS,
}


@dataclass
class WebsiteRecord:
    external_id: str
    name: str
    domain: str
    share_id: Optional[str] = None


@dataclass
class SessionRecord:
    session_id: str
    website_id: Optional[str]
    browser: Optional[str]
    os: Optional[str]
    device: Optional[str]
    screen: Optional[str]
    country: Optional[str] = None
    city: Optional[str] = None


@dataclass
class EventRecord:
    event_id: Optional[str]
    website_id: str
    session_id: str
    created_at: datetime
    url_path: str
    url_query: Optional[str]
    referrer_domain: Optional[str]
    referrer_path: Optional[str]
    page_title: Optional[str]
    event_type: str
    event_name: Optional[str]
    tag: Optional[str] = None
    hostname: Optional[str] = None

    @property
    def is_page_view(self) -> bool:
        return self.event_type == PAGE_VIEW_TYPE


def _text(value: Scalar) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text != "" else None


def row_dict(table: str, columns: Optional[List[str]], values: Sequence[Scalar]) -> Dict[str, Scalar]:
    """Name the values of one row; short rows raise :class:`DumpFormatError`."""
    if len(values) < _MIN_VALUES[table]:
        raise DumpFormatError(f"`{table}` row has {len(values)} values")
    names = columns or _DEFAULT_COLUMNS[table]
    if columns and len(columns) != len(values):
        raise DumpFormatError(f"`{table}` row has {len(values)} values for {len(columns)} columns")
    row = dict(zip(names, values))
    if "id" in row and "website_id" not in row and table == WEBSITE_TABLE:
        row["website_id"] = row["id"]
    return row


def parse_timestamp(value: Scalar) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    text = _text(value)
    if text is None:
        raise DumpFormatError("Missing timestamp")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        raise DumpFormatError(f"Invalid timestamp {text!r}")


def website_from_row(columns: Optional[List[str]], values: Sequence[Scalar]) -> WebsiteRecord:
    row = row_dict(WEBSITE_TABLE, columns, values)
    external_id = _text(row.get("website_id"))
    if not external_id:
        raise DumpFormatError("Website row without id")
    name = _text(row.get("name")) or f"Site {external_id[:8]}"
    return WebsiteRecord(external_id, name, _text(row.get("domain")) or "", _text(row.get("share_id")))


def session_from_row(columns: Optional[List[str]], values: Sequence[Scalar]) -> SessionRecord:
    row = row_dict(SESSION_TABLE, columns, values)
    session_id = _text(row.get("session_id"))
    if not session_id:
        raise DumpFormatError("Session row without id")
    return SessionRecord(
        session_id=session_id,
        website_id=_text(row.get("website_id")),
        browser=_text(row.get("browser")),
        os=_text(row.get("os")),
        device=_text(row.get("device")),
        screen=_text(row.get("screen")),
        country=_text(row.get("country")),
        city=_text(row.get("city")),
    )


def event_from_row(columns: Optional[List[str]], values: Sequence[Scalar]) -> EventRecord:
    row = row_dict(EVENT_TABLE, columns, values)
    website_id = _text(row.get("website_id"))
    session_id = _text(row.get("session_id"))
    if not website_id or not session_id:
        raise DumpFormatError("Event row without website or session id")
    event_type = row.get("event_type")
    return EventRecord(
        event_id=_text(row.get("event_id")),
        website_id=website_id,
        session_id=session_id,
        created_at=parse_timestamp(row.get("created_at")),
        url_path=_text(row.get("url_path")) or "/",
        url_query=_text(row.get("url_query")),
        referrer_domain=_text(row.get("referrer_domain")),
        referrer_path=_text(row.get("referrer_path")),
        page_title=_text(row.get("page_title")),
        event_type=PAGE_VIEW_TYPE if event_type is None else str(event_type),
        event_name=_text(row.get("event_name")),
        tag=_text(row.get("tag")),
        hostname=_text(row.get("hostname")),
    )


def to_raw_event(record: EventRecord, site_id: int, session: Optional[SessionRecord] = None) -> RawEvent:
    """Canonical event; device details come from the resolved session."""
    common = dict(
        site_id=site_id,
        session_id=record.session_id,
        occurred_at=record.created_at,
        url=record.url_path,
        referrer=record.referrer_domain,
        device_type=session.device if session else None,
        browser=session.browser if session else None,
        os=session.os if session else None,
        screen_resolution=session.screen if session else None,
    )
    if record.is_page_view:
        return RawEvent(kind=EventKind.PAGE_VIEW, **common)
    properties = {
        "url": record.url_path + (f"?{record.url_query}" if record.url_query else ""),
        "title": record.page_title,
        "tag": record.tag,
        "hostname": record.hostname,
        "country": session.country if session else None,
        "city": session.city if session else None,
    }
    return RawEvent(
        kind=EventKind.CUSTOM_EVENT,
        event_name=record.event_name or "unknown",
        properties=properties,
        **common,
    )
