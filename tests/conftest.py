import sys
from pathlib import Path

# Add project root to sys.path for local package imports
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import gzip
from datetime import datetime

import pytest

from statlake_core.aggregation import RollupEngine
from statlake_core.cache import StatsCache
from statlake_core.config import AnalyticsConfig
from statlake_core.database_utils import connect
from statlake_core.raw_events import RawEventSource
from statlake_core.sites import SiteRegistry

# Fixed "now" for engine tests: a Wednesday afternoon
NOW = datetime(2024, 3, 20, 12, 30)


@pytest.fixture
def conn():
    """In-memory database with the full schema."""
    conn = connect(':memory:')
    yield conn
    conn.close()


@pytest.fixture
def config():
    return AnalyticsConfig(database=':memory:')


@pytest.fixture
def cache():
    return StatsCache()


@pytest.fixture
def engine(conn, config, cache):
    return RollupEngine(conn, config, cache=cache, clock=lambda: NOW)


@pytest.fixture
def sites(conn):
    return SiteRegistry(conn)


@pytest.fixture
def site_id(sites):
    return sites.find_or_create('example', 'example.com')


@pytest.fixture
def source(conn):
    return RawEventSource(conn)


def _sql(value):
    if value is None:
        return 'NULL'
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace('\\', '\\\\').replace("'", "\\'") + "'"


def _row(values):
    return '(' + ','.join(_sql(v) for v in values) + ')'


class DumpBuilder:
    """Write small Umami MySQL dumps (one row per line, extended inserts)."""

    def __init__(self, directory: Path):
        self.directory = directory
        self.websites = []
        self.sessions = []
        self.events = []
        self.extra_lines = []

    def website(self, website_id, name, domain):
        self.websites.append([website_id, name, domain, None, None, None,
                              '2024-01-01 00:00:00', None, None, None, None])
        return self

    def session(self, session_id, website_id, browser='chrome', os='Mac OS',
                device='desktop', screen='1920x1080'):
        self.sessions.append([session_id, website_id, browser, os, device, screen,
                              'en-GB', 'GB', None, 'London', '2024-01-01 00:00:00', None])
        return self

    def event(self, website_id, session_id, created_at, url_path='/', event_type=1,
              event_name=None, referrer_domain=None, url_query=None):
        event_id = f"e{len(self.events):05d}"
        values = [event_id, website_id, session_id, created_at, url_path, url_query,
                  None, None, referrer_domain, 'Title', event_type, event_name, 'v1', None]
        values += [None] * 11 + ['example.com']
        self.events.append(values)
        return self

    def page_view(self, website_id, session_id, created_at, url_path='/', referrer_domain=None):
        return self.event(website_id, session_id, created_at, url_path, 1, None, referrer_domain)

    def custom_event(self, website_id, session_id, created_at, event_name, url_path='/'):
        return self.event(website_id, session_id, created_at, url_path, 2, event_name)

    def _insert(self, table, rows, per_statement):
        lines = []
        for i in range(0, len(rows), per_statement):
            group = rows[i:i + per_statement]
            lines.append(f"INSERT INTO `{table}` VALUES")
            for j, values in enumerate(group):
                lines.append(_row(values) + (';' if j == len(group) - 1 else ','))
        return lines

    def lines(self, events_per_statement=10, sessions_after=False):
        lines = [
            '-- MySQL dump 10.13  Distrib 8.0.36, for Linux (x86_64)',
            '/*!40101 SET NAMES utf8mb4 */;',
            '/* plain comment',
            '   spanning lines; with a semicolon */',
            'DROP TABLE IF EXISTS `website`;',
            'CREATE TABLE `website` (',
            '  `website_id` varchar(36) NOT NULL,',
            '  `name` varchar(100) NOT NULL,',
            '  PRIMARY KEY (`website_id`)',
            ') ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;',
            'LOCK TABLES `website` WRITE;',
        ]
        lines += self._insert('website', self.websites, 50)
        lines.append('UNLOCK TABLES;')
        session_lines = self._insert('session', self.sessions, 2)
        if not sessions_after:
            lines += session_lines
        lines += self._insert('website_event', self.events, events_per_statement)
        if sessions_after:
            lines += session_lines
        lines += self.extra_lines
        lines.append('-- Dump completed')
        return lines

    def write(self, name='umami.sql', gz=False, **kwargs) -> Path:
        path = self.directory / name
        text = '\n'.join(self.lines(**kwargs)) + '\n'
        if gz:
            with gzip.open(path, 'wt', encoding='utf-8') as f:
                f.write(text)
        else:
            path.write_text(text, encoding='utf-8')
        return path


@pytest.fixture
def dump_builder(tmp_path):
    return DumpBuilder(tmp_path)


W1 = '11111111-aaaa-4aaa-8aaa-000000000001'
W2 = '22222222-bbbb-4bbb-8bbb-000000000002'


@pytest.fixture
def standard_dump(dump_builder):
    """Two websites, three sessions, 100 page views and 10 custom events on 2024-03-14.

    Website 1: 50 page views (40 ``/home``, 10 ``/about``) by two desktop
    sessions, plus all events (7 ``signup``, 3 ``download``) at 10:30+.
    Website 2: 50 page views by one mobile session.
    """
    b = dump_builder
    b.website(W1, 'Blog', 'blog.example.com')
    b.website(W2, 'Shop', 'shop.example.com')
    b.session('s1', W1)
    b.session('s2', W1, browser='firefox', os='Linux')
    b.session('s3', W2, browser='ios', os='iOS', device='mobile', screen='390x844')
    for i in range(100):
        website = W1 if i % 2 == 0 else W2
        session = ('s1' if i % 4 == 0 else 's2') if website == W1 else 's3'
        url = '/about' if i % 5 == 0 else '/home'
        created = f"2024-03-14 {i // 10:02d}:{i % 10 * 5:02d}:00"
        b.page_view(website, session, created, url, referrer_domain='google.com' if i % 3 == 0 else None)
    for j in range(10):
        b.custom_event(W1, 's1', f"2024-03-14 10:{30 + j:02d}:00", 'signup' if j < 7 else 'download')
    return b
