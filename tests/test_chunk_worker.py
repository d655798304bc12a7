"""Tests for the per-chunk import worker."""
from datetime import date

import pytest
from statlake_core.buckets import Granularity
from statlake_core.chunk_worker import ImportChunkWorker, iter_table_rows
from statlake_core.config import AnalyticsConfig, ImportConfig
from statlake_core.dump_reader import SqlDumpStreamReader
from statlake_core.importer import ImportCoordinator
from statlake_core.jobs import InlineJobQueue
from statlake_core.rollup_store import RollupStore

W1 = '11111111-aaaa-4aaa-8aaa-000000000001'
W2 = '22222222-bbbb-4bbb-8bbb-000000000002'

@pytest.fixture
def single_chunk_config():
    return AnalyticsConfig(database=':memory:', imports=ImportConfig(statements_per_chunk=100))


def make_worker(conn, config, path, job_id=1):
    coordinator = ImportCoordinator(conn, InlineJobQueue(), config)
    sites_map = coordinator.map_websites(path)
    plan = coordinator.discover_chunks(path)
    assert len(plan) == 1
    return ImportChunkWorker(conn, job_id, plan.chunks[0], path, sites_map, plan.session_ranges, config)


def daily(conn, config, site_id):
    rows = RollupStore(conn, config).read_range(site_id, Granularity.DAY, date(2024, 3, 14), date(2024, 3, 15))
    assert len(rows) == 1
    return rows[0]


class TestChunkWorker:
    """One chunk merged into all three tiers."""

    def test_counts_and_rows(self, conn, single_chunk_config, standard_dump, sites):
        path = standard_dump.write()
        result = make_worker(conn, single_chunk_config, path).run()
        assert (result.page_views, result.events, result.errors) == (100, 10, 0)
        assert result.sessions_resolved == 3
        assert result.flushes == 1
        # 11 + 10 hourly, 2 daily, 2 monthly
        assert result.rows_merged == 25

        shop = sites.find(domain='shop.example.com')
        row = daily(conn, single_chunk_config, shop)
        assert row.page_views == 50
        assert row.unique_visitors == 1
        assert row.devices == [('mobile', 50)]
        assert row.browsers == [('ios', 50)]
        assert row.screen_sizes == [('390x844', 50)]

    def test_sessions_after_events(self, conn, single_chunk_config, standard_dump, sites):
        path = standard_dump.write(sessions_after=True)
        result = make_worker(conn, single_chunk_config, path).run()
        assert result.sessions_resolved == 3
        blog = sites.find(domain='blog.example.com')
        assert daily(conn, single_chunk_config, blog).browsers == [('chrome', 25), ('firefox', 25)]

    def test_missing_session_is_unknown_device(self, conn, single_chunk_config, dump_builder, sites):
        dump_builder.website(W1, 'Blog', 'blog.example.com')
        dump_builder.page_view(W1, 'ghost', '2024-03-14 08:00:00', '/')
        path = dump_builder.write()
        result = make_worker(conn, single_chunk_config, path).run()
        assert result.sessions_resolved == 0
        row = daily(conn, single_chunk_config, sites.find(domain='blog.example.com'))
        assert row.devices == [('unknown', 1)]
        assert row.screen_sizes == []

    def test_rerun_applies_nothing(self, conn, single_chunk_config, standard_dump, sites):
        path = standard_dump.write()
        first = make_worker(conn, single_chunk_config, path).run()
        second = make_worker(conn, single_chunk_config, path).run()
        assert second.rows_merged == 0
        assert second.rows_already_applied == first.rows_merged
        blog = sites.find(domain='blog.example.com')
        assert daily(conn, single_chunk_config, blog).page_views == 50

    def test_small_batches_flush_repeatedly(self, conn, standard_dump, sites):
        config = AnalyticsConfig(database=':memory:',
                                 imports=ImportConfig(statements_per_chunk=100, batch_size=25))
        path = standard_dump.write()
        result = make_worker(conn, config, path).run()
        assert result.flushes == 5
        blog = sites.find(domain='blog.example.com')
        row = daily(conn, config, blog)
        assert row.page_views == 50
        assert row.events == 10
        assert row.top_pages == [('/home', 40), ('/about', 10)]

    def test_malformed_rows_counted(self, conn, single_chunk_config, standard_dump):
        standard_dump.extra_lines.append("INSERT INTO `website_event` VALUES ('bad','row');")
        path = standard_dump.write()
        result = make_worker(conn, single_chunk_config, path).run()
        assert result.errors == 1
        assert result.page_views == 100

    def test_unknown_website_gets_placeholder(self, conn, single_chunk_config, dump_builder, sites):
        dump_builder.session('s1', W2)
        dump_builder.page_view(W2, 's1', '2024-03-14 08:00:00', '/')
        path = dump_builder.write()
        worker = make_worker(conn, single_chunk_config, path)
        assert worker.sites_map == {}
        worker.run()
        placeholder = sites.find(domain='unknown-22222222.com')
        assert placeholder is not None
        assert sites.get(placeholder)['name'] == 'Site 22222222'
        assert worker.sites_map == {W2: placeholder}


class TestIterTableRows:
    """Row iteration within a line range."""

    def test_only_requested_table(self, standard_dump):
        path = standard_dump.write()
        with SqlDumpStreamReader(path) as reader:
            rows = list(iter_table_rows(reader, 'session'))
        assert [values[0] for _, values in rows] == ['s1', 's2', 's3']

    def test_line_range(self, standard_dump):
        path = standard_dump.write()
        with SqlDumpStreamReader(path) as reader:
            lines = list(reader)
        first = next(i for i, line in enumerate(lines, 1) if line.startswith('INSERT INTO `website_event`'))
        with SqlDumpStreamReader(path) as reader:
            rows = list(iter_table_rows(reader, 'website_event', first, first + 10))
        assert len(rows) == 10
        assert rows[0][1][3] == '2024-03-14 00:00:00'
        assert rows[-1][1][4] == '/home'
