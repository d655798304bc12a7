"""End-to-end tests for dump imports through the coordinator."""
from datetime import date, datetime

import pytest
from statlake_core.buckets import BucketKey, Granularity
from statlake_core.chunk_worker import ImportChunkWorker
from statlake_core.config import AnalyticsConfig, ImportConfig, ImportStatus
from statlake_core.exceptions import FileProcessingError
from statlake_core.importer import ImportCoordinator, estimate_duration
from statlake_core.jobs import InlineJobQueue
from statlake_core.rollup_store import RollupStore


@pytest.fixture
def import_config():
    """Four chunks for the standard dump (11 statements, 3 per chunk)."""
    return AnalyticsConfig(database=':memory:',
                           imports=ImportConfig(statements_per_chunk=3, batch_size=25))


@pytest.fixture
def queue():
    return InlineJobQueue()


@pytest.fixture
def coordinator(conn, queue, import_config):
    return ImportCoordinator(conn, queue, import_config)


def totals(conn, config, granularity):
    store = RollupStore(conn, config)
    page_views = events = 0
    for site_id in store.site_ids(granularity):
        for row in store.read_range(site_id, granularity, date(2024, 1, 1), date(2025, 1, 1)):
            page_views += row.page_views
            events += row.events
    return page_views, events


class TestImport:
    """Full imports with synchronous dispatch."""

    def test_round_trip(self, conn, coordinator, import_config, standard_dump, sites):
        path = standard_dump.write()
        job_id = coordinator.submit(path)
        job = coordinator.jobs.get(job_id)
        assert job.status is ImportStatus.COMPLETED
        assert job.total_chunks == 4
        assert job.chunks_processed == 4
        assert (job.page_views_imported, job.events_imported, job.errors) == (100, 10, 0)
        assert job.details['websites'] == 2
        assert not path.exists()

        assert totals(conn, import_config, Granularity.HOUR) == (100, 10)
        assert totals(conn, import_config, Granularity.DAY) == (100, 10)
        assert totals(conn, import_config, Granularity.MONTH) == (100, 10)

        store = RollupStore(conn, import_config)
        blog = sites.find(domain='blog.example.com')
        shop = sites.find(domain='shop.example.com')
        day = store.read_range(blog, Granularity.DAY, date(2024, 3, 14), date(2024, 3, 15))[0]
        assert day.top_pages == [('/home', 40), ('/about', 10)]
        assert day.top_events == [('signup', 7), ('download', 3)]
        shop_day = store.read_range(shop, Granularity.DAY, date(2024, 3, 14), date(2024, 3, 15))[0]
        assert shop_day.devices == [('mobile', 50)]
        hour = store.read(BucketKey.of(blog, Granularity.HOUR, datetime(2024, 3, 14, 10)))
        assert hour.top_events == [('signup', 7), ('download', 3)]
        assert hour.page_views == 0

    def test_gzip_dump(self, conn, coordinator, import_config, standard_dump):
        path = standard_dump.write('umami.sql.gz', gz=True)
        job = coordinator.jobs.get(coordinator.submit(path))
        assert job.status is ImportStatus.COMPLETED
        assert totals(conn, import_config, Granularity.DAY) == (100, 10)

    def test_chunks_staggered(self, coordinator, queue, standard_dump):
        coordinator.submit(standard_dump.write())
        chunk_delays = [delay for name, delay in queue.delays if ':chunk:' in name]
        assert chunk_delays == [0.0, 2.0, 4.0, 6.0]

    def test_keep_file(self, conn, queue, standard_dump):
        config = AnalyticsConfig(database=':memory:', imports=ImportConfig(delete_file_on_finish=False))
        path = standard_dump.write()
        ImportCoordinator(conn, queue, config).submit(path)
        assert path.exists()

    def test_out_of_order_completion(self, conn, import_config, standard_dump):
        queue = InlineJobQueue(defer=True)
        coordinator = ImportCoordinator(conn, queue, import_config)
        job_id = coordinator.submit(standard_dump.write())
        assert coordinator.jobs.get(job_id).status is ImportStatus.SUBMITTED
        queue.run_pending(order=lambda tasks: list(reversed(tasks)))
        job = coordinator.jobs.get(job_id)
        assert job.status is ImportStatus.COMPLETED
        assert (job.page_views_imported, job.events_imported) == (100, 10)
        assert totals(conn, import_config, Granularity.MONTH) == (100, 10)

    def test_chunk_failure_fails_job(self, conn, coordinator, import_config, standard_dump, monkeypatch):
        original = ImportChunkWorker.run

        def run(worker):
            if worker.chunk.index == 1:
                raise RuntimeError('disk on fire')
            return original(worker)

        monkeypatch.setattr(ImportChunkWorker, 'run', run)
        path = standard_dump.write()
        job = coordinator.jobs.get(coordinator.submit(path))
        assert job.status is ImportStatus.FAILED
        assert job.error.startswith('Chunk 1 (lines ')
        assert 'disk on fire' in job.error
        # later chunks see a terminal job and do nothing
        assert job.chunks_processed == 1
        assert not path.exists()

    def test_no_events(self, coordinator, dump_builder):
        dump_builder.website('w1', 'Blog', 'blog.example.com')
        job = coordinator.jobs.get(coordinator.submit(dump_builder.write()))
        assert job.status is ImportStatus.COMPLETED
        assert job.total_chunks == 0
        assert job.summary == 'No website_event statements found'

    def test_missing_file(self, coordinator, tmp_path):
        with pytest.raises(FileProcessingError):
            coordinator.submit(tmp_path / 'nope.sql')

    def test_run_is_not_repeated(self, coordinator, queue, standard_dump):
        job_id = coordinator.submit(standard_dump.write())
        dispatched = len(queue.delays)
        coordinator.run(job_id)
        assert len(queue.delays) == dispatched


class TestDryRun:
    """Analysis without writing rollups."""

    def test_analysis(self, conn, coordinator, import_config, standard_dump):
        path = standard_dump.write()
        job = coordinator.jobs.get(coordinator.submit(path, dry_run=True))
        assert job.status is ImportStatus.COMPLETED
        assert job.summary.startswith('Dry run: 2 websites, 100 page views, 10 events')
        details = job.details
        assert (details['websites'], details['sessions']) == (2, 3)
        assert (details['page_views'], details['events'], details['errors']) == (100, 10, 0)
        assert details['statements']['website_event'] == 11
        assert details['estimated_duration'] == 30
        assert details['compressed'] is False
        assert [w['domain'] for w in details['websites_found']] == ['blog.example.com', 'shop.example.com']
        assert path.exists()
        assert totals(conn, import_config, Granularity.DAY) == (0, 0)

    def test_line_limit(self, conn, queue, standard_dump):
        config = AnalyticsConfig(database=':memory:', imports=ImportConfig(analyze_line_limit=20))
        analysis = ImportCoordinator(conn, queue, config).analyze(standard_dump.write())
        assert analysis['truncated'] is True
        assert analysis['page_views'] < 100

    def test_estimate_duration(self):
        assert estimate_duration(0) == 30
        assert estimate_duration(120000) == 120


class TestPlanning:
    """Website mapping and chunk discovery."""

    def test_chunks_cover_whole_statements(self, coordinator, standard_dump):
        plan = coordinator.discover_chunks(standard_dump.write())
        assert [c.statements for c in plan] == [3, 3, 3, 2]
        assert len(plan.session_ranges) == 2
        for before, after in zip(plan.chunks, plan.chunks[1:]):
            assert after.start_line == before.end_line + 1

    def test_map_websites_reuses_sites(self, coordinator, sites, standard_dump):
        existing = sites.find_or_create('Blog', 'blog.example.com')
        sites_map = coordinator.map_websites(standard_dump.write())
        assert len(sites_map) == 2
        assert existing in sites_map.values()
