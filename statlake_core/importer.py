"""Bulk import of Umami SQL dumps.

Flow of one job::

    submitted -> processing -> completed                      (dry run)
    submitted -> processing -> dispatching_chunks -> processing_chunks
              -> completed | failed

Pass 1 maps dump websites to sites, pass 2 finds exact statement boundaries
and dispatches chunk workers through the job queue with a staggered delay.
Chunk completions may arrive in any order; counters are incremented in SQL.
"""
from __future__ import annotations
import logging
import pathlib
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, Iterator, List, Optional, Union

import duckdb

from .chunk_worker import ChunkResult, ChunkSpec, ImportChunkWorker, LineRange, iter_table_rows
from .config import AnalyticsConfig, ImportStatus
from .dump_reader import SqlDumpStreamReader, is_gzipped
from .exceptions import DumpFormatError, FileProcessingError
from .import_jobs import ImportJob, ImportJobStore
from .jobs import JobQueue, RetryPolicy
from .sites import SiteRegistry
from .sql_parser import StatementScanner, parse_insert
from .umami import EVENT_TABLE, SESSION_TABLE, WEBSITE_TABLE, event_from_row, website_from_row

logger = logging.getLogger(__name__)

PathLike = Union[str, pathlib.Path]


@dataclass
class ChunkPlan:
    chunks: List[ChunkSpec] = field(default_factory=list)
    session_ranges: List[LineRange] = field(default_factory=list)

    def __iter__(self) -> Iterator[ChunkSpec]:
        return iter(self.chunks)

    def __len__(self) -> int:
        return len(self.chunks)


def estimate_duration(records: int) -> int:
    """Seconds, at roughly 1000 records per second, never under 30."""
    return int(max(30, records / 1000))


class ImportCoordinator:
    def __init__(self, conn: duckdb.DuckDBPyConnection, queue: JobQueue,
                 config: Optional[AnalyticsConfig] = None):
        self.conn = conn
        self.queue = queue
        self.config = config or AnalyticsConfig()
        self.jobs = ImportJobStore(conn)
        self.sites = SiteRegistry(conn)

    def _retry(self, timeout: int) -> RetryPolicy:
        return RetryPolicy.from_config(self.config.jobs, timeout=timeout)

    # -- submission --------------------------------------------------------

    def submit(self, file_path: PathLike, dry_run: bool = False) -> int:
        path = pathlib.Path(file_path)
        if not path.is_file():
            raise FileProcessingError(f"File not found: {path}")
        job_id = self.jobs.create(str(path), dry_run=dry_run)
        self.queue.enqueue(
            f"import:{job_id}",
            self.run,
            job_id,
            retry=self._retry(self.config.jobs.import_timeout_seconds),
            on_failure=partial(self.on_job_failed, job_id),
        )
        return job_id

    def run(self, job_id: int) -> None:
        """Analyze (dry run) or map, plan and dispatch one import job."""
        job = self.jobs.get(job_id)
        if job.status not in (ImportStatus.SUBMITTED, ImportStatus.PROCESSING):
            logger.info(f"Import job {job_id} already {job.status.value}, not running again")
            return
        if job.status is ImportStatus.SUBMITTED:
            self.jobs.update_status(job_id, ImportStatus.PROCESSING)
        path = pathlib.Path(job.file_path)

        if job.dry_run:
            analysis = self.analyze(path)
            summary = (f"Dry run: {analysis['websites']} websites, {analysis['page_views']} page views, "
                       f"{analysis['events']} events, about {analysis['estimated_duration']}s to import")
            self.jobs.update_status(job_id, ImportStatus.COMPLETED, details=analysis, summary=summary)
            logger.info(f"Import job {job_id}: {summary}")
            return

        sites_map = self.map_websites(path)
        plan = self.discover_chunks(path)
        details = {
            'websites': len(sites_map),
            'chunks': [c.to_dict() for c in plan.chunks],
            'session_ranges': [list(r) for r in plan.session_ranges],
        }
        self.jobs.update_status(job_id, ImportStatus.DISPATCHING_CHUNKS,
                                total_chunks=len(plan), details=details)
        if not plan.chunks:
            self.jobs.update_status(job_id, ImportStatus.COMPLETED,
                                    summary="No website_event statements found")
            self._finish(job_id)
            return

        try:
            self.dispatch(job_id, path, plan, sites_map)
        except Exception as e:
            # chunks may already be queued: never redo dispatch on retry
            logger.error(f"Dispatch of import job {job_id} failed: {e}", exc_info=True)
            self.on_job_failed(job_id, e)
            return
        if not self.jobs.transition(job_id, ImportStatus.DISPATCHING_CHUNKS, ImportStatus.PROCESSING_CHUNKS):
            return
        if self.jobs.complete_if_done(job_id):
            self._finish(job_id)

    def dispatch(self, job_id: int, path: pathlib.Path, plan: ChunkPlan, sites_map: Dict[str, int]) -> None:
        stagger = self.config.imports.stagger_seconds
        for chunk in plan.chunks:
            self.queue.enqueue(
                f"import:{job_id}:chunk:{chunk.index}",
                self.process_chunk,
                job_id, chunk, str(path), sites_map, plan.session_ranges,
                delay=chunk.index * stagger,
                retry=self._retry(self.config.jobs.chunk_timeout_seconds),
                on_failure=partial(self.on_chunk_failed, job_id, chunk),
            )
        logger.info(f"Import job {job_id}: dispatched {len(plan)} chunks, {stagger}s apart")

    # -- passes ------------------------------------------------------------

    def analyze(self, file_path: PathLike) -> Dict[str, Any]:
        """Single pass counting statements and rows per table (dry run)."""
        path = pathlib.Path(file_path)
        statements: Dict[str, int] = {}
        rows: Dict[str, int] = {}
        websites: List[Dict[str, Any]] = []
        counts = {'page_views': 0, 'events': 0, 'errors': 0}
        limit = self.config.imports.analyze_line_limit
        truncated = False

        def on_error(exc: DumpFormatError) -> None:
            counts['errors'] += 1

        scanner = StatementScanner()
        with SqlDumpStreamReader(path) as reader:
            for line in reader:
                if limit and reader.line_number > limit:
                    truncated = True
                    break
                for statement in scanner.feed(line, reader.line_number):
                    table = statement.table.lower()
                    statements[table] = statements.get(table, 0) + 1
                    try:
                        insert = parse_insert(statement.text, on_error=on_error)
                    except DumpFormatError as e:
                        on_error(e)
                        continue
                    rows[table] = rows.get(table, 0) + len(insert.rows)
                    for values in insert.rows:
                        try:
                            if table == WEBSITE_TABLE:
                                w = website_from_row(insert.columns, values)
                                websites.append({'id': w.external_id, 'name': w.name, 'domain': w.domain})
                            elif table == EVENT_TABLE:
                                key = 'page_views' if event_from_row(insert.columns, values).is_page_view else 'events'
                                counts[key] += 1
                        except DumpFormatError as e:
                            on_error(e)
            scanner.close()

        return {
            'file_size': path.stat().st_size,
            'compressed': is_gzipped(path),
            'statements': statements,
            'rows': rows,
            'websites': len(websites),
            'sessions': rows.get(SESSION_TABLE, 0),
            'page_views': counts['page_views'],
            'events': counts['events'],
            'errors': counts['errors'],
            'websites_found': websites,
            'estimated_duration': estimate_duration(counts['page_views'] + counts['events']),
            'truncated': truncated,
        }

    def map_websites(self, file_path: PathLike) -> Dict[str, int]:
        """Pass 1: external website id -> site id (find-or-create by name or domain)."""
        sites_map: Dict[str, int] = {}
        with SqlDumpStreamReader(file_path) as reader:
            for columns, values in iter_table_rows(
                reader, WEBSITE_TABLE,
                on_error=lambda e: logger.warning(f"Skipping malformed website row: {e}"),
            ):
                try:
                    website = website_from_row(columns, values)
                except DumpFormatError as e:
                    logger.warning(f"Skipping malformed website row: {e}")
                    continue
                sites_map[website.external_id] = self.sites.find_or_create(website.name, website.domain)
        logger.info(f"Mapped {len(sites_map)} websites from {file_path}")
        return sites_map

    def discover_chunks(self, file_path: PathLike) -> ChunkPlan:
        """Pass 2: chunks of whole ``website_event`` statements, plus session statement ranges."""
        per_chunk = self.config.imports.statements_per_chunk
        plan = ChunkPlan()
        current: Optional[ChunkSpec] = None
        scanner = StatementScanner(tables=[EVENT_TABLE, SESSION_TABLE], keep_text=False)
        with SqlDumpStreamReader(file_path) as reader:
            for statement in scanner.scan(reader):
                if statement.table.lower() == SESSION_TABLE:
                    plan.session_ranges.append((statement.start_line, statement.end_line))
                    continue
                if current is None:
                    current = ChunkSpec(len(plan.chunks), statement.start_line, statement.end_line)
                current.end_line = statement.end_line
                current.statements += 1
                if current.statements >= per_chunk:
                    plan.chunks.append(current)
                    current = None
        if current is not None:
            plan.chunks.append(current)
        logger.info(
            f"Planned {len(plan.chunks)} chunks and {len(plan.session_ranges)} session statements for {file_path}"
        )
        return plan

    # -- chunk lifecycle ---------------------------------------------------

    def process_chunk(self, job_id: int, chunk: ChunkSpec, file_path: str,
                      sites_map: Dict[str, int], session_ranges: List[LineRange]) -> Optional[ChunkResult]:
        job = self.jobs.get(job_id)
        if job.is_terminal:
            logger.info(f"Job {job_id} is {job.status.value}; skipping chunk {chunk.index}")
            return None
        worker = ImportChunkWorker(self.conn, job_id, chunk, file_path, sites_map,
                                   session_ranges, self.config)
        result = worker.run()
        self.on_chunk_done(job_id, chunk, result)
        return result

    def on_chunk_done(self, job_id: int, chunk: ChunkSpec, result: ChunkResult) -> ImportJob:
        job, completed = self.jobs.record_chunk(
            job_id, page_views=result.page_views, events=result.events, errors=result.errors
        )
        logger.info(f"Job {job_id}: chunk {chunk.index} done ({job.chunks_processed}/{job.total_chunks})")
        if completed:
            logger.info(f"Import job {job_id} completed: {job.summary}")
            self._finish(job_id)
        return job

    def on_chunk_failed(self, job_id: int, chunk: ChunkSpec, exc: BaseException) -> None:
        error = f"Chunk {chunk.index} (lines {chunk.start_line}-{chunk.end_line}) failed: {exc}"
        if self.jobs.mark_failed(job_id, error):
            self._finish(job_id)

    def on_job_failed(self, job_id: int, exc: BaseException) -> None:
        if self.jobs.mark_failed(job_id, str(exc)):
            self._finish(job_id)

    def _finish(self, job_id: int) -> None:
        """Clean up the dump once a job is terminal."""
        job = self.jobs.get(job_id)
        if job.dry_run or not self.config.imports.delete_file_on_finish:
            return
        path = pathlib.Path(job.file_path)
        try:
            path.unlink()
            logger.info(f"Deleted import file {path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not delete import file {path}: {e}")

    def status(self, job_id: int) -> Dict[str, Any]:
        return self.jobs.get(job_id).to_dict()
