"""Process one chunk (a line range of whole ``website_event`` statements).

A worker owns its accumulators; nothing is shared with other chunks. Flushes
are keyed ``<job>:<chunk>:<flush>:<tier>:<site>:<bucket>`` and recorded in the
delta ledger, so a retried chunk re-applies nothing it already merged.
"""
from __future__ import annotations
import logging
import pathlib
from dataclasses import asdict, dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union

import duckdb

from .buckets import Granularity
from .config import AnalyticsConfig
from .dump_reader import SqlDumpStreamReader
from .exceptions import DumpFormatError
from .pipeline_timer import PipelineTimer
from .rollup_store import RollupStore
from .rollups import RollupBatch
from .sites import SiteRegistry
from .sql_parser import Scalar, StatementScanner, parse_insert
from .umami import EVENT_TABLE, SESSION_TABLE, SessionRecord, event_from_row, session_from_row, to_raw_event

logger = logging.getLogger(__name__)

LineRange = Tuple[int, int]


@dataclass
class ChunkSpec:
    index: int
    start_line: int
    end_line: int
    statements: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class ChunkResult:
    page_views: int = 0
    events: int = 0
    errors: int = 0
    sessions_resolved: int = 0
    flushes: int = 0
    rows_merged: int = 0
    rows_already_applied: int = 0
    integrity_errors: int = 0


def iter_table_rows(
    reader: SqlDumpStreamReader,
    table: str,
    start: int = 1,
    end: Optional[int] = None,
    on_error=None,
) -> Iterator[Tuple[Optional[List[str]], List[Scalar]]]:
    """Yield ``(columns, values)`` for every row of ``table`` inside the line range.

    Malformed statements and rows are passed to ``on_error`` and skipped.
    """
    scanner = StatementScanner(tables=[table])
    for statement in scanner.scan(reader.iter_range(start, end), first_line=start):
        try:
            insert = parse_insert(statement.text, on_error=on_error)
        except DumpFormatError as e:
            if on_error is None:
                raise
            on_error(e)
            continue
        for values in insert.rows:
            yield insert.columns, values


class ImportChunkWorker:
    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        job_id: int,
        chunk: ChunkSpec,
        file_path: Union[str, pathlib.Path],
        sites_map: Dict[str, int],
        session_ranges: Sequence[LineRange] = (),
        config: Optional[AnalyticsConfig] = None,
    ):
        self.conn = conn
        self.job_id = job_id
        self.chunk = chunk
        self.file_path = pathlib.Path(file_path)
        self.sites_map = dict(sites_map)
        self.session_ranges = list(session_ranges)
        self.config = config or AnalyticsConfig()
        self.store = RollupStore(conn, self.config)
        self.sites = SiteRegistry(conn)
        self.batch = RollupBatch(tuple(Granularity), self.config.aggregation.max_tracked_values)
        self.result = ChunkResult()
        self._flush_no = 0

    def _on_error(self, exc: DumpFormatError) -> None:
        self.result.errors += 1
        logger.debug(f"Chunk {self.chunk.index}: skipped malformed input: {exc}")

    def _site_for(self, website_id: str) -> int:
        site_id = self.sites_map.get(website_id)
        if site_id is None:
            site_id = self.sites.placeholder_for(website_id)
            logger.info(f"Created placeholder site {site_id} for unknown website {website_id}")
            self.sites_map[website_id] = site_id
        return site_id

    def referenced_sessions(self, reader: SqlDumpStreamReader) -> Set[str]:
        """Pass (a): session ids used by this chunk's events."""
        needed: Set[str] = set()
        for columns, values in iter_table_rows(reader, EVENT_TABLE, self.chunk.start_line,
                                               self.chunk.end_line, on_error=lambda e: None):
            try:
                needed.add(event_from_row(columns, values).session_id)
            except DumpFormatError:
                continue
        return needed

    def resolve_sessions(self, reader: SqlDumpStreamReader, needed: Set[str]) -> Dict[str, SessionRecord]:
        """Pass (b): session details from the recorded ranges plus this chunk's own range."""
        sessions: Dict[str, SessionRecord] = {}
        if not needed:
            return sessions
        ranges = sorted(set(self.session_ranges) | {(self.chunk.start_line, self.chunk.end_line)})
        for start, end in ranges:
            for columns, values in iter_table_rows(reader, SESSION_TABLE, start, end,
                                                   on_error=lambda e: None):
                try:
                    session = session_from_row(columns, values)
                except DumpFormatError:
                    continue
                if session.session_id in needed:
                    sessions[session.session_id] = session
            if len(sessions) == len(needed):
                break
        return sessions

    def run(self) -> ChunkResult:
        timer = PipelineTimer()
        with SqlDumpStreamReader(self.file_path) as reader:
            with timer.phase('sessions'):
                needed = self.referenced_sessions(reader)
                sessions = self.resolve_sessions(reader, needed)
                self.result.sessions_resolved = len(sessions)

            with timer.phase('events'):
                batch_size = self.config.imports.batch_size
                for columns, values in iter_table_rows(reader, EVENT_TABLE, self.chunk.start_line,
                                                       self.chunk.end_line, on_error=self._on_error):
                    try:
                        record = event_from_row(columns, values)
                    except DumpFormatError as e:
                        self._on_error(e)
                        continue
                    event = to_raw_event(record, self._site_for(record.website_id),
                                         sessions.get(record.session_id))
                    self.batch.observe(event)
                    if event.is_page_view:
                        self.result.page_views += 1
                    else:
                        self.result.events += 1
                    if self.batch.observed >= batch_size:
                        self.flush()
                self.flush()

        logger.info(
            f"Job {self.job_id} chunk {self.chunk.index} (lines {self.chunk.start_line}-{self.chunk.end_line}): "
            f"{self.result.page_views} page views, {self.result.events} events, "
            f"{self.result.errors} errors, {self.result.flushes} flushes ({timer.format_summary()})"
        )
        return self.result

    def delta_id(self, key) -> str:
        g = key.granularity
        return f"{self.job_id}:{self.chunk.index}:{self._flush_no}:{g.value}:{key.site_id}:{g.label(key.bucket_start)}"

    def flush(self) -> None:
        """Merge the accumulated buckets into the store and start a new batch."""
        if not self.batch.observed:
            return
        # one transaction per site, hour rows before their day and month
        by_site: Dict[int, List] = {}
        for row in self.batch.rows(self.store.top_k):
            by_site.setdefault(row.site_id, []).append((row.key, row, self.delta_id(row.key)))
        for deltas in by_site.values():
            merged = self.store.upsert_merge_many(deltas)
            self.result.rows_merged += merged.applied
            self.result.rows_already_applied += merged.already_applied
            self.result.integrity_errors += len(merged.errors)
            for e in merged.errors:
                logger.error(f"Job {self.job_id} chunk {self.chunk.index}: {e}")
        self.batch.clear()
        self._flush_no += 1
        self.result.flushes += 1
