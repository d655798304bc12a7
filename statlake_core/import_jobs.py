"""Persistent import job records and their status transitions."""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import duckdb

from .buckets import utc_now
from .config import ImportStatus
from .database_utils import KeyedLocks, run_in_transaction
from .exceptions import ImportJobError

logger = logging.getLogger(__name__)

# chunk workers report on the same job row concurrently
_job_locks = KeyedLocks()

_TRANSITIONS = {
    ImportStatus.SUBMITTED: {ImportStatus.PROCESSING, ImportStatus.FAILED},
    ImportStatus.PROCESSING: {ImportStatus.DISPATCHING_CHUNKS, ImportStatus.COMPLETED, ImportStatus.FAILED},
    ImportStatus.DISPATCHING_CHUNKS: {ImportStatus.PROCESSING_CHUNKS, ImportStatus.COMPLETED, ImportStatus.FAILED},
    ImportStatus.PROCESSING_CHUNKS: {ImportStatus.COMPLETED, ImportStatus.FAILED},
    ImportStatus.COMPLETED: set(),
    ImportStatus.FAILED: set(),
}

_COLUMNS = (
    "id", "status", "file_path", "dry_run", "total_chunks", "chunks_processed",
    "page_views_imported", "events_imported", "errors", "summary", "details", "error",
    "created_at", "updated_at", "completed_at",
)
_UPDATABLE = {"total_chunks", "summary", "details", "error"}


@dataclass
class ImportJob:
    id: int
    status: ImportStatus
    file_path: str
    dry_run: bool = False
    total_chunks: int = 0
    chunks_processed: int = 0
    page_views_imported: int = 0
    events_imported: int = 0
    errors: int = 0
    summary: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.value in ImportStatus.terminal_values()

    @property
    def progress(self) -> float:
        if self.status is ImportStatus.COMPLETED:
            return 100.0
        if not self.total_chunks:
            return 0.0
        return round(100.0 * self.chunks_processed / self.total_chunks, 1)

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in _COLUMNS}
        data["status"] = self.status.value
        data["progress"] = self.progress
        for name in ("created_at", "updated_at", "completed_at"):
            if data[name] is not None:
                data[name] = data[name].isoformat()
        return data


def _job(row) -> ImportJob:
    data = dict(zip(_COLUMNS, row))
    data["status"] = ImportStatus(data["status"])
    data["details"] = json.loads(data["details"]) if data["details"] else {}
    return ImportJob(**data)


class ImportJobStore:
    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def _write(self, job_id: int, work):
        with _job_locks((id(self.conn), job_id)):
            return run_in_transaction(self.conn, work)

    def create(self, file_path: str, dry_run: bool = False) -> int:
        now = utc_now()
        with self.conn.cursor() as cur:
            row = cur.execute(
                "INSERT INTO import_jobs (status, file_path, dry_run, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?) RETURNING id",
                [ImportStatus.SUBMITTED.value, str(file_path), dry_run, now, now],
            ).fetchone()
        logger.info(f"Created import job {row[0]} for {file_path} (dry_run={dry_run})")
        return row[0]

    def _get(self, cur, job_id: int) -> ImportJob:
        row = cur.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM import_jobs WHERE id = ?", [job_id]
        ).fetchone()
        if row is None:
            raise ImportJobError(f"Unknown import job {job_id}")
        return _job(row)

    def get(self, job_id: int) -> ImportJob:
        with self.conn.cursor() as cur:
            return self._get(cur, job_id)

    def list_jobs(self, limit: int = 20) -> List[ImportJob]:
        with self.conn.cursor() as cur:
            rows = cur.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM import_jobs ORDER BY id DESC LIMIT ?", [limit]
            ).fetchall()
        return [_job(r) for r in rows]

    def _set(self, cur, job_id: int, status: Optional[ImportStatus], fields: Dict[str, Any]) -> None:
        assignments = ["updated_at = ?"]
        params: List[Any] = [utc_now()]
        if status is not None:
            assignments.append("status = ?")
            params.append(status.value)
            if status.value in ImportStatus.terminal_values():
                assignments.append("completed_at = ?")
                params.append(utc_now())
        for name, value in fields.items():
            if name not in _UPDATABLE:
                raise ImportJobError(f"Field {name} cannot be set directly")
            assignments.append(f"{name} = ?")
            params.append(json.dumps(value, default=str) if name == "details" else value)
        cur.execute(f"UPDATE import_jobs SET {', '.join(assignments)} WHERE id = ?", params + [job_id])

    def update_status(self, job_id: int, status: Optional[ImportStatus] = None, **fields) -> ImportJob:
        """Move a job to ``status`` (if given) and set plain fields.

        Counters are not settable here; use :meth:`record_chunk`.
        """

        def work(cur) -> ImportJob:
            job = self._get(cur, job_id)
            if status is not None and status is not job.status and status not in _TRANSITIONS[job.status]:
                raise ImportJobError(f"Job {job_id}: cannot go from {job.status.value} to {status.value}")
            self._set(cur, job_id, status if status is not job.status else None, fields)
            return self._get(cur, job_id)

        return self._write(job_id, work)

    def transition(self, job_id: int, expected: ImportStatus, status: ImportStatus, **fields) -> bool:
        """Move to ``status`` only if the job is still in ``expected``."""

        def work(cur) -> bool:
            job = self._get(cur, job_id)
            if job.status is not expected:
                return False
            self._set(cur, job_id, status, fields)
            return True

        return self._write(job_id, work)

    def _complete_if_done(self, cur, job: ImportJob) -> bool:
        if job.status is ImportStatus.PROCESSING_CHUNKS and job.chunks_processed >= job.total_chunks:
            summary = (f"Imported {job.page_views_imported} page views and {job.events_imported} events "
                       f"in {job.total_chunks} chunks ({job.errors} errors)")
            self._set(cur, job.id, ImportStatus.COMPLETED, {"summary": summary})
            return True
        return False

    def complete_if_done(self, job_id: int) -> bool:
        """Complete a job whose chunks have all reported; True if this call completed it."""
        return self._write(job_id, lambda cur: self._complete_if_done(cur, self._get(cur, job_id)))

    def record_chunk(self, job_id: int, page_views: int = 0, events: int = 0,
                     errors: int = 0) -> Tuple[ImportJob, bool]:
        """Add one finished chunk's counts; returns the job and whether it just completed."""

        def work(cur) -> Tuple[ImportJob, bool]:
            self._get(cur, job_id)
            cur.execute(
                "UPDATE import_jobs SET chunks_processed = chunks_processed + 1, "
                "page_views_imported = page_views_imported + ?, events_imported = events_imported + ?, "
                "errors = errors + ?, updated_at = ? WHERE id = ?",
                [page_views, events, errors, utc_now(), job_id],
            )
            job = self._get(cur, job_id)
            completed = self._complete_if_done(cur, job)
            return (self._get(cur, job_id) if completed else job), completed

        return self._write(job_id, work)

    def mark_failed(self, job_id: int, error: str) -> bool:
        """Fail a job unless it is already terminal; True if this call failed it."""

        def work(cur) -> bool:
            job = self._get(cur, job_id)
            if job.is_terminal:
                return False
            self._set(cur, job_id, ImportStatus.FAILED, {
                "error": error,
                "summary": f"Import failed after {job.chunks_processed}/{job.total_chunks} chunks: {error}",
            })
            return True

        failed = self._write(job_id, work)
        if failed:
            logger.error(f"Import job {job_id} failed: {error}")
        return failed
