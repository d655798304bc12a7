"""Database utility functions for DuckDB operations."""
from __future__ import annotations
import logging
import random
import threading
import time
from typing import Callable, Dict, Hashable, List, Optional, TypeVar

import duckdb

from .exceptions import DatabaseOperationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors DuckDB raises when two transactions touch the same row or key.
CONFLICT_ERRORS = (duckdb.TransactionException, duckdb.ConstraintException)


def connect(database: str = ":memory:") -> duckdb.DuckDBPyConnection:
    """Open a connection and make sure the schema exists."""
    from .sql_loader import ensure_schema

    try:
        conn = duckdb.connect(database)
    except duckdb.Error as e:
        raise DatabaseOperationError(f"Failed to open database {database}: {e}")
    ensure_schema(conn)
    return conn


def get_table_columns(conn: duckdb.DuckDBPyConnection, table_name: str) -> List[str]:
    """Column names of a table in declaration order."""
    try:
        result = conn.execute(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_name = ? ORDER BY ordinal_position",
            [table_name],
        ).fetchall()
    except duckdb.Error as e:
        raise DatabaseOperationError(f"Failed to describe {table_name}: {e}")
    return [row[0] for row in result]


def safe_scalar(conn: duckdb.DuckDBPyConnection, sql: str, params: Optional[List] = None):
    """Execute SQL and return first scalar value, or None if the query fails."""
    try:
        row = conn.execute(sql, params or []).fetchone()
        return row[0] if row and len(row) else None
    except duckdb.Error:
        return None


def table_exists(conn: duckdb.DuckDBPyConnection, table_name: str) -> bool:
    result = safe_scalar(
        conn,
        "SELECT 1 FROM information_schema.tables WHERE table_name = ?",
        [table_name]
    )
    return result == 1


class KeyedLocks:
    """Re-entrant locks handed out per key.

    DuckDB allows a single writing process, so every writer of a row lives in
    this process; taking the row's lock before the transaction turns
    write-write conflicts into a wait.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.RLock] = {}

    def __call__(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    """Full-jitter exponential backoff."""
    return random.uniform(0, min(max_delay, base_delay * 2 ** (attempt - 1)))


def run_in_transaction(
    conn: duckdb.DuckDBPyConnection,
    work: Callable[[duckdb.DuckDBPyConnection], T],
    retries: int = 10,
    base_delay: float = 0.005,
    max_delay: float = 0.5,
) -> T:
    """Run ``work(cursor)`` inside one transaction on a fresh cursor.

    Write-write conflicts roll back and retry with jittered exponential
    backoff; other exceptions roll back and propagate unchanged.
    """
    attempt = 0
    while True:
        cursor = conn.cursor()
        try:
            cursor.begin()
            try:
                result = work(cursor)
                cursor.commit()
                return result
            except CONFLICT_ERRORS as e:
                _rollback(cursor)
                attempt += 1
                if attempt > retries:
                    raise DatabaseOperationError(
                        f"Transaction conflict persisted after {retries} retries: {e}"
                    )
                logger.debug("Transaction conflict (attempt %d): %s", attempt, e)
                time.sleep(_backoff(attempt, base_delay, max_delay))
            except BaseException:
                _rollback(cursor)
                raise
        finally:
            cursor.close()


def _rollback(cursor: duckdb.DuckDBPyConnection) -> None:
    try:
        cursor.rollback()
    except duckdb.Error:
        # already aborted by DuckDB
        pass
