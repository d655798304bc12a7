"""Tests for database utility functions."""
import duckdb
import pytest
from statlake_core.database_utils import (
    KeyedLocks,
    _backoff,
    connect,
    get_table_columns,
    run_in_transaction,
    safe_scalar,
    table_exists,
)
from statlake_core.exceptions import DatabaseOperationError


class TestDatabaseUtils:
    """Connection and lookup helpers."""

    def test_connect_creates_schema(self, conn):
        assert table_exists(conn, 'analytics_hourly')
        assert not table_exists(conn, 'nonexistent_table')

    def test_get_table_columns(self, conn):
        columns = get_table_columns(conn, 'analytics_daily')
        assert columns[:3] == ['site_id', 'date', 'page_views']
        assert 'top_pages' in columns
        assert 'updated_at' in columns

    def test_get_table_columns_nonexistent_table(self, conn):
        assert get_table_columns(conn, 'nonexistent_table') == []

    def test_safe_scalar(self, conn):
        assert safe_scalar(conn, 'SELECT count(*) FROM sites') == 0
        assert safe_scalar(conn, 'SELECT ? + 1', [41]) == 42

    def test_safe_scalar_swallows_errors(self, conn):
        assert safe_scalar(conn, 'SELECT * FROM nonexistent_table') is None

    def test_connect_bad_path(self, tmp_path):
        with pytest.raises(DatabaseOperationError):
            connect(str(tmp_path / 'missing' / 'dir' / 'db.duckdb'))


class TestRunInTransaction:
    """Transactions with conflict retry."""

    def test_commit(self, conn):
        run_in_transaction(conn, lambda cur: cur.execute(
            "INSERT INTO applied_deltas (delta_id, applied_at) VALUES ('d1', TIMESTAMP '2024-03-20 12:00:00')"
        ))
        assert safe_scalar(conn, 'SELECT count(*) FROM applied_deltas') == 1

    def test_error_rolls_back(self, conn):
        def work(cur):
            cur.execute("INSERT INTO applied_deltas (delta_id, applied_at) "
                        "VALUES ('d1', TIMESTAMP '2024-03-20 12:00:00')")
            raise ValueError('abort')

        with pytest.raises(ValueError):
            run_in_transaction(conn, work)
        assert safe_scalar(conn, 'SELECT count(*) FROM applied_deltas') == 0

    def test_conflict_retried(self, conn):
        attempts = []

        def work(cur):
            attempts.append(1)
            if len(attempts) < 3:
                raise duckdb.TransactionException('write-write conflict')
            return 'done'

        assert run_in_transaction(conn, work, base_delay=0) == 'done'
        assert len(attempts) == 3

    def test_conflict_exhausted(self, conn):
        def work(cur):
            raise duckdb.TransactionException('write-write conflict')

        with pytest.raises(DatabaseOperationError):
            run_in_transaction(conn, work, retries=2, base_delay=0)

    def test_duplicate_key_is_a_conflict(self, conn):
        insert = "INSERT INTO applied_deltas (delta_id, applied_at) VALUES ('d1', TIMESTAMP '2024-03-20 12:00:00')"
        run_in_transaction(conn, lambda cur: cur.execute(insert))
        with pytest.raises(DatabaseOperationError):
            run_in_transaction(conn, lambda cur: cur.execute(insert), retries=1, base_delay=0)

    def test_backoff_grows_and_is_capped(self, monkeypatch):
        monkeypatch.setattr('statlake_core.database_utils.random.uniform', lambda low, high: high)
        assert [_backoff(n, 0.01, 0.05) for n in (1, 2, 3, 4)] == [0.01, 0.02, 0.04, 0.05]

    def test_keyed_locks(self):
        locks = KeyedLocks()
        assert locks(('db', 1)) is locks(('db', 1))
        assert locks(('db', 1)) is not locks(('db', 2))
        with locks('k'):
            with locks('k'):
                pass
