"""Tests for SQL file loading and schema setup."""
import pathlib

import duckdb
import pytest
from statlake_core.database_utils import table_exists
from statlake_core.exceptions import DatabaseOperationError
from statlake_core.sql_loader import (
    SCHEMA_ORDER,
    ensure_schema,
    get_sql_path,
    load_schema_sql,
    load_sql_file,
    split_statements,
)


class TestSQLFileLoading:
    """Reading individual SQL files."""

    def test_comments_and_trailing_semicolon_removed(self, tmp_path):
        """Comment lines and the final semicolon are dropped."""
        path = tmp_path / 'q.sql'
        path.write_text("-- rollup rows\nSELECT site_id,\n-- inline\npage_views FROM analytics_daily;\n")
        assert load_sql_file(path) == 'SELECT site_id,\npage_views FROM analytics_daily'

    def test_parameters(self, tmp_path):
        path = tmp_path / 'q.sql'
        path.write_text('DELETE FROM {table} WHERE site_id = {site_id}')
        assert load_sql_file(path, table='analytics_hourly', site_id=3) == \
            'DELETE FROM analytics_hourly WHERE site_id = 3'

    def test_missing_file(self):
        with pytest.raises(DatabaseOperationError):
            load_sql_file(pathlib.Path('/nonexistent/file.sql'))

    def test_split_statements(self):
        assert split_statements('CREATE SEQUENCE a;\n CREATE SEQUENCE b ;') == [
            'CREATE SEQUENCE a', 'CREATE SEQUENCE b'
        ]


class TestSchema:
    """Bundled DDL."""

    def test_every_schema_file_exists(self):
        for name in SCHEMA_ORDER:
            assert get_sql_path(f'schema/{name}.sql').is_file()

    def test_schema_in_creation_order(self):
        schema = load_schema_sql()
        assert list(schema) == SCHEMA_ORDER
        assert 'CREATE SEQUENCE' in schema['sequences']

    def test_ensure_schema_is_idempotent(self):
        conn = duckdb.connect(':memory:')
        ensure_schema(conn)
        ensure_schema(conn)
        for table in ('sites', 'page_views', 'events', 'analytics_hourly', 'analytics_daily',
                      'analytics_monthly', 'applied_deltas', 'import_jobs'):
            assert table_exists(conn, table)
        conn.close()
