"""Load the DDL kept under ``statlake_core/sql`` and apply it to a connection."""
from __future__ import annotations
import logging
import pathlib
from typing import Dict, List

import duckdb

from .exceptions import DatabaseOperationError

logger = logging.getLogger(__name__)

# Creation order matters: sequences before the tables whose defaults use them.
SCHEMA_ORDER = [
    'sequences',
    'sites',
    'page_views',
    'events',
    'analytics_hourly',
    'analytics_daily',
    'analytics_monthly',
    'applied_deltas',
    'import_jobs',
]


def get_sql_path(relative_path: str) -> pathlib.Path:
    """Absolute path of a file under the package ``sql`` directory."""
    return pathlib.Path(__file__).resolve().parent / 'sql' / relative_path


def load_sql_file(sql_path: pathlib.Path, **params) -> str:
    """Read a SQL file, dropping ``--`` comment lines and the trailing semicolon."""
    try:
        sql_content = sql_path.read_text(encoding='utf-8').strip()
    except OSError as e:
        raise DatabaseOperationError(f"Failed to load SQL file {sql_path}: {e}")

    lines = [line for line in sql_content.split('\n') if not line.strip().startswith('--')]
    clean_sql = '\n'.join(lines).strip()
    if clean_sql.endswith(';'):
        clean_sql = clean_sql[:-1].strip()
    if params:
        clean_sql = clean_sql.format(**params)
    return clean_sql


def split_statements(sql: str) -> List[str]:
    # DDL files hold no string literals with semicolons
    return [part.strip() for part in sql.split(';') if part.strip()]


def load_schema_sql_file(schema_name: str) -> str:
    return load_sql_file(get_sql_path(f'schema/{schema_name}.sql'))


def load_schema_sql() -> Dict[str, str]:
    """All schema files keyed by stem, in creation order."""
    return {name: load_schema_sql_file(name) for name in SCHEMA_ORDER}


def ensure_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Create every table and sequence if missing; safe to call repeatedly."""
    for name, sql in load_schema_sql().items():
        for statement in split_statements(sql):
            try:
                conn.execute(statement)
            except duckdb.Error as e:
                raise DatabaseOperationError(f"Failed to apply schema '{name}': {e}")
    logger.debug("Schema ensured (%d files)", len(SCHEMA_ORDER))
