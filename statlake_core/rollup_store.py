"""DuckDB persistence for rollup rows.

Every write runs in its own transaction on a fresh cursor (see
:func:`database_utils.run_in_transaction`), so concurrent sweeps and import
workers may target the same bucket. Writers of one site additionally queue on
a per-site lock, and only non-key columns are ever updated.
"""
from __future__ import annotations
import logging
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import duckdb

from .buckets import BucketKey, BucketStart, Granularity, utc_now
from .config import AnalyticsConfig
from .database_utils import KeyedLocks, run_in_transaction
from .exceptions import RollupIntegrityError
from .rollups import COUNTERS, DIMENSIONS, RollupRow

logger = logging.getLogger(__name__)

MAX_COUNT = 2 ** 63 - 1
VALUE_COLUMNS = COUNTERS + DIMENSIONS

Delta = Tuple[BucketKey, RollupRow, Optional[str]]
Derive = Callable[[BucketKey, List[RollupRow]], RollupRow]

_site_locks = KeyedLocks()


@dataclass
class MergeResult:
    applied: int = 0
    already_applied: int = 0
    errors: List[RollupIntegrityError] = field(default_factory=list)


def _q(column: str) -> str:
    return f'"{column}"'


class RollupStore:
    def __init__(self, conn: duckdb.DuckDBPyConnection, config: Optional[AnalyticsConfig] = None):
        self.conn = conn
        self.config = config or AnalyticsConfig()

    def top_k(self, granularity: Granularity) -> int:
        return self.config.top_k(granularity.value)

    # -- reads -------------------------------------------------------------

    def _select(self, granularity: Granularity) -> str:
        cols = ", ".join(_q(c) for c in VALUE_COLUMNS)
        return f"SELECT site_id, {_q(granularity.key_column)}, {cols} FROM {granularity.table}"

    def _row(self, granularity: Granularity, raw) -> RollupRow:
        record = dict(zip(VALUE_COLUMNS, raw[2:]))
        return RollupRow.from_record(raw[0], granularity, raw[1], record)

    def _read(self, cur, key: BucketKey) -> Optional[RollupRow]:
        g = key.granularity
        raw = cur.execute(
            f"{self._select(g)} WHERE site_id = ? AND {_q(g.key_column)} = ?",
            [key.site_id, key.bucket_start],
        ).fetchone()
        return self._row(g, raw) if raw else None

    def read(self, key: BucketKey) -> Optional[RollupRow]:
        with self.conn.cursor() as cur:
            return self._read(cur, key)

    def exists(self, key: BucketKey) -> bool:
        g = key.granularity
        with self.conn.cursor() as cur:
            row = cur.execute(
                f"SELECT 1 FROM {g.table} WHERE site_id = ? AND {_q(g.key_column)} = ?",
                [key.site_id, key.bucket_start],
            ).fetchone()
        return row is not None

    def read_range(self, site_id: int, granularity: Granularity,
                   start: BucketStart, end: BucketStart) -> List[RollupRow]:
        """Rows with ``start <= bucket < end`` in bucket order."""
        g = granularity
        with self.conn.cursor() as cur:
            rows = cur.execute(
                f"{self._select(g)} WHERE site_id = ? AND {_q(g.key_column)} >= ? "
                f"AND {_q(g.key_column)} < ? ORDER BY {_q(g.key_column)}",
                [site_id, g.normalize(start), g.normalize(end)],
            ).fetchall()
        return [self._row(g, r) for r in rows]

    def dates_with_rows(self, site_id: int, granularity: Granularity,
                        before: Optional[BucketStart] = None) -> List[BucketStart]:
        """Distinct bucket starts of a site, optionally limited to ``< before``."""
        g = granularity
        sql = f"SELECT {_q(g.key_column)} FROM {g.table} WHERE site_id = ?"
        params: list = [site_id]
        if before is not None:
            sql += f" AND {_q(g.key_column)} < ?"
            params.append(g.normalize(before))
        sql += f" ORDER BY {_q(g.key_column)}"
        with self.conn.cursor() as cur:
            return [g.normalize(r[0]) for r in cur.execute(sql, params).fetchall()]

    def stale_parents(self, site_id: int, granularity: Granularity,
                      before: Optional[BucketStart] = None) -> List[BucketStart]:
        """Buckets of ``granularity`` that are missing or older than their source rows.

        A day row is stale when any hour row of that date was written after it
        (late hours, imports); month rows likewise against day rows.
        """
        if granularity is Granularity.DAY:
            parent_key = 'CAST(c.hour_start AS DATE)'
            join = 'p."date" = CAST(c.hour_start AS DATE)'
        elif granularity is Granularity.MONTH:
            parent_key = "strftime(c.\"date\", '%Y-%m')"
            join = "p.year_month = strftime(c.\"date\", '%Y-%m')"
        else:
            raise ValueError("Hourly rows are derived from raw events")
        child = granularity.source
        sql = (
            f"SELECT {parent_key} AS bucket FROM {child.table} c "
            f"LEFT JOIN {granularity.table} p ON p.site_id = c.site_id AND {join} "
            f"WHERE c.site_id = ?"
        )
        params: list = [site_id]
        if before is not None:
            sql += f" AND {parent_key} < ?"
            params.append(granularity.normalize(before))
        sql += (
            " GROUP BY bucket, p.updated_at"
            " HAVING p.updated_at IS NULL OR max(c.updated_at) > p.updated_at"
            " ORDER BY bucket"
        )
        with self.conn.cursor() as cur:
            return [granularity.normalize(r[0]) for r in cur.execute(sql, params).fetchall()]

    def site_ids(self, granularity: Granularity) -> List[int]:
        with self.conn.cursor() as cur:
            rows = cur.execute(f"SELECT DISTINCT site_id FROM {granularity.table} ORDER BY 1").fetchall()
        return [r[0] for r in rows]

    # -- writes ------------------------------------------------------------

    def _locked(self, site_ids: Iterable[int]) -> ExitStack:
        """Hold the write locks of ``site_ids``, taken in id order."""
        stack = ExitStack()
        for site_id in sorted(set(site_ids)):
            stack.enter_context(_site_locks((id(self.conn), site_id)))
        return stack

    def _check(self, key: BucketKey, row: RollupRow) -> None:
        for name in COUNTERS:
            value = getattr(row, name)
            if value < 0 or value > MAX_COUNT:
                raise RollupIntegrityError(
                    f"{name}={value} out of range for {key.label()}", key=key
                )
        for name in DIMENSIONS:
            for value, count in getattr(row, name):
                if count < 0 or count > MAX_COUNT:
                    raise RollupIntegrityError(
                        f"{name}[{value!r}]={count} out of range for {key.label()}", key=key
                    )

    def _insert(self, cur, key: BucketKey, row: RollupRow) -> None:
        g = key.granularity
        record = row.to_record()
        cols = ", ".join(_q(c) for c in VALUE_COLUMNS)
        marks = ", ".join("?" for _ in range(len(VALUE_COLUMNS) + 3))
        cur.execute(
            f"INSERT INTO {g.table} (site_id, {_q(g.key_column)}, {cols}, updated_at) VALUES ({marks})",
            [key.site_id, key.bucket_start] + [record[c] for c in VALUE_COLUMNS] + [utc_now()],
        )

    def _update(self, cur, key: BucketKey, row: RollupRow) -> None:
        g = key.granularity
        record = row.to_record()
        assignments = ", ".join(f"{_q(c)} = ?" for c in VALUE_COLUMNS)
        cur.execute(
            f"UPDATE {g.table} SET {assignments}, updated_at = ? "
            f"WHERE site_id = ? AND {_q(g.key_column)} = ?",
            [record[c] for c in VALUE_COLUMNS] + [utc_now(), key.site_id, key.bucket_start],
        )

    def upsert_merge(self, key: BucketKey, delta: RollupRow, delta_id: Optional[str] = None) -> bool:
        """Add ``delta`` into the row at ``key``, creating it if absent.

        Returns False when ``delta_id`` was already applied. Raises
        :class:`RollupIntegrityError` (nothing written) when a counter would
        leave the 0..2**63-1 range.
        """
        result = self.upsert_merge_many([(key, delta, delta_id)])
        if result.errors:
            raise result.errors[0]
        if result.already_applied:
            logger.info(f"Skipping already applied delta {delta_id}")
        return result.applied == 1

    def upsert_merge_many(self, deltas: Sequence[Delta]) -> MergeResult:
        """Merge several ``(key, delta, delta_id)`` items in one transaction.

        Items are applied in the given order. An item whose result would leave
        the counter range is skipped and reported in ``errors``; the others
        still commit.
        """
        deltas = list(deltas)

        def work(cur) -> MergeResult:
            result = MergeResult()
            for key, delta, delta_id in deltas:
                if delta_id is not None and cur.execute(
                    "SELECT 1 FROM applied_deltas WHERE delta_id = ?", [delta_id]
                ).fetchone():
                    result.already_applied += 1
                    continue
                k = self.top_k(key.granularity)
                current = self._read(cur, key)
                merged = delta.truncated(k) if current is None else current.merged(delta, k)
                try:
                    self._check(key, merged)
                except RollupIntegrityError as e:
                    result.errors.append(e)
                    continue
                if delta_id is not None:
                    cur.execute(
                        "INSERT INTO applied_deltas (delta_id, applied_at) VALUES (?, ?)",
                        [delta_id, utc_now()],
                    )
                if current is None:
                    self._insert(cur, key, merged)
                else:
                    self._update(cur, key, merged)
                result.applied += 1
            return result

        with self._locked(key.site_id for key, _, _ in deltas):
            return run_in_transaction(self.conn, work)

    def insert_if_absent(self, key: BucketKey, row: RollupRow) -> bool:
        k = self.top_k(key.granularity)
        row = row.truncated(k)
        self._check(key, row)

        def work(cur) -> bool:
            if self._read(cur, key) is not None:
                return False
            self._insert(cur, key, row)
            return True

        with self._locked([key.site_id]):
            return run_in_transaction(self.conn, work)

    def replace(self, key: BucketKey, row: RollupRow) -> None:
        """Overwrite the row at ``key`` with a freshly derived one."""
        k = self.top_k(key.granularity)
        row = row.truncated(k)
        self._check(key, row)

        def work(cur) -> None:
            if self._read(cur, key) is None:
                self._insert(cur, key, row)
            else:
                self._update(cur, key, row)

        with self._locked([key.site_id]):
            run_in_transaction(self.conn, work)

    def refresh_parent(self, key: BucketKey, derive: Derive) -> Optional[RollupRow]:
        """Re-derive a day or month row from the tier below it.

        While all of its source rows exist the parent is rebuilt from them.
        Once retention has pruned some (``sources_pruned``), the parent holds
        data the remaining sources no longer show, so only source rows written
        after the parent are merged into it. Returns None when nothing was
        written.
        """
        g = key.granularity
        start, end = g.child_range(key.bucket_start)
        k = self.top_k(g)

        def work(cur) -> Optional[RollupRow]:
            state = cur.execute(
                f"SELECT updated_at, sources_pruned FROM {g.table} "
                f"WHERE site_id = ? AND {_q(g.key_column)} = ?",
                [key.site_id, key.bucket_start],
            ).fetchone()
            pruned = state is not None and state[1]
            sources = self._read_sources(cur, key, start, end, newer_than=state[0] if pruned else None)
            if not sources:
                return None
            if pruned:
                row = self._read(cur, key).merged(derive(key, sources), k)
            else:
                row = derive(key, sources).truncated(k)
            self._check(key, row)
            if state is None:
                self._insert(cur, key, row)
            else:
                self._update(cur, key, row)
            return row

        with self._locked([key.site_id]):
            return run_in_transaction(self.conn, work)

    def _read_sources(self, cur, key: BucketKey, start: BucketStart, end: BucketStart,
                      newer_than: Optional[datetime] = None) -> List[RollupRow]:
        child = key.granularity.source
        sql = (
            f"{self._select(child)} WHERE site_id = ? AND {_q(child.key_column)} >= ? "
            f"AND {_q(child.key_column)} < ?"
        )
        params: list = [key.site_id, child.normalize(start), child.normalize(end)]
        if newer_than is not None:
            sql += " AND updated_at > ?"
            params.append(newer_than)
        sql += f" ORDER BY {_q(child.key_column)}"
        return [self._row(child, r) for r in cur.execute(sql, params).fetchall()]

    # -- retention ---------------------------------------------------------

    def delete_covered(self, granularity: Granularity, before: BucketStart) -> int:
        """Delete rows older than ``before`` whose parent row in the next tier exists.

        The parent is flagged ``sources_pruned`` in the same transaction.
        """
        g = granularity
        if g is Granularity.HOUR:
            parent = "analytics_daily"
            cover = ('SELECT 1 FROM analytics_daily d WHERE d.site_id = analytics_hourly.site_id '
                     'AND d."date" = CAST(analytics_hourly.hour_start AS DATE)')
            pruned = ('SELECT 1 FROM analytics_hourly h WHERE h.site_id = analytics_daily.site_id '
                      'AND CAST(h.hour_start AS DATE) = analytics_daily."date" AND h.hour_start < ?')
        elif g is Granularity.DAY:
            parent = "analytics_monthly"
            cover = ("SELECT 1 FROM analytics_monthly m WHERE m.site_id = analytics_daily.site_id "
                     "AND m.year_month = strftime(analytics_daily.\"date\", '%Y-%m')")
            pruned = ("SELECT 1 FROM analytics_daily d WHERE d.site_id = analytics_monthly.site_id "
                      "AND strftime(d.\"date\", '%Y-%m') = analytics_monthly.year_month AND d.\"date\" < ?")
        else:
            raise ValueError("Monthly rows have no covering tier")
        before = g.normalize(before)

        def work(cur) -> int:
            cur.execute(
                f"UPDATE {parent} SET sources_pruned = TRUE "
                f"WHERE NOT sources_pruned AND EXISTS ({pruned})",
                [before],
            )
            result = cur.execute(
                f"DELETE FROM {g.table} WHERE {_q(g.key_column)} < ? AND EXISTS ({cover})",
                [before],
            ).fetchone()
            return result[0] if result else 0

        return run_in_transaction(self.conn, work)

    def delete_before(self, granularity: Granularity, before: BucketStart) -> int:
        g = granularity
        return self._delete(
            f"DELETE FROM {g.table} WHERE {_q(g.key_column)} < ?", [g.normalize(before)]
        )

    def _delete(self, sql: str, params: list) -> int:
        with self.conn.cursor() as cur:
            result = cur.execute(sql, params).fetchone()
        return result[0] if result else 0

    def count(self, granularity: Granularity, site_id: Optional[int] = None) -> int:
        sql = f"SELECT count(*) FROM {granularity.table}"
        params: list = []
        if site_id is not None:
            sql += " WHERE site_id = ?"
            params.append(site_id)
        with self.conn.cursor() as cur:
            return cur.execute(sql, params).fetchone()[0]

