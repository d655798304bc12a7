"""Minimal site registry: find-or-create by name or domain, and listing."""
from __future__ import annotations
import logging
import uuid
from typing import Dict, List, Optional

import duckdb

from .buckets import utc_now
from .database_utils import run_in_transaction

logger = logging.getLogger(__name__)


class SiteRegistry:
    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def find(self, name: Optional[str] = None, domain: Optional[str] = None) -> Optional[int]:
        with self.conn.cursor() as cur:
            return self._find(cur, name, domain)

    @staticmethod
    def _find(cur, name, domain) -> Optional[int]:
        row = cur.execute(
            "SELECT id FROM sites WHERE name = ? OR domain = ? ORDER BY id LIMIT 1",
            [name, domain],
        ).fetchone()
        return row[0] if row else None

    def find_or_create(self, name: str, domain: str) -> int:
        domain = (domain or "").strip().lower() or f"{name}.local"

        def work(cur) -> int:
            existing = self._find(cur, name, domain)
            if existing is not None:
                return existing
            row = cur.execute(
                "INSERT INTO sites (name, domain, tracking_id, created_at) VALUES (?, ?, ?, ?) RETURNING id",
                [name, domain, uuid.uuid4().hex, utc_now()],
            ).fetchone()
            logger.info(f"Created site {row[0]} ({name}, {domain})")
            return row[0]

        return run_in_transaction(self.conn, work)

    def placeholder_for(self, external_id: str) -> int:
        """Site standing in for a website id missing from the dump's website table."""
        short = str(external_id)[:8]
        return self.find_or_create(f"Site {short}", f"unknown-{short}.com")

    def get(self, site_id: int) -> Optional[Dict]:
        with self.conn.cursor() as cur:
            row = cur.execute(
                "SELECT id, name, domain, tracking_id, created_at FROM sites WHERE id = ?", [site_id]
            ).fetchone()
        if not row:
            return None
        return dict(zip(("id", "name", "domain", "tracking_id", "created_at"), row))

    def list_sites(self) -> List[Dict]:
        with self.conn.cursor() as cur:
            rows = cur.execute(
                "SELECT id, name, domain, tracking_id, created_at FROM sites ORDER BY id"
            ).fetchall()
        return [dict(zip(("id", "name", "domain", "tracking_id", "created_at"), r)) for r in rows]

    def site_ids(self) -> List[int]:
        with self.conn.cursor() as cur:
            return [r[0] for r in cur.execute("SELECT id FROM sites ORDER BY id").fetchall()]
