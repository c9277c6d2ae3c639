"""
Register-side mirror of the store's product catalog for offline lookups.

The mirror is replaced wholesale on every refresh; rows are never patched in
place, so a lookup always sees one complete generation of the catalog.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .logs import json_log
from .transport import fetch_json

DEFAULT_REFRESH_INTERVAL = timedelta(minutes=5)
DEFAULT_STALE_THRESHOLD = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalCatalogCache:
    def __init__(
        self,
        db_path: str,
        catalog_url: str = "",
        headers: Optional[dict] = None,
        fetch: Optional[Callable] = None,
        refresh_interval: timedelta = DEFAULT_REFRESH_INTERVAL,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db_path = db_path
        self.catalog_url = catalog_url
        self.headers = dict(headers or {})
        self._fetch = fetch or fetch_json
        self.refresh_interval = refresh_interval
        self._clock = clock or _utcnow

    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def last_sync_at(self) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute("SELECT last_sync_at FROM local_catalog_meta WHERE id = 1").fetchone()
        if not row or not row["last_sync_at"]:
            return None
        return datetime.fromisoformat(row["last_sync_at"])

    def product_count(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT product_count FROM local_catalog_meta WHERE id = 1").fetchone()
        return int(row["product_count"]) if row else 0

    def is_stale(self, threshold: timedelta = DEFAULT_STALE_THRESHOLD) -> bool:
        last = self.last_sync_at()
        if last is None:
            return True
        return self._clock() - last > threshold

    def refresh(self, force: bool = False) -> dict:
        last = self.last_sync_at()
        if not force and last is not None and self._clock() - last < self.refresh_interval:
            return {"refreshed": False, "reason": "fresh", "product_count": self.product_count()}

        try:
            data = self._fetch(self.catalog_url, self.headers)
        except Exception as ex:
            # Keep serving the previous generation.
            json_log("warning", "catalog_cache.download_failed", url=self.catalog_url, error=str(ex))
            return {"refreshed": False, "reason": "download_failed", "error": str(ex), "product_count": self.product_count()}

        rows = []
        for p in (data or {}).get("products") or []:
            pid = str(p.get("id") or "").strip()
            name = str(p.get("name") or "").strip()
            if not pid or not name:
                continue
            rows.append((pid, name, p.get("sku"), p.get("barcode"), str(p.get("price") if p.get("price") is not None else "0")))

        now = self._clock().astimezone(timezone.utc).isoformat()
        # `with conn` commits the delete and the inserts together or not at all.
        with self._connect() as conn:
            conn.execute("DELETE FROM local_catalog_cache")
            conn.executemany(
                "INSERT OR REPLACE INTO local_catalog_cache (id, name, sku, barcode, price) VALUES (?, ?, ?, ?, ?)",
                rows,
            )
            conn.execute(
                """
                INSERT INTO local_catalog_meta (id, last_sync_at, product_count)
                VALUES (1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  last_sync_at = excluded.last_sync_at,
                  product_count = excluded.product_count
                """,
                (now, len(rows)),
            )
        json_log("info", "catalog_cache.refreshed", product_count=len(rows))
        return {"refreshed": True, "product_count": len(rows)}

    def lookup_by_barcode(self, code: str) -> Optional[dict]:
        code = (code or "").strip()
        if not code:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, sku, barcode, price FROM local_catalog_cache WHERE barcode = ? LIMIT 1",
                (code,),
            ).fetchone()
        return dict(row) if row else None

    def search(self, query: str, limit: int = 20) -> list[dict]:
        q = (query or "").strip()
        if not q:
            return []
        like = f"%{q}%"
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, name, sku, barcode, price
                FROM local_catalog_cache
                WHERE name LIKE ? OR sku LIKE ? OR barcode LIKE ?
                ORDER BY name, id
                LIMIT ?
                """,
                (like, like, like, max(1, int(limit))),
            ).fetchall()
        return [dict(r) for r in rows]
