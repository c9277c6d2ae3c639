"""
Durable client-side buffer for writes that could not reach the server.

Entries live in the register's sqlite file and are replayed oldest first by
`drain()`. Every entry carries an idempotency key that is stamped into the
request body, so a replay that the server already applied is recognized there
and never produces a second sale or stock movement.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .logs import json_log
from .transport import post_json

MAX_BACKOFF_SECONDS = 300
DEFAULT_ESCALATION_THRESHOLD = 5


@dataclass
class DrainResult:
    delivered: int = 0
    failed: int = 0
    remaining: int = 0
    skipped: bool = False
    # Set when a send raised; entries after it were left untouched for the next drain.
    unreachable: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def backoff_seconds(retry_count: int) -> int:
    return min(MAX_BACKOFF_SECONDS, 2 ** max(int(retry_count), 0))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


class OfflineWriteBuffer:
    def __init__(
        self,
        db_path: str,
        send: Optional[Callable] = None,
        headers: Optional[dict] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db_path = db_path
        self._send = send or post_json
        self.headers = dict(headers or {})
        self._clock = clock or _utcnow
        # Non-blocking: a timer tick and an "online" event must not replay the same rows twice.
        self._drain_lock = threading.Lock()

    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _entry(row) -> Optional[dict]:
        if row is None:
            return None
        out = dict(row)
        out["payload"] = json.loads(out.pop("payload_json") or "{}")
        out["headers"] = json.loads(out.pop("headers_json") or "{}")
        return out

    def enqueue(self, url: str, payload, idempotency_key: Optional[str] = None, headers: Optional[dict] = None) -> dict:
        """
        Persist a write for later replay and return the stored entry.

        Pass the key of an earlier attempt to re-buffer the same logical write;
        the existing entry is returned instead of a second one being added.
        """
        key = (idempotency_key or "").strip() or str(uuid.uuid4())
        if isinstance(payload, dict) and not payload.get("idempotency_key"):
            payload = {**payload, "idempotency_key": key}
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO offline_write_buffer
                  (idempotency_key, url, payload_json, headers_json, created_at, retry_count, next_attempt_at)
                VALUES (?, ?, ?, ?, ?, 0, NULL)
                """,
                (key, url, json.dumps(payload, default=str), json.dumps(headers or {}), _iso(self._clock())),
            )
            row = conn.execute(
                "SELECT * FROM offline_write_buffer WHERE idempotency_key = ?",
                (key,),
            ).fetchone()
        json_log("info", "offline_buffer.enqueued", idempotency_key=key, url=url)
        return self._entry(row)

    def count(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(1) AS n FROM offline_write_buffer").fetchone()
            return int(row["n"] if row else 0)

    def escalated_count(self, threshold: int = DEFAULT_ESCALATION_THRESHOLD) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(1) AS n FROM offline_write_buffer WHERE retry_count >= ?",
                (int(threshold),),
            ).fetchone()
            return int(row["n"] if row else 0)

    def list_entries(self) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM offline_write_buffer ORDER BY created_at, rowid"
            ).fetchall()
        return [self._entry(r) for r in rows]

    def get(self, idempotency_key: str) -> Optional[dict]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM offline_write_buffer WHERE idempotency_key = ?",
                (idempotency_key,),
            ).fetchone()
        return self._entry(row)

    def expedite(self, idempotency_key: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE offline_write_buffer SET next_attempt_at = NULL WHERE idempotency_key = ?",
                (idempotency_key,),
            )
            return cur.rowcount > 0

    def update_payload(self, idempotency_key: str, payload) -> bool:
        # An edited entry is a fresh attempt; keep the key so the server can still dedupe.
        if isinstance(payload, dict):
            payload = {**payload, "idempotency_key": idempotency_key}
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE offline_write_buffer
                SET payload_json = ?, retry_count = 0, next_attempt_at = NULL, last_error = NULL
                WHERE idempotency_key = ?
                """,
                (json.dumps(payload, default=str), idempotency_key),
            )
            return cur.rowcount > 0

    def delete(self, idempotency_key: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM offline_write_buffer WHERE idempotency_key = ?",
                (idempotency_key,),
            )
            return cur.rowcount > 0

    def _due_entries(self, now: datetime) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM offline_write_buffer
                WHERE next_attempt_at IS NULL OR next_attempt_at <= ?
                ORDER BY created_at, rowid
                """,
                (_iso(now),),
            ).fetchall()
        return [self._entry(r) for r in rows]

    def _record_failure(self, entry: dict, error: str) -> None:
        retry_count = int(entry.get("retry_count") or 0) + 1
        next_at = self._clock() + timedelta(seconds=backoff_seconds(retry_count))
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE offline_write_buffer
                SET retry_count = ?, next_attempt_at = ?, last_error = ?
                WHERE idempotency_key = ?
                """,
                (retry_count, _iso(next_at), error[:1000], entry["idempotency_key"]),
            )

    def drain(self) -> DrainResult:
        if not self._drain_lock.acquire(blocking=False):
            return DrainResult(skipped=True)
        try:
            result = DrainResult()
            for entry in self._due_entries(self._clock()):
                key = entry["idempotency_key"]
                headers = {**self.headers, **(entry.get("headers") or {}), "Idempotency-Key": key}
                try:
                    status, body = self._send(entry["url"], entry["payload"], headers)
                except Exception as ex:
                    # Unreachable server: back off this entry and stop; the rest would fail the same way.
                    self._record_failure(entry, str(ex) or ex.__class__.__name__)
                    result.failed += 1
                    result.unreachable = True
                    result.errors.append(f"{key}: {ex}")
                    break

                # 409: the server already holds this write.
                if 200 <= int(status) < 300 or int(status) == 409:
                    self.delete(key)
                    result.delivered += 1
                    continue

                detail = body.get("detail") if isinstance(body, dict) else body
                error = f"HTTP {status}: {json.dumps(detail, default=str)}"
                self._record_failure(entry, error)
                result.failed += 1
                result.errors.append(f"{key}: {error}")

            result.remaining = self.count()
            if result.delivered or result.failed:
                json_log(
                    "info",
                    "offline_buffer.drained",
                    delivered=result.delivered,
                    failed=result.failed,
                    remaining=result.remaining,
                    unreachable=result.unreachable,
                )
            return result
        finally:
            self._drain_lock.release()
