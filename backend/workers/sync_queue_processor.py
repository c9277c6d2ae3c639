#!/usr/bin/env python3
"""
Drain the server-side sync queue.

One item at a time, oldest first: claim (pending -> syncing), re-validate,
hand it to the synchronizer for its entity type, then record the outcome.
The synchronizer runs in a savepoint so canonical writes roll back on error
while the status update in the outer transaction still commits.

Run once:   python -m backend.workers.sync_queue_processor --store-id <uuid>
Run always: python -m backend.workers.sync_queue_processor --loop
"""

import argparse
import hashlib
import os
import socket
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import psycopg
from psycopg.rows import dict_row

from ..app import sync_queue
from ..app.config import settings
from ..app.data_validator import validate
from ..app.logs import json_log
from ..app.sync_errors import ConflictDetected, SyncValidationError, TerminalFailure
from .synchronizers import ApplyResult, get_synchronizer

DB_URL_DEFAULT = settings.db_url
MAX_RETRIES_DEFAULT = settings.sync_max_retries
LEASE_RENEW_EVERY = 25
# A dropped or unusable connection ends the store, not the run.
CONNECTION_ERRORS = (psycopg.OperationalError, psycopg.InterfaceError)

# One full sweep per process at a time; other instances are kept out by the store lease.
_sweep_lock = threading.Lock()


@dataclass
class SyncResult:
    synced_items: int = 0
    failed_items: int = 0
    conflicts: int = 0
    retried_items: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.synced_items + self.failed_items + self.conflicts + self.retried_items

    def to_dict(self) -> dict:
        out = asdict(self)
        out["processed"] = self.processed
        return out


def get_conn(db_url):
    return psycopg.connect(db_url, row_factory=dict_row)


def set_store_context(cur, store_id: str):
    # `SET ... = %s` is not valid with the extended query protocol; use set_config().
    cur.execute("SELECT set_config('app.current_store_id', %s::text, true)", (store_id,))


def lease_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def next_retry_at_for_attempt(attempt_count: int, item_id: Optional[str] = None) -> datetime:
    delay_seconds = min(300, 2 ** max(attempt_count - 1, 0))
    if item_id:
        # Deterministic per-item jitter so a batch that failed together does not retry together.
        digest = hashlib.sha1(f"{item_id}:{attempt_count}".encode("utf-8")).hexdigest()
        jitter_window = max(1, min(30, delay_seconds // 5 or 1))
        delay_seconds = min(300, delay_seconds + (int(digest[:8], 16) % (jitter_window + 1)))
    return datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)


def apply_item(cur, item: dict) -> ApplyResult:
    # Payloads were validated at admission, but the schema may have moved since.
    res = validate(item["entity_type"], item.get("data"), item["action"])
    if not res.valid:
        raise SyncValidationError(res.errors)
    return get_synchronizer(item["entity_type"]).apply(cur, item)


def _finalize(cur, item: dict, outcome: Optional[ApplyResult], error: Optional[Exception], max_retries: int, result: SyncResult):
    item_id = str(item["id"])
    log_fields = {"item_id": item_id, "store_id": item.get("store_id"), "entity_type": item.get("entity_type"), "action": item.get("action")}

    if isinstance(error, SyncValidationError):
        sync_queue.mark_invalid(cur, item_id, error.errors)
        result.failed_items += 1
        result.errors.append(f"{item_id}: {error}")
        json_log("warning", "sync.queue.invalid", errors=error.errors, **log_fields)
        return

    if isinstance(error, ConflictDetected):
        sync_queue.mark_conflict(cur, item_id, error.conflict_type, error.resolution, str(error))
        result.conflicts += 1
        json_log("warning", "sync.queue.conflict", conflict_type=error.conflict_type, message=str(error), **log_fields)
        return

    if error is not None:
        attempt = int(item.get("retry_count") or 0) + 1
        status = sync_queue.mark_attempt_failed(
            cur,
            item,
            str(error),
            max_retries,
            next_attempt_at=next_retry_at_for_attempt(attempt, item_id),
        )
        if status == "failed":
            result.failed_items += 1
            result.errors.append(str(TerminalFailure(item_id, attempt, str(error))))
            json_log("error", "sync.queue.failed", retry_count=attempt, error=str(error), **log_fields)
        else:
            result.retried_items += 1
            json_log("info", "sync.queue.retry", retry_count=attempt, error=str(error), **log_fields)
        return

    if outcome.conflict:
        sync_queue.mark_conflict(cur, item_id, outcome.conflict_type, outcome.resolution, outcome.error or "unresolved conflict")
        result.conflicts += 1
        json_log("warning", "sync.queue.conflict", conflict_type=outcome.conflict_type, message=outcome.error, **log_fields)
        return

    sync_queue.mark_synced(cur, item_id, entity_id=outcome.entity_id, resolution=outcome.resolution)
    result.synced_items += 1
    json_log(
        "info",
        "sync.queue.synced",
        entity_id=outcome.entity_id,
        resolution=((outcome.resolution or {}).get("action")),
        **log_fields,
    )


def _process_one(conn, store_id: Optional[str], max_retries: int, seen: list[str], result: SyncResult) -> bool:
    with conn.transaction():
        with conn.cursor() as cur:
            if store_id:
                set_store_context(cur, store_id)
            item = sync_queue.claim_next_item(cur, store_id, skip_ids=seen)
            if not item:
                return False
            seen.append(str(item["id"]))

            outcome = None
            process_error = None
            try:
                # Savepoint: a failing synchronizer must not take the status update down with it.
                with conn.transaction():
                    outcome = apply_item(cur, item)
            except Exception as ex:
                process_error = ex

            _finalize(cur, item, outcome, process_error, max_retries, result)
    return True


def _with_lease(conn, store_id: str, holder: str, lease_seconds: int) -> bool:
    with conn.transaction():
        with conn.cursor() as cur:
            return sync_queue.acquire_store_lease(cur, store_id, holder, lease_seconds)


def _release_lease(conn, store_id: str, holder: str):
    try:
        with conn.transaction():
            with conn.cursor() as cur:
                sync_queue.release_store_lease(cur, store_id, holder)
    except CONNECTION_ERRORS as ex:
        # Left to expire.
        json_log("warning", "sync.queue.lease_release_failed", store_id=store_id, error=str(ex))


def _connection_lost(conn) -> bool:
    return bool(getattr(conn, "closed", False) or getattr(conn, "broken", False))


def _pending_store_ids(conn) -> list[str]:
    with conn.transaction():
        with conn.cursor() as cur:
            return sync_queue.list_stores_with_pending(cur)


def _store_error(result: SyncResult, store_id: Optional[str], ex: Exception):
    result.errors.append(f"store {store_id or '*'}: {ex}")
    json_log("error", "sync.queue.store_error", store_id=store_id, error=str(ex))


def process_store(conn, store_id: str, limit: int, max_retries: int, result: SyncResult, holder: str, lease_seconds: int) -> int:
    try:
        leased = _with_lease(conn, store_id, holder, lease_seconds)
    except CONNECTION_ERRORS as ex:
        _store_error(result, store_id, ex)
        return 0
    if not leased:
        result.errors.append(f"store {store_id}: sync lease held by another instance")
        json_log("info", "sync.queue.lease_busy", store_id=store_id)
        return 0
    done = 0
    seen: list[str] = []
    try:
        while done < limit:
            if not _process_one(conn, store_id, max_retries, seen, result):
                break
            done += 1
            if done % LEASE_RENEW_EVERY == 0:
                _with_lease(conn, store_id, holder, lease_seconds)
    except CONNECTION_ERRORS as ex:
        _store_error(result, store_id, ex)
    finally:
        _release_lease(conn, store_id, holder)
    return done


def process_queue(
    db_url: str = DB_URL_DEFAULT,
    store_id: Optional[str] = None,
    limit: Optional[int] = None,
    max_retries: Optional[int] = None,
    lease_seconds: Optional[int] = None,
) -> SyncResult:
    """
    Drain pending items for one store, or for every store with due work.

    Never raises for per-item problems or a lost database connection; those
    are counted in the returned SyncResult. A concurrent call in the same
    process returns immediately with "sync already in progress".
    """
    result = SyncResult()
    if not _sweep_lock.acquire(blocking=False):
        result.errors.append("sync already in progress")
        return result

    limit = int(limit or settings.sync_batch_limit)
    max_retries = max(1, int(max_retries or MAX_RETRIES_DEFAULT))
    lease_seconds = int(lease_seconds or settings.sync_lease_seconds)
    holder = lease_holder()
    try:
        with get_conn(db_url) as conn:
            store_ids = [store_id] if store_id else _pending_store_ids(conn)
            remaining = limit
            for sid in store_ids:
                if remaining <= 0 or _connection_lost(conn):
                    break
                remaining -= process_store(conn, sid, remaining, max_retries, result, holder, lease_seconds)
    except CONNECTION_ERRORS as ex:
        _store_error(result, store_id, ex)
    finally:
        _sweep_lock.release()

    if result.processed or result.errors:
        json_log(
            "info",
            "sync.queue.run",
            store_id=store_id,
            synced=result.synced_items,
            failed=result.failed_items,
            conflicts=result.conflicts,
            retried=result.retried_items,
            errors=len(result.errors),
        )
    return result


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--store-id", help="Only drain this store (default: every store with pending items)")
    parser.add_argument("--limit", type=int, default=settings.sync_batch_limit)
    parser.add_argument("--max-retries", type=int, default=MAX_RETRIES_DEFAULT)
    parser.add_argument("--loop", action="store_true", help="Run continuously as a service")
    parser.add_argument("--sleep", type=float, default=1.0, help="Seconds to sleep between loops")
    args = parser.parse_args()
    while True:
        process_queue(args.db, store_id=args.store_id, limit=args.limit, max_retries=args.max_retries)
        if not args.loop:
            break
        time.sleep(args.sleep)


if __name__ == "__main__":
    main()
