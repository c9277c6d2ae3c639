#!/usr/bin/env python3
"""
Long-running worker service.

Drains the sync queue for every store with due work (or a specified subset)
using the same logic as `sync_queue_processor.py`, but runs continuously.
Also prunes old `synced` rows once an hour and records a per-store heartbeat
so the back office can show "worker alive" without log access.
"""

import argparse
import json
import sys
import time
import traceback

from ..app import sync_queue
from ..app.config import settings
from ..app.logs import json_log
from .sync_queue_processor import (
    DB_URL_DEFAULT,
    MAX_RETRIES_DEFAULT,
    get_conn,
    process_queue,
    set_store_context,
)

WORKER_NAME = "sync-queue-worker"
CLEAR_EVERY_SECONDS = 3600


def list_store_ids(db_url: str) -> list[str]:
    with get_conn(db_url) as conn:
        with conn.cursor() as cur:
            return sync_queue.list_stores_with_pending(cur)


def record_worker_heartbeat(db_url: str, store_id: str, details: dict, worker_name=None):
    name = str(worker_name or WORKER_NAME).strip() or WORKER_NAME
    with get_conn(db_url) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                set_store_context(cur, store_id)
                cur.execute(
                    """
                    INSERT INTO worker_heartbeats (store_id, worker_name, last_seen_at, details)
                    VALUES (%s, %s, now(), %s::jsonb)
                    ON CONFLICT (store_id, worker_name)
                    DO UPDATE SET last_seen_at = now(), details = EXCLUDED.details
                    """,
                    (store_id, name, json.dumps(details or {}, default=str)),
                )


def clear_completed(db_url: str, older_than_days: int) -> int:
    with get_conn(db_url) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return sync_queue.clear_completed_items(cur, older_than_days)


def run_once(db_url: str, store_ids: list[str], limit: int, max_retries: int) -> bool:
    did_work = False
    for sid in store_ids:
        result = None
        sync_error = None
        try:
            result = process_queue(db_url, store_id=sid, limit=limit, max_retries=max_retries)
            if result.processed:
                did_work = True
        except Exception as ex:
            # Never crash the worker loop due to queue processing errors.
            json_log("error", "worker.sync.error", store_id=sid, error=str(ex))
            traceback.print_exc(file=sys.stderr)
            sync_error = str(ex)

        try:
            record_worker_heartbeat(
                db_url,
                sid,
                {
                    "result": (result.to_dict() if result else None),
                    "sync_error": sync_error,
                },
            )
        except Exception as ex:
            json_log("error", "worker.heartbeat.error", store_id=sid, error=str(ex))
            traceback.print_exc(file=sys.stderr)
    return did_work


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--limit", type=int, default=settings.sync_batch_limit)
    parser.add_argument("--max-retries", type=int, default=MAX_RETRIES_DEFAULT)
    parser.add_argument("--sleep", type=float, default=1.0)
    parser.add_argument("--stores", nargs="*", help="Optional list of store UUIDs to process")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    last_clear = 0.0
    while True:
        try:
            store_ids = args.stores or list_store_ids(args.db)
        except Exception as ex:
            json_log("error", "worker.stores.error", error=str(ex))
            store_ids = []
        did_work = run_once(args.db, store_ids, args.limit, args.max_retries)

        if time.time() - last_clear >= CLEAR_EVERY_SECONDS:
            try:
                cleared = clear_completed(args.db, settings.sync_clear_after_days)
                if cleared:
                    json_log("info", "worker.sync.cleared", cleared=cleared, older_than_days=settings.sync_clear_after_days)
            except Exception as ex:
                json_log("error", "worker.clear.error", error=str(ex))
            last_clear = time.time()

        if args.once:
            break

        # If we processed anything, loop again quickly; otherwise back off.
        time.sleep(0 if did_work else args.sleep)


if __name__ == "__main__":
    main()
