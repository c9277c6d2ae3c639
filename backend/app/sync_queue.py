"""
Data access for the `sync_queue` table.

All helpers take an open cursor and never commit; callers own the transaction.
Status changes out of `syncing` are guarded with `AND status = 'syncing'` so a
row can only be finalized by the worker that claimed it, and terminal rows can
only leave their state through the explicit operator helpers at the bottom.
"""

from __future__ import annotations

import json
from typing import Optional

from .data_validator import validate
from .sync_errors import InvalidTransition, SyncValidationError

ITEM_COLUMNS = """
    id, store_id, user_id, entity_type, entity_id, action, data, idempotency_key,
    status, retry_count, error_message, conflict_type, resolution_json,
    next_attempt_at, created_at, updated_at, synced_at
"""


def _json(v) -> str:
    return json.dumps(v, default=str)


def normalize_item(row: Optional[dict]) -> Optional[dict]:
    if not row:
        return None
    item = dict(row)
    for key in ("data", "resolution_json"):
        raw = item.get(key)
        if isinstance(raw, str):
            try:
                item[key] = json.loads(raw)
            except Exception:
                item[key] = {}
    if item.get("data") is None:
        item["data"] = {}
    for key in ("id", "store_id", "user_id"):
        if item.get(key) is not None:
            item[key] = str(item[key])
    return item


def enqueue_item(
    cur,
    *,
    store_id: str,
    user_id: Optional[str],
    entity_type: str,
    action: str,
    data: dict,
    entity_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> dict:
    """
    Admit a mutation into the queue.

    Raises SyncValidationError when the payload fails the validator. A replayed
    idempotency key returns the original row with `duplicate=True` instead of
    inserting a second one.
    """
    entity_type = str(entity_type or "").strip().lower()
    action = str(action or "").strip().lower()
    res = validate(entity_type, data, action)
    errors = list(res.errors)
    if action in {"update", "delete"} and not (entity_id or "").strip():
        errors.append(f"entity_id: required for {action}")
    if errors:
        raise SyncValidationError(errors)

    payload = res.payload.model_dump(mode="json", exclude_unset=True)
    if entity_type == "transaction" and action == "create" and not entity_id:
        # Later updates from the same register address the sale by its local id.
        entity_id = payload.get("local_id")
    key = (idempotency_key or "").strip() or None
    cur.execute(
        """
        INSERT INTO sync_queue
          (id, store_id, user_id, entity_type, entity_id, action, data, idempotency_key, status, retry_count)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s::jsonb, %s, 'pending', 0)
        ON CONFLICT DO NOTHING
        RETURNING id, status
        """,
        (store_id, user_id, entity_type, entity_id, action, _json(payload), key),
    )
    row = cur.fetchone()
    if row:
        return {"id": str(row["id"]), "status": row["status"], "duplicate": False}

    if not key:
        raise SyncValidationError("idempotency_key: conflicting insert without a key")
    cur.execute(
        """
        SELECT id, status
        FROM sync_queue
        WHERE store_id = %s AND idempotency_key = %s
        LIMIT 1
        """,
        (store_id, key),
    )
    existing = cur.fetchone()
    if not existing:
        raise SyncValidationError("idempotency_key: conflicting insert could not be resolved")
    return {"id": str(existing["id"]), "status": existing["status"], "duplicate": True}


def claim_next_item(cur, store_id: Optional[str] = None, skip_ids: Optional[list[str]] = None) -> Optional[dict]:
    """
    Atomically move the oldest due `pending` item to `syncing` and return it.

    FIFO by creation time. An item is held back while an older item for the same
    entity is still pending or syncing, so per-entity writes apply in order.
    """
    cur.execute(
        f"""
        WITH c AS (
          SELECT q.id
          FROM sync_queue q
          WHERE q.status = 'pending'
            AND (%(store_id)s::uuid IS NULL OR q.store_id = %(store_id)s::uuid)
            AND (q.next_attempt_at IS NULL OR q.next_attempt_at <= now())
            AND NOT (q.id = ANY(%(skip_ids)s::uuid[]))
            AND NOT EXISTS (
              SELECT 1
              FROM sync_queue o
              WHERE q.entity_id IS NOT NULL
                AND o.store_id = q.store_id
                AND o.entity_type = q.entity_type
                AND o.entity_id = q.entity_id
                AND o.status IN ('pending', 'syncing')
                AND (o.created_at, o.id) < (q.created_at, q.id)
            )
          ORDER BY q.created_at ASC, q.id ASC
          LIMIT 1
          FOR UPDATE OF q SKIP LOCKED
        )
        UPDATE sync_queue s
        SET status = 'syncing',
            updated_at = now()
        FROM c
        WHERE s.id = c.id
          AND s.status = 'pending'
        RETURNING {", ".join("s." + c.strip() for c in ITEM_COLUMNS.split(","))}
        """,
        {"store_id": store_id, "skip_ids": list(skip_ids or [])},
    )
    return normalize_item(cur.fetchone())


def mark_synced(cur, item_id: str, entity_id: Optional[str] = None, resolution: Optional[dict] = None) -> bool:
    cur.execute(
        """
        UPDATE sync_queue
        SET status = 'synced',
            entity_id = COALESCE(entity_id, %s),
            resolution_json = COALESCE(%s::jsonb, resolution_json),
            error_message = NULL,
            next_attempt_at = NULL,
            synced_at = now(),
            updated_at = now()
        WHERE id = %s
          AND status = 'syncing'
        RETURNING id
        """,
        (entity_id, (_json(resolution) if resolution else None), item_id),
    )
    return cur.fetchone() is not None


def mark_conflict(cur, item_id: str, conflict_type: str, resolution: Optional[dict], message: str) -> bool:
    cur.execute(
        """
        UPDATE sync_queue
        SET status = 'conflict',
            conflict_type = %s,
            resolution_json = %s::jsonb,
            error_message = %s,
            next_attempt_at = NULL,
            updated_at = now()
        WHERE id = %s
          AND status = 'syncing'
        RETURNING id
        """,
        (conflict_type, _json(resolution or {}), message, item_id),
    )
    return cur.fetchone() is not None


def mark_invalid(cur, item_id: str, errors: list[str]) -> bool:
    # Validation failures are terminal straight away; retrying cannot fix the payload.
    cur.execute(
        """
        UPDATE sync_queue
        SET status = 'failed',
            error_message = %s,
            next_attempt_at = NULL,
            updated_at = now()
        WHERE id = %s
          AND status = 'syncing'
        RETURNING id
        """,
        ("validation failed: " + "; ".join(errors), item_id),
    )
    return cur.fetchone() is not None


def mark_attempt_failed(cur, item: dict, error: str, max_retries: int, next_attempt_at=None) -> str:
    """
    Record a transient failure. Returns the new status: `pending` while retries
    remain, `failed` once `retry_count` reaches `max_retries`.
    """
    next_count = int(item.get("retry_count") or 0) + 1
    next_status = "failed" if next_count >= max_retries else "pending"
    cur.execute(
        """
        UPDATE sync_queue
        SET status = %s,
            retry_count = %s,
            error_message = %s,
            next_attempt_at = %s,
            updated_at = now()
        WHERE id = %s
          AND status = 'syncing'
        RETURNING id
        """,
        (
            next_status,
            next_count,
            str(error)[:2000],
            (next_attempt_at if next_status == "pending" else None),
            item["id"],
        ),
    )
    if cur.fetchone() is None:
        raise InvalidTransition(str(item["id"]), "not syncing", next_status)
    return next_status


def get_item(cur, item_id: str, store_id: Optional[str] = None) -> Optional[dict]:
    cur.execute(
        f"""
        SELECT {ITEM_COLUMNS}
        FROM sync_queue
        WHERE id = %s
          AND (%s::uuid IS NULL OR store_id = %s::uuid)
        """,
        (item_id, store_id, store_id),
    )
    return normalize_item(cur.fetchone())


def list_items(cur, status: Optional[str] = None, store_id: Optional[str] = None, limit: int = 200) -> list[dict]:
    sql = f"SELECT {ITEM_COLUMNS} FROM sync_queue WHERE 1=1"
    params: list = []
    if status:
        sql += " AND status = %s"
        params.append(status)
    if store_id:
        sql += " AND store_id = %s"
        params.append(store_id)
    sql += " ORDER BY created_at ASC LIMIT %s"
    params.append(limit)
    cur.execute(sql, params)
    return [normalize_item(r) for r in cur.fetchall()]


def get_sync_status(cur, store_id: Optional[str] = None) -> dict:
    cur.execute(
        """
        SELECT status, COUNT(*)::int AS count
        FROM sync_queue
        WHERE (%s::uuid IS NULL OR store_id = %s::uuid)
        GROUP BY status
        """,
        (store_id, store_id),
    )
    out = {"pending": 0, "syncing": 0, "synced": 0, "failed": 0, "conflicts": 0}
    for r in cur.fetchall():
        st = str(r["status"])
        key = "conflicts" if st == "conflict" else st
        if key in out:
            out[key] = int(r["count"] or 0)
    return out


def retry_failed_items(cur, store_id: Optional[str] = None) -> int:
    cur.execute(
        """
        UPDATE sync_queue
        SET status = 'pending',
            retry_count = 0,
            error_message = NULL,
            next_attempt_at = NULL,
            updated_at = now()
        WHERE status = 'failed'
          AND (%s::uuid IS NULL OR store_id = %s::uuid)
        RETURNING id
        """,
        (store_id, store_id),
    )
    return len(cur.fetchall())


def clear_completed_items(cur, older_than_days: int = 7, store_id: Optional[str] = None) -> int:
    cur.execute(
        """
        DELETE FROM sync_queue
        WHERE status = 'synced'
          AND synced_at <= now() - interval '1 day' * %s
          AND (%s::uuid IS NULL OR store_id = %s::uuid)
        RETURNING id
        """,
        (int(older_than_days), store_id, store_id),
    )
    return len(cur.fetchall())


def resolve_conflict_item(cur, item_id: str, action: str, user_id: Optional[str] = None, store_id: Optional[str] = None) -> dict:
    """
    Operator decision on an item parked in `conflict`.

    - accept_server: keep canonical state, item becomes `synced`.
    - accept_local: item goes back to `pending` with an override flag so the
      synchronizer writes the incoming data without consulting the resolver.
    """
    item = get_item(cur, item_id, store_id=store_id)
    if not item:
        raise LookupError(f"sync item {item_id} not found")
    if item["status"] != "conflict":
        raise InvalidTransition(item_id, item["status"], "resolved")

    decision = dict(item.get("resolution_json") or {})
    decision.update({"operator_action": action, "resolved_by": user_id})
    if action == "accept_server":
        cur.execute(
            """
            UPDATE sync_queue
            SET status = 'synced',
                resolution_json = %s::jsonb,
                error_message = NULL,
                synced_at = now(),
                updated_at = now()
            WHERE id = %s
              AND status = 'conflict'
            RETURNING id, status
            """,
            (_json(decision), item_id),
        )
    elif action == "accept_local":
        decision["force_accept_local"] = True
        cur.execute(
            """
            UPDATE sync_queue
            SET status = 'pending',
                retry_count = 0,
                resolution_json = %s::jsonb,
                error_message = NULL,
                next_attempt_at = NULL,
                updated_at = now()
            WHERE id = %s
              AND status = 'conflict'
            RETURNING id, status
            """,
            (_json(decision), item_id),
        )
    else:
        raise SyncValidationError(f"action: unsupported resolution {action}")
    row = cur.fetchone()
    if not row:
        raise InvalidTransition(item_id, "changed concurrently", action)
    return {"id": str(row["id"]), "status": row["status"]}


def acquire_store_lease(cur, store_id: str, holder: str, lease_seconds: int) -> bool:
    cur.execute(
        """
        INSERT INTO sync_store_leases (store_id, holder, expires_at, updated_at)
        VALUES (%s, %s, now() + interval '1 second' * %s, now())
        ON CONFLICT (store_id) DO UPDATE
        SET holder = EXCLUDED.holder,
            expires_at = EXCLUDED.expires_at,
            updated_at = now()
        WHERE sync_store_leases.expires_at < now()
           OR sync_store_leases.holder = EXCLUDED.holder
        RETURNING store_id
        """,
        (store_id, holder, int(lease_seconds)),
    )
    return cur.fetchone() is not None


def release_store_lease(cur, store_id: str, holder: str) -> None:
    cur.execute(
        "DELETE FROM sync_store_leases WHERE store_id = %s AND holder = %s",
        (store_id, holder),
    )


def list_stores_with_pending(cur) -> list[str]:
    cur.execute(
        """
        SELECT DISTINCT store_id
        FROM sync_queue
        WHERE status = 'pending'
          AND (next_attempt_at IS NULL OR next_attempt_at <= now())
        """
    )
    return [str(r["store_id"]) for r in cur.fetchall()]
