from fastapi import APIRouter, HTTPException, Depends, Response
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone
import uuid
from ..config import settings
from ..db import get_conn, set_store_context
from ..deps import require_device, get_current_user, get_store_id
from ..logs import json_log
from ..sync_errors import InvalidTransition, SyncValidationError
from ..validation import IdempotencyKey, ResolutionAction, SyncStatus
from .. import sync_queue

router = APIRouter(prefix="/sync", tags=["sync"])


class SyncQueueIn(BaseModel):
    store_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    # Free text here on purpose: unknown types/actions come back as a 400 error list.
    entity_type: str = Field(min_length=1, max_length=40)
    entity_id: Optional[str] = Field(default=None, max_length=128)
    action: str = Field(min_length=1, max_length=20)
    data: dict
    idempotency_key: Optional[IdempotencyKey] = None


class ResolveIn(BaseModel):
    action: ResolutionAction


def _scoped_store(store_id: Optional[uuid.UUID], session_store_id: Optional[str]) -> Optional[str]:
    if store_id:
        return str(store_id)
    return session_store_id


def _parse_item_id(item_id: str) -> str:
    try:
        return str(uuid.UUID(str(item_id).strip()))
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid item id")


@router.post("/queue", status_code=201)
def enqueue(data: SyncQueueIn, response: Response, device=Depends(require_device)):
    store_id = device["store_id"]
    if data.store_id and str(data.store_id) != store_id:
        raise HTTPException(status_code=400, detail="store_id mismatch")

    with get_conn() as conn:
        set_store_context(conn, store_id)
        with conn.cursor() as cur:
            try:
                out = sync_queue.enqueue_item(
                    cur,
                    store_id=store_id,
                    user_id=(str(data.user_id) if data.user_id else None),
                    entity_type=data.entity_type,
                    action=data.action,
                    data=data.data,
                    entity_id=data.entity_id,
                    idempotency_key=data.idempotency_key,
                )
            except SyncValidationError as ex:
                raise HTTPException(status_code=400, detail={"errors": ex.errors})
    if out["duplicate"]:
        response.status_code = 200
    json_log(
        "info",
        "sync.queue.enqueued",
        item_id=out["id"],
        store_id=store_id,
        device_id=device["device_id"],
        entity_type=data.entity_type,
        action=data.action,
        duplicate=out["duplicate"],
    )
    return out


@router.get("/status")
def sync_status(
    store_id: Optional[uuid.UUID] = None,
    session_store_id: Optional[str] = Depends(get_store_id),
    _user=Depends(get_current_user),
):
    scope = _scoped_store(store_id, session_store_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            return sync_queue.get_sync_status(cur, scope)


@router.post("/process")
def process_now(
    store_id: Optional[uuid.UUID] = None,
    session_store_id: Optional[str] = Depends(get_store_id),
    _user=Depends(get_current_user),
):
    # Import lazily to keep router import time small.
    from ...workers import sync_queue_processor

    scope = _scoped_store(store_id, session_store_id)
    result = sync_queue_processor.process_queue(settings.db_url, store_id=scope)
    return result.to_dict()


@router.post("/retry-failed")
def retry_failed(
    store_id: Optional[uuid.UUID] = None,
    session_store_id: Optional[str] = Depends(get_store_id),
    user=Depends(get_current_user),
):
    scope = _scoped_store(store_id, session_store_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            retried = sync_queue.retry_failed_items(cur, scope)
    json_log("info", "sync.queue.retry_failed", store_id=scope, user_id=user["user_id"], retried=retried)
    return {"retried": retried}


@router.post("/clear-completed")
def clear_completed(
    older_than_days: int = settings.sync_clear_after_days,
    store_id: Optional[uuid.UUID] = None,
    session_store_id: Optional[str] = Depends(get_store_id),
    user=Depends(get_current_user),
):
    if older_than_days < 0:
        raise HTTPException(status_code=400, detail="older_than_days must be >= 0")
    scope = _scoped_store(store_id, session_store_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cleared = sync_queue.clear_completed_items(cur, older_than_days, scope)
    json_log("info", "sync.queue.cleared", store_id=scope, user_id=user["user_id"], cleared=cleared)
    return {"cleared": cleared}


@router.get("/items")
def list_items(
    status: Optional[SyncStatus] = None,
    limit: int = 200,
    store_id: Optional[uuid.UUID] = None,
    session_store_id: Optional[str] = Depends(get_store_id),
    _user=Depends(get_current_user),
):
    if limit <= 0 or limit > 1000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")
    scope = _scoped_store(store_id, session_store_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"items": sync_queue.list_items(cur, status=status, store_id=scope, limit=limit)}


@router.get("/items/{item_id}")
def get_item(
    item_id: str,
    session_store_id: Optional[str] = Depends(get_store_id),
    _user=Depends(get_current_user),
):
    item_id = _parse_item_id(item_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            item = sync_queue.get_item(cur, item_id, store_id=session_store_id)
    if not item:
        raise HTTPException(status_code=404, detail="sync item not found")
    return {"item": item}


@router.post("/items/{item_id}/resolve")
def resolve_item(
    item_id: str,
    data: ResolveIn,
    session_store_id: Optional[str] = Depends(get_store_id),
    user=Depends(get_current_user),
):
    item_id = _parse_item_id(item_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            try:
                out = sync_queue.resolve_conflict_item(
                    cur, item_id, data.action, user_id=user["user_id"], store_id=session_store_id
                )
            except LookupError:
                raise HTTPException(status_code=404, detail="sync item not found")
            except InvalidTransition as ex:
                raise HTTPException(status_code=409, detail=str(ex))
    json_log("info", "sync.queue.resolved", item_id=item_id, action=data.action, user_id=user["user_id"])
    return out


@router.get("/catalog")
def download_catalog(store_id: Optional[uuid.UUID] = None, device=Depends(require_device)):
    if store_id and str(store_id) != device["store_id"]:
        raise HTTPException(status_code=400, detail="store_id mismatch")
    with get_conn() as conn:
        set_store_context(conn, device["store_id"])
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, sku, barcode, price
                FROM products
                WHERE store_id = %s
                  AND is_active = true
                ORDER BY name, id
                """,
                (device["store_id"],),
            )
            products = [
                {
                    "id": str(r["id"]),
                    "name": r["name"],
                    "sku": r.get("sku"),
                    "barcode": r.get("barcode"),
                    "price": str(r["price"]),
                }
                for r in cur.fetchall()
            ]
    return {
        "store_id": device["store_id"],
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "products": products,
    }
