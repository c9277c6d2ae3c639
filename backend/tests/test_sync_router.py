import json
import uuid
from decimal import Decimal

import pytest
from fastapi import HTTPException, Response

from backend.app.routers import sync as sync_router
from backend.workers import sync_queue_processor

STORE = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
ITEM = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"
DEVICE = {"device_id": "dddddddd-dddd-dddd-dddd-dddddddddddd", "store_id": STORE}
USER = {"user_id": "eeeeeeee-eeee-eeee-eeee-eeeeeeeeeeee"}


class _DummyCursor:
    def __init__(self, fetchone=None, fetchall=None):
        self._one = list(fetchone or [])
        self._all = list(fetchall or [])
        self.executed: list[tuple[str, object]] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))

    def fetchone(self):
        return self._one.pop(0) if self._one else None

    def fetchall(self):
        return self._all.pop(0) if self._all else []


class _DummyConn:
    def __init__(self, cursor: _DummyCursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cursor


def _patch_db(monkeypatch, fetchone=None, fetchall=None):
    cur = _DummyCursor(fetchone, fetchall)
    conn = _DummyConn(cur)
    monkeypatch.setattr(sync_router, "get_conn", lambda: conn)
    monkeypatch.setattr(sync_router, "set_store_context", lambda *_args, **_kwargs: None)
    return cur


def _response():
    # FastAPI hands endpoints a sub-response without a status; the route default applies.
    resp = Response()
    resp.status_code = None
    return resp


def _sale_in(**overrides):
    body = {
        "entity_type": "transaction",
        "action": "create",
        "data": {
            "local_id": "sale-001",
            "total": "5.00",
            "items": [{"product_id": "p1", "quantity": "1", "unit_price": "5.00", "total_price": "5.00"}],
        },
        "idempotency_key": "key-00000001",
    }
    body.update(overrides)
    return sync_router.SyncQueueIn(**body)


def test_enqueue_new_item_keeps_created_status(monkeypatch):
    cur = _patch_db(monkeypatch, fetchone=[{"id": ITEM, "status": "pending"}])
    resp = _response()
    out = sync_router.enqueue(_sale_in(), resp, device=DEVICE)
    assert out == {"id": ITEM, "status": "pending", "duplicate": False}
    assert resp.status_code is None
    _sql, params = cur.executed[0]
    assert params[0] == STORE


def test_enqueue_replay_returns_original_with_200(monkeypatch):
    _patch_db(monkeypatch, fetchone=[None, {"id": ITEM, "status": "synced"}])
    resp = _response()
    out = sync_router.enqueue(_sale_in(), resp, device=DEVICE)
    assert out == {"id": ITEM, "status": "synced", "duplicate": True}
    assert resp.status_code == 200


def test_enqueue_invalid_payload_lists_every_error(monkeypatch):
    cur = _patch_db(monkeypatch)
    body = _sale_in(data={"local_id": "sale-001", "total": "-1", "items": []})
    with pytest.raises(HTTPException) as exc:
        sync_router.enqueue(body, _response(), device=DEVICE)
    assert exc.value.status_code == 400
    errors = exc.value.detail["errors"]
    assert errors and any(e.startswith("items") for e in errors)
    assert cur.executed == []


def test_enqueue_rejects_foreign_store(monkeypatch):
    _patch_db(monkeypatch)
    body = _sale_in(store_id=uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc"))
    with pytest.raises(HTTPException) as exc:
        sync_router.enqueue(body, _response(), device=DEVICE)
    assert exc.value.status_code == 400
    assert exc.value.detail == "store_id mismatch"


def test_status_counts_every_state(monkeypatch):
    _patch_db(monkeypatch, fetchall=[[{"status": "pending", "count": 2}, {"status": "conflict", "count": 1}]])
    out = sync_router.sync_status(store_id=None, session_store_id=STORE, _user=USER)
    assert out == {"pending": 2, "syncing": 0, "synced": 0, "failed": 0, "conflicts": 1}


def test_process_now_runs_processor_for_scope(monkeypatch):
    calls = []

    def _fake_process(db_url, store_id=None):
        calls.append(store_id)
        return sync_queue_processor.SyncResult(synced_items=2, conflicts=1)

    monkeypatch.setattr(sync_queue_processor, "process_queue", _fake_process)
    out = sync_router.process_now(store_id=None, session_store_id=STORE, _user=USER)
    assert calls == [STORE]
    assert out["processed"] == 3
    assert out["conflicts"] == 1


def test_resolve_unknown_item_is_404(monkeypatch):
    _patch_db(monkeypatch, fetchone=[None])
    with pytest.raises(HTTPException) as exc:
        sync_router.resolve_item(ITEM, sync_router.ResolveIn(action="accept_server"), session_store_id=STORE, user=USER)
    assert exc.value.status_code == 404


def test_resolve_item_not_in_conflict_is_409(monkeypatch):
    _patch_db(monkeypatch, fetchone=[{"id": ITEM, "status": "synced", "data": {}}])
    with pytest.raises(HTTPException) as exc:
        sync_router.resolve_item(ITEM, sync_router.ResolveIn(action="accept_server"), session_store_id=STORE, user=USER)
    assert exc.value.status_code == 409


def test_resolve_accept_local_requeues_with_override(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        fetchone=[
            {"id": ITEM, "status": "conflict", "data": {}, "resolution_json": {"action": "manual"}},
            {"id": ITEM, "status": "pending"},
        ],
    )
    out = sync_router.resolve_item(ITEM, sync_router.ResolveIn(action="ACCEPT_LOCAL"), session_store_id=STORE, user=USER)
    assert out == {"id": ITEM, "status": "pending"}
    _sql, params = cur.executed[-1]
    decision = json.loads(params[0])
    assert decision["force_accept_local"] is True
    assert decision["resolved_by"] == USER["user_id"]


def test_item_id_must_be_uuid(monkeypatch):
    _patch_db(monkeypatch)
    with pytest.raises(HTTPException) as exc:
        sync_router.get_item("not-a-uuid", session_store_id=STORE, _user=USER)
    assert exc.value.status_code == 400


def test_catalog_contract(monkeypatch):
    cur = _patch_db(
        monkeypatch,
        fetchall=[
            [
                {"id": uuid.UUID("11111111-1111-1111-1111-111111111111"), "name": "Milk 1L", "sku": "MLK1", "barcode": "622000111", "price": Decimal("1.20")},
                {"id": uuid.UUID("22222222-2222-2222-2222-222222222222"), "name": "Water", "sku": None, "barcode": None, "price": Decimal("0.50")},
            ]
        ],
    )
    out = sync_router.download_catalog(store_id=None, device=DEVICE)
    assert out["store_id"] == STORE
    assert out["products"][0] == {
        "id": "11111111-1111-1111-1111-111111111111",
        "name": "Milk 1L",
        "sku": "MLK1",
        "barcode": "622000111",
        "price": "1.20",
    }
    assert out["products"][1]["barcode"] is None
    assert cur.executed[0][1] == (STORE,)
