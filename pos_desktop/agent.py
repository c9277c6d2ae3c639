#!/usr/bin/env python3
"""
Register-side sync agent.

Owns the offline write buffer and the catalog mirror, submits writes straight
to the server while online and buffers them otherwise, and runs a background
timer that drains the buffer and refreshes the catalog.

  python -m pos_desktop.agent --init-db
  python -m pos_desktop.agent --drain-once
  python -m pos_desktop.agent            # run the timer until interrupted
"""

import argparse
import json
import os
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from .catalog_cache import LocalCatalogCache
from .logs import json_log
from .offline_buffer import DEFAULT_ESCALATION_THRESHOLD, OfflineWriteBuffer
from .transport import device_headers, fetch_json, post_json

ROOT = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.path.join(ROOT, "pos.sqlite")
SCHEMA_PATH = os.path.join(ROOT, "sqlite_schema.sql")
CONFIG_PATH = os.path.join(ROOT, "config.json")

DEFAULT_CONFIG = {
    "api_base_url": "http://localhost:8001",
    "store_id": "",
    "device_id": "",
    "device_token": "",
    "cashier_id": "",
    "drain_interval_seconds": 30,
    "catalog_refresh_seconds": 300,
    "catalog_stale_seconds": 3600,
    "escalation_threshold": DEFAULT_ESCALATION_THRESHOLD,
    "http_timeout_seconds": 10,
}

MONEY_Q = Decimal("0.01")


def load_config(path: str = CONFIG_PATH) -> dict:
    if not os.path.exists(path):
        save_config(DEFAULT_CONFIG, path)
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    cfg = {**DEFAULT_CONFIG, **data}
    # Allow Docker/ops to override without rewriting the on-disk config.
    if os.environ.get("POS_API_BASE_URL"):
        cfg["api_base_url"] = os.environ["POS_API_BASE_URL"]
    if os.environ.get("POS_STORE_ID"):
        cfg["store_id"] = os.environ["POS_STORE_ID"]
    if os.environ.get("POS_DEVICE_ID"):
        cfg["device_id"] = os.environ["POS_DEVICE_ID"]
    if os.environ.get("POS_DEVICE_TOKEN"):
        cfg["device_token"] = os.environ["POS_DEVICE_TOKEN"]
    return cfg


def save_config(data, path: str = CONFIG_PATH):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def init_db(db_path: str = DB_PATH):
    if not os.path.exists(SCHEMA_PATH):
        raise RuntimeError(f"Missing schema file: {SCHEMA_PATH}")
    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        schema = f.read()
    with sqlite3.connect(db_path) as conn:
        conn.executescript(schema)
        conn.commit()


class LazyHandle:
    """Builds its object on first `get()`; safe to call from the timer and the UI thread."""

    def __init__(self, factory: Callable):
        self._factory = factory
        self._obj = None
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._obj is not None

    def get(self):
        if self._obj is None:
            with self._lock:
                if self._obj is None:
                    self._obj = self._factory()
        return self._obj


def _money(v) -> Decimal:
    return Decimal(str(v or 0)).quantize(MONEY_Q)


def build_sale_payload(cart: list[dict], cfg: dict, payment_method: str = "cash", tax_rate=0, local_id: Optional[str] = None) -> dict:
    items = []
    subtotal = Decimal("0")
    for line in cart or []:
        qty = Decimal(str(line.get("quantity") or 0))
        unit_price = _money(line.get("unit_price"))
        line_total = _money(qty * unit_price)
        subtotal += line_total
        items.append(
            {
                "product_id": str(line["product_id"]),
                "quantity": str(qty),
                "unit_price": str(unit_price),
                "total_price": str(line_total),
            }
        )
    tax = _money(subtotal * Decimal(str(tax_rate or 0)))
    now = datetime.now(timezone.utc).isoformat()
    payload = {
        "local_id": local_id or str(uuid.uuid4()),
        "subtotal": str(subtotal),
        "tax_amount": str(tax),
        "total": str(subtotal + tax),
        "status": "completed",
        "payment_method": payment_method,
        "items": items,
        "created_at": now,
        "updated_at": now,
    }
    if cfg.get("store_id"):
        payload["store_id"] = cfg["store_id"]
    if cfg.get("cashier_id"):
        payload["cashier_id"] = cfg["cashier_id"]
    return payload


class SyncAgent:
    def __init__(self, cfg: dict, db_path: str = DB_PATH, send: Optional[Callable] = None, fetch: Optional[Callable] = None):
        self.cfg = {**DEFAULT_CONFIG, **(cfg or {})}
        self.db_path = db_path
        timeout = float(self.cfg.get("http_timeout_seconds") or 10)
        self._send = send or (lambda url, payload, headers: post_json(url, payload, headers, timeout_s=timeout))
        self._fetch = fetch or (lambda url, headers: fetch_json(url, headers, timeout_s=timeout))
        self.online = True
        self.last_drain: Optional[dict] = None
        self.confirmed_total = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.buffer = LazyHandle(
            lambda: OfflineWriteBuffer(self.db_path, send=self._send, headers=device_headers(self.cfg))
        )
        self.catalog = LazyHandle(
            lambda: LocalCatalogCache(
                self.db_path,
                catalog_url=self._url("/sync/catalog") + (f"?store_id={self.cfg['store_id']}" if self.cfg.get("store_id") else ""),
                headers=device_headers(self.cfg),
                fetch=self._fetch,
                refresh_interval=timedelta(seconds=int(self.cfg.get("catalog_refresh_seconds") or 300)),
            )
        )

    def _url(self, path: str) -> str:
        return f"{(self.cfg.get('api_base_url') or '').rstrip('/')}{path}"

    def submit_write(self, entity_type: str, action: str, data: dict, entity_id: Optional[str] = None, idempotency_key: Optional[str] = None) -> dict:
        """
        Send a write to the server queue, buffering it when the server is unreachable.

        Returns `{"sync_status": "submitted" | "pending_sync" | "rejected", ...}`.
        A rejection (HTTP 4xx other than 409) is not buffered: replaying it
        would be rejected the same way.
        """
        key = idempotency_key or str(uuid.uuid4())
        body = {
            "entity_type": entity_type,
            "action": action,
            "data": data,
            "entity_id": entity_id,
            "idempotency_key": key,
        }
        if self.cfg.get("store_id"):
            body["store_id"] = self.cfg["store_id"]
        if self.cfg.get("cashier_id"):
            body["user_id"] = self.cfg["cashier_id"]
        url = self._url("/sync/queue")

        if self.online:
            try:
                status, res = self._send(url, body, {**device_headers(self.cfg), "Idempotency-Key": key})
            except Exception as ex:
                json_log("warning", "agent.submit.offline", entity_type=entity_type, error=str(ex))
                self.on_offline()
            else:
                if 200 <= status < 300 or status == 409:
                    return {"sync_status": "submitted", "idempotency_key": key, "server": res}
                if 400 <= status < 500:
                    return {"sync_status": "rejected", "idempotency_key": key, "status_code": status, "server": res}
                json_log("warning", "agent.submit.server_error", entity_type=entity_type, status_code=status)

        entry = self.buffer.get().enqueue(url, body, idempotency_key=key)
        return {"sync_status": "pending_sync", "idempotency_key": entry["idempotency_key"]}

    def record_sale(self, cart: list[dict], payment_method: str = "cash", tax_rate=0) -> dict:
        payload = build_sale_payload(cart, self.cfg, payment_method=payment_method, tax_rate=tax_rate)
        res = self.submit_write("transaction", "create", payload, entity_id=payload["local_id"])
        # The receipt prints either way; `pending_sync` tells the cashier it has not reached the server yet.
        return {
            "local_id": payload["local_id"],
            "subtotal": payload["subtotal"],
            "tax_amount": payload["tax_amount"],
            "total": payload["total"],
            "payment_method": payment_method,
            "items": payload["items"],
            "created_at": payload["created_at"],
            "sync_status": res["sync_status"],
            "idempotency_key": res["idempotency_key"],
            "errors": ((res.get("server") or {}).get("detail") if res["sync_status"] == "rejected" else None),
        }

    def drain(self) -> dict:
        result = self.buffer.get().drain()
        out = result.to_dict()
        if result.skipped:
            return out
        self.last_drain = {**out, "at": datetime.now(timezone.utc).isoformat()}
        if result.unreachable:
            self.on_offline()
        if result.delivered:
            self.confirmed_total += result.delivered
            json_log("info", "agent.sync.confirmed", delivered=result.delivered, remaining=result.remaining)
        return out

    def refresh_catalog(self, force: bool = False) -> dict:
        return self.catalog.get().refresh(force=force)

    def server_reachable(self) -> bool:
        try:
            self._fetch(self._url("/health"), {})
            return True
        except Exception:
            return False

    def tick(self) -> dict:
        if not self.online:
            if not self.server_reachable():
                return {"skipped": True, "reason": "offline"}
            return self.on_online()
        out = {"drain": None, "catalog": None}
        try:
            out["drain"] = self.drain()
        except Exception as ex:
            json_log("error", "agent.drain.error", error=str(ex))
        try:
            out["catalog"] = self.refresh_catalog()
        except Exception as ex:
            json_log("error", "agent.catalog.error", error=str(ex))
        return out

    def on_online(self) -> dict:
        self.online = True
        json_log("info", "agent.online")
        return {"drain": self.drain(), "catalog": self.refresh_catalog(force=True)}

    def on_offline(self):
        if self.online:
            json_log("info", "agent.offline")
        self.online = False

    def status(self) -> dict:
        buf = self.buffer.get()
        cat = self.catalog.get()
        last = cat.last_sync_at()
        return {
            "online": self.online,
            "pending": buf.count(),
            "escalated": buf.escalated_count(int(self.cfg.get("escalation_threshold") or DEFAULT_ESCALATION_THRESHOLD)),
            "confirmed_total": self.confirmed_total,
            "last_drain": self.last_drain,
            "catalog": {
                "last_sync_at": (last.isoformat() if last else None),
                "product_count": cat.product_count(),
                "stale": cat.is_stale(timedelta(seconds=int(self.cfg.get("catalog_stale_seconds") or 3600))),
            },
        }

    def _run(self):
        interval = max(1.0, float(self.cfg.get("drain_interval_seconds") or 30))
        while not self._stop.wait(interval):
            self.tick()

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="pos-sync-agent", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--init-db", action="store_true", help="Initialize local SQLite schema and exit")
    parser.add_argument("--db", default=os.environ.get("POS_DB_PATH", DB_PATH), help="SQLite DB path")
    parser.add_argument("--config", default=os.environ.get("POS_CONFIG_PATH", CONFIG_PATH), help="Config JSON path")
    parser.add_argument("--drain-once", action="store_true", help="Replay buffered writes once and exit")
    parser.add_argument("--refresh-catalog", action="store_true", help="Force a catalog download and exit")
    args = parser.parse_args()

    db_path = os.path.abspath(args.db)
    init_db(db_path)
    if args.init_db:
        print("ok")
        return

    agent = SyncAgent(load_config(os.path.abspath(args.config)), db_path=db_path)
    if args.drain_once or args.refresh_catalog:
        out = {}
        if args.drain_once:
            out["drain"] = agent.drain()
        if args.refresh_catalog:
            out["catalog"] = agent.refresh_catalog(force=True)
        print(json.dumps(out, default=str))
        return

    agent.start()
    json_log("info", "agent.started", db=db_path, api_base_url=agent.cfg.get("api_base_url"))
    try:
        while True:
            time.sleep(3600)
    except KeyboardInterrupt:
        agent.stop()


if __name__ == "__main__":
    main()
