import copy
import os
import re
import sys
from datetime import datetime, timedelta, timezone

import pytest


# Allow running pytest from either the repo root or from within `backend/`.
# Tests import `backend.*` and `pos_desktop.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def register_db(tmp_path):
    from pos_desktop.agent import init_db

    path = str(tmp_path / "pos.sqlite")
    init_db(path)
    return path


class FakeStoreCursor:
    """
    In-memory stand-in for the canonical tables the synchronizers touch.

    Dispatches on the normalized SQL text, the same way the other fake cursors
    in this suite match statements, and keeps just enough state for the
    replay/merge scenarios.
    """

    def __init__(self):
        self.transactions: dict[str, dict] = {}
        self.lines: list[dict] = []
        self.inventory: dict[str, dict] = {}
        self.products: dict[str, dict] = {}
        self.executed: list[tuple[str, object]] = []
        self._result = None
        self._seq = 0
        # Statement prefix that raises, to exercise rollback paths.
        self.fail_on: str | None = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def _next_id(self, prefix):
        self._seq += 1
        return f"{prefix}-{self._seq}"

    @staticmethod
    def _apply_set(row: dict, sql: str, params: list) -> list:
        set_part = sql.split(" SET ", 1)[1].split(" WHERE ", 1)[0]
        params = list(params)
        for assignment in re.split(r", (?=\w+ = )", set_part):
            col, expr = [p.strip() for p in assignment.split("=", 1)]
            if "%s" not in expr:
                continue
            value = params.pop(0)
            if expr.startswith("COALESCE") and value is None:
                continue
            row[col] = value
        return params

    def execute(self, sql, params=None):
        s = " ".join(sql.split())
        self.executed.append((s, params))
        if self.fail_on and s.startswith(self.fail_on):
            raise RuntimeError(f"injected failure: {self.fail_on}")
        self._result = self._dispatch(s, params)

    def fetchone(self):
        r = self._result
        if isinstance(r, list):
            return r[0] if r else None
        return r

    def fetchall(self):
        r = self._result
        return list(r or []) if isinstance(r, list) else []

    def _dispatch(self, s, params):
        if s.startswith("SELECT set_config"):
            return None

        if s.startswith("SELECT") and "FROM transactions" in s:
            if "idempotency_key = %s" in s:
                store_id, key = params
                hits = [r for r in self.transactions.values() if r["idempotency_key"] == key]
            else:
                store_id, key, _ = params
                hits = [r for r in self.transactions.values() if key in (r["id"], r["local_id"])]
            return [dict(r) for r in hits if r["store_id"] == store_id][:1]
        if s.startswith("INSERT INTO transactions"):
            (store_id, cashier_id, local_id, idem, subtotal, tax, total, status, method, queue_id, created_at, updated_at) = params
            if local_id and any(r["store_id"] == store_id and r["local_id"] == local_id for r in self.transactions.values()):
                raise RuntimeError("duplicate key value violates unique constraint uq_transactions_store_local_id")
            if idem and any(r["store_id"] == store_id and r["idempotency_key"] == idem for r in self.transactions.values()):
                raise RuntimeError("duplicate key value violates unique constraint uq_transactions_store_idempotency_key")
            tx_id = self._next_id("tx")
            self.transactions[tx_id] = {
                "id": tx_id,
                "store_id": store_id,
                "cashier_id": cashier_id,
                "local_id": local_id,
                "idempotency_key": idem,
                "subtotal": subtotal,
                "tax_amount": tax,
                "total": total,
                "status": status,
                "payment_method": method,
                "source_queue_id": queue_id,
                "created_at": created_at,
                "updated_at": updated_at or created_at,
            }
            return [{"id": tx_id}]
        if s.startswith("UPDATE transactions"):
            tx_id = params[-1]
            self._apply_set(self.transactions[tx_id], s, params[:-1])
            return None
        if s.startswith("DELETE FROM transactions"):
            self.transactions.pop(params[0], None)
            return None

        if s.startswith("INSERT INTO transaction_items"):
            tx_id, product_id, qty, unit_price, total_price = params
            self.lines.append(
                {"transaction_id": tx_id, "product_id": product_id, "quantity": qty, "unit_price": unit_price, "total_price": total_price}
            )
            return None
        if s.startswith("SELECT") and "FROM transaction_items" in s:
            return [
                {k: v for k, v in l.items() if k != "transaction_id"}
                for l in self.lines
                if l["transaction_id"] == params[0]
            ]
        if s.startswith("DELETE FROM transaction_items"):
            self.lines = [l for l in self.lines if l["transaction_id"] != params[0]]
            return None

        if s.startswith("SELECT") and "FROM inventory" in s:
            store_id, key, _ = params
            return [
                dict(r)
                for r in self.inventory.values()
                if r["store_id"] == store_id and key in (r["id"], r["product_id"])
            ][:1]
        if s.startswith("INSERT INTO inventory"):
            store_id, product_id, qty, min_level, max_level, last_restocked = params
            if any(r["store_id"] == store_id and r["product_id"] == product_id for r in self.inventory.values()):
                return []
            inv_id = self._next_id("inv")
            self.add_inventory(store_id, product_id, qty, inv_id=inv_id, min_stock_level=min_level, max_stock_level=max_level)
            return [{"id": inv_id}]
        if s.startswith("UPDATE inventory"):
            inv_id = params[-1]
            self._apply_set(self.inventory[inv_id], s, params[:-1])
            return None
        if s.startswith("DELETE FROM inventory"):
            store_id, key = params[0], params[1]
            self.inventory = {
                k: r for k, r in self.inventory.items() if not (r["store_id"] == store_id and key in (r["id"], r["product_id"]))
            }
            return None

        if s.startswith("INSERT INTO products"):
            store_id, name, sku, barcode, description, price, cost, category, brand = params
            pid = self._next_id("prod")
            self.products[pid] = {
                "id": pid, "store_id": store_id, "name": name, "sku": sku, "barcode": barcode,
                "description": description, "price": price, "cost": cost, "category": category, "brand": brand,
                "is_active": True,
            }
            return [{"id": pid}]
        if s.startswith("UPDATE products"):
            store_id, key = params[-2], params[-1]
            row = self.products.get(key)
            if not row or row["store_id"] != store_id:
                return []
            self._apply_set(row, s, params[:-2])
            return [{"id": key}]
        if s.startswith("DELETE FROM products"):
            self.products.pop(params[1], None)
            return None

        raise AssertionError(f"unexpected SQL in fake store: {s}")

    def snapshot(self):
        return copy.deepcopy((self.transactions, self.lines, self.inventory, self.products))

    def restore(self, state):
        self.transactions, self.lines, self.inventory, self.products = copy.deepcopy(state)

    def add_inventory(self, store_id, product_id, quantity, inv_id=None, **extra):
        from decimal import Decimal

        inv_id = inv_id or self._next_id("inv")
        self.inventory[inv_id] = {
            "id": inv_id,
            "store_id": store_id,
            "product_id": product_id,
            "quantity": Decimal(str(quantity)),
            "min_stock_level": extra.get("min_stock_level"),
            "max_stock_level": extra.get("max_stock_level"),
            "last_restocked": None,
            "updated_at": None,
        }
        return inv_id


@pytest.fixture
def store_cursor():
    return FakeStoreCursor()
