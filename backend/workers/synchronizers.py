"""
Entity synchronizers: apply one claimed sync queue item to the canonical tables.

Each synchronizer runs inside the savepoint the processor opens around an item,
so a failure halfway through (header written, lines not) leaves nothing behind.
They return an ApplyResult for outcomes the queue records (applied, or an
unresolved conflict) and raise for everything else:
- SyncValidationError: the item can never apply as-is
- TransientSyncError / any DB error: retried by the processor
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from ..app.conflict_resolver import (
    ACCEPT_LOCAL,
    ACCEPT_SERVER,
    DUPLICATE,
    MERGE,
    QUANTITY_MISMATCH,
    Resolution,
    resolve,
    strip_sync_metadata,
)
from ..app.sync_errors import SyncValidationError, TransientSyncError
from ..app.sync_payloads import parse_payload


@dataclass
class ApplyResult:
    success: bool
    entity_id: Optional[str] = None
    conflict: bool = False
    conflict_type: Optional[str] = None
    resolution: Optional[dict] = field(default=None)
    error: Optional[str] = None

    @classmethod
    def applied(cls, entity_id=None, resolution: Optional[Resolution] = None) -> "ApplyResult":
        return cls(True, entity_id=(str(entity_id) if entity_id else None), resolution=(resolution.to_dict() if resolution else None))

    @classmethod
    def unresolved(cls, conflict_type: str, resolution: Resolution, entity_id=None) -> "ApplyResult":
        return cls(
            False,
            entity_id=(str(entity_id) if entity_id else None),
            conflict=True,
            conflict_type=conflict_type,
            resolution=resolution.to_dict(),
            error=resolution.message,
        )


def _operator_forced_local(item: dict) -> bool:
    # Set by resolve_conflict_item(..., "accept_local"): write the incoming data as-is.
    return bool((item.get("resolution_json") or {}).get("force_accept_local"))


def _require_entity_id(item: dict) -> str:
    entity_id = str(item.get("entity_id") or "").strip()
    if not entity_id:
        raise SyncValidationError(f"entity_id: required for {item.get('action')}")
    return entity_id


def _set_clause(fields: dict) -> tuple[str, list]:
    cols = sorted(fields)
    return ", ".join(f"{c} = %s" for c in cols), [fields[c] for c in cols]


class EntitySynchronizer:
    entity_type = ""

    def apply(self, cur, item: dict) -> ApplyResult:
        action = str(item.get("action") or "").lower()
        payload = parse_payload(self.entity_type, action, item.get("data"))
        handler = getattr(self, action, None)
        if handler is None:
            raise SyncValidationError(f"action: unsupported {self.entity_type} action {action}")
        return handler(cur, item, payload)


class TransactionSynchronizer(EntitySynchronizer):
    entity_type = "transaction"

    def _find(self, cur, store_id: str, key: str, lock: bool = True) -> Optional[dict]:
        # Clients only know the local id while offline; accept either identifier.
        cur.execute(
            f"""
            SELECT id, local_id, subtotal, tax_amount, total, status, payment_method,
                   created_at, updated_at
            FROM transactions
            WHERE store_id = %s
              AND (id::text = %s OR local_id = %s)
            LIMIT 1
            {"FOR UPDATE" if lock else ""}
            """,
            (store_id, key, key),
        )
        return cur.fetchone()

    def _find_by_key(self, cur, store_id: str, idempotency_key: str) -> Optional[dict]:
        cur.execute(
            """
            SELECT id, local_id, subtotal, tax_amount, total, status, payment_method,
                   created_at, updated_at
            FROM transactions
            WHERE store_id = %s
              AND idempotency_key = %s
            LIMIT 1
            FOR UPDATE
            """,
            (store_id, idempotency_key),
        )
        return cur.fetchone()

    def _find_replay(self, cur, item: dict, payload) -> Optional[dict]:
        # The queue row that deduped a key is pruned after a few days; the canonical
        # row keeps the key so a later replay still lands on the same sale.
        store_id = item["store_id"]
        if payload.local_id:
            existing = self._find(cur, store_id, payload.local_id)
            if existing:
                return existing
        key = str(item.get("idempotency_key") or "").strip()
        if key:
            return self._find_by_key(cur, store_id, key)
        return None

    def _load_lines(self, cur, transaction_id) -> list[dict]:
        cur.execute(
            """
            SELECT product_id, quantity, unit_price, total_price
            FROM transaction_items
            WHERE transaction_id = %s
            ORDER BY created_at, id
            """,
            (transaction_id,),
        )
        return [dict(r) for r in cur.fetchall()]

    def _insert_lines(self, cur, transaction_id, lines) -> None:
        for line in lines:
            cur.execute(
                """
                INSERT INTO transaction_items (id, transaction_id, product_id, quantity, unit_price, total_price)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                """,
                (transaction_id, line.product_id, line.quantity, line.unit_price, line.total_price),
            )

    def create(self, cur, item: dict, payload) -> ApplyResult:
        store_id = item["store_id"]
        existing = self._find_replay(cur, item, payload)
        if existing:
            return self._replayed_sale(cur, item, payload, existing)

        subtotal = payload.subtotal
        if subtotal is None:
            subtotal = sum((l.total_price for l in payload.items), Decimal("0"))
        cur.execute(
            """
            INSERT INTO transactions
              (id, store_id, cashier_id, local_id, idempotency_key, subtotal, tax_amount, total,
               status, payment_method, source_queue_id, created_at, updated_at)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
               COALESCE(%s, now()), COALESCE(%s, now()))
            RETURNING id
            """,
            (
                store_id,
                payload.cashier_id or item.get("user_id"),
                payload.local_id,
                item.get("idempotency_key"),
                subtotal,
                payload.tax_amount,
                payload.total,
                payload.status,
                payload.payment_method,
                item["id"],
                payload.created_at,
                payload.updated_at,
            ),
        )
        tx_id = cur.fetchone()["id"]
        self._insert_lines(cur, tx_id, payload.items)
        return ApplyResult.applied(tx_id)

    def _replayed_sale(self, cur, item: dict, payload, existing: dict) -> ApplyResult:
        incoming = payload.model_dump(exclude_unset=True)
        if _operator_forced_local(item):
            decision = Resolution(True, ACCEPT_LOCAL, strip_sync_metadata(incoming), "operator accepted local copy")
        else:
            server_copy = dict(existing)
            server_copy["items"] = self._load_lines(cur, existing["id"])
            decision = resolve(DUPLICATE, incoming, server_copy)

        if not decision.resolved:
            return ApplyResult.unresolved(DUPLICATE, decision, existing["id"])
        if decision.action == ACCEPT_SERVER:
            return ApplyResult.applied(existing["id"], decision)

        subtotal = payload.subtotal
        if subtotal is None:
            subtotal = sum((l.total_price for l in payload.items), Decimal("0"))
        cur.execute(
            """
            UPDATE transactions
            SET subtotal = %s,
                tax_amount = %s,
                total = %s,
                status = %s,
                payment_method = %s,
                updated_at = COALESCE(%s, now())
            WHERE id = %s
            """,
            (subtotal, payload.tax_amount, payload.total, payload.status, payload.payment_method, payload.updated_at, existing["id"]),
        )
        cur.execute("DELETE FROM transaction_items WHERE transaction_id = %s", (existing["id"],))
        self._insert_lines(cur, existing["id"], payload.items)
        return ApplyResult.applied(existing["id"], decision)

    def update(self, cur, item: dict, payload) -> ApplyResult:
        key = _require_entity_id(item)
        existing = self._find(cur, item["store_id"], key)
        if not existing:
            raise TransientSyncError("transaction record not found")
        fields = payload.model_dump(exclude_unset=True)
        fields.pop("updated_at", None)
        sets, params = _set_clause(fields)
        cur.execute(
            f"""
            UPDATE transactions
            SET {sets + ", " if sets else ""}updated_at = COALESCE(%s, now())
            WHERE id = %s
            """,
            params + [payload.updated_at, existing["id"]],
        )
        return ApplyResult.applied(existing["id"])

    def delete(self, cur, item: dict, payload) -> ApplyResult:
        key = _require_entity_id(item)
        existing = self._find(cur, item["store_id"], key)
        if not existing:
            # Already gone; deleting twice has the same effect as once.
            return ApplyResult.applied(key)
        cur.execute("DELETE FROM transaction_items WHERE transaction_id = %s", (existing["id"],))
        cur.execute("DELETE FROM transactions WHERE id = %s", (existing["id"],))
        return ApplyResult.applied(existing["id"])


class InventorySynchronizer(EntitySynchronizer):
    entity_type = "inventory"

    def _find(self, cur, store_id: str, key: str) -> Optional[dict]:
        cur.execute(
            """
            SELECT id, product_id, quantity, min_stock_level, max_stock_level, last_restocked, updated_at
            FROM inventory
            WHERE store_id = %s
              AND (id::text = %s OR product_id::text = %s)
            LIMIT 1
            FOR UPDATE
            """,
            (store_id, key, key),
        )
        return cur.fetchone()

    def _write(self, cur, inventory_id, data: dict) -> None:
        cur.execute(
            """
            UPDATE inventory
            SET quantity = %s,
                min_stock_level = COALESCE(%s, min_stock_level),
                max_stock_level = COALESCE(%s, max_stock_level),
                last_restocked = COALESCE(%s, last_restocked),
                updated_at = now()
            WHERE id = %s
            """,
            (
                data["quantity"],
                data.get("min_stock_level"),
                data.get("max_stock_level"),
                data.get("last_restocked"),
                inventory_id,
            ),
        )

    def _reconcile(self, cur, item: dict, incoming: dict, existing: dict) -> ApplyResult:
        if _operator_forced_local(item):
            decision = Resolution(True, ACCEPT_LOCAL, strip_sync_metadata(incoming), "operator accepted local quantity")
        else:
            decision = resolve(QUANTITY_MISMATCH, incoming, dict(existing))
        if not decision.resolved:
            return ApplyResult.unresolved(QUANTITY_MISMATCH, decision, existing["id"])
        if decision.action in (ACCEPT_LOCAL, MERGE):
            self._write(cur, existing["id"], decision.data)
        return ApplyResult.applied(existing["id"], decision)

    def create(self, cur, item: dict, payload) -> ApplyResult:
        cur.execute(
            """
            INSERT INTO inventory
              (id, store_id, product_id, quantity, min_stock_level, max_stock_level, last_restocked)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
            ON CONFLICT (store_id, product_id) DO NOTHING
            RETURNING id
            """,
            (
                item["store_id"],
                payload.product_id,
                payload.quantity,
                payload.min_stock_level,
                payload.max_stock_level,
                payload.last_restocked,
            ),
        )
        row = cur.fetchone()
        if row:
            return ApplyResult.applied(row["id"])
        # Another register created the row first: treat it like an update with no baseline.
        existing = self._find(cur, item["store_id"], payload.product_id)
        if not existing:
            raise TransientSyncError("inventory record not found")
        return self._reconcile(cur, item, payload.model_dump(exclude_unset=True), existing)

    def update(self, cur, item: dict, payload) -> ApplyResult:
        key = _require_entity_id(item)
        existing = self._find(cur, item["store_id"], key)
        if not existing:
            raise TransientSyncError("inventory record not found")
        return self._reconcile(cur, item, payload.model_dump(exclude_unset=True), existing)

    def delete(self, cur, item: dict, payload) -> ApplyResult:
        key = _require_entity_id(item)
        cur.execute(
            """
            DELETE FROM inventory
            WHERE store_id = %s
              AND (id::text = %s OR product_id::text = %s)
            """,
            (item["store_id"], key, key),
        )
        return ApplyResult.applied(key)


class ProductSynchronizer(EntitySynchronizer):
    entity_type = "product"

    def create(self, cur, item: dict, payload) -> ApplyResult:
        cur.execute(
            """
            INSERT INTO products
              (id, store_id, name, sku, barcode, description, price, cost, category, brand)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                item["store_id"],
                payload.name.strip(),
                payload.sku,
                payload.barcode,
                payload.description,
                payload.price,
                payload.cost,
                payload.category,
                payload.brand,
            ),
        )
        return ApplyResult.applied(cur.fetchone()["id"])

    def update(self, cur, item: dict, payload) -> ApplyResult:
        key = _require_entity_id(item)
        sets, params = _set_clause(payload.model_dump(exclude_unset=True))
        cur.execute(
            f"""
            UPDATE products
            SET {sets}, updated_at = now()
            WHERE store_id = %s AND id::text = %s
            RETURNING id
            """,
            params + [item["store_id"], key],
        )
        row = cur.fetchone()
        if not row:
            raise TransientSyncError("product record not found")
        return ApplyResult.applied(row["id"])

    def delete(self, cur, item: dict, payload) -> ApplyResult:
        key = _require_entity_id(item)
        cur.execute(
            "DELETE FROM inventory WHERE store_id = %s AND product_id::text = %s",
            (item["store_id"], key),
        )
        cur.execute(
            "DELETE FROM products WHERE store_id = %s AND id::text = %s",
            (item["store_id"], key),
        )
        return ApplyResult.applied(key)


SYNCHRONIZERS: dict[str, EntitySynchronizer] = {
    s.entity_type: s
    for s in (TransactionSynchronizer(), InventorySynchronizer(), ProductSynchronizer())
}


def get_synchronizer(entity_type: str) -> EntitySynchronizer:
    s = SYNCHRONIZERS.get(str(entity_type or "").strip().lower())
    if s is None:
        raise SyncValidationError(f"entity_type: no synchronizer for {entity_type}")
    return s
