"""
Conflict policy for replayed writes.

`resolve()` is a pure function of the conflict type and the two versions of the
record: no DB access, no clock, no randomness. Synchronizers feed it what they
loaded and act on the returned decision; anything it cannot settle comes back
with `resolved=False` and ends up in the `conflict` queue state.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

ACCEPT_LOCAL = "accept_local"
ACCEPT_SERVER = "accept_server"
MERGE = "merge"
MANUAL = "manual"

DUPLICATE = "duplicate"
QUANTITY_MISMATCH = "quantity_mismatch"

# Fields that describe how/when a record travelled, not what it says.
SYNC_METADATA_FIELDS = frozenset(
    {
        "id",
        "local_id",
        "idempotency_key",
        "store_id",
        "cashier_id",
        "device_id",
        "client_id",
        "created_at",
        "updated_at",
        "synced_at",
        "sync_status",
        "retry_count",
    }
)
TOTAL_FIELDS = ("subtotal", "tax_amount", "total")
MONEY_Q = Decimal("0.01")


@dataclass
class Resolution:
    resolved: bool
    action: str
    data: Optional[dict] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _dec(v) -> Optional[Decimal]:
    if v is None or v == "":
        return None
    try:
        return Decimal(str(v))
    except (InvalidOperation, ValueError):
        return None


def _money(v) -> Optional[str]:
    d = _dec(v)
    return str(d.quantize(MONEY_Q)) if d is not None else None


def _ts(v) -> Optional[datetime]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        dt = v
    else:
        try:
            dt = datetime.fromisoformat(str(v).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _record_ts(rec: dict) -> Optional[datetime]:
    return _ts(rec.get("updated_at")) or _ts(rec.get("created_at"))


def strip_sync_metadata(rec: dict) -> dict:
    return {k: v for k, v in (rec or {}).items() if k not in SYNC_METADATA_FIELDS}


def _line_key(line: dict) -> tuple:
    return (
        str(line.get("product_id") or ""),
        str(_dec(line.get("quantity"))),
        _money(line.get("unit_price")),
        _money(line.get("total_price")),
    )


def _same_totals(incoming: dict, existing: dict) -> bool:
    for f in TOTAL_FIELDS:
        if _money(incoming.get(f)) != _money(existing.get(f)):
            return False
    # Lines are only compared when the caller loaded them for the existing record.
    if "items" in existing:
        a = sorted(_line_key(l) for l in (incoming.get("items") or []))
        b = sorted(_line_key(l) for l in (existing.get("items") or []))
        if a != b:
            return False
    return True


def _resolve_duplicate(incoming: dict, existing: dict) -> Resolution:
    ts_in = _record_ts(incoming)
    ts_ex = _record_ts(existing)
    if ts_in and ts_ex and ts_in > ts_ex and _same_totals(incoming, existing):
        return Resolution(
            resolved=True,
            action=ACCEPT_LOCAL,
            data=strip_sync_metadata(incoming),
            message="incoming copy is newer with identical totals",
        )
    return Resolution(
        resolved=True,
        action=ACCEPT_SERVER,
        data=dict(existing),
        message="transaction already recorded; keeping server copy",
    )


def _inventory_fields(incoming: dict, quantity: Decimal) -> dict:
    out = {
        k: v
        for k, v in (incoming or {}).items()
        if k not in {"base_quantity", "reason", "updated_at"} and k not in SYNC_METADATA_FIELDS
    }
    out["quantity"] = quantity
    return out


def _resolve_quantity_mismatch(incoming: dict, existing: dict) -> Resolution:
    in_qty = _dec(incoming.get("quantity"))
    srv_qty = _dec(existing.get("quantity"))
    base = _dec(incoming.get("base_quantity"))
    if in_qty is None or srv_qty is None:
        return Resolution(False, MANUAL, message="quantity missing on one side")

    if base is None:
        if in_qty == srv_qty:
            return Resolution(True, ACCEPT_LOCAL, _inventory_fields(incoming, in_qty), "quantities already agree")
        return Resolution(
            False,
            MANUAL,
            message=f"no base quantity; server has {srv_qty}, incoming {in_qty}",
        )

    delta_in = in_qty - base
    delta_srv = srv_qty - base

    if delta_srv == 0:
        return Resolution(True, ACCEPT_LOCAL, _inventory_fields(incoming, in_qty), "no concurrent stock movement")
    if delta_in == 0:
        return Resolution(True, MERGE, _inventory_fields(incoming, srv_qty), "incoming write leaves quantity unchanged")

    if (delta_in < 0) == (delta_srv < 0):
        merged = base + delta_in + delta_srv
        if merged < 0:
            return Resolution(
                False,
                MANUAL,
                message=f"merged quantity would be negative ({merged})",
            )
        return Resolution(
            True,
            MERGE,
            _inventory_fields(incoming, merged),
            f"merged deltas {delta_in} and {delta_srv} from base {base}",
        )

    return Resolution(
        False,
        MANUAL,
        message=f"stock moved in opposite directions (incoming {delta_in}, server {delta_srv}) from base {base}",
    )


_POLICIES = {
    DUPLICATE: _resolve_duplicate,
    QUANTITY_MISMATCH: _resolve_quantity_mismatch,
}


def resolve(conflict_type: str, incoming: dict[str, Any], existing: dict[str, Any]) -> Resolution:
    policy = _POLICIES.get(str(conflict_type or "").strip().lower())
    if policy is None:
        return Resolution(False, MANUAL, message=f"no policy for conflict type {conflict_type}")
    return policy(dict(incoming or {}), dict(existing or {}))
