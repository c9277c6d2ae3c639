from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


# Canonical codes mirror the check constraints in `backend/db/migrations/001_sync_queue.sql`.
SyncStatus = Annotated[Literal["pending", "syncing", "synced", "failed", "conflict"], BeforeValidator(_to_lower_str)]
# Operator decisions on an item parked in `conflict`.
ResolutionAction = Annotated[Literal["accept_server", "accept_local"], BeforeValidator(_to_lower_str)]

PaymentMethod = Annotated[Literal["cash", "card", "mobile", "other"], BeforeValidator(_to_lower_str)]
TransactionStatus = Annotated[Literal["pending", "completed", "voided", "refunded"], BeforeValidator(_to_lower_str)]

# Client-generated; uuid4 in practice but older clients sent "idemp_<ts>_<hex>".
IdempotencyKey = Annotated[
    str,
    BeforeValidator(_strip_str),
    StringConstraints(min_length=8, max_length=128, pattern=r"^[A-Za-z0-9_.:-]+$"),
]
