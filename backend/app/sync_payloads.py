"""
Closed payload schemas for the sync queue, one per (entity_type, action).

These only describe shape and types. Business invariants (non-negative stock,
totals matching lines, ...) live in `data_validator.py` so the errors carry
field names operators recognize.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .validation import PaymentMethod, TransactionStatus


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class TransactionLineIn(_Payload):
    product_id: str = Field(min_length=1)
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal


class TransactionCreate(_Payload):
    # Client-assigned id of the sale; replays of the same sale carry the same value.
    local_id: Optional[str] = None
    store_id: Optional[str] = None
    cashier_id: Optional[str] = None
    subtotal: Optional[Decimal] = None
    tax_amount: Decimal = Decimal("0")
    total: Decimal
    status: TransactionStatus = "completed"
    payment_method: PaymentMethod = "cash"
    items: List[TransactionLineIn] = Field(min_length=1)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class _PartialUpdate(_Payload):
    @model_validator(mode="after")
    def _at_least_one_field(self):
        if not self.model_fields_set:
            raise ValueError("update payload has no fields")
        return self


class TransactionUpdate(_PartialUpdate):
    subtotal: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None
    total: Optional[Decimal] = None
    status: Optional[TransactionStatus] = None
    payment_method: Optional[PaymentMethod] = None
    updated_at: Optional[datetime] = None


class InventoryCreate(_Payload):
    product_id: str = Field(min_length=1)
    store_id: Optional[str] = None
    quantity: Decimal
    min_stock_level: Optional[Decimal] = None
    max_stock_level: Optional[Decimal] = None
    last_restocked: Optional[datetime] = None


class InventoryUpdate(_Payload):
    quantity: Decimal
    # Quantity the client observed before applying its own change. Without it the
    # resolver cannot tell a concurrent movement from a stale overwrite.
    base_quantity: Optional[Decimal] = None
    min_stock_level: Optional[Decimal] = None
    max_stock_level: Optional[Decimal] = None
    last_restocked: Optional[datetime] = None
    reason: Optional[str] = None
    updated_at: Optional[datetime] = None


class ProductCreate(_Payload):
    name: str = Field(min_length=1, max_length=200)
    price: Decimal
    sku: Optional[str] = None
    barcode: Optional[str] = None
    description: Optional[str] = None
    cost: Optional[Decimal] = None
    category: Optional[str] = None
    brand: Optional[str] = None


class ProductUpdate(_PartialUpdate):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    price: Optional[Decimal] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None
    description: Optional[str] = None
    cost: Optional[Decimal] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    is_active: Optional[bool] = None


class DeletePayload(_Payload):
    reason: Optional[str] = None


PAYLOAD_SCHEMAS: dict[tuple[str, str], type[BaseModel]] = {
    ("transaction", "create"): TransactionCreate,
    ("transaction", "update"): TransactionUpdate,
    ("transaction", "delete"): DeletePayload,
    ("inventory", "create"): InventoryCreate,
    ("inventory", "update"): InventoryUpdate,
    ("inventory", "delete"): DeletePayload,
    ("product", "create"): ProductCreate,
    ("product", "update"): ProductUpdate,
    ("product", "delete"): DeletePayload,
}


def schema_for(entity_type: str, action: str) -> Optional[type[BaseModel]]:
    return PAYLOAD_SCHEMAS.get((str(entity_type or "").strip().lower(), str(action or "").strip().lower()))


def parse_payload(entity_type: str, action: str, data) -> BaseModel:
    schema = schema_for(entity_type, action)
    if schema is None:
        raise ValueError(f"unsupported entity/action: {entity_type}/{action}")
    return schema.model_validate(data or {})
