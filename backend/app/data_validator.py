"""
Admission/replay gate for sync queue payloads.

`validate()` never raises for bad input; it returns every problem it finds as
"<field>: <message>" strings so the POS can show them next to the offending
field. Callers that want an exception use `assert_valid()`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ValidationError

from .sync_errors import SyncValidationError
from .sync_payloads import (
    InventoryCreate,
    InventoryUpdate,
    ProductCreate,
    ProductUpdate,
    TransactionCreate,
    TransactionUpdate,
    schema_for,
)

# Line totals are rounded per line on the register; allow a cent of drift.
TOTALS_TOLERANCE = Decimal("0.01")


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    payload: Optional[BaseModel] = None


def _loc_to_field(loc) -> str:
    parts = [str(p) for p in (loc or ()) if str(p)]
    return ".".join(parts) or "data"


def _format_pydantic_errors(ex: ValidationError) -> list[str]:
    out = []
    for err in ex.errors():
        msg = str(err.get("msg") or "invalid value")
        # "Value error, update payload has no fields" -> "update payload has no fields"
        if msg.lower().startswith("value error, "):
            msg = msg[len("value error, "):]
        out.append(f"{_loc_to_field(err.get('loc'))}: {msg}")
    return out


# Columns the canonical tables declare NOT NULL: an update may leave them out but not clear them.
NOT_NULL_ON_UPDATE = {
    TransactionUpdate: ("subtotal", "tax_amount", "total", "status", "payment_method"),
    ProductUpdate: ("name", "price", "is_active"),
}


def _not_null(errors: list[str], p: BaseModel) -> None:
    for name in NOT_NULL_ON_UPDATE.get(type(p), ()):
        if name in p.model_fields_set and getattr(p, name) is None:
            errors.append(f"{name}: must not be null")


def _non_negative(errors: list[str], name: str, value) -> None:
    if value is not None and Decimal(value) < 0:
        errors.append(f"{name}: must be >= 0")


def _check_transaction_create(p: TransactionCreate) -> list[str]:
    errors: list[str] = []
    _non_negative(errors, "subtotal", p.subtotal)
    _non_negative(errors, "tax_amount", p.tax_amount)
    _non_negative(errors, "total", p.total)
    lines_sum = Decimal("0")
    for idx, line in enumerate(p.items):
        if line.quantity <= 0:
            errors.append(f"items.{idx}.quantity: must be > 0")
        _non_negative(errors, f"items.{idx}.unit_price", line.unit_price)
        _non_negative(errors, f"items.{idx}.total_price", line.total_price)
        lines_sum += line.total_price
    if p.subtotal is not None and abs(lines_sum - p.subtotal) > TOTALS_TOLERANCE:
        errors.append(f"items: line totals {lines_sum} do not match subtotal {p.subtotal}")
    return errors


def _check_transaction_update(p: TransactionUpdate) -> list[str]:
    errors: list[str] = []
    _not_null(errors, p)
    _non_negative(errors, "subtotal", p.subtotal)
    _non_negative(errors, "tax_amount", p.tax_amount)
    _non_negative(errors, "total", p.total)
    return errors


def _check_stock_levels(errors: list[str], p) -> None:
    _non_negative(errors, "min_stock_level", p.min_stock_level)
    _non_negative(errors, "max_stock_level", p.max_stock_level)
    if (
        p.min_stock_level is not None
        and p.max_stock_level is not None
        and p.max_stock_level < p.min_stock_level
    ):
        errors.append("max_stock_level: must be >= min_stock_level")


def _check_inventory_create(p: InventoryCreate) -> list[str]:
    errors: list[str] = []
    _non_negative(errors, "quantity", p.quantity)
    _check_stock_levels(errors, p)
    return errors


def _check_inventory_update(p: InventoryUpdate) -> list[str]:
    errors: list[str] = []
    _non_negative(errors, "quantity", p.quantity)
    _non_negative(errors, "base_quantity", p.base_quantity)
    _check_stock_levels(errors, p)
    return errors


def _check_product(p) -> list[str]:
    errors: list[str] = []
    _not_null(errors, p)
    if p.name is not None and not p.name.strip():
        errors.append("name: must not be blank")
    _non_negative(errors, "price", p.price)
    _non_negative(errors, "cost", p.cost)
    return errors


_BUSINESS_RULES = {
    TransactionCreate: _check_transaction_create,
    TransactionUpdate: _check_transaction_update,
    InventoryCreate: _check_inventory_create,
    InventoryUpdate: _check_inventory_update,
    ProductCreate: _check_product,
    ProductUpdate: _check_product,
}


def validate(entity_type: str, data, action: str = "create") -> ValidationResult:
    schema = schema_for(entity_type, action)
    if schema is None:
        return ValidationResult(False, [f"entity_type: unsupported entity/action {entity_type}/{action}"])
    if data is not None and not isinstance(data, dict):
        return ValidationResult(False, ["data: must be an object"])
    try:
        payload = schema.model_validate(data or {})
    except ValidationError as ex:
        return ValidationResult(False, _format_pydantic_errors(ex))

    rule = _BUSINESS_RULES.get(schema)
    errors = rule(payload) if rule else []
    if errors:
        return ValidationResult(False, errors)
    return ValidationResult(True, [], payload)


def assert_valid(entity_type: str, data, action: str = "create") -> BaseModel:
    res = validate(entity_type, data, action)
    if not res.valid:
        raise SyncValidationError(res.errors)
    return res.payload
