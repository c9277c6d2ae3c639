import pytest

from backend.app.data_validator import assert_valid, validate
from backend.app.sync_errors import SyncValidationError


def _sale(**overrides):
    base = {
        "local_id": "sale-001",
        "subtotal": "10.00",
        "tax_amount": "1.10",
        "total": "11.10",
        "payment_method": "cash",
        "items": [
            {"product_id": "p1", "quantity": "2", "unit_price": "2.50", "total_price": "5.00"},
            {"product_id": "p2", "quantity": "1", "unit_price": "5.00", "total_price": "5.00"},
        ],
    }
    base.update(overrides)
    return base


def test_valid_transaction_passes():
    res = validate("transaction", _sale())
    assert res.valid is True
    assert res.errors == []
    assert res.payload.local_id == "sale-001"


def test_line_totals_must_match_subtotal_within_a_cent():
    assert validate("transaction", _sale(subtotal="10.01")).valid is True
    res = validate("transaction", _sale(subtotal="10.50"))
    assert res.valid is False
    assert any(e.startswith("items:") for e in res.errors)


def test_transaction_line_quantity_must_be_positive():
    sale = _sale()
    sale["items"][0]["quantity"] = "0"
    res = validate("transaction", sale)
    assert "items.0.quantity: must be > 0" in res.errors


def test_transaction_requires_items():
    res = validate("transaction", _sale(items=[]))
    assert res.valid is False
    assert any(e.startswith("items:") for e in res.errors)


def test_unknown_fields_are_rejected():
    res = validate("product", {"name": "Milk", "price": "1.20", "colour": "white"})
    assert res.valid is False
    assert any(e.startswith("colour:") for e in res.errors)


def test_inventory_quantity_must_not_be_negative():
    res = validate("inventory", {"product_id": "p1", "quantity": "-1"})
    assert res.errors == ["quantity: must be >= 0"]


def test_inventory_stock_levels_are_ordered():
    res = validate("inventory", {"quantity": "5", "min_stock_level": "10", "max_stock_level": "2"}, action="update")
    assert "max_stock_level: must be >= min_stock_level" in res.errors


def test_product_rules():
    res = validate("product", {"name": "   ", "price": "-0.01"})
    assert "name: must not be blank" in res.errors
    assert "price: must be >= 0" in res.errors


def test_partial_update_needs_a_field():
    res = validate("product", {}, action="update")
    assert res.valid is False
    assert res.errors == ["data: update payload has no fields"]


@pytest.mark.parametrize(
    "entity_type,data,field",
    [
        ("product", {"price": None}, "price"),
        ("product", {"name": None}, "name"),
        ("product", {"is_active": None}, "is_active"),
        ("transaction", {"status": None}, "status"),
        ("transaction", {"payment_method": None}, "payment_method"),
        ("transaction", {"total": None, "status": "voided"}, "total"),
    ],
)
def test_update_cannot_clear_required_columns(entity_type, data, field):
    res = validate(entity_type, data, action="update")
    assert res.valid is False
    assert res.errors == [f"{field}: must not be null"]


def test_update_may_clear_optional_columns():
    assert validate("product", {"barcode": None, "cost": None}, action="update").valid is True
    assert validate("transaction", {"status": "voided", "updated_at": None}, action="update").valid is True


def test_delete_payload_is_optional():
    assert validate("inventory", None, action="delete").valid is True


def test_unsupported_entity_and_bad_shape():
    assert validate("customer", {}).errors == ["entity_type: unsupported entity/action customer/create"]
    assert validate("product", ["not", "an", "object"]).errors == ["data: must be an object"]


def test_assert_valid_raises_with_field_errors():
    with pytest.raises(SyncValidationError) as exc_info:
        assert_valid("inventory", {"product_id": "p1", "quantity": "-3"})
    assert exc_info.value.errors == ["quantity: must be >= 0"]
