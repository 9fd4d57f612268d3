import json
import math

import pytest

from fulfillment.services.pricing import (
    CategoryTaxDefault,
    canonicalize,
    canonicalize_items,
    order_total,
    parse_raw_items,
    round_currency,
)


def test_exclude_scenario():
    item = canonicalize({"price": 100, "quantity": 2, "gstRate": 5, "gstMode": "exclude"})

    assert item.base_subtotal == 200.00
    assert item.gst_amount == 10.00
    assert item.line_total == 210.00
    assert item.unit_price_with_tax == 100.00


def test_include_scenario():
    item = canonicalize({"price": 100, "quantity": 1, "gstRate": 5, "gstMode": "include"})

    assert item.unit_price_with_tax == 105.00
    assert item.line_total == 105.00
    assert item.base_subtotal == 100.00
    assert item.gst_amount == 5.00


@pytest.mark.parametrize("stale", [
    {"gstAmount": 18.0, "lineTotal": 218.0},
    {"gstAmount": 7.5, "subtotalWithGst": 207.5},
    {"gstAmount": -3},
])
def test_zero_rate_ignores_stale_tax_fields(stale):
    raw = {"price": 100, "quantity": 2, "gstRate": 0, "gstMode": "exclude", **stale}

    item = canonicalize(raw)

    assert item.gst_amount == 0
    assert item.line_total == item.base_subtotal == 200.00


@pytest.mark.parametrize("price,quantity,rate", [
    (33.33, 3, 5),
    (19.99, 7, 12),
    (0.01, 1, 18),
    (249.5, 4, 28),
    (10, 3, 2.5),
])
def test_include_identity(price, quantity, rate):
    item = canonicalize({"price": price, "quantity": quantity, "gstRate": rate, "gstMode": "include"})

    assert round_currency(item.unit_price_with_tax * item.quantity) == item.line_total
    assert round_currency(item.base_subtotal + item.gst_amount) == item.line_total


def test_include_identity_holds_with_indivisible_explicit_total():
    item = canonicalize({
        "price": 33.33, "quantity": 3, "gstRate": 5, "gstMode": "include", "lineTotal": 104.0,
    })

    assert item.unit_price_with_tax == 34.67
    assert item.line_total == 104.01
    assert round_currency(item.unit_price_with_tax * item.quantity) == item.line_total


@pytest.mark.parametrize("price,quantity,rate", [
    (33.33, 3, 5),
    (19.99, 7, 12),
    (1.05, 1, 18),
])
def test_exclude_identity(price, quantity, rate):
    item = canonicalize({"price": price, "quantity": quantity, "gstRate": rate, "gstMode": "exclude"})

    assert round_currency(item.base_subtotal + item.gst_amount) == item.line_total
    assert item.unit_price_with_tax == round_currency(price)


def test_rounding_is_half_away_from_zero():
    assert round_currency(2.675) == 2.68
    assert round_currency(0.125) == 0.13
    assert round_currency(-0.125) == -0.13
    assert round_currency(float("nan")) == 0.0


def test_unit_price_priority():
    assert canonicalize({"price": 10, "basePrice": 20, "unitPrice": 30}).unit_price == 10
    assert canonicalize({"basePrice": 20, "unitPrice": 30}).unit_price == 20
    assert canonicalize({"price": None, "unitPrice": "30"}).unit_price == 30
    assert canonicalize({"price": float("inf"), "basePrice": 12}).unit_price == 12
    assert canonicalize({"name": "Water"}).unit_price == 0


def test_explicit_subtotal_wins_over_price_times_quantity():
    item = canonicalize({"price": 100, "quantity": 2, "subtotal": 180})

    assert item.base_subtotal == 180.00
    assert item.line_total == 180.00


def test_explicit_line_total_is_used():
    item = canonicalize({"price": 100, "quantity": 2, "gstRate": 5, "gstMode": "exclude", "lineTotal": 211})

    assert item.line_total == 211.00
    assert item.gst_amount == 11.00


def test_line_total_below_base_is_rederived():
    item = canonicalize({"price": 100, "quantity": 2, "gstRate": 5, "gstMode": "exclude", "lineTotal": 105})

    assert item.line_total == 210.00
    assert item.gst_amount == 10.00


def test_category_default_fills_rate_and_mode():
    default = CategoryTaxDefault(category_id=4, gst_rate=12, gst_mode="include")

    item = canonicalize({"price": 30, "quantity": 1}, default)

    assert item.gst_rate == 12
    assert item.gst_mode == "include"
    assert item.line_total == 33.60


def test_item_rate_and_mode_beat_category_default():
    default = CategoryTaxDefault(category_id=4, gst_rate=12, gst_mode="include")

    item = canonicalize({"price": 100, "quantity": 1, "gstRate": 5, "gstMode": "exclude"}, default)

    assert item.gst_rate == 5
    assert item.gst_mode == "exclude"
    assert item.line_total == 105.00


def test_unknown_mode_falls_back_to_exclude():
    item = canonicalize({"price": 100, "gstRate": 5, "gstMode": "INCLUSIVE"})

    assert item.gst_mode == "exclude"


@pytest.mark.parametrize("quantity", [0, -2, float("nan"), float("inf"), "abc"])
def test_bad_quantity_defaults_to_one(quantity):
    item = canonicalize({"price": 50, "quantity": quantity})

    assert item.quantity == 1
    assert item.base_subtotal == 50.00


def test_fractional_quantity_is_floored():
    assert canonicalize({"price": 10, "quantity": 2.7}).quantity == 2
    assert canonicalize({"price": 10, "quantity": 0.4}).quantity == 1


def test_printed_quantity_is_clamped():
    item = canonicalize({"price": 10, "quantity": 3, "printedQuantity": 9})

    assert item.printed_quantity == 3
    assert item.unprinted_quantity == 0


@pytest.mark.parametrize("raw", [
    {"price": 100, "quantity": 2, "gstRate": 5, "gstMode": "exclude"},
    {"price": 33.33, "quantity": 3, "gstRate": 5, "gstMode": "include"},
    {"basePrice": 19.99, "quantity": 7, "gstRate": 12, "gstMode": "include", "printedQuantity": 2},
    {"unitPrice": 45, "quantity": 4, "gstAmount": 9, "lineTotal": 200},
    {"price": 120, "subtotal": 100, "quantity": 1, "gstRate": 18, "addons": [{"name": "Cheese"}]},
])
def test_canonicalize_is_idempotent(raw):
    first = canonicalize(raw, line_index=2)
    second = canonicalize(first, line_index=2)
    third = canonicalize(first.to_dict(), line_index=2)

    assert second == first
    assert third == first


def test_parse_raw_items_accepts_common_shapes():
    items = [{"name": "Tea", "price": 10}]

    assert parse_raw_items(items) == items
    assert parse_raw_items(json.dumps(items)) == items
    assert parse_raw_items(json.dumps({"items": items})) == items
    assert parse_raw_items(json.dumps(items).encode()) == items


@pytest.mark.parametrize("payload", ["{not json", "42", "null", None, "", '{"items": "x"}'])
def test_parse_raw_items_degrades_to_empty(payload):
    assert parse_raw_items(payload) == []


def test_parse_raw_items_skips_non_objects():
    assert parse_raw_items([{"name": "Tea"}, "junk", 3, None]) == [{"name": "Tea"}]


def test_canonicalize_items_looks_up_defaults_by_item_id():
    defaults = {7: CategoryTaxDefault(category_id=1, gst_rate=5, gst_mode="exclude")}
    raw = [
        {"itemId": 7, "name": "Paneer Tikka", "price": 220, "quantity": 2},
        {"itemId": "8", "name": "Naan", "price": 45, "quantity": 1},
    ]

    items = canonicalize_items(raw, defaults)

    assert [item.line_index for item in items] == [0, 1]
    assert items[0].line_total == 462.00
    assert items[1].item_id == 8
    assert items[1].gst_amount == 0
    assert order_total(items) == 507.00


def test_canonical_fields_are_finite():
    item = canonicalize({"price": "nan", "quantity": "inf", "gstRate": float("inf")})

    for value in (item.unit_price, item.base_subtotal, item.gst_amount, item.line_total):
        assert math.isfinite(value)
