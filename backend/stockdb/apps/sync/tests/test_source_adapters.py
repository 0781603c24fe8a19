from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from stockdb.apps.sync import adapters
from stockdb.errors import FormatError

FETCHED_AT = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)


def _clock():
    return FETCHED_AT


def test_csv_catalog_with_one_bad_row():
    raw = (
        "SKU,Quantity,Price,Name\n"
        "ab-1,12,4.5,Almond Butter\n"
        "ab-2,abc,4.5,Almond Butter XL\n"
        ",3,1.00,No Sku\n"
        "ab-3,7.0,,Almond Oil\n"
    ).encode("utf-8")

    result = adapters.CsvAdapter("SRC-1", clock=_clock).parse(raw)

    assert [(r.external_sku, r.quantity, r.price) for r in result] == [
        ("ab-1", 12, Decimal("4.50")),
        ("ab-3", 7, None),
    ]
    assert result.records[0].name == "Almond Butter"
    assert result.records[0].source_id == "SRC-1"
    assert result.records[0].fetched_at == FETCHED_AT
    assert [(row.index, row.external_sku) for row in result.rejected] == [(1, "ab-2"), (2, None)]
    assert result.total == 4


def test_csv_with_mapped_columns_and_semicolons():
    raw = "code;on_hand\nX-1;5\n"

    result = adapters.CsvAdapter("SRC-1", {"sku": "code", "quantity": "on_hand", "delimiter": ";"}).parse(raw)

    assert [(r.external_sku, r.quantity) for r in result] == [("X-1", 5)]


def test_csv_without_quantity_column_is_a_format_error():
    with pytest.raises(FormatError):
        adapters.CsvAdapter("SRC-1").parse("sku,name\nA,Apple\n")


def test_xml_catalog_reads_elements_and_attributes():
    raw = b"""<?xml version="1.0"?>
    <catalog>
      <product><sku>OLV-1</sku><quantity>40</quantity><price>9.99</price><name>Olive Oil</name></product>
      <product sku="OLV-2" quantity="0" />
    </catalog>"""

    result = adapters.XmlAdapter("SRC-2").parse(raw)

    assert [(r.external_sku, r.quantity, r.price) for r in result] == [
        ("OLV-1", 40, Decimal("9.99")),
        ("OLV-2", 0, None),
    ]


def test_xml_with_unknown_root_is_rejected():
    with pytest.raises(FormatError) as exc:
        adapters.XmlAdapter("SRC-2").parse("<inventory><product/></inventory>")
    assert exc.value.details == {"root": "inventory"}

    with pytest.raises(FormatError):
        adapters.XmlAdapter("SRC-2").parse("<catalog><product>")


def test_json_list_and_nested_items_path():
    listing = [{"sku": "J-1", "quantity": 3}, {"sku": "J-2", "quantity": "4"}, "garbage"]
    nested = {"data": {"rows": [{"sku": "J-3", "quantity": 1, "category": "pantry"}]}}

    flat = adapters.JsonAdapter("SRC-3").parse(json.dumps(listing))
    deep = adapters.JsonAdapter("SRC-3", {"items_path": "data.rows"}).parse(nested)

    assert [(r.external_sku, r.quantity) for r in flat] == [("J-1", 3), ("J-2", 4)]
    assert len(flat.rejected) == 1
    assert deep.records[0].category == "pantry"


def test_json_that_is_not_a_list_is_a_format_error():
    with pytest.raises(FormatError):
        adapters.JsonAdapter("SRC-3").parse(b"{not json")
    with pytest.raises(FormatError):
        adapters.JsonAdapter("SRC-3").parse({"items": "nope"})


def test_negative_quantities_are_passed_through_for_the_ledger_to_judge():
    result = adapters.JsonAdapter("SRC-3").parse([{"sku": "NEG", "quantity": -2}])

    assert result.records[0].quantity == -2


def test_square_catalog_maps_variation_and_price_in_cents():
    payload = {
        "objects": [
            {
                "type": "ITEM",
                "item_data": {
                    "name": "Cold Brew",
                    "variations": [
                        {
                            "item_variation_data": {
                                "item_id": "SQ-CB-1",
                                "inventory_quantity": 18,
                                "price_money": {"amount": 450, "currency": "USD"},
                            }
                        }
                    ],
                },
            }
        ]
    }

    result = adapters.SquareAdapter("SRC-SQ").parse(payload)

    record = result.records[0]
    assert (record.external_sku, record.quantity, record.price, record.name) == (
        "SQ-CB-1",
        18,
        Decimal("4.50"),
        "Cold Brew",
    )


def test_square_webhook_inventory_counts():
    adapter = adapters.SquareAdapter("SRC-SQ")
    payload = {
        "type": "inventory.count.updated",
        "data": {"object": {"inventory_counts": [{"catalog_object_id": "SQ-CB-1", "quantity": "11"}]}},
    }

    assert adapter.event_type(payload) == "inventory.count.updated"
    assert adapter.handles_event("inventory.count.updated")
    assert [(r.external_sku, r.quantity) for r in adapter.parse_webhook(payload)] == [("SQ-CB-1", 11)]


def test_shopify_products_and_inventory_level_webhook():
    adapter = adapters.ShopifyPosAdapter("SRC-SH")
    catalog = {
        "products": [
            {
                "title": "Tote Bag",
                "product_type": "accessories",
                "variants": [
                    {"sku": "TOTE-RED", "inventory_quantity": 3, "price": "19.00"},
                    {"sku": "TOTE-BLU", "inventory_quantity": 0, "price": "19.00"},
                ],
            }
        ]
    }
    webhook = {"topic": "inventory_levels/update", "inventory_level": {"sku": "TOTE-RED", "available": 2}}

    records = adapter.parse(catalog).records
    assert [(r.external_sku, r.quantity, r.category) for r in records] == [
        ("TOTE-RED", 3, "accessories"),
        ("TOTE-BLU", 0, "accessories"),
    ]
    assert adapter.event_type(webhook) == "inventory_levels/update"
    assert [(r.external_sku, r.quantity) for r in adapter.parse_webhook(json.dumps(webhook))] == [("TOTE-RED", 2)]
    assert not adapter.handles_event("orders/create")


def test_unknown_source_type_uses_declared_field_map():
    source = SimpleNamespace(
        id="SRC-G",
        source_type="legacy_erp",
        field_map={"items_path": "result.lines", "sku": "article.code", "quantity": "stock.free"},
    )
    adapter = adapters.build_adapter(source)
    payload = {"result": {"lines": [{"article": {"code": "ERP-9"}, "stock": {"free": 6}, "name": "ignored"}]}}

    result = adapter.parse(payload)

    assert isinstance(adapter, adapters.GenericMappingAdapter)
    assert [(r.external_sku, r.quantity, r.name) for r in result] == [("ERP-9", 6, None)]


def test_generic_adapter_requires_sku_and_quantity_paths():
    with pytest.raises(FormatError) as exc:
        adapters.GenericMappingAdapter("SRC-G", {"sku": "code"})
    assert exc.value.details == {"missing": ["quantity"]}


def test_generic_webhook_payload_uses_inventory_updates():
    adapter = adapters.build_adapter(SimpleNamespace(id="SRC-J", source_type="JSON", field_map=None))
    body = json.dumps({"event_type": "inventory.updated", "inventory_updates": [{"sku": "W-1", "quantity": 9}]})

    assert adapter.event_type(body) == "inventory.updated"
    assert [(r.external_sku, r.quantity) for r in adapter.parse_webhook(body)] == [("W-1", 9)]


def test_shopify_products_with_bad_shapes():
    adapter = adapters.ShopifyPosAdapter("SRC-1", clock=_clock)

    with pytest.raises(FormatError):
        adapter.parse({"products": [{"title": "x", "variants": 5}]})
    with pytest.raises(FormatError):
        adapter.parse({"products": ["not a product"]})

    result = adapter.parse({"products": [{"title": "Tote", "variants": ["junk", {"sku": "T-1", "inventory_quantity": 2}]}]})
    assert [(r.external_sku, r.quantity) for r in result] == [("T-1", 2)]
    assert [row.index for row in result.rejected] == [0]


def test_square_objects_must_be_objects():
    with pytest.raises(FormatError):
        adapters.SquareAdapter("SRC-1", clock=_clock).parse({"objects": [7]})


def test_quantity_outside_the_column_range_is_rejected():
    result = adapters.JsonAdapter("SRC-1", clock=_clock).parse(
        [{"sku": "A", "quantity": 10**20}, {"sku": "B", "quantity": "-3000000000"}, {"sku": "C", "quantity": 3}]
    )

    assert [r.external_sku for r in result] == ["C"]
    assert [row.external_sku for row in result.rejected] == ["A", "B"]
    assert all("out of range" in row.reason for row in result.rejected)


def _item(**overrides):
    fields = dict(sku="TOTE-RED", name="Red tote", category="Bags", price=Decimal("12.5"), current_quantity=4, is_active=True)
    fields.update(overrides)
    return SimpleNamespace(**fields)


def test_outbound_documents_per_source_type():
    base = adapters.JsonAdapter("SRC-1").to_external(_item())
    assert base == {
        "sku": "TOTE-RED",
        "name": "Red tote",
        "price": "12.50",
        "inventory_quantity": 4,
        "status": "enabled",
    }

    shopify = adapters.ShopifyPosAdapter("SRC-1").to_external(_item(is_active=False))
    assert shopify["product"]["title"] == "Red tote"
    assert shopify["product"]["status"] == "draft"
    assert shopify["product"]["variants"] == [
        {"sku": "TOTE-RED", "price": "12.50", "inventory_quantity": 4, "inventory_management": "shopify"}
    ]

    square = adapters.SquareAdapter("SRC-1", {"currency": "EUR"}).to_external(_item(price=Decimal("0.995")))
    variation = square["item_data"]["variations"][0]["item_variation_data"]
    assert square["type"] == "ITEM"
    assert variation["item_id"] == "TOTE-RED"
    assert variation["price_money"] == {"amount": 100, "currency": "EUR"}
    assert variation["inventory_quantity"] == 4

    no_price = adapters.SquareAdapter("SRC-1").to_external(_item(price=None))
    assert "price_money" not in no_price["item_data"]["variations"][0]["item_variation_data"]


def test_outbound_document_is_read_back_by_the_same_adapter():
    for adapter in (adapters.SquareAdapter("SRC-1", clock=_clock), adapters.ShopifyPosAdapter("SRC-1", clock=_clock)):
        document = adapter.to_external(_item())
        wrapped = {"objects": [document]} if adapter.source_type == "square" else {"products": [document["product"]]}
        [record] = adapter.parse(wrapped).records
        assert (record.external_sku, record.quantity, record.price) == ("TOTE-RED", 4, Decimal("12.50"))


def test_generic_outbound_document_follows_the_field_map():
    adapter = adapters.GenericMappingAdapter(
        "SRC-1",
        {"sku": "variant.code", "quantity": "stock.levels.0.on_hand", "price": "variant.price"},
    )

    assert adapter.to_external(_item()) == {
        "variant": {"code": "TOTE-RED", "price": "12.50"},
        "stock": {"levels": [{"on_hand": 4}]},
    }

    clashing = adapters.GenericMappingAdapter("SRC-1", {"sku": "code", "quantity": "code.on_hand"})
    with pytest.raises(FormatError):
        clashing.to_external(_item())
