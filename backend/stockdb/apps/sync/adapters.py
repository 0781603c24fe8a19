"""
Source adapters: turn a vendor or POS payload into ExternalSourceRecords.

Contract:
    adapter.parse(raw) -> ParseResult
        raw may be bytes, text, or an already-decoded JSON value.
        Rows that cannot be normalized land in ParseResult.rejected with a
        reason; a payload that is structurally wrong raises FormatError.
    adapter.parse_webhook(payload) -> ParseResult
    adapter.event_type(payload) -> str
    adapter.to_external(item) -> dict
        The document an inventory push sends for one stock item.

Adapters never touch the database. Which adapter serves a source is decided
by `build_adapter(source)` from its `source_type`; any type without a
dedicated adapter falls back to GenericMappingAdapter, which only reads the
fields the source declares in `field_map` and writes the same paths on push.
"""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from xml.etree import ElementTree

from stockdb.apps.inventory.models import MAX_QUANTITY
from stockdb.errors import FormatError

INVENTORY_UPDATED = "inventory.updated"

DEFAULT_FIELDS = {
    "sku": "sku",
    "quantity": "quantity",
    "price": "price",
    "name": "name",
    "category": "category",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExternalSourceRecord:
    external_sku: str
    quantity: int
    price: Optional[Decimal]
    source_id: str
    fetched_at: datetime
    name: Optional[str] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class RejectedRow:
    index: int
    reason: str
    external_sku: Optional[str] = None


@dataclass
class ParseResult:
    records: List[ExternalSourceRecord] = field(default_factory=list)
    rejected: List[RejectedRow] = field(default_factory=list)

    def __iter__(self) -> Iterator[ExternalSourceRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    @property
    def total(self) -> int:
        return len(self.records) + len(self.rejected)


# ---------------------------------------------------------------------------
# VALUE COERCION
# ---------------------------------------------------------------------------


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_quantity(value: Any) -> int:
    quantity = _whole_number(value)
    if abs(quantity) > MAX_QUANTITY:
        raise ValueError(f"quantity {quantity} is out of range")
    return quantity


def _whole_number(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        raise ValueError("quantity is missing")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"quantity {value!r} is not a whole number")
        return int(value)
    text = str(value).strip()
    if not text:
        raise ValueError("quantity is missing")
    try:
        number = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"quantity {text!r} is not a number")
    if not number.is_finite() or number != number.to_integral_value():
        raise ValueError(f"quantity {text!r} is not a whole number")
    return int(number)


def _as_price(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        price = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"price {text!r} is not a number")
    if not price.is_finite() or price < 0:
        raise ValueError(f"price {text!r} is not valid")
    return price.quantize(Decimal("0.01"))


def _dig(value: Any, path: Optional[str]) -> Any:
    """Follow a dotted path ("variant.sku", "items.0.sku") through dicts and lists."""
    if not path:
        return value
    current = value
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _price_text(price: Any) -> Optional[str]:
    if price is None:
        return None
    return str(Decimal(str(price)).quantize(Decimal("0.01")))


def _place(document: Dict[str, Any], path: str, value: Any) -> None:
    """Write `value` at a dotted path, creating objects (lists for numeric parts) on the way."""
    parts = path.split(".")
    current: Any = document
    for position, part in enumerate(parts):
        last = position == len(parts) - 1
        following = None if last else ([] if parts[position + 1].isdigit() else {})
        if isinstance(current, list) and part.isdigit():
            index = int(part)
            current.extend([None] * (index + 1 - len(current)))
            if last:
                current[index] = value
                return
            if current[index] is None:
                current[index] = following
            current = current[index]
        elif isinstance(current, dict):
            if last:
                current[part] = value
                return
            current = current.setdefault(part, following)
        else:
            raise FormatError("Source field_map paths overlap.", details={"path": path})


def _decode_text(raw: Any) -> str:
    if isinstance(raw, bytes):
        try:
            return raw.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise FormatError("Payload is not valid UTF-8.") from exc
    if isinstance(raw, str):
        return raw
    raise FormatError(f"Expected text payload, got {type(raw).__name__}.")


def _decode_json(raw: Any) -> Any:
    if isinstance(raw, (bytes, str)):
        text = _decode_text(raw)
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise FormatError("Payload is not valid JSON.", details={"error": str(exc)}) from exc
    return raw


# ---------------------------------------------------------------------------
# BASE
# ---------------------------------------------------------------------------


class SourceAdapter:
    source_type = "base"
    inventory_events: Tuple[str, ...] = (INVENTORY_UPDATED,)

    def __init__(
        self,
        source_id: str,
        field_map: Optional[Mapping[str, Any]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.source_id = source_id
        self.field_map: Dict[str, Any] = dict(field_map or {})
        self.clock = clock

    # Subclasses yield (sku, quantity, price, name, category) tuples of raw values.
    def extract_rows(self, raw: Any) -> Iterator[Tuple[Any, Any, Any, Any, Any]]:
        raise NotImplementedError

    def extract_webhook_rows(self, payload: Any) -> Iterator[Tuple[Any, Any, Any, Any, Any]]:
        raise NotImplementedError

    def to_external(self, item) -> Dict[str, Any]:
        """Document pushed to the source for one stock item."""
        return {
            "sku": item.sku,
            "name": item.name,
            "price": _price_text(item.price),
            "inventory_quantity": item.current_quantity,
            "status": "enabled" if item.is_active else "disabled",
        }

    def parse(self, raw: Any) -> ParseResult:
        return self._collect(self.extract_rows(raw))

    def parse_webhook(self, payload: Any) -> ParseResult:
        return self._collect(self.extract_webhook_rows(_decode_json(payload)))

    def event_type(self, payload: Any) -> str:
        payload = _decode_json(payload)
        if not isinstance(payload, Mapping):
            return "unknown"
        return str(payload.get("event_type") or payload.get("type") or "unknown")

    def handles_event(self, event_type: str) -> bool:
        return event_type in self.inventory_events

    def _collect(self, rows: Iterator[Tuple[Any, Any, Any, Any, Any]]) -> ParseResult:
        result = ParseResult()
        fetched_at = self.clock()
        for index, (sku, quantity, price, name, category) in enumerate(rows):
            external_sku = _as_text(sku)
            if not external_sku:
                result.rejected.append(RejectedRow(index=index, reason="sku is missing"))
                continue
            try:
                record = ExternalSourceRecord(
                    external_sku=external_sku,
                    quantity=_as_quantity(quantity),
                    price=_as_price(price),
                    source_id=self.source_id,
                    fetched_at=fetched_at,
                    name=_as_text(name),
                    category=_as_text(category),
                )
            except ValueError as exc:
                result.rejected.append(RejectedRow(index=index, reason=str(exc), external_sku=external_sku))
                continue
            result.records.append(record)
        return result

    def _field(self, name: str) -> Optional[str]:
        if name in self.field_map:
            return self.field_map[name]
        return DEFAULT_FIELDS.get(name)

    def _row_from_mapping(self, row: Mapping[str, Any]) -> Tuple[Any, Any, Any, Any, Any]:
        values = []
        for key in DEFAULT_FIELDS:
            path = self._field(key)
            # An undeclared field reads as missing, never as the whole row.
            values.append(_dig(row, path) if path else None)
        return tuple(values)


# ---------------------------------------------------------------------------
# FILE FORMATS
# ---------------------------------------------------------------------------


class CsvAdapter(SourceAdapter):
    """Tabular catalogs with a header row; column names match case-insensitively."""

    source_type = "csv"

    def extract_rows(self, raw: Any):
        text = _decode_text(raw)
        delimiter = self.field_map.get("delimiter") or ","
        reader = csv.DictReader(io.StringIO(text), delimiter=delimiter)
        if not reader.fieldnames:
            raise FormatError("CSV payload has no header row.")

        columns = {name.strip().lower(): name for name in reader.fieldnames if name}
        wanted = {key: self._field(key) for key in DEFAULT_FIELDS}
        for required in ("sku", "quantity"):
            if (wanted[required] or "").lower() not in columns:
                raise FormatError(
                    f"CSV payload is missing the '{wanted[required]}' column.",
                    details={"columns": list(reader.fieldnames)},
                )
        resolved = {key: columns.get((column or "").lower()) for key, column in wanted.items()}

        try:
            for row in reader:
                yield tuple(row.get(resolved[key]) if resolved[key] else None for key in DEFAULT_FIELDS)
        except csv.Error as exc:
            raise FormatError("CSV payload could not be read.", details={"error": str(exc)}) from exc

    def extract_webhook_rows(self, payload: Any):
        yield from _generic_webhook_rows(self, payload)


class XmlAdapter(SourceAdapter):
    """`<catalog><product>` or `<products><product>` documents."""

    source_type = "xml"

    def extract_rows(self, raw: Any):
        if not isinstance(raw, (bytes, str)):
            raise FormatError(f"Expected XML text, got {type(raw).__name__}.")
        try:
            root = ElementTree.fromstring(raw)
        except ElementTree.ParseError as exc:
            raise FormatError("Payload is not well-formed XML.", details={"error": str(exc)}) from exc
        if root.tag not in ("catalog", "products"):
            raise FormatError(
                "Unable to parse XML catalog structure.",
                details={"root": root.tag},
            )
        for product in root.findall("product"):
            yield tuple(self._value(product, self._field(key)) for key in DEFAULT_FIELDS)

    @staticmethod
    def _value(element, name: Optional[str]) -> Any:
        if not name:
            return None
        child = element.find(name)
        if child is not None:
            return child.text
        return element.get(name)

    def extract_webhook_rows(self, payload: Any):
        yield from _generic_webhook_rows(self, payload)


class JsonAdapter(SourceAdapter):
    """A JSON array of objects, or an object holding one under `items_path`."""

    source_type = "json"

    def _items(self, value: Any, path: Optional[str]) -> List[Any]:
        if isinstance(value, list):
            return value
        if isinstance(value, Mapping):
            items = _dig(value, path or "items")
            if isinstance(items, list):
                return items
        raise FormatError("JSON payload does not contain a list of items.")

    def extract_rows(self, raw: Any):
        for row in self._items(_decode_json(raw), self.field_map.get("items_path")):
            if not isinstance(row, Mapping):
                yield (None, None, None, None, None)
                continue
            yield self._row_from_mapping(row)

    def extract_webhook_rows(self, payload: Any):
        yield from _generic_webhook_rows(self, payload)


class GenericMappingAdapter(JsonAdapter):
    """Any other source type: reads only what `field_map` declares."""

    source_type = "generic"

    def __init__(self, source_id: str, field_map: Optional[Mapping[str, Any]] = None, **kwargs):
        super().__init__(source_id, field_map, **kwargs)
        missing = [key for key in ("sku", "quantity") if not self.field_map.get(key)]
        if missing:
            raise FormatError(
                "Source field_map must declare sku and quantity paths.",
                details={"missing": missing},
            )

    def _field(self, name: str) -> Optional[str]:
        return self.field_map.get(name)

    def to_external(self, item) -> Dict[str, Any]:
        values = {
            "sku": item.sku,
            "quantity": item.current_quantity,
            "price": _price_text(item.price),
            "name": item.name,
            "category": item.category,
        }
        document: Dict[str, Any] = {}
        for key, value in values.items():
            path = self._field(key)
            if path:
                _place(document, path, value)
        return document


def _generic_webhook_rows(adapter: SourceAdapter, payload: Any):
    if not isinstance(payload, Mapping):
        raise FormatError("Webhook payload must be a JSON object.")
    updates = payload.get("inventory_updates") or []
    if not isinstance(updates, list):
        raise FormatError("inventory_updates must be a list.")
    for row in updates:
        if not isinstance(row, Mapping):
            yield (None, None, None, None, None)
            continue
        yield adapter._row_from_mapping(row)


# ---------------------------------------------------------------------------
# POINT OF SALE
# ---------------------------------------------------------------------------


class SquareAdapter(SourceAdapter):
    source_type = "square"
    inventory_events = ("inventory.count.updated", INVENTORY_UPDATED)

    def extract_rows(self, raw: Any):
        payload = _decode_json(raw)
        if not isinstance(payload, Mapping):
            raise FormatError("Square payload must be a JSON object.")
        objects = payload.get("objects") or []
        if not isinstance(objects, list):
            raise FormatError("Square payload 'objects' must be a list.")
        for obj in objects:
            if not isinstance(obj, Mapping):
                raise FormatError("Square catalog objects must be JSON objects.")
            yield self._catalog_row(obj)

    def to_external(self, item) -> Dict[str, Any]:
        variation: Dict[str, Any] = {
            "item_id": item.sku,
            "name": "Regular",
            "pricing_type": "FIXED_PRICING",
            "track_inventory": True,
            "inventory_quantity": item.current_quantity,
        }
        if item.price is not None:
            cents = (Decimal(str(item.price)) * 100).to_integral_value(rounding=ROUND_HALF_UP)
            variation["price_money"] = {"amount": int(cents), "currency": self.field_map.get("currency") or "USD"}
        return {
            "type": "ITEM",
            "item_data": {
                "name": item.name,
                "variations": [{"type": "ITEM_VARIATION", "item_variation_data": variation}],
            },
        }

    @staticmethod
    def _catalog_row(obj: Any):
        variation = _dig(obj, "item_data.variations.0.item_variation_data") or {}
        amount = _dig(variation, "price_money.amount")
        price = Decimal(str(amount)) / 100 if isinstance(amount, (int, float)) and not isinstance(amount, bool) else None
        return (
            _dig(variation, "item_id"),
            _dig(variation, "inventory_quantity"),
            price,
            _dig(obj, "item_data.name"),
            None,
        )

    def event_type(self, payload: Any) -> str:
        payload = _decode_json(payload)
        return str(payload.get("type") or "unknown") if isinstance(payload, Mapping) else "unknown"

    def extract_webhook_rows(self, payload: Any):
        obj = _dig(payload, "data.object")
        if not isinstance(obj, Mapping):
            return
        counts = obj.get("inventory_counts")
        if isinstance(counts, list):
            for count in counts:
                yield (_dig(count, "catalog_object_id"), _dig(count, "quantity"), None, None, None)
            return
        yield self._catalog_row(obj)


class ShopifyPosAdapter(SourceAdapter):
    source_type = "shopify_pos"
    inventory_events = ("inventory_levels/update", INVENTORY_UPDATED)

    def to_external(self, item) -> Dict[str, Any]:
        return {
            "product": {
                "title": item.name,
                "product_type": item.category,
                "status": "active" if item.is_active else "draft",
                "variants": [
                    {
                        "sku": item.sku,
                        "price": _price_text(item.price),
                        "inventory_quantity": item.current_quantity,
                        "inventory_management": "shopify",
                    }
                ],
            }
        }

    def extract_rows(self, raw: Any):
        payload = _decode_json(raw)
        if not isinstance(payload, Mapping):
            raise FormatError("Shopify payload must be a JSON object.")
        products = payload.get("products") or []
        if not isinstance(products, list):
            raise FormatError("Shopify payload 'products' must be a list.")
        for product in products:
            if not isinstance(product, Mapping):
                raise FormatError("Shopify products must be JSON objects.")
            variants = product.get("variants") or []
            if not isinstance(variants, list):
                raise FormatError("Shopify product 'variants' must be a list.")
            title = product.get("title")
            for variant in variants:
                if not isinstance(variant, Mapping):
                    yield (None, None, None, title, None)
                    continue
                yield (
                    _dig(variant, "sku"),
                    _dig(variant, "inventory_quantity"),
                    _dig(variant, "price"),
                    title,
                    _dig(product, "product_type"),
                )

    def event_type(self, payload: Any) -> str:
        payload = _decode_json(payload)
        return str(payload.get("topic") or "unknown") if isinstance(payload, Mapping) else "unknown"

    def extract_webhook_rows(self, payload: Any):
        level = payload.get("inventory_level") if isinstance(payload, Mapping) else None
        if not isinstance(level, Mapping):
            return
        sku = level.get("sku") or level.get("inventory_item_id")
        yield (sku, level.get("available"), None, None, None)


ADAPTERS = {
    CsvAdapter.source_type: CsvAdapter,
    XmlAdapter.source_type: XmlAdapter,
    JsonAdapter.source_type: JsonAdapter,
    SquareAdapter.source_type: SquareAdapter,
    ShopifyPosAdapter.source_type: ShopifyPosAdapter,
}


def build_adapter(source, clock: Callable[[], datetime] = _utcnow) -> SourceAdapter:
    """Pick the adapter for an ExternalSource (or anything with the same attributes)."""
    adapter_cls = ADAPTERS.get((source.source_type or "").lower(), GenericMappingAdapter)
    return adapter_cls(source.id, source.field_map, clock=clock)
