from __future__ import annotations

import json

import pytest

from stockdb.apps.inventory import schemas as inventory_schemas
from stockdb.apps.inventory import services as inventory_services
from stockdb.apps.sync import models as sync_models
from stockdb.apps.sync import router as sync_router
from stockdb.apps.sync import schemas as sync_schemas
from stockdb.apps.sync import services as sync_services
from stockdb.apps.sync.client import FetchResponse, PushResponse
from stockdb.apps.sync.orchestrator import SyncOrchestrator, SyncSettings
from stockdb.errors import AuthError, NetworkError, RemoteRequestError, ValidationError
from stockdb.security import Actor, ActorRole

OPERATOR = Actor(id="ops-1", roles=frozenset({ActorRole.SYNC_OPERATOR}))
PUSH_URL = "https://pos.example.com/api/products"

Direction = sync_models.TransactionDirection
TxnStatus = sync_models.TransactionStatus


class PushClient:
    """Records pushed documents; `failures` maps a SKU to the errors raised for it, in order."""

    def __init__(self, failures=None, body=b"[]"):
        self.failures = {sku: list(errors) for sku, errors in (failures or {}).items()}
        self.body = body
        self.pushed = []

    def fetch(self, source, *, timeout=None):
        errors = self.failures.get("*fetch*")
        if errors:
            raise errors.pop(0)
        return FetchResponse(status=200, body=self.body, content_type="application/json", elapsed_ms=2)

    def push(self, source, sku, document, *, timeout=None):
        errors = self.failures.get(sku)
        if errors:
            raise errors.pop(0)
        self.pushed.append((sku, document))
        return PushResponse(method="PUT", status=200, url=f"{PUSH_URL}/{sku}", elapsed_ms=4)


def _make_source(session_factory, key="shop-pos", **overrides):
    db = session_factory()
    try:
        data = sync_schemas.SourceCreate(
            source_key=key,
            display_name="Shop POS",
            source_type=overrides.pop("source_type", "shopify_pos"),
            endpoint_url="https://pos.example.com/api/products.json",
            push_enabled=overrides.pop("push_enabled", True),
            push_url=overrides.pop("push_url", PUSH_URL),
            **overrides,
        )
        source = sync_services.create_source(db, data=data, actor_id="ops-1")
        db.commit()
        return source.id
    finally:
        db.close()


def _make_item(session_factory, sku, quantity, **fields):
    db = session_factory()
    try:
        item = inventory_services.create_item(
            db,
            data=inventory_schemas.StockItemCreate(sku=sku, name=sku.title(), opening_quantity=quantity, **fields),
        )
        db.commit()
        return item.id
    finally:
        db.close()


def _orchestrator(session_factory, client, sleeps=None):
    return SyncOrchestrator(
        session_factory,
        SyncSettings(retry_delays=(1.0, 5.0)),
        client=client,
        sleep=(sleeps.append if sleeps is not None else (lambda delay: None)),
    )


def _transactions(session_factory, source_id, **filters):
    db = session_factory()
    try:
        _, rows = sync_services.list_transactions(db, source_id=source_id, **filters)
        return rows
    finally:
        db.close()


def test_push_sends_every_active_tracked_item(session_factory):
    tote = _make_item(session_factory, "TOTE", 4, price="12.50")
    mug = _make_item(session_factory, "MUG", 0)
    _make_item(session_factory, "GIFT-CARD", 0, track_inventory=False)
    retired = _make_item(session_factory, "OLD", 9)
    db = session_factory()
    try:
        inventory_services.deactivate_item(db, item_id=retired)
        db.commit()
    finally:
        db.close()
    source_id = _make_source(session_factory)
    client = PushClient()

    result = _orchestrator(session_factory, client).push_source(source_id, triggered_by="ops-1")

    assert (result.total, result.successful, result.failed, result.skipped) == (3, 2, 0, 1)
    assert [sku for sku, _ in client.pushed] == ["TOTE", "MUG"]
    tote_doc = client.pushed[0][1]
    assert tote_doc["product"]["variants"][0]["inventory_quantity"] == 4
    assert tote_doc["product"]["variants"][0]["price"] == "12.50"

    rows = _transactions(session_factory, source_id, direction=Direction.OUTBOUND)
    assert sorted(row.entity_id for row in rows) == sorted([str(tote), str(mug)])
    assert {row.status for row in rows} == {TxnStatus.COMPLETED}
    assert {row.transaction_type for row in rows} == {sync_models.TRANSACTION_PUSH}
    assert all(row.request_json["method"] == "PUT" for row in rows)
    assert all(row.response_status == 200 and row.processed_at is not None for row in rows)

    db = session_factory()
    try:
        assert sync_services.get_source(db, source_id).last_pushed_at is not None
    finally:
        db.close()


def test_failed_items_are_logged_and_the_push_moves_on(session_factory):
    _make_item(session_factory, "A", 1)
    _make_item(session_factory, "B", 2)
    _make_item(session_factory, "C", 3)
    source_id = _make_source(session_factory)
    client = PushClient(
        {
            "A": [RemoteRequestError("Source rejected the request (HTTP 422).", details={"status": 422})],
            "B": [RuntimeError("encoder bug")],
        }
    )

    result = _orchestrator(session_factory, client).push_source(source_id)

    assert (result.successful, result.failed) == (1, 2)
    assert [(error["sku"], error["code"]) for error in result.errors] == [
        ("A", "REMOTE_REQUEST_ERROR"),
        ("B", "INTERNAL_ERROR"),
    ]
    failed = _transactions(session_factory, source_id, status=TxnStatus.FAILED)
    assert len(failed) == 2
    by_sku = {row.request_json["sku"]: row for row in failed}
    assert by_sku["A"].response_status == 422
    assert by_sku["A"].error.startswith("REMOTE_REQUEST_ERROR")
    assert by_sku["B"].error == "INTERNAL_ERROR: encoder bug"


def test_network_errors_are_retried_per_item(session_factory):
    _make_item(session_factory, "A", 1)
    source_id = _make_source(session_factory)
    client = PushClient({"A": [NetworkError("Source request timed out.")]})
    sleeps = []

    result = _orchestrator(session_factory, client, sleeps).push_source(source_id)

    assert result.successful == 1
    assert sleeps == [1.0]
    [row] = _transactions(session_factory, source_id)
    assert row.request_json["attempts"] == 2


def test_push_can_be_limited_to_some_items(session_factory):
    first = _make_item(session_factory, "A", 1)
    _make_item(session_factory, "B", 2)
    source_id = _make_source(session_factory)
    client = PushClient()

    result = _orchestrator(session_factory, client).push_source(source_id, [first])

    assert result.total == 1
    assert [sku for sku, _ in client.pushed] == ["A"]


def test_push_needs_it_enabled_with_a_url(session_factory):
    source_id = _make_source(session_factory, push_enabled=False)

    with pytest.raises(ValidationError):
        _orchestrator(session_factory, PushClient()).push_source(source_id)

    with pytest.raises(ValidationError):
        _make_source(session_factory, key="no-url", push_url=None)


def test_catalog_fetch_is_logged_as_an_inbound_transaction(session_factory):
    _make_item(session_factory, "A", 0)
    source_id = _make_source(session_factory, source_type="json", push_enabled=False)
    orchestrator = _orchestrator(session_factory, PushClient(body=json.dumps([{"sku": "A", "quantity": 2}]).encode()))

    run = orchestrator.run_source(source_id)

    [row] = _transactions(session_factory, source_id, direction=Direction.INBOUND)
    assert row.run_id == run.id
    assert row.transaction_type == sync_models.TRANSACTION_FETCH
    assert row.status == TxnStatus.COMPLETED
    assert row.request_json == {"method": "GET", "attempts": 1}


def test_failed_fetch_closes_its_transaction(session_factory):
    source_id = _make_source(session_factory, source_type="json", push_enabled=False)
    client = PushClient({"*fetch*": [AuthError("Source rejected credentials (HTTP 401).", details={"status": 401})]})

    run = _orchestrator(session_factory, client).run_source(source_id)

    assert run.status == sync_models.SyncRunStatus.FAILED
    [row] = _transactions(session_factory, source_id)
    assert row.status == TxnStatus.FAILED
    assert row.response_status == 401
    assert row.error.startswith("AUTH_ERROR")


def test_push_and_transaction_routes(session_factory):
    _make_item(session_factory, "A", 5)
    source_id = _make_source(session_factory)
    orchestrator = _orchestrator(session_factory, PushClient())

    pushed = sync_router.push_inventory(source_id, None, orchestrator=orchestrator, actor=OPERATOR)
    assert sync_schemas.PushResultRead.model_validate(pushed).successful == 1

    db = session_factory()
    try:
        page = sync_router.list_transactions(
            source_id,
            direction=None,
            status_filter=None,
            limit=50,
            offset=0,
            db=db,
            actor=OPERATOR,
        )
    finally:
        db.close()
    assert page.total == 1
    assert page.transactions[0].direction == Direction.OUTBOUND
    assert "credentials" not in json.dumps(page.model_dump(mode="json"))
