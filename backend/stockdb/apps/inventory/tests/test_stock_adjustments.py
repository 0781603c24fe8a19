from __future__ import annotations

import pytest

from stockdb.apps.inventory import ledger
from stockdb.apps.inventory import models as inventory_models
from stockdb.apps.inventory import schemas as inventory_schemas
from stockdb.apps.inventory import services as inventory_services
from stockdb.errors import InsufficientStockError, LedgerImmutableError, NotFoundError, ValidationError

EntryType = inventory_models.LedgerEntryTypeEnum


def _create_item(db, sku="HB-100", opening=0, **overrides):
    data = inventory_schemas.StockItemCreate(
        sku=sku,
        name=overrides.pop("name", f"Item {sku}"),
        opening_quantity=opening,
        **overrides,
    )
    item = inventory_services.create_item(db, data=data, actor_id="admin-1")
    db.commit()
    return item


def _entries(db, item_id):
    return (
        db.query(inventory_models.StockLedgerEntry)
        .filter(inventory_models.StockLedgerEntry.item_id == item_id)
        .order_by(inventory_models.StockLedgerEntry.sequence.asc())
        .all()
    )


def test_sale_restock_and_recount_scenario(db_session):
    item = _create_item(db_session, opening=20, low_stock_threshold=10)

    sale = inventory_services.deduct(
        db_session,
        item.id,
        15,
        reference_type="order",
        reference_id="ORD-1",
    )
    db_session.commit()
    assert (sale.before, sale.after, sale.delta) == (20, 5, -15)
    assert sale.entry_type == EntryType.SALE
    assert item.current_quantity == 5
    assert item.is_low_stock is True

    restock = inventory_services.add(db_session, item.id, 3)
    db_session.commit()
    assert (restock.before, restock.after) == (5, 8)
    assert item.is_low_stock is True

    recount = inventory_services.set_absolute(
        db_session,
        item.id,
        50,
        entry_type=EntryType.ADJUSTMENT,
        reference_type="manual",
    )
    db_session.commit()
    assert (recount.before, recount.after, recount.delta) == (8, 50, 42)
    assert item.is_low_stock is False

    entries = _entries(db_session, item.id)
    assert [e.sequence for e in entries] == [1, 2, 3, 4]
    assert [e.delta_quantity for e in entries] == [20, -15, 3, 42]
    assert entries[0].entry_type == EntryType.RESTOCK
    assert entries[0].note == "Opening balance"
    assert entries[1].reference_id == "ORD-1"
    assert ledger.latest(db_session, item.id) == 50


def test_deduct_beyond_stock_leaves_item_and_ledger_untouched(db_session):
    item = _create_item(db_session, opening=3)

    with pytest.raises(InsufficientStockError) as excinfo:
        inventory_services.deduct(db_session, item.id, 5)
    db_session.rollback()

    assert excinfo.value.available == 3
    assert excinfo.value.requested == 5
    assert excinfo.value.status_code == 409
    db_session.refresh(item)
    assert item.current_quantity == 3
    assert len(_entries(db_session, item.id)) == 1


def test_backorder_items_may_go_negative(db_session):
    item = _create_item(db_session, opening=2, allow_backorder=True)

    result = inventory_services.deduct(db_session, item.id, 5)
    db_session.commit()

    assert result.after == -3
    assert item.current_quantity == -3
    assert inventory_services.verify_item_ledger(db_session, item_id=item.id).ok


def test_untracked_item_is_skipped_without_ledger_entry(db_session):
    item = _create_item(db_session, opening=7, track_inventory=False)
    assert item.current_quantity == 7

    result = inventory_services.deduct(db_session, item.id, 2)
    db_session.commit()

    assert result.skipped is True
    assert result.reason == inventory_services.TRACKING_DISABLED
    assert result.entry_id is None
    assert item.current_quantity == 7
    assert _entries(db_session, item.id) == []
    assert inventory_services.verify_item_ledger(db_session, item_id=item.id).ok


def test_set_absolute_twice_writes_one_entry(db_session):
    item = _create_item(db_session, opening=4)

    first = inventory_services.set_absolute(db_session, item.id, 12)
    second = inventory_services.set_absolute(db_session, item.id, 12)
    db_session.commit()

    assert first.delta == 8
    assert first.entry_type == EntryType.SYNC
    assert (second.before, second.after, second.delta) == (12, 12, 0)
    assert second.entry_id is None
    assert len(_entries(db_session, item.id)) == 2


def test_set_absolute_rejects_negative_target_without_backorder(db_session):
    item = _create_item(db_session, opening=4)

    with pytest.raises(ValidationError):
        inventory_services.set_absolute(db_session, item.id, -1)


def test_adjust_routes_by_sign_and_attributes_actor(db_session):
    item = _create_item(db_session, opening=10)

    up = inventory_services.adjust(db_session, item.id, 5, actor_id="admin-7", note="Found a box")
    down = inventory_services.adjust(db_session, item.id, -3, actor_id="admin-7")
    db_session.commit()

    assert (up.before, up.after) == (10, 15)
    assert (down.before, down.after) == (15, 12)
    entries = _entries(db_session, item.id)[1:]
    assert all(e.entry_type == EntryType.ADJUSTMENT for e in entries)
    assert all(e.actor_id == "admin-7" for e in entries)
    assert entries[0].note == "Found a box"

    with pytest.raises(ValidationError):
        inventory_services.adjust(db_session, item.id, 0, actor_id="admin-7")


def test_quantity_must_be_positive(db_session):
    item = _create_item(db_session, opening=1)

    with pytest.raises(ValidationError):
        inventory_services.deduct(db_session, item.id, 0)
    with pytest.raises(ValidationError):
        inventory_services.add(db_session, item.id, -2)


def test_unknown_item_raises_not_found(db_session):
    with pytest.raises(NotFoundError):
        inventory_services.deduct(db_session, 9999, 1)


def test_duplicate_sku_is_rejected_after_normalization(db_session):
    _create_item(db_session, sku="hb-200")

    assert inventory_services.get_item_by_sku(db_session, " HB-200 ") is not None
    with pytest.raises(ValidationError):
        _create_item(db_session, sku="HB-200 ")


def test_ledger_entries_are_immutable(db_session):
    item = _create_item(db_session, opening=5)
    entry = _entries(db_session, item.id)[0]

    entry.note = "rewritten"
    with pytest.raises(LedgerImmutableError):
        db_session.flush()
    db_session.rollback()

    db_session.delete(entry)
    with pytest.raises(LedgerImmutableError):
        db_session.flush()
    db_session.rollback()


def test_chain_stays_consistent_over_mixed_operations(db_session):
    item = _create_item(db_session, opening=30)

    inventory_services.deduct(db_session, item.id, 4)
    inventory_services.add(db_session, item.id, 10, entry_type=EntryType.RETURN)
    inventory_services.set_absolute(db_session, item.id, 11)
    inventory_services.adjust(db_session, item.id, -1, actor_id="admin-1")
    db_session.commit()

    report = inventory_services.verify_item_ledger(db_session, item_id=item.id)
    assert report.ok, report.problems
    assert report.current_quantity == report.latest_quantity == 10
    assert report.entry_count == item.ledger_sequence == 5


def test_metadata_update_and_deactivation_leave_quantity_alone(db_session):
    item = _create_item(db_session, opening=6)

    inventory_services.update_item_metadata(
        db_session,
        item_id=item.id,
        data=inventory_schemas.StockItemUpdate(name="Renamed", low_stock_threshold=2),
    )
    inventory_services.deactivate_item(db_session, item_id=item.id, actor_id="admin-1")
    db_session.commit()

    assert item.name == "Renamed"
    assert item.is_active is False
    assert item.current_quantity == 6
    assert len(_entries(db_session, item.id)) == 1


def test_ledger_history_is_paginated_newest_first(db_session):
    item = _create_item(db_session, opening=1)
    for _ in range(5):
        inventory_services.add(db_session, item.id, 1)
    db_session.commit()

    page = inventory_services.ledger_history(db_session, item_id=item.id, limit=2, offset=0)
    assert page.total == 6
    assert [e.sequence for e in page.entries] == [6, 5]

    page = inventory_services.ledger_history(db_session, item_id=item.id, limit=2, offset=4)
    assert [e.sequence for e in page.entries] == [2, 1]

    page = inventory_services.ledger_history(db_session, item_id=item.id, limit=1000)
    assert page.limit == ledger.MAX_PAGE_SIZE


def test_low_stock_report_lists_tracked_active_items_lowest_first(db_session):
    low = _create_item(db_session, sku="LOW-1", opening=2, low_stock_threshold=5)
    lower = _create_item(db_session, sku="LOW-0", opening=0, low_stock_threshold=5)
    _create_item(db_session, sku="OK-1", opening=50, low_stock_threshold=5)
    _create_item(db_session, sku="UNTRACKED", opening=0, track_inventory=False)
    retired = _create_item(db_session, sku="RETIRED", opening=1)
    inventory_services.deactivate_item(db_session, item_id=retired.id)
    db_session.commit()

    report = inventory_services.low_stock_report(db_session, limit=20)

    assert [item.id for item in report] == [lower.id, low.id]
