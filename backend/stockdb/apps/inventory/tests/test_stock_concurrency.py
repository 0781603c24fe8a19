from __future__ import annotations

import threading

import pytest
from sqlalchemy import false

from stockdb.apps.inventory import models as inventory_models
from stockdb.apps.inventory import schemas as inventory_schemas
from stockdb.apps.inventory import services as inventory_services
from stockdb.errors import ConcurrencyConflict, InsufficientStockError, ValidationError


def _seed_item(session_factory, quantity, sku="LAST-ONE"):
    db = session_factory()
    try:
        item = inventory_services.create_item(
            db,
            data=inventory_schemas.StockItemCreate(sku=sku, name="Last unit", opening_quantity=quantity),
        )
        db.commit()
        return item.id
    finally:
        db.close()


def _run_in_threads(count, target):
    barrier = threading.Barrier(count)

    def runner(index):
        barrier.wait()
        target(index)

    threads = [threading.Thread(target=runner, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)


def test_two_buyers_for_the_last_unit_only_one_wins(session_factory):
    item_id = _seed_item(session_factory, 1)
    outcomes = []
    lock = threading.Lock()

    def buy(index):
        db = session_factory()
        try:
            result = inventory_services.deduct(db, item_id, 1, reference_type="order", reference_id=f"ORD-{index}")
            db.commit()
            outcome = ("ok", result.after)
        except InsufficientStockError:
            db.rollback()
            outcome = ("insufficient", None)
        finally:
            db.close()
        with lock:
            outcomes.append(outcome)

    _run_in_threads(2, buy)

    assert sorted(kind for kind, _ in outcomes) == ["insufficient", "ok"]
    db = session_factory()
    try:
        assert inventory_services.current_quantity(db, item_id) == 0
        report = inventory_services.verify_item_ledger(db, item_id=item_id)
        assert report.ok, report.problems
        assert report.entry_count == 2
    finally:
        db.close()


def test_parallel_restocks_never_lose_an_update(session_factory):
    item_id = _seed_item(session_factory, 0, sku="RESTOCKED")
    errors = []

    def restock(index):
        db = session_factory()
        try:
            for _ in range(5):
                inventory_services.add(db, item_id, 2, reference_id=f"PO-{index}")
                db.commit()
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)
            db.rollback()
        finally:
            db.close()

    _run_in_threads(4, restock)

    assert errors == []
    db = session_factory()
    try:
        assert inventory_services.current_quantity(db, item_id) == 40
        report = inventory_services.verify_item_ledger(db, item_id=item_id)
        assert report.ok, report.problems
        assert report.entry_count == 20
    finally:
        db.close()


def _guarded_update_misses(monkeypatch, times):
    """Make the next `times` guarded stock updates match no row, as if another writer got there first."""
    real_update = inventory_services.update
    remaining = {"misses": times}

    def update(table):
        statement = real_update(table)
        if remaining["misses"] > 0:
            remaining["misses"] -= 1
            statement = statement.where(false())
        return statement

    monkeypatch.setattr(inventory_services, "update", update)
    return remaining


def _entry_count(db, item_id):
    return (
        db.query(inventory_models.StockLedgerEntry)
        .filter(inventory_models.StockLedgerEntry.item_id == item_id)
        .count()
    )


def test_lost_guarded_update_is_retried_once(db_session, monkeypatch):
    item = inventory_services.create_item(
        db_session,
        data=inventory_schemas.StockItemCreate(sku="RETRY-1", name="Retried", opening_quantity=5),
    )
    db_session.commit()
    remaining = _guarded_update_misses(monkeypatch, 1)

    result = inventory_services.deduct(db_session, item.id, 2, reference_type="order", reference_id="ORD-7")
    db_session.commit()

    assert remaining["misses"] == 0
    assert (result.before, result.after) == (5, 3)
    assert inventory_services.current_quantity(db_session, item.id) == 3
    assert _entry_count(db_session, item.id) == 2
    assert inventory_services.verify_item_ledger(db_session, item_id=item.id).ok


def test_second_lost_update_surfaces_conflict_without_an_entry(db_session, monkeypatch):
    item = inventory_services.create_item(
        db_session,
        data=inventory_schemas.StockItemCreate(sku="RETRY-2", name="Contended", opening_quantity=5),
    )
    db_session.commit()
    _guarded_update_misses(monkeypatch, 2)

    with pytest.raises(ConcurrencyConflict) as exc:
        inventory_services.deduct(db_session, item.id, 2, reference_type="order", reference_id="ORD-8")
    db_session.rollback()

    assert exc.value.details["item_id"] == item.id
    assert exc.value.retryable is True
    assert inventory_services.current_quantity(db_session, item.id) == 5
    assert _entry_count(db_session, item.id) == 1


def test_adjustment_past_the_column_range_is_refused(db_session):
    item = inventory_services.create_item(
        db_session,
        data=inventory_schemas.StockItemCreate(sku="HUGE-1", name="Huge", opening_quantity=1),
    )
    db_session.commit()

    with pytest.raises(ValidationError):
        inventory_services.set_absolute(db_session, item.id, inventory_models.MAX_QUANTITY + 1)
    db_session.rollback()

    assert inventory_services.current_quantity(db_session, item.id) == 1
