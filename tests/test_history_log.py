"""Tests for the typed price history log."""

import json
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import text

from resale_tracker.db.history import (
    PRICE_HISTORY_SCHEMA_VERSION,
    PriceHistoryEntry,
    PriceHistoryLog,
)
from resale_tracker.db.models import Book

from factories import create_user

T0 = datetime(2026, 1, 5, 9, 0, 0)


def entry(price, vendor="Vendor", minutes=0):
    return PriceHistoryEntry(
        vendor_name=vendor, price=Decimal(str(price)), captured_at=T0 + timedelta(minutes=minutes)
    )


def test_appended_returns_new_log():
    log = PriceHistoryLog()

    updated = log.appended(entry(10))

    assert len(log) == 0
    assert len(updated) == 1
    assert updated.schema_version == PRICE_HISTORY_SCHEMA_VERSION


def test_latest_uses_capture_time_not_position():
    log = PriceHistoryLog(entries=(entry(12, "X", minutes=30), entry(9, "Y", minutes=5)))

    assert log.latest().vendor_name == "X"


def test_latest_ties_go_to_last_appended():
    log = PriceHistoryLog(entries=(entry(12, "X"), entry(9, "Y")))

    assert log.latest().vendor_name == "Y"


def test_highest_prefers_earliest_on_ties():
    log = PriceHistoryLog(entries=(entry(25, "first"), entry(18), entry(25, "second", minutes=10)))

    assert log.highest().vendor_name == "first"


def test_empty_log_has_no_latest_or_highest():
    assert PriceHistoryLog().latest() is None
    assert PriceHistoryLog().highest() is None


def test_legacy_list_is_upgraded():
    legacy = [
        {"vendorName": "BooksRun", "price": 14.5, "timestamp": "2025-11-01T10:00:00"},
        {"price": "9.25", "timestamp": "2025-11-08T10:00:00"},
    ]

    log = PriceHistoryLog.from_stored(legacy)

    assert log.schema_version == PRICE_HISTORY_SCHEMA_VERSION
    assert [e.vendor_name for e in log.entries] == ["BooksRun", "Unknown"]
    assert log.entries[1].price == Decimal("9.25")


def test_legacy_json_string_is_upgraded():
    stored = json.dumps([{"vendorName": "Ziffit", "price": 3, "timestamp": "2025-10-01T00:00:00"}])

    log = PriceHistoryLog.from_stored(stored)

    assert log.entries[0].vendor_name == "Ziffit"


@pytest.mark.parametrize("stored", [None, ""])
def test_missing_history_is_empty(stored):
    assert len(PriceHistoryLog.from_stored(stored)) == 0


def test_newer_schema_version_is_rejected():
    with pytest.raises(ValueError):
        PriceHistoryLog.from_stored({"schema_version": PRICE_HISTORY_SCHEMA_VERSION + 1, "entries": []})


@pytest.mark.asyncio
async def test_history_column_persists_typed_log(session_factory):
    user_id = await create_user(session_factory)
    log = PriceHistoryLog().appended(entry("12.40", "X")).appended(entry(7, "Y", minutes=1))

    async with session_factory() as db:
        book = Book(user_id=user_id, isbn="9780134093413", price_history=log)
        db.add(book)
        await db.commit()
        book_id = book.id

    async with session_factory() as db:
        raw = (await db.execute(text("SELECT price_history FROM books"))).scalar_one()
        loaded = await db.get(Book, book_id)

    stored = json.loads(raw) if isinstance(raw, str) else raw
    assert stored["schema_version"] == PRICE_HISTORY_SCHEMA_VERSION
    assert isinstance(loaded.price_history, PriceHistoryLog)
    assert loaded.price_history.latest().vendor_name == "Y"
    assert loaded.price_history.highest().price == Decimal("12.40")


@pytest.mark.asyncio
async def test_new_book_starts_with_empty_history(session_factory):
    user_id = await create_user(session_factory)

    async with session_factory() as db:
        book = Book(user_id=user_id, isbn="9780134093413")
        db.add(book)
        await db.commit()
        book_id = book.id

    async with session_factory() as db:
        loaded = await db.get(Book, book_id)

    assert len(loaded.price_history) == 0
