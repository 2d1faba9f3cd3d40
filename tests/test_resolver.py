"""Tests for historical-high reconciliation."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from resale_tracker.db.history import PriceHistoryEntry, PriceHistoryLog
from resale_tracker.detect.resolver import HistoricalResolver, percent_of
from resale_tracker.detect.tiers import Tier, classify
from resale_tracker.pricing.models import HistoricalHigh, PriceQuote, WeeklyPricePoint

from factories import FrozenClock

ISBN = "9780134093413"
T0 = datetime(2026, 2, 1, 8, 0, 0)


def quote(price, vendor="BooksRun", reference=None) -> PriceQuote:
    return PriceQuote(
        isbn=ISBN,
        current_price=Decimal(str(price)),
        vendor_name=vendor,
        reference_price=Decimal(str(reference)) if reference is not None else None,
    )


def history(*prices_and_vendors) -> PriceHistoryLog:
    log = PriceHistoryLog()
    for i, (price, vendor) in enumerate(prices_and_vendors):
        log = log.appended(
            PriceHistoryEntry(
                vendor_name=vendor, price=Decimal(str(price)), captured_at=T0 + timedelta(days=i)
            )
        )
    return log


@pytest.fixture
def resolver():
    return HistoricalResolver(FrozenClock(T0 + timedelta(days=30)))


def test_local_high_wins_without_upstream(resolver):
    result = resolver.resolve(ISBN, quote(20), history((10, "A"), (25, "B"), (18, "C")))

    assert result.historical_high.max_price == Decimal("25")
    assert result.historical_high.source == "local"
    assert result.percent_of_high == Decimal("80")
    assert classify(result.percent_of_high) == Tier.HIGH_VALUE


def test_stale_quote_uses_latest_local_entry(resolver):
    result = resolver.resolve(ISBN, quote(30, "Amazon", reference=30), history((12, "X")))

    assert result.substituted is True
    assert result.current_price == Decimal("12")
    assert result.vendor_name == "X"
    assert result.history.latest().price == Decimal("12")


def test_zero_reference_price_is_not_a_stale_signal(resolver):
    result = resolver.resolve(ISBN, quote(0, None, reference=0), history((25, "Old")))

    assert result.substituted is False
    assert result.current_price == Decimal("0")
    assert result.vendor_name is None
    assert result.history.latest().vendor_name == "Unknown"


def test_stale_quote_falls_back_to_recent_upstream_point(resolver):
    series = [
        WeeklyPricePoint(period="2026-01-12", max_price=Decimal("15"), avg_price=Decimal("9"), best_vendor="Old"),
        WeeklyPricePoint(period="2026-01-26", max_price=Decimal("11"), avg_price=Decimal("8"), best_vendor="Recent"),
        WeeklyPricePoint(period="2026-02-02", max_price=Decimal("0"), avg_price=Decimal("0"), best_vendor="Empty"),
    ]

    result = resolver.resolve(ISBN, quote(30, reference=30), upstream_series=series)

    assert result.substituted is True
    assert result.current_price == Decimal("11")
    assert result.vendor_name == "Recent"


def test_stale_quote_skips_zero_local_entry(resolver):
    series = [WeeklyPricePoint(period="2026-01-26", max_price=Decimal("7"), avg_price=Decimal("5"), best_vendor="W")]

    result = resolver.resolve(ISBN, quote(30, reference=30), history((0, "Nobody")), upstream_series=series)

    assert result.current_price == Decimal("7")
    assert result.vendor_name == "W"


def test_stale_quote_without_alternatives_keeps_quote(resolver):
    result = resolver.resolve(ISBN, quote(30, "Amazon", reference=30))

    assert result.substituted is False
    assert result.current_price == Decimal("30")


def test_upstream_high_wins_when_higher(resolver):
    upstream = HistoricalHigh(max_price=Decimal("40"), period="2025-09-01", vendor_name="U")

    result = resolver.resolve(ISBN, quote(10), history((25, "B")), upstream_high=upstream)

    assert result.historical_high is upstream
    assert result.percent_of_high == Decimal("25")


def test_local_price_above_upstream_high_wins(resolver):
    upstream = HistoricalHigh(max_price=Decimal("20"), period="2025-09-01", vendor_name="U")

    result = resolver.resolve(ISBN, quote(10), history((32, "B")), upstream_high=upstream)

    assert result.historical_high.max_price == Decimal("32")
    assert result.historical_high.source == "local"


def test_current_price_above_every_high_becomes_high(resolver):
    upstream = HistoricalHigh(max_price=Decimal("20"))

    result = resolver.resolve(ISBN, quote(45), history((25, "B")), upstream_high=upstream)

    assert result.historical_high.max_price == Decimal("45")
    assert result.percent_of_high == Decimal("100")


def test_empty_history_high_defaults_to_current(resolver):
    result = resolver.resolve(ISBN, quote("13.50"))

    assert result.historical_high.max_price == Decimal("13.50")
    assert result.percent_of_high == Decimal("100")


def test_zero_price_with_no_data_is_hundred_percent(resolver):
    result = resolver.resolve(ISBN, quote(0, vendor=None))

    assert result.historical_high.max_price == Decimal("0")
    assert result.percent_of_high == Decimal("100")
    assert result.history.latest().vendor_name == "Unknown"


def test_every_resolve_appends_one_entry(resolver):
    log = history((10, "A"), (12, "B"))

    result = resolver.resolve(ISBN, quote(11), log)

    assert len(log) == 2
    assert len(result.history) == 3
    assert result.history.latest().captured_at == T0 + timedelta(days=30)


def test_high_is_max_over_appended_entries():
    clock = FrozenClock(T0)
    resolver = HistoricalResolver(clock)
    log = PriceHistoryLog()
    prices = [Decimal(p) for p in ("4.10", "9.99", "7.00", "12.35", "3.00", "12.35", "8.80")]

    for price in prices:
        clock.advance(days=1)
        result = resolver.resolve(ISBN, quote(price), log)
        log = result.history
        assert result.historical_high.max_price >= price
        assert result.historical_high.max_price == max(prices[: len(log)])


def test_percent_of_zero_high():
    assert percent_of(Decimal("5"), Decimal("0")) == Decimal("100")
