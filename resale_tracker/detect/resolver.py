"""Reconcile a fresh quote with BookScouter's history and the local price log."""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Sequence

from resale_tracker.db.history import PriceHistoryEntry, PriceHistoryLog
from resale_tracker.pricing.models import (
    HistoricalHigh,
    PriceQuote,
    WeeklyPricePoint,
    most_recent_point,
)
from resale_tracker.utils.clock import utcnow

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass
class Resolution:
    """Resolved pricing for one fetch."""

    isbn: str
    current_price: Decimal
    vendor_name: Optional[str]
    historical_high: HistoricalHigh
    percent_of_high: Decimal
    history: PriceHistoryLog
    substituted: bool = False  # current price replaced because the quote was stale


def percent_of(current_price: Decimal, high: Decimal) -> Decimal:
    """Current price as a percentage of the high; 100 when the high is zero."""
    if high > 0:
        return current_price / high * HUNDRED
    return HUNDRED


class HistoricalResolver:
    """
    Merges BookScouter's reported high with the local price log.

    The resulting high is never below the current price or any locally
    recorded price. Every resolve() call appends exactly one entry to the
    returned log, so callers must resolve each fetch once.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def resolve(
        self,
        isbn: str,
        quote: PriceQuote,
        history: Optional[PriceHistoryLog] = None,
        upstream_high: Optional[HistoricalHigh] = None,
        upstream_series: Sequence[WeeklyPricePoint] = (),
    ) -> Resolution:
        history = history if history is not None else PriceHistoryLog()
        current_price = quote.current_price
        vendor_name = quote.vendor_name
        substituted = False

        if quote.is_stale:
            latest = history.latest()
            if latest is not None and latest.price > 0:
                current_price, vendor_name = latest.price, latest.vendor_name
                substituted = True
            else:
                recent = most_recent_point(list(upstream_series))
                if recent is not None:
                    current_price, vendor_name = recent.max_price, recent.best_vendor
                    substituted = True

            if substituted:
                logger.info(
                    f"Stale quote for {isbn} (matches reference {quote.reference_price}), "
                    f"using {current_price} from {vendor_name}"
                )

        entry = PriceHistoryEntry(
            vendor_name=vendor_name or "Unknown",
            price=current_price,
            captured_at=self.clock(),
        )
        updated = history.appended(entry)

        high = self._historical_high(updated, upstream_high)

        return Resolution(
            isbn=isbn,
            current_price=current_price,
            vendor_name=vendor_name,
            historical_high=high,
            percent_of_high=percent_of(current_price, high.max_price),
            history=updated,
            substituted=substituted,
        )

    @staticmethod
    def _historical_high(
        history: PriceHistoryLog, upstream_high: Optional[HistoricalHigh]
    ) -> HistoricalHigh:
        # history always holds at least the entry just appended
        top = history.highest()
        local = HistoricalHigh(
            max_price=top.price,
            period=top.captured_at.date().isoformat(),
            vendor_name=top.vendor_name,
            source="local",
        )

        if upstream_high is None or upstream_high.max_price <= 0:
            return local
        if local.max_price > upstream_high.max_price:
            return local
        return upstream_high
