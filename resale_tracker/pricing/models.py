"""Value objects produced by the BookScouter client."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class VendorOffer:
    """A single vendor's buyback offer."""

    vendor_name: str
    price: Decimal


@dataclass
class PriceQuote:
    """Normalized current sell price for one ISBN."""

    isbn: str
    current_price: Decimal
    vendor_name: Optional[str]
    reference_price: Optional[Decimal] = None  # Amazon lowest price
    offers: list[VendorOffer] = field(default_factory=list)
    title: Optional[str] = None
    authors: list[str] = field(default_factory=list)
    isbn10: Optional[str] = None
    isbn13: Optional[str] = None
    publisher: Optional[str] = None
    image_url: Optional[str] = None

    @property
    def is_stale(self) -> bool:
        """
        True when the best offer equals the reference price.

        BookScouter surfaces the Amazon price as a placeholder when it has no
        representative offer, so a match is treated as a stale reading.
        """
        return (
            self.reference_price is not None
            and self.reference_price > 0
            and self.current_price == self.reference_price
        )


@dataclass(frozen=True)
class WeeklyPricePoint:
    """One period of BookScouter's own price history."""

    period: str
    max_price: Decimal
    avg_price: Decimal
    best_vendor: str = "Unknown"


@dataclass(frozen=True)
class HistoricalHigh:
    """Highest known price for an ISBN and where it came from."""

    max_price: Decimal
    period: Optional[str] = None
    vendor_name: Optional[str] = None
    source: str = "upstream"  # upstream or local


def highest_point(series: list[WeeklyPricePoint]) -> Optional[HistoricalHigh]:
    """Historical high from a weekly series, or None when it has no positive price."""
    best: Optional[WeeklyPricePoint] = None
    for point in series:
        if point.max_price > 0 and (best is None or point.max_price > best.max_price):
            best = point
    if best is None:
        return None
    return HistoricalHigh(
        max_price=best.max_price,
        period=best.period,
        vendor_name=best.best_vendor,
        source="upstream",
    )


def most_recent_point(series: list[WeeklyPricePoint]) -> Optional[WeeklyPricePoint]:
    """Latest period (by period string) whose max price is positive."""
    candidates = [point for point in series if point.max_price > 0]
    if not candidates:
        return None
    return max(candidates, key=lambda point: point.period)
