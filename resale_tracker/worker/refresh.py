"""Refresh pipeline for one book: fetch, resolve, classify, persist."""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from resale_tracker.db.models import Book, UserSettings
from resale_tracker.detect.resolver import HistoricalResolver, percent_of
from resale_tracker.detect.tiers import Tier, TierThresholds, classify, thresholds_for
from resale_tracker.errors import NotFoundError
from resale_tracker.pricing.bookscouter import BookScouterClient
from resale_tracker.pricing.models import PriceQuote, highest_point
from resale_tracker.utils.clock import utcnow
from resale_tracker.worker.locks import KeyedLock, book_lock_key

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class RefreshOutcome:
    """What a refresh wrote to the book record."""

    book_id: int
    isbn: str
    current_price: Decimal
    vendor_name: Optional[str]
    historical_high: Decimal
    percent_of_high: Decimal
    tier: Tier
    high_source: str = "local"
    substituted: bool = False
    quote: Optional[PriceQuote] = None


async def load_thresholds(db: AsyncSession, user_id: int) -> TierThresholds:
    """Tier thresholds configured by the user, or the defaults."""
    result = await db.execute(select(UserSettings).where(UserSettings.user_id == user_id))
    return thresholds_for(result.scalar_one_or_none())


class BookRefresher:
    """
    Runs the price pipeline for a single book record.

    The whole read-modify-write happens under the book's lock so a batch
    refresh and an alert-driven refresh of the same book cannot lose each
    other's history entries.
    """

    def __init__(
        self,
        client: BookScouterClient,
        resolver: Optional[HistoricalResolver] = None,
        locks=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self.resolver = resolver or HistoricalResolver(clock)
        self.locks = locks or KeyedLock()
        self.clock = clock

    async def refresh(
        self,
        db: AsyncSession,
        book: Book,
        thresholds: TierThresholds,
        user_id: Optional[int] = None,
    ) -> RefreshOutcome:
        """
        Refresh one book and commit.

        Raises:
            ValueError: If the book has no ISBN
            UpstreamAuthError, UpstreamError, ParseError: Fetch failed
        """
        if not book.isbn:
            raise ValueError(f"Book {book.id} has no ISBN for price lookup")

        user_id = user_id if user_id is not None else book.user_id

        async with self.locks.hold(book_lock_key(book.id)):
            # Pick up history written by whoever held the lock before us
            await db.refresh(book)

            quote = await self.client.fetch_current_price(book.isbn, user_id)
            series = await self.client.fetch_historical_series(book.isbn, user_id)

            resolution = self.resolver.resolve(
                book.isbn,
                quote,
                history=book.price_history,
                upstream_high=highest_point(series),
                upstream_series=series,
            )
            tier = classify(resolution.percent_of_high, thresholds)

            book.current_price = _money(resolution.current_price)
            book.reference_price = quote.reference_price
            book.best_vendor_name = resolution.vendor_name
            book.historical_high = _money(resolution.historical_high.max_price)
            book.percent_of_high = _money(resolution.percent_of_high)
            book.tier = tier.value
            book.price_history = resolution.history
            book.last_price_update = self.clock()
            if not book.title and quote.title:
                book.title = quote.title
            if not book.isbn13 and quote.isbn13:
                book.isbn13 = quote.isbn13

            await db.commit()

        logger.debug(
            f"Refreshed {book.isbn}: {resolution.current_price} "
            f"({resolution.percent_of_high:.1f}% of {resolution.historical_high.max_price}, {tier.value})"
        )

        return RefreshOutcome(
            book_id=book.id,
            isbn=book.isbn,
            current_price=resolution.current_price,
            vendor_name=resolution.vendor_name,
            historical_high=resolution.historical_high.max_price,
            percent_of_high=resolution.percent_of_high,
            tier=tier,
            high_source=resolution.historical_high.source,
            substituted=resolution.substituted,
            quote=quote,
        )

    async def raise_historical_high(
        self, db: AsyncSession, book: Book, high: Decimal, thresholds: TierThresholds
    ) -> bool:
        """
        Lift the book's stored high to a higher upstream figure.

        Percent of high and tier are recomputed from the stored current
        price. Returns False, leaving the book untouched, when the stored
        high is already at least as large.
        """
        async with self.locks.hold(book_lock_key(book.id)):
            await db.refresh(book)
            if high <= book.historical_high:
                return False

            percent = percent_of(book.current_price, high)
            book.historical_high = _money(high)
            book.percent_of_high = _money(percent)
            book.tier = classify(percent, thresholds).value
            await db.commit()

        logger.info(f"Raised historical high of book {book.id} to {high}")
        return True

    async def refresh_by_id(self, session_factory, book_id: int) -> RefreshOutcome:
        """Refresh a single book by id in its own session."""
        async with session_factory() as db:
            book = await db.get(Book, book_id)
            if book is None:
                raise NotFoundError(f"Book {book_id} not found")
            thresholds = await load_thresholds(db, book.user_id)
            return await self.refresh(db, book, thresholds)
