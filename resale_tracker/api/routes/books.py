"""Book price refresh and lookup endpoints."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from resale_tracker.api.deps import (
    UPSTREAM_ERRORS,
    current_user_id,
    get_client,
    get_database,
    get_refresher,
    upstream_http_error,
)
from resale_tracker.db.models import Book
from resale_tracker.detect.tiers import classify
from resale_tracker.pricing.bookscouter import BookScouterClient
from resale_tracker.pricing.models import highest_point
from resale_tracker.utils.isbn import normalize_isbn
from resale_tracker.worker.refresh import BookRefresher, load_thresholds

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/books", tags=["books"])


class BookResponse(BaseModel):
    id: int
    batch_id: int | None
    isbn: str | None
    isbn13: str | None
    title: str | None
    current_price: float
    reference_price: float | None
    best_vendor_name: str | None
    historical_high: float
    percent_of_high: float
    tier: str | None
    last_price_update: datetime | None

    class Config:
        from_attributes = True


class PriceLookupRequest(BaseModel):
    isbn: str


class OfferResponse(BaseModel):
    vendor_name: str
    price: float


class PriceLookupResponse(BaseModel):
    isbn: str
    title: str | None
    authors: List[str]
    isbn10: str | None
    isbn13: str | None
    publisher: str | None
    image_url: str | None
    current_price: float
    vendor_name: str | None
    reference_price: float | None
    historical_high: float
    historical_high_source: str
    percent_of_high: float
    tier: str
    offers: List[OfferResponse]
    tracked_book_id: Optional[int] = None


@router.post("/{book_id}/refresh-prices", response_model=BookResponse)
async def refresh_book_prices(
    book_id: int,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_database),
    refresher: BookRefresher = Depends(get_refresher),
):
    """Fetch a fresh price for one tracked book and persist it."""
    book = await db.get(Book, book_id)
    if book is None or book.user_id != user_id:
        raise HTTPException(status_code=404, detail="Book not found")

    thresholds = await load_thresholds(db, user_id)
    try:
        await refresher.refresh(db, book, thresholds, user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UPSTREAM_ERRORS as e:
        logger.warning(f"Refresh failed for book {book_id}: {e}")
        raise upstream_http_error(e)

    return book


@router.post("/price-lookup", response_model=PriceLookupResponse)
async def price_lookup(
    request: PriceLookupRequest,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_database),
    client: BookScouterClient = Depends(get_client),
    refresher: BookRefresher = Depends(get_refresher),
):
    """
    Look up the current resale price of an ISBN.

    If the user already tracks the ISBN, the book record is refreshed and its
    history grows by one entry. Otherwise nothing is persisted.
    """
    try:
        isbn = normalize_isbn(request.isbn)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    result = await db.execute(
        select(Book)
        .where(Book.user_id == user_id, or_(Book.isbn == isbn, Book.isbn13 == isbn))
        .order_by(Book.id)
        .limit(1)
    )
    book = result.scalar_one_or_none()
    thresholds = await load_thresholds(db, user_id)

    try:
        if book is not None:
            outcome = await refresher.refresh(db, book, thresholds, user_id)
            quote = outcome.quote
        else:
            quote = await client.fetch_current_price(isbn, user_id)
            series = await client.fetch_historical_series(isbn, user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UPSTREAM_ERRORS as e:
        logger.warning(f"Price lookup failed for {isbn}: {e}")
        raise upstream_http_error(e)

    if book is not None:
        current_price, vendor_name = outcome.current_price, outcome.vendor_name
        high_price, high_source = outcome.historical_high, outcome.high_source
        percent, tier = outcome.percent_of_high, outcome.tier
    else:
        resolution = refresher.resolver.resolve(
            isbn,
            quote,
            upstream_high=highest_point(series),
            upstream_series=series,
        )
        current_price, vendor_name = resolution.current_price, resolution.vendor_name
        high_price = resolution.historical_high.max_price
        high_source = resolution.historical_high.source
        percent = resolution.percent_of_high
        tier = classify(percent, thresholds)

    return PriceLookupResponse(
        isbn=isbn,
        title=quote.title,
        authors=quote.authors,
        isbn10=quote.isbn10,
        isbn13=quote.isbn13,
        publisher=quote.publisher,
        image_url=quote.image_url,
        current_price=float(current_price),
        vendor_name=vendor_name,
        reference_price=float(quote.reference_price) if quote.reference_price is not None else None,
        historical_high=float(high_price),
        historical_high_source=high_source,
        percent_of_high=float(percent),
        tier=tier.value,
        offers=[OfferResponse(vendor_name=o.vendor_name, price=float(o.price)) for o in quote.offers],
        tracked_book_id=book.id if book is not None else None,
    )


class WeeklyPointResponse(BaseModel):
    period: str
    max_price: float
    avg_price: float
    best_vendor: str


class PriceHistoryResponse(BaseModel):
    isbn: str
    points: List[WeeklyPointResponse]


class HighestPriceResponse(BaseModel):
    isbn: str
    max_price: float | None
    period: str | None
    vendor_name: str | None
    updated_book_ids: List[int]


def _query_isbn(isbn: Optional[str]) -> str:
    if not isbn:
        raise HTTPException(status_code=400, detail="ISBN is required")
    try:
        return normalize_isbn(isbn)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/price-history", response_model=PriceHistoryResponse)
async def price_history(
    isbn: Optional[str] = Query(None),
    user_id: int = Depends(current_user_id),
    client: BookScouterClient = Depends(get_client),
):
    """BookScouter's weekly price series for an ISBN, oldest week first."""
    isbn = _query_isbn(isbn)
    try:
        series = await client.fetch_historical_series(isbn, user_id)
    except UPSTREAM_ERRORS as e:
        logger.warning(f"Price history failed for {isbn}: {e}")
        raise upstream_http_error(e)

    return PriceHistoryResponse(
        isbn=isbn,
        points=[
            WeeklyPointResponse(
                period=point.period,
                max_price=float(point.max_price),
                avg_price=float(point.avg_price),
                best_vendor=point.best_vendor,
            )
            for point in series
        ],
    )


@router.get("/highest-price", response_model=HighestPriceResponse)
async def highest_price(
    isbn: Optional[str] = Query(None),
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_database),
    client: BookScouterClient = Depends(get_client),
    refresher: BookRefresher = Depends(get_refresher),
):
    """
    BookScouter's recorded high for an ISBN.

    Any of the caller's books with this ISBN whose stored high is lower get
    the new high, with percent of high and tier recomputed.
    """
    isbn = _query_isbn(isbn)
    try:
        high = await client.fetch_historical_high(isbn, user_id)
    except UPSTREAM_ERRORS as e:
        logger.warning(f"Highest price lookup failed for {isbn}: {e}")
        raise upstream_http_error(e)

    if high is None:
        return HighestPriceResponse(
            isbn=isbn, max_price=None, period=None, vendor_name=None, updated_book_ids=[]
        )

    result = await db.execute(
        select(Book)
        .where(Book.user_id == user_id, or_(Book.isbn == isbn, Book.isbn13 == isbn))
        .order_by(Book.id)
    )
    books = result.scalars().all()

    updated = []
    if books:
        thresholds = await load_thresholds(db, user_id)
        for book in books:
            if await refresher.raise_historical_high(db, book, high.max_price, thresholds):
                updated.append(book.id)

    return HighestPriceResponse(
        isbn=isbn,
        max_price=float(high.max_price),
        period=high.period,
        vendor_name=high.vendor_name,
        updated_book_ids=updated,
    )
