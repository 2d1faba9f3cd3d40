"""BookScouter API client for sell prices and weekly price history.

BookScouter aggregates buyback offers from many vendors. The client
normalizes the offer list into a single best offer and exposes the
aggregator's own weekly price series.
"""

import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from resale_tracker import metrics
from resale_tracker.config import settings
from resale_tracker.errors import ParseError, UpstreamAuthError, UpstreamError
from resale_tracker.pricing.auth import BROWSER_HEADERS, TokenManager
from resale_tracker.pricing.models import (
    HistoricalHigh,
    PriceQuote,
    VendorOffer,
    WeeklyPricePoint,
    highest_point,
)

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUSES = (401, 403)


def _to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a JSON number (or numeric string) to Decimal, None if not numeric."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.replace("$", "").replace(",", "").strip())
        except InvalidOperation:
            return None
    return None


class BookScouterClient:
    """
    Authenticated BookScouter client.

    Features:
    - One forced token refresh and retry on 401/403
    - Best-offer normalization (positive prices only, highest first)
    - Weekly history that degrades to an empty series instead of failing
    """

    def __init__(
        self,
        token_manager: TokenManager,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
    ):
        self.token_manager = token_manager
        self.base_url = (base_url or settings.bookscouter_base_url).rstrip("/")
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=settings.bookscouter_timeout_seconds,
                follow_redirects=True,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _get(
        self,
        endpoint: str,
        url: str,
        user_id: Optional[int],
        params: Optional[dict] = None,
    ) -> httpx.Response:
        """
        GET with the user's token, refreshing it once on an auth failure.

        Raises:
            UpstreamAuthError: Token rejected again after the forced refresh
            UpstreamError: Network failure or non-2xx status
        """
        client = await self._get_client()
        token = await self.token_manager.get_valid_token(user_id)

        for attempt in range(2):
            started = time.monotonic()
            try:
                response = await client.get(url, params=params, headers=self._headers(token))
            except httpx.HTTPError as e:
                metrics.record_fetch(endpoint, "network_error")
                raise UpstreamError(f"BookScouter request failed: {e}") from e
            finally:
                metrics.price_fetch_duration_seconds.labels(endpoint=endpoint).observe(
                    time.monotonic() - started
                )

            if response.status_code not in AUTH_FAILURE_STATUSES:
                break

            metrics.record_fetch(endpoint, "auth_rejected")
            if attempt == 1:
                raise UpstreamAuthError(
                    f"BookScouter rejected a freshly issued token ({response.status_code})"
                )
            logger.info(
                f"BookScouter returned {response.status_code} for {endpoint}, forcing token refresh"
            )
            token = await self.token_manager.force_refresh(user_id, rejected=token)

        if not response.is_success:
            metrics.record_fetch(endpoint, str(response.status_code))
            raise UpstreamError(
                f"BookScouter API error: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )

        metrics.record_fetch(endpoint, "success")
        return response

    @staticmethod
    def _headers(token: str) -> dict[str, str]:
        return {
            **BROWSER_HEADERS,
            "Authorization": f"Bearer {token}",
            "Cookie": f"AuthToken={token}",
        }

    async def fetch_current_price(self, isbn: str, user_id: Optional[int] = None) -> PriceQuote:
        """
        Fetch the current best sell offer for an ISBN.

        Raises:
            UpstreamAuthError, UpstreamError: Request failed
            ParseError: Body is not a JSON object
        """
        response = await self._get("sell", f"{self.base_url}/prices/sell/{isbn}", user_id)

        try:
            data = response.json()
        except ValueError as e:
            raise ParseError(f"Malformed sell price response for {isbn}") from e
        if not isinstance(data, dict):
            raise ParseError(f"Unexpected sell price payload for {isbn}: {type(data).__name__}")

        book = data.get("book") or {}
        if not isinstance(book, dict):
            book = {}

        offers = self._parse_offers(data.get("prices") or [])
        best = offers[0] if offers else None

        # A zero or missing Amazon price means there is no reference
        reference_price = _to_decimal(book.get("amazonLowestPrice"))
        if reference_price is not None and reference_price <= 0:
            reference_price = None

        authors = book.get("author") or []
        if isinstance(authors, str):
            authors = [authors]

        return PriceQuote(
            isbn=isbn,
            current_price=best.price if best else Decimal("0"),
            vendor_name=best.vendor_name if best else None,
            reference_price=reference_price,
            offers=offers,
            title=book.get("title"),
            authors=list(authors),
            isbn10=book.get("isbn10"),
            isbn13=book.get("isbn13"),
            publisher=book.get("publisher"),
            image_url=book.get("image"),
        )

    @staticmethod
    def _parse_offers(raw_offers: Any) -> list[VendorOffer]:
        """Keep offers with a positive price, sorted by price, highest first."""
        if not isinstance(raw_offers, list):
            return []

        offers = []
        for raw in raw_offers:
            if not isinstance(raw, dict):
                continue
            price = _to_decimal(raw.get("price"))
            if price is None or price <= 0:
                continue
            vendor = raw.get("vendor") or {}
            name = vendor.get("name") if isinstance(vendor, dict) else None
            offers.append(VendorOffer(vendor_name=name or "Unknown", price=price))

        offers.sort(key=lambda offer: offer.price, reverse=True)
        return offers

    async def fetch_historical_series(
        self, isbn: str, user_id: Optional[int] = None
    ) -> list[WeeklyPricePoint]:
        """
        Fetch BookScouter's weekly price history for an ISBN.

        Missing or malformed history yields an empty list. Auth and other
        HTTP failures still raise.
        """
        try:
            response = await self._get(
                "historic_weekly",
                f"{self.base_url}/historic/sell/weekly",
                user_id,
                params={"isbn": isbn},
            )
        except UpstreamError as e:
            if e.status_code == 404:
                return []
            raise

        try:
            data = response.json()
        except ValueError:
            logger.warning(f"Malformed weekly history for {isbn}, treating as no data")
            return []

        if isinstance(data, dict):
            data = data.get("hydra:member")
        if not isinstance(data, list):
            return []

        series = []
        for item in data:
            point = self._parse_point(item)
            if point is None:
                logger.debug(f"Skipping malformed weekly point for {isbn}: {item!r}")
                continue
            series.append(point)
        return series

    @staticmethod
    def _parse_point(item: Any) -> Optional[WeeklyPricePoint]:
        if not isinstance(item, dict):
            return None
        period = item.get("dateSeen")
        if not isinstance(period, str) or not period:
            return None

        max_price = _to_decimal(item.get("maxPrice"))
        avg_price = _to_decimal(item.get("avgPrice"))
        vendor = item.get("bestVendor")
        if isinstance(vendor, dict):
            vendor = vendor.get("name")

        return WeeklyPricePoint(
            period=period,
            max_price=max_price if max_price is not None else Decimal("0"),
            avg_price=avg_price if avg_price is not None else Decimal("0"),
            best_vendor=vendor if isinstance(vendor, str) and vendor else "Unknown",
        )

    async def fetch_historical_high(
        self, isbn: str, user_id: Optional[int] = None
    ) -> Optional[HistoricalHigh]:
        """Highest weekly max price BookScouter has recorded, if any."""
        return highest_point(await self.fetch_historical_series(isbn, user_id))
