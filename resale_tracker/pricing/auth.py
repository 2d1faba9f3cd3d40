"""BookScouter token lifecycle: acquisition, cached reuse and forced refresh."""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Hashable, Optional

import httpx
from jose import JWTError, jwt

from resale_tracker import metrics
from resale_tracker.config import settings
from resale_tracker.db.models import User
from resale_tracker.db.session import AsyncSessionLocal
from resale_tracker.errors import AuthenticationError, NotFoundError
from resale_tracker.utils.clock import from_unix, utcnow

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "accept": "application/ld+json",
    "accept-language": "en-US,en;q=0.8",
    "origin": "https://bookscouter.com",
    "referer": "https://bookscouter.com/",
    "user-agent": (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/132.0.0.0 Safari/537.36"
    ),
}


@dataclass(frozen=True)
class CachedToken:
    """Bearer token with the expiry read from its exp claim."""

    token: str
    expires_at: datetime


def read_token_expiry(token: str) -> datetime:
    """
    Read the expiry from a JWT's exp claim without verifying its signature.

    Raises:
        AuthenticationError: If the token is not a JWT or carries no exp claim
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as e:
        raise AuthenticationError(f"Invalid token format: {e}") from e

    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        raise AuthenticationError("Token has no exp claim")
    return from_unix(exp)


class TokenManager:
    """
    Owns the BookScouter bearer token per product user.

    Tokens are cached on the user record (user_id=None uses a process-local
    service slot). Calls for the same user key are serialized, so concurrent
    callers never run a redundant credential exchange.
    """

    def __init__(
        self,
        session_factory=None,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        refresh_margin_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.base_url = (base_url or settings.bookscouter_base_url).rstrip("/")
        self.username = username if username is not None else settings.bookscouter_username
        self.password = password if password is not None else settings.bookscouter_password
        self.clock = clock
        margin = (
            refresh_margin_seconds
            if refresh_margin_seconds is not None
            else settings.token_refresh_margin_seconds
        )
        self.refresh_margin = timedelta(seconds=margin)
        self.locks: dict[Hashable, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._service_token: Optional[CachedToken] = None
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.bookscouter_timeout_seconds)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def get_valid_token(self, user_id: Optional[int] = None) -> str:
        """
        Return a usable token for the user, exchanging credentials only when
        no cached token exists or the cached one has expired.
        """
        async with self.locks[user_id]:
            cached = await self._load(user_id)
            if cached is not None and self.clock() < cached.expires_at - self.refresh_margin:
                return cached.token

            reason = "expired" if cached is not None else "missing"
            fresh = await self._exchange(reason)
            await self._store(user_id, fresh)
            return fresh.token

    async def force_refresh(
        self, user_id: Optional[int] = None, rejected: Optional[str] = None
    ) -> str:
        """
        Exchange credentials and overwrite the cached token.

        Args:
            user_id: Token owner (None for the service slot)
            rejected: Token BookScouter just refused. If another caller has
                already replaced it with a still-valid token, that token is
                returned without a new exchange.
        """
        async with self.locks[user_id]:
            if rejected is not None:
                cached = await self._load(user_id)
                if (
                    cached is not None
                    and cached.token != rejected
                    and self.clock() < cached.expires_at - self.refresh_margin
                ):
                    return cached.token

            fresh = await self._exchange("forced")
            await self._store(user_id, fresh)
            return fresh.token

    async def _load(self, user_id: Optional[int]) -> Optional[CachedToken]:
        if user_id is None:
            return self._service_token

        async with self.session_factory() as db:
            user = await db.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            if user.bookscouter_token and user.bookscouter_token_expiry:
                return CachedToken(user.bookscouter_token, user.bookscouter_token_expiry)
        return None

    async def _store(self, user_id: Optional[int], cached: CachedToken) -> None:
        if user_id is None:
            self._service_token = cached
            return

        async with self.session_factory() as db:
            user = await db.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            user.bookscouter_token = cached.token
            user.bookscouter_token_expiry = cached.expires_at
            await db.commit()

    async def _exchange(self, reason: str) -> CachedToken:
        """
        POST credentials to /auth and parse the returned token.

        Raises:
            AuthenticationError: On network failure, rejection or an unreadable token
        """
        if not self.username or not self.password:
            metrics.record_token_exchange(reason, "unconfigured")
            raise AuthenticationError("BookScouter credentials are not configured")

        client = await self._get_client()
        payload = {
            "auth": False,
            "username": self.username,
            "password": self.password,
            "remember": True,
        }

        try:
            response = await client.post(
                f"{self.base_url}/auth",
                json=payload,
                headers={**BROWSER_HEADERS, "content-type": "application/json"},
            )
        except httpx.HTTPError as e:
            metrics.record_token_exchange(reason, "network_error")
            raise AuthenticationError(f"Authentication request failed: {e}") from e

        if not response.is_success:
            metrics.record_token_exchange(reason, "rejected")
            raise AuthenticationError(
                f"Authentication failed: {response.status_code} {response.reason_phrase}"
            )

        try:
            token = response.json().get("token")
        except (ValueError, AttributeError) as e:
            metrics.record_token_exchange(reason, "invalid")
            raise AuthenticationError("Authentication response was not a JSON object") from e

        if not isinstance(token, str) or not token:
            metrics.record_token_exchange(reason, "invalid")
            raise AuthenticationError("Authentication response did not include a token")

        expires_at = read_token_expiry(token)
        metrics.record_token_exchange(reason, "success")
        logger.info(f"Obtained BookScouter token ({reason}), expires {expires_at.isoformat()}")
        return CachedToken(token=token, expires_at=expires_at)
