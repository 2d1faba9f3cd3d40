"""FastAPI dependencies."""

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from resale_tracker.config import settings
from resale_tracker.db.session import get_db
from resale_tracker.errors import (
    AuthenticationError,
    ParseError,
    UpstreamAuthError,
    UpstreamError,
)
from resale_tracker.notify.price_alerts import AlertEvaluator
from resale_tracker.pricing.bookscouter import BookScouterClient
from resale_tracker.worker.batch_refresh import BatchRefreshOrchestrator
from resale_tracker.worker.refresh import BookRefresher
from resale_tracker.worker.tasks import task_runner

# Failures talking to BookScouter, reported to API callers as 502
UPSTREAM_ERRORS = (AuthenticationError, UpstreamAuthError, UpstreamError, ParseError)


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session
        break  # Only yield once, as FastAPI handles the session lifecycle


async def current_user_id(x_user_id: int = Header(..., alias="X-User-Id")) -> int:
    """
    Identify the calling product user.

    End-user authentication lives in front of this service; it forwards the
    authenticated user's id in X-User-Id.
    """
    return x_user_id


async def require_cron_key(authorization: str = Header(None)) -> None:
    """
    Dependency to require the cron API key as a bearer token.

    Raises:
        HTTPException: 503 if no key is configured, 401 if missing or invalid
    """
    if not settings.cron_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron API key not configured",
        )

    if authorization != f"Bearer {settings.cron_api_key}":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


def _require(component, name: str):
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not initialized",
        )
    return component


def get_client() -> BookScouterClient:
    return _require(task_runner.client, "Price client")


def get_refresher() -> BookRefresher:
    return _require(task_runner.refresher, "Book refresher")


def get_orchestrator() -> BatchRefreshOrchestrator:
    return _require(task_runner.orchestrator, "Batch orchestrator")


def get_evaluator() -> AlertEvaluator:
    return _require(task_runner.evaluator, "Alert evaluator")


def upstream_http_error(e: Exception) -> HTTPException:
    """Map a BookScouter failure to a 502 response."""
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"BookScouter request failed: {e}",
    )
