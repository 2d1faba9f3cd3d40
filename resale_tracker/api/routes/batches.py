"""Batch price refresh endpoints."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from resale_tracker.api.deps import current_user_id, get_database, get_orchestrator
from resale_tracker.db.models import Batch
from resale_tracker.errors import NotFoundError
from resale_tracker.worker.batch_refresh import BatchRefreshOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/batches", tags=["batches"])


class RefreshRequest(BaseModel):
    """Optional subset of the batch's ISBNs to refresh."""

    isbns: Optional[List[str]] = None


class RefreshStartedResponse(BaseModel):
    job_id: str
    status: str
    message: str


class JobStatusResponse(BaseModel):
    """Response model for a refresh job."""

    job_id: str
    batch_id: int
    status: str
    total: int
    processed: int
    success_count: int
    error_count: int
    error: Optional[str] = None
    progress_percent: float


async def _owned_batch(db: AsyncSession, batch_id: int, user_id: int) -> Batch:
    batch = await db.get(Batch, batch_id)
    if batch is None or batch.user_id != user_id:
        raise HTTPException(status_code=404, detail="Batch not found")
    return batch


@router.post("/{batch_id}/refresh-prices", response_model=RefreshStartedResponse, status_code=202)
async def start_batch_refresh(
    batch_id: int,
    request: Optional[RefreshRequest] = None,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_database),
    orchestrator: BatchRefreshOrchestrator = Depends(get_orchestrator),
):
    """
    Start refreshing prices for every book in a batch.

    Returns immediately with a job id; poll GET on the same path for progress.
    """
    await _owned_batch(db, batch_id, user_id)

    try:
        job_id = await orchestrator.start(
            batch_id, isbns=request.isbns if request else None, user_id=user_id
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return RefreshStartedResponse(
        job_id=job_id,
        status="pending",
        message="Price refresh started",
    )


@router.get("/{batch_id}/refresh-prices", response_model=JobStatusResponse)
async def get_batch_refresh_status(
    batch_id: int,
    job_id: str = Query(..., description="Job id returned when the refresh was started"),
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_database),
    orchestrator: BatchRefreshOrchestrator = Depends(get_orchestrator),
):
    """Get the status of a batch refresh job."""
    await _owned_batch(db, batch_id, user_id)

    try:
        view = await orchestrator.status(job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")

    if view.batch_id != batch_id:
        raise HTTPException(status_code=404, detail="Job not found")

    return JobStatusResponse(
        job_id=view.job_id,
        batch_id=view.batch_id,
        status=view.status,
        total=view.total,
        processed=view.processed,
        success_count=view.success_count,
        error_count=view.error_count,
        error=view.error,
        progress_percent=view.progress_percent,
    )
