"""Cron trigger for price alert evaluation."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from resale_tracker.api.deps import get_evaluator, require_cron_key
from resale_tracker.notify.price_alerts import AlertEvaluator

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/cron",
    tags=["cron"],
    dependencies=[Depends(require_cron_key)],
)


class AlertCheckResponse(BaseModel):
    alert_id: int
    triggered: bool
    condition_met: bool
    throttled: bool
    current_price: Optional[float]
    target_price: Optional[float]
    reason: str
    error: Optional[str] = None


class AlertRunResponse(BaseModel):
    success: bool
    checked: int
    triggered: int
    errors: int
    results: List[AlertCheckResponse]


async def _run(evaluator: AlertEvaluator) -> AlertRunResponse:
    results = await evaluator.evaluate_all()
    return AlertRunResponse(
        success=True,
        checked=len(results),
        triggered=sum(1 for r in results if r.triggered),
        errors=sum(1 for r in results if r.error),
        results=[AlertCheckResponse(**r.to_dict()) for r in results],
    )


@router.post("/price-alerts", response_model=AlertRunResponse)
async def run_price_alerts(evaluator: AlertEvaluator = Depends(get_evaluator)):
    """Evaluate every active price alert."""
    logger.info("Price alert evaluation triggered by cron")
    return await _run(evaluator)


@router.get("/price-alerts", response_model=AlertRunResponse)
async def run_price_alerts_get(evaluator: AlertEvaluator = Depends(get_evaluator)):
    """GET variant for schedulers that can only issue GET requests."""
    return await _run(evaluator)
