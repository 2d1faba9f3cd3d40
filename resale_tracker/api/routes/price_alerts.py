"""Price alert management routes."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from resale_tracker.api.deps import current_user_id, get_database
from resale_tracker.db.models import AlertCondition, AlertFrequency
from resale_tracker.errors import NotFoundError
from resale_tracker.notify.price_alerts import create_alert, list_user_alerts

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/price-alerts", tags=["price-alerts"])


class AlertCreate(BaseModel):
    alert_type: str
    target_price: Decimal = Field(..., ge=0)
    book_id: int | None = None
    isbn: str | None = None
    condition: str = AlertCondition.BELOW.value
    frequency: str = AlertFrequency.IMMEDIATE.value
    email_notification: bool = True
    expires_at: datetime | None = None


class AlertResponse(BaseModel):
    id: int
    book_id: int | None
    isbn: str | None
    alert_type: str
    condition: str
    frequency: str
    target_price: float
    current_price: float | None
    is_active: bool
    triggered: bool
    trigger_count: int
    last_triggered: datetime | None
    expires_at: datetime | None
    email_notification: bool
    created_at: datetime

    class Config:
        from_attributes = True


@router.post("", response_model=AlertResponse, status_code=201)
async def create_price_alert(
    alert_data: AlertCreate,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_database),
):
    """Create a price alert on a tracked book or a bare ISBN."""
    try:
        return await create_alert(
            db,
            user_id=user_id,
            alert_type=alert_data.alert_type,
            target_price=alert_data.target_price,
            book_id=alert_data.book_id,
            isbn=alert_data.isbn,
            condition=alert_data.condition,
            frequency=alert_data.frequency,
            email_notification=alert_data.email_notification,
            expires_at=alert_data.expires_at,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("", response_model=List[AlertResponse])
async def list_price_alerts(
    active_only: bool = Query(False),
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_database),
):
    """List the caller's price alerts, newest first."""
    return await list_user_alerts(db, user_id, active_only=active_only)
