"""Per-user settings routes: tier thresholds and notification preferences."""

import logging
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from resale_tracker.api.deps import current_user_id, get_database
from resale_tracker.db.models import User, UserSettings
from resale_tracker.detect.tiers import DEFAULT_TIER_THRESHOLDS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["settings"])


class SettingsResponse(BaseModel):
    user_id: int
    email: str
    name: str | None
    upper_threshold: float
    lower_threshold: float
    email_notifications: bool
    has_bookscouter_token: bool
    bookscouter_token_expiry: datetime | None


class SettingsUpdate(BaseModel):
    name: str | None = None
    upper_threshold: Decimal | None = Field(None, ge=0)
    lower_threshold: Decimal | None = Field(None, ge=0)
    email_notifications: bool | None = None


async def _load(db: AsyncSession, user_id: int) -> tuple[User, UserSettings | None]:
    user = await db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    result = await db.execute(select(UserSettings).where(UserSettings.user_id == user_id))
    return user, result.scalar_one_or_none()


def _response(user: User, prefs: UserSettings | None) -> SettingsResponse:
    if prefs is None:
        upper, lower = DEFAULT_TIER_THRESHOLDS.upper, DEFAULT_TIER_THRESHOLDS.lower
        email_notifications = True
    else:
        upper, lower = prefs.upper_threshold, prefs.lower_threshold
        email_notifications = prefs.email_notifications

    return SettingsResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        upper_threshold=float(upper),
        lower_threshold=float(lower),
        email_notifications=email_notifications,
        has_bookscouter_token=bool(user.bookscouter_token),
        bookscouter_token_expiry=user.bookscouter_token_expiry,
    )


@router.get("", response_model=SettingsResponse)
async def get_settings(
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_database),
):
    """The caller's profile, tier thresholds and notification preferences."""
    user, prefs = await _load(db, user_id)
    return _response(user, prefs)


@router.put("", response_model=SettingsResponse)
async def update_settings(
    update: SettingsUpdate,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_database),
):
    """
    Partially update the caller's settings.

    Omitted fields keep their stored values. The lower threshold may not
    exceed the upper one.
    """
    user, prefs = await _load(db, user_id)
    if prefs is None:
        prefs = UserSettings(
            user_id=user_id,
            upper_threshold=DEFAULT_TIER_THRESHOLDS.upper,
            lower_threshold=DEFAULT_TIER_THRESHOLDS.lower,
            email_notifications=True,
        )
        db.add(prefs)

    upper = update.upper_threshold if update.upper_threshold is not None else prefs.upper_threshold
    lower = update.lower_threshold if update.lower_threshold is not None else prefs.lower_threshold
    if lower > upper:
        raise HTTPException(
            status_code=400, detail="lower_threshold must not exceed upper_threshold"
        )

    prefs.upper_threshold = upper
    prefs.lower_threshold = lower
    if update.email_notifications is not None:
        prefs.email_notifications = update.email_notifications
    if update.name is not None:
        user.name = update.name

    await db.commit()
    logger.info(f"Updated settings for user {user_id}: upper={upper}, lower={lower}")
    return _response(user, prefs)
