"""Tier classification by percent of historical high."""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from resale_tracker.config import settings

Number = Union[int, float, Decimal]


class Tier(str, Enum):
    HIGH_VALUE = "high_value"
    MID_VALUE = "mid_value"
    LOW_VALUE = "low_value"


def _as_decimal(value: Number) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True)
class TierThresholds:
    """Percent-of-high boundaries; both are inclusive lower bounds."""

    upper: Decimal
    lower: Decimal

    @classmethod
    def of(cls, upper: Number, lower: Number) -> "TierThresholds":
        return cls(upper=_as_decimal(upper), lower=_as_decimal(lower))


DEFAULT_TIER_THRESHOLDS = TierThresholds.of(
    settings.default_upper_threshold, settings.default_lower_threshold
)


def thresholds_for(user_settings) -> TierThresholds:
    """Thresholds from a UserSettings row, or the defaults when there is none."""
    if user_settings is None:
        return DEFAULT_TIER_THRESHOLDS
    return TierThresholds.of(user_settings.upper_threshold, user_settings.lower_threshold)


def classify(
    percent_of_high: Number, thresholds: Optional[TierThresholds] = None
) -> Tier:
    """Classify a percent-of-high reading. Accepts any number, including negatives."""
    thresholds = thresholds or DEFAULT_TIER_THRESHOLDS
    percent = _as_decimal(percent_of_high)

    if percent.is_nan():
        return Tier.LOW_VALUE
    if percent >= thresholds.upper:
        return Tier.HIGH_VALUE
    if percent >= thresholds.lower:
        return Tier.MID_VALUE
    return Tier.LOW_VALUE
