"""Tests for tier classification."""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from resale_tracker.detect.tiers import (
    DEFAULT_TIER_THRESHOLDS,
    Tier,
    TierThresholds,
    classify,
    thresholds_for,
)


@pytest.mark.parametrize(
    "percent, expected",
    [
        (100, Tier.HIGH_VALUE),
        (50, Tier.HIGH_VALUE),
        (Decimal("49.99"), Tier.MID_VALUE),
        (1, Tier.MID_VALUE),
        (Decimal("0.99"), Tier.LOW_VALUE),
        (0, Tier.LOW_VALUE),
        (-5, Tier.LOW_VALUE),
        (250.0, Tier.HIGH_VALUE),
    ],
)
def test_default_boundaries_are_inclusive(percent, expected):
    assert classify(percent) == expected


def test_defaults_come_from_settings():
    assert DEFAULT_TIER_THRESHOLDS == TierThresholds.of(50, 1)


def test_custom_thresholds():
    thresholds = TierThresholds.of(80, 40)

    assert classify(80, thresholds) == Tier.HIGH_VALUE
    assert classify(79.9, thresholds) == Tier.MID_VALUE
    assert classify(40, thresholds) == Tier.MID_VALUE
    assert classify(39.9, thresholds) == Tier.LOW_VALUE


def test_nan_is_low_value():
    assert classify(float("nan")) == Tier.LOW_VALUE


def test_thresholds_for_missing_settings_uses_defaults():
    assert thresholds_for(None) is DEFAULT_TIER_THRESHOLDS


def test_thresholds_for_user_settings():
    row = SimpleNamespace(upper_threshold=Decimal("70.00"), lower_threshold=Decimal("10.00"))

    thresholds = thresholds_for(row)

    assert thresholds.upper == Decimal("70")
    assert thresholds.lower == Decimal("10")
    assert classify(Decimal("69.5"), thresholds) == Tier.MID_VALUE
