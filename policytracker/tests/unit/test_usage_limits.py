from __future__ import annotations

import math

from policytracker.services.subscription import NOT_SUBSCRIBED, SubscriptionStatus
from policytracker.services.usage import (
    SUBSCRIPTION_LIMITS,
    TIER_FREE,
    TIER_PRO,
    format_storage_size,
    get_usage_percentage,
    limits_for,
    tier_for,
)


def test_usage_percentage_rounds_half_up_and_caps() -> None:
    assert get_usage_percentage(0, 50) == 0
    assert get_usage_percentage(1, 200) == 1  # 0.5% rounds up
    assert get_usage_percentage(25, 50) == 50
    assert get_usage_percentage(49, 50) == 98
    assert get_usage_percentage(75, 50) == 100


def test_usage_percentage_for_unbounded_and_zero_limits() -> None:
    assert get_usage_percentage(10_000, None) == 0
    assert get_usage_percentage(10_000, math.inf) == 0
    assert get_usage_percentage(0, 0) == 100


def test_format_storage_size_units() -> None:
    assert format_storage_size(0) == "0 B"
    assert format_storage_size(512) == "512 B"
    assert format_storage_size(2048) == "2 KB"
    assert format_storage_size(5 * 1024 * 1024 + 512 * 1024) == "5.5 MB"
    assert format_storage_size(2 * 1024 * 1024 * 1024) == "2.00 GB"


def test_tier_limits_follow_subscription() -> None:
    pro = SubscriptionStatus(subscribed=True, tier="Pro", end_date=None)
    assert tier_for(NOT_SUBSCRIBED) == TIER_FREE
    assert tier_for(pro) == TIER_PRO

    free_limits = limits_for(NOT_SUBSCRIBED)
    assert free_limits.max_policies == 200
    assert free_limits.max_ocr_scans == 50
    assert free_limits.max_storage_bytes == 2 * 1024 ** 3
    assert free_limits.backup_frequency_days == 15

    pro_limits = limits_for(pro)
    assert pro_limits.max_policies is None
    assert pro_limits.max_ocr_scans is None
    assert pro_limits.max_storage_bytes == 10 * 1024 ** 3
    assert pro_limits.backup_frequency_days == 7
    assert set(SUBSCRIPTION_LIMITS) == {TIER_FREE, TIER_PRO}
