from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from chatdesk.router import quota
from chatdesk.storage.models import ApiKey

UTC = timezone.utc
NOW = datetime(2026, 3, 10, 14, 0, 30, tzinfo=UTC)


def _key(**fields) -> ApiKey:
    values = {
        "is_active": True,
        "is_rate_limited": False,
        "daily_used": 0,
        "minute_used": 0,
        "daily_token_used": 0,
        "minute_token_used": 0,
        "last_reset_at": NOW - timedelta(hours=1),
        "last_minute_reset_at": NOW,
    }
    values.update(fields)
    return ApiKey(**values)


def test_start_of_day_uses_local_midnight_of_configured_zone():
    bangkok = ZoneInfo("Asia/Bangkok")

    # 14:00 UTC is 21:00 in Bangkok; local midnight was 17:00 UTC the day before.
    assert quota.start_of_day(NOW, bangkok) == datetime(2026, 3, 9, 17, 0, tzinfo=UTC)
    assert quota.start_of_day(NOW, UTC) == datetime(2026, 3, 10, tzinfo=UTC)


def test_naive_timestamps_are_treated_as_utc():
    naive = datetime(2026, 3, 10, 0, 0)
    key = _key(last_reset_at=naive)

    assert quota.as_utc(naive) == datetime(2026, 3, 10, tzinfo=UTC)
    assert quota.needs_daily_reset(key, NOW, UTC) is False


def test_stale_daily_window_zeroes_all_counters():
    key = _key(
        last_reset_at=NOW - timedelta(days=1),
        daily_used=10,
        minute_used=3,
        daily_token_used=500,
        minute_token_used=50,
    )

    assert quota.effective_usage(key, NOW, UTC) == quota.UsageSnapshot(0, 0, 0, 0)


def test_stale_minute_window_zeroes_only_minute_counters():
    key = _key(
        last_minute_reset_at=NOW - timedelta(seconds=90),
        daily_used=10,
        minute_used=5,
        daily_token_used=500,
        minute_token_used=50,
    )

    assert quota.effective_usage(key, NOW, UTC) == quota.UsageSnapshot(10, 0, 500, 0)


def test_null_limit_is_unlimited_and_zero_limit_is_exhausted():
    unlimited = _key(daily_limit=None, daily_used=10_000)
    zero = _key(daily_limit=0)

    assert quota.has_headroom(unlimited, NOW, UTC)
    assert quota.exhausted_axes(zero, NOW, UTC) == [quota.DAILY_REQUESTS]


def test_any_exhausted_axis_blocks_the_key():
    key = _key(daily_limit=100, daily_used=1, minute_token_limit=1000, minute_token_used=1000)

    assert quota.exhausted_axes(key, NOW, UTC) == [quota.MINUTE_TOKENS]
    assert quota.is_usable(key, NOW, UTC) is False


def test_demotion_from_yesterday_is_cleared_by_stale_window():
    key = _key(
        is_rate_limited=True,
        rate_limited_at=NOW - timedelta(days=1),
        last_reset_at=NOW - timedelta(days=1),
    )

    assert quota.is_rate_limited(key, NOW, UTC) is False


def test_demotion_from_today_survives_stale_window():
    key = _key(
        is_rate_limited=True,
        rate_limited_at=NOW - timedelta(minutes=5),
        last_reset_at=NOW - timedelta(days=1),
    )

    assert quota.is_rate_limited(key, NOW, UTC) is True


def test_summarize_pool_aggregates_usable_keys_only():
    keys = [
        _key(daily_limit=10, daily_used=4, daily_token_limit=1000, daily_token_used=100),
        _key(daily_limit=5, daily_used=5),
        _key(daily_limit=50, is_rate_limited=True, rate_limited_at=NOW),
        _key(daily_limit=50, is_active=False),
    ]

    summary = quota.summarize_pool(keys, NOW, UTC)

    assert summary.can_send is True
    assert summary.usable_keys == 1
    assert summary.total_daily_limit == 15
    assert summary.remaining_requests == 6
    assert summary.total_token_limit == 1000
    assert summary.remaining_tokens == 900


def test_summarize_pool_without_limits_reports_unbounded():
    summary = quota.summarize_pool([_key()], NOW, UTC)

    assert summary.can_send is True
    assert summary.total_daily_limit is None
    assert summary.remaining_requests is None


def test_summarize_pool_with_zero_limits_reports_empty_budget():
    keys = [_key(daily_limit=0), _key(daily_limit=0, daily_token_limit=0)]

    summary = quota.summarize_pool(keys, NOW, UTC)

    assert summary.can_send is False
    assert summary.total_daily_limit == 0
    assert summary.remaining_requests == 0
    assert summary.total_token_limit == 0
    assert summary.remaining_tokens == 0
