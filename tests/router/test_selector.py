from __future__ import annotations

from datetime import timedelta

import pytest

from chatdesk.core.config import QuotaSettings
from chatdesk.router import selector, usage
from chatdesk.storage import credentials
from tests.helpers import NOW, UTC_POLICY, add_key, add_provider

STRICT_POLICY = QuotaSettings(timezone="UTC", strict_limits=True)


@pytest.fixture(autouse=True)
def silence_events(monkeypatch):
    recorded: list[tuple[str, str, dict]] = []

    def capture_event(kind: str, level: str, **fields) -> None:
        recorded.append((kind, level, fields))

    monkeypatch.setattr(selector, "record_event", capture_event)
    monkeypatch.setattr(usage, "record_event", capture_event)
    return recorded


def _select(provider: str = "gemini", now=NOW, policy=UTC_POLICY):
    return selector.select_key(provider, now=now, policy=policy)


def test_inactive_and_rate_limited_keys_are_never_selected():
    provider_id = add_provider("gemini")
    add_key(provider_id, "inactive", priority=9, is_active=False)
    add_key(provider_id, "demoted", priority=8, is_rate_limited=True, rate_limited_at=NOW)
    usable = add_key(provider_id, "usable", priority=1)

    assert _select().id == usable.id


def test_returns_none_and_records_event_when_pool_is_empty(silence_events):
    add_provider("gemini")

    assert _select() is None
    assert silence_events[0][0] == "no_key_available"


def test_key_excluded_exactly_at_daily_limit():
    provider_id = add_provider("gemini")
    key = add_key(provider_id, daily_limit=3)

    for _ in range(2):
        usage.record_usage(key.id, 10, now=NOW)
    assert _select().id == key.id

    usage.record_usage(key.id, 10, now=NOW)
    assert _select() is None


def test_rollover_runs_once_per_day():
    provider_id = add_provider("gemini")
    key = add_key(
        provider_id,
        now=NOW - timedelta(days=1),
        daily_limit=10,
        daily_used=10,
        daily_token_used=900,
    )

    selected = _select()
    assert selected.id == key.id
    assert selected.daily_used == 0
    assert selected.daily_token_used == 0

    usage.record_usage(key.id, 25, now=NOW)
    later = NOW + timedelta(minutes=1)
    assert credentials.roll_over_daily(key.id, day_start=NOW.replace(hour=0, minute=0, second=0), now=later) is False

    selected = _select(now=later)
    assert selected.daily_used == 1
    assert selected.daily_token_used == 25


def test_exhausted_higher_priority_key_is_skipped():
    provider_id = add_provider("gemini")
    add_key(provider_id, "a", priority=5, daily_limit=2, daily_used=2)
    b = add_key(provider_id, "b", priority=3, daily_limit=2)

    assert _select().id == b.id


def test_ties_prefer_newest_key():
    provider_id = add_provider("gemini")
    add_key(provider_id, "older", now=NOW - timedelta(hours=2))
    newer = add_key(provider_id, "newer", now=NOW - timedelta(hours=1))

    assert _select().id == newer.id


def test_demotion_holds_until_next_day():
    provider_id = add_provider("gemini")
    demoted_at = NOW.replace(hour=14, minute=0, second=0)
    key = add_key(provider_id, now=NOW.replace(hour=9))
    usage.mark_rate_limited(key.id, now=demoted_at)

    for minute in (1, 60, 599):
        assert _select(now=demoted_at + timedelta(minutes=minute)) is None

    next_morning = demoted_at.replace(hour=0, minute=0, second=5) + timedelta(days=1)
    selected = _select(now=next_morning)
    assert selected is not None
    assert selected.id == key.id
    assert selected.is_rate_limited is False


def test_demotion_after_midnight_is_not_cleared_by_rollover():
    provider_id = add_provider("gemini")
    key = add_key(provider_id, now=NOW - timedelta(days=1))
    usage.mark_rate_limited(key.id, now=NOW - timedelta(minutes=1))

    assert _select() is None
    stored = credentials.get_key(key.id)
    assert stored.is_rate_limited is True


def test_rolled_over_minute_window_is_selectable_before_write():
    provider_id = add_provider("gemini")
    key = add_key(
        provider_id,
        daily_limit=None,
        minute_limit=5,
        minute_used=5,
        last_minute_reset_at=NOW - timedelta(seconds=90),
    )

    selected = _select()
    assert selected.id == key.id
    assert selected.minute_used == 5


def test_current_minute_exhaustion_blocks_key():
    provider_id = add_provider("gemini")
    add_key(provider_id, minute_limit=5, minute_used=5, last_minute_reset_at=NOW)

    assert _select() is None


def test_rate_limit_then_selection_finds_nothing():
    provider_id = add_provider("gemini")
    key = add_key(provider_id)

    usage.mark_rate_limited(key.id, now=NOW, reason="HTTP 429")

    stored = credentials.get_key(key.id)
    assert stored.is_rate_limited is True
    assert stored.rate_limited_at is not None
    assert _select(now=NOW + timedelta(seconds=1)) is None


def test_selection_is_scoped_to_provider():
    add_provider("gemini")
    openai_id = add_provider("openai")
    openai_key = add_key(openai_id)

    assert _select("gemini") is None
    assert _select("openai").id == openai_key.id


def test_strict_mode_reserves_and_falls_through():
    provider_id = add_provider("gemini")
    first = add_key(provider_id, "first", priority=5, daily_limit=1)
    second = add_key(provider_id, "second", priority=1, daily_limit=1)

    assert _select(policy=STRICT_POLICY).id == first.id
    assert credentials.get_key(first.id).daily_used == 1

    assert _select(policy=STRICT_POLICY).id == second.id
    assert _select(policy=STRICT_POLICY) is None


def test_strict_mode_lost_reservation_moves_to_next_key(monkeypatch):
    provider_id = add_provider("gemini")
    first = add_key(provider_id, "first", priority=5)
    second = add_key(provider_id, "second", priority=1)
    original = credentials.reserve_request

    def racing_reserve(key_id, *, now):
        if key_id == first.id:
            return False
        return original(key_id, now=now)

    monkeypatch.setattr(selector.credentials, "reserve_request", racing_reserve)

    assert _select(policy=STRICT_POLICY).id == second.id


def test_pool_summary_reports_remaining_budget():
    provider_id = add_provider("gemini")
    add_key(provider_id, "a", daily_limit=10, daily_used=3)
    add_key(provider_id, "b", daily_limit=5, daily_used=5)

    summary = selector.pool_summary("gemini", now=NOW, policy=UTC_POLICY)

    assert summary.can_send is True
    assert summary.usable_keys == 1
    assert summary.remaining_requests == 7
