from __future__ import annotations

from datetime import timedelta

import pytest

from chatdesk.router import quota, usage
from chatdesk.storage import credentials
from tests.helpers import NOW, add_key, add_provider


@pytest.fixture(autouse=True)
def captured_events(monkeypatch):
    recorded: list[tuple[str, str, dict]] = []

    def capture_event(kind: str, level: str, **fields) -> None:
        recorded.append((kind, level, fields))

    monkeypatch.setattr(usage, "record_event", capture_event)
    return recorded


def test_record_usage_increments_all_counters_within_minute():
    key = add_key(add_provider("gemini"))

    usage.record_usage(key.id, 100, now=NOW)
    usage.record_usage(key.id, 50, now=NOW + timedelta(seconds=10))

    stored = credentials.get_key(key.id)
    assert stored.daily_used == 2
    assert stored.daily_token_used == 150
    assert stored.minute_used == 2
    assert stored.minute_token_used == 150
    assert quota.as_utc(stored.last_used_at) == NOW + timedelta(seconds=10)


def test_stale_minute_window_resets_to_this_call_deltas():
    key = add_key(
        add_provider("gemini"),
        daily_used=7,
        daily_token_used=700,
        minute_used=5,
        minute_token_used=400,
        last_minute_reset_at=NOW - timedelta(minutes=2),
    )

    usage.record_usage(key.id, 30, now=NOW)

    stored = credentials.get_key(key.id)
    assert stored.minute_used == 1
    assert stored.minute_token_used == 30
    assert stored.daily_used == 8
    assert stored.daily_token_used == 730
    assert quota.as_utc(stored.last_minute_reset_at) == NOW


def test_tokens_only_when_request_was_reserved():
    key = add_key(add_provider("gemini"))

    usage.record_usage(key.id, 42, now=NOW, count_request=False)

    stored = credentials.get_key(key.id)
    assert stored.daily_used == 0
    assert stored.daily_token_used == 42


def test_negative_or_missing_token_counts_are_clamped():
    key = add_key(add_provider("gemini"))

    usage.record_usage(key.id, -5, now=NOW)
    usage.record_usage(key.id, None, now=NOW)  # type: ignore[arg-type]

    stored = credentials.get_key(key.id)
    assert stored.daily_used == 2
    assert stored.daily_token_used == 0


def test_record_usage_for_deleted_key_returns_false():
    assert usage.record_usage(9999, 10, now=NOW) is False


def test_mark_rate_limited_keeps_counters_and_records_event(captured_events):
    key = add_key(add_provider("gemini"), daily_used=3)

    assert usage.mark_rate_limited(key.id, now=NOW, provider_name="gemini", reason="429") is True

    stored = credentials.get_key(key.id)
    assert stored.is_rate_limited is True
    assert quota.as_utc(stored.rate_limited_at) == NOW
    assert stored.daily_used == 3
    kind, level, fields = captured_events[0]
    assert (kind, level) == ("key_rate_limited", "WARNING")
    assert fields["api_key_id"] == key.id


def test_clear_rate_limit_restores_key(captured_events):
    key = add_key(add_provider("gemini"))
    usage.mark_rate_limited(key.id, now=NOW)

    assert usage.clear_rate_limit(key.id) is True
    assert credentials.get_key(key.id).is_rate_limited is False
    assert captured_events[-1][0] == "key_rate_limit_cleared"
    assert usage.clear_rate_limit(9999) is False
