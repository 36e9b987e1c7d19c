"""Quota window bookkeeping for pooled API keys.

Everything here is read-only: given a key row and the current time it
answers whether the key's daily or minute window has rolled over, what its
usage counters are *logically* worth right now, and whether every enabled
capacity axis still has headroom. Physical resets are performed by the
selector and the usage recorder.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo

from chatdesk.storage.models import ApiKey

DAILY_REQUESTS = "daily_requests"
MINUTE_REQUESTS = "minute_requests"
DAILY_TOKENS = "daily_tokens"
MINUTE_TOKENS = "minute_tokens"

# (axis, limit column, snapshot field)
_AXES: tuple[tuple[str, str, str], ...] = (
    (DAILY_REQUESTS, "daily_limit", "daily_requests"),
    (MINUTE_REQUESTS, "minute_limit", "minute_requests"),
    (DAILY_TOKENS, "daily_token_limit", "daily_tokens"),
    (MINUTE_TOKENS, "minute_token_limit", "minute_tokens"),
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a stored timestamp to an aware UTC datetime.

    SQLite hands back naive values; they are stored as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(now: datetime, tz: tzinfo | None = None) -> datetime:
    """Return local midnight of ``now``'s calendar day, expressed in UTC."""
    local = as_utc(now).astimezone(tz)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)


def start_of_minute(now: datetime) -> datetime:
    return as_utc(now).replace(second=0, microsecond=0)


@dataclass(frozen=True)
class UsageSnapshot:
    daily_requests: int
    minute_requests: int
    daily_tokens: int
    minute_tokens: int


@dataclass(frozen=True)
class PoolSummary:
    can_send: bool
    usable_keys: int
    total_daily_limit: int | None
    remaining_requests: int | None
    total_token_limit: int | None
    remaining_tokens: int | None


def needs_daily_reset(key: ApiKey, now: datetime, tz: tzinfo | None = None) -> bool:
    last_reset = as_utc(key.last_reset_at)
    return last_reset is None or last_reset < start_of_day(now, tz)


def needs_minute_reset(key: ApiKey, now: datetime) -> bool:
    last_reset = as_utc(key.last_minute_reset_at)
    return last_reset is None or last_reset < start_of_minute(now)


def effective_usage(key: ApiKey, now: datetime, tz: tzinfo | None = None) -> UsageSnapshot:
    """Usage counters with pending rollovers applied."""
    if needs_daily_reset(key, now, tz):
        return UsageSnapshot(0, 0, 0, 0)

    daily_requests = key.daily_used or 0
    daily_tokens = key.daily_token_used or 0
    if needs_minute_reset(key, now):
        return UsageSnapshot(daily_requests, 0, daily_tokens, 0)
    return UsageSnapshot(
        daily_requests,
        key.minute_used or 0,
        daily_tokens,
        key.minute_token_used or 0,
    )


def is_rate_limited(key: ApiKey, now: datetime, tz: tzinfo | None = None) -> bool:
    """Whether the demotion flag still applies.

    A stale daily window clears the flag, unless the demotion itself happened
    today (a call that straddled midnight and was throttled after it).
    """
    if not key.is_rate_limited:
        return False
    if not needs_daily_reset(key, now, tz):
        return True
    demoted_at = as_utc(key.rate_limited_at)
    return demoted_at is not None and demoted_at >= start_of_day(now, tz)


def exhausted_axes(key: ApiKey, now: datetime, tz: tzinfo | None = None) -> list[str]:
    """Return the capacity axes whose limit is set and already reached."""
    usage = effective_usage(key, now, tz)
    exhausted: list[str] = []
    for axis, limit_field, usage_field in _AXES:
        limit = getattr(key, limit_field)
        if limit is None:
            continue
        if getattr(usage, usage_field) >= limit:
            exhausted.append(axis)
    return exhausted


def has_headroom(key: ApiKey, now: datetime, tz: tzinfo | None = None) -> bool:
    return not exhausted_axes(key, now, tz)


def is_usable(key: ApiKey, now: datetime, tz: tzinfo | None = None) -> bool:
    return bool(key.is_active) and not is_rate_limited(key, now, tz) and has_headroom(key, now, tz)


def summarize_pool(
    keys: Iterable[ApiKey], now: datetime, tz: tzinfo | None = None
) -> PoolSummary:
    """Aggregate daily budgets across a provider's pool without writing anything."""
    usable = 0
    daily_limited = token_limited = False
    daily_limit_total = 0
    daily_used_total = 0
    token_limit_total = 0
    token_used_total = 0

    for key in keys:
        if not key.is_active or is_rate_limited(key, now, tz):
            continue
        usage = effective_usage(key, now, tz)
        if key.daily_limit is not None:
            daily_limited = True
            daily_limit_total += key.daily_limit
            daily_used_total += usage.daily_requests
        if key.daily_token_limit is not None:
            token_limited = True
            token_limit_total += key.daily_token_limit
            token_used_total += usage.daily_tokens
        if has_headroom(key, now, tz):
            usable += 1

    return PoolSummary(
        can_send=usable > 0,
        usable_keys=usable,
        total_daily_limit=daily_limit_total if daily_limited else None,
        remaining_requests=(
            max(0, daily_limit_total - daily_used_total) if daily_limited else None
        ),
        total_token_limit=token_limit_total if token_limited else None,
        remaining_tokens=(
            max(0, token_limit_total - token_used_total) if token_limited else None
        ),
    )


__all__ = [
    "PoolSummary",
    "UsageSnapshot",
    "as_utc",
    "effective_usage",
    "exhausted_axes",
    "has_headroom",
    "is_rate_limited",
    "is_usable",
    "needs_daily_reset",
    "needs_minute_reset",
    "start_of_day",
    "start_of_minute",
    "summarize_pool",
    "utcnow",
]
