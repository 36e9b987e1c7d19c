"""Usage accounting and rate-limit demotion for pooled keys."""

from __future__ import annotations

import logging
from datetime import datetime

from chatdesk.storage import credentials
from chatdesk.telemetry.events import record_event

from . import quota

logger = logging.getLogger("chatdesk.usage")


def record_usage(
    key_id: int,
    token_count: int,
    *,
    now: datetime | None = None,
    count_request: bool = True,
) -> bool:
    """Apply one successful call's cost to a key's counters.

    The minute window is restarted at write time when the stored window
    predates the current minute, so the minute counters end up holding
    exactly this call's deltas instead of adding onto stale values. With
    ``count_request=False`` (strict mode, where the selector already reserved
    the request) only tokens are added.
    """
    now = now or quota.utcnow()
    tokens = max(0, int(token_count or 0))
    requests = 1 if count_request else 0
    updated = credentials.increment_usage(key_id, requests=requests, tokens=tokens, now=now)
    if not updated:
        logger.warning(
            "Usage recorded for unknown key",
            extra={"event": "usage_key_missing", "api_key_id": key_id},
        )
    return updated


def mark_rate_limited(
    key_id: int,
    *,
    now: datetime | None = None,
    provider_name: str | None = None,
    reason: str | None = None,
) -> bool:
    """Demote a key after upstream throttling until the next daily rollover."""
    now = now or quota.utcnow()
    updated = credentials.set_fields(key_id, is_rate_limited=True, rate_limited_at=now)
    logger.warning(
        "API key rate limited",
        extra={
            "event": "key_rate_limited",
            "api_key_id": key_id,
            "provider": provider_name,
            "reason": reason,
        },
    )
    record_event(
        "key_rate_limited",
        "WARNING",
        provider=provider_name,
        api_key_id=key_id,
        message=reason,
    )
    return updated


def clear_rate_limit(key_id: int) -> bool:
    """Administrator override restoring a demoted key before the next day."""
    updated = credentials.set_fields(key_id, is_rate_limited=False)
    if updated:
        record_event("key_rate_limit_cleared", "INFO", api_key_id=key_id)
    return updated


__all__ = ["clear_rate_limit", "mark_rate_limited", "record_usage"]
