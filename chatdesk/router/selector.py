"""API key selection across a provider's key pool."""

from __future__ import annotations

import logging
from datetime import datetime

from chatdesk.core.config import QuotaSettings, load_config
from chatdesk.storage import credentials
from chatdesk.storage.models import ApiKey
from chatdesk.telemetry.events import record_event

from . import quota

logger = logging.getLogger("chatdesk.selector")


def _quota_settings(policy: QuotaSettings | None) -> QuotaSettings:
    return policy if policy is not None else load_config().quota


def select_key(
    provider_name: str,
    *,
    now: datetime | None = None,
    policy: QuotaSettings | None = None,
) -> ApiKey | None:
    """Return the highest-priority usable key for ``provider_name``, or None.

    Candidates are tried in priority order. A candidate whose daily window is
    stale is physically rolled over first (counters zeroed, yesterday's
    demotion cleared) and re-read. The first key that is not rate-limited and
    has headroom on every enabled axis wins.

    Nothing is reserved by default: two concurrent callers can both receive
    the same key at the edge of its budget. With ``strict_limits`` enabled the
    selector claims one request atomically and falls through to the next key
    when the claim fails.
    """
    now = now or quota.utcnow()
    settings = _quota_settings(policy)
    tz = settings.tzinfo
    day_start = quota.start_of_day(now, tz)

    candidates = credentials.list_candidate_keys(provider_name, day_start)
    for candidate in candidates:
        key: ApiKey | None = candidate
        if quota.needs_daily_reset(candidate, now, tz):
            if credentials.roll_over_daily(candidate.id, day_start=day_start, now=now):
                logger.info(
                    "Daily quota window rolled over",
                    extra={
                        "event": "key_daily_rollover",
                        "provider": provider_name,
                        "api_key_id": candidate.id,
                    },
                )
            key = credentials.get_key(candidate.id)
            if key is None:
                continue

        if not quota.is_usable(key, now, tz):
            logger.debug(
                "Skipping unusable key",
                extra={
                    "event": "key_skipped",
                    "provider": provider_name,
                    "api_key_id": key.id,
                    "rate_limited": quota.is_rate_limited(key, now, tz),
                    "axes": quota.exhausted_axes(key, now, tz),
                },
            )
            continue

        if settings.strict_limits and not credentials.reserve_request(key.id, now=now):
            logger.info(
                "Request reservation lost, trying next key",
                extra={
                    "event": "key_reservation_failed",
                    "provider": provider_name,
                    "api_key_id": key.id,
                },
            )
            continue

        return key

    logger.warning(
        "No API key available",
        extra={
            "event": "no_key_available",
            "provider": provider_name,
            "candidates": len(candidates),
        },
    )
    record_event(
        "no_key_available",
        "WARNING",
        provider=provider_name,
        message=f"{len(candidates)} candidate key(s), none usable",
    )
    return None


def pool_summary(
    provider_name: str,
    *,
    now: datetime | None = None,
    policy: QuotaSettings | None = None,
) -> quota.PoolSummary:
    """Read-only budget overview of a provider's pool."""
    now = now or quota.utcnow()
    settings = _quota_settings(policy)
    keys = credentials.list_provider_keys(provider_name)
    return quota.summarize_pool(keys, now, settings.tzinfo)


__all__ = ["pool_summary", "select_key"]
