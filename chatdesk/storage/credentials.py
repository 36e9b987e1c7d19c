"""Storage helpers for pooled provider API keys.

Counter columns are only ever changed through single-statement SQL updates
(``increment_usage``, ``roll_over_daily``, ``reserve_request``) so that
concurrent requests never lose an increment to a read-modify-write in Python.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, cast

from sqlalchemy import case, delete, false, or_, select, update

from chatdesk.core.encryption import KeyCipher, get_cipher
from chatdesk.router import quota

from .database import session_scope
from .models import AiProvider, ApiKey

# Fields an administrator may edit; usage counters are deliberately absent.
ADMIN_EDITABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "is_active",
        "priority",
        "daily_limit",
        "minute_limit",
        "daily_token_limit",
        "minute_token_limit",
    }
)

# Counter updates never need the identity map refreshed; rows are re-read.
_NO_SYNC = {"synchronize_session": False}


def create_key(
    provider_id: int,
    *,
    name: str,
    secret: str,
    description: str | None = None,
    priority: int = 0,
    daily_limit: int | None = None,
    minute_limit: int | None = None,
    daily_token_limit: int | None = None,
    minute_token_limit: int | None = None,
    now: datetime | None = None,
    cipher: KeyCipher | None = None,
) -> ApiKey:
    """Encrypt ``secret`` and persist a new key for the provider."""
    now = now or quota.utcnow()
    cipher = cipher or get_cipher()
    key = ApiKey(
        provider_id=provider_id,
        name=name,
        description=description,
        api_key=cipher.encrypt(secret),
        is_active=True,
        is_rate_limited=False,
        priority=priority,
        daily_limit=daily_limit,
        daily_used=0,
        minute_limit=minute_limit,
        minute_used=0,
        daily_token_limit=daily_token_limit,
        daily_token_used=0,
        minute_token_limit=minute_token_limit,
        minute_token_used=0,
        last_reset_at=now,
        last_minute_reset_at=now,
        created_at=now,
    )
    with session_scope() as session:
        session.add(key)
        session.flush()
        session.refresh(key)
    return key


def get_key(key_id: int) -> ApiKey | None:
    with session_scope() as session:
        return session.get(ApiKey, key_id)


def list_keys(provider_id: int | None = None) -> list[ApiKey]:
    """Return keys in selection order, optionally restricted to one provider."""
    stmt = select(ApiKey).order_by(
        ApiKey.provider_id, ApiKey.priority.desc(), ApiKey.created_at.desc(), ApiKey.id.desc()
    )
    if provider_id is not None:
        stmt = stmt.where(ApiKey.provider_id == provider_id)
    with session_scope() as session:
        rows = session.scalars(stmt).all()
        return cast(list[ApiKey], list(rows))


def list_candidate_keys(provider_name: str, day_start: datetime) -> list[ApiKey]:
    """Active keys of one provider, highest priority first.

    Rate-limited keys are included only when their daily window is stale, so
    the selector gets a chance to roll them over.
    """
    stmt = (
        select(ApiKey)
        .join(AiProvider, AiProvider.id == ApiKey.provider_id)
        .where(AiProvider.name == provider_name)
        .where(ApiKey.is_active.is_(True))
        .where(
            or_(
                ApiKey.is_rate_limited.is_(False),
                ApiKey.last_reset_at.is_(None),
                ApiKey.last_reset_at < day_start,
            )
        )
        .order_by(ApiKey.priority.desc(), ApiKey.created_at.desc(), ApiKey.id.desc())
    )
    with session_scope() as session:
        rows = session.scalars(stmt).all()
        return cast(list[ApiKey], list(rows))


def list_provider_keys(provider_name: str) -> list[ApiKey]:
    stmt = (
        select(ApiKey)
        .join(AiProvider, AiProvider.id == ApiKey.provider_id)
        .where(AiProvider.name == provider_name)
        .order_by(ApiKey.priority.desc(), ApiKey.created_at.desc(), ApiKey.id.desc())
    )
    with session_scope() as session:
        rows = session.scalars(stmt).all()
        return cast(list[ApiKey], list(rows))


def set_fields(key_id: int, **values: Any) -> bool:
    """Set plain column values on one key; returns False if it does not exist."""
    if not values:
        return get_key(key_id) is not None
    with session_scope() as session:
        result = session.execute(update(ApiKey).where(ApiKey.id == key_id).values(**values))
        return result.rowcount > 0


def update_key(key_id: int, **fields: Any) -> ApiKey | None:
    """Apply administrator edits (limits, priority, flags, metadata)."""
    unknown = set(fields) - ADMIN_EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")
    if not set_fields(key_id, **fields):
        return None
    return get_key(key_id)


def delete_key(key_id: int) -> bool:
    with session_scope() as session:
        result = session.execute(delete(ApiKey).where(ApiKey.id == key_id))
        return result.rowcount > 0


def _minute_window_stale(minute_start: datetime):
    return or_(
        ApiKey.last_minute_reset_at.is_(None),
        ApiKey.last_minute_reset_at < minute_start,
    )


def increment_usage(key_id: int, *, requests: int, tokens: int, now: datetime) -> bool:
    """Atomically add one call's cost, lazily restarting the minute window."""
    stale = _minute_window_stale(quota.start_of_minute(now))
    stmt = (
        update(ApiKey)
        .where(ApiKey.id == key_id)
        # Timestamp last: some engines evaluate SET assignments left to right.
        .ordered_values(
            (ApiKey.daily_used, ApiKey.daily_used + requests),
            (ApiKey.daily_token_used, ApiKey.daily_token_used + tokens),
            (ApiKey.minute_used, case((stale, requests), else_=ApiKey.minute_used + requests)),
            (
                ApiKey.minute_token_used,
                case((stale, tokens), else_=ApiKey.minute_token_used + tokens),
            ),
            (ApiKey.last_used_at, now),
            (
                ApiKey.last_minute_reset_at,
                case((stale, now), else_=ApiKey.last_minute_reset_at),
            ),
        )
    )
    with session_scope() as session:
        result = session.execute(stmt, execution_options=_NO_SYNC)
        return result.rowcount > 0


def roll_over_daily(key_id: int, *, day_start: datetime, now: datetime) -> bool:
    """Zero a key's counters if its daily window is still stale.

    The ``last_reset_at < day_start`` guard makes this a compare-and-set: a
    second call on the same day (or a concurrent one) matches no row.
    Demotions that happened today survive the rollover.
    """
    demoted_before_today = or_(
        ApiKey.rate_limited_at.is_(None), ApiKey.rate_limited_at < day_start
    )
    stmt = (
        update(ApiKey)
        .where(ApiKey.id == key_id)
        .where(or_(ApiKey.last_reset_at.is_(None), ApiKey.last_reset_at < day_start))
        .values(
            daily_used=0,
            minute_used=0,
            daily_token_used=0,
            minute_token_used=0,
            is_rate_limited=case((demoted_before_today, false()), else_=ApiKey.is_rate_limited),
            last_reset_at=now,
            last_minute_reset_at=now,
        )
    )
    with session_scope() as session:
        result = session.execute(stmt, execution_options=_NO_SYNC)
        return result.rowcount > 0


def reserve_request(key_id: int, *, now: datetime) -> bool:
    """Conditionally claim one request on a key (strict-limit mode).

    Fails, leaving the row untouched, when the claim would exceed the daily
    or minute request limit.
    """
    stale = _minute_window_stale(quota.start_of_minute(now))
    stmt = (
        update(ApiKey)
        .where(ApiKey.id == key_id)
        .where(or_(ApiKey.daily_limit.is_(None), ApiKey.daily_used < ApiKey.daily_limit))
        .where(
            or_(ApiKey.minute_limit.is_(None), stale, ApiKey.minute_used < ApiKey.minute_limit)
        )
        .ordered_values(
            (ApiKey.daily_used, ApiKey.daily_used + 1),
            (ApiKey.minute_used, case((stale, 1), else_=ApiKey.minute_used + 1)),
            (ApiKey.minute_token_used, case((stale, 0), else_=ApiKey.minute_token_used)),
            (
                ApiKey.last_minute_reset_at,
                case((stale, now), else_=ApiKey.last_minute_reset_at),
            ),
        )
    )
    with session_scope() as session:
        result = session.execute(stmt, execution_options=_NO_SYNC)
        return result.rowcount > 0


def reveal_secret(key: ApiKey, cipher: KeyCipher | None = None) -> str:
    """Decrypt a key's credential for immediate use; legacy plaintext passes through."""
    cipher = cipher or get_cipher()
    stored = cast(str, key.api_key)
    if cipher.looks_encrypted(stored):
        return cipher.decrypt(stored)
    return stored


__all__ = [
    "ADMIN_EDITABLE_FIELDS",
    "create_key",
    "delete_key",
    "get_key",
    "increment_usage",
    "list_candidate_keys",
    "list_keys",
    "list_provider_keys",
    "reserve_request",
    "reveal_secret",
    "roll_over_daily",
    "set_fields",
    "update_key",
]
