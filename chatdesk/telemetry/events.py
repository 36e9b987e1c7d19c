"""Audit trail of key-pool and admin activity.

Events are small rows meant for the admin console: a key got demoted, a pool
ran dry, someone added or removed a credential. They are kept for a short
rolling window (today plus ``EVENTS_RETENTION_DAYS - 1`` earlier days) and
pruned opportunistically on every write and read.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from sqlalchemy import delete, select

from chatdesk.logging import get_request_id
from chatdesk.storage.database import session_scope
from chatdesk.storage.models import AuditEvent

logger = logging.getLogger("chatdesk.events")

_EVENTS_ENABLED = os.getenv("EVENTS_ENABLED", "true").lower() in {"1", "true", "yes"}
_RETENTION_DAYS = max(1, int(os.getenv("EVENTS_RETENTION_DAYS", "2")))
_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}
_MESSAGE_LENGTH = 512


def _current_retention_cutoff() -> datetime:
    """Midnight UTC of the oldest retained day."""
    today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return today - timedelta(days=_RETENTION_DAYS - 1)


def _prune(session) -> None:
    session.execute(delete(AuditEvent).where(AuditEvent.ts < _current_retention_cutoff()))


def _load_meta(raw: str | None) -> Dict[str, Any] | str | None:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _to_dict(row: AuditEvent) -> Dict[str, Any]:
    return {
        "id": row.id,
        "timestamp": row.ts.isoformat() if row.ts else None,
        "level": row.level,
        "kind": row.kind,
        "request_id": row.request_id,
        "provider": row.provider,
        "api_key_id": row.api_key_id,
        "model": row.model,
        "error_code": row.error_code,
        "message": row.message,
        "meta": _load_meta(row.meta),
    }


def record_event(
    kind: str,
    level: str,
    *,
    message: str | None = None,
    request_id: str | None = None,
    meta: Dict[str, Any] | None = None,
    provider: str | None = None,
    api_key_id: int | None = None,
    model: str | None = None,
    error_code: str | None = None,
) -> None:
    """Persist one audit event. Storage failures are logged, never raised."""
    if not _EVENTS_ENABLED:
        return

    level_name = level.upper()
    if level_name not in _LEVELS:
        level_name = "INFO"

    event = AuditEvent(
        ts=datetime.now(timezone.utc),
        level=level_name,
        kind=kind,
        request_id=request_id or get_request_id(),
        provider=provider,
        api_key_id=api_key_id,
        model=model,
        error_code=error_code,
        message=message[:_MESSAGE_LENGTH] if message else None,
        meta=json.dumps(meta, ensure_ascii=True, default=str) if meta else None,
    )
    try:
        with session_scope() as session:
            session.add(event)
            _prune(session)
    except Exception:
        logger.exception(
            "Failed to record audit event",
            extra={"event": "audit_persist_error", "kind": kind},
        )


def list_recent_events(
    limit: int = 50,
    kind: str | None = None,
    provider: str | None = None,
) -> List[Dict[str, Any]]:
    """Newest retained events first, optionally narrowed by kind or provider."""
    if not _EVENTS_ENABLED:
        return []

    stmt = select(AuditEvent).where(AuditEvent.ts >= _current_retention_cutoff())
    if kind:
        stmt = stmt.where(AuditEvent.kind == kind)
    if provider:
        stmt = stmt.where(AuditEvent.provider == provider)
    stmt = stmt.order_by(AuditEvent.ts.desc(), AuditEvent.id.desc()).limit(limit)

    with session_scope() as session:
        _prune(session)
        return [_to_dict(row) for row in session.scalars(stmt)]


__all__ = ["list_recent_events", "record_event"]
