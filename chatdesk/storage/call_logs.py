"""LLM call and error log storage helpers."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import select

from chatdesk.logging import get_request_id, get_user_id

from .database import session_scope
from .models import ErrorLog, LlmCallLog

logger = logging.getLogger("chatdesk.call_logs")

# Error type codes stored on ErrorLog rows.
RATE_LIMIT = "RATE_LIMIT"
STREAMING_ERROR = "STREAMING_ERROR"
GENERAL_ERROR = "GENERAL_ERROR"
NO_KEY_AVAILABLE = "NO_KEY_AVAILABLE"
FETCH_MODELS_ERROR = "FETCH_MODELS_ERROR"


def _encode(payload: Any) -> str | None:
    if payload is None:
        return None
    try:
        return json.dumps(payload, ensure_ascii=True, default=str)
    except (TypeError, ValueError):
        logger.debug("Unable to encode error details", exc_info=True)
        return None


def _decode(serialized: str | None) -> Any:
    if not serialized:
        return None
    try:
        return json.loads(serialized)
    except json.JSONDecodeError:
        return serialized


def record_llm_call(
    *,
    provider: str,
    model: str,
    status: str,
    api_key_id: int | None = None,
    conversation_id: int | None = None,
    message_id: int | None = None,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    total_tokens: int = 0,
    latency_ms: int | None = None,
    user_id: str | None = None,
) -> None:
    """Persist one provider call outcome; failures are only logged."""
    entry = LlmCallLog(
        request_id=get_request_id(),
        user_id=user_id or get_user_id(),
        conversation_id=conversation_id,
        message_id=message_id,
        provider=provider,
        model=model,
        api_key_id=api_key_id,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens,
        latency_ms=latency_ms,
        status=status,
    )
    try:
        with session_scope() as session:
            session.add(entry)
    except Exception:
        logger.exception(
            "Failed to persist LLM call log",
            extra={"event": "call_log_persist_error", "provider": provider, "model": model},
        )


def record_error_log(
    error_type: str,
    message: str,
    *,
    source: str = "chat",
    details: Any = None,
    api_key_id: int | None = None,
    model: str | None = None,
    user_id: str | None = None,
) -> None:
    """Persist an error row tagged with one of the error type codes."""
    entry = ErrorLog(
        request_id=get_request_id(),
        source=source,
        error_type=error_type,
        message=message[:512],
        details=_encode(details),
        user_id=user_id or get_user_id(),
        api_key_id=api_key_id,
        model=model,
    )
    try:
        with session_scope() as session:
            session.add(entry)
    except Exception:
        logger.exception(
            "Failed to persist error log",
            extra={"event": "error_log_persist_error", "error_type": error_type},
        )


def list_call_logs(limit: int = 100) -> list[dict[str, Any]]:
    stmt = select(LlmCallLog).order_by(LlmCallLog.id.desc()).limit(limit)
    with session_scope() as session:
        rows = session.scalars(stmt).all()
        return [
            {
                "id": row.id,
                "created_at": row.created_at.isoformat() if row.created_at else None,
                "request_id": row.request_id,
                "user_id": row.user_id,
                "conversation_id": row.conversation_id,
                "message_id": row.message_id,
                "provider": row.provider,
                "model": row.model,
                "api_key_id": row.api_key_id,
                "prompt_tokens": row.prompt_tokens,
                "completion_tokens": row.completion_tokens,
                "total_tokens": row.total_tokens,
                "latency_ms": row.latency_ms,
                "status": row.status,
            }
            for row in rows
        ]


def list_error_logs(limit: int = 100, error_type: str | None = None) -> list[dict[str, Any]]:
    stmt = select(ErrorLog).order_by(ErrorLog.id.desc()).limit(limit)
    if error_type:
        stmt = stmt.where(ErrorLog.error_type == error_type)
    with session_scope() as session:
        rows = session.scalars(stmt).all()
        return [
            {
                "id": row.id,
                "created_at": row.created_at.isoformat() if row.created_at else None,
                "request_id": row.request_id,
                "source": row.source,
                "error_type": row.error_type,
                "message": row.message,
                "details": _decode(row.details),
                "user_id": row.user_id,
                "api_key_id": row.api_key_id,
                "model": row.model,
            }
            for row in rows
        ]


__all__ = [
    "FETCH_MODELS_ERROR",
    "GENERAL_ERROR",
    "NO_KEY_AVAILABLE",
    "RATE_LIMIT",
    "STREAMING_ERROR",
    "list_call_logs",
    "list_error_logs",
    "record_error_log",
    "record_llm_call",
]
