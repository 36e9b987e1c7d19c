"""Conversation and message persistence."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, cast

from sqlalchemy import select, update

from .database import session_scope
from .models import Conversation, Message

TITLE_LENGTH = 50


def _encode(payload: Any) -> str | None:
    if not payload:
        return None
    return json.dumps(payload, ensure_ascii=True, default=str)


def decode_json(serialized: str | None) -> Any:
    if not serialized:
        return None
    try:
        return json.loads(serialized)
    except json.JSONDecodeError:
        return None


def get_conversation(conversation_id: int, user_id: str) -> Conversation | None:
    """Return the conversation only if it belongs to ``user_id``."""
    stmt = select(Conversation).where(
        Conversation.id == conversation_id, Conversation.user_id == user_id
    )
    with session_scope() as session:
        return session.scalar(stmt)


def create_conversation(user_id: str, first_message: str) -> Conversation:
    title = " ".join(first_message.split())[:TITLE_LENGTH] or "New conversation"
    conversation = Conversation(user_id=user_id, title=title)
    with session_scope() as session:
        session.add(conversation)
        session.flush()
        session.refresh(conversation)
    return conversation


def touch(conversation_id: int) -> None:
    stmt = (
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(updated_at=datetime.now(timezone.utc))
    )
    with session_scope() as session:
        session.execute(stmt)


def create_message(
    conversation_id: int,
    role: str,
    content: str,
    *,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    total_tokens: int = 0,
    attachments: list[dict[str, Any]] | None = None,
    citations: list[dict[str, Any]] | None = None,
) -> Message:
    message = Message(
        conversation_id=conversation_id,
        role=role,
        content=content,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens,
        attachments=_encode(attachments),
        citations=_encode(citations),
    )
    with session_scope() as session:
        session.add(message)
        session.flush()
        session.refresh(message)
    return message


def recent_messages(conversation_id: int, limit: int) -> list[Message]:
    """The last ``limit`` messages in chronological order."""
    stmt = (
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.id.desc())
        .limit(limit)
    )
    with session_scope() as session:
        rows = cast(list[Message], list(session.scalars(stmt).all()))
    rows.reverse()
    return rows


__all__ = [
    "create_conversation",
    "create_message",
    "decode_json",
    "get_conversation",
    "recent_messages",
    "touch",
]
