"""ORM models for the provider catalog, key pool, conversations and telemetry."""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)

from .database import Base


class AiProvider(Base):
    __tablename__ = "ai_providers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), nullable=False, unique=True)
    display_name = Column(String(100), nullable=False)
    color = Column(String(16))
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=100)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AiModel(Base):
    __tablename__ = "ai_models"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_id = Column(Integer, ForeignKey("ai_providers.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(200), nullable=False, unique=True)
    display_name = Column(String(200), nullable=False)
    description = Column(String(512))
    is_active = Column(Boolean, nullable=False, default=True)


class ApiKey(Base):
    __tablename__ = "api_keys"
    __table_args__ = (
        Index("ix_api_keys_provider_priority", "provider_id", "is_active", "priority"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_id = Column(Integer, ForeignKey("ai_providers.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(String(512))
    # Fernet ciphertext, decrypted only for the duration of a provider call.
    api_key = Column(String(1024), nullable=False)

    is_active = Column(Boolean, nullable=False, default=True)
    is_rate_limited = Column(Boolean, nullable=False, default=False)
    rate_limited_at = Column(DateTime(timezone=True))
    priority = Column(Integer, nullable=False, default=0)

    daily_limit = Column(Integer)
    daily_used = Column(Integer, nullable=False, default=0)
    minute_limit = Column(Integer)
    minute_used = Column(Integer, nullable=False, default=0)
    daily_token_limit = Column(Integer)
    daily_token_used = Column(Integer, nullable=False, default=0)
    minute_token_limit = Column(Integer)
    minute_token_used = Column(Integer, nullable=False, default=0)

    last_reset_at = Column(DateTime(timezone=True), server_default=func.now())
    last_minute_reset_at = Column(DateTime(timezone=True), server_default=func.now())
    last_used_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SystemSettings(Base):
    __tablename__ = "system_settings"

    id = Column(String(16), primary_key=True, default="system")
    default_model = Column(String(200))
    enable_rag = Column(Boolean, nullable=False, default=False)
    enable_long_term_memory = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (Index("ix_messages_conversation_id", "conversation_id", "id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    attachments = Column(Text)
    citations = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class LlmCallLog(Base):
    __tablename__ = "llm_call_logs"
    __table_args__ = (Index("ix_llm_call_logs_created_at", "created_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    request_id = Column(String(64))
    user_id = Column(String(64))
    conversation_id = Column(Integer)
    message_id = Column(Integer)
    provider = Column(String(50))
    model = Column(String(200))
    api_key_id = Column(Integer)
    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    latency_ms = Column(Integer)
    status = Column(String(16), nullable=False)


class ErrorLog(Base):
    __tablename__ = "error_logs"
    __table_args__ = (Index("ix_error_logs_created_at", "created_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    request_id = Column(String(64))
    source = Column(String(64), nullable=False)
    error_type = Column(String(64), nullable=False)
    message = Column(String(512), nullable=False)
    details = Column(Text)
    user_id = Column(String(64))
    api_key_id = Column(Integer)
    model = Column(String(200))


class AuditEvent(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ts = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    level = Column(String(16), nullable=False)
    kind = Column(String(64), nullable=False)
    request_id = Column(String(64))
    provider = Column(String(50))
    api_key_id = Column(Integer)
    model = Column(String(200))
    error_code = Column(String(128))
    message = Column(String(512))
    meta = Column(Text)

    __table_args__ = (
        Index("ix_events_ts", "ts"),
        Index("ix_events_kind_ts", "kind", "ts"),
    )
