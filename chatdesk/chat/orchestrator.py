"""Chat request lifecycle: resolve, select a key, stream, account."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from chatdesk.core.config import AppConfig, load_config
from chatdesk.core.exceptions import (
    ChatRequestError,
    ConversationNotFoundError,
    ModelUnavailableError,
    NoKeyAvailableError,
    ProviderUnavailableError,
    UpstreamRateLimitError,
)
from chatdesk.providers.base import (
    ChatMessage,
    Citation,
    ContentPart,
    ImagePart,
    KeyLease,
    ProviderRequest,
    StreamDone,
    TextDelta,
    TextPart,
    TokenUsage,
)
from chatdesk.providers.registry import ProviderRegistry, registry as default_registry
from chatdesk.providers.utils import is_rate_limit_signal, is_stream_closed_error
from chatdesk.router import selector, usage
from chatdesk.storage import call_logs, catalog, conversations, credentials
from chatdesk.storage.catalog import ResolvedModel

from .context import (
    KNOWLEDGE_RESULTS,
    KnowledgeChunk,
    KnowledgeSearch,
    MemoryProvider,
    build_system_instruction,
)

logger = logging.getLogger("chatdesk.chat")

BUSY_MESSAGE = (
    "The chat service is temporarily busy because of heavy usage. Please try again shortly."
)
GENERIC_ERROR_MESSAGE = "Something went wrong while sending your message."


class ChatState(str, Enum):
    KEY_SELECTED = "key_selected"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class Attachment(BaseModel):
    """An uploaded file, already loaded: base64 data for images, text for documents."""

    filename: str
    kind: Literal["image", "document"]
    mime_type: str | None = None
    content: str

    def describe(self) -> dict[str, Any]:
        return {"filename": self.filename, "kind": self.kind, "mime_type": self.mime_type}


class ChatRequest(BaseModel):
    user_id: str
    content: str = ""
    conversation_id: int | None = None
    model: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    is_retry: bool = False


class ChatEvent(BaseModel):
    type: Literal["start", "chunk", "done", "error"]
    conversation_id: int | None = None
    user_message_id: int | None = None
    content: str | None = None
    message_id: int | None = None
    tokens: TokenUsage | None = None
    citations: list[Citation] | None = None
    error: str | None = None

    def to_sse(self) -> str:
        payload = self.model_dump(exclude_none=True)
        return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


@dataclass
class ChatSession:
    request: ChatRequest
    model: ResolvedModel
    key: KeyLease
    conversation_id: int
    history: list[ChatMessage]
    state: ChatState = ChatState.KEY_SELECTED
    started_at: float = field(default_factory=time.perf_counter)

    @property
    def provider_name(self) -> str:
        return self.model.provider_name


class ChatOrchestrator:
    """Drives one chat request from validation to the final ``done``/``error`` event."""

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        providers: ProviderRegistry | None = None,
        knowledge: KnowledgeSearch | None = None,
        memory: MemoryProvider | None = None,
    ) -> None:
        self._config = config or load_config()
        self._providers = providers or default_registry
        self._knowledge = knowledge
        self._memory = memory

    def prepare(self, request: ChatRequest) -> ChatSession:
        """Validate the request and bind it to a model, conversation and key.

        Raises a ``ChatRequestError`` subclass when the request cannot be
        served; nothing is streamed in that case.
        """
        content = request.content.strip() if request.content else ""
        if not content:
            raise ChatRequestError("Please enter a message")

        resolved = catalog.resolve_model(request.model)
        if resolved is None:
            raise ModelUnavailableError()

        existing = None
        if request.conversation_id is not None:
            existing = conversations.get_conversation(request.conversation_id, request.user_id)
            if existing is None:
                raise ConversationNotFoundError(request.conversation_id)

        key = selector.select_key(resolved.provider_name, policy=self._config.quota)
        if key is None:
            call_logs.record_error_log(
                call_logs.NO_KEY_AVAILABLE,
                f"No API key available for provider {resolved.provider_name}",
                model=resolved.model_name,
                user_id=request.user_id,
            )
            raise NoKeyAvailableError(resolved.provider_name)
        lease = KeyLease(
            key_id=key.id,
            provider_name=resolved.provider_name,
            secret=credentials.reveal_secret(key),
        )

        if existing is not None:
            conversation_id = existing.id
            history = self._load_history(existing.id, request)
        else:
            conversation_id = conversations.create_conversation(request.user_id, content).id
            history = []

        logger.info(
            "Chat request accepted",
            extra={
                "event": "chat_key_selected",
                "provider": resolved.provider_name,
                "model": resolved.model_name,
                "api_key_id": key.id,
                "conversation_id": conversation_id,
            },
        )
        return ChatSession(
            request=request,
            model=resolved,
            key=lease,
            conversation_id=conversation_id,
            history=history,
        )

    async def stream(self, session: ChatSession) -> AsyncIterator[ChatEvent]:
        """Yield ``start``, live ``chunk`` events, then ``done`` or ``error``."""
        request = session.request
        session.state = ChatState.STREAMING

        user_message_id = None
        if not request.is_retry:
            user_message = conversations.create_message(
                session.conversation_id,
                "user",
                request.content,
                attachments=[attachment.describe() for attachment in request.attachments],
            )
            user_message_id = user_message.id
        yield ChatEvent(
            type="start",
            conversation_id=session.conversation_id,
            user_message_id=user_message_id,
        )

        try:
            provider_request = await self._build_provider_request(session)
            adapter = self._providers.get_adapter(session.provider_name)

            done: StreamDone | None = None
            async for event in adapter.stream_chat(provider_request, session.key):
                if isinstance(event, TextDelta):
                    yield ChatEvent(type="chunk", content=event.text)
                elif isinstance(event, StreamDone):
                    done = event
            if done is None:
                raise RuntimeError("Provider stream ended without a completion")

            yield self._complete(session, done)
        except (GeneratorExit, asyncio.CancelledError):
            # The client went away; nothing is logged or emitted.
            session.state = ChatState.FAILED
            raise
        except Exception as exc:
            session.state = ChatState.FAILED
            if not isinstance(exc, ProviderUnavailableError) and is_stream_closed_error(exc):
                return
            yield self._fail(session, exc)

    async def _build_provider_request(self, session: ChatSession) -> ProviderRequest:
        request = session.request
        settings = catalog.get_settings()

        memory_context = ""
        if self._memory is not None and settings["enable_long_term_memory"]:
            try:
                memory_context = await self._memory.context_for(request.user_id)
            except Exception:
                logger.exception("Failed to load memory context", extra={"event": "memory_error"})

        knowledge: list[KnowledgeChunk] = []
        if self._knowledge is not None and settings["enable_rag"]:
            try:
                knowledge = list(await self._knowledge.search(request.content, KNOWLEDGE_RESULTS))
            except Exception:
                logger.exception("Knowledge search failed", extra={"event": "knowledge_error"})

        return ProviderRequest(
            model=session.model.model_name,
            system_instruction=build_system_instruction(
                self._config.system_instruction,
                memory_context=memory_context,
                knowledge=knowledge,
            ),
            history=session.history,
            message=ChatMessage(role="user", parts=self._user_parts(request)),
        )

    def _user_parts(self, request: ChatRequest) -> list[ContentPart]:
        parts: list[ContentPart] = []
        documents = ""
        for attachment in request.attachments:
            if attachment.kind == "image":
                parts.append(
                    ImagePart(mime_type=attachment.mime_type or "image/jpeg", data=attachment.content)
                )
            else:
                documents += f"\n\n--- Document: {attachment.filename} ---\n{attachment.content}"

        text = request.content
        if documents:
            text = f"{documents}\n\n---\n\nQuestion: {request.content}"
        parts.append(TextPart(text=text))
        return parts

    def _load_history(self, conversation_id: int, request: ChatRequest) -> list[ChatMessage]:
        rows = conversations.recent_messages(conversation_id, self._config.history_limit)
        history = [
            ChatMessage.from_text("assistant" if row.role == "assistant" else "user", row.content)
            for row in rows
        ]
        # A retried message is already stored; it is resent as the new turn.
        if request.is_retry and history and history[-1].role == "user":
            history.pop()
        return history

    def _complete(self, session: ChatSession, done: StreamDone) -> ChatEvent:
        request = session.request
        citations = list(done.citations)
        if done.text:
            citations.extend(Citation(source=item.filename) for item in request.attachments)

        tokens = done.usage
        assistant = conversations.create_message(
            session.conversation_id,
            "assistant",
            done.text,
            prompt_tokens=tokens.prompt_tokens,
            completion_tokens=tokens.completion_tokens,
            total_tokens=tokens.total_tokens,
            citations=[citation.model_dump(exclude_none=True) for citation in citations],
        )
        conversations.touch(session.conversation_id)

        try:
            usage.record_usage(
                session.key.key_id,
                tokens.total_tokens,
                count_request=not self._config.quota.strict_limits,
            )
        except Exception:
            logger.exception(
                "Failed to record key usage",
                extra={"event": "usage_record_error", "api_key_id": session.key.key_id},
            )

        call_logs.record_llm_call(
            provider=session.provider_name,
            model=session.model.model_name,
            status="SUCCESS",
            api_key_id=session.key.key_id,
            conversation_id=session.conversation_id,
            message_id=assistant.id,
            prompt_tokens=tokens.prompt_tokens,
            completion_tokens=tokens.completion_tokens,
            total_tokens=tokens.total_tokens,
            latency_ms=self._latency_ms(session),
            user_id=request.user_id,
        )
        session.state = ChatState.COMPLETED
        logger.info(
            "Chat completed",
            extra={
                "event": "chat_completed",
                "provider": session.provider_name,
                "model": session.model.model_name,
                "api_key_id": session.key.key_id,
                "total_tokens": tokens.total_tokens,
            },
        )
        return ChatEvent(
            type="done",
            message_id=assistant.id,
            tokens=tokens,
            citations=citations or None,
        )

    def _fail(self, session: ChatSession, exc: Exception) -> ChatEvent:
        detail = str(exc)
        rate_limited = isinstance(exc, UpstreamRateLimitError) or is_rate_limit_signal(None, detail)

        if rate_limited and not isinstance(exc, UpstreamRateLimitError):
            # Adapters demote on HTTP signals; anything else reporting throttling is demoted here.
            try:
                usage.mark_rate_limited(
                    session.key.key_id, provider_name=session.provider_name, reason=detail[:300]
                )
            except Exception:
                logger.exception(
                    "Failed to demote rate-limited key",
                    extra={"event": "key_demotion_error", "api_key_id": session.key.key_id},
                )

        if rate_limited:
            error_type = call_logs.RATE_LIMIT
            message = "API rate limit exceeded (429)"
            user_message = BUSY_MESSAGE
            logger.warning(
                "Chat failed on upstream throttling",
                extra={"event": "chat_rate_limited", "api_key_id": session.key.key_id},
            )
        else:
            error_type = call_logs.STREAMING_ERROR
            message = detail or type(exc).__name__
            user_message = GENERIC_ERROR_MESSAGE
            logger.error(
                "Chat streaming failed",
                exc_info=exc,
                extra={"event": "chat_stream_error", "api_key_id": session.key.key_id},
            )

        call_logs.record_error_log(
            error_type,
            message,
            details=detail,
            api_key_id=session.key.key_id,
            model=session.model.model_name,
            user_id=session.request.user_id,
        )
        call_logs.record_llm_call(
            provider=session.provider_name,
            model=session.model.model_name,
            status="FAILED",
            api_key_id=session.key.key_id,
            conversation_id=session.conversation_id,
            latency_ms=self._latency_ms(session),
            user_id=session.request.user_id,
        )
        return ChatEvent(type="error", error=user_message)

    @staticmethod
    def _latency_ms(session: ChatSession) -> int:
        return int((time.perf_counter() - session.started_at) * 1000)


__all__ = [
    "Attachment",
    "ChatEvent",
    "ChatOrchestrator",
    "ChatRequest",
    "ChatSession",
    "ChatState",
]
