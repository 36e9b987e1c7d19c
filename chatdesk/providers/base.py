"""Provider adapter interfaces and the canonical chat representation."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Annotated, Literal, Union

import httpx
from pydantic import BaseModel, Field

from chatdesk.core.config import ProviderConfig
from chatdesk.core.exceptions import (
    ProviderAuthError,
    ProviderUnavailableError,
    UpstreamRateLimitError,
)
from chatdesk.router import usage

from .utils import build_error_log, extract_error_body, is_rate_limit_signal, summarize_error_detail

logger = logging.getLogger("chatdesk.providers")


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    mime_type: str = "image/jpeg"
    data: str  # base64


ContentPart = Annotated[Union[TextPart, ImagePart], Field(discriminator="type")]


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    parts: list[ContentPart]

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    @property
    def has_images(self) -> bool:
        return any(isinstance(part, ImagePart) for part in self.parts)

    @classmethod
    def from_text(cls, role: Literal["user", "assistant"], text: str) -> "ChatMessage":
        return cls(role=role, parts=[TextPart(text=text)])


class ProviderRequest(BaseModel):
    model: str
    system_instruction: str | None = None
    history: list[ChatMessage] = Field(default_factory=list)
    message: ChatMessage


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Citation(BaseModel):
    source: str
    content: str = ""
    url: str | None = None
    start_index: int | None = None
    end_index: int | None = None


class TextDelta(BaseModel):
    type: Literal["chunk"] = "chunk"
    text: str


class StreamDone(BaseModel):
    type: Literal["done"] = "done"
    text: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    citations: list[Citation] = Field(default_factory=list)


StreamEvent = Union[TextDelta, StreamDone]


@dataclass(frozen=True)
class KeyLease:
    """A selected key with its credential decrypted for the duration of one call."""

    key_id: int
    provider_name: str
    secret: str = field(repr=False)


class ProviderAdapter:
    """Abstract provider adapter."""

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        self._base_url = config.base_url.rstrip("/")
        self._timeout = httpx.Timeout(config.timeout_seconds, connect=10.0)

    @property
    def provider_name(self) -> str:
        return self._config.name

    def stream_chat(self, request: ProviderRequest, key: KeyLease) -> AsyncIterator[StreamEvent]:
        """Yield ``TextDelta`` events as text arrives, then exactly one ``StreamDone``."""
        raise NotImplementedError

    def _auth_headers(self, api_key: str) -> dict[str, str]:
        headers = dict(self._config.extra_headers)
        headers[self._config.auth_header] = f"{self._config.auth_prefix}{api_key}"
        return headers

    async def validate_api_key(self, api_key: str) -> None:
        """Check a credential upstream before it is persisted."""
        url = f"{self._base_url}{self._config.models_path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(url, headers=self._auth_headers(api_key))
        except httpx.RequestError as exc:
            raise ProviderUnavailableError(
                self.provider_name, message="Provider request failed"
            ) from exc

        if self._is_auth_failure(response):
            raise ProviderAuthError(self.provider_name)
        if response.is_error:
            detail = summarize_error_detail(extract_error_body(response))
            message = "Provider error"
            if detail:
                message = f"{message}: {detail}"
            raise ProviderUnavailableError(self.provider_name, message=message)

    def _is_auth_failure(self, response: httpx.Response) -> bool:
        return response.status_code in {HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN}

    def _error_for_response(
        self, response: httpx.Response, key: KeyLease
    ) -> ProviderUnavailableError:
        """Classify a failed HTTP response, demoting the key on throttling."""
        body = extract_error_body(response)
        detail = summarize_error_detail(body)
        status = response.status_code

        if is_rate_limit_signal(status, detail):
            error_type = "rate_limit"
        elif self._is_auth_failure(response):
            error_type = "unauthorized"
        else:
            error_type = "http_error"
        logger.warning(
            "Provider call failed",
            extra={
                "event": "provider_http_error",
                "provider": self.provider_name,
                "api_key_id": key.key_id,
                "provider_error": build_error_log(
                    error_type=error_type,
                    message=f"HTTP {status}",
                    status_code=status,
                    response_body=body,
                ),
            },
        )

        if error_type == "rate_limit":
            return self._throttled(key, detail or f"HTTP {status}")
        if error_type == "unauthorized":
            return ProviderAuthError(self.provider_name)
        message = "Provider error"
        if detail:
            message = f"{message}: {detail}"
        return ProviderUnavailableError(self.provider_name, message=message)

    def _error_for_payload(self, payload: dict, key: KeyLease) -> ProviderUnavailableError | None:
        """Classify an error object delivered inside an otherwise successful stream."""
        if "error" not in payload:
            return None
        detail = summarize_error_detail(payload) or "Provider stream error"
        error_obj = payload.get("error")
        code = error_obj.get("code") if isinstance(error_obj, dict) else None
        status = code if isinstance(code, int) else None
        if is_rate_limit_signal(status, detail):
            return self._throttled(key, detail)
        return ProviderUnavailableError(self.provider_name, message=f"Provider error: {detail}")

    def _error_for_transport(
        self, exc: httpx.RequestError, key: KeyLease
    ) -> ProviderUnavailableError:
        if is_rate_limit_signal(None, str(exc)):
            return self._throttled(key, str(exc))
        return ProviderUnavailableError(self.provider_name, message="Provider request failed")

    def _throttled(self, key: KeyLease, detail: str) -> UpstreamRateLimitError:
        try:
            usage.mark_rate_limited(key.key_id, provider_name=self.provider_name, reason=detail)
        except Exception:
            logger.exception(
                "Failed to demote rate-limited key",
                extra={"event": "key_demotion_error", "api_key_id": key.key_id},
            )
        message = "Provider quota exhausted"
        if detail:
            message = f"{message}: {detail}"
        return UpstreamRateLimitError(self.provider_name, key.key_id, message=message)
