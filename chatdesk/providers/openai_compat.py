"""Adapter for OpenAI-compatible chat completion endpoints (OpenAI, Grok, DeepSeek, Claude)."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import httpx

from .base import (
    ChatMessage,
    Citation,
    ImagePart,
    KeyLease,
    ProviderAdapter,
    ProviderRequest,
    StreamDone,
    StreamEvent,
    TextDelta,
    TextPart,
    TokenUsage,
)
from .utils import iter_sse_payloads


class OpenAICompatibleProvider(ProviderAdapter):
    async def stream_chat(
        self, request: ProviderRequest, key: KeyLease
    ) -> AsyncIterator[StreamEvent]:
        url = f"{self._base_url}{self._config.chat_path}"
        headers = {**self._auth_headers(key.secret), "Content-Type": "application/json"}
        payload = self._build_payload(request)

        text_parts: list[str] = []
        usage = TokenUsage()
        citations: list[Citation] = []

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                async with client.stream("POST", url, json=payload, headers=headers) as response:
                    if response.is_error:
                        await response.aread()
                        raise self._error_for_response(response, key)

                    async for data in iter_sse_payloads(response.aiter_lines()):
                        error = self._error_for_payload(data, key)
                        if error is not None:
                            raise error

                        text = self._delta_text(data)
                        if text:
                            text_parts.append(text)
                            yield TextDelta(text=text)

                        usage = self._normalize_usage(data.get("usage")) or usage
                        citations = self._extract_citations(data) or citations
        except httpx.RequestError as exc:
            raise self._error_for_transport(exc, key) from exc

        yield StreamDone(text="".join(text_parts), usage=usage, citations=citations)

    def _build_payload(self, request: ProviderRequest) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if request.system_instruction:
            messages.append({"role": "system", "content": request.system_instruction})
        for message in [*request.history, request.message]:
            messages.append({"role": message.role, "content": self._convert_content(message)})

        return {
            "model": request.model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

    def _convert_content(self, message: ChatMessage) -> str | list[dict[str, Any]]:
        if not message.has_images:
            return message.text

        content: list[dict[str, Any]] = []
        for part in message.parts:
            if isinstance(part, ImagePart):
                content.append(
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{part.mime_type};base64,{part.data}"},
                    }
                )
            elif isinstance(part, TextPart) and part.text:
                content.append({"type": "text", "text": part.text})
        return content

    def _delta_text(self, data: dict[str, Any]) -> str:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            return ""
        choice = choices[0]
        if not isinstance(choice, dict):
            return ""
        delta = choice.get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        return content if isinstance(content, str) else ""

    def _normalize_usage(self, usage: Any) -> TokenUsage | None:
        if not usage or not isinstance(usage, dict):
            return None
        prompt = usage.get("prompt_tokens")
        completion = usage.get("completion_tokens")
        total = usage.get("total_tokens")

        prompt = prompt if isinstance(prompt, int) else 0
        completion = completion if isinstance(completion, int) else 0
        if not isinstance(total, int):
            total = prompt + completion
        return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def _extract_citations(self, data: dict[str, Any]) -> list[Citation]:
        # Search-enabled models (Grok, Perplexity-style gateways) return a flat URL list.
        urls = data.get("citations")
        if not isinstance(urls, list):
            return []
        return [
            Citation(source=url, url=url) for url in urls if isinstance(url, str) and url
        ]
