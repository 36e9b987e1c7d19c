"""Gemini provider adapter."""

from __future__ import annotations

from collections.abc import AsyncIterator
from http import HTTPStatus
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


class GeminiProvider(ProviderAdapter):
    """Streams ``streamGenerateContent`` over server-sent events."""

    def _auth_headers(self, api_key: str) -> dict[str, str]:
        return {"x-goog-api-key": api_key}

    def _is_auth_failure(self, response: httpx.Response) -> bool:
        if super()._is_auth_failure(response):
            return True
        # Gemini answers a malformed or revoked key with 400 API_KEY_INVALID.
        return response.status_code == HTTPStatus.BAD_REQUEST and "API_KEY_INVALID" in (
            response.text or ""
        )

    async def stream_chat(
        self, request: ProviderRequest, key: KeyLease
    ) -> AsyncIterator[StreamEvent]:
        model_slug = request.model.removeprefix("models/")
        url = f"{self._base_url}{self._config.chat_path.format(model=model_slug)}"
        headers = {**self._auth_headers(key.secret), "Content-Type": "application/json"}
        payload = self._build_payload(request)

        text_parts: list[str] = []
        usage = TokenUsage()
        candidate: dict[str, Any] = {}

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                async with client.stream(
                    "POST", url, params={"alt": "sse"}, json=payload, headers=headers
                ) as response:
                    if response.is_error:
                        await response.aread()
                        raise self._error_for_response(response, key)

                    async for data in iter_sse_payloads(response.aiter_lines()):
                        error = self._error_for_payload(data, key)
                        if error is not None:
                            raise error

                        current = self._select_candidate(data.get("candidates"))
                        if current:
                            candidate = {**candidate, **current}
                            text = self._candidate_text(current)
                            if text:
                                text_parts.append(text)
                                yield TextDelta(text=text)

                        usage = self._normalize_usage(data.get("usageMetadata")) or usage
        except httpx.RequestError as exc:
            raise self._error_for_transport(exc, key) from exc

        full_text = "".join(text_parts)
        yield StreamDone(text=full_text, usage=usage, citations=self._extract_citations(candidate))

    def _build_payload(self, request: ProviderRequest) -> dict[str, Any]:
        contents: list[dict[str, Any]] = []
        for message in request.history:
            parts = self._convert_parts(message)
            if parts:
                contents.append(
                    {"role": "model" if message.role == "assistant" else "user", "parts": parts}
                )
        contents.append({"role": "user", "parts": self._convert_parts(request.message)})

        payload: dict[str, Any] = {"contents": contents}
        if request.system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": request.system_instruction}]}
        if self._config.grounding:
            payload["tools"] = [{"googleSearch": {}}]
        return payload

    def _convert_parts(self, message: ChatMessage) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        for part in message.parts:
            if isinstance(part, ImagePart):
                parts.append({"inlineData": {"mimeType": part.mime_type, "data": part.data}})
            elif isinstance(part, TextPart) and part.text:
                parts.append({"text": part.text})
        return parts

    def _select_candidate(self, candidates: Any) -> dict[str, Any] | None:
        if not isinstance(candidates, list):
            return None
        for candidate in candidates:
            if isinstance(candidate, dict):
                return candidate
        return None

    def _candidate_text(self, candidate: dict[str, Any]) -> str:
        parts = (candidate.get("content") or {}).get("parts") or []
        return "".join(
            part.get("text", "")
            for part in parts
            if isinstance(part, dict) and not part.get("thought")
        )

    def _normalize_usage(self, usage: Any) -> TokenUsage | None:
        if not usage or not isinstance(usage, dict):
            return None
        prompt = usage.get("promptTokenCount")
        completion = usage.get("candidatesTokenCount")
        total = usage.get("totalTokenCount")

        prompt = prompt if isinstance(prompt, int) else 0
        completion = completion if isinstance(completion, int) else 0
        if not isinstance(total, int):
            total = prompt + completion
        return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def _extract_citations(self, candidate: dict[str, Any]) -> list[Citation]:
        citations: list[Citation] = []

        grounding = candidate.get("groundingMetadata") or {}
        chunks = grounding.get("groundingChunks") or []
        supports = grounding.get("groundingSupports") or []
        for index, chunk in enumerate(chunks):
            web = chunk.get("web") if isinstance(chunk, dict) else None
            if not isinstance(web, dict):
                continue
            support = next(
                (
                    item
                    for item in supports
                    if isinstance(item, dict) and index in (item.get("groundingChunkIndices") or [])
                ),
                None,
            )
            segment = (support or {}).get("segment") or {}
            citations.append(
                Citation(
                    source=web.get("title") or f"Source {index + 1}",
                    url=web.get("uri"),
                    start_index=segment.get("startIndex"),
                    end_index=segment.get("endIndex"),
                )
            )

        sources = (candidate.get("citationMetadata") or {}).get("citationSources") or []
        for source in sources:
            if not isinstance(source, dict) or not source.get("uri"):
                continue
            citations.append(
                Citation(
                    source=source.get("title") or source["uri"],
                    url=source["uri"],
                    start_index=source.get("startIndex"),
                    end_index=source.get("endIndex"),
                )
            )
        return citations
