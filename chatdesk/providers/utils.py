"""Helper utilities for provider adapters."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator
from typing import Any

import httpx

logger = logging.getLogger("chatdesk.providers")

MAX_ERROR_DETAIL_LENGTH = 300

_RATE_LIMIT_PATTERN = re.compile(
    r"(?<!\d)429(?!\d)"
    r"|resource_exhausted"
    r"|rate[ _]limit"
    r"|insufficient_quota"
    r"|\bquota\b"
    r"|too many requests",
    re.IGNORECASE,
)

# Raised when the consumer side of the SSE stream is gone.
_CONSUMER_CLOSED_MARKERS = ("controller is already closed", "controller already closed")


def extract_error_body(response: httpx.Response) -> Any:
    """Return structured error details if available, else a trimmed text body."""

    try:
        return response.json()
    except ValueError:
        text = getattr(response, "text", None)
        if text:
            stripped = text.strip()
            if stripped:
                return stripped
        return None


def summarize_error_detail(body: Any) -> str | None:
    """Flatten a provider error body into one trimmed line."""

    detail: str | None = None
    if isinstance(body, dict):
        error_obj = body.get("error")
        if isinstance(error_obj, dict):
            parts = [
                part.strip()
                for part in (error_obj.get("status"), error_obj.get("code"), error_obj.get("message"))
                if isinstance(part, str) and part.strip()
            ]
            if parts:
                detail = " - ".join(parts)
            elif error_obj:
                detail = str(error_obj)
        elif isinstance(error_obj, str):
            detail = error_obj
        elif isinstance(body.get("message"), str):
            detail = body["message"]
        elif body:
            detail = str(body)
    elif isinstance(body, list) and body:
        return summarize_error_detail(body[0])
    elif body:
        detail = str(body)

    if detail:
        compact = " ".join(detail.split())
        if len(compact) > MAX_ERROR_DETAIL_LENGTH:
            compact = f"{compact[: MAX_ERROR_DETAIL_LENGTH - 3]}..."
        return compact
    return None


def is_rate_limit_signal(status_code: int | None, detail: str | None) -> bool:
    """Whether an upstream failure means the key is throttled or out of quota."""
    if status_code == httpx.codes.TOO_MANY_REQUESTS:
        return True
    if not detail:
        return False
    return _RATE_LIMIT_PATTERN.search(detail) is not None


def is_stream_closed_error(exc: BaseException) -> bool:
    """Whether ``exc`` only says the consumer already went away."""
    lowered = str(exc).lower()
    return any(marker in lowered for marker in _CONSUMER_CLOSED_MARKERS)


async def iter_sse_payloads(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """Decode ``data:`` lines of a server-sent event stream into JSON objects."""
    async for line in lines:
        if not line or not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if not data or data == "[DONE]":
            continue
        try:
            decoded = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable stream line", extra={"line": data[:200]})
            continue
        if isinstance(decoded, dict):
            yield decoded


def build_error_log(
    *,
    error_type: str,
    message: str,
    status_code: int | None = None,
    response_body: Any | None = None,
) -> dict[str, Any]:
    """Assemble a consistent provider error log payload."""

    payload: dict[str, Any] = {
        "error": {
            "type": error_type,
            "message": message,
        }
    }
    if status_code is not None:
        payload["error"]["status_code"] = status_code
    if response_body is not None:
        payload["response"] = response_body
    return payload


__all__ = [
    "build_error_log",
    "extract_error_body",
    "is_rate_limit_signal",
    "is_stream_closed_error",
    "iter_sse_payloads",
    "summarize_error_detail",
]
