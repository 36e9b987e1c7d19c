"""End-user chat routes: model listing, quota check and the streaming chat endpoint."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Annotated, AsyncIterator

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from chatdesk.chat.orchestrator import Attachment, ChatOrchestrator, ChatRequest, ChatSession
from chatdesk.core.exceptions import ChatRequestError
from chatdesk.router import selector
from chatdesk.storage import call_logs, catalog

router = APIRouter(prefix="/api/chat")
logger = logging.getLogger("chatdesk.api.chat")

_orchestrator: ChatOrchestrator | None = None


def get_orchestrator() -> ChatOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ChatOrchestrator()
    return _orchestrator


def current_user_id(
    user_id: Annotated[str | None, Header(alias="x-user-id")] = None,
) -> str:
    if not user_id:
        raise HTTPException(status_code=401, detail="Not signed in")
    return user_id


class ChatPayload(BaseModel):
    content: str = ""
    conversation_id: int | None = None
    model: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    is_retry: bool = False


@router.get("/models")
def list_models() -> dict:
    try:
        models = catalog.list_active_models()
    except Exception as exc:
        logger.exception("Failed to load models", extra={"event": "models_fetch_error"})
        call_logs.record_error_log(
            call_logs.FETCH_MODELS_ERROR, str(exc) or "Unknown error", source="chat-api"
        )
        return {"models": [], "message": "Failed to load models"}
    if not models:
        return {"models": [], "message": "No model is available yet, please contact an administrator"}
    return {"models": models}


@router.get("/check-quota")
def check_quota(
    user_id: Annotated[str, Depends(current_user_id)],
    model: str | None = None,
) -> dict:
    resolved = catalog.resolve_model(model)
    if resolved is None:
        return {"can_send": False, "provider": None, "message": "No model is available"}

    summary = selector.pool_summary(resolved.provider_name)
    payload = {"provider": resolved.provider_name, **asdict(summary)}
    payload["message"] = (
        None
        if summary.can_send
        else f"Messages cannot be sent right now: the {resolved.provider_name} quota is used up"
    )
    return payload


async def _event_stream(
    orchestrator: ChatOrchestrator, session: ChatSession
) -> AsyncIterator[str]:
    async for event in orchestrator.stream(session):
        yield event.to_sse()


@router.post("")
async def chat(
    payload: ChatPayload,
    user_id: Annotated[str, Depends(current_user_id)],
    orchestrator: Annotated[ChatOrchestrator, Depends(get_orchestrator)],
):
    request = ChatRequest(user_id=user_id, **payload.model_dump())
    try:
        session = orchestrator.prepare(request)
    except ChatRequestError as exc:
        return JSONResponse(
            status_code=int(exc.status_code),
            content={"error": {"message": exc.message, "code": exc.code}},
        )

    return StreamingResponse(
        _event_stream(orchestrator, session),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
