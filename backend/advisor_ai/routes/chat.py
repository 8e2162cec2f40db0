"""
Chat assistant endpoints.

POST   /chat/sessions
POST   /chat/sessions/{session_id}/messages   (server-sent events)
GET    /chat/sessions/{session_id}/messages
DELETE /chat/sessions/{session_id}

Message streams are SSE: ``event: delta`` frames in order, then exactly one
``event: final`` (full text and usage) or ``event: error`` frame. A client
disconnect closes the stream, which cancels the upstream call and discards
the partial reply.
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from advisor_ai.core.logging import get_logger
from advisor_ai.routes.deps import get_ai_service, get_current_user_id
from advisor_ai.services.ai.orchestration import AIOrchestrationService
from advisor_ai.services.ai.streaming import DeltaEvent, DeltaStream, ErrorEvent, FinalEvent, StreamEvent

logger = get_logger(__name__)

router = APIRouter()


class StartSessionRequest(BaseModel):
    context: Dict[str, Any] = Field(default_factory=dict)


class StartSessionResponse(BaseModel):
    session_id: str


class SendMessageRequest(BaseModel):
    text: str = Field(..., min_length=1)
    context: Optional[Dict[str, Any]] = None


class ChatMessageOut(BaseModel):
    role: str
    content: str
    timestamp: datetime


class ChatHistoryResponse(BaseModel):
    session_id: str
    messages: List[ChatMessageOut]


def format_sse(event: StreamEvent) -> str:
    if isinstance(event, DeltaEvent):
        name, data = "delta", {"text": event.text, "index": event.index}
    elif isinstance(event, FinalEvent):
        name, data = "final", {
            "text": event.text,
            "usage": {
                "prompt_tokens": event.usage.prompt_tokens,
                "completion_tokens": event.usage.completion_tokens,
                "total_tokens": event.usage.total_tokens,
            },
        }
    elif isinstance(event, ErrorEvent):
        name, data = "error", {"error": event.code, "detail": event.message}
    else:
        raise TypeError(f"Unknown stream event: {event!r}")
    return f"event: {name}\ndata: {json.dumps(data)}\n\n"


async def _event_source(stream: DeltaStream, session_id: str):
    try:
        async for event in stream:
            yield format_sse(event)
    finally:
        # Runs on client disconnect too.
        await stream.aclose()
        logger.debug("chat_sse_closed", session_id=session_id)


@router.post("/sessions", response_model=StartSessionResponse, status_code=201)
async def start_session(
    body: StartSessionRequest,
    user_id: str = Depends(get_current_user_id),
    service: AIOrchestrationService = Depends(get_ai_service),
):
    session_id = await service.start_chat(user_id, body.context)
    return StartSessionResponse(session_id=session_id)


@router.post("/sessions/{session_id}/messages")
async def send_message(
    body: SendMessageRequest,
    session_id: str = Path(..., description="Chat session ID"),
    user_id: str = Depends(get_current_user_id),
    service: AIOrchestrationService = Depends(get_ai_service),
):
    """
    Send a message and stream the reply.

    Busy sessions (409), budget denial (429) and unknown or foreign sessions
    (404/403) fail before any stream is opened.
    """
    try:
        stream = await service.send_chat_message(session_id, user_id, body.text, body.context)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return StreamingResponse(
        _event_source(stream, session_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/sessions/{session_id}/messages", response_model=ChatHistoryResponse)
async def chat_history(
    session_id: str = Path(..., description="Chat session ID"),
    user_id: str = Depends(get_current_user_id),
    service: AIOrchestrationService = Depends(get_ai_service),
):
    messages = await service.chat_history(session_id, user_id)
    return ChatHistoryResponse(
        session_id=session_id,
        messages=[ChatMessageOut(**message.model_dump()) for message in messages],
    )


@router.delete("/sessions/{session_id}", status_code=204)
async def clear_session(
    session_id: str = Path(..., description="Chat session ID"),
    user_id: str = Depends(get_current_user_id),
    service: AIOrchestrationService = Depends(get_ai_service),
):
    await service.clear_chat(session_id, user_id)
    return Response(status_code=204)
