"""HTTP routes: conversation CRUD, submit/retry/abort, and the SSE event stream."""

from __future__ import annotations

from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from fastapi import APIRouter, Header, Request, Response
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from streamchat.broadcast.channel import Subscription
from streamchat.conversation.models import Conversation, ConversationSummary, Message
from streamchat.core.registry import CancelOutcome
from streamchat.log import get_logger
from streamchat.protocol.codec import envelope_to_sse
from streamchat.protocol.events import SessionEnd
from streamchat.server.schemas import (
    AbortResponse,
    CreateConversationRequest,
    HealthResponse,
    RetryRequest,
    SelectVersionRequest,
    SubmitMessageRequest,
    SubmitResponse,
    UpdateConversationRequest,
)
from streamchat.services.chat import ChatService, SubmitResult

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])


def _chat(request: Request) -> ChatService:
    return request.app.state.chat


def _submit_response(result: SubmitResult) -> SubmitResponse:
    base = f"/api/conversations/{result.conversation_id}"
    return SubmitResponse(
        request_id=result.request_id,
        conversation_id=result.conversation_id,
        message_key=result.message_key,
        version_id=result.version_id,
        user_message_key=result.user_message_key,
        stream_url=f"{base}/events",
        abort_url=f"{base}/stream/{result.request_id}/abort",
    )


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    services = {name: await service.status() for name, service in request.app.state.services.items()}
    healthy = all(s.get("healthy") for s in services.values())
    return HealthResponse(status="ok" if healthy else "degraded", services=services)


@router.post("/conversations", status_code=201)
async def create_conversation(body: CreateConversationRequest, request: Request) -> dict[str, Any]:
    chat = _chat(request)
    conversation = await chat.create_conversation(title=body.title, mode=body.mode)
    payload: dict[str, Any] = {"conversation": conversation.model_dump(mode="json", by_alias=True)}
    if body.content:
        result = await chat.submit(conversation.id, body.content)
        payload["request"] = _submit_response(result).model_dump(by_alias=True)
    return payload


@router.get("/conversations", response_model=list[ConversationSummary], response_model_by_alias=True)
async def list_conversations(request: Request, limit: int = 100) -> list[ConversationSummary]:
    return await _chat(request).list_conversations(limit)


@router.get("/conversations/{conversation_id}", response_model=Conversation, response_model_by_alias=True)
async def get_conversation(conversation_id: str, request: Request) -> Conversation:
    return await _chat(request).snapshot(conversation_id)


@router.patch("/conversations/{conversation_id}", response_model=Conversation, response_model_by_alias=True)
async def update_conversation(
    conversation_id: str, body: UpdateConversationRequest, request: Request
) -> Conversation:
    return await _chat(request).update_conversation(conversation_id, title=body.title, mode=body.mode)


@router.delete("/conversations/{conversation_id}", status_code=204)
async def delete_conversation(conversation_id: str, request: Request) -> Response:
    await _chat(request).delete_conversation(conversation_id)
    return Response(status_code=204)


@router.post("/conversations/{conversation_id}/messages", status_code=202, response_model=SubmitResponse)
async def submit_message(conversation_id: str, body: SubmitMessageRequest, request: Request) -> SubmitResponse:
    result = await _chat(request).submit(conversation_id, body.content, replace=body.replace)
    return _submit_response(result)


@router.post(
    "/conversations/{conversation_id}/messages/{message_key}/retry",
    status_code=202,
    response_model=SubmitResponse,
)
async def retry_message(
    conversation_id: str,
    message_key: str,
    request: Request,
    body: Optional[RetryRequest] = None,
) -> SubmitResponse:
    replace = body.replace if body else False
    result = await _chat(request).retry(conversation_id, message_key, replace=replace)
    return _submit_response(result)


@router.put(
    "/conversations/{conversation_id}/messages/{message_key}/selection",
    response_model=Message,
    response_model_by_alias=True,
)
async def select_version(
    conversation_id: str, message_key: str, body: SelectVersionRequest, request: Request
) -> Message:
    return await _chat(request).select_version(conversation_id, message_key, body.index)


@router.post("/conversations/{conversation_id}/stream/{request_id}/abort", response_model=AbortResponse)
async def abort_stream(conversation_id: str, request_id: str, request: Request) -> Any:
    outcome = _chat(request).abort(conversation_id, request_id)
    match outcome:
        case CancelOutcome.CANCELED:
            return AbortResponse(success=True, message="request canceled")
        case CancelOutcome.TERMINAL:
            body = AbortResponse(success=False, message="request already finished")
            return JSONResponse(body.model_dump(by_alias=True), status_code=409)
        case _:
            body = AbortResponse(success=False, message="stream not found")
            return JSONResponse(body.model_dump(by_alias=True), status_code=404)


@router.get("/conversations/{conversation_id}/events")
async def stream_events(
    conversation_id: str,
    request: Request,
    follow: bool = True,
    last_event_id: Optional[str] = Header(default=None),
) -> EventSourceResponse:
    """Replay the current request's events after ``Last-Event-ID``, then tail live ones.

    With ``follow=false`` the stream closes after the next ``session-end``.
    """
    chat = _chat(request)
    await chat.get_conversation(conversation_id)
    after_seq = parse_last_event_id(last_event_id or request.query_params.get("lastEventId"))
    subscription = chat.subscribe(conversation_id, after_seq)
    logger.info("sse_subscribed", conversation_id=conversation_id, after_seq=after_seq, follow=follow)
    return EventSourceResponse(sse_frames(subscription, request.is_disconnected, follow=follow))


def parse_last_event_id(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("bad_last_event_id", value=value[:32])
        return None


async def sse_frames(
    subscription: Subscription,
    is_disconnected: Callable[[], Awaitable[bool]],
    follow: bool = True,
) -> AsyncIterator[dict[str, Any]]:
    """Render a subscription as ``sse_starlette`` frames until the client goes away."""
    try:
        async for envelope in subscription:
            if await is_disconnected():
                break
            yield envelope_to_sse(envelope)
            if not follow and isinstance(envelope.event, SessionEnd):
                break
    finally:
        subscription.close()
