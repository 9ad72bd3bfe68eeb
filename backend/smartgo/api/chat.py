import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from smartgo.api.deps import CHAT_LIMIT, GENERATE_LIMIT, READ_LIMIT, get_chat_store, get_trip_service, limiter
from smartgo.api.schemas import (
    ChatApplyResponse, ChatMessageRead, ChatReply, ChatRequest,
    ChatSessionRead, ChatSubmitRequest, ChatSubmitResponse, IntentPreview, SuccessResponse,
)
from smartgo.core.chat.orchestrator import ChatSessionStore, TripChatOrchestrator
from smartgo.core.errors import ItineraryError
from smartgo.core.trip_service import TripService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trips", tags=["chat"])


def sse_event(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def _session_view(orchestrator: TripChatOrchestrator, service: TripService) -> ChatSessionRead:
    trip = await service.build_context(orchestrator.trip_id)
    preview = orchestrator.preview(trip.start_date, trip.end_date)
    return ChatSessionRead(
        trip_id=orchestrator.trip_id,
        state=orchestrator.state.value,
        messages=[ChatMessageRead.model_validate(m) for m in orchestrator.messages],
        preview=IntentPreview.model_validate(preview.intent),
        mentioned_day_numbers=preview.mentioned_day_numbers,
        can_apply=preview.can_apply,
        last_error=orchestrator.last_error,
    )


# ===== STATELESS CHAT =====

@router.post("/{trip_id}/ai-chat", response_model=ChatReply)
@limiter.limit(CHAT_LIMIT)
async def chat_with_trip_assistant(
    request: Request,
    trip_id: int,
    payload: ChatRequest,
    service: TripService = Depends(get_trip_service),
):
    """Complete (non-streamed) assistant reply for the caller-held history"""
    history = [turn.model_dump() for turn in payload.history]
    reply = await service.chat_reply(trip_id, payload.message, history)
    return ChatReply(reply=reply or service.generator.settings.CHAT_FALLBACK_REPLY)


@router.post("/{trip_id}/ai-chat-stream")
@limiter.limit(CHAT_LIMIT)
async def chat_with_trip_assistant_stream(
    request: Request,
    trip_id: int,
    payload: ChatRequest,
    service: TripService = Depends(get_trip_service),
):
    """
    Server-sent events: `chunk` ({"text"}) per piece of the reply, then
    `done` ({"reply"}), or `error` ({"detail", "error_type"}) on failure.
    """
    context = await service.build_context(trip_id)
    history = [turn.model_dump() for turn in payload.history]

    async def event_stream():
        reply = ""
        try:
            async for chunk in service.generator.stream_chat_reply(context, payload.message, history):
                reply += chunk
                yield sse_event("chunk", {"text": chunk})
        except ItineraryError as e:
            logger.warning(f"Chat stream for trip {trip_id} failed: {e.message}")
            yield sse_event("error", e.to_dict())
            return
        except Exception as e:
            logger.error(f"Chat stream for trip {trip_id} failed: {e}")
            yield sse_event("error", {"detail": str(e) or "Failed to stream chat reply", "error_type": "stream_failed"})
            return
        yield sse_event("done", {"reply": reply})

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ===== ORCHESTRATED CHAT =====

@router.get("/{trip_id}/chat", response_model=ChatSessionRead)
@limiter.limit(READ_LIMIT)
async def read_chat_session(
    request: Request,
    trip_id: int,
    service: TripService = Depends(get_trip_service),
    store: ChatSessionStore = Depends(get_chat_store),
):
    """Transcript plus the pending date / day change of the latest message"""
    return await _session_view(store.get(trip_id), service)


@router.post("/{trip_id}/chat/messages", response_model=ChatSubmitResponse)
@limiter.limit(CHAT_LIMIT)
async def submit_chat_message(
    request: Request,
    trip_id: int,
    payload: ChatSubmitRequest,
    service: TripService = Depends(get_trip_service),
    store: ChatSessionStore = Depends(get_chat_store),
):
    await service.build_context(trip_id)
    orchestrator = store.get(trip_id)
    reply = await orchestrator.submit(payload.message, service)
    return ChatSubmitResponse(
        reply=ChatMessageRead.model_validate(reply),
        session=await _session_view(orchestrator, service),
    )


@router.post("/{trip_id}/chat/apply", response_model=ChatApplyResponse)
@limiter.limit(GENERATE_LIMIT)
async def apply_chat_changes(
    request: Request,
    trip_id: int,
    service: TripService = Depends(get_trip_service),
    store: ChatSessionStore = Depends(get_chat_store),
):
    """Apply the latest instruction: patch dates, then regenerate days or the whole trip"""
    result = await store.get(trip_id).apply(service)
    return ChatApplyResponse(
        message=result.message,
        regenerated_days=result.regenerated_days,
        dates_changed=result.dates_changed,
        trip=result.detail,
    )


@router.delete("/{trip_id}/chat", response_model=SuccessResponse)
@limiter.limit(CHAT_LIMIT)
async def clear_chat_session(
    request: Request,
    trip_id: int,
    service: TripService = Depends(get_trip_service),
    store: ChatSessionStore = Depends(get_chat_store),
):
    await service.build_context(trip_id)
    store.get(trip_id).clear()
    store.discard(trip_id)
    return SuccessResponse()
