"""
Per-trip chat orchestration.

The orchestrator owns one trip's transcript and the reply / apply state
machine:

    IDLE -> SENDING -> STREAMING_REPLY -> IDLE
    IDLE -> SENDING -> STREAMING_REPLY -> AWAITING_FALLBACK_REPLY -> IDLE
    IDLE -> APPLYING -> IDLE

A streamed reply that fails or comes back empty before its first chunk gets
one non-streaming retry. A reply that fails part-way keeps the partial text.
Apply turns the latest user message into a date patch plus either targeted
day regeneration or a whole-trip regeneration.
"""

import logging
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Protocol, Sequence

from smartgo.core.errors import ConstraintViolationError, ItineraryError, OrchestratorStateError
from smartgo.core.generation.prompts import TripContext
from smartgo.core.nlp.instruction_parser import ParsedIntent, inclusive_day_count, parse_instruction
from smartgo.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class ChatState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING_REPLY = "streaming_reply"
    AWAITING_FALLBACK_REPLY = "awaiting_fallback_reply"
    APPLYING = "applying"


@dataclass
class ChatMessage:
    role: str
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_history(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatPreview:
    intent: ParsedIntent
    mentioned_day_numbers: List[int]
    can_apply: bool


@dataclass
class ApplyResult:
    detail: Dict[str, Any]
    regenerated_days: List[int]
    dates_changed: bool
    message: str


class TripBackend(Protocol):
    """What the orchestrator needs from the trip service"""

    async def build_context(self, trip_id: int) -> TripContext: ...

    async def trip_detail(self, trip_id: int) -> Dict[str, Any]: ...

    async def patch_dates(self, trip_id: int, start_date: date, end_date: date, drop_days: bool = True) -> None: ...

    async def drop_days_outside_window(self, trip_id: int) -> int: ...

    async def generate_trip(self, trip_id: int, edit_request: Optional[str] = None) -> Dict[str, Any]: ...

    async def generate_day(self, trip_id: int, day_number: int, edit_request: Optional[str] = None) -> Dict[str, Any]: ...

    async def chat_reply(self, trip_id: int, message: str, history: Sequence[dict] = ()) -> str: ...

    def stream_chat_reply(self, trip_id: int, message: str, history: Sequence[dict] = ()): ...


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, ItineraryError):
        return exc.message
    return str(exc) or exc.__class__.__name__


def plan_day_targets(intent: ParsedIntent, previous_day_count: int) -> List[int]:
    """
    Days to regenerate for an apply: mentioned days that exist after the date
    patch, plus the newly added days when the trip grew. Empty means the
    whole trip is regenerated.
    """
    next_count = inclusive_day_count(intent.next_start_date, intent.next_end_date)
    targets = {n for n in intent.referenced_day_numbers if 1 <= n <= next_count}
    if targets and next_count > previous_day_count:
        targets.update(range(previous_day_count + 1, next_count + 1))
    return sorted(targets)


class TripChatOrchestrator:
    def __init__(self, trip_id: int, settings: Optional[Settings] = None):
        self.trip_id = trip_id
        self.settings = settings or get_settings()
        self.messages: Deque[ChatMessage] = deque(maxlen=self.settings.CHAT_STORE_WINDOW)
        self.state = ChatState.IDLE
        self.last_error: Optional[str] = None

    # ===== TRANSCRIPT =====

    @property
    def busy(self) -> bool:
        return self.state is not ChatState.IDLE

    def _append(self, role: str, content: str) -> ChatMessage:
        message = ChatMessage(role=role, content=content)
        self.messages.append(message)
        return message

    def history_for_model(self) -> List[Dict[str, str]]:
        window = self.settings.CHAT_HISTORY_WINDOW
        return [m.as_history() for m in list(self.messages)[-window:]] if window else []

    def latest_user_text(self) -> Optional[str]:
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return None

    def clear(self) -> None:
        if self.busy:
            raise OrchestratorStateError("Chat is busy, try again when the current action finishes")
        self.messages.clear()
        self.last_error = None

    # ===== REPLY =====

    async def submit(self, text: str, backend: TripBackend) -> ChatMessage:
        """Send a user message and return the stored assistant reply"""
        text = (text or "").strip()
        if not text:
            raise ConstraintViolationError("Message cannot be empty")
        if self.busy:
            raise OrchestratorStateError("Chat is busy, try again when the current action finishes")

        history = self.history_for_model()
        self._append("user", text)
        self.state = ChatState.SENDING
        self.last_error = None
        partial = ""

        try:
            stream_error: Optional[BaseException] = None
            try:
                async for chunk in backend.stream_chat_reply(self.trip_id, text, history):
                    self.state = ChatState.STREAMING_REPLY
                    partial += chunk
            except Exception as e:
                if partial.strip():
                    raise
                stream_error = e

            if partial.strip():
                return self._append("assistant", partial.strip())

            if stream_error is not None:
                logger.warning(f"Chat stream for trip {self.trip_id} failed, falling back: {stream_error}")
            self.state = ChatState.AWAITING_FALLBACK_REPLY
            reply = (await backend.chat_reply(self.trip_id, text, history)).strip()
            return self._append("assistant", reply or self.settings.CHAT_FALLBACK_REPLY)

        except Exception as e:
            self.last_error = _error_text(e)
            if partial.strip():
                self._append("assistant", partial.strip())
            logger.error(f"Chat reply for trip {self.trip_id} failed: {self.last_error}")
            raise
        finally:
            self.state = ChatState.IDLE

    # ===== PREVIEW / APPLY =====

    def preview(self, start_date: date, end_date: date) -> ChatPreview:
        """Recompute the pending change from the latest user message"""
        intent = parse_instruction(self.latest_user_text(), start_date, end_date)
        return ChatPreview(
            intent=intent,
            mentioned_day_numbers=list(intent.referenced_day_numbers),
            can_apply=self._can_apply(intent),
        )

    def _can_apply(self, intent: ParsedIntent) -> bool:
        return self.latest_user_text() is not None and not self.busy and not intent.warnings

    def can_apply(self, start_date: date, end_date: date) -> bool:
        return self.preview(start_date, end_date).can_apply

    async def apply(self, backend: TripBackend) -> ApplyResult:
        """
        Patch dates and regenerate the referenced days (or the whole trip).

        Days falling outside a shortened window are only removed once every
        regeneration has succeeded, so a failed apply leaves the trip as it was.
        """
        if self.busy:
            raise OrchestratorStateError("Chat is busy, try again when the current action finishes")
        latest = self.latest_user_text()
        if latest is None:
            raise OrchestratorStateError("Send a message describing the change before applying")

        self.state = ChatState.APPLYING
        self.last_error = None
        context: Optional[TripContext] = None
        dates_patched = False
        try:
            context = await backend.build_context(self.trip_id)
            intent = parse_instruction(latest, context.start_date, context.end_date)
            if intent.warnings:
                raise OrchestratorStateError(intent.warning)

            if intent.has_change:
                await backend.patch_dates(
                    self.trip_id, intent.next_start_date, intent.next_end_date, drop_days=False
                )
                dates_patched = True

            targets = plan_day_targets(intent, context.day_count)
            if targets:
                for day_number in targets:
                    await backend.generate_day(self.trip_id, day_number, latest)
            else:
                await backend.generate_trip(self.trip_id, latest)

            if dates_patched:
                await backend.drop_days_outside_window(self.trip_id)
            detail = await backend.trip_detail(self.trip_id)

        except Exception as e:
            self.last_error = _error_text(e)
            if dates_patched:
                await self._restore_dates(backend, context)
            logger.error(f"Applying chat changes to trip {self.trip_id} failed: {self.last_error}")
            raise
        finally:
            self.state = ChatState.IDLE

        if targets:
            message = f"AI instructions applied. Regenerated Day {', Day '.join(str(n) for n in targets)}"
            message += " and updated dates." if intent.has_change else "."
        elif intent.has_change:
            message = (
                f"AI instructions applied. Dates updated ({intent.next_start_date.isoformat()} -> "
                f"{intent.next_end_date.isoformat()}) and itinerary regenerated."
            )
        else:
            message = "AI instructions applied and itinerary regenerated."

        logger.info(f"Applied chat changes to trip {self.trip_id}: days={targets or 'all'}")
        return ApplyResult(
            detail=detail,
            regenerated_days=targets,
            dates_changed=intent.has_change,
            message=message,
        )

    async def _restore_dates(self, backend: TripBackend, context: TripContext) -> None:
        try:
            await backend.patch_dates(self.trip_id, context.start_date, context.end_date, drop_days=False)
        except Exception as restore_error:
            logger.error(f"Could not restore dates of trip {self.trip_id}: {restore_error}")


class ChatSessionStore:
    """In-memory orchestrators keyed by trip id, least recently used evicted first"""

    def __init__(self, settings: Optional[Settings] = None, max_sessions: int = 1000):
        self.settings = settings or get_settings()
        self.max_sessions = max_sessions
        self._sessions: "OrderedDict[int, TripChatOrchestrator]" = OrderedDict()

    def get(self, trip_id: int) -> TripChatOrchestrator:
        orchestrator = self._sessions.get(trip_id)
        if orchestrator is None:
            orchestrator = TripChatOrchestrator(trip_id, self.settings)
            self._sessions[trip_id] = orchestrator
            self._evict()
        else:
            self._sessions.move_to_end(trip_id)
        return orchestrator

    def _evict(self) -> None:
        while len(self._sessions) > self.max_sessions:
            trip_id, orchestrator = next(iter(self._sessions.items()))
            if orchestrator.busy:
                break
            del self._sessions[trip_id]

    def discard(self, trip_id: int) -> None:
        self._sessions.pop(trip_id, None)

    def __len__(self) -> int:
        return len(self._sessions)
