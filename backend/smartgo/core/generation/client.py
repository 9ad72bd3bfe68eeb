"""
Gemini generation client.

Every call walks the model candidate list. Each candidate gets a bounded
retry on rate-limit / overload failures; a model that is not found or not
supported is skipped; any other failure is raised immediately. When the list
is exhausted the collected failures become `ProviderBusyError` or
`ProviderUnavailableError`.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar

from google import genai
from google.genai import types
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_chain, wait_fixed, wait_none

from smartgo.core.errors import ProviderBusyError, ProviderConfigError, ProviderUnavailableError
from smartgo.core.generation.models import FailureKind, classify_provider_error, is_retryable_error, select_model_candidates
from smartgo.core.generation.prompts import TripContext, build_chat_system_prompt, build_day_prompt, build_trip_prompt
from smartgo.core.generation.schema import DayPlan, TripPlan, parse_model_json, validate_day_itinerary, validate_trip_itinerary
from smartgo.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GenerationClient:
    """Talks to Gemini through `client.aio.models`"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[genai.Client] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self._client = client
        self._sleep = sleep

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            if not self.settings.GEMINI_API_KEY:
                raise ProviderConfigError("Missing GEMINI_API_KEY in server environment")
            self._client = genai.Client(api_key=self.settings.GEMINI_API_KEY)
        return self._client

    @property
    def model_candidates(self) -> List[str]:
        return select_model_candidates(self.settings.GEMINI_MODEL, self.settings.GEMINI_FALLBACK_MODELS)

    # ===== RETRY / FALLBACK =====

    def _retrying(self, model: str) -> AsyncRetrying:
        delays = list(self.settings.GEMINI_RETRY_DELAYS)

        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                f"Gemini model {model} busy (attempt {retry_state.attempt_number}), "
                f"retrying in {retry_state.next_action.sleep:.1f}s: {retry_state.outcome.exception()}"
            )

        return AsyncRetrying(
            sleep=self._sleep,
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(len(delays) + 1),
            wait=wait_chain(*[wait_fixed(d) for d in delays]) if delays else wait_none(),
            before_sleep=log_retry,
            reraise=True,
        )

    async def _call_with_fallback(self, operation: str, call: Callable[[str], Awaitable[T]]) -> T:
        models = self.model_candidates
        busy: List[str] = []
        unavailable: List[str] = []

        for model in models:
            try:
                async for attempt in self._retrying(model):
                    with attempt:
                        result = await call(model)
                logger.info(f"Gemini {operation} succeeded with model {model}")
                return result
            except Exception as e:
                kind = classify_provider_error(e)
                if kind is FailureKind.FATAL:
                    logger.error(f"Gemini {operation} failed on model {model}: {e}")
                    raise
                diagnostic = f"{model}: {e}"
                if kind is FailureKind.RETRYABLE:
                    logger.warning(f"Gemini model {model} still busy after retries, trying next model")
                    busy.append(diagnostic)
                else:
                    logger.warning(f"Gemini model {model} unavailable, trying next model: {e}")
                    unavailable.append(diagnostic)

        if busy:
            raise ProviderBusyError(models, busy + unavailable)
        raise ProviderUnavailableError(models, unavailable or ["no Gemini model configured"])

    # ===== ITINERARIES =====

    async def _generate_text(self, model: str, prompt: str) -> str:
        response = await self.client.aio.models.generate_content(
            model=model,
            contents=prompt,
            config=types.GenerateContentConfig(
                temperature=self.settings.GEMINI_TEMPERATURE,
                response_mime_type="application/json",
            ),
        )
        return response.text or ""

    async def generate_trip_itinerary(self, context: TripContext, edit_request: Optional[str] = None) -> TripPlan:
        """Generate and validate days 1..N for the whole trip"""
        prompt = build_trip_prompt(context, edit_request)
        text = await self._call_with_fallback(
            "trip itinerary", lambda model: self._generate_text(model, prompt)
        )
        return validate_trip_itinerary(parse_model_json(text), context.start_date, context.end_date)

    async def generate_day_itinerary(
        self, context: TripContext, day_number: int, edit_request: Optional[str] = None
    ) -> DayPlan:
        """Generate and validate a single day of the trip"""
        prompt = build_day_prompt(context, day_number, edit_request)
        text = await self._call_with_fallback(
            f"day {day_number} itinerary", lambda model: self._generate_text(model, prompt)
        )
        return validate_day_itinerary(parse_model_json(text), day_number)

    # ===== CHAT =====

    def _chat_request(
        self, context: TripContext, message: str, history: Sequence[dict]
    ) -> Tuple[List[types.Content], types.GenerateContentConfig]:
        window = list(history)[-self.settings.CHAT_HISTORY_WINDOW:] if self.settings.CHAT_HISTORY_WINDOW else []
        contents = [
            types.Content(
                role="model" if item.get("role") == "assistant" else "user",
                parts=[types.Part.from_text(text=str(item.get("content", "")))],
            )
            for item in window
            if str(item.get("content", "")).strip()
        ]
        contents.append(types.Content(role="user", parts=[types.Part.from_text(text=message)]))
        config = types.GenerateContentConfig(
            system_instruction=build_chat_system_prompt(context),
            temperature=self.settings.GEMINI_CHAT_TEMPERATURE,
        )
        return contents, config

    async def chat_reply(self, context: TripContext, message: str, history: Sequence[dict] = ()) -> str:
        contents, config = self._chat_request(context, message, history)

        async def call(model: str) -> str:
            response = await self.client.aio.models.generate_content(
                model=model, contents=contents, config=config
            )
            return (response.text or "").strip()

        return await self._call_with_fallback("chat reply", call)

    async def stream_chat_reply(
        self, context: TripContext, message: str, history: Sequence[dict] = ()
    ) -> AsyncIterator[str]:
        """
        Yield reply text chunks as they arrive.

        Retry and model fallback cover opening the stream up to the first
        non-empty chunk; failures after that propagate to the consumer.
        """
        contents, config = self._chat_request(context, message, history)

        async def open_stream(model: str) -> Tuple[str, AsyncIterator]:
            stream = await self.client.aio.models.generate_content_stream(
                model=model, contents=contents, config=config
            )
            iterator = stream.__aiter__()
            while True:
                try:
                    chunk = await iterator.__anext__()
                except StopAsyncIteration:
                    return "", iterator
                if chunk.text:
                    return chunk.text, iterator

        first, iterator = await self._call_with_fallback("chat stream", open_stream)
        if not first:
            return
        yield first
        async for chunk in iterator:
            if chunk.text:
                yield chunk.text
