import json
from datetime import date

import pytest

from smartgo.core.errors import (
    ProviderBusyError,
    ProviderConfigError,
    ProviderUnavailableError,
    SchemaInvalidError,
)
from smartgo.core.generation.client import GenerationClient
from smartgo.core.generation.models import FailureKind, classify_provider_error, select_model_candidates
from smartgo.core.generation.prompts import DaySummary, TripContext, build_day_prompt, build_trip_prompt
from smartgo.core.settings import Settings

from fakes import FakeAPIError, FakeGenAIClient, FakeModels, busy_error, not_found_error


@pytest.fixture
def context():
    return TripContext(
        trip_id=1,
        title="Kyoto in spring",
        destination="Kyoto",
        start_date=date(2026, 3, 1),
        end_date=date(2026, 3, 3),
        preferences="temples, food",
        days=[
            DaySummary(day_number=1, poi_names=["Fushimi Inari", "Nishiki Market"]),
            DaySummary(day_number=2, poi_names=["Kinkaku-ji"]),
        ],
    )


def make_client(settings, recorded_sleep, script=None, stream_script=None):
    models = FakeModels(script=script, stream_script=stream_script)
    client = GenerationClient(settings, client=FakeGenAIClient(models), sleep=recorded_sleep.sleep)
    return client, models


async def collect(stream):
    return [chunk async for chunk in stream]


class TestModelSelection:
    def test_preferred_first_without_duplicates(self):
        assert select_model_candidates("model-b", ["model-a", "model-b", " ", "model-c"]) == [
            "model-b", "model-a", "model-c",
        ]

    def test_no_preferred(self):
        assert select_model_candidates(None, ["model-a"]) == ["model-a"]
        assert select_model_candidates("", []) == []

    @pytest.mark.parametrize("error, kind", [
        (FakeAPIError(429, "RESOURCE_EXHAUSTED", "quota"), FailureKind.RETRYABLE),
        (FakeAPIError(503, "UNAVAILABLE", "The model is overloaded."), FailureKind.RETRYABLE),
        (RuntimeError("Rate limit reached, try again later"), FailureKind.RETRYABLE),
        (FakeAPIError(404, "NOT_FOUND", "models/x is not found"), FailureKind.MODEL_UNAVAILABLE),
        (RuntimeError("model gemini-1.0 is not supported for generateContent"), FailureKind.MODEL_UNAVAILABLE),
        (FakeAPIError(400, "INVALID_ARGUMENT", "API key not valid"), FailureKind.FATAL),
        (ValueError("boom"), FailureKind.FATAL),
    ])
    def test_classify_provider_error(self, error, kind):
        assert classify_provider_error(error) is kind


class TestPrompts:
    def test_trip_prompt_embeds_trip_facts(self, context):
        prompt = build_trip_prompt(context, "more food")

        assert "Kyoto" in prompt
        assert "2026-03-01 to 2026-03-03 (3 days)" in prompt
        assert "temples, food" in prompt
        assert "Traveller's request: more food" in prompt
        assert "3 to 6 POIs" in prompt
        assert '"address"' in prompt

    def test_day_prompt_lists_other_days_only(self, context):
        prompt = build_day_prompt(context, 2, "slower pace")

        assert "day 2 (2026-03-02)" in prompt
        assert "Day 1: Fushimi Inari, Nishiki Market" in prompt
        assert "Day 2: Kinkaku-ji" not in prompt
        assert "slower pace" in prompt


class TestRetryAndFallback:
    @pytest.mark.asyncio
    async def test_busy_then_success_follows_backoff(self, gemini_settings, recorded_sleep, context, trip_payload):
        client, models = make_client(gemini_settings, recorded_sleep, script={
            "model-a": [busy_error(), busy_error(), json.dumps(trip_payload(3))],
        })

        plan = await client.generate_trip_itinerary(context)

        assert [d.day_number for d in plan.days] == [1, 2, 3]
        assert recorded_sleep.delays == [1.0, 2.0]
        assert models.calls == ["model-a"] * 3

    @pytest.mark.asyncio
    async def test_missing_model_skips_to_next(self, gemini_settings, recorded_sleep, context, trip_payload):
        client, models = make_client(gemini_settings, recorded_sleep, script={
            "model-b": [json.dumps(trip_payload(3))],
        })

        await client.generate_trip_itinerary(context)

        assert models.calls == ["model-a", "model-b"]
        assert recorded_sleep.delays == []

    @pytest.mark.asyncio
    async def test_all_busy_reports_provider_busy(self, gemini_settings, recorded_sleep, context):
        client, models = make_client(gemini_settings, recorded_sleep, script={
            "model-a": [busy_error()],
            "model-b": [busy_error()],
        })

        with pytest.raises(ProviderBusyError) as exc_info:
            await client.generate_trip_itinerary(context)

        assert exc_info.value.models == ["model-a", "model-b"]
        assert "model-a" in exc_info.value.message and "model-b" in exc_info.value.message
        assert exc_info.value.to_dict()["retryable"] is True
        assert recorded_sleep.delays == [1.0, 2.0, 4.0, 1.0, 2.0, 4.0]
        assert len(models.calls) == 8

    @pytest.mark.asyncio
    async def test_all_missing_reports_unavailable(self, gemini_settings, recorded_sleep, context):
        client, _ = make_client(gemini_settings, recorded_sleep)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await client.generate_trip_itinerary(context)

        error = exc_info.value
        assert error.error_type == "provider_unavailable"
        assert "No working Gemini model. Tried: model-a, model-b." in error.message
        assert len(error.diagnostics) == 2
        assert recorded_sleep.delays == []

    @pytest.mark.asyncio
    async def test_busy_and_unavailable_messages_differ(self, gemini_settings, recorded_sleep, context):
        busy_client, _ = make_client(gemini_settings, recorded_sleep, script={"model-a": [busy_error()]})

        with pytest.raises(ProviderBusyError) as busy_info:
            await busy_client.generate_trip_itinerary(context)

        unavailable_client, _ = make_client(gemini_settings, recorded_sleep)
        with pytest.raises(ProviderUnavailableError) as unavailable_info:
            await unavailable_client.generate_trip_itinerary(context)

        assert busy_info.value.error_type != unavailable_info.value.error_type
        assert busy_info.value.message != unavailable_info.value.message
        assert busy_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_fatal_error_is_raised_immediately(self, gemini_settings, recorded_sleep, context, trip_payload):
        client, models = make_client(gemini_settings, recorded_sleep, script={
            "model-a": [FakeAPIError(400, "INVALID_ARGUMENT", "API key not valid")],
            "model-b": [json.dumps(trip_payload(3))],
        })

        with pytest.raises(FakeAPIError):
            await client.generate_trip_itinerary(context)

        assert models.calls == ["model-a"]

    @pytest.mark.asyncio
    async def test_invalid_output_is_not_retried(self, gemini_settings, recorded_sleep, context, trip_payload):
        client, models = make_client(gemini_settings, recorded_sleep, script={
            "model-a": [json.dumps(trip_payload(2))],
        })

        with pytest.raises(SchemaInvalidError) as exc_info:
            await client.generate_trip_itinerary(context)

        assert exc_info.value.issues[0]["path"] == "days"
        assert models.calls == ["model-a"]
        assert recorded_sleep.delays == []

    @pytest.mark.asyncio
    async def test_day_generation_validates_day_number(self, gemini_settings, recorded_sleep, context, day_payload):
        client, _ = make_client(gemini_settings, recorded_sleep, script={
            "model-a": [json.dumps(day_payload(3))],
        })

        with pytest.raises(SchemaInvalidError) as exc_info:
            await client.generate_day_itinerary(context, 2, "slower pace")
        assert exc_info.value.issues[0]["path"] == "dayNumber"

    @pytest.mark.asyncio
    async def test_missing_api_key(self, recorded_sleep, context):
        client = GenerationClient(
            Settings(GEMINI_API_KEY="", GEMINI_FALLBACK_MODELS=["model-a"], LOG_FILE=""),
            sleep=recorded_sleep.sleep,
        )

        with pytest.raises(ProviderConfigError, match="Missing GEMINI_API_KEY"):
            await client.generate_trip_itinerary(context)

    @pytest.mark.asyncio
    async def test_preferred_model_tried_first(self, recorded_sleep, context, day_payload):
        settings = Settings(
            GEMINI_API_KEY="test-key",
            GEMINI_MODEL="model-pro",
            GEMINI_FALLBACK_MODELS=["model-a"],
            LOG_FILE="",
        )
        client, models = make_client(settings, recorded_sleep, script={
            "model-pro": ["```json\n" + json.dumps(day_payload(2)) + "\n```"],
        })

        plan = await client.generate_day_itinerary(context, 2)

        assert plan.day_number == 2
        assert models.calls == ["model-pro"]


class TestChat:
    @pytest.mark.asyncio
    async def test_chat_reply_sends_windowed_history(self, gemini_settings, recorded_sleep, context):
        client, models = make_client(gemini_settings, recorded_sleep, script={"model-a": ["  Sounds good!  "]})
        history = [
            {"role": "user" if i % 2 == 0 else "assistant", "content": f"turn {i}"}
            for i in range(20)
        ]

        reply = await client.chat_reply(context, "What about day 2?", history)

        assert reply == "Sounds good!"
        contents = models.last_contents
        assert len(contents) == gemini_settings.CHAT_HISTORY_WINDOW + 1
        assert contents[0].parts[0].text == "turn 8"
        assert contents[-1].role == "user"
        assert contents[-1].parts[0].text == "What about day 2?"
        assert {c.role for c in contents} == {"user", "model"}
        assert "Kyoto" in str(models.last_config.system_instruction)

    @pytest.mark.asyncio
    async def test_stream_yields_chunks(self, gemini_settings, recorded_sleep, context):
        client, _ = make_client(gemini_settings, recorded_sleep, stream_script={
            "model-a": [["Day 2 ", "", "could start later."]],
        })

        chunks = await collect(client.stream_chat_reply(context, "day 2?"))
        assert chunks == ["Day 2 ", "could start later."]

    @pytest.mark.asyncio
    async def test_stream_falls_back_before_first_chunk(self, gemini_settings, recorded_sleep, context):
        client, models = make_client(gemini_settings, recorded_sleep, stream_script={
            "model-a": [not_found_error("model-a")],
            "model-b": [["Hello ", "there"]],
        })

        chunks = await collect(client.stream_chat_reply(context, "hi"))

        assert chunks == ["Hello ", "there"]
        assert models.stream_calls == ["model-a", "model-b"]

    @pytest.mark.asyncio
    async def test_stream_retries_busy_before_first_chunk(self, gemini_settings, recorded_sleep, context):
        client, models = make_client(gemini_settings, recorded_sleep, stream_script={
            "model-a": [["", busy_error()], ["Hi"]],
        })

        chunks = await collect(client.stream_chat_reply(context, "hi"))

        assert chunks == ["Hi"]
        assert recorded_sleep.delays == [1.0]
        assert models.stream_calls == ["model-a", "model-a"]

    @pytest.mark.asyncio
    async def test_stream_error_after_first_chunk_propagates(self, gemini_settings, recorded_sleep, context):
        client, models = make_client(gemini_settings, recorded_sleep, stream_script={
            "model-a": [["Day 2 could", busy_error()]],
        })

        received = []
        with pytest.raises(FakeAPIError):
            async for chunk in client.stream_chat_reply(context, "day 2?"):
                received.append(chunk)

        assert received == ["Day 2 could"]
        assert models.stream_calls == ["model-a"]
        assert recorded_sleep.delays == []

    @pytest.mark.asyncio
    async def test_empty_stream_yields_nothing(self, gemini_settings, recorded_sleep, context):
        client, _ = make_client(gemini_settings, recorded_sleep, stream_script={"model-a": [[]]})

        assert await collect(client.stream_chat_reply(context, "hi")) == []
