import os

# Settings are read at import time by smartgo.main / smartgo.api.deps
os.environ.setdefault("ENABLE_RATE_LIMITING", "false")
os.environ.setdefault("DB_URL", "sqlite:///:memory:")
os.environ.setdefault("LOG_FILE", "")
os.environ["GEMINI_API_KEY"] = ""

from datetime import date

import pytest
import pytest_asyncio

from smartgo.core.generation.schema import validate_trip_itinerary
from smartgo.core.settings import Settings
from smartgo.core.sync import engine
from smartgo.db import crud
from smartgo.db.session import DatabaseManager

from fakes import RecordingSleep


TRIP_START = date(2026, 3, 1)
TRIP_END = date(2026, 3, 3)


def make_day_payload(day_number, poi_count=3, durations=None, prefix="Stop", first_start="09:00"):
    """Gemini-shaped (camelCase) day object with unique POI names"""
    durations = durations or [60] * poi_count
    hour = int(first_start[:2])
    pois = []
    for i, duration in enumerate(durations):
        pois.append({
            "name": f"{prefix} {day_number}-{i}",
            "type": "attraction",
            "address": f"{i} Main St",
            "description": f"Stop {i} of day {day_number}",
            "startTime": f"{min(hour + i, 23):02d}:{first_start[3:]}",
            "durationMin": duration,
        })
    return {"dayNumber": day_number, "summary": f"Day {day_number} plan", "pois": pois}


def make_trip_payload(day_count, prefix="Stop"):
    return {
        "title": "Kyoto in spring",
        "destination": "Kyoto",
        "days": [make_day_payload(n, prefix=prefix) for n in range(1, day_count + 1)],
    }


@pytest.fixture
def day_payload():
    return make_day_payload


@pytest.fixture
def trip_payload():
    return make_trip_payload


@pytest_asyncio.fixture
async def db():
    manager = DatabaseManager(Settings(DB_URL="sqlite:///:memory:", LOG_FILE=""))
    await manager.initialize()
    await manager.init_db()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def session(db):
    async with db.get_session() as session:
        yield session


@pytest_asyncio.fixture
async def seeded_trip(session):
    """Trip 2026-03-01..2026-03-03 owned by user 1, with three generated days"""
    trip = await crud.create_trip(
        session,
        user_id=1,
        title="Kyoto in spring",
        destination="Kyoto",
        start_date=TRIP_START,
        end_date=TRIP_END,
        preferences="temples, food",
    )
    plan = validate_trip_itinerary(make_trip_payload(3), TRIP_START, TRIP_END)
    await engine.replace_trip_itinerary(session, trip.trip_id, plan)
    return trip.trip_id


@pytest.fixture
def recorded_sleep():
    return RecordingSleep()


@pytest.fixture
def gemini_settings():
    return Settings(
        GEMINI_API_KEY="test-key",
        GEMINI_MODEL="",
        GEMINI_FALLBACK_MODELS=["model-a", "model-b"],
        GEMINI_RETRY_DELAYS=[1.0, 2.0, 4.0],
        LOG_FILE="",
    )
