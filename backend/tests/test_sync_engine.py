from datetime import date
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from smartgo.core.errors import ConstraintViolationError, NotFoundError, PersistenceError
from smartgo.core.generation.schema import validate_day_itinerary, validate_trip_itinerary
from smartgo.core.sync import engine
from smartgo.db import crud
from smartgo.db.models import DayPoi, ItineraryDay, Poi, PoiType


async def day_ids_by_number(session, trip_id):
    result = await session.execute(
        select(ItineraryDay.day_number, ItineraryDay.day_id)
        .where(ItineraryDay.trip_id == trip_id)
        .order_by(ItineraryDay.day_number)
    )
    return dict(result.all())


async def stops(session, day_id):
    """(day_poi_id, visit_order, start_time, duration_min, poi name) in visit order"""
    result = await session.execute(
        select(DayPoi.day_poi_id, DayPoi.visit_order, DayPoi.start_time, DayPoi.duration_min, Poi.name)
        .join(Poi, Poi.poi_id == DayPoi.poi_id)
        .where(DayPoi.day_id == day_id)
        .order_by(DayPoi.visit_order)
    )
    return result.all()


async def count(session, model):
    return (await session.execute(select(func.count()).select_from(model))).scalar()


@pytest.fixture
def single_day_trip(session, day_payload):
    """Factory: one-day trip whose stops have the given durations; returns (trip_id, day_id)"""

    async def create(durations=(90, 60, 30)):
        trip = await crud.create_trip(
            session,
            user_id=1,
            title="Osaka day",
            destination="Osaka",
            start_date=date(2026, 4, 1),
            end_date=date(2026, 4, 1),
        )
        plan = validate_day_itinerary(day_payload(1, durations=list(durations)), 1)
        day_id = await engine.replace_trip_day(session, trip.trip_id, 1, plan)
        return trip.trip_id, day_id

    return create


class TestReplaceItinerary:
    @pytest.mark.asyncio
    async def test_days_are_one_to_n(self, session, seeded_trip):
        days = await day_ids_by_number(session, seeded_trip)

        assert list(days) == [1, 2, 3]
        for day_number, day_id in days.items():
            rows = await stops(session, day_id)
            assert [r.visit_order for r in rows] == [1, 2, 3]
            assert rows[0].name == f"Stop {day_number}-0"

    @pytest.mark.asyncio
    async def test_regeneration_replaces_every_day(self, session, seeded_trip, trip_payload):
        plan = validate_trip_itinerary(trip_payload(3, prefix="Alt"), date(2026, 3, 1), date(2026, 3, 3))

        await engine.replace_trip_itinerary(session, seeded_trip, plan)

        days = await day_ids_by_number(session, seeded_trip)
        assert list(days) == [1, 2, 3]
        assert [r.name for r in await stops(session, days[2])] == ["Alt 2-0", "Alt 2-1", "Alt 2-2"]
        assert await count(session, DayPoi) == 9

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_days(self, session, seeded_trip, trip_payload):
        before = await day_ids_by_number(session, seeded_trip)
        plan = validate_trip_itinerary(trip_payload(3, prefix="Alt"), date(2026, 3, 1), date(2026, 3, 3))

        with patch.object(engine, "_insert_planned_pois", AsyncMock(side_effect=RuntimeError("disk full"))):
            with pytest.raises(PersistenceError, match="Failed to replace trip itinerary"):
                await engine.replace_trip_itinerary(session, seeded_trip, plan)

        assert await day_ids_by_number(session, seeded_trip) == before
        assert [r.name for r in await stops(session, before[1])] == ["Stop 1-0", "Stop 1-1", "Stop 1-2"]

    @pytest.mark.asyncio
    async def test_unknown_trip(self, session, trip_payload):
        plan = validate_trip_itinerary(trip_payload(1), date(2026, 3, 1), date(2026, 3, 1))

        with pytest.raises(NotFoundError):
            await engine.replace_trip_itinerary(session, 999, plan)


class TestReplaceDay:
    @pytest.mark.asyncio
    async def test_other_days_untouched(self, session, seeded_trip, day_payload):
        days = await day_ids_by_number(session, seeded_trip)
        day_one_before = await stops(session, days[1])
        day_three_before = await stops(session, days[3])

        plan = validate_day_itinerary(day_payload(2, poi_count=4, prefix="Tea"), 2)
        day_id = await engine.replace_trip_day(session, seeded_trip, 2, plan)

        assert day_id == days[2]
        assert await stops(session, days[1]) == day_one_before
        assert await stops(session, days[3]) == day_three_before
        rows = await stops(session, days[2])
        assert [r.name for r in rows] == ["Tea 2-0", "Tea 2-1", "Tea 2-2", "Tea 2-3"]
        assert [r.visit_order for r in rows] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_missing_day_is_created(self, session, seeded_trip, day_payload):
        await engine.patch_trip_dates(session, seeded_trip, date(2026, 3, 1), date(2026, 3, 4))

        plan = validate_day_itinerary(day_payload(4), 4)
        await engine.replace_trip_day(session, seeded_trip, 4, plan)

        assert list(await day_ids_by_number(session, seeded_trip)) == [1, 2, 3, 4]


class TestTripDates:
    @pytest.mark.asyncio
    async def test_shrinking_drops_trailing_days(self, session, seeded_trip):
        days = await day_ids_by_number(session, seeded_trip)

        trip = await engine.patch_trip_dates(session, seeded_trip, date(2026, 3, 1), date(2026, 3, 2))

        assert trip.end_date == date(2026, 3, 2)
        assert list(await day_ids_by_number(session, seeded_trip)) == [1, 2]
        assert await stops(session, days[3]) == []

    @pytest.mark.asyncio
    async def test_deferred_drop(self, session, seeded_trip):
        days = await day_ids_by_number(session, seeded_trip)

        await engine.patch_trip_dates(session, seeded_trip, date(2026, 3, 1), date(2026, 3, 2), drop_days=False)
        assert list(await day_ids_by_number(session, seeded_trip)) == [1, 2, 3]
        assert len(await stops(session, days[3])) == 3

        assert await engine.drop_days_outside_window(session, seeded_trip) == 1
        assert list(await day_ids_by_number(session, seeded_trip)) == [1, 2]
        assert await engine.drop_days_outside_window(session, seeded_trip) == 0

    @pytest.mark.asyncio
    async def test_growing_keeps_days(self, session, seeded_trip):
        await engine.patch_trip_dates(session, seeded_trip, date(2026, 2, 28), date(2026, 3, 5))
        assert list(await day_ids_by_number(session, seeded_trip)) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_invalid_windows(self, session, seeded_trip):
        with pytest.raises(ConstraintViolationError, match="earlier than start_date"):
            await engine.patch_trip_dates(session, seeded_trip, date(2026, 3, 3), date(2026, 3, 1))
        with pytest.raises(ConstraintViolationError, match="limited to 31 days"):
            await engine.patch_trip_dates(session, seeded_trip, date(2026, 3, 1), date(2026, 4, 30))

        assert list(await day_ids_by_number(session, seeded_trip)) == [1, 2, 3]


class TestCreateOrGetDay:
    @pytest.mark.asyncio
    async def test_idempotent(self, session, seeded_trip):
        first = await engine.create_or_get_trip_day(session, seeded_trip, 5)
        second = await engine.create_or_get_trip_day(session, seeded_trip, 5)

        assert first.day_id == second.day_id
        existing = await engine.create_or_get_trip_day(session, seeded_trip, 1)
        assert existing.day_id == (await day_ids_by_number(session, seeded_trip))[1]

    @pytest.mark.asyncio
    async def test_rejects_non_positive_day(self, session, seeded_trip):
        with pytest.raises(ConstraintViolationError):
            await engine.create_or_get_trip_day(session, seeded_trip, 0)


class TestReorder:
    @pytest.mark.asyncio
    async def test_reorder_rechains_start_times(self, session, single_day_trip):
        _, day_id = await single_day_trip(durations=(90, 60, 30))
        a, b, c = [r.day_poi_id for r in await stops(session, day_id)]

        await engine.reorder_day_pois(session, day_id, [c, b, a])

        rows = await stops(session, day_id)
        assert [r.day_poi_id for r in rows] == [c, b, a]
        assert [r.visit_order for r in rows] == [1, 2, 3]
        assert [r.start_time for r in rows] == ["09:00", "09:45", "11:00"]

    @pytest.mark.asyncio
    async def test_reorder_is_idempotent(self, session, single_day_trip):
        _, day_id = await single_day_trip(durations=(45, 120, 30))
        a, b, c = [r.day_poi_id for r in await stops(session, day_id)]

        await engine.reorder_day_pois(session, day_id, [b, c, a])
        once = await stops(session, day_id)
        await engine.reorder_day_pois(session, day_id, [b, c, a])

        assert await stops(session, day_id) == once

    @pytest.mark.asyncio
    async def test_gaps_follow_previous_duration(self, session, single_day_trip):
        _, day_id = await single_day_trip(durations=(45, 120, 30, 75))
        ids = [r.day_poi_id for r in await stops(session, day_id)]

        await engine.reorder_day_pois(session, day_id, [ids[2], ids[0], ids[3], ids[1]])

        rows = await stops(session, day_id)
        minutes = [int(r.start_time[:2]) * 60 + int(r.start_time[3:]) for r in rows]
        for previous, current, row in zip(minutes, minutes[1:], rows):
            assert current - previous == row.duration_min + 15

    @pytest.mark.asyncio
    @pytest.mark.parametrize("make_order", [
        lambda a, b, c: [a, b],
        lambda a, b, c: [a, b, c, 9999],
        lambda a, b, c: [a, b, 9999],
        lambda a, b, c: [a, a, b],
    ])
    async def test_invalid_order_changes_nothing(self, session, single_day_trip, make_order):
        _, day_id = await single_day_trip()
        before = await stops(session, day_id)
        a, b, c = [r.day_poi_id for r in before]

        with pytest.raises(ConstraintViolationError):
            await engine.reorder_day_pois(session, day_id, make_order(a, b, c))

        assert await stops(session, day_id) == before

    @pytest.mark.asyncio
    async def test_unknown_day(self, session):
        with pytest.raises(NotFoundError, match="Day not found"):
            await engine.reorder_day_pois(session, 9999, [1])

    @pytest.mark.asyncio
    async def test_recompute_from_new_first_start(self, session, single_day_trip):
        _, day_id = await single_day_trip(durations=(60, 60, 60))

        times = await engine.recompute_day_schedule(session, day_id, first_start="10:00")

        assert times == ["10:00", "11:15", "12:30"]
        assert [r.start_time for r in await stops(session, day_id)] == times


class TestAddAndDelete:
    @pytest.mark.asyncio
    async def test_delete_middle_closes_gap(self, session, single_day_trip):
        _, day_id = await single_day_trip()
        a, b, c = [r.day_poi_id for r in await stops(session, day_id)]

        assert await engine.delete_day_poi(session, b) == day_id

        rows = await stops(session, day_id)
        assert [(r.day_poi_id, r.visit_order) for r in rows] == [(a, 1), (c, 2)]

    @pytest.mark.asyncio
    async def test_delete_unknown(self, session):
        with pytest.raises(NotFoundError, match="Day POI not found"):
            await engine.delete_day_poi(session, 4242)

    @pytest.mark.asyncio
    async def test_add_appends_and_reuses_poi(self, session, single_day_trip):
        _, day_id = await single_day_trip()
        poi_count = await count(session, Poi)
        first_poi_id = (await session.execute(
            select(DayPoi.poi_id).where(DayPoi.day_id == day_id, DayPoi.visit_order == 1)
        )).scalar()

        day_poi = await engine.add_day_poi(
            session,
            day_id,
            {"name": "Stop 1-0", "poi_type": PoiType.FOOD, "address": "0 Main St"},
            note="again for dinner",
            start_time="19:00",
            duration_min=90,
        )

        assert day_poi.visit_order == 4
        assert day_poi.poi_id == first_poi_id
        assert await count(session, Poi) == poi_count
        rows = await stops(session, day_id)
        assert [r.visit_order for r in rows] == [1, 2, 3, 4]
        assert rows[-1].start_time == "19:00"

    @pytest.mark.asyncio
    async def test_add_new_poi(self, session, single_day_trip):
        _, day_id = await single_day_trip()
        poi_count = await count(session, Poi)

        await engine.add_day_poi(session, day_id, {"name": "Dotonbori", "address": "Chuo Ward"})

        assert await count(session, Poi) == poi_count + 1

    @pytest.mark.asyncio
    async def test_add_validates_schedule(self, session, single_day_trip):
        _, day_id = await single_day_trip()

        with pytest.raises(ConstraintViolationError, match="HH:MM"):
            await engine.add_day_poi(session, day_id, {"name": "Late"}, start_time="25:00")
        with pytest.raises(ConstraintViolationError, match="positive"):
            await engine.add_day_poi(session, day_id, {"name": "Late"}, duration_min=0)

    @pytest.mark.asyncio
    async def test_upsert_by_place_id(self, session):
        first = await engine.upsert_poi(session, name="Osaka Castle", place_id="place-1")
        second = await engine.upsert_poi(
            session, name="Osaka-jo", place_id="place-1", poi_type=PoiType.CULTURE, lat=34.68, lng=135.52,
        )
        await session.commit()

        assert first.poi_id == second.poi_id
        assert second.type is PoiType.CULTURE
        assert (second.lat, second.lng) == (34.68, 135.52)
