"""
Itinerary synchronization engine.

Applies validated itineraries and day-level edits to the day / POI tables.
Each public operation is one unit of work: it commits on success, rolls back
on any failure and re-raises non-domain failures as `PersistenceError`.
Callers must not hold uncommitted writes on the session when calling in.
"""

import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from smartgo.core.errors import ConstraintViolationError, ItineraryError, NotFoundError, PersistenceError
from smartgo.core.generation.schema import DayPlan, PoiPlan, TripPlan
from smartgo.core.nlp.instruction_parser import inclusive_day_count
from smartgo.core.settings import get_settings
from smartgo.core.sync.ordering import plan_remap, validate_permutation
from smartgo.core.sync.schedule import chain_start_times, is_hhmm
from smartgo.db.models import DayPoi, ItineraryDay, Poi, PoiType, Trip, utcnow

logger = logging.getLogger(__name__)


@asynccontextmanager
async def unit_of_work(session: AsyncSession, operation: str):
    """Commit on success; roll back and wrap unexpected failures otherwise"""
    try:
        yield
        await session.commit()
    except ItineraryError:
        await session.rollback()
        raise
    except Exception as e:
        await session.rollback()
        logger.error(f"{operation} failed, transaction rolled back: {e}")
        raise PersistenceError(f"Failed to {operation.replace('_', ' ')}") from e


# ===== LOOKUPS =====

async def _get_trip(session: AsyncSession, trip_id: int) -> Trip:
    trip = await session.get(Trip, trip_id)
    if trip is None:
        raise NotFoundError("Trip not found")
    return trip


async def _get_day(session: AsyncSession, day_id: int) -> ItineraryDay:
    day = await session.get(ItineraryDay, day_id)
    if day is None:
        raise NotFoundError("Day not found")
    return day


async def _day_rows(session: AsyncSession, day_id: int) -> List[DayPoi]:
    result = await session.execute(
        select(DayPoi).where(DayPoi.day_id == day_id).order_by(DayPoi.visit_order)
    )
    return list(result.scalars().all())


async def _find_day(session: AsyncSession, trip_id: int, day_number: int) -> Optional[ItineraryDay]:
    result = await session.execute(
        select(ItineraryDay).where(
            ItineraryDay.trip_id == trip_id,
            ItineraryDay.day_number == day_number,
        )
    )
    return result.scalar_one_or_none()


async def _delete_days(session: AsyncSession, day_ids: Sequence[int]) -> None:
    if not day_ids:
        return
    await session.execute(delete(DayPoi).where(DayPoi.day_id.in_(day_ids)))
    await session.execute(delete(ItineraryDay).where(ItineraryDay.day_id.in_(day_ids)))


# ===== POIS =====

async def upsert_poi(
    session: AsyncSession,
    *,
    name: str,
    poi_type: PoiType = PoiType.OTHER,
    address: str = "",
    description: Optional[str] = None,
    place_id: Optional[str] = None,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
) -> Poi:
    """
    Find a POI by `place_id` (when given) or by `(name, address)`, refreshing
    its type and description, or insert a new one.

    Runs inside the caller's unit of work; only flushes.
    """
    address = address or ""
    if place_id:
        stmt = select(Poi).where(Poi.place_id == place_id)
    else:
        stmt = select(Poi).where(Poi.name == name, Poi.address == address).order_by(Poi.poi_id)
    existing = (await session.execute(stmt.limit(1))).scalars().first()

    if existing is not None:
        existing.type = poi_type
        if description is not None:
            existing.description = description
        if lat is not None and lng is not None:
            existing.lat, existing.lng = lat, lng
        return existing

    poi = Poi(
        name=name,
        type=poi_type,
        address=address,
        description=description,
        place_id=place_id or None,
        lat=lat,
        lng=lng,
    )
    session.add(poi)
    await session.flush()
    return poi


async def _insert_planned_pois(session: AsyncSession, day_id: int, pois: Sequence[PoiPlan]) -> None:
    for visit_order, planned in enumerate(pois, start=1):
        poi = await upsert_poi(
            session,
            name=planned.name,
            poi_type=planned.type,
            address=planned.address,
            description=planned.description,
        )
        session.add(DayPoi(
            day_id=day_id,
            poi_id=poi.poi_id,
            visit_order=visit_order,
            note=planned.note,
            start_time=planned.start_time,
            duration_min=planned.duration_min,
        ))
    await session.flush()


# ===== WHOLE TRIP / SINGLE DAY =====

async def replace_trip_itinerary(session: AsyncSession, trip_id: int, itinerary: TripPlan) -> None:
    """Replace every day of the trip with days 1..N of `itinerary`"""
    async with unit_of_work(session, "replace_trip_itinerary"):
        trip = await _get_trip(session, trip_id)

        result = await session.execute(
            select(ItineraryDay.day_id).where(ItineraryDay.trip_id == trip_id)
        )
        await _delete_days(session, list(result.scalars().all()))
        await session.flush()

        for planned_day in itinerary.days:
            day = ItineraryDay(
                trip_id=trip_id,
                day_number=planned_day.day_number,
                summary=planned_day.summary,
            )
            session.add(day)
            await session.flush()
            await _insert_planned_pois(session, day.day_id, planned_day.pois)

        trip.updated_at = utcnow()

    logger.info(f"Replaced itinerary of trip {trip_id} with {len(itinerary.days)} days")


async def replace_trip_day(session: AsyncSession, trip_id: int, day_number: int, day: DayPlan) -> int:
    """Replace the POIs of one day, leaving every other day untouched. Returns the day id."""
    async with unit_of_work(session, "replace_trip_day"):
        trip = await _get_trip(session, trip_id)
        existing = await _find_day(session, trip_id, day_number)
        if existing is None:
            existing = ItineraryDay(trip_id=trip_id, day_number=day_number, summary=day.summary)
            session.add(existing)
            await session.flush()
        else:
            existing.summary = day.summary
            await session.execute(delete(DayPoi).where(DayPoi.day_id == existing.day_id))
            await session.flush()

        await _insert_planned_pois(session, existing.day_id, day.pois)
        trip.updated_at = utcnow()
        day_id = existing.day_id

    logger.info(f"Replaced day {day_number} of trip {trip_id} with {len(day.pois)} POIs")
    return day_id


async def create_or_get_trip_day(session: AsyncSession, trip_id: int, day_number: int) -> ItineraryDay:
    if day_number < 1:
        raise ConstraintViolationError("day_number must be a positive integer")

    async with unit_of_work(session, "create_trip_day"):
        await _get_trip(session, trip_id)
        day = await _find_day(session, trip_id, day_number)
        if day is None:
            day = ItineraryDay(trip_id=trip_id, day_number=day_number)
            session.add(day)
            await session.flush()
            logger.info(f"Created day {day_number} for trip {trip_id}")
    return day


def check_trip_window(start_date: date, end_date: date) -> int:
    """Validate an inclusive trip window and return its day count"""
    if end_date < start_date:
        raise ConstraintViolationError("end_date cannot be earlier than start_date")
    day_count = inclusive_day_count(start_date, end_date)
    max_days = get_settings().MAX_TRIP_DAYS
    if day_count > max_days:
        raise ConstraintViolationError(f"Trips are limited to {max_days} days")
    return day_count


async def _days_beyond(session: AsyncSession, trip_id: int, day_count: int) -> List[int]:
    result = await session.execute(
        select(ItineraryDay.day_id).where(
            ItineraryDay.trip_id == trip_id,
            ItineraryDay.day_number > day_count,
        )
    )
    return list(result.scalars().all())


async def patch_trip_dates(
    session: AsyncSession,
    trip_id: int,
    start_date: date,
    end_date: date,
    drop_days: bool = True,
) -> Trip:
    """
    Move the trip window. Days past the new span are dropped unless
    `drop_days` is False, in which case they stay until
    `drop_days_outside_window` runs.
    """
    day_count = check_trip_window(start_date, end_date)

    async with unit_of_work(session, "patch_trip_dates"):
        trip = await _get_trip(session, trip_id)
        trip.start_date = start_date
        trip.end_date = end_date
        trip.updated_at = utcnow()

        dropped = await _days_beyond(session, trip_id, day_count) if drop_days else []
        await _delete_days(session, dropped)

    if dropped:
        logger.info(f"Trip {trip_id} shortened to {day_count} days, dropped {len(dropped)} day(s)")
    return trip


async def drop_days_outside_window(session: AsyncSession, trip_id: int) -> int:
    """Delete days numbered past the trip's current span; returns how many went"""
    async with unit_of_work(session, "drop_days_outside_window"):
        trip = await _get_trip(session, trip_id)
        day_count = inclusive_day_count(trip.start_date, trip.end_date)
        dropped = await _days_beyond(session, trip_id, day_count)
        await _delete_days(session, dropped)

    if dropped:
        logger.info(f"Trip {trip_id} trimmed to {day_count} days, dropped {len(dropped)} day(s)")
    return len(dropped)


# ===== VISIT ORDER =====

async def _apply_remap(session: AsyncSession, ordered_ids: Sequence[int], current: Dict[int, int]) -> bool:
    remap = plan_remap(current, ordered_ids)
    if not remap.changed:
        return False

    # phase 1 parks moving rows above every current and final order
    for day_poi_id, staging in remap.staging.items():
        await session.execute(
            update(DayPoi).where(DayPoi.day_poi_id == day_poi_id).values(visit_order=staging)
        )
    await session.flush()
    for day_poi_id, final in remap.final.items():
        await session.execute(
            update(DayPoi).where(DayPoi.day_poi_id == day_poi_id).values(visit_order=final)
        )
    await session.flush()
    return True


async def _recompute_schedule(
    session: AsyncSession,
    ordered_ids: Sequence[int],
    rows: Dict[int, DayPoi],
    first_start: Optional[str],
) -> None:
    settings = get_settings()
    times = chain_start_times(
        first_start,
        [rows[i].duration_min for i in ordered_ids],
        gap_min=settings.SCHEDULE_GAP_MIN,
        default_start=settings.SCHEDULE_DEFAULT_START,
        default_duration=settings.SCHEDULE_DEFAULT_DURATION_MIN,
    )
    for day_poi_id, start_time in zip(ordered_ids, times):
        await session.execute(
            update(DayPoi).where(DayPoi.day_poi_id == day_poi_id).values(start_time=start_time)
        )


async def reorder_day_pois(session: AsyncSession, day_id: int, ordered_day_poi_ids: Sequence[int]) -> None:
    """
    Set the day's visit order to `ordered_day_poi_ids` (which must be exactly
    the day's current rows) and re-chain the start times from the original
    first stop.
    """
    async with unit_of_work(session, "reorder_day_pois"):
        await _get_day(session, day_id)
        rows = await _day_rows(session, day_id)
        validate_permutation([r.day_poi_id for r in rows], ordered_day_poi_ids)

        by_id = {r.day_poi_id: r for r in rows}
        first_start = rows[0].start_time if rows else None
        current = {r.day_poi_id: r.visit_order for r in rows}

        await _apply_remap(session, list(ordered_day_poi_ids), current)
        await _recompute_schedule(session, list(ordered_day_poi_ids), by_id, first_start)

    logger.info(f"Reordered {len(ordered_day_poi_ids)} POIs of day {day_id}")


async def recompute_day_schedule(session: AsyncSession, day_id: int, first_start: Optional[str] = None) -> List[str]:
    """Re-chain start times of a day in visit order; returns the new times"""
    async with unit_of_work(session, "recompute_day_schedule"):
        await _get_day(session, day_id)
        rows = await _day_rows(session, day_id)
        if first_start is None and rows:
            first_start = rows[0].start_time
        ordered = [r.day_poi_id for r in rows]
        await _recompute_schedule(session, ordered, {r.day_poi_id: r for r in rows}, first_start)

    result = await session.execute(
        select(DayPoi.start_time).where(DayPoi.day_id == day_id).order_by(DayPoi.visit_order)
    )
    return list(result.scalars().all())


async def add_day_poi(
    session: AsyncSession,
    day_id: int,
    poi_fields: Dict,
    note: Optional[str] = None,
    start_time: Optional[str] = None,
    duration_min: Optional[int] = None,
) -> DayPoi:
    """Upsert the POI described by `poi_fields` and append it to the day"""
    if start_time is not None and not is_hhmm(start_time):
        raise ConstraintViolationError("start_time must be HH:MM (24-hour)")
    if duration_min is not None and duration_min <= 0:
        raise ConstraintViolationError("duration_min must be a positive integer")

    async with unit_of_work(session, "add_day_poi"):
        await _get_day(session, day_id)
        poi = await upsert_poi(session, **poi_fields)

        max_order = (await session.execute(
            select(func.max(DayPoi.visit_order)).where(DayPoi.day_id == day_id)
        )).scalar()
        day_poi = DayPoi(
            day_id=day_id,
            poi_id=poi.poi_id,
            visit_order=(max_order or 0) + 1,
            note=note,
            start_time=start_time,
            duration_min=duration_min,
        )
        session.add(day_poi)
        await session.flush()

    logger.info(f"Added POI {poi.poi_id} to day {day_id} at position {day_poi.visit_order}")
    return day_poi


async def delete_day_poi(session: AsyncSession, day_poi_id: int) -> int:
    """Remove a stop and close the gap in the visit order. Returns the day id."""
    async with unit_of_work(session, "delete_day_poi"):
        target = await session.get(DayPoi, day_poi_id)
        if target is None:
            raise NotFoundError("Day POI not found")
        day_id = target.day_id

        await session.execute(delete(DayPoi).where(DayPoi.day_poi_id == day_poi_id))
        await session.flush()

        remaining = [
            r for r in await _day_rows(session, day_id) if r.day_poi_id != day_poi_id
        ]
        await _apply_remap(
            session,
            [r.day_poi_id for r in remaining],
            {r.day_poi_id: r.visit_order for r in remaining},
        )

    logger.info(f"Deleted day POI {day_poi_id} from day {day_id}")
    return day_id
