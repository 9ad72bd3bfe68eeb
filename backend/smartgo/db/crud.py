"""
CRUD operations for trips and day POIs.

Writes that touch visit order or the day set go through
`smartgo.core.sync.engine`; this module covers the plain field updates
and the nested trip detail read.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from smartgo.core.errors import ConstraintViolationError, NotFoundError
from smartgo.core.sync.engine import check_trip_window, unit_of_work
from smartgo.core.sync.schedule import is_hhmm
from smartgo.db.models import DayPoi, ItineraryDay, Poi, Trip, utcnow

logger = logging.getLogger(__name__)

TRIP_UPDATABLE_FIELDS = ("title", "destination", "preferences", "description", "note")


# ===== TRIP CRUD OPERATIONS =====

async def create_trip(
    session: AsyncSession,
    user_id: int,
    title: str,
    destination: str,
    start_date: date,
    end_date: date,
    preferences: Optional[str] = None,
    description: Optional[str] = None,
    note: Optional[str] = None,
) -> Trip:
    """Create a new trip with no days"""
    check_trip_window(start_date, end_date)
    async with unit_of_work(session, "create_trip"):
        trip = Trip(
            user_id=user_id,
            title=title,
            destination=destination,
            start_date=start_date,
            end_date=end_date,
            preferences=preferences,
            description=description,
            note=note,
        )
        session.add(trip)
        await session.flush()
    logger.info(f"Created trip {trip.trip_id} for user {user_id}")
    return trip


async def get_trip(session: AsyncSession, trip_id: int, user_id: Optional[int] = None) -> Trip:
    """Get a trip by id, optionally scoped to its owner"""
    trip = await session.get(Trip, trip_id)
    if trip is None or (user_id is not None and trip.user_id != user_id):
        raise NotFoundError("Trip not found")
    return trip


async def list_trips(session: AsyncSession, user_id: int, skip: int = 0, limit: int = 100) -> List[Trip]:
    """Get a user's trips, newest first"""
    result = await session.execute(
        select(Trip)
        .where(Trip.user_id == user_id)
        .order_by(Trip.trip_id.desc())
        .offset(skip)
        .limit(limit)
    )
    return list(result.scalars().all())


async def update_trip(session: AsyncSession, trip_id: int, user_id: int, **fields: Any) -> Trip:
    """Update descriptive trip fields; dates are patched through the sync engine"""
    unknown = set(fields) - set(TRIP_UPDATABLE_FIELDS)
    if unknown:
        raise ConstraintViolationError(f"Fields cannot be updated here: {', '.join(sorted(unknown))}")

    async with unit_of_work(session, "update_trip"):
        trip = await get_trip(session, trip_id, user_id)
        for key, value in fields.items():
            setattr(trip, key, value)
        trip.updated_at = utcnow()
    logger.info(f"Updated trip {trip_id}: {', '.join(fields) or 'no fields'}")
    return trip


async def delete_trip(session: AsyncSession, trip_id: int, user_id: int) -> None:
    """Delete a trip with its days and day POIs; shared POIs stay"""
    async with unit_of_work(session, "delete_trip"):
        await get_trip(session, trip_id, user_id)
        day_ids = select(ItineraryDay.day_id).where(ItineraryDay.trip_id == trip_id)
        await session.execute(
            delete(DayPoi).where(DayPoi.day_id.in_(day_ids)).execution_options(synchronize_session=False)
        )
        await session.execute(delete(ItineraryDay).where(ItineraryDay.trip_id == trip_id))
        await session.execute(delete(Trip).where(Trip.trip_id == trip_id))
    logger.info(f"Deleted trip {trip_id}")


def _day_poi_dict(day_poi: DayPoi, poi: Poi) -> Dict[str, Any]:
    return {
        "day_poi_id": day_poi.day_poi_id,
        "visit_order": day_poi.visit_order,
        "note": day_poi.note,
        "start_time": day_poi.start_time,
        "duration_min": day_poi.duration_min,
        "poi": {
            "poi_id": poi.poi_id,
            "name": poi.name,
            "type": poi.type.value if poi.type else None,
            "address": poi.address,
            "lat": poi.lat,
            "lng": poi.lng,
            "description": poi.description,
        },
    }


async def get_trip_detail(session: AsyncSession, trip_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
    """Trip with its days ordered by day number and stops ordered by visit order"""
    trip = await get_trip(session, trip_id, user_id)

    days_result = await session.execute(
        select(ItineraryDay)
        .where(ItineraryDay.trip_id == trip_id)
        .order_by(ItineraryDay.day_number)
        .execution_options(populate_existing=True)
    )
    days = list(days_result.scalars().all())

    stops: Dict[int, List[Dict[str, Any]]] = {day.day_id: [] for day in days}
    if days:
        rows = await session.execute(
            select(DayPoi, Poi)
            .join(Poi, Poi.poi_id == DayPoi.poi_id)
            .where(DayPoi.day_id.in_(list(stops)))
            .order_by(DayPoi.day_id, DayPoi.visit_order)
            .execution_options(populate_existing=True)
        )
        for day_poi, poi in rows.all():
            stops[day_poi.day_id].append(_day_poi_dict(day_poi, poi))

    return {
        "trip_id": trip.trip_id,
        "user_id": trip.user_id,
        "title": trip.title,
        "destination": trip.destination,
        "start_date": trip.start_date,
        "end_date": trip.end_date,
        "preferences": trip.preferences,
        "description": trip.description,
        "note": trip.note,
        "days": [
            {
                "day_id": day.day_id,
                "day_number": day.day_number,
                "summary": day.summary,
                "pois": stops[day.day_id],
            }
            for day in days
        ],
    }


# ===== DAY POI OPERATIONS =====

async def get_day_poi(session: AsyncSession, day_poi_id: int) -> DayPoi:
    day_poi = await session.get(DayPoi, day_poi_id)
    if day_poi is None:
        raise NotFoundError("Day POI not found")
    return day_poi


async def update_day_poi_note(session: AsyncSession, day_poi_id: int, note: Optional[str]) -> DayPoi:
    async with unit_of_work(session, "update_day_poi_note"):
        day_poi = await get_day_poi(session, day_poi_id)
        day_poi.note = note
    return day_poi


async def update_day_poi_schedule(
    session: AsyncSession,
    day_poi_id: int,
    start_time: Optional[str],
    duration_min: Optional[int],
) -> DayPoi:
    """Set (or clear, with None) the start time and duration of one stop"""
    if start_time is not None and not is_hhmm(start_time):
        raise ConstraintViolationError("start_time must be in HH:MM format")
    if duration_min is not None and duration_min <= 0:
        raise ConstraintViolationError("duration_min must be a positive integer or null")

    async with unit_of_work(session, "update_day_poi_schedule"):
        day_poi = await get_day_poi(session, day_poi_id)
        day_poi.start_time = start_time
        day_poi.duration_min = duration_min
    return day_poi
