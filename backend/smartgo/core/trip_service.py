"""
Trip service: loads a trip, asks the generation client for an itinerary and
hands the validated result to the sync engine.
"""

import logging
from datetime import date
from typing import Any, AsyncIterator, Dict, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from smartgo.core.errors import ConstraintViolationError
from smartgo.core.generation.client import GenerationClient
from smartgo.core.generation.prompts import DaySummary, TripContext
from smartgo.core.sync import engine
from smartgo.db import crud
from smartgo.db.models import DayPoi, ItineraryDay, Poi

logger = logging.getLogger(__name__)


class TripService:
    """Request-scoped: bound to one session and an optional owner"""

    def __init__(self, session: AsyncSession, generator: GenerationClient, user_id: Optional[int] = None):
        self.session = session
        self.generator = generator
        self.user_id = user_id

    async def build_context(self, trip_id: int) -> TripContext:
        trip = await crud.get_trip(self.session, trip_id, self.user_id)

        rows = await self.session.execute(
            select(ItineraryDay.day_number, ItineraryDay.summary, Poi.name)
            .outerjoin(DayPoi, DayPoi.day_id == ItineraryDay.day_id)
            .outerjoin(Poi, Poi.poi_id == DayPoi.poi_id)
            .where(ItineraryDay.trip_id == trip_id)
            .order_by(ItineraryDay.day_number, DayPoi.visit_order)
        )
        days: Dict[int, DaySummary] = {}
        for day_number, summary, poi_name in rows.all():
            day = days.setdefault(day_number, DaySummary(day_number=day_number, summary=summary))
            if poi_name:
                day.poi_names.append(poi_name)

        context = TripContext(
            trip_id=trip.trip_id,
            title=trip.title,
            destination=trip.destination,
            start_date=trip.start_date,
            end_date=trip.end_date,
            preferences=trip.preferences,
            description=trip.description,
            note=trip.note,
            days=list(days.values()),
        )
        # days left past a shortened window until regeneration succeeds
        context.days = [d for d in context.days if d.day_number <= context.day_count]
        return context

    async def trip_detail(self, trip_id: int) -> Dict[str, Any]:
        return await crud.get_trip_detail(self.session, trip_id, self.user_id)

    async def generate_trip(self, trip_id: int, edit_request: Optional[str] = None) -> Dict[str, Any]:
        """Regenerate the whole trip and return the refreshed detail"""
        context = await self.build_context(trip_id)
        plan = await self.generator.generate_trip_itinerary(context, edit_request)
        await engine.replace_trip_itinerary(self.session, trip_id, plan)
        return await self.trip_detail(trip_id)

    async def generate_day(self, trip_id: int, day_number: int, edit_request: Optional[str] = None) -> Dict[str, Any]:
        """Regenerate one day and return the refreshed detail"""
        context = await self.build_context(trip_id)
        if not 1 <= day_number <= context.day_count:
            raise ConstraintViolationError(
                f"day_number must be between 1 and {context.day_count} for this trip"
            )
        plan = await self.generator.generate_day_itinerary(context, day_number, edit_request)
        await engine.replace_trip_day(self.session, trip_id, day_number, plan)
        return await self.trip_detail(trip_id)

    async def patch_dates(self, trip_id: int, start_date: date, end_date: date, drop_days: bool = True) -> None:
        await crud.get_trip(self.session, trip_id, self.user_id)
        await engine.patch_trip_dates(self.session, trip_id, start_date, end_date, drop_days=drop_days)

    async def drop_days_outside_window(self, trip_id: int) -> int:
        await crud.get_trip(self.session, trip_id, self.user_id)
        return await engine.drop_days_outside_window(self.session, trip_id)

    async def chat_reply(self, trip_id: int, message: str, history: Sequence[dict] = ()) -> str:
        context = await self.build_context(trip_id)
        return await self.generator.chat_reply(context, message, history)

    async def stream_chat_reply(self, trip_id: int, message: str, history: Sequence[dict] = ()) -> AsyncIterator[str]:
        context = await self.build_context(trip_id)
        async for chunk in self.generator.stream_chat_reply(context, message, history):
            yield chunk
