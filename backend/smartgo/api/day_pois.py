import logging

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from smartgo.api.deps import UPDATE_LIMIT, limiter
from smartgo.api.schemas import (
    DayPoiCreate, DayPoiNoteUpdate, DayPoiRead, DayPoiScheduleUpdate, ReorderRequest, SuccessResponse,
)
from smartgo.core.sync import engine
from smartgo.db import crud
from smartgo.db.session import get_db_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["day-pois"])


@router.patch("/days/{day_id}/pois/reorder", response_model=SuccessResponse)
@limiter.limit(UPDATE_LIMIT)
async def reorder_day_pois(
    request: Request,
    day_id: int,
    payload: ReorderRequest,
    session: AsyncSession = Depends(get_db_session),
):
    """Set the visit order of a day and re-chain its start times"""
    await engine.reorder_day_pois(session, day_id, payload.ordered_day_poi_ids)
    return SuccessResponse()


@router.post("/days/{day_id}/pois", response_model=DayPoiRead, status_code=status.HTTP_201_CREATED)
@limiter.limit(UPDATE_LIMIT)
async def add_day_poi(
    request: Request,
    day_id: int,
    payload: DayPoiCreate,
    session: AsyncSession = Depends(get_db_session),
):
    """Append a stop to the end of a day, reusing a known POI when it matches"""
    day_poi = await engine.add_day_poi(
        session,
        day_id,
        payload.poi_fields(),
        note=payload.note,
        start_time=payload.start_time,
        duration_min=payload.duration_min,
    )
    return DayPoiRead(
        day_poi_id=day_poi.day_poi_id,
        day_id=day_poi.day_id,
        poi_id=day_poi.poi_id,
        visit_order=day_poi.visit_order,
        note=day_poi.note,
        start_time=day_poi.start_time,
        duration_min=day_poi.duration_min,
    )


@router.delete("/day-pois/{day_poi_id}", response_model=SuccessResponse)
@limiter.limit(UPDATE_LIMIT)
async def delete_day_poi(request: Request, day_poi_id: int, session: AsyncSession = Depends(get_db_session)):
    await engine.delete_day_poi(session, day_poi_id)
    return SuccessResponse()


@router.patch("/day-pois/{day_poi_id}", response_model=SuccessResponse)
@limiter.limit(UPDATE_LIMIT)
async def update_day_poi_note(
    request: Request,
    day_poi_id: int,
    payload: DayPoiNoteUpdate,
    session: AsyncSession = Depends(get_db_session),
):
    await crud.update_day_poi_note(session, day_poi_id, payload.note)
    return SuccessResponse()


@router.patch("/day-pois/{day_poi_id}/schedule", response_model=SuccessResponse)
@limiter.limit(UPDATE_LIMIT)
async def update_day_poi_schedule(
    request: Request,
    day_poi_id: int,
    payload: DayPoiScheduleUpdate,
    session: AsyncSession = Depends(get_db_session),
):
    """Set or clear the start time and duration of one stop"""
    await crud.update_day_poi_schedule(session, day_poi_id, payload.start_time, payload.duration_min)
    return SuccessResponse()
