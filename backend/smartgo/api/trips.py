import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from smartgo.api.deps import (
    GENERATE_LIMIT, READ_LIMIT, UPDATE_LIMIT,
    get_current_user_id, get_optional_user_id, get_trip_service, limiter,
)
from smartgo.api.schemas import (
    DayCreate, DayRead, GenerateDayRequest, GenerateTripRequest,
    SuccessResponse, TripCreate, TripDetail, TripRead, TripUpdate,
)
from smartgo.core.sync import engine
from smartgo.core.trip_service import TripService
from smartgo.db import crud
from smartgo.db.session import get_db_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trips", tags=["trips"])


@asynccontextmanager
async def performance_timer(operation: str):
    """Context manager for timing operations"""
    start = time.time()
    try:
        yield
    finally:
        duration = time.time() - start
        logger.info(f"{operation} completed in {duration:.2f}s")


@router.post("", response_model=TripRead, status_code=status.HTTP_201_CREATED)
@limiter.limit(UPDATE_LIMIT)
async def create_trip(
    request: Request,
    payload: TripCreate,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Create an empty trip for the caller"""
    return await crud.create_trip(session, user_id=user_id, **payload.model_dump())


@router.get("", response_model=List[TripRead])
@limiter.limit(READ_LIMIT)
async def list_trips(
    request: Request,
    skip: int = 0,
    limit: int = 100,
    user_id: Optional[int] = Depends(get_optional_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    if user_id is None:
        return []
    return await crud.list_trips(session, user_id, skip=skip, limit=min(limit, 100))


@router.get("/{trip_id}", response_model=TripDetail)
@limiter.limit(READ_LIMIT)
async def read_trip(request: Request, trip_id: int, service: TripService = Depends(get_trip_service)):
    """Trip with days and stops in visit order"""
    return await service.trip_detail(trip_id)


@router.patch("/{trip_id}", response_model=TripDetail)
@limiter.limit(UPDATE_LIMIT)
async def update_trip(
    request: Request,
    trip_id: int,
    payload: TripUpdate,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Patch trip fields. A date change goes through the sync engine, which
    drops days that no longer fit in the window.
    """
    changes = payload.model_dump(exclude_unset=True)
    trip = await crud.get_trip(session, trip_id, user_id)

    if "start_date" in changes or "end_date" in changes:
        start_date = changes.pop("start_date", None) or trip.start_date
        end_date = changes.pop("end_date", None) or trip.end_date
        await engine.patch_trip_dates(session, trip_id, start_date, end_date)

    if changes:
        await crud.update_trip(session, trip_id, user_id, **changes)

    return await crud.get_trip_detail(session, trip_id, user_id)


@router.delete("/{trip_id}", response_model=SuccessResponse)
@limiter.limit(UPDATE_LIMIT)
async def delete_trip(
    request: Request,
    trip_id: int,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    await crud.delete_trip(session, trip_id, user_id)
    return SuccessResponse()


@router.post("/{trip_id}/days", response_model=DayRead)
@limiter.limit(UPDATE_LIMIT)
async def create_or_get_day(
    request: Request,
    trip_id: int,
    payload: DayCreate,
    user_id: Optional[int] = Depends(get_optional_user_id),
    session: AsyncSession = Depends(get_db_session),
):
    """Return the trip's day with this number, creating it when missing"""
    await crud.get_trip(session, trip_id, user_id)
    day = await engine.create_or_get_trip_day(session, trip_id, payload.day_number)
    return DayRead(day_id=day.day_id, trip_id=day.trip_id, day_number=day.day_number, summary=day.summary)


@router.post(
    "/{trip_id}/ai-generate",
    response_model=TripDetail,
    responses={
        429: {"description": "Rate limit exceeded"},
        502: {"description": "No working model or invalid generated itinerary"},
        503: {"description": "Model provider busy, retry later"},
    },
    summary="Regenerate the whole itinerary",
)
@limiter.limit(GENERATE_LIMIT)
async def generate_trip_itinerary(
    request: Request,
    trip_id: int,
    payload: Optional[GenerateTripRequest] = None,
    service: TripService = Depends(get_trip_service),
):
    async with performance_timer("trip_generation"):
        edit_request = payload.user_request if payload else None
        return await service.generate_trip(trip_id, edit_request)


@router.post(
    "/{trip_id}/ai-generate-day",
    response_model=TripDetail,
    responses={
        429: {"description": "Rate limit exceeded"},
        502: {"description": "No working model or invalid generated day"},
        503: {"description": "Model provider busy, retry later"},
    },
    summary="Regenerate a single day",
)
@limiter.limit(GENERATE_LIMIT)
async def generate_trip_day(
    request: Request,
    trip_id: int,
    payload: GenerateDayRequest,
    service: TripService = Depends(get_trip_service),
):
    async with performance_timer("day_generation"):
        return await service.generate_day(trip_id, payload.day_number, payload.user_request)
