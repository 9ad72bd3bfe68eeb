from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator, model_validator

from smartgo.core.sync.schedule import is_hhmm
from smartgo.db.models import PoiType


# ===== TRIPS =====

class TripCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    destination: str = Field(..., min_length=1, max_length=200)
    start_date: date
    end_date: date
    preferences: Optional[str] = None
    description: Optional[str] = None
    note: Optional[str] = None

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date cannot be earlier than start_date")
        return self


class TripUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    destination: Optional[str] = Field(None, min_length=1, max_length=200)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    preferences: Optional[str] = None
    description: Optional[str] = None
    note: Optional[str] = None


class TripRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    trip_id: int
    user_id: int
    title: str
    destination: str
    start_date: date
    end_date: date
    preferences: Optional[str] = None
    description: Optional[str] = None
    note: Optional[str] = None
    created_at: Optional[datetime] = None


class PoiRead(BaseModel):
    poi_id: int
    name: str
    type: Optional[str] = None
    address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    description: Optional[str] = None


class DayPoiRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    day_poi_id: int
    day_id: Optional[int] = None
    poi_id: Optional[int] = None
    visit_order: int
    note: Optional[str] = None
    start_time: Optional[str] = None
    duration_min: Optional[int] = None
    poi: Optional[PoiRead] = None


class DayRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    day_id: int
    trip_id: Optional[int] = None
    day_number: int
    summary: Optional[str] = None
    pois: List[DayPoiRead] = []


class TripDetail(BaseModel):
    trip_id: int
    user_id: int
    title: str
    destination: str
    start_date: date
    end_date: date
    preferences: Optional[str] = None
    description: Optional[str] = None
    note: Optional[str] = None
    days: List[DayRead] = []


class DayCreate(BaseModel):
    day_number: int = Field(..., ge=1, le=31)


# ===== GENERATION =====

class GenerateTripRequest(BaseModel):
    user_request: Optional[str] = Field(None, max_length=2000)


class GenerateDayRequest(BaseModel):
    day_number: int = Field(..., ge=1)
    user_request: Optional[str] = Field(None, max_length=2000)


# ===== CHAT =====

class ChatTurn(BaseModel):
    role: str = Field(..., pattern="^(user|assistant)$")
    content: str


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4000)
    history: List[ChatTurn] = []

    @field_validator("message")
    @classmethod
    def strip_message(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("message cannot be blank")
        return v


class ChatReply(BaseModel):
    reply: str


class ChatMessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    role: str
    content: str
    created_at: datetime


class IntentPreview(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    latest_text: str
    next_start_date: Optional[date] = None
    next_end_date: Optional[date] = None
    has_change: bool
    referenced_day_numbers: List[int]
    warnings: List[str]
    reasons: List[str]


class ChatSessionRead(BaseModel):
    trip_id: int
    state: str
    messages: List[ChatMessageRead]
    preview: IntentPreview
    mentioned_day_numbers: List[int]
    can_apply: bool
    last_error: Optional[str] = None


class ChatSubmitRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4000)


class ChatSubmitResponse(BaseModel):
    reply: ChatMessageRead
    session: ChatSessionRead


class ChatApplyResponse(BaseModel):
    message: str
    regenerated_days: List[int]
    dates_changed: bool
    trip: TripDetail


# ===== DAY POIS =====

class ReorderRequest(BaseModel):
    ordered_day_poi_ids: List[int] = Field(..., min_length=1)


class DayPoiCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    type: PoiType = PoiType.OTHER
    address: str = Field("", max_length=500)
    description: Optional[str] = None
    place_id: Optional[str] = Field(None, max_length=255)
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    note: Optional[str] = Field(None, max_length=1000)
    start_time: Optional[str] = None
    duration_min: Optional[StrictInt] = Field(None, gt=0)

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_hhmm(v):
            raise ValueError("start_time must be in HH:MM format")
        return v

    def poi_fields(self) -> Dict[str, Any]:
        return {
            "name": self.name.strip(),
            "poi_type": self.type,
            "address": self.address.strip(),
            "description": self.description,
            "place_id": self.place_id,
            "lat": self.lat,
            "lng": self.lng,
        }


class DayPoiNoteUpdate(BaseModel):
    note: Optional[str] = Field(..., max_length=1000)


class DayPoiScheduleUpdate(BaseModel):
    start_time: Optional[str] = Field(...)
    duration_min: Optional[StrictInt] = Field(...)

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_hhmm(v):
            raise ValueError("start_time must be in HH:MM format")
        return v

    @field_validator("duration_min")
    @classmethod
    def validate_duration(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("duration_min must be a positive integer or null")
        return v


class SuccessResponse(BaseModel):
    success: bool = True
