from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import (
    Column, Date, DateTime, Enum as SAEnum, Index, CheckConstraint, UniqueConstraint, Text,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _created_at_column() -> Column:
    return Column(DateTime(timezone=True), nullable=False, default=utcnow)


def _updated_at_column() -> Column:
    return Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


# Enums
class PoiType(str, Enum):
    ATTRACTION = "attraction"
    FOOD = "food"
    SHOPPING = "shopping"
    NATURE = "nature"
    CULTURE = "culture"
    MUSEUM = "museum"
    BEACH = "beach"
    NIGHTLIFE = "nightlife"
    OTHER = "other"


# Models
class Trip(SQLModel, table=True):
    __tablename__ = "trips"

    __table_args__ = (
        Index('idx_trips_user_id', 'user_id'),
        Index('idx_trips_dates', 'start_date', 'end_date'),
        CheckConstraint('end_date >= start_date', name='check_trip_date_range'),
        CheckConstraint('length(title) > 0', name='check_trip_title_not_empty'),
    )

    trip_id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(nullable=False, description="Owner of this trip")
    title: str = Field(max_length=200, description="Trip title")
    destination: str = Field(max_length=200, description="Trip destination")
    start_date: date = Field(sa_column=Column(Date, nullable=False), description="First day (inclusive)")
    end_date: date = Field(sa_column=Column(Date, nullable=False), description="Last day (inclusive)")
    preferences: Optional[str] = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="Free-text travel preferences",
    )
    description: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    note: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_created_at_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_updated_at_column())

    # Relationships
    days: List["ItineraryDay"] = Relationship(back_populates="trip")

    @property
    def day_count(self) -> int:
        """Inclusive number of days between start_date and end_date"""
        if self.start_date and self.end_date:
            return max(1, (self.end_date - self.start_date).days + 1)
        return 0


class ItineraryDay(SQLModel, table=True):
    __tablename__ = "itinerary_days"

    __table_args__ = (
        UniqueConstraint('trip_id', 'day_number', name='uq_itinerary_days_trip_day'),
        Index('idx_itinerary_days_trip', 'trip_id'),
        CheckConstraint('day_number > 0', name='check_day_number_positive'),
    )

    day_id: Optional[int] = Field(default=None, primary_key=True)
    trip_id: int = Field(foreign_key="trips.trip_id", nullable=False)
    day_number: int = Field(description="1-based, contiguous within a trip")
    summary: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

    # Relationships
    trip: Optional[Trip] = Relationship(back_populates="days")
    day_pois: List["DayPoi"] = Relationship(back_populates="day")


class Poi(SQLModel, table=True):
    __tablename__ = "pois"

    __table_args__ = (
        Index('idx_pois_name_address', 'name', 'address'),
        CheckConstraint('lat IS NULL OR lat BETWEEN -90 AND 90', name='check_valid_latitude'),
        CheckConstraint('lng IS NULL OR lng BETWEEN -180 AND 180', name='check_valid_longitude'),
    )

    poi_id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=255, description="Place name")
    type: PoiType = Field(
        default=PoiType.OTHER,
        sa_column=Column(
            SAEnum(
                PoiType,
                name="poitype",
                native_enum=False,
                values_callable=lambda e: [m.value for m in e],
            ),
            nullable=False,
        ),
    )
    address: str = Field(default="", max_length=500)
    description: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    lat: Optional[float] = Field(default=None, description="Latitude")
    lng: Optional[float] = Field(default=None, description="Longitude")
    place_id: Optional[str] = Field(
        default=None,
        max_length=255,
        unique=True,
        description="External place identifier, when known",
    )

    # Relationships
    day_pois: List["DayPoi"] = Relationship(back_populates="poi")


class DayPoi(SQLModel, table=True):
    __tablename__ = "day_poi"

    __table_args__ = (
        UniqueConstraint('day_id', 'visit_order', name='uq_day_poi_day_visit_order'),
        Index('idx_day_poi_day', 'day_id'),
        Index('idx_day_poi_poi', 'poi_id'),
        CheckConstraint('visit_order > 0', name='check_visit_order_positive'),
        CheckConstraint('duration_min IS NULL OR duration_min > 0', name='check_duration_positive'),
    )

    day_poi_id: Optional[int] = Field(default=None, primary_key=True)
    day_id: int = Field(foreign_key="itinerary_days.day_id", nullable=False)
    poi_id: int = Field(foreign_key="pois.poi_id", nullable=False)
    visit_order: int = Field(description="1-based position within the day")
    note: Optional[str] = Field(default=None, max_length=1000)
    start_time: Optional[str] = Field(default=None, max_length=5, description="HH:MM")
    duration_min: Optional[int] = Field(default=None, description="Planned minutes on site")

    # Relationships
    day: Optional[ItineraryDay] = Relationship(back_populates="day_pois")
    poi: Optional[Poi] = Relationship(back_populates="day_pois")
