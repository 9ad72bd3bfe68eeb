"""
Validation of itinerary JSON returned by the generative model.

The provider is an untrusted data source: its output is parsed into strict
pydantic models and cross-checked against the trip's date span. Every
problem is reported as a `SchemaInvalidError` with field paths; validation
failures are never retried.
"""

import json
import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, field_validator

from smartgo.core.errors import SchemaInvalidError
from smartgo.core.nlp.instruction_parser import inclusive_day_count
from smartgo.core.sync.schedule import is_hhmm
from smartgo.db.models import PoiType

logger = logging.getLogger(__name__)

MIN_POIS_PER_DAY = 3
MAX_POIS_PER_DAY = 6

_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\s*```$")


class PoiPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1, max_length=255)
    type: PoiType
    address: str = Field(max_length=500)
    description: str
    start_time: str = Field(alias="startTime")
    duration_min: StrictInt = Field(alias="durationMin", gt=0)
    note: Optional[str] = None

    @field_validator("name", "address")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v: str) -> str:
        if not is_hhmm(v):
            raise ValueError("must be a 24-hour HH:MM time")
        return v


class DayPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    day_number: StrictInt = Field(alias="dayNumber", ge=1)
    summary: str
    pois: List[PoiPlan] = Field(min_length=MIN_POIS_PER_DAY, max_length=MAX_POIS_PER_DAY)


class TripPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str
    destination: str
    days: List[DayPlan] = Field(min_length=1)


def format_loc(loc: Sequence[Any], prefix: str = "") -> str:
    """('days', 0, 'pois', 1, 'startTime') -> 'days[0].pois[1].startTime'"""
    path = prefix
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path = f"{path}.{part}" if path else str(part)
    return path or "$"


def issues_from_validation_error(exc: ValidationError, prefix: str = "") -> List[Dict[str, str]]:
    return [
        {"path": format_loc(err["loc"], prefix), "message": err["msg"]}
        for err in exc.errors()
    ]


def parse_model_json(raw_text: Optional[str]) -> Any:
    """Parse provider text as JSON after stripping an optional ``` fence"""
    raw = (raw_text or "").strip()
    if not raw:
        raise SchemaInvalidError(
            [{"path": "$", "message": "Gemini returned empty response"}],
            summary="Gemini returned no itinerary",
        )

    cleaned = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", raw)).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning(f"Gemini returned non-JSON content: {e}")
        raise SchemaInvalidError(
            [{"path": "$", "message": "Gemini returned non-JSON content"}],
            summary="Gemini returned an unreadable itinerary",
        )


def validate_trip_itinerary(data: Any, start_date: date, end_date: date) -> TripPlan:
    """Validate a whole-trip result and check it covers exactly days 1..N of the trip"""
    if not isinstance(data, dict):
        raise SchemaInvalidError([{"path": "$", "message": "expected a JSON object"}])

    try:
        plan = TripPlan.model_validate(data)
    except ValidationError as e:
        raise SchemaInvalidError(issues_from_validation_error(e))

    expected = inclusive_day_count(start_date, end_date)
    issues = []
    if len(plan.days) != expected:
        issues.append({
            "path": "days",
            "message": (
                f"expected {expected} day(s) for {start_date.isoformat()} to "
                f"{end_date.isoformat()}, got {len(plan.days)}"
            ),
        })

    numbers = [day.day_number for day in plan.days]
    if sorted(numbers) != list(range(1, len(plan.days) + 1)):
        for index, number in enumerate(numbers):
            if number > len(plan.days) or numbers.count(number) > 1:
                issues.append({
                    "path": f"days[{index}].dayNumber",
                    "message": f"day numbers must be exactly 1..{len(plan.days)}, got {number}",
                })
        if not issues:
            issues.append({"path": "days", "message": "day numbers must be contiguous from 1"})

    if issues:
        raise SchemaInvalidError(issues, summary="Generated itinerary does not match the trip dates")

    plan.days.sort(key=lambda day: day.day_number)
    return plan


def validate_day_itinerary(data: Any, day_number: int) -> DayPlan:
    """Validate a single-day result for `day_number`"""
    if isinstance(data, dict) and "days" in data and "pois" not in data:
        days = data.get("days")
        if not isinstance(days, list) or len(days) != 1:
            raise SchemaInvalidError([{"path": "days", "message": "expected exactly one day object"}])
        data, prefix = days[0], "days[0]"
    else:
        prefix = ""

    if not isinstance(data, dict):
        raise SchemaInvalidError([{"path": prefix or "$", "message": "expected a JSON object"}])

    try:
        plan = DayPlan.model_validate(data)
    except ValidationError as e:
        raise SchemaInvalidError(issues_from_validation_error(e, prefix))

    if plan.day_number != day_number:
        raise SchemaInvalidError(
            [{
                "path": format_loc(["dayNumber"], prefix),
                "message": f"expected day {day_number}, got {plan.day_number}",
            }],
            summary="Generated day does not match the requested day",
        )
    return plan
