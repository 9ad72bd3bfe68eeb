"""
Prompt builders for itinerary generation and trip chat
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import List, Optional

from smartgo.core.generation.schema import MAX_POIS_PER_DAY, MIN_POIS_PER_DAY
from smartgo.db.models import PoiType

POI_TYPES = "|".join(t.value for t in PoiType)

_POI_SCHEMA = f"""{{
          "name": "string",
          "type": "{POI_TYPES}",
          "address": "string",
          "description": "string",
          "startTime": "09:00",
          "durationMin": 60,
          "note": "string"
        }}"""

_SHARED_RULES = f"""- Each day must contain {MIN_POIS_PER_DAY} to {MAX_POIS_PER_DAY} POIs.
- Do not repeat a POI, or a near-duplicate of one (same place under another name), anywhere in the trip.
- Keep landmarks that belong to the same complex or site on the same day.
- Use 24-hour HH:MM format for startTime.
- durationMin must be an integer (minutes).
- Use field name "address" (NOT "location").
- No markdown, no explanation, no extra fields, no trailing commas."""


@dataclass
class DaySummary:
    day_number: int
    poi_names: List[str] = field(default_factory=list)
    summary: Optional[str] = None


@dataclass
class TripContext:
    """Everything the model is told about a trip"""

    trip_id: int
    title: str
    destination: str
    start_date: date
    end_date: date
    preferences: Optional[str] = None
    description: Optional[str] = None
    note: Optional[str] = None
    days: List[DaySummary] = field(default_factory=list)

    @property
    def day_count(self) -> int:
        return (self.end_date - self.start_date).days + 1

    def date_of_day(self, day_number: int) -> date:
        return self.start_date + timedelta(days=day_number - 1)


def _or_unspecified(value: Optional[str]) -> str:
    return value.strip() if value and value.strip() else "not specified"


def _trip_requirements(context: TripContext) -> str:
    return f"""- Destination: {context.destination}
- Trip dates: {context.start_date.isoformat()} to {context.end_date.isoformat()} ({context.day_count} days)
- Preferences: {_or_unspecified(context.preferences)}
- Trip description: {_or_unspecified(context.description)}
- Trip note: {_or_unspecified(context.note)}"""


def summarize_itinerary(context: TripContext, skip_day: Optional[int] = None) -> str:
    lines = []
    for day in sorted(context.days, key=lambda d: d.day_number):
        if day.day_number == skip_day:
            continue
        places = ", ".join(day.poi_names) if day.poi_names else "(no stops yet)"
        lines.append(f"Day {day.day_number}: {places}")
    return "\n".join(lines) if lines else "(no itinerary yet)"


def build_trip_prompt(context: TripContext, edit_request: Optional[str] = None) -> str:
    return f"""
You are a travel itinerary planner.
Generate a trip itinerary and return ONLY valid JSON.

Requirements:
{_trip_requirements(context)}
- The number of days MUST equal the inclusive date range from start to end ({context.day_count}).
- dayNumber runs from 1 to {context.day_count} without gaps.
- Prefer places in or near {context.destination}.
- Traveller's request: {_or_unspecified(edit_request)}
{_SHARED_RULES}

Return JSON exactly matching this schema:
{{
  "title": "string",
  "destination": "string",
  "days": [
    {{
      "dayNumber": 1,
      "summary": "string",
      "pois": [
        {_POI_SCHEMA}
      ]
    }}
  ]
}}
""".strip()


def build_day_prompt(context: TripContext, day_number: int, edit_request: Optional[str] = None) -> str:
    return f"""
You are a travel itinerary planner.
Regenerate ONE day of an existing trip and return ONLY valid JSON.

Requirements:
{_trip_requirements(context)}
- Day to regenerate: day {day_number} ({context.date_of_day(day_number).isoformat()}).
- The other days are already planned and stay unchanged:
{summarize_itinerary(context, skip_day=day_number)}
- Do not reuse any POI already planned on another day.
- Traveller's request for this day: {_or_unspecified(edit_request)}
{_SHARED_RULES}

Return JSON exactly matching this schema:
{{
  "dayNumber": {day_number},
  "summary": "string",
  "pois": [
    {_POI_SCHEMA}
  ]
}}
""".strip()


def build_chat_system_prompt(context: TripContext) -> str:
    return f"""
You are a friendly travel assistant helping a traveller refine one trip.

Trip: {context.title}
{_trip_requirements(context)}

Current itinerary:
{summarize_itinerary(context)}

Guidelines:
- Answer in the language the traveller writes in.
- Keep replies short and concrete; suggest specific places, timing and order.
- When the traveller asks to change days or dates, confirm what will change.
  The traveller applies changes themselves; do not claim the itinerary was already updated.
- Do not output JSON.
""".strip()
