"""
Schedule helpers: HH:MM parsing and start-time chaining for one day
"""

import re
from typing import List, Optional, Sequence

HHMM_RE = re.compile(r"^(?:[01]\d|2[0-3]):[0-5]\d$")
MINUTES_PER_DAY = 24 * 60


def is_hhmm(value: Optional[str]) -> bool:
    return bool(value) and bool(HHMM_RE.match(value))


def parse_hhmm(value: Optional[str]) -> Optional[int]:
    """"09:30" -> 570 minutes after midnight; None when not HH:MM"""
    if not is_hhmm(value):
        return None
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def format_hhmm(minutes: int) -> str:
    # wraps past midnight instead of producing 24:xx
    minutes %= MINUTES_PER_DAY
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def effective_duration(duration_min: Optional[int], default_duration: int) -> int:
    if isinstance(duration_min, int) and not isinstance(duration_min, bool) and duration_min > 0:
        return duration_min
    return default_duration


def chain_start_times(
    first_start: Optional[str],
    durations: Sequence[Optional[int]],
    gap_min: int,
    default_start: str = "09:00",
    default_duration: int = 60,
) -> List[str]:
    """
    Start times for consecutive stops.

    The first stop starts at `first_start` (or `default_start` when unset);
    each following stop starts after the previous stop's duration plus
    `gap_min`.
    """
    clock = parse_hhmm(first_start)
    if clock is None:
        clock = parse_hhmm(default_start) or 0

    times = []
    for duration in durations:
        times.append(format_hhmm(clock))
        clock += effective_duration(duration, default_duration) + gap_min
    return times
