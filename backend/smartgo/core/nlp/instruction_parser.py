"""
Deterministic parser for itinerary edit instructions typed into the trip chat.

Recognises a fixed bilingual (English / Chinese) grammar:
    - set a new start date          "start date to 2026-03-05", "开始日期改成2026-03-05"
    - extend / shorten the trip     "add 2 days", "延长两天", "one fewer day", "少一天"
    - shift the start earlier/later "start 1 day earlier", "推迟三天"
    - reference a day               "day 3", "third day", "3rd day", "第三天", "3天"

Every pattern lives in a table evaluated in fixed priority order per category;
numerals are normalised by `numerals.parse_count_token`. The parser is pure and
never raises: problems are reported through `ParsedIntent.warnings`.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from functools import partial
from typing import Callable, List, Optional, Pattern, Union

from smartgo.core.nlp.numerals import (
    CHINESE_COUNT_TOKEN,
    COUNT_TOKEN,
    parse_count_token,
    parse_ordinal,
)

logger = logging.getLogger(__name__)

DateLike = Union[date, str, None]

MAX_DELTA_DAYS = 30
MAX_DAY_REFERENCE = 31

INVALID_WINDOW_WARNING = "Invalid date preview: end date would be earlier than start date."
UNREADABLE_DATE_WARNING = "Invalid date preview: trip dates could not be read."


class IntentCategory(str, Enum):
    EXTEND = "extend"
    SHORTEN = "shorten"
    START_EARLIER = "start_earlier"
    START_LATER = "start_later"


@dataclass(frozen=True)
class IntentPattern:
    category: IntentCategory
    regex: Pattern[str]
    normalize: Callable[[Optional[str]], Optional[int]] = parse_count_token


@dataclass(frozen=True)
class DayPattern:
    regex: Pattern[str]
    normalize: Callable[[Optional[str]], Optional[int]] = partial(parse_count_token, fallback=None)


@dataclass
class ParsedIntent:
    """Preview of the date / day changes requested by the latest user message"""

    latest_text: str = ""
    next_start_date: Optional[date] = None
    next_end_date: Optional[date] = None
    has_change: bool = False
    referenced_day_numbers: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)

    @property
    def warning(self) -> Optional[str]:
        return self.warnings[0] if self.warnings else None


def _p(category: IntentCategory, pattern: str, flags: int = 0) -> IntentPattern:
    return IntentPattern(category, re.compile(pattern, flags))


# Order matters: the first matching pattern of each category wins.
INTENT_PATTERNS: List[IntentPattern] = [
    _p(IntentCategory.EXTEND, rf"(?:add|extend|increase)(?:\s+by)?\s+{COUNT_TOKEN}\s+days?", re.I),
    _p(IntentCategory.EXTEND, rf"{COUNT_TOKEN}\s+more\s+days?", re.I),
    _p(IntentCategory.EXTEND, rf"(?:多加|增加|加|延长|多留)\s*{COUNT_TOKEN}\s*天"),
    _p(IntentCategory.EXTEND, r"多一天"),
    _p(IntentCategory.EXTEND, r"加一天"),
    _p(IntentCategory.EXTEND, r"延长一天"),
    _p(IntentCategory.EXTEND, r"多留一天"),

    _p(IntentCategory.SHORTEN, rf"(?:reduce|shorten|remove)(?:\s+by)?\s+{COUNT_TOKEN}\s+days?", re.I),
    _p(IntentCategory.SHORTEN, rf"{COUNT_TOKEN}\s+fewer\s+days?", re.I),
    _p(IntentCategory.SHORTEN, rf"(?:减少|缩短|减|少)\s*{COUNT_TOKEN}\s*天"),
    _p(IntentCategory.SHORTEN, r"少一天"),
    _p(IntentCategory.SHORTEN, r"减一天"),
    _p(IntentCategory.SHORTEN, r"缩短一天"),

    _p(IntentCategory.START_EARLIER, rf"(?:start(?:\s+date)?)?\s*{COUNT_TOKEN}\s+days?\s+earlier", re.I),
    _p(IntentCategory.START_EARLIER, rf"(?:开始|出发)?\s*提前\s*{COUNT_TOKEN}\s*天"),
    _p(IntentCategory.START_EARLIER, r"提前一天"),

    _p(IntentCategory.START_LATER, rf"(?:start(?:\s+date)?)?\s*{COUNT_TOKEN}\s+days?\s+later", re.I),
    _p(IntentCategory.START_LATER, rf"(?:开始|出发)?\s*(?:延后|推迟)\s*{COUNT_TOKEN}\s*天"),
    _p(IntentCategory.START_LATER, r"延后一天"),
    _p(IntentCategory.START_LATER, r"推迟一天"),
]

ABSOLUTE_START_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(?:start\s*date|start)\s*(?:to|=|:)?\s*(\d{4}-\d{2}-\d{2})", re.I),
    re.compile(r"(?:开始日期|出发日期|开始)\s*(?:改成|改为|调整到|to|=|:)?\s*(\d{4}-\d{2}-\d{2})"),
]

# Explicit day references: these may imply a trip extension.
EXPLICIT_DAY_PATTERNS: List[DayPattern] = [
    DayPattern(re.compile(r"\bday[\s-]*(\d{1,2})\b", re.I)),
    DayPattern(re.compile(r"\bday[\s-]*(one|two|three|four|five|six|seven|eight|nine|ten)\b", re.I)),
    DayPattern(re.compile(
        r"\b(first|second|third|fourth|fifth|sixth|seventh|eighth|ninth|tenth)\s+day\b", re.I
    ), parse_ordinal),
    DayPattern(re.compile(r"\b(1st|2nd|3rd|[4-9]th|10th)\s+day\b", re.I), parse_ordinal),
    DayPattern(re.compile(rf"第\s*{CHINESE_COUNT_TOKEN}\s*天")),
]

# Bare "N天" only marks a day as mentioned; it never infers an extension.
BARE_DAY_PATTERNS: List[DayPattern] = [
    DayPattern(re.compile(rf"{CHINESE_COUNT_TOKEN}\s*天")),
]


def coerce_date(value: DateLike) -> Optional[date]:
    """Accept a date or an ISO `YYYY-MM-DD[...]` string; None when unreadable"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def inclusive_day_count(start: DateLike, end: DateLike) -> int:
    s, e = coerce_date(start), coerce_date(end)
    if s is None or e is None:
        return 0
    return max(1, (e - s).days + 1)


def shift_date(value: date, days: int) -> date:
    return value + timedelta(days=days)


def _plural(count: int) -> str:
    return "" if count == 1 else "s"


def _first_count(category: IntentCategory, text: str) -> Optional[int]:
    """Return the count of the first pattern of `category` that matches"""
    for pattern in INTENT_PATTERNS:
        if pattern.category != category:
            continue
        m = pattern.regex.search(text)
        if not m:
            continue
        raw = m.group(1) if m.groups() else None
        count = pattern.normalize(raw)
        if count is not None and 0 < count <= MAX_DELTA_DAYS:
            return count
        return None
    return None


def _collect_days(patterns: List[DayPattern], text: str) -> List[int]:
    found = set()
    for pattern in patterns:
        for m in pattern.regex.finditer(text):
            n = pattern.normalize(m.group(1))
            if n is not None and 0 < n <= MAX_DAY_REFERENCE:
                found.add(n)
    return sorted(found)


def extract_explicit_day_references(text: str) -> List[int]:
    """Day numbers referenced with an explicit `day N` / ordinal / 第N天 form"""
    return _collect_days(EXPLICIT_DAY_PATTERNS, text or "")


def extract_mentioned_day_numbers(text: str) -> List[int]:
    """All day numbers mentioned in the text, including bare `N天`, sorted"""
    text = text or ""
    found = set(extract_explicit_day_references(text))
    found.update(_collect_days(BARE_DAY_PATTERNS, text))
    return sorted(found)


def parse_instruction(
    latest_user_text: Optional[str],
    current_start_date: DateLike,
    current_end_date: DateLike,
) -> ParsedIntent:
    """Turn the latest user chat message into a date-change / day-reference preview"""
    text = (latest_user_text or "").strip()
    original_start = coerce_date(current_start_date)
    original_end = coerce_date(current_end_date)
    intent = ParsedIntent(
        latest_text=text,
        next_start_date=original_start,
        next_end_date=original_end,
    )
    if not text:
        return intent

    intent.referenced_day_numbers = extract_mentioned_day_numbers(text)
    if original_start is None or original_end is None:
        intent.warnings.append(UNREADABLE_DATE_WARNING)
        return intent

    current_day_count = inclusive_day_count(original_start, original_end)
    next_start = original_start

    for pattern in ABSOLUTE_START_PATTERNS:
        m = pattern.search(text)
        if not m:
            continue
        parsed = coerce_date(m.group(1))
        if parsed is None:
            logger.info(f"Ignoring unreadable start date in instruction: {m.group(1)}")
            intent.warnings.append(UNREADABLE_DATE_WARNING)
            intent.reasons = []
            return intent
        next_start = parsed
        intent.reasons.append(f"start date -> {parsed.isoformat()}")
        break

    day_delta = 0
    start_shift = 0

    count = _first_count(IntentCategory.EXTEND, text)
    if count:
        day_delta += count
        intent.reasons.append(f"+{count} day{_plural(count)}")

    count = _first_count(IntentCategory.SHORTEN, text)
    if count:
        day_delta -= count
        intent.reasons.append(f"-{count} day{_plural(count)}")

    count = _first_count(IntentCategory.START_EARLIER, text)
    if count:
        start_shift -= count
        intent.reasons.append(f"start earlier {count} day{_plural(count)}")

    count = _first_count(IntentCategory.START_LATER, text)
    if count:
        start_shift += count
        intent.reasons.append(f"start later {count} day{_plural(count)}")

    explicit_days = extract_explicit_day_references(text)
    if explicit_days and explicit_days[-1] > current_day_count:
        referenced = explicit_days[-1]
        inferred = referenced - current_day_count
        if day_delta < inferred:
            day_delta = inferred
            intent.reasons.append(f"inferred +{inferred} day{_plural(inferred)} from day {referenced}")

    next_start = shift_date(next_start, start_shift)
    next_end = shift_date(original_end, day_delta)

    if next_end < next_start:
        intent.next_start_date = original_start
        intent.next_end_date = original_end
        intent.warnings.append(INVALID_WINDOW_WARNING)
        intent.reasons = []
        return intent

    intent.next_start_date = next_start
    intent.next_end_date = next_end
    intent.has_change = next_start != original_start or next_end != original_end
    return intent
