"""
Numeral normalisation shared by every instruction pattern.

Digits, English number words, English ordinals and Chinese numerals all go
through `parse_count_token`, so the regex tables only need to capture the raw
token.
"""

import re
from typing import Optional

CHINESE_DIGITS = {
    "一": 1, "二": 2, "两": 2, "三": 3, "四": 4,
    "五": 5, "六": 6, "七": 7, "八": 8, "九": 9,
}

ENGLISH_NUMBERS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}

ENGLISH_ORDINALS = {
    "first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5,
    "sixth": 6, "seventh": 7, "eighth": 8, "ninth": 9, "tenth": 10,
}

# Regex fragments reused by the pattern tables
COUNT_TOKEN = (
    r"([0-9]+|one|two|three|four|five|six|seven|eight|nine|ten|"
    r"[一二两三四五六七八九十]+)"
)
CHINESE_COUNT_TOKEN = r"([0-9一二两三四五六七八九十]+)"

_DIGITS_RE = re.compile(r"^\d+$")
_COMPACT_ORDINAL_RE = re.compile(r"^(\d+)(?:st|nd|rd|th)$", re.IGNORECASE)


def parse_chinese_number(raw: str) -> Optional[int]:
    """Parse digits or a Chinese numeral up to 九十九; None when unrecognised"""
    token = (raw or "").strip()
    if not token:
        return None
    if _DIGITS_RE.match(token):
        return int(token)
    if token == "十":
        return 10
    if len(token) == 1:
        return CHINESE_DIGITS.get(token)
    if token.count("十") != 1:
        return None

    tens, _, ones = token.partition("十")
    if tens and tens not in CHINESE_DIGITS:
        return None
    if ones and ones not in CHINESE_DIGITS:
        return None
    return CHINESE_DIGITS.get(tens, 1) * 10 + CHINESE_DIGITS.get(ones, 0)


def parse_english_number(raw: str) -> Optional[int]:
    token = (raw or "").strip().lower()
    if not token:
        return None
    if _DIGITS_RE.match(token):
        return int(token)
    return ENGLISH_NUMBERS.get(token)


def parse_ordinal(raw: str) -> Optional[int]:
    """`third` -> 3, `3rd` -> 3"""
    token = (raw or "").strip().lower()
    if token in ENGLISH_ORDINALS:
        return ENGLISH_ORDINALS[token]
    m = _COMPACT_ORDINAL_RE.match(token)
    if m:
        return int(m.group(1))
    return None


def parse_count_token(raw: Optional[str], fallback: Optional[int] = 1) -> Optional[int]:
    """Normalise any supported numeral form, returning `fallback` when none applies"""
    if raw is None:
        return fallback
    for parse in (parse_chinese_number, parse_english_number, parse_ordinal):
        value = parse(raw)
        if value is not None:
            return value
    return fallback
