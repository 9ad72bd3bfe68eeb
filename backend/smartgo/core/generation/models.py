"""
Model candidate selection and provider failure classification
"""

from enum import Enum
from typing import Iterable, List, Optional

RETRYABLE_CODES = {429, 503}
RETRYABLE_STATUSES = {"RESOURCE_EXHAUSTED", "UNAVAILABLE"}
RETRYABLE_MARKERS = ("overloaded", "rate limit", "resource exhausted", "too many requests", "try again later")


class FailureKind(str, Enum):
    RETRYABLE = "retryable"
    MODEL_UNAVAILABLE = "model_unavailable"
    FATAL = "fatal"


def select_model_candidates(preferred: Optional[str], fallbacks: Iterable[str]) -> List[str]:
    """Preferred model first, then the fallbacks in order; blanks and repeats dropped"""
    candidates = []
    for name in [preferred or "", *fallbacks]:
        name = (name or "").strip()
        if name and name not in candidates:
            candidates.append(name)
    return candidates


def classify_provider_error(exc: BaseException) -> FailureKind:
    """
    Sort a provider exception into retryable / model-unavailable / fatal.

    Reads the `code`, `status` and `message` attributes that google-genai's
    `APIError` carries, falling back to the exception text.
    """
    code = getattr(exc, "code", None)
    status = str(getattr(exc, "status", "") or "").upper()
    message = str(getattr(exc, "message", None) or exc).lower()

    if code in RETRYABLE_CODES or status in RETRYABLE_STATUSES:
        return FailureKind.RETRYABLE
    if any(marker in message for marker in RETRYABLE_MARKERS):
        return FailureKind.RETRYABLE

    if code == 404 or status == "NOT_FOUND":
        return FailureKind.MODEL_UNAVAILABLE
    if "model" in message and ("not found" in message or "not supported" in message):
        return FailureKind.MODEL_UNAVAILABLE

    return FailureKind.FATAL


def is_retryable_error(exc: BaseException) -> bool:
    return classify_provider_error(exc) is FailureKind.RETRYABLE
