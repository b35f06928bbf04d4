"""Retry and backoff decisions for a single reminder delivery attempt.

Every function here is pure: it takes the reminder as read at tick start, the tick's
``now`` and the delivery error (if any), and returns a tagged decision the dispatcher
turns into a document update.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Union

from .models import Reminder
from .push import PushDeliveryError

MAX_RETRIES = 3
STALE_AFTER = timedelta(hours=24)
BASE_BACKOFF_SECONDS = 60
MAX_BACKOFF_SECONDS = 3600

NO_TOKEN_ERROR = "No FCM token found"
MISSING_USER_ERROR = "Reminder has no userId"
STALE_ERROR = "Reminder too old to retry (scheduled more than 24 hours ago)"

NON_RETRYABLE_ERROR_CODES: tuple[str, ...] = (
    "invalid-registration-token",
    "registration-token-not-registered",
    "invalid-argument",
    "invalid-package-name",
    "authentication-error",
)


@dataclass(frozen=True)
class Terminal:
    error: str


@dataclass(frozen=True)
class Retry:
    next_retry_time: datetime
    retry_count: int
    error: str


@dataclass(frozen=True)
class Success:
    sent_at: datetime


Decision = Union[Terminal, Retry, Success]


def retries_exhausted_error(retry_count: int) -> str:
    return f"Failed after {retry_count} retries"


def backoff_delay(retry_count: int) -> timedelta:
    """Delay before retry number ``retry_count`` (1-based): 1m, 2m, 4m ... capped at 1h."""
    exponent = max(0, retry_count - 1)
    if exponent >= 12:
        return timedelta(seconds=MAX_BACKOFF_SECONDS)
    return timedelta(seconds=min(BASE_BACKOFF_SECONDS * (2**exponent), MAX_BACKOFF_SECONDS))


def is_retryable(error: PushDeliveryError) -> bool:
    haystacks = (str(error.code or "").lower(), str(error.message or "").lower())
    for code in NON_RETRYABLE_ERROR_CODES:
        if any(code in value for value in haystacks):
            return False
    return True


def precheck(reminder: Reminder, now: datetime) -> Terminal | None:
    """Terminal outcome that must be applied without attempting delivery, if any."""
    if reminder.scheduled_time is not None and now - reminder.scheduled_time > STALE_AFTER:
        return Terminal(STALE_ERROR)
    if reminder.retry_count >= MAX_RETRIES:
        return Terminal(retries_exhausted_error(reminder.retry_count))
    return None


def decide(reminder: Reminder, now: datetime, delivery_error: PushDeliveryError | None) -> Decision:
    if delivery_error is None:
        return Success(sent_at=now)
    if not is_retryable(delivery_error):
        return Terminal(f"Non-retryable error: {delivery_error.code}: {delivery_error.message}")
    next_count = reminder.retry_count + 1
    return Retry(
        next_retry_time=now + backoff_delay(next_count),
        retry_count=next_count,
        error=f"{delivery_error.code}: {delivery_error.message}",
    )
