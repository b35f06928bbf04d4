from __future__ import annotations

import logging
import re
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .classifier import classify
from .document_store import SERVER_TIMESTAMP
from .models import Reminder

logger = logging.getLogger(__name__)


def resolve_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown recurrence timezone %r, falling back to UTC", name)
        return timezone.utc


def next_occurrence(now: datetime, *, tz: tzinfo, hour: int = 9) -> datetime:
    """Tomorrow at ``hour``:00 in ``tz``, returned in UTC."""
    local_today = now.astimezone(tz).date()
    local_next = datetime.combine(local_today + timedelta(days=1), time(hour=hour), tzinfo=tz)
    return local_next.astimezone(timezone.utc)


def recurring_reminder_id(kind: str, source_id: str, user_id: str) -> str:
    return f"{source_id}_{kind}_{user_id}"


def _follows_recurring_convention(reminder_id: str, kind: str, user_id: str) -> bool:
    pattern = rf"^.+_{re.escape(kind)}_{re.escape(user_id)}$"
    return re.match(pattern, reminder_id) is not None


def _source_id(reminder: Reminder) -> str | None:
    if reminder.reminder_type == "rental_overdue":
        return reminder.rental_request_id or reminder.item_id
    return reminder.item_id or reminder.rental_request_id


def schedule_next(
    reminder: Reminder,
    now: datetime,
    *,
    tz: tzinfo = timezone.utc,
    hour: int = 9,
) -> tuple[str, dict[str, Any]] | None:
    """Document id and body of the next occurrence of a recurring reminder.

    Returns ``None`` for non-recurring kinds or when no identity can be derived. The id is
    deterministic per ``(kind, source, user)`` so writing it is an upsert.
    """
    profile = classify(reminder.reminder_type)
    if not profile.is_recurring or not reminder.user_id:
        return None

    kind = reminder.reminder_type
    if _follows_recurring_convention(reminder.id, kind, reminder.user_id):
        next_id = reminder.id
    else:
        source_id = _source_id(reminder)
        if not source_id:
            logger.warning("recurring reminder %s has no source id, not rescheduling", reminder.id)
            return None
        next_id = recurring_reminder_id(kind, source_id, reminder.user_id)

    data: dict[str, Any] = {
        "userId": reminder.user_id,
        "itemId": reminder.item_id,
        "reminderType": kind,
        "scheduledTime": next_occurrence(now, tz=tz, hour=hour),
        "sent": False,
        "retryCount": 0,
        "createdAt": SERVER_TIMESTAMP,
        "updatedAt": SERVER_TIMESTAMP,
        **reminder.display_metadata(),
    }
    if reminder.rental_request_id:
        data["rentalRequestId"] = reminder.rental_request_id
    return next_id, data
