from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from .document_store import SERVER_TIMESTAMP, DocumentStore, FieldFilter
from .models import RENTAL_REQUESTS_COLLECTION, REMINDERS_COLLECTION, OverdueScanResponse, ReminderKind
from .recurrence import recurring_reminder_id

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _reminder_copy(request: dict[str, Any], *, for_renter: bool) -> tuple[str, str]:
    item_title = request.get("itemTitle") or "an item"
    end_date = request.get("endDate")
    due_label = end_date.date().isoformat() if isinstance(end_date, datetime) else "its end date"
    if for_renter:
        return "Rental overdue", f'"{item_title}" was due back on {due_label}. Please return it.'
    renter_name = request.get("renterName") or "The renter"
    return "Rental overdue", f'{renter_name} has not returned "{item_title}" yet (due {due_label}).'


def scan_overdue_rentals(
    store: DocumentStore,
    *,
    now: datetime | None = None,
    limit: int = 200,
) -> OverdueScanResponse:
    """Ensure every overdue active rental has a pending reminder for renter and owner.

    Reminders use the recurring id ``<requestId>_rental_overdue_<userId>``, so re-running
    the scan never adds documents. An existing pending chain is left alone; a chain that
    ended in a terminal state is re-armed.
    """
    current = now or _now_utc()
    overdue = store.query(
        RENTAL_REQUESTS_COLLECTION,
        [FieldFilter("status", "==", "active"), FieldFilter("endDate", "<", current)],
        limit=limit,
    )

    batch = store.batch()
    created = 0
    rearmed = 0
    reminder_ids: list[str] = []
    kind = ReminderKind.RENTAL_OVERDUE.value

    for doc in overdue:
        request = doc.data
        for user_field, for_renter in (("renterId", True), ("ownerId", False)):
            user_id = request.get(user_field)
            if not user_id:
                continue
            reminder_id = recurring_reminder_id(kind, doc.doc_id, str(user_id))
            existing = store.get(REMINDERS_COLLECTION, reminder_id)
            if existing is not None and not existing.get("sent", False):
                continue

            title, body = _reminder_copy(request, for_renter=for_renter)
            batch.set(
                REMINDERS_COLLECTION,
                reminder_id,
                {
                    "userId": str(user_id),
                    "itemId": request.get("itemId"),
                    "itemTitle": request.get("itemTitle"),
                    "rentalRequestId": doc.doc_id,
                    "reminderType": kind,
                    "title": title,
                    "body": body,
                    "scheduledTime": current,
                    "sent": False,
                    "retryCount": 0,
                    "renterName": request.get("renterName"),
                    "ownerName": request.get("ownerName"),
                    "isRenter": for_renter,
                    "createdAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
            )
            reminder_ids.append(reminder_id)
            if existing is None:
                created += 1
            else:
                rearmed += 1

    if len(batch):
        batch.commit()
    logger.info(
        "overdue rental scan: %d overdue requests, %d reminders created, %d re-armed",
        len(overdue),
        created,
        rearmed,
    )
    return OverdueScanResponse(
        scanned_at=current,
        overdue_requests=len(overdue),
        reminders_created=created,
        reminders_rearmed=rearmed,
        reminder_ids=reminder_ids,
    )
