from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from lending_notifications.dispatch import ReminderDispatcher
from lending_notifications.document_store import InMemoryDocumentStore
from lending_notifications.overdue import scan_overdue_rentals
from lending_notifications.push import StubPushSender

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


def _rental(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "status": "active",
        "ownerId": "owner-1",
        "renterId": "renter-1",
        "renterName": "Rae",
        "ownerName": "Otto",
        "itemId": "i9",
        "itemTitle": "Tent",
        "endDate": NOW - timedelta(days=2),
    }
    data.update(overrides)
    return data


def _make_store() -> InMemoryDocumentStore:
    store = InMemoryDocumentStore()
    batch = store.batch()
    batch.set("rental_requests", "rent-1", _rental())
    batch.set("rental_requests", "rent-2", _rental(endDate=NOW + timedelta(days=1)))
    batch.set("rental_requests", "rent-3", _rental(status="completed"))
    batch.set("rental_requests", "rent-4", _rental(endDate=None))
    batch.set("users", "renter-1", {"fcmToken": "renter-device"})
    batch.set("users", "owner-1", {"fcmToken": "owner-device"})
    batch.commit()
    return store


def test_scan_creates_reminders_for_both_parties() -> None:
    store = _make_store()

    result = scan_overdue_rentals(store, now=NOW)

    assert result.overdue_requests == 1
    assert result.reminders_created == 2
    assert result.reminder_ids == ["rent-1_rental_overdue_renter-1", "rent-1_rental_overdue_owner-1"]
    renter = store.get("reminders", "rent-1_rental_overdue_renter-1")
    assert renter is not None
    assert renter["reminderType"] == "rental_overdue"
    assert renter["rentalRequestId"] == "rent-1"
    assert renter["isRenter"] is True
    assert renter["sent"] is False
    assert renter["scheduledTime"] == NOW
    assert "2026-03-08" in renter["body"]
    owner = store.get("reminders", "rent-1_rental_overdue_owner-1")
    assert owner is not None
    assert owner["isRenter"] is False
    assert owner["body"].startswith("Rae has not returned")


def test_scan_is_idempotent_while_chain_is_pending() -> None:
    store = _make_store()
    scan_overdue_rentals(store, now=NOW)

    second = scan_overdue_rentals(store, now=NOW + timedelta(hours=1))

    assert second.reminders_created == 0
    assert second.reminders_rearmed == 0
    assert len(store.query("reminders", [])) == 2


def test_scan_rearms_terminated_chain() -> None:
    store = _make_store()
    scan_overdue_rentals(store, now=NOW)
    batch = store.batch()
    batch.update("reminders", "rent-1_rental_overdue_owner-1", {"sent": True, "error": "No FCM token found"})
    batch.commit()

    result = scan_overdue_rentals(store, now=NOW + timedelta(days=1))

    assert result.reminders_rearmed == 1
    assert result.reminder_ids == ["rent-1_rental_overdue_owner-1"]
    rearmed = store.get("reminders", "rent-1_rental_overdue_owner-1")
    assert rearmed is not None
    assert rearmed["sent"] is False
    assert "error" not in rearmed


def test_scanned_reminders_are_dispatched_and_rescheduled_in_place() -> None:
    store = _make_store()
    scan_overdue_rentals(store, now=NOW)
    sender = StubPushSender()

    response = ReminderDispatcher(store=store, sender=sender).run_tick(NOW + timedelta(minutes=1))

    assert response.sent_count == 2
    assert {result.next_reminder_id for result in response.results} == {
        "rent-1_rental_overdue_renter-1",
        "rent-1_rental_overdue_owner-1",
    }
    assert {message.android_channel_id for message in sender.sent} == {"rental_overdue_reminders"}
    renter = store.get("reminders", "rent-1_rental_overdue_renter-1")
    assert renter is not None
    assert renter["sent"] is False
    assert renter["scheduledTime"] == datetime(2026, 3, 11, 9, 0, tzinfo=timezone.utc)
