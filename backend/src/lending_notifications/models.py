from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

REMINDERS_COLLECTION = "reminders"
NOTIFICATIONS_COLLECTION = "notifications"
USERS_COLLECTION = "users"
FCM_TOKENS_COLLECTION = "fcm_tokens"
BORROW_REQUESTS_COLLECTION = "borrow_requests"
RENTAL_REQUESTS_COLLECTION = "rental_requests"

DispatchStatus = Literal["sent", "retry_scheduled", "failed", "skipped"]


class ReminderKind(str, Enum):
    DUE_IN_24H = "24h"
    DUE_IN_1H = "1h"
    DUE = "due"
    OVERDUE = "overdue"
    RENTAL_OVERDUE = "rental_overdue"
    RENTAL_DUE_SOON = "rental_due_soon"
    RENTAL_DUE = "rental_due"
    RENTAL_START = "rental_start"
    MONTHLY_PAYMENT_DUE = "monthly_payment_due"
    MONTHLY_PAYMENT_OVERDUE = "monthly_payment_overdue"

    @classmethod
    def parse(cls, value: str | None) -> ReminderKind | None:
        if not value:
            return None
        try:
            return cls(value.strip())
        except ValueError:
            return None


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Reminder(BaseModel):
    """A persisted reminder document, keyed by its document id."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str
    user_id: str | None = None
    item_id: str | None = None
    item_title: str | None = None
    title: str | None = None
    body: str | None = None
    reminder_type: str = ""
    scheduled_time: datetime | None = None
    sent: bool = False
    sent_at: datetime | None = None
    retry_count: int = Field(default=0, ge=0)
    last_error: str | None = None
    last_retry_attempt: datetime | None = None
    next_retry_time: datetime | None = None
    error: str | None = None
    rental_request_id: str | None = None
    borrower_name: str | None = None
    lender_name: str | None = None
    renter_name: str | None = None
    owner_name: str | None = None
    is_borrower: bool | None = None
    is_renter: bool | None = None

    @field_validator("scheduled_time", "sent_at", "last_retry_attempt", "next_retry_time")
    @classmethod
    def _normalize_instant(cls, value: datetime | None) -> datetime | None:
        return _coerce_utc(value)

    @field_validator("retry_count", mode="before")
    @classmethod
    def _default_retry_count(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("reminder_type", mode="before")
    @classmethod
    def _default_reminder_type(cls, value: Any) -> Any:
        return "" if value is None else value

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any]) -> Reminder:
        return cls.model_validate({**data, "id": doc_id})

    def display_metadata(self) -> dict[str, Any]:
        return {
            "itemTitle": self.item_title,
            "title": self.title,
            "body": self.body,
            "borrowerName": self.borrower_name,
            "lenderName": self.lender_name,
            "renterName": self.renter_name,
            "ownerName": self.owner_name,
            "isBorrower": self.is_borrower,
            "isRenter": self.is_renter,
        }


class DueReminderItem(BaseModel):
    id: str
    user_id: str | None = None
    item_id: str | None = None
    reminder_type: str
    title: str | None = None
    scheduled_time: datetime | None = None
    retry_count: int = 0
    next_retry_time: datetime | None = None


class DueReminderListResponse(BaseModel):
    checked_at: datetime
    count: int
    reminders: list[DueReminderItem]


class TriggerRequest(BaseModel):
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        return _coerce_utc(value)


class ReminderDispatchResult(BaseModel):
    reminder_id: str
    status: DispatchStatus
    reason: str
    error: str | None = None
    retry_count: int | None = None
    next_retry_time: datetime | None = None
    provider_message_id: str | None = None
    next_reminder_id: str | None = None
    notification_id: str | None = None


class DispatchTickResponse(BaseModel):
    run_at: datetime
    evaluated_count: int
    sent_count: int
    retry_count: int
    failed_count: int
    skipped_count: int
    rescheduled_count: int
    notifications_created: int
    results: list[ReminderDispatchResult]


class OverdueScanResponse(BaseModel):
    scanned_at: datetime
    overdue_requests: int
    reminders_created: int
    reminders_rearmed: int
    reminder_ids: list[str]


class EventNotificationResponse(BaseModel):
    collection: str
    doc_id: str
    status: Literal["sent", "skipped", "failed"]
    reason: str
    recipient_id: str | None = None
    provider_message_id: str | None = None


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
