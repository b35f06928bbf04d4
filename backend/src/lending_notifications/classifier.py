from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from .models import ReminderKind

Channel = Literal["due", "overdue", "rental", "rental-overdue"]
Priority = Literal["high", "urgent"]

RENTAL_PREFIX = "rental_"
MONTHLY_PAYMENT_PREFIX = "monthly_payment"

# Android notification channels registered by the mobile client.
ANDROID_CHANNEL_IDS: dict[str, str] = {
    "due": "due_reminders",
    "overdue": "overdue_reminders",
    "rental": "rental_reminders",
    "rental-overdue": "rental_overdue_reminders",
}


@dataclass(frozen=True)
class ReminderProfile:
    kind: ReminderKind | None
    channel: Channel
    priority: Priority
    is_overdue_class: bool
    is_recurring: bool
    companion_notification_type: str | None = None

    @property
    def android_channel_id(self) -> str:
        return ANDROID_CHANNEL_IDS[self.channel]

    @property
    def android_notification_priority(self) -> Literal["max", "high"]:
        return "max" if self.priority == "urgent" else "high"


def classify(reminder_type: str | None) -> ReminderProfile:
    kind = ReminderKind.parse(reminder_type)

    if kind is ReminderKind.OVERDUE:
        return ReminderProfile(kind, "overdue", "urgent", is_overdue_class=True, is_recurring=True)
    if kind is ReminderKind.RENTAL_OVERDUE:
        return ReminderProfile(kind, "rental-overdue", "urgent", is_overdue_class=True, is_recurring=True)
    if kind is ReminderKind.MONTHLY_PAYMENT_OVERDUE:
        return ReminderProfile(kind, "rental", "urgent", is_overdue_class=False, is_recurring=False)
    if kind is ReminderKind.MONTHLY_PAYMENT_DUE:
        return ReminderProfile(kind, "rental", "high", is_overdue_class=False, is_recurring=False)
    if kind in (ReminderKind.RENTAL_DUE_SOON, ReminderKind.RENTAL_DUE, ReminderKind.RENTAL_START):
        return ReminderProfile(kind, "rental", "high", is_overdue_class=False, is_recurring=False)
    if kind in (ReminderKind.DUE_IN_24H, ReminderKind.DUE_IN_1H, ReminderKind.DUE):
        return ReminderProfile(
            kind,
            "due",
            "high",
            is_overdue_class=False,
            is_recurring=False,
            companion_notification_type=f"return_reminder_{kind.value}",
        )

    # Subtypes outside the enum still route by family prefix.
    raw = (reminder_type or "").strip()
    if raw.startswith(MONTHLY_PAYMENT_PREFIX):
        priority: Priority = "urgent" if raw.endswith("overdue") else "high"
        return ReminderProfile(None, "rental", priority, is_overdue_class=False, is_recurring=False)
    if raw.startswith(RENTAL_PREFIX):
        return ReminderProfile(None, "rental", "high", is_overdue_class=False, is_recurring=False)

    # Unknown types still deliver on the default channel.
    return ReminderProfile(None, "due", "high", is_overdue_class=False, is_recurring=False)
