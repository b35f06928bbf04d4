from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any

from pydantic import ValidationError

from .classifier import ReminderProfile, classify
from .document_store import SERVER_TIMESTAMP, Document, DocumentStore, FieldFilter, WriteBatch
from .models import (
    NOTIFICATIONS_COLLECTION,
    REMINDERS_COLLECTION,
    DispatchTickResponse,
    Reminder,
    ReminderDispatchResult,
)
from .push import CLICK_ACTION, PushDeliveryError, PushMessage, PushSender, mask_token
from .recurrence import schedule_next
from .retry_policy import (
    MISSING_USER_ERROR,
    NO_TOKEN_ERROR,
    Decision,
    Retry,
    Success,
    Terminal,
    decide,
    precheck,
)
from .tokens import resolve_push_token

logger = logging.getLogger(__name__)

DEFAULT_DUE_PAGE_SIZE = 100
DEFAULT_RETRY_PAGE_SIZE = 50


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def due_filters(now: datetime) -> list[FieldFilter]:
    return [FieldFilter("sent", "==", False), FieldFilter("scheduledTime", "<=", now)]


def retry_filters(now: datetime) -> list[FieldFilter]:
    return [FieldFilter("sent", "==", False), FieldFilter("nextRetryTime", "<=", now)]


def companion_notification_id(notification_type: str, user_id: str, source_id: str, day: str) -> str:
    return f"{notification_type}_{user_id}_{source_id}_{day}"


def build_push_message(reminder: Reminder, token: str, profile: ReminderProfile) -> PushMessage:
    return PushMessage(
        token=token,
        title=reminder.title or "Reminder",
        body=reminder.body or "",
        data={
            "reminderId": reminder.id,
            "itemId": reminder.item_id or "",
            "reminderType": reminder.reminder_type,
            "type": "reminder",
            "click_action": CLICK_ACTION,
        },
        android_priority="high",
        android_channel_id=profile.android_channel_id,
        android_notification_priority=profile.android_notification_priority,
    )


@dataclass
class _TickState:
    now: datetime
    batch: WriteBatch
    companion_ids: set[str]


class ReminderDispatcher:
    """Runs dispatch ticks: select due reminders, deliver, and commit every transition at once."""

    def __init__(
        self,
        *,
        store: DocumentStore,
        sender: PushSender,
        due_page_size: int = DEFAULT_DUE_PAGE_SIZE,
        retry_page_size: int = DEFAULT_RETRY_PAGE_SIZE,
        recurrence_tz: tzinfo = timezone.utc,
        recurrence_hour: int = 9,
    ) -> None:
        self._store = store
        self._sender = sender
        self._due_page_size = due_page_size
        self._retry_page_size = retry_page_size
        self._recurrence_tz = recurrence_tz
        self._recurrence_hour = recurrence_hour

    def list_due(self, *, now: datetime | None = None, limit: int = 10) -> list[Document]:
        current = _coerce_utc(now or _now_utc())
        return self._store.query(REMINDERS_COLLECTION, due_filters(current), limit=limit)

    def collect_candidates(self, now: datetime) -> list[Document]:
        due = self._store.query(REMINDERS_COLLECTION, due_filters(now), limit=self._due_page_size)
        retry_ready = self._store.query(REMINDERS_COLLECTION, retry_filters(now), limit=self._retry_page_size)
        merged: dict[str, Document] = {}
        for doc in [*due, *retry_ready]:
            merged.setdefault(doc.doc_id, doc)
        return list(merged.values())

    def run_tick(self, now: datetime | None = None) -> DispatchTickResponse:
        current = _coerce_utc(now or _now_utc())
        candidates = self.collect_candidates(current)
        logger.info("dispatch tick at %s: %d candidate reminders", current.isoformat(), len(candidates))

        state = _TickState(now=current, batch=self._store.batch(), companion_ids=set())
        results = [self._process(doc, state) for doc in candidates]

        if len(state.batch):
            try:
                state.batch.commit()
            except Exception:
                logger.exception("dispatch tick commit failed; %d reminders left unchanged", len(candidates))
                raise

        response = DispatchTickResponse(
            run_at=current,
            evaluated_count=len(results),
            sent_count=sum(1 for value in results if value.status == "sent"),
            retry_count=sum(1 for value in results if value.status == "retry_scheduled"),
            failed_count=sum(1 for value in results if value.status == "failed"),
            skipped_count=sum(1 for value in results if value.status == "skipped"),
            rescheduled_count=sum(1 for value in results if value.next_reminder_id),
            notifications_created=sum(1 for value in results if value.notification_id),
            results=results,
        )
        logger.info(
            "dispatch tick done: sent=%d retry=%d failed=%d skipped=%d",
            response.sent_count,
            response.retry_count,
            response.failed_count,
            response.skipped_count,
        )
        return response

    def _process(self, doc: Document, state: _TickState) -> ReminderDispatchResult:
        try:
            reminder = Reminder.from_document(doc.doc_id, doc.data)
        except ValidationError as exc:
            logger.warning("reminder %s is malformed: %s", doc.doc_id, exc.errors()[0].get("msg"))
            error = f"Malformed reminder: {exc.error_count()} invalid field(s)"
            return self._apply_terminal(doc.doc_id, error, "malformed", state)

        if reminder.next_retry_time is not None and reminder.next_retry_time > state.now:
            return ReminderDispatchResult(
                reminder_id=reminder.id,
                status="skipped",
                reason="retry_not_due",
                retry_count=reminder.retry_count,
                next_retry_time=reminder.next_retry_time,
            )

        if not reminder.user_id:
            return self._apply_terminal(reminder.id, MISSING_USER_ERROR, "missing_user", state)

        blocked = precheck(reminder, state.now)
        if blocked is not None:
            return self._apply_terminal(reminder.id, blocked.error, "precheck_failed", state)

        token = resolve_push_token(self._store, reminder.user_id)
        if token is None:
            logger.warning("no push token for user %s, failing reminder %s", reminder.user_id, reminder.id)
            return self._apply_terminal(reminder.id, NO_TOKEN_ERROR, "token_missing", state)

        profile = classify(reminder.reminder_type)
        provider_message_id, delivery_error = self._send(reminder, token, profile)

        decision = decide(reminder, state.now, delivery_error)
        result = self._apply_decision(reminder, decision, state, provider_message_id=provider_message_id)
        if isinstance(decision, Success):
            logger.info("sent reminder %s to user %s", reminder.id, reminder.user_id)
            result.next_reminder_id = self._schedule_recurrence(reminder, state)
            result.notification_id = self._write_companion(reminder, profile, state)
        return result

    def _send(
        self,
        reminder: Reminder,
        token: str,
        profile: ReminderProfile,
    ) -> tuple[str | None, PushDeliveryError | None]:
        """Attempt one delivery; every failure comes back as a ``PushDeliveryError``."""
        try:
            message = build_push_message(reminder, token, profile)
            logger.debug("delivering reminder %s on channel %s to %s", reminder.id, profile.channel, mask_token(token))
            return self._sender.send(message), None
        except PushDeliveryError as exc:
            return None, exc
        except Exception as exc:
            logger.exception("unexpected error while delivering reminder %s", reminder.id)
            return None, PushDeliveryError("unknown", str(exc) or type(exc).__name__)

    def _apply_decision(
        self,
        reminder: Reminder,
        decision: Decision,
        state: _TickState,
        *,
        provider_message_id: str | None,
    ) -> ReminderDispatchResult:
        if isinstance(decision, Terminal):
            return self._apply_terminal(reminder.id, decision.error, "non_retryable", state)

        if isinstance(decision, Retry):
            state.batch.update(
                REMINDERS_COLLECTION,
                reminder.id,
                {
                    "sent": False,
                    "retryCount": decision.retry_count,
                    "nextRetryTime": decision.next_retry_time,
                    "lastError": decision.error,
                    "lastRetryAttempt": state.now,
                    "updatedAt": SERVER_TIMESTAMP,
                },
            )
            logger.warning(
                "reminder %s delivery failed (%s); retry %d at %s",
                reminder.id,
                decision.error,
                decision.retry_count,
                decision.next_retry_time.isoformat(),
            )
            return ReminderDispatchResult(
                reminder_id=reminder.id,
                status="retry_scheduled",
                reason="retryable_error",
                error=decision.error,
                retry_count=decision.retry_count,
                next_retry_time=decision.next_retry_time,
            )

        state.batch.update(
            REMINDERS_COLLECTION,
            reminder.id,
            {
                "sent": True,
                "sentAt": SERVER_TIMESTAMP,
                "retryCount": 0,
                "lastError": None,
                "nextRetryTime": None,
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
        return ReminderDispatchResult(
            reminder_id=reminder.id,
            status="sent",
            reason="delivered",
            retry_count=0,
            provider_message_id=provider_message_id or None,
        )

    def _apply_terminal(self, reminder_id: str, error: str, reason: str, state: _TickState) -> ReminderDispatchResult:
        state.batch.update(
            REMINDERS_COLLECTION,
            reminder_id,
            {
                "sent": True,
                "sentAt": SERVER_TIMESTAMP,
                "error": error,
                "nextRetryTime": None,
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
        logger.warning("reminder %s failed permanently: %s", reminder_id, error)
        return ReminderDispatchResult(reminder_id=reminder_id, status="failed", reason=reason, error=error)

    def _schedule_recurrence(self, reminder: Reminder, state: _TickState) -> str | None:
        upcoming = schedule_next(reminder, state.now, tz=self._recurrence_tz, hour=self._recurrence_hour)
        if upcoming is None:
            return None
        next_id, data = upcoming
        state.batch.set(REMINDERS_COLLECTION, next_id, data)
        logger.info("scheduled next %s reminder %s for %s", reminder.reminder_type, next_id, data["scheduledTime"].isoformat())
        return next_id

    def _write_companion(self, reminder: Reminder, profile: ReminderProfile, state: _TickState) -> str | None:
        notification_type = profile.companion_notification_type
        if notification_type is None or not reminder.user_id:
            return None
        day = state.now.astimezone(self._recurrence_tz).strftime("%Y%m%d")
        source_id = reminder.item_id or reminder.id
        notification_id = companion_notification_id(notification_type, reminder.user_id, source_id, day)
        if notification_id in state.companion_ids:
            return None
        try:
            existing = self._store.get(NOTIFICATIONS_COLLECTION, notification_id)
        except Exception:
            logger.exception("companion notification lookup failed for %s", notification_id)
            return None
        state.companion_ids.add(notification_id)
        if existing is not None:
            return None

        data: dict[str, Any] = {
            "toUserId": reminder.user_id,
            "type": notification_type,
            "itemId": reminder.item_id,
            "itemTitle": reminder.item_title,
            "reminderId": reminder.id,
            "title": reminder.title or "Reminder",
            "body": reminder.body or "",
            "day": day,
            "status": "unread",
            "createdAt": SERVER_TIMESTAMP,
        }
        state.batch.set(NOTIFICATIONS_COLLECTION, notification_id, data)
        return notification_id
