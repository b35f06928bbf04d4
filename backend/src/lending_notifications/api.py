from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Query, Request, status

from .config import Settings
from .dispatch import ReminderDispatcher
from .document_store import DocumentStore, DocumentStoreError
from .events import RequestNotFoundError, UnsupportedCollectionError, notify_request_created
from .models import (
    DispatchTickResponse,
    DueReminderItem,
    DueReminderListResponse,
    EventNotificationResponse,
    HealthResponse,
    OverdueScanResponse,
    TriggerRequest,
)
from .overdue import scan_overdue_rentals
from .push import PushSender
from .scheduler import ReminderScheduler

router = APIRouter(prefix="/notifications", tags=["notifications"])
health_router = APIRouter(tags=["health"])


@dataclass
class NotificationServices:
    settings: Settings
    store: DocumentStore
    sender: PushSender
    dispatcher: ReminderDispatcher
    scheduler: ReminderScheduler


def _services(request: Request) -> NotificationServices:
    return request.app.state.services


@health_router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse()


@router.get("/reminders/due", response_model=DueReminderListResponse)
def list_due_reminders(request: Request, limit: int = Query(default=10, ge=1, le=500)) -> DueReminderListResponse:
    services = _services(request)
    checked_at = datetime.now(timezone.utc)
    try:
        docs = services.dispatcher.list_due(now=checked_at, limit=limit)
    except DocumentStoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    items: list[DueReminderItem] = []
    for doc in docs:
        data = doc.data
        items.append(
            DueReminderItem(
                id=doc.doc_id,
                user_id=data.get("userId"),
                item_id=data.get("itemId"),
                reminder_type=str(data.get("reminderType") or ""),
                title=data.get("title"),
                scheduled_time=data.get("scheduledTime"),
                retry_count=int(data.get("retryCount") or 0),
                next_retry_time=data.get("nextRetryTime"),
            )
        )
    return DueReminderListResponse(checked_at=checked_at, count=len(items), reminders=items)


@router.post("/reminders/dispatch", response_model=DispatchTickResponse)
def dispatch_reminders(request: Request, payload: TriggerRequest | None = None) -> DispatchTickResponse:
    services = _services(request)
    now = payload.now_override if payload is not None else None
    try:
        return services.dispatcher.run_tick(now)
    except DocumentStoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"reminder dispatch tick failed: {exc}",
        ) from exc


@router.post("/rentals/overdue-scan", response_model=OverdueScanResponse)
def run_overdue_scan(request: Request, payload: TriggerRequest | None = None) -> OverdueScanResponse:
    services = _services(request)
    now = payload.now_override if payload is not None else None
    try:
        return scan_overdue_rentals(
            services.store,
            now=now,
            limit=services.settings.overdue_scan_page_size,
        )
    except DocumentStoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"overdue rental scan failed: {exc}",
        ) from exc


@router.post(
    "/events/{collection}/{doc_id}/created",
    response_model=EventNotificationResponse,
)
def request_created(request: Request, collection: str, doc_id: str) -> EventNotificationResponse:
    services = _services(request)
    try:
        return notify_request_created(
            services.store,
            services.sender,
            collection=collection,
            doc_id=doc_id,
        )
    except UnsupportedCollectionError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"no handler for collection {collection}") from exc
    except RequestNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"document not found: {collection}/{doc_id}") from exc
