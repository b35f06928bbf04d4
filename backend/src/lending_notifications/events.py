from __future__ import annotations

import logging
from dataclasses import dataclass

from .document_store import DocumentStore
from .models import BORROW_REQUESTS_COLLECTION, RENTAL_REQUESTS_COLLECTION, EventNotificationResponse
from .push import CLICK_ACTION, PushDeliveryError, PushMessage, PushSender
from .tokens import resolve_counterparty_token

logger = logging.getLogger(__name__)


class RequestNotFoundError(KeyError):
    """Raised when an event references a request document that does not exist."""


class UnsupportedCollectionError(ValueError):
    """Raised when no created-event handler exists for a collection."""


@dataclass(frozen=True)
class _RequestProfile:
    recipient_field: str
    requester_field: str
    requester_name_field: str
    event_type: str
    channel_id: str
    title: str
    verb: str


_REQUEST_PROFILES: dict[str, _RequestProfile] = {
    BORROW_REQUESTS_COLLECTION: _RequestProfile(
        recipient_field="lenderId",
        requester_field="borrowerId",
        requester_name_field="borrowerName",
        event_type="borrow_request",
        channel_id="borrow_requests",
        title="New Borrow Request",
        verb="borrow",
    ),
    RENTAL_REQUESTS_COLLECTION: _RequestProfile(
        recipient_field="ownerId",
        requester_field="renterId",
        requester_name_field="renterName",
        event_type="rental_request",
        channel_id="rental_requests",
        title="New Rental Request",
        verb="rent",
    ),
}


def notify_request_created(
    store: DocumentStore,
    sender: PushSender,
    *,
    collection: str,
    doc_id: str,
) -> EventNotificationResponse:
    profile = _REQUEST_PROFILES.get(collection)
    if profile is None:
        raise UnsupportedCollectionError(collection)
    request = store.get(collection, doc_id)
    if request is None:
        raise RequestNotFoundError(f"{collection}/{doc_id}")

    def _result(status: str, reason: str, **extra: object) -> EventNotificationResponse:
        return EventNotificationResponse(collection=collection, doc_id=doc_id, status=status, reason=reason, **extra)  # type: ignore[arg-type]

    if request.get("status") != "pending":
        logger.info("%s %s is not pending, skipping notification", collection, doc_id)
        return _result("skipped", "not_pending")

    recipient_id = request.get(profile.recipient_field)
    if not recipient_id:
        return _result("skipped", "recipient_missing")
    requester_id = request.get(profile.requester_field)

    token = resolve_counterparty_token(store, str(recipient_id), str(requester_id) if requester_id else None)
    if token is None:
        logger.warning("no usable push token for %s %s, cannot notify", profile.recipient_field, recipient_id)
        return _result("skipped", "token_unavailable", recipient_id=str(recipient_id))

    requester_name = request.get(profile.requester_name_field) or "Someone"
    item_title = request.get("itemTitle") or "an item"
    message = PushMessage(
        token=token,
        title=profile.title,
        body=f'{requester_name} wants to {profile.verb} "{item_title}"',
        data={
            "type": profile.event_type,
            "requestId": doc_id,
            "itemId": str(request.get("itemId") or ""),
            "itemTitle": str(item_title),
            profile.requester_field: str(requester_id or ""),
            profile.requester_name_field: str(requester_name),
            "click_action": CLICK_ACTION,
        },
        android_channel_id=profile.channel_id,
    )
    try:
        message_id = sender.send(message)
    except PushDeliveryError as exc:
        logger.error("failed to send %s notification for %s: %s", profile.event_type, doc_id, exc)
        return _result("failed", exc.code, recipient_id=str(recipient_id))

    logger.info("sent %s notification for %s to %s", profile.event_type, doc_id, recipient_id)
    return _result("sent", "delivered", recipient_id=str(recipient_id), provider_message_id=message_id or None)
