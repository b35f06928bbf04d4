from __future__ import annotations

import logging

from .document_store import DocumentStore
from .models import FCM_TOKENS_COLLECTION, USERS_COLLECTION

logger = logging.getLogger(__name__)


def _non_empty(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def resolve_push_token(store: DocumentStore, user_id: str) -> str | None:
    """Return the user's push token, or ``None`` when none is registered.

    The profile's ``fcmToken`` wins; the ``fcm_tokens/<user_id>`` record is the fallback.
    Store failures are logged and reported as an absent token.
    """
    if not user_id:
        return None
    try:
        profile = store.get(USERS_COLLECTION, user_id)
        token = _non_empty(profile.get("fcmToken")) if profile else None
        if token is not None:
            return token
        record = store.get(FCM_TOKENS_COLLECTION, user_id)
        return _non_empty(record.get("token")) if record else None
    except Exception:
        logger.exception("token lookup failed for user %s", user_id)
        return None


def resolve_counterparty_token(store: DocumentStore, recipient_id: str, counterparty_id: str | None) -> str | None:
    """Resolve the recipient's token, refusing it when it equals the counterparty's.

    Used by two-party deliveries (lender/borrower, owner/renter) so a stale or shared
    token never routes a notification to the other side of the transaction.
    """
    token = resolve_push_token(store, recipient_id)
    if token is None or not counterparty_id:
        return token
    counterparty_token = resolve_push_token(store, counterparty_id)
    if counterparty_token is not None and counterparty_token == token:
        logger.error(
            "push token collision: recipient %s shares a token with counterparty %s; refusing delivery",
            recipient_id,
            counterparty_id,
        )
        return None
    return token
