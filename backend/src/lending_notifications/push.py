from __future__ import annotations

import json
import logging
import socket
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

import google.auth.exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import service_account

from .config import Settings

logger = logging.getLogger(__name__)

AndroidPriority = Literal["high", "normal"]
AndroidNotificationPriority = Literal["max", "high", "default", "low", "min"]

CLICK_ACTION = "FLUTTER_NOTIFICATION_CLICK"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"

# FCM HTTP v1 error statuses mapped onto the provider error-code vocabulary.
_FCM_STATUS_CODES = {
    "UNREGISTERED": "messaging/registration-token-not-registered",
    "INVALID_ARGUMENT": "messaging/invalid-argument",
    "SENDER_ID_MISMATCH": "messaging/mismatched-credential",
    "THIRD_PARTY_AUTH_ERROR": "messaging/authentication-error",
    "QUOTA_EXCEEDED": "messaging/message-rate-exceeded",
    "UNAVAILABLE": "messaging/server-unavailable",
    "INTERNAL": "messaging/internal-error",
}


class PushDeliveryError(Exception):
    """Raised by a push sender when the provider rejects or fails a delivery."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass(frozen=True)
class PushMessage:
    token: str
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)
    android_priority: AndroidPriority = "high"
    android_channel_id: str = "due_reminders"
    android_notification_priority: AndroidNotificationPriority = "high"
    sound: str = "default"
    badge: int = 1

    def to_payload(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "notification": {"title": self.title, "body": self.body},
            "data": dict(self.data),
            "android": {
                "priority": self.android_priority,
                "notification": {
                    "channel_id": self.android_channel_id,
                    "notification_priority": _android_priority_enum(self.android_notification_priority),
                    "sound": self.sound,
                },
            },
            "apns": {"payload": {"aps": {"sound": self.sound, "badge": self.badge}}},
        }


def _android_priority_enum(value: AndroidNotificationPriority) -> str:
    return f"PRIORITY_{value.upper()}"


class PushSender(Protocol):
    def send(self, message: PushMessage) -> str: ...


class StubPushSender:
    """In-process sender that records messages instead of calling a provider."""

    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self.sent: list[PushMessage] = []

    def send(self, message: PushMessage) -> str:
        if not self._enabled:
            raise PushDeliveryError("messaging/internal-error", "Push delivery is disabled")
        if "invalid" in message.token.lower():
            raise PushDeliveryError(
                "messaging/registration-token-not-registered",
                "Stub sender rejected the registration token",
            )
        self.sent.append(message)
        attempted_at = datetime.now(timezone.utc)
        return f"stub-{len(self.sent)}-{int(attempted_at.timestamp())}"


class HttpFcmPushSender:
    """Delivers messages through the FCM HTTP v1 ``messages:send`` endpoint.

    The OAuth access token comes from service account credentials and is refreshed
    whenever it expires. A 401 from FCM forces one refresh and a single resend.
    """

    def __init__(
        self,
        *,
        project_id: str,
        credentials: service_account.Credentials,
        base_url: str = "https://fcm.googleapis.com",
        timeout_seconds: int = 10,
    ) -> None:
        stripped_project = project_id.strip()
        stripped_url = base_url.strip().rstrip("/")
        if not stripped_project:
            raise ValueError("project_id must not be empty")
        if credentials is None:
            raise ValueError("credentials must not be empty")
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        self._project_id = stripped_project
        self._credentials = credentials
        self._base_url = stripped_url
        self._timeout_seconds = timeout_seconds
        self._auth_request = google_requests.Request()
        self._lock = threading.Lock()

    def send(self, message: PushMessage) -> str:
        body = json.dumps({"message": message.to_payload()}).encode("utf-8")
        try:
            response = self._post(body, self._access_token())
        except urllib.error.HTTPError as exc:
            if exc.code != 401:
                raise _error_from_http(exc) from exc
            logger.warning("FCM rejected the access token; refreshing credentials and resending once")
            try:
                response = self._post(body, self._access_token(force_refresh=True))
            except urllib.error.HTTPError as retry_exc:
                raise _error_from_http(retry_exc) from retry_exc
        name = response.get("name")
        return str(name) if name else ""

    def _access_token(self, *, force_refresh: bool = False) -> str:
        with self._lock:
            if force_refresh or not self._credentials.valid:
                try:
                    self._credentials.refresh(self._auth_request)
                except google.auth.exceptions.RefreshError as exc:
                    raise PushDeliveryError(
                        "messaging/credential-refresh-failed",
                        f"Could not refresh FCM credentials: {exc}",
                    ) from exc
                except google.auth.exceptions.TransportError as exc:
                    raise PushDeliveryError("connection_error", f"Token endpoint unreachable: {exc}") from exc
            return str(self._credentials.token)

    def _post(self, body: bytes, access_token: str) -> dict[str, Any]:
        url = f"{self._base_url}/v1/projects/{self._project_id}/messages:send"
        request = urllib.request.Request(
            url,
            data=body,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError:
            raise
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise PushDeliveryError("messaging/timeout", f"Request timed out: {exc.reason}") from exc
            raise PushDeliveryError("connection_error", f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise PushDeliveryError("messaging/timeout", f"Request timed out: {exc}") from exc


def _error_from_http(exc: urllib.error.HTTPError) -> PushDeliveryError:
    status = ""
    detail = f"HTTP {exc.code}: {exc.reason}"
    try:
        raw = exc.read().decode("utf-8") if exc.fp is not None else ""
        parsed = json.loads(raw) if raw else {}
    except (ValueError, OSError):
        parsed = {}
    error = parsed.get("error") if isinstance(parsed, dict) else None
    if isinstance(error, dict):
        status = str(error.get("status") or "")
        if error.get("message"):
            detail = f"{detail} ({error['message']})"
        for item in error.get("details") or []:
            if isinstance(item, dict) and item.get("errorCode"):
                status = str(item["errorCode"])
                break

    if status in _FCM_STATUS_CODES:
        return PushDeliveryError(_FCM_STATUS_CODES[status], detail)
    if exc.code in (401, 403):
        return PushDeliveryError("messaging/authentication-error", detail)
    return PushDeliveryError(f"http_{exc.code}", detail)


def load_service_account_credentials(*, info_json: str = "", path: str = "") -> service_account.Credentials:
    """Build FCM-scoped credentials from inline JSON or a key file, inline JSON first."""
    if info_json.strip():
        try:
            info = json.loads(info_json)
        except ValueError as exc:
            raise RuntimeError("FCM_SERVICE_ACCOUNT_JSON is not valid JSON") from exc
        return service_account.Credentials.from_service_account_info(info, scopes=[FCM_SCOPE])
    if path.strip():
        return service_account.Credentials.from_service_account_file(path.strip(), scopes=[FCM_SCOPE])
    raise RuntimeError("FCM_SERVICE_ACCOUNT_JSON or FCM_SERVICE_ACCOUNT_PATH must be set for PUSH_SENDER_TYPE=http")


def create_push_sender(settings: Settings) -> PushSender:
    sender_type = settings.push_sender_type.strip().lower()
    if sender_type == "http":
        credentials = load_service_account_credentials(
            info_json=settings.fcm_service_account_json,
            path=settings.fcm_service_account_path,
        )
        return HttpFcmPushSender(
            project_id=settings.fcm_project_id,
            credentials=credentials,
            base_url=settings.fcm_api_base_url,
            timeout_seconds=settings.push_timeout_seconds,
        )
    if sender_type == "stub":
        return StubPushSender(enabled=settings.push_enabled)
    raise RuntimeError(f"unsupported PUSH_SENDER_TYPE: {settings.push_sender_type}")


def mask_token(token: str) -> str:
    normalized = token.strip()
    if len(normalized) <= 8:
        return "*" * len(normalized)
    return f"{normalized[:4]}***{normalized[-4:]}"
