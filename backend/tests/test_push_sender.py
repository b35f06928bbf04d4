from __future__ import annotations

import io
import json
import socket
import urllib.error
from unittest.mock import MagicMock, patch

import google.auth.exceptions
import pytest

from lending_notifications.config import Settings
from lending_notifications.push import (
    FCM_SCOPE,
    HttpFcmPushSender,
    PushDeliveryError,
    PushMessage,
    StubPushSender,
    create_push_sender,
    load_service_account_credentials,
    mask_token,
)
from lending_notifications.retry_policy import is_retryable


def _make_message(*, token: str = "device-token-abc123") -> PushMessage:
    return PushMessage(
        token=token,
        title="Item overdue",
        body="Please return the Cordless Drill",
        data={"reminderId": "rem-1", "type": "reminder"},
        android_channel_id="overdue_reminders",
        android_notification_priority="max",
    )


def _make_credentials(*, token: str = "ya29.test-access-token", valid: bool = True) -> MagicMock:
    credentials = MagicMock()
    credentials.token = token
    credentials.valid = valid
    return credentials


def _make_sender(credentials: MagicMock | None = None) -> HttpFcmPushSender:
    return HttpFcmPushSender(
        project_id="lending-app",
        credentials=credentials or _make_credentials(),
        base_url="https://fcm.example.test/",
    )


def _mock_response(body: dict[str, str]) -> MagicMock:
    response = MagicMock()
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _http_error(code: int, body: dict | None = None) -> urllib.error.HTTPError:
    raw = json.dumps(body).encode("utf-8") if body is not None else b""
    return urllib.error.HTTPError(
        url="https://fcm.example.test/v1/projects/lending-app/messages:send",
        code=code,
        msg="error",
        hdrs=None,  # type: ignore[arg-type]
        fp=io.BytesIO(raw),
    )


def test_payload_carries_channel_priority_and_apns_badge() -> None:
    payload = _make_message().to_payload()

    assert payload["token"] == "device-token-abc123"
    assert payload["notification"] == {"title": "Item overdue", "body": "Please return the Cordless Drill"}
    assert payload["android"]["priority"] == "high"
    assert payload["android"]["notification"]["channel_id"] == "overdue_reminders"
    assert payload["android"]["notification"]["notification_priority"] == "PRIORITY_MAX"
    assert payload["apns"]["payload"]["aps"] == {"sound": "default", "badge": 1}


@patch("lending_notifications.push.urllib.request.urlopen")
def test_http_sender_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"name": "projects/lending-app/messages/0:123"})

    message_id = _make_sender().send(_make_message())

    assert message_id == "projects/lending-app/messages/0:123"
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://fcm.example.test/v1/projects/lending-app/messages:send"
    assert request_arg.get_header("Authorization") == "Bearer ya29.test-access-token"
    assert request_arg.get_header("Content-type") == "application/json"
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body["message"]["data"]["reminderId"] == "rem-1"


@patch("lending_notifications.push.urllib.request.urlopen")
def test_http_sender_maps_unregistered_token(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = _http_error(
        404,
        {
            "error": {
                "status": "NOT_FOUND",
                "message": "Requested entity was not found.",
                "details": [{"errorCode": "UNREGISTERED"}],
            }
        },
    )

    with pytest.raises(PushDeliveryError) as exc_info:
        _make_sender().send(_make_message())

    assert exc_info.value.code == "messaging/registration-token-not-registered"
    assert "Requested entity was not found." in exc_info.value.message


@patch("lending_notifications.push.urllib.request.urlopen")
def test_http_sender_maps_auth_failures(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = [_http_error(401), _http_error(401)]
    credentials = _make_credentials()

    with pytest.raises(PushDeliveryError) as exc_info:
        _make_sender(credentials).send(_make_message())

    assert exc_info.value.code == "messaging/authentication-error"
    assert mock_urlopen.call_count == 2
    credentials.refresh.assert_called_once()


@patch("lending_notifications.push.urllib.request.urlopen")
def test_http_sender_refreshes_expired_credentials_before_sending(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"name": "projects/lending-app/messages/0:456"})
    credentials = _make_credentials(token="ya29.stale", valid=False)

    def _refresh(request: object) -> None:
        credentials.token = "ya29.fresh"
        credentials.valid = True

    credentials.refresh.side_effect = _refresh
    sender = _make_sender(credentials)

    sender.send(_make_message())
    sender.send(_make_message())

    credentials.refresh.assert_called_once()
    for call in mock_urlopen.call_args_list:
        assert call[0][0].get_header("Authorization") == "Bearer ya29.fresh"


@patch("lending_notifications.push.urllib.request.urlopen")
def test_http_sender_retries_once_with_new_token_after_401(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = [
        _http_error(401, {"error": {"status": "UNAUTHENTICATED", "message": "token expired"}}),
        _mock_response({"name": "projects/lending-app/messages/0:789"}),
    ]
    credentials = _make_credentials(token="ya29.revoked")

    def _refresh(request: object) -> None:
        credentials.token = "ya29.renewed"

    credentials.refresh.side_effect = _refresh

    message_id = _make_sender(credentials).send(_make_message())

    assert message_id == "projects/lending-app/messages/0:789"
    headers = [call[0][0].get_header("Authorization") for call in mock_urlopen.call_args_list]
    assert headers == ["Bearer ya29.revoked", "Bearer ya29.renewed"]


@patch("lending_notifications.push.urllib.request.urlopen")
def test_credential_refresh_failure_is_retryable(mock_urlopen: MagicMock) -> None:
    credentials = _make_credentials(valid=False)
    credentials.refresh.side_effect = google.auth.exceptions.RefreshError("invalid_grant")

    with pytest.raises(PushDeliveryError) as exc_info:
        _make_sender(credentials).send(_make_message())

    assert exc_info.value.code == "messaging/credential-refresh-failed"
    assert is_retryable(exc_info.value)
    mock_urlopen.assert_not_called()


@patch("lending_notifications.push.urllib.request.urlopen")
def test_token_endpoint_outage_maps_to_connection_error(mock_urlopen: MagicMock) -> None:
    credentials = _make_credentials(valid=False)
    credentials.refresh.side_effect = google.auth.exceptions.TransportError("connection reset")

    with pytest.raises(PushDeliveryError) as exc_info:
        _make_sender(credentials).send(_make_message())

    assert exc_info.value.code == "connection_error"
    mock_urlopen.assert_not_called()


@patch("lending_notifications.push.urllib.request.urlopen")
def test_http_sender_maps_unknown_status_to_http_code(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = _http_error(502, None)

    with pytest.raises(PushDeliveryError) as exc_info:
        _make_sender().send(_make_message())

    assert exc_info.value.code == "http_502"


@patch("lending_notifications.push.urllib.request.urlopen")
def test_http_sender_maps_unavailable_status(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = _http_error(503, {"error": {"status": "UNAVAILABLE", "message": "busy"}})

    with pytest.raises(PushDeliveryError) as exc_info:
        _make_sender().send(_make_message())

    assert exc_info.value.code == "messaging/server-unavailable"


@patch("lending_notifications.push.urllib.request.urlopen")
def test_http_sender_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError(reason=socket.timeout("timed out"))

    with pytest.raises(PushDeliveryError) as exc_info:
        _make_sender().send(_make_message())

    assert exc_info.value.code == "messaging/timeout"


@patch("lending_notifications.push.urllib.request.urlopen")
def test_http_sender_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError(reason="Name or service not known")

    with pytest.raises(PushDeliveryError) as exc_info:
        _make_sender().send(_make_message())

    assert exc_info.value.code == "connection_error"
    assert "Name or service not known" in exc_info.value.message


@pytest.mark.parametrize(
    ("kwargs", "expected"),
    [
        ({"project_id": " ", "credentials": object()}, "project_id must not be empty"),
        ({"project_id": "p", "credentials": None}, "credentials must not be empty"),
        ({"project_id": "p", "credentials": object(), "base_url": "/"}, "base_url must not be empty"),
    ],
)
def test_http_sender_rejects_empty_configuration(kwargs: dict[str, object], expected: str) -> None:
    with pytest.raises(ValueError, match=expected):
        HttpFcmPushSender(**kwargs)  # type: ignore[arg-type]


def test_stub_sender_records_and_rejects_invalid_tokens() -> None:
    sender = StubPushSender()

    message_id = sender.send(_make_message())
    with pytest.raises(PushDeliveryError) as exc_info:
        sender.send(_make_message(token="INVALID-device"))

    assert message_id.startswith("stub-1-")
    assert len(sender.sent) == 1
    assert exc_info.value.code == "messaging/registration-token-not-registered"


def test_disabled_stub_sender_raises_retryable_error() -> None:
    with pytest.raises(PushDeliveryError) as exc_info:
        StubPushSender(enabled=False).send(_make_message())

    assert exc_info.value.code == "messaging/internal-error"
    assert str(exc_info.value) == "messaging/internal-error: Push delivery is disabled"


def test_create_push_sender_by_type() -> None:
    assert isinstance(create_push_sender(Settings()), StubPushSender)
    http_settings = Settings(
        push_sender_type="http",
        fcm_project_id="lending-app",
        fcm_service_account_json=json.dumps({"type": "service_account", "client_email": "svc@lending-app.iam"}),
    )
    with patch(
        "lending_notifications.push.service_account.Credentials.from_service_account_info",
        return_value=_make_credentials(),
    ) as from_info:
        assert isinstance(create_push_sender(http_settings), HttpFcmPushSender)
    assert from_info.call_args.kwargs["scopes"] == [FCM_SCOPE]
    assert from_info.call_args[0][0]["client_email"] == "svc@lending-app.iam"
    with pytest.raises(RuntimeError):
        create_push_sender(Settings(push_sender_type="apns"))


def test_service_account_file_is_used_when_no_inline_json() -> None:
    with patch(
        "lending_notifications.push.service_account.Credentials.from_service_account_file",
        return_value=_make_credentials(),
    ) as from_file:
        load_service_account_credentials(path=" /secrets/fcm.json ")

    from_file.assert_called_once_with("/secrets/fcm.json", scopes=[FCM_SCOPE])


@pytest.mark.parametrize(
    ("kwargs", "expected"),
    [
        ({"info_json": "{not json"}, "not valid JSON"),
        ({}, "FCM_SERVICE_ACCOUNT_JSON or FCM_SERVICE_ACCOUNT_PATH must be set"),
    ],
)
def test_service_account_loading_errors(kwargs: dict[str, str], expected: str) -> None:
    with pytest.raises(RuntimeError, match=expected):
        load_service_account_credentials(**kwargs)


def test_mask_token_hides_middle() -> None:
    assert mask_token("abcdefghijkl") == "abcd***ijkl"
    assert mask_token("short") == "*****"
