from __future__ import annotations

import os

import pytest

from lending_notifications.config import Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults_to_local_stub_stack() -> None:
    names = ["PUSH_SENDER_TYPE", "DOCUMENT_STORE_BACKEND", "SCHEDULER_ENABLED", "RECURRENCE_HOUR"]
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.push_sender_type == "stub"
        assert settings.document_store_backend == "inmemory"
        assert settings.scheduler_enabled is False
        assert settings.recurrence_hour == 9
        assert runtime_secret_issues(settings) == ()
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_parses_and_clamps_values() -> None:
    overrides = {
        "PUSH_SENDER_TYPE": "HTTP",
        "SCHEDULER_ENABLED": "yes",
        "DISPATCH_INTERVAL_SECONDS": "0",
        "REMINDER_DUE_PAGE_SIZE": "not-a-number",
        "RECURRENCE_HOUR": "30",
        "RUNTIME_SECRET_GUARD_MODE": "loud",
        "FCM_SERVICE_ACCOUNT_PATH": "/secrets/fcm.json",
    }
    previous = {name: _set_env(name, value) for name, value in overrides.items()}
    try:
        settings = get_settings()
        assert settings.push_sender_type == "http"
        assert settings.scheduler_enabled is True
        assert settings.dispatch_interval_seconds == 60
        assert settings.reminder_due_page_size == 100
        assert settings.recurrence_hour == 23
        assert settings.runtime_secret_guard_mode == "warn"
        assert settings.fcm_service_account_path == "/secrets/fcm.json"
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_http_sender_requires_fcm_credentials() -> None:
    issues = runtime_secret_issues(Settings(push_sender_type="http", fcm_project_id="change-me"))

    assert "FCM_PROJECT_ID is required when PUSH_SENDER_TYPE=http" in issues
    assert "FCM_SERVICE_ACCOUNT_JSON or FCM_SERVICE_ACCOUNT_PATH is required when PUSH_SENDER_TYPE=http" in issues


@pytest.mark.parametrize(
    "credential_fields",
    [
        {"fcm_service_account_json": '{"type": "service_account"}'},
        {"fcm_service_account_path": "/secrets/fcm.json"},
    ],
)
def test_http_sender_with_credentials_has_no_issues(credential_fields: dict[str, str]) -> None:
    settings = Settings(push_sender_type="http", fcm_project_id="lending-app", **credential_fields)

    assert runtime_secret_issues(settings) == ()


def test_postgres_backend_requires_database_url() -> None:
    issues = runtime_secret_issues(Settings(document_store_backend="postgres"))

    assert issues == ("DATABASE_URL is required when DOCUMENT_STORE_BACKEND=postgres",)
