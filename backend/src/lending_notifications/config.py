from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    return normalized.lower() in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Lending Notifications"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"
    document_store_backend: str = "inmemory"
    database_url: str = ""
    push_enabled: bool = True
    push_sender_type: str = "stub"
    fcm_project_id: str = ""
    fcm_service_account_json: str = ""
    fcm_service_account_path: str = ""
    fcm_api_base_url: str = "https://fcm.googleapis.com"
    push_timeout_seconds: int = 10
    reminder_due_page_size: int = 100
    reminder_retry_page_size: int = 50
    recurrence_timezone: str = "UTC"
    recurrence_hour: int = 9
    scheduler_enabled: bool = False
    dispatch_interval_seconds: int = 60
    overdue_scan_hour: int = 9
    overdue_scan_page_size: int = 200
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("NOTIFICATIONS_APP_NAME", "Lending Notifications"),
        api_prefix=os.getenv("NOTIFICATIONS_API_PREFIX", "/api/v1"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        document_store_backend=os.getenv("DOCUMENT_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        push_enabled=_as_bool(os.getenv("PUSH_ENABLED"), True),
        push_sender_type=_normalize_mode(
            os.getenv("PUSH_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        fcm_project_id=os.getenv("FCM_PROJECT_ID", ""),
        fcm_service_account_json=os.getenv("FCM_SERVICE_ACCOUNT_JSON", ""),
        fcm_service_account_path=os.getenv("FCM_SERVICE_ACCOUNT_PATH", ""),
        fcm_api_base_url=os.getenv("FCM_API_BASE_URL", "https://fcm.googleapis.com"),
        push_timeout_seconds=_as_int(os.getenv("PUSH_TIMEOUT_SECONDS"), 10, minimum=1),
        reminder_due_page_size=_as_int(os.getenv("REMINDER_DUE_PAGE_SIZE"), 100, minimum=1),
        reminder_retry_page_size=_as_int(os.getenv("REMINDER_RETRY_PAGE_SIZE"), 50, minimum=1),
        recurrence_timezone=os.getenv("RECURRENCE_TIMEZONE", "UTC").strip() or "UTC",
        recurrence_hour=min(_as_int(os.getenv("RECURRENCE_HOUR"), 9), 23),
        scheduler_enabled=_as_bool(os.getenv("SCHEDULER_ENABLED"), False),
        dispatch_interval_seconds=_as_int(os.getenv("DISPATCH_INTERVAL_SECONDS"), 60, minimum=1),
        overdue_scan_hour=min(_as_int(os.getenv("OVERDUE_SCAN_HOUR"), 9), 23),
        overdue_scan_page_size=_as_int(os.getenv("OVERDUE_SCAN_PAGE_SIZE"), 200, minimum=1),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.push_sender_type == "http":
        if _is_placeholder(settings.fcm_project_id):
            issues.append("FCM_PROJECT_ID is required when PUSH_SENDER_TYPE=http")
        if _is_placeholder(settings.fcm_service_account_json) and _is_placeholder(settings.fcm_service_account_path):
            issues.append("FCM_SERVICE_ACCOUNT_JSON or FCM_SERVICE_ACCOUNT_PATH is required when PUSH_SENDER_TYPE=http")
    if settings.document_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when DOCUMENT_STORE_BACKEND=postgres")
    return tuple(issues)
