from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import NotificationServices, health_router, router
from .config import Settings, get_settings, runtime_secret_issues
from .dispatch import ReminderDispatcher
from .document_store import DocumentStore, create_document_store
from .push import PushSender, create_push_sender
from .recurrence import resolve_timezone
from .scheduler import ReminderScheduler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(format=LOG_FORMAT, level=getattr(logging, level.upper(), logging.INFO))


def build_services(
    settings: Settings,
    *,
    store: DocumentStore | None = None,
    sender: PushSender | None = None,
) -> NotificationServices:
    active_store = store or create_document_store(
        backend=settings.document_store_backend,
        database_url=settings.database_url,
    )
    active_sender = sender or create_push_sender(settings)
    dispatcher = ReminderDispatcher(
        store=active_store,
        sender=active_sender,
        due_page_size=settings.reminder_due_page_size,
        retry_page_size=settings.reminder_retry_page_size,
        recurrence_tz=resolve_timezone(settings.recurrence_timezone),
        recurrence_hour=settings.recurrence_hour,
    )
    scheduler = ReminderScheduler(settings=settings, store=active_store, dispatcher=dispatcher)
    return NotificationServices(
        settings=settings,
        store=active_store,
        sender=active_sender,
        dispatcher=dispatcher,
        scheduler=scheduler,
    )


def create_app(
    settings: Settings | None = None,
    *,
    store: DocumentStore | None = None,
    sender: PushSender | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set PUSH_SENDER_TYPE=stub for local runs "
                + "or provide the required provider credentials."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    services = build_services(settings, store=store, sender=sender)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.scheduler_enabled:
            services.scheduler.start()
        try:
            yield
        finally:
            services.scheduler.shutdown()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.services = services
    app.include_router(health_router)
    app.include_router(router, prefix=settings.api_prefix)
    return app


def create_default_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    return create_app(settings)


app = create_default_app()
