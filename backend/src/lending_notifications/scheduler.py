from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .config import Settings
from .dispatch import ReminderDispatcher
from .document_store import DocumentStore
from .overdue import scan_overdue_rentals

logger = logging.getLogger(__name__)

DISPATCH_JOB_ID = "reminder_dispatch"
OVERDUE_SCAN_JOB_ID = "overdue_rental_scan"


class ReminderScheduler:
    """Periodic trigger for the dispatch tick and the daily overdue-rental scan."""

    def __init__(self, *, settings: Settings, store: DocumentStore, dispatcher: ReminderDispatcher) -> None:
        self._settings = settings
        self._store = store
        self._dispatcher = dispatcher
        self.scheduler = BackgroundScheduler(timezone="UTC")

    def setup(self) -> None:
        self.scheduler.add_job(
            self.run_dispatch,
            IntervalTrigger(seconds=self._settings.dispatch_interval_seconds),
            id=DISPATCH_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self.run_overdue_scan,
            CronTrigger(hour=self._settings.overdue_scan_hour, minute=0, timezone="UTC"),
            id=OVERDUE_SCAN_JOB_ID,
            replace_existing=True,
            coalesce=True,
        )
        logger.info(
            "scheduled reminder dispatch every %ss and overdue scan daily at %02d:00 UTC",
            self._settings.dispatch_interval_seconds,
            self._settings.overdue_scan_hour,
        )

    def start(self) -> None:
        if not self.scheduler.get_jobs():
            self.setup()
        self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def run_dispatch(self) -> None:
        try:
            self._dispatcher.run_tick()
        except Exception:
            logger.exception("reminder dispatch tick failed")
            raise

    def run_overdue_scan(self) -> None:
        try:
            scan_overdue_rentals(self._store, limit=self._settings.overdue_scan_page_size)
        except Exception:
            logger.exception("overdue rental scan failed")
            raise
