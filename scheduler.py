import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from errors import PersistenceError
from recurrence import MaterializationResult, RecurringMaterializer
from services import CloudSyncService, PreferencesService


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, is_subscribed: Callable[[], bool] = lambda: False) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.sync_check_interval_secs = settings.sync_check_interval_secs
        self.is_subscribed = is_subscribed

    def _run_materializer(self, source: str = "manual") -> Optional[MaterializationResult]:
        logger.info(f"scheduler_run: job=materializer source={source}")
        try:
            with session_scope() as session:
                return RecurringMaterializer(session).run()
        except PersistenceError as exc:
            logger.error(f"scheduler_failed: job=materializer source={source} error={exc}")
            return None

    def _check_cloud_sync(self) -> None:
        try:
            with session_scope() as session:
                sync = CloudSyncService(PreferencesService(session))
                sync.disable_if_unsubscribed(self.is_subscribed())
        except PersistenceError as exc:
            logger.error(f"scheduler_failed: job=cloud_sync_check error={exc}")

    def start(self) -> None:
        self._run_materializer("startup")

        trigger = CronTrigger(hour=0, minute=5)
        self.scheduler.add_job(
            self._run_materializer,
            trigger,
            args=["daily_00:05"],
            id="materializer_daily",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(seconds=self.sync_check_interval_secs)
        self.scheduler.add_job(
            self._check_cloud_sync,
            trigger,
            id="cloud_sync_check",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=60,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with daily 00:05 materializer and "
            f"{self.sync_check_interval_secs}s cloud sync check"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
