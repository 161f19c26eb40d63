import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import DebtService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.interval_secs = settings.purge_interval_secs
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            purged = DebtService(session).purge_expired()
        logger.info(f"scheduler_run: source={source} purged={purged}")
        return purged

    def start(self) -> None:
        self._run_job("startup")

        trigger = IntervalTrigger(seconds=self.interval_secs)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["debt_purge_interval"],
            id="debt_purge",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(f"Scheduler started with debt purge every {self.interval_secs}s")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
