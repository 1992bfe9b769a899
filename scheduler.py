import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from jobs import NotificationJobs


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, jobs: Optional[NotificationJobs] = None) -> None:
        settings = get_settings()
        self.enabled = settings.scheduler_enabled
        self.timezone = settings.timezone
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self._jobs = jobs

    @property
    def jobs(self) -> NotificationJobs:
        if self._jobs is None:
            self._jobs = NotificationJobs()
        return self._jobs

    def _run_job(self, name: str, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job={name} source={source}")
        runner = getattr(self.jobs, f"run_{name}")
        sent = runner()
        logger.info(f"scheduler_run: job={name} source={source} sent={sent}")

    def register_jobs(self) -> None:
        schedule = (
            ("biweekly_reports", CronTrigger(day="1,15", hour=9, minute=0, timezone=self.timezone)),
            ("spending_alerts", CronTrigger(hour=20, minute=0, timezone=self.timezone)),
            ("achievements", CronTrigger(hour=18, minute=0, timezone=self.timezone)),
            ("reengagement", CronTrigger(day_of_week="mon", hour=10, minute=0, timezone=self.timezone)),
        )
        for name, trigger in schedule:
            self.scheduler.add_job(
                self._run_job,
                trigger,
                args=[name, "cron"],
                id=name,
                replace_existing=True,
                misfire_grace_time=3600,
                max_instances=1,
                coalesce=True,
            )

    def start(self) -> None:
        if not self.enabled:
            logger.info("Scheduler disabled (MONETASIS_SCHEDULER_ENABLED=false)")
            return
        self.register_jobs()
        self.scheduler.start()
        logger.info(
            "Scheduler started with biweekly reports, spending alerts, achievements and re-engagement"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
