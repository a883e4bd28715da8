"""
APScheduler configuration for expiry notifications.

Two recurring tasks run across all active hotels:

- expiry_scan: every EXPIRY_SCAN_INTERVAL_MINUTES (hourly by default),
  creates per-batch expiry alerts, deduplicated per hotel-local day, then
  sends the pending alerts to each hotel's enabled channels.
- daily_report: once a day at notify.sendTime in locale.timezone (system
  scope), sends the per-hotel report to its enabled channels.

The scheduler is an object owned by whoever builds it (the FastAPI lifespan
in production, fixtures in tests). Several instances can coexist. Changing the
send time or timezone calls reschedule_daily_report(), which re-arms only the
daily_report trigger; the expiry_scan schedule is left alone.

Each task is idle -> running -> idle. Tasks are stopped and started
individually with stop_task() / start_task(). Manual runs call the same task
functions as the timers.
"""

import logging
from datetime import datetime
from typing import Dict, Optional, Tuple

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.job import Job
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.jobs.hotel_job_runner import HotelJobRunner
from app.services.channels import DeliveryChannel, build_channel_registry
from app.services.notification_engine import (
    deliver_pending_alerts, scan_hotel_expiry, send_hotel_daily_report,
)
from app.services.settings_service import (
    SYSTEM_DEFAULTS, SettingsKey, SettingsService, InvalidSettingError,
    parse_send_time, validate_timezone,
)

logger = logging.getLogger(__name__)

EXPIRY_SCAN_TASK = "expiry_scan"
DAILY_REPORT_TASK = "daily_report"

TASK_NAMES = {
    EXPIRY_SCAN_TASK: "Expiry scan (per-batch alerts)",
    DAILY_REPORT_TASK: "Daily expiry report",
}

# Job defaults
JOB_DEFAULTS = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60,  # Allow 60 seconds grace time for misfires
}


class NotificationScheduler:
    """Owns the timers for the expiry scan and the daily report."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        channel_registry: Optional[Dict[str, DeliveryChannel]] = None,
        scan_interval_minutes: int = 60,
        dispatch_timeout: float = 15.0,
        max_concurrent: int = 5,
    ):
        self.session_factory = session_factory
        self.channel_registry = channel_registry if channel_registry is not None else build_channel_registry()
        self.scan_interval_minutes = scan_interval_minutes
        self.dispatch_timeout = dispatch_timeout
        self.runner = HotelJobRunner(session_factory, max_concurrent=max_concurrent)

        self._scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults=JOB_DEFAULTS,
            timezone='UTC',
        )
        self._send_time: Optional[str] = None
        self._timezone: Optional[str] = None
        self._task_state: Dict[str, str] = {EXPIRY_SCAN_TASK: "idle", DAILY_REPORT_TASK: "idle"}
        self._last_runs: Dict[str, dict] = {}

    @property
    def running(self) -> bool:
        return self._scheduler.running

    @property
    def send_time(self) -> Optional[str]:
        return self._send_time

    @property
    def timezone(self) -> Optional[str]:
        return self._timezone

    # ==================== Configuration ====================

    async def _load_schedule_config(self) -> Tuple[str, str]:
        """System-scope (send_time, timezone); stored values that fail validation fall back to defaults."""
        async with self.session_factory() as session:
            send_time, tz_name = await SettingsService(session).get_schedule_config()

        try:
            parse_send_time(send_time)
        except InvalidSettingError as e:
            logger.warning(f"{e}. Using default send time.")
            send_time = SYSTEM_DEFAULTS[SettingsKey.NOTIFY_SEND_TIME]
        try:
            validate_timezone(tz_name)
        except InvalidSettingError as e:
            logger.warning(f"{e}. Using default timezone.")
            tz_name = SYSTEM_DEFAULTS[SettingsKey.LOCALE_TIMEZONE]
        return send_time, tz_name

    def _scan_trigger(self) -> IntervalTrigger:
        return IntervalTrigger(minutes=self.scan_interval_minutes, timezone='UTC')

    @staticmethod
    def _report_trigger(send_time: str, tz_name: str) -> CronTrigger:
        hour, minute = parse_send_time(send_time)
        return CronTrigger(hour=hour, minute=minute, timezone=tz_name)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Arm both tasks and start the timers."""
        if self.running:
            return

        self._send_time, self._timezone = await self._load_schedule_config()
        self._add_task(EXPIRY_SCAN_TASK)
        self._add_task(DAILY_REPORT_TASK)
        self._scheduler.start()

        logger.info("Notification scheduler started")
        for job in self._scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")

    def stop(self) -> None:
        """Stop all timers. Runs in progress finish on their own."""
        if self.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Notification scheduler stopped")

    def _add_task(self, task_id: str) -> Job:
        if task_id == EXPIRY_SCAN_TASK:
            func, trigger = self._run_expiry_scan_job, self._scan_trigger()
        elif task_id == DAILY_REPORT_TASK:
            func, trigger = self._run_daily_report_job, self._report_trigger(self._send_time, self._timezone)
        else:
            raise ValueError(f"Unknown task: {task_id}. Known: {list(TASK_NAMES)}")

        return self._scheduler.add_job(
            func,
            trigger=trigger,
            id=task_id,
            name=TASK_NAMES[task_id],
            replace_existing=True,
        )

    def get_task(self, task_id: str) -> Optional[Job]:
        return self._scheduler.get_job(task_id)

    def stop_task(self, task_id: str) -> bool:
        """Disarm one task's timer. The other task keeps its schedule."""
        if task_id not in TASK_NAMES:
            raise ValueError(f"Unknown task: {task_id}. Known: {list(TASK_NAMES)}")
        if self.get_task(task_id) is None:
            return False
        self._scheduler.remove_job(task_id)
        logger.info(f"Task '{task_id}' stopped")
        return True

    async def start_task(self, task_id: str) -> bool:
        """Re-arm a stopped task. No-op if it is already scheduled."""
        if task_id not in TASK_NAMES:
            raise ValueError(f"Unknown task: {task_id}. Known: {list(TASK_NAMES)}")
        if self.get_task(task_id) is not None:
            return False
        if task_id == DAILY_REPORT_TASK:
            self._send_time, self._timezone = await self._load_schedule_config()
        job = self._add_task(task_id)
        logger.info(f"Task '{task_id}' started - Next run: {job.next_run_time}")
        return True

    async def reschedule_daily_report(self) -> bool:
        """
        Re-read send time and timezone and move the daily report timer.

        Returns True if the trigger changed. The previously armed time is
        dropped, so the report fires once at the new time only.
        """
        send_time, tz_name = await self._load_schedule_config()
        if (send_time, tz_name) == (self._send_time, self._timezone):
            return False

        old = (self._send_time, self._timezone)
        self._send_time, self._timezone = send_time, tz_name

        if self.get_task(DAILY_REPORT_TASK) is not None:
            job = self._scheduler.reschedule_job(
                DAILY_REPORT_TASK, trigger=self._report_trigger(send_time, tz_name)
            )
            logger.info(
                f"Daily report rescheduled from {old[0]} ({old[1]}) to {send_time} ({tz_name}) "
                f"- Next run: {job.next_run_time}"
            )
        return True

    # ==================== Task functions ====================

    async def run_expiry_scan_now(self, now: Optional[datetime] = None) -> dict:
        """Scan all active hotels for expiring batches and send new alerts. Same code path as the timer."""
        async def job(session, hotel):
            summary = await scan_hotel_expiry(session, hotel, now=now)
            summary["delivery"] = await deliver_pending_alerts(
                session, hotel, self.channel_registry, self.dispatch_timeout
            )
            return summary

        return await self._run_task(EXPIRY_SCAN_TASK, job)

    async def run_daily_report_now(self, now: Optional[datetime] = None) -> dict:
        """Send the daily report of every active hotel. Same code path as the timer."""
        async def job(session, hotel):
            return await send_hotel_daily_report(
                session, hotel, self.channel_registry, self.dispatch_timeout, now=now
            )

        return await self._run_task(DAILY_REPORT_TASK, job)

    async def _run_task(self, task_id: str, job) -> dict:
        self._task_state[task_id] = "running"
        try:
            summary = await self.runner.run_job(task_id, job)
        finally:
            self._task_state[task_id] = "idle"
        self._last_runs[task_id] = {
            "completed_at": summary.get("completed_at"),
            "status": summary["status"],
            "hotel_count": summary["hotel_count"],
            "successful": summary["successful"],
            "failed": summary["failed"],
        }
        return summary

    async def _run_expiry_scan_job(self) -> None:
        try:
            await self.run_expiry_scan_now()
        except Exception as e:
            # Store unreachable or similar; the next tick is the retry
            logger.error(f"Job '{EXPIRY_SCAN_TASK}' failed: {e}")

    async def _run_daily_report_job(self) -> None:
        try:
            await self.run_daily_report_now()
        except Exception as e:
            logger.error(f"Job '{DAILY_REPORT_TASK}' failed: {e}")

    # ==================== Status ====================

    def get_status(self) -> dict:
        """Scheduler state, armed triggers and last run summaries."""
        tasks = []
        for task_id, name in TASK_NAMES.items():
            job = self.get_task(task_id)
            next_run = getattr(job, "next_run_time", None) if job else None
            tasks.append({
                "id": task_id,
                "name": name,
                "state": self._task_state[task_id],
                "scheduled": job is not None,
                "next_run_time": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger) if job else None,
                "last_run": self._last_runs.get(task_id),
            })
        return {
            "running": self.running,
            "send_time": self._send_time,
            "timezone": self._timezone,
            "scan_interval_minutes": self.scan_interval_minutes,
            "tasks": tasks,
        }
