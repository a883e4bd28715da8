"""
Background Jobs Module

Handles scheduled tasks for:
- Expiry scan (per-batch alerts, hourly)
- Daily expiry report (per hotel, at the configured send time)
"""

from app.jobs.scheduler import NotificationScheduler, EXPIRY_SCAN_TASK, DAILY_REPORT_TASK
from app.jobs.hotel_job_runner import HotelJobRunner

__all__ = [
    "NotificationScheduler",
    "HotelJobRunner",
    "EXPIRY_SCAN_TASK",
    "DAILY_REPORT_TASK",
]
