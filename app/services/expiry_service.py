"""
Expiry classification.

Turns an expiry date into days-left and an urgency status using calendar
dates only. "Today" is always the hotel-local date, never the server's:

    today = local_today("Asia/Almaty")
    result = classify_expiry(batch.expiry_date, today, warning_days=7, critical_days=3)

Thresholds are validated when they are written (SettingsService), so
classification itself has no error conditions.
"""
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from app.models.notifications import NotificationType


class ExpiryStatus(str, Enum):
    """Urgency of a batch, from least to most urgent."""
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"
    TODAY = "today"
    EXPIRED = "expired"


URGENT_STATUSES = frozenset({ExpiryStatus.EXPIRED, ExpiryStatus.TODAY, ExpiryStatus.CRITICAL})

_NOTIFICATION_TYPES = {
    ExpiryStatus.EXPIRED: NotificationType.EXPIRED,
    ExpiryStatus.TODAY: NotificationType.EXPIRING_TODAY,
    ExpiryStatus.CRITICAL: NotificationType.EXPIRING_SOON,
    ExpiryStatus.WARNING: NotificationType.EXPIRING_SOON,
}


@dataclass(frozen=True)
class ExpiryResult:
    days_left: int
    status: ExpiryStatus


def local_today(tz_name: str, now: Optional[datetime] = None) -> date:
    """Calendar date in the given IANA timezone at the instant ``now`` (default: current time)."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(tz_name)).date()


def classify_expiry(
    expiry_date: date,
    today: date,
    warning_days: int,
    critical_days: int,
) -> ExpiryResult:
    """
    Classify an expiry date relative to ``today``.

    - expired:  days_left < 0
    - today:    days_left == 0
    - critical: 0 < days_left <= critical_days
    - warning:  critical_days < days_left <= warning_days
    - good:     otherwise
    """
    days_left = (expiry_date - today).days

    if days_left < 0:
        status = ExpiryStatus.EXPIRED
    elif days_left == 0:
        status = ExpiryStatus.TODAY
    elif days_left <= critical_days:
        status = ExpiryStatus.CRITICAL
    elif days_left <= warning_days:
        status = ExpiryStatus.WARNING
    else:
        status = ExpiryStatus.GOOD

    return ExpiryResult(days_left=days_left, status=status)


def notification_type_for(status: ExpiryStatus) -> Optional[NotificationType]:
    """Alert type the expiry scan raises for a status; None for good batches."""
    return _NOTIFICATION_TYPES.get(status)


def is_urgent(status: ExpiryStatus) -> bool:
    return status in URGENT_STATUSES


def calculate_batch_stats(
    expiry_dates: Iterable[date],
    today: date,
    warning_days: int,
    critical_days: int,
) -> dict:
    """
    Count batches per status for dashboards and reports.

    Batches expiring today are counted as expired here (they must be pulled
    from the shelf today). health_score is the percentage of good batches.
    """
    stats = {
        "total": 0,
        "good": 0,
        "warning": 0,
        "critical": 0,
        "expired": 0,
    }

    for expiry_date in expiry_dates:
        result = classify_expiry(expiry_date, today, warning_days, critical_days)
        stats["total"] += 1
        if result.status in (ExpiryStatus.EXPIRED, ExpiryStatus.TODAY):
            stats["expired"] += 1
        else:
            stats[result.status.value] += 1

    if stats["total"]:
        stats["health_score"] = round(stats["good"] / stats["total"] * 100)
    else:
        stats["health_score"] = 100

    return stats
