"""
Expiry notification tasks for a single hotel.

scan_hotel_expiry()
    Classifies every active batch of the hotel and creates one Notification
    per (batch, alert type, hotel-local day). Re-running the scan on the same
    local day creates nothing new. The existence check is a fast path; the
    unique constraint on notifications is what makes the insert atomic when
    two scans overlap. New alerts are stored as pending.

deliver_pending_alerts()
    Sends the hotel's pending alerts to its enabled channels and records the
    per-channel results. Alerts whose batch is no longer active are skipped
    without sending. Failed alerts are not retried: the next local day
    produces a new alert if the batch is still there.

send_hotel_daily_report()
    Aggregates batch counts per department, renders the report template and
    sends it to every enabled channel of the hotel. Reports are not
    deduplicated: the scheduler fires them once per day, and manual runs may
    resend at will.

Both functions take an open session and a Hotel and are driven per hotel by
HotelJobRunner. Errors for one batch or one channel are recorded and do not
stop the rest.
"""
import logging
from collections import defaultdict
from dataclasses import replace
from datetime import date, datetime, time, timezone
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import select, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.batch import Batch, BatchStatus, WriteOff
from app.models.hotel import Hotel, Department, Product
from app.models.notifications import Notification, NotificationType, DeliveryStatus
from app.services.channels import (
    DeliveryChannel, DeliveryContext, dispatch_to_channels, select_enabled_channels,
)
from app.services.expiry_service import (
    ExpiryResult, ExpiryStatus, classify_expiry, local_today, notification_type_for,
)
from app.services.settings_service import SettingsService, SettingsContext, SettingsKey

logger = logging.getLogger(__name__)


ALERT_TITLES = {
    NotificationType.EXPIRED: "Expired: {product}",
    NotificationType.EXPIRING_TODAY: "Expires today: {product}",
    NotificationType.EXPIRING_SOON: "Expiring in {days} day(s): {product}",
}


class _TemplateValues(dict):
    """format_map() mapping that leaves unknown placeholders untouched."""

    def __missing__(self, key):
        return "{" + key + "}"


def render_template(template: str, values: dict) -> str:
    return template.format_map(_TemplateValues(values))


def _format_quantity(quantity: Optional[int], unit: str) -> str:
    if quantity is None:
        return "untracked"
    return f"{quantity} {unit}"


# ==================== Expiry scan ====================

async def _active_batches(session: AsyncSession, hotel_id) -> List[Tuple[Batch, Product, Department]]:
    result = await session.execute(
        select(Batch, Product, Department)
        .join(Product, Product.id == Batch.product_id)
        .join(Department, Department.id == Batch.department_id)
        .where(
            and_(
                Batch.hotel_id == hotel_id,
                Batch.status == BatchStatus.ACTIVE.value,
                # Tracked batches at 0 hold nothing to warn about
                (Batch.quantity.is_(None)) | (Batch.quantity > 0),
            )
        )
        .order_by(Batch.expiry_date, Batch.added_at)
    )
    return [(row.Batch, row.Product, row.Department) for row in result]


async def _alert_exists(
    session: AsyncSession, hotel_id, batch_id, notification_type: NotificationType, local_date: date
) -> bool:
    existing = await session.scalar(
        select(Notification.id).where(
            and_(
                Notification.hotel_id == hotel_id,
                Notification.batch_id == batch_id,
                Notification.notification_type == notification_type.value,
                Notification.local_date == local_date,
            )
        )
    )
    return existing is not None


async def create_batch_alert(
    session: AsyncSession,
    hotel: Hotel,
    batch: Batch,
    product: Product,
    department: Department,
    notification_type: NotificationType,
    expiry: ExpiryResult,
    local_date: date,
) -> bool:
    """
    Insert the alert for (hotel, batch, type, local_date) unless it exists.

    Returns True if a notification was created, False if one already existed.
    """
    if await _alert_exists(session, hotel.id, batch.id, notification_type, local_date):
        return False

    title = ALERT_TITLES[notification_type].format(product=product.name, days=expiry.days_left)
    message = (
        f"{product.name} in {department.name}: {_format_quantity(batch.quantity, product.unit)}, "
        f"expires {batch.expiry_date.isoformat()} ({expiry.status.value}, {expiry.days_left} day(s) left)"
    )
    notification = Notification(
        hotel_id=hotel.id,
        department_id=batch.department_id,
        batch_id=batch.id,
        notification_type=notification_type.value,
        local_date=local_date,
        title=title,
        message=message,
        days_left=expiry.days_left,
        status=DeliveryStatus.PENDING.value,
        delivery_results={},
    )

    try:
        async with session.begin_nested():
            session.add(notification)
            await session.flush()
    except IntegrityError:
        # A concurrent scan inserted the same alert first
        logger.debug(f"Alert for batch {batch.id} already created by a concurrent scan")
        return False
    return True


async def scan_hotel_expiry(session: AsyncSession, hotel: Hotel, now: Optional[datetime] = None) -> dict:
    """
    Create today's expiry alerts for one hotel.

    Returns:
        {"checked", "created", "already_notified", "failed", "local_date"}
    """
    settings_service = SettingsService(session)
    tz_name = await settings_service.get_hotel_timezone(hotel)
    today = local_today(tz_name, now)
    thresholds = await settings_service.get_thresholds(SettingsContext(hotel_id=hotel.id))

    summary = {
        "checked": 0,
        "created": 0,
        "already_notified": 0,
        "failed": 0,
        "local_date": today.isoformat(),
    }

    for batch, product, department in await _active_batches(session, hotel.id):
        summary["checked"] += 1
        try:
            expiry = classify_expiry(
                batch.expiry_date, today, thresholds.warning_days, thresholds.critical_days
            )
            notification_type = notification_type_for(expiry.status)
            if notification_type is None:
                continue
            created = await create_batch_alert(
                session, hotel, batch, product, department, notification_type, expiry, today
            )
            summary["created" if created else "already_notified"] += 1
        except Exception as e:
            summary["failed"] += 1
            logger.error(
                f"Expiry check failed for batch {batch.id}: {e}",
                extra={"hotel_id": str(hotel.id)},
            )

    logger.info(
        f"Expiry scan for hotel '{hotel.name}': {summary['created']} new alert(s), "
        f"{summary['already_notified']} already notified, {summary['failed']} failed",
        extra={"hotel_id": str(hotel.id), "local_date": today.isoformat()},
    )
    return summary


# ==================== Alert delivery ====================

PENDING_ALERT_LIMIT = 100


def _delivery_status(delivery_results: Dict[str, dict]) -> DeliveryStatus:
    if not delivery_results:
        return DeliveryStatus.SKIPPED
    if any(result["success"] for result in delivery_results.values()):
        return DeliveryStatus.DELIVERED
    return DeliveryStatus.FAILED


def _record_delivery(notification: Notification, delivery_results: Dict[str, dict]) -> DeliveryStatus:
    status = _delivery_status(delivery_results)
    notification.delivery_results = delivery_results
    notification.status = status.value
    if status == DeliveryStatus.DELIVERED:
        notification.delivered_at = datetime.now(timezone.utc)
    return status


async def deliver_pending_alerts(
    session: AsyncSession,
    hotel: Hotel,
    channel_registry: Dict[str, DeliveryChannel],
    timeout: float,
) -> dict:
    """
    Send one hotel's pending batch alerts, oldest first.

    Returns:
        {"pending", "delivered", "failed", "skipped"}
    """
    result = await session.execute(
        select(Notification, Batch.status)
        .outerjoin(Batch, Batch.id == Notification.batch_id)
        .where(
            and_(
                Notification.hotel_id == hotel.id,
                Notification.batch_id.is_not(None),
                Notification.status == DeliveryStatus.PENDING.value,
            )
        )
        .order_by(Notification.created_at, Notification.id)
        .limit(PENDING_ALERT_LIMIT)
    )
    rows = result.all()
    summary = {"pending": len(rows), "delivered": 0, "failed": 0, "skipped": 0}
    if not rows:
        return summary

    settings_service = SettingsService(session)
    channels = await select_enabled_channels(settings_service, hotel.id, channel_registry)
    context = await _delivery_context(settings_service, session, hotel, hotel.name) if channels else None

    for notification, batch_status in rows:
        if batch_status != BatchStatus.ACTIVE.value:
            # Collected or removed since the scan
            notification.status = DeliveryStatus.SKIPPED.value
            summary["skipped"] += 1
            continue
        if not channels:
            status = _record_delivery(notification, {})
        else:
            delivery_results = await dispatch_to_channels(
                channels, replace(context, subject=notification.title), notification.message, timeout
            )
            status = _record_delivery(notification, delivery_results)
        summary[status.value] += 1

    await session.flush()

    logger.info(
        f"Alert delivery for hotel '{hotel.name}': {summary['delivered']} delivered, "
        f"{summary['failed']} failed, {summary['skipped']} skipped",
        extra={"hotel_id": str(hotel.id)},
    )
    return summary


# ==================== Daily report ====================

def _local_day_start_utc(day: date, tz_name: str) -> datetime:
    return datetime.combine(day, time.min, tzinfo=ZoneInfo(tz_name)).astimezone(timezone.utc)


async def _collected_today_by_department(
    session: AsyncSession, hotel_id, day: date, tz_name: str
) -> Dict:
    result = await session.execute(
        select(WriteOff.department_id, func.sum(WriteOff.quantity_removed))
        .where(
            and_(
                WriteOff.hotel_id == hotel_id,
                WriteOff.performed_at >= _local_day_start_utc(day, tz_name),
            )
        )
        .group_by(WriteOff.department_id)
    )
    return {department_id: int(quantity or 0) for department_id, quantity in result}


def _list_block(title: str, lines: List[str]) -> str:
    if not lines:
        return ""
    return f"\n{title}:\n" + "\n".join(lines) + "\n"


async def build_hotel_report(
    session: AsyncSession,
    hotel: Hotel,
    now: Optional[datetime] = None,
) -> dict:
    """
    Aggregate a hotel's active batches by department and render the report.

    Returns:
        {"date", "departments": [{name, good, warning, expired, total, collected_today}], "message"}
    """
    settings_service = SettingsService(session)
    ctx = SettingsContext(hotel_id=hotel.id)
    tz_name = await settings_service.get_hotel_timezone(hotel)
    today = local_today(tz_name, now)
    thresholds = await settings_service.get_thresholds(ctx)
    template = await settings_service.get_value(SettingsKey.NOTIFY_TEMPLATE_DAILY_REPORT, ctx)

    departments = (await session.execute(
        select(Department)
        .where(and_(Department.hotel_id == hotel.id, Department.is_active == True))  # noqa: E712
        .order_by(Department.name)
    )).scalars().all()

    by_department = defaultdict(lambda: {"good": 0, "warning": 0, "expired": 0, "expiring": [], "expired_lines": []})
    for batch, product, department in await _active_batches(session, hotel.id):
        expiry = classify_expiry(batch.expiry_date, today, thresholds.warning_days, thresholds.critical_days)
        bucket = by_department[department.id]
        quantity = _format_quantity(batch.quantity, product.unit)
        expires = batch.expiry_date.strftime("%d.%m.%Y")
        if expiry.status in (ExpiryStatus.EXPIRED, ExpiryStatus.TODAY):
            bucket["expired"] += 1
            bucket["expired_lines"].append(f"• {product.name} - {quantity} (expired {expires})")
        elif expiry.status in (ExpiryStatus.CRITICAL, ExpiryStatus.WARNING):
            bucket["warning"] += 1
            bucket["expiring"].append(
                f"• {product.name} - {quantity} (expires {expires}, {expiry.days_left} days left)"
            )
        else:
            bucket["good"] += 1

    collected = await _collected_today_by_department(session, hotel.id, today, tz_name)

    sections = []
    rendered = []
    for department in departments:
        bucket = by_department[department.id]
        total = bucket["good"] + bucket["warning"] + bucket["expired"]
        section = {
            "department_id": department.id,
            "department": department.name,
            "good": bucket["good"],
            "warning": bucket["warning"],
            "expired": bucket["expired"],
            "total": total,
            "collected_today": collected.get(department.id, 0),
        }
        sections.append(section)
        rendered.append(render_template(template, {
            "hotel": hotel.name,
            "department": department.name,
            "date": today.strftime("%d.%m.%Y"),
            "good": section["good"],
            "warning": section["warning"],
            "expired": section["expired"],
            "total": total,
            "collectedToday": section["collected_today"],
            "expiringList": _list_block("Expiring soon", bucket["expiring"]),
            "expiredList": _list_block("Expired", bucket["expired_lines"]),
        }))

    message = "\n\n".join(part.rstrip() for part in rendered) or f"{hotel.name}: no active departments"
    return {"date": today, "departments": sections, "message": message}


async def _delivery_context(
    settings_service: SettingsService, session: AsyncSession, hotel: Hotel, subject: str
) -> DeliveryContext:
    ctx = SettingsContext(hotel_id=hotel.id)
    chat_ids = await settings_service.get_value(SettingsKey.TELEGRAM_CHAT_IDS, ctx) or []
    recipients = list(await settings_service.get_value(SettingsKey.NOTIFY_EMAIL_RECIPIENTS, ctx) or [])

    department_emails = (await session.execute(
        select(Department.email).where(
            and_(
                Department.hotel_id == hotel.id,
                Department.is_active == True,  # noqa: E712
                Department.email.is_not(None),
            )
        )
    )).scalars().all()
    for email in department_emails:
        if email and email not in recipients:
            recipients.append(email)

    return DeliveryContext(
        hotel_id=hotel.id,
        hotel_name=hotel.name,
        subject=subject,
        telegram_chat_ids=tuple(str(chat_id) for chat_id in chat_ids),
        email_recipients=tuple(recipients),
    )


async def send_hotel_daily_report(
    session: AsyncSession,
    hotel: Hotel,
    channel_registry: Dict[str, DeliveryChannel],
    timeout: float,
    now: Optional[datetime] = None,
) -> dict:
    """
    Build and send the daily report of one hotel to its enabled channels.

    The report is stored as a daily_report Notification with per-channel
    delivery results, whether or not any channel succeeded.
    """
    settings_service = SettingsService(session)
    report = await build_hotel_report(session, hotel, now)
    subject = f"Daily expiry report: {hotel.name} ({report['date'].strftime('%d.%m.%Y')})"

    channels = await select_enabled_channels(settings_service, hotel.id, channel_registry)
    if channels:
        context = await _delivery_context(settings_service, session, hotel, subject)
        delivery_results = await dispatch_to_channels(channels, context, report["message"], timeout)
    else:
        delivery_results = {}
        logger.info(f"No channels enabled for hotel '{hotel.name}', report stored only",
                    extra={"hotel_id": str(hotel.id)})

    notification = Notification(
        hotel_id=hotel.id,
        notification_type=NotificationType.DAILY_REPORT.value,
        title=subject,
        message=report["message"],
    )
    _record_delivery(notification, delivery_results)
    session.add(notification)
    await session.flush()

    delivered = [name for name, result in delivery_results.items() if result["success"]]
    failed = [name for name, result in delivery_results.items() if not result["success"]]
    if failed:
        logger.warning(
            f"Daily report for hotel '{hotel.name}' failed on: {', '.join(failed)}",
            extra={"hotel_id": str(hotel.id)},
        )

    return {
        "date": report["date"].isoformat(),
        "departments": len(report["departments"]),
        "channels": delivery_results,
        "delivered": delivered,
        "failed": failed,
    }
