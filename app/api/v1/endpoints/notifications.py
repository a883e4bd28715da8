"""API endpoints for expiry notifications and the notification scheduler."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import select, func, and_

from app.api.deps import DB, Scheduler
from app.models.hotel import Hotel
from app.models.notifications import Notification, NotificationType, DeliveryStatus
from app.schemas.notifications import (
    NotificationResponse, NotificationListResponse,
    JobRunSummary, ScheduleStatusResponse, HotelScheduleSettings,
)
from app.services.settings_service import SettingsService, SettingsContext, SettingsKey

router = APIRouter()


@router.get(
    "",
    response_model=NotificationListResponse,
    summary="List notifications of a hotel",
)
async def list_notifications(
    db: DB,
    hotel_id: UUID = Query(...),
    notification_type: Optional[NotificationType] = Query(None),
    delivery_status: Optional[DeliveryStatus] = Query(None, alias="status"),
    department_id: Optional[UUID] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """Newest first."""
    conditions = [Notification.hotel_id == hotel_id]
    if notification_type:
        conditions.append(Notification.notification_type == notification_type.value)
    if delivery_status:
        conditions.append(Notification.status == delivery_status.value)
    if department_id:
        conditions.append(Notification.department_id == department_id)

    total = await db.scalar(select(func.count(Notification.id)).where(and_(*conditions)))
    result = await db.execute(
        select(Notification)
        .where(and_(*conditions))
        .order_by(Notification.created_at.desc())
        .offset(skip)
        .limit(limit)
    )

    return NotificationListResponse(
        items=[NotificationResponse.model_validate(n) for n in result.scalars().all()],
        total=total or 0,
        skip=skip,
        limit=limit,
    )


@router.post(
    "/run-scan",
    response_model=JobRunSummary,
    summary="Run the expiry scan now",
    description="Runs the same task as the hourly timer. Alerts already created today are not duplicated.",
)
async def run_expiry_scan(scheduler: Scheduler):
    return await scheduler.run_expiry_scan_now()


@router.post(
    "/send-daily-report",
    response_model=JobRunSummary,
    summary="Send the daily report now",
    description="Sends the daily report of every active hotel to its enabled channels. Not deduplicated.",
)
async def send_daily_report(scheduler: Scheduler):
    return await scheduler.run_daily_report_now()


@router.get(
    "/schedule",
    response_model=ScheduleStatusResponse,
    summary="Scheduler status",
)
async def get_schedule_status(
    scheduler: Scheduler,
    db: DB,
    hotel_id: Optional[UUID] = Query(None, description="Include the hotel's own send time for audit"),
):
    """Next run times of both tasks and the effective send time and timezone."""
    status_data = scheduler.get_status()

    if hotel_id:
        hotel = await db.get(Hotel, hotel_id)
        if not hotel:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Hotel not found")
        settings_service = SettingsService(db)
        send_time = await settings_service.resolve(SettingsKey.NOTIFY_SEND_TIME, SettingsContext(hotel_id=hotel.id))
        status_data["hotel"] = HotelScheduleSettings(
            hotel_id=hotel.id,
            send_time=send_time.value,
            send_time_scope=send_time.scope,
            timezone=await settings_service.get_hotel_timezone(hotel),
        )

    return status_data
