"""Pydantic schemas for notifications and the notification scheduler."""
from datetime import date, datetime
from typing import Optional, List, Dict, Any
from uuid import UUID

from pydantic import BaseModel

from app.schemas.base import BaseResponseSchema


# ==================== Notification Schemas ====================

class NotificationResponse(BaseResponseSchema):
    """Response schema for Notification."""
    id: UUID
    hotel_id: UUID
    department_id: Optional[UUID] = None
    batch_id: Optional[UUID] = None
    notification_type: str
    local_date: Optional[date] = None
    title: str
    message: str
    days_left: Optional[int] = None
    status: str
    delivery_results: Optional[Dict[str, Any]] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime


class NotificationListResponse(BaseModel):
    """Response for listing notifications."""
    items: List[NotificationResponse]
    total: int
    skip: int
    limit: int


# ==================== Scheduler Schemas ====================

class HotelJobResult(BaseModel):
    hotel_id: str
    hotel: str
    job: str
    status: str
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    duration_ms: int


class JobRunSummary(BaseModel):
    """Summary of one run of a hotel job across all active hotels."""
    job: str
    status: str
    hotel_count: int
    successful: int
    failed: int
    duration_ms: Optional[int] = None
    results: List[HotelJobResult] = []


class TaskStatus(BaseModel):
    id: str
    name: str
    state: str
    scheduled: bool
    next_run_time: Optional[str] = None
    trigger: Optional[str] = None
    last_run: Optional[Dict[str, Any]] = None


class HotelScheduleSettings(BaseModel):
    """Hotel-scope values, shown for audit only; the timer follows system scope."""
    hotel_id: UUID
    send_time: str
    send_time_scope: str
    timezone: str


class ScheduleStatusResponse(BaseModel):
    running: bool
    send_time: Optional[str] = None
    timezone: Optional[str] = None
    scan_interval_minutes: int
    tasks: List[TaskStatus]
    hotel: Optional[HotelScheduleSettings] = None
