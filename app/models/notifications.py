"""Database models for expiry notifications and daily reports."""
from datetime import datetime, timezone
from uuid import uuid4
from enum import Enum

from sqlalchemy import (
    Column, String, Text, Date, DateTime, Integer, ForeignKey, JSON,
    Index, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import UUID as PGUUID

from app.database import Base


class NotificationType(str, Enum):
    """Types of notifications."""
    # Per-batch alerts, deduplicated per hotel-local day
    EXPIRING_SOON = "expiring_soon"
    EXPIRING_TODAY = "expiring_today"
    EXPIRED = "expired"

    # Per-hotel aggregate
    DAILY_REPORT = "daily_report"


class DeliveryStatus(str, Enum):
    """Where a notification is in delivery."""
    PENDING = "pending"  # Alert created by the scan, not sent yet
    DELIVERED = "delivered"  # At least one channel accepted it
    FAILED = "failed"  # Every enabled channel failed
    SKIPPED = "skipped"  # No channel enabled, or the batch left stock first


class Notification(Base):
    """
    A generated expiry alert for one batch, or a hotel's daily report.

    The unique constraint on (hotel_id, batch_id, notification_type, local_date)
    is what makes the expiry scan idempotent within a hotel-local day: a second
    insert for the same key fails and the scan treats it as already notified.
    Daily reports leave batch_id and local_date NULL, so they never collide.
    """
    __tablename__ = "notifications"

    id = Column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)

    hotel_id = Column(PGUUID(as_uuid=True), ForeignKey("hotels.id", ondelete="CASCADE"), nullable=False)
    department_id = Column(PGUUID(as_uuid=True), ForeignKey("departments.id", ondelete="CASCADE"))  # NULL = hotel-wide
    batch_id = Column(PGUUID(as_uuid=True), ForeignKey("batches.id", ondelete="CASCADE"))  # NULL for reports

    notification_type = Column(String(30), nullable=False, comment="expiring_soon, expiring_today, expired, daily_report")
    local_date = Column(Date, comment="Hotel-local calendar day the alert belongs to")

    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)

    # Snapshot of the classification that produced the alert
    days_left = Column(Integer)

    status = Column(String(20), nullable=False, default=DeliveryStatus.PENDING.value, comment="pending, delivered, failed, skipped")
    # {channel: {"success": bool, "detail": str}}
    delivery_results = Column(JSON, default=dict)
    delivered_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            'hotel_id', 'batch_id', 'notification_type', 'local_date',
            name='uq_notifications_batch_type_day'
        ),
        Index('ix_notifications_hotel_created', 'hotel_id', 'created_at'),
        Index('ix_notifications_hotel_type', 'hotel_id', 'notification_type'),
        Index('ix_notifications_hotel_status', 'hotel_id', 'status'),
    )

    def __repr__(self) -> str:
        return f"<Notification(type='{self.notification_type}', batch_id='{self.batch_id}', day={self.local_date})>"
