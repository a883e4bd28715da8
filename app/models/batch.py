"""
Batch and write-off models.

A Batch is a dated quantity of one product held by one department. Its
quantity and status change only through CollectionService, which locks the
rows and bumps ``version`` on every update. A WriteOff is the immutable
record of one depletion against one batch.
"""
import uuid
from datetime import datetime, date, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import String, DateTime, Date, ForeignKey, Integer, Text, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID

from app.database import Base

if TYPE_CHECKING:
    from app.models.hotel import Product, Department


class BatchStatus(str, Enum):
    """Batch lifecycle status."""
    ACTIVE = "active"
    COLLECTED = "collected"


class WriteOffReason(str, Enum):
    """Why stock was removed."""
    CONSUMPTION = "consumption"
    SALE = "sale"
    DAMAGED = "damaged"
    EXPIRED = "expired"
    OTHER = "other"


class Batch(Base):
    """
    Stock of one product in one department with a single expiry date.

    quantity is NULL for untracked batches (the department does not count
    units). Those are skipped by FIFO depletion and can only be collected
    as a whole.
    """
    __tablename__ = "batches"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    hotel_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("hotels.id", ondelete="CASCADE"),
        nullable=False
    )
    department_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("departments.id", ondelete="CASCADE"),
        nullable=False
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False
    )
    batch_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    quantity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    expiry_date: Mapped[date] = mapped_column(Date, nullable=False)

    # VARCHAR status: active, collected
    status: Mapped[str] = mapped_column(
        String(20),
        default=BatchStatus.ACTIVE.value,
        nullable=False
    )

    added_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    collected_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    collected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency counter, incremented by the ORM on every UPDATE
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    product: Mapped["Product"] = relationship("Product", back_populates="batches")
    department: Mapped["Department"] = relationship("Department")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("quantity IS NULL OR quantity >= 0", name="ck_batches_quantity_non_negative"),
        # FIFO lookup: active batches of one product in one department by expiry
        Index("ix_batches_fifo", "hotel_id", "department_id", "product_id", "status", "expiry_date"),
        Index("ix_batches_hotel_status", "hotel_id", "status"),
    )

    @property
    def is_tracked(self) -> bool:
        return self.quantity is not None

    def __repr__(self) -> str:
        return f"<Batch(product_id='{self.product_id}', qty={self.quantity}, expires={self.expiry_date})>"


class WriteOff(Base):
    """Immutable record of quantity removed from one batch."""
    __tablename__ = "write_offs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    hotel_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("hotels.id", ondelete="CASCADE"),
        nullable=False
    )
    department_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("departments.id", ondelete="CASCADE"),
        nullable=False
    )
    # RESTRICT: batches with write-offs can't be deleted
    batch_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("batches.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False
    )

    quantity_removed: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(20), nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    performed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    performed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Snapshot at write-off time, so history survives product renames
    product_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    expiry_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    quantity_remaining: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint("quantity_removed > 0", name="ck_write_offs_quantity_positive"),
        Index("ix_write_offs_hotel_performed", "hotel_id", "performed_at"),
    )

    def __repr__(self) -> str:
        return f"<WriteOff(batch_id='{self.batch_id}', qty={self.quantity_removed}, reason='{self.reason}')>"
