"""Pydantic schemas for stock collection (FIFO write-offs)."""
from datetime import date, datetime
from typing import Optional, List
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.batch import WriteOffReason
from app.schemas.base import BaseResponseSchema, BaseCreateSchema


# ==================== Requests ====================

class CollectionRequest(BaseCreateSchema):
    """Collect a quantity of one product from one department, FIFO."""
    hotel_id: UUID
    department_id: UUID
    product_id: UUID
    quantity: int = Field(..., gt=0, description="Units to remove")
    reason: WriteOffReason = WriteOffReason.CONSUMPTION
    comment: Optional[str] = Field(None, max_length=1000)


class CollectionPreviewRequest(BaseCreateSchema):
    hotel_id: UUID
    department_id: UUID
    product_id: UUID
    quantity: int = Field(..., gt=0)


class BatchCollectRequest(BaseCreateSchema):
    """Collect one batch. Omit quantity to collect all of it (required for untracked batches)."""
    hotel_id: UUID
    reason: WriteOffReason = WriteOffReason.CONSUMPTION
    comment: Optional[str] = Field(None, max_length=1000)
    quantity: Optional[int] = Field(None, gt=0)


# ==================== Responses ====================

class ManifestItemResponse(BaseResponseSchema):
    batch_id: UUID
    expiry_date: date
    quantity_collected: Optional[int] = None
    remaining_quantity: Optional[int] = None
    status: str
    write_off_id: Optional[UUID] = None


class ManifestResponse(BaseResponseSchema):
    """Result of a collect: batches touched in FIFO order."""
    product_id: UUID
    department_id: UUID
    reason: str
    items: List[ManifestItemResponse]
    total_collected: int


class PreviewBatch(BaseModel):
    batch_id: UUID
    expiry_date: date
    current_quantity: int
    collect_quantity: int
    remaining_quantity: int
    will_be_depleted: bool


class CollectionPreviewResponse(BaseModel):
    product_id: UUID
    department_id: UUID
    requested_quantity: int
    total_available: int
    can_fulfil: bool
    shortfall: int
    affected_batches: List[PreviewBatch]


class WriteOffResponse(BaseResponseSchema):
    id: UUID
    hotel_id: UUID
    department_id: UUID
    batch_id: UUID
    product_id: UUID
    product_name: Optional[str] = None
    quantity_removed: int
    quantity_remaining: Optional[int] = None
    expiry_date: Optional[date] = None
    reason: str
    comment: Optional[str] = None
    performed_by: Optional[str] = None
    performed_at: datetime


class WriteOffListResponse(BaseModel):
    items: List[WriteOffResponse]
    total: int
    skip: int
    limit: int


class ReasonBreakdown(BaseModel):
    reason: str
    collections: int
    quantity: int


class TopProduct(BaseModel):
    product_id: UUID
    product_name: Optional[str] = None
    collections: int
    quantity: int


class DailyTrendPoint(BaseModel):
    date: str
    collections: int
    quantity: int


class CollectionStatsResponse(BaseModel):
    period: str
    since: datetime
    total_collections: int
    total_quantity: int
    unique_products: int
    by_reason: List[ReasonBreakdown]
    top_products: List[TopProduct]
    daily_trend: List[DailyTrendPoint]


class CollectionReason(BaseModel):
    value: str
    label: str
