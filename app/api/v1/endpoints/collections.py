"""API endpoints for stock collection (FIFO write-offs)."""
from datetime import datetime
from typing import Optional, List
from uuid import UUID

from fastapi import APIRouter, Query, status

from app.api.deps import DB, Actor
from app.models.batch import WriteOffReason
from app.schemas.collections import (
    CollectionRequest, CollectionPreviewRequest, BatchCollectRequest,
    ManifestResponse, CollectionPreviewResponse,
    WriteOffResponse, WriteOffListResponse, CollectionStatsResponse, CollectionReason,
)
from app.services.collection_service import CollectionService, COLLECTION_REASONS


router = APIRouter()


@router.get(
    "/reasons",
    response_model=List[CollectionReason],
    summary="List write-off reasons",
)
async def list_reasons():
    """Reasons accepted by the collect endpoints."""
    return COLLECTION_REASONS


@router.post(
    "/preview",
    response_model=CollectionPreviewResponse,
    summary="Preview a FIFO collection",
    description="Show which batches a collection would deplete, without changing stock."
)
async def preview_collection(
    data: CollectionPreviewRequest,
    db: DB,
):
    service = CollectionService(db)
    return await service.preview_collection(
        hotel_id=data.hotel_id,
        department_id=data.department_id,
        product_id=data.product_id,
        quantity=data.quantity,
    )


@router.post(
    "",
    response_model=ManifestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Collect stock (FIFO)",
    description=(
        "Remove a quantity of a product from a department's batches, earliest expiry first. "
        "Either the full quantity is written off or nothing changes (409 on insufficient stock)."
    ),
)
async def collect_stock(
    data: CollectionRequest,
    db: DB,
    actor: Actor,
):
    """
    FIFO collection.

    - One write-off per batch touched
    - Batches reaching zero are marked collected
    - 409 Conflict: insufficient stock, or a concurrent change (retry)
    """
    service = CollectionService(db)
    manifest = await service.collect(
        hotel_id=data.hotel_id,
        department_id=data.department_id,
        product_id=data.product_id,
        quantity=data.quantity,
        reason=data.reason,
        comment=data.comment,
        performed_by=actor,
    )
    return ManifestResponse.model_validate(manifest)


@router.post(
    "/batches/{batch_id}",
    response_model=ManifestResponse,
    summary="Collect a single batch",
    description="Collect one batch whole (or a part of a tracked batch). Untracked batches can only be collected whole.",
)
async def collect_batch(
    batch_id: UUID,
    data: BatchCollectRequest,
    db: DB,
    actor: Actor,
):
    service = CollectionService(db)
    manifest = await service.collect_batch(
        hotel_id=data.hotel_id,
        batch_id=batch_id,
        reason=data.reason,
        comment=data.comment,
        performed_by=actor,
        quantity=data.quantity,
    )
    return ManifestResponse.model_validate(manifest)


@router.delete(
    "/batches/{batch_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a batch",
    description="Delete a batch entered by mistake. Fails with 409 if the batch has write-offs.",
)
async def delete_batch(
    batch_id: UUID,
    db: DB,
    hotel_id: UUID = Query(...),
):
    service = CollectionService(db)
    await service.delete_batch(hotel_id=hotel_id, batch_id=batch_id)


@router.get(
    "/history",
    response_model=WriteOffListResponse,
    summary="Collection history",
)
async def get_collection_history(
    db: DB,
    hotel_id: UUID = Query(...),
    department_id: Optional[UUID] = Query(None),
    product_id: Optional[UUID] = Query(None),
    reason: Optional[WriteOffReason] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    """Write-offs of a hotel, newest first."""
    service = CollectionService(db)
    items, total = await service.get_collection_history(
        hotel_id=hotel_id,
        department_id=department_id,
        product_id=product_id,
        reason=reason,
        date_from=date_from,
        date_to=date_to,
        skip=skip,
        limit=limit,
    )
    return WriteOffListResponse(
        items=[WriteOffResponse.model_validate(item) for item in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get(
    "/stats",
    response_model=CollectionStatsResponse,
    summary="Collection statistics",
)
async def get_collection_stats(
    db: DB,
    hotel_id: UUID = Query(...),
    period: str = Query("week", pattern="^(day|week|month|year)$"),
    department_id: Optional[UUID] = Query(None),
):
    """Totals, reasons, top products and daily trend for a period."""
    service = CollectionService(db)
    return await service.get_collection_stats(
        hotel_id=hotel_id,
        period=period,
        department_id=department_id,
    )
