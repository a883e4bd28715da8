"""
Stock collection (write-off) service.

Depletes a product's batches in FIFO order: earliest expiry first, ties
broken by the earliest received batch. A collect either removes exactly the
requested quantity and writes one WriteOff per touched batch, or fails
without changing anything.

Concurrency:
- The batch rows are selected with SELECT ... FOR UPDATE, so concurrent
  collects on the same product and department queue behind each other.
  Different products or departments never share locks.
- Batch.version is an ORM version counter. If a row was changed by someone
  else between our read and our UPDATE (a backend without row locks, or a
  write that bypassed the lock), the UPDATE matches no row and the collect
  fails with ConcurrentModificationError. The caller may retry the call.

Every change to a batch's quantity or status goes through _deplete_batch()
or _mark_collected().
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select, func, and_, delete, desc
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.models.batch import Batch, BatchStatus, WriteOff, WriteOffReason
from app.models.hotel import Department, Hotel, Product
from app.models.notifications import Notification
from app.services.expiry_service import local_today
from app.services.settings_service import SYSTEM_DEFAULTS, SettingsKey, SettingsService

logger = logging.getLogger(__name__)


COLLECTION_REASONS = [
    {"value": WriteOffReason.CONSUMPTION.value, "label": "Consumption"},
    {"value": WriteOffReason.SALE.value, "label": "Sale"},
    {"value": WriteOffReason.DAMAGED.value, "label": "Damaged"},
    {"value": WriteOffReason.EXPIRED.value, "label": "Expired"},
    {"value": WriteOffReason.OTHER.value, "label": "Other"},
]

STATS_PERIODS = {
    "day": timedelta(days=1),
    "week": timedelta(days=7),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}


# ==================== Errors ====================

class CollectionError(Exception):
    """Base class for collection errors."""


class InvalidQuantityError(CollectionError):
    """Requested quantity is not a positive integer or not valid for the batch."""


class InsufficientStockError(CollectionError):
    """Active tracked stock can't cover the request. Nothing was changed."""

    def __init__(self, available: int, requested: int):
        self.available = available
        self.requested = requested
        super().__init__(f"Insufficient stock. Available: {available}, Requested: {requested}")


class NotFoundError(CollectionError):
    """A referenced entity does not exist in this hotel."""


class ProductNotFoundError(NotFoundError):
    pass


class DepartmentNotFoundError(NotFoundError):
    pass


class BatchNotFoundError(NotFoundError):
    pass


class BatchNotActiveError(CollectionError):
    """The batch was already collected."""


class BatchInUseError(CollectionError):
    """The batch has write-offs and can't be deleted."""


class ConcurrentModificationError(CollectionError):
    """A batch changed between selection and update. Retry the whole operation."""


# ==================== Results ====================

@dataclass
class ManifestItem:
    batch_id: UUID
    expiry_date: date
    quantity_collected: Optional[int]  # None for an untracked batch collected whole
    remaining_quantity: Optional[int]
    status: str
    write_off_id: Optional[UUID] = None


@dataclass
class Manifest:
    product_id: UUID
    department_id: UUID
    reason: str
    items: List[ManifestItem] = field(default_factory=list)

    @property
    def total_collected(self) -> int:
        return sum(item.quantity_collected or 0 for item in self.items)


def plan_fifo_depletion(batches: Sequence[Batch], requested: int) -> Tuple[List[Tuple[Batch, int]], int]:
    """
    Walk batches in the given (FIFO) order taking what each one holds.

    Returns:
        ([(batch, take), ...], remaining). remaining > 0 means the batches
        can't cover the request.
    """
    plan = []
    remaining = requested
    for batch in batches:
        if remaining == 0:
            break
        take = min(batch.quantity or 0, remaining)
        if take > 0:
            plan.append((batch, take))
            remaining -= take
    return plan, remaining


class CollectionService:
    """FIFO depletion, manual batch collection and write-off history."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Lookups ====================

    async def _get_product(self, hotel_id: UUID, product_id: UUID) -> Product:
        result = await self.db.execute(
            select(Product).where(and_(Product.id == product_id, Product.hotel_id == hotel_id))
        )
        product = result.scalar_one_or_none()
        if not product:
            raise ProductNotFoundError(f"Product {product_id} not found")
        return product

    async def _get_department(self, hotel_id: UUID, department_id: UUID) -> Department:
        result = await self.db.execute(
            select(Department).where(and_(Department.id == department_id, Department.hotel_id == hotel_id))
        )
        department = result.scalar_one_or_none()
        if not department:
            raise DepartmentNotFoundError(f"Department {department_id} not found")
        return department

    async def _get_batch(self, hotel_id: UUID, batch_id: UUID, lock: bool = False) -> Batch:
        query = select(Batch).where(and_(Batch.id == batch_id, Batch.hotel_id == hotel_id))
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        batch = result.scalar_one_or_none()
        if not batch:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        return batch

    async def _fifo_batches(
        self,
        hotel_id: UUID,
        department_id: UUID,
        product_id: UUID,
        lock: bool = False,
    ) -> List[Batch]:
        """Active tracked batches with stock, oldest expiry first, then oldest received."""
        query = (
            select(Batch)
            .where(
                and_(
                    Batch.hotel_id == hotel_id,
                    Batch.department_id == department_id,
                    Batch.product_id == product_id,
                    Batch.status == BatchStatus.ACTIVE.value,
                    Batch.quantity.is_not(None),
                    Batch.quantity > 0,
                )
            )
            .order_by(Batch.expiry_date.asc(), Batch.added_at.asc(), Batch.id.asc())
        )
        if lock:
            # populate_existing refreshes batches already in the identity map
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ==================== Mutations ====================

    def _mark_collected(self, batch: Batch, performed_by: Optional[str], now: datetime) -> None:
        batch.status = BatchStatus.COLLECTED.value
        batch.collected_at = now
        batch.collected_by = performed_by

    def _deplete_batch(
        self,
        batch: Batch,
        take: int,
        reason: WriteOffReason,
        comment: Optional[str],
        performed_by: Optional[str],
        now: datetime,
        product_name: Optional[str] = None,
    ) -> WriteOff:
        """Remove ``take`` units from a locked tracked batch and record the write-off."""
        if not batch.is_tracked or take <= 0 or take > batch.quantity:
            raise InvalidQuantityError(f"Cannot remove {take} from batch {batch.id} holding {batch.quantity}")

        batch.quantity -= take
        if batch.quantity == 0:
            self._mark_collected(batch, performed_by, now)

        write_off = WriteOff(
            id=uuid.uuid4(),
            hotel_id=batch.hotel_id,
            department_id=batch.department_id,
            batch_id=batch.id,
            product_id=batch.product_id,
            quantity_removed=take,
            reason=reason.value,
            comment=comment,
            performed_by=performed_by,
            performed_at=now,
            product_name=product_name,
            expiry_date=batch.expiry_date,
            quantity_remaining=batch.quantity,
        )
        self.db.add(write_off)
        return write_off

    # ==================== FIFO Collect ====================

    async def preview_collection(
        self,
        hotel_id: UUID,
        department_id: UUID,
        product_id: UUID,
        quantity: int,
    ) -> dict:
        """
        Show which batches a collect of ``quantity`` would touch, without changing anything.
        """
        if quantity <= 0:
            raise InvalidQuantityError("Quantity must be greater than 0")
        await self._get_product(hotel_id, product_id)
        await self._get_department(hotel_id, department_id)

        batches = await self._fifo_batches(hotel_id, department_id, product_id)
        plan, remaining = plan_fifo_depletion(batches, quantity)

        return {
            "product_id": product_id,
            "department_id": department_id,
            "requested_quantity": quantity,
            "total_available": sum(b.quantity for b in batches),
            "can_fulfil": remaining == 0,
            "shortfall": remaining,
            "affected_batches": [
                {
                    "batch_id": batch.id,
                    "expiry_date": batch.expiry_date,
                    "current_quantity": batch.quantity,
                    "collect_quantity": take,
                    "remaining_quantity": batch.quantity - take,
                    "will_be_depleted": take == batch.quantity,
                }
                for batch, take in plan
            ],
        }

    async def collect(
        self,
        hotel_id: UUID,
        department_id: UUID,
        product_id: UUID,
        quantity: int,
        reason: WriteOffReason,
        comment: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> Manifest:
        """
        Deplete ``quantity`` units of a product from a department's batches in FIFO order.

        Raises:
            InvalidQuantityError: quantity <= 0
            ProductNotFoundError, DepartmentNotFoundError
            InsufficientStockError: not enough active tracked stock; nothing changed
            ConcurrentModificationError: a batch changed underneath us; nothing changed
        """
        if quantity <= 0:
            raise InvalidQuantityError("Quantity must be greater than 0")
        reason = WriteOffReason(reason)

        product = await self._get_product(hotel_id, product_id)
        await self._get_department(hotel_id, department_id)

        batches = await self._fifo_batches(hotel_id, department_id, product_id, lock=True)
        plan, remaining = plan_fifo_depletion(batches, quantity)
        if remaining > 0:
            raise InsufficientStockError(available=quantity - remaining, requested=quantity)

        now = datetime.now(timezone.utc)
        manifest = Manifest(product_id=product_id, department_id=department_id, reason=reason.value)

        try:
            async with self.db.begin_nested():
                for batch, take in plan:
                    write_off = self._deplete_batch(
                        batch, take, reason, comment, performed_by, now, product_name=product.name
                    )
                    manifest.items.append(ManifestItem(
                        batch_id=batch.id,
                        expiry_date=batch.expiry_date,
                        quantity_collected=take,
                        remaining_quantity=batch.quantity,
                        status=batch.status,
                        write_off_id=write_off.id,
                    ))
                await self.db.flush()
        except StaleDataError as e:
            logger.warning(f"Concurrent change while collecting product {product_id}: {e}")
            raise ConcurrentModificationError(
                "Stock changed while collecting. Please retry."
            ) from e

        logger.info(
            f"Collected {manifest.total_collected} of product '{product.name}' "
            f"from {len(manifest.items)} batch(es)",
            extra={"hotel_id": str(hotel_id), "department_id": str(department_id), "reason": reason.value},
        )
        return manifest

    async def collect_batch(
        self,
        hotel_id: UUID,
        batch_id: UUID,
        reason: WriteOffReason,
        comment: Optional[str] = None,
        performed_by: Optional[str] = None,
        quantity: Optional[int] = None,
    ) -> Manifest:
        """
        Collect a single batch by id.

        Tracked batches: the one-batch case of FIFO depletion. ``quantity``
        defaults to everything left in the batch.

        Untracked batches (quantity is NULL) can only be collected whole:
        the batch is marked collected and no write-off is recorded, since
        there is no quantity to record.
        """
        reason = WriteOffReason(reason)
        batch = await self._get_batch(hotel_id, batch_id, lock=True)
        if batch.status != BatchStatus.ACTIVE.value:
            raise BatchNotActiveError(f"Batch {batch_id} is already collected")

        product = await self._get_product(hotel_id, batch.product_id)
        now = datetime.now(timezone.utc)
        manifest = Manifest(product_id=batch.product_id, department_id=batch.department_id, reason=reason.value)

        try:
            async with self.db.begin_nested():
                if not batch.is_tracked:
                    if quantity is not None:
                        raise InvalidQuantityError("Untracked batches can only be collected whole")
                    self._mark_collected(batch, performed_by, now)
                    manifest.items.append(ManifestItem(
                        batch_id=batch.id,
                        expiry_date=batch.expiry_date,
                        quantity_collected=None,
                        remaining_quantity=None,
                        status=batch.status,
                    ))
                elif batch.quantity == 0:
                    # Empty but still active: close it out without a write-off
                    self._mark_collected(batch, performed_by, now)
                    manifest.items.append(ManifestItem(
                        batch_id=batch.id,
                        expiry_date=batch.expiry_date,
                        quantity_collected=0,
                        remaining_quantity=0,
                        status=batch.status,
                    ))
                else:
                    take = batch.quantity if quantity is None else quantity
                    if take <= 0:
                        raise InvalidQuantityError("Quantity must be greater than 0")
                    if take > batch.quantity:
                        raise InsufficientStockError(available=batch.quantity, requested=take)
                    write_off = self._deplete_batch(
                        batch, take, reason, comment, performed_by, now, product_name=product.name
                    )
                    manifest.items.append(ManifestItem(
                        batch_id=batch.id,
                        expiry_date=batch.expiry_date,
                        quantity_collected=take,
                        remaining_quantity=batch.quantity,
                        status=batch.status,
                        write_off_id=write_off.id,
                    ))
                await self.db.flush()
        except StaleDataError as e:
            raise ConcurrentModificationError("Batch changed while collecting. Please retry.") from e

        logger.info(
            f"Collected batch {batch_id} ({reason.value})",
            extra={"hotel_id": str(hotel_id), "tracked": batch.is_tracked},
        )
        return manifest

    async def delete_batch(self, hotel_id: UUID, batch_id: UUID) -> None:
        """
        Hard-delete a batch entered by mistake.

        Raises:
            BatchInUseError: the batch has write-offs
        """
        batch = await self._get_batch(hotel_id, batch_id, lock=True)

        write_off_count = await self.db.scalar(
            select(func.count(WriteOff.id)).where(WriteOff.batch_id == batch_id)
        )
        if write_off_count:
            raise BatchInUseError(
                f"Batch {batch_id} has {write_off_count} write-off(s) and cannot be deleted"
            )

        await self.db.execute(delete(Notification).where(Notification.batch_id == batch_id))
        await self.db.delete(batch)
        await self.db.flush()
        logger.info(f"Deleted batch {batch_id}", extra={"hotel_id": str(hotel_id)})

    # ==================== History & Stats ====================

    async def get_collection_history(
        self,
        hotel_id: UUID,
        department_id: Optional[UUID] = None,
        product_id: Optional[UUID] = None,
        reason: Optional[WriteOffReason] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[WriteOff], int]:
        """Write-offs of a hotel, newest first, with total count."""
        conditions = [WriteOff.hotel_id == hotel_id]
        if department_id:
            conditions.append(WriteOff.department_id == department_id)
        if product_id:
            conditions.append(WriteOff.product_id == product_id)
        if reason:
            conditions.append(WriteOff.reason == WriteOffReason(reason).value)
        if date_from:
            conditions.append(WriteOff.performed_at >= date_from)
        if date_to:
            conditions.append(WriteOff.performed_at <= date_to)

        total = await self.db.scalar(select(func.count(WriteOff.id)).where(and_(*conditions)))

        result = await self.db.execute(
            select(WriteOff)
            .where(and_(*conditions))
            .order_by(WriteOff.performed_at.desc(), WriteOff.id)
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def get_collection_stats(
        self,
        hotel_id: UUID,
        period: str = "week",
        department_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """Totals, breakdown by reason, top products and a daily trend by hotel-local day."""
        if period not in STATS_PERIODS:
            raise ValueError(f"Unknown period '{period}'. Use one of: {', '.join(STATS_PERIODS)}")
        now = now or datetime.now(timezone.utc)
        since = now - STATS_PERIODS[period]

        conditions = [WriteOff.hotel_id == hotel_id, WriteOff.performed_at >= since]
        if department_id:
            conditions.append(WriteOff.department_id == department_id)
        where = and_(*conditions)

        totals = (await self.db.execute(
            select(
                func.count(WriteOff.id).label("collections"),
                func.coalesce(func.sum(WriteOff.quantity_removed), 0).label("quantity"),
                func.count(func.distinct(WriteOff.product_id)).label("products"),
            ).where(where)
        )).one()

        by_reason = await self.db.execute(
            select(
                WriteOff.reason,
                func.count(WriteOff.id).label("collections"),
                func.sum(WriteOff.quantity_removed).label("quantity"),
            )
            .where(where)
            .group_by(WriteOff.reason)
            .order_by(desc("quantity"))
        )

        quantity_sum = func.sum(WriteOff.quantity_removed).label("quantity")
        top_products = await self.db.execute(
            select(
                WriteOff.product_id,
                func.max(WriteOff.product_name).label("product_name"),
                func.count(WriteOff.id).label("collections"),
                quantity_sum,
            )
            .where(where)
            .group_by(WriteOff.product_id)
            .order_by(desc("quantity"))
            .limit(10)
        )

        # Grouped by hotel-local day
        hotel = await self.db.get(Hotel, hotel_id)
        tz_name = (
            await SettingsService(self.db).get_hotel_timezone(hotel)
            if hotel else SYSTEM_DEFAULTS[SettingsKey.LOCALE_TIMEZONE]
        )
        trend: Dict[date, Dict[str, int]] = {}
        rows = await self.db.execute(
            select(WriteOff.performed_at, WriteOff.quantity_removed).where(where)
        )
        for performed_at, quantity in rows:
            point = trend.setdefault(local_today(tz_name, performed_at), {"collections": 0, "quantity": 0})
            point["collections"] += 1
            point["quantity"] += quantity

        return {
            "period": period,
            "since": since,
            "total_collections": totals.collections,
            "total_quantity": int(totals.quantity),
            "unique_products": totals.products,
            "by_reason": [
                {"reason": row.reason, "collections": row.collections, "quantity": int(row.quantity)}
                for row in by_reason
            ],
            "top_products": [
                {
                    "product_id": row.product_id,
                    "product_name": row.product_name,
                    "collections": row.collections,
                    "quantity": int(row.quantity),
                }
                for row in top_products
            ],
            "daily_trend": [
                {"date": day.isoformat(), **trend[day]}
                for day in sorted(trend)
            ],
        }
