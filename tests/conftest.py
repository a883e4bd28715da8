"""
Pytest configuration and fixtures.

Each test gets its own SQLite database file (aiosqlite), so sessions opened by
the scheduler and by the test see the same committed data without leaking
between tests.
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Optional

import pytest
import pytest_asyncio

from app.database import create_engine_for_url, create_session_factory, init_db
from app.models import Batch, Department, Hotel, Product
from app.services.channels import DeliveryChannel, DeliveryResult


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh database file per test."""
    test_engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seed(db_session):
    """One hotel with a kitchen department and a milk product."""
    hotel = Hotel(name="Grand Almaty", timezone="Asia/Almaty")
    db_session.add(hotel)
    await db_session.flush()

    kitchen = Department(hotel_id=hotel.id, name="Kitchen", email="kitchen@example.com")
    bar = Department(hotel_id=hotel.id, name="Bar")
    db_session.add_all([kitchen, bar])
    await db_session.flush()

    milk = Product(hotel_id=hotel.id, department_id=kitchen.id, name="Milk", unit="l")
    db_session.add(milk)
    await db_session.commit()

    return SimpleNamespace(hotel=hotel, kitchen=kitchen, bar=bar, milk=milk)


@pytest.fixture
def today() -> date:
    """Current calendar date in the seeded hotel's timezone."""
    from app.services.expiry_service import local_today
    return local_today("Asia/Almaty")


async def add_batch(
    session,
    seed,
    expiry_date: date,
    quantity: Optional[int],
    department=None,
    product=None,
    added_at: Optional[datetime] = None,
) -> Batch:
    """Insert an active batch and commit."""
    batch = Batch(
        hotel_id=seed.hotel.id,
        department_id=(department or seed.kitchen).id,
        product_id=(product or seed.milk).id,
        quantity=quantity,
        expiry_date=expiry_date,
        added_by="receiver",
        added_at=added_at or datetime.now(timezone.utc),
    )
    session.add(batch)
    await session.commit()
    return batch


def minutes_ago(minutes: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=minutes)


class RecordingChannel(DeliveryChannel):
    """Channel stub that records what it was asked to send."""

    def __init__(self, name: str, result: Optional[DeliveryResult] = None, delay: float = 0.0, error: Exception = None):
        self.name = name
        self.result = result or DeliveryResult(True, "ok")
        self.delay = delay
        self.error = error
        self.sent = []

    async def send(self, context, message):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        self.sent.append((context, message))
        return self.result
