"""HTTP tests for the collection, notification and settings endpoints."""

from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from app.database import get_db
from app.jobs.scheduler import NotificationScheduler
from app.main import app

from conftest import add_batch


@pytest_asyncio.fixture
async def scheduler(session_factory, seed):
    sched = NotificationScheduler(session_factory, channel_registry={}, max_concurrent=1)
    await sched.start()
    yield sched
    sched.stop()


@pytest_asyncio.fixture
async def client(session_factory, scheduler):
    """API client bound to the test database. The lifespan is not run."""
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.notification_scheduler = scheduler
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    app.state.notification_scheduler = None


class TestCollectionsApi:
    @pytest.mark.asyncio
    async def test_list_reasons(self, client):
        response = await client.get("/api/v1/collections/reasons")
        assert response.status_code == 200
        assert [r["value"] for r in response.json()] == ["consumption", "sale", "damaged", "expired", "other"]

    @pytest.mark.asyncio
    async def test_collect_fifo(self, client, db_session, seed, today):
        b1 = await add_batch(db_session, seed, today + timedelta(days=5), 4)
        b2 = await add_batch(db_session, seed, today + timedelta(days=10), 6)

        response = await client.post(
            "/api/v1/collections",
            json={
                "hotel_id": str(seed.hotel.id),
                "department_id": str(seed.kitchen.id),
                "product_id": str(seed.milk.id),
                "quantity": 7,
                "reason": "consumption",
            },
            headers={"X-User-Id": "chef-1"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["total_collected"] == 7
        assert [(item["batch_id"], item["quantity_collected"], item["status"]) for item in body["items"]] == [
            (str(b1.id), 4, "collected"),
            (str(b2.id), 3, "active"),
        ]

        history = await client.get("/api/v1/collections/history", params={"hotel_id": str(seed.hotel.id)})
        assert history.status_code == 200
        assert history.json()["total"] == 2
        assert {item["performed_by"] for item in history.json()["items"]} == {"chef-1"}

    @pytest.mark.asyncio
    async def test_insufficient_stock_is_409(self, client, db_session, seed, today):
        await add_batch(db_session, seed, today + timedelta(days=5), 4)

        response = await client.post(
            "/api/v1/collections",
            json={
                "hotel_id": str(seed.hotel.id),
                "department_id": str(seed.kitchen.id),
                "product_id": str(seed.milk.id),
                "quantity": 11,
            },
        )

        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "INSUFFICIENT_STOCK"
        assert (body["available"], body["requested"]) == (4, 11)

    @pytest.mark.asyncio
    async def test_zero_quantity_rejected_by_validation(self, client, seed):
        response = await client.post(
            "/api/v1/collections",
            json={
                "hotel_id": str(seed.hotel.id),
                "department_id": str(seed.kitchen.id),
                "product_id": str(seed.milk.id),
                "quantity": 0,
            },
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_collect_untracked_batch_and_delete_guard(self, client, db_session, seed, today):
        untracked = await add_batch(db_session, seed, today, None)
        tracked = await add_batch(db_session, seed, today, 3)

        response = await client.post(
            f"/api/v1/collections/batches/{untracked.id}",
            json={"hotel_id": str(seed.hotel.id), "reason": "expired"},
        )
        assert response.status_code == 200
        assert response.json()["items"][0]["quantity_collected"] is None

        response = await client.post(
            f"/api/v1/collections/batches/{tracked.id}",
            json={"hotel_id": str(seed.hotel.id), "reason": "expired", "quantity": 1},
        )
        assert response.status_code == 200

        response = await client.delete(
            f"/api/v1/collections/batches/{tracked.id}", params={"hotel_id": str(seed.hotel.id)}
        )
        assert response.status_code == 409

        response = await client.delete(
            f"/api/v1/collections/batches/{untracked.id}", params={"hotel_id": str(seed.hotel.id)}
        )
        assert response.status_code == 204

    @pytest.mark.asyncio
    async def test_unknown_product_is_404(self, client, seed):
        response = await client.post(
            "/api/v1/collections/preview",
            json={
                "hotel_id": str(seed.hotel.id),
                "department_id": str(seed.kitchen.id),
                "product_id": str(seed.hotel.id),
                "quantity": 1,
            },
        )
        assert response.status_code == 404


class TestSettingsApi:
    @pytest.mark.asyncio
    async def test_resolve_reports_scope(self, client, seed):
        url = "/api/v1/settings/resolve/expiry.warning.days"
        response = await client.get(url, params={"hotel_id": str(seed.hotel.id)})
        assert response.json() == {"key": "expiry.warning.days", "value": 7, "scope": "default"}

        response = await client.put(
            "/api/v1/settings/hotel/expiry.warning.days",
            json={"value": 10, "scope_id": str(seed.hotel.id)},
        )
        assert response.status_code == 200
        assert response.json()["rescheduled"] is False

        response = await client.get(url, params={"hotel_id": str(seed.hotel.id)})
        assert response.json() == {"key": "expiry.warning.days", "value": 10, "scope": "hotel"}

    @pytest.mark.asyncio
    async def test_invalid_thresholds_are_422(self, client, seed):
        response = await client.put(
            "/api/v1/settings/hotel/expiry.critical.days",
            json={"value": 9, "scope_id": str(seed.hotel.id)},
        )
        assert response.status_code == 422
        assert response.json()["type"] == "InvalidThresholdConfigError"

        stored = await client.get("/api/v1/settings/hotel", params={"scope_id": str(seed.hotel.id)})
        assert stored.json()["settings"] == {}

    @pytest.mark.asyncio
    async def test_malformed_send_time_is_422(self, client):
        response = await client.put("/api/v1/settings/system/notify.sendTime", json={"value": "7pm"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_system_send_time_reschedules_report(self, client, scheduler):
        response = await client.put(
            "/api/v1/settings/system/notify.sendTime", json={"value": "14:00"}, headers={"X-User-Id": "admin"}
        )
        assert response.status_code == 200
        body = response.json()
        assert (body["before"], body["after"], body["rescheduled"]) == (None, "14:00", True)
        assert scheduler.send_time == "14:00"

        response = await client.delete("/api/v1/settings/system/notify.sendTime")
        assert response.status_code == 200
        assert response.json()["rescheduled"] is True
        assert scheduler.send_time == "09:00"

        response = await client.delete("/api/v1/settings/system/notify.sendTime")
        assert response.status_code == 404


class TestNotificationsApi:
    @pytest.mark.asyncio
    async def test_run_scan_and_list(self, client, db_session, seed, today):
        await add_batch(db_session, seed, today - timedelta(days=1), 2)

        response = await client.post("/api/v1/notifications/run-scan")
        assert response.status_code == 200
        summary = response.json()
        assert (summary["hotel_count"], summary["successful"]) == (1, 1)

        response = await client.get("/api/v1/notifications", params={"hotel_id": str(seed.hotel.id)})
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["notification_type"] == "expired"
        assert body["items"][0]["days_left"] == -1
        assert body["items"][0]["status"] == "skipped"

        response = await client.get(
            "/api/v1/notifications", params={"hotel_id": str(seed.hotel.id), "status": "pending"}
        )
        assert response.json()["total"] == 0

    @pytest.mark.asyncio
    async def test_schedule_status(self, client, seed):
        response = await client.get("/api/v1/notifications/schedule", params={"hotel_id": str(seed.hotel.id)})
        assert response.status_code == 200
        body = response.json()
        assert body["running"] is True
        assert body["send_time"] == "09:00"
        assert {task["id"] for task in body["tasks"]} == {"expiry_scan", "daily_report"}
        assert body["hotel"]["timezone"] == "Asia/Almaty"
        assert body["hotel"]["send_time_scope"] == "default"
