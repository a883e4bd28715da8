"""Tests for the notification scheduler and the per-hotel job runner."""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio
from sqlalchemy import select, func

from app.jobs.hotel_job_runner import HotelJobRunner
from app.jobs.scheduler import DAILY_REPORT_TASK, EXPIRY_SCAN_TASK, NotificationScheduler
from app.models import Department, Hotel, Notification, Setting
from app.models.setting import SettingScope
from app.services.settings_service import SettingsKey, SettingsService

from conftest import RecordingChannel, add_batch


ALMATY = ZoneInfo("Asia/Almaty")


@pytest_asyncio.fixture
async def scheduler(session_factory, seed):
    sched = NotificationScheduler(session_factory, channel_registry={}, max_concurrent=1)
    await sched.start()
    try:
        yield sched
    finally:
        sched.stop()


async def set_system(session_factory, key, value):
    async with session_factory() as session:
        await SettingsService(session).set_setting(key, value, SettingScope.SYSTEM)
        await session.commit()


class TestScheduleLifecycle:
    @pytest.mark.asyncio
    async def test_start_arms_both_tasks_with_defaults(self, scheduler):
        assert scheduler.running
        assert (scheduler.send_time, scheduler.timezone) == ("09:00", "Asia/Almaty")
        assert scheduler.get_task(EXPIRY_SCAN_TASK) is not None
        assert scheduler.get_task(DAILY_REPORT_TASK) is not None

        status = scheduler.get_status()
        assert [task["id"] for task in status["tasks"]] == [EXPIRY_SCAN_TASK, DAILY_REPORT_TASK]
        assert all(task["scheduled"] and task["state"] == "idle" for task in status["tasks"])
        assert status["scan_interval_minutes"] == 60

    @pytest.mark.asyncio
    async def test_start_reads_stored_send_time(self, session_factory, seed):
        await set_system(session_factory, SettingsKey.NOTIFY_SEND_TIME, "07:15")
        sched = NotificationScheduler(session_factory, channel_registry={})
        await sched.start()
        try:
            assert sched.send_time == "07:15"
        finally:
            sched.stop()
        assert not sched.running

    @pytest.mark.asyncio
    async def test_invalid_stored_values_fall_back_to_defaults(self, session_factory, seed):
        # Written around the service, as a bad migration might
        async with session_factory() as session:
            session.add(Setting(key=SettingsKey.NOTIFY_SEND_TIME, scope="system", scope_ref="", value="25:99"))
            session.add(Setting(key=SettingsKey.LOCALE_TIMEZONE, scope="system", scope_ref="", value="Nowhere/Land"))
            await session.commit()

        sched = NotificationScheduler(session_factory, channel_registry={})
        await sched.start()
        try:
            assert (sched.send_time, sched.timezone) == ("09:00", "Asia/Almaty")
        finally:
            sched.stop()

    @pytest.mark.asyncio
    async def test_stop_and_start_one_task(self, scheduler):
        assert scheduler.stop_task(DAILY_REPORT_TASK) is True
        assert scheduler.get_task(DAILY_REPORT_TASK) is None
        assert scheduler.get_task(EXPIRY_SCAN_TASK) is not None
        assert scheduler.stop_task(DAILY_REPORT_TASK) is False

        assert await scheduler.start_task(DAILY_REPORT_TASK) is True
        assert scheduler.get_task(DAILY_REPORT_TASK) is not None
        assert await scheduler.start_task(DAILY_REPORT_TASK) is False

        with pytest.raises(ValueError):
            scheduler.stop_task("cleanup")


class TestRescheduleDailyReport:
    @pytest.mark.asyncio
    async def test_send_time_change_moves_only_the_report(self, scheduler, session_factory):
        scan_next_run = scheduler.get_task(EXPIRY_SCAN_TASK).next_run_time

        await set_system(session_factory, SettingsKey.NOTIFY_SEND_TIME, "14:00")
        assert await scheduler.reschedule_daily_report() is True
        assert scheduler.send_time == "14:00"

        trigger = scheduler.get_task(DAILY_REPORT_TASK).trigger
        morning = datetime(2026, 10, 18, 8, 0, tzinfo=ALMATY)
        first = trigger.get_next_fire_time(None, morning)
        assert first == datetime(2026, 10, 18, 14, 0, tzinfo=ALMATY)
        # Once per day at the new time, nothing left at 09:00
        second = trigger.get_next_fire_time(first, first + timedelta(seconds=1))
        assert second == datetime(2026, 10, 19, 14, 0, tzinfo=ALMATY)

        assert scheduler.get_task(EXPIRY_SCAN_TASK).next_run_time == scan_next_run

    @pytest.mark.asyncio
    async def test_unchanged_config_is_a_no_op(self, scheduler, session_factory):
        trigger_before = scheduler.get_task(DAILY_REPORT_TASK).trigger
        assert await scheduler.reschedule_daily_report() is False

        await set_system(session_factory, SettingsKey.NOTIFY_SEND_TIME, "09:00")
        assert await scheduler.reschedule_daily_report() is False
        assert scheduler.get_task(DAILY_REPORT_TASK).trigger is trigger_before

    @pytest.mark.asyncio
    async def test_timezone_change(self, scheduler, session_factory):
        await set_system(session_factory, SettingsKey.LOCALE_TIMEZONE, "Europe/Berlin")
        assert await scheduler.reschedule_daily_report() is True

        berlin = ZoneInfo("Europe/Berlin")
        trigger = scheduler.get_task(DAILY_REPORT_TASK).trigger
        fire = trigger.get_next_fire_time(None, datetime(2026, 10, 18, 6, 0, tzinfo=berlin))
        assert fire == datetime(2026, 10, 18, 9, 0, tzinfo=berlin)

    @pytest.mark.asyncio
    async def test_hotel_scope_send_time_does_not_move_timer(self, scheduler, session_factory, seed):
        async with session_factory() as session:
            await SettingsService(session).set_setting(
                SettingsKey.NOTIFY_SEND_TIME, "18:00", SettingScope.HOTEL, seed.hotel.id
            )
            await session.commit()
        assert await scheduler.reschedule_daily_report() is False
        assert scheduler.send_time == "09:00"


class TestManualRuns:
    @pytest.mark.asyncio
    async def test_run_expiry_scan_now(self, session_factory, db_session, seed, today):
        await add_batch(db_session, seed, today, 3)
        sched = NotificationScheduler(session_factory, channel_registry={}, max_concurrent=1)

        summary = await sched.run_expiry_scan_now()

        assert summary["status"] == "completed"
        assert (summary["hotel_count"], summary["successful"], summary["failed"]) == (1, 1, 0)
        assert summary["results"][0]["result"]["created"] == 1
        # No channels configured: the alert is kept but not sent
        assert summary["results"][0]["result"]["delivery"] == {"pending": 1, "delivered": 0, "failed": 0, "skipped": 1}
        assert sched.get_status()["tasks"][0]["last_run"]["successful"] == 1

        # Same local day: nothing new
        again = await sched.run_expiry_scan_now()
        assert again["results"][0]["result"]["created"] == 0

    @pytest.mark.asyncio
    async def test_run_daily_report_now(self, session_factory, seed):
        channel = RecordingChannel("pager")
        sched = NotificationScheduler(session_factory, channel_registry={"pager": channel}, max_concurrent=1)

        summary = await sched.run_daily_report_now()

        assert summary["successful"] == 1
        assert summary["results"][0]["result"]["delivered"] == ["pager"]
        assert len(channel.sent) == 1
        async with session_factory() as session:
            count = await session.scalar(
                select(func.count(Notification.id)).where(Notification.notification_type == "daily_report")
            )
        assert count == 1

    @pytest.mark.asyncio
    async def test_no_active_hotels(self, session_factory):
        sched = NotificationScheduler(session_factory, channel_registry={})
        summary = await sched.run_expiry_scan_now()
        assert summary["status"] == "skipped"
        assert summary["hotel_count"] == 0


class TestHotelJobRunner:
    @pytest.mark.asyncio
    async def test_one_hotel_failure_does_not_affect_others(self, session_factory, db_session, seed):
        broken = Hotel(name="Broken Hotel", timezone="UTC")
        closed = Hotel(name="Closed Hotel", is_active=False)
        db_session.add_all([broken, closed])
        await db_session.commit()

        async def job(session, hotel):
            session.add(Department(hotel_id=hotel.id, name="Housekeeping"))
            await session.flush()
            if hotel.name == "Broken Hotel":
                raise RuntimeError("store unavailable")
            return {"hotel": hotel.name}

        runner = HotelJobRunner(session_factory, max_concurrent=1)
        summary = await runner.run_job("demo", job)

        assert summary["hotel_count"] == 2
        assert (summary["successful"], summary["failed"]) == (1, 1)
        by_hotel = {r["hotel"]: r for r in summary["results"]}
        assert by_hotel["Grand Almaty"]["status"] == "success"
        assert by_hotel["Broken Hotel"]["status"] == "failed"
        assert by_hotel["Broken Hotel"]["error"] == "store unavailable"

        async with session_factory() as session:
            housekeeping = (await session.execute(
                select(Department.hotel_id).where(Department.name == "Housekeeping")
            )).scalars().all()
        assert housekeeping == [seed.hotel.id]
