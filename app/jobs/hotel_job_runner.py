"""
Hotel-aware job runner.

Runs a background job once per active hotel. Each hotel gets its own
session and transaction, so one hotel's failure rolls back only that
hotel's work and the remaining hotels still run.

Architecture:
- Job functions take (session, hotel) and return a result dict
- Runner loads active hotels, then runs the job for each one concurrently,
  bounded by a semaphore
- Per-hotel results carry status, error and duration for the run summary

Usage:
    runner = HotelJobRunner(session_factory, max_concurrent=5)
    summary = await runner.run_job("expiry_scan", scan_hotel_expiry)
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.hotel import Hotel

logger = logging.getLogger(__name__)

HotelJob = Callable[[AsyncSession, Hotel], Awaitable[Optional[dict]]]


class HotelJobRunner:
    """
    Executes background jobs across all active hotels.

    Features:
    - Error isolation (one hotel failure doesn't affect others)
    - Execution metrics and logging
    - Configurable concurrency
    """

    def __init__(self, session_factory: async_sessionmaker, max_concurrent: int = 5):
        self.session_factory = session_factory
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)

    async def get_active_hotels(self) -> List[Hotel]:
        """Fetch all active hotels, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Hotel)
                .where(Hotel.is_active == True)  # noqa: E712
                .order_by(Hotel.created_at, Hotel.name)
            )
            return list(result.scalars().all())

    async def run_job_for_hotel(self, job_name: str, job_func: HotelJob, hotel: Hotel) -> dict:
        """
        Execute a job for a single hotel in its own transaction.

        Returns:
            Result dictionary with status and metrics
        """
        start_time = datetime.now(timezone.utc)

        result = {
            "hotel_id": str(hotel.id),
            "hotel": hotel.name,
            "job": job_name,
            "status": "pending",
            "started_at": start_time.isoformat(),
            "error": None,
            "result": None,
            "duration_ms": 0,
        }

        try:
            async with self._semaphore:
                async with self.session_factory() as session:
                    try:
                        # Re-attach the hotel to this session
                        bound_hotel = await session.get(Hotel, hotel.id)
                        result["result"] = await job_func(session, bound_hotel)
                        await session.commit()
                        result["status"] = "success"
                    except Exception:
                        await session.rollback()
                        raise

        except Exception as e:
            result["status"] = "failed"
            result["error"] = str(e)
            logger.error(
                f"Job '{job_name}' failed for hotel '{hotel.name}': {e}",
                extra={"hotel_id": str(hotel.id), "job": job_name},
            )

        end_time = datetime.now(timezone.utc)
        result["duration_ms"] = int((end_time - start_time).total_seconds() * 1000)
        result["completed_at"] = end_time.isoformat()

        return result

    async def run_job(self, job_name: str, job_func: HotelJob) -> dict:
        """
        Run a job across all active hotels.

        Returns:
            Summary dictionary with results per hotel
        """
        start_time = datetime.now(timezone.utc)
        logger.info(f"Starting hotel job: {job_name}")

        hotels = await self.get_active_hotels()

        if not hotels:
            logger.info(f"No active hotels found. Job '{job_name}' skipped.")
            return {
                "job": job_name,
                "status": "skipped",
                "reason": "no_active_hotels",
                "hotel_count": 0,
                "successful": 0,
                "failed": 0,
                "results": [],
            }

        tasks = [self.run_job_for_hotel(job_name, job_func, hotel) for hotel in hotels]
        results = await asyncio.gather(*tasks)

        successful = sum(1 for r in results if r["status"] == "success")
        failed = sum(1 for r in results if r["status"] == "failed")

        end_time = datetime.now(timezone.utc)
        total_duration = int((end_time - start_time).total_seconds() * 1000)

        summary = {
            "job": job_name,
            "status": "completed",
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
            "duration_ms": total_duration,
            "hotel_count": len(hotels),
            "successful": successful,
            "failed": failed,
            "results": list(results),
        }

        logger.info(
            f"Job '{job_name}' completed: {successful}/{len(hotels)} hotels successful "
            f"in {total_duration}ms",
            extra={"job": job_name, "duration_ms": total_duration},
        )

        return summary
