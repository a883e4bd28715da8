from typing import Annotated, Optional
import logging

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.jobs.scheduler import NotificationScheduler


logger = logging.getLogger(__name__)


async def get_actor(
    x_user_id: Annotated[Optional[str], Header(description="Id of the authenticated user, set by the auth gateway")] = None,
) -> Optional[str]:
    """
    The user performing the request.

    Authentication and permission checks happen upstream; this service only
    records who acted.
    """
    return x_user_id


def get_notification_scheduler(request: Request) -> NotificationScheduler:
    """The scheduler built by the application lifespan."""
    scheduler = getattr(request.app.state, "notification_scheduler", None)
    if scheduler is None:
        logger.error("Notification scheduler requested before application startup")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Notification scheduler is not initialised",
        )
    return scheduler


# Type aliases for cleaner dependency injection
DB = Annotated[AsyncSession, Depends(get_db)]
Actor = Annotated[Optional[str], Depends(get_actor)]
Scheduler = Annotated[NotificationScheduler, Depends(get_notification_scheduler)]
