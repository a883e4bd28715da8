from fastapi import APIRouter

from app.api.v1.endpoints import (
    # Stock collection (FIFO write-offs)
    collections,
    # Expiry notifications & scheduler
    notifications,
    # Scoped settings
    settings,
)

# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Stock Collection ====================
api_router.include_router(
    collections.router,
    prefix="/collections",
    tags=["Collections"]
)

# ==================== Notifications ====================
api_router.include_router(
    notifications.router,
    prefix="/notifications",
    tags=["Notifications"]
)

# ==================== Settings ====================
api_router.include_router(
    settings.router,
    prefix="/settings",
    tags=["Settings"]
)
