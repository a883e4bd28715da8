# Services module
from app.services.collection_service import CollectionService
from app.services.settings_service import SettingsService

# Expiry notifications
from app.services.expiry_service import classify_expiry, local_today
from app.services.notification_engine import deliver_pending_alerts, scan_hotel_expiry, send_hotel_daily_report
from app.services.channels import TelegramChannel, EmailChannel, build_channel_registry

__all__ = [
    "CollectionService",
    "SettingsService",
    # Expiry notifications
    "classify_expiry",
    "local_today",
    "scan_hotel_expiry",
    "deliver_pending_alerts",
    "send_hotel_daily_report",
    "TelegramChannel",
    "EmailChannel",
    "build_channel_registry",
]
