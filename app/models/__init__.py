from app.models.hotel import Hotel, Department, Product
from app.models.batch import Batch, BatchStatus, WriteOff, WriteOffReason
from app.models.notifications import Notification, NotificationType, DeliveryStatus
from app.models.setting import Setting, SettingScope

__all__ = [
    "Hotel",
    "Department",
    "Product",
    "Batch",
    "BatchStatus",
    "WriteOff",
    "WriteOffReason",
    "Notification",
    "NotificationType",
    "DeliveryStatus",
    "Setting",
    "SettingScope",
]
