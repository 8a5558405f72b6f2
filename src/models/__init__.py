# Import all models so SQLAlchemy metadata is populated for Alembic autogenerate
from src.models.enums import (
    BatchStatus,
    NotificationChannel,
    NotificationStatus,
    OutboxStatus,
)
from src.models.notification import Notification
from src.models.notification_batch import NotificationBatch
from src.models.outbox_event import OutboxEvent

__all__ = [
    "BatchStatus",
    "Notification",
    "NotificationBatch",
    "NotificationChannel",
    "NotificationStatus",
    "OutboxEvent",
    "OutboxStatus",
]
