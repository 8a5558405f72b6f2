"""Channel defaults and batch metadata keys for notification delivery."""

from __future__ import annotations

from src.models.enums import NotificationChannel

# Fallbacks when a channel is missing from the configured tables
DEFAULT_BATCH_SIZE = 100
DEFAULT_RATE_LIMIT = 100

DEFAULT_BATCH_SIZES: dict[NotificationChannel, int] = {
    NotificationChannel.IN_APP: 1000,
    NotificationChannel.PUSH: 500,
    NotificationChannel.EMAIL: 200,
    NotificationChannel.SMS: 100,
}

# Deliveries allowed per rate-limit window
DEFAULT_RATE_LIMITS: dict[NotificationChannel, int] = {
    NotificationChannel.IN_APP: 10000,
    NotificationChannel.PUSH: 2000,
    NotificationChannel.EMAIL: 500,
    NotificationChannel.SMS: 100,
}

RATE_LIMIT_KEY_PREFIX = "notification:ratelimit"

# Keys written into NotificationBatch.metadata / Notification.metadata
METADATA_ERROR = "error"
METADATA_STALL_RECOVERIES = "stall_recoveries"
METADATA_RATE_LIMITED = "rate_limited"

STALL_LIMIT_ERROR = "stall recovery limit exceeded"
