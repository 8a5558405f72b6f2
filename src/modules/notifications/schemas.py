"""Payload schema for requesting notifications through the event bus."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from src.models.enums import NotificationChannel


class NotificationRequest(BaseModel):
    """Payload of a ``notification.requested`` event.

    One notification row is created per recipient and channel.
    """

    user_ids: list[str] = Field(..., min_length=1)
    channels: list[NotificationChannel] = Field(default_factory=lambda: [NotificationChannel.IN_APP])
    title: str = Field(..., min_length=1, max_length=255)
    body: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
