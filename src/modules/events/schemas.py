"""Typed payloads carried on the internal event bus."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EventMetadata(BaseModel):
    """Correlation data attached to every domain event."""

    model_config = ConfigDict(extra="allow")

    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    causation_id: str | None = None
    user_id: str | None = None


class DomainEvent(BaseModel):
    """An event as stored in the outbox and delivered to bus handlers."""

    name: str = Field(..., min_length=1, max_length=255)
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    outbox_event_id: uuid.UUID | None = None

