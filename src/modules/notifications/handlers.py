"""Event bus handlers that turn domain events into notification rows."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.modules.events.schemas import DomainEvent
from src.modules.notifications.repository import NotificationRepository
from src.modules.notifications.schemas import NotificationRequest

logger = logging.getLogger(__name__)

NOTIFICATION_REQUESTED = "notification.requested"


class NotificationRequestHandler:
    """Creates PENDING notifications for a ``notification.requested`` event.

    The rows are committed in the handler's own transaction. A relay retry of
    the same event creates them again; consumers dedupe on
    ``metadata.source_event_id`` if they need to.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def __call__(self, event: DomainEvent) -> None:
        request = NotificationRequest.model_validate(event.payload)
        metadata = {"correlation_id": event.metadata.correlation_id}
        if event.outbox_event_id is not None:
            metadata["source_event_id"] = str(event.outbox_event_id)

        async with self._session_factory() as session:
            async with session.begin():
                repo = NotificationRepository(session)
                for user_id in request.user_ids:
                    for channel in request.channels:
                        await repo.create(
                            user_id=user_id,
                            channel=channel,
                            title=request.title,
                            body=request.body,
                            data=request.data,
                            metadata=metadata,
                        )

        logger.info(
            "Created %d notifications for event %s",
            len(request.user_ids) * len(request.channels), event.name,
        )
