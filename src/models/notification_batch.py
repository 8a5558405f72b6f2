"""NotificationBatch model: a bounded group of notifications dispatched together."""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer
from sqlalchemy import Enum as SQLAlchemyEnum
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from src.models.enums import BatchStatus, NotificationChannel
from src.models.outbox_event import JSONType


class NotificationBatch(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "notification_batches"

    channel: Mapped[NotificationChannel] = mapped_column(
        SQLAlchemyEnum(
            NotificationChannel,
            name="notificationchannel",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
    )
    status: Mapped[BatchStatus] = mapped_column(
        SQLAlchemyEnum(
            BatchStatus,
            name="batchstatus",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        default=BatchStatus.PENDING,
        server_default=BatchStatus.PENDING.value,
    )
    # Ordered list of notification id strings; rows are referenced, never moved.
    notification_ids: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    total_notifications: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    batch_metadata: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_notification_batches_status", "status"),
        Index("ix_notification_batches_channel", "channel"),
        Index("ix_notification_batches_status_scheduled", "status", "scheduled_for"),
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationBatch id={self.id} channel={self.channel} status={self.status} "
            f"progress={self.processed_count}/{self.total_notifications}>"
        )
