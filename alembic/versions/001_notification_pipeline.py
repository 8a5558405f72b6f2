"""Notification pipeline tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19

Creates: outbox_events, notifications, notification_batches
Enums: outboxstatus, notificationchannel, notificationstatus, batchstatus
"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto";')

    # ── 1. Enum types ─────────────────────────────────────────────────────
    op.execute("""
        CREATE TYPE outboxstatus AS ENUM (
            'pending', 'processing', 'published', 'failed'
        );
    """)
    op.execute("""
        CREATE TYPE notificationchannel AS ENUM (
            'in_app', 'push', 'email', 'sms'
        );
    """)
    op.execute("""
        CREATE TYPE notificationstatus AS ENUM (
            'pending', 'delivered', 'failed'
        );
    """)
    op.execute("""
        CREATE TYPE batchstatus AS ENUM (
            'pending', 'processing', 'completed', 'failed'
        );
    """)

    # ── 2. outbox_events ──────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE outbox_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            event_name VARCHAR(255) NOT NULL,
            payload JSONB NOT NULL DEFAULT '{}',
            metadata JSONB,
            status outboxstatus NOT NULL DEFAULT 'pending',
            retry_count INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            scheduled_for TIMESTAMPTZ,
            claimed_at TIMESTAMPTZ,
            processed_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ck_outbox_events_retry_count CHECK (retry_count >= 0)
        );
    """)
    op.execute("CREATE INDEX ix_outbox_events_status ON outbox_events (status);")
    op.execute("CREATE INDEX ix_outbox_events_event_name ON outbox_events (event_name);")
    op.execute("CREATE INDEX ix_outbox_events_scheduled_for ON outbox_events (scheduled_for);")
    op.execute(
        "CREATE INDEX ix_outbox_events_pending ON outbox_events (created_at) "
        "WHERE status = 'pending';"
    )

    # ── 3. notifications ──────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE notifications (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id VARCHAR(255) NOT NULL,
            channel notificationchannel NOT NULL,
            status notificationstatus NOT NULL DEFAULT 'pending',
            title VARCHAR(255) NOT NULL,
            body TEXT NOT NULL,
            data JSONB,
            metadata JSONB,
            batch_id UUID,
            delivered_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_notifications_user_id ON notifications (user_id);")
    op.execute(
        "CREATE INDEX ix_notifications_channel_status_created "
        "ON notifications (channel, status, created_at);"
    )
    op.execute("CREATE INDEX ix_notifications_batch_id ON notifications (batch_id);")

    # ── 4. notification_batches ───────────────────────────────────────────
    op.execute("""
        CREATE TABLE notification_batches (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            channel notificationchannel NOT NULL,
            status batchstatus NOT NULL DEFAULT 'pending',
            notification_ids JSONB NOT NULL DEFAULT '[]',
            total_notifications INTEGER NOT NULL DEFAULT 0,
            processed_count INTEGER NOT NULL DEFAULT 0,
            success_count INTEGER NOT NULL DEFAULT 0,
            failure_count INTEGER NOT NULL DEFAULT 0,
            metadata JSONB,
            scheduled_for TIMESTAMPTZ,
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ck_notification_batches_counts CHECK (
                processed_count = success_count + failure_count
                AND processed_count <= total_notifications
            )
        );
    """)
    op.execute("CREATE INDEX ix_notification_batches_status ON notification_batches (status);")
    op.execute("CREATE INDEX ix_notification_batches_channel ON notification_batches (channel);")
    op.execute(
        "CREATE INDEX ix_notification_batches_status_scheduled "
        "ON notification_batches (status, scheduled_for);"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS notification_batches;")
    op.execute("DROP TABLE IF EXISTS notifications;")
    op.execute("DROP TABLE IF EXISTS outbox_events;")
    op.execute("DROP TYPE IF EXISTS batchstatus;")
    op.execute("DROP TYPE IF EXISTS notificationstatus;")
    op.execute("DROP TYPE IF EXISTS notificationchannel;")
    op.execute("DROP TYPE IF EXISTS outboxstatus;")
