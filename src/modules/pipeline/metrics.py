"""Prometheus counters and row gauges for the notification pipeline."""

from prometheus_client import Counter, Gauge

outbox_published = Counter(
    "outbox_events_published_total",
    "Outbox events published onto the event bus",
)

outbox_failures = Counter(
    "outbox_events_failed_total",
    "Outbox publish attempts that failed",
    ["terminal"],
)

outbox_reclaimed = Counter(
    "outbox_events_reclaimed_total",
    "Outbox events reclaimed after stalling in processing",
)

batches_created = Counter(
    "notification_batcher_batches_total",
    "Notification batches created by the batcher",
    ["channel"],
)

batches_finished = Counter(
    "notification_batches_total",
    "Notification batches reaching a terminal or deferred state",
    ["channel", "status"],
)

notifications_delivered = Counter(
    "notifications_delivered_total",
    "Notification delivery attempts",
    ["channel", "outcome"],
)

rate_limiter_rejections = Counter(
    "rate_limiter_rejections_total",
    "Reservations denied by the channel rate limiter",
    ["channel"],
)

batches_recovered = Counter(
    "batches_recovered_total",
    "Stalled notification batches resubmitted by the stall scan",
    ["channel"],
)

# Row counts, refreshed from the database on every scrape
outbox_events_by_status = Gauge(
    "outbox_event_rows",
    "Outbox rows by status",
    ["status"],
)

batches_by_status = Gauge(
    "notification_batch_rows",
    "Notification batch rows by channel and status",
    ["channel", "status"],
)


def record_stats(stats: dict) -> None:
    """Copy the pipeline's row counts into the gauges."""
    for status, count in stats["outbox"].items():
        outbox_events_by_status.labels(status=status).set(count)
    for channel, counts in stats["batches"].items():
        for status, count in counts.items():
            batches_by_status.labels(channel=channel, status=status).set(count)
