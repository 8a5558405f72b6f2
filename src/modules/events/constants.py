"""Event bus routing and outbox bookkeeping constants."""

from __future__ import annotations

STALLED_OUTBOX_ERROR = "stalled in processing"

# Metadata keys the outbox fills in when the producer leaves them out
CORRELATION_ID_KEY = "correlation_id"
TIMESTAMP_KEY = "timestamp"
