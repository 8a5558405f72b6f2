"""Exception hierarchy for the notification pipeline and its operator API."""

from __future__ import annotations


class AppException(Exception):
    """Base exception for errors surfaced through the HTTP API.

    Subclasses set ``code`` and ``status_code`` at the class level; callers
    provide ``message`` and an optional ``details`` list.
    """

    code: str = "APP_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: list[dict] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []


# ── Pipeline errors ──────────────────────────────────────────────────────
# These never reach API callers; the periodic jobs handle and log them.


class PipelineError(Exception):
    """Base class for errors raised inside the background pipeline."""


class TransientPublishError(PipelineError):
    """Publishing an outbox event onto the event bus failed; retried later."""

    def __init__(self, event_name: str, cause: BaseException) -> None:
        super().__init__(f"{event_name}: {cause}")
        self.event_name = event_name
        self.cause = cause


class RateLimitExceeded(PipelineError):
    """The channel rate limiter denied a reservation."""

    def __init__(self, channel: str, requested: int) -> None:
        super().__init__(f"Rate limit reached for {channel} ({requested} requested)")
        self.channel = channel
        self.requested = requested


class DeliveryAdapterError(PipelineError):
    """A channel adapter could not deliver a single notification."""


class BatchOwnershipLost(PipelineError):
    """A batch was reclaimed by the stall scan while this worker still held it."""

    def __init__(self, batch_id: object) -> None:
        super().__init__(f"Batch {batch_id} is no longer owned by this worker")
        self.batch_id = batch_id
