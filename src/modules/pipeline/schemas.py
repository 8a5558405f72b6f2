"""Response schemas for the pipeline operator API."""

from pydantic import BaseModel


class RetryFailedResponse(BaseModel):
    retried: int


class CleanupResponse(BaseModel):
    deleted: int
    older_than_days: int


class PipelineStatsResponse(BaseModel):
    """Row counts: outbox by status, batches by channel then status."""

    outbox: dict[str, int]
    batches: dict[str, dict[str, int]]
