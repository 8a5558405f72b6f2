"""Operator API for the notification pipeline."""

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.config import settings
from src.modules.pipeline import metrics
from src.modules.pipeline.container import Pipeline
from src.modules.pipeline.schemas import (
    CleanupResponse,
    PipelineStatsResponse,
    RetryFailedResponse,
)

router = APIRouter(prefix="/pipeline", tags=["pipeline"])
limiter = Limiter(key_func=get_remote_address)


def get_pipeline(request: Request) -> Pipeline:
    """The pipeline built in the application lifespan."""
    return request.app.state.pipeline


@router.post("/outbox/retry-failed", response_model=RetryFailedResponse)
@limiter.limit("10/minute")
async def retry_failed_outbox_events(request: Request, pipeline: Pipeline = Depends(get_pipeline)):
    """Move every FAILED outbox event back to PENDING with a fresh retry budget."""
    retried = await pipeline.retry_failed_outbox_events()
    return RetryFailedResponse(retried=retried)


@router.delete("/batches", response_model=CleanupResponse)
@limiter.limit("10/minute")
async def cleanup_old_batches(
    request: Request,
    older_than_days: int = Query(settings.retention_days, ge=0),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Delete COMPLETED batches finished more than ``older_than_days`` ago."""
    deleted = await pipeline.cleanup_old_batches(older_than_days)
    return CleanupResponse(deleted=deleted, older_than_days=older_than_days)


@router.get("/stats", response_model=PipelineStatsResponse)
async def pipeline_stats(pipeline: Pipeline = Depends(get_pipeline)):
    return PipelineStatsResponse(**await pipeline.stats())


@router.get("/metrics", response_class=PlainTextResponse)
async def pipeline_metrics(pipeline: Pipeline = Depends(get_pipeline)):
    """Prometheus exposition of the pipeline counters and row gauges."""
    metrics.record_stats(await pipeline.stats())
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
