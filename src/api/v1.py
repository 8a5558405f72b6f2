"""Centralized v1 API router: all module routers are included here."""

from fastapi import APIRouter

from src.modules.pipeline.router import router as pipeline_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(pipeline_router)
