"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/
"""

from fastapi import APIRouter

from design_pipeline.api.v1.process import router as process_router
from design_pipeline.api.v1.status import router as status_router
from design_pipeline.api.v1.download import router as download_router
from design_pipeline.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(process_router, tags=["pipeline"])
api_v1_router.include_router(status_router, tags=["status"])
api_v1_router.include_router(download_router, tags=["download"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
