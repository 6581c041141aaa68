"""
Status Endpoint - Job Status Polling

GET /api/v1/job/{job_id} - Current status, progress text and download links
"""

from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from design_pipeline.core.exceptions import JobNotFoundError
from design_pipeline.modules.designs.models import DesignJob
from design_pipeline.modules.designs.store import IJobStore
from design_pipeline.api.dependencies import get_job_store

router = APIRouter()


# =============================================================================
# Response Schemas
# =============================================================================

class PipelineErrorResponse(BaseModel):
    stage: str
    message: str


class JobStatusResponse(BaseModel):
    """Full job status response."""
    job_id: str
    status: str
    original_name: str
    prompt: str
    remove_background: bool
    progress: Optional[str] = None
    pipeline_errors: List[PipelineErrorResponse] = []
    error: Optional[str] = None
    processed_url: Optional[str] = None
    gemini_url: Optional[str] = None
    created_at: str
    last_updated: str
    completed_at: Optional[str] = None
    processing_time_ms: Optional[int] = None


def build_status_response(job: DesignJob) -> JobStatusResponse:
    processed_url = None
    if job.status.has_final_output and job.final_storage_key:
        processed_url = f"/api/v1/download/{job.id}"

    gemini_url = None
    if job.generated_storage_key:
        gemini_url = f"/api/v1/download-gemini/{job.id}"

    return JobStatusResponse(
        job_id=job.id,
        status=job.status.value,
        original_name=job.original_filename,
        prompt=job.prompt,
        remove_background=job.remove_background,
        progress=job.progress,
        pipeline_errors=[
            PipelineErrorResponse(stage=entry.stage, message=entry.message)
            for entry in job.pipeline_errors
        ],
        error=job.error_message,
        processed_url=processed_url,
        gemini_url=gemini_url,
        created_at=job.created_at.isoformat(),
        last_updated=job.updated_at.isoformat(),
        completed_at=job.completed_at.isoformat() if job.completed_at else None,
        processing_time_ms=job.processing_time_ms
    )


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/job/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, store: IJobStore = Depends(get_job_store)):
    """
    Get the current status of a design job.

    Optimized for frequent polling from the frontend. Once the job is
    terminal the response never changes.
    """
    job = await store.get(job_id)
    if job is None:
        raise JobNotFoundError(job_id)

    return build_status_response(job)
