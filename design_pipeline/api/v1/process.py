"""
Process Endpoints - Upload Intake and Pipeline Dispatch

POST /api/v1/process-image            - Upload one image, process in background
POST /api/v1/process-batch            - Upload many images, one job each
POST /api/v1/upload-image             - Upload only; job stays queued
POST /api/v1/start-processing/{id}    - Run a queued job and wait for the result
"""

import uuid
from typing import Optional, List, Tuple

from fastapi import APIRouter, Depends, UploadFile, File, Form
from pydantic import BaseModel

from design_pipeline.core.config import Settings
from design_pipeline.core.storage import IStorage
from design_pipeline.core.logging import get_logger, LogContext
from design_pipeline.core.exceptions import ValidationError, PayloadTooLargeError
from design_pipeline.modules.designs.models import DesignJob
from design_pipeline.modules.designs.store import IJobStore
from design_pipeline.pipeline.runner import PipelineRunner
from design_pipeline.api.dependencies import get_settings, get_job_store, get_storage, get_runner
from design_pipeline.api.v1.status import JobStatusResponse, build_status_response

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Response Schemas
# =============================================================================

class JobCreatedResponse(BaseModel):
    job_id: str
    status: str
    original_name: str


class BatchResponse(BaseModel):
    jobs: List[JobCreatedResponse]


# =============================================================================
# Intake Helpers
# =============================================================================

def parse_remove_bg(raw: Optional[str], default: bool) -> bool:
    """'true' enables, an omitted/blank value falls back to the default, anything else disables."""
    value = (raw or "").strip().lower()
    if not value:
        return default
    return value == "true"


async def read_upload(file: UploadFile, settings: Settings) -> Tuple[bytes, str]:
    """Validate an uploaded file and return its bytes and MIME type."""
    if file is None or not file.filename:
        raise ValidationError("No image file provided")

    content_type = (file.content_type or "").lower()
    if not content_type.startswith("image/"):
        raise ValidationError(
            "Only image files are allowed",
            details={"filename": file.filename, "content_type": content_type}
        )

    data = await file.read()
    if len(data) > settings.MAX_IMAGE_SIZE_BYTES:
        limit_mb = settings.MAX_IMAGE_SIZE_BYTES / (1024 * 1024)
        raise PayloadTooLargeError(
            f"{file.filename} is too large (max {limit_mb:g}MB)",
            limit_bytes=settings.MAX_IMAGE_SIZE_BYTES
        )
    if not data:
        raise ValidationError(f"{file.filename} is empty")

    return data, content_type


def validate_prompt(prompt: Optional[str], settings: Settings) -> str:
    prompt = (prompt or "").strip()
    if len(prompt) > settings.MAX_PROMPT_LENGTH:
        raise ValidationError(f"Prompt exceeds {settings.MAX_PROMPT_LENGTH} characters")
    return prompt


async def create_job(
    data: bytes,
    content_type: str,
    filename: str,
    prompt: str,
    remove_background: bool,
    store: IJobStore,
    storage: IStorage
) -> DesignJob:
    job_id = uuid.uuid4().hex

    with LogContext(job_id=job_id, stage="intake"):
        storage_key = await storage.upload(
            data,
            filename,
            folder=f"jobs/{job_id}",
            content_type=content_type
        )
        job = DesignJob(
            id=job_id,
            prompt=prompt,
            original_filename=filename,
            input_storage_key=storage_key,
            input_mime_type=content_type,
            remove_background=remove_background
        )
        await store.create(job)

        logger.info(
            "image_uploaded",
            filename=filename,
            size=len(data),
            remove_background=remove_background,
            storage_key=storage_key
        )
    return job


def _created(job: DesignJob) -> JobCreatedResponse:
    return JobCreatedResponse(job_id=job.id, status=job.status.value, original_name=job.original_filename)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/process-image", response_model=JobCreatedResponse)
async def process_image(
    image: Optional[UploadFile] = File(None),
    prompt: Optional[str] = Form(None),
    remove_bg: Optional[str] = Form(None, alias="removeBg"),
    settings: Settings = Depends(get_settings),
    store: IJobStore = Depends(get_job_store),
    storage: IStorage = Depends(get_storage),
    runner: PipelineRunner = Depends(get_runner)
):
    """
    Submit one image for processing.

    Returns immediately with the job id; poll GET /api/v1/job/{job_id}.
    """
    data, content_type = await read_upload(image, settings)
    job = await create_job(
        data,
        content_type,
        image.filename,
        validate_prompt(prompt, settings),
        parse_remove_bg(remove_bg, settings.ENABLE_BG_REMOVAL),
        store,
        storage
    )
    job = await runner.start(job.id)
    return _created(job)


@router.post("/process-batch", response_model=BatchResponse)
async def process_batch(
    images: Optional[List[UploadFile]] = File(None),
    prompt: Optional[str] = Form(None),
    remove_bg: Optional[str] = Form(None, alias="removeBg"),
    settings: Settings = Depends(get_settings),
    store: IJobStore = Depends(get_job_store),
    storage: IStorage = Depends(get_storage),
    runner: PipelineRunner = Depends(get_runner)
):
    """
    Submit several images with the same options. Every file is validated
    before any job is created.
    """
    if not images:
        raise ValidationError("No image files provided")
    if len(images) > settings.MAX_BATCH_SIZE:
        raise ValidationError(f"Too many files (max {settings.MAX_BATCH_SIZE})")

    prompt = validate_prompt(prompt, settings)
    remove_background = parse_remove_bg(remove_bg, settings.ENABLE_BG_REMOVAL)
    uploads = [(upload, await read_upload(upload, settings)) for upload in images]

    jobs = []
    for upload, (data, content_type) in uploads:
        job = await create_job(data, content_type, upload.filename, prompt, remove_background, store, storage)
        jobs.append(_created(await runner.start(job.id)))

    logger.info("batch_dispatched", count=len(jobs))
    return BatchResponse(jobs=jobs)


@router.post("/upload-image", response_model=JobCreatedResponse)
async def upload_image(
    image: Optional[UploadFile] = File(None),
    prompt: Optional[str] = Form(None),
    remove_bg: Optional[str] = Form(None, alias="removeBg"),
    settings: Settings = Depends(get_settings),
    store: IJobStore = Depends(get_job_store),
    storage: IStorage = Depends(get_storage)
):
    """Store an image and create a queued job without starting it."""
    data, content_type = await read_upload(image, settings)
    job = await create_job(
        data,
        content_type,
        image.filename,
        validate_prompt(prompt, settings),
        parse_remove_bg(remove_bg, settings.ENABLE_BG_REMOVAL),
        store,
        storage
    )
    return _created(job)


@router.post("/start-processing/{job_id}", response_model=JobStatusResponse)
async def start_processing(job_id: str, runner: PipelineRunner = Depends(get_runner)):
    """
    Run the pipeline for a queued job and respond once it is terminal.

    Pipeline failures are reported in the body (status `error`), not as an
    HTTP error.
    """
    job = await runner.run(job_id)
    return build_status_response(job)
