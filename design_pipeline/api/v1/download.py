"""
Download Endpoints

GET /api/v1/download/{job_id}?format=png|jpg|jpeg        - Best available artifact
GET /api/v1/download-gemini/{job_id}?format=png|jpg|jpeg - AI-only artifact

Without a recognized format the stored PNG is returned inline for preview.
"""

from pathlib import Path
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from design_pipeline.core.storage import IStorage, StorageError
from design_pipeline.core.logging import get_logger
from design_pipeline.core.exceptions import ArtifactNotFoundError, ImageConversionError
from design_pipeline.modules.designs.models import DesignJob
from design_pipeline.modules.designs.store import IJobStore
from design_pipeline.pipeline.formats import normalize_format, convert_image
from design_pipeline.api.dependencies import get_job_store, get_storage

logger = get_logger(__name__)
router = APIRouter()


def _attachment(filename: str) -> dict:
    """Latin-1 safe header: ASCII fallback name plus the RFC 5987 UTF-8 form."""
    fallback = filename.encode("ascii", "replace").decode("ascii").replace("?", "_")
    if fallback == filename:
        return {"Content-Disposition": f'attachment; filename="{filename}"'}
    return {
        "Content-Disposition": f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"
    }


def _base_name(job: DesignJob) -> str:
    return (Path(job.original_filename).stem or "image").replace('"', "")


async def _serve(
    job: DesignJob,
    storage_key: str,
    prefix: str,
    requested_format: Optional[str],
    storage: IStorage
) -> Response:
    try:
        data = await storage.read(storage_key)
    except StorageError:
        raise ArtifactNotFoundError("File not found on disk", job_id=job.id)

    fmt = normalize_format(requested_format)
    if fmt is None:
        return Response(content=data, media_type="image/png")

    base_name = _base_name(job)
    try:
        converted = convert_image(data, fmt)
    except ImageConversionError as e:
        # Serve the stored bytes untouched rather than failing the download
        logger.warning("download_conversion_failed", job_id=job.id, format=fmt, error=e.message)
        actual_ext = Path(storage_key).suffix or ".png"
        return Response(
            content=data,
            media_type="application/octet-stream",
            headers=_attachment(f"{prefix}_{base_name}{actual_ext}")
        )

    return Response(
        content=converted.content,
        media_type=converted.media_type,
        headers=_attachment(f"{prefix}_{base_name}.{converted.extension}")
    )


@router.get("/download/{job_id}")
async def download_processed(
    job_id: str,
    format: Optional[str] = Query(None),
    store: IJobStore = Depends(get_job_store),
    storage: IStorage = Depends(get_storage)
):
    """Download the final artifact of a finished job (enhanced when possible)."""
    job = await store.get(job_id)
    if job is None or not job.status.has_final_output or not job.final_storage_key:
        raise ArtifactNotFoundError("Processed image not found", job_id=job_id)

    return await _serve(job, job.final_storage_key, "processed", format, storage)


@router.get("/download-gemini/{job_id}")
async def download_generated(
    job_id: str,
    format: Optional[str] = Query(None),
    store: IJobStore = Depends(get_job_store),
    storage: IStorage = Depends(get_storage)
):
    """Download the raw generated design, before any post-processing."""
    job = await store.get(job_id)
    if job is None or not job.generated_storage_key:
        raise ArtifactNotFoundError("Gemini image not found", job_id=job_id)

    return await _serve(job, job.generated_storage_key, "gemini", format, storage)
