"""
Global Exception Handling

Service error taxonomy and the FastAPI handlers that render it as JSON.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from design_pipeline.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class DesignPipelineError(Exception):
    """Base exception for the design pipeline service."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(DesignPipelineError):
    """Raised when an upload is rejected before a job is created."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class PayloadTooLargeError(DesignPipelineError):
    """Raised when an uploaded image exceeds the configured size limit."""

    def __init__(self, message: str, limit_bytes: int, **kwargs):
        super().__init__(message, code=413, **kwargs)
        self.details["limit_bytes"] = limit_bytes


class JobNotFoundError(DesignPipelineError):
    """Raised when a job id is unknown to the job store."""

    def __init__(self, job_id: str, **kwargs):
        super().__init__("Job not found", code=404, job_id=job_id, **kwargs)


class ArtifactNotFoundError(DesignPipelineError):
    """Raised when a requested download is not (yet) available."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=404, **kwargs)


class JobStateConflictError(DesignPipelineError):
    """Raised when an operation does not fit the job's current status."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=409, **kwargs)


class InvalidStatusTransitionError(DesignPipelineError):
    """Raised when a status update would move a job backwards or out of a terminal state."""

    def __init__(self, current: str, requested: str, **kwargs):
        super().__init__(
            f"Invalid status transition: {current} -> {requested}",
            code=500,
            **kwargs
        )
        self.details["current"] = current
        self.details["requested"] = requested


class ExternalAPIError(DesignPipelineError):
    """Raised when an external API call fails."""

    def __init__(self, message: str, service: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, code=502, **kwargs)
        self.details["service"] = service
        self.details["http_status"] = http_status


class GenerationError(ExternalAPIError):
    """The generative image call failed. Always fatal for the job."""

    def __init__(self, message: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, service="gemini", http_status=http_status, stage="generation", **kwargs)


class GenerationRefusedError(GenerationError):
    """The generative model answered with text (or nothing) instead of an image."""


class PostProcessingError(ExternalAPIError):
    """A Picsart operation failed. Recoverable inside the pipeline."""

    def __init__(self, message: str, operation: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, service="picsart", http_status=http_status, stage=operation, **kwargs)
        self.details["operation"] = operation


class ImageConversionError(DesignPipelineError):
    """Raised when image bytes cannot be decoded or re-encoded."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=422, **kwargs)


class PipelineTimeoutError(DesignPipelineError):
    """Raised when a job exceeds its wall-clock budget."""

    def __init__(self, timeout_seconds: float, **kwargs):
        super().__init__(
            f"Image processing timed out after {timeout_seconds:g} seconds",
            code=504,
            **kwargs
        )
        self.details["timeout_seconds"] = timeout_seconds


# =============================================================================
# Exception Handlers
# =============================================================================

def error_payload(exc: DesignPipelineError) -> Dict[str, Any]:
    return {
        "error": exc.message,
        "job_id": exc.job_id,
        "code": exc.code,
        "stage": exc.stage,
        "details": exc.details,
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(DesignPipelineError)
    async def design_pipeline_exception_handler(request: Request, exc: DesignPipelineError):
        log = logger.error if exc.code >= 500 else logger.warning
        log(
            "design_pipeline_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            details=exc.details,
            path=str(request.url.path)
        )

        return JSONResponse(status_code=exc.code, content=error_payload(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "job_id": job_id_var.get(),
                "code": 500,
                "timestamp": datetime.utcnow().isoformat() + "Z"
            }
        )
