"""
Pipeline Stage Implementations

Each stage is a separate function that can be called independently.
Generation is mandatory and raises on failure; the optional stages
(background removal, upscaling) never raise for an external failure and
report their outcome as a StageResult instead.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Union

from design_pipeline.core.logging import get_logger, LogContext
from design_pipeline.core.metrics import track_stage_latency
from design_pipeline.core.storage import IStorage
from design_pipeline.core.exceptions import (
    GenerationError,
    GenerationRefusedError,
    PostProcessingError,
    ImageConversionError
)
from design_pipeline.modules.designs.models import DesignJob, PipelineStage
from design_pipeline.pipeline.clients import IGenerativeImageClient
from design_pipeline.pipeline.formats import to_png
from design_pipeline.pipeline.prompts import build_generation_prompt

logger = get_logger(__name__)


# =============================================================================
# Stage Results
# =============================================================================

@dataclass(frozen=True)
class Artifact:
    """A stored stage output."""
    storage_key: str
    content: bytes


@dataclass(frozen=True)
class Ok:
    stage: PipelineStage
    artifact: Artifact


@dataclass(frozen=True)
class Failed:
    stage: PipelineStage
    reason: str


@dataclass(frozen=True)
class Skipped:
    stage: PipelineStage


StageResult = Union[Ok, Failed, Skipped]

ImageOperation = Callable[[bytes], Awaitable[bytes]]


def _duration_ms(start_time: datetime) -> int:
    return int((datetime.utcnow() - start_time).total_seconds() * 1000)


async def _store_output(storage: IStorage, job_id: str, suffix: str, content: bytes) -> Artifact:
    key = await storage.upload(
        content,
        f"{job_id}_{suffix}.png",
        folder=f"jobs/{job_id}",
        content_type="image/png"
    )
    return Artifact(storage_key=key, content=content)


def _truncate(text: str, limit: int) -> str:
    text = text.strip()
    return text if len(text) <= limit else f"{text[:limit]}..."


# =============================================================================
# Stage 1: Generation (mandatory)
# =============================================================================

async def run_generation_stage(
    job: DesignJob,
    input_bytes: bytes,
    client: IGenerativeImageClient,
    storage: IStorage,
    timeout: float,
    refusal_text_limit: int = 200
) -> Artifact:
    """
    Send the uploaded image and design prompt to the generative model and
    store the first returned image as PNG.

    Raises:
        GenerationError: transport/HTTP failure, timeout, undecodable output
        GenerationRefusedError: text-only or empty response
    """
    stage = PipelineStage.GENERATION
    start_time = datetime.utcnow()

    with LogContext(job_id=job.id, stage=stage.value), track_stage_latency(stage.value):
        logger.info("stage_started", input_size=len(input_bytes))

        try:
            result = await asyncio.wait_for(
                client.generate(input_bytes, job.input_mime_type, build_generation_prompt(job.prompt)),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            raise GenerationError(f"Image generation timed out after {timeout:g} seconds", job_id=job.id)

        if not result.images:
            if result.text:
                logger.warning("generation_refused", response_text=_truncate(result.text, refusal_text_limit))
                raise GenerationRefusedError(
                    f"Image generation failed. Model response: {_truncate(result.text, refusal_text_limit)}",
                    job_id=job.id
                )
            if result.candidate_count == 0:
                raise GenerationRefusedError("No candidates returned from Gemini API", job_id=job.id)
            raise GenerationRefusedError("No image or text response received from Gemini API", job_id=job.id)

        try:
            png = to_png(result.images[0])
        except ImageConversionError as e:
            raise GenerationError(f"Generated image could not be decoded: {e.message}", job_id=job.id)

        artifact = await _store_output(storage, job.id, "generated", png)
        logger.info(
            "stage_completed",
            duration_ms=_duration_ms(start_time),
            output_size=len(png),
            storage_key=artifact.storage_key
        )
        return artifact


# =============================================================================
# Stages 2 & 3: Background Removal / Upscaling (optional)
# =============================================================================

async def run_optional_stage(
    stage: PipelineStage,
    operation: ImageOperation,
    source: Artifact,
    job_id: str,
    storage: IStorage,
    timeout: float
) -> StageResult:
    """
    Apply a post-processing operation to `source`.

    External failures and timeouts become Failed(...). Storage errors while
    saving the output are not external failures and propagate.
    """
    start_time = datetime.utcnow()

    with LogContext(job_id=job_id, stage=stage.value):
        logger.info("stage_started", input_size=len(source.content))

        try:
            with track_stage_latency(stage.value):
                output = await asyncio.wait_for(operation(source.content), timeout=timeout)
        except asyncio.TimeoutError:
            reason = f"{stage.label} timed out after {timeout:g} seconds"
            logger.warning("stage_failed", reason=reason, duration_ms=_duration_ms(start_time))
            return Failed(stage=stage, reason=reason)
        except PostProcessingError as e:
            logger.warning("stage_failed", reason=e.message, duration_ms=_duration_ms(start_time))
            return Failed(stage=stage, reason=e.message)
        except Exception as e:
            reason = f"{stage.label} failed: {e}"
            logger.warning(
                "stage_failed",
                reason=reason,
                error_type=type(e).__name__,
                duration_ms=_duration_ms(start_time)
            )
            return Failed(stage=stage, reason=reason)

        artifact = await _store_output(storage, job_id, stage.value, output)
        logger.info(
            "stage_completed",
            duration_ms=_duration_ms(start_time),
            output_size=len(output),
            storage_key=artifact.storage_key
        )
        return Ok(stage=stage, artifact=artifact)
