"""
Pipeline Orchestrator

Drives one job through generate -> [remove background] -> [upscale].

Every status change is committed to the job store before the next stage
starts. Optional stages are folded as StageResults over the best artifact
so far: Ok replaces it, Failed records a pipeline error and keeps it,
Skipped leaves everything untouched. The number of recorded errors decides
the terminal status.
"""

from datetime import datetime
from typing import Optional, List, Tuple

from design_pipeline.core.config import Settings
from design_pipeline.core.exceptions import JobNotFoundError, JobStateConflictError
from design_pipeline.core.logging import get_logger, LogContext
from design_pipeline.core.storage import IStorage
from design_pipeline.modules.designs.models import (
    DesignJob,
    JobStatus,
    PipelineStage,
    PipelineErrorEntry,
    terminal_status_for
)
from design_pipeline.modules.designs.store import IJobStore
from design_pipeline.pipeline.clients import IGenerativeImageClient, IPostProcessingClient
from design_pipeline.pipeline.stages import (
    Artifact,
    Ok,
    Failed,
    Skipped,
    StageResult,
    ImageOperation,
    run_generation_stage,
    run_optional_stage
)

logger = get_logger(__name__)

# job field holding each optional stage's output
_OUTPUT_FIELDS = {
    PipelineStage.BACKGROUND_REMOVAL: "background_removed_storage_key",
    PipelineStage.UPSCALE: "upscaled_storage_key",
}

_RUNNING_STATUS = {
    PipelineStage.BACKGROUND_REMOVAL: JobStatus.REMOVING_BACKGROUND,
    PipelineStage.UPSCALE: JobStatus.UPSCALING,
}


class PipelineOrchestrator:
    """Sequences the three stages for a single job."""

    def __init__(
        self,
        store: IJobStore,
        storage: IStorage,
        generation_client: IGenerativeImageClient,
        post_processing_client: Optional[IPostProcessingClient] = None,
        upscale_factor: int = 2,
        generation_timeout: float = 120.0,
        post_processing_timeout: float = 60.0,
        refusal_text_limit: int = 200
    ):
        self.store = store
        self.storage = storage
        self.generation_client = generation_client
        self.post_processing_client = post_processing_client
        self.upscale_factor = upscale_factor
        self.generation_timeout = generation_timeout
        self.post_processing_timeout = post_processing_timeout
        self.refusal_text_limit = refusal_text_limit

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: IJobStore,
        storage: IStorage,
        generation_client: IGenerativeImageClient,
        post_processing_client: Optional[IPostProcessingClient] = None
    ) -> "PipelineOrchestrator":
        return cls(
            store=store,
            storage=storage,
            generation_client=generation_client,
            post_processing_client=post_processing_client,
            upscale_factor=settings.UPSCALE_FACTOR,
            generation_timeout=settings.GENERATION_TIMEOUT_SECONDS,
            post_processing_timeout=settings.POST_PROCESSING_TIMEOUT_SECONDS,
            refusal_text_limit=settings.REFUSAL_TEXT_LIMIT
        )

    async def claim(self, job_id: str) -> DesignJob:
        """
        Move a queued job to `generating`.

        Raises:
            JobNotFoundError: unknown job id
            JobStateConflictError: the job was already started
        """
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.QUEUED:
            raise JobStateConflictError(
                f"Job already started (status: {job.status.value})",
                job_id=job_id
            )
        return await self.store.update(job_id, status=JobStatus.GENERATING, started_at=datetime.utcnow())

    async def run(self, job_id: str) -> DesignJob:
        """Claim and execute a queued job."""
        await self.claim(job_id)
        return await self.execute(job_id)

    async def execute(self, job_id: str) -> DesignJob:
        """
        Run every stage for a claimed job and assign its terminal status.

        Fatal errors (generation failure, storage/bookkeeping failure)
        propagate to the caller; the job is left in a non-terminal status.
        """
        with LogContext(job_id=job_id):
            job = await self.store.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            logger.info("pipeline_started", remove_background=job.remove_background)

            input_bytes = await self.storage.read(job.input_storage_key)
            generated = await run_generation_stage(
                job,
                input_bytes,
                self.generation_client,
                self.storage,
                timeout=self.generation_timeout,
                refusal_text_limit=self.refusal_text_limit
            )
            job = await self.store.update(
                job_id,
                status=JobStatus.GENERATED,
                generated_storage_key=generated.storage_key,
                final_storage_key=generated.storage_key
            )

            final = generated
            errors: List[PipelineErrorEntry] = []
            for stage, operation in self._optional_stages(job):
                final, errors = await self._apply(job_id, stage, operation, final, errors)

            job = await self._finish(job_id, errors)
            logger.info(
                "pipeline_finished",
                status=job.status.value,
                pipeline_errors=[str(e) for e in errors],
                final_storage_key=job.final_storage_key
            )
            return job

    def _optional_stages(self, job: DesignJob) -> List[Tuple[PipelineStage, Optional[ImageOperation]]]:
        """Stages in order, with None as the operation for a skipped stage."""
        client = self.post_processing_client
        remove_background = None
        upscale = None

        if client is not None:
            if job.remove_background:
                remove_background = client.remove_background
            factor = self.upscale_factor

            async def upscale(image_bytes: bytes) -> bytes:
                return await client.upscale(image_bytes, factor)

        return [
            (PipelineStage.BACKGROUND_REMOVAL, remove_background),
            (PipelineStage.UPSCALE, upscale),
        ]

    async def _apply(
        self,
        job_id: str,
        stage: PipelineStage,
        operation: Optional[ImageOperation],
        final: Artifact,
        errors: List[PipelineErrorEntry]
    ) -> Tuple[Artifact, List[PipelineErrorEntry]]:
        """Run one optional stage and commit its outcome."""
        if operation is None:
            result: StageResult = Skipped(stage)
        else:
            await self.store.update(job_id, status=_RUNNING_STATUS[stage])
            result = await run_optional_stage(
                stage,
                operation,
                final,
                job_id,
                self.storage,
                timeout=self.post_processing_timeout
            )

        if isinstance(result, Ok):
            await self.store.update(
                job_id,
                **{
                    _OUTPUT_FIELDS[stage]: result.artifact.storage_key,
                    "final_storage_key": result.artifact.storage_key
                }
            )
            return result.artifact, errors

        if isinstance(result, Failed):
            errors = errors + [PipelineErrorEntry(stage=stage.label, message=result.reason)]
            await self.store.update(job_id, pipeline_errors=errors)
            return final, errors

        logger.info("stage_skipped", stage=stage.value)
        return final, errors

    async def _finish(self, job_id: str, errors: List[PipelineErrorEntry]) -> DesignJob:
        job = await self.store.get(job_id)
        fields = {}

        # The background-removed image only fed the upscaler once upscaling succeeded.
        if job.upscaled_storage_key and job.background_removed_storage_key:
            await self.storage.delete(job.background_removed_storage_key)
            fields["background_removed_storage_key"] = None

        return await self.store.update(
            job_id,
            status=terminal_status_for(len(errors)),
            completed_at=datetime.utcnow(),
            **fields
        )
