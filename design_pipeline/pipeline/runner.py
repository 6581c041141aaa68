"""
Pipeline Runner

Runs each job's pipeline as its own asyncio task under a wall-clock budget
and turns every fatal outcome into the `error` status.
"""

import time
import asyncio
import traceback
from datetime import datetime
from typing import Set

from design_pipeline.core.exceptions import DesignPipelineError, PipelineTimeoutError
from design_pipeline.core.logging import get_logger, LogContext
from design_pipeline.core.metrics import record_job_started, record_job_finished
from design_pipeline.modules.designs.models import DesignJob, JobStatus
from design_pipeline.pipeline.orchestrator import PipelineOrchestrator

logger = get_logger(__name__)


class PipelineRunner:
    """
    Usage:
        job = await runner.start(job_id)   # background, returns immediately
        job = await runner.run(job_id)     # waits for the terminal status
    """

    def __init__(self, orchestrator: PipelineOrchestrator, timeout: float = 300.0):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.timeout = timeout
        self._tasks: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def start(self, job_id: str) -> DesignJob:
        """Claim the job and run its pipeline in the background."""
        job = await self.orchestrator.claim(job_id)
        task = asyncio.create_task(self._supervise(job_id), name=f"pipeline-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    async def run(self, job_id: str) -> DesignJob:
        """Claim the job and wait until it reaches a terminal status."""
        await self.orchestrator.claim(job_id)
        return await self._supervise(job_id)

    async def shutdown(self):
        """Cancel every in-flight pipeline; cancelled jobs end in `error`."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("pipelines_cancelled", count=len(tasks))

    async def _supervise(self, job_id: str) -> DesignJob:
        with LogContext(job_id=job_id):
            record_job_started()
            start = time.time()

            try:
                job = await asyncio.wait_for(self.orchestrator.execute(job_id), timeout=self.timeout)
            except asyncio.TimeoutError:
                job = await self._fail(job_id, PipelineTimeoutError(self.timeout).message)
            except asyncio.CancelledError:
                await self._fail(job_id, "Image processing was cancelled")
                record_job_finished(JobStatus.ERROR.value, time.time() - start)
                raise
            except DesignPipelineError as e:
                job = await self._fail(job_id, e.message)
            except Exception as e:
                logger.error(
                    "pipeline_unexpected_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    traceback=traceback.format_exc()
                )
                job = await self._fail(job_id, f"Image processing failed: {e}")

            record_job_finished(job.status.value, time.time() - start)
            return job

    async def _fail(self, job_id: str, message: str) -> DesignJob:
        job = await self.store.get(job_id)
        if job.status.is_terminal:
            return job

        logger.error("pipeline_failed", error=message, failed_in=job.status.value)
        return await self.store.update(
            job_id,
            status=JobStatus.ERROR,
            error_message=message,
            final_storage_key=None,
            completed_at=datetime.utcnow()
        )
