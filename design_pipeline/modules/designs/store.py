"""
Job Store

The orchestrator only talks to IJobStore, so a persistent backend can be
dropped in without touching the pipeline. InMemoryJobStore keeps jobs for
the lifetime of the process.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional, Any

from design_pipeline.core.exceptions import JobNotFoundError, InvalidStatusTransitionError
from design_pipeline.core.logging import get_logger
from design_pipeline.modules.designs.models import DesignJob, JobStatus, can_transition

logger = get_logger(__name__)


class IJobStore(ABC):
    """Interface for job persistence."""

    @abstractmethod
    async def create(self, job: DesignJob) -> str:
        """Store a new job and return its id."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[DesignJob]:
        """Return the current committed record, or None."""

    @abstractmethod
    async def update(self, job_id: str, **fields: Any) -> DesignJob:
        """
        Merge `fields` into the job and refresh `updated_at`.

        Raises:
            JobNotFoundError: unknown job id
            InvalidStatusTransitionError: backward or post-terminal status change
        """


class InMemoryJobStore(IJobStore):
    """
    Dict-backed store. Records are never mutated in place: every update
    builds a new record and swaps it in, so readers only ever see a fully
    committed state.
    """

    def __init__(self):
        self._jobs: Dict[str, DesignJob] = {}

    async def create(self, job: DesignJob) -> str:
        self._jobs[job.id] = job
        logger.info("job_created", job_id=job.id, status=job.status.value)
        return job.id

    async def get(self, job_id: str) -> Optional[DesignJob]:
        return self._jobs.get(job_id)

    async def update(self, job_id: str, **fields: Any) -> DesignJob:
        current = self._jobs.get(job_id)
        if current is None:
            raise JobNotFoundError(job_id)

        requested = JobStatus(fields.get("status", current.status))
        if not can_transition(current.status, requested):
            raise InvalidStatusTransitionError(
                current.status.value,
                requested.value,
                job_id=job_id
            )

        fields["status"] = requested
        fields["updated_at"] = datetime.utcnow()
        updated = current.model_copy(update=fields)
        self._jobs[job_id] = updated

        if requested != current.status:
            logger.info(
                "job_status_updated",
                job_id=job_id,
                previous=current.status.value,
                status=requested.value
            )
        return updated

    def __len__(self) -> int:
        return len(self._jobs)
