"""
DesignJob Model with Pipeline Status Tracking

Tracks a single design job through the pipeline:
- Status state machine with monotonic transitions
- Storage keys for each stage output
- Recoverable stage errors and the fatal error message
"""

import uuid
from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class JobStatus(str, Enum):
    """Pipeline job status states."""
    QUEUED = "queued"                             # Job created, not started
    GENERATING = "generating"                     # Waiting on the generative model
    GENERATED = "generated"                       # AI design stored
    REMOVING_BACKGROUND = "removing_background"   # Optional stage 1
    UPSCALING = "upscaling"                       # Optional stage 2
    COMPLETE = "complete"                         # All enhancements applied
    PARTIAL_SUCCESS = "partial_success"           # One enhancement failed
    FALLBACK_ONLY = "fallback_only"               # Both enhancements failed
    ERROR = "error"                               # Fatal failure

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def has_final_output(self) -> bool:
        return self in DOWNLOADABLE_STATUSES


TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETE,
    JobStatus.PARTIAL_SUCCESS,
    JobStatus.FALLBACK_ONLY,
    JobStatus.ERROR,
})

DOWNLOADABLE_STATUSES = frozenset({
    JobStatus.COMPLETE,
    JobStatus.PARTIAL_SUCCESS,
    JobStatus.FALLBACK_ONLY,
})

_STATUS_ORDER = {
    JobStatus.QUEUED: 0,
    JobStatus.GENERATING: 1,
    JobStatus.GENERATED: 2,
    JobStatus.REMOVING_BACKGROUND: 3,
    JobStatus.UPSCALING: 4,
    JobStatus.COMPLETE: 5,
    JobStatus.PARTIAL_SUCCESS: 5,
    JobStatus.FALLBACK_ONLY: 5,
    JobStatus.ERROR: 5,
}


def can_transition(current: JobStatus, requested: JobStatus) -> bool:
    """
    Whether a job may move from `current` to `requested`.

    Terminal jobs never change. `error` is reachable from any non-terminal
    status; every other move must go strictly forward. Re-asserting the
    current status is allowed so fields can be merged without a transition.
    """
    if current.is_terminal:
        return False
    if requested == current or requested == JobStatus.ERROR:
        return True
    return _STATUS_ORDER[requested] > _STATUS_ORDER[current]


def terminal_status_for(error_count: int) -> JobStatus:
    """Aggregate status after the pipeline ran to the end."""
    if error_count == 0:
        return JobStatus.COMPLETE
    if error_count == 1:
        return JobStatus.PARTIAL_SUCCESS
    return JobStatus.FALLBACK_ONLY


class PipelineStage(str, Enum):
    """Pipeline stages."""
    GENERATION = "generation"
    BACKGROUND_REMOVAL = "background_removal"
    UPSCALE = "upscale"

    @property
    def label(self) -> str:
        return _STAGE_LABELS[self]


_STAGE_LABELS = {
    PipelineStage.GENERATION: "Generation",
    PipelineStage.BACKGROUND_REMOVAL: "Background removal",
    PipelineStage.UPSCALE: "Upscaling",
}


class PipelineErrorEntry(BaseModel):
    """A recoverable failure of an optional stage."""
    stage: str
    message: str

    def __str__(self) -> str:
        return f"{self.stage}: {self.message}"


class DesignJob(BaseModel):
    """
    One uploaded image and everything the pipeline produced for it.

    Stage outputs are storage keys. `final_storage_key` always names the
    most recent successful stage output; `generated_storage_key` is kept
    for the AI-only download.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.QUEUED

    # Input Data
    prompt: str = ""
    original_filename: str = "image.png"
    input_storage_key: str
    input_mime_type: str = "image/png"
    remove_background: bool = False

    # Stage Outputs (storage keys)
    generated_storage_key: Optional[str] = None
    background_removed_storage_key: Optional[str] = None
    upscaled_storage_key: Optional[str] = None
    final_storage_key: Optional[str] = None

    # Error Tracking
    pipeline_errors: List[PipelineErrorEntry] = Field(default_factory=list)
    error_message: Optional[str] = None

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def progress(self) -> Optional[str]:
        """Human readable progress line for pollers."""
        if self.status == JobStatus.GENERATED:
            if self.remove_background:
                return "AI design complete, removing background..."
            return "AI design complete, upscaling..."
        return _PROGRESS_MESSAGES.get(self.status)

    @property
    def processing_time_ms(self) -> Optional[int]:
        if self.started_at and self.completed_at:
            return int((self.completed_at - self.started_at).total_seconds() * 1000)
        return None


_PROGRESS_MESSAGES = {
    JobStatus.QUEUED: "Waiting to start...",
    JobStatus.GENERATING: "Generating design with AI...",
    JobStatus.REMOVING_BACKGROUND: "Removing background...",
    JobStatus.UPSCALING: "Upscaling image for high quality...",
    JobStatus.COMPLETE: "Processing complete!",
    JobStatus.PARTIAL_SUCCESS: "Processing complete (partial enhancement)",
    JobStatus.FALLBACK_ONLY: "Processing complete (using fallback)",
}
