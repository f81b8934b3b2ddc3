"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system:
the persisted job record, the caller-facing status view, the render request
accepted at submission, the audit trail entry and the worker pass summary.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobState(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        pending → processing     (worker claims)
        processing → completed   (render succeeded)
        processing → failed      (render failed, attempts exhausted)
        processing → pending     (render failed with attempts left, or reclaimed)

    completed and failed are terminal.
    """

    PENDING = "pending"  # Queued, waiting for a claim
    PROCESSING = "processing"  # Claimed by exactly one worker
    COMPLETED = "completed"  # Render succeeded, result stored
    FAILED = "failed"  # Attempts exhausted, error stored


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class Job(BaseModel):
    """Persisted job record (one row in the ``jobs`` table)."""

    id: str = Field(..., description="Opaque unique identifier (UUID)")
    state: JobState = Field(default=JobState.PENDING, description="Current lifecycle state")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Render request parameters")
    progress: Optional[float] = Field(
        default=None, ge=0.0, le=100.0, description="Percent complete while processing"
    )
    result: Optional[Any] = Field(default=None, description="Render result when completed")
    error: Optional[str] = Field(default=None, description="Failure description when failed")
    last_error: Optional[str] = Field(
        default=None, description="Most recent attempt failure (kept across retries)"
    )
    attempts: int = Field(default=0, ge=0, description="Number of claims so far")
    max_attempts: int = Field(default=3, ge=1, description="Claim budget before terminal failure")
    claimed_at: Optional[datetime] = Field(default=None, description="When the current claim started")
    claimed_by: Optional[str] = Field(default=None, description="Worker holding the claim")
    created_at: datetime = Field(..., description="Submission time (UTC)")
    updated_at: datetime = Field(..., description="Last state or progress change (UTC)")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal transition time")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class JobStatusView(BaseModel):
    """What a polling caller sees.

    ``result`` is only present for completed jobs and ``error`` only for failed
    ones, so a view never carries both.
    """

    id: str
    state: JobState
    progress: Optional[float] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    attempts: int = 0
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusView":
        return cls(
            id=job.id,
            state=job.state,
            progress=job.progress,
            result=job.result if job.state == JobState.COMPLETED else None,
            error=job.error if job.state == JobState.FAILED else None,
            attempts=job.attempts,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class TextSettings(BaseModel):
    """Quote overlay styling."""

    font_size: int = Field(default=100, ge=10, le=400, description="Percent of base font size")
    font_family: str = Field(default="Georgia", min_length=1, max_length=100)
    color: str = Field(default="#ffffff", pattern=r"^#(?:[0-9a-fA-F]{3}){1,2}$")
    alignment: Literal["left", "center", "right"] = "center"
    position: Literal["top", "center", "bottom"] = "center"
    offset_x: float = Field(default=0.0, ge=-50.0, le=50.0, description="Horizontal nudge in percent")
    shadow: bool = True
    bold: bool = False
    italic: bool = False
    underline: bool = False


class RenderRequest(BaseModel):
    """Render request accepted at submission.

    Only presence and shape are checked here; unknown keys are preserved
    because the payload belongs to the render operation, not the queue.
    """

    model_config = ConfigDict(extra="allow")

    text: str = Field(..., min_length=1, max_length=2000, description="Quote text to render")
    author: Optional[str] = Field(default=None, max_length=200)
    input_video_key: Optional[str] = Field(default=None, description="Storage key of the background video")
    quality: Literal["720p", "1080p", "4k"] = "1080p"
    text_settings: Optional[TextSettings] = None
    user_id: Optional[str] = None

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("text must not be blank")
        return v


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str = Field(..., description="Job identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(..., description="Transition time")
    worker_id: Optional[str] = Field(default=None, description="Worker that caused transition")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")


class WorkerSummary(BaseModel):
    """Outcome of one processor invocation.

    Per-job errors are not surfaced here; they live in the job records.
    """

    worker_id: str
    processed: int = Field(default=0, ge=0, description="Jobs claimed and driven to a decision")
    succeeded: int = Field(default=0, ge=0)
    retried: int = Field(default=0, ge=0, description="Failures returned to pending")
    failed: int = Field(default=0, ge=0, description="Failures that became terminal")
    duration_s: float = Field(default=0.0, ge=0.0)
