"""Durable job queue for asynchronous video rendering."""

from .backends import JobStore
from .errors import (
    NotFoundError,
    QueueError,
    RenderError,
    RenderTimeoutError,
    StoreError,
    ValidationError,
)
from .models import (
    TERMINAL_STATES,
    Job,
    JobState,
    JobStatusView,
    RenderRequest,
    StateTransition,
    TextSettings,
    WorkerSummary,
)
from .reclaimer import StaleJobReclaimer
from .sqlite_backend import SQLiteJobStore
from .worker import QueueProcessor, accepts_progress

__all__ = [
    "JobStore",
    "SQLiteJobStore",
    "QueueError",
    "ValidationError",
    "NotFoundError",
    "StoreError",
    "RenderError",
    "RenderTimeoutError",
    "TERMINAL_STATES",
    "Job",
    "JobState",
    "JobStatusView",
    "RenderRequest",
    "StateTransition",
    "TextSettings",
    "WorkerSummary",
    "QueueProcessor",
    "StaleJobReclaimer",
    "accepts_progress",
]
