"""Exception taxonomy for the render job queue.

Submission and lookup errors are raised to the caller. Render errors are
recorded in the job record and never leave a worker invocation. Store errors
abort the current invocation because nothing can proceed without the store.
"""

from typing import Any, Dict, List, Optional


class QueueError(Exception):
    """Base class for all queue errors."""


class ValidationError(QueueError):
    """Render request is missing required fields or is malformed.

    Attributes:
        errors: Field-level error details (pydantic ``errors()`` format)
    """

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class NotFoundError(QueueError):
    """No job exists with the given id."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class StoreError(QueueError):
    """Persistence unreachable or still contended after bounded retries."""


class RenderError(QueueError):
    """Render operation failed for a claimed job."""


class RenderTimeoutError(RenderError):
    """Render exceeded the per-job wall-clock ceiling."""
