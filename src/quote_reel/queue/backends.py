from __future__ import annotations

"""Abstract base class for job store backends.

The queue's correctness lives entirely in this interface: every cross-worker
coordination step is a single conditional update against the store, so any
implementation must make claim, complete, fail and reclaim atomic. The SQLite
implementation is local-first; a document database with find-and-modify
semantics fits the same contract.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .models import Job, JobState, StateTransition


class JobStore(ABC):
    """Durable, concurrent-safe persistence of job records.

    Implementations must provide:
    - Atomic claim (no job is ever returned to two claimants)
    - Guarded terminal writes (a straggling worker cannot overwrite a result)
    - Stale claim recovery via reclaim_stale()
    """

    @abstractmethod
    def create(self, payload: Dict[str, Any], max_attempts: Optional[int] = None) -> str:
        """Insert a new pending job.

        Args:
            payload: Render request parameters (stored verbatim)
            max_attempts: Claim budget (default: store's configured value)

        Returns:
            The new job id

        Raises:
            StoreError: If persistence is unreachable
        """

    @abstractmethod
    def get(self, job_id: str) -> "Job":
        """Point lookup, side-effect free.

        Raises:
            NotFoundError: If no job has this id
        """

    @abstractmethod
    def claim_next_pending(self, worker_id: str) -> Optional["Job"]:
        """Atomically claim the oldest pending job.

        Args:
            worker_id: Unique identifier for the claiming worker

        Returns:
            The claimed job (state=processing) or None if nothing is pending

        Implementation notes:
        - MUST be a single atomic conditional update
        - Oldest created_at first (FIFO, best effort)
        - Sets claimed_at, claimed_by, progress=0 and increments attempts
        """

    @abstractmethod
    def update_progress(self, job_id: str, progress: float, worker_id: Optional[str] = None) -> bool:
        """Record progress for a processing job.

        Returns:
            False if the write was stale (job no longer processing or claimed
            by another worker)
        """

    @abstractmethod
    def complete(self, job_id: str, result: Any, worker_id: Optional[str] = None) -> bool:
        """Transition processing → completed.

        Returns:
            False if the job was not processing (no-op)
        """

    @abstractmethod
    def fail(
        self,
        job_id: str,
        error: str,
        retry: bool = False,
        worker_id: Optional[str] = None,
    ) -> Optional["JobState"]:
        """Record a failed attempt.

        Args:
            job_id: Job identifier
            error: Error message (truncated to 500 chars)
            retry: If True, return to pending while attempts remain

        Returns:
            The new state, or None if the job was not processing (no-op)
        """

    @abstractmethod
    def reclaim_stale(self, timeout_s: float) -> int:
        """Release processing jobs whose claim is older than timeout_s.

        Returns:
            Count of released jobs
        """

    @abstractmethod
    def list_jobs(self, state: Optional[str] = None, limit: Optional[int] = None) -> List["Job"]:
        """List jobs, oldest first, optionally filtered by state."""

    @abstractmethod
    def count_by_state(self) -> Dict[str, int]:
        """Return a count for every state (zero included)."""

    @abstractmethod
    def history(self, job_id: str) -> List["StateTransition"]:
        """Return the state transition log for a job, oldest first."""

    @abstractmethod
    def delete_finished_before(self, state: str, cutoff: datetime) -> int:
        """Delete terminal jobs in `state` that finished before `cutoff`.

        Only used by operator retention commands, never by the queue core.
        """

    def close(self) -> None:
        """Release the underlying connection."""
