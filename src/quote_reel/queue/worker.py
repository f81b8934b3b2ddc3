"""Queue processor: one bounded claim → render → commit pass.

This module provides the re-entrant worker invoked by a scheduler, an HTTP
call or the CLI:
- No long-lived loop; each invocation drains the queue up to its budget
- Concurrent invocations coordinate only through the store's atomic claim
- Optional claim loops in a ThreadPoolExecutor, each with its own connection
- Render runs in a daemon thread bounded by a per-job wall-clock ceiling
- Render failures are recorded in the job, never raised to the caller
"""

import inspect
import logging
import os
import socket
import threading
import time
import traceback
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from .backends import JobStore
from .errors import RenderError, RenderTimeoutError, StoreError
from .models import Job, JobState, WorkerSummary

logger = logging.getLogger(__name__)

RenderFn = Callable[..., Any]
ProgressFn = Callable[[float], None]


def default_worker_id() -> str:
    """Host, pid and a short random suffix so overlapping invocations differ."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


def accepts_progress(render_fn: RenderFn) -> bool:
    """True if render_fn can take a second positional (progress) argument."""
    try:
        params = list(inspect.signature(render_fn).parameters.values())
    except (TypeError, ValueError):
        return False

    if any(p.kind == inspect.Parameter.VAR_POSITIONAL for p in params):
        return True
    positional = [
        p for p in params
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    return len(positional) >= 2


class QueueProcessor:
    """Drives pending jobs to a decision within one invocation.

    Budget:
    - max_jobs: jobs claimed per invocation (None = unlimited)
    - max_seconds: no new claim starts after this much wall-clock time
    - job_timeout_s: ceiling for a single render; exceeding it counts as a
      failed attempt

    Error handling:
    - Render exceptions and timeouts → store.fail(retry=True)
    - StoreError → stop claiming and re-raise (nothing works without the store)
    """

    def __init__(
        self,
        store_factory: Callable[[], JobStore],
        render_fn: RenderFn,
        max_jobs: Optional[int] = None,
        max_seconds: Optional[float] = None,
        job_timeout_s: float = 300.0,
        concurrency: int = 1,
        worker_id: Optional[str] = None,
    ):
        """Initialize processor.

        Args:
            store_factory: Returns a new store connection (one per claim loop)
            render_fn: Opaque render operation, ``(payload)`` or ``(payload, progress)``
            max_jobs: Per-invocation job budget
            max_seconds: Per-invocation time budget
            job_timeout_s: Per-job render ceiling in seconds
            concurrency: Number of parallel claim loops
            worker_id: Claim owner prefix (default: host-pid-random)
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if job_timeout_s <= 0:
            raise ValueError("job_timeout_s must be > 0")
        if max_jobs is not None and max_jobs < 0:
            raise ValueError("max_jobs must be >= 0")

        self.store_factory = store_factory
        self.render_fn = render_fn
        self.max_jobs = max_jobs
        self.max_seconds = max_seconds
        self.job_timeout_s = job_timeout_s
        self.concurrency = concurrency
        self.worker_id = worker_id or default_worker_id()
        self._with_progress = accepts_progress(render_fn)

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._started = 0.0
        self._claimed = 0
        self._counts: Dict[str, int] = {}

    def run_once(self) -> WorkerSummary:
        """Process jobs until the queue is empty or the budget is spent.

        Returns:
            WorkerSummary (an empty queue is a normal idle pass)

        Raises:
            StoreError: If the store became unreachable mid-pass
        """
        self._started = time.monotonic()
        self._claimed = 0
        self._counts = {"processed": 0, "succeeded": 0, "retried": 0, "failed": 0}
        self._stop.clear()

        logger.info("Worker %s starting pass (concurrency=%d)", self.worker_id, self.concurrency)

        if self.concurrency == 1:
            self._drain(self.worker_id)
        else:
            with ThreadPoolExecutor(
                max_workers=self.concurrency, thread_name_prefix="claim-loop"
            ) as pool:
                futures = [
                    pool.submit(self._drain, f"{self.worker_id}-{i}")
                    for i in range(self.concurrency)
                ]
            errors = [f.exception() for f in futures if f.exception() is not None]
            if errors:
                raise errors[0]

        summary = WorkerSummary(
            worker_id=self.worker_id,
            duration_s=time.monotonic() - self._started,
            **self._counts,
        )
        if summary.processed:
            logger.info(
                "Worker %s processed %d jobs (%d succeeded, %d retried, %d failed) in %.2fs",
                self.worker_id, summary.processed, summary.succeeded,
                summary.retried, summary.failed, summary.duration_s,
            )
        else:
            logger.info("Worker %s found no pending jobs", self.worker_id)
        return summary

    def _take_slot(self) -> bool:
        """Reserve budget for one more claim."""
        with self._lock:
            if self._stop.is_set():
                return False
            if self.max_jobs is not None and self._claimed >= self.max_jobs:
                return False
            if self.max_seconds is not None and time.monotonic() - self._started >= self.max_seconds:
                logger.info("Worker %s time budget (%ss) spent", self.worker_id, self.max_seconds)
                return False
            self._claimed += 1
            return True

    def _release_slot(self):
        with self._lock:
            self._claimed -= 1

    def _record(self, outcome: str):
        with self._lock:
            self._counts["processed"] += 1
            if outcome in self._counts:
                self._counts[outcome] += 1

    def _drain(self, worker_id: str):
        """One claim loop with its own store connection."""
        store = self.store_factory()
        try:
            while self._take_slot():
                job = store.claim_next_pending(worker_id)
                if job is None:
                    self._release_slot()
                    break
                self._record(self.process_job(store, job, worker_id))
        except StoreError:
            # Other loops stop claiming; in-flight jobs are left to the reclaimer
            self._stop.set()
            logger.error("Worker %s aborting pass: store unavailable", worker_id)
            raise
        finally:
            store.close()

    def process_job(self, store: JobStore, job: Job, worker_id: str) -> str:
        """Render one claimed job and commit the outcome.

        Returns:
            "succeeded", "retried", "failed", or "stale" when the claim was
            lost before the commit (another writer already decided the job)
        """
        start_time = time.time()

        try:
            result = self._render_with_deadline(store, job, worker_id)
        except RenderTimeoutError as e:
            error_msg = f"RenderTimeoutError: {e}"
        except StoreError:
            raise
        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}"
            logger.debug("Render traceback for job %s:\n%s", job.id, traceback.format_exc())
        else:
            duration = time.time() - start_time
            if store.complete(job.id, result, worker_id=worker_id):
                logger.info("Job %s rendered in %.2fs", job.id, duration)
                return "succeeded"
            return "stale"

        new_state = store.fail(job.id, error_msg, retry=True, worker_id=worker_id)
        if new_state == JobState.PENDING:
            return "retried"
        if new_state == JobState.FAILED:
            return "failed"
        return "stale"

    def _render_with_deadline(self, store: JobStore, job: Job, worker_id: str) -> Any:
        """Run the render in a daemon thread and wait at most job_timeout_s.

        A render that overruns is abandoned: its thread keeps running until
        it returns, but its progress callback raises RenderTimeoutError and
        its result is discarded.
        """
        expired = threading.Event()
        io_lock = threading.Lock()
        outcome: Dict[str, Any] = {}

        def progress(percent: float):
            with io_lock:
                if expired.is_set():
                    raise RenderTimeoutError(f"job {job.id} was abandoned after {self.job_timeout_s:g}s")
                try:
                    store.update_progress(job.id, percent, worker_id=worker_id)
                except StoreError as e:
                    # Progress is advisory; the terminal write will surface a real outage
                    logger.warning("Progress update failed for job %s: %s", job.id, e)

        def target():
            try:
                if self._with_progress:
                    outcome["result"] = self.render_fn(job.payload, progress)
                else:
                    outcome["result"] = self.render_fn(job.payload)
            except Exception as e:
                outcome["error"] = e
            except BaseException as e:
                # SystemExit and friends must not escape the pass
                outcome["error"] = RenderError(f"{type(e).__name__}: {e}")

        thread = threading.Thread(target=target, name=f"render-{job.id[:8]}", daemon=True)
        thread.start()
        thread.join(self.job_timeout_s)

        if thread.is_alive():
            with io_lock:
                expired.set()
            logger.warning("Job %s render exceeded %gs, abandoning", job.id, self.job_timeout_s)
            raise RenderTimeoutError(f"render exceeded {self.job_timeout_s:g}s")

        if "error" in outcome:
            raise outcome["error"]
        return outcome.get("result")
