"""High-level job API on top of the queue.

This module is what the CLI and HTTP layers call. It wires configuration to
the store, validates submissions, shapes status views and runs one worker or
reclaimer pass per call.

Usage:
    config = resolve_config()
    with open_store(config) as store:
        job_id = submit_job(store, {"text": "Stay hungry, stay foolish."})
        print(get_job_status(store, job_id).state)

    # From a scheduler / cron trigger
    summary = run_worker(config)
    reclaimed = run_reclaimer(config)
"""

import functools
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError
from tqdm import tqdm

from .models import QuoteReelConfig, RetentionConfig
from .queue import (
    Job,
    JobState,
    JobStatusView,
    JobStore,
    QueueProcessor,
    RenderError,
    RenderRequest,
    SQLiteJobStore,
    StaleJobReclaimer,
    StateTransition,
    ValidationError,
    WorkerSummary,
)
from .render import load_render_callable

logger = logging.getLogger(__name__)


def open_store(config: QuoteReelConfig) -> SQLiteJobStore:
    """Open the configured job store (caller closes it)."""
    return SQLiteJobStore(
        config.store.path,
        max_attempts=config.queue.max_attempts,
        busy_timeout_s=config.store.busy_timeout_s,
        lock_retries=config.store.lock_retries,
    )


def validate_render_request(payload: Any) -> Dict[str, Any]:
    """Check presence/shape of a render request and return the normalized payload.

    Raises:
        ValidationError: With pydantic's error list attached
    """
    try:
        request = RenderRequest.model_validate(payload)
    except PydanticValidationError as e:
        errors = json.loads(e.json(include_url=False))
        raise ValidationError(
            f"Invalid render request: {e.error_count()} error(s)", errors=errors
        ) from e
    return request.model_dump(mode="json", exclude_none=True)


def submit_job(store: JobStore, payload: Any, max_attempts: Optional[int] = None) -> str:
    """Validate a render request and queue it.

    Returns immediately with the job id; rendering happens on a later worker
    pass.
    """
    normalized = validate_render_request(payload)
    return store.create(normalized, max_attempts=max_attempts)


def submit_batch(store: JobStore, payloads: Iterable[Any], show_progress: bool = True) -> Dict[str, Any]:
    """Queue many render requests; invalid ones are reported, not fatal.

    Returns:
        Dictionary with submit statistics:
            - submitted: Number of jobs created
            - invalid: Number of rejected requests
            - ids: Created job ids in input order
            - errors: [{"index": i, "errors": [...]}] for rejected requests
    """
    items = list(payloads)
    stats: Dict[str, Any] = {"submitted": 0, "invalid": 0, "ids": [], "errors": []}

    for index, payload in enumerate(
        tqdm(items, desc="Submitting jobs", unit="job", disable=not show_progress)
    ):
        try:
            job_id = submit_job(store, payload)
        except ValidationError as e:
            stats["invalid"] += 1
            stats["errors"].append({"index": index, "errors": e.errors})
            continue
        stats["submitted"] += 1
        stats["ids"].append(job_id)

    return stats


def load_jsonl(path: Path) -> List[Any]:
    """Read one render request per line; undecodable lines are kept as text
    so validation reports them with their index."""
    items: List[Any] = []
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError:
                items.append(line)
    return items


def get_job_status(store: JobStore, job_id: str) -> JobStatusView:
    """Current state of a job; never triggers processing.

    Raises:
        NotFoundError: If the id was never submitted
    """
    return JobStatusView.from_job(store.get(job_id))


def get_job_result(store: JobStore, job_id: str) -> Any:
    """Render result of a completed job.

    Returns:
        The stored result, or None while the job is pending or processing

    Raises:
        NotFoundError: If the id was never submitted
        RenderError: If the job failed (message is the stored error)
    """
    job = store.get(job_id)
    if job.state == JobState.FAILED:
        raise RenderError(job.error or "Render failed")
    if job.state == JobState.COMPLETED:
        return job.result
    return None


def get_job_history(store: JobStore, job_id: str) -> List[StateTransition]:
    """State transition log for an existing job."""
    store.get(job_id)
    return store.history(job_id)


def list_jobs(store: JobStore, state: Optional[str] = None, limit: Optional[int] = None) -> List[Job]:
    return store.list_jobs(state=state, limit=limit)


def get_queue_stats(store: JobStore) -> Dict[str, int]:
    """Get current queue statistics.

    Returns:
        Count per state plus "total"
    """
    stats = store.count_by_state()
    stats["total"] = sum(stats.values())
    return stats


def run_worker(
    config: QuoteReelConfig,
    render_fn: Optional[Callable[..., Any]] = None,
    store_factory: Optional[Callable[[], JobStore]] = None,
    worker_id: Optional[str] = None,
) -> WorkerSummary:
    """Run one processor pass with the configured budget.

    Args:
        config: Resolved configuration
        render_fn: Render operation (default: worker.render_callable)
        store_factory: Connection factory (default: open_store(config))
        worker_id: Claim owner prefix

    Returns:
        WorkerSummary; per-job errors stay in the job records
    """
    if render_fn is None:
        render_fn = load_render_callable(config.worker.render_callable)
    if store_factory is None:
        store_factory = functools.partial(open_store, config)

    processor = QueueProcessor(
        store_factory,
        render_fn,
        max_jobs=config.worker.max_jobs,
        max_seconds=config.worker.max_seconds,
        job_timeout_s=config.worker.job_timeout_s,
        concurrency=config.worker.concurrency,
        worker_id=worker_id,
    )
    return processor.run_once()


def run_reclaimer(
    config: QuoteReelConfig,
    timeout_s: Optional[float] = None,
    store: Optional[JobStore] = None,
) -> int:
    """Run one stale-claim pass; returns the number of released jobs."""
    timeout = timeout_s if timeout_s is not None else config.reclaimer.stale_timeout_s
    if store is not None:
        return StaleJobReclaimer(store, timeout).run_once()
    with open_store(config) as own_store:
        return StaleJobReclaimer(own_store, timeout).run_once()


def cleanup_old_jobs(
    store: JobStore,
    retention: RetentionConfig,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Delete terminal jobs past their retention window.

    Operator command only: the processor and reclaimer never delete jobs.
    Completed jobs are kept retention.completed_days, failed jobs
    retention.failed_days.
    """
    now = now or datetime.now(timezone.utc)
    deleted = {
        JobState.COMPLETED.value: store.delete_finished_before(
            JobState.COMPLETED.value, now - timedelta(days=retention.completed_days)
        ),
        JobState.FAILED.value: store.delete_finished_before(
            JobState.FAILED.value, now - timedelta(days=retention.failed_days)
        ),
    }
    logger.info(
        "Retention cleanup removed %d completed and %d failed jobs",
        deleted[JobState.COMPLETED.value], deleted[JobState.FAILED.value],
    )
    return deleted
