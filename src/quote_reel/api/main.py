from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Dict, Iterator, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from quote_reel.config import resolve_config
from quote_reel.jobs import (
    get_job_history,
    get_job_status,
    get_queue_stats,
    list_jobs,
    open_store,
    run_reclaimer,
    run_worker,
    submit_job,
)
from quote_reel.models import QuoteReelConfig
from quote_reel.queue import JobState, JobStatusView, NotFoundError, SQLiteJobStore, StoreError, ValidationError
from quote_reel.render import load_render_callable

logger = logging.getLogger(__name__)

app = FastAPI(title="Quote Reel Render Queue")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # For dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- DEPENDENCIES ---


def get_config() -> QuoteReelConfig:
    return resolve_config()


def get_store(config: QuoteReelConfig = Depends(get_config)) -> Iterator[SQLiteJobStore]:
    store = open_store(config)
    try:
        yield store
    finally:
        store.close()


def get_render_fn(config: QuoteReelConfig = Depends(get_config)) -> Callable[..., Any]:
    return load_render_callable(config.worker.render_callable)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error("Store unavailable during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": {"code": "STORE_UNAVAILABLE", "message": str(exc)}},
    )


def _view(store: SQLiteJobStore, job_id: str) -> JobStatusView:
    try:
        return get_job_status(store, job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


# --- API ENDPOINTS ---


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/jobs", status_code=status.HTTP_202_ACCEPTED)
def create_job(payload: Dict[str, Any] = Body(...), store: SQLiteJobStore = Depends(get_store)):
    """Queue a render request; rendering happens on a later worker pass."""
    try:
        job_id = submit_job(store, payload)
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={"code": "INVALID_RENDER_REQUEST", "message": str(e), "errors": e.errors},
        )
    return {"id": job_id, "state": JobState.PENDING.value}


@app.get("/jobs")
def list_all_jobs(
    state: Optional[JobState] = None,
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    store: SQLiteJobStore = Depends(get_store),
):
    """List jobs, oldest first."""
    jobs = list_jobs(store, state=state.value if state else None, limit=limit)
    return [JobStatusView.from_job(job).model_dump(mode="json") for job in jobs]


@app.get("/jobs/{job_id}")
def get_job(job_id: str, store: SQLiteJobStore = Depends(get_store)):
    return _view(store, job_id).model_dump(mode="json")


@app.get("/jobs/{job_id}/result")
def get_job_result(job_id: str, store: SQLiteJobStore = Depends(get_store)):
    """Result of a completed job; 202 while still in flight, 409 if it failed."""
    view = _view(store, job_id)

    if view.state == JobState.COMPLETED:
        return {"id": view.id, "result": view.result}

    if view.state == JobState.FAILED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "JOB_FAILED", "message": "Render failed", "error": view.error},
        )

    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={
            "id": view.id,
            "state": view.state.value,
            "progress": view.progress,
            "message": "Render not completed",
        },
    )


@app.get("/jobs/{job_id}/history")
def get_job_transitions(job_id: str, store: SQLiteJobStore = Depends(get_store)):
    try:
        transitions = get_job_history(store, job_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return [t.model_dump(mode="json") for t in transitions]


@app.post("/worker/run")
def trigger_worker(
    config: QuoteReelConfig = Depends(get_config),
    render_fn: Callable[..., Any] = Depends(get_render_fn),
):
    """One processing pass (for schedulers that can only make HTTP calls)."""
    summary = run_worker(config, render_fn=render_fn, store_factory=functools.partial(open_store, config))
    return summary.model_dump()


@app.post("/worker/reclaim")
def trigger_reclaimer(
    config: QuoteReelConfig = Depends(get_config),
    store: SQLiteJobStore = Depends(get_store),
):
    return {"reclaimed": run_reclaimer(config, store=store)}


@app.get("/queue/stats")
def queue_stats(store: SQLiteJobStore = Depends(get_store)):
    return get_queue_stats(store)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
