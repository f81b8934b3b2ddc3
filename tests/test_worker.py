"""Tests for the queue processor (claim → render → commit passes)."""

import functools
import sys
import threading
import time

import pytest

from quote_reel.queue import (
    JobState,
    QueueProcessor,
    RenderError,
    SQLiteJobStore,
    StoreError,
    accepts_progress,
)


@pytest.fixture
def store_factory(temp_db):
    return functools.partial(SQLiteJobStore, temp_db)


def make_processor(store_factory, render_fn, **kwargs):
    kwargs.setdefault("job_timeout_s", 5.0)
    kwargs.setdefault("worker_id", "test-worker")
    return QueueProcessor(store_factory, render_fn, **kwargs)


def always_fails(payload):
    raise RenderError("encoder crashed")


class TestScenarios:
    """End-to-end job lifecycles through the processor."""

    def test_submit_then_process_succeeds(self, store, store_factory):
        job_id = store.create({"text": "hello"})

        job = store.get(job_id)
        assert job.state == JobState.PENDING
        assert job.result is None and job.error is None

        summary = make_processor(store_factory, lambda payload: "asset-1").run_once()

        assert summary.processed == 1
        assert summary.succeeded == 1
        job = store.get(job_id)
        assert job.state == JobState.COMPLETED
        assert job.result == "asset-1"

    def test_always_failing_render_exhausts_attempts(self, store, store_factory):
        """Test one claim per invocation reaches failed after max_attempts invocations."""
        job_id = store.create({"text": "hello"}, max_attempts=3)
        processor = make_processor(store_factory, always_fails, max_jobs=1)

        outcomes = [processor.run_once() for _ in range(3)]

        assert [s.retried for s in outcomes] == [1, 1, 0]
        assert outcomes[-1].failed == 1
        job = store.get(job_id)
        assert job.state == JobState.FAILED
        assert job.attempts == 3
        assert "encoder crashed" in job.error

        # Further invocations find nothing to do
        assert processor.run_once().processed == 0
        assert store.get(job_id).attempts == 3

    def test_unlimited_pass_retries_within_invocation(self, store, store_factory):
        job_id = store.create({"text": "hello"}, max_attempts=2)

        summary = make_processor(store_factory, always_fails).run_once()

        assert summary.processed == 2
        assert summary.retried == 1
        assert summary.failed == 1
        assert store.get(job_id).state == JobState.FAILED

    def test_empty_queue_is_idle_pass(self, store_factory):
        summary = make_processor(store_factory, lambda payload: "x").run_once()

        assert summary.processed == 0
        assert summary.worker_id == "test-worker"


class TestProcessing:
    """Test ordering, isolation and progress forwarding."""

    def test_fifo_processing_order(self, store, store_factory):
        texts = [f"quote {i}" for i in range(5)]
        for text in texts:
            store.create({"text": text})

        seen = []
        make_processor(store_factory, lambda payload: seen.append(payload["text"])).run_once()

        assert seen == texts

    def test_failure_does_not_stop_other_jobs(self, store, store_factory):
        bad_id = store.create({"text": "bad"}, max_attempts=1)
        good_id = store.create({"text": "good"})

        def render(payload):
            if payload["text"] == "bad":
                raise ValueError("unreadable font")
            return {"ok": True}

        summary = make_processor(store_factory, render).run_once()

        assert summary.failed == 1
        assert summary.succeeded == 1
        assert store.get(bad_id).state == JobState.FAILED
        assert store.get(bad_id).error == "ValueError: unreadable font"
        assert store.get(good_id).state == JobState.COMPLETED

    def test_render_exit_does_not_stop_pass(self, store, store_factory):
        """Test a render calling sys.exit() fails its own job only."""
        exiting_id = store.create({"text": "a"}, max_attempts=1)
        neighbour_id = store.create({"text": "b"})

        def render(payload):
            if payload["text"] == "a":
                sys.exit(3)
            return "asset-b"

        summary = make_processor(store_factory, render).run_once()

        assert summary.failed == 1
        assert summary.succeeded == 1
        exiting = store.get(exiting_id)
        assert exiting.state == JobState.FAILED
        assert exiting.error == "RenderError: SystemExit: 3"
        assert store.get(neighbour_id).state == JobState.COMPLETED
        assert store.get(neighbour_id).result == "asset-b"

    def test_progress_forwarded_to_store(self, store, store_factory, temp_db):
        job_id = store.create({"text": "hello"})
        observed = []

        def render(payload, progress):
            progress(55)
            with SQLiteJobStore(temp_db) as reader:
                observed.append(reader.get(job_id).progress)
            return "done"

        make_processor(store_factory, render).run_once()

        assert observed == [55]
        assert store.get(job_id).progress == 100

    def test_non_json_result_is_stringified(self, store, store_factory):
        job_id = store.create({"text": "hello"})
        make_processor(store_factory, lambda payload: {"at": object}).run_once()

        assert store.get(job_id).state == JobState.COMPLETED
        assert isinstance(store.get(job_id).result["at"], str)


class TestBudget:
    """Test per-invocation limits."""

    def test_max_jobs(self, store, store_factory):
        for i in range(5):
            store.create({"text": f"quote {i}"})

        summary = make_processor(store_factory, lambda payload: "ok", max_jobs=2).run_once()

        assert summary.processed == 2
        assert store.count_by_state()["pending"] == 3

    def test_max_jobs_zero_claims_nothing(self, store, store_factory):
        store.create({"text": "hello"})

        summary = make_processor(store_factory, lambda payload: "ok", max_jobs=0).run_once()

        assert summary.processed == 0
        assert store.count_by_state()["pending"] == 1

    def test_max_seconds_stops_new_claims(self, store, store_factory):
        for i in range(3):
            store.create({"text": f"quote {i}"})

        def slow(payload):
            time.sleep(0.3)
            return "ok"

        summary = make_processor(store_factory, slow, max_seconds=0.1).run_once()

        assert summary.processed == 1
        assert store.count_by_state()["pending"] == 2

    def test_render_timeout_counts_as_attempt(self, store, store_factory):
        job_id = store.create({"text": "hello"}, max_attempts=2)
        release = threading.Event()
        progress_errors = []

        def hangs(payload, progress):
            release.wait(5)
            try:
                progress(90)
            except Exception as e:
                progress_errors.append(e)
                raise
            return "too late"

        summary = make_processor(
            store_factory, hangs, max_jobs=1, job_timeout_s=0.2
        ).run_once()
        release.set()

        assert summary.retried == 1
        job = store.get(job_id)
        assert job.state == JobState.PENDING
        assert job.attempts == 1
        assert job.last_error.startswith("RenderTimeoutError")

        # The abandoned render's progress callback refuses to write
        deadline = time.monotonic() + 5
        while not progress_errors and time.monotonic() < deadline:
            time.sleep(0.01)
        assert type(progress_errors[0]).__name__ == "RenderTimeoutError"
        assert store.get(job_id).progress is None


class TestConcurrency:
    """Test parallel claim loops within one invocation."""

    def test_concurrent_loops_process_each_job_once(self, store, store_factory):
        ids = [store.create({"text": f"quote {i}"}) for i in range(12)]

        def render(payload):
            time.sleep(0.02)
            return payload["text"]

        summary = make_processor(store_factory, render, concurrency=4).run_once()

        assert summary.processed == 12
        assert summary.succeeded == 12
        owners = set()
        for job_id in ids:
            job = store.get(job_id)
            assert job.state == JobState.COMPLETED
            assert job.attempts == 1
            owners.add(job.claimed_by)
        assert owners <= {f"test-worker-{i}" for i in range(4)}

    def test_concurrent_loops_respect_max_jobs(self, store, store_factory):
        for i in range(10):
            store.create({"text": f"quote {i}"})

        summary = make_processor(
            store_factory, lambda payload: "ok", concurrency=3, max_jobs=4
        ).run_once()

        assert summary.processed == 4
        assert store.count_by_state()["completed"] == 4


class TestStoreFailure:
    """Test that an unreachable store aborts the pass."""

    def test_store_error_propagates(self, temp_db):
        class BrokenStore(SQLiteJobStore):
            def claim_next_pending(self, worker_id):
                raise StoreError("disk went away")

        processor = make_processor(
            functools.partial(BrokenStore, temp_db), lambda payload: "ok"
        )
        with pytest.raises(StoreError):
            processor.run_once()

    def test_store_error_propagates_from_loops(self, temp_db):
        class BrokenStore(SQLiteJobStore):
            def claim_next_pending(self, worker_id):
                raise StoreError("disk went away")

        processor = make_processor(
            functools.partial(BrokenStore, temp_db), lambda payload: "ok", concurrency=2
        )
        with pytest.raises(StoreError):
            processor.run_once()


class TestProcessorSetup:
    def test_accepts_progress(self):
        def payload_only(payload):
            pass

        def with_progress(payload, progress):
            pass

        def variadic(*args):
            pass

        assert accepts_progress(payload_only) is False
        assert accepts_progress(with_progress) is True
        assert accepts_progress(variadic) is True
        assert accepts_progress(lambda payload, progress=None: None) is True

    def test_invalid_settings(self, store_factory):
        with pytest.raises(ValueError):
            QueueProcessor(store_factory, lambda p: p, concurrency=0)
        with pytest.raises(ValueError):
            QueueProcessor(store_factory, lambda p: p, job_timeout_s=0)

    def test_default_worker_id(self, store_factory):
        processor = QueueProcessor(store_factory, lambda p: p)
        assert processor.worker_id
