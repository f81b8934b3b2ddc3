import pytest

from quote_reel.queue import JobState, StaleJobReclaimer


def test_reclaimer_releases_stale_jobs(clocked_store, clock):
    stale_id = clocked_store.create({"text": "stale"})
    clocked_store.claim_next_pending("crashed-worker")
    clock.advance(600)

    fresh_id = clocked_store.create({"text": "fresh"})
    clocked_store.claim_next_pending("live-worker")
    clock.advance(100)

    reclaimer = StaleJobReclaimer(clocked_store, timeout_s=300)
    assert reclaimer.run_once() == 1

    assert clocked_store.get(stale_id).state == JobState.PENDING
    assert clocked_store.get(fresh_id).state == JobState.PROCESSING


def test_reclaimed_job_is_claimable_again(clocked_store, clock):
    job_id = clocked_store.create({"text": "stale"})
    clocked_store.claim_next_pending("crashed-worker")
    clock.advance(600)

    StaleJobReclaimer(clocked_store, timeout_s=300).run_once()
    job = clocked_store.claim_next_pending("new-worker")

    assert job.id == job_id
    assert job.attempts == 2
    assert job.claimed_by == "new-worker"


def test_reclaimer_idle_pass(store):
    assert StaleJobReclaimer(store, timeout_s=300).run_once() == 0


def test_reclaimer_rejects_bad_timeout(store):
    with pytest.raises(ValueError):
        StaleJobReclaimer(store, timeout_s=0)
