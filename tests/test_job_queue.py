"""
tests/test_job_queue.py — Lifecycle Job Queue
==============================================
The same behaviours are checked against the in-memory queue and the
SQL-backed queue (SQLite via the shared conftest engine).
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from rally.database.models import JobState
from rally.services.job_queue import (
    Backoff,
    InMemoryJobQueue,
    JobOptions,
    RetentionCounts,
)
from rally.services.job_store import SqlJobQueue


@pytest.fixture(params=["memory", "sql"])
def any_queue(request, clock, db_engine):
    if request.param == "memory":
        return InMemoryJobQueue(clock=clock)
    return SqlJobQueue(db_engine, clock=clock)


class TestBackoff:
    def test_exponential_delays(self):
        backoff = Backoff(base_delay=timedelta(seconds=2))
        assert [backoff.delay_for(n).total_seconds() for n in (1, 2, 3)] == [2, 4, 8]

    def test_only_exponential_is_supported(self):
        with pytest.raises(ValueError):
            Backoff(type="fixed")

    def test_defaults_match_queue_setup(self):
        options = JobOptions()
        assert options.max_attempts == 3
        assert options.backoff.base_delay == timedelta(seconds=2)
        assert options.retention == RetentionCounts(completed=100, failed=500)


class TestEnqueue:
    def test_enqueue_defaults_to_now(self, any_queue, clock):
        job = any_queue.enqueue("challenge:1", {"challenge_id": 1})
        assert job.state == JobState.WAITING
        assert job.run_at == clock.now
        assert job.attempts == 0

    def test_same_key_coalesces_to_earliest(self, any_queue, clock):
        later = JobOptions(run_at=clock.now + timedelta(hours=2))
        sooner = JobOptions(run_at=clock.now + timedelta(hours=1))

        first = any_queue.enqueue("challenge:1", {"challenge_id": 1}, later)
        second = any_queue.enqueue("challenge:1", {"challenge_id": 1}, sooner)
        third = any_queue.enqueue("challenge:1", {"challenge_id": 1}, later)

        assert first.id == second.id == third.id
        assert any_queue.pending_for("challenge:1").run_at == clock.now + timedelta(hours=1)
        assert len(any_queue.list_jobs()) == 1

    def test_different_keys_do_not_coalesce(self, any_queue):
        any_queue.enqueue("challenge:1", {"challenge_id": 1})
        any_queue.enqueue("challenge:2", {"challenge_id": 2})
        assert len(any_queue.list_jobs(state=JobState.WAITING)) == 2


class TestClaim:
    def test_future_jobs_are_not_claimed(self, any_queue, clock):
        any_queue.enqueue("challenge:1", {}, JobOptions(run_at=clock.now + timedelta(minutes=1)))
        assert any_queue.claim_due() == []

    def test_claim_marks_active_and_counts_attempt(self, any_queue, clock):
        any_queue.enqueue("challenge:1", {"challenge_id": 1})
        [job] = any_queue.claim_due()
        assert job.state == JobState.ACTIVE
        assert job.attempts == 1
        assert job.lease_expires_at == clock.now + timedelta(seconds=60)
        assert any_queue.get(job.id).state == JobState.ACTIVE

    def test_one_active_job_per_key(self, any_queue):
        any_queue.enqueue("challenge:1", {"challenge_id": 1})
        [first] = any_queue.claim_due()

        any_queue.enqueue("challenge:1", {"challenge_id": 1})
        assert any_queue.claim_due(limit=5) == []

        any_queue.complete(first, {"ok": True})
        [second] = any_queue.claim_due()
        assert second.id != first.id

    def test_limit_is_respected(self, any_queue):
        for i in range(5):
            any_queue.enqueue(f"challenge:{i}", {"challenge_id": i})
        assert len(any_queue.claim_due(limit=3)) == 3
        assert len(any_queue.claim_due(limit=3)) == 2

    def test_expired_lease_is_recovered_as_failed_attempt(self, any_queue, clock):
        any_queue.enqueue("challenge:1", {"challenge_id": 1})
        [job] = any_queue.claim_due()

        clock.advance(seconds=61)
        assert any_queue.claim_due() == []  # recovered, waiting out its backoff
        recovered = any_queue.get(job.id)
        assert recovered.state == JobState.WAITING
        assert recovered.last_error == "lease expired"

        clock.advance(seconds=2)
        [again] = any_queue.claim_due()
        assert again.id == job.id
        assert again.attempts == 2

    def test_renewed_lease_is_not_recovered(self, any_queue, clock):
        any_queue.enqueue("challenge:1", {"challenge_id": 1})
        [job] = any_queue.claim_due()

        clock.advance(seconds=50)
        assert any_queue.renew_lease(job) is True
        assert job.lease_expires_at == clock.now + timedelta(seconds=60)

        clock.advance(seconds=30)
        assert any_queue.claim_due() == []
        assert any_queue.get(job.id).state == JobState.ACTIVE

    def test_renew_after_recovery_is_refused(self, any_queue, clock):
        any_queue.enqueue("challenge:1", {"challenge_id": 1})
        [job] = any_queue.claim_due()
        clock.advance(seconds=61)
        any_queue.claim_due()

        assert any_queue.renew_lease(job) is False
        assert any_queue.get(job.id).state == JobState.WAITING

    def test_renew_after_completion_is_refused(self, any_queue):
        any_queue.enqueue("challenge:1", {"challenge_id": 1})
        [job] = any_queue.claim_due()
        any_queue.complete(job, {})
        assert any_queue.renew_lease(job) is False


class TestFinish:
    def test_complete_stores_result(self, any_queue, clock):
        any_queue.enqueue("challenge:1", {"challenge_id": 1})
        [job] = any_queue.claim_due()
        any_queue.complete(job, {"status": "ACTIVE"})

        stored = any_queue.get(job.id)
        assert stored.state == JobState.COMPLETED
        assert stored.result == {"status": "ACTIVE"}
        assert stored.finished_at == clock.now

    def test_retry_then_exhaust(self, any_queue, clock):
        any_queue.enqueue("challenge:1", {"challenge_id": 1})

        [job] = any_queue.claim_due()
        job = any_queue.fail(job, "boom")
        assert job.state == JobState.WAITING
        assert job.run_at == clock.now + timedelta(seconds=2)

        clock.advance(seconds=2)
        [job] = any_queue.claim_due()
        job = any_queue.fail(job, "boom")
        assert job.run_at == clock.now + timedelta(seconds=4)

        clock.advance(seconds=4)
        [job] = any_queue.claim_due()
        job = any_queue.fail(job, "boom")
        assert job.state == JobState.FAILED
        assert any_queue.get(job.id).attempts == 3

    def test_permanent_failure_skips_retries(self, any_queue):
        any_queue.enqueue("challenge:1", {"challenge_id": 1})
        [job] = any_queue.claim_due()
        job = any_queue.fail(job, "not found", permanent=True)
        assert job.state == JobState.FAILED
        assert job.attempts == 1

    def test_retention_keeps_newest_completed(self, any_queue, clock):
        options = JobOptions(retention=RetentionCounts(completed=2, failed=1))
        ids = []
        for i in range(4):
            any_queue.enqueue(f"challenge:{i}", {"challenge_id": i}, options)
            [job] = any_queue.claim_due()
            clock.advance(seconds=1)
            any_queue.complete(job)
            ids.append(job.id)

        kept = [j.id for j in any_queue.list_jobs(state=JobState.COMPLETED)]
        assert sorted(kept) == ids[-2:]

    def test_retention_keeps_newest_failed(self, any_queue, clock):
        options = JobOptions(max_attempts=1, retention=RetentionCounts(completed=2, failed=1))
        for i in range(3):
            any_queue.enqueue(f"challenge:{i}", {"challenge_id": i}, options)
            [job] = any_queue.claim_due()
            clock.advance(seconds=1)
            any_queue.fail(job, "boom")

        assert len(any_queue.list_jobs(state=JobState.FAILED)) == 1


def test_handler_must_be_registered():
    queue = InMemoryJobQueue()
    with pytest.raises(RuntimeError):
        queue.handler  # noqa: B018
