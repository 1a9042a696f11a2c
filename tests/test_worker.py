"""
tests/test_worker.py — Lifecycle Worker
========================================
Drives :class:`LifecycleWorker` end to end against the in-memory queue.
Async code is run through a small ``_run`` helper.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from conftest import make_draft, start_challenge

from rally.database.models import ChallengeStatus, JobState
from rally.errors import NotFoundError, StateViolation, TransientInfrastructureError
from rally.services.challenge_service import ChallengeService
from rally.services.job_queue import Backoff, InMemoryJobQueue, JobOptions
from rally.services.reconciliation_service import reconcile_schedules
from rally.services.repository import ChallengeRepository
from rally.services.scheduler import LifecycleScheduler
from rally.services.worker import LifecycleWorker


def _run(coro):
    return asyncio.run(coro)


class FlakyRepository(ChallengeRepository):
    """Fails the next ``failures`` challenge saves with a transient error."""

    def __init__(self, engine):
        super().__init__(engine)
        self.failures = 0

    def save_challenge(self, challenge, expected_version, transitions=(), **kwargs):
        if self.failures:
            self.failures -= 1
            raise TransientInfrastructureError("connection reset")
        return super().save_challenge(challenge, expected_version, transitions, **kwargs)


@pytest.fixture
def flaky(db_engine):
    return FlakyRepository(db_engine)


@pytest.fixture
def flaky_service(flaky, queue, clock, config) -> ChallengeService:
    scheduler = LifecycleScheduler(queue, config.job_options())
    svc = ChallengeService(flaky, scheduler, config=config, clock=clock)
    scheduler.attach(svc)
    return svc


class TestLifecycleJobs:
    def test_transient_failures_then_success_finalizes_once(self, flaky, flaky_service, queue, clock):
        """Two transient failures, then success: one finalization, no duplicate rows."""
        svc = flaky_service
        challenge_id = start_challenge(svc, clock)
        svc.join(challenge_id, "alice")
        clock.advance(hours=1)
        svc.record_contribution(challenge_id, "alice", 7)

        clock.set(svc.get_challenge(challenge_id).end_at)
        svc.reschedule(challenge_id)
        flaky.failures = 2
        worker = LifecycleWorker(queue, concurrency=1)

        [job] = _run(worker.run_once())
        assert job.state == JobState.WAITING
        assert _run(worker.run_once()) == []  # backing off

        clock.advance(seconds=2)
        [job] = _run(worker.run_once())
        assert job.state == JobState.WAITING

        clock.advance(seconds=4)
        [job] = _run(worker.run_once())
        assert job.state == JobState.COMPLETED
        assert job.attempts == 3

        challenge = svc.get_challenge(challenge_id)
        assert challenge.status == ChallengeStatus.COMPLETED
        assert challenge.final_total == 7
        statuses = [t.to_status for t in svc.list_transitions(challenge_id)]
        assert statuses.count(ChallengeStatus.COMPLETED) == 1
        assert len(flaky.list_contributions(challenge_id)) == 1

    def test_exhausted_retries_raise_alert(self, flaky, flaky_service, queue, clock, caplog):
        svc = flaky_service
        challenge_id = start_challenge(svc, clock)
        clock.set(svc.get_challenge(challenge_id).end_at)
        svc.reschedule(challenge_id)
        flaky.failures = 10
        alert = MagicMock()
        worker = LifecycleWorker(queue, concurrency=1, alert=alert)

        with caplog.at_level(logging.CRITICAL, logger="rally.alerts"):
            for delay in (0, 2, 4):
                clock.advance(seconds=delay)
                [job] = _run(worker.run_once())

        assert job.state == JobState.FAILED
        alert.assert_called_once()
        assert any(r.name == "rally.alerts" for r in caplog.records)
        assert svc.get_challenge(challenge_id).status == ChallengeStatus.ACTIVE

    def test_worker_walks_full_lifecycle(self, service, queue, clock):
        challenge_id = service.create_challenge(
            make_draft(end_at=clock.now + timedelta(hours=3))
        )
        service.publish(challenge_id)
        worker = LifecycleWorker(queue, concurrency=1)

        clock.set(service.get_challenge(challenge_id).start_at)
        _run(worker.run_once())
        assert service.get_challenge(challenge_id).status == ChallengeStatus.ACTIVE

        clock.advance(hours=1)
        _run(worker.run_once())
        clock.advance(hours=1)
        _run(worker.run_once())

        assert service.get_challenge(challenge_id).status == ChallengeStatus.EXPIRED
        assert queue.list_jobs(state=JobState.WAITING) == []


class TestFailureClassification:
    def _queue_with(self, handler, clock, **options):
        queue = InMemoryJobQueue(clock=clock)
        queue.register_handler(handler)
        queue.enqueue("challenge:1", {"challenge_id": 1}, JobOptions(**options))
        return queue

    def test_permanent_error_is_discarded(self, clock):
        queue = self._queue_with(MagicMock(side_effect=NotFoundError("gone")), clock)
        [job] = _run(LifecycleWorker(queue).run_once())
        assert job.state == JobState.FAILED
        assert job.attempts == 1
        assert "NotFoundError" in job.last_error

    def test_state_violation_logged_at_error(self, clock, caplog):
        queue = self._queue_with(
            MagicMock(side_effect=StateViolation("COMPLETED", "ACTIVE")), clock
        )
        with caplog.at_level(logging.ERROR, logger="rally.services.worker"):
            [job] = _run(LifecycleWorker(queue).run_once())
        assert job.state == JobState.FAILED
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    def test_unknown_exception_is_retried(self, clock):
        queue = self._queue_with(MagicMock(side_effect=RuntimeError("bug?")), clock)
        [job] = _run(LifecycleWorker(queue).run_once())
        assert job.state == JobState.WAITING
        assert job.run_at == clock.now + timedelta(seconds=2)

    def test_timeout_is_retried(self, clock):
        def slow(job):
            time.sleep(0.3)

        queue = self._queue_with(slow, clock, timeout=timedelta(seconds=0.05))
        [job] = _run(LifecycleWorker(queue).run_once())
        assert job.state == JobState.WAITING
        assert "JobTimeout" in job.last_error

    def test_timed_out_job_is_not_rerun_while_handler_still_runs(self, clock):
        """The overrunning handler must return before its key can be claimed again."""
        spans = []

        def slow_first(job):
            started = time.monotonic()
            if not spans:
                time.sleep(0.4)
            spans.append((started, time.monotonic()))

        queue = self._queue_with(
            slow_first, clock,
            timeout=timedelta(seconds=0.05),
            backoff=Backoff(base_delay=timedelta(seconds=1)),
        )
        worker = LifecycleWorker(queue, concurrency=1)

        async def scenario():
            first = asyncio.create_task(worker.run_once())
            await asyncio.sleep(0.15)
            # Well past the original 0.1s lease; the next renewal covers it.
            clock.advance(seconds=1)
            await asyncio.sleep(0.1)
            during = await worker.run_once()
            [timed_out] = await first
            clock.advance(seconds=1)
            retried = await worker.run_once()
            return during, timed_out, retried

        during, timed_out, [retried] = _run(scenario())

        assert during == []
        assert "JobTimeout" in timed_out.last_error
        assert timed_out.attempts == 1
        assert retried.state == JobState.COMPLETED
        assert retried.attempts == 2
        (_, first_end), (second_start, _) = spans
        assert second_start >= first_end

    def test_lost_lease_leaves_newer_attempt_alone(self, clock):
        def slow(job):
            time.sleep(0.2)

        queue = self._queue_with(slow, clock, timeout=timedelta(seconds=0.05))
        worker = LifecycleWorker(queue, concurrency=1)

        async def scenario():
            with patch.object(queue, "renew_lease", return_value=False):
                first = asyncio.create_task(worker.run_once())
                await asyncio.sleep(0.1)
                # Another worker sweeps the lease and claims attempt 2.
                clock.advance(seconds=61)
                queue.claim_due()
                clock.advance(seconds=2)
                [again] = queue.claim_due()
                [late] = await first
            return again, late

        again, late = _run(scenario())

        assert again.attempts == 2
        assert late.state == JobState.ACTIVE
        assert late.attempts == 2
        assert late.last_error == "lease expired"

    def test_result_is_stored(self, clock):
        queue = self._queue_with(lambda job: {"seen": job.payload["challenge_id"]}, clock)
        [job] = _run(LifecycleWorker(queue).run_once())
        assert job.state == JobState.COMPLETED
        assert queue.get(job.id).result == {"seen": 1}

    def test_concurrency_must_be_positive(self):
        with pytest.raises(ValueError):
            LifecycleWorker(InMemoryJobQueue(), concurrency=0)


class TestRunForever:
    def test_stops_when_event_is_set(self, clock):
        queue = InMemoryJobQueue(clock=clock)
        queue.register_handler(lambda job: None)
        reconcile = MagicMock(return_value={"checked": 0, "enqueued": 0})
        worker = LifecycleWorker(queue)

        async def scenario():
            stop = asyncio.Event()
            task = asyncio.create_task(
                worker.run_forever(stop, poll_seconds=0.01, reconcile=reconcile)
            )
            await asyncio.sleep(0.05)
            stop.set()
            await asyncio.wait_for(task, timeout=1)

        _run(scenario())
        reconcile.assert_called_once()


class TestReconciliation:
    def test_requeues_live_challenges_without_jobs(self, repository, clock, config):
        original = InMemoryJobQueue(clock=clock)
        svc = ChallengeService(repository, LifecycleScheduler(original), config=config, clock=clock)
        live = svc.create_challenge(make_draft())
        svc.publish(live)
        svc.create_challenge(make_draft(name="Still a draft"))

        # A fresh queue has lost every job.
        fresh = InMemoryJobQueue(clock=clock)
        svc.scheduler = LifecycleScheduler(fresh)

        first = reconcile_schedules(svc)
        second = reconcile_schedules(svc)

        assert first["challenge_ids"] == [live]
        assert second["enqueued"] == 0
        assert fresh.pending_for(f"challenge:{live}").run_at == svc.get_challenge(live).start_at
