"""
rally.services.worker — Lifecycle Job Worker
=============================================

Async loop that pulls due jobs off a :class:`JobQueue` and runs the
registered handler for each, with a per-job timeout.

Outcome handling:

- **Success** → job COMPLETED, result stored.
- **Retryable failure** (``RallyError.retryable``, a timeout, or any
  exception the engine doesn't recognise) → back to WAITING with
  exponential backoff until ``max_attempts`` is used up.
- **Permanent failure** (validation, not found, state violation) → FAILED
  straight away.  A :class:`StateViolation` here means the engine computed
  an illegal step, so it is logged at ERROR.
- **Retries exhausted** → FAILED, CRITICAL on the ``rally.alerts`` logger
  and the optional alert callback.

Database calls go through ``run_db()`` so the loop never blocks.

A handler thread that overruns its timeout cannot be killed.  The worker
records the timeout only after the thread has returned, renewing the lease
meanwhile, so the job stays ACTIVE (and its key claimed) for as long as the
handler really runs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from rally.database.engine import run_db
from rally.database.models import JobState
from rally.errors import JobTimeout, RallyError, StateViolation
from rally.services.job_queue import JobQueue, JobRecord

logger = logging.getLogger(__name__)
alert_logger = logging.getLogger("rally.alerts")

AlertCallback = Callable[[JobRecord, BaseException], None]


class LifecycleWorker:
    """Runs lifecycle jobs with bounded concurrency."""

    def __init__(
        self,
        queue: JobQueue,
        *,
        concurrency: int = 4,
        alert: AlertCallback | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.concurrency = concurrency
        self.alert = alert

    # -------------------------------------------------------------------
    # One pass
    # -------------------------------------------------------------------
    async def run_once(self, now: datetime | None = None) -> list[JobRecord]:
        """Claim and execute up to ``concurrency`` due jobs.  Returns them finished."""
        jobs = await run_db(self.queue.claim_due, self.concurrency, now)
        if not jobs:
            return []
        return list(await asyncio.gather(*(self._execute(job) for job in jobs)))

    async def _execute(self, job: JobRecord) -> JobRecord:
        handler = self.queue.handler
        call = asyncio.ensure_future(run_db(handler, job))
        try:
            result = await asyncio.wait_for(asyncio.shield(call), timeout=job.timeout_seconds)
        except TimeoutError:
            # The handler thread can't be interrupted.  Keep the job ACTIVE
            # until it returns so its key never runs twice at once.
            logger.warning(
                "Job %d (%s) exceeded %gs; waiting for the handler to return",
                job.id, job.job_key, job.timeout_seconds,
                extra={"task": "lifecycle", "job_id": job.id},
            )
            held = await self._hold_lease(job, call)
            if not call.cancelled() and call.exception() is not None:
                logger.debug("Job %d late handler error: %r", job.id, call.exception())
            if not held:
                # Another attempt owns the row now; leave it alone.
                return await run_db(self.queue.get, job.id) or job
            return await self._failed(
                job, JobTimeout(f"Job {job.id} ran longer than {job.timeout_seconds:g}s")
            )
        except RallyError as exc:
            return await self._failed(job, exc)
        except Exception as exc:
            logger.exception(
                "Job %d (%s) raised unexpectedly", job.id, job.job_key,
                extra={"task": "lifecycle", "job_id": job.id},
            )
            return await self._failed(job, exc)

        finished = await run_db(self.queue.complete, job, result)
        logger.debug("Job %d (%s) completed on attempt %d", job.id, job.job_key, job.attempts)
        return finished

    async def _hold_lease(self, job: JobRecord, call: asyncio.Future) -> bool:
        """Renew *job*'s lease every ``timeout`` seconds until *call* finishes.

        Returns False if the lease was lost (the job was recovered by a
        lease sweep and belongs to another attempt now).
        """
        held = True
        while not call.done():
            try:
                renewed = await run_db(self.queue.renew_lease, job)
            except RallyError as exc:
                logger.warning("Job %d: lease renewal failed: %s", job.id, exc)
            else:
                if not renewed and held:
                    logger.warning(
                        "Job %d (%s) lost its lease while the handler was still running",
                        job.id, job.job_key,
                    )
                held = held and renewed
            await asyncio.wait({call}, timeout=job.timeout_seconds)
        return held

    async def _failed(self, job: JobRecord, exc: BaseException) -> JobRecord:
        permanent = isinstance(exc, RallyError) and not exc.retryable
        error = f"{type(exc).__name__}: {exc}"
        updated = await run_db(self.queue.fail, job, error, permanent=permanent)

        if permanent:
            if isinstance(exc, StateViolation):
                logger.error("Job %d (%s) hit an illegal transition: %s", job.id, job.job_key, exc)
            else:
                logger.warning("Job %d (%s) discarded: %s", job.id, job.job_key, error)
        elif updated.state == JobState.FAILED:
            self._escalate(updated, exc)
        return updated

    def _escalate(self, job: JobRecord, exc: BaseException) -> None:
        alert_logger.critical(
            "Lifecycle job %d (%s) failed after %d attempts: %s",
            job.id, job.job_key, job.attempts, job.last_error,
        )
        if self.alert is None:
            return
        try:
            self.alert(job, exc)
        except Exception:
            logger.exception("Alert callback failed for job %d", job.id)

    # -------------------------------------------------------------------
    # Long-running loop
    # -------------------------------------------------------------------
    async def run_forever(
        self,
        stop: asyncio.Event,
        *,
        poll_seconds: float = 5.0,
        reconcile: Callable[[], dict] | None = None,
        reconcile_seconds: float = 86400.0,
    ) -> None:
        """Process jobs until *stop* is set.

        *reconcile* (if given) runs on startup and then every
        *reconcile_seconds*.
        """
        loop = asyncio.get_running_loop()
        next_reconcile = loop.time()

        while not stop.is_set():
            if reconcile is not None and loop.time() >= next_reconcile:
                try:
                    result = await run_db(reconcile)
                    logger.info(
                        "Reconciliation task complete: checked=%d enqueued=%d",
                        result["checked"], result["enqueued"],
                    )
                except Exception:
                    logger.exception(
                        "Reconciliation task failed", extra={"task": "reconciliation"}
                    )
                next_reconcile = loop.time() + reconcile_seconds

            try:
                finished = await self.run_once()
            except Exception:
                logger.exception("Worker pass failed", extra={"task": "lifecycle"})
                finished = []

            if finished:
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_seconds)
            except TimeoutError:
                pass

        logger.info("Lifecycle worker stopped.")
