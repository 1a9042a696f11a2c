"""
rally.services.scheduler — Lifecycle Scheduler
===============================================

Turns "look at challenge N again at time T" into a queue entry.  All
lifecycle jobs for one challenge share the key ``challenge:<id>``, so
repeated scheduling coalesces into a single WAITING job at the earliest
requested time.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING

from rally.constants import job_key_for
from rally.services.job_queue import JobOptions, JobQueue, JobRecord

if TYPE_CHECKING:
    from rally.services.challenge_service import ChallengeService

logger = logging.getLogger(__name__)


class LifecycleScheduler:
    """Enqueues lifecycle re-evaluation jobs on a :class:`JobQueue`."""

    def __init__(self, queue: JobQueue, options: JobOptions | None = None) -> None:
        self.queue = queue
        self.options = options or JobOptions()

    def attach(self, service: ChallengeService) -> None:
        """Route every lifecycle job on the queue to *service*."""
        self.queue.register_handler(service.handle_advance_job)

    def schedule_advance(self, challenge_id: int, run_at: datetime | None = None) -> JobRecord:
        """Ensure a WAITING job for *challenge_id* runs no later than *run_at*."""
        job = self.queue.enqueue(
            job_key_for(challenge_id),
            {"challenge_id": challenge_id},
            replace(self.options, run_at=run_at),
        )
        logger.info(
            "Challenge %d: next lifecycle check at %s (job %d)",
            challenge_id, job.run_at.isoformat(), job.id,
        )
        return job

    def pending(self, challenge_id: int) -> JobRecord | None:
        return self.queue.pending_for(job_key_for(challenge_id))
