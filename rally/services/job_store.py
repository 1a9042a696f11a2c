"""
rally.services.job_store — SQL-backed Lifecycle Queue
======================================================

:class:`SqlJobQueue` keeps lifecycle jobs in the ``lifecycle_jobs`` table,
so scheduled re-evaluations survive restarts and can be shared by several
worker processes.

Claiming is a conditional ``UPDATE … WHERE state = 'WAITING'``.  The
partial unique index on ``job_key`` for ACTIVE rows rejects a second
concurrent claim for the same challenge, which is what keeps ``advance``
serialized per challenge across processes.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import Engine, delete, select, update
from sqlalchemy.exc import IntegrityError

from rally.constants import utcnow
from rally.database.engine import get_session
from rally.database.models import JobState, LifecycleJob
from rally.services.job_queue import Clock, JobQueue, JobRecord, lease_for
from rally.services.repository import infra_errors

logger = logging.getLogger(__name__)

# Over-fetch so keys that turn out to be busy don't starve the batch.
_CLAIM_OVERFETCH = 4


class SqlJobQueue(JobQueue):
    """Durable :class:`JobQueue` on the application database."""

    def __init__(self, engine: Engine, clock: Clock = utcnow) -> None:
        super().__init__(clock)
        self.engine = engine

    # -------------------------------------------------------------------
    # Producer
    # -------------------------------------------------------------------
    def _enqueue(self, job_key, payload, options, run_at, now):
        with infra_errors(), get_session(self.engine) as session:
            existing = session.scalar(
                select(LifecycleJob)
                .where(LifecycleJob.job_key == job_key, LifecycleJob.state == JobState.WAITING)
                .order_by(LifecycleJob.run_at, LifecycleJob.id)
                .limit(1)
            )
            if existing is not None:
                if run_at < existing.run_at:
                    existing.run_at = run_at
                session.flush()
                return JobRecord.from_row(existing)

            row = LifecycleJob(
                job_key=job_key,
                payload=dict(payload),
                state=JobState.WAITING,
                attempts=0,
                max_attempts=options.max_attempts,
                backoff_base_seconds=options.backoff.base_delay.total_seconds(),
                timeout_seconds=options.timeout.total_seconds(),
                retain_completed=options.retention.completed,
                retain_failed=options.retention.failed,
                run_at=run_at,
                created_at=now,
            )
            session.add(row)
            session.flush()
            return JobRecord.from_row(row)

    # -------------------------------------------------------------------
    # Consumer
    # -------------------------------------------------------------------
    def _claim(self, limit, now):
        with infra_errors(), get_session(self.engine) as session:
            candidates = [
                JobRecord.from_row(row)
                for row in session.scalars(
                    select(LifecycleJob)
                    .where(LifecycleJob.state == JobState.WAITING, LifecycleJob.run_at <= now)
                    .order_by(LifecycleJob.run_at, LifecycleJob.id)
                    .limit(limit * _CLAIM_OVERFETCH)
                ).all()
            ]

        claimed: list[JobRecord] = []
        seen_keys: set[str] = set()
        for job in candidates:
            if len(claimed) >= limit:
                break
            if job.job_key in seen_keys:
                continue
            if self._try_claim(job, now):
                seen_keys.add(job.job_key)
                claimed.append(job)
        return claimed

    def _try_claim(self, job: JobRecord, now: datetime) -> bool:
        lease = lease_for(job, now)
        try:
            with infra_errors(), get_session(self.engine) as session:
                result = session.execute(
                    update(LifecycleJob)
                    .where(LifecycleJob.id == job.id, LifecycleJob.state == JobState.WAITING)
                    .values(
                        state=JobState.ACTIVE,
                        attempts=LifecycleJob.attempts + 1,
                        lease_expires_at=lease,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return False
        except IntegrityError:
            # Another worker holds the ACTIVE job for this key.
            logger.debug("Key %s busy; skipping job %d", job.job_key, job.id)
            return False

        job.state = JobState.ACTIVE
        job.attempts += 1
        job.lease_expires_at = lease
        return True

    def _stalled(self, now):
        with infra_errors(), get_session(self.engine) as session:
            return [
                JobRecord.from_row(row)
                for row in session.scalars(
                    select(LifecycleJob).where(
                        LifecycleJob.state == JobState.ACTIVE,
                        LifecycleJob.lease_expires_at < now,
                    )
                ).all()
            ]

    def _renew(self, job, lease):
        with infra_errors(), get_session(self.engine) as session:
            result = session.execute(
                update(LifecycleJob)
                .where(
                    LifecycleJob.id == job.id,
                    LifecycleJob.state == JobState.ACTIVE,
                    LifecycleJob.attempts == job.attempts,
                )
                .values(lease_expires_at=lease)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def _write(self, job):
        with infra_errors(), get_session(self.engine) as session:
            session.execute(
                update(LifecycleJob)
                .where(LifecycleJob.id == job.id)
                .values(
                    state=job.state,
                    attempts=job.attempts,
                    run_at=job.run_at,
                    lease_expires_at=job.lease_expires_at,
                    last_error=job.last_error,
                    result=job.result,
                    finished_at=job.finished_at,
                )
                .execution_options(synchronize_session=False)
            )

    def _prune(self, state, keep):
        with infra_errors(), get_session(self.engine) as session:
            stale_ids = list(session.scalars(
                select(LifecycleJob.id)
                .where(LifecycleJob.state == state)
                .order_by(LifecycleJob.finished_at.desc(), LifecycleJob.id.desc())
                .offset(keep)
            ).all())
            if not stale_ids:
                return 0
            session.execute(
                delete(LifecycleJob)
                .where(LifecycleJob.id.in_(stale_ids))
                .execution_options(synchronize_session=False)
            )
        logger.debug("Pruned %d %s job(s)", len(stale_ids), state)
        return len(stale_ids)

    # -------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------
    def get(self, job_id):
        with infra_errors(), get_session(self.engine) as session:
            row = session.get(LifecycleJob, job_id)
            return JobRecord.from_row(row) if row is not None else None

    def list_jobs(self, *, state=None, job_key=None, limit=100):
        stmt = select(LifecycleJob)
        if state is not None:
            stmt = stmt.where(LifecycleJob.state == state)
        if job_key is not None:
            stmt = stmt.where(LifecycleJob.job_key == job_key)
        stmt = stmt.order_by(LifecycleJob.id.desc()).limit(limit)

        with infra_errors(), get_session(self.engine) as session:
            return [JobRecord.from_row(row) for row in session.scalars(stmt).all()]

    def pending_for(self, job_key):
        with infra_errors(), get_session(self.engine) as session:
            row = session.scalar(
                select(LifecycleJob)
                .where(LifecycleJob.job_key == job_key, LifecycleJob.state == JobState.WAITING)
                .order_by(LifecycleJob.run_at, LifecycleJob.id)
                .limit(1)
            )
            return JobRecord.from_row(row) if row is not None else None
