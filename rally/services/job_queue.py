"""
rally.services.job_queue — Lifecycle Job Queue
===============================================

A small durable-queue contract for lifecycle re-evaluation jobs.  The
shared retry/backoff/retention rules live on :class:`JobQueue`; storage
backends only implement the primitive reads and writes.

Delivery is **at least once**.  Handlers must be idempotent (``advance``
is), and a job whose worker disappears is recovered when its lease runs
out and counted as a failed attempt.  A live worker whose handler overruns
its timeout keeps the lease alive with :meth:`JobQueue.renew_lease`.

Job lifecycle::

    WAITING ──claim──▶ ACTIVE ──ok──▶ COMPLETED
       ▲                  │
       └──retry (backoff)─┤
                          └──exhausted / permanent──▶ FAILED

Two backends:
    * :class:`InMemoryJobQueue` (this module) — tests and single-process dev.
    * :class:`rally.services.job_store.SqlJobQueue` — the production queue.
"""

from __future__ import annotations

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from rally.constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_JOB_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETAIN_COMPLETED,
    DEFAULT_RETAIN_FAILED,
    ensure_utc,
    utcnow,
)
from rally.database.models import JobState

if TYPE_CHECKING:
    from rally.database.models import LifecycleJob

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
JobHandler = Callable[["JobRecord"], "dict[str, Any] | None"]


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Backoff:
    """Retry delay policy.  Only exponential backoff is supported."""

    type: str = "exponential"
    base_delay: timedelta = DEFAULT_BACKOFF_BASE

    def __post_init__(self) -> None:
        if self.type != "exponential":
            raise ValueError(f"Unsupported backoff type {self.type!r}")
        if self.base_delay <= timedelta(0):
            raise ValueError("Backoff base_delay must be positive")

    def delay_for(self, attempt: int) -> timedelta:
        """Delay before retrying after failed attempt number *attempt* (1-based)."""
        return self.base_delay * (2 ** max(attempt - 1, 0))


@dataclass(frozen=True, slots=True)
class RetentionCounts:
    """How many finished job records to keep per terminal state."""

    completed: int = DEFAULT_RETAIN_COMPLETED
    failed: int = DEFAULT_RETAIN_FAILED


@dataclass(frozen=True, slots=True)
class JobOptions:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff: Backoff = field(default_factory=Backoff)
    retention: RetentionCounts = field(default_factory=RetentionCounts)
    run_at: datetime | None = None
    timeout: timedelta = DEFAULT_JOB_TIMEOUT

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.timeout <= timedelta(0):
            raise ValueError("timeout must be positive")


# ---------------------------------------------------------------------------
# Job record
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class JobRecord:
    """A queue entry as seen by workers.  Mutated in place, then written back."""

    id: int
    job_key: str
    payload: dict[str, Any]
    state: JobState
    attempts: int
    max_attempts: int
    backoff_base_seconds: float
    timeout_seconds: float
    retain_completed: int
    retain_failed: int
    run_at: datetime
    created_at: datetime
    lease_expires_at: datetime | None = None
    last_error: str | None = None
    result: dict[str, Any] | None = None
    finished_at: datetime | None = None

    @property
    def backoff(self) -> Backoff:
        return Backoff(base_delay=timedelta(seconds=self.backoff_base_seconds))

    @property
    def timeout(self) -> timedelta:
        return timedelta(seconds=self.timeout_seconds)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    @classmethod
    def from_row(cls, row: LifecycleJob) -> JobRecord:
        return cls(
            id=row.id,
            job_key=row.job_key,
            payload=dict(row.payload or {}),
            state=JobState(row.state),
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            backoff_base_seconds=row.backoff_base_seconds,
            timeout_seconds=row.timeout_seconds,
            retain_completed=row.retain_completed,
            retain_failed=row.retain_failed,
            run_at=ensure_utc(row.run_at),
            created_at=ensure_utc(row.created_at),
            lease_expires_at=ensure_utc(row.lease_expires_at) if row.lease_expires_at else None,
            last_error=row.last_error,
            result=row.result,
            finished_at=ensure_utc(row.finished_at) if row.finished_at else None,
        )

    def to_dict(self) -> dict[str, Any]:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "job_key": self.job_key,
            "payload": self.payload,
            "state": str(self.state),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "run_at": _iso(self.run_at),
            "created_at": _iso(self.created_at),
            "lease_expires_at": _iso(self.lease_expires_at),
            "last_error": self.last_error,
            "result": self.result,
            "finished_at": _iso(self.finished_at),
        }


def lease_for(job: JobRecord, now: datetime) -> datetime:
    """Lease deadline for a freshly claimed job: twice its timeout."""
    return now + job.timeout * 2


# ---------------------------------------------------------------------------
# Queue contract
# ---------------------------------------------------------------------------
class JobQueue(ABC):
    """Durable job queue with retry, backoff and bounded retention."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._handler: JobHandler | None = None

    # -- handler ------------------------------------------------------------
    def register_handler(self, handler: JobHandler) -> None:
        """Set the single function invoked for every job."""
        self._handler = handler

    @property
    def handler(self) -> JobHandler:
        if self._handler is None:
            raise RuntimeError("No job handler registered on this queue")
        return self._handler

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    # -- producer side ------------------------------------------------------
    def enqueue(
        self,
        job_key: str,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> JobRecord:
        """Add a job, or coalesce into the WAITING job already queued for *job_key*.

        When coalescing, the earlier of the two ``run_at`` values wins.
        """
        options = options or JobOptions()
        now = self.now()
        run_at = ensure_utc(options.run_at) if options.run_at is not None else now
        job = self._enqueue(job_key, payload, options, run_at, now)
        logger.debug("Enqueued job %d (%s) for %s", job.id, job_key, job.run_at.isoformat())
        return job

    # -- consumer side ------------------------------------------------------
    def claim_due(self, limit: int = 1, now: datetime | None = None) -> list[JobRecord]:
        """Claim up to *limit* due jobs, at most one per ``job_key``.

        Jobs whose lease expired are first recovered as failed attempts.
        """
        now = ensure_utc(now) if now is not None else self.now()
        for stalled in self._stalled(now):
            logger.warning(
                "Job %d (%s) lease expired after attempt %d; recovering",
                stalled.id, stalled.job_key, stalled.attempts,
            )
            self.fail(stalled, "lease expired", now=now)
        return self._claim(limit, now)

    def renew_lease(self, job: JobRecord, now: datetime | None = None) -> bool:
        """Extend the lease of a job that is still running.

        Returns False if *job* is no longer the ACTIVE attempt (its lease
        already expired and it was recovered).
        """
        now = ensure_utc(now) if now is not None else self.now()
        lease = lease_for(job, now)
        if not self._renew(job, lease):
            return False
        job.lease_expires_at = lease
        return True

    def complete(
        self,
        job: JobRecord,
        result: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> JobRecord:
        now = ensure_utc(now) if now is not None else self.now()
        job.state = JobState.COMPLETED
        job.result = result
        job.finished_at = now
        job.lease_expires_at = None
        self._write(job)
        self._prune(JobState.COMPLETED, job.retain_completed)
        return job

    def fail(
        self,
        job: JobRecord,
        error: str,
        *,
        permanent: bool = False,
        now: datetime | None = None,
    ) -> JobRecord:
        """Record a failed attempt: retry with backoff, or move to FAILED."""
        now = ensure_utc(now) if now is not None else self.now()
        job.last_error = error
        job.lease_expires_at = None

        if not permanent and not job.exhausted:
            delay = job.backoff.delay_for(job.attempts)
            job.state = JobState.WAITING
            job.run_at = now + delay
            self._write(job)
            logger.info(
                "Job %d (%s) attempt %d/%d failed; retrying in %.1fs: %s",
                job.id, job.job_key, job.attempts, job.max_attempts,
                delay.total_seconds(), error,
            )
            return job

        job.state = JobState.FAILED
        job.finished_at = now
        self._write(job)
        self._prune(JobState.FAILED, job.retain_failed)
        return job

    # -- backend primitives -------------------------------------------------
    @abstractmethod
    def _enqueue(
        self,
        job_key: str,
        payload: dict[str, Any],
        options: JobOptions,
        run_at: datetime,
        now: datetime,
    ) -> JobRecord: ...

    @abstractmethod
    def _claim(self, limit: int, now: datetime) -> list[JobRecord]: ...

    @abstractmethod
    def _stalled(self, now: datetime) -> list[JobRecord]:
        """ACTIVE jobs whose lease expired before *now*."""

    @abstractmethod
    def _renew(self, job: JobRecord, lease: datetime) -> bool:
        """Set *lease* if *job* is still ACTIVE on the same attempt."""

    @abstractmethod
    def _write(self, job: JobRecord) -> None:
        """Persist the mutable fields of *job*."""

    @abstractmethod
    def _prune(self, state: JobState, keep: int) -> int:
        """Delete all but the newest *keep* finished jobs in *state*."""

    # -- inspection ---------------------------------------------------------
    @abstractmethod
    def get(self, job_id: int) -> JobRecord | None: ...

    @abstractmethod
    def list_jobs(
        self,
        *,
        state: JobState | None = None,
        job_key: str | None = None,
        limit: int = 100,
    ) -> list[JobRecord]: ...

    @abstractmethod
    def pending_for(self, job_key: str) -> JobRecord | None:
        """The WAITING job for *job_key*, if any."""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------
class InMemoryJobQueue(JobQueue):
    """Thread-safe, process-local queue.  Records are copied in and out."""

    def __init__(self, clock: Clock = utcnow) -> None:
        super().__init__(clock)
        self._lock = threading.Lock()
        self._jobs: dict[int, JobRecord] = {}
        self._ids = itertools.count(1)

    def _enqueue(self, job_key, payload, options, run_at, now):
        with self._lock:
            for job in self._jobs.values():
                if job.job_key == job_key and job.state == JobState.WAITING:
                    if run_at < job.run_at:
                        job.run_at = run_at
                    return replace(job)

            job = JobRecord(
                id=next(self._ids),
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
            self._jobs[job.id] = job
            return replace(job)

    def _claim(self, limit, now):
        with self._lock:
            busy = {j.job_key for j in self._jobs.values() if j.state == JobState.ACTIVE}
            due = sorted(
                (j for j in self._jobs.values()
                 if j.state == JobState.WAITING and j.run_at <= now),
                key=lambda j: (j.run_at, j.id),
            )
            claimed: list[JobRecord] = []
            for job in due:
                if len(claimed) >= limit:
                    break
                if job.job_key in busy:
                    continue
                job.state = JobState.ACTIVE
                job.attempts += 1
                job.lease_expires_at = lease_for(job, now)
                busy.add(job.job_key)
                claimed.append(replace(job))
            return claimed

    def _stalled(self, now):
        with self._lock:
            return [
                replace(j) for j in self._jobs.values()
                if j.state == JobState.ACTIVE
                and j.lease_expires_at is not None
                and j.lease_expires_at < now
            ]

    def _renew(self, job, lease):
        with self._lock:
            stored = self._jobs.get(job.id)
            if (
                stored is None
                or stored.state != JobState.ACTIVE
                or stored.attempts != job.attempts
            ):
                return False
            stored.lease_expires_at = lease
            return True

    def _write(self, job):
        with self._lock:
            if job.id in self._jobs:
                self._jobs[job.id] = replace(job)

    def _prune(self, state, keep):
        with self._lock:
            finished = sorted(
                (j for j in self._jobs.values() if j.state == state),
                key=lambda j: (j.finished_at, j.id),
                reverse=True,
            )
            stale = finished[keep:]
            for job in stale:
                del self._jobs[job.id]
            return len(stale)

    def get(self, job_id):
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job is not None else None

    def list_jobs(self, *, state=None, job_key=None, limit=100):
        with self._lock:
            rows = [
                replace(j) for j in self._jobs.values()
                if (state is None or j.state == state)
                and (job_key is None or j.job_key == job_key)
            ]
        rows.sort(key=lambda j: j.id, reverse=True)
        return rows[:limit]

    def pending_for(self, job_key):
        with self._lock:
            waiting = [
                j for j in self._jobs.values()
                if j.job_key == job_key and j.state == JobState.WAITING
            ]
        if not waiting:
            return None
        return replace(min(waiting, key=lambda j: (j.run_at, j.id)))
