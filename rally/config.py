"""
rally.config — YAML Configuration Loader
=========================================

**Why this file exists:**
This module reads ``config.yaml`` for engine tuning: how often live
challenges are re-evaluated, how late a contribution may land, and the job
queue's retry/retention policy.  Secrets (``DATABASE_URL``, ``JWT_SECRET``)
stay in the environment.

Usage::

    from rally.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.poll_interval)         # 1:00:00
    opts = cfg.job_options()         # JobOptions for the lifecycle queue
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

from rally.constants import DEFAULT_GRACE_PERIOD, DEFAULT_POLL_INTERVAL
from rally.engine.state_machine import CompletionPolicy

if TYPE_CHECKING:
    from rally.services.job_queue import JobOptions


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RallyConfig:
    """Immutable configuration loaded from ``config.yaml``.

    Every key is optional; the defaults match the production queue setup
    (3 attempts, 2 s exponential backoff, hourly re-evaluation).
    """

    # Lifecycle
    poll_interval_seconds: int = int(DEFAULT_POLL_INTERVAL.total_seconds())
    grace_period_minutes: int = int(DEFAULT_GRACE_PERIOD.total_seconds() // 60)
    archive_after_days: int | None = None  # None → never auto-archive
    completion_policy: CompletionPolicy = CompletionPolicy.ANY_CONTRIBUTION

    # Job queue
    job_max_attempts: int = 3
    job_backoff_base_seconds: float = 2.0
    job_timeout_seconds: float = 30.0
    retain_completed_jobs: int = 100
    retain_failed_jobs: int = 500

    # Worker process
    worker_concurrency: int = 4
    worker_poll_seconds: float = 5.0
    reconcile_interval_seconds: int = 86400

    # Groups allowed to own challenges (empty → any group)
    eligible_groups: tuple[str, ...] = ()

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(seconds=self.poll_interval_seconds)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(minutes=self.grace_period_minutes)

    @property
    def archive_after(self) -> timedelta | None:
        if self.archive_after_days is None:
            return None
        return timedelta(days=self.archive_after_days)

    def job_options(self) -> JobOptions:
        """Default :class:`JobOptions` for lifecycle jobs."""
        from rally.services.job_queue import Backoff, JobOptions, RetentionCounts

        return JobOptions(
            max_attempts=self.job_max_attempts,
            backoff=Backoff(base_delay=timedelta(seconds=self.job_backoff_base_seconds)),
            retention=RetentionCounts(
                completed=self.retain_completed_jobs,
                failed=self.retain_failed_jobs,
            ),
            timeout=timedelta(seconds=self.job_timeout_seconds),
        )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
_POSITIVE_KEYS = (
    "poll_interval_seconds",
    "job_max_attempts",
    "job_backoff_base_seconds",
    "job_timeout_seconds",
    "worker_concurrency",
    "worker_poll_seconds",
    "reconcile_interval_seconds",
)
_NON_NEGATIVE_KEYS = (
    "grace_period_minutes",
    "retain_completed_jobs",
    "retain_failed_jobs",
)


def _validate(cfg: RallyConfig) -> RallyConfig:
    for key in _POSITIVE_KEYS:
        if getattr(cfg, key) <= 0:
            raise ValueError(f"{key} must be > 0 (got {getattr(cfg, key)!r})")
    for key in _NON_NEGATIVE_KEYS:
        if getattr(cfg, key) < 0:
            raise ValueError(f"{key} must be >= 0 (got {getattr(cfg, key)!r})")
    if cfg.archive_after_days is not None and cfg.archive_after_days < 0:
        raise ValueError("archive_after_days must be >= 0 or null")
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def config_from_dict(raw: dict | None) -> RallyConfig:
    """Build a :class:`RallyConfig` from an already-parsed mapping.

    Unknown keys are ignored so one YAML file can be shared with other
    tooling.

    Raises
    ------
    ValueError
        If a value is out of range or ``completion_policy`` is unknown.
    """
    raw = raw or {}
    defaults = RallyConfig()

    policy_raw = raw.get("completion_policy", defaults.completion_policy.value)
    try:
        policy = CompletionPolicy(str(policy_raw))
    except ValueError:
        allowed = ", ".join(p.value for p in CompletionPolicy)
        raise ValueError(
            f"Unknown completion_policy {policy_raw!r} (expected one of: {allowed})"
        ) from None

    archive_days = raw.get("archive_after_days")

    return _validate(RallyConfig(
        poll_interval_seconds=int(raw.get("poll_interval_seconds", defaults.poll_interval_seconds)),
        grace_period_minutes=int(raw.get("grace_period_minutes", defaults.grace_period_minutes)),
        archive_after_days=int(archive_days) if archive_days is not None else None,
        completion_policy=policy,
        job_max_attempts=int(raw.get("job_max_attempts", defaults.job_max_attempts)),
        job_backoff_base_seconds=float(
            raw.get("job_backoff_base_seconds", defaults.job_backoff_base_seconds)
        ),
        job_timeout_seconds=float(raw.get("job_timeout_seconds", defaults.job_timeout_seconds)),
        retain_completed_jobs=int(raw.get("retain_completed_jobs", defaults.retain_completed_jobs)),
        retain_failed_jobs=int(raw.get("retain_failed_jobs", defaults.retain_failed_jobs)),
        worker_concurrency=int(raw.get("worker_concurrency", defaults.worker_concurrency)),
        worker_poll_seconds=float(raw.get("worker_poll_seconds", defaults.worker_poll_seconds)),
        reconcile_interval_seconds=int(
            raw.get("reconcile_interval_seconds", defaults.reconcile_interval_seconds)
        ),
        eligible_groups=tuple(str(g) for g in (raw.get("eligible_groups") or ())),
    ))


def load_config(path: str | Path = "config.yaml") -> RallyConfig:
    """Read *path* and return a :class:`RallyConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a value fails validation.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)

    if raw is not None and not isinstance(raw, dict):
        raise ValueError(f"{config_path} must contain a YAML mapping")

    return config_from_dict(raw)
