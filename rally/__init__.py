"""
Rally — Group Challenge Automation Engine
==========================================
Runs time-boxed group challenges (reading plans, scripture memorization,
service hours, ...) from publication to completion without anyone having to
poll: a durable job queue re-evaluates every live challenge, a pure state
machine decides when it moves on, and a replayable aggregator ranks the
participants.

Package layout::

    rally/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Shared defaults + UTC helpers
    ├── errors.py          # Error taxonomy (retryable vs. permanent)
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # ORM models (challenges, participants, jobs…)
    ├── engine/
    │   ├── state_machine.py  # Lifecycle transitions (pure)
    │   └── aggregator.py     # Leaderboard computation (pure)
    ├── services/
    │   ├── repository.py         # Optimistic-concurrency persistence
    │   ├── job_queue.py          # Queue contract + in-memory queue
    │   ├── job_store.py          # Durable SQL-backed queue
    │   ├── scheduler.py          # Lifecycle jobs (enqueue + handle)
    │   ├── worker.py             # Async worker loop with retries
    │   ├── reconciliation_service.py  # Restart-safe schedule sweep
    │   ├── groups.py             # Group eligibility collaborator
    │   └── challenge_service.py  # Orchestration, sole writer
    ├── worker/
    │   └── __main__.py    # ``python -m rally.worker``
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Dependency wiring + admin JWT guard
        └── routes/        # Challenge + admin REST endpoints
"""

__version__ = "0.1.0"
