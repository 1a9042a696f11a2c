"""
rally.worker.__main__ — Entry point for ``python -m rally.worker``
==================================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (engine tuning).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Build the durable queue, scheduler and ChallengeService.
5. Register the lifecycle handler on the queue.
6. Run the worker loop (with periodic reconciliation) until SIGINT/SIGTERM.

Run with::

    python -m rally.worker
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from functools import partial

from dotenv import load_dotenv

from rally.config import load_config
from rally.database.engine import create_db_engine, init_db
from rally.services.challenge_service import ChallengeService
from rally.services.job_store import SqlJobQueue
from rally.services.reconciliation_service import reconcile_schedules
from rally.services.repository import ChallengeRepository
from rally.services.scheduler import LifecycleScheduler
from rally.services.worker import LifecycleWorker

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("rally")


async def _serve(worker: LifecycleWorker, service: ChallengeService) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # Windows
            pass

    cfg = service.config
    await worker.run_forever(
        stop,
        poll_seconds=cfg.worker_poll_seconds,
        reconcile=partial(reconcile_schedules, service),
        reconcile_seconds=cfg.reconcile_interval_seconds,
    )


def main() -> None:
    """Bootstrap and run the lifecycle worker."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Engine tuning.
    try:
        cfg = load_config(os.getenv("RALLY_CONFIG", "config.yaml"))
    except (FileNotFoundError, ValueError) as exc:
        logger.critical("Cannot load configuration: %s", exc)
        sys.exit(1)
    logger.info(
        "Config loaded — poll every %ds, %d attempts, policy=%s",
        cfg.poll_interval_seconds, cfg.job_max_attempts, cfg.completion_policy,
    )

    # 3. Database.
    try:
        engine = create_db_engine()
    except RuntimeError as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    init_db(engine)

    # 4. Queue, scheduler, service.
    queue = SqlJobQueue(engine)
    scheduler = LifecycleScheduler(queue, cfg.job_options())
    service = ChallengeService(ChallengeRepository(engine), scheduler, config=cfg)

    # 5. Jobs on this queue go to the service.
    scheduler.attach(service)

    # 6. Run (blocks until Ctrl+C or SIGTERM).
    worker = LifecycleWorker(queue, concurrency=cfg.worker_concurrency)
    logger.info("Starting Rally lifecycle worker (concurrency=%d)…", cfg.worker_concurrency)
    try:
        asyncio.run(_serve(worker, service))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
