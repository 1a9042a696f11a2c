"""
rally.services.reconciliation_service — Schedule Reconciliation
================================================================

Periodic sweep that makes sure every challenge which still needs a
lifecycle check has one queued.

How it works:
    1. List challenges in SCHEDULED, ACTIVE, COMPLETED or EXPIRED.
    2. Work out when each should next be evaluated (terminal ones only
       when TTL archival is configured).
    3. If no WAITING job exists for the challenge, enqueue one.

Covers lost enqueues after a publish that committed while the queue was
down, and jobs that were pruned or exhausted their retries.
"""

from __future__ import annotations

import logging
from datetime import datetime

from rally.constants import ensure_utc
from rally.engine.state_machine import ChallengeWindow, next_check_at
from rally.services.challenge_service import ChallengeService

logger = logging.getLogger(__name__)


def reconcile_schedules(service: ChallengeService, now: datetime | None = None) -> dict:
    """Enqueue missing lifecycle jobs.

    Returns ``{"checked": N, "enqueued": M, "challenge_ids": [...]}``.
    """
    now = ensure_utc(now) if now is not None else service.now()
    config = service.config
    enqueued: list[int] = []
    checked = 0

    for challenge in service.repository.challenges_to_reconcile():
        window = ChallengeWindow.from_challenge(challenge, config.archive_after)
        run_at = next_check_at(challenge.status, window, now, config.poll_interval)
        if run_at is None:
            continue
        checked += 1
        if service.scheduler.pending(challenge.id) is not None:
            continue
        service.scheduler.schedule_advance(challenge.id, run_at)
        enqueued.append(challenge.id)

    if enqueued:
        logger.warning(
            "Reconciliation re-queued %d challenge(s) without a lifecycle job: %s",
            len(enqueued), enqueued,
        )
    else:
        logger.info("Reconciliation complete: %d challenge(s) checked, none missing", checked)

    return {"checked": checked, "enqueued": len(enqueued), "challenge_ids": enqueued}
