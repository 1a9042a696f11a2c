"""
rally.engine.state_machine — Challenge Lifecycle
=================================================

Pure transition logic.  No DB I/O, no clock reads: everything it needs is
passed in as ``(status, now, window, summary)``, so the same inputs always
give the same answer.

Lifecycle::

    DRAFT ──publish──▶ SCHEDULED ──start──▶ ACTIVE ──end──▶ COMPLETED ─┐
      │                                        │                       ├─▶ ARCHIVED
      └──────────── cancel ──────────▶ ARCHIVED └──end──▶ EXPIRED ─────┘

Terminal states are never left except for the final ``ARCHIVED`` step, and
re-evaluating a terminal challenge is always a no-op.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from rally.database.models import ChallengeStatus
from rally.errors import StateViolation

if TYPE_CHECKING:
    from rally.database.models import Challenge
    from rally.engine.aggregator import LeaderboardSnapshot

logger = logging.getLogger(__name__)

__all__ = [
    "AggregateSummary",
    "ChallengeWindow",
    "CompletionPolicy",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "Transition",
    "can_transition",
    "evaluate",
    "needs_aggregate",
    "next_check_at",
    "plan",
    "validate_transition",
]


class CompletionPolicy(enum.StrEnum):
    """How an ended challenge *with contributions* is judged.

    ``any_contribution`` — any ended challenge with ≥1 contribution completes.
    ``goal_required``    — a challenge that defines a goal only completes if
                           some participant reached it; otherwise it expires.
    """
    ANY_CONTRIBUTION = "any_contribution"
    GOAL_REQUIRED = "goal_required"


# ---------------------------------------------------------------------------
# Transition table — every status must be a key
# ---------------------------------------------------------------------------
TRANSITIONS: dict[ChallengeStatus, frozenset[ChallengeStatus]] = {
    ChallengeStatus.DRAFT: frozenset({ChallengeStatus.SCHEDULED, ChallengeStatus.ARCHIVED}),
    ChallengeStatus.SCHEDULED: frozenset({ChallengeStatus.ACTIVE}),
    ChallengeStatus.ACTIVE: frozenset({ChallengeStatus.COMPLETED, ChallengeStatus.EXPIRED}),
    ChallengeStatus.COMPLETED: frozenset({ChallengeStatus.ARCHIVED}),
    ChallengeStatus.EXPIRED: frozenset({ChallengeStatus.ARCHIVED}),
    ChallengeStatus.ARCHIVED: frozenset(),
}

_missing = set(ChallengeStatus) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"Transition table is missing states: {sorted(_missing)}")

TERMINAL_STATES: frozenset[ChallengeStatus] = frozenset({
    ChallengeStatus.COMPLETED,
    ChallengeStatus.EXPIRED,
    ChallengeStatus.ARCHIVED,
})

# Statuses the scheduler keeps re-evaluating.
LIVE_STATES: frozenset[ChallengeStatus] = frozenset({
    ChallengeStatus.SCHEDULED,
    ChallengeStatus.ACTIVE,
})


def can_transition(current: ChallengeStatus, target: ChallengeStatus) -> bool:
    """Check whether ``current → target`` is in the table."""
    return target in TRANSITIONS[ChallengeStatus(current)]


def validate_transition(current: ChallengeStatus, target: ChallengeStatus) -> None:
    """Raise :class:`StateViolation` unless ``current → target`` is allowed."""
    if not can_transition(current, target):
        allowed = sorted(s.value for s in TRANSITIONS[ChallengeStatus(current)])
        raise StateViolation(
            str(current),
            str(target),
            f"Cannot transition challenge from '{current}' to '{target}'. "
            f"Allowed from '{current}': {allowed}",
        )


# ---------------------------------------------------------------------------
# Inputs / outputs
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ChallengeWindow:
    """The time facts the machine reasons about."""

    start_at: datetime
    end_at: datetime
    has_goal: bool = False
    ended_at: datetime | None = None
    archive_after: timedelta | None = None

    @classmethod
    def from_challenge(
        cls, challenge: Challenge, archive_after: timedelta | None = None
    ) -> ChallengeWindow:
        return cls(
            start_at=challenge.start_at,
            end_at=challenge.end_at,
            has_goal=challenge.goal_quantity is not None,
            ended_at=challenge.ended_at,
            archive_after=archive_after,
        )


@dataclass(frozen=True, slots=True)
class AggregateSummary:
    """The two aggregate facts the end-of-challenge rule needs."""

    contribution_count: int
    goal_met: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: LeaderboardSnapshot) -> AggregateSummary:
        return cls(
            contribution_count=snapshot.contribution_count,
            goal_met=snapshot.goal_met,
        )


@dataclass(frozen=True, slots=True)
class Transition:
    """One validated step ``from_status → to_status``."""

    from_status: ChallengeStatus
    to_status: ChallengeStatus
    reason: str
    at: datetime


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------
def needs_aggregate(status: ChallengeStatus, now: datetime, window: ChallengeWindow) -> bool:
    """True when evaluating *status* at *now* will reach the end-of-challenge rule."""
    return status in LIVE_STATES and now >= window.end_at


def _end_outcome(
    summary: AggregateSummary,
    window: ChallengeWindow,
    policy: CompletionPolicy,
) -> tuple[ChallengeStatus, str]:
    if summary.contribution_count == 0:
        return ChallengeStatus.EXPIRED, "ended with no contributions"
    if window.has_goal and summary.goal_met:
        return ChallengeStatus.COMPLETED, "goal reached"
    if window.has_goal and policy == CompletionPolicy.GOAL_REQUIRED:
        return ChallengeStatus.EXPIRED, "ended without reaching the goal"
    return ChallengeStatus.COMPLETED, "ended with contributions"


def evaluate(
    status: ChallengeStatus,
    now: datetime,
    window: ChallengeWindow,
    summary: AggregateSummary | None = None,
    policy: CompletionPolicy = CompletionPolicy.ANY_CONTRIBUTION,
) -> Transition | None:
    """Return the single transition due at *now*, or ``None``.

    ``DRAFT`` never moves on its own (publishing and cancelling are explicit
    service calls) and ``ARCHIVED`` never moves at all.

    Raises
    ------
    ValueError
        If the end-of-challenge rule is reached without a *summary*.
    """
    status = ChallengeStatus(status)
    target: ChallengeStatus | None = None
    reason = ""

    if status == ChallengeStatus.SCHEDULED and now >= window.start_at:
        target, reason = ChallengeStatus.ACTIVE, "start time reached"
    elif status == ChallengeStatus.ACTIVE and now >= window.end_at:
        if summary is None:
            raise ValueError("An aggregate summary is required once end_at has passed")
        target, reason = _end_outcome(summary, window, policy)
    elif (
        status in (ChallengeStatus.COMPLETED, ChallengeStatus.EXPIRED)
        and window.archive_after is not None
        and window.ended_at is not None
        and now >= window.ended_at + window.archive_after
    ):
        target, reason = ChallengeStatus.ARCHIVED, "retention period elapsed"

    if target is None:
        return None

    validate_transition(status, target)
    return Transition(from_status=status, to_status=target, reason=reason, at=now)


def plan(
    status: ChallengeStatus,
    now: datetime,
    window: ChallengeWindow,
    summary: AggregateSummary | None = None,
    policy: CompletionPolicy = CompletionPolicy.ANY_CONTRIBUTION,
) -> list[Transition]:
    """Chain every transition due at *now*.

    A ``SCHEDULED`` challenge first evaluated after its end time walks
    ``SCHEDULED → ACTIVE → COMPLETED|EXPIRED`` in one go, so a stalled
    scheduler catches up in a single commit.
    """
    steps: list[Transition] = []
    current = ChallengeStatus(status)

    while len(steps) < len(TRANSITIONS):
        step = evaluate(current, now, window, summary, policy)
        if step is None:
            break
        steps.append(step)
        current = step.to_status
        if current in (ChallengeStatus.COMPLETED, ChallengeStatus.EXPIRED) and window.ended_at is None:
            window = replace(window, ended_at=now)

    return steps


def next_check_at(
    status: ChallengeStatus,
    window: ChallengeWindow,
    now: datetime,
    poll_interval: timedelta,
) -> datetime | None:
    """When the scheduler should look at this challenge again.

    Live challenges are checked at their next boundary or after
    *poll_interval*, whichever comes first.  Terminal challenges waiting for
    TTL archival are checked exactly once, at the TTL.  Everything else
    needs no further job.
    """
    status = ChallengeStatus(status)

    if status == ChallengeStatus.SCHEDULED:
        boundary = window.start_at
    elif status == ChallengeStatus.ACTIVE:
        boundary = window.end_at
    elif (
        status in (ChallengeStatus.COMPLETED, ChallengeStatus.EXPIRED)
        and window.archive_after is not None
        and window.ended_at is not None
    ):
        return max(window.ended_at + window.archive_after, now)
    else:
        return None

    return min(now + poll_interval, max(boundary, now))
