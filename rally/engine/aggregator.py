"""
rally.engine.aggregator — Contribution Aggregation & Leaderboard
=================================================================

Pure calculation.  Turns the append-only contribution log for one
challenge into per-participant totals, group totals and a ranked
leaderboard.

The snapshot is always recomputed from the full log — there is no running
counter to drift out of sync — and the result depends only on the inputs,
never on their order:

    1. Drop contributions recorded after ``as_of`` and participants who had
       not joined (or had already withdrawn) by then.
    2. Walk each participant's contributions in ``(recorded_at, id)`` order,
       keeping a running total.
    3. Rank by total (desc), then by when the running total first reached
       its final value (earlier wins), then by join time, then by id.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from rally.constants import ensure_utc

if TYPE_CHECKING:
    from rally.database.models import Contribution, Participant

__all__ = [
    "ContributionFact",
    "LeaderboardEntry",
    "LeaderboardSnapshot",
    "ParticipantFact",
    "compute_leaderboard",
]


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ParticipantFact:
    """What the aggregator needs to know about an enrolment."""

    id: int
    user_id: str
    joined_at: datetime
    withdrawn_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Participant) -> ParticipantFact:
        return cls(
            id=row.id,
            user_id=row.user_id,
            joined_at=ensure_utc(row.joined_at),
            withdrawn_at=ensure_utc(row.withdrawn_at) if row.withdrawn_at else None,
        )

    def enrolled_at(self, as_of: datetime) -> bool:
        if self.joined_at > as_of:
            return False
        return self.withdrawn_at is None or self.withdrawn_at > as_of


@dataclass(frozen=True, slots=True)
class ContributionFact:
    """One contribution event."""

    id: int
    participant_id: int
    quantity: int
    recorded_at: datetime

    @classmethod
    def from_row(cls, row: Contribution) -> ContributionFact:
        return cls(
            id=row.id,
            participant_id=row.participant_id,
            quantity=row.quantity,
            recorded_at=ensure_utc(row.recorded_at),
        )


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    """One ranked row."""

    rank: int
    participant_id: int
    user_id: str
    total: int
    contribution_count: int
    reached_at: datetime | None  # when the running total first hit ``total``
    joined_at: datetime
    last_contribution_at: datetime | None

    def to_dict(self) -> dict:
        return {
            "rank": self.rank,
            "participant_id": self.participant_id,
            "user_id": self.user_id,
            "total": self.total,
            "contribution_count": self.contribution_count,
            "reached_at": self.reached_at.isoformat() if self.reached_at else None,
            "joined_at": self.joined_at.isoformat(),
            "last_contribution_at": (
                self.last_contribution_at.isoformat() if self.last_contribution_at else None
            ),
        }


@dataclass(frozen=True, slots=True)
class LeaderboardSnapshot:
    """Standings for one challenge as of a specific instant."""

    challenge_id: int
    as_of: datetime
    entries: tuple[LeaderboardEntry, ...] = field(default_factory=tuple)
    total_quantity: int = 0
    contribution_count: int = 0
    participant_count: int = 0
    active_participants: int = 0
    goal_quantity: int | None = None
    goal_met: bool = False
    progress_percentage: float | None = None
    average_per_day: float = 0.0
    estimated_completion_at: datetime | None = None

    def top(self, limit: int | None) -> tuple[LeaderboardEntry, ...]:
        if limit is None:
            return self.entries
        return self.entries[:limit]

    def entry_for(self, user_id: str) -> LeaderboardEntry | None:
        for entry in self.entries:
            if entry.user_id == user_id:
                return entry
        return None

    def to_dict(self, limit: int | None = None) -> dict:
        return {
            "challenge_id": self.challenge_id,
            "as_of": self.as_of.isoformat(),
            "entries": [e.to_dict() for e in self.top(limit)],
            "total_quantity": self.total_quantity,
            "contribution_count": self.contribution_count,
            "participant_count": self.participant_count,
            "active_participants": self.active_participants,
            "goal_quantity": self.goal_quantity,
            "goal_met": self.goal_met,
            "progress_percentage": self.progress_percentage,
            "average_per_day": self.average_per_day,
            "estimated_completion_at": (
                self.estimated_completion_at.isoformat()
                if self.estimated_completion_at else None
            ),
        }


# ---------------------------------------------------------------------------
# Computation
# ---------------------------------------------------------------------------
def _rank_key(entry: LeaderboardEntry) -> tuple:
    # Participants with no contributions have no reached_at; they sort
    # after anyone with the same total who does.
    reached = (0, entry.reached_at) if entry.reached_at is not None else (1, entry.joined_at)
    return (-entry.total, reached, entry.joined_at, entry.participant_id)


def compute_leaderboard(
    challenge_id: int,
    participants: Iterable[ParticipantFact],
    contributions: Iterable[ContributionFact],
    *,
    as_of: datetime,
    start_at: datetime | None = None,
    goal_quantity: int | None = None,
) -> LeaderboardSnapshot:
    """Rank *participants* by their contributions up to *as_of*.

    This is a PURE function — the same facts (in any order) always yield an
    identical snapshot.

    Parameters
    ----------
    challenge_id : challenge the snapshot belongs to
    participants : every enrolment row, withdrawn ones included
    contributions : the full contribution log
    as_of : cut-off instant (inclusive)
    start_at : challenge start, used for ``average_per_day``
    goal_quantity : per-participant goal; ``goal_met`` is True once any
        ranked participant reaches it

    ``estimated_completion_at`` projects when the group total reaches
    *goal_quantity* at ``average_per_day``.  None once the goal is met,
    without a goal, or with no progress yet.
    """
    as_of = ensure_utc(as_of)

    # 1. Cut-off
    visible = sorted(
        (c for c in contributions if ensure_utc(c.recorded_at) <= as_of),
        key=lambda c: (ensure_utc(c.recorded_at), c.id),
    )
    ranked_participants = {
        p.id: p for p in participants if p.enrolled_at(as_of)
    }

    # 2. Running totals per participant
    by_participant: dict[int, list[ContributionFact]] = defaultdict(list)
    for contribution in visible:
        by_participant[contribution.participant_id].append(contribution)

    entries: list[LeaderboardEntry] = []
    for pid, participant in ranked_participants.items():
        log = by_participant.get(pid, [])
        total = sum(c.quantity for c in log)

        reached_at: datetime | None = None
        running = 0
        for contribution in log:
            running += contribution.quantity
            if running == total:
                reached_at = ensure_utc(contribution.recorded_at)
                break

        entries.append(LeaderboardEntry(
            rank=0,
            participant_id=pid,
            user_id=participant.user_id,
            total=total,
            contribution_count=len(log),
            reached_at=reached_at,
            joined_at=participant.joined_at,
            last_contribution_at=ensure_utc(log[-1].recorded_at) if log else None,
        ))

    # 3. Rank
    entries.sort(key=_rank_key)
    ranked = tuple(
        LeaderboardEntry(
            rank=position,
            participant_id=e.participant_id,
            user_id=e.user_id,
            total=e.total,
            contribution_count=e.contribution_count,
            reached_at=e.reached_at,
            joined_at=e.joined_at,
            last_contribution_at=e.last_contribution_at,
        )
        for position, e in enumerate(entries, start=1)
    )

    # Group totals include withdrawn participants' contributions.
    total_quantity = sum(c.quantity for c in visible)
    goal_met = goal_quantity is not None and any(e.total >= goal_quantity for e in ranked)

    progress: float | None = None
    if goal_quantity:
        progress = round(min(total_quantity / goal_quantity * 100, 100.0), 2)

    average = 0.0
    if start_at is not None:
        days = max((as_of - ensure_utc(start_at)) / timedelta(days=1), 1.0)
        average = round(total_quantity / days, 4)

    # Straight-line projection of the group total at the current pace.
    estimate: datetime | None = None
    if goal_quantity and not goal_met and average > 0:
        remaining = goal_quantity - total_quantity
        if remaining > 0:
            estimate = as_of + timedelta(days=remaining / average)

    return LeaderboardSnapshot(
        challenge_id=challenge_id,
        as_of=as_of,
        entries=ranked,
        total_quantity=total_quantity,
        contribution_count=len(visible),
        participant_count=len(ranked),
        active_participants=sum(1 for e in ranked if e.contribution_count > 0),
        goal_quantity=goal_quantity,
        goal_met=goal_met,
        progress_percentage=progress,
        average_per_day=average,
        estimated_completion_at=estimate,
    )
