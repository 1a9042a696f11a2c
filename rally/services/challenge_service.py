"""
rally.services.challenge_service — Challenge Lifecycle & Participation
=======================================================================

The single entry point for everything that changes a challenge: creating
and publishing it, enrolment, contributions, manual archival and the
scheduler-driven ``advance``.  Shared by the HTTP API and the worker.

Flow of a lifecycle tick (``advance``)::

    1. Load the challenge (and remember its version).
    2. If the end-of-challenge rule is reachable, aggregate the log.
    3. Ask the state machine for every transition due *now*.
    4. Save status, audit rows and any auto-enrolments in one conditional write.
    5. Notify listeners, report when to look again.

Steps 1–3 are read-only, so a failed or repeated tick changes nothing.
A concurrent writer makes step 4 raise :class:`ConcurrentModification`,
which the job queue retries with backoff.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from rally.config import RallyConfig
from rally.constants import (
    CHALLENGE_TYPE_PATTERN,
    MAX_NAME_LENGTH,
    MAX_NOTE_LENGTH,
    ensure_utc,
    utcnow,
)
from rally.database.models import (
    Challenge,
    ChallengeStatus,
    ChallengeTransition,
    Contribution,
    Participant,
)
from rally.engine.aggregator import (
    ContributionFact,
    LeaderboardSnapshot,
    ParticipantFact,
    compute_leaderboard,
)
from rally.engine.state_machine import (
    AggregateSummary,
    ChallengeWindow,
    Transition,
    needs_aggregate,
    next_check_at,
    plan,
    validate_transition,
)
from rally.errors import (
    AlreadyEnrolled,
    ChallengeNotActive,
    ChallengeNotJoinable,
    NotEnrolled,
    StateViolation,
    TransientInfrastructureError,
    ValidationError,
)
from rally.services.groups import GroupDirectory, StaticGroupDirectory
from rally.services.repository import ChallengeRepository, transition_row

if TYPE_CHECKING:
    from rally.services.job_queue import JobRecord
    from rally.services.scheduler import LifecycleScheduler

logger = logging.getLogger(__name__)

TransitionListener = Callable[[Challenge, Transition], None]

_JOINABLE = (ChallengeStatus.SCHEDULED, ChallengeStatus.ACTIVE)


# ---------------------------------------------------------------------------
# Inputs / outputs
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class ChallengeDraft:
    """Everything needed to create a challenge."""

    group_id: str
    name: str
    challenge_type: str
    start_at: datetime
    end_at: datetime
    description: str | None = None
    goal_unit: str | None = None
    goal_quantity: int | None = None
    allow_late_joins: bool = True
    auto_enroll: bool = False
    created_by: str | None = None


@dataclass(frozen=True, slots=True)
class AdvanceResult:
    """What one lifecycle tick did."""

    challenge_id: int
    status: ChallengeStatus
    version: int
    transitions: tuple[Transition, ...] = ()
    next_check_at: datetime | None = None

    @property
    def changed(self) -> bool:
        return bool(self.transitions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "challenge_id": self.challenge_id,
            "status": str(self.status),
            "version": self.version,
            "transitions": [
                {"from": str(t.from_status), "to": str(t.to_status), "reason": t.reason}
                for t in self.transitions
            ],
            "next_check_at": self.next_check_at.isoformat() if self.next_check_at else None,
        }


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------
class ChallengeService:
    """Challenge operations on top of a :class:`ChallengeRepository`."""

    def __init__(
        self,
        repository: ChallengeRepository,
        scheduler: LifecycleScheduler,
        *,
        config: RallyConfig | None = None,
        groups: GroupDirectory | None = None,
        clock: Callable[[], datetime] = utcnow,
        listeners: Iterable[TransitionListener] = (),
    ) -> None:
        self.repository = repository
        self.scheduler = scheduler
        self.config = config or RallyConfig()
        self.groups = groups or StaticGroupDirectory(self.config.eligible_groups)
        self._clock = clock
        self._listeners = list(listeners)

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    # -------------------------------------------------------------------
    # Creation & publishing
    # -------------------------------------------------------------------
    def create_challenge(self, draft: ChallengeDraft) -> int:
        """Validate *draft* and store it as a DRAFT challenge.  Returns the id."""
        self._validate_draft(draft)
        challenge = self.repository.insert_challenge(Challenge(
            group_id=draft.group_id,
            name=draft.name.strip(),
            description=draft.description,
            challenge_type=draft.challenge_type,
            start_at=ensure_utc(draft.start_at),
            end_at=ensure_utc(draft.end_at),
            goal_unit=draft.goal_unit,
            goal_quantity=draft.goal_quantity,
            allow_late_joins=draft.allow_late_joins,
            auto_enroll=draft.auto_enroll,
            status=ChallengeStatus.DRAFT,
            version=1,
            created_by=draft.created_by,
        ))
        logger.info(
            "Created challenge %d %r for group %s (%s → %s)",
            challenge.id, challenge.name, challenge.group_id,
            challenge.start_at.isoformat(), challenge.end_at.isoformat(),
        )
        return challenge.id

    def _validate_draft(self, draft: ChallengeDraft) -> None:
        if not draft.group_id:
            raise ValidationError("group_id is required")
        if not self.groups.is_eligible(draft.group_id):
            raise ValidationError(
                f"Group {draft.group_id} may not own challenges", group_id=draft.group_id
            )
        name = (draft.name or "").strip()
        if not name or len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"name must be 1–{MAX_NAME_LENGTH} characters")
        if not CHALLENGE_TYPE_PATTERN.match(draft.challenge_type or ""):
            raise ValidationError(
                f"Invalid challenge_type {draft.challenge_type!r}",
                challenge_type=draft.challenge_type,
            )
        if ensure_utc(draft.start_at) >= ensure_utc(draft.end_at):
            raise ValidationError("start_at must be before end_at")
        if draft.goal_quantity is not None:
            if not _is_int(draft.goal_quantity) or draft.goal_quantity <= 0:
                raise ValidationError("goal_quantity must be a positive integer")
            if not draft.goal_unit:
                raise ValidationError("goal_unit is required when goal_quantity is set")

    def publish(self, challenge_id: int, *, actor: str = "organizer") -> Challenge:
        """DRAFT → SCHEDULED, and queue the first lifecycle check."""
        challenge = self.repository.get_challenge(challenge_id)
        validate_transition(challenge.status, ChallengeStatus.SCHEDULED)

        now = self.now()
        if challenge.end_at <= now:
            raise ValidationError(
                f"Challenge {challenge_id} already ended at {challenge.end_at.isoformat()}",
                challenge_id=challenge_id,
            )
        if not self.groups.is_eligible(challenge.group_id):
            raise ValidationError(
                f"Group {challenge.group_id} may not own challenges",
                group_id=challenge.group_id,
            )

        expected = challenge.version
        step = Transition(
            from_status=challenge.status,
            to_status=ChallengeStatus.SCHEDULED,
            reason="published",
            at=now,
        )
        challenge.status = ChallengeStatus.SCHEDULED
        challenge.published_at = now
        saved = self.repository.save_challenge(
            challenge,
            expected,
            [transition_row(
                challenge_id, step.from_status, step.to_status,
                occurred_at=now, reason=step.reason, actor=actor,
            )],
        )
        logger.info("Challenge %d published; starts %s", challenge_id, saved.start_at.isoformat())

        self._schedule(challenge_id, max(saved.start_at, now))
        self._notify(saved, [step])
        return saved

    # -------------------------------------------------------------------
    # Enrolment
    # -------------------------------------------------------------------
    def join(self, challenge_id: int, user_id: str) -> Participant:
        """Enrol *user_id*.

        Raises
        ------
        ChallengeNotJoinable
            Wrong status, late join not allowed, or user not in the group.
        AlreadyEnrolled
            The user already has an active enrolment.
        ConcurrentModification
            The challenge ended between the checks and the insert.
        """
        challenge = self.repository.get_challenge(challenge_id)
        now = self.now()

        if challenge.status not in (ChallengeStatus.SCHEDULED, ChallengeStatus.ACTIVE):
            raise ChallengeNotJoinable(
                f"Challenge {challenge_id} is {challenge.status}",
                challenge_id=challenge_id, status=str(challenge.status),
            )
        if now >= challenge.end_at:
            raise ChallengeNotJoinable(
                f"Challenge {challenge_id} has ended", challenge_id=challenge_id
            )
        if not challenge.allow_late_joins and now > challenge.start_at:
            raise ChallengeNotJoinable(
                f"Challenge {challenge_id} does not accept late joins",
                challenge_id=challenge_id,
            )
        if not self.groups.is_member(challenge.group_id, user_id):
            raise ChallengeNotJoinable(
                f"User {user_id} is not a member of group {challenge.group_id}",
                challenge_id=challenge_id, user_id=user_id,
            )
        if self.repository.get_active_participant(challenge_id, user_id) is not None:
            raise AlreadyEnrolled(
                f"User {user_id} is already enrolled in challenge {challenge_id}",
                challenge_id=challenge_id, user_id=user_id,
            )

        participant = self.repository.upsert_participant(
            Participant(challenge_id=challenge_id, user_id=user_id, joined_at=now),
            live_statuses=_JOINABLE,
        )
        logger.info("User %s joined challenge %d", user_id, challenge_id)
        return participant

    def withdraw(self, challenge_id: int, user_id: str) -> Participant:
        """End *user_id*'s active enrolment.  Their past contributions stay."""
        challenge = self.repository.get_challenge(challenge_id)
        if challenge.status not in (ChallengeStatus.SCHEDULED, ChallengeStatus.ACTIVE):
            raise ChallengeNotActive(
                f"Challenge {challenge_id} is {challenge.status}",
                challenge_id=challenge_id, status=str(challenge.status),
            )
        participant = self.repository.get_active_participant(challenge_id, user_id)
        if participant is None:
            raise NotEnrolled(
                f"User {user_id} is not enrolled in challenge {challenge_id}",
                challenge_id=challenge_id, user_id=user_id,
            )
        participant.withdrawn_at = self.now()
        saved = self.repository.upsert_participant(participant, live_statuses=_JOINABLE)
        logger.info("User %s withdrew from challenge %d", user_id, challenge_id)
        return saved

    # -------------------------------------------------------------------
    # Contributions
    # -------------------------------------------------------------------
    def record_contribution(
        self,
        challenge_id: int,
        user_id: str,
        quantity: int,
        note: str | None = None,
        *,
        recorded_at: datetime | None = None,
        source_ref: str | None = None,
    ) -> tuple[Contribution, bool]:
        """Append a contribution for an enrolled user of an ACTIVE challenge.

        *recorded_at* defaults to now and may lag behind real time, but must
        fall inside ``[start_at, end_at + grace period]`` and not lie in the
        future.  A repeated *source_ref* returns the original row.

        Returns ``(contribution, was_duplicate)``.  Raises
        :class:`ConcurrentModification` if the challenge ended while the
        contribution was being validated; nothing is stored then.
        """
        if not _is_int(quantity) or quantity < 0:
            raise ValidationError("quantity must be a non-negative integer", quantity=quantity)
        if note is not None and len(note) > MAX_NOTE_LENGTH:
            raise ValidationError(f"note must be at most {MAX_NOTE_LENGTH} characters")

        challenge = self.repository.get_challenge(challenge_id)
        if challenge.status != ChallengeStatus.ACTIVE:
            raise ChallengeNotActive(
                f"Challenge {challenge_id} is {challenge.status}",
                challenge_id=challenge_id, status=str(challenge.status),
            )

        participant = self.repository.get_active_participant(challenge_id, user_id)
        if participant is None:
            raise NotEnrolled(
                f"User {user_id} is not enrolled in challenge {challenge_id}",
                challenge_id=challenge_id, user_id=user_id,
            )

        now = self.now()
        when = ensure_utc(recorded_at) if recorded_at is not None else now
        if when > now:
            raise ValidationError("recorded_at is in the future", recorded_at=when.isoformat())
        if when < challenge.start_at or when > challenge.end_at + self.config.grace_period:
            raise ValidationError(
                "recorded_at is outside the challenge window",
                recorded_at=when.isoformat(),
            )

        contribution, duplicate = self.repository.append_contribution(
            Contribution(
                participant_id=participant.id,
                challenge_id=challenge_id,
                quantity=quantity,
                recorded_at=when,
                note=note,
                source_ref=source_ref,
            ),
            live_statuses=(ChallengeStatus.ACTIVE,),
        )
        if duplicate:
            logger.info(
                "Duplicate contribution %r for challenge %d ignored", source_ref, challenge_id
            )
        else:
            logger.debug(
                "Challenge %d: %s +%d at %s", challenge_id, user_id, quantity, when.isoformat()
            )
        return contribution, duplicate

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    def advance(self, challenge_id: int, now: datetime | None = None) -> AdvanceResult:
        """Apply every transition due at *now*.  Idempotent.

        Raises
        ------
        NotFoundError
            Unknown challenge.
        ConcurrentModification
            Another writer changed the challenge mid-tick.
        """
        now = ensure_utc(now) if now is not None else self.now()
        challenge = self.repository.get_challenge(challenge_id)
        window = ChallengeWindow.from_challenge(challenge, self.config.archive_after)

        snapshot: LeaderboardSnapshot | None = None
        summary: AggregateSummary | None = None
        if needs_aggregate(challenge.status, now, window):
            snapshot = self._snapshot(challenge, now)
            summary = AggregateSummary.from_snapshot(snapshot)

        try:
            steps = plan(challenge.status, now, window, summary, self.config.completion_policy)
        except StateViolation:
            logger.error(
                "Challenge %d: lifecycle table rejected a computed transition from %s",
                challenge_id, challenge.status,
            )
            raise

        if not steps:
            return AdvanceResult(
                challenge_id=challenge_id,
                status=challenge.status,
                version=challenge.version,
                next_check_at=next_check_at(
                    challenge.status, window, now, self.config.poll_interval
                ),
            )

        expected = challenge.version
        enrolments: list[Participant] = []
        for step in steps:
            self._apply(challenge, step, snapshot)
            if step.to_status == ChallengeStatus.ACTIVE and challenge.auto_enroll:
                enrolments = self._auto_enrolments(challenge, step.at)

        saved = self.repository.save_challenge(
            challenge,
            expected,
            [
                transition_row(
                    challenge_id, step.from_status, step.to_status,
                    occurred_at=step.at, reason=step.reason,
                )
                for step in steps
            ],
            participants=enrolments,
        )
        if enrolments:
            logger.info(
                "Challenge %d: auto-enrolled %d member(s) of group %s",
                challenge_id, len(enrolments), challenge.group_id,
            )
        logger.info(
            "Challenge %d: %s",
            challenge_id,
            " → ".join([str(steps[0].from_status)] + [str(s.to_status) for s in steps]),
        )
        self._notify(saved, steps)

        window = ChallengeWindow.from_challenge(saved, self.config.archive_after)
        return AdvanceResult(
            challenge_id=challenge_id,
            status=saved.status,
            version=saved.version,
            transitions=tuple(steps),
            next_check_at=next_check_at(saved.status, window, now, self.config.poll_interval),
        )

    @staticmethod
    def _apply(
        challenge: Challenge, step: Transition, snapshot: LeaderboardSnapshot | None
    ) -> None:
        challenge.status = step.to_status
        if step.to_status == ChallengeStatus.ACTIVE:
            challenge.activated_at = step.at
        elif step.to_status in (ChallengeStatus.COMPLETED, ChallengeStatus.EXPIRED):
            challenge.ended_at = step.at
            if snapshot is not None:
                challenge.final_total = snapshot.total_quantity
                challenge.final_leaderboard = snapshot.to_dict()
        elif step.to_status == ChallengeStatus.ARCHIVED:
            challenge.archived_at = step.at

    def archive(self, challenge_id: int, *, actor: str, reason: str = "") -> Challenge:
        """Manually archive a DRAFT (cancel) or finished challenge."""
        challenge = self.repository.get_challenge(challenge_id)
        validate_transition(challenge.status, ChallengeStatus.ARCHIVED)

        now = self.now()
        step = Transition(
            from_status=challenge.status,
            to_status=ChallengeStatus.ARCHIVED,
            reason=reason or "archived manually",
            at=now,
        )
        expected = challenge.version
        self._apply(challenge, step, None)
        saved = self.repository.save_challenge(
            challenge,
            expected,
            [transition_row(
                challenge_id, step.from_status, step.to_status,
                occurred_at=now, reason=step.reason, actor=actor,
            )],
        )
        logger.info("Challenge %d archived by %s", challenge_id, actor)
        self._notify(saved, [step])
        return saved

    def handle_advance_job(self, job: JobRecord) -> dict[str, Any]:
        """Queue handler: advance the challenge, then book its next check."""
        try:
            challenge_id = int(job.payload["challenge_id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(
                f"Malformed lifecycle job payload: {job.payload!r}"
            ) from exc

        result = self.advance(challenge_id)
        if result.next_check_at is not None:
            self.scheduler.schedule_advance(challenge_id, result.next_check_at)
        return result.to_dict()

    def reschedule(self, challenge_id: int) -> datetime | None:
        """Queue the next lifecycle check for *challenge_id*, if it needs one."""
        challenge = self.repository.get_challenge(challenge_id)
        now = self.now()
        window = ChallengeWindow.from_challenge(challenge, self.config.archive_after)
        run_at = next_check_at(challenge.status, window, now, self.config.poll_interval)
        if run_at is not None:
            self.scheduler.schedule_advance(challenge_id, run_at)
        return run_at

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def get_challenge(self, challenge_id: int) -> Challenge:
        return self.repository.get_challenge(challenge_id)

    def list_challenges(
        self, group_id: str, status: ChallengeStatus | None = None
    ) -> list[Challenge]:
        statuses = [status] if status is not None else None
        return self.repository.list_challenges(group_id=group_id, statuses=statuses)

    def list_challenges_for_user(
        self, user_id: str, status: ChallengeStatus | None = None
    ) -> list[Challenge]:
        statuses = [status] if status is not None else None
        return self.repository.list_challenges_for_user(user_id, statuses)

    def list_participants(self, challenge_id: int) -> list[Participant]:
        self.repository.get_challenge(challenge_id)
        return self.repository.list_participants(challenge_id)

    def list_transitions(self, challenge_id: int) -> list[ChallengeTransition]:
        self.repository.get_challenge(challenge_id)
        return self.repository.list_transitions(challenge_id)

    def get_leaderboard(
        self,
        challenge_id: int,
        as_of: datetime | None = None,
        limit: int | None = None,
    ) -> LeaderboardSnapshot:
        """Standings as of *as_of* (default now), optionally truncated to *limit*."""
        if limit is not None and limit < 1:
            raise ValidationError("limit must be >= 1")
        challenge = self.repository.get_challenge(challenge_id)
        as_of = ensure_utc(as_of) if as_of is not None else self.now()
        snapshot = self._snapshot(challenge, as_of)
        if limit is None:
            return snapshot
        return LeaderboardSnapshot(
            challenge_id=snapshot.challenge_id,
            as_of=snapshot.as_of,
            entries=snapshot.top(limit),
            total_quantity=snapshot.total_quantity,
            contribution_count=snapshot.contribution_count,
            participant_count=snapshot.participant_count,
            active_participants=snapshot.active_participants,
            goal_quantity=snapshot.goal_quantity,
            goal_met=snapshot.goal_met,
            progress_percentage=snapshot.progress_percentage,
            average_per_day=snapshot.average_per_day,
            estimated_completion_at=snapshot.estimated_completion_at,
        )

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    def _snapshot(self, challenge: Challenge, as_of: datetime) -> LeaderboardSnapshot:
        participants = self.repository.list_participants(challenge.id)
        contributions = self.repository.list_contributions(challenge.id)
        return compute_leaderboard(
            challenge.id,
            [ParticipantFact.from_row(p) for p in participants],
            [ContributionFact.from_row(c) for c in contributions],
            as_of=as_of,
            start_at=challenge.start_at,
            goal_quantity=challenge.goal_quantity,
        )

    def _auto_enrolments(self, challenge: Challenge, joined_at: datetime) -> list[Participant]:
        """Group members who have never had an enrolment in *challenge*.

        Anyone who joined (or joined and withdrew) before activation keeps
        their own row.
        """
        known = {p.user_id for p in self.repository.list_participants(challenge.id)}
        return [
            Participant(challenge_id=challenge.id, user_id=user_id, joined_at=joined_at)
            for user_id in self.groups.members(challenge.group_id)
            if user_id not in known
        ]

    def _schedule(self, challenge_id: int, run_at: datetime) -> None:
        try:
            self.scheduler.schedule_advance(challenge_id, run_at)
        except TransientInfrastructureError:
            # The reconciliation sweep re-enqueues live challenges without a job.
            logger.warning(
                "Challenge %d: could not enqueue lifecycle check; left to reconciliation",
                challenge_id,
            )

    def _notify(self, challenge: Challenge, steps: list[Transition]) -> None:
        for step in steps:
            for listener in self._listeners:
                try:
                    listener(challenge, step)
                except Exception:
                    logger.exception(
                        "Transition listener failed for challenge %d (%s → %s)",
                        challenge.id, step.from_status, step.to_status,
                    )
