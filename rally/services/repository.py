"""
rally.services.repository — Challenge Repository
=================================================

Durable storage for challenges, participants, contributions and the
transition audit trail.  Each public method opens its own short session and
returns **detached** ORM rows, so callers can read them freely but must come
back through the repository to write.

Concurrency rules:
    * ``save_challenge`` is a conditional ``UPDATE … WHERE version = :expected``.
      Zero rows updated → :class:`ConcurrentModification`.
    * Participants and contributions are append-mostly.  Writes that depend
      on the challenge still being open pass ``live_statuses``; the insert's
      transaction then bumps the challenge version with
      ``UPDATE … WHERE status IN (:live)``.  Zero rows → the challenge moved
      on since the caller looked, :class:`ConcurrentModification`.  The bump
      also makes a lifecycle tick that aggregated before the write fail its
      own conditional save and retry.
    * The partial unique index on active enrolment → :class:`AlreadyEnrolled`.
    * Driver-level failures (lost connection, pool timeout) surface as
      :class:`TransientInfrastructureError` so the scheduler retries them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import Engine, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from rally.database.engine import get_session
from rally.database.models import (
    Challenge,
    ChallengeStatus,
    ChallengeTransition,
    Contribution,
    Participant,
)
from rally.errors import (
    AlreadyEnrolled,
    ConcurrentModification,
    NotFoundError,
    TransientInfrastructureError,
)

logger = logging.getLogger(__name__)

# Columns ``save_challenge`` is allowed to write.  Identity, group and the
# time window are fixed once the row exists.
_MUTABLE_COLUMNS = (
    "name",
    "description",
    "goal_unit",
    "goal_quantity",
    "allow_late_joins",
    "status",
    "published_at",
    "activated_at",
    "ended_at",
    "archived_at",
    "final_total",
    "final_leaderboard",
)


@contextmanager
def infra_errors() -> Iterator[None]:
    """Translate driver/pool failures into :class:`TransientInfrastructureError`."""
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        logger.warning("Store unavailable: %s", exc)
        raise TransientInfrastructureError(f"Store unavailable: {exc}") from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            logger.warning("Store connection lost: %s", exc)
            raise TransientInfrastructureError("Store connection lost") from exc
        raise


def _claim_live_challenge(
    session: Session, challenge_id: int, statuses: Iterable[ChallengeStatus]
) -> None:
    """Bump the challenge version inside *session* if it is still in *statuses*.

    The UPDATE takes the row lock, so a concurrent status change either
    commits first (and this matches nothing) or waits for our commit.
    """
    live = list(statuses)
    result = session.execute(
        update(Challenge)
        .where(Challenge.id == challenge_id, Challenge.status.in_(live))
        .values(version=Challenge.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentModification(
            f"Challenge {challenge_id} is no longer "
            f"{' or '.join(str(s) for s in live)}",
            challenge_id=challenge_id,
        )


class ChallengeRepository:
    """SQLAlchemy-backed persistence for the challenge engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # -------------------------------------------------------------------
    # Challenges
    # -------------------------------------------------------------------
    def insert_challenge(self, challenge: Challenge) -> Challenge:
        """Persist a brand-new challenge row and return it (detached)."""
        with infra_errors(), get_session(self.engine) as session:
            session.add(challenge)
            session.flush()
            session.refresh(challenge)
            session.expunge(challenge)
        return challenge

    def get_challenge(self, challenge_id: int) -> Challenge:
        """Fetch a challenge or raise :class:`NotFoundError`."""
        with infra_errors(), get_session(self.engine) as session:
            challenge = session.get(Challenge, challenge_id)
            if challenge is None:
                raise NotFoundError(
                    f"Challenge {challenge_id} not found", challenge_id=challenge_id
                )
            session.expunge(challenge)
        return challenge

    def list_challenges(
        self,
        *,
        group_id: str | None = None,
        statuses: Iterable[ChallengeStatus] | None = None,
    ) -> list[Challenge]:
        """Challenges filtered by owning group and/or status, newest first."""
        stmt = select(Challenge)
        if group_id is not None:
            stmt = stmt.where(Challenge.group_id == group_id)
        if statuses is not None:
            stmt = stmt.where(Challenge.status.in_(list(statuses)))
        stmt = stmt.order_by(Challenge.created_at.desc(), Challenge.id.desc())

        with infra_errors(), get_session(self.engine) as session:
            rows = list(session.scalars(stmt).all())
            session.expunge_all()
        return rows

    def list_challenges_for_user(
        self, user_id: str, statuses: Iterable[ChallengeStatus] | None = None
    ) -> list[Challenge]:
        """Challenges the user is actively enrolled in, soonest end first."""
        stmt = (
            select(Challenge)
            .join(Participant, Participant.challenge_id == Challenge.id)
            .where(Participant.user_id == user_id, Participant.withdrawn_at.is_(None))
        )
        if statuses is not None:
            stmt = stmt.where(Challenge.status.in_(list(statuses)))
        stmt = stmt.order_by(Challenge.end_at.asc(), Challenge.id.asc())

        with infra_errors(), get_session(self.engine) as session:
            rows = list(session.scalars(stmt).all())
            session.expunge_all()
        return rows

    def save_challenge(
        self,
        challenge: Challenge,
        expected_version: int,
        transitions: Sequence[ChallengeTransition] = (),
        participants: Sequence[Participant] = (),
    ) -> Challenge:
        """Write *challenge* if the stored version is still *expected_version*.

        The version bump, any *transitions* and any new *participants*
        (auto-enrolment on activation) are committed in the same
        transaction, so a status change and its side rows land together or
        not at all.

        Raises
        ------
        ConcurrentModification
            If the row changed since it was read, or one of the transitions
            or enrolments was already recorded by a concurrent writer.
        """
        values = {col: getattr(challenge, col) for col in _MUTABLE_COLUMNS}
        values["version"] = expected_version + 1

        with infra_errors(), get_session(self.engine) as session:
            result = session.execute(
                update(Challenge)
                .where(Challenge.id == challenge.id, Challenge.version == expected_version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrentModification(
                    f"Challenge {challenge.id} changed concurrently "
                    f"(expected version {expected_version})",
                    challenge_id=challenge.id,
                    expected_version=expected_version,
                )

            session.add_all(transitions)
            session.add_all(participants)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConcurrentModification(
                    f"Transition or enrolment for challenge {challenge.id} already recorded",
                    challenge_id=challenge.id,
                ) from exc

            saved = session.get(Challenge, challenge.id, populate_existing=True)
            session.expunge_all()

        logger.debug("Saved %r", saved)
        return saved

    def challenges_to_reconcile(self) -> list[Challenge]:
        """Challenges that may still need a lifecycle job."""
        return self.list_challenges(statuses=(
            ChallengeStatus.SCHEDULED,
            ChallengeStatus.ACTIVE,
            ChallengeStatus.COMPLETED,
            ChallengeStatus.EXPIRED,
        ))

    # -------------------------------------------------------------------
    # Participants
    # -------------------------------------------------------------------
    def get_active_participant(self, challenge_id: int, user_id: str) -> Participant | None:
        with infra_errors(), get_session(self.engine) as session:
            participant = session.scalar(
                select(Participant).where(
                    Participant.challenge_id == challenge_id,
                    Participant.user_id == user_id,
                    Participant.withdrawn_at.is_(None),
                )
            )
            if participant is not None:
                session.expunge(participant)
        return participant

    def list_participants(
        self, challenge_id: int, *, include_withdrawn: bool = True
    ) -> list[Participant]:
        stmt = select(Participant).where(Participant.challenge_id == challenge_id)
        if not include_withdrawn:
            stmt = stmt.where(Participant.withdrawn_at.is_(None))
        stmt = stmt.order_by(Participant.joined_at, Participant.id)

        with infra_errors(), get_session(self.engine) as session:
            rows = list(session.scalars(stmt).all())
            session.expunge_all()
        return rows

    def upsert_participant(
        self,
        participant: Participant,
        *,
        live_statuses: Iterable[ChallengeStatus] | None = None,
    ) -> Participant:
        """Insert a new enrolment, or record the withdrawal of an existing one.

        With *live_statuses*, the write only commits while the challenge is
        still in one of them.

        Raises
        ------
        AlreadyEnrolled
            If inserting would create a second active row for the user.
        ConcurrentModification
            If the challenge left *live_statuses* since the caller read it.
        NotFoundError
            If updating a participant id that doesn't exist.
        """
        with infra_errors(), get_session(self.engine) as session:
            if live_statuses is not None:
                _claim_live_challenge(session, participant.challenge_id, live_statuses)
            if participant.id is None:
                session.add(participant)
                try:
                    session.flush()
                except IntegrityError as exc:
                    raise AlreadyEnrolled(
                        f"User {participant.user_id} is already enrolled "
                        f"in challenge {participant.challenge_id}",
                        challenge_id=participant.challenge_id,
                        user_id=participant.user_id,
                    ) from exc
                session.refresh(participant)
                session.expunge(participant)
                return participant

            stored = session.get(Participant, participant.id)
            if stored is None:
                raise NotFoundError(
                    f"Participant {participant.id} not found", participant_id=participant.id
                )
            # Withdrawal is the only mutation an enrolment ever sees.
            if stored.withdrawn_at is None and participant.withdrawn_at is not None:
                stored.withdrawn_at = participant.withdrawn_at
            session.flush()
            session.expunge(stored)
        return stored

    # -------------------------------------------------------------------
    # Contributions
    # -------------------------------------------------------------------
    def list_contributions(self, challenge_id: int) -> list[Contribution]:
        with infra_errors(), get_session(self.engine) as session:
            rows = list(session.scalars(
                select(Contribution)
                .where(Contribution.challenge_id == challenge_id)
                .order_by(Contribution.recorded_at, Contribution.id)
            ).all())
            session.expunge_all()
        return rows

    def find_contribution_by_source(self, challenge_id: int, source_ref: str) -> Contribution | None:
        with infra_errors(), get_session(self.engine) as session:
            row = session.scalar(
                select(Contribution).where(
                    Contribution.challenge_id == challenge_id,
                    Contribution.source_ref == source_ref,
                )
            )
            if row is not None:
                session.expunge(row)
        return row

    def append_contribution(
        self,
        contribution: Contribution,
        *,
        live_statuses: Iterable[ChallengeStatus] | None = None,
    ) -> tuple[Contribution, bool]:
        """Append to the log.  Returns ``(row, was_duplicate)``.

        A contribution whose ``source_ref`` was already recorded for the same
        challenge is not inserted again; the existing row comes back with
        ``was_duplicate=True``.  With *live_statuses*, the insert only
        commits while the challenge is still in one of them, otherwise
        :class:`ConcurrentModification`.
        """
        source_ref = contribution.source_ref
        if source_ref is not None:
            existing = self.find_contribution_by_source(contribution.challenge_id, source_ref)
            if existing is not None:
                return existing, True

        try:
            with infra_errors(), get_session(self.engine) as session:
                if live_statuses is not None:
                    _claim_live_challenge(session, contribution.challenge_id, live_statuses)
                session.add(contribution)
                session.flush()
                session.refresh(contribution)
                session.expunge(contribution)
        except IntegrityError:
            # Lost a race with a concurrent submission of the same source_ref.
            if source_ref is None:
                raise
            existing = self.find_contribution_by_source(contribution.challenge_id, source_ref)
            if existing is None:
                raise
            return existing, True
        return contribution, False

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------
    def list_transitions(self, challenge_id: int) -> list[ChallengeTransition]:
        with infra_errors(), get_session(self.engine) as session:
            rows = list(session.scalars(
                select(ChallengeTransition)
                .where(ChallengeTransition.challenge_id == challenge_id)
                .order_by(ChallengeTransition.occurred_at, ChallengeTransition.id)
            ).all())
            session.expunge_all()
        return rows


def transition_row(
    challenge_id: int,
    from_status: ChallengeStatus,
    to_status: ChallengeStatus,
    *,
    occurred_at: datetime,
    reason: str = "",
    actor: str = "scheduler",
) -> ChallengeTransition:
    """Build an (unsaved) audit row for :meth:`ChallengeRepository.save_challenge`."""
    return ChallengeTransition(
        challenge_id=challenge_id,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        actor=actor,
        occurred_at=occurred_at,
    )
