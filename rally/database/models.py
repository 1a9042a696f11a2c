"""
rally.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- challenges             — Time-boxed group challenges (versioned row)
- challenge_participants — Enrolments; one active row per (challenge, user)
- challenge_contributions — Append-only progress log
- challenge_transitions   — Append-only lifecycle audit trail
- lifecycle_jobs          — Durable job queue backing the scheduler
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from rally.constants import ensure_utc

# JSONB on PostgreSQL, plain JSON everywhere else (SQLite dev databases).
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Rally ORM models."""


class UTCDateTime(TypeDecorator):
    """``DateTime(timezone=True)`` that always hands back aware UTC values.

    PostgreSQL already does this; SQLite returns naive datetimes, which
    would make every ``now >= end_at`` comparison blow up.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class ChallengeStatus(enum.StrEnum):
    """Closed set of lifecycle states (see ``rally.engine.state_machine``)."""
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    ARCHIVED = "ARCHIVED"


class JobState(enum.StrEnum):
    """Where a lifecycle job is in the queue."""
    WAITING = "WAITING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Challenges — one row per challenge, guarded by ``version``
# ---------------------------------------------------------------------------
class Challenge(Base):
    """A time-boxed group challenge.

    ``status`` is persisted rather than derived on read so that concurrent
    readers never disagree about it.  Every write bumps ``version``;
    :meth:`ChallengeRepository.save_challenge` refuses stale writes.
    """
    __tablename__ = "challenges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    challenge_type: Mapped[str] = mapped_column(String(64), nullable=False)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    goal_unit: Mapped[str | None] = mapped_column(String(32), default=None)
    goal_quantity: Mapped[int | None] = mapped_column(Integer, default=None)
    allow_late_joins: Mapped[bool] = mapped_column(Boolean, default=True)
    auto_enroll: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[ChallengeStatus] = mapped_column(
        Enum(ChallengeStatus, native_enum=False, length=16),
        nullable=False,
        default=ChallengeStatus.DRAFT,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_by: Mapped[str | None] = mapped_column(String(64), default=None)

    # Lifecycle stamps
    published_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)
    activated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)
    ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)

    # Finalization cache — always re-derivable from the contribution log
    final_total: Mapped[int | None] = mapped_column(Integer, default=None)
    final_leaderboard: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), onupdate=func.now()
    )

    participants: Mapped[list[Participant]] = relationship(
        back_populates="challenge", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("start_at < end_at", name="ck_challenges_window"),
        CheckConstraint(
            "goal_quantity IS NULL OR goal_quantity > 0",
            name="ck_challenges_goal_positive",
        ),
        Index("ix_challenges_group_status", "group_id", "status"),
        Index("ix_challenges_status_end", "status", "end_at"),
    )

    @property
    def has_goal(self) -> bool:
        return self.goal_quantity is not None

    def __repr__(self) -> str:
        return (
            f"<Challenge id={self.id} name={self.name!r} "
            f"status={self.status} v={self.version}>"
        )


# ---------------------------------------------------------------------------
# Participants — enrolment rows
# ---------------------------------------------------------------------------
class Participant(Base):
    """A user enrolled in a challenge.

    Immutable apart from ``withdrawn_at``.  A user who withdraws and comes
    back gets a fresh row; the partial unique index only covers rows that
    are still active.
    """
    __tablename__ = "challenge_participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    challenge_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    joined_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    withdrawn_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)

    challenge: Mapped[Challenge] = relationship(back_populates="participants")

    __table_args__ = (
        Index(
            "uq_participants_active",
            "challenge_id",
            "user_id",
            unique=True,
            postgresql_where=text("withdrawn_at IS NULL"),
            sqlite_where=text("withdrawn_at IS NULL"),
        ),
        Index("ix_participants_user", "user_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.withdrawn_at is None

    def __repr__(self) -> str:
        return (
            f"<Participant id={self.id} challenge={self.challenge_id} "
            f"user={self.user_id!r}>"
        )


# ---------------------------------------------------------------------------
# Contributions — append-only progress log
# ---------------------------------------------------------------------------
class Contribution(Base):
    """One recorded unit of progress.

    Never updated or deleted; a correction is a new row.  ``source_ref`` is
    an optional caller idempotency key (unique per challenge).
    """
    __tablename__ = "challenge_contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    participant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("challenge_participants.id", ondelete="CASCADE"), nullable=False
    )
    challenge_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    note: Mapped[str | None] = mapped_column(Text, default=None)
    source_ref: Mapped[str | None] = mapped_column(String(128), default=None)

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_contributions_quantity"),
        Index("ix_contributions_challenge_time", "challenge_id", "recorded_at"),
        Index("ix_contributions_participant", "participant_id"),
        Index(
            "uq_contributions_source_ref",
            "challenge_id",
            "source_ref",
            unique=True,
            postgresql_where=source_ref.isnot(None),
            sqlite_where=source_ref.isnot(None),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Contribution id={self.id} participant={self.participant_id} "
            f"qty={self.quantity}>"
        )


# ---------------------------------------------------------------------------
# ChallengeTransition — append-only lifecycle audit
# ---------------------------------------------------------------------------
class ChallengeTransition(Base):
    """Every committed status change.

    The lifecycle graph has no cycles, so a challenge enters each status at
    most once; the unique constraint turns a duplicate finalization into a
    failed commit instead of a second row.
    """
    __tablename__ = "challenge_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    challenge_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    from_status: Mapped[ChallengeStatus] = mapped_column(
        Enum(ChallengeStatus, native_enum=False, length=16), nullable=False
    )
    to_status: Mapped[ChallengeStatus] = mapped_column(
        Enum(ChallengeStatus, native_enum=False, length=16), nullable=False
    )
    reason: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="scheduler")
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("challenge_id", "to_status", name="uq_transitions_target"),
        Index("ix_transitions_challenge_time", "challenge_id", "occurred_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ChallengeTransition challenge={self.challenge_id} "
            f"{self.from_status}→{self.to_status}>"
        )


# ---------------------------------------------------------------------------
# LifecycleJob — durable queue rows
# ---------------------------------------------------------------------------
class LifecycleJob(Base):
    """A scheduled re-evaluation of one challenge.

    At most one ACTIVE row per ``job_key`` (partial unique index), which is
    what serializes ``advance`` per challenge across worker processes.
    """
    __tablename__ = "lifecycle_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_key: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)
    state: Mapped[JobState] = mapped_column(
        Enum(JobState, native_enum=False, length=16),
        nullable=False,
        default=JobState.WAITING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    backoff_base_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=2.0)
    timeout_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=30.0)
    retain_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    retain_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=500)
    run_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    lease_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)
    last_error: Mapped[str | None] = mapped_column(Text, default=None)
    result: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime, default=None)

    __table_args__ = (
        Index("ix_lifecycle_jobs_due", "state", "run_at"),
        Index("ix_lifecycle_jobs_key_state", "job_key", "state"),
        Index(
            "uq_lifecycle_jobs_active_key",
            "job_key",
            unique=True,
            postgresql_where=text("state = 'ACTIVE'"),
            sqlite_where=text("state = 'ACTIVE'"),
        ),
        Index("ix_lifecycle_jobs_finished", "state", "finished_at"),
    )

    def __repr__(self) -> str:
        return f"<LifecycleJob id={self.id} key={self.job_key!r} state={self.state}>"
