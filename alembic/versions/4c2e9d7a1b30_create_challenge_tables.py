"""Create challenge, participant, contribution, transition and job tables

Revision ID: 4c2e9d7a1b30
Revises:
Create Date: 2026-10-18 09:12:41.518204

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '4c2e9d7a1b30'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# JSONB on PostgreSQL, plain JSON on SQLite dev databases.
JSON_DOCUMENT = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # --- challenges ---
    op.create_table(
        "challenges",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("group_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("challenge_type", sa.String(64), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("goal_unit", sa.String(32), nullable=True),
        sa.Column("goal_quantity", sa.Integer, nullable=True),
        sa.Column("allow_late_joins", sa.Boolean, nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("final_total", sa.Integer, nullable=True),
        sa.Column("final_leaderboard", JSON_DOCUMENT, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("start_at < end_at", name="ck_challenges_window"),
        sa.CheckConstraint(
            "goal_quantity IS NULL OR goal_quantity > 0",
            name="ck_challenges_goal_positive",
        ),
    )
    op.create_index("ix_challenges_group_status", "challenges", ["group_id", "status"])
    op.create_index("ix_challenges_status_end", "challenges", ["status", "end_at"])

    # --- challenge_participants ---
    op.create_table(
        "challenge_participants",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "challenge_id", sa.Integer,
            sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
    )
    # One active enrolment per (challenge, user)
    op.create_index(
        "uq_participants_active", "challenge_participants",
        ["challenge_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("withdrawn_at IS NULL"),
    )
    op.create_index("ix_participants_user", "challenge_participants", ["user_id"])

    # --- challenge_contributions ---
    op.create_table(
        "challenge_contributions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "participant_id", sa.Integer,
            sa.ForeignKey("challenge_participants.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "challenge_id", sa.Integer,
            sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("note", sa.Text, nullable=True),
        sa.Column("source_ref", sa.String(128), nullable=True),
        sa.CheckConstraint("quantity >= 0", name="ck_contributions_quantity"),
    )
    op.create_index(
        "ix_contributions_challenge_time", "challenge_contributions",
        ["challenge_id", "recorded_at"],
    )
    op.create_index("ix_contributions_participant", "challenge_contributions", ["participant_id"])
    # Idempotency: caller-supplied source_ref is unique per challenge
    op.create_index(
        "uq_contributions_source_ref", "challenge_contributions",
        ["challenge_id", "source_ref"],
        unique=True,
        postgresql_where=sa.text("source_ref IS NOT NULL"),
    )

    # --- challenge_transitions ---
    op.create_table(
        "challenge_transitions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "challenge_id", sa.Integer,
            sa.ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("from_status", sa.String(16), nullable=False),
        sa.Column("to_status", sa.String(16), nullable=False),
        sa.Column("reason", sa.String(200), nullable=False, server_default=""),
        sa.Column("actor", sa.String(64), nullable=False, server_default="scheduler"),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("challenge_id", "to_status", name="uq_transitions_target"),
    )
    op.create_index(
        "ix_transitions_challenge_time", "challenge_transitions",
        ["challenge_id", "occurred_at"],
    )

    # --- lifecycle_jobs ---
    op.create_table(
        "lifecycle_jobs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("job_key", sa.String(128), nullable=False),
        sa.Column("payload", JSON_DOCUMENT, nullable=False, server_default="{}"),
        sa.Column("state", sa.String(16), nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("backoff_base_seconds", sa.Float, nullable=False, server_default="2"),
        sa.Column("timeout_seconds", sa.Float, nullable=False, server_default="30"),
        sa.Column("retain_completed", sa.Integer, nullable=False, server_default="100"),
        sa.Column("retain_failed", sa.Integer, nullable=False, server_default="500"),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("result", JSON_DOCUMENT, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_lifecycle_jobs_due", "lifecycle_jobs", ["state", "run_at"])
    op.create_index("ix_lifecycle_jobs_key_state", "lifecycle_jobs", ["job_key", "state"])
    # At most one ACTIVE job per key serializes advance() per challenge
    op.create_index(
        "uq_lifecycle_jobs_active_key", "lifecycle_jobs",
        ["job_key"],
        unique=True,
        postgresql_where=sa.text("state = 'ACTIVE'"),
    )
    op.create_index("ix_lifecycle_jobs_finished", "lifecycle_jobs", ["state", "finished_at"])


def downgrade() -> None:
    op.drop_table("lifecycle_jobs")
    op.drop_table("challenge_transitions")
    op.drop_table("challenge_contributions")
    op.drop_table("challenge_participants")
    op.drop_table("challenges")
