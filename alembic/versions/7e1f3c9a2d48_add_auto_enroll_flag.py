"""Add auto_enroll flag to challenges

Revision ID: 7e1f3c9a2d48
Revises: 4c2e9d7a1b30
Create Date: 2026-10-18 15:40:07.330951

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '7e1f3c9a2d48'
down_revision: str | Sequence[str] | None = '4c2e9d7a1b30'
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column(
        "challenges",
        sa.Column("auto_enroll", sa.Boolean, nullable=False, server_default=sa.false()),
    )


def downgrade() -> None:
    op.drop_column("challenges", "auto_enroll")
