"""Version counter for compare-and-set learning path writes."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261018_02_subject_state_version"
down_revision = "20261018_01_initial_learning_path"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "user_subject_state",
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
    )


def downgrade() -> None:
    with op.batch_alter_table("user_subject_state") as batch_op:
        batch_op.drop_column("version")
