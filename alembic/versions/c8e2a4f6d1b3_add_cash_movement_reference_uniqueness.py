"""add cash movement reference uniqueness

Revision ID: c8e2a4f6d1b3
Revises: a1c3e5f7b9d2
Create Date: 2026-09-09 14:20:00.000000
"""

from alembic import op


# revision identifiers, used by Alembic.
revision = "c8e2a4f6d1b3"
down_revision = "a1c3e5f7b9d2"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("cash_movements") as batch_op:
        batch_op.create_unique_constraint(
            "uq_cash_movements_session_reference",
            ["session_id", "reference_type", "reference_id"],
        )


def downgrade() -> None:
    with op.batch_alter_table("cash_movements") as batch_op:
        batch_op.drop_constraint("uq_cash_movements_session_reference", type_="unique")
