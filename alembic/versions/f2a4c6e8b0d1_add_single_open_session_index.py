"""add single open session index

Revision ID: f2a4c6e8b0d1
Revises: e5b7d9f1a3c4
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "f2a4c6e8b0d1"
down_revision: Union[str, Sequence[str], None] = "e5b7d9f1a3c4"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_OPEN_ONLY = sa.text("status = 'OPEN'")


def upgrade() -> None:
    op.create_index(
        "uq_cash_sessions_one_open",
        "cash_sessions",
        ["organization_id"],
        unique=True,
        sqlite_where=_OPEN_ONLY,
        postgresql_where=_OPEN_ONLY,
    )


def downgrade() -> None:
    op.drop_index("uq_cash_sessions_one_open", table_name="cash_sessions")
