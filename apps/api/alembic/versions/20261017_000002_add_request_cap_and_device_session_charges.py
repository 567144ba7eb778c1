"""add monthly request cap and key session charges by device

Revision ID: 20261017_000002
Revises: 20261001_000001
Create Date: 2026-10-17 00:00:02.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261017_000002"
down_revision: Union[str, None] = "20261001_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("users", sa.Column("requests_count", sa.Integer(), server_default="0", nullable=False))
    op.add_column("users", sa.Column("requests_period_start", sa.DateTime(timezone=True), nullable=True))

    op.add_column("session_charges", sa.Column("fingerprint", sa.String(), nullable=True))
    op.drop_index(op.f("ix_session_charges_device_id"), table_name="session_charges")
    op.drop_constraint("session_charges_pkey", "session_charges", type_="primary")
    op.create_primary_key("session_charges_pkey", "session_charges", ["device_id", "session_id"])


def downgrade() -> None:
    op.drop_constraint("session_charges_pkey", "session_charges", type_="primary")
    op.create_primary_key("session_charges_pkey", "session_charges", ["session_id"])
    op.create_index(op.f("ix_session_charges_device_id"), "session_charges", ["device_id"], unique=False)
    op.drop_column("session_charges", "fingerprint")

    op.drop_column("users", "requests_period_start")
    op.drop_column("users", "requests_count")
