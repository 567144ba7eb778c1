"""create plumes, promo, quota and preference schema

Revision ID: 20261001_000001
Revises:
Create Date: 2026-10-01 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261001_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("plan", sa.String(), server_default="free", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=False)

    op.create_table(
        "device_plumes",
        sa.Column("device_id", sa.String(), nullable=False),
        sa.Column("plumes_count", sa.Integer(), nullable=False),
        sa.Column("is_premium", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("last_daily_reward_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.CheckConstraint("plumes_count >= 0", name="ck_device_plumes_non_negative"),
        sa.PrimaryKeyConstraint("device_id"),
    )

    op.create_table(
        "promo_codes",
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("bonus", sa.Integer(), nullable=False),
        sa.Column("grants_premium", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("code"),
    )

    op.create_table(
        "promo_redemptions",
        sa.Column("device_id", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["code"], ["promo_codes.code"]),
        sa.PrimaryKeyConstraint("device_id", "code"),
    )

    op.create_table(
        "subscription_quotas",
        sa.Column("original_app_user_id", sa.String(), nullable=False),
        sa.Column("monthly_scans_used", sa.Integer(), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.CheckConstraint("monthly_scans_used >= 0", name="ck_subscription_quotas_non_negative"),
        sa.PrimaryKeyConstraint("original_app_user_id"),
    )

    op.create_table(
        "identity_mappings",
        sa.Column("app_user_id", sa.String(), nullable=False),
        sa.Column("original_app_user_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("app_user_id"),
    )
    op.create_index(
        op.f("ix_identity_mappings_original_app_user_id"),
        "identity_mappings",
        ["original_app_user_id"],
        unique=False,
    )

    op.create_table(
        "session_charges",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("device_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index(op.f("ix_session_charges_device_id"), "session_charges", ["device_id"], unique=False)

    op.create_table(
        "tag_preferences",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("tag_slug", sa.String(), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("user_id", "tag_slug"),
    )


def downgrade() -> None:
    op.drop_table("tag_preferences")
    op.drop_index(op.f("ix_session_charges_device_id"), table_name="session_charges")
    op.drop_table("session_charges")
    op.drop_index(op.f("ix_identity_mappings_original_app_user_id"), table_name="identity_mappings")
    op.drop_table("identity_mappings")
    op.drop_table("subscription_quotas")
    op.drop_table("promo_redemptions")
    op.drop_table("promo_codes")
    op.drop_table("device_plumes")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
