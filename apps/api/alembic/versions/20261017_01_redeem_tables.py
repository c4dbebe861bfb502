"""Create redeem batches, codes, records and reward collaborator tables.

Revision ID: 20261017_01
Revises:
Create Date: 2026-10-17
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261017_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


REWARD_TYPES = ("mantou", "diamond", "vip", "coupon", "custom")
CODE_STATUSES = ("active", "disabled", "exhausted", "expired")
RECORD_STATUSES = ("pending", "success", "failed")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    reward_type = sa.Enum(*REWARD_TYPES, name="redeem_reward_type")
    status = sa.Enum(*CODE_STATUSES, name="redeem_status")
    record_status = sa.Enum(*RECORD_STATUSES, name="redeem_record_status")
    for enum_type in (reward_type, status, record_status):
        enum_type.create(bind, checkfirst=True)

    def _enum(values: Sequence[str], name: str) -> sa.Enum:
        return postgresql.ENUM(*values, name=name, create_type=False)

    op.create_table(
        "redeem_batches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("reward_type", _enum(REWARD_TYPES, "redeem_reward_type"), nullable=False),
        sa.Column("reward_payload", sa.JSON(), nullable=True),
        sa.Column("status", _enum(CODE_STATUSES, "redeem_status"), nullable=False, server_default="active"),
        sa.Column("max_redeem", sa.Integer(), nullable=True),
        sa.Column("max_redeem_per_user", sa.Integer(), nullable=True),
        sa.Column("total_codes", sa.Integer(), nullable=True),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "redeem_codes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("redeem_batches.id"), nullable=True),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("reward_type", _enum(REWARD_TYPES, "redeem_reward_type"), nullable=True),
        sa.Column("reward_payload", sa.JSON(), nullable=True),
        sa.Column("status", _enum(CODE_STATUSES, "redeem_status"), nullable=False, server_default="active"),
        sa.Column("max_redeem", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("max_redeem_per_user", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("last_redeemed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_redeem_codes_code", "redeem_codes", ["code"], unique=True)
    op.create_index("ix_redeem_codes_batch_id", "redeem_codes", ["batch_id"])

    op.create_table(
        "redeem_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("code_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("redeem_codes.id"), nullable=False),
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("redeem_batches.id"), nullable=True),
        sa.Column("user_address", sa.String(length=66), nullable=False),
        sa.Column("reward_type", _enum(REWARD_TYPES, "redeem_reward_type"), nullable=False),
        sa.Column("reward_payload", sa.JSON(), nullable=True),
        sa.Column("status", _enum(RECORD_STATUSES, "redeem_record_status"), nullable=False, server_default="pending"),
        sa.Column("ip", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_redeem_records_user_address", "redeem_records", ["user_address"])
    op.create_index(
        "ix_redeem_records_code_user_status",
        "redeem_records",
        ["code_id", "user_address", "status"],
    )
    op.create_index("ix_redeem_records_status_created", "redeem_records", ["status", "created_at"])

    op.create_table(
        "points_wallets",
        sa.Column("address", sa.String(length=66), primary_key=True),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("frozen", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "points_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("address", sa.String(length=66), nullable=False),
        sa.Column("entry_type", sa.String(length=16), nullable=False, server_default="credit"),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("reference", sa.String(), nullable=True),
        sa.Column("note", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("reference", "entry_type", name="uq_points_transactions_reference_type"),
    )
    op.create_index("ix_points_transactions_address", "points_transactions", ["address"])

    op.create_table(
        "membership_tiers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_membership_tiers_slug", "membership_tiers", ["slug"], unique=True)

    op.create_table(
        "members",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_address", sa.String(length=66), nullable=False),
        sa.Column("tier_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("membership_tiers.id"), nullable=True),
        sa.Column("tier_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grant_reference", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_members_user_address", "members", ["user_address"], unique=True)

    op.create_table(
        "coupons",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("code", sa.String(length=64), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="usable"),
        sa.Column("discount", sa.Numeric(12, 2), nullable=True),
        sa.Column("min_spend", sa.Numeric(12, 2), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_coupons_code", "coupons", ["code"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_coupons_code", table_name="coupons")
    op.drop_table("coupons")
    op.drop_index("ix_members_user_address", table_name="members")
    op.drop_table("members")
    op.drop_index("ix_membership_tiers_slug", table_name="membership_tiers")
    op.drop_table("membership_tiers")
    op.drop_index("ix_points_transactions_address", table_name="points_transactions")
    op.drop_table("points_transactions")
    op.drop_table("points_wallets")
    op.drop_index("ix_redeem_records_status_created", table_name="redeem_records")
    op.drop_index("ix_redeem_records_code_user_status", table_name="redeem_records")
    op.drop_index("ix_redeem_records_user_address", table_name="redeem_records")
    op.drop_table("redeem_records")
    op.drop_index("ix_redeem_codes_batch_id", table_name="redeem_codes")
    op.drop_index("ix_redeem_codes_code", table_name="redeem_codes")
    op.drop_table("redeem_codes")
    op.drop_table("redeem_batches")

    bind = op.get_bind()
    for name in ("redeem_record_status", "redeem_status", "redeem_reward_type"):
        sa.Enum(name=name).drop(bind, checkfirst=True)
