"""initial schema: shops, sessions, bulk jobs, credit purchases

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "shops",
        sa.Column("shop_domain", sa.String(), nullable=False),
        sa.Column("credits_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_plan", sa.String(), nullable=False, server_default="FREE"),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credits_balance >= 0", name="ck_shops_credits_balance_non_negative"),
        sa.PrimaryKeyConstraint("shop_domain"),
    )

    op.create_table(
        "shop_sessions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("shop_domain", sa.String(), nullable=False),
        sa.Column("access_token", sa.String(), nullable=False),
        sa.Column("scope", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_shop_sessions_shop_domain", "shop_sessions", ["shop_domain"], unique=False)

    op.create_table(
        "bulk_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("shop_domain", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("task", sa.String(), nullable=False, server_default="content"),
        sa.Column("status", sa.String(), nullable=False, server_default="queued"),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("total_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_targets", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["shop_domain"], ["shops.shop_domain"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_bulk_jobs_shop_domain", "bulk_jobs", ["shop_domain"], unique=False)
    op.create_index("ix_bulk_jobs_status", "bulk_jobs", ["status"], unique=False)
    op.create_index("ix_bulk_jobs_created_at", "bulk_jobs", ["created_at"], unique=False)
    op.create_index("ix_bulk_jobs_status_created", "bulk_jobs", ["status", "created_at"], unique=False)

    op.create_table(
        "credit_purchases",
        sa.Column("charge_id", sa.String(), nullable=False),
        sa.Column("shop_domain", sa.String(), nullable=False),
        sa.Column("credits_added", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_usd", sa.Float(), nullable=True),
        sa.Column("type", sa.String(), nullable=False, server_default="one_time"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["shop_domain"], ["shops.shop_domain"]),
        sa.PrimaryKeyConstraint("charge_id"),
    )
    op.create_index("ix_credit_purchases_shop_domain", "credit_purchases", ["shop_domain"], unique=False)
    op.create_index("ix_credit_purchases_status", "credit_purchases", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_credit_purchases_status", table_name="credit_purchases")
    op.drop_index("ix_credit_purchases_shop_domain", table_name="credit_purchases")
    op.drop_table("credit_purchases")

    op.drop_index("ix_bulk_jobs_status_created", table_name="bulk_jobs")
    op.drop_index("ix_bulk_jobs_created_at", table_name="bulk_jobs")
    op.drop_index("ix_bulk_jobs_status", table_name="bulk_jobs")
    op.drop_index("ix_bulk_jobs_shop_domain", table_name="bulk_jobs")
    op.drop_table("bulk_jobs")

    op.drop_index("ix_shop_sessions_shop_domain", table_name="shop_sessions")
    op.drop_table("shop_sessions")

    op.drop_table("shops")
