"""ledger schema

Revision ID: 0001
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "trips",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("trip_currency", sa.String(length=3), nullable=False),
        sa.Column("default_currency", sa.String(length=3), nullable=False, server_default="TWD"),
        sa.Column("exchange_rate", sa.Float(), nullable=False, server_default="1"),
        sa.Column("owner_id", sa.Text()),
        sa.Column("total_expenses", sa.Float(), nullable=False, server_default="0"),
        sa.Column("enabled_total_expenses", sa.Float(), nullable=False, server_default="0"),
        sa.Column("disabled_total_expenses", sa.Float(), nullable=False, server_default="0"),
        sa.Column("expense_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "trip_members",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("trip_id", sa.Text(), sa.ForeignKey("trips.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("avatar_emoji", sa.Text()),
        sa.Column("is_host", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("spending", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("trip_id", sa.Text(), sa.ForeignKey("trips.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("category", sa.Text()),
        sa.Column("grand_total", sa.Float(), nullable=False, server_default="0"),
        sa.Column("paid_by_member_id", sa.Text()),
        sa.Column(
            "shared_with_member_ids",
            postgresql.ARRAY(sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::text[]"),
        ),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_processing", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("items", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("input_currency", sa.String(length=3)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("receipt_image_url", sa.Text()),
        sa.Column("processing_error", sa.Text()),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # shares last applied to trip_members.spending; a row outlives its expense
    # until the deletion has been applied
    op.create_table(
        "expense_allocations",
        sa.Column("trip_id", sa.Text(), sa.ForeignKey("trips.id", ondelete="CASCADE"), nullable=False),
        sa.Column("expense_id", sa.Text(), primary_key=True),
        sa.Column("member_id", sa.Text(), primary_key=True),
        sa.Column("amount", sa.Float(), nullable=False),
    )

    op.create_index("idx_trip_members_trip", "trip_members", ["trip_id"])
    op.create_index("idx_expenses_trip", "expenses", ["trip_id"])
    op.create_index("idx_expense_allocations_trip", "expense_allocations", ["trip_id"])


def downgrade() -> None:
    op.drop_index("idx_expense_allocations_trip", table_name="expense_allocations")
    op.drop_index("idx_expenses_trip", table_name="expenses")
    op.drop_index("idx_trip_members_trip", table_name="trip_members")

    op.drop_table("expense_allocations")
    op.drop_table("expenses")
    op.drop_table("trip_members")
    op.drop_table("trips")
