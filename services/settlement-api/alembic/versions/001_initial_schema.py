"""Initial schema: jobs, users, blocked_users, settlement_records.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("title", sa.Text, nullable=False, server_default=""),
        sa.Column("status", sa.String(32), nullable=False, server_default="open"),
        sa.Column("posted_by", sa.String(64), nullable=False, index=True),
        sa.Column("assigned_to", sa.String(64), nullable=True, index=True),
        sa.Column("price_minor", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("username", sa.String(64), nullable=True),
        sa.Column("payouts_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("external_account_ref", sa.String(255), nullable=True, index=True),
        sa.Column("is_banned", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    op.create_table(
        "blocked_users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("blocker_id", sa.String(64), nullable=False, index=True),
        sa.Column("blocked_id", sa.String(64), nullable=False, index=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("blocker_id", "blocked_id", name="uq_block_pair"),
    )

    op.create_table(
        "settlement_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_id", sa.String(64), nullable=False),
        sa.Column("payer_id", sa.String(64), nullable=False, index=True),
        sa.Column("payee_id", sa.String(64), nullable=False, index=True),
        sa.Column("total_amount_minor", sa.Integer, nullable=False),
        sa.Column("platform_fee_minor", sa.Integer, nullable=False),
        sa.Column("processor_fee_minor", sa.Integer, nullable=True),
        sa.Column(
            "processor_fee_estimated", sa.Boolean, nullable=False, server_default=sa.true()
        ),
        sa.Column("net_amount_minor", sa.Integer, nullable=False),
        sa.Column("platform_fee_percent", sa.Numeric(6, 3), nullable=False),
        sa.Column("processor_fee_rate", sa.Numeric(8, 4), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("external_charge_ref", sa.String(255), nullable=True, unique=True),
        sa.Column(
            "status",
            sa.Enum(
                "processing", "succeeded", "failed", "refunded", name="settlement_status"
            ),
            nullable=False,
            server_default="processing",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    op.create_index(
        "ix_settlement_job_payer",
        "settlement_records",
        ["job_id", "payer_id"],
    )
    # One in-flight attempt per job + payer
    op.create_index(
        "uq_settlement_active_attempt",
        "settlement_records",
        ["job_id", "payer_id"],
        unique=True,
        postgresql_where=sa.text("status = 'processing'"),
    )


def downgrade() -> None:
    op.drop_index("uq_settlement_active_attempt", table_name="settlement_records")
    op.drop_index("ix_settlement_job_payer", table_name="settlement_records")
    op.drop_table("settlement_records")
    op.drop_table("blocked_users")
    op.drop_table("users")
    op.drop_table("jobs")
    op.execute("DROP TYPE IF EXISTS settlement_status")
