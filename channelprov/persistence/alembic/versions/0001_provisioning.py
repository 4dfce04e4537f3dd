"""add provisioning records and integration logs

Revision ID: 0001_provisioning
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_provisioning"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One provisioning record per tenant; tenant_id is the upsert conflict target.
    op.create_table(
        "provisioning_records",
        sa.Column("tenant_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("business_entity_id", sa.String(), nullable=True),
        sa.Column("messaging_account_id", sa.String(), nullable=True),
        sa.Column("account_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("phone_number_id", sa.String(), nullable=True),
        sa.Column("display_phone_number", sa.String(), nullable=True),
        sa.Column("verified_name", sa.String(), nullable=True),
        sa.Column("provider_user_id", sa.String(), nullable=True),
        sa.Column("bearer_credential", sa.Text(), nullable=True),
        sa.Column("credential_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("granted_scopes", postgresql.JSONB(), nullable=True),
        sa.Column("creation_strategy", sa.String(), nullable=True),
        sa.Column("polling_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_provisioning_records_status", "provisioning_records", ["status"], unique=False)
    op.create_index(
        "ix_provisioning_records_messaging_account_id",
        "provisioning_records",
        ["messaging_account_id"],
        unique=False,
    )
    op.create_index(
        "ix_provisioning_records_phone_number_id",
        "provisioning_records",
        ["phone_number_id"],
        unique=False,
    )

    # Append-only step log; rows are never updated or deleted by the workflow.
    op.create_table(
        "integration_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("step", sa.String(), nullable=False),
        sa.Column("strategy", sa.String(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_integration_logs_tenant_id", "integration_logs", ["tenant_id"], unique=False)
    op.create_index(
        "ix_integration_logs_tenant_created",
        "integration_logs",
        ["tenant_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_integration_logs_tenant_step",
        "integration_logs",
        ["tenant_id", "step"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_integration_logs_tenant_step", table_name="integration_logs")
    op.drop_index("ix_integration_logs_tenant_created", table_name="integration_logs")
    op.drop_index("ix_integration_logs_tenant_id", table_name="integration_logs")
    op.drop_table("integration_logs")
    op.drop_index("ix_provisioning_records_phone_number_id", table_name="provisioning_records")
    op.drop_index("ix_provisioning_records_messaging_account_id", table_name="provisioning_records")
    op.drop_index("ix_provisioning_records_status", table_name="provisioning_records")
    op.drop_table("provisioning_records")
