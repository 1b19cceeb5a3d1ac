"""create club crm tables

Revision ID: 202610170001
Revises:
Create Date: 2026-10-17 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610170001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_prospect",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("phone", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("email", sa.String(length=320), nullable=False, server_default=""),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("interest", sa.String(length=64), nullable=False, server_default="Not reported"),
        sa.Column("stage", sa.String(length=16), nullable=False, server_default="New"),
        sa.Column("assigned_to", sa.String(length=128), nullable=False),
        sa.Column("branch", sa.String(length=32), nullable=False),
        sa.Column("dni", sa.Text(), nullable=False, server_default=""),
        sa.Column("address", sa.Text(), nullable=False, server_default=""),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("next_action_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("updated_by", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_prospect_scope", "crm_prospect", ["branch", "assigned_to", "stage"], unique=False)
    op.create_index("ix_crm_prospect_phone", "crm_prospect", ["phone"], unique=False)
    op.create_index("ix_crm_prospect_email", "crm_prospect", ["email"], unique=False)

    op.create_table(
        "crm_member",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("phone", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("plan", sa.String(length=64), nullable=False),
        sa.Column("fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("duration_months", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_action_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("original_seller", sa.String(length=128), nullable=False),
        sa.Column("branch", sa.String(length=32), nullable=False),
        sa.Column("dni", sa.Text(), nullable=False, server_default=""),
        sa.Column("address", sa.Text(), nullable=False, server_default=""),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("converted_from_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["converted_from_id"], ["crm_prospect.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("converted_from_id"),
    )
    op.create_index("ix_crm_member_scope", "crm_member", ["branch", "original_seller"], unique=False)

    op.create_table(
        "crm_task",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("task_type", sa.String(length=16), nullable=False),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("related_type", sa.String(length=16), nullable=False),
        sa.Column("related_id", sa.Uuid(), nullable=False),
        sa.Column("assigned_to", sa.String(length=128), nullable=False),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_task_related", "crm_task", ["related_type", "related_id"], unique=False)
    op.create_index("ix_crm_task_assignee_status", "crm_task", ["assigned_to", "status", "due_at"], unique=False)

    op.create_table(
        "crm_interaction",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("interaction_type", sa.String(length=16), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("result", sa.Text(), nullable=False, server_default=""),
        sa.Column("done_by", sa.String(length=128), nullable=False),
        sa.Column("related_type", sa.String(length=16), nullable=False),
        sa.Column("related_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_interaction_related",
        "crm_interaction",
        ["related_type", "related_id", "occurred_at"],
        unique=False,
    )

    op.create_table(
        "crm_goal",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("scope_type", sa.String(length=16), nullable=False),
        sa.Column("scope_id", sa.String(length=128), nullable=False),
        sa.Column("period", sa.String(length=16), nullable=False),
        sa.Column("target", sa.Integer(), nullable=False),
        sa.Column("updated_by", sa.String(length=128), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("scope_type", "scope_id", "period", name="uq_crm_goal_key"),
    )

    op.create_table(
        "crm_sync_state",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "crm_idempotency_key",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("endpoint", sa.String(length=128), nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("request_hash", sa.String(length=128), nullable=False),
        sa.Column("response_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("endpoint", "key", name="uq_crm_idempotency_endpoint_key"),
    )


def downgrade() -> None:
    op.drop_table("crm_idempotency_key")
    op.drop_table("crm_sync_state")
    op.drop_table("crm_goal")
    op.drop_index("ix_crm_interaction_related", table_name="crm_interaction")
    op.drop_table("crm_interaction")
    op.drop_index("ix_crm_task_assignee_status", table_name="crm_task")
    op.drop_index("ix_crm_task_related", table_name="crm_task")
    op.drop_table("crm_task")
    op.drop_index("ix_crm_member_scope", table_name="crm_member")
    op.drop_table("crm_member")
    op.drop_index("ix_crm_prospect_email", table_name="crm_prospect")
    op.drop_index("ix_crm_prospect_phone", table_name="crm_prospect")
    op.drop_index("ix_crm_prospect_scope", table_name="crm_prospect")
    op.drop_table("crm_prospect")
