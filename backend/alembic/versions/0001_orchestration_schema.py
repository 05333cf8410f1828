"""create orchestration schema: accounts, execution nodes, generation tasks, sub-steps, events

Revision ID: 0001_orchestration_schema
Revises:
Create Date: 2026-10-17 12:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_orchestration_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(length=255), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("is_autonomous", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("daily_spend_limit", sa.Numeric(12, 2), nullable=True),
        sa.Column("approval_threshold", sa.Numeric(12, 2), nullable=True),
        sa.Column("daily_post_limit", sa.Integer(), nullable=True),
        sa.Column("preferred_post_times", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "execution_nodes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("node_type", sa.String(length=32), nullable=False, server_default="Server"),
        sa.Column("location", sa.String(length=255), nullable=False),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_execution_nodes_location", "execution_nodes", ["location"])

    op.create_table(
        "generation_tasks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Pending"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("target_node_location", sa.String(length=255), nullable=True),
        sa.Column("original_target_node_location", sa.String(length=255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expiry_hours", sa.Float(), nullable=True),
        sa.Column("estimated_cost", sa.Numeric(12, 2), nullable=True),
        sa.Column("approval_reason", sa.Text(), nullable=True),
        sa.Column(
            "variant_of_task_id",
            sa.Integer(),
            sa.ForeignKey("generation_tasks.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("ab_test_group", sa.String(length=32), nullable=True),
        sa.Column(
            "claimed_by_node_id",
            sa.Integer(),
            sa.ForeignKey("execution_nodes.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reassign_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reclaim_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("video_url", sa.Text(), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("takedown_status", sa.String(length=16), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_generation_tasks_status_scheduled_for", "generation_tasks", ["status", "scheduled_for"])
    op.create_index("ix_generation_tasks_account_created", "generation_tasks", ["account_id", "created_at"])
    op.create_index("ix_generation_tasks_variant_of_task_id", "generation_tasks", ["variant_of_task_id"])
    op.create_index("ix_generation_tasks_claimed_by_node_id", "generation_tasks", ["claimed_by_node_id"])

    op.create_table(
        "task_sub_steps",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "task_id", sa.Integer(), sa.ForeignKey("generation_tasks.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("step_name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Pending"),
        sa.Column("phase", sa.String(length=32), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_task_sub_steps_task_id", "task_sub_steps", ["task_id"])

    op.create_table(
        "task_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "task_id", sa.Integer(), sa.ForeignKey("generation_tasks.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("from_status", sa.String(length=32), nullable=True),
        sa.Column("to_status", sa.String(length=32), nullable=False),
        sa.Column("actor", sa.String(length=32), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_task_events_task_id", "task_events", ["task_id"])


def downgrade() -> None:
    op.drop_index("ix_task_events_task_id", table_name="task_events")
    op.drop_table("task_events")
    op.drop_index("ix_task_sub_steps_task_id", table_name="task_sub_steps")
    op.drop_table("task_sub_steps")
    op.drop_index("ix_generation_tasks_claimed_by_node_id", table_name="generation_tasks")
    op.drop_index("ix_generation_tasks_variant_of_task_id", table_name="generation_tasks")
    op.drop_index("ix_generation_tasks_account_created", table_name="generation_tasks")
    op.drop_index("ix_generation_tasks_status_scheduled_for", table_name="generation_tasks")
    op.drop_table("generation_tasks")
    op.drop_index("ix_execution_nodes_location", table_name="execution_nodes")
    op.drop_table("execution_nodes")
    op.drop_table("accounts")
