"""Create task, batch and event tables for orchestration state."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "batches",
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("task_ids_json", sa.Text(), nullable=False),
        sa.Column("task_count", sa.Integer(), nullable=False),
        sa.Column("skip_flags_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column(
            "aggregate_triggered",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column(
            "cancel_requested",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("aggregate_result_json", sa.Text(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("batch_id"),
    )
    op.create_index("idx_batches_owner_status", "batches", ["owner", "status"], unique=False)

    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("subject", sa.String(), nullable=False),
        sa.Column("batch_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_phase", sa.String(), nullable=True),
        sa.Column("phase_results_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("dispatched_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("context_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("skip_phases_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column(
            "cancel_requested",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("idx_tasks_batch_status", "tasks", ["batch_id", "status"], unique=False)
    op.create_index("idx_tasks_status_updated", "tasks", ["status", "updated_at"], unique=False)
    op.create_index("idx_tasks_owner_created", "tasks", ["owner", "created_at"], unique=False)

    op.create_table(
        "orchestration_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("batch_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_orchestration_events_task_time",
        "orchestration_events",
        ["task_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_orchestration_events_batch_time",
        "orchestration_events",
        ["batch_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_orchestration_events_batch_time", table_name="orchestration_events")
    op.drop_index("idx_orchestration_events_task_time", table_name="orchestration_events")
    op.drop_table("orchestration_events")
    op.drop_index("idx_tasks_owner_created", table_name="tasks")
    op.drop_index("idx_tasks_status_updated", table_name="tasks")
    op.drop_index("idx_tasks_batch_status", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("idx_batches_owner_status", table_name="batches")
    op.drop_table("batches")
