"""create runs, steps, stories, events and medic_checks tables

Revision ID: 3c1f0a9d2b7e
Revises:
Create Date: 2026-10-19 09:12:04.418233
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "3c1f0a9d2b7e"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "runs",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("workflow_id", sa.String(), nullable=False),
        sa.Column("task", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), server_default="running", nullable=False),
        sa.Column("context", sa.JSON(), nullable=False),
        sa.Column("notify_target", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('running', 'completed', 'failed', 'cancelled', 'blocked')",
            name="ck_runs_status",
        ),
    )
    op.create_index(op.f("ix_runs_workflow_id"), "runs", ["workflow_id"], unique=False)
    op.create_index("ix_runs_workflow_status", "runs", ["workflow_id", "status"], unique=False)

    op.create_table(
        "steps",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("run_id", sa.String(), sa.ForeignKey("runs.id"), nullable=False),
        sa.Column("step_id", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(), server_default="single", nullable=False),
        sa.Column("input_template", sa.Text(), nullable=False),
        sa.Column("expects", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), server_default="waiting", nullable=False),
        sa.Column("output", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_retries", sa.Integer(), server_default=sa.text("2"), nullable=False),
        sa.Column("abandoned_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("loop_config", sa.JSON(), nullable=True),
        sa.Column("current_story_id", sa.String(), nullable=True),
        sa.Column("handoff_version", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('waiting', 'pending', 'running', 'done', 'failed')",
            name="ck_steps_status",
        ),
        sa.CheckConstraint("type IN ('single', 'loop')", name="ck_steps_type"),
        sa.CheckConstraint("retry_count >= 0", name="ck_steps_retry_count_nonnegative"),
    )
    op.create_index(op.f("ix_steps_run_id"), "steps", ["run_id"], unique=False)
    op.create_index(op.f("ix_steps_agent_id"), "steps", ["agent_id"], unique=False)
    op.create_index("ix_steps_agent_status", "steps", ["agent_id", "status"], unique=False)
    op.create_index("ix_steps_run_index", "steps", ["run_id", "step_index"], unique=False)

    op.create_table(
        "stories",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("run_id", sa.String(), sa.ForeignKey("runs.id"), nullable=False),
        sa.Column("story_index", sa.Integer(), nullable=False),
        sa.Column("story_id", sa.String(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("acceptance_criteria", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("output", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_retries", sa.Integer(), server_default=sa.text("2"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("run_id", "story_id", name="uq_stories_run_story_id"),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'done', 'failed')",
            name="ck_stories_status",
        ),
    )
    op.create_index(op.f("ix_stories_run_id"), "stories", ["run_id"], unique=False)
    op.create_index(
        "ix_stories_run_status_index", "stories", ["run_id", "status", "story_index"], unique=False
    )

    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("workflow_id", sa.String(), nullable=True),
        sa.Column("step_id", sa.String(), nullable=True),
        sa.Column("step_row_id", sa.String(), nullable=True),
        sa.Column("agent_id", sa.String(), nullable=True),
        sa.Column("story_id", sa.String(), nullable=True),
        sa.Column("story_title", sa.Text(), nullable=True),
        sa.Column("detail", sa.Text(), nullable=True),
    )
    op.create_index(op.f("ix_events_event"), "events", ["event"], unique=False)
    op.create_index(op.f("ix_events_run_id"), "events", ["run_id"], unique=False)

    op.create_table(
        "medic_checks",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("checked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("issues_found", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("actions_taken", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
    )
    op.create_index(op.f("ix_medic_checks_checked_at"), "medic_checks", ["checked_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_medic_checks_checked_at"), table_name="medic_checks")
    op.drop_table("medic_checks")

    op.drop_index(op.f("ix_events_run_id"), table_name="events")
    op.drop_index(op.f("ix_events_event"), table_name="events")
    op.drop_table("events")

    op.drop_index("ix_stories_run_status_index", table_name="stories")
    op.drop_index(op.f("ix_stories_run_id"), table_name="stories")
    op.drop_table("stories")

    op.drop_index("ix_steps_run_index", table_name="steps")
    op.drop_index("ix_steps_agent_status", table_name="steps")
    op.drop_index(op.f("ix_steps_agent_id"), table_name="steps")
    op.drop_index(op.f("ix_steps_run_id"), table_name="steps")
    op.drop_table("steps")

    op.drop_index("ix_runs_workflow_status", table_name="runs")
    op.drop_index(op.f("ix_runs_workflow_id"), table_name="runs")
    op.drop_table("runs")
