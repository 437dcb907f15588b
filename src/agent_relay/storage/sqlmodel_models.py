"""SQLModel ORM tables for orchestration state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class BatchRecord(SQLModel, table=True):
    __tablename__ = "batches"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_batches_owner_status", "owner", "status"),)

    batch_id: str = Field(primary_key=True)
    owner: str
    status: str
    task_ids_json: str = Field(sa_column=Column(Text, nullable=False))
    task_count: int
    skip_flags_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    aggregate_triggered: bool = Field(default=False)
    cancel_requested: bool = Field(default=False)
    aggregate_result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    version: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskRecord(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_batch_status", "batch_id", "status"),
        Index("idx_tasks_status_updated", "status", "updated_at"),
        Index("idx_tasks_owner_created", "owner", "created_at"),
    )

    task_id: str = Field(primary_key=True)
    owner: str
    subject: str
    batch_id: str | None = None
    status: str
    current_phase: str | None = None
    phase_results_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    dispatched_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    context_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    skip_phases_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    cancel_requested: bool = Field(default=False)
    version: int = Field(default=0)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class OrchestrationEvent(SQLModel, table=True):
    __tablename__ = "orchestration_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_orchestration_events_task_time", "task_id", "created_at"),
        Index("idx_orchestration_events_batch_time", "batch_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str | None = None
    batch_id: str | None = None
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
