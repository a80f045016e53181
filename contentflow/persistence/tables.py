from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel

ACTIVE_JOB_PREDICATE = "status IN ('pending', 'running')"


class JobRow(SQLModel, table=True):
    """One execution attempt of a flow."""

    __tablename__ = "jobs"
    __table_args__ = (
        # At most one pending/running job per flow.
        Index(
            "uq_jobs_active_flow",
            "flow_id",
            unique=True,
            sqlite_where=text(ACTIVE_JOB_PREDICATE),
            postgresql_where=text(ACTIVE_JOB_PREDICATE),
        ),
        # Job ids are never reused after retention cleanup.
        {"sqlite_autoincrement": True},
    )

    job_id: Optional[int] = Field(default=None, primary_key=True)
    pipeline_id: int = Field(index=True)
    flow_id: int = Field(index=True)
    user_id: int = 0
    status: str = Field(default="pending", index=True)
    trigger_type: str = Field(default="manual")
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    completed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    current_step_name: Optional[str] = None
    error_details: Optional[dict] = Field(default=None, sa_column=Column(JSON))


class PipelineRow(SQLModel, table=True):
    __tablename__ = "pipelines"
    __table_args__ = {"sqlite_autoincrement": True}

    pipeline_id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    steps: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))


class FlowRow(SQLModel, table=True):
    __tablename__ = "flows"
    __table_args__ = {"sqlite_autoincrement": True}

    flow_id: Optional[int] = Field(default=None, primary_key=True)
    pipeline_id: int = Field(foreign_key="pipelines.pipeline_id", index=True)
    name: str
    user_id: int = 0
    scheduling: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    step_overrides: dict = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )


class ProcessedItemRow(SQLModel, table=True):
    """Items a flow step has already handled."""

    __tablename__ = "processed_items"
    __table_args__ = (
        UniqueConstraint("flow_step_id", "source_type", "item_identifier"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    flow_step_id: str
    source_type: str
    item_identifier: str
    job_id: int = Field(index=True)
    processed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TriggerRow(SQLModel, table=True):
    """Recurring trigger registered with the SQL trigger backend."""

    __tablename__ = "triggers"

    key: str = Field(primary_key=True)
    payload: str = Field(primary_key=True)
    interval_seconds: int
    next_run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
