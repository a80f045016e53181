"""Repository abstractions for job records and pipeline/flow configuration."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from ..contracts import Flow, FlowScheduling, Pipeline, TriggerType
from .models import ErrorDetails, JobRecord, JobStatus


class JobRepository(Protocol):
    """Protocol for job record persistence backends."""

    async def create_job(
        self,
        pipeline_id: int,
        flow_id: int,
        user_id: int,
        trigger_type: TriggerType,
    ) -> JobRecord:
        """Insert a pending job.

        Raises:
            ActiveJobExistsError: If the flow already has a pending or
                running job. The check and the insert are atomic.
        """

    async def get_job(self, job_id: int) -> JobRecord | None:
        """Retrieve a job by id."""

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        flow_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[JobRecord]:
        """Return jobs ordered by id, newest first."""

    async def claim_next_pending(self, max_running: int) -> JobRecord | None:
        """Atomically move the oldest pending job to ``running``.

        Returns ``None`` when ``max_running`` jobs are already running or
        nothing is pending.
        """

    async def count_running(self) -> int:
        """Number of jobs currently running."""

    async def update_current_step(self, job_id: int, step_name: Optional[str]) -> None:
        """Record the step a running job is executing."""

    async def complete_job(
        self,
        job_id: int,
        status: JobStatus,
        error_details: ErrorDetails | None = None,
    ) -> JobRecord:
        """Move a job to a terminal status and set ``completed_at``.

        Raises:
            JobNotFoundError: Unknown job.
            InvalidTransitionError: The job is not in a state that may move
                to ``status``.
        """

    async def find_stuck_jobs(self, started_before: datetime) -> list[JobRecord]:
        """Running jobs whose ``started_at`` is older than ``started_before``."""

    async def delete_finished_jobs(self, completed_before: datetime) -> int:
        """Delete terminal jobs completed before the cutoff; return the count."""

    async def has_processed_item(
        self, flow_step_id: str, source_type: str, item_identifier: str
    ) -> bool:
        """Whether the item was already processed by the flow step."""

    async def add_processed_item(
        self, flow_step_id: str, source_type: str, item_identifier: str, job_id: int
    ) -> bool:
        """Record the item; ``False`` when it was already recorded."""

    async def release_processed_items(self, job_id: int) -> int:
        """Forget items recorded by ``job_id`` so a later job retries them."""


class ConfigStore(Protocol):
    """Protocol for pipeline and flow configuration storage."""

    async def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        """Insert or replace a pipeline; assigns ``pipeline_id`` when missing."""

    async def get_pipeline(self, pipeline_id: int) -> Pipeline | None:
        """Retrieve a pipeline by id."""

    async def list_pipelines(self) -> list[Pipeline]:
        """Return all pipelines."""

    async def delete_pipeline(self, pipeline_id: int) -> List[int]:
        """Delete a pipeline and its flows; return the deleted flow ids."""

    async def save_flow(self, flow: Flow) -> Flow:
        """Insert or replace a flow.

        Raises:
            ConfigurationError: If the referenced pipeline does not exist.
        """

    async def get_flow(self, flow_id: int) -> Flow | None:
        """Retrieve a flow by id."""

    async def list_flows(self, pipeline_id: Optional[int] = None) -> list[Flow]:
        """Return flows, optionally for one pipeline."""

    async def delete_flow(self, flow_id: int) -> bool:
        """Delete a flow; ``False`` when it did not exist."""

    async def update_flow_scheduling(self, flow_id: int, scheduling: FlowScheduling) -> None:
        """Persist a flow's scheduling config. Only the scheduler calls this."""
