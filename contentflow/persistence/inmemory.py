"""In-memory implementations of the job repository and config store."""

from __future__ import annotations

import asyncio
import itertools
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..contracts import Flow, FlowScheduling, Pipeline, TriggerType
from ..errors import ActiveJobExistsError, ConfigurationError, JobNotFoundError
from ..utils.clock import Clock, utcnow
from .models import (
    ErrorDetails,
    JobRecord,
    JobStatus,
    ProcessedItem,
    check_transition,
)
from .repository import ConfigStore, JobRepository


class InMemoryJobRepository(JobRepository):
    """Store job state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. A single asyncio lock makes
    check-and-create and claim atomic within the process.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self._jobs: Dict[int, JobRecord] = {}
        self._ids = itertools.count(1)
        self._processed: Dict[Tuple[str, str, str], ProcessedItem] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    # ------------------------------------------------------------------
    async def create_job(
        self,
        pipeline_id: int,
        flow_id: int,
        user_id: int,
        trigger_type: TriggerType,
    ) -> JobRecord:
        async with self._lock:
            for job in self._jobs.values():
                if job.flow_id == flow_id and job.status.is_active:
                    raise ActiveJobExistsError(flow_id, job.job_id)
            job = JobRecord(
                job_id=next(self._ids),
                pipeline_id=pipeline_id,
                flow_id=flow_id,
                user_id=user_id,
                trigger_type=trigger_type,
                created_at=self._clock(),
            )
            self._jobs[job.job_id] = job
            return job.model_copy()

    async def get_job(self, job_id: int) -> JobRecord | None:
        job = self._jobs.get(job_id)
        return job.model_copy() if job else None

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        flow_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[JobRecord]:
        jobs = [
            job.model_copy()
            for job in sorted(self._jobs.values(), key=lambda j: j.job_id, reverse=True)
            if (status is None or job.status == status)
            and (flow_id is None or job.flow_id == flow_id)
        ]
        return jobs[:limit] if limit else jobs

    async def claim_next_pending(self, max_running: int) -> JobRecord | None:
        async with self._lock:
            running = sum(1 for j in self._jobs.values() if j.status == JobStatus.RUNNING)
            if running >= max_running:
                return None
            pending = [j for j in self._jobs.values() if j.status == JobStatus.PENDING]
            if not pending:
                return None
            job = min(pending, key=lambda j: j.job_id)
            check_transition(job.job_id, job.status, JobStatus.RUNNING)
            job.status = JobStatus.RUNNING
            job.started_at = self._clock()
            return job.model_copy()

    async def count_running(self) -> int:
        return sum(1 for j in self._jobs.values() if j.status == JobStatus.RUNNING)

    async def update_current_step(self, job_id: int, step_name: Optional[str]) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        job.current_step_name = step_name

    async def complete_job(
        self,
        job_id: int,
        status: JobStatus,
        error_details: ErrorDetails | None = None,
    ) -> JobRecord:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            check_transition(job_id, job.status, status)
            job.status = status
            job.completed_at = self._clock()
            job.error_details = error_details
            return job.model_copy()

    async def find_stuck_jobs(self, started_before: datetime) -> list[JobRecord]:
        return [
            job.model_copy()
            for job in sorted(self._jobs.values(), key=lambda j: j.job_id)
            if job.status == JobStatus.RUNNING
            and job.started_at is not None
            and job.started_at < started_before
        ]

    async def delete_finished_jobs(self, completed_before: datetime) -> int:
        async with self._lock:
            doomed = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status.is_terminal
                and job.completed_at is not None
                and job.completed_at < completed_before
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            return len(doomed)

    async def has_processed_item(
        self, flow_step_id: str, source_type: str, item_identifier: str
    ) -> bool:
        return (flow_step_id, source_type, item_identifier) in self._processed

    async def add_processed_item(
        self, flow_step_id: str, source_type: str, item_identifier: str, job_id: int
    ) -> bool:
        key = (flow_step_id, source_type, item_identifier)
        if key in self._processed:
            return False
        self._processed[key] = ProcessedItem(
            flow_step_id=flow_step_id,
            source_type=source_type,
            item_identifier=item_identifier,
            job_id=job_id,
            processed_at=self._clock(),
        )
        return True

    async def release_processed_items(self, job_id: int) -> int:
        doomed = [k for k, item in self._processed.items() if item.job_id == job_id]
        for key in doomed:
            del self._processed[key]
        return len(doomed)


def _next_free(ids: Iterator[int], taken: Dict[int, Any]) -> int:
    next_id = next(ids)
    while next_id in taken:
        next_id = next(ids)
    return next_id


class InMemoryConfigStore(ConfigStore):
    """Pipelines and flows kept in local memory."""

    def __init__(self) -> None:
        self._pipelines: Dict[int, Pipeline] = {}
        self._flows: Dict[int, Flow] = {}
        self._pipeline_ids = itertools.count(1)
        self._flow_ids = itertools.count(1)

    async def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        if pipeline.pipeline_id is None:
            next_id = _next_free(self._pipeline_ids, self._pipelines)
            pipeline = pipeline.model_copy(update={"pipeline_id": next_id})
        self._pipelines[pipeline.pipeline_id] = pipeline
        return pipeline.model_copy(deep=True)

    async def get_pipeline(self, pipeline_id: int) -> Pipeline | None:
        pipeline = self._pipelines.get(pipeline_id)
        return pipeline.model_copy(deep=True) if pipeline else None

    async def list_pipelines(self) -> list[Pipeline]:
        return [self._pipelines[k].model_copy(deep=True) for k in sorted(self._pipelines)]

    async def delete_pipeline(self, pipeline_id: int) -> List[int]:
        if self._pipelines.pop(pipeline_id, None) is None:
            return []
        flow_ids = [fid for fid, f in self._flows.items() if f.pipeline_id == pipeline_id]
        for flow_id in flow_ids:
            del self._flows[flow_id]
        return flow_ids

    async def save_flow(self, flow: Flow) -> Flow:
        if flow.pipeline_id not in self._pipelines:
            raise ConfigurationError(
                f"Flow '{flow.name}' references missing pipeline {flow.pipeline_id}"
            )
        if flow.flow_id is None:
            next_id = _next_free(self._flow_ids, self._flows)
            flow = flow.model_copy(update={"flow_id": next_id})
        self._flows[flow.flow_id] = flow
        return flow.model_copy(deep=True)

    async def get_flow(self, flow_id: int) -> Flow | None:
        flow = self._flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def list_flows(self, pipeline_id: Optional[int] = None) -> list[Flow]:
        return [
            self._flows[k].model_copy(deep=True)
            for k in sorted(self._flows)
            if pipeline_id is None or self._flows[k].pipeline_id == pipeline_id
        ]

    async def delete_flow(self, flow_id: int) -> bool:
        return self._flows.pop(flow_id, None) is not None

    async def update_flow_scheduling(self, flow_id: int, scheduling: FlowScheduling) -> None:
        flow = self._flows.get(flow_id)
        if flow is None:
            raise ConfigurationError(f"Flow {flow_id} not found")
        self._flows[flow_id] = flow.model_copy(update={"scheduling": scheduling.model_copy()})
