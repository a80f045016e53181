"""Job creation: validate a flow, create its job and enqueue it."""

from __future__ import annotations

import logging

from .constants import JOBS_TOPIC
from .contracts import JobCreationResult, JobMessage, TriggerType
from .errors import ActiveJobExistsError
from .persistence.models import JobStatus
from .persistence.repository import ConfigStore, JobRepository
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class JobCreator:
    """Service responsible for turning a run request into a queued job."""

    def __init__(
        self,
        repository: JobRepository,
        config_store: ConfigStore,
        transport: BaseTransport,
        topic: str = JOBS_TOPIC,
    ) -> None:
        self._repository = repository
        self._config_store = config_store
        self._transport = transport
        self._topic = topic

    async def create_and_schedule_job(
        self,
        pipeline_id: int,
        flow_id: int,
        user_id: int = 0,
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> JobCreationResult:
        """Create a pending job for ``flow_id`` and publish it to the work queue.

        Args:
            pipeline_id: Pipeline the flow must reference.
            flow_id: Flow to run.
            user_id: Owner recorded on the job.
            trigger_type: ``scheduled`` for trigger fires, ``manual`` otherwise.

        Returns:
            A ``JobCreationResult``; ``success=False`` carries the reason and
            no job is left pending.
        """
        pipeline = await self._config_store.get_pipeline(pipeline_id)
        if pipeline is None:
            return self._reject(flow_id, f"Pipeline {pipeline_id} not found")
        flow = await self._config_store.get_flow(flow_id)
        if flow is None:
            return self._reject(flow_id, f"Flow {flow_id} not found")
        if flow.pipeline_id != pipeline_id:
            return self._reject(
                flow_id,
                f"Flow {flow_id} belongs to pipeline {flow.pipeline_id}, not {pipeline_id}",
            )
        if not pipeline.steps:
            return self._reject(flow_id, f"Pipeline {pipeline_id} has no steps")

        try:
            job = await self._repository.create_job(
                pipeline_id, flow_id, user_id, TriggerType(trigger_type)
            )
        except ActiveJobExistsError as exc:
            return self._reject(flow_id, str(exc), job_id=exc.job_id)

        message = JobMessage(job_id=job.job_id, flow_id=flow_id)
        try:
            await self._transport.publish(self._topic, message)
        except Exception as exc:
            logger.error(f"Failed to enqueue job_id={job.job_id} flow_id={flow_id}: {exc}")
            await self._repository.complete_job(
                job.job_id,
                JobStatus.FAILED,
                {
                    "reason": "enqueue_failed",
                    "message": f"{type(exc).__name__}: {exc}",
                },
            )
            return JobCreationResult(
                success=False, job_id=job.job_id, reason=f"Failed to enqueue job: {exc}"
            )

        logger.info(
            f"Created job_id={job.job_id} for flow_id={flow_id} "
            f"({TriggerType(trigger_type).value})"
        )
        return JobCreationResult(success=True, job_id=job.job_id)

    async def retry_job(self, job_id: int) -> JobCreationResult:
        """Create a fresh manual job for the flow of a finished job.

        The original job record is left untouched.
        """
        job = await self._repository.get_job(job_id)
        if job is None:
            return JobCreationResult(success=False, reason=f"Job {job_id} not found")
        if not job.status.is_terminal:
            return JobCreationResult(
                success=False,
                job_id=job_id,
                reason=f"Job {job_id} is still {job.status.value}",
            )
        flow = await self._config_store.get_flow(job.flow_id)
        pipeline_id = flow.pipeline_id if flow else job.pipeline_id
        logger.info(f"Retrying job_id={job_id} for flow_id={job.flow_id}")
        return await self.create_and_schedule_job(
            pipeline_id, job.flow_id, job.user_id, TriggerType.MANUAL
        )

    def _reject(self, flow_id: int, reason: str, job_id=None) -> JobCreationResult:
        logger.warning(f"Job not created for flow_id={flow_id}: {reason}")
        return JobCreationResult(success=False, job_id=job_id, reason=reason)
