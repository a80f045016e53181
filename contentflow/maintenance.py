"""Housekeeping for the job table: stuck job reports and retention cleanup."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional

from .config import EngineConfig
from .errors import JobNotFoundError
from .persistence.models import JobRecord, JobStatus
from .persistence.repository import JobRepository
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class JobMaintenance:
    """Periodic checks over job records.

    Stuck jobs are only reported; closing one is an explicit operator action
    (``fail_stuck_job``) because a long step may still be making progress.
    """

    def __init__(
        self,
        repository: JobRepository,
        config: Optional[EngineConfig] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._config = config or EngineConfig()
        self._clock = clock

    async def sweep_stuck_jobs(self) -> List[JobRecord]:
        """Running jobs older than the stuck timeout."""
        cutoff = self._clock() - timedelta(hours=self._config.stuck_timeout_hours)
        stuck = await self._repository.find_stuck_jobs(cutoff)
        for job in stuck:
            logger.warning(
                f"Job job_id={job.job_id} flow_id={job.flow_id} running since "
                f"{job.started_at.isoformat()} (step {job.current_step_name!r})"
            )
        return stuck

    async def fail_stuck_job(self, job_id: int, reason: str = "stuck") -> JobRecord:
        """Close a running job as failed and release its processed items.

        Raises:
            JobNotFoundError: Unknown job.
            InvalidTransitionError: The job is not running.
        """
        job = await self._repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        record = await self._repository.complete_job(
            job_id,
            JobStatus.FAILED,
            {
                "reason": "stuck",
                "message": reason,
                "step": job.current_step_name,
            },
        )
        await self._repository.release_processed_items(job_id)
        logger.warning(f"Job job_id={job_id} failed by operator: {reason}")
        return record

    async def cleanup_old_jobs(self) -> int:
        """Delete finished jobs older than the retention period."""
        cutoff = self._clock() - timedelta(days=self._config.job_retention_days)
        deleted = await self._repository.delete_finished_jobs(cutoff)
        if deleted:
            logger.info(f"Deleted {deleted} jobs completed before {cutoff.isoformat()}")
        return deleted

    async def run_once(self) -> dict:
        stuck = await self.sweep_stuck_jobs()
        deleted = await self.cleanup_old_jobs()
        return {"stuck": [job.job_id for job in stuck], "deleted": deleted}
