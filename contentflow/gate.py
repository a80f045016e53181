"""Global ceiling on concurrently running jobs."""

from __future__ import annotations

import logging
from typing import Optional

from .constants import DEFAULT_MAX_CONCURRENT_JOBS
from .persistence.models import JobRecord
from .persistence.repository import JobRepository

logger = logging.getLogger(__name__)


class ConcurrencyGate:
    """Admit pending jobs oldest-first while fewer than ``max_concurrent`` run.

    Admission is the repository's atomic claim, so several workers sharing
    one database never exceed the ceiling together.
    """

    def __init__(
        self, repository: JobRepository, max_concurrent: int = DEFAULT_MAX_CONCURRENT_JOBS
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._repository = repository
        self.max_concurrent = max_concurrent

    async def admit(self) -> Optional[JobRecord]:
        """Claim the next pending job, or ``None`` if at capacity or idle."""
        job = await self._repository.claim_next_pending(self.max_concurrent)
        if job is not None:
            logger.debug(f"Admitted job_id={job.job_id} flow_id={job.flow_id}")
        return job

    async def available_slots(self) -> int:
        running = await self._repository.count_running()
        return max(self.max_concurrent - running, 0)
