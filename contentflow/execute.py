"""Job worker: consume the work queue and run admitted jobs."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, List, Optional, Set

from .constants import JOBS_TOPIC, DEFAULT_RETAINED_OUTCOMES
from .engine import JobOutcome, StepExecutor
from .gate import ConcurrencyGate
from .persistence.models import JobRecord, JobStatus
from .persistence.repository import JobRepository
from .transports import BaseTransport
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)


class JobWorker:
    """Runs jobs by listening to transport messages.

    A queue message only wakes the worker up; which job runs next is decided
    by the concurrency gate, so redelivered or stale messages are harmless.
    """

    def __init__(
        self,
        transport: BaseTransport,
        repository: JobRepository,
        engine: StepExecutor,
        gate: ConcurrencyGate,
        topic: str = JOBS_TOPIC,
        retained_outcomes: int = DEFAULT_RETAINED_OUTCOMES,
    ) -> None:
        self._transport = transport
        self._repository = repository
        self._engine = engine
        self._gate = gate
        self._topic = topic
        self._tasks: Set[asyncio.Task] = set()
        # most recent outcomes only; run_until_idle collects its own in full
        self.outcomes: Deque[JobOutcome] = deque(maxlen=retained_outcomes)
        self._collectors: List[List[JobOutcome]] = []

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Listen on the jobs topic until cancelled or ``lifespan`` elapses."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        attempt = 0
        await self.drain()
        while deadline is None or loop.time() < deadline:
            remaining = deadline - loop.time() if deadline else None
            try:
                async for raw_message, message in self._transport.subscribe(
                    self._topic, lifespan=remaining
                ):
                    attempt = 0
                    logger.debug(
                        f"Wake-up for job_id={message.job_id} flow_id={message.flow_id}"
                    )
                    await self.drain()
                    await self._transport.ack(raw_message)
                break
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                attempt += 1
                logger.error(f"Transport error on {self._topic}: {exc}; backing off")
                await schedule_retry(attempt, cap=30.0)
        await self.wait_for_jobs()

    async def drain(self) -> int:
        """Admit and start as many jobs as the gate allows; return the count."""
        started = 0
        while True:
            job = await self._gate.admit()
            if job is None:
                return started
            task = asyncio.create_task(self._run(job), name=f"job-{job.job_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1

    async def _run(self, job: JobRecord) -> None:
        try:
            outcome = await self._engine.execute(job)
            self.outcomes.append(outcome)
            for collected in self._collectors:
                collected.append(outcome)
        except Exception:
            logger.exception(f"Worker could not finish job_id={job.job_id}")
        finally:
            await self.drain()

    async def wait_for_jobs(self) -> None:
        """Wait until every job started by this worker has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_until_idle(
        self, poll_interval: float = 0.05, timeout: Optional[float] = None
    ) -> List[JobOutcome]:
        """Run jobs until nothing is pending or running; return what finished meanwhile.

        Used by tests and one-shot CLI runs; the queue itself is not read.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None
        collected: List[JobOutcome] = []
        self._collectors.append(collected)
        try:
            while True:
                await self.drain()
                if self._tasks:
                    await asyncio.wait(
                        list(self._tasks), return_when=asyncio.FIRST_COMPLETED
                    )
                    continue
                pending = await self._repository.list_jobs(
                    status=JobStatus.PENDING, limit=1
                )
                if not pending and await self._repository.count_running() == 0:
                    return collected
                if deadline is not None and loop.time() >= deadline:
                    logger.warning("run_until_idle timed out with jobs still queued")
                    return collected
                await asyncio.sleep(poll_interval)
        finally:
            self._collectors.remove(collected)
