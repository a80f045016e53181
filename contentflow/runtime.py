"""Wire repositories, transport, triggers and services into one runtime."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .config import ContentFlowConfig, load_config
from .dispatch import JobCreator
from .engine import StepExecutor
from .execute import JobWorker
from .gate import ConcurrencyGate
from .maintenance import JobMaintenance
from .persistence import get_config_store, get_repository
from .persistence.repository import ConfigStore, JobRepository
from .registry import REGISTRY, HandlerRegistry
from .scheduler import Scheduler
from .transports import BaseTransport, get_transport
from .triggers import TriggerBackend, TriggerPump, get_trigger_backend
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: ContentFlowConfig
    repository: JobRepository
    config_store: ConfigStore
    transport: BaseTransport
    trigger_backend: TriggerBackend
    registry: HandlerRegistry
    job_creator: JobCreator
    gate: ConcurrencyGate
    engine: StepExecutor
    worker: JobWorker
    scheduler: Scheduler
    pump: TriggerPump
    maintenance: JobMaintenance

    async def serve(self, lifespan: Optional[float] = None) -> None:
        """Run the worker, trigger pump and periodic maintenance together."""
        await self.transport.connect()
        try:
            results = await self.scheduler.sync()
            failed = [r for r in results if not r.success]
            if failed:
                logger.warning(f"{len(failed)} flows could not be re-armed at startup")
            await asyncio.gather(
                self.worker.start(lifespan=lifespan),
                self.pump.run(lifespan=lifespan),
                self._maintenance_loop(lifespan),
            )
        finally:
            await self.transport.disconnect()

    async def _maintenance_loop(self, lifespan: Optional[float]) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        interval = self.config.worker.maintenance_interval_seconds
        while deadline is None or loop.time() < deadline:
            await self.maintenance.run_once()
            delay = interval
            if deadline is not None:
                delay = min(delay, max(deadline - loop.time(), 0))
            await asyncio.sleep(delay)


def build_runtime(
    config: Optional[ContentFlowConfig] = None,
    *,
    repository: Optional[JobRepository] = None,
    config_store: Optional[ConfigStore] = None,
    transport: Optional[BaseTransport] = None,
    trigger_backend: Optional[TriggerBackend] = None,
    registry: Optional[HandlerRegistry] = None,
    clock: Clock = utcnow,
) -> Runtime:
    """Build every service from ``config``; explicit arguments take precedence."""
    config = config or load_config()
    repository = repository or get_repository(config=config)
    config_store = config_store or get_config_store(config=config)
    transport = transport or get_transport(config=config)
    trigger_backend = trigger_backend or get_trigger_backend(config=config)
    registry = registry or REGISTRY
    if config.handler_modules:
        registry.add_modules(config.handler_modules)

    job_creator = JobCreator(repository, config_store, transport)
    gate = ConcurrencyGate(repository, config.engine.max_concurrent_jobs)
    engine = StepExecutor(
        repository,
        config_store,
        registry=registry,
        step_timeout=config.engine.step_timeout_seconds,
    )
    worker = JobWorker(transport, repository, engine, gate)
    scheduler = Scheduler(
        config_store,
        trigger_backend,
        job_creator,
        intervals=config.scheduler.intervals,
        clock=clock,
    )
    pump = TriggerPump(
        trigger_backend, poll_interval=config.scheduler.poll_interval_seconds, clock=clock
    )
    scheduler.attach(pump)
    maintenance = JobMaintenance(repository, config.engine, clock=clock)
    return Runtime(
        config=config,
        repository=repository,
        config_store=config_store,
        transport=transport,
        trigger_backend=trigger_backend,
        registry=registry,
        job_creator=job_creator,
        gate=gate,
        engine=engine,
        worker=worker,
        scheduler=scheduler,
        pump=pump,
        maintenance=maintenance,
    )
