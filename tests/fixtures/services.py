"""Helpers wiring in-memory services together for tests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from contentflow.contracts import Flow, FlowScheduling, Pipeline, StepDefinition, StepOverride
from contentflow.dispatch import JobCreator
from contentflow.engine import StepExecutor
from contentflow.execute import JobWorker
from contentflow.gate import ConcurrencyGate
from contentflow.persistence import InMemoryConfigStore, InMemoryJobRepository
from contentflow.registry import HandlerRegistry
from contentflow.scheduler import Scheduler
from contentflow.transports import InMemoryTransport
from contentflow.triggers import InMemoryTriggerBackend, TriggerBackend

from tests.fixtures.handlers import build_registry


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@dataclass
class Services:
    repository: Any
    store: Any
    transport: InMemoryTransport
    triggers: TriggerBackend
    registry: HandlerRegistry
    creator: JobCreator
    gate: ConcurrencyGate
    engine: StepExecutor
    worker: JobWorker
    scheduler: Scheduler
    clock: FakeClock


def build_services(
    registry: Optional[HandlerRegistry] = None,
    max_concurrent: int = 2,
    step_timeout: float = 5.0,
    repository: Any = None,
    store: Any = None,
    triggers: Optional[TriggerBackend] = None,
) -> Services:
    clock = FakeClock()
    repository = repository or InMemoryJobRepository(clock=clock)
    store = store or InMemoryConfigStore()
    transport = InMemoryTransport()
    triggers = triggers or InMemoryTriggerBackend()
    registry = registry or build_registry()
    creator = JobCreator(repository, store, transport)
    gate = ConcurrencyGate(repository, max_concurrent)
    engine = StepExecutor(repository, store, registry=registry, step_timeout=step_timeout)
    worker = JobWorker(transport, repository, engine, gate)
    scheduler = Scheduler(store, triggers, creator, clock=clock)
    return Services(
        repository=repository,
        store=store,
        transport=transport,
        triggers=triggers,
        registry=registry,
        creator=creator,
        gate=gate,
        engine=engine,
        worker=worker,
        scheduler=scheduler,
        clock=clock,
    )


def step(name: str, step_type: str, slug: str, **kwargs: Any) -> StepDefinition:
    return StepDefinition(name=name, step_type=step_type, handler_slug=slug, **kwargs)


async def seed_flow(
    store: Any,
    steps: List[StepDefinition],
    interval: str = "manual",
    name: str = "flow",
    user_id: int = 7,
    overrides: Optional[Dict[str, StepOverride]] = None,
) -> Tuple[Pipeline, Flow]:
    pipeline = await store.save_pipeline(Pipeline(name=f"{name}-pipeline", steps=steps))
    flow = await store.save_flow(
        Flow(
            pipeline_id=pipeline.pipeline_id,
            name=name,
            user_id=user_id,
            scheduling=FlowScheduling(interval=interval),
            step_overrides=overrides or {},
        )
    )
    return pipeline, flow


ITEMS = [
    {"id": 1, "title": "First", "body": "hello"},
    {"id": 2, "title": "Second", "body": "world"},
]
