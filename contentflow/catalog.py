"""Load pipelines and flows from YAML and remove them safely."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .constants import MANUAL_INTERVAL, validate_interval
from .contracts import Flow, FlowScheduling, Pipeline, StepDefinition, StepOverride
from .errors import ConfigurationError
from .persistence.repository import ConfigStore
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class FlowEntry(BaseModel):
    """A flow as written in a catalog file."""

    name: str
    pipeline: str
    user_id: int = 0
    interval: str = MANUAL_INTERVAL
    active: bool = False
    step_overrides: Dict[str, StepOverride] = Field(default_factory=dict)


class PipelineEntry(BaseModel):
    name: str
    steps: List[StepDefinition] = Field(default_factory=list)


class CatalogDocument(BaseModel):
    pipelines: List[PipelineEntry] = Field(default_factory=list)
    flows: List[FlowEntry] = Field(default_factory=list)


class CatalogLoadResult(BaseModel):
    pipelines: List[Pipeline] = Field(default_factory=list)
    flows: List[Flow] = Field(default_factory=list)
    activated: List[int] = Field(default_factory=list)


def parse_catalog(
    source: Union[str, Path, Dict[str, Any]],
    intervals: Optional[Dict[str, int]] = None,
) -> CatalogDocument:
    """Parse a catalog from a YAML path or an already loaded mapping."""
    if isinstance(source, dict):
        data = source
    else:
        with open(source) as f:
            data = yaml.safe_load(f) or {}
    try:
        document = CatalogDocument.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid catalog: {exc}") from exc

    names = {p.name for p in document.pipelines}
    for entry in document.flows:
        validate_interval(entry.interval, intervals=intervals)
        if entry.pipeline not in names:
            raise ConfigurationError(
                f"Flow '{entry.name}' references unknown pipeline '{entry.pipeline}'"
            )
    return document


async def load_catalog(
    source: Union[str, Path, Dict[str, Any]],
    store: ConfigStore,
    scheduler: Optional[Scheduler] = None,
) -> CatalogLoadResult:
    """Upsert a catalog's pipelines and flows (matched by name) into ``store``.

    Flows marked ``active`` are activated through ``scheduler`` when one is
    given; the scheduler stays the only writer of a flow's status.
    """
    document = parse_catalog(source, scheduler.intervals if scheduler else None)
    result = CatalogLoadResult()

    existing_pipelines = {p.name: p for p in await store.list_pipelines()}
    saved: Dict[str, Pipeline] = {}
    for entry in document.pipelines:
        current = existing_pipelines.get(entry.name)
        pipeline = await store.save_pipeline(
            Pipeline(
                pipeline_id=current.pipeline_id if current else None,
                name=entry.name,
                steps=entry.steps,
            )
        )
        saved[entry.name] = pipeline
        result.pipelines.append(pipeline)
        logger.info(f"Loaded pipeline '{pipeline.name}' (id={pipeline.pipeline_id})")

    for entry in document.flows:
        pipeline = saved[entry.pipeline]
        current = next(
            (
                f
                for f in await store.list_flows(pipeline.pipeline_id)
                if f.name == entry.name
            ),
            None,
        )
        scheduling = current.scheduling if current else FlowScheduling()
        interval_changed = (
            current is not None
            and scheduler is not None
            and scheduling.interval != entry.interval
        )
        if not interval_changed:
            scheduling = scheduling.model_copy(update={"interval": entry.interval})
        flow = await store.save_flow(
            Flow(
                flow_id=current.flow_id if current else None,
                pipeline_id=pipeline.pipeline_id,
                name=entry.name,
                user_id=entry.user_id,
                scheduling=scheduling,
                step_overrides=entry.step_overrides,
            )
        )
        if interval_changed:
            outcome = await scheduler.reschedule(flow.flow_id, entry.interval)
            if not outcome.success:
                raise ConfigurationError(outcome.reason)
        if entry.active and scheduler is not None:
            outcome = await scheduler.activate(flow.flow_id)
            if not outcome.success:
                raise ConfigurationError(outcome.reason)
            result.activated.append(flow.flow_id)
        result.flows.append(await store.get_flow(flow.flow_id) or flow)
        logger.info(f"Loaded flow '{flow.name}' (id={flow.flow_id})")
    return result


async def delete_flow(store: ConfigStore, scheduler: Scheduler, flow_id: int) -> bool:
    """Remove a flow's trigger, then the flow itself."""
    outcome = await scheduler.deactivate(flow_id)
    if not outcome.success and await store.get_flow(flow_id) is not None:
        raise ConfigurationError(outcome.reason)
    return await store.delete_flow(flow_id)


async def delete_pipeline(
    store: ConfigStore, scheduler: Scheduler, pipeline_id: int
) -> List[int]:
    """Deactivate every flow of a pipeline, then delete it with its flows.

    Returns the ids of the deleted flows. Nothing is deleted when a trigger
    cannot be removed.
    """
    for flow in await store.list_flows(pipeline_id):
        outcome = await scheduler.deactivate(flow.flow_id)
        if not outcome.success:
            raise ConfigurationError(
                f"Cannot delete pipeline {pipeline_id}: {outcome.reason}"
            )
    flow_ids = await store.delete_pipeline(pipeline_id)
    logger.info(f"Deleted pipeline {pipeline_id} and flows {flow_ids}")
    return flow_ids
