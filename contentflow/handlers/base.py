"""Contract implemented by step handlers."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Union

from ..contracts import StepDefinition
from ..packets import DataPacket
from ..persistence.repository import JobRepository


class ProcessedItemsView:
    """Processed-item tracking bound to one flow step and job.

    Items are keyed per flow step (``<step name>_<flow id>``), so two flows
    sharing a pipeline track their sources independently.
    """

    def __init__(self, repository: JobRepository, flow_step_id: str, job_id: int) -> None:
        self._repository = repository
        self.flow_step_id = flow_step_id
        self.job_id = job_id

    async def has(self, source_type: str, item_identifier: str) -> bool:
        return await self._repository.has_processed_item(
            self.flow_step_id, source_type, str(item_identifier)
        )

    async def mark(self, source_type: str, item_identifier: str) -> bool:
        """Record the item for this job; ``False`` if it was already recorded."""
        return await self._repository.add_processed_item(
            self.flow_step_id, source_type, str(item_identifier), self.job_id
        )


@dataclass
class StepContext:
    """Everything a handler may know about the step it runs in."""

    job_id: int
    flow_id: int
    pipeline_id: int
    user_id: int
    step: StepDefinition
    processed_items: ProcessedItemsView
    tool_result: Optional[DataPacket] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def settings(self) -> Dict[str, Any]:
        return self.step.settings

    @property
    def flow_step_id(self) -> str:
        return self.processed_items.flow_step_id


HandlerResult = Union[List[DataPacket], Awaitable[List[DataPacket]]]


class StepHandler(metaclass=abc.ABCMeta):
    """Base class for fetch, process, publish and update handlers.

    ``execute`` receives a copy of the job's packet history and returns only
    the packets it adds. It may be a coroutine or a plain function; plain
    functions run in a worker thread. Raise ``StepFailure`` to report a
    failure the job should record.
    """

    @abc.abstractmethod
    def execute(self, context: StepContext, packets: List[DataPacket]) -> HandlerResult:
        raise NotImplementedError
