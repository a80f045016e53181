"""Core data contracts: pipelines, flows, queue messages and results."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .constants import MANUAL_INTERVAL

logger = logging.getLogger(__name__)


class StepType(str, Enum):
    """Built-in step types. The registry accepts any other string too."""

    FETCH = "fetch"
    PROCESS = "process"
    PUBLISH = "publish"
    UPDATE = "update"


class TriggerType(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class StepDefinition(BaseModel):
    """One stage of a pipeline bound to a handler."""

    name: str
    step_type: str
    handler_slug: str
    settings: Dict[str, Any] = Field(default_factory=dict)
    critical: bool = True
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class Pipeline(BaseModel):
    """Reusable ordered template of steps."""

    pipeline_id: Optional[int] = None
    name: str
    steps: List[StepDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_step_names(self) -> "Pipeline":
        names = [step.name for step in self.steps]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate step names in pipeline: {duplicates}")
        return self

    def get_step(self, name: str) -> Optional[StepDefinition]:
        return next((s for s in self.steps if s.name == name), None)


class FlowScheduling(BaseModel):
    """Persisted scheduling config of a flow."""

    interval: str = MANUAL_INTERVAL
    status: Literal["active", "inactive"] = "inactive"
    last_run_at: Optional[datetime] = None


class StepOverride(BaseModel):
    """Per-flow replacement of a pipeline step's handler and settings."""

    handler_slug: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)


class Flow(BaseModel):
    """A scheduled/runnable instance of a pipeline."""

    flow_id: Optional[int] = None
    pipeline_id: int
    name: str
    user_id: int = 0
    scheduling: FlowScheduling = Field(default_factory=FlowScheduling)
    step_overrides: Dict[str, StepOverride] = Field(default_factory=dict)

    def resolve_steps(self, pipeline: Pipeline) -> List[StepDefinition]:
        """Return the pipeline's steps with this flow's overrides applied."""
        resolved = []
        for step in pipeline.steps:
            override = self.step_overrides.get(step.name)
            if override is None:
                resolved.append(step)
                continue
            resolved.append(
                step.model_copy(
                    update={
                        "handler_slug": override.handler_slug or step.handler_slug,
                        "settings": {**step.settings, **override.settings},
                    }
                )
            )
        unknown = set(self.step_overrides) - {s.name for s in pipeline.steps}
        if unknown:
            logger.warning(
                f"Flow {self.flow_id} overrides unknown steps {sorted(unknown)}; ignored"
            )
        return resolved


class JobMessage(BaseModel):
    """Envelope published to the work queue when a job is created."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_id: int
    flow_id: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "JobMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)


class JobCreationResult(BaseModel):
    success: bool
    job_id: Optional[int] = None
    reason: Optional[str] = None


class ScheduleResult(BaseModel):
    """Outcome of a scheduler operation, returned instead of raised."""

    success: bool
    flow_id: int
    interval: Optional[str] = None
    next_run: Optional[datetime] = None
    reason: Optional[str] = None
