"""Data models for persisted job state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Union

from pydantic import BaseModel

from ..contracts import TriggerType
from ..errors import InvalidTransitionError


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    COMPLETED_NO_ITEMS = "completed_no_items"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    {
        JobStatus.COMPLETED,
        JobStatus.COMPLETED_WITH_ERRORS,
        JobStatus.COMPLETED_NO_ITEMS,
        JobStatus.FAILED,
    }
)
ACTIVE_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.PENDING, JobStatus.RUNNING})

# pending -> failed covers a job that could not be enqueued.
ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: TERMINAL_STATUSES,
}


def check_transition(job_id: int, current: JobStatus, requested: JobStatus) -> None:
    """Raise ``InvalidTransitionError`` unless ``current -> requested`` is allowed."""
    if requested not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(job_id, current.value, requested.value)


ErrorDetails = Union[str, Dict[str, Any]]


class JobRecord(BaseModel):
    """One execution attempt of a flow."""

    job_id: int
    pipeline_id: int
    flow_id: int
    user_id: int = 0
    status: JobStatus = JobStatus.PENDING
    trigger_type: TriggerType = TriggerType.MANUAL
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    current_step_name: Optional[str] = None
    error_details: Optional[ErrorDetails] = None


class ProcessedItem(BaseModel):
    """Marks an upstream item as handled by a flow step."""

    flow_step_id: str
    source_type: str
    item_identifier: str
    job_id: int
    processed_at: datetime
