"""
Error classes for contentflow.

Configuration errors are reported synchronously to whoever asked for the
invalid thing (job creation, flow activation). Step errors are raised by
handlers and caught at the engine boundary, where they become job record
fields; they never escape the engine.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ContentFlowError(Exception):
    """Base exception for contentflow."""


class ConfigurationError(ContentFlowError):
    """Missing pipeline/flow, invalid pipeline or schedule configuration."""


class HandlerNotFoundError(ConfigurationError):
    """No handler registered for a ``(step_type, slug)`` pair."""

    def __init__(self, step_type: str, slug: str, registered: Optional[list] = None):
        self.step_type = step_type
        self.slug = slug
        self.registered = registered or []
        super().__init__(
            f"No {step_type} handler registered for slug '{slug}'. "
            f"Registered: {self.registered}"
        )


class InvalidIntervalError(ConfigurationError):
    """Unknown or non-schedulable interval slug."""

    def __init__(self, interval: str):
        self.interval = interval
        super().__init__(f"Invalid schedule interval: {interval}")


class StepFailure(ContentFlowError):
    """
    Raised by a handler when its step cannot produce a usable result.

    ``fatal`` overrides the step's criticality flag: ``True`` always aborts
    the job, ``False`` lets it continue towards ``completed_with_errors``,
    ``None`` defers to the step definition.
    """

    def __init__(
        self,
        message: str,
        fatal: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.fatal = fatal
        self.details = details or {}
        super().__init__(message)


class PacketIntegrityError(ContentFlowError):
    """A step tried to replace an identifying metadata key on a packet."""


class ActiveJobExistsError(ContentFlowError):
    """A pending or running job already exists for the flow."""

    def __init__(self, flow_id: int, job_id: Optional[int] = None):
        self.flow_id = flow_id
        self.job_id = job_id
        super().__init__(
            f"Flow {flow_id} already has an active job"
            + (f" ({job_id})" if job_id is not None else "")
        )


class InvalidTransitionError(ContentFlowError):
    """Job status change not allowed by the state machine."""

    def __init__(self, job_id: int, current: str, requested: str):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Job {job_id} cannot move from '{current}' to '{requested}'"
        )


class JobNotFoundError(ContentFlowError):
    """Referenced job does not exist."""


class TriggerBackendError(ContentFlowError):
    """The trigger backend could not schedule, unschedule or query."""
