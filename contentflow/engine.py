"""Step execution engine: run an admitted job's pipeline steps in order."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .constants import DEFAULT_STEP_TIMEOUT_SECONDS
from .contracts import Flow, Pipeline, StepDefinition, StepType
from .correlation import find_handler_result
from .errors import HandlerNotFoundError, InvalidTransitionError, StepFailure
from .handlers.base import ProcessedItemsView, StepContext
from .packets import DataPacket
from .persistence.models import JobRecord, JobStatus
from .persistence.repository import ConfigStore, JobRepository
from .registry import REGISTRY, HandlerRegistry
from .registry.models import HandlerDescriptor

logger = logging.getLogger(__name__)

MISSING_TOOL_RESULT = "upstream tool did not execute for this handler"


@dataclass
class JobOutcome:
    """Terminal status of an executed job and what it produced."""

    job_id: int
    status: JobStatus
    packets: List[DataPacket] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    error_details: Optional[Dict[str, Any]] = None


class _AbortJob(Exception):
    """Internal signal carrying the error details of a failed job."""

    def __init__(self, details: Dict[str, Any]):
        self.details = details
        super().__init__(details.get("message"))


def flow_step_id(step: StepDefinition, flow_id: int) -> str:
    return f"{step.name}_{flow_id}"


class StepExecutor:
    """Execute the steps of an admitted job and record its terminal status.

    Exceptions raised by handlers never escape :meth:`execute`; they are
    turned into the job's status and ``error_details``.
    """

    def __init__(
        self,
        repository: JobRepository,
        config_store: ConfigStore,
        registry: HandlerRegistry | None = None,
        step_timeout: float = DEFAULT_STEP_TIMEOUT_SECONDS,
    ) -> None:
        self._repository = repository
        self._config_store = config_store
        self._registry = registry or REGISTRY
        self._step_timeout = step_timeout

    async def execute(self, job: JobRecord) -> JobOutcome:
        """Run ``job`` (already ``running``) to a terminal status."""
        logger.info(f"Executing job_id={job.job_id} flow_id={job.flow_id}")
        history: List[DataPacket] = []
        errors: List[Dict[str, Any]] = []
        try:
            pipeline, flow = await self._load_configuration(job)
            for step in flow.resolve_steps(pipeline):
                produced = await self._run_step(job, step, history, errors)
                if produced is None:
                    continue
                if step.step_type == StepType.FETCH.value and not produced:
                    logger.info(
                        f"Fetch step '{step.name}' found no items for job_id={job.job_id}"
                    )
                    return await self._finish(
                        job, JobStatus.COMPLETED_NO_ITEMS, history, errors
                    )
                history.extend(produced)
        except _AbortJob as abort:
            if errors:
                abort.details.setdefault("errors", errors)
            return await self._finish(job, JobStatus.FAILED, history, errors, abort.details)
        except Exception as exc:
            logger.exception(f"Unexpected engine error for job_id={job.job_id}")
            details = {
                "reason": "exception",
                "message": f"{type(exc).__name__}: {exc}",
                "exception_type": type(exc).__name__,
            }
            return await self._finish(job, JobStatus.FAILED, history, errors, details)

        if errors:
            status = JobStatus.COMPLETED_WITH_ERRORS
            details = {"reason": "step_errors", "errors": errors}
        elif not history:
            status, details = JobStatus.COMPLETED_NO_ITEMS, None
        else:
            status, details = JobStatus.COMPLETED, None
        return await self._finish(job, status, history, errors, details)

    # ------------------------------------------------------------------
    async def _load_configuration(self, job: JobRecord) -> tuple[Pipeline, Flow]:
        flow = await self._config_store.get_flow(job.flow_id)
        if flow is None:
            raise _AbortJob(
                {"reason": "configuration", "message": f"Flow {job.flow_id} not found"}
            )
        pipeline = await self._config_store.get_pipeline(job.pipeline_id)
        if pipeline is None:
            raise _AbortJob(
                {
                    "reason": "configuration",
                    "message": f"Pipeline {job.pipeline_id} not found",
                }
            )
        if flow.pipeline_id != pipeline.pipeline_id:
            raise _AbortJob(
                {
                    "reason": "configuration",
                    "message": (
                        f"Flow {flow.flow_id} belongs to pipeline {flow.pipeline_id}, "
                        f"not {pipeline.pipeline_id}"
                    ),
                }
            )
        if not pipeline.steps:
            raise _AbortJob(
                {
                    "reason": "configuration",
                    "message": f"Pipeline {pipeline.pipeline_id} has no steps",
                }
            )
        return pipeline, flow

    async def _run_step(
        self,
        job: JobRecord,
        step: StepDefinition,
        history: List[DataPacket],
        errors: List[Dict[str, Any]],
    ) -> Optional[List[DataPacket]]:
        """Run one step; ``None`` means a non-fatal failure was recorded."""
        await self._repository.update_current_step(job.job_id, step.name)
        base = {"step": step.name, "step_type": step.step_type, "handler": step.handler_slug}

        try:
            descriptor = self._registry.resolve(step.step_type, step.handler_slug)
        except HandlerNotFoundError as exc:
            raise _AbortJob(
                {**base, "reason": "handler_not_found", "message": str(exc)}
            ) from exc

        tool_result = None
        if step.step_type == StepType.UPDATE.value:
            tool_result = find_handler_result(history, step.handler_slug)

        context = StepContext(
            job_id=job.job_id,
            flow_id=job.flow_id,
            pipeline_id=job.pipeline_id,
            user_id=job.user_id,
            step=step,
            processed_items=ProcessedItemsView(
                self._repository, flow_step_id(step, job.flow_id), job.job_id
            ),
            tool_result=tool_result,
        )
        timeout = step.timeout_seconds or self._step_timeout

        try:
            if (
                step.step_type == StepType.UPDATE.value
                and tool_result is None
                and descriptor.requires_tool_result
            ):
                raise StepFailure(MISSING_TOOL_RESULT)
            result = await asyncio.wait_for(
                self._invoke(descriptor, context, history), timeout=timeout
            )
        except StepFailure as exc:
            fatal = step.critical if exc.fatal is None else exc.fatal
            error = {**base, "reason": "step_failed", "message": str(exc)}
            if exc.details:
                error["details"] = exc.details
            return self._record_failure(job, error, fatal, errors)
        except asyncio.TimeoutError:
            error = {
                **base,
                "reason": "timeout",
                "message": f"Step '{step.name}' exceeded {timeout}s",
            }
            return self._record_failure(job, error, step.critical, errors)
        except Exception as exc:
            logger.exception(
                f"Handler {step.step_type}/{step.handler_slug} raised in job_id={job.job_id}"
            )
            raise _AbortJob(
                {
                    **base,
                    "reason": "exception",
                    "message": f"{type(exc).__name__}: {exc}",
                    "exception_type": type(exc).__name__,
                }
            ) from exc

        if not isinstance(result, list) or not all(
            isinstance(packet, DataPacket) for packet in result
        ):
            raise _AbortJob(
                {
                    **base,
                    "reason": "invalid_output",
                    "message": (
                        f"Handler returned {type(result).__name__}; "
                        "expected a list of DataPacket"
                    ),
                }
            )
        logger.debug(
            f"Step '{step.name}' added {len(result)} packets to job_id={job.job_id}"
        )
        return [packet.with_step(step.name) for packet in result]

    def _record_failure(
        self,
        job: JobRecord,
        error: Dict[str, Any],
        fatal: bool,
        errors: List[Dict[str, Any]],
    ) -> None:
        if fatal:
            raise _AbortJob(error)
        logger.warning(
            f"Non-critical step '{error['step']}' failed in job_id={job.job_id}: "
            f"{error['message']}"
        )
        errors.append(error)
        return None

    async def _invoke(
        self,
        descriptor: HandlerDescriptor,
        context: StepContext,
        history: List[DataPacket],
    ) -> Any:
        handler = descriptor.create_handler()
        execute = getattr(handler, "execute", handler)
        packets = [packet.model_copy(deep=True) for packet in history]
        if inspect.iscoroutinefunction(execute):
            return await execute(context, packets)
        result = await asyncio.to_thread(execute, context, packets)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _finish(
        self,
        job: JobRecord,
        status: JobStatus,
        history: List[DataPacket],
        errors: List[Dict[str, Any]],
        details: Optional[Dict[str, Any]] = None,
    ) -> JobOutcome:
        if status == JobStatus.FAILED:
            released = await self._repository.release_processed_items(job.job_id)
            if released:
                logger.info(
                    f"Released {released} processed items of failed job_id={job.job_id}"
                )
        try:
            record = await self._repository.complete_job(job.job_id, status, details)
        except InvalidTransitionError as exc:
            # e.g. an operator failed the job while it was still running
            logger.warning(f"Could not close job_id={job.job_id}: {exc}")
            current = await self._repository.get_job(job.job_id)
            status = current.status if current else status
        else:
            status = record.status
        log = logger.error if status == JobStatus.FAILED else logger.info
        log(f"Job job_id={job.job_id} flow_id={job.flow_id} finished: {status.value}")
        return JobOutcome(
            job_id=job.job_id,
            status=status,
            packets=history,
            errors=errors,
            error_details=details,
        )
