"""Map flow scheduling config onto recurring triggers."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from .constants import MANUAL_INTERVAL, RUN_FLOW_TRIGGER, interval_table, validate_interval
from .contracts import Flow, JobCreationResult, ScheduleResult, TriggerType
from .dispatch import JobCreator
from .errors import InvalidIntervalError, TriggerBackendError
from .persistence.repository import ConfigStore
from .triggers import TriggerBackend, TriggerPump
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


def trigger_payload(flow_id: int) -> Dict[str, Any]:
    return {"flow_id": int(flow_id)}


class Scheduler:
    """
    Owns the scheduling state of flows and the triggers that fire them.

    Every public operation reports failure through ``ScheduleResult`` (or
    ``JobCreationResult``) rather than raising. The persisted flow status is
    only changed after the trigger backend call it depends on succeeded.

    Usage:
        scheduler = Scheduler(store, InMemoryTriggerBackend(), creator)
        await scheduler.activate(flow_id)
        await scheduler.next_run(flow_id)
    """

    def __init__(
        self,
        config_store: ConfigStore,
        trigger_backend: TriggerBackend,
        job_creator: JobCreator,
        intervals: Optional[Mapping[str, int]] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._config_store = config_store
        self._backend = trigger_backend
        self._job_creator = job_creator
        self._intervals = interval_table(intervals)
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def intervals(self) -> Dict[str, int]:
        return dict(self._intervals)

    def attach(self, pump: TriggerPump) -> None:
        """Route this scheduler's trigger fires from ``pump``."""
        pump.register(RUN_FLOW_TRIGGER, self.handle_trigger)

    # ------------------------------------------------------------------
    async def activate(self, flow_id: int) -> ScheduleResult:
        async with self._lock:
            return await self._activate(flow_id)

    async def _activate(self, flow_id: int) -> ScheduleResult:
        flow = await self._config_store.get_flow(flow_id)
        if flow is None:
            return self._failure(flow_id, f"Flow {flow_id} not found")
        interval = flow.scheduling.interval
        try:
            validate_interval(interval, intervals=self._intervals)
        except InvalidIntervalError as exc:
            return self._failure(flow_id, str(exc), interval)
        if interval == MANUAL_INTERVAL:
            logger.debug(f"Flow {flow_id} is manual; nothing to activate")
            return ScheduleResult(success=True, flow_id=flow_id, interval=interval)

        payload = trigger_payload(flow_id)
        try:
            existing = await self._backend.next_scheduled(RUN_FLOW_TRIGGER, payload)
            if flow.scheduling.status == "active" and existing is not None:
                return ScheduleResult(
                    success=True, flow_id=flow_id, interval=interval, next_run=existing
                )
            await self._backend.unschedule(RUN_FLOW_TRIGGER, payload)
            seconds = self._intervals[interval]
            next_run = await self._backend.schedule_recurring(
                self._clock() + timedelta(seconds=seconds), seconds, RUN_FLOW_TRIGGER, payload
            )
        except TriggerBackendError as exc:
            return self._failure(flow_id, f"Trigger backend error: {exc}", interval)

        await self._config_store.update_flow_scheduling(
            flow_id, flow.scheduling.model_copy(update={"status": "active"})
        )
        logger.info(f"Flow {flow_id} activated ({interval}); next run {next_run.isoformat()}")
        return ScheduleResult(success=True, flow_id=flow_id, interval=interval, next_run=next_run)

    async def deactivate(self, flow_id: int) -> ScheduleResult:
        async with self._lock:
            flow = await self._config_store.get_flow(flow_id)
            if flow is None:
                return self._failure(flow_id, f"Flow {flow_id} not found")
            try:
                await self._backend.unschedule(RUN_FLOW_TRIGGER, trigger_payload(flow_id))
            except TriggerBackendError as exc:
                return self._failure(
                    flow_id, f"Trigger backend error: {exc}", flow.scheduling.interval
                )
            await self._config_store.update_flow_scheduling(
                flow_id, flow.scheduling.model_copy(update={"status": "inactive"})
            )
            logger.info(f"Flow {flow_id} deactivated")
            return ScheduleResult(
                success=True, flow_id=flow_id, interval=flow.scheduling.interval
            )

    async def reschedule(self, flow_id: int, new_interval: str) -> ScheduleResult:
        """Switch a flow to ``new_interval``, re-arming it only if it is active."""
        async with self._lock:
            flow = await self._config_store.get_flow(flow_id)
            if flow is None:
                return self._failure(flow_id, f"Flow {flow_id} not found")
            try:
                validate_interval(new_interval, intervals=self._intervals)
            except InvalidIntervalError as exc:
                return self._failure(flow_id, str(exc), new_interval)

            try:
                await self._backend.unschedule(RUN_FLOW_TRIGGER, trigger_payload(flow_id))
            except TriggerBackendError as exc:
                return self._failure(
                    flow_id, f"Trigger backend error: {exc}", flow.scheduling.interval
                )

            # The old trigger is gone, so the stored status reflects that until
            # the new one is registered.
            was_active = flow.scheduling.status == "active"
            await self._config_store.update_flow_scheduling(
                flow_id,
                flow.scheduling.model_copy(
                    update={"interval": new_interval, "status": "inactive"}
                ),
            )
            logger.info(f"Flow {flow_id} interval changed to {new_interval}")
            if not was_active:
                return ScheduleResult(success=True, flow_id=flow_id, interval=new_interval)
            if new_interval == MANUAL_INTERVAL:
                await self._config_store.update_flow_scheduling(
                    flow_id,
                    flow.scheduling.model_copy(
                        update={"interval": new_interval, "status": "active"}
                    ),
                )
                return ScheduleResult(success=True, flow_id=flow_id, interval=new_interval)
            return await self._activate(flow_id)

    async def next_run(self, flow_id: int) -> Optional[datetime]:
        try:
            return await self._backend.next_scheduled(RUN_FLOW_TRIGGER, trigger_payload(flow_id))
        except TriggerBackendError as exc:
            logger.error(f"Could not query next run of flow {flow_id}: {exc}")
            return None

    async def is_scheduled(self, flow_id: int) -> bool:
        return await self.next_run(flow_id) is not None

    # ------------------------------------------------------------------
    async def handle_trigger(self, payload: Mapping[str, Any]) -> Optional[JobCreationResult]:
        """Entry point for a fired trigger; creates a ``scheduled`` job."""
        flow_id = int(payload["flow_id"])
        async with self._lock:
            flow = await self._config_store.get_flow(flow_id)
            if flow is None:
                logger.warning(f"Trigger fired for missing flow {flow_id}; unscheduling")
                try:
                    await self._backend.unschedule(RUN_FLOW_TRIGGER, trigger_payload(flow_id))
                except TriggerBackendError as exc:
                    logger.error(f"Could not remove stale trigger of flow {flow_id}: {exc}")
                return None
            if (
                flow.scheduling.status != "active"
                or flow.scheduling.interval == MANUAL_INTERVAL
            ):
                logger.info(f"Ignoring trigger for inactive or manual flow {flow_id}")
                return None

            try:
                result = await self._job_creator.create_and_schedule_job(
                    flow.pipeline_id, flow_id, flow.user_id, TriggerType.SCHEDULED
                )
            finally:
                await self._record_last_run(flow)
        if not result.success:
            logger.warning(f"Scheduled run of flow {flow_id} created no job: {result.reason}")
        return result

    async def run_now(self, flow_id: int) -> JobCreationResult:
        """Run a flow immediately, independent of its schedule."""
        flow = await self._config_store.get_flow(flow_id)
        if flow is None:
            return JobCreationResult(success=False, reason=f"Flow {flow_id} not found")
        return await self._job_creator.create_and_schedule_job(
            flow.pipeline_id, flow_id, flow.user_id, TriggerType.MANUAL
        )

    async def sync(self) -> List[ScheduleResult]:
        """Bring triggers in line with stored flow status after a restart."""
        results = []
        flows = {flow.flow_id: flow for flow in await self._config_store.list_flows()}
        async with self._lock:
            try:
                for trigger in await self._backend.list_triggers(RUN_FLOW_TRIGGER):
                    flow = flows.get(int(trigger.payload.get("flow_id", 0)))
                    if flow is None or not self._wants_trigger(flow):
                        logger.info(f"Removing orphaned trigger {trigger.payload}")
                        await self._backend.unschedule(RUN_FLOW_TRIGGER, trigger.payload)
            except TriggerBackendError as exc:
                logger.error(f"Could not reconcile triggers: {exc}")
            for flow in flows.values():
                if self._wants_trigger(flow):
                    results.append(await self._activate(flow.flow_id))
        return results

    # ------------------------------------------------------------------
    @staticmethod
    def _wants_trigger(flow: Flow) -> bool:
        return (
            flow.scheduling.status == "active"
            and flow.scheduling.interval != MANUAL_INTERVAL
        )

    async def _record_last_run(self, flow: Flow) -> None:
        current = await self._config_store.get_flow(flow.flow_id)
        scheduling = (current or flow).scheduling
        await self._config_store.update_flow_scheduling(
            flow.flow_id, scheduling.model_copy(update={"last_run_at": self._clock()})
        )

    @staticmethod
    def _failure(
        flow_id: int, reason: str, interval: Optional[str] = None
    ) -> ScheduleResult:
        logger.error(f"Scheduling flow {flow_id} failed: {reason}")
        return ScheduleResult(success=False, flow_id=flow_id, interval=interval, reason=reason)
