"""Scheduler tests: activation, triggers and failure reporting."""

from datetime import timedelta

import pytest

from contentflow.constants import RUN_FLOW_TRIGGER
from contentflow.contracts import TriggerType
from contentflow.errors import TriggerBackendError
from contentflow.persistence import JobStatus
from contentflow.scheduler import Scheduler
from contentflow.triggers import InMemoryTriggerBackend, TriggerPump

from tests.fixtures.services import ITEMS, build_services, seed_flow, step


class UnavailableBackend(InMemoryTriggerBackend):
    """Trigger backend whose writes fail while ``down`` is set."""

    def __init__(self):
        super().__init__()
        self.down = False

    async def schedule_recurring(self, start_time, interval_seconds, key, payload):
        if self.down:
            raise TriggerBackendError("scheduler offline")
        return await super().schedule_recurring(start_time, interval_seconds, key, payload)

    async def unschedule(self, key, payload):
        if self.down:
            raise TriggerBackendError("scheduler offline")
        return await super().unschedule(key, payload)


STEPS = [step("fetch", "fetch", "static", settings={"items": ITEMS})]


@pytest.mark.asyncio
async def test_activate_then_deactivate_hourly_flow():
    services = build_services()
    _, flow = await seed_flow(services.store, STEPS, interval="hourly")
    now = services.clock.now

    result = await services.scheduler.activate(flow.flow_id)
    assert result.success
    next_run = await services.scheduler.next_run(flow.flow_id)
    assert now <= next_run <= now + timedelta(seconds=3600)
    assert await services.scheduler.is_scheduled(flow.flow_id)
    assert (await services.store.get_flow(flow.flow_id)).scheduling.status == "active"

    result = await services.scheduler.deactivate(flow.flow_id)
    assert result.success
    assert await services.scheduler.next_run(flow.flow_id) is None
    assert not await services.scheduler.is_scheduled(flow.flow_id)
    assert (await services.store.get_flow(flow.flow_id)).scheduling.status == "inactive"


@pytest.mark.asyncio
async def test_activate_is_idempotent():
    services = build_services()
    _, flow = await seed_flow(services.store, STEPS, interval="hourly")

    first = await services.scheduler.activate(flow.flow_id)
    services.clock.advance(120)
    second = await services.scheduler.activate(flow.flow_id)

    assert first.success and second.success
    assert second.next_run == first.next_run
    assert len(await services.triggers.list_triggers(RUN_FLOW_TRIGGER)) == 1


@pytest.mark.asyncio
async def test_activate_manual_flow_is_noop_success():
    services = build_services()
    _, flow = await seed_flow(services.store, STEPS, interval="manual")

    result = await services.scheduler.activate(flow.flow_id)
    assert result.success
    assert result.next_run is None
    assert not await services.scheduler.is_scheduled(flow.flow_id)


@pytest.mark.asyncio
async def test_activate_rejects_unknown_interval_and_missing_flow():
    services = build_services()
    _, flow = await seed_flow(services.store, STEPS, interval="fortnightly")

    result = await services.scheduler.activate(flow.flow_id)
    assert not result.success
    assert "fortnightly" in result.reason
    assert not await services.scheduler.is_scheduled(flow.flow_id)

    missing = await services.scheduler.activate(404)
    assert not missing.success
    assert "404" in missing.reason


@pytest.mark.asyncio
async def test_project_schedule_is_not_schedulable():
    services = build_services()
    _, flow = await seed_flow(services.store, STEPS, interval="project_schedule")
    result = await services.scheduler.activate(flow.flow_id)
    assert not result.success


@pytest.mark.asyncio
async def test_custom_interval_from_configuration():
    services = build_services()
    scheduler = Scheduler(
        services.store,
        services.triggers,
        services.creator,
        intervals={"every_minute": 60},
        clock=services.clock,
    )
    _, flow = await seed_flow(services.store, STEPS, interval="every_minute")
    result = await scheduler.activate(flow.flow_id)
    assert result.success
    assert result.next_run == services.clock.now + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_backend_failure_leaves_status_unchanged():
    backend = UnavailableBackend()
    services = build_services(triggers=backend)
    _, flow = await seed_flow(services.store, STEPS, interval="hourly")

    backend.down = True
    result = await services.scheduler.activate(flow.flow_id)
    assert not result.success
    assert "offline" in result.reason
    assert (await services.store.get_flow(flow.flow_id)).scheduling.status == "inactive"

    backend.down = False
    assert (await services.scheduler.activate(flow.flow_id)).success

    backend.down = True
    result = await services.scheduler.deactivate(flow.flow_id)
    assert not result.success
    assert (await services.store.get_flow(flow.flow_id)).scheduling.status == "active"


@pytest.mark.asyncio
async def test_reschedule_active_flow_rearms_with_new_interval():
    services = build_services()
    _, flow = await seed_flow(services.store, STEPS, interval="hourly")
    await services.scheduler.activate(flow.flow_id)

    result = await services.scheduler.reschedule(flow.flow_id, "daily")
    assert result.success
    stored = await services.store.get_flow(flow.flow_id)
    assert stored.scheduling.interval == "daily"
    assert stored.scheduling.status == "active"
    assert await services.scheduler.next_run(flow.flow_id) == services.clock.now + timedelta(days=1)
    assert len(await services.triggers.list_triggers(RUN_FLOW_TRIGGER)) == 1


@pytest.mark.asyncio
async def test_reschedule_inactive_flow_only_updates_interval():
    services = build_services()
    _, flow = await seed_flow(services.store, STEPS, interval="hourly")

    result = await services.scheduler.reschedule(flow.flow_id, "weekly")
    assert result.success
    assert (await services.store.get_flow(flow.flow_id)).scheduling.interval == "weekly"
    assert not await services.scheduler.is_scheduled(flow.flow_id)


@pytest.mark.asyncio
async def test_reschedule_to_manual_removes_trigger():
    services = build_services()
    _, flow = await seed_flow(services.store, STEPS, interval="hourly")
    await services.scheduler.activate(flow.flow_id)

    result = await services.scheduler.reschedule(flow.flow_id, "manual")
    assert result.success
    assert not await services.scheduler.is_scheduled(flow.flow_id)
    assert (await services.store.get_flow(flow.flow_id)).scheduling.interval == "manual"


@pytest.mark.asyncio
async def test_reschedule_rejects_unknown_interval():
    services = build_services()
    _, flow = await seed_flow(services.store, STEPS, interval="hourly")
    await services.scheduler.activate(flow.flow_id)

    result = await services.scheduler.reschedule(flow.flow_id, "sometimes")
    assert not result.success
    assert await services.scheduler.is_scheduled(flow.flow_id)
    assert (await services.store.get_flow(flow.flow_id)).scheduling.interval == "hourly"


@pytest.mark.asyncio
async def test_trigger_fire_creates_scheduled_job_and_records_last_run():
    services = build_services()
    _, flow = await seed_flow(services.store, STEPS, interval="hourly")
    await services.scheduler.activate(flow.flow_id)

    services.clock.advance(3600)
    result = await services.scheduler.handle_trigger({"flow_id": flow.flow_id})
    assert result.success
    job = await services.repository.get_job(result.job_id)
    assert job.trigger_type == TriggerType.SCHEDULED
    assert job.user_id == flow.user_id
    first_run = (await services.store.get_flow(flow.flow_id)).scheduling.last_run_at
    assert first_run == services.clock.now

    # the previous job is still pending: no new job, but the fire is recorded
    services.clock.advance(3600)
    again = await services.scheduler.handle_trigger({"flow_id": flow.flow_id})
    assert not again.success
    assert len(await services.repository.list_jobs(flow_id=flow.flow_id)) == 1
    assert (await services.store.get_flow(flow.flow_id)).scheduling.last_run_at == services.clock.now


class BrokenCreator:
    async def create_and_schedule_job(self, pipeline_id, flow_id, user_id=0, trigger_type=None):
        raise RuntimeError("job store unavailable")


@pytest.mark.asyncio
async def test_trigger_fire_records_last_run_even_when_job_creation_raises():
    services = build_services()
    scheduler = Scheduler(
        services.store, services.triggers, BrokenCreator(), clock=services.clock
    )
    _, flow = await seed_flow(services.store, STEPS, interval="hourly")
    await scheduler.activate(flow.flow_id)

    services.clock.advance(3600)
    with pytest.raises(RuntimeError):
        await scheduler.handle_trigger({"flow_id": flow.flow_id})
    assert (await services.store.get_flow(flow.flow_id)).scheduling.last_run_at == services.clock.now


@pytest.mark.asyncio
async def test_trigger_for_deleted_flow_unschedules_itself():
    services = build_services()
    _, flow = await seed_flow(services.store, STEPS, interval="hourly")
    await services.scheduler.activate(flow.flow_id)
    await services.store.delete_flow(flow.flow_id)

    assert await services.scheduler.handle_trigger({"flow_id": flow.flow_id}) is None
    assert not await services.scheduler.is_scheduled(flow.flow_id)


@pytest.mark.asyncio
async def test_trigger_for_inactive_flow_is_ignored():
    services = build_services()
    _, flow = await seed_flow(services.store, STEPS, interval="hourly")

    assert await services.scheduler.handle_trigger({"flow_id": flow.flow_id}) is None
    assert await services.repository.list_jobs() == []


@pytest.mark.asyncio
async def test_run_now_creates_manual_job():
    services = build_services()
    _, flow = await seed_flow(services.store, STEPS, interval="manual")

    result = await services.scheduler.run_now(flow.flow_id)
    assert result.success
    job = await services.repository.get_job(result.job_id)
    assert job.trigger_type == TriggerType.MANUAL
    assert job.status == JobStatus.PENDING
    assert (await services.store.get_flow(flow.flow_id)).scheduling.last_run_at is None

    assert not (await services.scheduler.run_now(999)).success


@pytest.mark.asyncio
async def test_sync_rearms_active_flows_and_drops_orphans():
    services = build_services()
    _, active = await seed_flow(services.store, STEPS, interval="hourly", name="active")
    _, idle = await seed_flow(services.store, STEPS, interval="daily", name="idle")
    await services.scheduler.activate(active.flow_id)

    # a restart with a fresh backend loses the trigger; a stray one exists for "idle"
    fresh = InMemoryTriggerBackend()
    await fresh.schedule_recurring(services.clock.now, 60, RUN_FLOW_TRIGGER, {"flow_id": idle.flow_id})
    scheduler = Scheduler(services.store, fresh, services.creator, clock=services.clock)

    results = await scheduler.sync()
    assert [r.flow_id for r in results] == [active.flow_id]
    assert all(r.success for r in results)
    assert await scheduler.is_scheduled(active.flow_id)
    assert not await scheduler.is_scheduled(idle.flow_id)


@pytest.mark.asyncio
async def test_pump_fires_scheduler_when_due():
    services = build_services()
    _, flow = await seed_flow(services.store, STEPS, interval="hourly")
    await services.scheduler.activate(flow.flow_id)
    pump = TriggerPump(services.triggers, clock=services.clock)
    services.scheduler.attach(pump)

    assert await pump.poll_once() == 0
    services.clock.advance(3600)
    assert await pump.poll_once() == 1
    jobs = await services.repository.list_jobs(flow_id=flow.flow_id)
    assert [j.trigger_type for j in jobs] == [TriggerType.SCHEDULED]
