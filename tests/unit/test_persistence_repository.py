"""Job repository tests run against the in-memory and SQLite backends."""

import asyncio
from datetime import timedelta

import pytest

from contentflow.contracts import TriggerType
from contentflow.errors import ActiveJobExistsError, InvalidTransitionError, JobNotFoundError
from contentflow.persistence import InMemoryJobRepository, JobStatus, SQLJobRepository

from tests.fixtures.services import FakeClock


def _inmemory(tmp_path, clock):
    return InMemoryJobRepository(clock=clock)


def _sqlite(tmp_path, clock):
    return SQLJobRepository(f"sqlite:///{tmp_path / 'jobs.db'}", clock=clock)


backends = pytest.mark.parametrize("make_repo", [_inmemory, _sqlite], ids=["inmemory", "sqlite"])


async def _close(repo):
    if isinstance(repo, SQLJobRepository):
        await repo.database.dispose()


@backends
@pytest.mark.asyncio
async def test_create_and_get_job(tmp_path, make_repo):
    clock = FakeClock()
    repo = make_repo(tmp_path, clock)

    job = await repo.create_job(1, 10, 7, TriggerType.SCHEDULED)
    assert job.status == JobStatus.PENDING
    assert job.trigger_type == TriggerType.SCHEDULED
    assert job.created_at == clock.now
    assert job.started_at is None and job.completed_at is None

    fetched = await repo.get_job(job.job_id)
    assert fetched == job
    assert await repo.get_job(9999) is None
    await _close(repo)


@backends
@pytest.mark.asyncio
async def test_single_active_job_per_flow(tmp_path, make_repo):
    repo = make_repo(tmp_path, FakeClock())
    first = await repo.create_job(1, 10, 0, TriggerType.MANUAL)

    with pytest.raises(ActiveJobExistsError) as excinfo:
        await repo.create_job(1, 10, 0, TriggerType.MANUAL)
    assert excinfo.value.job_id == first.job_id

    # other flows are unaffected
    await repo.create_job(1, 11, 0, TriggerType.MANUAL)

    # once the first job is finished the flow may run again
    claimed = await repo.claim_next_pending(5)
    assert claimed.job_id == first.job_id
    await repo.complete_job(first.job_id, JobStatus.COMPLETED)
    again = await repo.create_job(1, 10, 0, TriggerType.MANUAL)
    assert again.job_id > first.job_id
    await _close(repo)


@backends
@pytest.mark.asyncio
async def test_concurrent_create_for_same_flow_creates_one_job(tmp_path, make_repo):
    repo = make_repo(tmp_path, FakeClock())
    results = await asyncio.gather(
        *[repo.create_job(1, 10, 0, TriggerType.MANUAL) for _ in range(5)],
        return_exceptions=True,
    )
    created = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, ActiveJobExistsError)]
    assert len(created) == 1
    assert len(rejected) == 4
    assert len(await repo.list_jobs(flow_id=10)) == 1
    await _close(repo)


@backends
@pytest.mark.asyncio
async def test_claim_respects_ceiling_and_fifo(tmp_path, make_repo):
    clock = FakeClock()
    repo = make_repo(tmp_path, clock)
    jobs = [await repo.create_job(1, flow_id, 0, TriggerType.MANUAL) for flow_id in (1, 2, 3)]

    clock.advance(5)
    first = await repo.claim_next_pending(2)
    second = await repo.claim_next_pending(2)
    assert [first.job_id, second.job_id] == [jobs[0].job_id, jobs[1].job_id]
    assert first.status == JobStatus.RUNNING
    assert first.started_at == clock.now
    assert await repo.claim_next_pending(2) is None
    assert await repo.count_running() == 2

    await repo.complete_job(first.job_id, JobStatus.COMPLETED)
    third = await repo.claim_next_pending(2)
    assert third.job_id == jobs[2].job_id
    assert await repo.claim_next_pending(2) is None
    await _close(repo)


@backends
@pytest.mark.asyncio
async def test_complete_job_records_details_and_enforces_transitions(tmp_path, make_repo):
    clock = FakeClock()
    repo = make_repo(tmp_path, clock)
    job = await repo.create_job(1, 10, 0, TriggerType.MANUAL)

    with pytest.raises(InvalidTransitionError):
        await repo.complete_job(job.job_id, JobStatus.COMPLETED)

    await repo.claim_next_pending(1)
    await repo.update_current_step(job.job_id, "publish")
    clock.advance(30)
    done = await repo.complete_job(
        job.job_id, JobStatus.FAILED, {"reason": "step_failed", "step": "publish"}
    )
    assert done.status == JobStatus.FAILED
    assert done.completed_at == clock.now
    assert done.started_at <= done.completed_at
    assert done.current_step_name == "publish"
    assert done.error_details == {"reason": "step_failed", "step": "publish"}

    with pytest.raises(InvalidTransitionError):
        await repo.complete_job(job.job_id, JobStatus.COMPLETED)
    with pytest.raises(JobNotFoundError):
        await repo.complete_job(9999, JobStatus.FAILED)
    await _close(repo)


@backends
@pytest.mark.asyncio
async def test_pending_job_can_fail_directly(tmp_path, make_repo):
    repo = make_repo(tmp_path, FakeClock())
    job = await repo.create_job(1, 10, 0, TriggerType.MANUAL)
    failed = await repo.complete_job(job.job_id, JobStatus.FAILED, "enqueue failed")
    assert failed.status == JobStatus.FAILED
    assert failed.error_details == "enqueue failed"
    await _close(repo)


@backends
@pytest.mark.asyncio
async def test_list_jobs_newest_first_with_filters(tmp_path, make_repo):
    repo = make_repo(tmp_path, FakeClock())
    a = await repo.create_job(1, 1, 0, TriggerType.MANUAL)
    b = await repo.create_job(1, 2, 0, TriggerType.MANUAL)
    c = await repo.create_job(1, 3, 0, TriggerType.MANUAL)
    await repo.claim_next_pending(1)

    assert [j.job_id for j in await repo.list_jobs()] == [c.job_id, b.job_id, a.job_id]
    assert [j.job_id for j in await repo.list_jobs(status=JobStatus.RUNNING)] == [a.job_id]
    assert [j.job_id for j in await repo.list_jobs(flow_id=2)] == [b.job_id]
    assert len(await repo.list_jobs(limit=2)) == 2
    await _close(repo)


@backends
@pytest.mark.asyncio
async def test_stuck_jobs_and_retention(tmp_path, make_repo):
    clock = FakeClock()
    repo = make_repo(tmp_path, clock)
    old = await repo.create_job(1, 1, 0, TriggerType.MANUAL)
    await repo.claim_next_pending(5)
    clock.advance(7 * 3600)
    fresh = await repo.create_job(1, 2, 0, TriggerType.MANUAL)
    await repo.claim_next_pending(5)

    stuck = await repo.find_stuck_jobs(clock.now - timedelta(hours=6))
    assert [j.job_id for j in stuck] == [old.job_id]

    await repo.complete_job(old.job_id, JobStatus.FAILED)
    clock.advance(31 * 86400)
    deleted = await repo.delete_finished_jobs(clock.now - timedelta(days=30))
    assert deleted == 1
    assert await repo.get_job(old.job_id) is None
    # still running, never deleted
    assert await repo.get_job(fresh.job_id) is not None
    await _close(repo)


@backends
@pytest.mark.asyncio
async def test_job_ids_are_not_reused_after_retention(tmp_path, make_repo):
    clock = FakeClock()
    repo = make_repo(tmp_path, clock)
    old = await repo.create_job(1, 1, 0, TriggerType.SCHEDULED)
    await repo.claim_next_pending(5)
    assert await repo.add_processed_item("fetch_1", "static", "1", job_id=old.job_id)
    await repo.complete_job(old.job_id, JobStatus.COMPLETED)

    clock.advance(31 * 86400)
    assert await repo.delete_finished_jobs(clock.now - timedelta(days=30)) == 1

    new = await repo.create_job(1, 1, 0, TriggerType.SCHEDULED)
    assert new.job_id > old.job_id
    # a failure of the new job must not release items recorded by the old one
    assert await repo.release_processed_items(new.job_id) == 0
    assert await repo.has_processed_item("fetch_1", "static", "1")
    await _close(repo)


@backends
@pytest.mark.asyncio
async def test_processed_items_tracking(tmp_path, make_repo):
    repo = make_repo(tmp_path, FakeClock())
    assert not await repo.has_processed_item("fetch_1", "rss", "a")
    assert await repo.add_processed_item("fetch_1", "rss", "a", job_id=1)
    assert not await repo.add_processed_item("fetch_1", "rss", "a", job_id=2)
    assert await repo.has_processed_item("fetch_1", "rss", "a")
    # keyed by flow step and source type
    assert not await repo.has_processed_item("fetch_2", "rss", "a")
    assert not await repo.has_processed_item("fetch_1", "files", "a")

    await repo.add_processed_item("fetch_1", "rss", "b", job_id=1)
    assert await repo.release_processed_items(1) == 2
    assert not await repo.has_processed_item("fetch_1", "rss", "a")
    await _close(repo)


@backends
@pytest.mark.asyncio
async def test_update_current_step_unknown_job(tmp_path, make_repo):
    repo = make_repo(tmp_path, FakeClock())
    with pytest.raises(JobNotFoundError):
        await repo.update_current_step(42, "fetch")
    await _close(repo)


@pytest.mark.asyncio
async def test_sqlite_jobs_survive_reopen(tmp_path):
    url = f"sqlite:///{tmp_path / 'jobs.db'}"
    repo = SQLJobRepository(url)
    job = await repo.create_job(1, 10, 0, TriggerType.MANUAL)
    await repo.database.dispose()

    reopened = SQLJobRepository(url)
    fetched = await reopened.get_job(job.job_id)
    assert fetched is not None
    assert fetched.created_at.tzinfo is not None
    with pytest.raises(ActiveJobExistsError):
        await reopened.create_job(1, 10, 0, TriggerType.MANUAL)
    await reopened.database.dispose()
