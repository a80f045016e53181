"""Step executor tests."""

import pytest

from contentflow.contracts import StepOverride
from contentflow.engine import MISSING_TOOL_RESULT
from contentflow.persistence import JobStatus

from tests.fixtures.handlers import RecordingPublish
from tests.fixtures.services import ITEMS, build_services, seed_flow, step


async def _run(services, flow):
    created = await services.creator.create_and_schedule_job(
        flow.pipeline_id, flow.flow_id, flow.user_id
    )
    assert created.success, created.reason
    job = await services.gate.admit()
    assert job.job_id == created.job_id
    outcome = await services.engine.execute(job)
    return outcome, await services.repository.get_job(job.job_id)


def _fetch(**kwargs):
    return step("fetch", "fetch", "static", settings={"items": ITEMS}, **kwargs)


@pytest.mark.asyncio
async def test_fetch_process_publish_completes():
    RecordingPublish.published.clear()
    services = build_services()
    _, flow = await seed_flow(
        services.store,
        [_fetch(), step("rewrite", "process", "uppercase"), step("publish", "publish", "record")],
    )

    outcome, job = await _run(services, flow)

    assert outcome.status == JobStatus.COMPLETED
    assert job.status == JobStatus.COMPLETED
    assert job.started_at <= job.completed_at
    assert job.current_step_name == "publish"
    assert job.error_details is None
    assert [p.body for p in RecordingPublish.published][-2:] == ["HELLO", "WORLD"]


@pytest.mark.asyncio
async def test_identifying_metadata_survives_every_step():
    services = build_services()
    _, flow = await seed_flow(
        services.store,
        [_fetch(), step("rewrite", "process", "uppercase"), step("publish", "publish", "record")],
    )

    outcome, _ = await _run(services, flow)

    published = outcome.packets[-1]
    assert published.metadata["source_url"] == "https://example.com/items/2"
    assert published.metadata["item_identifier"] == "2"
    assert published.metadata["published_url"] == "https://example.com/posts/1"
    assert published.processing_steps == ["fetch", "rewrite", "publish"]
    # history is append-only: fetched packets are still there, unchanged
    assert [p.body for p in outcome.packets[:2]] == ["hello", "world"]
    assert outcome.packets[0].processing_steps == ["fetch"]


@pytest.mark.asyncio
async def test_ai_step_result_reaches_update_handler():
    services = build_services()
    _, flow = await seed_flow(
        services.store,
        [
            _fetch(),
            step(
                "ai",
                "process",
                "ai_tools",
                settings={"handlers": ["wordpress_update"], "results": {"wordpress_update": {"rev": 3}}},
            ),
            step("update", "update", "wordpress_update"),
        ],
    )

    outcome, job = await _run(services, flow)

    assert job.status == JobStatus.COMPLETED
    update = outcome.packets[-1]
    assert update.type == "update"
    assert update.metadata["updated"] is True
    assert update.metadata["applied_result"] == {"rev": 3}
    assert update.metadata["source_url"] == "https://example.com/items/2"


@pytest.mark.asyncio
async def test_missing_tool_result_fails_update_step():
    services = build_services()
    _, flow = await seed_flow(
        services.store,
        [
            _fetch(),
            step("ai", "process", "ai_tools", settings={"handlers": ["twitter_publish"]}),
            step("update", "update", "wordpress_update"),
        ],
    )

    outcome, job = await _run(services, flow)

    assert job.status == JobStatus.FAILED
    assert job.error_details["message"] == MISSING_TOOL_RESULT
    assert job.error_details["step"] == "update"
    assert job.error_details["handler"] == "wordpress_update"


@pytest.mark.asyncio
async def test_missing_tool_result_on_non_critical_update_completes_with_errors():
    services = build_services()
    _, flow = await seed_flow(
        services.store,
        [_fetch(), step("update", "update", "wordpress_update", critical=False)],
    )

    _, job = await _run(services, flow)

    assert job.status == JobStatus.COMPLETED_WITH_ERRORS
    assert job.error_details["errors"][0]["message"] == MISSING_TOOL_RESULT


@pytest.mark.asyncio
async def test_update_handler_without_requirement_runs_without_match():
    services = build_services()
    _, flow = await seed_flow(
        services.store, [_fetch(), step("update", "update", "optional_update")]
    )
    _, job = await _run(services, flow)
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_unregistered_handler_fails_job_with_diagnostics():
    services = build_services()
    _, flow = await seed_flow(
        services.store,
        [_fetch(), step("publish", "publish", "myspace"), step("after", "process", "uppercase")],
    )

    outcome, job = await _run(services, flow)

    assert job.status == JobStatus.FAILED
    assert job.current_step_name == "publish"
    assert job.error_details["reason"] == "handler_not_found"
    assert job.error_details["handler"] == "myspace"
    assert job.error_details["step_type"] == "publish"
    assert "myspace" in job.error_details["message"]
    # the following step never ran
    assert all(p.processing_steps[-1] != "after" for p in outcome.packets)


@pytest.mark.asyncio
async def test_handler_exception_fails_job_and_releases_processed_items():
    services = build_services()
    _, flow = await seed_flow(services.store, [_fetch(), step("boom", "process", "explode")])

    _, job = await _run(services, flow)

    assert job.status == JobStatus.FAILED
    assert job.error_details["reason"] == "exception"
    assert job.error_details["exception_type"] == "RuntimeError"
    assert "boom" in job.error_details["message"]
    assert not await services.repository.has_processed_item(f"fetch_{flow.flow_id}", "static", "1")


@pytest.mark.asyncio
async def test_non_critical_step_failure_completes_with_errors():
    services = build_services()
    _, flow = await seed_flow(
        services.store,
        [
            _fetch(),
            step("enrich", "process", "soft_fail", critical=False, settings={"message": "quota"}),
            step("publish", "publish", "record"),
        ],
    )

    outcome, job = await _run(services, flow)

    assert job.status == JobStatus.COMPLETED_WITH_ERRORS
    assert job.error_details["errors"] == [
        {
            "step": "enrich",
            "step_type": "process",
            "handler": "soft_fail",
            "reason": "step_failed",
            "message": "quota",
        }
    ]
    assert outcome.packets[-1].processing_steps[-1] == "publish"


@pytest.mark.asyncio
async def test_step_failure_fatal_flag_overrides_criticality():
    services = build_services()
    _, flow = await seed_flow(
        services.store,
        [_fetch(), step("enrich", "process", "soft_fail", critical=False, settings={"fatal": True})],
    )
    _, job = await _run(services, flow)
    assert job.status == JobStatus.FAILED
    assert job.error_details["reason"] == "step_failed"

    services = build_services()
    _, flow = await seed_flow(
        services.store,
        [_fetch(), step("enrich", "process", "soft_fail", settings={"fatal": False})],
    )
    _, job = await _run(services, flow)
    assert job.status == JobStatus.COMPLETED_WITH_ERRORS


@pytest.mark.asyncio
async def test_step_timeout_fails_critical_step():
    services = build_services()
    _, flow = await seed_flow(
        services.store,
        [_fetch(), step("wait", "process", "slow", timeout_seconds=0.05, settings={"delay": 2})],
    )
    _, job = await _run(services, flow)
    assert job.status == JobStatus.FAILED
    assert job.error_details["reason"] == "timeout"
    assert job.error_details["step"] == "wait"


@pytest.mark.asyncio
async def test_empty_fetch_completes_with_no_items():
    services = build_services()
    _, flow = await seed_flow(
        services.store,
        [step("fetch", "fetch", "empty"), step("boom", "process", "explode")],
    )
    outcome, job = await _run(services, flow)
    assert job.status == JobStatus.COMPLETED_NO_ITEMS
    assert job.current_step_name == "fetch"
    assert outcome.packets == []


@pytest.mark.asyncio
async def test_already_processed_items_yield_no_items_on_next_run():
    services = build_services()
    _, flow = await seed_flow(services.store, [_fetch(), step("publish", "publish", "record")])

    _, first = await _run(services, flow)
    assert first.status == JobStatus.COMPLETED

    _, second = await _run(services, flow)
    assert second.status == JobStatus.COMPLETED_NO_ITEMS


@pytest.mark.asyncio
async def test_failed_job_items_are_retried_by_next_job():
    services = build_services()
    _, flow = await seed_flow(services.store, [_fetch(), step("boom", "process", "explode")])
    _, first = await _run(services, flow)
    assert first.status == JobStatus.FAILED

    await services.store.save_flow(
        flow.model_copy(update={"step_overrides": {"boom": StepOverride(handler_slug="uppercase")}})
    )
    outcome, second = await _run(services, flow)
    assert second.status == JobStatus.COMPLETED
    assert [p.body for p in outcome.packets[-2:]] == ["HELLO", "WORLD"]


@pytest.mark.asyncio
async def test_invalid_handler_output_fails_job():
    services = build_services()
    _, flow = await seed_flow(services.store, [_fetch(), step("bad", "process", "bad_output")])
    _, job = await _run(services, flow)
    assert job.status == JobStatus.FAILED
    assert job.error_details["reason"] == "invalid_output"


@pytest.mark.asyncio
async def test_changing_identifying_metadata_fails_job():
    services = build_services()
    _, flow = await seed_flow(services.store, [_fetch(), step("tamper", "process", "tamper")])
    _, job = await _run(services, flow)
    assert job.status == JobStatus.FAILED
    assert job.error_details["exception_type"] == "PacketIntegrityError"


@pytest.mark.asyncio
async def test_sync_handler_runs_in_thread():
    services = build_services()
    _, flow = await seed_flow(
        services.store, [_fetch(), step("tag", "process", "sync_tag", settings={"tag": "news"})]
    )
    outcome, job = await _run(services, flow)
    assert job.status == JobStatus.COMPLETED
    assert outcome.packets[-1].metadata["tag"] == "news"


@pytest.mark.asyncio
async def test_handlers_cannot_mutate_job_history():
    services = build_services()
    _, flow = await seed_flow(
        services.store,
        [_fetch(), step("mutate", "process", "mutate_history"), step("rewrite", "process", "uppercase")],
    )
    outcome, job = await _run(services, flow)
    assert job.status == JobStatus.COMPLETED
    assert len(outcome.packets) == 4


@pytest.mark.asyncio
async def test_flow_override_replaces_handler():
    services = build_services()
    _, flow = await seed_flow(
        services.store,
        [_fetch(), step("boom", "process", "explode")],
        overrides={"boom": StepOverride(handler_slug="uppercase")},
    )
    _, job = await _run(services, flow)
    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_missing_pipeline_at_execution_fails_job():
    services = build_services()
    pipeline, flow = await seed_flow(services.store, [_fetch()])
    created = await services.creator.create_and_schedule_job(
        pipeline.pipeline_id, flow.flow_id, flow.user_id
    )
    job = await services.gate.admit()
    await services.store.delete_pipeline(pipeline.pipeline_id)

    outcome = await services.engine.execute(job)
    assert outcome.status == JobStatus.FAILED
    stored = await services.repository.get_job(created.job_id)
    assert stored.error_details["reason"] == "configuration"
