"""Example running a flow once in-process with the in-memory backends."""

import asyncio

from contentflow import build_runtime
from contentflow.catalog import load_catalog
from contentflow.config import ContentFlowConfig


async def main():
    config = ContentFlowConfig(handler_modules=["guides.example_handlers"])
    runtime = build_runtime(config)

    loaded = await load_catalog("guides/example_catalog.yaml", runtime.config_store)
    flow = next(f for f in loaded.flows if f.name == "drafts-manual")

    result = await runtime.scheduler.run_now(flow.flow_id)
    if not result.success:
        print(f"No job created: {result.reason}")
        return

    await runtime.worker.run_until_idle(timeout=60)
    job = await runtime.repository.get_job(result.job_id)
    print(f"Job {job.job_id} finished as {job.status.value}")
    if job.error_details:
        print(job.error_details)


if __name__ == "__main__":
    asyncio.run(main())
