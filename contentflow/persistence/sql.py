"""SQL implementation of the job repository and config store.

Works against SQLite (``aiosqlite``) and PostgreSQL (``asyncpg``) through
SQLModel's async engine.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel

from ..contracts import Flow, FlowScheduling, Pipeline, StepOverride, TriggerType
from ..errors import ActiveJobExistsError, ConfigurationError, JobNotFoundError
from ..utils.clock import Clock, ensure_aware, utcnow
from .models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ErrorDetails,
    JobRecord,
    JobStatus,
    check_transition,
)
from .repository import ConfigStore, JobRepository
from .tables import FlowRow, JobRow, PipelineRow, ProcessedItemRow

# Arbitrary constant identifying the job-claim advisory lock on PostgreSQL.
CLAIM_LOCK_KEY = 72_410_001


def normalize_database_url(database_url: str) -> str:
    """Map plain ``sqlite://`` / ``postgresql://`` URLs to async drivers."""
    if database_url.startswith("sqlite://") and "+" not in database_url.split("://")[0]:
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return database_url.replace(prefix, "postgresql+asyncpg://", 1)
    return database_url


class SQLDatabase:
    """Async engine, session factory and schema bootstrap shared by stores."""

    def __init__(self, database_url: str) -> None:
        self.url = normalize_database_url(database_url)
        self.is_sqlite = self.url.startswith("sqlite")
        self.is_postgres = self.url.startswith("postgresql")
        connect_args = {"check_same_thread": False} if self.is_sqlite else {}
        self.engine = create_async_engine(
            self.url, echo=False, future=True, connect_args=connect_args
        )
        # Serializes writers inside this process; the database constraints
        # (and the advisory lock on PostgreSQL) cover other processes.
        self.write_lock = asyncio.Lock()
        self._initialized = False

    async def init_db(self) -> None:
        if self._initialized:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        await self.init_db()
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def dispose(self) -> None:
        await self.engine.dispose()


def _to_record(row: JobRow) -> JobRecord:
    return JobRecord(
        job_id=row.job_id,
        pipeline_id=row.pipeline_id,
        flow_id=row.flow_id,
        user_id=row.user_id,
        status=JobStatus(row.status),
        trigger_type=TriggerType(row.trigger_type),
        created_at=ensure_aware(row.created_at),
        started_at=ensure_aware(row.started_at),
        completed_at=ensure_aware(row.completed_at),
        current_step_name=row.current_step_name,
        error_details=row.error_details,
    )


class SQLJobRepository(JobRepository):
    """Persist job records in a SQL database."""

    def __init__(self, database: SQLDatabase | str, clock: Clock = utcnow) -> None:
        self._db = database if isinstance(database, SQLDatabase) else SQLDatabase(database)
        self._clock = clock

    @property
    def database(self) -> SQLDatabase:
        return self._db

    # ------------------------------------------------------------------
    async def create_job(
        self,
        pipeline_id: int,
        flow_id: int,
        user_id: int,
        trigger_type: TriggerType,
    ) -> JobRecord:
        row = JobRow(
            pipeline_id=pipeline_id,
            flow_id=flow_id,
            user_id=user_id,
            status=JobStatus.PENDING.value,
            trigger_type=TriggerType(trigger_type).value,
            created_at=self._clock(),
        )
        async with self._db.write_lock:
            async with self._db.session() as session:
                session.add(row)
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    raise ActiveJobExistsError(
                        flow_id, await self._active_job_id(flow_id)
                    ) from exc
                await session.refresh(row)
        return _to_record(row)

    async def _active_job_id(self, flow_id: int) -> Optional[int]:
        async with self._db.session() as session:
            return await session.scalar(
                select(JobRow.job_id).where(
                    JobRow.flow_id == flow_id,
                    JobRow.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
            )

    async def get_job(self, job_id: int) -> JobRecord | None:
        async with self._db.session() as session:
            row = await session.get(JobRow, job_id)
            return _to_record(row) if row else None

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        flow_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[JobRecord]:
        query = select(JobRow).order_by(JobRow.job_id.desc())
        if status is not None:
            query = query.where(JobRow.status == JobStatus(status).value)
        if flow_id is not None:
            query = query.where(JobRow.flow_id == flow_id)
        if limit:
            query = query.limit(limit)
        async with self._db.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [_to_record(r) for r in rows]

    async def claim_next_pending(self, max_running: int) -> JobRecord | None:
        async with self._db.write_lock:
            async with self._db.session() as session:
                async with session.begin():
                    if self._db.is_postgres:
                        await session.execute(
                            text("SELECT pg_advisory_xact_lock(:key)"),
                            {"key": CLAIM_LOCK_KEY},
                        )
                    running = await session.scalar(
                        select(func.count())
                        .select_from(JobRow)
                        .where(JobRow.status == JobStatus.RUNNING.value)
                    )
                    if running >= max_running:
                        return None
                    row = (
                        await session.execute(
                            select(JobRow)
                            .where(JobRow.status == JobStatus.PENDING.value)
                            .order_by(JobRow.job_id)
                            .limit(1)
                        )
                    ).scalar_one_or_none()
                    if row is None:
                        return None
                    check_transition(row.job_id, JobStatus(row.status), JobStatus.RUNNING)
                    row.status = JobStatus.RUNNING.value
                    row.started_at = self._clock()
        return _to_record(row)

    async def count_running(self) -> int:
        async with self._db.session() as session:
            return await session.scalar(
                select(func.count())
                .select_from(JobRow)
                .where(JobRow.status == JobStatus.RUNNING.value)
            )

    async def update_current_step(self, job_id: int, step_name: Optional[str]) -> None:
        async with self._db.session() as session:
            result = await session.execute(
                update(JobRow)
                .where(JobRow.job_id == job_id)
                .values(current_step_name=step_name)
            )
            await session.commit()
        if result.rowcount == 0:
            raise JobNotFoundError(f"Job {job_id} not found")

    async def complete_job(
        self,
        job_id: int,
        status: JobStatus,
        error_details: ErrorDetails | None = None,
    ) -> JobRecord:
        async with self._db.write_lock:
            async with self._db.session() as session:
                async with session.begin():
                    row = await session.get(JobRow, job_id, with_for_update=True)
                    if row is None:
                        raise JobNotFoundError(f"Job {job_id} not found")
                    check_transition(job_id, JobStatus(row.status), status)
                    row.status = JobStatus(status).value
                    row.completed_at = self._clock()
                    row.error_details = error_details
        return _to_record(row)

    async def find_stuck_jobs(self, started_before: datetime) -> list[JobRecord]:
        async with self._db.session() as session:
            rows = (
                await session.execute(
                    select(JobRow)
                    .where(
                        JobRow.status == JobStatus.RUNNING.value,
                        JobRow.started_at < started_before,
                    )
                    .order_by(JobRow.job_id)
                )
            ).scalars().all()
        return [_to_record(r) for r in rows]

    async def delete_finished_jobs(self, completed_before: datetime) -> int:
        async with self._db.write_lock:
            async with self._db.session() as session:
                result = await session.execute(
                    delete(JobRow).where(
                        JobRow.status.in_([s.value for s in TERMINAL_STATUSES]),
                        JobRow.completed_at < completed_before,
                    )
                )
                await session.commit()
        return result.rowcount or 0

    async def has_processed_item(
        self, flow_step_id: str, source_type: str, item_identifier: str
    ) -> bool:
        async with self._db.session() as session:
            found = await session.scalar(
                select(ProcessedItemRow.id).where(
                    ProcessedItemRow.flow_step_id == flow_step_id,
                    ProcessedItemRow.source_type == source_type,
                    ProcessedItemRow.item_identifier == item_identifier,
                )
            )
        return found is not None

    async def add_processed_item(
        self, flow_step_id: str, source_type: str, item_identifier: str, job_id: int
    ) -> bool:
        async with self._db.session() as session:
            session.add(
                ProcessedItemRow(
                    flow_step_id=flow_step_id,
                    source_type=source_type,
                    item_identifier=item_identifier,
                    job_id=job_id,
                    processed_at=self._clock(),
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def release_processed_items(self, job_id: int) -> int:
        async with self._db.session() as session:
            result = await session.execute(
                delete(ProcessedItemRow).where(ProcessedItemRow.job_id == job_id)
            )
            await session.commit()
        return result.rowcount or 0


def _pipeline_from_row(row: PipelineRow) -> Pipeline:
    return Pipeline(pipeline_id=row.pipeline_id, name=row.name, steps=row.steps)


def _flow_from_row(row: FlowRow) -> Flow:
    return Flow(
        flow_id=row.flow_id,
        pipeline_id=row.pipeline_id,
        name=row.name,
        user_id=row.user_id,
        scheduling=FlowScheduling.model_validate(row.scheduling or {}),
        step_overrides={
            k: StepOverride.model_validate(v) for k, v in (row.step_overrides or {}).items()
        },
    )


class SQLConfigStore(ConfigStore):
    """Pipelines and flows stored as rows with JSON columns."""

    def __init__(self, database: SQLDatabase | str) -> None:
        self._db = database if isinstance(database, SQLDatabase) else SQLDatabase(database)

    async def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        steps = [s.model_dump(mode="json") for s in pipeline.steps]
        async with self._db.session() as session:
            row = None
            if pipeline.pipeline_id is not None:
                row = await session.get(PipelineRow, pipeline.pipeline_id)
            if row is None:
                row = PipelineRow(pipeline_id=pipeline.pipeline_id, name=pipeline.name, steps=steps)
                session.add(row)
            else:
                row.name = pipeline.name
                row.steps = steps
            await session.commit()
            await session.refresh(row)
        return _pipeline_from_row(row)

    async def get_pipeline(self, pipeline_id: int) -> Pipeline | None:
        async with self._db.session() as session:
            row = await session.get(PipelineRow, pipeline_id)
        return _pipeline_from_row(row) if row else None

    async def list_pipelines(self) -> list[Pipeline]:
        async with self._db.session() as session:
            rows = (
                await session.execute(select(PipelineRow).order_by(PipelineRow.pipeline_id))
            ).scalars().all()
        return [_pipeline_from_row(r) for r in rows]

    async def delete_pipeline(self, pipeline_id: int) -> List[int]:
        async with self._db.session() as session:
            async with session.begin():
                row = await session.get(PipelineRow, pipeline_id)
                if row is None:
                    return []
                flow_ids = list(
                    (
                        await session.execute(
                            select(FlowRow.flow_id).where(FlowRow.pipeline_id == pipeline_id)
                        )
                    ).scalars()
                )
                await session.execute(delete(FlowRow).where(FlowRow.pipeline_id == pipeline_id))
                await session.delete(row)
        return flow_ids

    async def save_flow(self, flow: Flow) -> Flow:
        scheduling = flow.scheduling.model_dump(mode="json")
        overrides = {k: v.model_dump(mode="json") for k, v in flow.step_overrides.items()}
        async with self._db.session() as session:
            if await session.get(PipelineRow, flow.pipeline_id) is None:
                raise ConfigurationError(
                    f"Flow '{flow.name}' references missing pipeline {flow.pipeline_id}"
                )
            row = None
            if flow.flow_id is not None:
                row = await session.get(FlowRow, flow.flow_id)
            if row is None:
                row = FlowRow(
                    flow_id=flow.flow_id,
                    pipeline_id=flow.pipeline_id,
                    name=flow.name,
                    user_id=flow.user_id,
                    scheduling=scheduling,
                    step_overrides=overrides,
                )
                session.add(row)
            else:
                row.pipeline_id = flow.pipeline_id
                row.name = flow.name
                row.user_id = flow.user_id
                row.scheduling = scheduling
                row.step_overrides = overrides
            await session.commit()
            await session.refresh(row)
        return _flow_from_row(row)

    async def get_flow(self, flow_id: int) -> Flow | None:
        async with self._db.session() as session:
            row = await session.get(FlowRow, flow_id)
        return _flow_from_row(row) if row else None

    async def list_flows(self, pipeline_id: Optional[int] = None) -> list[Flow]:
        query = select(FlowRow).order_by(FlowRow.flow_id)
        if pipeline_id is not None:
            query = query.where(FlowRow.pipeline_id == pipeline_id)
        async with self._db.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [_flow_from_row(r) for r in rows]

    async def delete_flow(self, flow_id: int) -> bool:
        async with self._db.session() as session:
            result = await session.execute(delete(FlowRow).where(FlowRow.flow_id == flow_id))
            await session.commit()
        return bool(result.rowcount)

    async def update_flow_scheduling(self, flow_id: int, scheduling: FlowScheduling) -> None:
        async with self._db.session() as session:
            result = await session.execute(
                update(FlowRow)
                .where(FlowRow.flow_id == flow_id)
                .values(scheduling=scheduling.model_dump(mode="json"))
            )
            await session.commit()
        if result.rowcount == 0:
            raise ConfigurationError(f"Flow {flow_id} not found")
