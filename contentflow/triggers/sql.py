"""Trigger backend persisted in the SQL database next to jobs and flows."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from ..errors import TriggerBackendError
from ..persistence.sql import SQLDatabase
from ..persistence.tables import TriggerRow
from ..utils.clock import ensure_aware
from .base import FiredTrigger, TriggerBackend, advance, payload_key


class SQLTriggerBackend(TriggerBackend):
    """Recurring triggers stored in the ``triggers`` table."""

    def __init__(self, database: SQLDatabase | str) -> None:
        self._db = database if isinstance(database, SQLDatabase) else SQLDatabase(database)

    async def schedule_recurring(
        self,
        start_time: datetime,
        interval_seconds: int,
        key: str,
        payload: Dict[str, Any],
    ) -> datetime:
        try:
            async with self._db.write_lock:
                async with self._db.session() as session:
                    row = await session.get(TriggerRow, (key, payload_key(payload)))
                    if row is None:
                        row = TriggerRow(
                            key=key,
                            payload=payload_key(payload),
                            interval_seconds=int(interval_seconds),
                            next_run_at=start_time,
                        )
                        session.add(row)
                    else:
                        row.interval_seconds = int(interval_seconds)
                        row.next_run_at = start_time
                    await session.commit()
        except SQLAlchemyError as exc:
            raise TriggerBackendError(f"Could not schedule {key}: {exc}") from exc
        return start_time

    async def unschedule(self, key: str, payload: Dict[str, Any]) -> bool:
        try:
            async with self._db.write_lock:
                async with self._db.session() as session:
                    result = await session.execute(
                        delete(TriggerRow).where(
                            TriggerRow.key == key,
                            TriggerRow.payload == payload_key(payload),
                        )
                    )
                    await session.commit()
        except SQLAlchemyError as exc:
            raise TriggerBackendError(f"Could not unschedule {key}: {exc}") from exc
        return bool(result.rowcount)

    async def next_scheduled(
        self, key: str, payload: Dict[str, Any]
    ) -> Optional[datetime]:
        try:
            async with self._db.session() as session:
                row = await session.get(TriggerRow, (key, payload_key(payload)))
        except SQLAlchemyError as exc:
            raise TriggerBackendError(f"Could not read trigger {key}: {exc}") from exc
        return ensure_aware(row.next_run_at) if row else None

    async def claim_due(self, now: datetime) -> List[FiredTrigger]:
        fired = []
        try:
            async with self._db.write_lock:
                async with self._db.session() as session:
                    async with session.begin():
                        rows = (
                            await session.execute(
                                select(TriggerRow)
                                .where(TriggerRow.next_run_at <= now)
                                .order_by(TriggerRow.next_run_at)
                                .with_for_update(skip_locked=True)
                            )
                        ).scalars().all()
                        for row in rows:
                            scheduled_for = ensure_aware(row.next_run_at)
                            row.next_run_at = advance(scheduled_for, row.interval_seconds, now)
                            fired.append(
                                FiredTrigger(
                                    key=row.key,
                                    payload=json.loads(row.payload),
                                    scheduled_for=scheduled_for,
                                    next_run_at=row.next_run_at,
                                )
                            )
        except SQLAlchemyError as exc:
            raise TriggerBackendError(f"Could not claim due triggers: {exc}") from exc
        return fired

    async def list_triggers(self, key: Optional[str] = None) -> List[FiredTrigger]:
        query = select(TriggerRow).order_by(TriggerRow.key, TriggerRow.payload)
        if key is not None:
            query = query.where(TriggerRow.key == key)
        try:
            async with self._db.session() as session:
                rows = (await session.execute(query)).scalars().all()
        except SQLAlchemyError as exc:
            raise TriggerBackendError(f"Could not list triggers: {exc}") from exc
        return [
            FiredTrigger(
                key=row.key,
                payload=json.loads(row.payload),
                scheduled_for=ensure_aware(row.next_run_at),
                next_run_at=ensure_aware(row.next_run_at),
            )
            for row in rows
        ]
