"""Trigger backend interface for recurring scheduled actions."""

from __future__ import annotations

import abc
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def payload_key(payload: Dict[str, Any]) -> str:
    """Canonical string form of a trigger payload, used as its identity."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


class FiredTrigger(BaseModel):
    """A trigger that came due and was advanced to its next run."""

    key: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    scheduled_for: datetime
    next_run_at: datetime


class TriggerBackend(metaclass=abc.ABCMeta):
    """Store recurring triggers identified by ``(key, payload)``.

    Implementations raise ``TriggerBackendError`` when the underlying store
    cannot be reached.
    """

    @abc.abstractmethod
    async def schedule_recurring(
        self,
        start_time: datetime,
        interval_seconds: int,
        key: str,
        payload: Dict[str, Any],
    ) -> datetime:
        """Register a trigger firing at ``start_time`` and every interval after.

        Replaces any existing trigger with the same identity and returns the
        first run time.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def unschedule(self, key: str, payload: Dict[str, Any]) -> bool:
        """Remove a trigger; ``False`` when none existed."""
        raise NotImplementedError

    @abc.abstractmethod
    async def next_scheduled(
        self, key: str, payload: Dict[str, Any]
    ) -> Optional[datetime]:
        raise NotImplementedError

    @abc.abstractmethod
    async def claim_due(self, now: datetime) -> List[FiredTrigger]:
        """Return triggers due at ``now`` and advance each past ``now``.

        Missed runs collapse into a single fire.
        """
        raise NotImplementedError

    async def list_triggers(self, key: Optional[str] = None) -> List[FiredTrigger]:
        """Registered triggers with their next run; used by the CLI."""
        return []

    async def close(self) -> None:
        pass


def advance(next_run_at: datetime, interval_seconds: int, now: datetime) -> datetime:
    """First run time strictly after ``now`` on the trigger's cadence."""
    step = max(int(interval_seconds), 1)
    elapsed = (now - next_run_at).total_seconds()
    skipped = int(elapsed // step) + 1 if elapsed >= 0 else 0
    return next_run_at + timedelta(seconds=skipped * step)
