"""In-memory trigger backend."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .base import FiredTrigger, TriggerBackend, advance, payload_key


class InMemoryTriggerBackend(TriggerBackend):
    """Triggers kept in process memory; lost on restart."""

    def __init__(self) -> None:
        self._triggers: Dict[Tuple[str, str], Tuple[Dict[str, Any], int, datetime]] = {}
        self._lock = asyncio.Lock()

    async def schedule_recurring(
        self,
        start_time: datetime,
        interval_seconds: int,
        key: str,
        payload: Dict[str, Any],
    ) -> datetime:
        async with self._lock:
            self._triggers[(key, payload_key(payload))] = (
                dict(payload),
                int(interval_seconds),
                start_time,
            )
        return start_time

    async def unschedule(self, key: str, payload: Dict[str, Any]) -> bool:
        async with self._lock:
            return self._triggers.pop((key, payload_key(payload)), None) is not None

    async def next_scheduled(
        self, key: str, payload: Dict[str, Any]
    ) -> Optional[datetime]:
        entry = self._triggers.get((key, payload_key(payload)))
        return entry[2] if entry else None

    async def claim_due(self, now: datetime) -> List[FiredTrigger]:
        fired = []
        async with self._lock:
            for ident, (payload, interval, next_run_at) in sorted(
                self._triggers.items(), key=lambda item: item[1][2]
            ):
                if next_run_at > now:
                    continue
                following = advance(next_run_at, interval, now)
                self._triggers[ident] = (payload, interval, following)
                fired.append(
                    FiredTrigger(
                        key=ident[0],
                        payload=dict(payload),
                        scheduled_for=next_run_at,
                        next_run_at=following,
                    )
                )
        return fired

    async def list_triggers(self, key: Optional[str] = None) -> List[FiredTrigger]:
        return [
            FiredTrigger(
                key=ident[0],
                payload=dict(payload),
                scheduled_for=next_run_at,
                next_run_at=next_run_at,
            )
            for ident, (payload, _, next_run_at) in sorted(self._triggers.items())
            if key is None or ident[0] == key
        ]
