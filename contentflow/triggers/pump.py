"""Poll a trigger backend and hand due triggers to their callbacks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from ..constants import DEFAULT_TRIGGER_POLL_SECONDS
from ..errors import TriggerBackendError
from ..utils.clock import Clock, utcnow
from ..utils.retry import compute_backoff
from .base import TriggerBackend

logger = logging.getLogger(__name__)

TriggerCallback = Callable[[Dict[str, Any]], Awaitable[Any]]


class TriggerPump:
    """Dispatch fired triggers to the callback registered for their key."""

    def __init__(
        self,
        backend: TriggerBackend,
        poll_interval: float = DEFAULT_TRIGGER_POLL_SECONDS,
        clock: Clock = utcnow,
    ) -> None:
        self._backend = backend
        self._poll_interval = poll_interval
        self._clock = clock
        self._callbacks: Dict[str, TriggerCallback] = {}

    def register(self, key: str, callback: TriggerCallback) -> None:
        self._callbacks[key] = callback

    async def poll_once(self) -> int:
        """Fire every due trigger once; return how many were dispatched."""
        dispatched = 0
        for fired in await self._backend.claim_due(self._clock()):
            callback = self._callbacks.get(fired.key)
            if callback is None:
                logger.warning(f"No callback registered for trigger {fired.key}; skipped")
                continue
            try:
                await callback(fired.payload)
            except Exception:
                logger.exception(
                    f"Trigger {fired.key} callback failed for payload={fired.payload}"
                )
                continue
            dispatched += 1
        return dispatched

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll until cancelled or until ``lifespan`` seconds have passed."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        failures = 0
        while deadline is None or loop.time() < deadline:
            try:
                await self.poll_once()
                failures = 0
                delay = self._poll_interval
            except TriggerBackendError as exc:
                failures += 1
                delay = compute_backoff(failures, cap=self._poll_interval * 10)
                logger.error(f"Trigger backend unavailable ({exc}); retrying in {delay:.1f}s")
            if deadline is not None:
                delay = min(delay, max(deadline - loop.time(), 0))
            await asyncio.sleep(delay)
