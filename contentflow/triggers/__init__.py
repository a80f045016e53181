"""Trigger backends and the polling pump."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ContentFlowConfig, load_config
from .base import FiredTrigger, TriggerBackend
from .inmemory import InMemoryTriggerBackend
from .pump import TriggerPump
from .sql import SQLTriggerBackend

_trigger_backend_instance: TriggerBackend | None = None


def get_trigger_backend(
    database_url: Optional[str] = None, config: Optional[ContentFlowConfig] = None
) -> TriggerBackend:
    """Factory for the trigger backend.

    Triggers live in the same database as jobs and flows when one is
    configured, otherwise in memory.
    """
    global _trigger_backend_instance
    if _trigger_backend_instance is not None and database_url is None and config is None:
        return _trigger_backend_instance

    from ..persistence import get_database

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("CONTENTFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    if not database_url:
        _trigger_backend_instance = InMemoryTriggerBackend()
    else:
        _trigger_backend_instance = SQLTriggerBackend(get_database(database_url))
    return _trigger_backend_instance


__all__ = [
    "FiredTrigger",
    "InMemoryTriggerBackend",
    "SQLTriggerBackend",
    "TriggerBackend",
    "TriggerPump",
    "get_trigger_backend",
]
