"""Persistence layer for jobs, pipelines and flows."""

from __future__ import annotations

import os
from typing import Dict, Optional

from ..config import ContentFlowConfig, load_config
from .inmemory import InMemoryConfigStore, InMemoryJobRepository
from .models import JobRecord, JobStatus, ProcessedItem
from .repository import ConfigStore, JobRepository
from .sql import SQLConfigStore, SQLDatabase, SQLJobRepository, normalize_database_url

_repository_instance: JobRepository | None = None
_config_store_instance: ConfigStore | None = None
_databases: Dict[str, SQLDatabase] = {}


def _resolve_database_url(
    database_url: Optional[str], config: Optional[ContentFlowConfig]
) -> Optional[str]:
    config = config or load_config()
    return (
        database_url
        or os.getenv("CONTENTFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )


def get_database(database_url: str) -> SQLDatabase:
    """Return the shared ``SQLDatabase`` for a URL, creating it once."""
    url = normalize_database_url(database_url)
    if not (url.startswith("sqlite") or url.startswith("postgresql")):
        raise ValueError(f"Unsupported database backend: {database_url}")
    if url not in _databases:
        _databases[url] = SQLDatabase(url)
    return _databases[url]


async def dispose_databases() -> None:
    """Dispose every cached engine and forget the cached stores."""
    global _repository_instance, _config_store_instance
    for database in list(_databases.values()):
        await database.dispose()
    _databases.clear()
    _repository_instance = None
    _config_store_instance = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[ContentFlowConfig] = None
) -> JobRepository:
    """Factory function to obtain a job repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``CONTENTFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    database_url = _resolve_database_url(database_url, config)
    if not database_url:
        _repository_instance = InMemoryJobRepository()
    else:
        _repository_instance = SQLJobRepository(get_database(database_url))
    return _repository_instance


def get_config_store(
    database_url: Optional[str] = None, config: Optional[ContentFlowConfig] = None
) -> ConfigStore:
    """Factory function for the pipeline/flow store, mirroring ``get_repository``."""

    global _config_store_instance
    if _config_store_instance is not None and database_url is None and config is None:
        return _config_store_instance

    database_url = _resolve_database_url(database_url, config)
    if not database_url:
        _config_store_instance = InMemoryConfigStore()
    else:
        _config_store_instance = SQLConfigStore(get_database(database_url))
    return _config_store_instance


__all__ = [
    "ConfigStore",
    "InMemoryConfigStore",
    "InMemoryJobRepository",
    "JobRecord",
    "JobRepository",
    "JobStatus",
    "ProcessedItem",
    "SQLConfigStore",
    "SQLDatabase",
    "SQLJobRepository",
    "get_config_store",
    "dispose_databases",
    "get_database",
    "get_repository",
]
