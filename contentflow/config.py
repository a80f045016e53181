from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_JOB_RETENTION_DAYS,
    DEFAULT_MAINTENANCE_INTERVAL_SECONDS,
    DEFAULT_MAX_CONCURRENT_JOBS,
    DEFAULT_STEP_TIMEOUT_SECONDS,
    DEFAULT_STUCK_TIMEOUT_HOURS,
    DEFAULT_TRIGGER_POLL_SECONDS,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Limits and timeouts applied to job execution."""

    max_concurrent_jobs: int = Field(default=DEFAULT_MAX_CONCURRENT_JOBS, ge=1)
    stuck_timeout_hours: float = Field(default=DEFAULT_STUCK_TIMEOUT_HOURS, gt=0)
    job_retention_days: float = Field(default=DEFAULT_JOB_RETENTION_DAYS, gt=0)
    step_timeout_seconds: float = Field(default=DEFAULT_STEP_TIMEOUT_SECONDS, gt=0)


class SchedulerConfig(BaseModel):
    """Trigger polling and additional interval slugs."""

    poll_interval_seconds: float = Field(default=DEFAULT_TRIGGER_POLL_SECONDS, gt=0)
    intervals: Dict[str, int] = Field(default_factory=dict)


class WorkerConfig(BaseModel):
    maintenance_interval_seconds: float = Field(
        default=DEFAULT_MAINTENANCE_INTERVAL_SECONDS, gt=0
    )


class ContentFlowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    worker: WorkerConfig = WorkerConfig()
    handler_modules: List[str] = Field(default_factory=list)


def load_config(path: Optional[str] = None) -> ContentFlowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CONTENTFLOW_CONFIG
            env variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CONTENTFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ContentFlowConfig(**data)
    else:
        config = ContentFlowConfig()

    env_db_url = os.getenv("CONTENTFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("CONTENTFLOW_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()
    env_max_jobs = os.getenv("CONTENTFLOW_MAX_CONCURRENT_JOBS")
    if env_max_jobs:
        config.engine.max_concurrent_jobs = int(env_max_jobs)
    return config
