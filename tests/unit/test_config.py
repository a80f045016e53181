"""Tests for configuration loading."""

from contentflow.config import load_config
from contentflow.transports import InMemoryTransport, get_transport
from contentflow.transports.redis import RedisTransport


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("CONTENTFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("CONTENTFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("CONTENTFLOW_TRANSPORT", raising=False)
    monkeypatch.delenv("CONTENTFLOW_MAX_CONCURRENT_JOBS", raising=False)

    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.database_url is None
    assert config.engine.max_concurrent_jobs == 2
    assert config.engine.stuck_timeout_hours == 6
    assert config.engine.job_retention_days == 30


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
engine:
  max_concurrent_jobs: 4
scheduler:
  intervals:
    every_minute: 60
handler_modules:
  - myproject.handlers
"""
    )
    monkeypatch.setenv("CONTENTFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("CONTENTFLOW_TRANSPORT", raising=False)
    monkeypatch.delenv("CONTENTFLOW_MAX_CONCURRENT_JOBS", raising=False)

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.engine.max_concurrent_jobs == 4
    assert config.scheduler.intervals == {"every_minute": 60}
    assert config.handler_modules == ["myproject.handlers"]


def test_environment_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///from-file.db\n")
    monkeypatch.setenv("CONTENTFLOW_DATABASE_URL", "sqlite:///from-env.db")
    monkeypatch.setenv("CONTENTFLOW_TRANSPORT", "INMEMORY")
    monkeypatch.setenv("CONTENTFLOW_MAX_CONCURRENT_JOBS", "3")

    config = load_config(str(config_path))
    assert config.database_url == "sqlite:///from-env.db"
    assert config.transport.backend == "inmemory"
    assert config.engine.max_concurrent_jobs == 3


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("CONTENTFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("CONTENTFLOW_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380

    assert isinstance(get_transport("inmemory"), InMemoryTransport)
