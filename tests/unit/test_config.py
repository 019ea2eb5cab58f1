"""Tests for configuration loading."""

from opsflow.config import load_config
from opsflow.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository, get_repository
from opsflow.transports import InMemoryTransport, get_transport
from opsflow.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
orchestrator:
  tick_interval_seconds: 15
  max_concurrent_runs: 2
breaker:
  failure_threshold: 4
approvals:
  auto_approve_max: 750
  tiers:
    - level: 1
      max_amount: 5000
      roles: [ops]
    - level: 2
      roles: [exec]
notifications:
  role_addresses:
    ops: [ops@example.com]
"""
    )
    monkeypatch.setenv("OPSFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.orchestrator.tick_interval_seconds == 15
    assert config.orchestrator.max_concurrent_runs == 2
    assert config.breaker.failure_threshold == 4
    assert config.approvals.auto_approve_max == 750
    assert [t.level for t in config.approvals.tiers] == [1, 2]
    assert config.approvals.tiers[1].max_amount is None
    assert config.notifications.role_addresses["ops"] == ["ops@example.com"]


def test_missing_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("OPSFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("OPSFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.database_url is None
    assert config.orchestrator.tick_interval_seconds == 60
    assert config.orchestrator.max_concurrent_runs == 5
    assert config.decisions.model is None


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("OPSFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("OPSFLOW_DATABASE_URL", "sqlite://" + str(tmp_path / "ops.db"))
    monkeypatch.setenv("OPSFLOW_TRANSPORT", "redis")
    monkeypatch.setenv("OPSFLOW_DECISION_MODEL", "test")

    config = load_config()
    assert config.database_url.endswith("ops.db")
    assert config.transport.backend == "redis"
    assert config.decisions.model == "test"


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
    monkeypatch.setenv("OPSFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("OPSFLOW_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_get_transport_defaults_to_inmemory(tmp_path, monkeypatch):
    monkeypatch.setenv("OPSFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("OPSFLOW_TRANSPORT", raising=False)

    assert isinstance(get_transport(), InMemoryTransport)


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.setenv("OPSFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("OPSFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    assert isinstance(get_repository(), InMemoryWorkflowRepository)
    repo = get_repository("sqlite://" + str(tmp_path / "state.db"))
    assert isinstance(repo, SQLiteWorkflowRepository)
    repo.close()
