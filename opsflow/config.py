from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_AI_CONFIDENCE_CUTOFF,
    DEFAULT_AUTO_APPROVE_MAX,
    DEFAULT_ESCALATION_MINUTES,
    DEFAULT_MAX_CONCURRENT_RUNS,
    DEFAULT_TICK_INTERVAL_SECONDS,
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
    max_depth: int = Field(default=10_000, ge=1)


class OrchestratorConfig(BaseModel):
    """Scheduling loop settings."""

    tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS
    max_concurrent_runs: int = Field(default=DEFAULT_MAX_CONCURRENT_RUNS, ge=1)
    escalation_every_ticks: int = Field(default=5, ge=1)
    reconcile_every_ticks: int = Field(default=10, ge=1)
    event_batch_size: int = 50


class RetryConfig(BaseModel):
    """Bounded retry policy applied to failed runs."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = 1.5
    multiplier: float = 2.0
    max_delay: float = 300.0
    jitter: float = 0.5


class BreakerConfig(BaseModel):
    """Per-workflow circuit breaker settings."""

    failure_threshold: int = Field(default=5, ge=1)
    cooldown_seconds: float = 300.0


class TierConfig(BaseModel):
    level: int
    max_amount: Optional[float] = None
    roles: List[str] = Field(default_factory=list)


def _default_tiers() -> List[TierConfig]:
    return [
        TierConfig(level=1, max_amount=5_000, roles=["ops"]),
        TierConfig(level=2, max_amount=25_000, roles=["admin"]),
        TierConfig(level=3, max_amount=100_000, roles=["exec"]),
        TierConfig(level=4, max_amount=None, roles=["exec"]),
    ]


class ApprovalConfig(BaseModel):
    """Global approval ladder used when no threshold is configured."""

    auto_approve_max: float = DEFAULT_AUTO_APPROVE_MAX
    escalation_minutes: int = DEFAULT_ESCALATION_MINUTES
    tiers: List[TierConfig] = Field(default_factory=_default_tiers)


class ExceptionConfig(BaseModel):
    ai_confidence_cutoff: float = DEFAULT_AI_CONFIDENCE_CUTOFF
    escalation_roles: List[str] = Field(default_factory=lambda: ["ops", "admin"])


class DecisionConfig(BaseModel):
    """Decision service settings.

    ``model`` is a pydantic-ai model name such as ``openai:gpt-4o``. When it
    is unset every decision fails closed and callers fall back to their
    explicit defaults.
    """

    model: Optional[str] = None
    min_confidence: float = 60.0


class NotificationConfig(BaseModel):
    webhook_url: Optional[str] = None
    role_addresses: Dict[str, List[str]] = Field(default_factory=dict)
    timeout_seconds: float = 10.0


class MetricsConfig(BaseModel):
    """Assumptions used for the savings estimates in daily metrics."""

    minutes_saved_per_item: float = 5.0
    hourly_rate: float = 45.0


class OpsflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    orchestrator: OrchestratorConfig = OrchestratorConfig()
    retry: RetryConfig = RetryConfig()
    breaker: BreakerConfig = BreakerConfig()
    approvals: ApprovalConfig = ApprovalConfig()
    exceptions: ExceptionConfig = ExceptionConfig()
    decisions: DecisionConfig = DecisionConfig()
    notifications: NotificationConfig = NotificationConfig()
    metrics: MetricsConfig = MetricsConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> OpsflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to OPSFLOW_CONFIG env
            variable or 'opsflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("OPSFLOW_CONFIG", "opsflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = OpsflowConfig(**data)
    else:
        config = OpsflowConfig()

    env_db_url = os.getenv("OPSFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("OPSFLOW_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport
    env_model = os.getenv("OPSFLOW_DECISION_MODEL")
    if env_model:
        config.decisions.model = env_model
    return config
