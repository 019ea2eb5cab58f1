"""Shared pytest fixtures: an engine wired to in-memory collaborators."""

from datetime import datetime, timezone

import pytest

from opsflow.config import BreakerConfig, OpsflowConfig, RetryConfig
from opsflow.decisions import ScriptedDecisionInvoker
from opsflow.engine import WorkflowEngine
from opsflow.notifications import LoggingNotifier
from opsflow.persistence import InMemoryWorkflowRepository
from opsflow.records import InMemoryRecordStore
from opsflow.utils import retry
from opsflow.utils.clock import ManualClock


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    """Retries happen immediately in tests."""

    async def schedule_retry(attempt, policy):
        return None

    monkeypatch.setattr(retry, "schedule_retry", schedule_retry)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def records() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def invoker() -> ScriptedDecisionInvoker:
    return ScriptedDecisionInvoker()


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def config() -> OpsflowConfig:
    return OpsflowConfig(
        retry=RetryConfig(max_attempts=3, jitter=0),
        breaker=BreakerConfig(failure_threshold=3, cooldown_seconds=300),
    )


@pytest.fixture
def engine(repository, records, invoker, notifier, config, clock) -> WorkflowEngine:
    return WorkflowEngine(
        repository,
        records,
        decision_invoker=invoker,
        notifier=notifier,
        config=config,
        clock=clock,
    )


@pytest.fixture
def reorder_records():
    """Factory: one product below its reorder point, reorder worth ``unit_cost * quantity``."""

    def build(unit_cost: float, quantity: float) -> InMemoryRecordStore:
        return InMemoryRecordStore(
            {
                "products": [
                    {
                        "id": 1,
                        "name": "Widget",
                        "status": "active",
                        "cost_price": unit_cost,
                        "preferred_vendor_id": 7,
                    }
                ],
                "inventory": [
                    {
                        "id": 10,
                        "product_id": 1,
                        "quantity": 4,
                        "reserved_quantity": 0,
                        "reorder_level": 10,
                        "reorder_quantity": quantity,
                    }
                ],
            }
        )

    return build
