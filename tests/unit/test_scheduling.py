from datetime import datetime, timezone

import pytest

from opsflow.contracts import ApprovalTicket, ThresholdCondition
from opsflow.errors import WorkflowConfigError
from opsflow.persistence import InMemoryWorkflowRepository
from opsflow.records import InMemoryRecordStore
from opsflow.scheduling import evaluate_threshold, next_cron_run, parse_cron


def test_next_cron_run_is_strictly_after():
    at_six = datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc)

    assert next_cron_run("0 6 * * *", at_six) == datetime(2026, 3, 3, 6, 0, tzinfo=timezone.utc)
    assert next_cron_run("0 6 * * *", datetime(2026, 3, 2, 5, 59, tzinfo=timezone.utc)) == at_six


def test_weekday_cron():
    saturday = datetime(2026, 3, 7, 12, 0, tzinfo=timezone.utc)
    assert next_cron_run("30 8 * * mon-fri", saturday) == datetime(2026, 3, 9, 8, 30, tzinfo=timezone.utc)


def test_invalid_cron_is_a_config_error():
    with pytest.raises(WorkflowConfigError):
        parse_cron("every morning")


@pytest.mark.asyncio
async def test_inventory_below_reorder_level():
    records = InMemoryRecordStore(
        {"inventory": [{"id": 1, "quantity": 12, "reserved_quantity": 5, "reorder_level": 10}]}
    )
    condition = ThresholdCondition(type="inventory_below")

    assert await evaluate_threshold(condition, records, InMemoryWorkflowRepository())

    await records.update("inventory", 1, {"reserved_quantity": 0})
    assert not await evaluate_threshold(condition, records, InMemoryWorkflowRepository())


@pytest.mark.asyncio
async def test_pending_approvals_threshold():
    repo = InMemoryWorkflowRepository()
    condition = ThresholdCondition(type="pending_approvals", threshold=2)
    for n in range(2):
        await repo.save_ticket(ApprovalTicket(subject_kind="purchase_order", title=f"PO {n}", amount=900))

    assert await evaluate_threshold(condition, InMemoryRecordStore(), repo)


@pytest.mark.asyncio
async def test_unknown_condition_never_fires():
    condition = ThresholdCondition(type="moon_phase")
    assert not await evaluate_threshold(condition, InMemoryRecordStore(), InMemoryWorkflowRepository())
