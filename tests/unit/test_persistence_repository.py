from datetime import date

import pytest

from opsflow.contracts import (
    ApprovalTicket,
    OperationalEvent,
    WorkflowDefinition,
    WorkflowMetric,
    WorkflowRun,
    WorkflowStep,
)
from opsflow.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository


async def _exercise(repo):
    definition = WorkflowDefinition(name="Reorder", workflow_type="inventory_reorder")
    await repo.save_definition(definition)
    run = WorkflowRun(
        run_number="RUN-1",
        workflow_id=definition.id,
        workflow_type=definition.workflow_type,
        dedupe_key="event:e1:" + definition.id,
    )
    await repo.save_run(run)
    run.transition("running")
    run.transition("awaiting_approval")
    run.pending_ticket_ids = ["t1"]
    await repo.save_run(run)

    await repo.save_step(WorkflowStep(run_id=run.id, sequence=2, step_number=2, name="b", step_type="calculation"))
    await repo.save_step(WorkflowStep(run_id=run.id, sequence=1, step_number=1, name="a", step_type="data_fetch"))

    ticket = ApprovalTicket(run_id=run.id, subject_kind="purchase_order", title="PO", amount=2300)
    await repo.save_ticket(ticket)

    stored = await repo.get_run(run.id)
    assert stored.status == "awaiting_approval"
    assert stored.pending_ticket_ids == ["t1"]
    assert (await repo.find_run_by_dedupe_key(run.dedupe_key)).id == run.id
    assert await repo.find_run_by_dedupe_key("nope") is None
    assert [s.name for s in await repo.list_steps(run.id)] == ["a", "b"]
    assert [t.id for t in await repo.list_tickets(run_id=run.id)] == [ticket.id]
    assert await repo.list_tickets(status="approved") == []
    assert [r.id for r in await repo.list_runs(workflow_id=definition.id, status="awaiting_approval")] == [run.id]
    assert (await repo.get_definition(definition.id)).name == "Reorder"

    definition.is_active = False
    await repo.save_definition(definition)
    assert await repo.list_definitions(active_only=True) == []


@pytest.mark.asyncio
async def test_inmemory_repository_crud():
    await _exercise(InMemoryWorkflowRepository())


@pytest.mark.asyncio
async def test_sqlite_repository_crud(tmp_path):
    repo = SQLiteWorkflowRepository(tmp_path / "wf.db")
    try:
        await _exercise(repo)
    finally:
        repo.close()


@pytest.mark.asyncio
async def test_sqlite_repository_survives_reopen(tmp_path):
    path = tmp_path / "wf.db"
    repo = SQLiteWorkflowRepository(path)
    run = WorkflowRun(run_number="RUN-2", workflow_id="w", workflow_type="procurement")
    await repo.save_run(run)
    await repo.save_metric(WorkflowMetric(workflow_id="w", day=date(2026, 3, 2), total_runs=3))
    repo.close()

    reopened = SQLiteWorkflowRepository(path)
    try:
        assert (await reopened.get_run(run.id)).run_number == "RUN-2"
        metric = await reopened.get_metric("w", date(2026, 3, 2))
        assert metric.total_runs == 3
    finally:
        reopened.close()


@pytest.mark.asyncio
async def test_event_log_and_delivery_marks():
    repo = InMemoryWorkflowRepository()
    first = OperationalEvent(event_type="order_confirmed", source_system="test")
    second = OperationalEvent(event_type="invoice_received", source_system="test")
    await repo.append_event(first)
    await repo.append_event(second)

    pending = await repo.list_events(processed=False)
    assert [e.id for e in pending] == [first.id, second.id]

    await repo.mark_delivered("orchestrator", first.id)
    assert await repo.was_delivered("orchestrator", first.id)
    assert not await repo.was_delivered("other", first.id)

    first.processed = True
    await repo.save_event(first)
    assert [e.id for e in await repo.list_events(processed=False)] == [second.id]
