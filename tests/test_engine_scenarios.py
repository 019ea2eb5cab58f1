"""End-to-end engine scenarios: approvals, breaker, retries, dead letters."""

import pytest

from opsflow.contracts import WorkflowDefinition
from opsflow.errors import InvalidTransition, WorkflowConfigError, WorkflowInactive, WorkflowNotFound
from opsflow.processors import processor


class Boom(RuntimeError):
    pass


@processor("test_always_fails")
async def always_fails(ctx):
    async def explode():
        raise Boom("warehouse API unreachable")

    await ctx.require(1, "Call Warehouse", "api_call", explode)


CALLS = {"flaky": 0}


@processor("test_flaky")
async def flaky(ctx):
    CALLS["flaky"] += 1
    if CALLS["flaky"] < 2:
        raise Boom("transient")
    ctx.processed()
    ctx.succeeded()
    return {"calls": CALLS["flaky"]}


@processor("test_cancel_between_steps")
async def cancel_between_steps(ctx):
    await ctx.step(1, "First", "calculation", lambda: {"ok": True})
    ctx.run.cancel_requested = True
    await ctx.step(2, "Second", "calculation", lambda: {"ok": True})


async def _reorder_definition(engine, ceiling):
    return await engine.register_definition(
        WorkflowDefinition(
            name="Inventory Reorder Check",
            workflow_type="inventory_reorder",
            requires_approval=True,
            auto_approve_max=ceiling,
            approver_roles=["ops"],
        )
    )


@pytest.mark.asyncio
async def test_reorder_above_ceiling_waits_for_one_ticket(engine, reorder_records):
    engine.records = reorder_records(unit_cost=230, quantity=10)
    definition = await _reorder_definition(engine, 500)

    result = await engine.start_workflow(definition.id)

    assert result.status == "awaiting_approval"
    tickets = await engine.repository.list_tickets(run_id=result.run_id)
    assert len(tickets) == 1
    ticket = tickets[0]
    assert ticket.amount == pytest.approx(2300)
    assert ticket.level == 1
    assert ticket.is_open
    assert await engine.records.query("purchase_orders") == []


@pytest.mark.asyncio
async def test_reorder_below_ceiling_completes_with_one_po(engine, reorder_records):
    engine.records = reorder_records(unit_cost=45, quantity=10)
    definition = await _reorder_definition(engine, 5000)

    result = await engine.start_workflow(definition.id)

    assert result.status == "completed"
    assert await engine.repository.list_tickets(run_id=result.run_id) == []
    orders = await engine.records.query("purchase_orders")
    assert len(orders) == 1
    assert orders[0]["total_amount"] == pytest.approx(450)


@pytest.mark.asyncio
async def test_approving_the_ticket_resumes_and_creates_the_po(engine, reorder_records):
    engine.records = reorder_records(unit_cost=230, quantity=10)
    definition = await _reorder_definition(engine, 500)
    result = await engine.start_workflow(definition.id)
    (ticket,) = await engine.repository.list_tickets(run_id=result.run_id)

    await engine.approvals.process_approval_decision(ticket.id, True, "alice")

    run = await engine.repository.get_run(result.run_id)
    assert run.status == "completed"
    assert run.pending_ticket_ids == []
    assert len(await engine.records.query("purchase_orders")) == 1
    steps = await engine.repository.list_steps(run.id)
    assert [s.sequence for s in steps] == list(range(1, len(steps) + 1))
    assert steps[-1].name == "Create Approved Reorder POs"


@pytest.mark.asyncio
async def test_rejecting_every_ticket_cancels_the_run(engine, reorder_records):
    engine.records = reorder_records(unit_cost=230, quantity=10)
    definition = await _reorder_definition(engine, 500)
    result = await engine.start_workflow(definition.id)
    (ticket,) = await engine.repository.list_tickets(run_id=result.run_id)

    await engine.approvals.process_approval_decision(ticket.id, False, "alice", "not now")

    run = await engine.repository.get_run(result.run_id)
    assert run.status == "cancelled"
    assert await engine.records.query("purchase_orders") == []


@pytest.mark.asyncio
async def test_resume_requires_awaiting_approval(engine, reorder_records):
    engine.records = reorder_records(unit_cost=45, quantity=10)
    definition = await _reorder_definition(engine, 5000)
    result = await engine.start_workflow(definition.id)

    with pytest.raises(InvalidTransition):
        await engine.resume_run(result.run_id)


@pytest.mark.asyncio
async def test_breaker_rejects_fourth_start_without_steps(engine, config):
    config.retry.max_attempts = 1
    definition = await engine.register_definition(
        WorkflowDefinition(name="Always fails", workflow_type="test_always_fails")
    )

    for _ in range(3):
        result = await engine.start_workflow(definition.id)
        assert result.status == "failed"

    rejected = await engine.start_workflow(definition.id)

    assert rejected.status == "failed"
    assert rejected.error.startswith("circuit breaker open:")
    assert await engine.repository.list_steps(rejected.run_id) == []
    assert engine.breaker_states()[definition.id].state == "open"
    runs = await engine.repository.list_runs(workflow_id=definition.id)
    assert len(runs) == 4


@pytest.mark.asyncio
async def test_breaker_stays_open_until_reset(engine, config):
    config.retry.max_attempts = 1
    definition = await engine.register_definition(
        WorkflowDefinition(name="Always fails", workflow_type="test_always_fails")
    )
    for _ in range(3):
        await engine.start_workflow(definition.id)

    engine.breakers.get(definition.id).record_success()
    assert engine.breaker_states()[definition.id].state == "open"

    engine.reset_breaker(definition.id)
    assert engine.breaker_states()[definition.id].state == "closed"


@pytest.mark.asyncio
async def test_failed_runs_are_retried_then_dead_lettered(engine):
    definition = await engine.register_definition(
        WorkflowDefinition(name="Always fails", workflow_type="test_always_fails")
    )

    result = await engine.start_workflow(definition.id)

    assert result.status == "failed"
    assert result.dead_letter
    assert result.attempts == 3
    runs = sorted(await engine.repository.list_runs(workflow_id=definition.id), key=lambda r: r.attempt)
    assert [r.attempt for r in runs] == [1, 2, 3]
    assert [r.trigger for r in runs] == ["manual", "retry", "retry"]
    assert runs[1].parent_run_id == runs[0].id
    assert runs[2].parent_run_id == runs[1].id
    assert runs[2].error_message.startswith("[dead-letter]")
    assert [r.id for r in await engine.list_dead_letters()] == [runs[2].id]


@pytest.mark.asyncio
async def test_retry_succeeds_on_second_attempt(engine):
    CALLS["flaky"] = 0
    definition = await engine.register_definition(
        WorkflowDefinition(name="Flaky", workflow_type="test_flaky")
    )

    result = await engine.start_workflow(definition.id)

    assert result.status == "completed"
    assert result.attempts == 2
    stored = await engine.get_definition(definition.id)
    assert stored.success_count == 1
    assert stored.failure_count == 1


@pytest.mark.asyncio
async def test_replaying_a_dead_letter_starts_a_linked_chain(engine, config):
    config.retry.max_attempts = 1
    CALLS["flaky"] = 0
    definition = await engine.register_definition(
        WorkflowDefinition(name="Flaky", workflow_type="test_flaky")
    )
    first = await engine.start_workflow(definition.id)
    assert first.dead_letter

    replay = await engine.retry_dead_letter(first.run_id)

    assert replay.status == "completed"
    run = await engine.repository.get_run(replay.run_id)
    assert run.trigger == "replay"
    assert run.parent_run_id == first.run_id
    assert await engine.list_dead_letters() == []


@pytest.mark.asyncio
async def test_dedupe_key_returns_existing_run(engine, reorder_records):
    engine.records = reorder_records(unit_cost=45, quantity=10)
    definition = await _reorder_definition(engine, 5000)

    first = await engine.start_workflow(definition.id, "event", dedupe_key="event:abc:1")
    second = await engine.start_workflow(definition.id, "event", dedupe_key="event:abc:1")

    assert second.run_id == first.run_id
    assert len(await engine.repository.list_runs(workflow_id=definition.id)) == 1


@pytest.mark.asyncio
async def test_cancellation_is_checked_between_steps(engine):
    definition = await engine.register_definition(
        WorkflowDefinition(name="Cancelled", workflow_type="test_cancel_between_steps")
    )

    result = await engine.start_workflow(definition.id)

    assert result.status == "cancelled"
    assert not result.dead_letter
    steps = await engine.repository.list_steps(result.run_id)
    assert [s.name for s in steps] == ["First"]


@pytest.mark.asyncio
async def test_cancel_parked_run_closes_its_tickets(engine, reorder_records):
    engine.records = reorder_records(unit_cost=230, quantity=10)
    definition = await _reorder_definition(engine, 500)
    result = await engine.start_workflow(definition.id)

    cancelled = await engine.cancel_run(result.run_id)

    assert cancelled.status == "cancelled"
    (ticket,) = await engine.repository.list_tickets(run_id=result.run_id)
    assert ticket.status == "rejected"
    assert await engine.approvals.list_open() == []


@pytest.mark.asyncio
async def test_start_errors(engine):
    with pytest.raises(WorkflowNotFound):
        await engine.start_workflow("missing")

    with pytest.raises(WorkflowConfigError):
        await engine.register_definition(WorkflowDefinition(name="Bad", workflow_type="no_such_processor"))

    with pytest.raises(WorkflowConfigError):
        await engine.register_definition(
            WorkflowDefinition(
                name="Bad config",
                workflow_type="inventory_reorder",
                execution_config={"unknown_key": 1},
            )
        )

    with pytest.raises(WorkflowConfigError):
        await engine.register_definition(
            WorkflowDefinition(name="No cron", workflow_type="inventory_reorder", trigger="scheduled")
        )

    definition = await _reorder_definition(engine, 500)
    await engine.deactivate_definition(definition.id)
    with pytest.raises(WorkflowInactive):
        await engine.start_workflow(definition.id)


@pytest.mark.asyncio
async def test_reconcile_fails_orphaned_running_runs(engine, reorder_records):
    engine.records = reorder_records(unit_cost=45, quantity=10)
    definition = await _reorder_definition(engine, 5000)
    orphan = engine._new_run(definition, "manual", {}, None)
    orphan.transition("running")
    await engine.repository.save_run(orphan)

    reconciled = await engine.reconcile_interrupted_runs()

    assert [r.id for r in reconciled] == [orphan.id]
    stored = await engine.repository.get_run(orphan.id)
    assert stored.status == "failed"
    assert stored.dead_letter
    assert "[interrupted]" in stored.error_message


@pytest.mark.asyncio
async def test_items_and_metrics_after_completion(engine, reorder_records):
    engine.records = reorder_records(unit_cost=45, quantity=10)
    definition = await _reorder_definition(engine, 5000)

    result = await engine.start_workflow(definition.id)

    assert result.items_succeeded + result.items_failed <= result.items_processed
    metric = await engine.repository.get_metric(definition.id, engine.clock.now().date())
    assert metric.total_runs == 1
    assert metric.successful_runs == 1
    assert metric.ai_decisions == 1
    assert metric.total_value == pytest.approx(450)
