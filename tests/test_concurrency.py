"""Slot limits, parked runs and reconciliation while runs are live."""

import asyncio

import pytest

from opsflow.contracts import WorkflowDefinition
from opsflow.engine import WorkflowEngine
from opsflow.processors import processor


class Gate:
    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.running = 0
        self.peak = 0


GATES = {}


@processor("test_gated")
async def gated(ctx):
    gate = GATES["current"]
    gate.running += 1
    gate.peak = max(gate.peak, gate.running)
    try:
        await gate.release.wait()
    finally:
        gate.running -= 1
    ctx.processed()
    ctx.succeeded()
    return {"done": True}


async def _wait_until(predicate, attempts: int = 500) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    assert predicate()


@pytest.fixture
def limited_engine(repository, records, invoker, notifier, config, clock):
    def build(limit: int) -> WorkflowEngine:
        config.orchestrator.max_concurrent_runs = limit
        return WorkflowEngine(
            repository, records, decision_invoker=invoker, notifier=notifier, config=config, clock=clock
        )

    return build


@pytest.fixture
def gate():
    GATES["current"] = Gate()
    return GATES["current"]


@pytest.mark.asyncio
async def test_no_more_than_the_slot_limit_run_at_once(limited_engine, gate):
    engine = limited_engine(2)
    definition = await engine.register_definition(WorkflowDefinition(name="Gated", workflow_type="test_gated"))

    tasks = [asyncio.create_task(engine.start_workflow(definition.id)) for _ in range(4)]
    await _wait_until(lambda: gate.running == 2)
    for _ in range(20):
        await asyncio.sleep(0)

    assert engine.concurrency() == {"active": 2, "limit": 2, "available": 0}
    assert len(engine.in_flight()) == 4

    gate.release.set()
    results = await asyncio.gather(*tasks)

    assert [r.status for r in results] == ["completed"] * 4
    assert gate.peak == 2
    assert engine.concurrency()["active"] == 0


@pytest.mark.asyncio
async def test_parked_run_gives_its_slot_back(limited_engine, reorder_records):
    engine = limited_engine(1)
    engine.records = reorder_records(unit_cost=230, quantity=10)
    definition = await engine.register_definition(
        WorkflowDefinition(
            name="Inventory Reorder Check",
            workflow_type="inventory_reorder",
            requires_approval=True,
            auto_approve_max=500,
        )
    )

    first = await engine.start_workflow(definition.id)
    assert first.status == "awaiting_approval"
    assert engine.concurrency()["active"] == 0

    second = await asyncio.wait_for(engine.start_workflow(definition.id), timeout=5)
    assert second.status == "awaiting_approval"


@pytest.mark.asyncio
async def test_reconcile_leaves_runs_waiting_for_a_slot_alone(limited_engine, gate):
    engine = limited_engine(1)
    definition = await engine.register_definition(WorkflowDefinition(name="Gated", workflow_type="test_gated"))

    running = asyncio.create_task(engine.start_workflow(definition.id))
    await _wait_until(lambda: gate.running == 1)
    waiting = asyncio.create_task(engine.start_workflow(definition.id))
    await _wait_until(lambda: len(engine.in_flight()) == 2)
    stored = await engine.repository.list_runs(workflow_id=definition.id)
    assert sorted(r.status for r in stored) == ["pending", "running"]

    assert await engine.reconcile_interrupted_runs() == []

    gate.release.set()
    results = await asyncio.gather(running, waiting)

    assert [r.status for r in results] == ["completed", "completed"]
    for result in results:
        run = await engine.repository.get_run(result.run_id)
        assert run.status == "completed"
        assert not run.dead_letter
    assert await engine.list_dead_letters() == []
