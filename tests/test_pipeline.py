"""Pipeline execution across workflow stages."""

import pytest

from opsflow.catalog import seed_defaults
from opsflow.contracts import WorkflowDefinition
from opsflow.errors import InvalidTransition, PipelineNotFound
from opsflow.pipeline import PipelineDefinition, PipelineExecutor, PipelineStage, build_waves
from opsflow.records import InMemoryRecordStore


@pytest.fixture
def pipelines(engine):
    return PipelineExecutor(engine)


def _planning_records():
    return InMemoryRecordStore(
        {
            "products": [{"id": 1, "name": "Widget", "status": "active"}],
            "sales": [{"id": 1, "product_id": 1, "quantity": 90}],
            "inventory": [{"id": 1, "product_id": 1, "quantity": 10, "reserved_quantity": 0}],
            "boms": [{"id": 2, "product_id": 1, "components": [{"raw_material_id": 9, "quantity": 2}]}],
            "raw_materials": [
                {"id": 9, "name": "Steel", "quantity": 10, "unit_cost": 50, "preferred_vendor_id": 7}
            ],
        }
    )


def _waves(stages):
    return [[s.workflow for s in wave] for wave in build_waves(stages)]


@pytest.mark.asyncio
async def test_plan_to_produce_parks_then_finishes_on_approval(engine, pipelines):
    engine.records = _planning_records()
    await seed_defaults(engine)

    result = await pipelines.execute_pipeline("plan_to_produce", requested_by="planner")

    assert result.status == "awaiting_approval"
    assert result.awaiting_approval
    assert result.awaiting_stages == ["material_requirements"]
    assert result.stages_completed == 3
    forecast, planning, mrp, work_orders = result.stage_results
    assert [r.status for r in result.stage_results] == [
        "completed",
        "completed",
        "awaiting_approval",
        "completed",
    ]

    planning_run = await engine.repository.get_run(planning.run_id)
    assert "forecasts" in planning_run.input_data
    mrp_run = await engine.repository.get_run(mrp.run_id)
    assert "production_plans" in mrp_run.input_data
    assert mrp_run.requested_by == "planner"
    (work_order,) = await engine.records.query("work_orders")
    assert work_order["status"] == "planned"

    (ticket,) = await engine.approvals.list_open()
    await engine.approvals.process_approval_decision(ticket.id, True, "dana")

    (pipeline_run,) = await pipelines.list_runs()
    assert pipeline_run.status == "completed"
    assert pipeline_run.current_stage == 5
    assert pipeline_run.completed_stages[-1] == "production_scheduling"
    assert (await engine.repository.get_run(mrp_run.id)).status == "completed"
    scheduling_run = await engine.repository.get_run(pipeline_run.stage_runs["production_scheduling"])
    assert "work_orders" in scheduling_run.input_data
    assert "production_plans" not in scheduling_run.input_data


@pytest.mark.asyncio
async def test_rejected_stage_cancels_pipeline(engine, pipelines):
    engine.records = _planning_records()
    await seed_defaults(engine)
    result = await pipelines.execute_pipeline("plan_to_produce")
    (ticket,) = await engine.approvals.list_open()

    await engine.approvals.process_approval_decision(ticket.id, False, "dana")

    pipeline_run = await engine.repository.get_pipeline_run(result.pipeline_run_id)
    assert pipeline_run.status == "cancelled"
    assert pipeline_run.failed_stage == "material_requirements"
    assert "production_scheduling" not in pipeline_run.stage_runs


@pytest.mark.asyncio
async def test_missing_stage_workflow_fails_pipeline(engine, pipelines):
    result = await pipelines.execute_pipeline("order_to_cash")

    assert result.status == "failed"
    assert not result.success
    assert result.failed_stage == "order_fulfillment"
    assert result.stage_results == []


@pytest.mark.asyncio
async def test_inactive_stage_workflow_fails_pipeline(engine, pipelines):
    await seed_defaults(engine)
    retired = await engine.register_definition(
        WorkflowDefinition(name="Retired Matching", workflow_type="invoice_matching")
    )
    await engine.deactivate_definition(retired.id)
    pipelines.register_pipeline(
        PipelineDefinition(
            id="fulfil_then_match",
            name="Fulfil then match",
            stages=[PipelineStage(workflow="order_fulfillment"), PipelineStage(workflow=retired.id)],
        )
    )

    result = await pipelines.execute_pipeline("fulfil_then_match")

    assert result.status == "failed"
    assert result.failed_stage == retired.id
    assert "inactive" in result.error
    assert [r.status for r in result.stage_results] == ["completed"]
    stored = await engine.repository.get_pipeline_run(result.pipeline_run_id)
    assert stored.status == "failed"
    assert stored.completed_at is not None
    assert [e.event_type for e in await engine.events.history() if e.event_type.startswith("pipeline_")] == [
        "pipeline_started",
        "pipeline_failed",
    ]


@pytest.mark.asyncio
async def test_stage_output_is_forwarded_to_parallel_dependents(engine, pipelines):
    await seed_defaults(engine)

    result = await pipelines.execute_pipeline("order_to_cash", {"source": "test"})

    assert result.status == "completed"
    fulfillment, freight, tracking = result.stage_results
    for dependent in (freight, tracking):
        run = await engine.repository.get_run(dependent.run_id)
        assert run.input_data["source"] == "test"
        assert run.input_data["fulfilled_orders"] == fulfillment.output_data
    stored = await engine.repository.get_pipeline_run(result.pipeline_run_id)
    assert stored.completed_stages == ["order_fulfillment", "freight_procurement", "shipment_tracking"]


@pytest.mark.asyncio
async def test_stage_with_false_condition_is_skipped(engine, pipelines):
    await seed_defaults(engine)
    pipelines.register_pipeline(
        PipelineDefinition(
            id="match_if_busy",
            name="Match if busy",
            stages=[
                PipelineStage(workflow="order_fulfillment"),
                PipelineStage(
                    workflow="invoice_matching",
                    condition=lambda settled: settled["order_fulfillment"].items_processed > 0,
                ),
                PipelineStage(workflow="shipment_tracking"),
            ],
        )
    )

    result = await pipelines.execute_pipeline("match_if_busy")

    assert result.status == "completed"
    assert result.skipped_stages == ["invoice_matching"]
    assert result.stages_completed == 3
    assert len(result.stage_results) == 2
    stored = await engine.repository.get_pipeline_run(result.pipeline_run_id)
    assert "invoice_matching" not in stored.stage_runs


def test_waves_follow_dependencies():
    stages = [
        PipelineStage(workflow="a"),
        PipelineStage(workflow="b"),
        PipelineStage(workflow="c", depends_on=["a"]),
        PipelineStage(workflow="d", depends_on=["b", "c"]),
    ]
    pipeline = PipelineDefinition(id="p", name="P", stages=stages)

    assert pipeline.stage("b").depends_on == ["a"]
    assert _waves(pipeline.stages) == [["a"], ["b", "c"], ["d"]]


def test_stages_waiting_on_each_other_run_together():
    stages = [
        PipelineStage(workflow="a", depends_on=[]),
        PipelineStage(workflow="b", depends_on=["c"]),
        PipelineStage(workflow="c", depends_on=["b"]),
    ]

    assert _waves(PipelineDefinition(id="p", name="P", stages=stages).stages) == [["a"], ["b", "c"]]


def test_pipeline_rejects_unknown_dependencies_and_duplicates():
    with pytest.raises(ValueError):
        PipelineDefinition(id="p", name="P", stages=[PipelineStage(workflow="a", depends_on=["z"])])
    with pytest.raises(ValueError):
        PipelineDefinition(id="p", name="P", stages=[PipelineStage(workflow="a"), PipelineStage(workflow="a")])


@pytest.mark.asyncio
async def test_execution_plan_reports_registration(engine, pipelines):
    await seed_defaults(engine)
    pipelines.register_pipeline(
        PipelineDefinition(
            id="custom",
            name="Custom",
            stages=[PipelineStage(workflow="invoice_matching"), PipelineStage(workflow="unknown")],
        )
    )

    plan = await pipelines.get_execution_plan("custom")

    assert [p["active"] for p in plan] == [True, False]
    assert plan[0]["name"] == "Invoice Matching"
    assert plan[1]["workflow_id"] is None
    assert plan[1]["depends_on"] == ["invoice_matching"]


@pytest.mark.asyncio
async def test_execution_plan_numbers_waves(engine, pipelines):
    await seed_defaults(engine)

    plan = await pipelines.get_execution_plan("plan_to_produce")

    assert [(p["workflow"], p["wave"]) for p in plan] == [
        ("demand_forecasting", 1),
        ("production_planning", 2),
        ("material_requirements", 3),
        ("work_order_generation", 3),
        ("production_scheduling", 4),
    ]
    assert all(p["active"] for p in plan)
    assert plan[2]["parallel_with"] == ["work_order_generation"]


@pytest.mark.asyncio
async def test_default_pipelines_only_name_catalog_workflows(engine, pipelines):
    await seed_defaults(engine)

    for pipeline in pipelines.list_pipelines():
        plan = await pipelines.get_execution_plan(pipeline.id)
        assert all(p["active"] for p in plan), pipeline.id


@pytest.mark.asyncio
async def test_resume_requires_parked_pipeline(engine, pipelines):
    await seed_defaults(engine)
    result = await pipelines.execute_pipeline("order_to_cash")

    with pytest.raises(InvalidTransition):
        await pipelines.resume_pipeline(result.pipeline_run_id)
    with pytest.raises(PipelineNotFound):
        await pipelines.resume_pipeline("missing")
    with pytest.raises(PipelineNotFound):
        pipelines.get_pipeline("missing")
