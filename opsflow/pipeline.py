"""Pipelines: workflow stages run in dependency waves that hand their output forward."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, model_validator

from .contracts import ApprovalTicket, PipelineRun, WorkflowDefinition, WorkflowResult
from .engine import WorkflowEngine
from .errors import InvalidTransition, OpsflowError, PipelineNotFound, WorkflowInactive

logger = logging.getLogger(__name__)

StageCondition = Callable[[Dict[str, WorkflowResult]], bool]


class PipelineStage(BaseModel):
    """One stop on a pipeline's itinerary.

    ``workflow`` is a definition id or a workflow type and also names the
    stage. ``depends_on`` lists the stages that must complete first; left
    unset it means the stage declared just before this one. The output of a
    completed stage is handed to its dependents under ``forward_output_as``,
    or under the stage name when that is not set. ``condition`` receives the
    results of the stages settled so far; a stage whose condition is false is
    skipped.
    """

    workflow: str
    depends_on: Optional[List[str]] = None
    parallel_with: List[str] = Field(default_factory=list)
    forward_output_as: Optional[str] = None
    condition: Optional[StageCondition] = Field(default=None, exclude=True)

    @property
    def output_key(self) -> str:
        return self.forward_output_as or self.workflow


class PipelineDefinition(BaseModel):
    id: str
    name: str
    description: str = ""
    stages: List[PipelineStage]

    @model_validator(mode="after")
    def _resolve_dependencies(self) -> "PipelineDefinition":
        names = [s.workflow for s in self.stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Pipeline {self.id} names a stage more than once")
        previous: Optional[str] = None
        for stage in self.stages:
            if stage.depends_on is None:
                stage.depends_on = [previous] if previous else []
            unknown = [d for d in stage.depends_on if d not in names]
            if unknown:
                raise ValueError(f"Stage {stage.workflow} depends on unknown stages {unknown}")
            previous = stage.workflow
        return self

    def stage(self, name: str) -> PipelineStage:
        for stage in self.stages:
            if stage.workflow == name:
                return stage
        raise PipelineNotFound(f"Pipeline {self.id} has no stage {name}")


class PipelineResult(BaseModel):
    success: bool
    pipeline_id: str
    pipeline_run_id: str
    status: str
    awaiting_approval: bool = False
    awaiting_stages: List[str] = Field(default_factory=list)
    stages_completed: int = 0
    stages_total: int = 0
    stage_results: List[WorkflowResult] = Field(default_factory=list)
    skipped_stages: List[str] = Field(default_factory=list)
    failed_stage: Optional[str] = None
    error: Optional[str] = None


def build_waves(stages: List[PipelineStage]) -> List[List[PipelineStage]]:
    """Group stages so every stage runs in a wave after all of its dependencies.

    Stages keep their declared order within a wave. If the remaining stages
    wait on each other they are forced into one final wave.
    """
    waves: List[List[PipelineStage]] = []
    done: set[str] = set()
    remaining = list(stages)
    while remaining:
        wave = [s for s in remaining if all(d in done for d in (s.depends_on or []))]
        if not wave:
            logger.warning(
                f"Stages {[s.workflow for s in remaining]} wait on each other; running them together"
            )
            wave = remaining
        waves.append(wave)
        done.update(s.workflow for s in wave)
        remaining = [s for s in remaining if s not in wave]
    return waves


DEFAULT_PIPELINES: List[PipelineDefinition] = [
    PipelineDefinition(
        id="plan_to_produce",
        name="Plan to Produce",
        description="Forecast demand, plan production, derive materials and work orders, then schedule.",
        stages=[
            PipelineStage(workflow="demand_forecasting", forward_output_as="forecasts"),
            PipelineStage(workflow="production_planning", forward_output_as="production_plans"),
            PipelineStage(
                workflow="material_requirements",
                depends_on=["production_planning"],
                parallel_with=["work_order_generation"],
                forward_output_as="requirements",
            ),
            PipelineStage(
                workflow="work_order_generation",
                depends_on=["production_planning"],
                forward_output_as="work_orders",
            ),
            PipelineStage(workflow="production_scheduling", depends_on=["work_order_generation"]),
        ],
    ),
    PipelineDefinition(
        id="procure_to_pay",
        name="Procure to Pay",
        description="Suggest purchases, issue purchase orders, match vendor invoices, then pay them.",
        stages=[
            PipelineStage(workflow="material_requirements", forward_output_as="requirements"),
            PipelineStage(workflow="procurement", forward_output_as="purchase_orders"),
            PipelineStage(workflow="invoice_matching", forward_output_as="matched_invoices"),
            PipelineStage(workflow="payment_processing"),
        ],
    ),
    PipelineDefinition(
        id="order_to_cash",
        name="Order to Cash",
        description="Fulfil confirmed orders, then source freight and watch shipments in parallel.",
        stages=[
            PipelineStage(workflow="order_fulfillment", forward_output_as="fulfilled_orders"),
            PipelineStage(
                workflow="freight_procurement",
                depends_on=["order_fulfillment"],
                parallel_with=["shipment_tracking"],
            ),
            PipelineStage(workflow="shipment_tracking", depends_on=["order_fulfillment"]),
        ],
    ),
    PipelineDefinition(
        id="inventory_optimization",
        name="Inventory Optimization",
        description="Reorder and rebalance stock side by side, then review the overall position.",
        stages=[
            PipelineStage(workflow="inventory_reorder", depends_on=[], parallel_with=["inventory_transfer"]),
            PipelineStage(workflow="inventory_transfer", depends_on=[]),
            PipelineStage(
                workflow="inventory_optimization",
                depends_on=["inventory_reorder", "inventory_transfer"],
            ),
        ],
    ),
    PipelineDefinition(
        id="daily_operations",
        name="Daily Operations",
        description="The daily sweep: planning, stock, orders, shipments, invoices and open exceptions.",
        stages=[
            PipelineStage(workflow="demand_forecasting", depends_on=[], forward_output_as="forecasts"),
            PipelineStage(workflow="production_planning", forward_output_as="production_plans"),
            PipelineStage(workflow="inventory_reorder", depends_on=[], parallel_with=["demand_forecasting"]),
            PipelineStage(workflow="order_fulfillment", depends_on=[], parallel_with=["demand_forecasting"]),
            PipelineStage(workflow="shipment_tracking", depends_on=[], parallel_with=["demand_forecasting"]),
            PipelineStage(workflow="material_requirements", depends_on=["production_planning"]),
            PipelineStage(
                workflow="work_order_generation",
                depends_on=["production_planning"],
                forward_output_as="work_orders",
            ),
            PipelineStage(workflow="production_scheduling", depends_on=["work_order_generation"]),
            PipelineStage(workflow="invoice_matching", depends_on=[], parallel_with=["demand_forecasting"]),
            PipelineStage(workflow="exception_handling", depends_on=[]),
        ],
    ),
    PipelineDefinition(
        id="forecast_to_fulfill",
        name="Forecast to Fulfill",
        description="The full planning chain through procurement and order fulfilment.",
        stages=[
            PipelineStage(workflow="demand_forecasting", forward_output_as="forecasts"),
            PipelineStage(workflow="production_planning", forward_output_as="production_plans"),
            PipelineStage(workflow="material_requirements", forward_output_as="requirements"),
            PipelineStage(workflow="procurement", forward_output_as="purchase_orders"),
            PipelineStage(workflow="order_fulfillment"),
        ],
    ),
]


class PipelineExecutor:
    """Runs pipelines wave by wave through the workflow engine.

    Stages of one wave start together; the engine's concurrency slots bound
    how many actually run at once. A stage that parks in
    ``awaiting_approval`` parks the whole pipeline once the rest of its wave
    has settled. The executor registers itself as an approval listener after
    the engine, so by the time it is called the stage run has already been
    resumed.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        pipelines: Optional[Iterable[PipelineDefinition]] = None,
    ) -> None:
        self.engine = engine
        self._pipelines: Dict[str, PipelineDefinition] = {
            p.id: p for p in (DEFAULT_PIPELINES if pipelines is None else pipelines)
        }
        engine.approvals.add_listener(self.handle_ticket_resolved)

    def register_pipeline(self, pipeline: PipelineDefinition) -> None:
        self._pipelines[pipeline.id] = pipeline

    def list_pipelines(self) -> list[PipelineDefinition]:
        return list(self._pipelines.values())

    def get_pipeline(self, pipeline_id: str) -> PipelineDefinition:
        pipeline = self._pipelines.get(pipeline_id)
        if pipeline is None:
            raise PipelineNotFound(f"Pipeline {pipeline_id} not found")
        return pipeline

    async def get_execution_plan(self, pipeline_id: str) -> list[Dict[str, Any]]:
        """Describe each stage, its wave, and whether its workflow is registered and active."""
        pipeline = self.get_pipeline(pipeline_id)
        wave_of = {
            stage.workflow: number
            for number, wave in enumerate(build_waves(pipeline.stages), start=1)
            for stage in wave
        }
        plan = []
        for index, stage in enumerate(pipeline.stages, start=1):
            try:
                definition = await self.engine.find_definition(stage.workflow)
            except OpsflowError:
                definition = None
            plan.append(
                {
                    "stage": index,
                    "wave": wave_of[stage.workflow],
                    "workflow": stage.workflow,
                    "workflow_id": definition.id if definition else None,
                    "name": definition.name if definition else None,
                    "active": bool(definition and definition.is_active),
                    "depends_on": list(stage.depends_on or []),
                    "parallel_with": list(stage.parallel_with),
                    "conditional": stage.condition is not None,
                    "forward_output_as": stage.output_key,
                }
            )
        return plan

    async def execute_pipeline(
        self,
        pipeline_id: str,
        input_data: Optional[Dict[str, Any]] = None,
        requested_by: Optional[str] = None,
    ) -> PipelineResult:
        pipeline = self.get_pipeline(pipeline_id)
        pipeline_run = PipelineRun(
            pipeline_id=pipeline.id,
            input_data=input_data or {},
            requested_by=requested_by,
            started_at=self.engine.clock.now(),
        )
        await self.engine.repository.save_pipeline_run(pipeline_run)
        logger.info(f"Starting pipeline {pipeline.name} ({len(pipeline.stages)} stages)")
        await self.engine.events.emit(
            "pipeline_started",
            "info",
            "pipeline",
            "pipeline_run",
            pipeline_run.id,
            {"pipeline_id": pipeline.id, "stages": len(pipeline.stages)},
        )
        return await self._advance(pipeline, pipeline_run, [])

    async def resume_pipeline(self, pipeline_run_id: str) -> PipelineResult:
        """Re-enter a parked pipeline at the wave that was waiting on approvals."""
        pipeline_run = await self.engine.repository.get_pipeline_run(pipeline_run_id)
        if pipeline_run is None:
            raise PipelineNotFound(f"Pipeline run {pipeline_run_id} not found")
        if pipeline_run.status != "awaiting_approval":
            raise InvalidTransition(
                f"Pipeline run {pipeline_run_id} is {pipeline_run.status}, not awaiting approval"
            )
        pipeline = self.get_pipeline(pipeline_run.pipeline_id)
        wave = build_waves(pipeline.stages)[pipeline_run.current_wave]

        wave_results: Dict[str, WorkflowResult] = {}
        for stage in wave:
            run_id = pipeline_run.stage_runs.get(stage.workflow)
            if run_id is None:
                continue
            stage_run = await self.engine.repository.get_run(run_id)
            if stage_run is None:
                raise PipelineNotFound(f"Stage run {run_id} of pipeline run {pipeline_run_id} is missing")
            if stage_run.status == "awaiting_approval":
                wave_results[stage.workflow] = await self.engine.resume_run(stage_run.id)
            else:
                wave_results[stage.workflow] = WorkflowResult.from_run(stage_run)

        results = list(wave_results.values())
        outcome = await self._settle_wave(pipeline, pipeline_run, wave, wave_results, results)
        if outcome is not None:
            return outcome
        return await self._advance(pipeline, pipeline_run, results)

    async def handle_ticket_resolved(self, ticket: ApprovalTicket) -> None:
        if ticket.run_id is None:
            return
        for pipeline_run in await self.engine.repository.list_pipeline_runs(status="awaiting_approval"):
            if ticket.run_id not in pipeline_run.stage_runs.values():
                continue
            stage_run = await self.engine.repository.get_run(ticket.run_id)
            if stage_run is not None and stage_run.status != "awaiting_approval":
                await self.resume_pipeline(pipeline_run.id)

    async def list_runs(self, status: Optional[str] = None) -> list[PipelineRun]:
        return await self.engine.repository.list_pipeline_runs(status=status)

    async def _advance(
        self,
        pipeline: PipelineDefinition,
        pipeline_run: PipelineRun,
        results: List[WorkflowResult],
    ) -> PipelineResult:
        waves = build_waves(pipeline.stages)
        while pipeline_run.current_wave < len(waves):
            wave = waves[pipeline_run.current_wave]
            settled = await self._settled_results(pipeline_run)

            runnable: List[PipelineStage] = []
            for stage in wave:
                if stage.condition is not None and not stage.condition(settled):
                    logger.info(f"Pipeline {pipeline.id} skipping {stage.workflow}: condition not met")
                    pipeline_run.skipped_stages.append(stage.workflow)
                    continue
                runnable.append(stage)

            definitions: List[WorkflowDefinition] = []
            for stage in runnable:
                try:
                    definitions.append(await self._stage_definition(stage))
                except OpsflowError as e:
                    return await self._stop(pipeline, pipeline_run, results, "failed", stage, str(e))

            logger.info(
                f"Pipeline {pipeline.id} wave {pipeline_run.current_wave + 1}/{len(waves)}: "
                f"{[s.workflow for s in runnable]}"
            )
            started = await asyncio.gather(
                *(self._start_stage(pipeline, pipeline_run, s, d) for s, d in zip(runnable, definitions))
            )
            wave_results: Dict[str, WorkflowResult] = {}
            for stage, result in zip(runnable, started):
                if result.run_id is not None:
                    pipeline_run.stage_runs[stage.workflow] = result.run_id
                    pipeline_run.stage_run_ids.append(result.run_id)
                wave_results[stage.workflow] = result
                results.append(result)

            outcome = await self._settle_wave(pipeline, pipeline_run, wave, wave_results, results)
            if outcome is not None:
                return outcome

        pipeline_run.status = "completed"
        pipeline_run.completed_at = self.engine.clock.now()
        await self.engine.repository.save_pipeline_run(pipeline_run)
        logger.info(f"Pipeline {pipeline.id} completed")
        await self._emit_finished(pipeline, pipeline_run)
        return self._result(pipeline, pipeline_run, results)

    async def _stage_definition(self, stage: PipelineStage) -> WorkflowDefinition:
        definition = await self.engine.find_definition(stage.workflow)
        if not definition.is_active:
            raise WorkflowInactive(f"Workflow {definition.name} is inactive")
        return definition

    async def _start_stage(
        self,
        pipeline: PipelineDefinition,
        pipeline_run: PipelineRun,
        stage: PipelineStage,
        definition: WorkflowDefinition,
    ) -> WorkflowResult:
        stage_input = dict(pipeline_run.input_data)
        for dependency in stage.depends_on or []:
            key = pipeline.stage(dependency).output_key
            if key in pipeline_run.carried_data:
                stage_input[key] = pipeline_run.carried_data[key]
        try:
            return await self.engine.start_workflow(
                definition.id, "manual", stage_input, requested_by=pipeline_run.requested_by
            )
        except OpsflowError as e:
            logger.error(f"Pipeline stage {stage.workflow} could not start: {e}")
            return WorkflowResult(success=False, status="failed", error=str(e))

    async def _settled_results(self, pipeline_run: PipelineRun) -> Dict[str, WorkflowResult]:
        settled: Dict[str, WorkflowResult] = {}
        for name, run_id in pipeline_run.stage_runs.items():
            run = await self.engine.repository.get_run(run_id)
            if run is not None:
                settled[name] = WorkflowResult.from_run(run)
        return settled

    async def _settle_wave(
        self,
        pipeline: PipelineDefinition,
        pipeline_run: PipelineRun,
        wave: List[PipelineStage],
        wave_results: Dict[str, WorkflowResult],
        results: List[WorkflowResult],
    ) -> Optional[PipelineResult]:
        """Carry finished stages forward; stop or park the pipeline if the wave did not complete."""
        awaiting: List[str] = []
        failure: Optional[tuple[PipelineStage, WorkflowResult]] = None
        for stage in wave:
            result = wave_results.get(stage.workflow)
            if result is None:
                continue
            if result.status == "awaiting_approval":
                awaiting.append(stage.workflow)
            elif result.status != "completed":
                failure = failure or (stage, result)
            elif stage.workflow not in pipeline_run.completed_stages:
                pipeline_run.completed_stages.append(stage.workflow)
                pipeline_run.carried_data[stage.output_key] = result.output_data or {}
        pipeline_run.current_stage = len(pipeline_run.completed_stages) + len(pipeline_run.skipped_stages)

        if failure is not None:
            stage, result = failure
            status = "cancelled" if result.status == "cancelled" else "failed"
            return await self._stop(pipeline, pipeline_run, results, status, stage, result.error)

        if awaiting:
            pipeline_run.status = "awaiting_approval"
            await self.engine.repository.save_pipeline_run(pipeline_run)
            logger.info(f"Pipeline {pipeline.id} paused for approvals at {awaiting}")
            return self._result(pipeline, pipeline_run, results, awaiting)

        pipeline_run.current_wave += 1
        pipeline_run.status = "running"
        await self.engine.repository.save_pipeline_run(pipeline_run)
        return None

    async def _stop(
        self,
        pipeline: PipelineDefinition,
        pipeline_run: PipelineRun,
        results: List[WorkflowResult],
        status: str,
        stage: PipelineStage,
        error: Optional[str],
    ) -> PipelineResult:
        pipeline_run.status = status
        pipeline_run.failed_stage = stage.workflow
        pipeline_run.error_message = error
        pipeline_run.completed_at = self.engine.clock.now()
        await self.engine.repository.save_pipeline_run(pipeline_run)
        logger.warning(f"Pipeline {pipeline.id} stopped at {stage.workflow}: {error}")
        await self._emit_finished(pipeline, pipeline_run)
        return self._result(pipeline, pipeline_run, results)

    async def _emit_finished(self, pipeline: PipelineDefinition, pipeline_run: PipelineRun) -> None:
        completed = pipeline_run.status == "completed"
        await self.engine.events.emit(
            "pipeline_completed" if completed else "pipeline_failed",
            "info" if completed else "warning",
            "pipeline",
            "pipeline_run",
            pipeline_run.id,
            {
                "pipeline_id": pipeline.id,
                "status": pipeline_run.status,
                "stages_completed": pipeline_run.current_stage,
                "stages_total": len(pipeline.stages),
                "failed_stage": pipeline_run.failed_stage,
            },
        )

    @staticmethod
    def _result(
        pipeline: PipelineDefinition,
        pipeline_run: PipelineRun,
        results: List[WorkflowResult],
        awaiting: Optional[List[str]] = None,
    ) -> PipelineResult:
        return PipelineResult(
            success=pipeline_run.status in ("completed", "awaiting_approval"),
            pipeline_id=pipeline.id,
            pipeline_run_id=pipeline_run.id,
            status=pipeline_run.status,
            awaiting_approval=pipeline_run.status == "awaiting_approval",
            awaiting_stages=awaiting or [],
            stages_completed=pipeline_run.current_stage,
            stages_total=len(pipeline.stages),
            stage_results=results,
            skipped_stages=list(pipeline_run.skipped_stages),
            failed_stage=pipeline_run.failed_stage,
            error=pipeline_run.error_message,
        )
