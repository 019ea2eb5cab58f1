"""Periodic driver that turns triggers into workflow runs."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from .breaker import BreakerState
from .config import OrchestratorConfig
from .contracts import (
    OperationalEvent,
    RunTrigger,
    WorkflowDefinition,
    WorkflowMetric,
    WorkflowResult,
    WorkflowRun,
)
from .engine import WorkflowEngine
from .errors import CircuitBreakerOpen, OpsflowError
from .pipeline import PipelineExecutor, PipelineResult
from .scheduling import evaluate_threshold, next_cron_run
from .utils.clock import Clock

logger = logging.getLogger(__name__)

SUBSCRIBER_NAME = "orchestrator"


class RunRequest(BaseModel):
    workflow_id: str
    trigger: RunTrigger
    input_data: Dict[str, Any] = Field(default_factory=dict)
    requested_by: Optional[str] = None
    dedupe_key: Optional[str] = None


class TickReport(BaseModel):
    tick: int
    enqueued: int = 0
    events_drained: int = 0
    runs: List[WorkflowResult] = Field(default_factory=list)
    escalated: int = 0
    reconciled: int = 0


class SystemStatus(BaseModel):
    running: bool
    ticks: int
    breakers: Dict[str, BreakerState]
    concurrency: Dict[str, int]
    queue_depth: int
    open_tickets: int
    open_exceptions: int
    escalated_exceptions: int
    dead_letters: int
    pending_events: int
    metrics_today: List[WorkflowMetric]


class Orchestrator:
    """Evaluates triggers on a fixed interval and feeds the engine.

    Every :meth:`tick` enqueues run requests for due schedules, met
    thresholds, continuous workflows and delivered events, then executes the
    queue. Concurrency is bounded by the engine's slots, not here.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        pipelines: Optional[PipelineExecutor] = None,
        config: Optional[OrchestratorConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.engine = engine
        self.pipelines = pipelines or PipelineExecutor(engine)
        self.config = config or engine.config.orchestrator
        self.clock = clock or engine.clock
        self._queue: Deque[RunRequest] = deque()
        self._ticks = 0
        self._running = False
        self._stopping: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._consumer: Optional[asyncio.Task] = None
        engine.events.subscribe(SUBSCRIBER_NAME, self._on_event)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        if self._running:
            logger.info("Orchestrator already running")
            return
        self._running = True
        self._stopping = asyncio.Event()
        await self.engine.reconcile_interrupted_runs()
        self._task = asyncio.create_task(self._loop())
        self._consumer = asyncio.create_task(self.engine.events.consume())
        logger.info(
            f"Orchestrator started (tick every {self.config.tick_interval_seconds}s, "
            f"{self.config.max_concurrent_runs} concurrent runs)"
        )

    async def stop(self) -> None:
        if not self._running:
            logger.info("Orchestrator is not running")
            return
        self._running = False
        if self._stopping is not None:
            self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Event consumer stopped with an error: {e}")
            self._consumer = None
        logger.info("Orchestrator stopped")

    async def run_forever(self, lifespan: Optional[float] = None) -> None:
        """Run until stopped, or for ``lifespan`` seconds."""
        await self.start()
        try:
            if lifespan is None:
                await self._task
            else:
                await asyncio.sleep(lifespan)
        finally:
            await self.stop()

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Orchestrator tick {self._ticks} failed: {e}")
            try:
                await asyncio.wait_for(self._stopping.wait(), self.config.tick_interval_seconds)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # One pass
    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        now = now or self.clock.now()
        self._ticks += 1
        report = TickReport(tick=self._ticks)

        before = len(self._queue)
        definitions = await self.engine.list_definitions(active_only=True)
        for definition in definitions:
            if definition.trigger == "scheduled":
                await self._check_schedule(definition, now)
            elif definition.trigger == "threshold":
                await self._check_threshold(definition)
            elif definition.trigger == "continuous":
                await self._check_continuous(definition)
        report.events_drained = await self.engine.events.drain(self.config.event_batch_size)
        report.enqueued = len(self._queue) - before

        report.runs = await self._run_queue()

        if self._ticks % self.config.escalation_every_ticks == 0:
            report.escalated = len(await self.engine.approvals.escalate_due(now))
        if self._ticks % self.config.reconcile_every_ticks == 0:
            report.reconciled = len(await self.engine.reconcile_interrupted_runs())
        logger.debug(
            f"Tick {report.tick}: {report.enqueued} enqueued, {len(report.runs)} run, "
            f"{report.events_drained} events, {report.escalated} escalated"
        )
        return report

    def enqueue(self, request: RunRequest) -> None:
        if request.dedupe_key is not None and any(
            queued.dedupe_key == request.dedupe_key for queued in self._queue
        ):
            return
        self._queue.append(request)

    async def _check_schedule(self, definition: WorkflowDefinition, now: datetime) -> None:
        cron = definition.trigger_params.cron
        if not cron:
            return
        due = definition.next_scheduled_run
        if due is not None and due > now:
            return
        if due is not None:
            if await self._busy(definition):
                logger.info(f"Skipping scheduled run of {definition.name}: previous run still active")
            else:
                self.enqueue(
                    RunRequest(
                        workflow_id=definition.id,
                        trigger="schedule",
                        dedupe_key=f"schedule:{definition.id}:{due.isoformat()}",
                    )
                )
        definition.next_scheduled_run = next_cron_run(cron, now)
        await self.engine.repository.save_definition(definition)

    async def _check_threshold(self, definition: WorkflowDefinition) -> None:
        condition = definition.trigger_params.threshold
        if condition is None or not self._breaker_allows(definition) or await self._busy(definition):
            return
        if await evaluate_threshold(condition, self.engine.records, self.engine.repository):
            logger.info(f"Threshold {condition.type} met for {definition.name}")
            self.enqueue(
                RunRequest(
                    workflow_id=definition.id,
                    trigger="threshold",
                    input_data={"threshold": condition.model_dump()},
                )
            )

    async def _check_continuous(self, definition: WorkflowDefinition) -> None:
        if self._breaker_allows(definition) and not await self._busy(definition):
            self.enqueue(RunRequest(workflow_id=definition.id, trigger="continuous"))

    def _breaker_allows(self, definition: WorkflowDefinition) -> bool:
        try:
            self.engine.check_breaker(definition.id)
        except CircuitBreakerOpen as e:
            logger.debug(f"Not triggering {definition.name}: {e}")
            return False
        return True

    async def _busy(self, definition: WorkflowDefinition) -> bool:
        """Whether the workflow already has as many unfinished runs as it may."""
        if any(r.workflow_id == definition.id for r in self._queue):
            return True
        unfinished = [
            r
            for r in await self.engine.repository.list_runs(workflow_id=definition.id)
            if not r.is_terminal
        ]
        return len(unfinished) >= definition.max_concurrent_runs

    async def _on_event(self, event: OperationalEvent) -> None:
        """Event subscriber: enqueue event-triggered and dependent workflows."""
        completed_id = event.data.get("workflow_id") if event.event_type == "workflow_completed" else None
        completed_type = event.data.get("workflow_type")
        for definition in await self.engine.list_definitions(active_only=True):
            params = definition.trigger_params
            trigger: Optional[RunTrigger] = None
            if definition.trigger == "event" and event.event_type in params.events:
                trigger = "event"
            elif completed_id is not None and (
                completed_id in params.depends_on or completed_type in params.depends_on
            ):
                trigger = "dependency"
            if trigger is None or definition.id == completed_id:
                continue
            self.enqueue(
                RunRequest(
                    workflow_id=definition.id,
                    trigger=trigger,
                    input_data={"event_id": event.id, "event_type": event.event_type, **event.data},
                    dedupe_key=f"event:{event.id}:{definition.id}",
                )
            )

    async def _run_queue(self) -> List[WorkflowResult]:
        requests = list(self._queue)
        self._queue.clear()
        if not requests:
            return []
        results = await asyncio.gather(*(self._dispatch(r) for r in requests))
        return [r for r in results if r is not None]

    async def _dispatch(self, request: RunRequest) -> Optional[WorkflowResult]:
        try:
            return await self.engine.start_workflow(
                request.workflow_id,
                request.trigger,
                request.input_data,
                requested_by=request.requested_by,
                dedupe_key=request.dedupe_key,
            )
        except OpsflowError as e:
            logger.error(f"Could not start {request.trigger} run of {request.workflow_id}: {e}")
            return None

    # ------------------------------------------------------------------
    # Manual entry points
    async def trigger_workflow(
        self,
        workflow_id: str,
        input_data: Optional[Dict[str, Any]] = None,
        requested_by: Optional[str] = None,
    ) -> WorkflowResult:
        definition = await self.engine.find_definition(workflow_id)
        return await self.engine.start_workflow(
            definition.id, "manual", input_data, requested_by=requested_by
        )

    async def trigger_pipeline(
        self,
        pipeline_id: str,
        input_data: Optional[Dict[str, Any]] = None,
        requested_by: Optional[str] = None,
    ) -> PipelineResult:
        return await self.pipelines.execute_pipeline(pipeline_id, input_data, requested_by)

    # ------------------------------------------------------------------
    # Monitoring
    async def get_system_status(self) -> SystemStatus:
        repository = self.engine.repository
        exceptions = await repository.list_exceptions()
        return SystemStatus(
            running=self._running,
            ticks=self._ticks,
            breakers=self.engine.breaker_states(),
            concurrency=self.engine.concurrency(),
            queue_depth=len(self._queue),
            open_tickets=len(await self.engine.approvals.list_open()),
            open_exceptions=sum(1 for e in exceptions if e.status == "open"),
            escalated_exceptions=sum(1 for e in exceptions if e.status == "escalated"),
            dead_letters=len(await self.engine.list_dead_letters()),
            pending_events=await self.engine.events.pending_count(),
            metrics_today=await self.engine.metrics.for_day(self.clock.now().date()),
        )

    async def workflow_history(self, limit: int = 50) -> list[WorkflowRun]:
        runs = await self.engine.repository.list_runs()
        return sorted(runs, key=lambda r: r.created_at, reverse=True)[:limit]
