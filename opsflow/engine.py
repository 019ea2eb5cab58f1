"""Workflow engine: run lifecycle, retries, breakers and dead letters."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from .approvals import ApprovalManager
from .breaker import BreakerRegistry, BreakerState
from .config import OpsflowConfig
from .constants import BREAKER_OPEN_PREFIX, DEAD_LETTER_PREFIX, INTERRUPTED_PREFIX
from .contracts import (
    ApprovalTicket,
    AutonomousDecision,
    RunTrigger,
    WorkflowDefinition,
    WorkflowResult,
    WorkflowRun,
)
from .decisions import NO_DEFAULT, DecisionInvoker, DecisionService, build_decision_invoker
from .errors import (
    CircuitBreakerOpen,
    InvalidTransition,
    RunCancelled,
    WorkflowConfigError,
    WorkflowHalted,
    WorkflowInactive,
    WorkflowNotFound,
)
from .events import EventBus
from .exception_handler import ExceptionHandler
from .metrics import MetricsRecorder
from .notifications import LoggingNotifier, NotificationService, Notifier, WebhookNotifier
from .persistence import WorkflowRepository
from .processors import Processor, ProcessorConfig, get_processor
from .records import RecordStore
from .runtime import ExecutionContext, StepRuntime
from .scheduling import next_cron_run, parse_cron
from .transports import BaseTransport
from .utils import retry
from .utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


def build_notifier(config: OpsflowConfig) -> Notifier:
    if config.notifications.webhook_url:
        return WebhookNotifier(config.notifications.webhook_url, config.notifications.timeout_seconds)
    return LoggingNotifier()


class WorkflowEngine:
    """Owns the start, execute and finalize lifecycle of workflow runs.

    The engine is the only writer of run status, breaker state and the
    concurrency counters. Retries are handled here and nowhere else: every
    attempt is its own run row linked to the previous one through
    ``parent_run_id``.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        records: RecordStore,
        decision_invoker: Optional[DecisionInvoker] = None,
        notifier: Optional[Notifier] = None,
        transport: Optional[BaseTransport] = None,
        config: Optional[OpsflowConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config or OpsflowConfig()
        self.clock = clock or SystemClock()
        self.repository = repository
        self.records = records

        self.events = EventBus(repository, transport, self.clock)
        self.notifications = NotificationService(
            notifier or build_notifier(self.config),
            repository,
            self.config.notifications.role_addresses,
        )
        self.decisions = DecisionService(
            decision_invoker or build_decision_invoker(self.config.decisions.model),
            repository,
            self.config.decisions.min_confidence,
            self.clock,
        )
        self.approvals = ApprovalManager(
            repository, self.events, self.notifications, self.config.approvals, self.clock
        )
        self.exceptions = ExceptionHandler(
            repository,
            self.events,
            self.notifications,
            self.decisions,
            self.config.exceptions,
            self.clock,
        )
        self.runtime = StepRuntime(repository, self.exceptions, self.clock)
        self.metrics = MetricsRecorder(repository, self.config.metrics, self.clock)
        self.breakers = BreakerRegistry(
            self.config.breaker.failure_threshold,
            self.config.breaker.cooldown_seconds,
            self.clock,
        )

        self._limit = self.config.orchestrator.max_concurrent_runs
        self._slots = asyncio.Semaphore(self._limit)
        self._active = 0
        self._in_flight: Dict[str, WorkflowRun] = {}
        self._started_at = self.clock.now()

        self.approvals.add_listener(self.handle_ticket_resolved)

    # ------------------------------------------------------------------
    # Definitions
    def validate_definition(
        self, definition: WorkflowDefinition
    ) -> Tuple[Processor, ProcessorConfig]:
        """Resolve the processor and its config, or raise ``WorkflowConfigError``."""
        proc = get_processor(definition.workflow_type)
        if proc is None:
            raise WorkflowConfigError(
                f"Workflow {definition.name!r} names unknown processor {definition.workflow_type!r}"
            )
        try:
            proc_config = proc.config_model.model_validate(definition.execution_config)
        except ValidationError as e:
            raise WorkflowConfigError(
                f"Workflow {definition.name!r} has invalid execution_config: {e}"
            ) from e

        params = definition.trigger_params
        if definition.trigger == "scheduled":
            if not params.cron:
                raise WorkflowConfigError(f"Scheduled workflow {definition.name!r} has no cron")
            parse_cron(params.cron)
        elif definition.trigger == "event" and not params.events and not params.depends_on:
            raise WorkflowConfigError(
                f"Event workflow {definition.name!r} lists no events or upstream workflows"
            )
        elif definition.trigger == "threshold" and params.threshold is None:
            raise WorkflowConfigError(f"Threshold workflow {definition.name!r} has no condition")
        return proc, proc_config

    async def register_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        self.validate_definition(definition)
        if definition.trigger == "scheduled" and definition.next_scheduled_run is None:
            definition.next_scheduled_run = next_cron_run(
                definition.trigger_params.cron, self.clock.now()
            )
        await self.repository.save_definition(definition)
        logger.info(f"Registered workflow {definition.name} ({definition.workflow_type})")
        return definition

    async def update_definition(self, workflow_id: str, **changes: Any) -> WorkflowDefinition:
        current = await self.get_definition(workflow_id)
        data = current.model_dump()
        data.update(changes)
        updated = WorkflowDefinition.model_validate(data)
        self.validate_definition(updated)
        if "trigger_params" in changes or "trigger" in changes:
            updated.next_scheduled_run = (
                next_cron_run(updated.trigger_params.cron, self.clock.now())
                if updated.trigger == "scheduled"
                else None
            )
        await self.repository.save_definition(updated)
        return updated

    async def deactivate_definition(self, workflow_id: str) -> WorkflowDefinition:
        definition = await self.get_definition(workflow_id)
        definition.is_active = False
        await self.repository.save_definition(definition)
        logger.info(f"Deactivated workflow {definition.name}")
        return definition

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition:
        definition = await self.repository.get_definition(workflow_id)
        if definition is None:
            raise WorkflowNotFound(f"Workflow {workflow_id} not found")
        return definition

    async def list_definitions(self, active_only: bool = False) -> list[WorkflowDefinition]:
        return await self.repository.list_definitions(active_only=active_only)

    async def find_definition(self, reference: str) -> WorkflowDefinition:
        """Look a definition up by id, then by workflow type."""
        definition = await self.repository.get_definition(reference)
        if definition is not None:
            return definition
        for candidate in await self.repository.list_definitions(active_only=True):
            if candidate.workflow_type == reference:
                return candidate
        raise WorkflowNotFound(f"Workflow {reference} not found")

    # ------------------------------------------------------------------
    # Starting runs
    async def start_workflow(
        self,
        workflow_id: str,
        trigger: RunTrigger = "manual",
        input_data: Optional[Dict[str, Any]] = None,
        requested_by: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> WorkflowResult:
        if dedupe_key is not None:
            existing = await self.repository.find_run_by_dedupe_key(dedupe_key)
            if existing is not None:
                logger.info(f"Run for {dedupe_key} already exists: {existing.run_number}")
                return WorkflowResult.from_run(existing)

        definition = await self.get_definition(workflow_id)
        if not definition.is_active:
            raise WorkflowInactive(f"Workflow {definition.name} is inactive")
        proc, proc_config = self.validate_definition(definition)

        breaker = self.breakers.get(definition.id)
        if not breaker.allow():
            return await self._reject(definition, trigger, input_data, requested_by, dedupe_key)

        return await self._run_with_retry(
            definition, proc, proc_config, trigger, input_data or {}, requested_by, dedupe_key
        )

    def _new_run(
        self,
        definition: WorkflowDefinition,
        trigger: RunTrigger,
        input_data: Dict[str, Any],
        requested_by: Optional[str],
        dedupe_key: Optional[str] = None,
        attempt: int = 1,
        parent_run_id: Optional[str] = None,
    ) -> WorkflowRun:
        now = self.clock.now()
        return WorkflowRun(
            run_number=f"RUN-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}",
            workflow_id=definition.id,
            workflow_type=definition.workflow_type,
            trigger=trigger,
            requested_by=requested_by,
            input_data=input_data,
            created_at=now,
            attempt=attempt,
            parent_run_id=parent_run_id,
            dedupe_key=dedupe_key,
        )

    async def _reject(
        self,
        definition: WorkflowDefinition,
        trigger: RunTrigger,
        input_data: Optional[Dict[str, Any]],
        requested_by: Optional[str],
        dedupe_key: Optional[str],
    ) -> WorkflowResult:
        breaker = self.breakers.get(definition.id)
        run = self._new_run(definition, trigger, input_data or {}, requested_by, dedupe_key)
        run.transition("failed")
        run.error_message = f"{BREAKER_OPEN_PREFIX} {breaker.describe_rejection()}"
        run.started_at = run.completed_at = run.created_at
        run.duration_ms = 0
        await self.repository.save_run(run)
        logger.warning(f"Rejected start of {definition.name}: {run.error_message}")
        await self.events.emit(
            "workflow_rejected",
            "warning",
            "engine",
            "workflow_run",
            run.id,
            {"workflow_id": definition.id, "reason": run.error_message},
        )
        await self.metrics.refresh(definition.id, run.created_at.date())
        return WorkflowResult.from_run(run)

    async def _run_with_retry(
        self,
        definition: WorkflowDefinition,
        proc: Processor,
        proc_config: ProcessorConfig,
        trigger: RunTrigger,
        input_data: Dict[str, Any],
        requested_by: Optional[str],
        dedupe_key: Optional[str] = None,
        parent_run_id: Optional[str] = None,
    ) -> WorkflowResult:
        policy = self.config.retry
        breaker = self.breakers.get(definition.id)
        attempt = 1
        while True:
            run = self._new_run(
                definition,
                trigger if attempt == 1 else "retry",
                input_data,
                requested_by,
                dedupe_key if attempt == 1 else None,
                attempt,
                parent_run_id,
            )
            self._in_flight[run.id] = run
            try:
                await self.repository.save_run(run)
                run, retryable = await self._execute(definition, proc, proc_config, run)
            finally:
                self._in_flight.pop(run.id, None)
            if run.status != "failed":
                return WorkflowResult.from_run(run, attempt)
            if not retryable:
                return WorkflowResult.from_run(run, attempt)
            if attempt >= policy.max_attempts or breaker.state == "open":
                await self._dead_letter(run)
                return WorkflowResult.from_run(run, attempt)

            logger.info(
                f"Retrying {definition.name} after attempt {attempt}/{policy.max_attempts} failed"
            )
            await retry.schedule_retry(attempt, policy)
            if not breaker.allow():
                await self._dead_letter(run)
                return WorkflowResult.from_run(run, attempt)
            attempt += 1
            parent_run_id = run.id

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        async with self._slots:
            self._active += 1
            try:
                yield
            finally:
                self._active -= 1

    async def _sequence_start(self, run: WorkflowRun) -> int:
        steps = await self.repository.list_steps(run.id)
        return max((s.sequence for s in steps), default=0)

    async def _execute(
        self,
        definition: WorkflowDefinition,
        proc: Processor,
        proc_config: ProcessorConfig,
        run: WorkflowRun,
        approvals: Optional[Dict[str, ApprovalTicket]] = None,
    ) -> Tuple[WorkflowRun, bool]:
        """Run the processor once. Returns the finished run and whether it may be retried.

        The run counts as in flight from before it waits for a slot until its
        final state is saved, so reconciliation never mistakes it for an orphan.
        """
        retryable = False
        self._in_flight[run.id] = run
        try:
            async with self._slot():
                run.transition("running")
                if run.started_at is None:
                    run.started_at = self.clock.now()
                await self.repository.save_run(run)
                ctx = ExecutionContext(
                    self,
                    run,
                    definition,
                    proc_config,
                    self.records,
                    approvals=approvals,
                    sequence_start=await self._sequence_start(run),
                )
                try:
                    output = await proc.fn(ctx)
                except RunCancelled as e:
                    run.transition("cancelled")
                    run.error_message = str(e)
                except WorkflowHalted as e:
                    run.transition("failed")
                    run.error_message = f"halted: {e}"
                except Exception as e:
                    logger.error(f"Run {run.run_number} of {definition.name} failed: {e}")
                    run.transition("failed")
                    run.error_message = str(e) or type(e).__name__
                    retryable = True
                else:
                    run.output_data = {**(run.output_data or {}), **(output or {})}
                    if ctx.has_pending_approvals:
                        run.transition("awaiting_approval")
                    else:
                        run.transition("completed")
                        run.resume_point = None

            await self._finalize(definition, run)
        finally:
            self._in_flight.pop(run.id, None)
        return run, retryable

    async def _finalize(self, definition: WorkflowDefinition, run: WorkflowRun) -> None:
        now = self.clock.now()
        run.items_processed = max(run.items_processed, run.items_succeeded + run.items_failed)
        if run.status != "awaiting_approval":
            run.completed_at = now
        if run.started_at is not None:
            run.duration_ms = int((now - run.started_at).total_seconds() * 1000)
        await self.repository.save_run(run)

        breaker = self.breakers.get(definition.id)
        if run.status == "failed":
            breaker.record_failure()
        elif run.status in ("completed", "awaiting_approval"):
            breaker.record_success()

        definition = await self.repository.get_definition(definition.id) or definition
        definition.last_run_at = now
        if run.status == "completed":
            definition.success_count += 1
        elif run.status == "failed":
            definition.failure_count += 1
        await self.repository.save_definition(definition)

        await self.metrics.refresh(definition.id, run.created_at.date())

        event_data = {
            "workflow_id": definition.id,
            "workflow_type": definition.workflow_type,
            "run_id": run.id,
            "status": run.status,
        }
        if run.status == "completed":
            logger.info(f"Run {run.run_number} of {definition.name} completed")
            await self.events.emit(
                "workflow_completed", "info", "engine", "workflow_run", run.id, event_data
            )
        elif run.status == "awaiting_approval":
            logger.info(
                f"Run {run.run_number} of {definition.name} awaiting "
                f"{len(run.pending_ticket_ids)} approval(s)"
            )
            await self.events.emit(
                "workflow_awaiting_approval",
                "info",
                "engine",
                "workflow_run",
                run.id,
                {**event_data, "pending_tickets": run.pending_ticket_ids},
            )
        elif run.status == "failed":
            await self.events.emit(
                "workflow_failed",
                "warning",
                "engine",
                "workflow_run",
                run.id,
                {**event_data, "error": run.error_message, "attempt": run.attempt},
            )
        else:
            await self.events.emit(
                "workflow_cancelled", "info", "engine", "workflow_run", run.id, event_data
            )

    async def _dead_letter(self, run: WorkflowRun) -> None:
        run.dead_letter = True
        if not (run.error_message or "").startswith(DEAD_LETTER_PREFIX):
            run.error_message = f"{DEAD_LETTER_PREFIX} {run.error_message or 'failed'}"
        await self.repository.save_run(run)
        logger.error(f"Run {run.run_number} dead-lettered after {run.attempt} attempt(s)")
        await self.events.emit(
            "workflow_dead_lettered",
            "error",
            "engine",
            "workflow_run",
            run.id,
            {"workflow_id": run.workflow_id, "run_id": run.id, "error": run.error_message},
        )
        await self.notifications.notify(
            "dead_letter",
            f"Workflow run {run.run_number} needs attention",
            f"{run.workflow_type} failed after {run.attempt} attempt(s): {run.error_message}",
            self.config.exceptions.escalation_roles,
            run_id=run.id,
        )

    # ------------------------------------------------------------------
    # Decisions
    async def make_ai_decision(
        self,
        ctx: ExecutionContext,
        decision_type: str,
        prompt: str,
        options: Optional[List[Any]] = None,
        output_shape: Optional[Type[BaseModel]] = None,
        default: Any = NO_DEFAULT,
    ) -> AutonomousDecision:
        decision = await self.decisions.decide(
            decision_type,
            prompt,
            options,
            output_shape,
            default=default,
            run_id=ctx.run.id,
            workflow_id=ctx.run.workflow_id,
        )
        ctx.run.ai_decisions += 1
        ctx.run.tokens_used += decision.tokens_used
        return decision

    async def override_decision(
        self,
        decision_id: str,
        overridden_by: str,
        reason: str,
        replacement: Any = None,
    ) -> AutonomousDecision:
        decision = await self.decisions.override(decision_id, overridden_by, reason, replacement)
        await self.events.emit(
            "decision_overridden",
            "info",
            "engine",
            "autonomous_decision",
            decision.id,
            {"run_id": decision.run_id, "overridden_by": overridden_by, "reason": reason},
        )
        run = await self.repository.get_run(decision.run_id) if decision.run_id else None
        if run is not None:
            await self.metrics.refresh(run.workflow_id, run.created_at.date())
        return decision

    # ------------------------------------------------------------------
    # Resuming, cancelling
    async def resume_run(self, run_id: str) -> WorkflowResult:
        """Continue a run parked in ``awaiting_approval`` once its tickets are closed."""
        run = await self._require_run(run_id)
        if run.status != "awaiting_approval":
            raise InvalidTransition(f"Run {run.run_number} is {run.status}, not awaiting approval")

        tickets = await self.repository.list_tickets(run_id=run.id)
        if any(t.is_open for t in tickets):
            return WorkflowResult.from_run(run)

        definition = await self.get_definition(run.workflow_id)
        if tickets and all(t.status == "rejected" for t in tickets):
            run.transition("cancelled")
            run.error_message = "All approvals were rejected"
            run.pending_ticket_ids = []
            await self._finalize(definition, run)
            return WorkflowResult.from_run(run)

        proc, proc_config = self.validate_definition(definition)
        logger.info(f"Resuming run {run.run_number} at {run.resume_point or 'start'}")
        run.pending_ticket_ids = []
        approvals = {t.approval_key or t.id: t for t in tickets}
        run, retryable = await self._execute(definition, proc, proc_config, run, approvals)
        if run.status == "failed" and retryable:
            await self._dead_letter(run)
        return WorkflowResult.from_run(run)

    async def handle_ticket_resolved(self, ticket: ApprovalTicket) -> None:
        """Approval listener: resume or abort the run once none of its tickets are open."""
        if ticket.run_id is None:
            return
        run = await self.repository.get_run(ticket.run_id)
        if run is None or run.status != "awaiting_approval":
            return
        tickets = await self.repository.list_tickets(run_id=run.id)
        if any(t.is_open for t in tickets):
            return
        await self.resume_run(run.id)

    async def cancel_run(self, run_id: str, reason: str = "cancelled by operator") -> WorkflowResult:
        run = self._in_flight.get(run_id)
        if run is not None:
            run.cancel_requested = True
            logger.info(f"Cancellation requested for in-flight run {run.run_number}")
            return WorkflowResult.from_run(run)

        run = await self._require_run(run_id)
        if run.is_terminal:
            raise InvalidTransition(f"Run {run.run_number} is already {run.status}")
        run.transition("cancelled")
        run.cancel_requested = True
        run.error_message = reason
        run.pending_ticket_ids = []
        await self.approvals.cancel_tickets(run.id, reason)
        definition = await self.get_definition(run.workflow_id)
        await self._finalize(definition, run)
        return WorkflowResult.from_run(run)

    async def _require_run(self, run_id: str) -> WorkflowRun:
        run = await self.repository.get_run(run_id)
        if run is None:
            raise WorkflowNotFound(f"Run {run_id} not found")
        return run

    # ------------------------------------------------------------------
    # Dead letters and recovery
    async def list_dead_letters(self) -> list[WorkflowRun]:
        """Dead-lettered runs that have not been replayed yet."""
        runs = await self.repository.list_runs()
        replayed = {r.parent_run_id for r in runs if r.trigger == "replay"}
        return [r for r in runs if r.dead_letter and r.id not in replayed]

    async def retry_dead_letter(self, run_id: str, requested_by: Optional[str] = None) -> WorkflowResult:
        """Replay a dead letter as a fresh attempt chain linked to it."""
        run = await self._require_run(run_id)
        if not run.dead_letter:
            raise InvalidTransition(f"Run {run.run_number} is not dead-lettered")
        definition = await self.get_definition(run.workflow_id)
        if not definition.is_active:
            raise WorkflowInactive(f"Workflow {definition.name} is inactive")
        proc, proc_config = self.validate_definition(definition)
        if not self.breakers.get(definition.id).allow():
            return await self._reject(definition, "replay", run.input_data, requested_by, None)
        return await self._run_with_retry(
            definition,
            proc,
            proc_config,
            "replay",
            run.input_data,
            requested_by or run.requested_by,
            parent_run_id=run.id,
        )

    async def reconcile_interrupted_runs(self) -> list[WorkflowRun]:
        """Fail and dead-letter runs a previous process left pending or running.

        Only runs created before this engine started are candidates; anything
        newer belongs to this process or to another live one.
        """
        interrupted = []
        for run in await self.repository.list_runs():
            if run.status not in ("pending", "running") or run.id in self._in_flight:
                continue
            if run.created_at > self._started_at:
                continue
            run.transition("failed")
            run.error_message = f"{INTERRUPTED_PREFIX} process stopped while the run was in flight"
            run.completed_at = self.clock.now()
            await self.repository.save_run(run)
            await self._dead_letter(run)
            interrupted.append(run)
        if interrupted:
            logger.warning(f"Reconciled {len(interrupted)} interrupted run(s)")
        return interrupted

    # ------------------------------------------------------------------
    # Breakers and capacity
    def check_breaker(self, workflow_id: str) -> None:
        """Raise ``CircuitBreakerOpen`` without claiming the half-open trial run."""
        breaker = self.breakers.get(workflow_id)
        if breaker.state == "open":
            raise CircuitBreakerOpen(workflow_id, breaker.describe_rejection())

    def reset_breaker(self, workflow_id: str) -> None:
        self.breakers.reset(workflow_id)
        logger.info(f"Circuit breaker for workflow {workflow_id} reset")

    def breaker_states(self) -> Dict[str, BreakerState]:
        return self.breakers.snapshot()

    def concurrency(self) -> Dict[str, int]:
        return {"active": self._active, "limit": self._limit, "available": self._limit - self._active}

    def in_flight(self) -> list[WorkflowRun]:
        return list(self._in_flight.values())
