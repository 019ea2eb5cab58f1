"""Step runtime and the execution context handed to workflow processors."""

from __future__ import annotations

import inspect
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel

from .approvals import ApprovalOutcome
from .contracts import (
    ApprovalTicket,
    AutonomousDecision,
    EventSeverity,
    OperationalEvent,
    Severity,
    StepResult,
    StepType,
    WorkflowDefinition,
    WorkflowRun,
    WorkflowStep,
)
from .decisions import NO_DEFAULT
from .errors import RunCancelled, StepFailed, WorkflowHalted
from .exception_handler import ExceptionHandler, ExceptionOutcome
from .persistence import WorkflowRepository
from .records import RecordStore
from .utils.clock import Clock, SystemClock

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)

StepReturn = Union[StepResult, BaseModel, Dict[str, Any], None]
StepFn = Callable[[], Union[StepReturn, Awaitable[StepReturn]]]


def _as_step_result(value: StepReturn) -> StepResult:
    if isinstance(value, StepResult):
        return value
    if isinstance(value, BaseModel):
        return StepResult(data=value.model_dump(mode="json"))
    if value is None:
        return StepResult()
    return StepResult(data=dict(value))


class StepRuntime:
    """Runs step functions and writes one ``WorkflowStep`` per invocation."""

    def __init__(
        self,
        repository: WorkflowRepository,
        exceptions: ExceptionHandler,
        clock: Optional[Clock] = None,
    ) -> None:
        self._repository = repository
        self._exceptions = exceptions
        self._clock = clock or SystemClock()

    async def record_step(
        self,
        ctx: "ExecutionContext",
        step_number: int,
        name: str,
        step_type: StepType,
        fn: StepFn,
        input_data: Optional[Dict[str, Any]] = None,
    ) -> StepResult:
        """Invoke ``fn`` as a recorded step.

        The step row is written as ``running`` first and closed as
        ``completed`` or ``failed`` whatever happens inside ``fn``. Failures
        are returned, not raised, so the processor can branch on them;
        cancellation and halts still propagate.
        """
        if ctx.run.cancel_requested:
            raise RunCancelled(f"Run {ctx.run.run_number} was cancelled before step {name!r}")

        step = WorkflowStep(
            run_id=ctx.run.id,
            sequence=ctx.next_sequence(),
            step_number=step_number,
            name=name,
            step_type=step_type,
            input_data=input_data or {},
            started_at=self._clock.now(),
        )
        await self._repository.save_step(step)
        started = time.perf_counter()

        try:
            value = fn()
            if inspect.isawaitable(value):
                value = await value
            result = _as_step_result(value)
        except (RunCancelled, WorkflowHalted):
            await self._close(step, started, StepResult(success=False, error="interrupted"))
            raise
        except Exception as e:
            logger.error(f"Step {step_number} '{name}' of run {ctx.run.run_number} failed: {e}")
            result = StepResult(success=False, error=str(e))
            await self._close(step, started, result)
            ctx.run.steps_failed += 1
            await self._repository.save_run(ctx.run)
            outcome = await self._exceptions.handle_exception(
                ctx,
                "step_failure",
                f"Step '{name}' failed in {ctx.run.workflow_type}",
                str(e),
                {
                    "run_id": ctx.run.id,
                    "step_id": step.id,
                    "step_number": step_number,
                    "step_name": name,
                    "error_type": type(e).__name__,
                },
                related_kind="workflow_step",
                related_id=step.id,
            )
            if outcome.halt:
                raise WorkflowHalted(f"Step '{name}' failure halted the workflow") from e
            return result

        await self._close(step, started, result)
        return result

    async def _close(self, step: WorkflowStep, started: float, result: StepResult) -> None:
        step.status = "completed" if result.success else "failed"
        step.success = result.success
        step.output_data = result.data
        step.error = result.error
        step.completed_at = self._clock.now()
        step.duration_ms = int((time.perf_counter() - started) * 1000)
        await self._repository.save_step(step)


class ExecutionContext:
    """Everything a processor may touch while it runs.

    ``approvals`` holds the run's closed tickets keyed by approval key and is
    only populated when the run is resumed; ``resume_point`` tells the
    processor where it parked.
    """

    def __init__(
        self,
        engine: "WorkflowEngine",
        run: WorkflowRun,
        definition: WorkflowDefinition,
        config: BaseModel,
        records: RecordStore,
        approvals: Optional[Dict[str, ApprovalTicket]] = None,
        sequence_start: int = 0,
    ) -> None:
        self.engine = engine
        self.run = run
        self.definition = definition
        self.config = config
        self.records = records
        self.approvals: Dict[str, ApprovalTicket] = approvals or {}
        self.output: Dict[str, Any] = {}
        self._sequence = sequence_start
        self._unkeyed: Dict[str, int] = {}

    @property
    def input_data(self) -> Dict[str, Any]:
        return self.run.input_data

    @property
    def resume_point(self) -> Optional[str]:
        return self.run.resume_point

    @property
    def is_resumed(self) -> bool:
        return bool(self.approvals)

    @property
    def has_pending_approvals(self) -> bool:
        return bool(self.run.pending_ticket_ids)

    def next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def now(self):
        return self.engine.clock.now()

    async def step(
        self,
        step_number: int,
        name: str,
        step_type: StepType,
        fn: StepFn,
        input_data: Optional[Dict[str, Any]] = None,
    ) -> StepResult:
        return await self.engine.runtime.record_step(self, step_number, name, step_type, fn, input_data)

    async def require(
        self,
        step_number: int,
        name: str,
        step_type: StepType,
        fn: StepFn,
        input_data: Optional[Dict[str, Any]] = None,
    ) -> StepResult:
        """Like :meth:`step`, but a failed step fails the run."""
        result = await self.step(step_number, name, step_type, fn, input_data)
        if not result.success:
            raise StepFailed(f"{name}: {result.error}")
        return result

    async def decide(
        self,
        decision_type: str,
        prompt: str,
        options: Optional[List[Any]] = None,
        output_shape: Optional[Type[BaseModel]] = None,
        default: Any = NO_DEFAULT,
    ) -> AutonomousDecision:
        return await self.engine.make_ai_decision(
            self, decision_type, prompt, options, output_shape, default=default
        )

    async def request_approval(
        self,
        subject_kind: str,
        title: str,
        description: str,
        amount: float,
        related_kind: Optional[str] = None,
        related_id: Optional[Any] = None,
        ai_reasoning: Optional[str] = None,
        confidence: Optional[float] = None,
        payload: Optional[Dict[str, Any]] = None,
        key: Optional[str] = None,
    ) -> ApprovalOutcome:
        outcome = await self.engine.approvals.request_approval(
            self,
            subject_kind,
            title,
            description,
            amount,
            related_kind=related_kind,
            related_id=related_id,
            ai_reasoning=ai_reasoning,
            confidence=confidence,
            payload=payload,
            key=key,
        )
        if outcome.pending and outcome.ticket_id not in self.run.pending_ticket_ids:
            self.run.pending_ticket_ids.append(outcome.ticket_id)
        return outcome

    def approval_key(self, subject_kind: str, title: str, related_id: Optional[Any] = None) -> str:
        """Key for a request that did not name one.

        Requests without a related entity are told apart by title and by how
        many times that title was requested in this execution, which repeats
        the same way when the run is resumed.
        """
        if related_id is not None:
            return f"{subject_kind}:{related_id}"
        base = f"{subject_kind}:{title}"
        count = self._unkeyed.get(base, 0) + 1
        self._unkeyed[base] = count
        return base if count == 1 else f"{base}#{count}"

    def register_ticket(self, ticket: ApprovalTicket) -> None:
        if ticket.id not in self.run.pending_ticket_ids:
            self.run.pending_ticket_ids.append(ticket.id)

    def park(self, resume_point: str) -> None:
        """Remember where to pick up once pending approvals are resolved."""
        self.run.resume_point = resume_point

    async def handle_exception(
        self,
        exception_type: str,
        title: str,
        description: str = "",
        data: Optional[Dict[str, Any]] = None,
        related_kind: Optional[str] = None,
        related_id: Optional[Any] = None,
        severity: Optional[Severity] = None,
    ) -> ExceptionOutcome:
        outcome = await self.engine.exceptions.handle_exception(
            self, exception_type, title, description, data, related_kind, related_id, severity
        )
        if outcome.halt:
            raise WorkflowHalted(f"{exception_type}: {title}")
        return outcome

    async def report_exception(
        self,
        exception_type: str,
        title: str,
        description: str = "",
        data: Optional[Dict[str, Any]] = None,
        related_kind: Optional[str] = None,
        related_id: Optional[Any] = None,
        severity: Optional[Severity] = None,
    ) -> ExceptionOutcome:
        """Like :meth:`handle_exception`, but routine cases wait for batch triage."""
        outcome = await self.engine.exceptions.report_exception(
            self, exception_type, title, description, data, related_kind, related_id, severity
        )
        if outcome.halt:
            raise WorkflowHalted(f"{exception_type}: {title}")
        return outcome

    async def emit(
        self,
        event_type: str,
        severity: EventSeverity = "info",
        data: Optional[Dict[str, Any]] = None,
        entity_kind: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> OperationalEvent:
        payload = {"run_id": self.run.id, "workflow_id": self.run.workflow_id}
        payload.update(data or {})
        return await self.engine.events.emit(
            event_type,
            severity,
            f"workflow:{self.run.workflow_type}",
            entity_kind,
            entity_id,
            payload,
        )

    async def notify(self, subject: str, body: str, roles: List[str]) -> None:
        await self.engine.notifications.notify("workflow", subject, body, roles, run_id=self.run.id)

    async def send_email(self, to: List[str], subject: str, body: str) -> bool:
        record = await self.engine.notifications.send_to(
            "email", subject, body, to, run_id=self.run.id
        )
        return record.success

    # Item accounting ----------------------------------------------------
    def processed(self, count: int = 1) -> None:
        self.run.items_processed += count

    def succeeded(self, count: int = 1) -> None:
        self.run.items_succeeded += count

    def failed(self, count: int = 1) -> None:
        self.run.items_failed += count

    def add_value(self, amount: float) -> None:
        self.run.total_value += amount
