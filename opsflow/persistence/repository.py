"""Repository abstraction for orchestration state persistence."""

from __future__ import annotations

from datetime import date
from typing import Optional, Protocol

from ..contracts import (
    ApprovalThreshold,
    ApprovalTicket,
    AutonomousDecision,
    ExceptionRecord,
    ExceptionRule,
    NotificationRecord,
    OperationalEvent,
    PipelineRun,
    WorkflowDefinition,
    WorkflowMetric,
    WorkflowRun,
    WorkflowStep,
)


class WorkflowRepository(Protocol):
    """Protocol for orchestration state persistence backends."""

    # Definitions ------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or update a workflow definition."""

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a definition by id."""

    async def list_definitions(self, active_only: bool = False) -> list[WorkflowDefinition]:
        """Return all definitions."""

    # Runs and steps ---------------------------------------------------
    async def save_run(self, run: WorkflowRun) -> None:
        """Insert or update a run."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def list_runs(
        self, workflow_id: Optional[str] = None, status: Optional[str] = None
    ) -> list[WorkflowRun]:
        """Return runs, oldest first."""

    async def find_run_by_dedupe_key(self, dedupe_key: str) -> WorkflowRun | None:
        """Return the first run started for ``dedupe_key``."""

    async def save_step(self, step: WorkflowStep) -> None:
        """Insert or update a step."""

    async def list_steps(self, run_id: str) -> list[WorkflowStep]:
        """Return the steps of a run ordered by sequence."""

    # Decisions --------------------------------------------------------
    async def save_decision(self, decision: AutonomousDecision) -> None:
        """Insert or update an AI decision."""

    async def get_decision(self, decision_id: str) -> AutonomousDecision | None:
        """Retrieve a decision by id."""

    async def list_decisions(self, run_id: Optional[str] = None) -> list[AutonomousDecision]:
        """Return decisions, optionally for one run."""

    # Approvals --------------------------------------------------------
    async def save_ticket(self, ticket: ApprovalTicket) -> None:
        """Insert or update an approval ticket."""

    async def get_ticket(self, ticket_id: str) -> ApprovalTicket | None:
        """Retrieve a ticket by id."""

    async def list_tickets(
        self, status: Optional[str] = None, run_id: Optional[str] = None
    ) -> list[ApprovalTicket]:
        """Return tickets filtered by status and run."""

    async def save_threshold(self, threshold: ApprovalThreshold) -> None:
        """Insert or update an approval threshold."""

    async def list_thresholds(self) -> list[ApprovalThreshold]:
        """Return all approval thresholds."""

    # Exceptions -------------------------------------------------------
    async def save_exception(self, record: ExceptionRecord) -> None:
        """Insert or update an exception record."""

    async def get_exception(self, exception_id: str) -> ExceptionRecord | None:
        """Retrieve an exception record by id."""

    async def list_exceptions(self, status: Optional[str] = None) -> list[ExceptionRecord]:
        """Return exception records filtered by status."""

    async def save_exception_rule(self, rule: ExceptionRule) -> None:
        """Insert or update an exception rule."""

    async def list_exception_rules(self) -> list[ExceptionRule]:
        """Return all exception rules."""

    # Events -----------------------------------------------------------
    async def append_event(self, event: OperationalEvent) -> None:
        """Append an event to the stream."""

    async def save_event(self, event: OperationalEvent) -> None:
        """Persist processing state of an event."""

    async def get_event(self, event_id: str) -> OperationalEvent | None:
        """Retrieve an event by id."""

    async def list_events(
        self, processed: Optional[bool] = None, limit: Optional[int] = None
    ) -> list[OperationalEvent]:
        """Return events in append order."""

    async def mark_delivered(self, subscriber: str, event_id: str) -> None:
        """Remember that ``subscriber`` handled ``event_id``."""

    async def was_delivered(self, subscriber: str, event_id: str) -> bool:
        """Return ``True`` if ``subscriber`` already handled ``event_id``."""

    # Metrics, pipelines, notifications --------------------------------
    async def save_metric(self, metric: WorkflowMetric) -> None:
        """Insert or update a daily metric."""

    async def get_metric(self, workflow_id: str, day: date) -> WorkflowMetric | None:
        """Retrieve one workflow's metric for ``day``."""

    async def list_metrics(self, day: Optional[date] = None) -> list[WorkflowMetric]:
        """Return metrics, optionally for one day."""

    async def save_pipeline_run(self, pipeline_run: PipelineRun) -> None:
        """Insert or update a pipeline run."""

    async def get_pipeline_run(self, pipeline_run_id: str) -> PipelineRun | None:
        """Retrieve a pipeline run by id."""

    async def list_pipeline_runs(self, status: Optional[str] = None) -> list[PipelineRun]:
        """Return pipeline runs filtered by status."""

    async def save_notification(self, notification: NotificationRecord) -> None:
        """Record a notification attempt."""

    async def list_notifications(self, run_id: Optional[str] = None) -> list[NotificationRecord]:
        """Return recorded notifications."""
