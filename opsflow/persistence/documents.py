"""Document-style repository shared by the in-memory and SQL backends.

Every entity is stored as a JSON document keyed by ``(collection, key)``.
Backends only need to provide ``_put``, ``_get`` and ``_all``; ``_all`` must
return documents in insertion order, and ``_put`` on an existing key keeps
the original position.
"""

from __future__ import annotations

import abc
from datetime import date
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel

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
from .repository import WorkflowRepository

ModelT = TypeVar("ModelT", bound=BaseModel)

DEFINITIONS = "definitions"
RUNS = "runs"
STEPS = "steps"
DECISIONS = "decisions"
TICKETS = "tickets"
THRESHOLDS = "thresholds"
EXCEPTIONS = "exceptions"
RULES = "exception_rules"
EVENTS = "events"
DELIVERIES = "deliveries"
METRICS = "metrics"
PIPELINE_RUNS = "pipeline_runs"
NOTIFICATIONS = "notifications"


class DocumentRepository(WorkflowRepository, metaclass=abc.ABCMeta):
    """Implements the repository API on top of a key/document store."""

    # ------------------------------------------------------------------
    # Storage primitives
    @abc.abstractmethod
    async def _put(self, collection: str, key: str, document: dict[str, Any]) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def _get(self, collection: str, key: str) -> dict[str, Any] | None:
        raise NotImplementedError

    @abc.abstractmethod
    async def _all(self, collection: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Helper methods
    async def _save(self, collection: str, key: str, model: BaseModel) -> None:
        await self._put(collection, key, model.model_dump(mode="json"))

    async def _load(self, collection: str, key: str, model: Type[ModelT]) -> ModelT | None:
        document = await self._get(collection, key)
        if document is None:
            return None
        return model.model_validate(document)

    async def _load_all(self, collection: str, model: Type[ModelT]) -> list[ModelT]:
        return [model.model_validate(doc) for doc in await self._all(collection)]

    # ------------------------------------------------------------------
    # Repository API
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await self._save(DEFINITIONS, definition.id, definition)

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        return await self._load(DEFINITIONS, workflow_id, WorkflowDefinition)

    async def list_definitions(self, active_only: bool = False) -> list[WorkflowDefinition]:
        definitions = await self._load_all(DEFINITIONS, WorkflowDefinition)
        if active_only:
            definitions = [d for d in definitions if d.is_active]
        return definitions

    async def save_run(self, run: WorkflowRun) -> None:
        await self._save(RUNS, run.id, run)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        return await self._load(RUNS, run_id, WorkflowRun)

    async def list_runs(
        self, workflow_id: Optional[str] = None, status: Optional[str] = None
    ) -> list[WorkflowRun]:
        runs = await self._load_all(RUNS, WorkflowRun)
        if workflow_id is not None:
            runs = [r for r in runs if r.workflow_id == workflow_id]
        if status is not None:
            runs = [r for r in runs if r.status == status]
        return runs

    async def find_run_by_dedupe_key(self, dedupe_key: str) -> WorkflowRun | None:
        for run in await self._load_all(RUNS, WorkflowRun):
            if run.dedupe_key == dedupe_key:
                return run
        return None

    async def save_step(self, step: WorkflowStep) -> None:
        await self._save(STEPS, step.id, step)

    async def list_steps(self, run_id: str) -> list[WorkflowStep]:
        steps = [s for s in await self._load_all(STEPS, WorkflowStep) if s.run_id == run_id]
        return sorted(steps, key=lambda s: s.sequence)

    async def save_decision(self, decision: AutonomousDecision) -> None:
        await self._save(DECISIONS, decision.id, decision)

    async def get_decision(self, decision_id: str) -> AutonomousDecision | None:
        return await self._load(DECISIONS, decision_id, AutonomousDecision)

    async def list_decisions(self, run_id: Optional[str] = None) -> list[AutonomousDecision]:
        decisions = await self._load_all(DECISIONS, AutonomousDecision)
        if run_id is not None:
            decisions = [d for d in decisions if d.run_id == run_id]
        return decisions

    async def save_ticket(self, ticket: ApprovalTicket) -> None:
        await self._save(TICKETS, ticket.id, ticket)

    async def get_ticket(self, ticket_id: str) -> ApprovalTicket | None:
        return await self._load(TICKETS, ticket_id, ApprovalTicket)

    async def list_tickets(
        self, status: Optional[str] = None, run_id: Optional[str] = None
    ) -> list[ApprovalTicket]:
        tickets = await self._load_all(TICKETS, ApprovalTicket)
        if status is not None:
            tickets = [t for t in tickets if t.status == status]
        if run_id is not None:
            tickets = [t for t in tickets if t.run_id == run_id]
        return tickets

    async def save_threshold(self, threshold: ApprovalThreshold) -> None:
        await self._save(THRESHOLDS, threshold.id, threshold)

    async def list_thresholds(self) -> list[ApprovalThreshold]:
        return await self._load_all(THRESHOLDS, ApprovalThreshold)

    async def save_exception(self, record: ExceptionRecord) -> None:
        await self._save(EXCEPTIONS, record.id, record)

    async def get_exception(self, exception_id: str) -> ExceptionRecord | None:
        return await self._load(EXCEPTIONS, exception_id, ExceptionRecord)

    async def list_exceptions(self, status: Optional[str] = None) -> list[ExceptionRecord]:
        records = await self._load_all(EXCEPTIONS, ExceptionRecord)
        if status is not None:
            records = [r for r in records if r.status == status]
        return records

    async def save_exception_rule(self, rule: ExceptionRule) -> None:
        await self._save(RULES, rule.id, rule)

    async def list_exception_rules(self) -> list[ExceptionRule]:
        return await self._load_all(RULES, ExceptionRule)

    async def append_event(self, event: OperationalEvent) -> None:
        await self._save(EVENTS, event.id, event)

    async def save_event(self, event: OperationalEvent) -> None:
        await self._save(EVENTS, event.id, event)

    async def get_event(self, event_id: str) -> OperationalEvent | None:
        return await self._load(EVENTS, event_id, OperationalEvent)

    async def list_events(
        self, processed: Optional[bool] = None, limit: Optional[int] = None
    ) -> list[OperationalEvent]:
        events = await self._load_all(EVENTS, OperationalEvent)
        if processed is not None:
            events = [e for e in events if e.processed == processed]
        if limit is not None:
            events = events[:limit]
        return events

    async def mark_delivered(self, subscriber: str, event_id: str) -> None:
        await self._put(
            DELIVERIES,
            f"{subscriber}:{event_id}",
            {"subscriber": subscriber, "event_id": event_id},
        )

    async def was_delivered(self, subscriber: str, event_id: str) -> bool:
        return await self._get(DELIVERIES, f"{subscriber}:{event_id}") is not None

    async def save_metric(self, metric: WorkflowMetric) -> None:
        await self._save(METRICS, metric.key, metric)

    async def get_metric(self, workflow_id: str, day: date) -> WorkflowMetric | None:
        return await self._load(METRICS, f"{workflow_id}:{day.isoformat()}", WorkflowMetric)

    async def list_metrics(self, day: Optional[date] = None) -> list[WorkflowMetric]:
        metrics = await self._load_all(METRICS, WorkflowMetric)
        if day is not None:
            metrics = [m for m in metrics if m.day == day]
        return metrics

    async def save_pipeline_run(self, pipeline_run: PipelineRun) -> None:
        await self._save(PIPELINE_RUNS, pipeline_run.id, pipeline_run)

    async def get_pipeline_run(self, pipeline_run_id: str) -> PipelineRun | None:
        return await self._load(PIPELINE_RUNS, pipeline_run_id, PipelineRun)

    async def list_pipeline_runs(self, status: Optional[str] = None) -> list[PipelineRun]:
        runs = await self._load_all(PIPELINE_RUNS, PipelineRun)
        if status is not None:
            runs = [r for r in runs if r.status == status]
        return runs

    async def save_notification(self, notification: NotificationRecord) -> None:
        await self._save(NOTIFICATIONS, notification.id, notification)

    async def list_notifications(self, run_id: Optional[str] = None) -> list[NotificationRecord]:
        records = await self._load_all(NOTIFICATIONS, NotificationRecord)
        if run_id is not None:
            records = [n for n in records if n.run_id == run_id]
        return records
