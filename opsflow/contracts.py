"""Core data contracts for the opsflow orchestration system."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .errors import InvalidTransition

TriggerKind = Literal["scheduled", "event", "threshold", "manual", "continuous"]
RunTrigger = Literal["schedule", "event", "threshold", "manual", "continuous", "dependency", "retry", "replay"]
RunStatus = Literal["pending", "running", "completed", "failed", "awaiting_approval", "cancelled"]
StepType = Literal[
    "data_fetch",
    "calculation",
    "ai_analysis",
    "ai_decision",
    "create_record",
    "update_record",
    "send_email",
    "send_notification",
    "api_call",
    "wait_approval",
]
StepStatus = Literal["running", "completed", "failed"]
TicketStatus = Literal["pending", "escalated", "approved", "rejected"]
Severity = Literal["low", "medium", "high", "critical"]
EventSeverity = Literal["info", "warning", "error", "critical"]
ExceptionStatus = Literal["open", "resolved", "escalated"]
ResolutionType = Literal["auto_resolved", "ai_resolved", "human_resolved", "unresolved"]
ResolutionStrategy = Literal[
    "auto_resolve",
    "notify_and_continue",
    "ai_decide",
    "route_to_human",
    "escalate",
    "halt_workflow",
]

TERMINAL_RUN_STATUSES = frozenset({"completed", "failed", "cancelled"})
OPEN_TICKET_STATUSES = frozenset({"pending", "escalated"})

# awaiting_approval -> running is the only edge that leaves a parked state;
# it is taken exclusively by WorkflowEngine.resume_run.
RUN_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"running", "failed", "cancelled"}),
    "running": frozenset({"completed", "failed", "awaiting_approval", "cancelled"}),
    "awaiting_approval": frozenset({"running", "cancelled"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ThresholdCondition(BaseModel):
    """Condition evaluated by threshold-triggered workflows."""

    type: str
    threshold: Optional[float] = None
    params: Dict[str, Any] = Field(default_factory=dict)


class TriggerParams(BaseModel):
    cron: Optional[str] = None
    events: List[str] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)
    threshold: Optional[ThresholdCondition] = None


class WorkflowDefinition(BaseModel):
    """A reusable multi-step business process."""

    id: str = Field(default_factory=_new_id)
    name: str
    workflow_type: str
    category: str = "operations"
    description: Optional[str] = None
    trigger: TriggerKind = "manual"
    trigger_params: TriggerParams = Field(default_factory=TriggerParams)
    execution_config: Dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool = False
    auto_approve_max: Optional[float] = None
    approver_roles: List[str] = Field(default_factory=list)
    escalation_minutes: Optional[int] = None
    max_concurrent_runs: int = 1
    is_active: bool = True
    next_scheduled_run: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    success_count: int = 0
    failure_count: int = 0
    created_at: datetime = Field(default_factory=_now)


class WorkflowRun(BaseModel):
    """One execution instance of a workflow definition."""

    id: str = Field(default_factory=_new_id)
    run_number: str
    workflow_id: str
    workflow_type: str
    status: RunStatus = "pending"
    trigger: RunTrigger = "manual"
    requested_by: Optional[str] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    items_processed: int = 0
    items_succeeded: int = 0
    items_failed: int = 0
    steps_failed: int = 0
    total_value: float = 0.0
    error_message: Optional[str] = None
    attempt: int = 1
    parent_run_id: Optional[str] = None
    dead_letter: bool = False
    dedupe_key: Optional[str] = None
    resume_point: Optional[str] = None
    pending_ticket_ids: List[str] = Field(default_factory=list)
    cancel_requested: bool = False
    ai_decisions: int = 0
    tokens_used: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def transition(self, status: RunStatus) -> None:
        """Move to ``status`` if the lifecycle allows it."""
        if status == self.status:
            return
        if status not in RUN_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Run {self.run_number} cannot move from {self.status} to {status}"
            )
        self.status = status


class WorkflowStep(BaseModel):
    """Append-only record of one unit of work inside a run."""

    id: str = Field(default_factory=_new_id)
    run_id: str
    sequence: int
    step_number: int
    name: str
    step_type: StepType
    status: StepStatus = "running"
    success: Optional[bool] = None
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class StepResult(BaseModel):
    """Value returned from a step function and handed back to the processor."""

    success: bool = True
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class DecisionOverride(BaseModel):
    overridden_by: str
    reason: str
    replacement: Any = None
    overridden_at: datetime = Field(default_factory=_now)


class AutonomousDecision(BaseModel):
    """Audit record of an AI-assisted choice."""

    id: str = Field(default_factory=_new_id)
    run_id: Optional[str] = None
    workflow_id: Optional[str] = None
    decision_type: str
    prompt: str
    options: List[Any] = Field(default_factory=list)
    choice: Any = None
    confidence: float = Field(default=0.0, ge=0, le=100)
    reasoning: str = ""
    tokens_used: int = 0
    fallback: bool = False
    override: Optional[DecisionOverride] = None
    created_at: datetime = Field(default_factory=_now)


class ApprovalTier(BaseModel):
    level: int
    max_amount: Optional[float] = None
    roles: List[str] = Field(default_factory=list)

    def covers(self, amount: float) -> bool:
        return self.max_amount is None or amount <= self.max_amount


class ApprovalThreshold(BaseModel):
    """Administrator-maintained approval ladder for one subject kind."""

    id: str = Field(default_factory=_new_id)
    subject_kind: str
    auto_approve_max: float = 0.0
    tiers: List[ApprovalTier] = Field(default_factory=list)
    escalation_minutes: Optional[int] = None
    is_active: bool = True


class ApprovalTicket(BaseModel):
    """A pending human decision."""

    id: str = Field(default_factory=_new_id)
    run_id: Optional[str] = None
    workflow_id: Optional[str] = None
    approval_key: Optional[str] = None
    subject_kind: str
    title: str
    description: str = ""
    amount: float
    related_kind: Optional[str] = None
    related_id: Optional[str] = None
    ai_reasoning: Optional[str] = None
    confidence: Optional[float] = None
    risk: Literal["low", "medium", "high"] = "medium"
    payload: Dict[str, Any] = Field(default_factory=dict)
    requested_at: datetime = Field(default_factory=_now)
    level: int = 1
    max_level: int = 1
    tiers: List[ApprovalTier] = Field(default_factory=list)
    target_roles: List[str] = Field(default_factory=list)
    escalation_minutes: int = 60
    escalate_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    status: TicketStatus = "pending"
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TICKET_STATUSES


class ExceptionRule(BaseModel):
    """Administrator-maintained rule for classifying exceptions."""

    id: str = Field(default_factory=_new_id)
    name: Optional[str] = None
    exception_type: str
    priority: int = 100
    variance_threshold: Optional[float] = None
    resolution_strategy: ResolutionStrategy = "route_to_human"
    resolution_action: Dict[str, Any] = Field(default_factory=dict)
    severity: Optional[Severity] = None
    notify_roles: List[str] = Field(default_factory=lambda: ["ops"])
    is_active: bool = True


class ExceptionRecord(BaseModel):
    """An operational anomaly and how it was dealt with."""

    id: str = Field(default_factory=_new_id)
    run_id: Optional[str] = None
    rule_id: Optional[str] = None
    exception_type: str
    severity: Severity = "medium"
    title: str
    description: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    related_kind: Optional[str] = None
    related_id: Optional[str] = None
    status: ExceptionStatus = "open"
    resolution_type: ResolutionType = "unresolved"
    resolution_action: Optional[Dict[str, Any]] = None
    resolution_notes: Optional[str] = None
    resolved_by: Optional[str] = None
    detected_at: datetime = Field(default_factory=_now)
    resolved_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None


class OperationalEvent(BaseModel):
    """Envelope appended to the event stream and exchanged over transports."""

    id: str = Field(default_factory=_new_id)
    event_type: str
    severity: EventSeverity = "info"
    source_system: str
    source_entity_kind: Optional[str] = None
    source_entity_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)
    processed: bool = False
    processed_at: Optional[datetime] = None

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "OperationalEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)


class WorkflowMetric(BaseModel):
    """Per-day rollup for one workflow. Derived; can be rebuilt from runs."""

    workflow_id: str
    day: date
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    awaiting_runs: int = 0
    items_processed: int = 0
    total_value: float = 0.0
    ai_decisions: int = 0
    ai_overrides: int = 0
    tokens_used: int = 0
    total_duration_ms: int = 0
    estimated_minutes_saved: float = 0.0
    estimated_cost_saved: float = 0.0

    @property
    def key(self) -> str:
        return f"{self.workflow_id}:{self.day.isoformat()}"


class NotificationRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    run_id: Optional[str] = None
    kind: str
    to: List[str] = Field(default_factory=list)
    subject: str
    body: str = ""
    success: bool = False
    message_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class PipelineRun(BaseModel):
    """Progress of one pipeline execution."""

    id: str = Field(default_factory=_new_id)
    pipeline_id: str
    status: Literal["running", "awaiting_approval", "completed", "failed", "cancelled"] = "running"
    current_stage: int = 0
    current_wave: int = 0
    stage_run_ids: List[str] = Field(default_factory=list)
    stage_runs: Dict[str, str] = Field(default_factory=dict)
    completed_stages: List[str] = Field(default_factory=list)
    skipped_stages: List[str] = Field(default_factory=list)
    input_data: Dict[str, Any] = Field(default_factory=dict)
    carried_data: Dict[str, Any] = Field(default_factory=dict)
    requested_by: Optional[str] = None
    failed_stage: Optional[str] = None
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None


class WorkflowResult(BaseModel):
    """Summary returned to callers of the engine."""

    success: bool
    run_id: Optional[str] = None
    status: RunStatus
    items_processed: int = 0
    items_succeeded: int = 0
    items_failed: int = 0
    total_value: float = 0.0
    output_data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    pending_approvals: int = 0
    attempts: int = 1
    dead_letter: bool = False

    @classmethod
    def from_run(cls, run: WorkflowRun, attempts: Optional[int] = None) -> "WorkflowResult":
        return cls(
            success=run.status in ("completed", "awaiting_approval"),
            run_id=run.id,
            status=run.status,
            items_processed=run.items_processed,
            items_succeeded=run.items_succeeded,
            items_failed=run.items_failed,
            total_value=run.total_value,
            output_data=run.output_data,
            error=run.error_message,
            pending_approvals=len(run.pending_ticket_ids),
            attempts=attempts if attempts is not None else run.attempt,
            dead_letter=run.dead_letter,
        )
