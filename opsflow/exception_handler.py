"""Classification and resolution of business exceptions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .config import ExceptionConfig
from .contracts import ExceptionRecord, ExceptionRule, Severity
from .decisions import DecisionService
from .errors import DecisionError, ExceptionRecordError
from .events import EventBus
from .notifications import NotificationService
from .persistence import WorkflowRepository
from .utils.clock import Clock, SystemClock

if TYPE_CHECKING:
    from .runtime import ExecutionContext

logger = logging.getLogger(__name__)

SEVERITY_ORDER = ("low", "medium", "high", "critical")

EVENT_SEVERITY = {"low": "info", "medium": "warning", "high": "error", "critical": "critical"}

# strategies that end in AI triage and may wait for a batch pass
TRIAGE_STRATEGIES = ("ai_decide", "route_to_human")

TRIAGE_PROMPT = """Analyze this operational exception and recommend a resolution.

Exception type: {exception_type}
Title: {title}
Description: {description}
Data: {data}

Decide whether the exception can be resolved automatically ("resolve") or
needs a human ("escalate"), how severe it is, and which action to take."""


class TriageDecision(BaseModel):
    action: Literal["resolve", "escalate"]
    severity: Severity = "medium"
    suggested_action: str = ""


class TriageSummary(BaseModel):
    resolved: List[str] = Field(default_factory=list)
    escalated: List[str] = Field(default_factory=list)


class ExceptionOutcome(BaseModel):
    record: ExceptionRecord
    halt: bool = False
    notified: bool = False

    @property
    def resolved(self) -> bool:
        return self.record.status == "resolved"


def _at_least(severity: str, floor: str) -> str:
    return max(severity, floor, key=SEVERITY_ORDER.index)


class ExceptionHandler:
    """Matches exceptions to rules, falls back to AI triage, escalates the rest."""

    def __init__(
        self,
        repository: WorkflowRepository,
        events: EventBus,
        notifications: NotificationService,
        decisions: DecisionService,
        config: Optional[ExceptionConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._repository = repository
        self._events = events
        self._notifications = notifications
        self._decisions = decisions
        self._config = config or ExceptionConfig()
        self._clock = clock or SystemClock()

    async def save_rule(self, rule: ExceptionRule) -> ExceptionRule:
        await self._repository.save_exception_rule(rule)
        return rule

    async def list_rules(self) -> list[ExceptionRule]:
        return await self._repository.list_exception_rules()

    async def match_rule(self, exception_type: str, data: Dict[str, Any]) -> Optional[ExceptionRule]:
        """Return the active rule with the lowest priority that applies."""
        variance = data.get("variance_pct")
        candidates = []
        for rule in await self._repository.list_exception_rules():
            if not rule.is_active or rule.exception_type != exception_type:
                continue
            if rule.variance_threshold is not None:
                if variance is None or abs(float(variance)) < rule.variance_threshold:
                    continue
            candidates.append(rule)
        if not candidates:
            return None
        return min(candidates, key=lambda r: r.priority)

    def _record(
        self,
        ctx: Optional["ExecutionContext"],
        rule: Optional[ExceptionRule],
        exception_type: str,
        title: str,
        description: str,
        data: Dict[str, Any],
        related_kind: Optional[str],
        related_id: Optional[Any],
        severity: Optional[Severity],
    ) -> ExceptionRecord:
        return ExceptionRecord(
            run_id=ctx.run.id if ctx is not None else None,
            rule_id=rule.id if rule else None,
            exception_type=exception_type,
            severity=severity or (rule.severity if rule and rule.severity else "medium"),
            title=title,
            description=description,
            data=data,
            related_kind=related_kind,
            related_id=str(related_id) if related_id is not None else None,
            detected_at=self._clock.now(),
        )

    async def handle_exception(
        self,
        ctx: Optional["ExecutionContext"],
        exception_type: str,
        title: str,
        description: str = "",
        data: Optional[Dict[str, Any]] = None,
        related_kind: Optional[str] = None,
        related_id: Optional[Any] = None,
        severity: Optional[Severity] = None,
    ) -> ExceptionOutcome:
        data = data or {}
        rule = await self.match_rule(exception_type, data)
        record = self._record(
            ctx, rule, exception_type, title, description, data, related_kind, related_id, severity
        )
        return await self._settle(ctx, record, rule)

    async def report_exception(
        self,
        ctx: Optional["ExecutionContext"],
        exception_type: str,
        title: str,
        description: str = "",
        data: Optional[Dict[str, Any]] = None,
        related_kind: Optional[str] = None,
        related_id: Optional[Any] = None,
        severity: Optional[Severity] = None,
    ) -> ExceptionOutcome:
        """Record an exception, leaving it open for batch triage when nothing urgent applies.

        Exceptions that a rule settles outright, and high or critical ones, are
        handled on the spot like :meth:`handle_exception`. The rest are stored
        ``open`` and picked up later by :meth:`triage_open`.
        """
        data = data or {}
        rule = await self.match_rule(exception_type, data)
        record = self._record(
            ctx, rule, exception_type, title, description, data, related_kind, related_id, severity
        )
        strategy = rule.resolution_strategy if rule else "ai_decide"
        if strategy not in TRIAGE_STRATEGIES or record.severity in ("high", "critical"):
            return await self._settle(ctx, record, rule)

        await self._repository.save_exception(record)
        logger.info(f"Queued {exception_type} exception '{title}' for triage")
        await self._events.emit(
            "exception_detected",
            EVENT_SEVERITY[record.severity],
            "exceptions",
            "exception",
            record.id,
            {"exception_type": exception_type, "run_id": record.run_id},
        )
        return ExceptionOutcome(record=record)

    async def list_open(self) -> list[ExceptionRecord]:
        """Open exceptions, most severe first, oldest first within a severity."""
        records = await self._repository.list_exceptions(status="open")
        return sorted(records, key=lambda r: (-SEVERITY_ORDER.index(r.severity), r.detected_at))

    async def triage_open(
        self,
        ctx: Optional["ExecutionContext"] = None,
        limit: Optional[int] = None,
    ) -> TriageSummary:
        """Let the decision service resolve or escalate every open exception."""
        summary = TriageSummary()
        records = await self.list_open()
        if limit is not None:
            records = records[:limit]
        rules = {r.id: r for r in await self._repository.list_exception_rules()}
        for record in records:
            rule = rules.get(record.rule_id) if record.rule_id else None
            outcome = await self._triage(ctx, record, rule)
            await self._announce(outcome)
            target = summary.resolved if outcome.resolved else summary.escalated
            target.append(record.id)
        logger.info(
            f"Triaged {len(records)} open exceptions: {len(summary.resolved)} resolved, "
            f"{len(summary.escalated)} escalated"
        )
        return summary

    async def _settle(
        self,
        ctx: Optional["ExecutionContext"],
        record: ExceptionRecord,
        rule: Optional[ExceptionRule],
    ) -> ExceptionOutcome:
        strategy = rule.resolution_strategy if rule else "ai_decide"
        logger.info(f"Handling {record.exception_type} exception '{record.title}' with strategy {strategy}")

        if strategy in ("auto_resolve", "notify_and_continue"):
            outcome = await self._resolve_by_rule(record, rule)
        elif strategy == "escalate":
            record.severity = _at_least(record.severity, "high")
            outcome = await self._escalate(record, rule)
        elif strategy == "halt_workflow":
            record.severity = _at_least(record.severity, "high")
            outcome = await self._escalate(record, rule)
            outcome.halt = True
        else:
            outcome = await self._triage(ctx, record, rule)

        await self._announce(outcome)
        return outcome

    async def _announce(self, outcome: ExceptionOutcome) -> None:
        record = outcome.record
        await self._events.emit(
            f"exception_{record.status}",
            EVENT_SEVERITY[record.severity],
            "exceptions",
            "exception",
            record.id,
            {
                "exception_type": record.exception_type,
                "run_id": record.run_id,
                "resolution_type": record.resolution_type,
                "halt": outcome.halt,
            },
            immediate=record.severity in ("high", "critical"),
        )

    async def _resolve_by_rule(
        self, record: ExceptionRecord, rule: ExceptionRule
    ) -> ExceptionOutcome:
        action = dict(rule.resolution_action)
        record.status = "resolved"
        record.resolution_type = "auto_resolved"
        record.resolution_action = action
        record.resolution_notes = f"Resolved by rule {rule.name or rule.id}"
        record.resolved_by = "system"
        record.resolved_at = self._clock.now()
        await self._repository.save_exception(record)

        notified = False
        roles = action.get("notify_roles") or rule.notify_roles
        if rule.resolution_strategy == "notify_and_continue" or action.get("notify"):
            await self._notifications.notify(
                "exception_resolved",
                f"Exception resolved: {record.title}",
                f"{record.description}\nAction: {action.get('action', 'none')}",
                roles,
                run_id=record.run_id,
            )
            notified = True
        return ExceptionOutcome(record=record, notified=notified)

    async def _escalate(
        self,
        record: ExceptionRecord,
        rule: Optional[ExceptionRule],
        notes: Optional[str] = None,
    ) -> ExceptionOutcome:
        record.status = "escalated"
        record.resolution_type = "unresolved"
        record.escalated_at = self._clock.now()
        if notes:
            record.resolution_notes = notes
        await self._repository.save_exception(record)

        roles: List[str] = list(rule.notify_roles) if rule else []
        for role in self._config.escalation_roles:
            if role not in roles:
                roles.append(role)
        await self._notifications.notify(
            "exception_escalated",
            f"[{record.severity.upper()}] Exception requires attention: {record.title}",
            f"{record.description}\nType: {record.exception_type}\nData: {record.data}",
            roles,
            run_id=record.run_id,
        )
        logger.warning(f"Exception {record.id} ({record.exception_type}) escalated to {roles}")
        return ExceptionOutcome(record=record, notified=True)

    async def _triage(
        self,
        ctx: Optional["ExecutionContext"],
        record: ExceptionRecord,
        rule: Optional[ExceptionRule],
    ) -> ExceptionOutcome:
        prompt = TRIAGE_PROMPT.format(
            exception_type=record.exception_type,
            title=record.title,
            description=record.description,
            data=record.data,
        )
        try:
            if ctx is not None:
                decision = await ctx.decide(
                    "exception_triage", prompt, ["resolve", "escalate"], TriageDecision
                )
            else:
                decision = await self._decisions.decide(
                    "exception_triage",
                    prompt,
                    ["resolve", "escalate"],
                    TriageDecision,
                )
        except DecisionError as e:
            logger.warning(f"AI triage failed for exception '{record.title}': {e}")
            if not (rule and rule.severity):
                record.severity = "high"
            return await self._escalate(record, rule, notes=f"AI triage unavailable: {e}")

        triage = TriageDecision.model_validate(decision.choice)
        if not (rule and rule.severity):
            record.severity = triage.severity
        if triage.action == "resolve" and decision.confidence >= self._config.ai_confidence_cutoff:
            record.status = "resolved"
            record.resolution_type = "ai_resolved"
            record.resolution_action = {"action": triage.suggested_action}
            record.resolution_notes = decision.reasoning
            record.resolved_by = "ai"
            record.resolved_at = self._clock.now()
            await self._repository.save_exception(record)
            return ExceptionOutcome(record=record)

        return await self._escalate(
            record,
            rule,
            notes=f"AI suggested {triage.action} at {decision.confidence:.0f}% confidence: "
            f"{decision.reasoning}",
        )

    async def resolve_exception(
        self,
        exception_id: str,
        resolver: str,
        action: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> ExceptionRecord:
        """Close an open or escalated exception on behalf of a human."""
        record = await self._require(exception_id)
        if record.status == "resolved":
            raise ExceptionRecordError(f"Exception {exception_id} is already resolved")
        record.status = "resolved"
        record.resolution_type = "human_resolved"
        record.resolution_action = action or {}
        record.resolution_notes = notes
        record.resolved_by = resolver
        record.resolved_at = self._clock.now()
        await self._repository.save_exception(record)
        await self._events.emit(
            "exception_resolved",
            "info",
            "exceptions",
            "exception",
            record.id,
            {"resolution_type": record.resolution_type, "resolved_by": resolver},
        )
        return record

    async def escalate_exception(self, exception_id: str, notes: Optional[str] = None) -> ExceptionRecord:
        record = await self._require(exception_id)
        if record.status == "resolved":
            raise ExceptionRecordError(f"Exception {exception_id} is already resolved")
        record.severity = _at_least(record.severity, "high")
        await self._escalate(record, None, notes=notes)
        return record

    async def list_exceptions(self, status: Optional[str] = None) -> list[ExceptionRecord]:
        return await self._repository.list_exceptions(status=status)

    async def _require(self, exception_id: str) -> ExceptionRecord:
        record = await self._repository.get_exception(exception_id)
        if record is None:
            raise ExceptionRecordError(f"Exception {exception_id} not found")
        return record
