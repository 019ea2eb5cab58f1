"""Tiered, value-based approvals with time-based escalation."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel

from .config import ApprovalConfig
from .contracts import (
    OPEN_TICKET_STATUSES,
    ApprovalThreshold,
    ApprovalTicket,
    ApprovalTier,
    WorkflowDefinition,
)
from .errors import ApprovalError
from .events import EventBus
from .notifications import NotificationService
from .persistence import WorkflowRepository
from .utils.clock import Clock, SystemClock

if TYPE_CHECKING:
    from .runtime import ExecutionContext

logger = logging.getLogger(__name__)

TicketListener = Callable[[ApprovalTicket], Awaitable[None]]


class ApprovalOutcome(BaseModel):
    """Answer to an approval request as seen by a workflow processor."""

    auto_approved: bool = False
    status: str
    ticket_id: Optional[str] = None
    level: Optional[int] = None
    notes: Optional[str] = None
    payload: Dict[str, Any] = {}

    @property
    def approved(self) -> bool:
        return self.status == "approved"

    @property
    def pending(self) -> bool:
        return self.status in OPEN_TICKET_STATUSES

    @property
    def rejected(self) -> bool:
        return self.status == "rejected"


class ApprovalLadder(BaseModel):
    auto_approve_max: float
    tiers: List[ApprovalTier]
    escalation_minutes: int

    def tier_for(self, amount: float) -> ApprovalTier:
        for tier in sorted(self.tiers, key=lambda t: t.level):
            if tier.covers(amount):
                return tier
        return max(self.tiers, key=lambda t: t.level)


class BulkOutcome(BaseModel):
    ticket_id: str
    success: bool
    status: Optional[str] = None
    error: Optional[str] = None


def risk_from_confidence(confidence: Optional[float]) -> str:
    if confidence is None:
        return "medium"
    if confidence > 80:
        return "low"
    if confidence > 60:
        return "medium"
    return "high"


class ApprovalManager:
    """Routes proposed actions to auto-approval or a human approval ticket."""

    def __init__(
        self,
        repository: WorkflowRepository,
        events: EventBus,
        notifications: NotificationService,
        config: Optional[ApprovalConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._repository = repository
        self._events = events
        self._notifications = notifications
        self._config = config or ApprovalConfig()
        self._clock = clock or SystemClock()
        self._listeners: List[TicketListener] = []

    def add_listener(self, listener: TicketListener) -> None:
        """Register a coroutine awaited every time a ticket is closed."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Thresholds
    async def save_threshold(self, threshold: ApprovalThreshold) -> ApprovalThreshold:
        if not threshold.tiers:
            raise ApprovalError(f"Threshold for {threshold.subject_kind} has no tiers")
        await self._repository.save_threshold(threshold)
        return threshold

    async def list_thresholds(self) -> list[ApprovalThreshold]:
        return await self._repository.list_thresholds()

    async def _threshold_for(self, subject_kind: str) -> Optional[ApprovalThreshold]:
        for threshold in await self._repository.list_thresholds():
            if threshold.subject_kind == subject_kind and threshold.is_active:
                return threshold
        return None

    async def ladder_for(
        self, subject_kind: str, definition: Optional[WorkflowDefinition] = None
    ) -> ApprovalLadder:
        """Resolve the ladder: workflow ceiling over subject threshold over global default.

        A workflow that requires approval but sets no ceiling sends every
        proposal to a human.
        """
        threshold = await self._threshold_for(subject_kind)
        if threshold is not None and threshold.tiers:
            tiers = threshold.tiers
        else:
            tiers = [ApprovalTier(**t.model_dump()) for t in self._config.tiers]

        if definition is not None and definition.auto_approve_max is not None:
            ceiling = definition.auto_approve_max
        elif definition is not None and definition.requires_approval:
            ceiling = 0.0
        elif threshold is not None:
            ceiling = threshold.auto_approve_max
        else:
            ceiling = self._config.auto_approve_max

        escalation = (
            (definition.escalation_minutes if definition else None)
            or (threshold.escalation_minutes if threshold else None)
            or self._config.escalation_minutes
        )
        return ApprovalLadder(auto_approve_max=ceiling, tiers=tiers, escalation_minutes=escalation)

    # ------------------------------------------------------------------
    # Requests
    async def request_approval(
        self,
        ctx: "ExecutionContext",
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
        key = key or ctx.approval_key(subject_kind, title, related_id)
        existing = await self._ticket_for_key(ctx.run.id, key)
        if existing is not None:
            return self._outcome(existing)

        ladder = await self.ladder_for(subject_kind, ctx.definition)
        if amount <= ladder.auto_approve_max:
            logger.info(
                f"Auto-approved {subject_kind} '{title}' for run {ctx.run.run_number}: "
                f"{amount:.2f} <= {ladder.auto_approve_max:.2f}"
            )
            await self._events.emit(
                "approval_auto_approved",
                "info",
                "approvals",
                related_kind,
                str(related_id) if related_id is not None else None,
                {"run_id": ctx.run.id, "subject_kind": subject_kind, "amount": amount},
            )
            return ApprovalOutcome(auto_approved=True, status="approved", payload=payload or {})

        now = self._clock.now()
        tier = ladder.tier_for(amount)
        roles = _merge_roles(tier.roles, ctx.definition.approver_roles if ctx.definition else [])
        ticket = ApprovalTicket(
            run_id=ctx.run.id,
            workflow_id=ctx.run.workflow_id,
            approval_key=key,
            subject_kind=subject_kind,
            title=title,
            description=description,
            amount=amount,
            related_kind=related_kind,
            related_id=str(related_id) if related_id is not None else None,
            ai_reasoning=ai_reasoning,
            confidence=confidence,
            risk=risk_from_confidence(confidence),
            payload=payload or {},
            requested_at=now,
            level=tier.level,
            max_level=max(t.level for t in ladder.tiers),
            tiers=ladder.tiers,
            target_roles=roles,
            escalation_minutes=ladder.escalation_minutes,
            escalate_at=now + timedelta(minutes=ladder.escalation_minutes),
        )
        await self._repository.save_ticket(ticket)
        ctx.register_ticket(ticket)
        logger.info(
            f"Opened approval ticket {ticket.id} (level {ticket.level}) for run "
            f"{ctx.run.run_number}: {title} ({amount:.2f})"
        )

        await self._notifications.notify(
            "approval_needed",
            title,
            f"Approval required for {subject_kind}: {description}. Amount: ${amount:,.2f}",
            roles,
            run_id=ctx.run.id,
        )
        await self._events.emit(
            "approval_requested",
            "warning",
            "approvals",
            "approval_ticket",
            ticket.id,
            {"run_id": ctx.run.id, "amount": amount, "level": ticket.level},
        )
        return self._outcome(ticket)

    async def _ticket_for_key(self, run_id: str, key: str) -> Optional[ApprovalTicket]:
        for ticket in await self._repository.list_tickets(run_id=run_id):
            if ticket.approval_key == key:
                return ticket
        return None

    @staticmethod
    def _outcome(ticket: ApprovalTicket) -> ApprovalOutcome:
        return ApprovalOutcome(
            status=ticket.status,
            ticket_id=ticket.id,
            level=ticket.level,
            notes=ticket.notes,
            payload=ticket.payload,
        )

    # ------------------------------------------------------------------
    # Escalation
    async def escalate_due(self, now: Optional[datetime] = None) -> list[ApprovalTicket]:
        """Move every overdue open ticket up exactly one tier."""
        now = now or self._clock.now()
        escalated: list[ApprovalTicket] = []
        for ticket in await self._repository.list_tickets():
            if not ticket.is_open or ticket.escalate_at is None or ticket.escalate_at > now:
                continue
            next_tier = _next_tier(ticket)
            if next_tier is None:
                continue
            ticket.level = next_tier.level
            ticket.target_roles = _merge_roles(ticket.target_roles, next_tier.roles)
            ticket.status = "escalated"
            ticket.escalated_at = now
            ticket.escalate_at = now + timedelta(minutes=ticket.escalation_minutes)
            await self._repository.save_ticket(ticket)
            escalated.append(ticket)
            logger.info(f"Escalated approval {ticket.id} to level {ticket.level}")

            await self._notifications.notify(
                "approval_escalated",
                f"ESCALATED (Level {ticket.level}): {ticket.title}",
                "This approval has been waiting and requires immediate attention. "
                f"Value: ${ticket.amount:,.2f}",
                ticket.target_roles,
                run_id=ticket.run_id,
            )
            await self._events.emit(
                "approval_escalated",
                "warning",
                "approvals",
                "approval_ticket",
                ticket.id,
                {"level": ticket.level, "roles": ticket.target_roles},
            )
        return escalated

    # ------------------------------------------------------------------
    # Resolution
    async def process_approval_decision(
        self,
        ticket_id: str,
        approved: bool,
        approver_id: str,
        notes: Optional[str] = None,
    ) -> ApprovalTicket:
        """Close a ticket and synchronously signal whoever waits on it."""
        ticket = await self._repository.get_ticket(ticket_id)
        if ticket is None:
            raise ApprovalError(f"Approval ticket {ticket_id} not found")
        if not ticket.is_open:
            raise ApprovalError(f"Approval ticket {ticket_id} is already {ticket.status}")

        ticket.status = "approved" if approved else "rejected"
        ticket.resolved_by = approver_id
        ticket.resolved_at = self._clock.now()
        ticket.notes = notes
        await self._repository.save_ticket(ticket)
        logger.info(f"Approval {ticket.id} {ticket.status} by {approver_id}")

        verdict = "Approved" if approved else "Rejected"
        await self._notifications.notify(
            "approval_completed",
            f"{verdict}: {ticket.title}",
            f"The approval request has been {ticket.status} by the reviewer."
            + (f" Notes: {notes}" if notes else ""),
            [],
            run_id=ticket.run_id,
        )
        await self._events.emit(
            "approval_completed",
            "info",
            "approvals",
            "approval_ticket",
            ticket.id,
            {"run_id": ticket.run_id, "approved": approved, "amount": ticket.amount},
        )

        for listener in self._listeners:
            await listener(ticket)
        return ticket

    async def bulk_approve(
        self, ticket_ids: Iterable[str], approver_id: str, notes: Optional[str] = None
    ) -> list[BulkOutcome]:
        """Approve each ticket independently; one failure does not stop the rest."""
        outcomes: list[BulkOutcome] = []
        for ticket_id in ticket_ids:
            try:
                ticket = await self.process_approval_decision(ticket_id, True, approver_id, notes)
            except ApprovalError as e:
                outcomes.append(BulkOutcome(ticket_id=ticket_id, success=False, error=str(e)))
                continue
            outcomes.append(BulkOutcome(ticket_id=ticket_id, success=True, status=ticket.status))
        return outcomes

    async def cancel_tickets(self, run_id: str, reason: str) -> None:
        """Close open tickets of a cancelled run without signalling listeners."""
        for ticket in await self._repository.list_tickets(run_id=run_id):
            if ticket.is_open:
                ticket.status = "rejected"
                ticket.resolved_by = "system"
                ticket.resolved_at = self._clock.now()
                ticket.notes = reason
                await self._repository.save_ticket(ticket)

    async def list_open(self, role: Optional[str] = None) -> list[ApprovalTicket]:
        tickets = [t for t in await self._repository.list_tickets() if t.is_open]
        if role is not None:
            tickets = [t for t in tickets if role in t.target_roles]
        return sorted(tickets, key=lambda t: (-t.level, t.requested_at))


def _next_tier(ticket: ApprovalTicket) -> Optional[ApprovalTier]:
    higher = [t for t in ticket.tiers if t.level > ticket.level]
    return min(higher, key=lambda t: t.level) if higher else None


def _merge_roles(*role_lists: Iterable[str]) -> List[str]:
    merged: List[str] = []
    for roles in role_lists:
        for role in roles:
            if role not in merged:
                merged.append(role)
    return merged
