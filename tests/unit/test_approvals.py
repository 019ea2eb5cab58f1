"""Approval ladder, escalation and bulk approval."""

import pytest
import pytest_asyncio
from pydantic import BaseModel

from opsflow.contracts import ApprovalThreshold, ApprovalTier, WorkflowDefinition
from opsflow.errors import ApprovalError
from opsflow.runtime import ExecutionContext


async def _context(engine, **definition_fields):
    definition = WorkflowDefinition(name="Procurement", workflow_type="procurement", **definition_fields)
    run = engine._new_run(definition, "manual", {}, None)
    await engine.repository.save_run(run)
    return ExecutionContext(engine, run, definition, BaseModel(), engine.records)


@pytest_asyncio.fixture
async def po_threshold(engine):
    return await engine.approvals.save_threshold(
        ApprovalThreshold(
            subject_kind="purchase_order",
            auto_approve_max=500,
            escalation_minutes=30,
            tiers=[
                ApprovalTier(level=1, max_amount=5_000, roles=["ops"]),
                ApprovalTier(level=2, max_amount=25_000, roles=["finance"]),
                ApprovalTier(level=3, max_amount=None, roles=["exec"]),
            ],
        )
    )


@pytest.mark.asyncio
async def test_amount_under_ceiling_is_auto_approved(engine, po_threshold):
    ctx = await _context(engine)

    outcome = await ctx.request_approval("purchase_order", "PO-1", "restock", 320, related_id=1)

    assert outcome.auto_approved
    assert outcome.approved
    assert ctx.run.pending_ticket_ids == []


@pytest.mark.asyncio
async def test_amount_picks_lowest_covering_tier(engine, po_threshold):
    ctx = await _context(engine)

    outcome = await ctx.request_approval(
        "purchase_order", "PO-2", "bulk restock", 12_000, related_id=2, confidence=55
    )

    assert outcome.pending
    ticket = await engine.repository.get_ticket(outcome.ticket_id)
    assert ticket.level == 2
    assert ticket.max_level == 3
    assert ticket.target_roles == ["finance"]
    assert ticket.risk == "high"
    assert ctx.run.pending_ticket_ids == [ticket.id]


@pytest.mark.asyncio
async def test_workflow_ceiling_overrides_threshold(engine, po_threshold):
    ctx = await _context(engine, auto_approve_max=20_000)
    assert (await ctx.request_approval("purchase_order", "PO", "x", 12_000, related_id=3)).auto_approved

    strict = await _context(engine, requires_approval=True, approver_roles=["buyer"])
    outcome = await strict.request_approval("purchase_order", "PO", "x", 10, related_id=4)
    ticket = await engine.repository.get_ticket(outcome.ticket_id)
    assert ticket.target_roles == ["ops", "buyer"]


@pytest.mark.asyncio
async def test_same_key_reuses_ticket(engine, po_threshold):
    ctx = await _context(engine)
    first = await ctx.request_approval("purchase_order", "PO", "x", 900, related_id=5)
    second = await ctx.request_approval("purchase_order", "PO", "x", 900, related_id=5)

    assert first.ticket_id == second.ticket_id
    assert len(await engine.repository.list_tickets(run_id=ctx.run.id)) == 1


@pytest.mark.asyncio
async def test_escalation_moves_one_tier_per_pass(engine, po_threshold, clock):
    ctx = await _context(engine)
    outcome = await ctx.request_approval("purchase_order", "PO", "x", 900, related_id=6)

    assert await engine.approvals.escalate_due() == []

    clock.advance(minutes=31)
    (escalated,) = await engine.approvals.escalate_due()
    assert escalated.id == outcome.ticket_id
    assert escalated.level == 2
    assert escalated.status == "escalated"
    assert escalated.target_roles == ["ops", "finance"]

    assert await engine.approvals.escalate_due() == []

    clock.advance(minutes=31)
    (escalated,) = await engine.approvals.escalate_due()
    assert escalated.level == 3

    clock.advance(minutes=31)
    assert await engine.approvals.escalate_due() == []


@pytest.mark.asyncio
async def test_closed_ticket_cannot_be_decided_again(engine, po_threshold):
    ctx = await _context(engine)
    outcome = await ctx.request_approval("purchase_order", "PO", "x", 900, related_id=7)

    await engine.approvals.process_approval_decision(outcome.ticket_id, True, "sam")

    with pytest.raises(ApprovalError):
        await engine.approvals.process_approval_decision(outcome.ticket_id, False, "sam")


@pytest.mark.asyncio
async def test_bulk_approve_reports_each_ticket(engine, po_threshold):
    ctx = await _context(engine)
    a = await ctx.request_approval("purchase_order", "PO-a", "x", 900, related_id=8)
    b = await ctx.request_approval("purchase_order", "PO-b", "x", 950, related_id=9)

    outcomes = await engine.approvals.bulk_approve([a.ticket_id, "missing", b.ticket_id], "sam")

    assert [o.success for o in outcomes] == [True, False, True]
    assert "not found" in outcomes[1].error
    assert await engine.approvals.list_open() == []


@pytest.mark.asyncio
async def test_list_open_filters_by_role(engine, po_threshold):
    ctx = await _context(engine)
    await ctx.request_approval("purchase_order", "small", "x", 900, related_id=10)
    await ctx.request_approval("purchase_order", "large", "x", 30_000, related_id=11)

    assert [t.title for t in await engine.approvals.list_open()] == ["large", "small"]
    assert [t.title for t in await engine.approvals.list_open(role="exec")] == ["large"]


@pytest.mark.asyncio
async def test_threshold_without_tiers_is_refused(engine):
    with pytest.raises(ApprovalError):
        await engine.approvals.save_threshold(ApprovalThreshold(subject_kind="payment"))


@pytest.mark.asyncio
async def test_requests_without_related_entity_get_their_own_tickets(engine, po_threshold):
    ctx = await _context(engine)

    freight = await ctx.request_approval("purchase_order", "Freight surcharge", "x", 900)
    customs = await ctx.request_approval("purchase_order", "Customs bond", "x", 900)
    again = await ctx.request_approval("purchase_order", "Freight surcharge", "second leg", 900)

    assert len({freight.ticket_id, customs.ticket_id, again.ticket_id}) == 3
    keys = [
        (await engine.repository.get_ticket(o.ticket_id)).approval_key for o in (freight, customs, again)
    ]
    assert keys == [
        "purchase_order:Freight surcharge",
        "purchase_order:Customs bond",
        "purchase_order:Freight surcharge#2",
    ]


@pytest.mark.asyncio
async def test_unkeyed_requests_are_found_again_on_a_fresh_execution(engine, po_threshold):
    ctx = await _context(engine)
    first = await ctx.request_approval("purchase_order", "Freight surcharge", "x", 900)

    rerun = ExecutionContext(engine, ctx.run, ctx.definition, BaseModel(), engine.records)
    second = await rerun.request_approval("purchase_order", "Freight surcharge", "x", 900)

    assert second.ticket_id == first.ticket_id
