"""Exception classification and resolution."""

import pytest

from opsflow.contracts import ExceptionRule, WorkflowDefinition
from opsflow.errors import ExceptionRecordError
from opsflow.processors import processor


@processor("test_halting_exception")
async def halting(ctx):
    ctx.processed()
    await ctx.handle_exception("quality_hold", "Lot 44 failed inspection")
    ctx.succeeded()


@pytest.mark.asyncio
async def test_stockout_rule_resolves_and_notifies(engine, notifier):
    await engine.exceptions.save_rule(
        ExceptionRule(
            name="stockout",
            exception_type="stockout",
            resolution_strategy="notify_and_continue",
            resolution_action={"action": "expedite_po"},
            severity="high",
            notify_roles=["ops"],
        )
    )

    outcome = await engine.exceptions.handle_exception(
        None, "stockout", "Widget out of stock", data={"product_id": 1}
    )

    assert outcome.resolved
    assert outcome.notified
    assert not outcome.halt
    assert outcome.record.resolution_type == "auto_resolved"
    assert outcome.record.resolution_action == {"action": "expedite_po"}
    assert notifier.outbox[-1]["to"] == ["role:ops"]


@pytest.mark.asyncio
async def test_variance_threshold_selects_rule(engine):
    await engine.exceptions.save_rule(
        ExceptionRule(
            name="large variance",
            exception_type="price_variance",
            variance_threshold=10,
            resolution_strategy="escalate",
            notify_roles=["finance"],
        )
    )
    await engine.exceptions.save_rule(
        ExceptionRule(
            name="small variance",
            exception_type="price_variance",
            resolution_strategy="auto_resolve",
            priority=200,
        )
    )

    small = await engine.exceptions.handle_exception(
        None, "price_variance", "Invoice 1", data={"variance_pct": 3}
    )
    large = await engine.exceptions.handle_exception(
        None, "price_variance", "Invoice 2", data={"variance_pct": -14}
    )

    assert small.record.status == "resolved"
    assert large.record.status == "escalated"
    assert large.record.severity == "high"
    assert [e.id for e in await engine.exceptions.list_exceptions(status="escalated")] == [large.record.id]


@pytest.mark.asyncio
async def test_unmatched_exception_goes_to_ai_triage(engine, invoker):
    invoker.script(
        "exception_triage",
        {
            "choice": {"action": "resolve", "severity": "low", "suggested_action": "recount"},
            "reasoning": "cycle count drift",
            "confidence": 85,
        },
    )

    outcome = await engine.exceptions.handle_exception(None, "count_mismatch", "Bin A3 off by 2")

    assert outcome.record.resolution_type == "ai_resolved"
    assert outcome.record.resolved_by == "ai"
    assert outcome.record.severity == "low"
    assert outcome.record.resolution_action == {"action": "recount"}


@pytest.mark.asyncio
async def test_low_confidence_triage_escalates(engine, invoker):
    invoker.script(
        "exception_triage",
        {"choice": {"action": "resolve"}, "reasoning": "unsure", "confidence": 40},
    )

    outcome = await engine.exceptions.handle_exception(None, "count_mismatch", "Bin B1")

    assert outcome.record.status == "escalated"
    assert "40% confidence" in outcome.record.resolution_notes


@pytest.mark.asyncio
async def test_triage_failure_escalates_as_high(engine, invoker):
    invoker.script("exception_triage", "I think this is fine")

    outcome = await engine.exceptions.handle_exception(None, "count_mismatch", "Bin C7")

    assert outcome.record.status == "escalated"
    assert outcome.record.severity == "high"
    assert outcome.record.resolution_notes.startswith("AI triage unavailable")


@pytest.mark.asyncio
async def test_halt_rule_fails_run_without_retry(engine):
    await engine.exceptions.save_rule(
        ExceptionRule(exception_type="quality_hold", resolution_strategy="halt_workflow")
    )
    definition = await engine.register_definition(
        WorkflowDefinition(name="Inspection", workflow_type="test_halting_exception")
    )

    result = await engine.start_workflow(definition.id)

    assert result.status == "failed"
    assert result.attempts == 1
    assert result.error.startswith("halted:")
    (record,) = await engine.exceptions.list_exceptions()
    assert record.run_id == result.run_id
    assert record.status == "escalated"


@pytest.mark.asyncio
async def test_human_resolution(engine, invoker):
    invoker.script("exception_triage", "garbage")
    outcome = await engine.exceptions.handle_exception(None, "count_mismatch", "Bin D2")

    record = await engine.exceptions.resolve_exception(
        outcome.record.id, "sam", action={"action": "adjust"}, notes="recounted"
    )

    assert record.resolution_type == "human_resolved"
    with pytest.raises(ExceptionRecordError):
        await engine.exceptions.resolve_exception(outcome.record.id, "sam")
    with pytest.raises(ExceptionRecordError):
        await engine.exceptions.escalate_exception(outcome.record.id)


@pytest.mark.asyncio
async def test_routine_reports_stay_open_until_triage(engine, invoker):
    low = await engine.exceptions.report_exception(None, "delivery_delay", "SH-1 late", severity="low")
    medium = await engine.exceptions.report_exception(None, "delivery_delay", "SH-2 late")

    assert low.record.status == medium.record.status == "open"
    assert [r.id for r in await engine.exceptions.list_open()] == [medium.record.id, low.record.id]
    assert [e.event_type for e in await engine.events.history()] == ["exception_detected"] * 2
    assert invoker.requests == []

    invoker.script(
        "exception_triage",
        {"choice": {"action": "resolve", "severity": "medium"}, "reasoning": "carrier ETA updated", "confidence": 90},
        {"choice": {"action": "resolve", "severity": "low"}, "reasoning": "no customer impact", "confidence": 30},
    )
    summary = await engine.exceptions.triage_open()

    assert summary.resolved == [medium.record.id]
    assert summary.escalated == [low.record.id]
    assert await engine.exceptions.list_open() == []


@pytest.mark.asyncio
async def test_triage_limit_leaves_the_rest_open(engine, invoker):
    first = await engine.exceptions.report_exception(None, "count_mismatch", "Bin A1", severity="medium")
    second = await engine.exceptions.report_exception(None, "count_mismatch", "Bin A2", severity="low")
    invoker.script("exception_triage", {"choice": {"action": "resolve"}, "reasoning": "recounted", "confidence": 95})

    summary = await engine.exceptions.triage_open(limit=1)

    assert summary.resolved == [first.record.id]
    assert [r.id for r in await engine.exceptions.list_open()] == [second.record.id]


@pytest.mark.asyncio
async def test_urgent_or_rule_settled_reports_are_handled_at_once(engine, invoker):
    await engine.exceptions.save_rule(
        ExceptionRule(
            exception_type="stockout",
            resolution_strategy="auto_resolve",
            resolution_action={"action": "expedite"},
        )
    )
    invoker.script("exception_triage", {"choice": {"action": "escalate"}, "reasoning": "recall risk", "confidence": 90})

    settled = await engine.exceptions.report_exception(None, "stockout", "Widget out")
    urgent = await engine.exceptions.report_exception(None, "quality_issue", "Lot 12 failed", severity="critical")

    assert settled.record.status == "resolved"
    assert settled.record.resolution_type == "auto_resolved"
    assert urgent.record.status == "escalated"
    assert await engine.exceptions.list_open() == []
