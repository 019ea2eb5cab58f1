"""Default workflows, approval thresholds and exception rules."""

from __future__ import annotations

import logging
from typing import List

from pydantic import BaseModel

from .contracts import (
    ApprovalThreshold,
    ApprovalTier,
    ExceptionRule,
    ThresholdCondition,
    TriggerParams,
    WorkflowDefinition,
)
from .engine import WorkflowEngine

logger = logging.getLogger(__name__)

APPROVER_ROLES = ["ops", "admin"]


def default_workflows() -> List[WorkflowDefinition]:
    return [
        WorkflowDefinition(
            name="Daily Demand Forecasting",
            workflow_type="demand_forecasting",
            category="planning",
            description="Generate daily demand forecasts for all active products",
            trigger="scheduled",
            trigger_params=TriggerParams(cron="0 6 * * *"),
        ),
        WorkflowDefinition(
            name="Production Planning",
            workflow_type="production_planning",
            category="planning",
            description="Create production plans from forecasts",
            trigger="scheduled",
            trigger_params=TriggerParams(cron="0 7 * * *", depends_on=["demand_forecasting"]),
        ),
        WorkflowDefinition(
            name="Material Requirements Planning",
            workflow_type="material_requirements",
            category="planning",
            description="Calculate material needs and generate suggested purchase orders",
            trigger="scheduled",
            trigger_params=TriggerParams(cron="0 8 * * *"),
            requires_approval=True,
            auto_approve_max=1000,
            approver_roles=APPROVER_ROLES,
        ),
        WorkflowDefinition(
            name="Procurement Processing",
            workflow_type="procurement",
            category="procurement",
            description="Convert approved suggested purchase orders into purchase orders",
            trigger="event",
            trigger_params=TriggerParams(events=["approval_completed"]),
        ),
        WorkflowDefinition(
            name="Inventory Reorder Check",
            workflow_type="inventory_reorder",
            category="inventory",
            description="Check inventory levels and trigger reorders",
            trigger="threshold",
            trigger_params=TriggerParams(threshold=ThresholdCondition(type="inventory_below")),
            requires_approval=True,
            auto_approve_max=500,
            approver_roles=APPROVER_ROLES,
        ),
        WorkflowDefinition(
            name="Order Fulfillment",
            workflow_type="order_fulfillment",
            category="fulfillment",
            description="Process and fulfil confirmed orders",
            trigger="event",
            trigger_params=TriggerParams(events=["order_confirmed"]),
        ),
        WorkflowDefinition(
            name="Invoice Matching",
            workflow_type="invoice_matching",
            category="finance",
            description="Match vendor invoices to purchase orders",
            trigger="event",
            trigger_params=TriggerParams(events=["invoice_received"]),
        ),
        WorkflowDefinition(
            name="Inventory Transfer",
            workflow_type="inventory_transfer",
            category="inventory",
            description="Rebalance stock between warehouses",
            trigger="scheduled",
            trigger_params=TriggerParams(cron="0 3 * * *"),
        ),
        WorkflowDefinition(
            name="Inventory Optimization",
            workflow_type="inventory_optimization",
            category="inventory",
            description="Analyze and optimize inventory distribution",
            trigger="scheduled",
            trigger_params=TriggerParams(cron="0 2 * * 0"),
        ),
        WorkflowDefinition(
            name="Work Order Generation",
            workflow_type="work_order_generation",
            category="production",
            description="Generate work orders from production plans",
            trigger="event",
            trigger_params=TriggerParams(events=["production_planned"]),
        ),
        WorkflowDefinition(
            name="Production Scheduling",
            workflow_type="production_scheduling",
            category="production",
            description="Schedule work orders based on capacity and materials",
            trigger="scheduled",
            trigger_params=TriggerParams(cron="0 5 * * *"),
        ),
        WorkflowDefinition(
            name="Freight Procurement",
            workflow_type="freight_procurement",
            category="logistics",
            description="Send draft freight RFQs to selected carriers",
            trigger="manual",
        ),
        WorkflowDefinition(
            name="Shipment Tracking",
            workflow_type="shipment_tracking",
            category="logistics",
            description="Track in-transit shipments and detect delays",
            trigger="scheduled",
            trigger_params=TriggerParams(cron="0 */2 * * *"),
        ),
        WorkflowDefinition(
            name="Payment Processing",
            workflow_type="payment_processing",
            category="finance",
            description="Pay approved invoices that are due",
            trigger="scheduled",
            trigger_params=TriggerParams(cron="0 10 * * 1,3,5"),
            requires_approval=True,
            auto_approve_max=2000,
            approver_roles=["finance"],
        ),
        WorkflowDefinition(
            name="Exception Handling",
            workflow_type="exception_handling",
            category="operations",
            description="Triage and resolve open exceptions",
            trigger="threshold",
            trigger_params=TriggerParams(threshold=ThresholdCondition(type="exception_count", threshold=3)),
        ),
    ]


def _ladder(level1: float, level2: float, level3: float, first_roles: List[str]) -> List[ApprovalTier]:
    return [
        ApprovalTier(level=1, max_amount=level1, roles=first_roles),
        ApprovalTier(level=2, max_amount=level2, roles=["admin"]),
        ApprovalTier(level=3, max_amount=level3, roles=["exec"]),
        ApprovalTier(level=4, max_amount=None, roles=["exec"]),
    ]


def default_thresholds() -> List[ApprovalThreshold]:
    return [
        ApprovalThreshold(
            subject_kind="purchase_order",
            auto_approve_max=500,
            tiers=_ladder(5_000, 25_000, 100_000, ["ops"]),
        ),
        ApprovalThreshold(
            subject_kind="payment",
            auto_approve_max=1_000,
            tiers=_ladder(10_000, 50_000, 200_000, ["finance"]),
        ),
        ApprovalThreshold(
            subject_kind="inventory_transfer",
            auto_approve_max=10_000,
            tiers=_ladder(50_000, 100_000, 500_000, ["ops"]),
        ),
    ]


def default_exception_rules() -> List[ExceptionRule]:
    return [
        ExceptionRule(
            name="Stockout: notify operations",
            exception_type="stockout",
            priority=10,
            resolution_strategy="notify_and_continue",
            resolution_action={"notify": True, "action": "backorder"},
            severity="high",
            notify_roles=["ops"],
        ),
        ExceptionRule(
            name="Large price variance",
            exception_type="price_variance",
            priority=10,
            variance_threshold=10.0,
            resolution_strategy="escalate",
            severity="high",
            notify_roles=["finance"],
        ),
        ExceptionRule(
            name="Price variance triage",
            exception_type="price_variance",
            priority=50,
            resolution_strategy="ai_decide",
            severity="medium",
            notify_roles=["finance"],
        ),
        ExceptionRule(
            name="Missing documentation",
            exception_type="documentation_missing",
            priority=50,
            resolution_strategy="route_to_human",
            severity="medium",
            notify_roles=["finance"],
        ),
        ExceptionRule(
            name="Step failure",
            exception_type="step_failure",
            priority=100,
            resolution_strategy="notify_and_continue",
            resolution_action={"notify": True},
            severity="medium",
            notify_roles=["ops"],
        ),
    ]


class SeedReport(BaseModel):
    workflows: List[str] = []
    thresholds: List[str] = []
    exception_rules: List[str] = []


async def seed_defaults(engine: WorkflowEngine) -> SeedReport:
    """Install the defaults that are not configured yet; existing entries are left alone."""
    report = SeedReport()

    existing_types = {d.workflow_type for d in await engine.list_definitions()}
    for definition in default_workflows():
        if definition.workflow_type in existing_types:
            continue
        await engine.register_definition(definition)
        report.workflows.append(definition.name)

    existing_kinds = {t.subject_kind for t in await engine.approvals.list_thresholds()}
    for threshold in default_thresholds():
        if threshold.subject_kind in existing_kinds:
            continue
        await engine.approvals.save_threshold(threshold)
        report.thresholds.append(threshold.subject_kind)

    existing_rules = {r.name for r in await engine.exceptions.list_rules()}
    for rule in default_exception_rules():
        if rule.name in existing_rules:
            continue
        await engine.exceptions.save_rule(rule)
        report.exception_rules.append(rule.name)

    logger.info(
        f"Seeded {len(report.workflows)} workflows, {len(report.thresholds)} thresholds, "
        f"{len(report.exception_rules)} exception rules"
    )
    return report
