"""Shop-floor processors: work order generation and production scheduling."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List

from pydantic import BaseModel, Field

from .base import ProcessorConfig, processor

if TYPE_CHECKING:
    from ..runtime import ExecutionContext

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Work order generation


class WorkOrderConfig(ProcessorConfig):
    plan_statuses: List[str] = Field(default_factory=lambda: ["draft", "approved"])


class WorkOrder(BaseModel):
    id: Any
    work_order_number: str
    plan_id: Any
    product_id: Any
    quantity: float
    material_count: int


def _forwarded_plan_ids(ctx: "ExecutionContext") -> set:
    forwarded = ctx.input_data.get("production_plans") or []
    if isinstance(forwarded, dict):
        forwarded = forwarded.get("plans", [])
    return {p["id"] for p in forwarded if isinstance(p, dict) and "id" in p}


@processor("work_order_generation", WorkOrderConfig)
async def work_order_generation(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Open work orders, with their bill of materials, for production plans that lack one."""
    config: WorkOrderConfig = ctx.config
    only = _forwarded_plan_ids(ctx)

    async def fetch_plans() -> Dict[str, Any]:
        plans = await ctx.records.query(
            "production_plans",
            lambda p: p.get("status") in config.plan_statuses
            and not p.get("work_order_id")
            and (not only or p["id"] in only),
        )
        return {"plans": plans}

    fetched = await ctx.require(1, "Fetch Approved Production Plans", "data_fetch", fetch_plans)
    plans = fetched.data["plans"]
    if not plans:
        return {"work_orders": []}
    ctx.processed(len(plans))

    async def create() -> Dict[str, Any]:
        created: List[WorkOrder] = []
        for plan in plans:
            quantity = float(plan.get("planned_quantity", 0))
            bom = await ctx.records.get("boms", plan["bom_id"]) if plan.get("bom_id") else None
            materials = [
                {
                    "raw_material_id": component["raw_material_id"],
                    "required_quantity": quantity
                    * float(component.get("quantity", 0))
                    * (1 + float(component.get("waste_pct", 0)) / 100),
                    "status": "pending",
                }
                for component in (bom or {}).get("components", [])
            ]
            number = f"WO-{ctx.run.run_number}-{plan['id']}"
            record = await ctx.records.create(
                "work_orders",
                {
                    "work_order_number": number,
                    "production_plan_id": plan["id"],
                    "product_id": plan.get("product_id"),
                    "bom_id": plan.get("bom_id"),
                    "quantity": quantity,
                    "status": "planned",
                    "planned_start_date": plan.get("planned_start_date") or ctx.now().isoformat(),
                    "materials": materials,
                    "run_id": ctx.run.id,
                },
            )
            # the plan's status belongs to MRP; only the link is recorded here
            await ctx.records.update("production_plans", plan["id"], {"work_order_id": record["id"]})
            created.append(
                WorkOrder(
                    id=record["id"],
                    work_order_number=number,
                    plan_id=plan["id"],
                    product_id=plan.get("product_id"),
                    quantity=quantity,
                    material_count=len(materials),
                )
            )
            ctx.succeeded()
        return {"work_orders": [w.model_dump(mode="json") for w in created]}

    result = await ctx.require(2, "Create Work Orders", "create_record", create)
    work_orders = result.data["work_orders"]
    await ctx.emit("work_order_created", "info", {"count": len(work_orders)}, "work_order")
    return {"work_orders": work_orders}


# ----------------------------------------------------------------------
# Production scheduling


class SchedulingConfig(ProcessorConfig):
    default_duration_hours: float = Field(default=8, gt=0)


class ScheduleDecision(BaseModel):
    scheduled_start: datetime
    estimated_duration_hours: float = Field(gt=0)
    priority: str = "normal"


async def _materials_ready(ctx: "ExecutionContext", work_order: Dict[str, Any]) -> bool:
    for material in work_order.get("materials", []):
        stock = await ctx.records.get("raw_materials", material["raw_material_id"]) or {}
        if float(stock.get("quantity", 0)) < float(material.get("required_quantity", 0)):
            return False
    return True


@processor("production_scheduling", SchedulingConfig)
async def production_scheduling(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Schedule planned work orders whose materials are on hand; flag the rest as stockouts."""
    config: SchedulingConfig = ctx.config

    async def fetch_orders() -> Dict[str, Any]:
        orders = await ctx.records.query("work_orders", lambda w: w.get("status") == "planned")
        orders.sort(key=lambda w: str(w.get("planned_start_date") or ""))
        return {"work_orders": orders}

    fetched = await ctx.require(1, "Fetch Work Orders", "data_fetch", fetch_orders)
    orders = fetched.data["work_orders"]
    if not orders:
        return {"scheduled": [], "blocked": []}
    ctx.processed(len(orders))

    async def check() -> Dict[str, Any]:
        ready, blocked = [], []
        for order in orders:
            (ready if await _materials_ready(ctx, order) else blocked).append(order)
        return {"ready": ready, "blocked": blocked}

    availability = await ctx.require(2, "Check Material Availability", "data_fetch", check)

    async def schedule() -> Dict[str, Any]:
        scheduled = []
        for order in availability.data["ready"]:
            decision = await ctx.decide(
                "timing_decision",
                f"Schedule work order {order.get('work_order_number')}:\n"
                f"- Product: #{order.get('product_id')}\n"
                f"- Quantity: {order.get('quantity')}\n"
                f"- Original planned start: {order.get('planned_start_date')}\n"
                "- Materials ready: Yes\n\n"
                "Determine the optimal start considering capacity and priority.",
                output_shape=ScheduleDecision,
                default={
                    "scheduled_start": ctx.now().isoformat(),
                    "estimated_duration_hours": config.default_duration_hours,
                },
            )
            choice = ScheduleDecision.model_validate(decision.choice)
            end = choice.scheduled_start + timedelta(hours=choice.estimated_duration_hours)
            await ctx.records.update(
                "work_orders",
                order["id"],
                {
                    "status": "scheduled",
                    "scheduled_start_date": choice.scheduled_start.isoformat(),
                    "scheduled_end_date": end.isoformat(),
                    "priority": choice.priority,
                },
            )
            scheduled.append(
                {
                    "id": order["id"],
                    "work_order_number": order.get("work_order_number"),
                    "scheduled_start": choice.scheduled_start.isoformat(),
                    "scheduled_end": end.isoformat(),
                }
            )
            ctx.succeeded()
        return {"scheduled": scheduled}

    scheduled = await ctx.require(3, "Schedule Production", "ai_decision", schedule)

    blocked = availability.data["blocked"]
    for order in blocked:
        logger.warning(f"Work order {order.get('work_order_number')} blocked by a material shortage")
        await ctx.handle_exception(
            "stockout",
            f"Material shortage for WO {order.get('work_order_number')}",
            "Work order cannot be scheduled due to insufficient materials",
            {"work_order_id": order["id"]},
            "work_order",
            order["id"],
        )
        ctx.failed()

    return {
        "scheduled": scheduled.data["scheduled"],
        "blocked": [{"id": o["id"], "work_order_number": o.get("work_order_number")} for o in blocked],
    }
