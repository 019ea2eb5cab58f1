"""Planning processors: demand forecasting, production planning and MRP."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..errors import DecisionError
from .base import ProcessorConfig, processor

if TYPE_CHECKING:
    from ..runtime import ExecutionContext

logger = logging.getLogger(__name__)

CONVERT_SUGGESTED = "convert_suggested_orders"


# ----------------------------------------------------------------------
# Demand forecasting


class ForecastConfig(ProcessorConfig):
    history_months: int = Field(default=3, ge=1)
    horizon_days: int = Field(default=30, ge=1)


class ForecastDecision(BaseModel):
    forecasted_quantity: float = Field(ge=0)
    trend: str = "stable"


class Forecast(BaseModel):
    id: Any
    product_id: Any
    product_name: str
    quantity: float
    confidence: float
    trend: str


@processor("demand_forecasting", ForecastConfig)
async def demand_forecasting(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Forecast next-period demand for every active product."""
    config: ForecastConfig = ctx.config

    async def fetch_products() -> Dict[str, Any]:
        products = await ctx.records.query("products", lambda p: p.get("status", "active") == "active")
        return {"products": products, "count": len(products)}

    fetched = await ctx.require(1, "Fetch Active Products", "data_fetch", fetch_products)
    products = fetched.data["products"]
    ctx.processed(len(products))
    if not products:
        return {"forecasts": []}

    async def fetch_sales() -> Dict[str, Any]:
        totals: Dict[str, Dict[str, float]] = defaultdict(lambda: {"quantity": 0.0, "orders": 0})
        for sale in await ctx.records.query("sales"):
            entry = totals[str(sale.get("product_id"))]
            entry["quantity"] += float(sale.get("quantity", 0))
            entry["orders"] += 1
        return {"sales": dict(totals)}

    sales = await ctx.step(2, "Fetch Historical Sales", "data_fetch", fetch_sales)
    history = sales.data.get("sales", {})

    async def generate() -> Dict[str, Any]:
        forecasts: List[Forecast] = []
        for product in products:
            product_sales = history.get(str(product["id"]), {"quantity": 0.0, "orders": 0})
            avg_monthly = product_sales["quantity"] / config.history_months
            try:
                decision = await ctx.decide(
                    "forecast_adjustment",
                    f'Generate demand forecast for product "{product.get("name")}" '
                    f'(SKU: {product.get("sku")}).\nHistorical data:\n'
                    f"- Total sales last {config.history_months} months: {product_sales['quantity']} units\n"
                    f"- Average monthly: {avg_monthly:.2f} units\n"
                    f"- Order count: {product_sales['orders']}\n\n"
                    f"Consider seasonal factors, trends and market conditions. Provide the "
                    f"forecast quantity for the next {config.horizon_days} days.",
                    output_shape=ForecastDecision,
                    default={"forecasted_quantity": avg_monthly, "trend": "stable"},
                )
                choice = ForecastDecision.model_validate(decision.choice)
                record = await ctx.records.create(
                    "forecasts",
                    {
                        "product_id": product["id"],
                        "forecast_date": ctx.now().isoformat(),
                        "forecasted_quantity": choice.forecasted_quantity,
                        "confidence": decision.confidence,
                        "trend": choice.trend,
                        "horizon_days": config.horizon_days,
                        "status": "active",
                        "run_id": ctx.run.id,
                    },
                )
            except (DecisionError, KeyError, ValueError) as e:
                logger.warning(f"Failed to forecast product {product['id']}: {e}")
                ctx.failed()
                continue
            forecasts.append(
                Forecast(
                    id=record["id"],
                    product_id=product["id"],
                    product_name=product.get("name", ""),
                    quantity=choice.forecasted_quantity,
                    confidence=decision.confidence,
                    trend=choice.trend,
                )
            )
            ctx.succeeded()
        return {"forecasts": [f.model_dump(mode="json") for f in forecasts]}

    generated = await ctx.require(3, "Generate AI Forecasts", "ai_analysis", generate)
    forecasts = generated.data["forecasts"]

    async def announce() -> Dict[str, Any]:
        await ctx.emit("forecast_generated", "info", {"forecast_count": len(forecasts)}, "demand_forecast")
        return {"notified": True}

    await ctx.step(4, "Trigger Production Planning", "send_notification", announce)
    return {"forecasts": forecasts}


# ----------------------------------------------------------------------
# Production planning


class PlanningConfig(ProcessorConfig):
    safety_stock_pct: float = Field(default=10.0, ge=0)


class PlanQuantity(BaseModel):
    planned_quantity: float = Field(ge=0)


@processor("production_planning", PlanningConfig)
async def production_planning(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Turn forecasts into draft production plans where stock falls short."""
    config: PlanningConfig = ctx.config

    async def fetch_forecasts() -> Dict[str, Any]:
        # a pipeline forwards the whole forecasting output under "forecasts"
        forwarded = ctx.input_data.get("forecasts") or []
        if isinstance(forwarded, dict):
            forwarded = forwarded.get("forecasts", [])
        if forwarded:
            ids = {f["id"] for f in forwarded}
            return {"forecasts": await ctx.records.query("forecasts", lambda f: f["id"] in ids)}
        return {"forecasts": await ctx.records.query("forecasts", lambda f: f.get("status") == "active")}

    fetched = await ctx.require(1, "Fetch Active Forecasts", "data_fetch", fetch_forecasts)
    forecasts = fetched.data["forecasts"]
    if not forecasts:
        return {"plans": [], "message": "No active forecasts"}
    ctx.processed(len(forecasts))

    async def check_inventory() -> Dict[str, Any]:
        levels: Dict[str, float] = defaultdict(float)
        for inv in await ctx.records.query("inventory"):
            levels[str(inv.get("product_id"))] += float(inv.get("quantity", 0)) - float(
                inv.get("reserved_quantity", 0)
            )
        return {"available": dict(levels)}

    inventory = await ctx.require(2, "Check Current Inventory", "data_fetch", check_inventory)
    available = inventory.data["available"]

    async def plan() -> Dict[str, Any]:
        plans = []
        for forecast in forecasts:
            on_hand = available.get(str(forecast["product_id"]), 0.0)
            forecasted = float(forecast.get("forecasted_quantity", 0))
            gap = forecasted - on_hand
            if gap <= 0:
                ctx.succeeded()
                continue
            boms = await ctx.records.query(
                "boms",
                lambda b: b.get("product_id") == forecast["product_id"] and b.get("is_active", True),
            )
            bom = boms[0] if boms else None
            decision = await ctx.decide(
                "production_quantity",
                "Calculate optimal production quantity:\n"
                f"- Forecasted demand: {forecasted} units\n"
                f"- Current available inventory: {on_hand} units\n"
                f"- Gap to fill: {gap} units\n"
                f"- Has BOM: {'Yes' if bom else 'No'}\n\n"
                "Consider batch sizes, production efficiency, and safety stock.",
                output_shape=PlanQuantity,
                default={"planned_quantity": gap},
            )
            quantity = PlanQuantity.model_validate(decision.choice).planned_quantity
            record = await ctx.records.create(
                "production_plans",
                {
                    "forecast_id": forecast["id"],
                    "product_id": forecast["product_id"],
                    "bom_id": bom["id"] if bom else None,
                    "planned_quantity": quantity,
                    "current_inventory": on_hand,
                    "safety_stock": forecasted * config.safety_stock_pct / 100,
                    "status": "draft",
                    "run_id": ctx.run.id,
                },
            )
            plans.append({"id": record["id"], "product_id": forecast["product_id"], "quantity": quantity})
            ctx.succeeded()
        return {"plans": plans}

    planned = await ctx.require(3, "Generate Production Plans", "ai_decision", plan)
    plans = planned.data["plans"]

    async def announce() -> Dict[str, Any]:
        await ctx.emit("production_planned", "info", {"plan_count": len(plans)}, "production_plan")
        return {"notified": True}

    await ctx.step(4, "Trigger MRP", "send_notification", announce)
    return {"plans": plans}


# ----------------------------------------------------------------------
# Material requirements


class MrpConfig(ProcessorConfig):
    open_po_statuses: List[str] = Field(default_factory=lambda: ["sent", "confirmed", "partial"])
    suggestion_confidence: float = Field(default=85, ge=0, le=100)


class Requirement(BaseModel):
    id: Any
    plan_id: Any
    material_id: Any
    material_name: Optional[str] = None
    vendor_id: Optional[Any] = None
    shortage: float
    unit_cost: float

    @property
    def cost(self) -> float:
        return self.shortage * self.unit_cost


class SuggestedOrder(BaseModel):
    id: Any
    vendor_id: Any
    total: float
    item_count: int


async def _on_order(ctx: "ExecutionContext", material_id: Any, statuses: List[str]) -> float:
    total = 0.0
    for po in await ctx.records.query("purchase_orders", lambda p: p.get("status") in statuses):
        for line in po.get("lines", []):
            if line.get("raw_material_id") == material_id:
                total += float(line.get("quantity", 0)) - float(line.get("received_quantity", 0))
    return total


@processor("material_requirements", MrpConfig)
async def material_requirements(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Explode production plans into material shortages and suggested POs."""
    config: MrpConfig = ctx.config

    if ctx.resume_point == CONVERT_SUGGESTED:
        return await _settle_suggested(ctx)

    async def fetch_plans() -> Dict[str, Any]:
        plans = await ctx.records.query(
            "production_plans", lambda p: p.get("status") in ("draft", "approved")
        )
        return {"plans": plans}

    fetched = await ctx.require(1, "Fetch Production Plans", "data_fetch", fetch_plans)
    plans = fetched.data["plans"]
    if not plans:
        return {"requirements": [], "suggested_orders": []}
    ctx.processed(len(plans))

    async def calculate() -> Dict[str, Any]:
        requirements: List[Requirement] = []
        for plan in plans:
            if not plan.get("bom_id"):
                continue
            bom = await ctx.records.get("boms", plan["bom_id"])
            for component in (bom or {}).get("components", []):
                material_id = component["raw_material_id"]
                required = (
                    float(component.get("quantity", 0))
                    * float(plan.get("planned_quantity", 0))
                    * (1 + float(component.get("waste_pct", 0)) / 100)
                )
                material = await ctx.records.get("raw_materials", material_id) or {}
                current = float(material.get("quantity", 0))
                on_order = await _on_order(ctx, material_id, config.open_po_statuses)
                shortage = max(0.0, required - current - on_order)
                if shortage <= 0:
                    continue
                unit_cost = float(material.get("unit_cost", 0))
                record = await ctx.records.create(
                    "material_requirements",
                    {
                        "production_plan_id": plan["id"],
                        "raw_material_id": material_id,
                        "required_quantity": required,
                        "current_inventory": current,
                        "on_order_quantity": on_order,
                        "shortage_quantity": shortage,
                        "suggested_order_quantity": max(shortage, float(material.get("min_order_qty", 0))),
                        "preferred_vendor_id": material.get("preferred_vendor_id"),
                        "estimated_unit_cost": unit_cost,
                        "status": "pending",
                    },
                )
                requirements.append(
                    Requirement(
                        id=record["id"],
                        plan_id=plan["id"],
                        material_id=material_id,
                        material_name=material.get("name"),
                        vendor_id=material.get("preferred_vendor_id"),
                        shortage=shortage,
                        unit_cost=unit_cost,
                    )
                )
                ctx.add_value(shortage * unit_cost)
            ctx.succeeded()
        return {"requirements": [r.model_dump(mode="json") for r in requirements]}

    calculated = await ctx.require(2, "Calculate Material Requirements", "calculation", calculate)
    requirements = [Requirement.model_validate(r) for r in calculated.data["requirements"]]

    async def suggest() -> Dict[str, Any]:
        by_vendor: Dict[Any, List[Requirement]] = defaultdict(list)
        for req in requirements:
            if req.vendor_id is not None:
                by_vendor[req.vendor_id].append(req)
        suggested: List[SuggestedOrder] = []
        for vendor_id, items in by_vendor.items():
            total = sum(item.cost for item in items)
            record = await ctx.records.create(
                "suggested_purchase_orders",
                {
                    "vendor_id": vendor_id,
                    "total_amount": total,
                    "status": "pending",
                    "ai_reasoning": f"Auto-generated from material requirements. {len(items)} items "
                    f"with total value ${total:.2f}",
                    "confidence": config.suggestion_confidence,
                    "lines": [
                        {
                            "material_requirement_id": item.id,
                            "raw_material_id": item.material_id,
                            "quantity": item.shortage,
                            "unit_price": item.unit_cost,
                            "total_price": item.cost,
                        }
                        for item in items
                    ],
                    "run_id": ctx.run.id,
                },
            )
            suggested.append(
                SuggestedOrder(id=record["id"], vendor_id=vendor_id, total=total, item_count=len(items))
            )
        return {"suggested_orders": [s.model_dump(mode="json") for s in suggested]}

    suggestions = await ctx.require(3, "Generate Suggested POs", "create_record", suggest)
    suggested = [SuggestedOrder.model_validate(s) for s in suggestions.data["suggested_orders"]]

    if suggested:

        async def request_approvals() -> Dict[str, Any]:
            approved = 0
            for spo in suggested:
                outcome = await ctx.request_approval(
                    "purchase_order",
                    f"Suggested PO for Vendor #{spo.vendor_id}",
                    f"{spo.item_count} materials, total value ${spo.total:.2f}",
                    spo.total,
                    related_kind="suggested_purchase_order",
                    related_id=spo.id,
                    ai_reasoning="AI recommends approval based on material requirements and vendor performance",
                    confidence=config.suggestion_confidence,
                    payload=spo.model_dump(mode="json"),
                    key=f"spo:{spo.id}",
                )
                if outcome.approved:
                    await ctx.records.update("suggested_purchase_orders", spo.id, {"status": "approved"})
                    approved += 1
            return {"approved": approved, "pending": len(suggested) - approved}

        await ctx.require(4, "Request PO Approvals", "wait_approval", request_approvals)
        if ctx.has_pending_approvals:
            ctx.park(CONVERT_SUGGESTED)

    return {
        "requirements": [r.model_dump(mode="json") for r in requirements],
        "suggested_orders": [s.model_dump(mode="json") for s in suggested],
    }


async def _settle_suggested(ctx: "ExecutionContext") -> Dict[str, Any]:
    tickets = [t for key, t in ctx.approvals.items() if key.startswith("spo:")]

    async def settle() -> Dict[str, Any]:
        approved, rejected = [], []
        for ticket in tickets:
            spo = SuggestedOrder.model_validate(ticket.payload)
            status = "approved" if ticket.status == "approved" else "rejected"
            await ctx.records.update("suggested_purchase_orders", spo.id, {"status": status})
            (approved if status == "approved" else rejected).append(spo.id)
        return {"approved_suggestions": approved, "rejected_suggestions": rejected}

    result = await ctx.require(5, "Apply PO Approval Decisions", "update_record", settle)
    return result.data
