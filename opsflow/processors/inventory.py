"""Inventory processors: reorder points and the overall stock position."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .base import ProcessorConfig, processor

if TYPE_CHECKING:
    from ..runtime import ExecutionContext

logger = logging.getLogger(__name__)

CREATE_ORDERS = "create_purchase_orders"


class ReorderConfig(ProcessorConfig):
    default_reorder_quantity: float = Field(default=100, gt=0)
    max_items: Optional[int] = Field(default=None, ge=1)


class LowStockItem(BaseModel):
    inventory_id: Any
    product_id: Any
    product_name: str
    available: float
    reorder_level: float
    reorder_quantity: float
    unit_cost: float
    vendor_id: Optional[Any] = None


class ReorderQuantity(BaseModel):
    """Decision shape for the reorder quantity of one product."""

    recommended_quantity: float = Field(gt=0)
    urgency: str = "normal"


class ReorderLine(BaseModel):
    product_id: Any
    product_name: str
    quantity: float
    unit_cost: float
    urgency: str = "normal"

    @property
    def value(self) -> float:
        return self.quantity * self.unit_cost


class ReorderProposal(BaseModel):
    """Purchase order proposed for one vendor; carried on the approval ticket."""

    vendor_id: Any
    lines: List[ReorderLine]

    @property
    def total(self) -> float:
        return sum(line.value for line in self.lines)


async def _low_stock(ctx: "ExecutionContext", config: ReorderConfig) -> List[LowStockItem]:
    products = {p["id"]: p for p in await ctx.records.query("products") if p.get("status", "active") == "active"}
    items: List[LowStockItem] = []
    for inv in await ctx.records.query("inventory"):
        product = products.get(inv.get("product_id"))
        if product is None:
            continue
        available = float(inv.get("quantity", 0)) - float(inv.get("reserved_quantity", 0))
        reorder_level = float(inv.get("reorder_level", 0))
        if available > reorder_level:
            continue
        items.append(
            LowStockItem(
                inventory_id=inv["id"],
                product_id=product["id"],
                product_name=product.get("name", f"Product #{product['id']}"),
                available=available,
                reorder_level=reorder_level,
                reorder_quantity=float(inv.get("reorder_quantity") or config.default_reorder_quantity),
                unit_cost=float(product.get("cost_price") or product.get("unit_price") or 0),
                vendor_id=product.get("preferred_vendor_id"),
            )
        )
    if config.max_items is not None:
        items = items[: config.max_items]
    return items


async def _create_purchase_order(ctx: "ExecutionContext", proposal: ReorderProposal) -> Dict[str, Any]:
    po = await ctx.records.create(
        "purchase_orders",
        {
            "vendor_id": proposal.vendor_id,
            "status": "draft",
            "source": "inventory_reorder",
            "run_id": ctx.run.id,
            "order_date": ctx.now().isoformat(),
            "lines": [line.model_dump(mode="json") for line in proposal.lines],
            "total_amount": proposal.total,
        },
    )
    ctx.add_value(proposal.total)
    return {"id": po["id"], "vendor_id": proposal.vendor_id, "total": proposal.total}


@processor("inventory_reorder", ReorderConfig)
async def inventory_reorder(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Check reorder points and raise purchase orders, subject to approval."""
    config: ReorderConfig = ctx.config

    if ctx.resume_point == CREATE_ORDERS:
        return await _create_approved(ctx)

    check = await ctx.require(
        1,
        "Check Reorder Points",
        "data_fetch",
        lambda: _fetch(ctx, config),
    )
    low_stock = [LowStockItem.model_validate(i) for i in check.data["items"]]
    if not low_stock:
        return {"message": "No products below reorder point"}
    ctx.processed(len(low_stock))

    async def calculate() -> Dict[str, Any]:
        lines = []
        for item in low_stock:
            decision = await ctx.decide(
                "reorder_quantity",
                f'Determine optimal reorder quantity for product "{item.product_name}":\n'
                f"- Current available: {item.available} units\n"
                f"- Reorder level: {item.reorder_level} units\n"
                f"- Default reorder quantity: {item.reorder_quantity} units\n"
                f"- Unit cost: ${item.unit_cost}\n\n"
                "Consider demand trends and storage capacity.",
                output_shape=ReorderQuantity,
                default={"recommended_quantity": item.reorder_quantity, "urgency": "normal"},
            )
            choice = ReorderQuantity.model_validate(decision.choice)
            lines.append(
                {
                    "vendor_id": item.vendor_id,
                    "line": ReorderLine(
                        product_id=item.product_id,
                        product_name=item.product_name,
                        quantity=choice.recommended_quantity,
                        unit_cost=item.unit_cost,
                        urgency=choice.urgency,
                    ).model_dump(mode="json"),
                }
            )
        return {"lines": lines}

    calculated = await ctx.require(2, "Calculate Reorder Quantities", "ai_decision", calculate)

    grouped: Dict[Any, List[ReorderLine]] = defaultdict(list)
    for entry in calculated.data["lines"]:
        if entry["vendor_id"] is None:
            ctx.failed()
            continue
        grouped[entry["vendor_id"]].append(ReorderLine.model_validate(entry["line"]))
    proposals = [ReorderProposal(vendor_id=v, lines=lines) for v, lines in grouped.items()]

    async def request_approvals() -> Dict[str, Any]:
        approved, pending = [], []
        for proposal in proposals:
            outcome = await ctx.request_approval(
                "purchase_order",
                f"Inventory Reorder PO for Vendor #{proposal.vendor_id}",
                f"{len(proposal.lines)} products below reorder point. Total: ${proposal.total:,.2f}",
                proposal.total,
                related_kind="vendor",
                related_id=proposal.vendor_id,
                ai_reasoning=f"Automated reorder triggered for {len(proposal.lines)} low-stock products",
                confidence=90,
                payload=proposal.model_dump(mode="json"),
                key=f"reorder:{proposal.vendor_id}",
            )
            (approved if outcome.approved else pending).append(proposal.model_dump(mode="json"))
        return {"approved": approved, "pending": pending}

    approvals = await ctx.require(3, "Request Reorder Approvals", "wait_approval", request_approvals)

    async def create_orders() -> Dict[str, Any]:
        created = []
        for raw in approvals.data["approved"]:
            proposal = ReorderProposal.model_validate(raw)
            created.append(await _create_purchase_order(ctx, proposal))
            ctx.succeeded(len(proposal.lines))
        return {"purchase_orders": created}

    orders = await ctx.step(4, "Create Reorder POs", "create_record", create_orders)

    await ctx.emit(
        "inventory_low",
        "warning",
        {"low_stock_count": len(low_stock), "total_value": sum(p.total for p in proposals)},
        entity_kind="inventory",
    )
    if approvals.data["pending"]:
        ctx.park(CREATE_ORDERS)

    return {
        "recommendations": [line.model_dump(mode="json") for p in proposals for line in p.lines],
        "purchase_orders": orders.data.get("purchase_orders", []),
        "pending_orders": len(approvals.data["pending"]),
    }


async def _fetch(ctx: "ExecutionContext", config: ReorderConfig) -> Dict[str, Any]:
    items = await _low_stock(ctx, config)
    return {"items": [i.model_dump(mode="json") for i in items]}


async def _create_approved(ctx: "ExecutionContext") -> Dict[str, Any]:
    tickets = [t for key, t in ctx.approvals.items() if key.startswith("reorder:")]

    async def create_orders() -> Dict[str, Any]:
        created, rejected = [], []
        for ticket in tickets:
            proposal = ReorderProposal.model_validate(ticket.payload)
            if ticket.status != "approved":
                rejected.append(proposal.vendor_id)
                ctx.failed(len(proposal.lines))
                continue
            created.append(await _create_purchase_order(ctx, proposal))
            ctx.succeeded(len(proposal.lines))
        return {"approved_purchase_orders": created, "rejected_vendors": rejected}

    result = await ctx.require(5, "Create Approved Reorder POs", "create_record", create_orders)
    return result.data


# ----------------------------------------------------------------------
# Inventory optimization


class OptimizationConfig(ProcessorConfig):
    excess_quantity: float = Field(default=1000, gt=0)


class OptimizationAction(BaseModel):
    action: str
    target_products: List[Any] = Field(default_factory=list)
    expected_savings: float = 0
    priority: str = "medium"


class OptimizationAdvice(BaseModel):
    recommendations: List[OptimizationAction] = Field(default_factory=list)
    summary: str = ""


@processor("inventory_optimization", OptimizationConfig)
async def inventory_optimization(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Value the stock on hand, find excess, and ask for optimization advice."""
    config: OptimizationConfig = ctx.config

    async def analyze() -> Dict[str, Any]:
        products = {p["id"]: p for p in await ctx.records.query("products")}
        available: Dict[Any, float] = defaultdict(float)
        for inv in await ctx.records.query("inventory"):
            if inv.get("product_id") in products:
                available[inv["product_id"]] += float(inv.get("quantity", 0)) - float(
                    inv.get("reserved_quantity", 0)
                )
        total_value = 0.0
        excess = []
        for product_id, quantity in available.items():
            product = products[product_id]
            value = quantity * float(product.get("cost_price") or 0)
            total_value += value
            if quantity > config.excess_quantity:
                excess.append(
                    {"product_id": product_id, "name": product.get("name"), "available": quantity, "value": value}
                )
        return {"total_value": total_value, "item_count": len(available), "excess_items": excess}

    metrics = await ctx.require(1, "Analyze Inventory Metrics", "ai_analysis", analyze)
    item_count = metrics.data["item_count"]
    excess = metrics.data["excess_items"]
    ctx.processed(item_count)

    async def recommend() -> Dict[str, Any]:
        default = OptimizationAdvice(
            recommendations=[
                OptimizationAction(
                    action="reduce_excess",
                    target_products=[e["product_id"] for e in excess],
                    priority="high",
                )
            ]
            if excess
            else [],
            summary=f"{len(excess)} of {item_count} products hold more than {config.excess_quantity:g} units",
        )
        decision = await ctx.decide(
            "allocation_decision",
            "Analyze inventory optimization opportunities:\n"
            f"Total inventory value: ${metrics.data['total_value']:.2f}\n"
            f"Total SKUs: {item_count}\n"
            f"Excess items: {len(excess)}\n\n"
            "Recommend how to reduce excess inventory, improve turnover and adjust reorder points.",
            output_shape=OptimizationAdvice,
            default=default.model_dump(mode="json"),
        )
        return OptimizationAdvice.model_validate(decision.choice).model_dump(mode="json")

    advice = await ctx.require(2, "Generate Recommendations", "ai_decision", recommend)
    ctx.succeeded(item_count)
    ctx.add_value(metrics.data["total_value"])
    return {**advice.data, "total_value": metrics.data["total_value"], "excess_items": excess}
