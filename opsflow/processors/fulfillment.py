"""Order fulfillment: allocate stock to confirmed orders and ship them."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List

from pydantic import BaseModel

from .base import ProcessorConfig, processor

if TYPE_CHECKING:
    from ..runtime import ExecutionContext


class FulfillmentConfig(ProcessorConfig):
    create_shipments: bool = True


class Allocation(BaseModel):
    inventory_id: Any
    warehouse_id: Any = None
    product_id: Any
    quantity: float


class Shortage(BaseModel):
    order_id: Any
    product_id: Any
    required: float
    available: float


def _available(inv: Dict[str, Any]) -> float:
    return float(inv.get("quantity", 0)) - float(inv.get("reserved_quantity", 0))


@processor("order_fulfillment", FulfillmentConfig)
async def order_fulfillment(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Reserve inventory for confirmed orders, create shipments, flag stockouts."""
    config: FulfillmentConfig = ctx.config

    async def fetch_orders() -> Dict[str, Any]:
        return {"orders": await ctx.records.query("orders", lambda o: o.get("status") == "confirmed")}

    fetched = await ctx.require(1, "Fetch Confirmed Orders", "data_fetch", fetch_orders)
    orders = fetched.data["orders"]
    if not orders:
        return {"allocations": [], "shipments": [], "shortages": []}
    ctx.processed(len(orders))

    async def allocate() -> Dict[str, Any]:
        allocated: List[Dict[str, Any]] = []
        shortages: List[Shortage] = []
        for order in orders:
            planned: List[Allocation] = []
            short = None
            for item in order.get("items", []):
                stock = await ctx.records.query("inventory", lambda i: i.get("product_id") == item["product_id"])
                best = max(stock, key=_available, default=None)
                required = float(item.get("quantity", 0))
                if best is None or _available(best) < required:
                    short = Shortage(
                        order_id=order["id"],
                        product_id=item["product_id"],
                        required=required,
                        available=_available(best) if best else 0.0,
                    )
                    break
                planned.append(
                    Allocation(
                        inventory_id=best["id"],
                        warehouse_id=best.get("warehouse_id"),
                        product_id=item["product_id"],
                        quantity=required,
                    )
                )
            if short is not None:
                shortages.append(short)
                ctx.failed()
                continue

            for alloc in planned:
                inv = await ctx.records.get("inventory", alloc.inventory_id)
                await ctx.records.update(
                    "inventory",
                    alloc.inventory_id,
                    {"reserved_quantity": float(inv.get("reserved_quantity", 0)) + alloc.quantity},
                )
            await ctx.records.update("orders", order["id"], {"status": "processing"})
            allocated.append(
                {"order_id": order["id"], "allocations": [a.model_dump(mode="json") for a in planned]}
            )
            ctx.add_value(float(order.get("total_amount", 0)))
            ctx.succeeded()
        return {"allocations": allocated, "shortages": [s.model_dump(mode="json") for s in shortages]}

    allocation = await ctx.require(2, "Allocate Inventory", "calculation", allocate)

    shipments: List[Dict[str, Any]] = []
    if config.create_shipments and allocation.data["allocations"]:

        async def ship() -> Dict[str, Any]:
            for alloc in allocation.data["allocations"]:
                order = await ctx.records.get("orders", alloc["order_id"])
                if order is None:
                    continue
                shipment = await ctx.records.create(
                    "shipments",
                    {
                        "type": "outbound",
                        "order_id": order["id"],
                        "status": "pending",
                        "to_address": order.get("shipping_address"),
                    },
                )
                await ctx.records.update("orders", order["id"], {"status": "shipped"})
                shipments.append({"id": shipment["id"], "order_id": order["id"]})
            return {"shipments": shipments}

        await ctx.step(3, "Create Shipments", "create_record", ship)

    for raw in allocation.data["shortages"]:
        shortage = Shortage.model_validate(raw)
        await ctx.handle_exception(
            "stockout",
            f"Cannot fulfill order {shortage.order_id}",
            f"Product {shortage.product_id} shortage: need {shortage.required}, have {shortage.available}",
            shortage.model_dump(mode="json"),
            "order",
            shortage.order_id,
        )

    return {
        "allocations": allocation.data["allocations"],
        "shipments": shipments,
        "shortages": allocation.data["shortages"],
    }
