"""Logistics processors: stock transfers between warehouses, freight sourcing and shipment tracking."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .base import ProcessorConfig, processor

if TYPE_CHECKING:
    from ..runtime import ExecutionContext

logger = logging.getLogger(__name__)


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# ----------------------------------------------------------------------
# Inventory transfer


class TransferConfig(ProcessorConfig):
    excess_factor: float = Field(default=2.0, gt=0)


class StockLocation(BaseModel):
    inventory_id: Any
    warehouse_id: Any
    available: float
    reorder_level: float


class TransferDecision(BaseModel):
    from_warehouse_id: Any
    to_warehouse_id: Any
    quantity: float = Field(gt=0)
    reasoning: str = ""


def _default_transfer(excess: List[StockLocation], shortage: List[StockLocation]) -> Dict[str, Any]:
    source = max(excess, key=lambda loc: loc.available - loc.reorder_level)
    target = max(shortage, key=lambda loc: loc.reorder_level - loc.available)
    quantity = min(source.available - source.reorder_level, target.reorder_level - target.available)
    return {
        "from_warehouse_id": source.warehouse_id,
        "to_warehouse_id": target.warehouse_id,
        "quantity": quantity,
        "reasoning": "Move surplus from the fullest location to the emptiest one",
    }


@processor("inventory_transfer", TransferConfig)
async def inventory_transfer(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Rebalance stock between warehouses where one has surplus and another runs short."""
    config: TransferConfig = ctx.config

    async def analyze() -> Dict[str, Any]:
        active = {p["id"] for p in await ctx.records.query("products") if p.get("status", "active") == "active"}
        closed = {w["id"] for w in await ctx.records.query("warehouses") if w.get("status", "active") != "active"}
        by_product: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for inv in await ctx.records.query("inventory"):
            if inv.get("product_id") not in active or inv.get("warehouse_id") is None:
                continue
            if inv["warehouse_id"] in closed:
                continue
            location = StockLocation(
                inventory_id=inv["id"],
                warehouse_id=inv["warehouse_id"],
                available=float(inv.get("quantity", 0)) - float(inv.get("reserved_quantity", 0)),
                reorder_level=float(inv.get("reorder_level", 0)),
            )
            by_product[str(inv["product_id"])].append(
                {"product_id": inv["product_id"], **location.model_dump(mode="json")}
            )
        return {"distribution": dict(by_product)}

    analysis = await ctx.require(1, "Analyze Inventory Distribution", "data_fetch", analyze)

    async def identify() -> Dict[str, Any]:
        transfers = []
        for rows in analysis.data["distribution"].values():
            if len(rows) < 2:
                continue
            product_id = rows[0]["product_id"]
            locations = [StockLocation.model_validate(r) for r in rows]
            excess = [loc for loc in locations if loc.available > loc.reorder_level * config.excess_factor]
            shortage = [loc for loc in locations if loc.available < loc.reorder_level]
            if not excess or not shortage:
                continue
            ctx.processed()
            decision = await ctx.decide(
                "allocation_decision",
                f"Determine the optimal inventory transfer for product #{product_id}:\n"
                f"Locations with excess: {[(e.warehouse_id, e.available) for e in excess]}\n"
                f"Locations with shortage: "
                f"{[(s.warehouse_id, s.available, s.reorder_level) for s in shortage]}\n\n"
                "Recommend the transfer quantity and the from/to warehouses.",
                output_shape=TransferDecision,
                default=_default_transfer(excess, shortage),
            )
            choice = TransferDecision.model_validate(decision.choice)
            if choice.from_warehouse_id not in {e.warehouse_id for e in excess} or choice.to_warehouse_id not in {
                s.warehouse_id for s in shortage
            }:
                logger.warning(f"Ignoring transfer for product {product_id}: warehouses outside the candidates")
                ctx.failed()
                continue
            transfers.append({"product_id": product_id, **choice.model_dump(mode="json")})
        return {"transfers": transfers}

    identified = await ctx.require(2, "Identify Transfer Opportunities", "ai_analysis", identify)
    transfers = identified.data["transfers"]
    if not transfers:
        return {"transfers": [], "message": "No transfers needed"}

    async def create() -> Dict[str, Any]:
        created = []
        for transfer in transfers:
            number = f"TRF-{ctx.run.run_number}-{transfer['product_id']}"
            record = await ctx.records.create(
                "inventory_transfers",
                {
                    "transfer_number": number,
                    "from_warehouse_id": transfer["from_warehouse_id"],
                    "to_warehouse_id": transfer["to_warehouse_id"],
                    "status": "pending",
                    "requested_date": ctx.now().isoformat(),
                    "items": [{"product_id": transfer["product_id"], "requested_quantity": transfer["quantity"]}],
                    "notes": f"Auto-generated transfer: {transfer['reasoning']}",
                    "run_id": ctx.run.id,
                },
            )
            created.append({"id": record["id"], "transfer_number": number, **transfer})
            ctx.succeeded()
        return {"transfers": created}

    created = await ctx.require(3, "Create Transfer Orders", "create_record", create)
    return created.data


# ----------------------------------------------------------------------
# Freight procurement


class FreightConfig(ProcessorConfig):
    carriers_per_rfq: int = Field(default=3, ge=1)


class CarrierSelection(BaseModel):
    selected_carrier_ids: List[Any] = Field(min_length=1)
    reasoning: str = ""


@processor("freight_procurement", FreightConfig)
async def freight_procurement(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Pick carriers for draft freight RFQs and send them the request for quotes."""
    config: FreightConfig = ctx.config

    async def fetch_rfqs() -> Dict[str, Any]:
        return {"rfqs": await ctx.records.query("freight_rfqs", lambda r: r.get("status") == "draft")}

    fetched = await ctx.require(1, "Fetch Pending RFQs", "data_fetch", fetch_rfqs)
    rfqs = fetched.data["rfqs"]
    if not rfqs:
        return {"sent_rfqs": []}
    ctx.processed(len(rfqs))

    async def fetch_carriers() -> Dict[str, Any]:
        carriers = await ctx.records.query("freight_carriers", lambda c: c.get("status", "active") == "active")
        carriers.sort(key=lambda c: float(c.get("rating") or 0), reverse=True)
        return {"carriers": carriers}

    carriers = (await ctx.require(2, "Fetch Eligible Carriers", "data_fetch", fetch_carriers)).data["carriers"]
    if not carriers:
        ctx.failed(len(rfqs))
        return {"sent_rfqs": [], "message": "No active carriers"}
    by_id = {c["id"]: c for c in carriers}

    async def send() -> Dict[str, Any]:
        sent = []
        for rfq in rfqs:
            default_ids = [c["id"] for c in carriers[: config.carriers_per_rfq]]
            decision = await ctx.decide(
                "vendor_selection",
                "Select carriers for freight RFQ:\n"
                f"Origin: {rfq.get('origin_city')}, {rfq.get('origin_country')}\n"
                f"Destination: {rfq.get('destination_city')}, {rfq.get('destination_country')}\n"
                f"Cargo type: {rfq.get('cargo_type')}\n"
                f"Weight: {rfq.get('weight')} {rfq.get('weight_unit', 'kg')}\n\n"
                f"Available carriers: {[(c['id'], c.get('name'), c.get('rating')) for c in carriers]}\n\n"
                f"Select the top {config.carriers_per_rfq} carriers to request quotes from.",
                output_shape=CarrierSelection,
                default={"selected_carrier_ids": default_ids, "reasoning": "Highest rated carriers"},
            )
            chosen = [i for i in CarrierSelection.model_validate(decision.choice).selected_carrier_ids if i in by_id]
            chosen = chosen[: config.carriers_per_rfq] or default_ids

            number = rfq.get("rfq_number", rfq["id"])
            emailed = []
            for carrier_id in chosen:
                carrier = by_id[carrier_id]
                if carrier.get("email") and await ctx.send_email(
                    [carrier["email"]],
                    f"Request for freight quote {number}",
                    f"Please quote freight from {rfq.get('origin_city')} to {rfq.get('destination_city')} "
                    f"for {rfq.get('weight')} {rfq.get('weight_unit', 'kg')} of {rfq.get('cargo_type')}.",
                ):
                    emailed.append(carrier_id)
            await ctx.records.update("freight_rfqs", rfq["id"], {"status": "sent", "carrier_ids": chosen})
            sent.append({"rfq_id": rfq["id"], "carrier_ids": chosen, "emailed": emailed})
            ctx.succeeded()
        return {"sent_rfqs": sent}

    result = await ctx.require(3, "Send RFQs to Carriers", "send_email", send)
    return result.data


# ----------------------------------------------------------------------
# Shipment tracking


@processor("shipment_tracking")
async def shipment_tracking(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Flag in-transit shipments that are past their delivery date."""

    async def fetch_shipments() -> Dict[str, Any]:
        return {"shipments": await ctx.records.query("shipments", lambda s: s.get("status") == "in_transit")}

    fetched = await ctx.require(1, "Fetch In-Transit Shipments", "data_fetch", fetch_shipments)
    shipments = fetched.data["shipments"]
    if not shipments:
        return {"updates": [], "delays": []}
    ctx.processed(len(shipments))

    async def check() -> Dict[str, Any]:
        now = ctx.now()
        updates, delays = [], []
        for shipment in shipments:
            expected = _as_datetime(shipment.get("delivery_date"))
            delayed = expected is not None and expected < now
            number = shipment.get("shipment_number", shipment["id"])
            if delayed:
                await ctx.records.update("shipments", shipment["id"], {"status": "delayed"})
                await ctx.report_exception(
                    "delivery_delay",
                    f"Shipment {number} is delayed",
                    f"Expected delivery: {expected.isoformat()}, still in transit",
                    {"shipment_id": shipment["id"], "tracking_number": shipment.get("tracking_number")},
                    "shipment",
                    shipment["id"],
                )
                delays.append(shipment["id"])
                ctx.failed()
            else:
                ctx.succeeded()
            updates.append(
                {
                    "id": shipment["id"],
                    "shipment_number": number,
                    "status": "delayed" if delayed else "in_transit",
                    "checked": now.isoformat(),
                }
            )
        return {"updates": updates, "delays": delays}

    checked = await ctx.require(2, "Check Delivery Status", "api_call", check)
    if checked.data["delays"]:
        await ctx.emit(
            "shipment_delayed",
            "warning",
            {"delayed_count": len(checked.data["delays"])},
            "shipment",
        )
    return checked.data
