"""Procure-to-pay processors: purchase order conversion, invoice matching and payment."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .base import ProcessorConfig, processor

if TYPE_CHECKING:
    from ..runtime import ExecutionContext

logger = logging.getLogger(__name__)


class ProcurementConfig(ProcessorConfig):
    default_lead_time_days: int = Field(default=14, ge=0)
    send_to_vendors: bool = True


class VendorEmail(BaseModel):
    subject: str
    body: str


class CreatedOrder(BaseModel):
    id: Any
    po_number: str
    vendor_id: Any
    total: float


@processor("procurement", ProcurementConfig)
async def procurement(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Convert approved suggested POs into purchase orders and send them out."""
    config: ProcurementConfig = ctx.config

    async def fetch_approved() -> Dict[str, Any]:
        spos = await ctx.records.query("suggested_purchase_orders", lambda s: s.get("status") == "approved")
        return {"suggested_orders": spos}

    fetched = await ctx.require(1, "Fetch Approved Suggested POs", "data_fetch", fetch_approved)
    suggested = fetched.data["suggested_orders"]
    if not suggested:
        return {"purchase_orders": [], "sent": []}
    ctx.processed(len(suggested))

    async def convert() -> Dict[str, Any]:
        created: List[CreatedOrder] = []
        for spo in suggested:
            vendor = await ctx.records.get("vendors", spo["vendor_id"]) or {}
            lines = spo.get("lines", [])
            subtotal = sum(float(line.get("total_price", 0)) for line in lines)
            lead_time = int(vendor.get("lead_time_days") or config.default_lead_time_days)
            po_number = f"PO-{ctx.run.run_number}-{spo['id']}"
            po = await ctx.records.create(
                "purchase_orders",
                {
                    "po_number": po_number,
                    "vendor_id": spo["vendor_id"],
                    "status": "draft",
                    "order_date": ctx.now().isoformat(),
                    "expected_date": (ctx.now() + timedelta(days=lead_time)).isoformat(),
                    "lines": [
                        {
                            "raw_material_id": line.get("raw_material_id"),
                            "quantity": line.get("quantity"),
                            "unit_price": line.get("unit_price"),
                            "received_quantity": 0,
                        }
                        for line in lines
                    ],
                    "total_amount": subtotal,
                    "notes": f"Auto-generated from suggested PO {spo['id']}",
                },
            )
            await ctx.records.update(
                "suggested_purchase_orders", spo["id"], {"status": "converted", "converted_po_id": po["id"]}
            )
            created.append(CreatedOrder(id=po["id"], po_number=po_number, vendor_id=spo["vendor_id"], total=subtotal))
            ctx.add_value(subtotal)
            ctx.succeeded()
        return {"purchase_orders": [c.model_dump(mode="json") for c in created]}

    converted = await ctx.require(2, "Convert to Purchase Orders", "create_record", convert)
    created = [CreatedOrder.model_validate(c) for c in converted.data["purchase_orders"]]

    sent: List[Any] = []
    if config.send_to_vendors and created:

        async def send() -> Dict[str, Any]:
            for po in created:
                vendor = await ctx.records.get("vendors", po.vendor_id) or {}
                if not vendor.get("email"):
                    continue
                decision = await ctx.decide(
                    "vendor_email",
                    f'Generate a professional purchase order email to vendor "{vendor.get("name")}".\n'
                    f"PO Number: {po.po_number}\nTotal Amount: ${po.total:.2f}\n\n"
                    "Include standard terms and request confirmation.",
                    output_shape=VendorEmail,
                    default={
                        "subject": f"Purchase Order {po.po_number}",
                        "body": f"Please confirm purchase order {po.po_number} for ${po.total:.2f}.",
                    },
                )
                email = VendorEmail.model_validate(decision.choice)
                if await ctx.send_email([vendor["email"]], email.subject, email.body):
                    await ctx.records.update("purchase_orders", po.id, {"status": "sent"})
                    sent.append(po.id)
            return {"sent": sent}

        await ctx.step(3, "Send POs to Vendors", "send_email", send)

    await ctx.emit("po_sent", "info", {"po_count": len(sent)}, "purchase_order")
    return {"purchase_orders": [c.model_dump(mode="json") for c in created], "sent": sent}


class InvoiceMatchingConfig(ProcessorConfig):
    variance_tolerance_pct: float = Field(default=2.0, ge=0)
    matchable_po_statuses: List[str] = Field(default_factory=lambda: ["received"])


class InvoiceMatch(BaseModel):
    invoice_id: Any
    po_id: Any
    invoice_amount: float
    po_amount: float
    variance: float
    variance_pct: float


async def _matching_po(
    ctx: "ExecutionContext", invoice: Dict[str, Any], config: InvoiceMatchingConfig
) -> Optional[Dict[str, Any]]:
    if invoice.get("purchase_order_id") is not None:
        return await ctx.records.get("purchase_orders", invoice["purchase_order_id"])
    candidates = await ctx.records.query(
        "purchase_orders",
        lambda p: p.get("vendor_id") == invoice.get("vendor_id")
        and p.get("status") in config.matchable_po_statuses,
    )
    return candidates[0] if candidates else None


@processor("invoice_matching", InvoiceMatchingConfig)
async def invoice_matching(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Match vendor invoices to purchase orders and queue clean ones for payment."""
    config: InvoiceMatchingConfig = ctx.config

    async def fetch_invoices() -> Dict[str, Any]:
        return {"invoices": await ctx.records.query("invoices", lambda i: i.get("status") == "received")}

    fetched = await ctx.require(1, "Fetch Pending Invoices", "data_fetch", fetch_invoices)
    invoices = fetched.data["invoices"]
    if not invoices:
        return {"matched": [], "discrepancies": []}
    ctx.processed(len(invoices))

    async def match() -> Dict[str, Any]:
        matched: List[InvoiceMatch] = []
        discrepancies: List[InvoiceMatch] = []
        for invoice in invoices:
            number = invoice.get("invoice_number", invoice["id"])
            po = await _matching_po(ctx, invoice, config)
            if po is None:
                await ctx.handle_exception(
                    "documentation_missing",
                    f"No matching PO for invoice {number}",
                    "Cannot match invoice to any received purchase order",
                    {"invoice_id": invoice["id"]},
                    "invoice",
                    invoice["id"],
                )
                ctx.failed()
                continue

            invoice_amount = float(invoice.get("total_amount", 0))
            po_amount = float(po.get("total_amount", 0))
            variance = invoice_amount - po_amount
            variance_pct = (variance / po_amount * 100) if po_amount else 100.0
            result = InvoiceMatch(
                invoice_id=invoice["id"],
                po_id=po["id"],
                invoice_amount=invoice_amount,
                po_amount=po_amount,
                variance=variance,
                variance_pct=variance_pct,
            )
            if abs(variance_pct) <= config.variance_tolerance_pct:
                matched.append(result)
                ctx.add_value(invoice_amount)
                ctx.succeeded()
                continue

            discrepancies.append(result)
            outcome = await ctx.handle_exception(
                "price_variance",
                f"Invoice {number} price variance",
                f"Variance of ${abs(variance):.2f} ({abs(variance_pct):.1f}%) from PO "
                f"{po.get('po_number', po['id'])}",
                result.model_dump(mode="json"),
                "invoice",
                invoice["id"],
            )
            if outcome.resolved:
                matched.append(result)
                ctx.add_value(invoice_amount)
                ctx.succeeded()
            else:
                await ctx.records.update("invoices", invoice["id"], {"status": "on_hold"})
                ctx.failed()
        return {
            "matched": [m.model_dump(mode="json") for m in matched],
            "discrepancies": [d.model_dump(mode="json") for d in discrepancies],
        }

    matching = await ctx.require(2, "Match to Purchase Orders", "ai_analysis", match)

    async def queue() -> Dict[str, Any]:
        for m in matching.data["matched"]:
            await ctx.records.update("invoices", m["invoice_id"], {"status": "approved_for_payment"})
        return {"queued": len(matching.data["matched"])}

    await ctx.step(3, "Queue for Payment", "update_record", queue)
    return matching.data


# ----------------------------------------------------------------------
# Payment processing

RECORD_APPROVED_PAYMENTS = "record_approved_payments"


class PaymentConfig(ProcessorConfig):
    payment_method: str = "bank_transfer"
    approval_confidence: float = Field(default=90, ge=0, le=100)


class DuePayment(BaseModel):
    invoice_id: Any
    invoice_number: str
    vendor_id: Optional[Any] = None
    amount: float


def _is_due(invoice: Dict[str, Any], now) -> bool:
    due = invoice.get("due_date")
    if not due:
        return True
    return str(due)[:10] <= now.date().isoformat()


async def _pay(ctx: "ExecutionContext", payment: DuePayment, method: str) -> Dict[str, Any]:
    number = f"PAY-{ctx.run.run_number}-{payment.invoice_id}"
    record = await ctx.records.create(
        "payments",
        {
            "payment_number": number,
            "type": "made",
            "invoice_id": payment.invoice_id,
            "vendor_id": payment.vendor_id,
            "amount": payment.amount,
            "payment_method": method,
            "payment_date": ctx.now().isoformat(),
            "status": "completed",
            "run_id": ctx.run.id,
        },
    )
    await ctx.records.update("invoices", payment.invoice_id, {"status": "paid", "paid_amount": payment.amount})
    ctx.add_value(payment.amount)
    ctx.succeeded()
    return {"id": record["id"], "payment_number": number, "invoice_id": payment.invoice_id, "amount": payment.amount}


@processor("payment_processing", PaymentConfig)
async def payment_processing(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Pay invoices queued for payment once they are due, subject to approval."""
    config: PaymentConfig = ctx.config

    if ctx.resume_point == RECORD_APPROVED_PAYMENTS:
        return await _record_approved(ctx, config)

    async def fetch_due() -> Dict[str, Any]:
        now = ctx.now()
        invoices = await ctx.records.query(
            "invoices", lambda i: i.get("status") == "approved_for_payment" and _is_due(i, now)
        )
        return {
            "payments": [
                DuePayment(
                    invoice_id=i["id"],
                    invoice_number=str(i.get("invoice_number", i["id"])),
                    vendor_id=i.get("vendor_id"),
                    amount=float(i.get("total_amount", 0)),
                ).model_dump(mode="json")
                for i in invoices
            ]
        }

    fetched = await ctx.require(1, "Fetch Due Payments", "data_fetch", fetch_due)
    due = [DuePayment.model_validate(p) for p in fetched.data["payments"]]
    if not due:
        return {"processed": [], "pending_approval": []}
    ctx.processed(len(due))

    async def process() -> Dict[str, Any]:
        processed, pending = [], []
        for payment in due:
            outcome = await ctx.request_approval(
                "payment",
                f"Payment for Invoice {payment.invoice_number}",
                f"Pay ${payment.amount:,.2f} to vendor #{payment.vendor_id}",
                payment.amount,
                related_kind="invoice",
                related_id=payment.invoice_id,
                ai_reasoning="Invoice matched to PO and approved for payment",
                confidence=config.approval_confidence,
                payload=payment.model_dump(mode="json"),
                key=f"payment:{payment.invoice_id}",
            )
            if outcome.approved:
                processed.append(await _pay(ctx, payment, config.payment_method))
            else:
                pending.append({"invoice_id": payment.invoice_id, "amount": payment.amount})
        return {"processed": processed, "pending_approval": pending}

    result = await ctx.require(2, "Process Payments", "wait_approval", process)
    if ctx.has_pending_approvals:
        ctx.park(RECORD_APPROVED_PAYMENTS)
    return result.data


async def _record_approved(ctx: "ExecutionContext", config: PaymentConfig) -> Dict[str, Any]:
    tickets = [t for key, t in ctx.approvals.items() if key.startswith("payment:")]

    async def record() -> Dict[str, Any]:
        paid, held = [], []
        for ticket in tickets:
            payment = DuePayment.model_validate(ticket.payload)
            invoice = await ctx.records.get("invoices", payment.invoice_id) or {}
            if invoice.get("status") == "paid":
                continue
            if ticket.status == "approved":
                paid.append(await _pay(ctx, payment, config.payment_method))
            else:
                await ctx.records.update("invoices", payment.invoice_id, {"status": "on_hold"})
                held.append(payment.invoice_id)
                ctx.failed()
        return {"processed": paid, "rejected": held}

    result = await ctx.require(3, "Record Approved Payments", "create_record", record)
    return result.data
