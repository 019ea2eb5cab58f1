"""Reorder check that parks on an approval ticket, then resumes once approved."""

import asyncio

from opsflow import InMemoryRecordStore, create_app
from opsflow.catalog import seed_defaults
from opsflow.config import OpsflowConfig


async def main():
    records = InMemoryRecordStore(
        {
            "products": [
                {"id": 1, "name": "Widget", "status": "active", "cost_price": 230, "preferred_vendor_id": 7}
            ],
            "inventory": [
                {
                    "id": 10,
                    "product_id": 1,
                    "quantity": 4,
                    "reserved_quantity": 0,
                    "reorder_level": 10,
                    "reorder_quantity": 10,
                }
            ],
            "vendors": [{"id": 7, "name": "Acme", "email": "orders@acme.test"}],
        }
    )
    app = await create_app(OpsflowConfig(), records=records)
    await seed_defaults(app.engine)

    definition = await app.engine.find_definition("inventory_reorder")
    result = await app.engine.start_workflow(definition.id)
    print(f"Run {result.run_id}: {result.status}")

    for ticket in await app.engine.approvals.list_open(role="ops"):
        print(f"Approving {ticket.title} ({ticket.amount:.2f})")
        await app.engine.approvals.process_approval_decision(ticket.id, True, "guide-user")

    run = await app.repository.get_run(result.run_id)
    print(f"Run {run.run_number} is now {run.status}")
    print(await records.query("purchase_orders"))
    await app.close()


if __name__ == "__main__":
    asyncio.run(main())
