"""Run the orchestrator for a few ticks, feeding it an operational event."""

import asyncio

from opsflow import create_app
from opsflow.catalog import seed_defaults
from opsflow.config import OpsflowConfig


async def main():
    config = OpsflowConfig()
    config.orchestrator.tick_interval_seconds = 1
    app = await create_app(config)
    await seed_defaults(app.engine)

    await app.engine.events.emit("order_confirmed", "info", "guide", "order", "1")

    await app.orchestrator.run_forever(lifespan=3)

    status = await app.orchestrator.get_system_status()
    print(status.model_dump_json(indent=2))
    await app.close()


if __name__ == "__main__":
    asyncio.run(main())
