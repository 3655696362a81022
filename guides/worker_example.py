"""Example showing how to run a JobWorker against Redis."""

import asyncio
import sys

from intentflow import AutomationEngine, JobWorker, get_transport


async def main():
    lifespan = float(sys.argv[1]) if len(sys.argv) > 1 else None

    transport = get_transport("redis")
    engine = AutomationEngine.from_config(inline=True)
    worker = JobWorker(transport, engine.processor)

    # Start worker
    await worker.start(lifespan=lifespan)


if __name__ == "__main__":
    asyncio.run(main())
