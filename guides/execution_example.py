"""Example showing how to run a ScheduleExecutor for one channel."""

import asyncio
import sys

from cadencekit import (
    LeadProgress,
    ScheduleExecutor,
    StepRun,
    get_repository,
    get_transport,
    load_config,
)


async def print_runner(message, rendered):
    """Stand-in delivery: print instead of calling a provider."""
    print(f"📨 {message.entry.channel} -> {message.entry.lead_id}: {rendered}")
    return StepRun(result={"delivered_by": "print_runner"})


async def main():
    channel = sys.argv[1] if len(sys.argv) > 1 else "email"

    config = load_config()
    transport = get_transport(config=config)
    await transport.connect()
    progress = LeadProgress(get_repository(config=config), config)
    executor = ScheduleExecutor(transport, progress, channel, print_runner)

    # Start executor
    await executor.start()


if __name__ == "__main__":
    asyncio.run(main())
