"""Example running the schedule dispatcher against the configured backends."""

import asyncio
from datetime import timedelta

from cadencekit import (
    LeadProgress,
    ScheduleDispatcher,
    get_repository,
    get_transport,
    load_config,
)


async def main():
    config = load_config()
    repository = get_repository(config=config)
    transport = get_transport(config=config)
    await transport.connect()

    progress = LeadProgress(repository, config)
    lease = config.scheduling.claim_lease_seconds
    dispatcher = ScheduleDispatcher(
        repository,
        progress,
        transport,
        claim_lease=timedelta(seconds=lease) if lease is not None else None,
    )

    # Tick every 30 seconds until interrupted
    try:
        await dispatcher.run(interval=30.0)
    finally:
        await transport.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
