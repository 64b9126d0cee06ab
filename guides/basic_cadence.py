"""Simple example showing a cadence being activated and a lead enrolled."""

import asyncio

from cadencekit import (
    ActionConfig,
    CadenceGraph,
    CadenceService,
    DelayConfig,
    LeadProgress,
    StepNode,
    StepType,
    get_repository,
)


async def main():
    """Basic cadence example."""
    repository = get_repository()
    service = CadenceService(repository)

    # Define a linear cadence: message, wait, follow-up email
    steps = [
        StepNode(
            id="intro",
            cadence_id="welcome",
            config=ActionConfig(
                step_type=StepType.LINKEDIN_MESSAGE,
                message_template="Hi {{first_name}}, great to connect!",
            ),
        ),
        StepNode(
            id="wait",
            cadence_id="welcome",
            order_in_day=1,
            config=DelayConfig(duration=3),
        ),
        StepNode(
            id="follow-up",
            cadence_id="welcome",
            day_offset=3,
            config=ActionConfig(
                step_type=StepType.SEND_EMAIL,
                subject="Following up",
                body_template="Hi {{first_name}}, any thoughts on {{company}}?",
            ),
        ),
    ]
    graph = CadenceGraph.from_linear_steps("welcome", "owner-1", steps, name="Welcome")
    await service.save(graph)
    await service.activate("owner-1", "welcome")

    # Enroll a lead; the first step is scheduled right away
    progress = LeadProgress(repository)
    result = await progress.enroll(
        "owner-1",
        "welcome",
        "lead-42",
        lead={"first_name": "Ada", "company": "Analytical Engines"},
        timezone="Europe/London",
    )

    print(f"✅ Lead enrolled: {result.enrollment.id}")
    print(f"📋 Next step: {result.entry.step_id} at {result.entry.scheduled_at.isoformat()}")


if __name__ == "__main__":
    asyncio.run(main())
