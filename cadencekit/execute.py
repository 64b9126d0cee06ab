"""Executor harness: run due Action entries and report their outcome."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Literal, Optional

from pydantic import BaseModel, Field

from .contracts import AdvanceResult, DueEntryMessage, ExecutionReport
from .dispatch import topic_for
from .progress import LeadProgress
from .templating import render_for_lead
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class StepRun(BaseModel):
    """What a step runner did with one message."""

    outcome: Literal["sent", "skipped", "failed"] = "sent"
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


StepRunner = Callable[[DueEntryMessage, Optional[str]], Awaitable[Optional[StepRun]]]


class ScheduleExecutor:
    """Consumes one channel's topic and feeds outcomes back into progress.

    ``runner`` receives the message and the rendered template text and
    performs the delivery. Returning ``None`` means sent. An exception is
    recorded as a failed step; retrying is the runner's business.
    """

    def __init__(
        self,
        transport: BaseTransport,
        progress: LeadProgress,
        channel: str,
        runner: StepRunner,
        keep_missing_placeholders: bool = True,
    ) -> None:
        self._transport = transport
        self._progress = progress
        self._channel = channel
        self._runner = runner
        self._keep_missing = keep_missing_placeholders

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for due entries on this executor's channel.

        A message whose handling raises is dropped; its entry stays
        ``scheduled`` and the dispatcher hands it out again once the claim
        lease runs out.
        """
        async for raw_message, message in self._transport.subscribe(
            topic_for(self._channel), lifespan=lifespan
        ):
            try:
                await self.handle(message)
            except Exception:
                logger.exception(f"Handling entry {message.entry.id} failed")
                await self._transport.nack(raw_message)
                continue
            await self._transport.ack(raw_message)

    async def handle(self, message: DueEntryMessage) -> AdvanceResult:
        entry = message.entry
        rendered = render_for_lead(message.template, message.lead, self._keep_missing)
        if rendered is not None:
            await self._progress.record_outcome(
                ExecutionReport(
                    entry_id=entry.id,
                    owner_id=entry.owner_id,
                    outcome="generated",
                    rendered_content=rendered,
                )
            )

        try:
            run = await self._runner(message, rendered) or StepRun()
        except Exception as e:
            logger.exception(
                f"Runner failed on entry {entry.id} (step {entry.step_id}, lead {entry.lead_id})"
            )
            run = StepRun(outcome="failed", error=str(e) or type(e).__name__)

        logger.info(f"Entry {entry.id} on {self._channel}: {run.outcome}")
        return await self._progress.record_outcome(
            ExecutionReport(
                entry_id=entry.id,
                owner_id=entry.owner_id,
                outcome=run.outcome,
                rendered_content=rendered,
                error=run.error,
                result=run.result or None,
            )
        )
