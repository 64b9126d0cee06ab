"""Queue seam between the scheduler tick and channel executors."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import DueEntryMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Carries :class:`DueEntryMessage` objects on one topic per channel.

    Delivery is at least once. Duplicates are harmless because the
    state machine ignores reports for steps that are already terminal.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: DueEntryMessage) -> None:
        """Queue ``message`` for the executors of ``topic``."""

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, DueEntryMessage]]:
        """Yield ``(raw, message)`` pairs until ``lifespan`` seconds pass (forever if None)."""

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a delivered message as handled."""

    async def nack(self, raw_message: RawMessageT) -> None:
        """Drop a message that could not be handled.

        Its entry stays claimed until the dispatcher's claim lease expires,
        so the tick republishes it instead of the queue.
        """
        await self.ack(raw_message)
