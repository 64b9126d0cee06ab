"""Bounded-retry verification of eventually consistent external state.

The verifier runs a caller-supplied check immediately, then again after
each configured delay, until the check reports ready, reports a hard
error, the caller's session goes away, or the delays or the deadline run
out. The result is always returned as a :data:`ReadinessOutcome`; "not
ready yet" is an expected answer, not an exception.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Annotated, Any, Awaitable, Callable, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .config import ReadinessConfig, ReadinessProfile

logger = logging.getLogger(__name__)


class CheckStatus(str, Enum):
    READY = "ready"
    NOT_READY = "not_ready"
    HARD_ERROR = "hard_error"


class CheckResult(BaseModel):
    status: CheckStatus
    detail: Optional[str] = None
    data: dict = Field(default_factory=dict)


ReadinessCheck = Callable[[], Awaitable[Union[CheckResult, CheckStatus]]]
ActivityCallback = Callable[[], Union[bool, Awaitable[bool]]]


class ReadinessReady(BaseModel):
    kind: Literal["ready"] = "ready"
    attempts: int
    elapsed: float
    data: dict = Field(default_factory=dict)


class ReadinessTimeout(BaseModel):
    kind: Literal["timeout"] = "timeout"
    attempts: int
    elapsed: float
    detail: Optional[str] = None


class ReadinessHardError(BaseModel):
    kind: Literal["hard_error"] = "hard_error"
    attempts: int
    elapsed: float
    error: str


class ReadinessCancelled(BaseModel):
    kind: Literal["cancelled"] = "cancelled"
    attempts: int
    elapsed: float
    reason: str = "session no longer active"


ReadinessOutcome = Annotated[
    Union[ReadinessReady, ReadinessTimeout, ReadinessHardError, ReadinessCancelled],
    Field(discriminator="kind"),
]


class RetrySchedule(BaseModel):
    """Waits between checks plus a hard ceiling on total elapsed time.

    The first check is always immediate, so ``delays`` of length ``n``
    allows up to ``n + 1`` checks.
    """

    delays: List[float] = Field(default_factory=list)
    deadline: float

    @classmethod
    def from_profile(cls, profile: ReadinessProfile) -> "RetrySchedule":
        return cls(delays=list(profile.delays), deadline=profile.deadline)

    @classmethod
    def named(cls, name: str, config: Optional[ReadinessConfig] = None) -> "RetrySchedule":
        config = config or ReadinessConfig()
        try:
            return cls.from_profile(config.profiles[name])
        except KeyError:
            raise ValueError(f"Unknown readiness profile: {name}") from None


async def _still_active(is_active: Optional[ActivityCallback]) -> bool:
    if is_active is None:
        return True
    value = is_active()
    if inspect.isawaitable(value):
        value = await value
    return bool(value)


class ReadinessVerifier:
    """Poll ``check`` on a :class:`RetrySchedule`.

    ``clock`` and ``sleep`` default to :func:`time.monotonic` and
    :func:`asyncio.sleep`; tests inject fakes.
    """

    def __init__(
        self,
        schedule: RetrySchedule,
        check_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.schedule = schedule
        self.check_timeout = check_timeout
        self._clock = clock
        self._sleep = sleep

    async def _run_check(self, check: ReadinessCheck) -> CheckResult:
        try:
            if self.check_timeout is not None:
                raw = await asyncio.wait_for(check(), timeout=self.check_timeout)
            else:
                raw = await check()
        except asyncio.TimeoutError:
            return CheckResult(status=CheckStatus.NOT_READY, detail="check timed out")
        except Exception as exc:
            logger.warning(f"Readiness check raised {type(exc).__name__}: {exc}")
            return CheckResult(status=CheckStatus.HARD_ERROR, detail=str(exc))
        if isinstance(raw, CheckResult):
            return raw
        return CheckResult(status=CheckStatus(raw))

    async def verify(
        self, check: ReadinessCheck, is_active: Optional[ActivityCallback] = None
    ) -> ReadinessOutcome:
        started = self._clock()
        attempts = 0
        delays = self.schedule.delays

        def elapsed() -> float:
            return self._clock() - started

        for index in range(len(delays) + 1):
            if not await _still_active(is_active):
                logger.info(f"Readiness polling cancelled after {attempts} check(s)")
                return ReadinessCancelled(attempts=attempts, elapsed=elapsed())
            if index > 0 and elapsed() >= self.schedule.deadline:
                break

            attempts += 1
            result = await self._run_check(check)
            if result.status is CheckStatus.HARD_ERROR:
                logger.warning(
                    f"Readiness check failed hard on attempt {attempts}: {result.detail}"
                )
                return ReadinessHardError(
                    attempts=attempts,
                    elapsed=elapsed(),
                    error=result.detail or "hard error",
                )
            if result.status is CheckStatus.READY:
                # A result observed after the session ended must not be applied.
                if not await _still_active(is_active):
                    return ReadinessCancelled(attempts=attempts, elapsed=elapsed())
                logger.info(f"Readiness confirmed after {attempts} check(s)")
                return ReadinessReady(attempts=attempts, elapsed=elapsed(), data=result.data)

            if index == len(delays):
                break
            remaining = self.schedule.deadline - elapsed()
            if remaining <= 0:
                break
            logger.debug(
                f"Not ready on attempt {attempts}; retrying in {min(delays[index], remaining)}s"
            )
            await self._sleep(min(delays[index], remaining))

        logger.warning(f"Readiness not confirmed after {attempts} check(s)")
        return ReadinessTimeout(
            attempts=attempts,
            elapsed=elapsed(),
            detail=f"not ready after {attempts} check(s)",
        )
