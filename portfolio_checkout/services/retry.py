import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, Tuple, Type, TypeVar

from ..errors import CheckoutCancelled

T = TypeVar("T")


class Clock(ABC):
    @abstractmethod
    def now(self) -> float:
        ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 2.0
    backoff: float = 1.5
    max_delay: float = 5.0
    # wall-clock budget measured from the first attempt
    ceiling: float = 60.0


@dataclass
class RetryOutcome(Generic[T]):
    value: Optional[T]
    attempts: int
    # gave up while the last result still asked for a retry
    exhausted: bool
    elapsed: float


async def retry(
    fn: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    should_retry: Callable[[T], bool],
    clock: Clock,
    retry_on: Tuple[Type[BaseException], ...] = (),
    is_cancelled: Optional[Callable[[], bool]] = None,
    on_retry: Optional[Callable[[int, float, Optional[T], Optional[BaseException]], None]] = None,
) -> RetryOutcome[T]:
    """Call ``fn(attempt)`` until ``should_retry`` is false or the policy runs out.

    Delays grow by ``policy.backoff`` up to ``policy.max_delay`` and are trimmed so
    the loop never sleeps past ``policy.ceiling``. Exceptions listed in
    ``retry_on`` are retried like a retryable result; if the last attempt
    raised, that exception propagates. ``is_cancelled`` is checked before
    every attempt and raises ``CheckoutCancelled``.
    """
    start = clock.now()
    delay = policy.initial_delay
    attempt = 0
    while True:
        if is_cancelled is not None and is_cancelled():
            raise CheckoutCancelled()
        attempt += 1
        value: Optional[T] = None
        error: Optional[BaseException] = None
        try:
            value = await fn(attempt)
        except retry_on as exc:
            error = exc

        if error is None and not should_retry(value):
            return RetryOutcome(value=value, attempts=attempt, exhausted=False, elapsed=clock.now() - start)

        elapsed = clock.now() - start
        remaining = policy.ceiling - elapsed
        if attempt >= policy.max_attempts or remaining <= 0:
            if error is not None:
                raise error
            return RetryOutcome(value=value, attempts=attempt, exhausted=True, elapsed=elapsed)

        wait = min(delay, remaining)
        if on_retry is not None:
            on_retry(attempt, wait, value, error)
        await clock.sleep(wait)
        delay = min(delay * policy.backoff, policy.max_delay)
