"""Bounded retry with exponential backoff for transient failures."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from ..domain.exceptions import ValidationError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[], Union[T, Awaitable[T]]]
SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """How many times and how long to wait between attempts.

    ``max_retries`` counts retries, so an operation runs at most
    ``max_retries + 1`` times.
    """

    max_retries: int = 3
    retry_delay: float = 1.0
    exponential_backoff: bool = True
    max_delay: float = 10.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValidationError("max_retries must be zero or positive")
        if self.retry_delay < 0 or self.max_delay < 0:
            raise ValidationError("retry delays must be zero or positive")

    def wait_strategy(self):
        if not self.exponential_backoff:
            return wait_fixed(min(self.retry_delay, self.max_delay))
        return wait_exponential(multiplier=self.retry_delay, min=0, max=self.max_delay)


class RetryExecutor:
    """Runs an operation under a RetryPolicy.

    Errors classified as non-retryable by ``is_retryable`` propagate after the
    first attempt; otherwise the last error propagates once the policy is
    exhausted.
    """

    def __init__(
        self,
        default_policy: Optional[RetryPolicy] = None,
        *,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        self.default_policy = default_policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep

    async def execute(self, operation: Operation, policy: Optional[RetryPolicy] = None) -> Any:
        policy = policy or self.default_policy
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_retries + 1),
            wait=policy.wait_strategy(),
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
        return result


async def retry_operation(
    operation: Operation,
    *,
    sleep: Optional[SleepFunc] = None,
    **policy: Any,
) -> Any:
    """Run ``operation`` once under a policy built from keyword arguments."""
    return await RetryExecutor(RetryPolicy(**policy), sleep=sleep).execute(operation)
