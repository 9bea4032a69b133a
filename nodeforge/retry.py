"""Retry policy with exponential backoff.

Thin layer over tenacity so that every retried operation in nodeforge
(provider creates, remote task application) shares one configurable
policy and one log format.

Example:
    from nodeforge.retry import RetryPolicy, retrying

    async for attempt in retrying(RetryPolicy(attempts=3), on=ConnectionError, what="connect"):
        with attempt:
            await client.connect()
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from nodeforge.core.exceptions import ConfigurationError


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attributes:
        attempts: Maximum number of attempts, including the first one.
        base_delay: Delay before the first retry, in seconds. Doubles each retry.
        max_delay: Cap on any single delay, in seconds.
    """

    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ConfigurationError(f"attempts must be >= 1, got {self.attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry delays must be >= 0")


def _log_retry(what: str, policy: RetryPolicy) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        logger.warning(
            "Retry {n}/{total} for {what} after {kind}: {exc}. Waiting {delay:.1f}s...",
            n=state.attempt_number,
            total=policy.attempts,
            what=what,
            kind=type(exc).__name__,
            exc=exc,
            delay=delay,
        )

    return before_sleep


def retrying(
    policy: RetryPolicy,
    on: type[BaseException] | tuple[type[BaseException], ...],
    *,
    what: str,
) -> AsyncRetrying:
    """Build an AsyncRetrying that retries ``on`` exceptions per ``policy``.

    Any other exception, and the last retryable one, propagates unchanged.
    """
    return AsyncRetrying(
        retry=retry_if_exception_type(on),
        stop=stop_after_attempt(policy.attempts),
        wait=wait_exponential(multiplier=policy.base_delay, max=policy.max_delay),
        before_sleep=_log_retry(what, policy),
        reraise=True,
    )
