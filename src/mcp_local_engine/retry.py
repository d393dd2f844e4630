"""Bounded retry combinator."""
import asyncio
from typing import Awaitable, Callable, TypeVar

from mcp_local_engine.logging import get_logger
from mcp_local_engine.types import RetryPolicy

logger = get_logger(__name__)

T = TypeVar("T")


async def retry(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "operation",
) -> T:
    """Run operation until it succeeds or the policy runs out of attempts.

    The operation receives the 1-based attempt number. Any exception
    triggers another attempt; the last one is raised once attempts are
    exhausted. Deciding what to do with a result is left to the caller.
    """
    if policy.max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {policy.max_attempts}")

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation(attempt)
        except Exception as e:
            if attempt >= policy.max_attempts:
                logger.warning(
                    "retry_exhausted",
                    operation=description,
                    attempts=attempt,
                    error=str(e),
                )
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "retrying",
                operation=description,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=delay,
                error=str(e),
            )
            if delay > 0:
                await asyncio.sleep(delay)

    raise AssertionError("unreachable")
