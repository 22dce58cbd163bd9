"""Exponential backoff for transient RPC failures."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from ..errors import TransientRpcError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    retry_on: tuple[type[BaseException], ...] = (TransientRpcError,),
) -> T:
    """
    Call ``fn`` until it succeeds, sleeping base_delay * 2**attempt between tries.

    Only exceptions in ``retry_on`` are retried; anything else propagates
    immediately. The last failure is re-raised once retries are exhausted.

    Args:
        fn: Zero-argument coroutine factory
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry in seconds
        max_delay: Upper bound for a single delay
        retry_on: Exception types considered transient
    """
    for attempt in range(max_retries + 1):
        try:
            return await fn()
        except retry_on as e:
            if attempt == max_retries:
                raise

            delay = min(base_delay * (2 ** attempt), max_delay)
            logger.warning(
                f"Attempt {attempt + 1}/{max_retries + 1} failed, retrying in {delay:.1f}s: {e}"
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")
