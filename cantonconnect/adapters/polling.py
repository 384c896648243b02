"""
Bounded status polling for wallet APIs.

Remote-signer style wallets answer a request with an id and expect the
caller to poll until the user approves or denies it. ``poll_until`` is the
single implementation of that loop: fixed interval, hard deadline,
``OperationTimeoutError`` on exhaustion.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..core.errors import OperationTimeoutError

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    is_done: Callable[[T], bool],
    *,
    interval_seconds: float = 2.0,
    timeout_seconds: float = 60.0,
    operation: str = "poll",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """
    Call ``fetch`` every ``interval_seconds`` until ``is_done`` accepts the result.

    Errors raised by ``fetch`` propagate immediately; only the deadline is
    converted into an error.
    """
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")
    if timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be positive")

    deadline = clock() + timeout_seconds
    attempt = 0
    last: Optional[T] = None

    while True:
        attempt += 1
        last = await fetch()
        if is_done(last):
            logger.debug(f"{operation}: done after {attempt} attempt(s)")
            return last

        remaining = deadline - clock()
        if remaining <= 0:
            break
        await sleep(min(interval_seconds, remaining))
        if clock() >= deadline:
            break

    logger.info(f"{operation}: gave up after {attempt} attempt(s), last={last!r}")
    raise OperationTimeoutError(operation, timeout_seconds)
