"""Bounded poll-until helper shared by readiness probes, engine pings and container waits."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from sitebox.errors import OperationCancelled, PollTimeout

logger = structlog.get_logger()

T = TypeVar("T")


async def poll_until(
    check: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    interval: float,
    initial_delay: float = 0.0,
    description: str = "condition",
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    cancel_event: asyncio.Event | None = None,
) -> T:
    """Call ``check`` until it returns a truthy value.

    Exceptions listed in ``retry_on`` count as a failed attempt; anything else
    propagates. ``cancel_event`` is checked before every attempt and while
    sleeping between attempts.

    Args:
        check: Async callable returning a truthy value when done
        max_attempts: Maximum number of attempts (at least 1)
        interval: Delay between attempts in seconds
        initial_delay: Delay before the first attempt
        description: Label used in logs and the timeout message
        retry_on: Exception types treated as "not yet"
        cancel_event: When set, polling stops with OperationCancelled

    Returns:
        The first truthy value returned by ``check``

    Raises:
        PollTimeout: If attempts are exhausted (last error attached)
        OperationCancelled: If ``cancel_event`` is set
    """
    max_attempts = max(1, max_attempts)
    last_error: BaseException | None = None

    if initial_delay > 0:
        await _sleep(initial_delay, cancel_event, description)

    for attempt in range(1, max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled(f"Cancelled while waiting for {description}", step=description)

        try:
            result = await check()
            if result:
                logger.debug("poll_succeeded", description=description, attempts=attempt)
                return result
            last_error = None
        except retry_on as e:
            last_error = e
            logger.debug(
                "poll_attempt_failed",
                description=description,
                attempt=attempt,
                error=str(e),
                error_type=type(e).__name__,
            )

        if attempt < max_attempts:
            await _sleep(interval, cancel_event, description)

    raise PollTimeout(
        f"{description} not satisfied after {max_attempts} attempts",
        attempts=max_attempts,
        last_error=last_error,
        step=description,
    )


async def _sleep(delay: float, cancel_event: asyncio.Event | None, description: str) -> None:
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except TimeoutError:
        return
    raise OperationCancelled(f"Cancelled while waiting for {description}", step=description)
