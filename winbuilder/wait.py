"""Cancellable polling utilities.

Every blocking wait in a build goes through ``poll_until``: a fixed interval,
a hard timeout, and an optional cancellation event shared by the whole build.
Setting the event wakes any in-progress pause immediately.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from winbuilder.core.exceptions import BuildCancelled, PollTimeout


async def pause(interval: float, cancel: asyncio.Event | None = None) -> None:
    """Sleep for ``interval`` seconds, or until ``cancel`` is set.

    Raises:
        BuildCancelled: If the cancellation event is (or becomes) set.
    """
    if cancel is None:
        await asyncio.sleep(interval)
        return
    if cancel.is_set():
        raise BuildCancelled("Build cancelled")
    try:
        await asyncio.wait_for(cancel.wait(), timeout=interval)
    except TimeoutError:
        return
    raise BuildCancelled("Build cancelled")


T = TypeVar("T")


async def poll_until(
    poll_fn: Callable[[], Awaitable[T | None]],
    ready_check: Callable[[T], bool],
    *,
    terminal_check: Callable[[T], bool] | None = None,
    timeout: float,
    interval: float,
    cancel: asyncio.Event | None = None,
    description: str = "resource",
) -> T:
    """Poll until poll_fn returns something that passes ready_check.

    Args:
        poll_fn: Async function that reads the current state. May return None
            when nothing useful was observed yet.
        ready_check: Returns True when the polled value is the awaited one.
        terminal_check: Optional check for a state that can never become ready.
        timeout: Maximum time to wait in seconds.
        interval: Fixed time between polls in seconds.
        cancel: Build-wide cancellation event.
        description: Description for error messages.

    Returns:
        The first polled value passing ready_check.

    Raises:
        PollTimeout: If the timeout elapses first.
        BuildCancelled: If cancel is set while waiting.
        RuntimeError: If terminal_check matches.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        if cancel is not None and cancel.is_set():
            raise BuildCancelled(f"Build cancelled while waiting for {description}")

        result = await poll_fn()

        if result is not None:
            if ready_check(result):
                return result

            if terminal_check is not None and terminal_check(result):
                raise RuntimeError(f"{description} reached terminal state: {result}")

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise PollTimeout(f"Timeout waiting for {description} after {timeout:.1f}s")

        await pause(min(interval, remaining), cancel)
