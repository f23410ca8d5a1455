"""
Timeout race: run an operation against a deadline, first result wins.

waitFor(withResolve, timeout, onTimeout)
    withResolve(resolve) starts the operation and arranges for resolve(value) to be called
    when it completes. It may return a coroutine, which is run as a task and cancelled once
    the race is decided. Whichever of {resolve, timer} happens first decides the outcome;
    resolve() calls after that are ignored, so late responses never leak into a later race.

Property of Uncompromising Sensors LLC.
"""

# Imports
import asyncio, inspect
from typing import Any, Callable, Optional


Resolve = Callable[..., None]


async def waitFor(withResolve: Callable[[Resolve], Any], timeout: float,
                  onTimeout: Callable[[], Any]) -> Any:
    """Race withResolve against a timer of `timeout` seconds; on expiry return onTimeout() (which may raise)."""

    loop = asyncio.get_running_loop()
    result = loop.create_future()

    def resolve(value: Any = None) -> None:
        if not result.done():
            result.set_result(value)

    def _propagate(task: asyncio.Task) -> None:
        if task.cancelled() or result.done():
            return
        exc = task.exception()
        if exc is not None:
            result.set_exception(exc)

    task: Optional[asyncio.Task] = None
    starter = withResolve(resolve)
    if inspect.isawaitable(starter):
        task = asyncio.ensure_future(starter)
        task.add_done_callback(_propagate)

    try:
        return await asyncio.wait_for(result, timeout)
    except asyncio.TimeoutError:
        if result.done() and not result.cancelled():
            return result.result()
        return onTimeout()
    finally:
        if task is not None and not task.done():
            task.cancel()


class Generation:
    """Monotonic counter used to tag in-flight requests."""

    def __init__(self):
        self._value = 0

    def next(self) -> int:
        self._value += 1
        return self._value
