"""Clock and timer seam for session expiry.

The store only talks to a ``Scheduler``; production code runs timers on the
asyncio loop, tests drive a manual clock.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def now(self) -> datetime: ...

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LoopScheduler:
    """Schedules on the running event loop.

    ``call_later`` must be invoked from a coroutine or callback running on
    that loop, which holds for every request handler and timer callback.
    """

    def now(self) -> datetime:
        return utc_now()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback, *args)
