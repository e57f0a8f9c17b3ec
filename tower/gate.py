"""Single-flight gate for the Start and Restart lifecycle operations."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Run a coroutine at most once concurrently, then rearm.

    The first caller executes ``fn``. Callers arriving while it is in
    flight wait for the same outcome (result or raised error) without
    executing ``fn`` again. Once the run finishes the gate returns to idle
    and the next call executes ``fn`` afresh.
    """

    def __init__(self) -> None:
        self._inflight: asyncio.Future[T] | None = None
        self.runs = 0

    @property
    def engaged(self) -> bool:
        return self._inflight is not None

    async def do(self, fn: Callable[[], Awaitable[T]]) -> T:
        if self._inflight is not None:
            return await asyncio.shield(self._inflight)

        fut: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._inflight = fut
        self.runs += 1
        try:
            result = await fn()
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as exc:
            fut.set_exception(exc)
            # Waiters get the error from the future; mark it retrieved so
            # a lone caller doesn't trigger "exception never retrieved".
            fut.exception()
            raise
        else:
            fut.set_result(result)
            return result
        finally:
            self._inflight = None
