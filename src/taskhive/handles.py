"""Completion handle: request now, resolve later, fail on deadline."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any


class CompletionHandle:
    """
    A future with a deadline and exactly-one resolution.

    The first of resolve / reject / deadline wins; later calls return False
    and change nothing. Settling cancels the deadline timer.

    Args:
        timeout_s: Seconds before ``on_timeout()`` is used to reject the handle.
            ``None`` disables the deadline.
        on_timeout: Factory for the exception raised on expiry.
        on_settle: Called once, synchronously, after the handle settles.
    """

    def __init__(
        self,
        timeout_s: float | None = None,
        on_timeout: Callable[[], BaseException] | None = None,
        on_settle: Callable[[CompletionHandle], None] | None = None,
    ) -> None:
        loop = asyncio.get_running_loop()
        self._future: asyncio.Future[Any] = loop.create_future()
        self._on_timeout = on_timeout or (lambda: TimeoutError("deadline exceeded"))
        self._on_settle = on_settle
        self._timer: asyncio.TimerHandle | None = None
        if timeout_s is not None:
            self._timer = loop.call_later(timeout_s, self._expire)

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def failed(self) -> bool:
        """Settled by rejection, deadline or cancellation."""
        if not self._future.done():
            return False
        return self._future.cancelled() or self._future.exception() is not None

    @property
    def has_timer(self) -> bool:
        return self._timer is not None

    def resolve(self, value: Any = None) -> bool:
        if self._future.done():
            return False
        self._future.set_result(value)
        self._settled()
        return True

    def reject(self, error: BaseException) -> bool:
        if self._future.done():
            return False
        self._future.set_exception(error)
        self._settled()
        return True

    def cancel(self) -> bool:
        if self._future.done():
            return False
        self._future.cancel()
        self._settled()
        return True

    def _expire(self) -> None:
        self._timer = None
        self.reject(self._on_timeout())

    def _settled(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        # rejected handles may never be awaited
        self._future.add_done_callback(_consume_exception)
        if self._on_settle is not None:
            self._on_settle(self)

    def __await__(self):
        return asyncio.shield(self._future).__await__()

    async def wait(self) -> Any:
        return await self


def _consume_exception(future: asyncio.Future[Any]) -> None:
    if not future.cancelled():
        future.exception()
