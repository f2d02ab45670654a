from __future__ import annotations

import asyncio
from typing import Protocol


class RetryTimer(Protocol):
    async def wait(self, delay_seconds: float) -> bool:
        """Sleep for ``delay_seconds``; return False if cancelled before firing."""

    def cancel(self) -> None:
        """Cancel the pending wait, if any."""


class AsyncioRetryTimer:
    """One pending delay at a time, backed by ``loop.call_later``."""

    def __init__(self) -> None:
        self._handle: asyncio.TimerHandle | None = None
        self._waiter: asyncio.Future[bool] | None = None

    @property
    def pending(self) -> bool:
        return self._waiter is not None and not self._waiter.done()

    async def wait(self, delay_seconds: float) -> bool:
        self.cancel()
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[bool] = loop.create_future()
        self._waiter = waiter
        self._handle = loop.call_later(max(delay_seconds, 0.0), self._fire, waiter)
        try:
            return await waiter
        finally:
            if self._waiter is waiter:
                if self._handle is not None:
                    self._handle.cancel()
                self._waiter = None
                self._handle = None

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(False)
        self._waiter = None

    @staticmethod
    def _fire(waiter: asyncio.Future[bool]) -> None:
        if not waiter.done():
            waiter.set_result(True)
