"""Time source used by the queue scheduler and the record cache."""

import asyncio
from datetime import datetime


class Clock:
    """Wall clock backed by the running event loop.

    Tests substitute a subclass with a controllable ``now``.
    """

    def now(self) -> datetime:
        return datetime.now()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
