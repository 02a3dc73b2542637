"""
Clock / Timer Source
====================
Every delay the gateway takes goes through a Clock so that tests can run
the full confirmation schedule in virtual time.

Cancelling the task that is awaiting ``after()`` disposes of the wait.
"""
import asyncio
import time


class Clock:
    """Abstract delay scheduler."""

    async def after(self, duration: float) -> None:
        """Complete once ``duration`` seconds have elapsed."""
        raise NotImplementedError

    def now(self) -> float:
        """Current wall-clock time as a UNIX timestamp."""
        raise NotImplementedError


class AsyncioClock(Clock):
    """Real clock backed by the running event loop."""

    async def after(self, duration: float) -> None:
        if duration > 0:
            await asyncio.sleep(duration)
        else:
            # Still yield so a zero wait remains a suspension point
            await asyncio.sleep(0)

    def now(self) -> float:
        return time.time()
