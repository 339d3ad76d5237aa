"""Time source used by the scheduler, checks and alert suppression."""
import asyncio
import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SystemClock:
    """Wall clock backed by the running event loop."""

    def now(self) -> datetime:
        return utcnow()

    def monotonic(self) -> float:
        return time.monotonic()

    async def wait(self, seconds: float, stop_event: asyncio.Event) -> bool:
        """Sleep for ``seconds`` unless ``stop_event`` is set first.

        Returns True if the wait ended because of the stop event.
        """
        if stop_event.is_set():
            return True
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


system_clock = SystemClock()
