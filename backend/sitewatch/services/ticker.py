"""Per-target repeating tasks and the schedule map that owns them.

Each target gets one ``TargetTicker``: an asyncio task that runs a tick, then
sleeps for the target's interval, until its stop token is set. Re-arming is
always stop-then-start, and a replacement ticker waits for its predecessor's
in-flight tick so ticks for one target never overlap.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from .clock import system_clock
from .records import Target

logger = logging.getLogger(__name__)

# Ticker lifecycle states
SCHEDULED = "scheduled"
RUNNING = "running"
STOPPED = "stopped"

TickCallback = Callable[[Target], Awaitable[None]]


class TargetTicker:
    """Repeating task for one target with an explicit stop token."""

    def __init__(
        self,
        target: Target,
        on_tick: TickCallback,
        clock=system_clock,
        predecessor: Optional["TargetTicker"] = None,
        initial_delay: float = 0,
    ):
        self.target = target
        self._on_tick = on_tick
        self._clock = clock
        self._predecessor = predecessor
        self._initial_delay = initial_delay
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.state = SCHEDULED

    def start(self):
        self._task = asyncio.create_task(self._run(), name=f"ticker-{self.target.id}")

    def stop(self):
        """Cancel the pending wait. An in-flight tick finishes but never re-arms."""
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    async def wait_closed(self):
        if self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    async def _run(self):
        try:
            if self._predecessor is not None:
                await self._predecessor.wait_closed()
                self._predecessor = None

            if self._initial_delay and await self._clock.wait(self._initial_delay, self._stop_event):
                return

            while not self._stop_event.is_set():
                self.state = RUNNING
                try:
                    await self._on_tick(self.target)
                except Exception as e:
                    # The tick callback handles its own errors; this keeps the loop alive regardless
                    logger.error(f"Unhandled error in tick for target {self.target.id}: {e}")
                self.state = SCHEDULED

                if await self._clock.wait(self.target.check_interval, self._stop_event):
                    break
        finally:
            self.state = STOPPED


class ScheduleMap:
    """Owned map of target id -> active ticker.

    The only shared mutable structure in the scheduler; every mutation holds
    the lock.
    """

    def __init__(self, on_tick: TickCallback, clock=system_clock):
        self._on_tick = on_tick
        self._clock = clock
        self._tickers: Dict[int, TargetTicker] = {}
        self._retired: List[TargetTicker] = []
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._tickers)

    def __contains__(self, target_id: int) -> bool:
        return target_id in self._tickers

    def get(self, target_id: int) -> Optional[TargetTicker]:
        return self._tickers.get(target_id)

    def target_ids(self) -> List[int]:
        return list(self._tickers)

    def targets(self) -> List[Target]:
        return [ticker.target for ticker in self._tickers.values()]

    async def arm(self, target: Target, force: bool = False) -> bool:
        """Ensure exactly one ticker for ``target``.

        An unchanged target keeps its ticker unless ``force`` is set. Returns
        True if a new ticker was started.
        """
        async with self._lock:
            current = self._tickers.get(target.id)
            if current and not force and current.target.schedule_key() == target.schedule_key():
                # Pick up non-timing edits such as a rename without re-arming
                current.target = target
                return False

            if current:
                current.stop()
                self._retire(current)

            ticker = TargetTicker(target, self._on_tick, clock=self._clock, predecessor=current)
            self._tickers[target.id] = ticker
            ticker.start()
            return True

    async def disarm(self, target_id: int) -> bool:
        async with self._lock:
            ticker = self._tickers.pop(target_id, None)
            if ticker is None:
                return False
            ticker.stop()
            self._retire(ticker)
            return True

    async def sync(self, targets: List[Target]) -> tuple[int, int]:
        """Arm every target in ``targets`` and disarm the rest.

        Returns (armed, removed) counts.
        """
        wanted = {t.id for t in targets}
        removed = 0
        for target_id in [tid for tid in self.target_ids() if tid not in wanted]:
            if await self.disarm(target_id):
                removed += 1
        armed = 0
        for target in targets:
            if await self.arm(target):
                armed += 1
        return armed, removed

    async def clear(self, grace_seconds: float) -> None:
        """Stop every ticker and wait up to ``grace_seconds`` for in-flight ticks."""
        async with self._lock:
            tickers = list(self._tickers.values())
            self._tickers.clear()
            for ticker in tickers:
                ticker.stop()
                self._retire(ticker)
            pending = [t.task for t in self._retired if t.task is not None and not t.task.done()]
            self._retired = []

        if not pending:
            return
        done, still_running = await asyncio.wait(pending, timeout=grace_seconds)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} tick(s) still running after {grace_seconds}s")
            await asyncio.gather(*still_running, return_exceptions=True)

    def _retire(self, ticker: TargetTicker):
        # Keep stopped tickers with live tasks around so shutdown can wait on them
        self._retired = [t for t in self._retired if t.task is not None and not t.task.done()]
        if ticker.task is not None and not ticker.task.done():
            self._retired.append(ticker)
