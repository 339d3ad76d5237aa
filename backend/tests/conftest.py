from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable

import pytest
import pytest_asyncio

from sitewatch.database import build_engine, build_session_factory, init_db
from sitewatch.models import Target as TargetModel
from sitewatch.services.records import Target


class FakeClock:
    """Manual clock. ``wait`` parks until the stop token is set or ``release`` is called."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)) -> None:
        self._now = start
        self._monotonic = 1000.0
        self.waits: list[float] = []
        self._gate = asyncio.Event()

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds

    def release(self) -> None:
        """Let every parked ``wait`` elapse once."""
        self._gate.set()

    async def wait(self, seconds: float, stop_event: asyncio.Event) -> bool:
        self.waits.append(seconds)
        if stop_event.is_set():
            return True
        stop = asyncio.ensure_future(stop_event.wait())
        gate = asyncio.ensure_future(self._gate.wait())
        _, pending = await asyncio.wait({stop, gate}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if stop_event.is_set():
            return True
        self._gate.clear()
        self.advance(seconds)
        return False


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def eventually():
    return _eventually


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_target() -> Callable[..., Target]:
    def _make(target_id: int = 1, **overrides) -> Target:
        values = {
            "id": target_id,
            "url": f"http://site{target_id}.example",
            "name": f"site-{target_id}",
            "check_interval": 60,
            "timeout": 5,
        }
        values.update(overrides)
        return Target(**values)

    return _make


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'sitewatch-test.db'}")
    await init_db(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def add_target(session_factory):
    async def _add(**overrides) -> int:
        values = {
            "name": "example",
            "url": "https://example.com",
            "check_interval": 60,
            "timeout": 5,
            "enabled": True,
        }
        values.update(overrides)
        async with session_factory() as session:
            row = TargetModel(**values)
            session.add(row)
            await session.commit()
            return row.id

    return _add
