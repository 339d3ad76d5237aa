from __future__ import annotations

import asyncio

import pytest

from sitewatch.services.records import CheckResult
from sitewatch.services.scheduler import SchedulerService
from sitewatch.services.target_registry import StorageUnavailableError
from sitewatch.services.tls_inspector import TLSInspector
from sitewatch.services.websocket_manager import NullBroadcaster


class FakeRegistry:
    def __init__(self, targets) -> None:
        self.targets = list(targets)
        self.available = True
        self.last_load_ok = False
        self.extra = {}

    async def ping(self) -> None:
        if not self.available:
            raise StorageUnavailableError("store is down")

    async def load_enabled_targets(self):
        if not self.available:
            self.last_load_ok = False
            return []
        self.last_load_ok = True
        return [t for t in self.targets if t.enabled]

    async def get_target(self, target_id: int):
        for target in self.targets + list(self.extra.values()):
            if target.id == target_id:
                return target
        return None


class FakeChecker:
    def __init__(self, clock) -> None:
        self.clock = clock
        self.tls_inspector = TLSInspector(timeout=1)
        self.calls: list[int] = []
        self.gate = asyncio.Event()
        self.gate.set()
        self.in_flight = 0
        self.max_in_flight = 0

    async def run_checks(self, target) -> CheckResult:
        self.calls.append(target.id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await self.gate.wait()
        finally:
            self.in_flight -= 1
        return CheckResult(target_id=target.id, checked_at=self.clock.now(), status="up", response_time_ms=42)


class FakeStore:
    def __init__(self) -> None:
        self.saved: list[CheckResult] = []
        self.fail = False

    async def save(self, result) -> bool:
        if self.fail:
            return False
        self.saved.append(result)
        return True


class FakeAlerter:
    def __init__(self) -> None:
        self.processed = 0
        self.error = None

    async def process(self, target, result):
        self.processed += 1
        if self.error:
            raise self.error
        return []


class RecordingBroadcaster:
    def __init__(self) -> None:
        self.updates: list[dict] = []

    def publish(self, update: dict) -> None:
        self.updates.append(update)


@pytest.fixture
def parts(clock):
    return FakeChecker(clock), FakeStore(), FakeAlerter(), RecordingBroadcaster()


def _service(registry, parts, clock) -> SchedulerService:
    checker, store, alerter, broadcaster = parts
    return SchedulerService(
        registry=registry,
        checker=checker,
        store=store,
        alerter=alerter,
        broadcaster=broadcaster,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_start_arms_enabled_targets_and_waits_their_interval(parts, clock, make_target, eventually) -> None:
    registry = FakeRegistry([
        make_target(1, check_interval=60),
        make_target(2, check_interval=300, timeout=30),
        make_target(3, enabled=False),
    ])
    service = _service(registry, parts, clock)
    checker, store, _, broadcaster = parts

    await service.start()
    try:
        await eventually(lambda: len(clock.waits) == 2)
        assert sorted(checker.calls) == [1, 2]
        assert sorted(clock.waits) == [60, 300]
        assert service.status().running is True
        assert service.status().active_target_count == 2
        assert len(store.saved) == 2
        assert {u["data"]["targetId"] for u in broadcaster.updates} == {1, 2}
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_interval_change_rearms_with_new_interval(parts, clock, make_target, eventually) -> None:
    registry = FakeRegistry([make_target(1, check_interval=60)])
    service = _service(registry, parts, clock)
    checker = parts[0]

    await service.start()
    try:
        await eventually(lambda: clock.waits == [60])
        original = service.schedule.get(1)

        registry.targets = [make_target(1, check_interval=120)]
        await service.refresh()
        await eventually(lambda: clock.waits[-1] == 120)

        assert original.stopped is True
        assert service.schedule.get(1) is not original
        assert checker.calls == [1, 1]
        assert len(service.schedule) == 1
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_unchanged_refresh_keeps_ticker(parts, clock, make_target, eventually) -> None:
    registry = FakeRegistry([make_target(1)])
    service = _service(registry, parts, clock)

    await service.start()
    try:
        await eventually(lambda: len(clock.waits) == 1)
        ticker = service.schedule.get(1)
        registry.targets = [make_target(1, name="renamed")]
        await service.refresh()

        assert service.schedule.get(1) is ticker
        assert ticker.target.name == "renamed"
        assert parts[0].calls == [1]
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_disabled_target_is_removed_on_refresh(parts, clock, make_target, eventually) -> None:
    registry = FakeRegistry([make_target(1), make_target(2)])
    service = _service(registry, parts, clock)

    await service.start()
    try:
        await eventually(lambda: len(clock.waits) == 2)
        registry.targets = [make_target(1), make_target(2, enabled=False)]
        await service.refresh()

        assert service.schedule.target_ids() == [1]
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_registry_outage_keeps_current_schedule(parts, clock, make_target, eventually) -> None:
    registry = FakeRegistry([make_target(1), make_target(2)])
    service = _service(registry, parts, clock)

    await service.start()
    try:
        await eventually(lambda: len(clock.waits) == 2)
        registry.available = False
        await service.refresh()
        assert sorted(service.schedule.target_ids()) == [1, 2]
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_start_fails_when_store_unreachable(parts, clock, make_target) -> None:
    registry = FakeRegistry([make_target(1)])
    registry.available = False
    service = _service(registry, parts, clock)

    with pytest.raises(StorageUnavailableError):
        await service.start()
    assert service.running is False
    assert len(service.schedule) == 0


@pytest.mark.asyncio
async def test_stop_prevents_further_ticks(parts, clock, make_target, eventually) -> None:
    registry = FakeRegistry([make_target(1)])
    service = _service(registry, parts, clock)
    checker = parts[0]

    await service.start()
    await eventually(lambda: len(clock.waits) == 1)
    await service.stop()

    clock.release()
    await asyncio.sleep(0.05)
    assert checker.calls == [1]
    assert service.status().running is False
    assert service.status().active_target_count == 0


@pytest.mark.asyncio
async def test_ticker_repeats_after_interval(parts, clock, make_target, eventually) -> None:
    registry = FakeRegistry([make_target(1, check_interval=30, timeout=3)])
    service = _service(registry, parts, clock)
    checker = parts[0]

    await service.start()
    try:
        await eventually(lambda: len(clock.waits) == 1)
        clock.release()
        await eventually(lambda: len(checker.calls) == 2)
        assert clock.waits[:1] == [30]
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_forced_rearm_waits_for_in_flight_tick(parts, clock, make_target, eventually) -> None:
    registry = FakeRegistry([make_target(1)])
    service = _service(registry, parts, clock)
    checker = parts[0]
    checker.gate.clear()

    await service.start()
    try:
        await eventually(lambda: checker.in_flight == 1)
        await service.schedule_target(make_target(1, check_interval=90))
        await asyncio.sleep(0.05)
        assert checker.calls == [1]

        checker.gate.set()
        await eventually(lambda: len(checker.calls) == 2)
        await eventually(lambda: 90 in clock.waits)
        assert checker.max_in_flight == 1
        assert len(service.schedule) == 1
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_unschedule_target(parts, clock, make_target, eventually) -> None:
    registry = FakeRegistry([make_target(1)])
    service = _service(registry, parts, clock)

    await service.start()
    try:
        await eventually(lambda: len(clock.waits) == 1)
        assert await service.unschedule_target(1) is True
        assert await service.unschedule_target(1) is False
        assert len(service.schedule) == 0
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_run_single_check(parts, clock, make_target) -> None:
    registry = FakeRegistry([])
    registry.extra[5] = make_target(5, enabled=False)
    service = _service(registry, parts, clock)
    _, store, alerter, broadcaster = parts

    assert await service.run_single_check(404) is None

    first = await service.run_single_check(5)
    second = await service.run_single_check(5)
    assert first.status == second.status == "up"
    assert len(store.saved) == 2
    assert alerter.processed == 2
    assert [u["event"] for u in broadcaster.updates] == ["monitoring-update", "monitoring-update"]
    # On-demand checks never touch the schedule
    assert len(service.schedule) == 0


@pytest.mark.asyncio
async def test_pipeline_survives_store_and_alerter_failures(parts, clock, make_target) -> None:
    registry = FakeRegistry([make_target(1)])
    service = _service(registry, parts, clock)
    _, store, alerter, broadcaster = parts
    store.fail = True
    alerter.error = RuntimeError("rules table missing")

    result = await service.run_single_check(1)

    assert result is not None
    assert broadcaster.updates[0]["data"]["status"] == "up"


@pytest.mark.asyncio
async def test_on_demand_check_waits_for_scheduled_tick(parts, clock, make_target, eventually) -> None:
    registry = FakeRegistry([make_target(1)])
    service = _service(registry, parts, clock)
    checker, store, _, _ = parts
    checker.gate.clear()

    await service.start()
    try:
        await eventually(lambda: checker.in_flight == 1)
        on_demand = asyncio.create_task(service.run_single_check(1))
        await asyncio.sleep(0.05)
        assert checker.calls == [1]

        checker.gate.set()
        result = await asyncio.wait_for(on_demand, timeout=2)
        assert result is not None
        assert checker.calls == [1, 1]
        assert checker.max_in_flight == 1
        assert [r.target_id for r in store.saved] == [1, 1]
    finally:
        await service.stop()


def test_default_broadcaster_is_a_no_op(clock) -> None:
    service = SchedulerService(
        registry=FakeRegistry([]),
        checker=FakeChecker(clock),
        store=FakeStore(),
        alerter=FakeAlerter(),
        clock=clock,
    )
    assert isinstance(service.broadcaster, NullBroadcaster)
