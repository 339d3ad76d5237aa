from __future__ import annotations

import pytest

from sitewatch.config import settings
from sitewatch.database import build_engine, build_session_factory
from sitewatch.models import Target as TargetModel
from sitewatch.services.records import CheckResult, TLSInfo
from sitewatch.services.result_store import ResultStore
from sitewatch.services.target_registry import StorageUnavailableError, TargetRegistry


def _tls(days: int, grade: str = "A+") -> TLSInfo:
    return TLSInfo(valid=days >= 0, days_until_expiry=days, issuer="Let's Encrypt", grade=grade, chain_valid=days >= 0)


@pytest.mark.asyncio
async def test_results_round_trip_most_recent_first(session_factory, add_target, clock) -> None:
    target_id = await add_target()
    store = ResultStore(session_factory)

    first = CheckResult(target_id=target_id, checked_at=clock.now(), status="down", response_time_ms=5000,
                        error_message="Request timeout")
    clock.advance(60)
    second = CheckResult(target_id=target_id, checked_at=clock.now(), status="up", response_time_ms=87,
                         status_code=200, performance_score=100, page_size_bytes=512, tls=_tls(45))

    assert await store.save(first) is True
    assert await store.save(second) is True

    results = await store.recent_results(target_id)
    assert results == [second, first]
    assert results[1].tls is None
    assert results[1].status_code is None
    assert results[1].performance_score is None
    assert await store.latest_result(target_id) == second

    async with session_factory() as session:
        row = await session.get(TargetModel, target_id)
    assert row.status == "up"
    assert row.last_checked == second.checked_at


@pytest.mark.asyncio
async def test_recent_results_respects_limit(session_factory, add_target, clock) -> None:
    target_id = await add_target()
    store = ResultStore(session_factory)
    for _ in range(5):
        await store.save(CheckResult(target_id=target_id, checked_at=clock.now(), status="up", response_time_ms=10))
        clock.advance(60)

    results = await store.recent_results(target_id, limit=3)
    assert len(results) == 3
    assert results[0].checked_at > results[-1].checked_at
    assert await store.recent_results(target_id + 100) == []


@pytest.mark.asyncio
async def test_expiring_certificates_uses_latest_check(session_factory, add_target, clock) -> None:
    soon_id = await add_target(name="soon", url="https://soon.example")
    renewed_id = await add_target(name="renewed", url="https://renewed.example")
    expired_id = await add_target(name="expired", url="https://expired.example")
    store = ResultStore(session_factory)

    await store.save(CheckResult(target_id=renewed_id, checked_at=clock.now(), status="up", response_time_ms=10, tls=_tls(3, "D")))
    await store.save(CheckResult(target_id=expired_id, checked_at=clock.now(), status="up", response_time_ms=10, tls=_tls(-2, "F")))
    clock.advance(3600)
    await store.save(CheckResult(target_id=soon_id, checked_at=clock.now(), status="up", response_time_ms=10, tls=_tls(12, "A")))
    await store.save(CheckResult(target_id=renewed_id, checked_at=clock.now(), status="up", response_time_ms=10, tls=_tls(89)))

    expiring = await store.expiring_certificates(days=30)
    assert [c.target_id for c in expiring] == [soon_id]
    assert expiring[0].days_until_expiry == 12


@pytest.mark.asyncio
async def test_registry_returns_only_valid_enabled_targets(session_factory, add_target) -> None:
    enabled_id = await add_target(name="enabled")
    disabled_id = await add_target(name="disabled", enabled=False)
    await add_target(name="bad-timeout", check_interval=10, timeout=10)

    registry = TargetRegistry(session_factory)
    targets = await registry.load_enabled_targets()

    assert [t.id for t in targets] == [enabled_id]
    assert registry.last_load_ok is True
    disabled = await registry.get_target(disabled_id)
    assert disabled is not None and disabled.enabled is False
    assert await registry.get_target(9999) is None


@pytest.mark.asyncio
async def test_registry_keeps_last_good_list_when_storage_fails(session_factory, add_target, tmp_path) -> None:
    target_id = await add_target()
    registry = TargetRegistry(session_factory)
    await registry.load_enabled_targets()

    broken_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nowhere.db'}")
    registry._session_factory = build_session_factory(broken_engine)
    try:
        targets = await registry.load_enabled_targets()
        assert [t.id for t in targets] == [target_id]
        assert registry.last_load_ok is False

        with pytest.raises(StorageUnavailableError):
            await registry.ping()
    finally:
        await broken_engine.dispose()


def test_timing_edits_change_schedule_key(make_target) -> None:
    target = make_target()
    assert target.schedule_key() == make_target(name="renamed").schedule_key()
    assert target.schedule_key() != make_target(check_interval=120).schedule_key()
    assert not make_target(check_interval=0).is_valid()
    assert not make_target(check_interval=30, timeout=30).is_valid()
    assert make_target(check_interval=30, timeout=29).is_valid()
    assert not make_target(timeout=0).is_valid()


@pytest.mark.asyncio
async def test_save_reports_connection_failure(clock) -> None:
    def unreachable():
        raise ConnectionRefusedError("db down")

    store = ResultStore(unreachable)
    result = CheckResult(target_id=1, checked_at=clock.now(), status="up", response_time_ms=10)

    assert await store.save(result) is False


@pytest.mark.asyncio
async def test_new_targets_take_configured_timing_defaults(session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "default_check_interval", 120)
    monkeypatch.setattr(settings, "default_timeout", 12)

    async with session_factory() as session:
        row = TargetModel(name="defaults", url="https://defaults.example")
        session.add(row)
        await session.commit()
        target_id = row.id

    target = await TargetRegistry(session_factory).get_target(target_id)
    assert (target.check_interval, target.timeout) == (120, 12)
