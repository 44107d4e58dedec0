"""Tests for the per-identifier pairing session registry."""

import asyncio

import pytest

from atv_bridge.errors import NoActiveSession, PairingError
from atv_bridge.models import PairResult, PairStatus
from atv_bridge.pairing import PairingRegistry

from .conftest import PairingFactory, wait_until


@pytest.fixture
def factory() -> PairingFactory:
    return PairingFactory()


@pytest.fixture
def registry(factory) -> PairingRegistry:
    return PairingRegistry(factory)


@pytest.mark.asyncio
async def test_start_requires_identifier(registry, factory) -> None:
    with pytest.raises(ValueError):
        await registry.pair_start("")
    assert factory.created == []


@pytest.mark.asyncio
async def test_awaiting_pin_session_is_kept(registry, factory) -> None:
    result = await registry.pair_start("dev1", address="10.0.0.5")

    assert result.status is PairStatus.AWAITING_PIN
    assert "dev1" in registry
    assert len(registry) == 1
    assert registry.active_identifiers() == ["dev1"]
    assert factory.created[0].address == "10.0.0.5"
    assert factory.created[0].protocols == ["airplay"]


@pytest.mark.asyncio
async def test_immediate_pairing_is_not_kept(registry, factory) -> None:
    factory.configure = lambda b: setattr(b, "start_result", PairResult(PairStatus.PAIRED, "x"))

    result = await registry.pair_start("dev1", "companion")

    assert result == PairResult(PairStatus.PAIRED, "x")
    assert "dev1" not in registry
    assert factory.created[0].closed


@pytest.mark.asyncio
async def test_failed_start_closes_backend(registry, factory) -> None:
    factory.configure = lambda b: setattr(b, "start_error", PairingError("boom"))

    with pytest.raises(PairingError):
        await registry.pair_start("dev1")
    assert len(registry) == 0
    assert factory.created[0].closed


@pytest.mark.asyncio
async def test_second_start_replaces_first(registry, factory) -> None:
    await registry.pair_start("dev1")
    await registry.pair_start("dev1")

    first, second = factory.created
    assert first.aborts >= 1
    assert first.closed
    assert not second.closed
    assert len(registry) == 1
    assert registry.get_session("dev1").backend is second


@pytest.mark.asyncio
@pytest.mark.parametrize("pin", ["", "123", "12345", "12a4", "abcd"])
async def test_pin_must_be_four_digits(registry, pin) -> None:
    await registry.pair_start("dev1")
    with pytest.raises(ValueError):
        await registry.submit_pin("dev1", pin)
    assert "dev1" in registry


@pytest.mark.asyncio
async def test_pin_without_session(registry, factory) -> None:
    with pytest.raises(NoActiveSession):
        await registry.submit_pin("dev1", "1234")
    assert factory.created == []


@pytest.mark.asyncio
async def test_successful_pin_removes_session(registry, factory) -> None:
    await registry.pair_start("dev1")

    result = await registry.submit_pin("dev1", " 1234 ")

    assert result == PairResult(PairStatus.PAIRED, "creds-1234")
    assert "dev1" not in registry
    assert factory.created[0].pins == ["1234"]
    assert factory.created[0].closed


@pytest.mark.asyncio
async def test_failed_pin_removes_session(registry, factory) -> None:
    factory.configure = lambda b: setattr(b, "finish_error", PairingError("wrong pin"))
    await registry.pair_start("dev1")

    with pytest.raises(PairingError):
        await registry.submit_pin("dev1", "0000")
    assert "dev1" not in registry

    with pytest.raises(NoActiveSession):
        await registry.submit_pin("dev1", "0000")


@pytest.mark.asyncio
async def test_abort_is_idempotent(registry, factory) -> None:
    await registry.pair_start("dev1")

    assert registry.abort_pairing("dev1") == PairResult(PairStatus.ABORTED)
    assert registry.abort_pairing("dev1") == PairResult(PairStatus.ABORTED)
    assert registry.abort_pairing("unknown") == PairResult(PairStatus.ABORTED)
    assert factory.created[0].aborts >= 1
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_abort_all(registry, factory) -> None:
    await registry.pair_start("dev1")
    await registry.pair_start("dev2")

    registry.abort_all()

    assert len(registry) == 0
    assert all(backend.closed for backend in factory.created)


@pytest.mark.asyncio
async def test_overlapping_starts_keep_only_the_newest(registry, factory) -> None:
    gate = asyncio.Event()
    factory.configure = lambda b: setattr(b, "gate", gate) if not factory.created else None

    first_start = asyncio.create_task(registry.pair_start("dev1"))
    await wait_until(lambda: bool(factory.created) and bool(factory.created[0].protocols))

    result = await registry.pair_start("dev1")
    assert result.status is PairStatus.AWAITING_PIN
    first, second = factory.created
    assert first.aborts == 1

    gate.set()
    assert await first_start == PairResult(PairStatus.ABORTED)
    assert first.closed
    assert not second.closed
    assert len(registry) == 1
    assert registry.get_session("dev1").backend is second


@pytest.mark.asyncio
@pytest.mark.parametrize("start_raises", [False, True])
async def test_abort_during_start_leaves_no_session(registry, factory, start_raises) -> None:
    gate = asyncio.Event()
    factory.configure = lambda b: setattr(b, "gate", gate)

    start = asyncio.create_task(registry.pair_start("dev1"))
    await wait_until(lambda: bool(factory.created) and bool(factory.created[0].protocols))

    registry.abort_all()
    if start_raises:
        factory.created[0].start_error = PairingError("Pairing aborted")
    gate.set()

    assert await start == PairResult(PairStatus.ABORTED)
    assert factory.created[0].aborts == 1
    assert factory.created[0].closed
    assert "dev1" not in registry
