import asyncio

import pytest

from zapninja.services.timing.delays import DelayRegistry


@pytest.mark.asyncio
async def test_sleep_completes():
    registry = DelayRegistry()

    assert await registry.sleep("vendas", 10) is True
    assert registry.active_count() == 0


@pytest.mark.asyncio
async def test_non_positive_duration_returns_immediately():
    registry = DelayRegistry()

    assert await registry.sleep("vendas", 0) is True
    assert await registry.sleep("vendas", -5) is True


@pytest.mark.asyncio
async def test_cancel_only_targets_one_session():
    registry = DelayRegistry()
    vendas = asyncio.create_task(registry.sleep("vendas", 60_000, kind="typing"))
    suporte = asyncio.create_task(registry.sleep("suporte", 60_000))
    await asyncio.sleep(0.01)

    assert registry.active_count(kind="typing") == 1
    assert registry.cancel("vendas") == 1
    assert await asyncio.wait_for(vendas, timeout=1) is False
    assert not suporte.done()

    assert registry.cancel() == 1
    assert await asyncio.wait_for(suporte, timeout=1) is False
    assert registry.active_count() == 0
