"""Test circuit breaker, keyed locks and the dead letter queue."""
import asyncio

import pytest

from core.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    DeadLetterQueue,
    KeyedLock,
)


def test_circuit_breaker_initial_state():
    cb = CircuitBreaker()
    assert cb.state == CircuitState.CLOSED


def test_backoff_is_exponential_and_capped():
    cb = CircuitBreaker(backoff_base=1.0, backoff_max=5.0)
    assert [cb.backoff_for(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_circuit_breaker_success():
    async def ok():
        return "ok"

    cb = CircuitBreaker()
    assert await cb.call(ok) == "ok"
    assert cb.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_circuit_breaker_retries():
    attempt = 0

    async def failing_then_ok():
        nonlocal attempt
        attempt += 1
        if attempt < 3:
            raise RuntimeError("fail")
        return "success"

    cb = CircuitBreaker(max_retries=3, backoff_base=0.001)
    assert await cb.call(failing_then_ok) == "success"
    assert attempt == 3


@pytest.mark.asyncio
async def test_slow_call_times_out_per_attempt():
    async def slow():
        await asyncio.sleep(1)

    cb = CircuitBreaker(max_retries=1, backoff_base=0.001, timeout=0.01)
    with pytest.raises(asyncio.TimeoutError):
        await cb.call(slow)


@pytest.mark.asyncio
async def test_circuit_opens_after_threshold():
    calls = 0

    async def broken():
        nonlocal calls
        calls += 1
        raise ConnectionError("down")

    cb = CircuitBreaker(failure_threshold=2, max_retries=0, recovery_timeout=60)
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await cb.call(broken)
    assert cb.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        await cb.call(broken)
    assert calls == 2


@pytest.mark.asyncio
async def test_keyed_lock_serializes_same_key():
    locks = KeyedLock()
    order = []

    async def worker(name: str):
        async with locks.hold("RES-1"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))
    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
    assert locks.active_keys == 0


@pytest.mark.asyncio
async def test_keyed_lock_different_keys_do_not_contend():
    locks = KeyedLock()
    async with locks.hold("RES-1"):
        assert locks.is_locked("RES-1")
        assert not locks.is_locked("RES-2")
        async with locks.hold("RES-2"):
            assert locks.active_keys == 2


def test_dlq_stats():
    dlq = DeadLetterQueue()
    first = dlq.enqueue("q", "RES-1", "reservation.late", {}, "boom")
    dlq.enqueue("q", "RES-2", "reservation.late", {}, "boom")
    dlq.mark_resolved(first.id)
    stats = dlq.get_stats("q")
    assert stats.total == 2
    assert stats.pending == 1
    assert stats.resolved == 1
    assert len(dlq) == 2
