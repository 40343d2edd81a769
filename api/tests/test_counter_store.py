from __future__ import annotations

import asyncio
from datetime import datetime

import pytest
from loguru import logger
from redis.exceptions import ConnectionError as RedisConnectionError

from persona_chat.services.counter_store import CounterStore, InMemoryCounterBackend, RedisCounterBackend
from persona_chat.services.identity import Identifier, IdentifierKind
from persona_chat.utils.datetime import UTC


NETWORK = Identifier(IdentifierKind.NETWORK, "203.0.113.7")
TOKEN = Identifier(IdentifierKind.TOKEN, "tok_abcdefgh")


class BrokenBackend:
    """Durable tier whose every call fails like an unreachable Redis."""

    def __init__(self) -> None:
        self.calls = 0
        self.healthy = False
        self.inner = InMemoryCounterBackend()

    async def check_and_maybe_reset(self, identifier, now):
        self.calls += 1
        if not self.healthy:
            raise RedisConnectionError("connection refused")
        return await self.inner.check_and_maybe_reset(identifier, now)

    async def increment(self, identifier, now):
        self.calls += 1
        if not self.healthy:
            raise RedisConnectionError("connection refused")
        return await self.inner.increment(identifier, now)


class HangingBackend:
    async def check_and_maybe_reset(self, identifier, now):
        await asyncio.sleep(10)

    async def increment(self, identifier, now):
        await asyncio.sleep(10)


@pytest.mark.asyncio
async def test_unseen_identifier_starts_at_zero(clock) -> None:
    store = CounterStore(clock=clock)

    record = await store.check_and_maybe_reset(NETWORK)

    assert record.daily_count == 0
    assert record.hourly_count == 0
    assert record.daily_reset_at == datetime(2030, 1, 16, tzinfo=UTC)
    assert record.hourly_reset_at == datetime(2030, 1, 15, 11, tzinfo=UTC)


@pytest.mark.asyncio
async def test_increment_counts_both_windows(clock) -> None:
    store = CounterStore(clock=clock)

    await store.increment(NETWORK)
    record = await store.increment(NETWORK)

    assert (record.daily_count, record.hourly_count) == (2, 2)
    other = await store.check_and_maybe_reset(TOKEN)
    assert other.daily_count == 0


@pytest.mark.asyncio
async def test_hourly_window_resets_at_the_hour(clock) -> None:
    store = CounterStore(clock=clock)
    for _ in range(3):
        await store.increment(NETWORK)

    clock.set(datetime(2030, 1, 15, 10, 59, 59, tzinfo=UTC))
    before = await store.check_and_maybe_reset(NETWORK)
    clock.set(datetime(2030, 1, 15, 11, 0, 0, tzinfo=UTC))
    after = await store.check_and_maybe_reset(NETWORK)

    assert before.hourly_count == 3
    assert after.hourly_count == 0
    assert after.daily_count == 3
    assert after.hourly_reset_at == datetime(2030, 1, 15, 12, tzinfo=UTC)


@pytest.mark.asyncio
async def test_daily_window_resets_at_midnight(clock) -> None:
    store = CounterStore(clock=clock)
    clock.set(datetime(2030, 1, 15, 23, 59, 59, tzinfo=UTC))
    await store.increment(NETWORK)

    clock.set(datetime(2030, 1, 16, 0, 0, 0, tzinfo=UTC))
    record = await store.check_and_maybe_reset(NETWORK)

    assert (record.daily_count, record.hourly_count) == (0, 0)
    assert record.daily_reset_at == datetime(2030, 1, 17, tzinfo=UTC)


@pytest.mark.asyncio
async def test_naive_clock_is_treated_as_utc() -> None:
    store = CounterStore(clock=lambda: datetime(2030, 1, 15, 10, 30))

    record = await store.check_and_maybe_reset(NETWORK)

    assert record.hourly_reset_at == datetime(2030, 1, 15, 11, tzinfo=UTC)


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost(clock) -> None:
    store = CounterStore(clock=clock)

    await asyncio.gather(*(store.increment(NETWORK) for _ in range(50)))

    record = await store.check_and_maybe_reset(NETWORK)
    assert record.daily_count == 50
    assert record.hourly_count == 50


@pytest.mark.asyncio
async def test_redis_backend_counts_and_shares_state(clock, redis_client) -> None:
    first = CounterStore(RedisCounterBackend(redis_client), clock=clock)
    second = CounterStore(RedisCounterBackend(redis_client), clock=clock)

    await first.increment(NETWORK)
    await second.increment(NETWORK)
    record = await first.check_and_maybe_reset(NETWORK)

    assert (record.daily_count, record.hourly_count) == (2, 2)
    assert await redis_client.get("ratelimit:network:203.0.113.7:daily:20300115") == "2"
    assert await redis_client.get("ratelimit:network:203.0.113.7:hourly:2030011510") == "2"


@pytest.mark.asyncio
async def test_redis_bucket_keys_expire_after_their_window(clock, redis_client) -> None:
    store = CounterStore(RedisCounterBackend(redis_client), clock=clock)

    await store.increment(NETWORK)

    assert await redis_client.ttl("ratelimit:network:203.0.113.7:hourly:2030011510") > 0
    assert await redis_client.ttl("ratelimit:network:203.0.113.7:daily:20300115") > 0


@pytest.mark.asyncio
async def test_redis_backend_rolls_over_hour_bucket(clock, redis_client) -> None:
    store = CounterStore(RedisCounterBackend(redis_client), clock=clock)
    await store.increment(NETWORK)

    clock.set(datetime(2030, 1, 15, 11, 0, tzinfo=UTC))
    record = await store.check_and_maybe_reset(NETWORK)

    assert (record.daily_count, record.hourly_count) == (1, 0)


@pytest.mark.asyncio
async def test_concurrent_redis_increments_are_not_lost(clock, redis_client) -> None:
    store = CounterStore(RedisCounterBackend(redis_client), clock=clock)

    records = await asyncio.gather(*(store.increment(TOKEN) for _ in range(20)))

    assert sorted(record.daily_count for record in records) == list(range(1, 21))


@pytest.mark.asyncio
async def test_unreachable_durable_tier_falls_back(clock, monotonic) -> None:
    durable = BrokenBackend()
    store = CounterStore(durable, clock=clock, monotonic=monotonic, retry_seconds=30)

    await store.increment(NETWORK)
    record = await store.increment(NETWORK)

    assert record.daily_count == 2
    assert store.durable_available is False
    # The second call skipped the durable tier entirely.
    assert durable.calls == 1


@pytest.mark.asyncio
async def test_fallback_retries_redis_after_retry_interval(clock, monotonic) -> None:
    durable = BrokenBackend()
    store = CounterStore(durable, clock=clock, monotonic=monotonic, retry_seconds=30)
    await store.increment(NETWORK)

    durable.healthy = True
    monotonic.advance(31)
    assert store.durable_available is True

    record = await store.increment(NETWORK)

    assert record.daily_count == 1
    assert durable.calls == 2
    assert store.durable_available is True


@pytest.mark.asyncio
async def test_slow_durable_tier_times_out_to_fallback(clock, monotonic) -> None:
    store = CounterStore(HangingBackend(), clock=clock, monotonic=monotonic, timeout_seconds=0.01)

    record = await store.increment(NETWORK)

    assert record.daily_count == 1
    assert store.durable_available is False


@pytest.mark.asyncio
async def test_increment_timeout_warns_about_a_possible_double_count(clock, monotonic) -> None:
    store = CounterStore(HangingBackend(), clock=clock, monotonic=monotonic, timeout_seconds=0.01)
    messages = []
    sink_id = logger.add(messages.append, level="WARNING", format="{message}")
    try:
        await store.increment(NETWORK)
        await store.check_and_maybe_reset(TOKEN)
    finally:
        logger.remove(sink_id)

    double_count_warnings = [message for message in messages if "count it again" in message]
    assert len(double_count_warnings) == 1


@pytest.mark.asyncio
async def test_without_durable_tier_memory_is_used(clock) -> None:
    store = CounterStore(clock=clock)

    assert store.durable_available is False
    record = await store.increment(TOKEN)
    assert record.kind is IdentifierKind.TOKEN
