"""Tests for the per-retailer request budget."""

import pytest

from beacon.ingest.budget import BudgetController, InMemoryCounterStore, RedisCounterStore
from beacon.ingest.config_resolver import ConfigResolver
from tests.conftest import DictConfigStore, FakeClock, FakeRedis


class BrokenCounterStore:
    async def hit(self, key, window_seconds):
        raise ConnectionError("counter store down")


def make_resolver(qpm: str) -> ConfigResolver:
    return ConfigResolver.from_store(
        DictConfigStore({"config:url_candidate:qpm:best-buy": qpm}), environ={}
    )


@pytest.mark.asyncio
async def test_denies_after_budget_within_window():
    clock = FakeClock()
    budget = BudgetController(InMemoryCounterStore(clock), make_resolver("3"))

    allowed = [await budget.try_consume("best-buy") for _ in range(5)]
    assert allowed == [True, True, True, False, False]


@pytest.mark.asyncio
async def test_window_resets_after_a_minute():
    clock = FakeClock()
    budget = BudgetController(InMemoryCounterStore(clock), make_resolver("1"))

    assert await budget.try_consume("best-buy") is True
    assert await budget.try_consume("best-buy") is False
    clock.advance(61)
    assert await budget.try_consume("best-buy") is True


@pytest.mark.asyncio
async def test_budgets_are_per_retailer():
    clock = FakeClock()
    budget = BudgetController(InMemoryCounterStore(clock), make_resolver("1"))

    assert await budget.try_consume("best-buy") is True
    # costco falls back to the default of 6
    assert await budget.try_consume("costco") is True
    assert await budget.try_consume("best-buy") is False


@pytest.mark.asyncio
async def test_fails_open_when_store_unreachable():
    budget = BudgetController(BrokenCounterStore(), make_resolver("1"))
    assert await budget.try_consume("best-buy") is True
    assert await budget.try_consume("best-buy") is True


@pytest.mark.asyncio
async def test_redis_counter_sets_expiry_once():
    fake = FakeRedis()
    store = RedisCounterStore("redis://unused")
    store._redis = fake

    assert await store.hit("candqpm:best-buy", 60) == 1
    fake.ttls["ratelimit:candqpm:best-buy"] = 42
    assert await store.hit("candqpm:best-buy", 60) == 2
    assert fake.ttls["ratelimit:candqpm:best-buy"] == 42
