"""Shared test doubles."""

import pytest
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from beacon.db.models import Base


class FakePipeline:
    def __init__(self, owner: "FakeRedis"):
        self.owner = owner
        self.ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def incr(self, key):
        self.ops.append(("incr", key))
        return self

    def expire(self, key, seconds, nx=False):
        self.ops.append(("expire", key, seconds, nx))
        return self

    def hincrby(self, key, field, amount=1):
        self.ops.append(("hincrby", key, field, amount))
        return self

    async def execute(self):
        if self.owner.fail:
            raise redis.ConnectionError("redis down")
        results = []
        for op in self.ops:
            if op[0] == "incr":
                value = int(self.owner.data.get(op[1], 0)) + 1
                self.owner.data[op[1]] = str(value)
                results.append(value)
            elif op[0] == "expire":
                _, key, seconds, nx = op
                if nx and key in self.owner.ttls:
                    results.append(False)
                else:
                    self.owner.ttls[key] = seconds
                    results.append(True)
            elif op[0] == "hincrby":
                _, key, field, amount = op
                bucket = self.owner.hashes.setdefault(key, {})
                bucket[field] = str(int(bucket.get(field, 0)) + amount)
                results.append(int(bucket[field]))
        self.ops = []
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the stores under test."""

    def __init__(self, fail: bool = False):
        self.data = {}
        self.ttls = {}
        self.hashes = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("redis down")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None, nx=False):
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, key):
        self._check()
        self.data.pop(key, None)

    async def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def close(self):
        pass


class DictConfigStore:
    """In-memory dynamic config store."""

    def __init__(self, values=None, fail: bool = False):
        self.values = dict(values or {})
        self.fail = fail

    async def get(self, key):
        if self.fail:
            raise redis.ConnectionError("config store down")
        return self.values.get(key)

    async def set(self, key, value):
        self.values[key] = value


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


async def no_sleep(_seconds):
    return None


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def session_factory(tmp_path):
    """SQLite-backed session factory with the schema created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'beacon_test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        yield factory
    finally:
        await engine.dispose()
