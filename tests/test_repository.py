"""Tests for candidate persistence, drop signals and the retailer registry."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from beacon.config import Settings
from beacon.db.models import DropEvent, DropOutcome, Retailer, UrlCandidate
from beacon.ingest.registry import RetailerRegistry, default_profiles, sqlalchemy_loader
from beacon.ingest.repository import CandidateUpdate, SqlCandidateRepository
from beacon.notify.drop_signals import DropSignal, DropSignalPublisher, dedupe_key
from tests.conftest import FakeRedis


async def seed(session_factory):
    now = datetime(2024, 5, 1, 12, 0, 0)
    async with session_factory() as session:
        session.add_all([
            Retailer(id="r1", name="Walmart", slug="walmart"),
            Retailer(id="r2", name="Best Buy", slug="best-buy"),
        ])
        session.add_all([
            UrlCandidate(id="old", product_id="p1", retailer_id="r1", url="https://a/1",
                         status="valid", last_checked_at=now - timedelta(hours=2), updated_at=now),
            UrlCandidate(id="never", product_id="p1", retailer_id="r2", url="https://b/1",
                         status="unknown", last_checked_at=None, updated_at=now),
            UrlCandidate(id="recent", product_id="p2", retailer_id="r1", url="https://a/2",
                         status="unknown", last_checked_at=now - timedelta(minutes=5), updated_at=now),
            UrlCandidate(id="dead", product_id="p3", retailer_id="r1", url="https://a/3",
                         status="invalid", updated_at=now),
            UrlCandidate(id="done", product_id="p4", retailer_id="r1", url="https://a/4",
                         status="live", updated_at=now),
        ])
        await session.commit()


@pytest.mark.asyncio
async def test_fetch_pending_orders_least_recently_checked_first(session_factory):
    await seed(session_factory)
    repo = SqlCandidateRepository(session_factory)

    pending = await repo.fetch_pending(10)

    assert [c.id for c in pending] == ["never", "old", "recent"]
    assert (await repo.fetch_pending(1))[0].id == "never"


@pytest.mark.asyncio
async def test_save_result_updates_row(session_factory):
    await seed(session_factory)
    repo = SqlCandidateRepository(session_factory)
    checked_at = datetime(2024, 5, 2, 8, 0, 0)

    await repo.save_result("never", CandidateUpdate(
        status="live", score=0.75, reason="live:" + "x" * 200, checked_at=checked_at,
    ))

    async with session_factory() as session:
        row = await session.get(UrlCandidate, "never")
    assert row.status == "live"
    assert row.score == 0.75
    assert len(row.reason) == 128
    assert row.last_checked_at == checked_at
    assert row.updated_at == checked_at
    assert [c.id for c in await repo.fetch_pending(10)] == ["old", "recent"]


@pytest.mark.asyncio
async def test_registry_loads_slugs_once(session_factory):
    await seed(session_factory)
    calls = []
    loader = sqlalchemy_loader(session_factory)

    async def counting_loader():
        calls.append(1)
        return await loader()

    registry = RetailerRegistry(counting_loader)
    assert await registry.slug_for("r1") == "walmart"
    assert await registry.slug_for("r2") == "best-buy"
    assert await registry.slug_for("missing") is None
    assert len(calls) == 1

    assert await registry.refresh() == 2
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_registry_load_failure_returns_none_and_retries():
    attempts = []

    async def flaky_loader():
        attempts.append(1)
        if len(attempts) == 1:
            raise ConnectionError("db down")
        return [("r1", "walmart")]

    registry = RetailerRegistry(flaky_loader)
    assert await registry.slug_for("r1") is None
    assert await registry.slug_for("r1") == "walmart"


def test_default_profiles_follow_configured_keys():
    profiles = {p.id: p for p in default_profiles(Settings(best_buy_api_key="k", walmart_api_key=""))}
    assert set(profiles) == {"bestbuy", "walmart", "costco", "sams-club"}
    assert profiles["bestbuy"].is_active
    assert profiles["bestbuy"].slug == "best-buy"
    assert not profiles["walmart"].is_active
    assert profiles["costco"].is_scraping
    assert profiles["sams-club"].rate_limit.requests_per_minute == 2


def live_signal(**overrides):
    values = dict(
        product_id="p1",
        retailer_id="r1",
        signal_type="url_live",
        signal_value="https://a/1",
        source="url-candidate-checker",
        confidence=85,
    )
    values.update(overrides)
    return DropSignal(**values)


def test_dedupe_key_depends_on_value():
    key = dedupe_key(live_signal())
    assert key.startswith("dropsig:p1:r1:url_live:")
    assert len(key.rsplit(":", 1)[1]) == 10
    assert key != dedupe_key(live_signal(signal_value="https://a/2"))
    assert dedupe_key(live_signal(signal_value={"b": 1, "a": 2})) == dedupe_key(
        live_signal(signal_value={"a": 2, "b": 1})
    )


@pytest.mark.asyncio
async def test_publish_deduplicates_within_window(session_factory):
    redis_client = FakeRedis()
    publisher = DropSignalPublisher(session_factory, redis_client=redis_client, dedupe_ttl_seconds=600)

    assert await publisher.publish(live_signal()) is True
    assert await publisher.publish(live_signal()) is False
    assert await publisher.publish(live_signal(signal_value="https://a/2")) is True
    assert redis_client.ttls[dedupe_key(live_signal())] == 600

    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(DropEvent))
        event = (await session.execute(select(DropEvent).order_by(DropEvent.id))).scalars().first()
    assert count == 2
    assert event.signal_value == "https://a/1"
    assert event.confidence == 85
    assert event.source == "url-candidate-checker"


@pytest.mark.asyncio
async def test_publish_without_redis_records_every_signal(session_factory):
    publisher = DropSignalPublisher(session_factory)
    assert await publisher.publish(live_signal()) is True
    assert await publisher.publish(live_signal()) is True


@pytest.mark.asyncio
async def test_publish_when_redis_down_still_records(session_factory):
    publisher = DropSignalPublisher(session_factory, redis_client=FakeRedis(fail=True))
    assert await publisher.publish(live_signal()) is True


@pytest.mark.asyncio
async def test_first_seen_recorded_once(session_factory):
    publisher = DropSignalPublisher(session_factory)
    first = datetime(2024, 5, 1, 9, 0, 0)

    assert await publisher.record_first_seen("p1", "r1", first) is True
    assert await publisher.record_first_seen("p1", "r1", first + timedelta(hours=1)) is False
    assert await publisher.record_first_seen("p1", "r2") is True

    async with session_factory() as session:
        outcome = (await session.execute(
            select(DropOutcome).where(DropOutcome.retailer_id == "r1")
        )).scalar_one()
    assert outcome.first_seen_at == first
