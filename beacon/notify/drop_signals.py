"""Drop signal publishing with short-lived deduplication."""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import redis.asyncio as redis
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from beacon import metrics
from beacon.config import settings
from beacon.db.models import DropEvent, DropOutcome

logger = logging.getLogger(__name__)


@dataclass
class DropSignal:
    product_id: str
    retailer_id: str
    signal_type: str  # url_live, in_stock, price_present, status_change
    signal_value: Any = None
    source: str = "drop-signal-service"
    confidence: Optional[int] = None  # 0-100
    observed_at: datetime = field(default_factory=datetime.utcnow)


def _value_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


def dedupe_key(signal: DropSignal) -> str:
    """``dropsig:<product>:<retailer>:<type>:<sha1(value)[:10]>``"""
    value_hash = hashlib.sha1((_value_text(signal.signal_value) or "").encode()).hexdigest()[:10]
    return f"dropsig:{signal.product_id}:{signal.retailer_id}:{signal.signal_type}:{value_hash}"


class DropSignalPublisher:
    """
    Records drop signals as ``drop_events`` rows.

    An identical signal (same product, retailer, type and value) is published
    at most once per dedupe window. Without Redis every signal is recorded.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_url: Optional[str] = None,
        redis_client=None,
        dedupe_ttl_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.redis_url = redis_url
        self._redis = redis_client
        self.dedupe_ttl_seconds = dedupe_ttl_seconds or settings.drop_signal_dedupe_ttl_seconds

    async def _get_redis(self) -> Optional[redis.Redis]:
        if self._redis is None and self.redis_url:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        if self._redis is not None:
            await self._redis.close()
            self._redis = None

    async def _claim(self, signal: DropSignal) -> bool:
        """True if this signal has not been seen inside the dedupe window."""
        try:
            client = await self._get_redis()
            if client is None:
                return True
            claimed = await client.set(dedupe_key(signal), "1", ex=self.dedupe_ttl_seconds, nx=True)
            return bool(claimed)
        except redis.RedisError as e:
            logger.debug(f"Drop signal dedupe unavailable, publishing anyway: {e}")
            return True

    async def publish(self, signal: DropSignal) -> bool:
        """
        Publish a drop signal.

        Returns:
            True if a new event was recorded, False when deduplicated or when
            the insert failed
        """
        if not await self._claim(signal):
            metrics.record_drop_signal(signal.signal_type, published=False)
            return False

        try:
            async with self.session_factory() as session:
                session.add(DropEvent(
                    product_id=signal.product_id,
                    retailer_id=signal.retailer_id,
                    signal_type=signal.signal_type,
                    signal_value=_value_text(signal.signal_value),
                    source=signal.source,
                    confidence=signal.confidence,
                    observed_at=signal.observed_at,
                ))
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(
                f"Failed to publish drop signal {signal.signal_type} for "
                f"{signal.product_id}@{signal.retailer_id}: {e}"
            )
            metrics.record_drop_signal(signal.signal_type, published=False)
            return False

        logger.info(
            f"Drop signal recorded: {signal.signal_type} "
            f"product={signal.product_id} retailer={signal.retailer_id}"
        )
        metrics.record_drop_signal(signal.signal_type, published=True)
        return True

    async def record_first_seen(
        self,
        product_id: str,
        retailer_id: str,
        seen_at: Optional[datetime] = None,
    ) -> bool:
        """
        Remember the first time a product was purchasable at a retailer.

        Returns:
            True if this call created the record
        """
        async with self.session_factory() as session:
            existing = await session.execute(
                select(DropOutcome.id).where(
                    DropOutcome.product_id == product_id,
                    DropOutcome.retailer_id == retailer_id,
                )
            )
            if existing.scalar_one_or_none() is not None:
                return False
            session.add(DropOutcome(
                product_id=product_id,
                retailer_id=retailer_id,
                first_seen_at=seen_at or datetime.utcnow(),
            ))
            try:
                await session.commit()
            except IntegrityError:
                # Another worker recorded it first
                await session.rollback()
                return False
            return True
