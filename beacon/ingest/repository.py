"""Candidate URL persistence."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from beacon.db.models import UrlCandidate

logger = logging.getLogger(__name__)

PENDING_STATUSES = ("unknown", "valid")


@dataclass
class CandidateRecord:
    id: str
    product_id: str
    retailer_id: str
    url: str
    status: str = "unknown"
    score: Optional[float] = 0.5
    reason: Optional[str] = None
    last_checked_at: Optional[datetime] = None


@dataclass(frozen=True)
class CandidateUpdate:
    """Outcome of one check, as written back to storage."""

    status: str
    score: float
    reason: str
    checked_at: datetime


class CandidateRepository(Protocol):
    async def fetch_pending(self, limit: int) -> list[CandidateRecord]: ...

    async def save_result(self, candidate_id: str, result: CandidateUpdate) -> None: ...


class SqlCandidateRepository:
    """``url_candidates`` table through SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def fetch_pending(self, limit: int) -> list[CandidateRecord]:
        """
        Candidates still worth checking, least recently checked first.

        Rows never checked sort first; ``invalid`` and ``live`` rows are excluded.
        """
        async with self.session_factory() as session:
            stmt = (
                select(UrlCandidate)
                .where(UrlCandidate.status.in_(PENDING_STATUSES))
                .order_by(
                    func.coalesce(UrlCandidate.last_checked_at, datetime.min).asc(),
                    UrlCandidate.updated_at.asc(),
                )
                .limit(limit)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [
                CandidateRecord(
                    id=row.id,
                    product_id=row.product_id,
                    retailer_id=row.retailer_id,
                    url=row.url,
                    status=row.status,
                    score=row.score,
                    reason=row.reason,
                    last_checked_at=row.last_checked_at,
                )
                for row in rows
            ]

    async def save_result(self, candidate_id: str, result: CandidateUpdate) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(UrlCandidate)
                .where(UrlCandidate.id == candidate_id)
                .values(
                    status=result.status,
                    score=result.score,
                    reason=result.reason[:128],
                    last_checked_at=result.checked_at,
                    updated_at=result.checked_at,
                )
            )
            await session.commit()
