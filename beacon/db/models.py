"""SQLAlchemy database models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Retailer(Base):
    """Retailer lookup row (id -> slug)."""

    __tablename__ = "retailers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    slug: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    integration_type: Mapped[str] = mapped_column(String(16), default="scraping", nullable=False)
    base_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    candidates: Mapped[list["UrlCandidate"]] = relationship(
        "UrlCandidate", back_populates="retailer"
    )


class UrlCandidate(Base):
    """Unverified product URL hypothesised for a product/retailer pair."""

    __tablename__ = "url_candidates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    retailer_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("retailers.id"), nullable=False
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="unknown", nullable=False)
    score: Mapped[Optional[float]] = mapped_column(Float, default=0.5, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    retailer: Mapped["Retailer"] = relationship("Retailer", back_populates="candidates")

    __table_args__ = (
        CheckConstraint(
            "status IN ('unknown', 'valid', 'live', 'invalid')",
            name="ck_url_candidate_status",
        ),
        CheckConstraint(
            "score IS NULL OR (score >= 0 AND score <= 1)",
            name="ck_url_candidate_score_range",
        ),
        UniqueConstraint("product_id", "retailer_id", "url", name="uq_url_candidate"),
    )


class DropEvent(Base):
    """Signal emitted downstream (e.g. a candidate URL went live)."""

    __tablename__ = "drop_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    retailer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    signal_type: Mapped[str] = mapped_column(String(32), nullable=False)
    signal_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    confidence: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    observed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class DropOutcome(Base):
    """First time a product was seen purchasable at a retailer."""

    __tablename__ = "drop_outcomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    retailer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("product_id", "retailer_id", name="uq_drop_outcome_product_retailer"),
    )
