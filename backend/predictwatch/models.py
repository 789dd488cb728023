from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class Site(Base):
    __tablename__ = "sites"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    base_url: Mapped[str] = mapped_column(String, nullable=False)
    platform_key: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    sections: Mapped[list["Section"]] = relationship(
        "Section", back_populates="site", cascade="all, delete-orphan"
    )


class Section(Base):
    __tablename__ = "sections"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    site_id: Mapped[str] = mapped_column(
        String, ForeignKey("sites.id", ondelete="CASCADE"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    url_or_slug: Mapped[str | None] = mapped_column(String, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    site: Mapped[Site] = relationship("Site", back_populates="sections")
    events: Mapped[list["CachedEvent"]] = relationship(
        "CachedEvent", back_populates="section", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("site_id", "external_id", name="uq_section_site_external"),
    )


class CachedEvent(Base):
    __tablename__ = "event_cache"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    site_id: Mapped[str] = mapped_column(
        String, ForeignKey("sites.id", ondelete="CASCADE"), nullable=False
    )
    section_id: Mapped[str] = mapped_column(
        String, ForeignKey("sections.id", ondelete="CASCADE"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    next_trading_close_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    volume: Mapped[float | None] = mapped_column(Float, nullable=True)
    liquidity: Mapped[float | None] = mapped_column(Float, nullable=True)
    outcomes: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    raw: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    section: Mapped[Section] = relationship("Section", back_populates="events")
    site: Mapped[Site] = relationship("Site")
    markets: Mapped[list["CachedMarket"]] = relationship(
        "CachedMarket", back_populates="event", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint(
            "site_id", "section_id", "external_id", name="uq_event_cache_scope"
        ),
        Index("ix_event_cache_site_external", "site_id", "external_id"),
    )


class CachedMarket(Base):
    __tablename__ = "market_cache"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    event_cache_id: Mapped[str] = mapped_column(
        String, ForeignKey("event_cache.id", ondelete="CASCADE"), nullable=False
    )
    site_id: Mapped[str] = mapped_column(
        String, ForeignKey("sites.id", ondelete="CASCADE"), nullable=False
    )
    section_id: Mapped[str] = mapped_column(
        String, ForeignKey("sections.id", ondelete="CASCADE"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str | None] = mapped_column(String, nullable=True)
    close_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_trading_close_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    settlement_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    volume: Mapped[float | None] = mapped_column(Float, nullable=True)
    liquidity: Mapped[float | None] = mapped_column(Float, nullable=True)
    outcomes: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    raw: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    event: Mapped[CachedEvent] = relationship("CachedEvent", back_populates="markets")

    __table_args__ = (
        UniqueConstraint(
            "site_id", "event_cache_id", "external_id", name="uq_market_cache_scope"
        ),
    )
