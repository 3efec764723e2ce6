"""
Rate Limit Tables
=================
ORM models for the durable counter and block records.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ..database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CounterEntry(Base):
    """One counter window for an identifier, endpoint and rule bucket."""

    __tablename__ = "rate_limit_counters"
    __table_args__ = (
        UniqueConstraint("identifier", "endpoint", "bucket", name="uq_rate_limit_counter"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identifier: Mapped[str] = mapped_column(String(255), index=True)
    endpoint: Mapped[str] = mapped_column(String(255), index=True)
    bucket: Mapped[str] = mapped_column(String(255))  # config key + rule index
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class BlockEntry(Base):
    """Penalty-box record; dead once ``block_until`` has passed."""

    __tablename__ = "rate_limit_blocks"

    identifier: Mapped[str] = mapped_column(String(255), primary_key=True)
    block_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    blocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    config_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
