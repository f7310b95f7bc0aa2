"""
Indexer bookkeeping tables: factory cursor, kick inbox, benign error rollup.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import String, Integer, BigInteger, Date, DateTime, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel


FACTORY_CURSOR_ID = 1


class FactoryCursor(BaseModel):
    """Single row holding the last processed factory change sequence."""

    __tablename__ = "indexer_factory_cursor"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=FACTORY_CURSOR_ID)
    last_seq: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        comment="Highest factory change sequence already applied"
    )

    def __repr__(self) -> str:
        return f"<FactoryCursor(last_seq={self.last_seq})>"


class IndexerKick(BaseModel):
    """Pending request to refresh a mission, written by external collaborators."""

    __tablename__ = "indexer_kicks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mission_address: Mapped[str] = mapped_column(String(42))
    tx_hash: Mapped[Optional[str]] = mapped_column(
        String(66),
        nullable=True,
        comment="Transaction that caused the kick, echoed back in the push"
    )
    event_type: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Free-form label, e.g. Enrolled or BankAttempt"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now()
    )

    __table_args__ = (
        Index("ix_indexer_kicks_mission", "mission_address"),
    )

    def __repr__(self) -> str:
        return f"<IndexerKick(id={self.id}, mission={self.mission_address}, event={self.event_type})>"


class BenignErrorRollup(BaseModel):
    """Daily count of benign provider errors per operation kind and code."""

    __tablename__ = "indexer_benign_errors"

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    error_key: Mapped[str] = mapped_column(
        String(96),
        primary_key=True,
        comment="{operation-kind}.{http-code}"
    )
    count: Mapped[int] = mapped_column(BigInteger, default=0)

    def __repr__(self) -> str:
        return f"<BenignErrorRollup(day={self.day}, key={self.error_key}, count={self.count})>"
