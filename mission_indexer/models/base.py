"""
Declarative base, shared mixins and column types for all models.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    """Declarative base for the indexer schema."""


class BaseModel(Base):
    """Abstract base for all indexer tables."""

    __abstract__ = True


class TimestampMixin:
    """Row bookkeeping timestamps (database clock)."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        comment="Row creation time"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        comment="Last row update time"
    )


class WeiAmount(TypeDecorator):
    """
    Unsigned 256-bit on-chain amount.

    NUMERIC(78,0) on PostgreSQL, decimal text everywhere else so the value is
    never squeezed through a float. Python code always sees ``int``.
    """

    impl = String(80)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(78, 0))
        return dialect.type_descriptor(String(80))

    def process_bind_param(self, value: Optional[int], dialect) -> Any:
        if value is None:
            return None
        if dialect.name == "postgresql":
            return Decimal(int(value))
        return str(int(value))

    def process_result_value(self, value: Any, dialect) -> Optional[int]:
        if value is None:
            return None
        return int(value)
