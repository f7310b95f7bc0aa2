"""
Database models for the mission indexer.

Contains SQLAlchemy models that mirror the on-chain mission state
plus the indexer's own bookkeeping tables.
"""

from .base import Base, BaseModel, TimestampMixin, WeiAmount
from .mission import Mission, Player, MissionRound, MissionStatusHistory
from .indexer_state import (
    FactoryCursor, IndexerKick, BenignErrorRollup, FACTORY_CURSOR_ID
)

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "WeiAmount",
    "Mission",
    "Player",
    "MissionRound",
    "MissionStatusHistory",
    "FactoryCursor",
    "IndexerKick",
    "BenignErrorRollup",
    "FACTORY_CURSOR_ID",
]
