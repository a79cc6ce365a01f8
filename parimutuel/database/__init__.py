"""SQLAlchemy schema for persisted ledgers."""

from .base import Base
from .schema import BettingRound, ClaimWatermark, LedgerMeta, Stake, TransportAccount

__all__ = ["Base", "BettingRound", "ClaimWatermark", "LedgerMeta", "Stake", "TransportAccount"]
