"""Relational layout of a persisted ledger.

Amounts are stored as decimal strings: fixed-point values routinely exceed
64-bit integer columns.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class LedgerMeta(Base):
    """Singleton table with instance configuration and the snapshot manifest.

    Always contains exactly one row (id=1).
    """

    __tablename__ = "ledger_meta"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        default=1,
        comment="Singleton row (always id=1)",
    )
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False)
    operator: Mapped[str] = mapped_column(String, nullable=False)
    fee_rate_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    current_round: Mapped[int] = mapped_column(Integer, nullable=False)
    fee_watermark: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Last round whose fees were resolved by a withdrawal",
    )
    content_hash: Mapped[str] = mapped_column(String, nullable=False)
    transport_hash: Mapped[str] = mapped_column(String, nullable=False, default="")
    transport_kind: Mapped[str | None] = mapped_column(
        String,
        comment="Kind of the in-process transport whose balances are stored; NULL if none",
    )
    custody_account: Mapped[str | None] = mapped_column(String)
    signer_hotkey: Mapped[str] = mapped_column(String, nullable=False, default="")
    signature: Mapped[str] = mapped_column(String, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class BettingRound(Base):
    """Append-only, round-indexed aggregates."""

    __tablename__ = "betting_round"

    round_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    betting_open: Mapped[bool] = mapped_column(Boolean, nullable=False)
    settled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    winning_side: Mapped[str | None] = mapped_column(String(1))
    total_staked_a: Mapped[str] = mapped_column(String, nullable=False, default="0")
    total_staked_b: Mapped[str] = mapped_column(String, nullable=False, default="0")
    total_fees: Mapped[str] = mapped_column(String, nullable=False, default="0")
    payout_ratio: Mapped[str | None] = mapped_column(String, comment="Fixed-point, base 1e18")
    fees_claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class Stake(Base):
    """Per (round, account) position."""

    __tablename__ = "stake"

    round_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("betting_round.round_id"), primary_key=True,
    )
    account: Mapped[str] = mapped_column(String, primary_key=True)
    net_amount: Mapped[str] = mapped_column(String, nullable=False, default="0")
    side: Mapped[str | None] = mapped_column(String(1))
    has_participated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class ClaimWatermark(Base):
    """Per-account claim cursor."""

    __tablename__ = "claim_watermark"

    account: Mapped[str] = mapped_column(String, primary_key=True)
    round_id: Mapped[int] = mapped_column(Integer, nullable=False)


class TransportAccount(Base):
    """Per-account balance and allowance held by the in-process transport."""

    __tablename__ = "transport_account"

    account: Mapped[str] = mapped_column(String, primary_key=True)
    balance: Mapped[str] = mapped_column(String, nullable=False, default="0")
    allowance: Mapped[str] = mapped_column(String, nullable=False, default="0")


__all__ = ["BettingRound", "ClaimWatermark", "LedgerMeta", "Stake", "TransportAccount"]
