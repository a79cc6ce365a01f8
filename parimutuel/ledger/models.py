"""Pydantic models for the pari-mutuel round ledger.

The whole mutable ledger of one betting instance is a single LedgerState:
- rounds: append-only, round-indexed aggregate pools and settlement results
- stakes: per (round, account) net stake, side and claimed flag
- watermarks: per-account claim cursor plus one global fee cursor

Snapshots wrap a LedgerState with a signed manifest for persistence.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Fixed-point and fee constants
# ---------------------------------------------------------------------------

SCALE = 10**18
BPS_DENOMINATOR = 10_000

# Bump on breaking changes to the snapshot format
LEDGER_SCHEMA_VERSION = 1


class Side(str, Enum):
    """One of the two mutually exclusive outcomes a stake can back."""

    A = "A"
    B = "B"

    @property
    def other(self) -> Side:
        return Side.B if self is Side.A else Side.A


# ---------------------------------------------------------------------------
# Ledger records
# ---------------------------------------------------------------------------


class RoundState(BaseModel):
    """Aggregate state of one betting round.

    Pool totals are net of fee. ``payout_ratio`` and ``winning_side`` are
    written exactly once, at settlement.
    """

    betting_open: bool = True
    settled: bool = False
    winning_side: Side | None = None
    total_staked_a: int = Field(default=0, ge=0)
    total_staked_b: int = Field(default=0, ge=0)
    total_fees: int = Field(default=0, ge=0)
    payout_ratio: int | None = None
    fees_claimed: bool = False

    def pool(self, side: Side) -> int:
        return self.total_staked_a if side is Side.A else self.total_staked_b

    def add_to_pool(self, side: Side, amount: int) -> None:
        if side is Side.A:
            self.total_staked_a += amount
        else:
            self.total_staked_b += amount

    @property
    def one_sided(self) -> bool:
        """True when either side's pool is empty."""
        return self.total_staked_a == 0 or self.total_staked_b == 0


class StakeRecord(BaseModel):
    """A participant's position in one round."""

    net_amount: int = Field(default=0, ge=0)
    side: Side | None = None
    has_participated: bool = False
    claimed: bool = False


class LedgerState(BaseModel):
    """Complete mutable state of one ledger instance."""

    operator: str = Field(min_length=1)
    fee_rate_bps: int = Field(ge=0, le=BPS_DENOMINATOR)
    current_round: int = Field(default=1, ge=1)
    rounds: dict[int, RoundState] = Field(default_factory=lambda: {1: RoundState()})
    stakes: dict[int, dict[str, StakeRecord]] = Field(default_factory=dict)
    claim_watermarks: dict[str, int] = Field(default_factory=dict)
    fee_watermark: int = 0


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class DepositReceipt(BaseModel):
    """What a successful deposit booked."""

    round_id: int
    account: str
    side: Side
    amount: int
    fee: int
    net: int


class SettlementResult(BaseModel):
    """Outcome of settling a round."""

    round_id: int
    winning_side: Side
    payout_ratio: int


# ---------------------------------------------------------------------------
# Snapshots (persistence)
# ---------------------------------------------------------------------------


class SnapshotManifest(BaseModel):
    """Signed header for a persisted ledger snapshot."""

    schema_version: int = LEDGER_SCHEMA_VERSION
    current_round: int
    fee_rate_bps: int
    operator: str
    content_hash: str = Field(description="SHA256 hex digest of the serialized state")
    transport_hash: str = Field(default="", description="SHA256 hex digest of the transport balances")
    signer_hotkey: str = ""
    signature: str = ""
    created_at: datetime


class TransportState(BaseModel):
    """Balances held by an in-process value transport, custody included."""

    kind: str
    custody_account: str
    balances: dict[str, int] = Field(default_factory=dict)
    allowances: dict[str, int] = Field(default_factory=dict)


class LedgerSnapshot(BaseModel):
    """A point-in-time copy of a LedgerState, the transport balances backing
    it, and its manifest."""

    manifest: SnapshotManifest
    state: LedgerState
    transport: TransportState | None = None


__all__ = [
    "BPS_DENOMINATOR",
    "LEDGER_SCHEMA_VERSION",
    "SCALE",
    "DepositReceipt",
    "LedgerSnapshot",
    "LedgerState",
    "RoundState",
    "SettlementResult",
    "Side",
    "SnapshotManifest",
    "StakeRecord",
    "TransportState",
]
