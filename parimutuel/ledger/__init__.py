"""Round-based pari-mutuel betting ledger.

Participants stake on side A or B of the current round; the operator
settles each round with a single payout ratio, and participants claim
everything they are owed across any backlog of settled rounds in one call.
Fees are taken at deposit time and withdrawn by the operator through the
same lazy backlog walk.
"""

from .engine import ParimutuelLedger
from .errors import (
    AlreadySettled,
    InvalidFeeRate,
    LedgerError,
    NoFeesToWithdraw,
    NothingToClaim,
    PrecedingRoundNotSettled,
    ReentrantCall,
    RoundClosed,
    SideMismatch,
    TransferFailed,
    Unauthorized,
    UnknownRound,
    ZeroAmount,
)
from .models import (
    BPS_DENOMINATOR,
    SCALE,
    DepositReceipt,
    LedgerSnapshot,
    LedgerState,
    RoundState,
    SettlementResult,
    Side,
    StakeRecord,
)
from .transport import NativeTransport, TokenTransport, ValueTransport

__all__ = [
    "BPS_DENOMINATOR",
    "SCALE",
    "AlreadySettled",
    "DepositReceipt",
    "InvalidFeeRate",
    "LedgerError",
    "LedgerSnapshot",
    "LedgerState",
    "NativeTransport",
    "NoFeesToWithdraw",
    "NothingToClaim",
    "ParimutuelLedger",
    "PrecedingRoundNotSettled",
    "ReentrantCall",
    "RoundClosed",
    "RoundState",
    "SettlementResult",
    "Side",
    "SideMismatch",
    "StakeRecord",
    "TokenTransport",
    "TransferFailed",
    "Unauthorized",
    "UnknownRound",
    "ValueTransport",
    "ZeroAmount",
]
