"""Ledger rejection taxonomy.

Every error rejects the current call as a whole: the ledger is left exactly
as it was before the call. None of them is retried internally.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all ledger rejections."""

    code = "ledger_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ZeroAmount(LedgerError):
    """Deposit with nothing attached."""

    code = "zero_amount"


class RoundClosed(LedgerError):
    """Deposit while betting on the current round is closed."""

    code = "round_closed"


class SideMismatch(LedgerError):
    """Deposit on the other side than the caller's existing stake this round."""

    code = "side_mismatch"


class PrecedingRoundNotSettled(LedgerError):
    """New round requested while the current round is unsettled."""

    code = "preceding_round_not_settled"


class AlreadySettled(LedgerError):
    code = "already_settled"


class NothingToClaim(LedgerError):
    code = "nothing_to_claim"


class NoFeesToWithdraw(LedgerError):
    code = "no_fees_to_withdraw"


class TransferFailed(LedgerError):
    """The value transport refused to move funds."""

    code = "transfer_failed"


class Unauthorized(LedgerError):
    """Privileged operation called by someone other than the operator."""

    code = "unauthorized"


class ReentrantCall(LedgerError):
    """Mutating call issued while another one on the same ledger is in flight."""

    code = "reentrant_call"


class UnknownRound(LedgerError):
    code = "unknown_round"


class InvalidFeeRate(LedgerError):
    code = "invalid_fee_rate"


ERRORS_BY_CODE: dict[str, type[LedgerError]] = {
    cls.code: cls
    for cls in (
        ZeroAmount,
        RoundClosed,
        SideMismatch,
        PrecedingRoundNotSettled,
        AlreadySettled,
        NothingToClaim,
        NoFeesToWithdraw,
        TransferFailed,
        Unauthorized,
        ReentrantCall,
        UnknownRound,
        InvalidFeeRate,
    )
}


__all__ = [
    "ERRORS_BY_CODE",
    "AlreadySettled",
    "InvalidFeeRate",
    "LedgerError",
    "NoFeesToWithdraw",
    "NothingToClaim",
    "PrecedingRoundNotSettled",
    "ReentrantCall",
    "RoundClosed",
    "SideMismatch",
    "TransferFailed",
    "Unauthorized",
    "UnknownRound",
    "ZeroAmount",
]
