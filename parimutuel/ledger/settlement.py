"""Payout math: one scalar ratio per settled round.

The ratio is chosen so that ``floor(net * ratio / SCALE)`` gives a winning
stake its proportional share of the whole pool (own stake plus the
redistributed losing pool). Settlement never visits individual stakes.
"""

from __future__ import annotations

from .models import BPS_DENOMINATOR, SCALE, RoundState, Side, StakeRecord


def split_fee(amount: int, fee_rate_bps: int) -> tuple[int, int]:
    """Split a deposit into (fee, net). Fee is floored."""
    fee = amount * fee_rate_bps // BPS_DENOMINATOR
    return fee, amount - fee


def compute_payout_ratio(winners_pool: int, losers_pool: int) -> int:
    """Fixed-point payout multiplier for the winning side.

    Either pool being empty yields the neutral ratio ``SCALE`` (1:1).
    """
    if winners_pool == 0 or losers_pool == 0:
        return SCALE
    return (winners_pool + losers_pool) * SCALE // winners_pool


def ratio_for_round(rnd: RoundState, winning_side: Side) -> int:
    return compute_payout_ratio(rnd.pool(winning_side), rnd.pool(winning_side.other))


def stake_payout(rnd: RoundState, stake: StakeRecord) -> int:
    """What a stake is owed from a settled round.

    The neutral ratio covers two cases that pay differently:
    - one-sided round (either pool empty): every staker is refunded in full,
      including when nobody backed the winning side
    - otherwise only winners get their stake back
    """
    if not rnd.settled or rnd.payout_ratio is None or stake.net_amount == 0:
        return 0

    won = stake.side == rnd.winning_side
    if rnd.payout_ratio == SCALE:
        if rnd.one_sided or won:
            return stake.net_amount
        return 0

    if not won:
        return 0
    return stake.net_amount * rnd.payout_ratio // SCALE


__all__ = ["compute_payout_ratio", "ratio_for_round", "split_fee", "stake_payout"]
