"""Round-based pari-mutuel settlement and claim engine.

One ParimutuelLedger owns one LedgerState. Lifecycle per round:
  open --close_betting--> closed --settle_bet--> settled --start_new_round--> next round

Settlement writes a single payout ratio per round. Participants (and the
operator, for fees) later drain their backlog lazily: a claim walks from the
caller's watermark up to the first unsettled round, so its cost is bounded by
the number of rounds since the last claim, never by the number of stakers.

All mutating calls run under one lock per instance. Value leaves the ledger
only as the last step of a call, after bookkeeping; if the transport refuses,
the bookkeeping is restored exactly and TransferFailed is raised.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

import bittensor as bt

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
    DepositReceipt,
    LedgerState,
    RoundState,
    SettlementResult,
    Side,
    StakeRecord,
)
from .settlement import ratio_for_round, split_fee, stake_payout
from .transport import ValueTransport


def _acct(account: str | None) -> str:
    """Truncate account ids for log readability."""
    if not account:
        return "none"
    return account[:16]


@dataclass
class _BacklogPlan:
    """Result of walking a backlog without touching state."""

    rounds: list[int] = field(default_factory=list)
    total: int = 0
    # Last round the walk fully resolved (settled and inspected)
    resolved_through: int = 0


class ParimutuelLedger:
    """Settlement and claim engine for one betting instance."""

    def __init__(
        self,
        operator: str,
        fee_rate_bps: int,
        transport: ValueTransport,
        state: LedgerState | None = None,
    ):
        if not 0 <= fee_rate_bps <= BPS_DENOMINATOR:
            raise InvalidFeeRate(f"fee rate must be within 0..{BPS_DENOMINATOR} bps, got {fee_rate_bps}")
        if state is None:
            state = LedgerState(operator=operator, fee_rate_bps=fee_rate_bps)
        elif state.operator != operator or state.fee_rate_bps != fee_rate_bps:
            raise ValueError("restored state does not match operator/fee configuration")

        self.transport = transport
        self._state = state
        self._lock = threading.RLock()
        self._depth = 0

    @classmethod
    def from_state(cls, state: LedgerState, transport: ValueTransport) -> ParimutuelLedger:
        """Rebuild a ledger around a previously persisted state."""
        return cls(
            operator=state.operator,
            fee_rate_bps=state.fee_rate_bps,
            transport=transport,
            state=state,
        )

    # -- Serialization --

    @contextmanager
    def _mutation(self, operation: str) -> Iterator[None]:
        """Single-writer section. Same-thread nesting is a re-entrant call."""
        with self._lock:
            if self._depth:
                bt.logging.warning({"ledger_engine": {"event": "reentrant_call_rejected", "operation": operation}})
                raise ReentrantCall(f"{operation} called while another ledger operation is in progress")
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1

    def _require_operator(self, caller: str, operation: str) -> None:
        if caller != self._state.operator:
            bt.logging.warning({"ledger_engine": {"event": "unauthorized", "operation": operation, "caller": _acct(caller)}})
            raise Unauthorized(f"{operation} is restricted to the operator")

    # -- Queries --

    @property
    def operator(self) -> str:
        return self._state.operator

    @property
    def fee_rate_bps(self) -> int:
        return self._state.fee_rate_bps

    @property
    def current_round(self) -> int:
        return self._state.current_round

    @property
    def fee_watermark(self) -> int:
        return self._state.fee_watermark

    def get_round(self, round_id: int) -> RoundState:
        with self._lock:
            rnd = self._state.rounds.get(round_id)
            if rnd is None:
                raise UnknownRound(f"round {round_id} does not exist")
            return rnd.model_copy()

    def get_stake(self, round_id: int, account: str) -> StakeRecord:
        with self._lock:
            stake = self._state.stakes.get(round_id, {}).get(account)
            return stake.model_copy() if stake is not None else StakeRecord()

    def has_claimed(self, round_id: int, account: str) -> bool:
        return self.get_stake(round_id, account).claimed

    def fees_claimed(self, round_id: int) -> bool:
        return self.get_round(round_id).fees_claimed

    def payout_ratio(self, round_id: int) -> int | None:
        return self.get_round(round_id).payout_ratio

    def last_claimed_round(self, account: str) -> int:
        with self._lock:
            return self._state.claim_watermarks.get(account, 0)

    def pending_winnings(self, account: str) -> int:
        """What claim_all_winnings would pay right now."""
        with self._lock:
            return self._plan_claim(account).total

    def pending_fees(self) -> int:
        with self._lock:
            return self._plan_fees().total

    def snapshot(self) -> LedgerState:
        """Deep copy of the full state, safe to serialize outside the lock."""
        with self._lock:
            return self._state.model_copy(deep=True)

    # -- Round lifecycle --

    def close_betting(self, caller: str) -> int:
        """Stop deposits on the current round. Repeated calls are no-ops."""
        with self._mutation("close_betting"):
            self._require_operator(caller, "close_betting")
            round_id = self._state.current_round
            self._state.rounds[round_id].betting_open = False
            bt.logging.info({"ledger_engine": {"event": "betting_closed", "round": round_id}})
            return round_id

    def settle_bet(self, caller: str, winning_side: Side | str) -> SettlementResult:
        """Resolve the current round and store its payout ratio."""
        side = Side(winning_side)
        with self._mutation("settle_bet"):
            self._require_operator(caller, "settle_bet")
            round_id = self._state.current_round
            rnd = self._state.rounds[round_id]
            if rnd.settled:
                raise AlreadySettled(f"round {round_id} is already settled")

            ratio = ratio_for_round(rnd, side)
            rnd.winning_side = side
            rnd.payout_ratio = ratio
            rnd.settled = True
            rnd.betting_open = False

            bt.logging.info({
                "ledger_engine": {
                    "event": "round_settled",
                    "round": round_id,
                    "winning_side": side.value,
                    "pool_a": rnd.total_staked_a,
                    "pool_b": rnd.total_staked_b,
                    "payout_ratio": str(ratio),
                }
            })
            return SettlementResult(round_id=round_id, winning_side=side, payout_ratio=ratio)

    def start_new_round(self, caller: str) -> int:
        """Open round ``current_round + 1``. The current round must be settled."""
        with self._mutation("start_new_round"):
            self._require_operator(caller, "start_new_round")
            previous = self._state.current_round
            if not self._state.rounds[previous].settled:
                raise PrecedingRoundNotSettled(f"round {previous} is not settled yet")

            round_id = previous + 1
            self._state.rounds[round_id] = RoundState()
            self._state.current_round = round_id
            bt.logging.info({"ledger_engine": {"event": "round_started", "round": round_id}})
            return round_id

    # -- Deposits --

    def deposit(self, caller: str, side: Side | str, amount: int) -> DepositReceipt:
        """Stake ``amount`` on ``side`` of the current round.

        The transport collects the full amount before anything is booked; the
        fee is split off and the net amount goes to the caller's stake and the
        side pool.
        """
        side = Side(side)
        with self._mutation("deposit"):
            if amount <= 0:
                raise ZeroAmount("deposit amount must be positive")

            round_id = self._state.current_round
            rnd = self._state.rounds[round_id]
            if not rnd.betting_open:
                raise RoundClosed(f"betting on round {round_id} is closed")

            existing = self._state.stakes.get(round_id, {}).get(caller)
            if existing is not None and existing.net_amount > 0 and existing.side != side:
                raise SideMismatch(
                    f"{_acct(caller)} already backs side {existing.side.value} in round {round_id}"
                )

            self.transport.collect(caller, amount)

            fee, net = split_fee(amount, self._state.fee_rate_bps)
            stake = self._state.stakes.setdefault(round_id, {}).setdefault(caller, StakeRecord())
            stake.net_amount += net
            stake.side = side
            stake.has_participated = True
            rnd.add_to_pool(side, net)
            rnd.total_fees += fee

            bt.logging.info({
                "ledger_engine": {
                    "event": "deposit",
                    "round": round_id,
                    "account": _acct(caller),
                    "side": side.value,
                    "amount": amount,
                    "fee": fee,
                }
            })
            return DepositReceipt(
                round_id=round_id, account=caller, side=side,
                amount=amount, fee=fee, net=net,
            )

    # -- Claims --

    def _plan_claim(self, account: str) -> _BacklogPlan:
        watermark = self._state.claim_watermarks.get(account, 0)
        plan = _BacklogPlan(resolved_through=watermark)

        for round_id in range(watermark + 1, self._state.current_round + 1):
            rnd = self._state.rounds[round_id]
            # Rounds settle in order: nothing past an unsettled round is settled
            if not rnd.settled:
                break
            plan.resolved_through = round_id

            stake = self._state.stakes.get(round_id, {}).get(account)
            if stake is None or stake.claimed or stake.net_amount == 0:
                continue

            payout = stake_payout(rnd, stake)
            if payout > 0:
                plan.rounds.append(round_id)
                plan.total += payout

        return plan

    def claim_all_winnings(self, caller: str) -> int:
        """Pay out everything the caller is owed across all settled rounds.

        Returns the amount paid. Raises NothingToClaim when nothing is owed.
        """
        with self._mutation("claim_all_winnings"):
            plan = self._plan_claim(caller)
            if plan.total == 0:
                raise NothingToClaim(f"nothing to claim for {_acct(caller)}")

            stakes = self._state.stakes
            had_watermark = caller in self._state.claim_watermarks
            previous_watermark = self._state.claim_watermarks.get(caller, 0)

            for round_id in plan.rounds:
                stakes[round_id][caller].claimed = True
            self._state.claim_watermarks[caller] = plan.resolved_through

            def _restore() -> None:
                for round_id in plan.rounds:
                    stakes[round_id][caller].claimed = False
                if had_watermark:
                    self._state.claim_watermarks[caller] = previous_watermark
                else:
                    self._state.claim_watermarks.pop(caller, None)

            self._pay_or_restore(caller, plan.total, _restore, "claim_all_winnings")

            bt.logging.info({
                "ledger_engine": {
                    "event": "winnings_claimed",
                    "account": _acct(caller),
                    "rounds": plan.rounds,
                    "paid": plan.total,
                    "watermark": plan.resolved_through,
                }
            })
            return plan.total

    # -- Fees --

    def _plan_fees(self) -> _BacklogPlan:
        watermark = self._state.fee_watermark
        plan = _BacklogPlan(resolved_through=watermark)

        for round_id in range(watermark + 1, self._state.current_round + 1):
            rnd = self._state.rounds[round_id]
            if not rnd.settled:
                break
            plan.resolved_through = round_id
            if rnd.fees_claimed:
                continue
            # Zero-fee rounds are marked too so they are never revisited
            plan.rounds.append(round_id)
            plan.total += rnd.total_fees

        return plan

    def withdraw_all_fees(self, caller: str) -> int:
        """Pay the operator all fees of settled, not yet withdrawn rounds."""
        with self._mutation("withdraw_all_fees"):
            self._require_operator(caller, "withdraw_all_fees")
            plan = self._plan_fees()
            if plan.total == 0:
                raise NoFeesToWithdraw("no settled fees to withdraw")

            rounds = self._state.rounds
            previous_watermark = self._state.fee_watermark

            for round_id in plan.rounds:
                rounds[round_id].fees_claimed = True
            self._state.fee_watermark = plan.resolved_through

            def _restore() -> None:
                for round_id in plan.rounds:
                    rounds[round_id].fees_claimed = False
                self._state.fee_watermark = previous_watermark

            self._pay_or_restore(caller, plan.total, _restore, "withdraw_all_fees")

            bt.logging.info({
                "ledger_engine": {
                    "event": "fees_withdrawn",
                    "rounds": plan.rounds,
                    "paid": plan.total,
                    "watermark": plan.resolved_through,
                }
            })
            return plan.total

    def _pay_or_restore(self, account: str, amount: int, restore, operation: str) -> None:
        try:
            self.transport.pay(account, amount)
        except LedgerError as e:
            restore()
            bt.logging.error({"ledger_engine": {"event": "payout_failed", "operation": operation, "account": _acct(account), "error": e.code}})
            raise
        except Exception as e:
            restore()
            bt.logging.error({"ledger_engine": {"event": "payout_failed", "operation": operation, "account": _acct(account), "error": str(e)}})
            raise TransferFailed(str(e)) from e


__all__ = ["ParimutuelLedger"]
