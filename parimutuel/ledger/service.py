"""Async betting service: serialized access to one ledger plus persistence.

Every mutating request takes the instance lock, runs the engine operation
and writes a snapshot before the lock is released, so snapshots never
interleave with half-applied operations. A snapshot covers the ledger state
and the transport balances that back it; the two are restored together.
Reads go straight to the engine.

Once the engine has applied an operation its effects (including any payout)
are final, so a failed snapshot write does not fail the call. The service is
marked dirty and the next mutation, or ``flush``, writes the full state.
"""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

import bittensor as bt

from .engine import ParimutuelLedger
from .models import DepositReceipt, RoundState, SettlementResult, Side, StakeRecord
from .signer import build_snapshot, verify_snapshot
from .store.interface import LedgerStore
from .transport import TokenTransport, ValueTransport


class BettingService:
    """One serialized ledger instance."""

    def __init__(
        self,
        ledger: ParimutuelLedger,
        store: LedgerStore | None = None,
        keypair: Any = None,
    ):
        self.ledger = ledger
        self.store = store
        self.keypair = keypair
        self._lock = asyncio.Lock()
        self.last_snapshot_id: str | None = None
        # True while the latest applied mutation is not in the store
        self.dirty = False

    @classmethod
    async def open(
        cls,
        operator: str,
        fee_rate_bps: int,
        transport: ValueTransport,
        store: LedgerStore | None = None,
        keypair: Any = None,
        trusted_signer: str | None = None,
        genesis_balances: Mapping[str, int] | None = None,
    ) -> BettingService:
        """Restore from the store's latest snapshot, or start a fresh ledger.

        A snapshot that fails verification (content hashes, and signature when
        ``trusted_signer`` is set), carries no transport balances, or belongs
        to another operator/fee rate/transport kind is refused rather than
        silently replaced. ``genesis_balances`` are minted only into a fresh
        ledger's transport; a restored transport gets its persisted balances.
        """
        snapshot = await store.get_latest_snapshot() if store is not None else None
        if snapshot is None:
            ledger = ParimutuelLedger(operator=operator, fee_rate_bps=fee_rate_bps, transport=transport)
            service = cls(ledger, store=store, keypair=keypair)
            if genesis_balances:
                for account, amount in genesis_balances.items():
                    transport.mint(account, amount)
                # Record the minted balances so a restart does not mint them again
                await service._persist()
            bt.logging.info({"betting_service": {"status": "fresh_ledger", "fee_rate_bps": fee_rate_bps, "genesis_accounts": len(genesis_balances or {})}})
            return service

        if not verify_snapshot(snapshot, trusted_signer):
            bt.logging.error({"betting_service": {"status": "snapshot_rejected", "round": snapshot.manifest.current_round}})
            raise ValueError("latest ledger snapshot failed verification")
        if snapshot.transport is None:
            bt.logging.error({"betting_service": {"status": "snapshot_rejected", "reason": "no_transport_state"}})
            raise ValueError("latest ledger snapshot has no transport balances to restore")

        ledger = ParimutuelLedger(
            operator=operator,
            fee_rate_bps=fee_rate_bps,
            transport=transport,
            state=snapshot.state,
        )
        transport.load_state(snapshot.transport)
        bt.logging.info({"betting_service": {"status": "restored", "round": ledger.current_round, "transport": transport.kind}})
        return cls(ledger, store=store, keypair=keypair)

    async def _persist(self) -> None:
        """Write the current state. Failures are logged and leave the service dirty."""
        if self.store is None:
            return
        self.dirty = True
        snapshot = build_snapshot(self.ledger.snapshot(), self.keypair, self.ledger.transport.dump_state())
        try:
            self.last_snapshot_id = await self.store.put_snapshot(snapshot)
        except Exception as e:
            bt.logging.error({"betting_service": {"status": "persist_failed", "round": snapshot.manifest.current_round, "error": str(e)}})
            return
        self.dirty = False

    async def flush(self) -> bool:
        """Retry a snapshot write that failed earlier. Returns True once clean."""
        async with self._lock:
            if self.dirty:
                await self._persist()
            return not self.dirty

    # -- Mutations --

    async def deposit(self, caller: str, side: Side | str, amount: int) -> DepositReceipt:
        async with self._lock:
            receipt = self.ledger.deposit(caller, side, amount)
            await self._persist()
            return receipt

    async def close_betting(self, caller: str) -> int:
        async with self._lock:
            round_id = self.ledger.close_betting(caller)
            await self._persist()
            return round_id

    async def settle_bet(self, caller: str, winning_side: Side | str) -> SettlementResult:
        async with self._lock:
            result = self.ledger.settle_bet(caller, winning_side)
            await self._persist()
            return result

    async def start_new_round(self, caller: str) -> int:
        async with self._lock:
            round_id = self.ledger.start_new_round(caller)
            await self._persist()
            return round_id

    async def claim_all_winnings(self, caller: str) -> int:
        async with self._lock:
            paid = self.ledger.claim_all_winnings(caller)
            await self._persist()
            return paid

    async def withdraw_all_fees(self, caller: str) -> int:
        async with self._lock:
            paid = self.ledger.withdraw_all_fees(caller)
            await self._persist()
            return paid

    async def approve(self, caller: str, amount: int) -> int:
        """Set the caller's token allowance. Returns the new allowance."""
        transport = self.ledger.transport
        if not isinstance(transport, TokenTransport):
            raise ValueError(f"{transport.kind} transport has no allowances")
        async with self._lock:
            transport.approve(caller, amount)
            await self._persist()
            return transport.allowance(caller)

    # -- Reads --

    def info(self) -> dict[str, Any]:
        return {
            "operator": self.ledger.operator,
            "fee_rate_bps": self.ledger.fee_rate_bps,
            "current_round": self.ledger.current_round,
            "fee_watermark": self.ledger.fee_watermark,
            "transport": self.ledger.transport.kind,
        }

    def get_round(self, round_id: int) -> RoundState:
        return self.ledger.get_round(round_id)

    def get_stake(self, round_id: int, account: str) -> StakeRecord:
        return self.ledger.get_stake(round_id, account)

    def pending(self, account: str) -> dict[str, int]:
        return {
            "pending": self.ledger.pending_winnings(account),
            "watermark": self.ledger.last_claimed_round(account),
        }


__all__ = ["BettingService"]
