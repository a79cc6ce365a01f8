"""Value transport: how stakes come in and payouts go out.

The ledger's accounting never touches balances directly. It asks a
ValueTransport to collect a deposit from a caller and to pay a claim out.
Two adapters:
- NativeTransport: the value travels with the call itself
- TokenTransport: a fungible token pulled through a prior allowance
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import bittensor as bt

from .errors import TransferFailed
from .models import TransportState


@runtime_checkable
class ValueTransport(Protocol):
    """Capability the ledger uses to move value."""

    kind: str

    def collect(self, account: str, amount: int) -> None:
        """Move ``amount`` from ``account`` into ledger custody."""
        ...

    def pay(self, account: str, amount: int) -> None:
        """Move ``amount`` from ledger custody to ``account``."""
        ...

    def balance_of(self, account: str) -> int:
        ...

    def dump_state(self) -> TransportState:
        """Balances to persist alongside the ledger state."""
        ...

    def load_state(self, state: TransportState) -> None:
        """Replace all balances with a persisted copy."""
        ...


class _BalanceBook:
    """In-process balance table shared by both adapters."""

    kind = "abstract"

    def __init__(self, custody_account: str = "ledger"):
        self.custody_account = custody_account
        self._balances: dict[str, int] = {}

    def balance_of(self, account: str) -> int:
        return self._balances.get(account, 0)

    @property
    def custody_balance(self) -> int:
        return self.balance_of(self.custody_account)

    def mint(self, account: str, amount: int) -> None:
        """Credit ``account`` out of thin air (faucet / test funding)."""
        if amount < 0:
            raise ValueError("mint amount must be non-negative")
        self._balances[account] = self.balance_of(account) + amount

    def _move(self, src: str, dst: str, amount: int) -> None:
        if amount < 0:
            raise TransferFailed(f"negative transfer: {amount}")
        available = self.balance_of(src)
        if available < amount:
            raise TransferFailed(
                f"insufficient {self.kind} balance: {src} has {available}, needs {amount}"
            )
        self._balances[src] = available - amount
        self._balances[dst] = self.balance_of(dst) + amount

    def pay(self, account: str, amount: int) -> None:
        self._move(self.custody_account, account, amount)
        bt.logging.debug({"value_transport": {"kind": self.kind, "pay": amount, "to": account}})

    def dump_state(self) -> TransportState:
        return TransportState(
            kind=self.kind,
            custody_account=self.custody_account,
            balances={k: v for k, v in self._balances.items() if v},
        )

    def load_state(self, state: TransportState) -> None:
        if state.kind != self.kind:
            raise ValueError(f"cannot load {state.kind} balances into a {self.kind} transport")
        self.custody_account = state.custody_account
        self._balances = dict(state.balances)


class NativeTransport(_BalanceBook):
    """Native-unit custody. The deposit amount is the value attached to the call."""

    kind = "native"

    def collect(self, account: str, amount: int) -> None:
        self._move(account, self.custody_account, amount)
        bt.logging.debug({"value_transport": {"kind": self.kind, "collect": amount, "from": account}})


class TokenTransport(_BalanceBook):
    """Fungible-token custody with pull-based deposits.

    Callers must ``approve`` the ledger before depositing; ``collect`` then
    behaves like ``transferFrom`` and consumes allowance.
    """

    kind = "token"

    def __init__(self, custody_account: str = "ledger", symbol: str = "TOKEN"):
        super().__init__(custody_account)
        self.symbol = symbol
        self._allowances: dict[str, int] = {}

    def approve(self, owner: str, amount: int) -> None:
        """Set how much the ledger may pull from ``owner``."""
        if amount < 0:
            raise ValueError("allowance must be non-negative")
        self._allowances[owner] = amount

    def allowance(self, owner: str) -> int:
        return self._allowances.get(owner, 0)

    def collect(self, account: str, amount: int) -> None:
        allowed = self.allowance(account)
        if allowed < amount:
            raise TransferFailed(
                f"insufficient allowance: {account} approved {allowed}, needs {amount}"
            )
        self._move(account, self.custody_account, amount)
        self._allowances[account] = allowed - amount
        bt.logging.debug({"value_transport": {"kind": self.kind, "collect": amount, "from": account}})

    def dump_state(self) -> TransportState:
        state = super().dump_state()
        state.allowances = {k: v for k, v in self._allowances.items() if v}
        return state

    def load_state(self, state: TransportState) -> None:
        super().load_state(state)
        self._allowances = dict(state.allowances)


__all__ = ["NativeTransport", "TokenTransport", "ValueTransport"]
