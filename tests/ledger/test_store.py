"""Tests for the filesystem and SQL snapshot stores."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from parimutuel.ledger.engine import ParimutuelLedger
from parimutuel.ledger.models import SCALE, Side
from parimutuel.ledger.signer import build_snapshot, verify_snapshot
from parimutuel.ledger.store.filesystem import FilesystemStore
from parimutuel.ledger.store.interface import LedgerStore
from parimutuel.ledger.store.sql import SqlStore
from parimutuel.ledger.transport import NativeTransport, TokenTransport

OPERATOR = "operator_hk"


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as d:
        yield d


def _played_ledger() -> ParimutuelLedger:
    """Two settled rounds, one claim, one open round with a stake."""
    t = NativeTransport()
    big = 10**30
    for account in ("alice", "bob"):
        t.mint(account, 2 * big)
    ledger = ParimutuelLedger(OPERATOR, 500, t)
    ledger.deposit("alice", Side.A, big)
    ledger.deposit("bob", Side.B, 3)
    ledger.settle_bet(OPERATOR, Side.B)
    ledger.start_new_round(OPERATOR)
    ledger.deposit("alice", Side.B, 100)
    ledger.settle_bet(OPERATOR, Side.A)
    ledger.start_new_round(OPERATOR)
    ledger.claim_all_winnings("bob")
    ledger.deposit("bob", Side.A, 100)
    return ledger


@pytest.mark.asyncio
class TestFilesystemStore:

    async def test_put_and_get_latest(self, tmp_dir):
        store = FilesystemStore(data_dir=tmp_dir)
        state = _played_ledger().snapshot()
        snapshot_id = await store.put_snapshot(build_snapshot(state))

        assert snapshot_id.startswith("r00000003_")
        loaded = await store.get_latest_snapshot()
        assert loaded is not None
        assert loaded.state == state
        assert verify_snapshot(loaded)

    async def test_empty_store(self, tmp_dir):
        store = FilesystemStore(data_dir=tmp_dir)
        assert await store.get_latest_snapshot() is None
        assert await store.list_snapshots() == []

    async def test_latest_wins(self, tmp_dir):
        store = FilesystemStore(data_dir=tmp_dir)
        ledger = _played_ledger()
        await store.put_snapshot(build_snapshot(ledger.snapshot()))
        ledger.deposit("bob", Side.A, 50)
        await store.put_snapshot(build_snapshot(ledger.snapshot()))

        loaded = await store.get_latest_snapshot()
        assert loaded.state.stakes[3]["bob"].net_amount == 95 + 48

    async def test_prune_keeps_last(self, tmp_dir):
        store = FilesystemStore(data_dir=tmp_dir, keep_last=2)
        state = _played_ledger().snapshot()
        ids = [await store.put_snapshot(build_snapshot(state)) for _ in range(4)]

        assert await store.list_snapshots() == ids[-2:]
        assert await store.get_snapshot(ids[0]) is None
        assert await store.get_snapshot(ids[-1]) is not None

    async def test_stale_temp_dirs_ignored_and_cleaned(self, tmp_dir):
        store = FilesystemStore(data_dir=tmp_dir)
        stale = Path(tmp_dir) / "ledger" / "snapshots" / ".tmp_r99999999_x"
        stale.mkdir(parents=True)

        assert await store.get_latest_snapshot() is None
        await store.put_snapshot(build_snapshot(_played_ledger().snapshot()))
        assert not stale.exists()

    async def test_transport_balances_round_trip(self, tmp_dir):
        store = FilesystemStore(data_dir=tmp_dir)
        ledger = _played_ledger()
        transport = ledger.transport.dump_state()
        await store.put_snapshot(build_snapshot(ledger.snapshot(), transport=transport))

        loaded = await store.get_latest_snapshot()
        assert loaded.transport == transport
        assert loaded.transport.balances["ledger"] == ledger.transport.custody_balance
        assert verify_snapshot(loaded)

    async def test_tampered_balance_fails_verification(self, tmp_dir):
        store = FilesystemStore(data_dir=tmp_dir)
        ledger = _played_ledger()
        snapshot = build_snapshot(ledger.snapshot(), transport=ledger.transport.dump_state())
        snapshot.transport.balances["alice"] += 1
        await store.put_snapshot(snapshot)

        loaded = await store.get_latest_snapshot()
        assert not verify_snapshot(loaded)

    async def test_tampered_state_fails_verification(self, tmp_dir):
        store = FilesystemStore(data_dir=tmp_dir)
        snapshot = build_snapshot(_played_ledger().snapshot())
        snapshot.state.rounds[1].total_fees += 1
        await store.put_snapshot(snapshot)

        loaded = await store.get_latest_snapshot()
        assert not verify_snapshot(loaded)


class TestFilesystemStoreSetup:

    def test_invalid_keep_last(self, tmp_dir):
        with pytest.raises(ValueError):
            FilesystemStore(data_dir=tmp_dir, keep_last=0)

    def test_satisfies_protocol(self, tmp_dir):
        assert isinstance(FilesystemStore(data_dir=tmp_dir), LedgerStore)
        assert isinstance(SqlStore("sqlite://"), LedgerStore)


@pytest.mark.asyncio
class TestSqlStore:

    async def test_round_trip_preserves_hash(self, tmp_dir):
        store = SqlStore(f"sqlite:///{tmp_dir}/ledger.db")
        try:
            state = _played_ledger().snapshot()
            snapshot = build_snapshot(state)
            await store.put_snapshot(snapshot)

            loaded = await store.get_latest_snapshot()
            assert loaded is not None
            assert loaded.state == state
            assert loaded.manifest.content_hash == snapshot.manifest.content_hash
            assert verify_snapshot(loaded)
        finally:
            store.close()

    async def test_amounts_beyond_64_bits(self, tmp_dir):
        store = SqlStore(f"sqlite:///{tmp_dir}/ledger.db")
        try:
            await store.put_snapshot(build_snapshot(_played_ledger().snapshot()))
            loaded = await store.get_latest_snapshot()
            rnd = loaded.state.rounds[1]
            assert rnd.total_staked_a > 2**64
            assert rnd.payout_ratio > SCALE
        finally:
            store.close()

    async def test_put_replaces_previous(self, tmp_dir):
        store = SqlStore(f"sqlite:///{tmp_dir}/ledger.db")
        try:
            ledger = _played_ledger()
            await store.put_snapshot(build_snapshot(ledger.snapshot()))
            ledger.settle_bet(OPERATOR, Side.A)
            ledger.start_new_round(OPERATOR)
            await store.put_snapshot(build_snapshot(ledger.snapshot()))

            loaded = await store.get_latest_snapshot()
            assert loaded.state.current_round == 4
            assert len(await store.list_snapshots()) == 1
        finally:
            store.close()

    async def test_transport_balances_round_trip(self, tmp_dir):
        store = SqlStore(f"sqlite:///{tmp_dir}/ledger.db")
        try:
            t = TokenTransport()
            t.mint("alice", 10**30)
            t.approve("alice", 10**30)
            t.approve("carol", 5)
            ledger = ParimutuelLedger(OPERATOR, 500, t)
            ledger.deposit("alice", Side.A, 10**29)
            transport = t.dump_state()
            await store.put_snapshot(build_snapshot(ledger.snapshot(), transport=transport))

            loaded = await store.get_latest_snapshot()
            assert loaded.transport == transport
            assert loaded.transport.allowances == {"alice": 9 * 10**29, "carol": 5}
            assert verify_snapshot(loaded)
        finally:
            store.close()

    async def test_snapshot_without_transport(self, tmp_dir):
        store = SqlStore(f"sqlite:///{tmp_dir}/ledger.db")
        try:
            await store.put_snapshot(build_snapshot(_played_ledger().snapshot()))
            loaded = await store.get_latest_snapshot()
            assert loaded.transport is None
            assert verify_snapshot(loaded)
        finally:
            store.close()

    async def test_empty_database(self, tmp_dir):
        store = SqlStore(f"sqlite:///{tmp_dir}/ledger.db")
        try:
            assert await store.get_latest_snapshot() is None
            assert await store.list_snapshots() == []
        finally:
            store.close()

    async def test_reopen_reads_existing(self, tmp_dir):
        url = f"sqlite:///{tmp_dir}/ledger.db"
        first = SqlStore(url)
        state = _played_ledger().snapshot()
        await first.put_snapshot(build_snapshot(state))
        first.close()

        second = SqlStore(url)
        try:
            loaded = await second.get_latest_snapshot()
            assert loaded.state == state
        finally:
            second.close()
