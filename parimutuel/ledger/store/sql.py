"""SQLAlchemy-backed LedgerStore.

Keeps only the latest snapshot, laid out relationally (see
parimutuel.database.schema). Each put rewrites the tables inside one
transaction, so readers see either the previous or the new snapshot.
Blocking database calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
from datetime import timezone

import bittensor as bt
from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import Session

from parimutuel.database import Base, BettingRound, ClaimWatermark, LedgerMeta, Stake, TransportAccount
from parimutuel.ledger.models import (
    LedgerSnapshot,
    LedgerState,
    RoundState,
    SnapshotManifest,
    StakeRecord,
    TransportState,
)


def _snapshot_id(manifest: SnapshotManifest) -> str:
    return f"r{manifest.current_round:08d}_{manifest.created_at.strftime('%Y%m%dT%H%M%S%f')}"


def _opt_int(value: str | None) -> int | None:
    return int(value) if value is not None else None


class SqlStore:
    """LedgerStore over any SQLAlchemy database URL (sqlite, postgres, ...)."""

    def __init__(self, url: str, echo: bool = False):
        self.engine = create_engine(url, echo=echo)
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    async def put_snapshot(self, snapshot: LedgerSnapshot) -> str:
        await asyncio.to_thread(self._write, snapshot)
        snapshot_id = _snapshot_id(snapshot.manifest)
        bt.logging.debug({"ledger_store": {"event": "snapshot_written", "id": snapshot_id, "backend": "sql"}})
        return snapshot_id

    async def get_latest_snapshot(self) -> LedgerSnapshot | None:
        return await asyncio.to_thread(self._read)

    async def list_snapshots(self) -> list[str]:
        snapshot = await self.get_latest_snapshot()
        return [_snapshot_id(snapshot.manifest)] if snapshot is not None else []

    # -- Sync helpers --

    def _write(self, snapshot: LedgerSnapshot) -> None:
        manifest = snapshot.manifest
        state = snapshot.state
        transport = snapshot.transport

        with Session(self.engine) as session, session.begin():
            for table in (Stake, ClaimWatermark, TransportAccount, BettingRound, LedgerMeta):
                session.execute(delete(table))

            session.add(LedgerMeta(
                id=1,
                schema_version=manifest.schema_version,
                operator=state.operator,
                fee_rate_bps=state.fee_rate_bps,
                current_round=state.current_round,
                fee_watermark=state.fee_watermark,
                content_hash=manifest.content_hash,
                transport_hash=manifest.transport_hash,
                transport_kind=transport.kind if transport is not None else None,
                custody_account=transport.custody_account if transport is not None else None,
                signer_hotkey=manifest.signer_hotkey,
                signature=manifest.signature,
                created_at=manifest.created_at,
            ))
            session.add_all(
                BettingRound(
                    round_id=round_id,
                    betting_open=rnd.betting_open,
                    settled=rnd.settled,
                    winning_side=rnd.winning_side.value if rnd.winning_side else None,
                    total_staked_a=str(rnd.total_staked_a),
                    total_staked_b=str(rnd.total_staked_b),
                    total_fees=str(rnd.total_fees),
                    payout_ratio=str(rnd.payout_ratio) if rnd.payout_ratio is not None else None,
                    fees_claimed=rnd.fees_claimed,
                )
                for round_id, rnd in state.rounds.items()
            )
            # Rounds must exist before stakes reference them
            session.flush()
            session.add_all(
                Stake(
                    round_id=round_id,
                    account=account,
                    net_amount=str(stake.net_amount),
                    side=stake.side.value if stake.side else None,
                    has_participated=stake.has_participated,
                    claimed=stake.claimed,
                )
                for round_id, by_account in state.stakes.items()
                for account, stake in by_account.items()
            )
            session.add_all(
                ClaimWatermark(account=account, round_id=round_id)
                for account, round_id in state.claim_watermarks.items()
            )
            if transport is not None:
                session.add_all(
                    TransportAccount(
                        account=account,
                        balance=str(transport.balances.get(account, 0)),
                        allowance=str(transport.allowances.get(account, 0)),
                    )
                    for account in sorted(set(transport.balances) | set(transport.allowances))
                )

    def _read(self) -> LedgerSnapshot | None:
        with Session(self.engine) as session:
            meta = session.get(LedgerMeta, 1)
            if meta is None:
                return None

            rounds = {
                row.round_id: RoundState(
                    betting_open=row.betting_open,
                    settled=row.settled,
                    winning_side=row.winning_side,
                    total_staked_a=int(row.total_staked_a),
                    total_staked_b=int(row.total_staked_b),
                    total_fees=int(row.total_fees),
                    payout_ratio=_opt_int(row.payout_ratio),
                    fees_claimed=row.fees_claimed,
                )
                for row in session.scalars(select(BettingRound))
            }

            stakes: dict[int, dict[str, StakeRecord]] = {}
            for row in session.scalars(select(Stake)):
                stakes.setdefault(row.round_id, {})[row.account] = StakeRecord(
                    net_amount=int(row.net_amount),
                    side=row.side,
                    has_participated=row.has_participated,
                    claimed=row.claimed,
                )

            watermarks = {
                row.account: row.round_id
                for row in session.scalars(select(ClaimWatermark))
            }

            state = LedgerState(
                operator=meta.operator,
                fee_rate_bps=meta.fee_rate_bps,
                current_round=meta.current_round,
                rounds=rounds,
                stakes=stakes,
                claim_watermarks=watermarks,
                fee_watermark=meta.fee_watermark,
            )
            created_at = meta.created_at
            if created_at.tzinfo is None:
                # sqlite drops tz info
                created_at = created_at.replace(tzinfo=timezone.utc)
            manifest = SnapshotManifest(
                schema_version=meta.schema_version,
                current_round=meta.current_round,
                fee_rate_bps=meta.fee_rate_bps,
                operator=meta.operator,
                content_hash=meta.content_hash,
                transport_hash=meta.transport_hash,
                signer_hotkey=meta.signer_hotkey,
                signature=meta.signature,
                created_at=created_at,
            )
            return LedgerSnapshot(manifest=manifest, state=state, transport=self._read_transport(session, meta))

    def _read_transport(self, session: Session, meta: LedgerMeta) -> TransportState | None:
        if meta.transport_kind is None:
            return None
        balances: dict[str, int] = {}
        allowances: dict[str, int] = {}
        for row in session.scalars(select(TransportAccount)):
            if int(row.balance):
                balances[row.account] = int(row.balance)
            if int(row.allowance):
                allowances[row.account] = int(row.allowance)
        return TransportState(
            kind=meta.transport_kind,
            custody_account=meta.custody_account or "",
            balances=balances,
            allowances=allowances,
        )


__all__ = ["SqlStore"]
