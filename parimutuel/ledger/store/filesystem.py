"""Filesystem-based LedgerStore implementation.

Writes one directory per snapshot:
  {data_dir}/ledger/snapshots/r{round:08d}_{timestamp}_{seq}/manifest.json
  {data_dir}/ledger/snapshots/r{round:08d}_{timestamp}_{seq}/state.json.gz
  {data_dir}/ledger/snapshots/r{round:08d}_{timestamp}_{seq}/transport.json.gz (when present)

Directories are written under a temporary name and renamed into place, so a
crash mid-write never leaves a half snapshot behind. Only the newest
``keep_last`` snapshots are retained.
"""

from __future__ import annotations

import gzip
import json
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import bittensor as bt

from parimutuel.ledger.models import LedgerSnapshot, LedgerState, SnapshotManifest, TransportState


def _write_gzip_json(path: Path, data: Any) -> None:
    """Write data as gzipped JSON, creating parent dirs as needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    raw = json.dumps(data, default=str, sort_keys=True).encode()
    with gzip.open(path, "wb") as f:
        f.write(raw)


def _read_gzip_json(path: Path) -> Any:
    with gzip.open(path, "rb") as f:
        return json.loads(f.read())


def _write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, default=str, sort_keys=True)


def _read_json(path: Path) -> Any:
    with open(path) as f:
        return json.load(f)


class FilesystemStore:
    """Local filesystem LedgerStore implementation."""

    def __init__(self, data_dir: str, keep_last: int = 20):
        if keep_last < 1:
            raise ValueError("keep_last must be at least 1")
        self.base = Path(data_dir) / "ledger"
        self.snapshots_dir = self.base / "snapshots"
        self.keep_last = keep_last
        self._seq = 0
        self.snapshots_dir.mkdir(parents=True, exist_ok=True)

    async def put_snapshot(self, snapshot: LedgerSnapshot) -> str:
        """Write a snapshot to disk. Returns snapshot ID."""
        ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        self._seq += 1
        snapshot_id = f"r{snapshot.manifest.current_round:08d}_{ts}_{self._seq:06d}"
        tmp_dir = self.snapshots_dir / f".tmp_{snapshot_id}"
        final_dir = self.snapshots_dir / snapshot_id

        # Manifest as plain JSON (small, readable); state gzipped
        _write_json(tmp_dir / "manifest.json", snapshot.manifest.model_dump(mode="json"))
        _write_gzip_json(tmp_dir / "state.json.gz", snapshot.state.model_dump(mode="json"))
        if snapshot.transport is not None:
            _write_gzip_json(tmp_dir / "transport.json.gz", snapshot.transport.model_dump(mode="json"))
        os.rename(tmp_dir, final_dir)

        self._prune()
        bt.logging.debug({"ledger_store": {"event": "snapshot_written", "id": snapshot_id}})
        return snapshot_id

    async def get_latest_snapshot(self) -> LedgerSnapshot | None:
        """Fetch the most recent complete snapshot from disk."""
        for snapshot_id in reversed(await self.list_snapshots()):
            snapshot_dir = self.snapshots_dir / snapshot_id
            if (snapshot_dir / "manifest.json").exists() and (snapshot_dir / "state.json.gz").exists():
                return self._load_snapshot(snapshot_dir)
        return None

    async def list_snapshots(self) -> list[str]:
        if not self.snapshots_dir.exists():
            return []
        return sorted(
            d.name for d in self.snapshots_dir.iterdir()
            if d.is_dir() and not d.name.startswith(".")
        )

    async def get_snapshot(self, snapshot_id: str) -> LedgerSnapshot | None:
        snapshot_dir = self.snapshots_dir / snapshot_id
        if not (snapshot_dir / "manifest.json").exists():
            return None
        return self._load_snapshot(snapshot_dir)

    def _load_snapshot(self, snapshot_dir: Path) -> LedgerSnapshot:
        manifest = SnapshotManifest(**_read_json(snapshot_dir / "manifest.json"))
        state = LedgerState(**_read_gzip_json(snapshot_dir / "state.json.gz"))
        transport = None
        if (snapshot_dir / "transport.json.gz").exists():
            transport = TransportState(**_read_gzip_json(snapshot_dir / "transport.json.gz"))
        return LedgerSnapshot(manifest=manifest, state=state, transport=transport)

    def _prune(self) -> None:
        """Drop all but the newest ``keep_last`` snapshots, plus stale temp dirs."""
        complete = sorted(
            d for d in self.snapshots_dir.iterdir()
            if d.is_dir() and not d.name.startswith(".")
        )
        for old in complete[:-self.keep_last]:
            shutil.rmtree(old, ignore_errors=True)

        for stale in self.snapshots_dir.glob(".tmp_*"):
            shutil.rmtree(stale, ignore_errors=True)


__all__ = ["FilesystemStore"]
