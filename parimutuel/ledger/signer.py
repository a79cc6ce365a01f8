"""Snapshot building, signing and verification using bittensor keypairs.

The service signs each persisted snapshot with the operator's hotkey so a
restarted or replicated instance can check the state it is about to load.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import bittensor as bt

from .hashing import compute_hash
from .models import LedgerSnapshot, LedgerState, SnapshotManifest, TransportState


def _manifest_signing_payload(manifest: SnapshotManifest) -> str:
    """Hash of the manifest without its signature field."""
    data = manifest.model_dump(mode="json")
    data.pop("signature", None)
    return compute_hash(data)


def sign_manifest(manifest: SnapshotManifest, keypair: Any) -> str:
    """Sign a manifest. Returns a hex-encoded signature."""
    signature = keypair.sign(_manifest_signing_payload(manifest).encode())
    return signature.hex() if isinstance(signature, bytes) else str(signature)


def build_snapshot(
    state: LedgerState,
    keypair: Any = None,
    transport: TransportState | None = None,
) -> LedgerSnapshot:
    """Wrap a state (and the transport balances backing it) in a manifest,
    signing it when a keypair is given."""
    manifest = SnapshotManifest(
        current_round=state.current_round,
        fee_rate_bps=state.fee_rate_bps,
        operator=state.operator,
        content_hash=compute_hash(state),
        transport_hash=compute_hash(transport) if transport is not None else "",
        signer_hotkey=keypair.ss58_address if keypair is not None else "",
        created_at=datetime.now(timezone.utc),
    )
    if keypair is not None:
        manifest.signature = sign_manifest(manifest, keypair)
    return LedgerSnapshot(manifest=manifest, state=state, transport=transport)


def verify_snapshot(snapshot: LedgerSnapshot, signer_hotkey: str | None = None) -> bool:
    """Check the content hashes and, if ``signer_hotkey`` is given, the signature."""
    manifest = snapshot.manifest
    if compute_hash(snapshot.state) != manifest.content_hash:
        return False
    transport_hash = compute_hash(snapshot.transport) if snapshot.transport is not None else ""
    if transport_hash != manifest.transport_hash:
        return False
    if manifest.current_round != snapshot.state.current_round:
        return False
    if signer_hotkey is None:
        return True

    if not manifest.signature or manifest.signer_hotkey != signer_hotkey:
        return False
    try:
        sig_bytes = bytes.fromhex(manifest.signature)
    except ValueError:
        return False

    try:
        keypair = bt.Keypair(ss58_address=signer_hotkey)
        return keypair.verify(_manifest_signing_payload(manifest).encode(), sig_bytes)
    except Exception:
        return False


__all__ = ["build_snapshot", "sign_manifest", "verify_snapshot"]
