"""Betting service entrypoint.

Restores (or creates) the ledger, then serves the HTTP API until SIGINT or
SIGTERM. The operator wallet's hotkey signs snapshots and, unless
overridden, is the operator account.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import signal
from typing import Any

import bittensor as bt
from dotenv import load_dotenv

from parimutuel.config import LedgerSettings, load_settings
from parimutuel.ledger.api.http_server import LedgerHTTPServer
from parimutuel.ledger.auth import AccessPolicy
from parimutuel.ledger.service import BettingService
from parimutuel.ledger.store.filesystem import FilesystemStore
from parimutuel.ledger.store.interface import LedgerStore
from parimutuel.ledger.store.sql import SqlStore
from parimutuel.ledger.transport import NativeTransport, TokenTransport, ValueTransport


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Pari-mutuel betting ledger service")
    bt.Wallet.add_args(parser)
    bt.logging.add_args(parser)
    parser.add_argument("--ledger.operator_hotkey", type=str, default=None)
    parser.add_argument("--ledger.fee_rate_bps", type=int, default=None)
    parser.add_argument("--ledger.transport", type=str, choices=["native", "token"], default=None)
    parser.add_argument("--ledger.host", type=str, default=None)
    parser.add_argument("--ledger.port", type=int, default=None)
    parser.add_argument("--ledger.store", type=str, choices=["filesystem", "sql", "none"], default=None)
    parser.add_argument("--ledger.data_dir", type=str, default=None)
    parser.add_argument("--ledger.sql_url", type=str, default=None)
    return parser


def cli_defaults(args: argparse.Namespace) -> dict[str, Any]:
    """Map CLI flags onto the settings layout; unset flags are omitted."""
    def _get(name: str) -> Any:
        return getattr(args, f"ledger.{name}", None)

    defaults: dict[str, Any] = {"server": {}, "store": {}}
    for key in ("operator_hotkey", "fee_rate_bps", "transport"):
        if _get(key) is not None:
            defaults[key] = _get(key)
    if _get("host") is not None:
        defaults["server"]["host"] = _get("host")
    if _get("port") is not None:
        defaults["server"]["port"] = _get("port")
    if _get("store") is not None:
        defaults["store"]["backend"] = _get("store")
    if _get("data_dir") is not None:
        defaults["store"]["data_dir"] = _get("data_dir")
    if _get("sql_url") is not None:
        defaults["store"]["sql_url"] = _get("sql_url")
    return defaults


def build_transport(settings: LedgerSettings) -> ValueTransport:
    """Empty transport; balances come from the snapshot or from genesis."""
    if settings.transport == "token":
        return TokenTransport()
    return NativeTransport()


def build_store(settings: LedgerSettings) -> LedgerStore | None:
    backend = settings.store.backend
    if backend == "filesystem":
        return FilesystemStore(data_dir=settings.store.data_dir, keep_last=settings.store.keep_last)
    if backend == "sql":
        if settings.store.sql_url.startswith("sqlite:///"):
            db_path = settings.store.sql_url[len("sqlite:///"):]
            if os.path.dirname(db_path):
                os.makedirs(os.path.dirname(db_path), exist_ok=True)
        return SqlStore(settings.store.sql_url)
    return None


async def build_server(settings: LedgerSettings, keypair: Any = None) -> LedgerHTTPServer:
    """Wire transport, store, service and access policy into an HTTP server."""
    service = await BettingService.open(
        operator=settings.operator_hotkey,
        fee_rate_bps=settings.fee_rate_bps,
        transport=build_transport(settings),
        store=build_store(settings),
        keypair=keypair,
        trusted_signer=settings.trusted_signer or None,
        genesis_balances=settings.genesis_balances,
    )
    allowed = set(settings.auth.allowed_hotkeys) if settings.auth.allowed_hotkeys else None
    policy = AccessPolicy(
        operator_hotkey=settings.operator_hotkey,
        allowed_hotkeys=allowed,
        token_ttl=settings.auth.token_ttl,
        rate_limit_per_hour=settings.auth.rate_limit_per_hour,
        max_tokens=settings.auth.max_tokens,
    )
    return LedgerHTTPServer(
        service=service,
        access_policy=policy,
        host=settings.server.host,
        port=settings.server.port,
    )


async def _serve(server: LedgerHTTPServer, stop: asyncio.Event) -> None:
    await server.start()
    try:
        await stop.wait()
    finally:
        await server.stop()
        if not await server.service.flush():
            bt.logging.error({"ledger_service": "unsaved_state_at_shutdown"})


def main() -> None:
    # Load .env if not in test mode
    if os.environ.get("PARIMUTUEL_TEST_MODE") != "true":
        load_dotenv()

    args = build_parser().parse_args()
    wallet_name = os.environ.get("PARIMUTUEL_WALLET__NAME", getattr(args, "wallet.name", "default"))
    wallet_hotkey = os.environ.get("PARIMUTUEL_WALLET__HOTKEY", getattr(args, "wallet.hotkey", "default"))
    wallet = bt.Wallet(name=wallet_name, hotkey=wallet_hotkey)
    keypair = wallet.hotkey

    # Env takes precedence over CLI; the wallet hotkey is the fallback operator
    settings = load_settings(defaults=cli_defaults(args))
    if not settings.operator_hotkey:
        settings.operator_hotkey = keypair.ss58_address

    bt.logging.info({
        "ledger_config": {
            "operator": settings.operator_hotkey,
            "fee_rate_bps": settings.fee_rate_bps,
            "transport": settings.transport,
            "store": settings.store.backend,
            "port": settings.server.port,
        }
    })

    loop = asyncio.new_event_loop()
    stop = asyncio.Event()

    def _signal_handler(sig, frame):
        bt.logging.info({"ledger_service": "shutdown_signal_received"})
        loop.call_soon_threadsafe(stop.set)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        server = loop.run_until_complete(build_server(settings, keypair))
        loop.run_until_complete(_serve(server, stop))
    except KeyboardInterrupt:
        bt.logging.info({"ledger_service": "keyboard_interrupt"})
    finally:
        loop.close()
        bt.logging.info({"ledger_service": "stopped"})


if __name__ == "__main__":
    main()
