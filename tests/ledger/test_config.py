"""Tests for settings loading and CLI/env precedence."""

import argparse

import pytest
from pydantic import ValidationError

from parimutuel.config import LedgerSettings, load_settings
from parimutuel.entrypoints.server import build_store, build_transport, cli_defaults
from parimutuel.ledger.store.filesystem import FilesystemStore
from parimutuel.ledger.transport import NativeTransport, TokenTransport


class TestLoadSettings:

    def test_defaults(self):
        settings = load_settings(environ={})
        assert settings.fee_rate_bps == 500
        assert settings.transport == "native"
        assert settings.server.port == 8300
        assert settings.store.backend == "filesystem"
        assert settings.auth.allowed_hotkeys is None

    def test_env_overrides_nested(self):
        settings = load_settings(environ={
            "PARIMUTUEL_FEE_RATE_BPS": "250",
            "PARIMUTUEL_SERVER__PORT": "9000",
            "PARIMUTUEL_STORE__BACKEND": "sql",
            "PARIMUTUEL_AUTH__ALLOWED_HOTKEYS": "alice, bob,",
            "UNRELATED": "x",
        })
        assert settings.fee_rate_bps == 250
        assert settings.server.port == 9000
        assert settings.store.backend == "sql"
        assert settings.auth.allowed_hotkeys == ["alice", "bob"]

    def test_env_beats_defaults(self):
        settings = load_settings(
            defaults={"fee_rate_bps": 100, "server": {"port": 8400, "host": "127.0.0.1"}},
            environ={"PARIMUTUEL_SERVER__PORT": "8500"},
        )
        assert settings.fee_rate_bps == 100
        assert settings.server.port == 8500
        assert settings.server.host == "127.0.0.1"

    def test_fee_rate_bounds(self):
        with pytest.raises(ValidationError):
            load_settings(environ={"PARIMUTUEL_FEE_RATE_BPS": "10001"})

    def test_unknown_transport_rejected(self):
        with pytest.raises(ValidationError):
            load_settings(environ={"PARIMUTUEL_TRANSPORT": "carrier_pigeon"})

    def test_genesis_balances_parsed(self):
        settings = load_settings(environ={"PARIMUTUEL_GENESIS_BALANCES": "alice=100, bob=2000"})
        assert settings.genesis_balances == {"alice": 100, "bob": 2000}


class TestEntrypointWiring:

    def test_cli_defaults_skip_unset_flags(self):
        args = argparse.Namespace(**{
            "ledger.fee_rate_bps": 300,
            "ledger.port": 8600,
            "ledger.store": "none",
            "ledger.transport": None,
        })
        defaults = cli_defaults(args)
        assert defaults["fee_rate_bps"] == 300
        assert "transport" not in defaults
        assert defaults["server"] == {"port": 8600}
        assert defaults["store"] == {"backend": "none"}

    def test_build_transport_starts_empty(self):
        settings = LedgerSettings(genesis_balances={"alice": 50})
        transport = build_transport(settings)
        assert isinstance(transport, NativeTransport)
        # Genesis is minted by the service, and only into a fresh ledger
        assert transport.balance_of("alice") == 0

        token = build_transport(LedgerSettings(transport="token"))
        assert isinstance(token, TokenTransport)

    def test_build_store(self, tmp_path):
        settings = LedgerSettings(store={"backend": "filesystem", "data_dir": str(tmp_path)})
        assert isinstance(build_store(settings), FilesystemStore)
        assert build_store(LedgerSettings(store={"backend": "none"})) is None
