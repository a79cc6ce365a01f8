"""Runtime settings for the betting service.

Values come from ``PARIMUTUEL_*`` environment variables (after ``.env`` is
loaded), with ``__`` separating nested sections:

  PARIMUTUEL_OPERATOR_HOTKEY=5F...
  PARIMUTUEL_FEE_RATE_BPS=500
  PARIMUTUEL_SERVER__PORT=8300
  PARIMUTUEL_STORE__BACKEND=sql
  PARIMUTUEL_AUTH__ALLOWED_HOTKEYS=5Ab...,5Cd...

The entrypoint's CLI flags fill in anything the environment leaves unset.
"""

from __future__ import annotations

import os
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "PARIMUTUEL_"


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=8300, ge=1, le=65535)


class AuthSettings(BaseModel):
    token_ttl: int = Field(default=3600, gt=0)
    rate_limit_per_hour: int = Field(default=600, gt=0)
    max_tokens: int = Field(default=500, gt=0)
    allowed_hotkeys: list[str] | None = None

    @field_validator("allowed_hotkeys", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            items = [v.strip() for v in value.split(",") if v.strip()]
            return items or None
        return value


class StoreSettings(BaseModel):
    backend: Literal["filesystem", "sql", "none"] = "filesystem"
    data_dir: str = "parimutuel/data"
    keep_last: int = Field(default=20, ge=1)
    sql_url: str = "sqlite:///parimutuel/data/ledger.db"


class LedgerSettings(BaseModel):
    operator_hotkey: str = ""
    fee_rate_bps: int = Field(default=500, ge=0, le=10_000)
    transport: Literal["native", "token"] = "native"
    # Only snapshots signed by this hotkey are restored; empty = hash check only
    trusted_signer: str = ""
    # Balances minted into the transport of a fresh ledger: "hk1=1000,hk2=500"
    genesis_balances: dict[str, int] = Field(default_factory=dict)
    server: ServerSettings = Field(default_factory=ServerSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)

    @field_validator("genesis_balances", mode="before")
    @classmethod
    def _parse_balances(cls, value: Any) -> Any:
        if isinstance(value, str):
            balances: dict[str, int] = {}
            for item in value.split(","):
                if not item.strip():
                    continue
                hotkey, _, amount = item.partition("=")
                balances[hotkey.strip()] = int(amount)
            return balances
        return value


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Turn PARIMUTUEL_A__B=v into {"a": {"b": "v"}}."""
    data: dict[str, Any] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        path = key[len(ENV_PREFIX):].lower().split("__")
        node = data
        for part in path[:-1]:
            node = node.setdefault(part, {})
            if not isinstance(node, dict):
                break
        else:
            node[path[-1]] = value
    return data


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(
    defaults: dict[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> LedgerSettings:
    """Build settings from ``defaults`` overridden by the environment."""
    env = os.environ if environ is None else environ
    return LedgerSettings(**_merge(defaults or {}, _env_overrides(env)))


__all__ = [
    "AuthSettings",
    "LedgerSettings",
    "ServerSettings",
    "StoreSettings",
    "load_settings",
]
