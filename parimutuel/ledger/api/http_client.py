"""HTTP client for a remote betting service.

Handles challenge-response authentication automatically and caches the
bearer token. Ledger rejections come back as the matching LedgerError
subclass. Reads are retried on transport errors; mutating calls are never
retried, since a lost response does not tell whether the call was applied.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import bittensor as bt
import httpx

from parimutuel.ledger.errors import ERRORS_BY_CODE
from parimutuel.ledger.models import DepositReceipt, RoundState, SettlementResult, Side, StakeRecord


class BettingClient:
    """Participant/operator-side client for the ledger HTTP API."""

    def __init__(
        self,
        base_url: str,
        keypair: Any,
        timeout: float = 30.0,
        max_retries: int = 3,
        token_ttl: float = 3600.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.keypair = keypair
        self.hotkey = keypair.ss58_address
        self._token: str | None = None
        self._token_expires: float = 0.0
        self._refresh_at: float = 0.0
        # Used when the server does not say how long its tokens live
        self._default_token_ttl = token_ttl
        self._client = httpx.AsyncClient(timeout=timeout)
        self._max_retries = max_retries

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> BettingClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # -- Auth --

    async def _ensure_auth(self) -> str:
        """Ensure we have a valid bearer token, refreshing if needed."""
        if self._token and time.time() < self._refresh_at:
            return self._token

        resp = await self._client.post(
            f"{self.base_url}/ledger/auth/challenge",
            json={"hotkey": self.hotkey},
        )
        if resp.status_code != 200:
            raise ConnectionError(f"Auth challenge failed: {resp.status_code} {resp.text}")

        nonce = resp.json()["nonce"]
        signature = self.keypair.sign(nonce.encode())
        sig_hex = signature.hex() if isinstance(signature, bytes) else str(signature)

        resp = await self._client.post(
            f"{self.base_url}/ledger/auth/respond",
            json={"hotkey": self.hotkey, "nonce": nonce, "signature": sig_hex},
        )
        if resp.status_code != 200:
            raise ConnectionError(f"Auth respond failed: {resp.status_code} {resp.text}")

        data = resp.json()
        ttl = float(data.get("expires_in") or self._default_token_ttl)
        self._token = data["token"]
        self._token_expires = time.time() + ttl
        # Refresh a little early: 60s, or a tenth of short lifetimes
        self._refresh_at = self._token_expires - min(60.0, ttl / 10)
        return self._token

    def _auth_headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Authenticated request; GETs retry on transport errors."""
        attempts = self._max_retries if method == "GET" else 1
        reauthed = False
        attempt = 0
        while attempt < attempts:
            try:
                token = await self._ensure_auth()
                resp = await self._client.request(
                    method,
                    f"{self.base_url}{path}",
                    json=json,
                    headers=self._auth_headers(token),
                )
            except httpx.TransportError as e:
                attempt += 1
                if attempt >= attempts:
                    raise
                wait = 2 ** (attempt - 1)
                bt.logging.warning({"ledger_http_client": {"retry": attempt, "wait": wait, "error": str(e)}})
                await asyncio.sleep(wait)
                continue

            if resp.status_code == 401 and not reauthed:
                # Token expired server-side: the request was not applied
                self._token = None
                reauthed = True
                continue
            return self._raise_for_ledger_error(resp)
        raise ConnectionError("Max retries exceeded")

    @staticmethod
    def _raise_for_ledger_error(resp: httpx.Response) -> httpx.Response:
        if resp.status_code < 400:
            return resp
        if resp.status_code == 429:
            raise ConnectionError("Rate limited by ledger service")
        try:
            body = resp.json()
        except ValueError:
            body = {}
        error_cls = ERRORS_BY_CODE.get(body.get("error", "")) if isinstance(body, dict) else None
        if error_cls is not None:
            raise error_cls(body.get("detail", ""))
        resp.raise_for_status()
        return resp

    # -- Operations --

    async def deposit(self, side: Side | str, amount: int) -> DepositReceipt:
        resp = await self._request("POST", "/ledger/deposit", {"side": Side(side).value, "amount": amount})
        return DepositReceipt(**resp.json())

    async def approve(self, amount: int) -> int:
        resp = await self._request("POST", "/ledger/approve", {"amount": amount})
        return int(resp.json()["allowance"])

    async def claim_all_winnings(self) -> int:
        resp = await self._request("POST", "/ledger/claim")
        return int(resp.json()["paid"])

    async def close_betting(self) -> int:
        resp = await self._request("POST", "/ledger/rounds/close")
        return int(resp.json()["round"])

    async def settle_bet(self, winning_side: Side | str) -> SettlementResult:
        resp = await self._request("POST", "/ledger/rounds/settle", {"winning_side": Side(winning_side).value})
        return SettlementResult(**resp.json())

    async def start_new_round(self) -> int:
        resp = await self._request("POST", "/ledger/rounds/start")
        return int(resp.json()["round"])

    async def withdraw_all_fees(self) -> int:
        resp = await self._request("POST", "/ledger/fees/withdraw")
        return int(resp.json()["paid"])

    # -- Queries --

    async def info(self) -> dict[str, Any]:
        resp = await self._request("GET", "/ledger/info")
        return resp.json()

    async def get_round(self, round_id: int | None = None) -> RoundState:
        path = "/ledger/rounds/current" if round_id is None else f"/ledger/rounds/{round_id}"
        resp = await self._request("GET", path)
        data = resp.json()
        data.pop("round_id", None)
        return RoundState(**data)

    async def get_stake(self, round_id: int, account: str | None = None) -> StakeRecord:
        resp = await self._request("GET", f"/ledger/rounds/{round_id}/stakes/{account or self.hotkey}")
        data = resp.json()
        data.pop("round_id", None)
        data.pop("account", None)
        return StakeRecord(**data)

    async def pending_winnings(self, account: str | None = None) -> int:
        resp = await self._request("GET", f"/ledger/accounts/{account or self.hotkey}/pending")
        return int(resp.json()["pending"])


__all__ = ["BettingClient"]
