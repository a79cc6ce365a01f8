"""Authenticated HTTP RPC surface for a betting service.

Runs as an async task in the service's event loop. Routes:
  POST /ledger/auth/challenge   - request auth challenge
  POST /ledger/auth/respond     - submit signed challenge for bearer token + lifetime
  POST /ledger/deposit          - stake on a side of the current round
  POST /ledger/approve          - set token allowance (token transport only)
  POST /ledger/claim            - claim all winnings of the caller
  POST /ledger/rounds/close     - close betting (operator)
  POST /ledger/rounds/settle    - settle the current round (operator)
  POST /ledger/rounds/start     - open the next round (operator)
  POST /ledger/fees/withdraw    - withdraw accrued fees (operator)
  GET  /ledger/info             - fee rate, operator, current round
  GET  /ledger/rounds/current   - current round aggregates
  GET  /ledger/rounds/{round_id}
  GET  /ledger/rounds/{round_id}/stakes/{account}
  GET  /ledger/accounts/{account}/pending
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import bittensor as bt
from aiohttp import web

from parimutuel.ledger.auth import AccessPolicy
from parimutuel.ledger.errors import (
    InvalidFeeRate,
    LedgerError,
    TransferFailed,
    Unauthorized,
    UnknownRound,
)
from parimutuel.ledger.models import Side
from parimutuel.ledger.service import BettingService
from parimutuel.ledger.transport import TokenTransport


def _hk(hotkey: str | None) -> str:
    """Truncate hotkey for log readability."""
    if not hotkey:
        return "none"
    return hotkey[:16]


_STATUS_BY_ERROR: dict[type[LedgerError], int] = {
    Unauthorized: 403,
    TransferFailed: 402,
    UnknownRound: 404,
    InvalidFeeRate: 400,
}


def _error_status(error: LedgerError) -> int:
    for cls, status in _STATUS_BY_ERROR.items():
        if isinstance(error, cls):
            return status
    # Rule violations against current ledger state
    return 409


def _parse_amount(raw: Any) -> int:
    """Amounts travel as JSON ints or decimal strings."""
    if isinstance(raw, bool):
        raise ValueError("amount must be an integer")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
        return int(raw)
    raise ValueError("amount must be an integer")


Handler = Callable[[web.Request, str], Awaitable[web.Response]]


class LedgerHTTPServer:
    """Lightweight async HTTP server in front of a BettingService."""

    def __init__(
        self,
        service: BettingService,
        access_policy: AccessPolicy,
        host: str = "0.0.0.0",
        port: int = 8300,
    ):
        self.service = service
        self.access_policy = access_policy
        self.host = host
        self.port = port
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/ledger/auth/challenge", self._handle_challenge)
        app.router.add_post("/ledger/auth/respond", self._handle_respond)
        app.router.add_post("/ledger/deposit", self._authed("deposit", self._handle_deposit))
        app.router.add_post("/ledger/approve", self._authed("approve", self._handle_approve))
        app.router.add_post("/ledger/claim", self._authed("claim", self._handle_claim))
        app.router.add_post("/ledger/rounds/close", self._authed("rounds/close", self._handle_close))
        app.router.add_post("/ledger/rounds/settle", self._authed("rounds/settle", self._handle_settle))
        app.router.add_post("/ledger/rounds/start", self._authed("rounds/start", self._handle_start))
        app.router.add_post("/ledger/fees/withdraw", self._authed("fees/withdraw", self._handle_withdraw_fees))
        app.router.add_get("/ledger/info", self._authed("info", self._handle_info))
        app.router.add_get("/ledger/rounds/current", self._authed("rounds/current", self._handle_current_round))
        app.router.add_get("/ledger/rounds/{round_id}", self._authed("rounds/{id}", self._handle_get_round))
        app.router.add_get(
            "/ledger/rounds/{round_id}/stakes/{account}",
            self._authed("rounds/{id}/stakes", self._handle_get_stake),
        )
        app.router.add_get(
            "/ledger/accounts/{account}/pending",
            self._authed("accounts/pending", self._handle_pending),
        )
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self._build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        bt.logging.info({"ledger_http": {"status": "started", "port": self.port}})

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner:
            await self._runner.cleanup()
            bt.logging.info({"ledger_http": "stopped"})

    # -- Auth routes --

    async def _handle_challenge(self, request: web.Request) -> web.Response:
        """Issue a challenge nonce for a hotkey."""
        try:
            body = await request.json()
            hotkey = body.get("hotkey", "")
        except Exception:
            bt.logging.warning({"ledger_request": {"endpoint": "auth/challenge", "status": 400, "error": "invalid_body"}})
            return web.json_response({"error": "invalid_body"}, status=400)

        result = self.access_policy.check_eligibility(hotkey)
        if not result.eligible:
            bt.logging.info({"ledger_request": {"endpoint": "auth/challenge", "hotkey": _hk(hotkey), "status": 403, "reason": result.reason}})
            return web.json_response(
                {"error": "ineligible", "reason": result.reason}, status=403,
            )

        nonce = self.access_policy.issue_challenge(hotkey)
        bt.logging.info({"ledger_request": {"endpoint": "auth/challenge", "hotkey": _hk(hotkey), "status": 200}})
        return web.json_response({"nonce": nonce})

    async def _handle_respond(self, request: web.Request) -> web.Response:
        """Verify signed challenge and issue bearer token."""
        try:
            body = await request.json()
            hotkey = body.get("hotkey", "")
            nonce = body.get("nonce", "")
            signature = body.get("signature", "")
        except Exception:
            bt.logging.warning({"ledger_request": {"endpoint": "auth/respond", "status": 400, "error": "invalid_body"}})
            return web.json_response({"error": "invalid_body"}, status=400)

        token = self.access_policy.verify_response(hotkey, nonce, signature)
        if token is None:
            bt.logging.warning({"ledger_request": {"endpoint": "auth/respond", "hotkey": _hk(hotkey), "status": 403}})
            return web.json_response({"error": "auth_failed"}, status=403)

        bt.logging.info({"ledger_request": {"endpoint": "auth/respond", "hotkey": _hk(hotkey), "status": 200}})
        return web.json_response({"token": token, "expires_in": self.access_policy.token_ttl})

    # -- Auth middleware --

    def _check_auth(self, request: web.Request) -> str | None:
        """Validate bearer token from Authorization header. Returns hotkey or None."""
        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer "):
            return None
        return self.access_policy.validate_token(auth[7:])

    def _authed(self, endpoint: str, handler: Handler) -> Callable[[web.Request], Awaitable[web.Response]]:
        """Wrap a handler with token auth, rate limiting and ledger error mapping."""
        async def _wrapped(request: web.Request) -> web.Response:
            hotkey = self._check_auth(request)
            if hotkey is None:
                bt.logging.debug({"ledger_request": {"endpoint": endpoint, "status": 401}})
                return web.json_response({"error": "unauthorized"}, status=401)

            if not self.access_policy.check_rate_limit(hotkey):
                bt.logging.warning({"ledger_request": {"endpoint": endpoint, "hotkey": _hk(hotkey), "status": 429}})
                return web.json_response({"error": "rate_limited"}, status=429)

            try:
                response = await handler(request, hotkey)
            except LedgerError as e:
                status = _error_status(e)
                bt.logging.info({"ledger_request": {"endpoint": endpoint, "hotkey": _hk(hotkey), "status": status, "error": e.code}})
                return web.json_response({"error": e.code, "detail": e.message}, status=status)
            except ValueError as e:
                bt.logging.warning({"ledger_request": {"endpoint": endpoint, "hotkey": _hk(hotkey), "status": 400, "error": str(e)}})
                return web.json_response({"error": "invalid_body", "detail": str(e)}, status=400)

            bt.logging.debug({"ledger_request": {"endpoint": endpoint, "hotkey": _hk(hotkey), "status": response.status}})
            return response

        return _wrapped

    @staticmethod
    async def _json_body(request: web.Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except Exception:
            raise ValueError("body must be a JSON object")
        if not isinstance(body, dict):
            raise ValueError("body must be a JSON object")
        return body

    @staticmethod
    def _round_id(request: web.Request) -> int:
        try:
            return int(request.match_info["round_id"])
        except ValueError:
            raise ValueError("invalid round_id")

    # -- Mutating routes --

    async def _handle_deposit(self, request: web.Request, hotkey: str) -> web.Response:
        body = await self._json_body(request)
        # Native transport clients send the attached "value", token clients an explicit "amount"
        raw = body.get("amount", body.get("value"))
        if raw is None:
            raise ValueError("amount is required")
        side = Side(body.get("side", ""))
        receipt = await self.service.deposit(hotkey, side, _parse_amount(raw))
        return web.json_response(receipt.model_dump(mode="json"))

    async def _handle_approve(self, request: web.Request, hotkey: str) -> web.Response:
        """Set the caller's token allowance (token transport only)."""
        if not isinstance(self.service.ledger.transport, TokenTransport):
            return web.json_response({"error": "not_token_transport"}, status=400)
        body = await self._json_body(request)
        allowance = await self.service.approve(hotkey, _parse_amount(body.get("amount")))
        return web.json_response({"allowance": allowance})

    async def _handle_claim(self, request: web.Request, hotkey: str) -> web.Response:
        paid = await self.service.claim_all_winnings(hotkey)
        return web.json_response({"paid": paid})

    async def _handle_close(self, request: web.Request, hotkey: str) -> web.Response:
        round_id = await self.service.close_betting(hotkey)
        return web.json_response({"round": round_id})

    async def _handle_settle(self, request: web.Request, hotkey: str) -> web.Response:
        body = await self._json_body(request)
        result = await self.service.settle_bet(hotkey, Side(body.get("winning_side", "")))
        return web.json_response(result.model_dump(mode="json"))

    async def _handle_start(self, request: web.Request, hotkey: str) -> web.Response:
        round_id = await self.service.start_new_round(hotkey)
        return web.json_response({"round": round_id})

    async def _handle_withdraw_fees(self, request: web.Request, hotkey: str) -> web.Response:
        paid = await self.service.withdraw_all_fees(hotkey)
        return web.json_response({"paid": paid})

    # -- Read routes --

    async def _handle_info(self, request: web.Request, hotkey: str) -> web.Response:
        return web.json_response(self.service.info())

    async def _handle_current_round(self, request: web.Request, hotkey: str) -> web.Response:
        round_id = self.service.ledger.current_round
        data = self.service.get_round(round_id).model_dump(mode="json")
        return web.json_response({"round_id": round_id, **data})

    async def _handle_get_round(self, request: web.Request, hotkey: str) -> web.Response:
        round_id = self._round_id(request)
        data = self.service.get_round(round_id).model_dump(mode="json")
        return web.json_response({"round_id": round_id, **data})

    async def _handle_get_stake(self, request: web.Request, hotkey: str) -> web.Response:
        round_id = self._round_id(request)
        account = request.match_info["account"]
        data = self.service.get_stake(round_id, account).model_dump(mode="json")
        return web.json_response({"round_id": round_id, "account": account, **data})

    async def _handle_pending(self, request: web.Request, hotkey: str) -> web.Response:
        account = request.match_info["account"]
        return web.json_response({"account": account, **self.service.pending(account)})


__all__ = ["LedgerHTTPServer"]
