"""Ledger access policy: challenge-response auth with optional allowlist.

Callers prove ownership of a hotkey by signing a server-issued nonce and
receive a bearer token. The hotkey behind a token is the caller's ledger
account; operator-only operations additionally require it to equal the
configured operator hotkey.
"""

from __future__ import annotations

import secrets
import time
from collections import OrderedDict
from dataclasses import dataclass

import bittensor as bt


@dataclass
class EligibilityResult:
    """Result of an eligibility check."""

    eligible: bool
    reason: str = ""


@dataclass
class _PendingChallenge:
    """A nonce waiting for response."""

    nonce: str
    hotkey: str
    created_at: float
    ttl: float = 120.0

    @property
    def expired(self) -> bool:
        return time.time() > self.created_at + self.ttl


@dataclass
class _TokenEntry:
    """An issued bearer token."""

    hotkey: str
    created_at: float
    ttl: float

    @property
    def expired(self) -> bool:
        return time.time() > self.created_at + self.ttl


class AccessPolicy:
    """Challenge-response auth, token bookkeeping and per-hotkey rate limits.

    Fail-closed: any verification failure = reject.
    """

    def __init__(
        self,
        operator_hotkey: str,
        allowed_hotkeys: set[str] | None = None,
        token_ttl: int = 3600,
        rate_limit_per_hour: int = 600,
        max_tokens: int = 500,
    ):
        self.operator_hotkey = operator_hotkey
        self.allowed_hotkeys = allowed_hotkeys
        self.token_ttl = token_ttl
        self.rate_limit_per_hour = rate_limit_per_hour
        self.max_tokens = max_tokens

        self._challenges: dict[str, _PendingChallenge] = {}
        # token -> _TokenEntry, LRU ordered
        self._tokens: OrderedDict[str, _TokenEntry] = OrderedDict()
        self._request_log: dict[str, list[float]] = {}

    def is_operator(self, hotkey: str | None) -> bool:
        return bool(hotkey) and hotkey == self.operator_hotkey

    # -- Eligibility --

    def check_eligibility(self, hotkey: str) -> EligibilityResult:
        """A hotkey may authenticate if it is non-empty and, when an
        allowlist is configured, listed (the operator is always allowed)."""
        def _reject(reason: str) -> EligibilityResult:
            bt.logging.warning({"ledger_auth": {"event": "eligibility_rejected", "hotkey": hotkey[:16] if hotkey else "none", "reason": reason}})
            return EligibilityResult(eligible=False, reason=reason)

        if not hotkey:
            return _reject("empty_hotkey")

        if self.is_operator(hotkey):
            return EligibilityResult(eligible=True)

        if self.allowed_hotkeys is not None and hotkey not in self.allowed_hotkeys:
            return _reject("hotkey_not_allowed")

        return EligibilityResult(eligible=True)

    # -- Challenge-response --

    def issue_challenge(self, hotkey: str) -> str:
        """Generate a random nonce for a hotkey to sign."""
        self._challenges = {
            k: v for k, v in self._challenges.items() if not v.expired
        }

        nonce = secrets.token_hex(32)
        self._challenges[nonce] = _PendingChallenge(
            nonce=nonce,
            hotkey=hotkey,
            created_at=time.time(),
        )
        return nonce

    def verify_response(
        self, hotkey: str, nonce: str, signature: str,
    ) -> str | None:
        """Verify a signed challenge and issue a bearer token.

        Returns:
            Bearer token string on success, None on failure.
        """
        hk = hotkey[:16] if hotkey else "none"

        # Nonces are single-use
        challenge = self._challenges.pop(nonce, None)
        if challenge is None:
            bt.logging.warning({"ledger_auth": {"event": "verify_failed", "hotkey": hk, "reason": "unknown_nonce"}})
            return None
        if challenge.expired:
            bt.logging.warning({"ledger_auth": {"event": "verify_failed", "hotkey": hk, "reason": "expired_nonce"}})
            return None
        if challenge.hotkey != hotkey:
            bt.logging.warning({"ledger_auth": {"event": "verify_failed", "hotkey": hk, "reason": "hotkey_mismatch"}})
            return None

        try:
            sig_bytes = bytes.fromhex(signature)
            keypair = bt.Keypair(ss58_address=hotkey)
            if not keypair.verify(nonce.encode(), sig_bytes):
                bt.logging.warning({"ledger_auth": {"event": "verify_failed", "hotkey": hk, "reason": "bad_signature"}})
                return None
        except Exception:
            bt.logging.warning({"ledger_auth": {"event": "verify_failed", "hotkey": hk, "reason": "signature_exception"}})
            return None

        return self.issue_token(hotkey)

    def issue_token(self, hotkey: str) -> str:
        """Mint a bearer token for an already verified hotkey."""
        token = secrets.token_hex(32)
        while len(self._tokens) >= self.max_tokens:
            self._tokens.popitem(last=False)

        self._tokens[token] = _TokenEntry(hotkey=hotkey, created_at=time.time(), ttl=self.token_ttl)
        bt.logging.info({"ledger_auth": {"event": "token_issued", "hotkey": hotkey[:16], "operator": self.is_operator(hotkey)}})
        return token

    def validate_token(self, token: str) -> str | None:
        """Validate a bearer token. Returns the hotkey or None."""
        entry = self._tokens.get(token)
        if entry is None:
            return None
        if entry.expired:
            self._tokens.pop(token, None)
            return None
        self._tokens.move_to_end(token)
        return entry.hotkey

    # -- Rate limiting --

    def check_rate_limit(self, hotkey: str) -> bool:
        """Sliding one-hour window. Returns True if the request is allowed."""
        now = time.time()
        window = 3600.0

        log = [t for t in self._request_log.get(hotkey, []) if now - t < window]
        log.append(now)
        self._request_log[hotkey] = log

        allowed = len(log) <= self.rate_limit_per_hour
        if not allowed:
            bt.logging.warning({"ledger_auth": {"event": "rate_limited", "hotkey": hotkey[:16] if hotkey else "none", "requests_in_window": len(log)}})
        return allowed


__all__ = ["AccessPolicy", "EligibilityResult"]
