"""Wallet challenge-response login and bearer tokens.

Login: the client asks for a challenge bound to its Bitcoin address, signs it
with the wallet, and trades the signature for a stateless HMAC token.
Challenges are single use: any verification attempt consumes them.
"""

import base64
import binascii
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable

from crypto import canonical_json, hmac_sign, hmac_verify, verify_bitcoin_message
from protocol import CHALLENGE_TTL_SECONDS, DOMAIN_TAG, TOKEN_MAX_AGE_SECONDS

logger = logging.getLogger(__name__)


@dataclass
class Challenge:
    message: str
    expires_at: float  # epoch seconds


class ChallengeStore:
    """Pending challenges keyed by address.

    This is the only in-process shared mutable state of the server. It is
    constructed once and injected so it can be swapped for a shared backend
    when running several instances.
    """

    def __init__(self):
        self._challenges: dict[str, Challenge] = {}
        self._lock = threading.Lock()

    def put(self, address: str, challenge: Challenge):
        with self._lock:
            self._challenges[address] = challenge

    def pop(self, address: str) -> Challenge | None:
        with self._lock:
            return self._challenges.pop(address, None)

    def prune(self, now: float) -> int:
        """Drop expired challenges. Returns how many were removed."""
        with self._lock:
            stale = [a for a, c in self._challenges.items() if c.expires_at < now]
            for address in stale:
                del self._challenges[address]
            return len(stale)

    def __len__(self):
        with self._lock:
            return len(self._challenges)


SignatureVerifier = Callable[[str, str, str], bool]


class ChallengeAuth:
    """Issues/verifies address-bound challenges and bearer tokens."""

    def __init__(self, secret: str | bytes, challenges: ChallengeStore | None = None,
                 signature_verifier: SignatureVerifier = verify_bitcoin_message,
                 clock: Callable[[], float] = time.time):
        if not secret:
            raise ValueError("Auth secret required")
        self._secret = secret.encode("utf-8") if isinstance(secret, str) else secret
        self.challenges = challenges if challenges is not None else ChallengeStore()
        self._verify_signature = signature_verifier
        self._clock = clock

    def issue_challenge(self, address: str) -> str:
        """Create a fresh challenge for *address*, replacing any pending one."""
        now = self._clock()
        nonce = secrets.token_hex(16)
        message = f"{DOMAIN_TAG}:{int(now * 1000)}:{nonce}"
        self.challenges.put(address, Challenge(message, now + CHALLENGE_TTL_SECONDS))
        return message

    def verify(self, address: str, signature: str) -> bool:
        """Check *signature* over the pending challenge for *address*.

        The challenge is consumed whatever the outcome.
        """
        stored = self.challenges.pop(address)
        if stored is None:
            return False
        if self._clock() > stored.expires_at:
            logger.info("Expired challenge for %s", address)
            return False
        try:
            return bool(self._verify_signature(address, stored.message, signature))
        except Exception:
            logger.debug("Signature check raised for %s", address, exc_info=True)
            return False

    def issue_token(self, address: str) -> str:
        data = canonical_json({"btcAddress": address, "ts": int(self._clock() * 1000)}).decode("utf-8")
        sig = hmac_sign(self._secret, data.encode("utf-8"))
        return base64.b64encode(f"{data}.{sig}".encode("utf-8")).decode("ascii")

    def verify_token(self, token: str) -> str | None:
        """Return the address a token was issued to, or None if it is
        malformed, tampered with, or older than 24 hours."""
        try:
            decoded = base64.b64decode(token, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return None
        data, sep, sig = decoded.rpartition(".")
        if not sep:
            return None
        try:
            if not hmac_verify(self._secret, data.encode("utf-8"), sig):
                return None
        except TypeError:  # non-ASCII mac
            return None
        try:
            payload = json.loads(data)
            address = payload["btcAddress"]
            issued_ms = int(payload["ts"])
        except (ValueError, KeyError, TypeError):
            return None
        if not isinstance(address, str) or not address:
            return None
        if self._clock() * 1000 - issued_ms > TOKEN_MAX_AGE_SECONDS * 1000:
            return None
        return address
