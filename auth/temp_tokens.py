"""
auth/temp_tokens.py -- Short-lived "password verified, second factor pending" tokens.

A temp token is a JWE compact string (python-jose, alg=dir, enc=A256GCM)
wrapping {"aid": account_id, "iat": issued_at, "nonce": ..., "pur": purpose}.
AES-GCM is authenticated encryption: any tampering fails decryption, and the
client cannot read the account id.

Purpose scoping:
  The 256-bit content key is HMAC-SHA256(SECRET_KEY, PURPOSE). An access token,
  a reset link or a token minted for any other purpose is encrypted or signed
  under a different key and cannot be replayed here. The purpose string is
  also checked inside the payload.

No server-side record:
  Validity is decryption + age check. By default a token stays good for every
  second-factor attempt inside its window. With Settings.temp_token_single_use
  the orchestrator calls redeem() after a successful code check; redeem()
  records the nonce in a time-bounded in-process set and refuses it the second
  time. The set is per process -- multi-worker deployments that need strict
  single use must pin the second-factor step to one worker.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import jwe
from jose.exceptions import JOSEError

from core.config import Settings

logger = logging.getLogger("portfolio_auth.auth.temp_tokens")

PURPOSE = "auth.temp-token.v1"
_ENCRYPTION = "A256GCM"
_ALGORITHM = "dir"
# Tokens stamped slightly in the future (clock skew between workers) are tolerated.
_FUTURE_SKEW = timedelta(seconds=30)


@dataclass(frozen=True)
class TempTokenClaims:
    account_id: str
    issued_at: datetime
    nonce: str


class NonceCache:
    """Thread-safe set of redeemed nonces, each forgotten after its expiry."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seen: dict[str, datetime] = {}

    def add(self, nonce: str, expires_at: datetime, now: datetime) -> bool:
        """Record `nonce`. Returns False if it was already present and unexpired."""
        with self._lock:
            self._purge(now)
            if nonce in self._seen:
                return False
            self._seen[nonce] = expires_at
            return True

    def seen(self, nonce: str, now: datetime) -> bool:
        """True if `nonce` was recorded and has not expired yet. Records nothing."""
        with self._lock:
            expires_at = self._seen.get(nonce)
            return expires_at is not None and expires_at > now

    def __len__(self) -> int:
        return len(self._seen)

    def _purge(self, now: datetime) -> None:
        expired = [n for n, exp in self._seen.items() if exp <= now]
        for nonce in expired:
            del self._seen[nonce]


class TempTokenCodec:
    def __init__(self, settings: Settings) -> None:
        self._key = hmac.new(settings.secret_key.encode(), PURPOSE.encode(), hashlib.sha256).digest()
        self.window = timedelta(minutes=settings.temp_token_expire_minutes)
        self.single_use = settings.temp_token_single_use
        self._redeemed = NonceCache()

    @property
    def expires_in(self) -> int:
        return int(self.window.total_seconds())

    def issue(self, account_id: str, now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        payload = {
            "aid": account_id,
            "iat": now.timestamp(),
            "nonce": secrets.token_urlsafe(16),
            "pur": PURPOSE,
        }
        token = jwe.encrypt(json.dumps(payload), self._key, encryption=_ENCRYPTION, algorithm=_ALGORITHM)
        return token.decode("ascii")

    def verify(self, token: str | None, now: datetime | None = None) -> TempTokenClaims | None:
        """Decrypt and age-check a temp token. Fails closed: any problem returns None."""
        if not token:
            return None
        now = now or datetime.now(timezone.utc)
        try:
            payload = json.loads(jwe.decrypt(token, self._key))
            if payload.get("pur") != PURPOSE:
                return None
            account_id = payload["aid"]
            issued_at = datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc)
            nonce = payload["nonce"]
        except (JOSEError, ValueError, TypeError, KeyError, AttributeError) as exc:
            logger.debug("Temp token rejected: %s", type(exc).__name__)
            return None
        if not isinstance(account_id, str) or not account_id:
            return None
        age = now - issued_at
        if age > self.window or age < -_FUTURE_SKEW:
            return None
        return TempTokenClaims(account_id=account_id, issued_at=issued_at, nonce=str(nonce))

    def is_redeemed(self, claims: TempTokenClaims, now: datetime | None = None) -> bool:
        """True if single-use mode is on and this token was already redeemed."""
        if not self.single_use:
            return False
        return self._redeemed.seen(claims.nonce, now or datetime.now(timezone.utc))

    def redeem(self, claims: TempTokenClaims, now: datetime | None = None) -> bool:
        """Burn the token if single-use mode is on. Always True when it is off."""
        if not self.single_use:
            return True
        now = now or datetime.now(timezone.utc)
        return self._redeemed.add(claims.nonce, claims.issued_at + self.window, now)
