"""
auth/tokens.py -- Access-token (JWT) minting/validation and refresh-token generation.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub (account id), email, name, role, language, iss, aud, iat and exp.
       validate() returns None on any failure -- bad signature, wrong
       issuer, wrong audience, expired, missing claims. The route layer
       turns None into a 401; nothing here raises to the caller.

  Refresh tokens: secrets.token_urlsafe(64) -- 64 random bytes (512 bits),
       URL-safe base64 so the value survives JSON, headers and query strings.
       They are opaque: validity lives entirely in the refresh_tokens table.

  SECRET_KEY: arrives through the Settings object handed to TokenIssuer.
       Settings refuses to load without a key of at least 32 characters
       outside debug mode [M6][M7].

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import Account
from core.config import Settings

logger = logging.getLogger("portfolio_auth.auth.tokens")

_ALGORITHM = "HS256"
_REFRESH_TOKEN_BYTES = 64
_REQUIRED_CLAIMS = ("sub", "email", "role")


@dataclass(frozen=True)
class AccessClaims:
    """The verified identity carried by an access token."""

    account_id: str
    email: str
    name: str
    role: str
    language: str
    expires_at: datetime


class TokenIssuer:
    """Mints and checks signed access tokens; generates opaque refresh tokens."""

    def __init__(self, settings: Settings) -> None:
        self._key = settings.secret_key
        self._issuer = settings.jwt_issuer
        self._audience = settings.jwt_audience
        self._lifetime = timedelta(minutes=settings.access_token_expire_minutes)

    @property
    def expires_in(self) -> int:
        """Access-token lifetime in seconds (the expiresIn field of auth responses)."""
        return int(self._lifetime.total_seconds())

    def issue_access_token(self, account: Account, now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        payload = {
            "sub": account.id,
            "email": account.email,
            "name": account.name,
            "role": account.role,
            "language": account.language,
            "iss": self._issuer,
            "aud": self._audience,
            "iat": now,
            "exp": now + self._lifetime,
        }
        return jwt.encode(payload, self._key, algorithm=_ALGORITHM)

    @staticmethod
    def issue_refresh_token() -> str:
        return secrets.token_urlsafe(_REFRESH_TOKEN_BYTES)

    def validate(self, token: str | None) -> AccessClaims | None:
        """Decode and verify an access token. Returns claims, or None on any failure.

        Returning None (rather than raising) keeps callers simple: every
        invalid token is treated as unauthenticated.
        """
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self._key,
                algorithms=[_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options={"require_exp": True, "require_iat": True},
            )
        except JWTError as exc:
            logger.debug("Access token rejected: %s", exc)
            return None
        if any(not payload.get(claim) for claim in _REQUIRED_CLAIMS):
            return None
        return AccessClaims(
            account_id=payload["sub"],
            email=payload["email"],
            name=payload.get("name", ""),
            role=payload["role"],
            language=payload.get("language", "en-US"),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
