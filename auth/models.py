"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; the store, the policy objects and the orchestrator do the work.

Timestamps are timezone-aware UTC datetimes in memory. The SQL store persists
them as ISO 8601 strings and parses them back in its row mappers.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

ROLE_USER = "User"
ROLE_ADMIN = "Admin"

LANGUAGES = ("en-US", "es-ES")


@dataclass
class Account:
    """A registered identity.

    email is always stored lower-cased; lookups normalise before comparing,
    which is what makes uniqueness case-insensitive.

    two_factor_secret is set only while two_factor_enabled is True.
    pending_two_factor_secret holds the secret handed out by setup until the
    user proves possession of it by enabling 2FA; it never authenticates.

    failed_login_attempts is never reset by the passage of time -- only a
    successful authentication clears it (see auth/lockout.py).
    """

    email: str
    name: str
    password_hash: str
    id: str = ""
    role: str = ROLE_USER
    language: str = "en-US"
    two_factor_enabled: bool = False
    two_factor_secret: str | None = None
    pending_two_factor_secret: str | None = None
    failed_login_attempts: int = 0
    lockout_until: datetime | None = None
    email_confirmed: bool = False
    email_confirmation_token: str | None = None
    email_confirmation_expires: datetime | None = None
    password_reset_token: str | None = None
    password_reset_expires: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class RefreshToken:
    """A long-lived opaque credential exchanged for a new token pair.

    token is the raw value handed to the client. Each value is good for one
    exchange: rotation revokes it and writes a brand new record.
    """

    account_id: str
    token: str
    expires_at: datetime
    id: int | None = None
    revoked: bool = False
    created_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now


@dataclass
class RecoveryCode:
    """One single-use backup credential. Only the bcrypt hash is persisted."""

    account_id: str
    code_hash: str
    id: int | None = None
    used: bool = False
    used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class LockoutState:
    """Outcome of recording a failed password attempt."""

    failed_attempts: int
    locked_until: datetime | None = None

    @property
    def is_locked(self) -> bool:
        return self.locked_until is not None
