"""
auth/hashing.py -- Slow salted hashing for passwords and recovery codes.

bcrypt used directly (no passlib wrapper): passlib's wrap-bug detection builds
a password longer than 72 bytes, which bcrypt 4.x rejects with an explicit
error.

Passwords and recovery codes are both low-entropy secrets, so both go through
the same adaptive hash. The cost factor comes from Settings.bcrypt_rounds;
production keeps bcrypt's default of 12, tests use 4.

The dummy hash supports timing equalization [C1]: login always runs one
bcrypt check, even when the email does not exist, so response time does not
reveal which accounts are registered.
"""

from __future__ import annotations

from typing import Protocol

import bcrypt

_MAX_BYTES = 72


class PasswordHasher(Protocol):
    def hash(self, plain: str) -> str: ...
    def verify(self, plain: str, hashed: str) -> bool: ...
    def burn(self, plain: str) -> None: ...


class BcryptHasher:
    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._dummy_hash = self.hash("portfolio_auth_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash of `plain`.

        bcrypt only reads the first 72 bytes and bcrypt 5 refuses longer
        input, so the password is cut to 72 bytes here and in verify().
        """
        return bcrypt.hashpw(_encode(plain), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Constant-time check of `plain` against a bcrypt hash. Malformed hashes return False."""
        if not plain or not hashed:
            return False
        try:
            return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
        except ValueError:
            return False

    def burn(self, plain: str) -> None:
        """Spend one bcrypt verification on the dummy hash (timing equalization)."""
        self.verify(plain or "x", self._dummy_hash)


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_MAX_BYTES]
