"""
auth/recovery.py -- One-time recovery codes for accounts with 2FA enabled.

Codes look like "482-907": two groups of three digits drawn with secrets
(uniform, CSPRNG). Only bcrypt hashes are stored; the plaintext batch is
returned exactly once, at generation time.

consume() scans the account's unused codes with bcrypt.checkpw (constant
time per comparison), then claims the match through the store's conditional
update. If two requests present the same code concurrently, both may find the
hash but only one update hits an unused row -- the other gets False.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone

from auth.hashing import PasswordHasher
from auth.store import AuthStore

logger = logging.getLogger("portfolio_auth.auth.recovery")


def format_code(value: int) -> str:
    """Render a number in [0, 10**6) as 'DDD-DDD'."""
    digits = f"{value:06d}"
    return f"{digits[:3]}-{digits[3:]}"


def normalize_code(code: str) -> str:
    """Accept '482907', '482 907' or '482-907'; return the canonical 'DDD-DDD' or ''."""
    digits = "".join(ch for ch in code if ch.isdigit())
    if len(digits) != 6 or len(code.strip()) > 8:
        return ""
    return f"{digits[:3]}-{digits[3:]}"


class RecoveryCodeVault:
    def __init__(self, store: AuthStore, hasher: PasswordHasher, default_count: int = 10) -> None:
        self._store = store
        self._hasher = hasher
        self.default_count = default_count

    def generate(self, account_id: str, count: int | None = None) -> list[str]:
        """Replace the account's codes with a fresh batch; return the plaintexts."""
        codes, hashes = self._new_batch(count)
        self._store.replace_recovery_codes(account_id, hashes)
        logger.info("Recovery codes regenerated for account %s (%d codes)", account_id, len(codes))
        return codes

    def enroll(self, account_id: str, secret: str, count: int | None = None) -> list[str]:
        """Turn 2FA on with `secret` and write the first batch in one store transaction."""
        codes, hashes = self._new_batch(count)
        self._store.enable_two_factor(account_id, secret, hashes)
        return codes

    def consume(self, account_id: str, code: str | None, now: datetime | None = None) -> bool:
        canonical = normalize_code(code or "")
        if not canonical:
            return False
        for candidate in self._store.get_unused_recovery_codes(account_id):
            if self._hasher.verify(canonical, candidate.code_hash):
                claimed = self._store.mark_recovery_code_used(candidate.id, now or datetime.now(timezone.utc))
                if not claimed:
                    logger.warning("Recovery code for account %s was claimed concurrently", account_id)
                return claimed
        return False

    def remaining(self, account_id: str) -> int:
        return self._store.count_unused_recovery_codes(account_id)

    def _new_batch(self, count: int | None) -> tuple[list[str], list[str]]:
        count = count or self.default_count
        codes: list[str] = []
        seen: set[str] = set()
        while len(codes) < count:
            code = format_code(secrets.randbelow(10**6))
            if code in seen:
                continue
            seen.add(code)
            codes.append(code)
        return codes, [self._hasher.hash(c) for c in codes]
