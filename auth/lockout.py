"""
auth/lockout.py -- Temporary lockout after repeated password failures.

Rules:
  - Each failed password check increments failed_login_attempts.
  - When the count reaches `threshold` (5) the account is locked for
    `lockout_minutes` (15). The counter is NOT reset when the lock is set.
  - Once lockout_until passes, login works again, but the counter stays where
    it is until the next successful authentication. One more failure after an
    expired lock therefore re-locks immediately.
  - Second-factor failures do not count; lockout is scoped to passwords.

Storage errors propagate (StoreError). A failure to persist the counter must
never turn into "let the login through".
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone

from auth.models import Account, LockoutState
from auth.store import AuthStore

logger = logging.getLogger("portfolio_auth.auth.lockout")


class LockoutPolicy:
    def __init__(self, store: AuthStore, threshold: int = 5, lockout_minutes: int = 15) -> None:
        self._store = store
        self.threshold = threshold
        self.duration = timedelta(minutes=lockout_minutes)

    def record_failure(self, account: Account, now: datetime | None = None) -> LockoutState:
        now = now or datetime.now(timezone.utc)
        state = self._store.record_failed_login(account.id, self.threshold, now + self.duration)
        if state.is_locked:
            logger.warning(
                "Account %s locked until %s after %d failed logins",
                account.id,
                state.locked_until.isoformat(),
                state.failed_attempts,
            )
        return state

    def record_success(self, account: Account) -> None:
        if account.failed_login_attempts or account.lockout_until is not None:
            self._store.reset_failed_logins(account.id)

    def is_locked(self, account: Account, now: datetime | None = None) -> bool:
        if account.lockout_until is None:
            return False
        return account.lockout_until > (now or datetime.now(timezone.utc))

    def remaining(self, account: Account, now: datetime | None = None) -> timedelta:
        if not self.is_locked(account, now):
            return timedelta(0)
        return account.lockout_until - (now or datetime.now(timezone.utc))

    def remaining_minutes(self, account: Account, now: datetime | None = None) -> int:
        """Minutes left on the lock, rounded up (for the 'try again in N minutes' message)."""
        return math.ceil(self.remaining(account, now).total_seconds() / 60)
