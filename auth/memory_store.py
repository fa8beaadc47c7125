"""
auth/memory_store.py -- In-memory AuthStore for unit tests and local experiments.

Mirrors SqlAuthStore behaviour method for method, including the conditional
updates: every compound operation runs under one threading.Lock, which gives
the same "only one caller wins" guarantee the SQL store gets from
UPDATE ... WHERE used = 0.

Records are copied on the way in and on the way out so callers cannot mutate
stored state by holding on to a returned dataclass -- the same isolation a
database round-trip gives.
"""

from __future__ import annotations

import copy
import itertools
import threading
import uuid
from dataclasses import fields as dataclass_fields
from datetime import datetime, timezone

from auth.models import Account, LockoutState, RecoveryCode, RefreshToken
from auth.results import DuplicateEmailError, StoreError
from auth.store import normalize_email

_UPDATABLE_FIELDS = {f.name for f in dataclass_fields(Account)} - {"id", "created_at"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryAuthStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._accounts: dict[str, Account] = {}
        self._refresh_tokens: dict[str, RefreshToken] = {}
        self._recovery_codes: dict[int, RecoveryCode] = {}
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        with self._lock:
            email = normalize_email(account.email)
            if any(a.email == email for a in self._accounts.values()):
                raise DuplicateEmailError(f"email already registered: {email}")
            now = _utcnow()
            account.id = account.id or str(uuid.uuid4())
            account.email = email
            account.created_at = now
            account.updated_at = now
            self._accounts[account.id] = copy.deepcopy(account)
        return account

    def get_account_by_id(self, account_id: str) -> Account | None:
        with self._lock:
            return copy.deepcopy(self._accounts.get(account_id))

    def get_account_by_email(self, email: str) -> Account | None:
        return self._find_account(lambda a: a.email == normalize_email(email))

    def get_account_by_confirmation_token(self, token: str) -> Account | None:
        return self._find_account(lambda a: a.email_confirmation_token == token)

    def get_account_by_reset_token(self, token: str) -> Account | None:
        return self._find_account(lambda a: a.password_reset_token == token)

    def update_account(self, account_id: str, **fields) -> bool:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return False
            for key, value in fields.items():
                setattr(account, key, value)
            account.updated_at = _utcnow()
        return True

    def _find_account(self, predicate) -> Account | None:
        with self._lock:
            for account in self._accounts.values():
                if predicate(account):
                    return copy.deepcopy(account)
        return None

    # ------------------------------------------------------------------
    # Lockout counters
    # ------------------------------------------------------------------

    def record_failed_login(self, account_id: str, threshold: int, lock_until: datetime) -> LockoutState:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                raise StoreError(f"record_failed_login: unknown account {account_id}")
            account.failed_login_attempts += 1
            if account.failed_login_attempts < threshold:
                return LockoutState(failed_attempts=account.failed_login_attempts)
            account.lockout_until = lock_until
            return LockoutState(failed_attempts=account.failed_login_attempts, locked_until=lock_until)

    def reset_failed_logins(self, account_id: str) -> None:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is not None:
                account.failed_login_attempts = 0
                account.lockout_until = None
                account.updated_at = _utcnow()

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._lock:
            token.id = next(self._ids)
            token.created_at = token.created_at or _utcnow()
            self._refresh_tokens[token.token] = copy.deepcopy(token)
        return token

    def get_refresh_token(self, token: str) -> RefreshToken | None:
        with self._lock:
            return copy.deepcopy(self._refresh_tokens.get(token))

    def revoke_refresh_token(self, token: str) -> bool:
        with self._lock:
            record = self._refresh_tokens.get(token)
            if record is None or record.revoked:
                return False
            record.revoked = True
        return True

    def rotate_refresh_token(self, old_token: str, new_token: RefreshToken, now: datetime) -> bool:
        with self._lock:
            record = self._refresh_tokens.get(old_token)
            if record is None or not record.is_active(now):
                return False
            record.revoked = True
            new_token.id = next(self._ids)
            new_token.created_at = new_token.created_at or now
            self._refresh_tokens[new_token.token] = copy.deepcopy(new_token)
        return True

    # ------------------------------------------------------------------
    # Two-factor + recovery codes
    # ------------------------------------------------------------------

    def enable_two_factor(self, account_id: str, secret: str, code_hashes: list[str]) -> None:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                raise StoreError(f"enable_two_factor: unknown account {account_id}")
            account.two_factor_enabled = True
            account.two_factor_secret = secret
            account.pending_two_factor_secret = None
            account.updated_at = _utcnow()
            self._replace_codes(account_id, code_hashes)

    def disable_two_factor(self, account_id: str) -> int:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is not None:
                account.two_factor_enabled = False
                account.two_factor_secret = None
                account.pending_two_factor_secret = None
                account.updated_at = _utcnow()
            return self._delete_codes(account_id)

    def replace_recovery_codes(self, account_id: str, code_hashes: list[str]) -> None:
        with self._lock:
            self._replace_codes(account_id, code_hashes)

    def get_unused_recovery_codes(self, account_id: str) -> list[RecoveryCode]:
        with self._lock:
            return [
                copy.deepcopy(c)
                for c in sorted(self._recovery_codes.values(), key=lambda c: c.id)
                if c.account_id == account_id and not c.used
            ]

    def mark_recovery_code_used(self, code_id: int, used_at: datetime) -> bool:
        with self._lock:
            code = self._recovery_codes.get(code_id)
            if code is None or code.used:
                return False
            code.used = True
            code.used_at = used_at
        return True

    def count_unused_recovery_codes(self, account_id: str) -> int:
        with self._lock:
            return sum(1 for c in self._recovery_codes.values() if c.account_id == account_id and not c.used)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass

    # Callers hold self._lock.

    def _replace_codes(self, account_id: str, code_hashes: list[str]) -> None:
        self._delete_codes(account_id)
        now = _utcnow()
        for code_hash in code_hashes:
            code_id = next(self._ids)
            self._recovery_codes[code_id] = RecoveryCode(
                id=code_id, account_id=account_id, code_hash=code_hash, created_at=now
            )

    def _delete_codes(self, account_id: str) -> int:
        doomed = [cid for cid, c in self._recovery_codes.items() if c.account_id == account_id]
        for cid in doomed:
            del self._recovery_codes[cid]
        return len(doomed)
