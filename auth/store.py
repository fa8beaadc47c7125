"""
auth/store.py -- Persistence layer for accounts, refresh tokens and recovery codes.

Pattern: Repository + Data Mapper.
  AuthStore is the repository interface (a typing.Protocol, so implementations
  match structurally and never inherit). SqlAuthStore is the durable
  SQLAlchemy Core implementation; auth/memory_store.py holds the in-memory one
  used by unit tests. _row_to_* functions are the mappers. Orchestrator and
  route code never touch SQL directly.

Atomicity:
  Every compound write runs inside engine.begin() so it commits or rolls back
  as a unit. The two races that matter are closed with conditional updates:
    - mark_recovery_code_used(): UPDATE ... WHERE id = :id AND used = 0.
      Only one concurrent caller sees rowcount == 1.
    - rotate_refresh_token(): UPDATE ... WHERE token = :t AND revoked = 0 AND
      expires_at > :now, then INSERT of the successor in the same transaction.
      The revoke is the binding step; rowcount == 0 aborts before the insert.
  record_failed_login() increments in SQL (col = col + 1), so the counter is
  monotonic even when two failed attempts race.

Timestamps are persisted as fixed-width ISO 8601 UTC strings
(YYYY-MM-DDTHH:MM:SS.ffffff+00:00) so string comparison in SQL matches
chronological order.

Security:
  All queries use bound parameters. No f-strings in SQL.

Errors:
  SQLAlchemy exceptions are wrapped in StoreError (DuplicateEmailError for the
  unique email constraint). Nothing is swallowed here.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import Account, LockoutState, RecoveryCode, RefreshToken
from auth.results import DuplicateEmailError, StoreError

# ---------------------------------------------------------------------------
# Repository interface
# ---------------------------------------------------------------------------


class AuthStore(Protocol):
    """Narrow storage interface consumed by the auth components."""

    # Accounts
    def create_account(self, account: Account) -> Account: ...
    def get_account_by_id(self, account_id: str) -> Account | None: ...
    def get_account_by_email(self, email: str) -> Account | None: ...
    def get_account_by_confirmation_token(self, token: str) -> Account | None: ...
    def get_account_by_reset_token(self, token: str) -> Account | None: ...
    def update_account(self, account_id: str, **fields) -> bool: ...

    # Lockout counters
    def record_failed_login(self, account_id: str, threshold: int, lock_until: datetime) -> LockoutState: ...
    def reset_failed_logins(self, account_id: str) -> None: ...

    # Refresh tokens
    def add_refresh_token(self, token: RefreshToken) -> RefreshToken: ...
    def get_refresh_token(self, token: str) -> RefreshToken | None: ...
    def revoke_refresh_token(self, token: str) -> bool: ...
    def rotate_refresh_token(self, old_token: str, new_token: RefreshToken, now: datetime) -> bool: ...

    # Two-factor + recovery codes
    def enable_two_factor(self, account_id: str, secret: str, code_hashes: list[str]) -> None: ...
    def disable_two_factor(self, account_id: str) -> int: ...
    def replace_recovery_codes(self, account_id: str, code_hashes: list[str]) -> None: ...
    def get_unused_recovery_codes(self, account_id: str) -> list[RecoveryCode]: ...
    def mark_recovery_code_used(self, code_id: int, used_at: datetime) -> bool: ...
    def count_unused_recovery_codes(self, account_id: str) -> int: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # always lower-cased
    Column("name", String(100), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default="User"),
    Column("language", String(10), nullable=False, server_default="en-US"),
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("two_factor_secret", String(64)),  # NULL unless 2FA is enabled
    Column("pending_two_factor_secret", String(64)),  # set by setup, cleared by enable
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("lockout_until", String(32)),
    Column("email_confirmed", Integer, nullable=False, server_default="0"),
    Column("email_confirmation_token", String(64), index=True),
    Column("email_confirmation_expires", String(32)),
    Column("password_reset_token", String(64), index=True),
    Column("password_reset_expires", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String(36), nullable=False, index=True),
    Column("token", String(255), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_recovery_codes = Table(
    "recovery_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String(36), nullable=False, index=True),
    Column("code_hash", String(100), nullable=False),  # bcrypt, never plaintext
    Column("used", Integer, nullable=False, server_default="0"),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_BOOL_FIELDS = {"two_factor_enabled", "email_confirmed"}
_DATETIME_FIELDS = {
    "lockout_until",
    "email_confirmation_expires",
    "password_reset_expires",
    "created_at",
    "updated_at",
}
_UPDATABLE_FIELDS = {c.name for c in _accounts.columns} - {"id", "created_at"}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def normalize_email(email: str) -> str:
    return email.strip().lower()


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except StoreError:
        raise
    except SQLAlchemyError as exc:
        raise StoreError(f"{action} failed") from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SqlAuthStore:
    """SQLAlchemy Core implementation of AuthStore.

    Usage:
        store = SqlAuthStore("sqlite:///portfolio_auth.db")
        account = store.create_account(Account(email="a@x.com", name="A", password_hash=h))
        store.get_account_by_email("A@X.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        """Insert a new account and return it with id and timestamps assigned.

        Raises DuplicateEmailError when the (lower-cased) email already exists.
        The orchestrator checks first, but the unique index is what actually
        settles two concurrent registrations.
        """
        now = _utcnow()
        account.id = account.id or str(uuid.uuid4())
        account.email = normalize_email(account.email)
        account.created_at = now
        account.updated_at = now
        values = {c.name: getattr(account, c.name) for c in _accounts.columns}
        try:
            with self.engine.begin() as conn:
                conn.execute(_accounts.insert().values(**_encode_fields(values)))
        except IntegrityError as exc:
            raise DuplicateEmailError(f"email already registered: {account.email}") from exc
        except SQLAlchemyError as exc:
            raise StoreError("create_account failed") from exc
        return account

    def get_account_by_id(self, account_id: str) -> Account | None:
        return self._fetch_account(_accounts.c.id == account_id)

    def get_account_by_email(self, email: str) -> Account | None:
        """Case-insensitive lookup: the stored value is already lower-case."""
        return self._fetch_account(_accounts.c.email == normalize_email(email))

    def get_account_by_confirmation_token(self, token: str) -> Account | None:
        return self._fetch_account(_accounts.c.email_confirmation_token == token)

    def get_account_by_reset_token(self, token: str) -> Account | None:
        return self._fetch_account(_accounts.c.password_reset_token == token)

    def update_account(self, account_id: str, **fields) -> bool:
        """Update mutable account columns. Returns False if account_id is unknown.

        Column names come from the _UPDATABLE_FIELDS whitelist; an unknown key
        raises ValueError rather than being ignored.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        fields["updated_at"] = _utcnow()
        with _translate_errors("update_account"), self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(**_encode_fields(fields))
            )
        return result.rowcount > 0

    def _fetch_account(self, clause) -> Account | None:
        with _translate_errors("account lookup"), self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(clause)).fetchone()
        return _row_to_account(row) if row is not None else None

    # ------------------------------------------------------------------
    # Lockout counters
    # ------------------------------------------------------------------

    def record_failed_login(self, account_id: str, threshold: int, lock_until: datetime) -> LockoutState:
        """Increment the failed-attempt counter; lock the account at `threshold`.

        The increment is expressed in SQL so concurrent failures never lose a
        step backwards. The lock is written in the same transaction.
        """
        with _translate_errors("record_failed_login"), self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(failed_login_attempts=_accounts.c.failed_login_attempts + 1)
            )
            count = conn.execute(
                select(_accounts.c.failed_login_attempts).where(_accounts.c.id == account_id)
            ).scalar_one_or_none()
            if count is None:
                raise StoreError(f"record_failed_login: unknown account {account_id}")
            if count < threshold:
                return LockoutState(failed_attempts=count)
            conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(lockout_until=_to_iso(lock_until))
            )
        return LockoutState(failed_attempts=count, locked_until=lock_until)

    def reset_failed_logins(self, account_id: str) -> None:
        with _translate_errors("reset_failed_logins"), self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(failed_login_attempts=0, lockout_until=None, updated_at=_to_iso(_utcnow()))
            )

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        token.created_at = token.created_at or _utcnow()
        with _translate_errors("add_refresh_token"), self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(token)))
        token.id = result.inserted_primary_key[0]
        return token

    def get_refresh_token(self, token: str) -> RefreshToken | None:
        with _translate_errors("get_refresh_token"), self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == token)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def revoke_refresh_token(self, token: str) -> bool:
        """Mark a token revoked. Returns False if it was unknown or already revoked."""
        with _translate_errors("revoke_refresh_token"), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token == token) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
        return result.rowcount > 0

    def rotate_refresh_token(self, old_token: str, new_token: RefreshToken, now: datetime) -> bool:
        """Revoke old_token and persist new_token as one unit.

        Returns False (and writes nothing) if old_token is unknown, already
        revoked or expired at `now`. A crash before commit leaves the old
        token active and the new one absent; a crash after commit leaves only
        the new one usable.
        """
        new_token.created_at = new_token.created_at or now
        with _translate_errors("rotate_refresh_token"), self.engine.begin() as conn:
            revoked = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token == old_token)
                    & (_refresh_tokens.c.revoked == 0)
                    & (_refresh_tokens.c.expires_at > _to_iso(now))
                )
                .values(revoked=1)
            )
            if revoked.rowcount != 1:
                return False
            result = conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(new_token)))
        new_token.id = result.inserted_primary_key[0]
        return True

    # ------------------------------------------------------------------
    # Two-factor + recovery codes
    # ------------------------------------------------------------------

    def enable_two_factor(self, account_id: str, secret: str, code_hashes: list[str]) -> None:
        """Store the live secret, flip the flag and write a fresh code batch atomically."""
        now = _to_iso(_utcnow())
        with _translate_errors("enable_two_factor"), self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    two_factor_enabled=1,
                    two_factor_secret=secret,
                    pending_two_factor_secret=None,
                    updated_at=now,
                )
            )
            conn.execute(_recovery_codes.delete().where(_recovery_codes.c.account_id == account_id))
            _insert_codes(conn, account_id, code_hashes, now)

    def disable_two_factor(self, account_id: str) -> int:
        """Clear secrets and flag, delete every recovery code. Returns codes deleted."""
        with _translate_errors("disable_two_factor"), self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    two_factor_enabled=0,
                    two_factor_secret=None,
                    pending_two_factor_secret=None,
                    updated_at=_to_iso(_utcnow()),
                )
            )
            result = conn.execute(_recovery_codes.delete().where(_recovery_codes.c.account_id == account_id))
        return result.rowcount

    def replace_recovery_codes(self, account_id: str, code_hashes: list[str]) -> None:
        with _translate_errors("replace_recovery_codes"), self.engine.begin() as conn:
            conn.execute(_recovery_codes.delete().where(_recovery_codes.c.account_id == account_id))
            _insert_codes(conn, account_id, code_hashes, _to_iso(_utcnow()))

    def get_unused_recovery_codes(self, account_id: str) -> list[RecoveryCode]:
        with _translate_errors("get_unused_recovery_codes"), self.engine.connect() as conn:
            rows = conn.execute(
                _recovery_codes.select()
                .where((_recovery_codes.c.account_id == account_id) & (_recovery_codes.c.used == 0))
                .order_by(_recovery_codes.c.id)
            ).fetchall()
        return [_row_to_recovery_code(r) for r in rows]

    def mark_recovery_code_used(self, code_id: int, used_at: datetime) -> bool:
        """Compare-and-set: only flips a code that is still unused."""
        with _translate_errors("mark_recovery_code_used"), self.engine.begin() as conn:
            result = conn.execute(
                _recovery_codes.update()
                .where((_recovery_codes.c.id == code_id) & (_recovery_codes.c.used == 0))
                .values(used=1, used_at=_to_iso(used_at))
            )
        return result.rowcount == 1

    def count_unused_recovery_codes(self, account_id: str) -> int:
        with _translate_errors("count_unused_recovery_codes"), self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_recovery_codes)
                .where((_recovery_codes.c.account_id == account_id) & (_recovery_codes.c.used == 0))
            ).scalar()
        return result or 0

    def ping(self) -> bool:
        """Round-trip a trivial query. Raises StoreError when the database is unreachable."""
        with _translate_errors("ping"), self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Value encoders
# ---------------------------------------------------------------------------


def _encode_fields(fields: dict) -> dict:
    encoded = {}
    for key, value in fields.items():
        if key in _BOOL_FIELDS:
            value = 1 if value else 0
        elif key in _DATETIME_FIELDS:
            value = _to_iso(value)
        encoded[key] = value
    return encoded


def _refresh_token_values(token: RefreshToken) -> dict:
    return {
        "account_id": token.account_id,
        "token": token.token,
        "expires_at": _to_iso(token.expires_at),
        "revoked": 1 if token.revoked else 0,
        "created_at": _to_iso(token.created_at),
    }


def _insert_codes(conn, account_id: str, code_hashes: list[str], created_at: str | None) -> None:
    if not code_hashes:
        return
    conn.execute(
        _recovery_codes.insert(),
        [{"account_id": account_id, "code_hash": h, "used": 0, "created_at": created_at} for h in code_hashes],
    )


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        role=row.role,
        language=row.language,
        two_factor_enabled=bool(row.two_factor_enabled),
        two_factor_secret=row.two_factor_secret,
        pending_two_factor_secret=row.pending_two_factor_secret,
        failed_login_attempts=row.failed_login_attempts,
        lockout_until=_from_iso(row.lockout_until),
        email_confirmed=bool(row.email_confirmed),
        email_confirmation_token=row.email_confirmation_token,
        email_confirmation_expires=_from_iso(row.email_confirmation_expires),
        password_reset_token=row.password_reset_token,
        password_reset_expires=_from_iso(row.password_reset_expires),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        account_id=row.account_id,
        token=row.token,
        expires_at=_from_iso(row.expires_at),
        revoked=bool(row.revoked),
        created_at=_from_iso(row.created_at),
    )


def _row_to_recovery_code(row) -> RecoveryCode:
    return RecoveryCode(
        id=row.id,
        account_id=row.account_id,
        code_hash=row.code_hash,
        used=bool(row.used),
        used_at=_from_iso(row.used_at),
        created_at=_from_iso(row.created_at),
    )
