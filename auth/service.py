"""
auth/service.py -- AuthOrchestrator: the login state machine and account flows.

States:
  Anonymous -> CredentialsVerified -> Authenticated            (2FA off)
  Anonymous -> CredentialsVerified -> PendingSecondFactor
            -> Authenticated                                   (TOTP or recovery code)

PendingSecondFactor is carried by the client as a temp token (auth/temp_tokens.py);
nothing is written server-side between the password step and the code step.

Every public method returns a Result. Expected declines (bad password, bad
code, expired token) are failures with an ErrorCode. A StoreError from the
persistence layer is logged with its traceback and returned as INTERNAL with
a generic message -- store details never reach the client.

Security:
  [C1] login() runs one bcrypt check even for unknown emails (hasher.burn) so
       timing does not reveal registered accounts.
  Lockout is checked before the password. A locked account answers LOCKED
       whatever the password, so the lock cannot be used as a password oracle.
  Second-factor failures never touch the lockout counter.
  forgot_password() answers the same way whether or not the email exists.
  Secrets, codes and tokens are never logged; account ids are.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import functools
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from auth.hashing import BcryptHasher, PasswordHasher
from auth.lockout import LockoutPolicy
from auth.mailer import LogMailer, Mailer
from auth.models import LANGUAGES, ROLE_ADMIN, Account, RefreshToken
from auth.recovery import RecoveryCodeVault
from auth.results import DuplicateEmailError, ErrorCode, Result, StoreError
from auth.store import AuthStore
from auth.temp_tokens import TempTokenCodec
from auth.tokens import TokenIssuer
from auth.totp import TwoFactorEngine
from core.config import Settings

logger = logging.getLogger("portfolio_auth.auth.service")

_BAD_CREDENTIALS = "Invalid email or password."
_BAD_TEMP_TOKEN = "Invalid or expired two-factor session."
_BAD_CODE = "Invalid verification code."
_BAD_REFRESH = "Invalid or expired refresh token."
_NOT_FOUND = "Account not found."
_INTERNAL = "An internal error occurred."

_CONFIRMATION_LIFETIME = timedelta(hours=24)
_RESET_LIFETIME = timedelta(hours=1)
_LINK_TOKEN_BYTES = 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Result payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenPair:
    """Final credentials handed out when a login completes."""

    access_token: str
    refresh_token: str
    expires_in: int
    account: Account


@dataclass(frozen=True)
class LoginOutcome:
    requires_two_factor: bool
    tokens: TokenPair | None = None
    temp_token: str | None = None
    expires_in: int | None = None
    message: str = ""


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    provisioning_uri: str
    qr_code_data_uri: str
    manual_entry_key: str


@dataclass(frozen=True)
class TwoFactorEnabled:
    enabled: bool
    recovery_codes: list[str] = field(default_factory=list)
    message: str = ""


@dataclass(frozen=True)
class RecoveryCodeBatch:
    codes: list[str]
    count: int
    generated_at: datetime


def _store_guard(method: Callable) -> Callable:
    """Turn a StoreError escaping `method` into an INTERNAL result."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except StoreError:
            logger.exception("Storage failure during %s", method.__name__)
            return Result.failure(_INTERNAL, ErrorCode.INTERNAL)

    return wrapper


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class AuthOrchestrator:
    """Wires the auth components together behind Result-returning operations.

    Only `settings` and `store` are required; every other collaborator is
    built from settings when omitted. `clock` returns the current UTC time
    and is the single time source for the orchestrator, so tests can drive
    lockout windows and token ages deterministically.
    """

    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        *,
        hasher: PasswordHasher | None = None,
        totp: TwoFactorEngine | None = None,
        tokens: TokenIssuer | None = None,
        temp_tokens: TempTokenCodec | None = None,
        lockout: LockoutPolicy | None = None,
        vault: RecoveryCodeVault | None = None,
        mailer: Mailer | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.hasher = hasher or BcryptHasher(rounds=settings.bcrypt_rounds)
        self.totp = totp or TwoFactorEngine(issuer=settings.totp_issuer, step_seconds=settings.totp_step_seconds)
        self.tokens = tokens or TokenIssuer(settings)
        self.temp_tokens = temp_tokens or TempTokenCodec(settings)
        self.lockout = lockout or LockoutPolicy(
            store, threshold=settings.lockout_threshold, lockout_minutes=settings.lockout_minutes
        )
        self.vault = vault or RecoveryCodeVault(store, self.hasher, default_count=settings.recovery_code_count)
        self.mailer = mailer or LogMailer()
        self.clock = clock
        self._refresh_lifetime = timedelta(days=settings.refresh_token_expire_days)

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    @_store_guard
    def register(self, email: str, password: str, name: str, terms: bool) -> Result[TokenPair]:
        if not terms:
            return Result.failure("You must accept the terms and conditions.", ErrorCode.VALIDATION)
        email = (email or "").strip()
        if not email or not password:
            return Result.failure("Email and password are required.", ErrorCode.VALIDATION)
        if self.store.get_account_by_email(email) is not None:
            return Result.failure("An account with this email already exists.", ErrorCode.AUTHENTICATION)

        now = self.clock()
        account = Account(
            email=email,
            name=(name or "").strip() or email.split("@")[0],
            password_hash=self.hasher.hash(password),
            email_confirmation_token=secrets.token_urlsafe(_LINK_TOKEN_BYTES),
            email_confirmation_expires=now + _CONFIRMATION_LIFETIME,
        )
        try:
            account = self.store.create_account(account)
        except DuplicateEmailError:
            return Result.failure("An account with this email already exists.", ErrorCode.AUTHENTICATION)

        self.mailer.send(
            "email_confirmation",
            account.email,
            name=account.name,
            link=f"{self.settings.app_base_url}/api/v1/auth/confirm-email?token={account.email_confirmation_token}",
        )
        logger.info("Account %s registered", account.id)
        return Result.success(self._issue_tokens(account, now))

    @_store_guard
    def login(self, email: str, password: str) -> Result[LoginOutcome]:
        account = self.store.get_account_by_email(email) if email else None
        if account is None:
            self.hasher.burn(password)  # [C1]
            return Result.failure(_BAD_CREDENTIALS, ErrorCode.AUTHENTICATION)

        now = self.clock()
        if self.lockout.is_locked(account, now):
            minutes = self.lockout.remaining_minutes(account, now)
            logger.info("Login refused for locked account %s", account.id)
            return Result.failure(f"Account is locked. Try again in {minutes} minutes.", ErrorCode.LOCKED)

        if not self.hasher.verify(password, account.password_hash):
            self.lockout.record_failure(account, now)
            return Result.failure(_BAD_CREDENTIALS, ErrorCode.AUTHENTICATION)

        self.lockout.record_success(account)
        if account.two_factor_enabled:
            logger.info("Password verified for account %s, second factor pending", account.id)
            return Result.success(
                LoginOutcome(
                    requires_two_factor=True,
                    temp_token=self.temp_tokens.issue(account.id, now),
                    expires_in=self.temp_tokens.expires_in,
                    message="Two-factor authentication required.",
                )
            )
        logger.info("Login succeeded for account %s", account.id)
        return Result.success(LoginOutcome(requires_two_factor=False, tokens=self._issue_tokens(account, now)))

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    @_store_guard
    def verify_two_factor(self, temp_token: str, code: str) -> Result[TokenPair]:
        now = self.clock()
        claims = self.temp_tokens.verify(temp_token, now)
        if claims is None or self.temp_tokens.is_redeemed(claims, now):
            return Result.failure(_BAD_TEMP_TOKEN, ErrorCode.AUTHENTICATION)
        account = self.store.get_account_by_id(claims.account_id)
        if account is None:
            return Result.failure(_NOT_FOUND, ErrorCode.NOT_FOUND)
        if not account.two_factor_enabled or not account.two_factor_secret:
            return Result.failure("Two-factor authentication is not configured.", ErrorCode.TWO_FACTOR_STATE)
        if not self.totp.validate_totp(account.two_factor_secret, code, for_time=now):
            logger.info("Invalid TOTP code for account %s", account.id)
            return Result.failure(_BAD_CODE, ErrorCode.AUTHENTICATION)
        if not self.temp_tokens.redeem(claims, now):
            return Result.failure(_BAD_TEMP_TOKEN, ErrorCode.AUTHENTICATION)
        logger.info("Login succeeded for account %s (TOTP)", account.id)
        return Result.success(self._issue_tokens(account, now))

    @_store_guard
    def verify_recovery_code(self, temp_token: str, code: str) -> Result[TokenPair]:
        now = self.clock()
        claims = self.temp_tokens.verify(temp_token, now)
        # A spent temp token is refused before consume() so it never burns a code.
        if claims is None or self.temp_tokens.is_redeemed(claims, now):
            return Result.failure(_BAD_TEMP_TOKEN, ErrorCode.AUTHENTICATION)
        account = self.store.get_account_by_id(claims.account_id)
        if account is None:
            return Result.failure(_NOT_FOUND, ErrorCode.NOT_FOUND)
        if not self.vault.consume(account.id, code, now):
            return Result.failure("Invalid recovery code.", ErrorCode.AUTHENTICATION)
        if not self.temp_tokens.redeem(claims, now):
            return Result.failure(_BAD_TEMP_TOKEN, ErrorCode.AUTHENTICATION)
        logger.info(
            "Recovery code used for account %s (%d remaining)", account.id, self.vault.remaining(account.id)
        )
        return Result.success(self._issue_tokens(account, now))

    @_store_guard
    def setup_two_factor(self, account_id: str) -> Result[TwoFactorSetup]:
        """Hand out a fresh secret. It stays pending until enable_two_factor proves possession."""
        account = self.store.get_account_by_id(account_id)
        if account is None:
            return Result.failure(_NOT_FOUND, ErrorCode.NOT_FOUND)
        if account.two_factor_enabled:
            return Result.failure(
                "Two-factor authentication is already enabled. Disable it before setting it up again.",
                ErrorCode.TWO_FACTOR_STATE,
            )
        secret = self.totp.generate_secret()
        self.store.update_account(account.id, pending_two_factor_secret=secret)
        uri = self.totp.provisioning_uri(account.email, secret)
        return Result.success(
            TwoFactorSetup(
                secret=secret,
                provisioning_uri=uri,
                qr_code_data_uri=self.totp.render_qr_data_uri(uri),
                manual_entry_key=self.totp.format_for_display(secret),
            )
        )

    @_store_guard
    def enable_two_factor(self, account_id: str, code: str) -> Result[TwoFactorEnabled]:
        account = self.store.get_account_by_id(account_id)
        if account is None:
            return Result.failure(_NOT_FOUND, ErrorCode.NOT_FOUND)
        if not account.pending_two_factor_secret:
            return Result.failure(
                "Two-factor setup has not been started. Call setup first.", ErrorCode.TWO_FACTOR_STATE
            )
        if not self.totp.validate_totp(account.pending_two_factor_secret, code, for_time=self.clock()):
            return Result.failure(_BAD_CODE, ErrorCode.AUTHENTICATION)
        codes = self.vault.enroll(account.id, account.pending_two_factor_secret)
        logger.info("Two-factor authentication enabled for account %s", account.id)
        return Result.success(
            TwoFactorEnabled(
                enabled=True,
                recovery_codes=codes,
                message="Two-factor authentication has been enabled successfully.",
            )
        )

    @_store_guard
    def disable_two_factor(self, account_id: str) -> Result[bool]:
        account = self.store.get_account_by_id(account_id)
        if account is None:
            return Result.failure(_NOT_FOUND, ErrorCode.NOT_FOUND)
        deleted = self.store.disable_two_factor(account.id)
        logger.info("Two-factor authentication disabled for account %s (%d codes deleted)", account.id, deleted)
        return Result.success(True)

    @_store_guard
    def regenerate_recovery_codes(self, account_id: str) -> Result[RecoveryCodeBatch]:
        account = self.store.get_account_by_id(account_id)
        if account is None:
            return Result.failure(_NOT_FOUND, ErrorCode.NOT_FOUND)
        if not account.two_factor_enabled:
            return Result.failure("Two-factor authentication is not enabled.", ErrorCode.TWO_FACTOR_STATE)
        codes = self.vault.generate(account.id)
        return Result.success(RecoveryCodeBatch(codes=codes, count=len(codes), generated_at=self.clock()))

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    @_store_guard
    def refresh(self, refresh_token: str) -> Result[TokenPair]:
        """Exchange a refresh token for a new pair. The presented token is revoked."""
        now = self.clock()
        record = self.store.get_refresh_token(refresh_token) if refresh_token else None
        if record is None or not record.is_active(now):
            return Result.failure(_BAD_REFRESH, ErrorCode.AUTHENTICATION)
        account = self.store.get_account_by_id(record.account_id)
        if account is None:
            return Result.failure(_BAD_REFRESH, ErrorCode.AUTHENTICATION)

        successor = RefreshToken(
            account_id=account.id,
            token=self.tokens.issue_refresh_token(),
            expires_at=now + self._refresh_lifetime,
        )
        if not self.store.rotate_refresh_token(refresh_token, successor, now):
            logger.warning("Refresh token for account %s lost a rotation race", account.id)
            return Result.failure(_BAD_REFRESH, ErrorCode.AUTHENTICATION)
        logger.info("Refresh token rotated for account %s", account.id)
        return Result.success(
            TokenPair(
                access_token=self.tokens.issue_access_token(account, now),
                refresh_token=successor.token,
                expires_in=self.tokens.expires_in,
                account=account,
            )
        )

    @_store_guard
    def logout(self, refresh_token: str | None) -> Result[bool]:
        """Revoke the refresh token. Unknown or already revoked tokens are acknowledged."""
        if refresh_token:
            self.store.revoke_refresh_token(refresh_token)
        return Result.success(True)

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    @_store_guard
    def get_account(self, account_id: str) -> Result[Account]:
        account = self.store.get_account_by_id(account_id)
        if account is None:
            return Result.failure(_NOT_FOUND, ErrorCode.NOT_FOUND)
        return Result.success(account)

    @_store_guard
    def update_profile(self, account_id: str, name: str | None = None, language: str | None = None) -> Result[Account]:
        account = self.store.get_account_by_id(account_id)
        if account is None:
            return Result.failure(_NOT_FOUND, ErrorCode.NOT_FOUND)
        changes: dict = {}
        if name is not None:
            name = name.strip()
            if not name:
                return Result.failure("Name must not be empty.", ErrorCode.VALIDATION)
            changes["name"] = name
        if language is not None:
            if language not in LANGUAGES:
                return Result.failure(
                    f"Unsupported language. Choose one of: {', '.join(LANGUAGES)}.", ErrorCode.VALIDATION
                )
            changes["language"] = language
        if changes:
            self.store.update_account(account.id, **changes)
            account = self.store.get_account_by_id(account.id)
        return Result.success(account)

    @_store_guard
    def change_password(self, account_id: str, current_password: str, new_password: str) -> Result[bool]:
        account = self.store.get_account_by_id(account_id)
        if account is None:
            return Result.failure(_NOT_FOUND, ErrorCode.NOT_FOUND)
        if not new_password:
            return Result.failure("New password is required.", ErrorCode.VALIDATION)
        if not self.hasher.verify(current_password, account.password_hash):
            return Result.failure("Current password is incorrect.", ErrorCode.AUTHENTICATION)
        self.store.update_account(account.id, password_hash=self.hasher.hash(new_password))
        self.store.reset_failed_logins(account.id)
        self.mailer.send("password_changed", account.email, name=account.name)
        logger.info("Password changed for account %s", account.id)
        return Result.success(True)

    @_store_guard
    def forgot_password(self, email: str) -> Result[str]:
        message = "If the email is registered, a password reset link has been sent."
        account = self.store.get_account_by_email(email) if email else None
        if account is None:
            return Result.success(message)
        token = secrets.token_urlsafe(_LINK_TOKEN_BYTES)
        self.store.update_account(
            account.id,
            password_reset_token=token,
            password_reset_expires=self.clock() + _RESET_LIFETIME,
        )
        self.mailer.send(
            "password_reset",
            account.email,
            name=account.name,
            link=f"{self.settings.frontend_url}/reset-password?token={token}",
        )
        logger.info("Password reset requested for account %s", account.id)
        return Result.success(message)

    @_store_guard
    def reset_password(self, token: str, new_password: str) -> Result[bool]:
        if not new_password:
            return Result.failure("New password is required.", ErrorCode.VALIDATION)
        account = self.store.get_account_by_reset_token(token) if token else None
        if account is None or not _still_valid(account.password_reset_expires, self.clock()):
            return Result.failure("Invalid or expired reset token.", ErrorCode.AUTHENTICATION)
        self.store.update_account(
            account.id,
            password_hash=self.hasher.hash(new_password),
            password_reset_token=None,
            password_reset_expires=None,
        )
        self.store.reset_failed_logins(account.id)
        logger.info("Password reset completed for account %s", account.id)
        return Result.success(True)

    @_store_guard
    def confirm_email(self, token: str) -> Result[bool]:
        account = self.store.get_account_by_confirmation_token(token) if token else None
        if account is None or not _still_valid(account.email_confirmation_expires, self.clock()):
            return Result.failure("Invalid or expired confirmation token.", ErrorCode.AUTHENTICATION)
        self.store.update_account(
            account.id,
            email_confirmed=True,
            email_confirmation_token=None,
            email_confirmation_expires=None,
        )
        self.mailer.send("welcome", account.email, name=account.name)
        logger.info("Email confirmed for account %s", account.id)
        return Result.success(True)

    @_store_guard
    def seed_admin(self, email: str, password: str, name: str = "Administrator") -> Result[Account]:
        """Create an Admin account with a confirmed email. Existing accounts are returned untouched."""
        email = (email or "").strip()
        if not email or not password:
            return Result.failure("Email and password are required.", ErrorCode.VALIDATION)
        existing = self.store.get_account_by_email(email)
        if existing is not None:
            return Result.success(existing)
        account = self.store.create_account(
            Account(
                email=email,
                name=name,
                password_hash=self.hasher.hash(password),
                role=ROLE_ADMIN,
                email_confirmed=True,
            )
        )
        logger.info("Admin account %s created", account.id)
        return Result.success(account)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue_tokens(self, account: Account, now: datetime) -> TokenPair:
        refresh = self.store.add_refresh_token(
            RefreshToken(
                account_id=account.id,
                token=self.tokens.issue_refresh_token(),
                expires_at=now + self._refresh_lifetime,
            )
        )
        return TokenPair(
            access_token=self.tokens.issue_access_token(account, now),
            refresh_token=refresh.token,
            expires_in=self.tokens.expires_in,
            account=account,
        )


def _still_valid(expires_at: datetime | None, now: datetime) -> bool:
    return expires_at is not None and expires_at > now
