"""Scenario tests for auth/service.py -- AuthOrchestrator flows.

The orchestrator runs on the FakeClock from conftest.py, so temp-token ages
and lockout windows are driven by clock.advance() rather than sleeping.

Covers:
- register(): terms required, duplicates declined, confirmation mail sent
- login() without 2FA returns final tokens; wrong password / unknown email
  share one message
- the full 2FA lifecycle: setup -> enable -> login -> verify (TOTP and
  recovery code) -> regenerate -> disable
- temp token expiry after the configured window; single-use mode
- lockout: threshold failures lock, correct password still refused, unlock
  after the window; second-factor failures never count
- refresh rotation and logout
- profile, password change, forgot/reset password, email confirmation
- seed_admin() is idempotent
- a StoreError becomes INTERNAL with a generic message
"""

import pytest

from auth.memory_store import MemoryAuthStore
from auth.results import ErrorCode, StoreError
from auth.service import AuthOrchestrator

PASSWORD = "Sup3r-Secret!"


def _register(service, email="user@example.com", password=PASSWORD, name="User"):
    result = service.register(email, password, name, True)
    assert result.ok, result.error
    return result.data


def _enable_2fa(service, account_id):
    setup = service.setup_two_factor(account_id).data
    code = service.totp.generate_totp(setup.secret, service.clock())
    enabled = service.enable_two_factor(account_id, code)
    assert enabled.ok, enabled.error
    return setup.secret, enabled.data.recovery_codes


def _temp_token(service, email="user@example.com"):
    result = service.login(email, PASSWORD)
    assert result.ok and result.data.requires_two_factor
    return result.data.temp_token


class TestRegister:
    def test_register_issues_tokens_and_sends_confirmation(self, service, mailer):
        pair = _register(service)
        assert pair.access_token and pair.refresh_token
        assert pair.expires_in == 3600
        assert pair.account.email == "user@example.com"
        assert pair.account.role == "User"
        template, recipient, context = mailer.sent[0]
        assert (template, recipient) == ("email_confirmation", "user@example.com")
        assert "/api/v1/auth/confirm-email?token=" in context["link"]

    def test_terms_required(self, service):
        result = service.register("user@example.com", PASSWORD, "User", False)
        assert result.error.code == ErrorCode.VALIDATION

    def test_duplicate_declined(self, service):
        _register(service)
        result = service.register("USER@example.com", PASSWORD, "Again", True)
        assert result.error.code == ErrorCode.AUTHENTICATION

    def test_blank_name_defaults_to_local_part(self, service):
        pair = _register(service, name="  ")
        assert pair.account.name == "user"

    def test_password_stored_hashed(self, service, store):
        _register(service)
        stored = store.get_account_by_email("user@example.com")
        assert stored.password_hash != PASSWORD
        assert stored.password_hash.startswith("$2")


class TestLogin:
    def test_login_without_two_factor(self, service):
        _register(service)
        result = service.login("user@example.com", PASSWORD)
        assert result.ok
        assert result.data.requires_two_factor is False
        assert result.data.tokens.account.email == "user@example.com"
        assert result.data.temp_token is None

    def test_wrong_password_and_unknown_email_look_the_same(self, service):
        _register(service)
        wrong = service.login("user@example.com", "nope")
        unknown = service.login("ghost@example.com", PASSWORD)
        assert wrong.error == unknown.error
        assert wrong.error.code == ErrorCode.AUTHENTICATION

    def test_success_resets_failure_counter(self, service, store):
        _register(service)
        service.login("user@example.com", "nope")
        service.login("user@example.com", PASSWORD)
        assert store.get_account_by_email("user@example.com").failed_login_attempts == 0


class TestLockout:
    def _fail(self, service, times):
        return [service.login("user@example.com", "wrong").error.code for _ in range(times)]

    def test_threshold_locks_even_for_correct_password(self, service):
        _register(service)
        assert self._fail(service, 5) == [ErrorCode.AUTHENTICATION] * 5
        locked = service.login("user@example.com", PASSWORD)
        assert locked.error.code == ErrorCode.LOCKED
        assert "15 minutes" in locked.error.message

    def test_unlocks_after_window(self, service, clock):
        _register(service)
        self._fail(service, 5)
        clock.advance(minutes=15)
        assert service.login("user@example.com", PASSWORD).ok

    def test_second_factor_failures_do_not_count(self, service, store):
        account = _register(service).account
        _enable_2fa(service, account.id)
        temp = _temp_token(service)
        for _ in range(10):
            assert service.verify_two_factor(temp, "000000").error.code == ErrorCode.AUTHENTICATION
        assert store.get_account_by_id(account.id).failed_login_attempts == 0
        assert service.login("user@example.com", PASSWORD).ok


class TestTwoFactorLifecycle:
    def test_setup_keeps_secret_pending(self, service, store):
        account = _register(service).account
        setup = service.setup_two_factor(account.id).data
        assert len(setup.secret) == 32
        assert setup.provisioning_uri.startswith("otpauth://totp/Portfolio:user%40example.com?secret=")
        assert setup.qr_code_data_uri.startswith("data:image/png;base64,")
        assert setup.manual_entry_key.replace(" ", "") == setup.secret
        stored = store.get_account_by_id(account.id)
        assert stored.pending_two_factor_secret == setup.secret
        assert stored.two_factor_enabled is False

    def test_enable_returns_recovery_codes(self, service, store):
        account = _register(service).account
        secret, codes = _enable_2fa(service, account.id)
        assert len(codes) == 10
        stored = store.get_account_by_id(account.id)
        assert stored.two_factor_enabled is True
        assert stored.two_factor_secret == secret

    def test_enable_with_wrong_code(self, service):
        account = _register(service).account
        service.setup_two_factor(account.id)
        assert service.enable_two_factor(account.id, "000000").error.code == ErrorCode.AUTHENTICATION

    def test_enable_without_setup(self, service):
        account = _register(service).account
        assert service.enable_two_factor(account.id, "123456").error.code == ErrorCode.TWO_FACTOR_STATE

    def test_setup_while_enabled(self, service):
        account = _register(service).account
        _enable_2fa(service, account.id)
        assert service.setup_two_factor(account.id).error.code == ErrorCode.TWO_FACTOR_STATE

    def test_login_then_totp(self, service):
        account = _register(service).account
        secret, _ = _enable_2fa(service, account.id)
        login = service.login("user@example.com", PASSWORD).data
        assert login.requires_two_factor is True
        assert login.tokens is None
        assert login.expires_in == 300
        code = service.totp.generate_totp(secret, service.clock())
        result = service.verify_two_factor(login.temp_token, code)
        assert result.ok
        assert result.data.account.id == account.id

    def test_temp_token_reusable_until_it_expires(self, service, clock):
        account = _register(service).account
        secret, _ = _enable_2fa(service, account.id)
        temp = _temp_token(service)
        code = service.totp.generate_totp(secret, clock.now)
        assert service.verify_two_factor(temp, code).ok
        assert service.verify_two_factor(temp, code).ok
        clock.advance(minutes=5, seconds=1)
        code = service.totp.generate_totp(secret, clock.now)
        assert service.verify_two_factor(temp, code).error.code == ErrorCode.AUTHENTICATION

    def test_single_use_mode(self, settings_factory, store, mailer, clock):
        service = AuthOrchestrator(settings_factory(temp_token_single_use=True), store, mailer=mailer, clock=clock)
        account = _register(service).account
        secret, _ = _enable_2fa(service, account.id)
        temp = _temp_token(service)
        code = service.totp.generate_totp(secret, clock.now)
        assert service.verify_two_factor(temp, code).ok
        assert service.verify_two_factor(temp, code).error.code == ErrorCode.AUTHENTICATION

    def test_single_use_spent_token_keeps_recovery_codes(self, settings_factory, store, mailer, clock):
        service = AuthOrchestrator(settings_factory(temp_token_single_use=True), store, mailer=mailer, clock=clock)
        account = _register(service).account
        secret, codes = _enable_2fa(service, account.id)
        temp = _temp_token(service)
        assert service.verify_two_factor(temp, service.totp.generate_totp(secret, clock.now)).ok
        result = service.verify_recovery_code(temp, codes[0])
        assert result.error.code == ErrorCode.AUTHENTICATION
        assert service.vault.remaining(account.id) == 10
        # The untouched code still works with a fresh temp token.
        assert service.verify_recovery_code(_temp_token(service), codes[0]).ok

    @pytest.mark.parametrize("code", ["²²²²²²", "١٢٣٤٥٦"])
    def test_non_ascii_digits_declined(self, service, code):
        account = _register(service).account
        _enable_2fa(service, account.id)
        result = service.verify_two_factor(_temp_token(service), code)
        assert result.error.code == ErrorCode.AUTHENTICATION

    def test_verify_when_two_factor_off(self, service):
        account = _register(service).account
        temp = service.temp_tokens.issue(account.id, service.clock())
        assert service.verify_two_factor(temp, "123456").error.code == ErrorCode.TWO_FACTOR_STATE

    def test_verify_with_garbage_temp_token(self, service):
        assert service.verify_two_factor("not-a-token", "123456").error.code == ErrorCode.AUTHENTICATION

    def test_recovery_code_works_once(self, service):
        account = _register(service).account
        _, codes = _enable_2fa(service, account.id)
        temp = _temp_token(service)
        assert service.verify_recovery_code(temp, codes[0]).ok
        assert service.verify_recovery_code(temp, codes[0]).error.code == ErrorCode.AUTHENTICATION
        assert service.verify_recovery_code(temp, codes[1]).ok
        assert service.vault.remaining(account.id) == 8

    def test_regenerate_replaces_codes(self, service):
        account = _register(service).account
        _, old = _enable_2fa(service, account.id)
        batch = service.regenerate_recovery_codes(account.id).data
        assert batch.count == 10
        assert batch.generated_at == service.clock()
        temp = _temp_token(service)
        assert service.verify_recovery_code(temp, old[0]).error.code == ErrorCode.AUTHENTICATION
        assert service.verify_recovery_code(temp, batch.codes[0]).ok

    def test_regenerate_requires_enabled(self, service):
        account = _register(service).account
        assert service.regenerate_recovery_codes(account.id).error.code == ErrorCode.TWO_FACTOR_STATE

    def test_disable(self, service, store):
        account = _register(service).account
        _enable_2fa(service, account.id)
        assert service.disable_two_factor(account.id).ok
        stored = store.get_account_by_id(account.id)
        assert stored.two_factor_enabled is False
        assert store.count_unused_recovery_codes(account.id) == 0
        login = service.login("user@example.com", PASSWORD).data
        assert login.requires_two_factor is False
        # Disabling again is acknowledged.
        assert service.disable_two_factor(account.id).ok

    def test_unknown_account(self, service):
        assert service.setup_two_factor("missing").error.code == ErrorCode.NOT_FOUND


class TestSessionTokens:
    def test_refresh_rotates(self, service):
        pair = _register(service)
        rotated = service.refresh(pair.refresh_token)
        assert rotated.ok
        assert rotated.data.refresh_token != pair.refresh_token
        assert service.refresh(pair.refresh_token).error.code == ErrorCode.AUTHENTICATION
        assert service.refresh(rotated.data.refresh_token).ok

    def test_refresh_expired(self, service, clock):
        pair = _register(service)
        clock.advance(days=8)
        assert service.refresh(pair.refresh_token).error.code == ErrorCode.AUTHENTICATION

    def test_refresh_unknown(self, service):
        assert service.refresh("nope").error.message == "Invalid or expired refresh token."

    def test_logout_revokes(self, service):
        pair = _register(service)
        assert service.logout(pair.refresh_token).ok
        assert service.refresh(pair.refresh_token).error.code == ErrorCode.AUTHENTICATION
        assert service.logout(pair.refresh_token).ok
        assert service.logout(None).ok


class TestAccountManagement:
    def test_update_profile(self, service):
        account = _register(service).account
        updated = service.update_profile(account.id, name="  New Name ", language="es-ES")
        assert (updated.data.name, updated.data.language) == ("New Name", "es-ES")

    def test_update_profile_rejects_language(self, service):
        account = _register(service).account
        assert service.update_profile(account.id, language="xx-XX").error.code == ErrorCode.VALIDATION

    def test_update_profile_rejects_blank_name(self, service):
        account = _register(service).account
        assert service.update_profile(account.id, name="   ").error.code == ErrorCode.VALIDATION

    def test_get_account(self, service):
        account = _register(service).account
        assert service.get_account(account.id).data.email == "user@example.com"
        assert service.get_account("missing").error.code == ErrorCode.NOT_FOUND

    def test_change_password(self, service, mailer):
        account = _register(service).account
        wrong = service.change_password(account.id, "wrong", "N3w-Password")
        assert wrong.error.message == "Current password is incorrect."
        assert service.change_password(account.id, PASSWORD, "N3w-Password").ok
        assert "password_changed" in mailer.templates()
        assert not service.login("user@example.com", PASSWORD).ok
        assert service.login("user@example.com", "N3w-Password").ok

    def test_forgot_and_reset_password(self, service, mailer):
        _register(service)
        unknown = service.forgot_password("ghost@example.com")
        known = service.forgot_password("user@example.com")
        assert unknown.data == known.data
        template, _, context = mailer.sent[-1]
        assert template == "password_reset"
        token = context["link"].split("token=", 1)[1]
        assert service.reset_password(token, "R3set-Password").ok
        assert service.login("user@example.com", "R3set-Password").ok
        # The token is cleared after use.
        assert service.reset_password(token, "Another-1").error.code == ErrorCode.AUTHENTICATION

    def test_reset_token_expires(self, service, mailer, clock):
        _register(service)
        service.forgot_password("user@example.com")
        token = mailer.sent[-1][2]["link"].split("token=", 1)[1]
        clock.advance(hours=1, seconds=1)
        assert service.reset_password(token, "R3set-Password").error.code == ErrorCode.AUTHENTICATION

    def test_reset_unlocks_account(self, service, mailer):
        _register(service)
        for _ in range(5):
            service.login("user@example.com", "wrong")
        service.forgot_password("user@example.com")
        token = mailer.sent[-1][2]["link"].split("token=", 1)[1]
        service.reset_password(token, "R3set-Password")
        assert service.login("user@example.com", "R3set-Password").ok

    def test_confirm_email(self, service, store, mailer):
        account = _register(service).account
        token = store.get_account_by_id(account.id).email_confirmation_token
        assert service.confirm_email(token).ok
        assert store.get_account_by_id(account.id).email_confirmed is True
        assert mailer.templates()[-1] == "welcome"
        assert service.confirm_email(token).error.code == ErrorCode.AUTHENTICATION

    def test_confirm_email_expired(self, service, store, clock):
        account = _register(service).account
        token = store.get_account_by_id(account.id).email_confirmation_token
        clock.advance(hours=25)
        assert service.confirm_email(token).error.code == ErrorCode.AUTHENTICATION


class TestSeedAdmin:
    def test_creates_confirmed_admin(self, service):
        account = service.seed_admin("admin@example.com", PASSWORD).data
        assert account.role == "Admin"
        assert account.email_confirmed is True
        assert service.login("admin@example.com", PASSWORD).ok

    def test_idempotent(self, service):
        first = service.seed_admin("admin@example.com", PASSWORD).data
        second = service.seed_admin("ADMIN@example.com", "other-password").data
        assert first.id == second.id
        assert service.login("admin@example.com", PASSWORD).ok


class _BrokenStore(MemoryAuthStore):
    def get_account_by_email(self, email):
        raise StoreError("database is gone")


def test_store_failure_becomes_internal(settings, mailer, clock, caplog):
    service = AuthOrchestrator(settings, _BrokenStore(), mailer=mailer, clock=clock)
    result = service.login("user@example.com", PASSWORD)
    assert result.error.code == ErrorCode.INTERNAL
    assert result.error.message == "An internal error occurred."
    assert "database is gone" not in result.error.message
    assert "Storage failure during login" in caplog.text


@pytest.mark.parametrize("email,password", [("", PASSWORD), ("user@example.com", "")])
def test_register_requires_fields(service, email, password):
    assert service.register(email, password, "User", True).error.code == ErrorCode.VALIDATION
