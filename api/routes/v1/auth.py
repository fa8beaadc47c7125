"""
api/routes/v1/auth.py -- Authentication, two-factor and account REST endpoints.

Routes:
  POST /api/v1/auth/register              -- create account; returns tokens (201)
  POST /api/v1/auth/login                 -- password step; tokens or a 2FA temp token
  POST /api/v1/auth/2fa/verify            -- temp token + TOTP code -> tokens
  POST /api/v1/auth/2fa/verify-recovery   -- temp token + recovery code -> tokens
  POST /api/v1/auth/refresh-token         -- rotate refresh token -> new pair
  POST /api/v1/auth/logout                -- revoke refresh token
  GET  /api/v1/auth/me                    -- current account (requires auth)
  PUT  /api/v1/auth/me                    -- update name / language (requires auth)
  POST /api/v1/auth/change-password       -- requires auth
  POST /api/v1/auth/forgot-password       -- always 200, no enumeration
  POST /api/v1/auth/reset-password        -- token from the reset mail
  GET  /api/v1/auth/confirm-email         -- token from the confirmation mail
  POST /api/v1/auth/2fa/setup             -- pending secret + QR (requires auth)
  POST /api/v1/auth/2fa/enable            -- prove the pending secret (requires auth)
  POST /api/v1/auth/2fa/disable           -- requires auth
  POST /api/v1/auth/2fa/recovery-codes    -- regenerate batch (requires auth)

Every handler delegates to the AuthOrchestrator on app.state and turns its
Result into the response envelope. Declined results map to HTTP statuses via
api.models.HTTP_STATUS_BY_CODE.

Security:
  [H2] Credential endpoints are rate-limited per IP (Settings.login_rate_limit).
  [C1] Timing equalization for unknown emails lives in the orchestrator.
  [M5] Cache-Control: no-store on every response from this router.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import credential_rate_limit, limiter
from api.models import (
    HTTP_STATUS_BY_CODE,
    AuthResponse,
    ChangePasswordRequest,
    EnableTwoFactorRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    RecoveryCodesResponse,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TwoFactorEnableResponse,
    TwoFactorSetupResponse,
    UpdateProfileRequest,
    UserResponse,
    VerifyRecoveryCodeRequest,
    VerifyTwoFactorRequest,
)
from auth.dependencies import get_current_account
from auth.models import Account
from auth.results import Result
from auth.service import AuthOrchestrator, LoginOutcome, RecoveryCodeBatch, TokenPair, TwoFactorEnabled, TwoFactorSetup

# Auth policy:
# - register, login, 2fa/verify, 2fa/verify-recovery, forgot-password: public, rate-limited
# - refresh-token, logout, reset-password, confirm-email:              public
# - me (GET/PUT), change-password, 2fa/setup|enable|disable|recovery-codes:
#   requires auth (get_current_account)
router = APIRouter()


def _service(request: Request) -> AuthOrchestrator:
    return request.app.state.auth_service


def _reply(result: Result, build: Callable[[Any], Any] | None = None, status_code: int = 200) -> JSONResponse:
    """Render a Result as the envelope with the mapped HTTP status."""
    if result.ok:
        data = build(result.data) if build is not None else result.data
        resp = JSONResponse(status_code=status_code, content=Envelope.success(data).to_json())
    else:
        error = result.error
        resp = JSONResponse(
            status_code=HTTP_STATUS_BY_CODE.get(error.code, 500),
            content=Envelope.failure(error.message, int(error.code)).to_json(),
        )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _auth_response(pair: TokenPair) -> AuthResponse:
    return AuthResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        user=UserResponse.from_account(pair.account),
    )


def _login_response(outcome: LoginOutcome) -> LoginResponse:
    if outcome.requires_two_factor:
        return LoginResponse(
            requires_two_factor=True,
            temp_token=outcome.temp_token,
            expires_in=outcome.expires_in,
            message=outcome.message,
        )
    pair = outcome.tokens
    return LoginResponse(
        requires_two_factor=False,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type="Bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=pair.expires_in,
        user=UserResponse.from_account(pair.account),
    )


def _message(text: str) -> MessageResponse:
    return MessageResponse(message=text)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    result = _service(request).register(body.email, body.password, body.name, body.terms)
    return _reply(result, _auth_response, status_code=201)


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/login")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Password step. With 2FA on, the response carries a temp token instead of final tokens.

    Wrong email and wrong password produce the same 401 body so the response
    does not reveal which accounts exist.
    """
    return _reply(_service(request).login(body.email, body.password), _login_response)


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/2fa/verify")
def verify_two_factor(request: Request, body: VerifyTwoFactorRequest) -> JSONResponse:
    return _reply(_service(request).verify_two_factor(body.temp_token, body.code), _auth_response)


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/2fa/verify-recovery")
def verify_recovery_code(request: Request, body: VerifyRecoveryCodeRequest) -> JSONResponse:
    return _reply(_service(request).verify_recovery_code(body.temp_token, body.recovery_code), _auth_response)


@router.post("/auth/refresh-token")
def refresh_token(request: Request, body: RefreshTokenRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token stops working."""
    return _reply(_service(request).refresh(body.refresh_token), _auth_response)


@router.post("/auth/logout")
def logout(request: Request, body: LogoutRequest) -> JSONResponse:
    result = _service(request).logout(body.refresh_token)
    return _reply(result, lambda _: _message("Logged out."))


@limiter.limit(credential_rate_limit)  # [H2]
@router.post("/auth/forgot-password")
def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    return _reply(_service(request).forgot_password(body.email), _message)


@router.post("/auth/reset-password")
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    result = _service(request).reset_password(body.token, body.new_password)
    return _reply(result, lambda _: _message("Password has been reset."))


@router.get("/auth/confirm-email")
def confirm_email(request: Request, token: str = "") -> JSONResponse:
    result = _service(request).confirm_email(token)
    return _reply(result, lambda _: _message("Email confirmed."))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me")
def me(request: Request, account: Account = Depends(get_current_account)) -> JSONResponse:
    return _reply(_service(request).get_account(account.id), UserResponse.from_account)


@router.put("/auth/me")
def update_me(
    request: Request,
    body: UpdateProfileRequest,
    account: Account = Depends(get_current_account),
) -> JSONResponse:
    result = _service(request).update_profile(account.id, name=body.name, language=body.language)
    return _reply(result, UserResponse.from_account)


@router.post("/auth/change-password")
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    account: Account = Depends(get_current_account),
) -> JSONResponse:
    result = _service(request).change_password(account.id, body.current_password, body.new_password)
    return _reply(result, lambda _: _message("Password changed."))


# ---------------------------------------------------------------------------
# Two-factor management (authenticated)
# ---------------------------------------------------------------------------


@router.post("/auth/2fa/setup")
def setup_two_factor(request: Request, account: Account = Depends(get_current_account)) -> JSONResponse:
    """Issue a pending secret and its QR code. 2FA stays off until /2fa/enable succeeds."""

    def build(setup: TwoFactorSetup) -> TwoFactorSetupResponse:
        return TwoFactorSetupResponse(
            secret=setup.secret,
            qr_code_image=setup.qr_code_data_uri,
            manual_entry_key=setup.manual_entry_key,
            provisioning_uri=setup.provisioning_uri,
        )

    return _reply(_service(request).setup_two_factor(account.id), build)


@router.post("/auth/2fa/enable")
def enable_two_factor(
    request: Request,
    body: EnableTwoFactorRequest,
    account: Account = Depends(get_current_account),
) -> JSONResponse:
    """Prove possession of the pending secret. The recovery codes are shown ONCE."""

    def build(enabled: TwoFactorEnabled) -> TwoFactorEnableResponse:
        return TwoFactorEnableResponse(
            enabled=enabled.enabled, recovery_codes=enabled.recovery_codes, message=enabled.message
        )

    return _reply(_service(request).enable_two_factor(account.id, body.code), build)


@router.post("/auth/2fa/disable")
def disable_two_factor(request: Request, account: Account = Depends(get_current_account)) -> JSONResponse:
    result = _service(request).disable_two_factor(account.id)
    return _reply(result, lambda _: _message("Two-factor authentication has been disabled."))


@router.post("/auth/2fa/recovery-codes")
def regenerate_recovery_codes(request: Request, account: Account = Depends(get_current_account)) -> JSONResponse:
    def build(batch: RecoveryCodeBatch) -> RecoveryCodesResponse:
        return RecoveryCodesResponse(recovery_codes=batch.codes, count=batch.count, generated_at=batch.generated_at)

    return _reply(_service(request).regenerate_recovery_codes(account.id), build)
