"""
API request and response models for the Portfolio auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
auth/service.py, which own the internal domain representation. Route handlers
map between the two.

Wire format is camelCase (internalCode, tempToken, refreshToken, ...). Every
model uses the to_camel alias generator with populate_by_name=True, so Python
code builds them with snake_case names and clients see camelCase.

Every response body is the same envelope:
    {"ok": bool, "data": T | null, "error": {"message": str, "internalCode": int | null} | null}

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from auth.models import Account
from auth.results import ErrorCode

# Declined results travel with these HTTP statuses. Anything unmapped is a 500.
HTTP_STATUS_BY_CODE: dict[int, int] = {
    ErrorCode.VALIDATION: 400,
    ErrorCode.AUTHENTICATION: 401,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.TWO_FACTOR_STATE: 400,
    ErrorCode.LOCKED: 429,
    ErrorCode.INTERNAL: 500,
}

_Password = Annotated[str, Field(min_length=1, max_length=100)]
# Six ASCII digits, optionally split once by a space ("123 456").
TotpCode = Annotated[str, Field(pattern=r"^[0-9]{3} ?[0-9]{3}$")]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ErrorBody(_CamelModel):
    message: str
    internal_code: Optional[int] = None


class Envelope(_CamelModel):
    ok: bool
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None

    @classmethod
    def success(cls, data: Any) -> "Envelope":
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", by_alias=True)
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, message: str, code: Optional[int]) -> "Envelope":
        return cls(ok=False, error=ErrorBody(message=message, internal_code=code))

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    email: EmailStr
    password: _Password
    name: str = Field(default="", max_length=100)
    terms: bool = False


class LoginRequest(_CamelModel):
    email: str = Field(min_length=1, max_length=254)
    password: _Password


class VerifyTwoFactorRequest(_CamelModel):
    temp_token: str = Field(min_length=1)
    code: TotpCode


class VerifyRecoveryCodeRequest(_CamelModel):
    temp_token: str = Field(min_length=1)
    recovery_code: str = Field(min_length=1, max_length=16)


class RefreshTokenRequest(_CamelModel):
    refresh_token: str = Field(min_length=1)


class LogoutRequest(_CamelModel):
    refresh_token: Optional[str] = None


class UpdateProfileRequest(_CamelModel):
    """Partial update: omitted fields are left unchanged."""

    name: Optional[str] = Field(default=None, max_length=100)
    language: Optional[str] = None


class ChangePasswordRequest(_CamelModel):
    current_password: _Password
    new_password: _Password


class ForgotPasswordRequest(_CamelModel):
    email: EmailStr


class ResetPasswordRequest(_CamelModel):
    token: str = Field(min_length=1)
    new_password: _Password


class EnableTwoFactorRequest(_CamelModel):
    code: TotpCode


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(_CamelModel):
    """Public view of an Account. Hashes, secrets and link tokens never appear here."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    language: str
    role: str
    two_factor_enabled: bool
    email_confirmed: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "UserResponse":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            language=account.language,
            role=account.role,
            two_factor_enabled=account.two_factor_enabled,
            email_confirmed=account.email_confirmed,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class AuthResponse(_CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: UserResponse


class LoginResponse(_CamelModel):
    """Either final tokens (requiresTwoFactor=false) or a temp token for the second step."""

    requires_two_factor: bool
    temp_token: Optional[str] = None
    expires_in: Optional[int] = None
    message: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    user: Optional[UserResponse] = None


class TwoFactorSetupResponse(_CamelModel):
    secret: str
    qr_code_image: str
    manual_entry_key: str
    provisioning_uri: str


class TwoFactorEnableResponse(_CamelModel):
    enabled: bool
    recovery_codes: list[str]
    message: str


class RecoveryCodesResponse(_CamelModel):
    recovery_codes: list[str]
    count: int
    generated_at: datetime


class MessageResponse(_CamelModel):
    message: str


class HealthResponse(_CamelModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
