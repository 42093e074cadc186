from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Upper bound on bearer values accepted from request bodies
MAX_TOKEN_LENGTH = 4096


def _normalize_identifier(value: str) -> str:
    """NFKC-normalize and strip zero-width characters from a login identifier."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned).strip()


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    remember_me: bool = False
    use_cookies: bool = True

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize_identifier(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class TwoFactorVerifyRequest(BaseModel):
    challenge_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    code: str = Field(..., max_length=10)
    use_cookies: bool = True


class RecoveryCodeRequest(BaseModel):
    challenge_token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    recovery_code: str = Field(..., max_length=64)
    use_cookies: bool = True


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=1024)
    new_password: str = Field(..., min_length=8, max_length=1024)


class PasswordSetRequest(BaseModel):
    new_password: str = Field(..., min_length=8, max_length=1024)


class ExternalStartRequest(BaseModel):
    redirect_uri: str = Field(..., max_length=2048)


class ExternalCallbackRequest(BaseModel):
    state: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    code: str = Field(..., max_length=2048)
    use_cookies: bool = True


class TokenResponse(BaseModel):
    user_id: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None


class ChallengeResponse(BaseModel):
    requires_two_factor: bool = True
    challenge_token: str
    expires_at: datetime


class ExternalStartResponse(BaseModel):
    provider: str
    authorization_url: str
    state: str


class NewAccountResponse(BaseModel):
    provider: str
    requires_registration: bool = True
    email: str
    email_verified: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class ProviderResponse(BaseModel):
    name: str
    display_name: str


class PrincipalResponse(BaseModel):
    id: str
    email: str
    email_confirmed: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    two_factor_enabled: bool = False
    providers: List[str] = Field(default_factory=list)


class TwoFactorEnableRequest(BaseModel):
    code: str = Field(..., max_length=10)


class TwoFactorPasswordRequest(BaseModel):
    password: str = Field(..., max_length=1024)


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str


class RecoveryCodesResponse(BaseModel):
    recovery_codes: List[str]
