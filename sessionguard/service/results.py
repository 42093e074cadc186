from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Closed set of expected failure kinds returned by the core."""

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    UNAUTHORIZED = "unauthorized"
    TOKEN_MISSING = "token_missing"
    TOKEN_NOT_FOUND = "token_not_found"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALIDATED = "token_invalidated"
    TOKEN_REUSED = "token_reused"
    CHALLENGE_NOT_FOUND = "challenge_not_found"
    CHALLENGE_EXPIRED = "challenge_expired"
    CHALLENGE_LOCKED = "challenge_locked"
    INVALID_CODE = "invalid_code"
    PROVIDER_EXCHANGE_FAILED = "provider_exchange_failed"
    NO_USABLE_EMAIL = "no_usable_email"
    VALIDATION = "validation"
    PROVIDER_NOT_FOUND = "provider_not_found"
    INVALID_STATE = "invalid_state"
    STATE_EXPIRED = "state_expired"
    ALREADY_LINKED = "already_linked"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    TWO_FACTOR_NOT_ENABLED = "two_factor_not_enabled"
    TWO_FACTOR_ALREADY_ENABLED = "two_factor_already_enabled"


# Reuse, expiry and revocation look the same to the presenter; only the
# audit trail tells them apart.
_SESSION_ENDED = "Your session has expired. Please log in again."

DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.INVALID_CREDENTIALS: "Invalid username or password.",
    ErrorKind.ACCOUNT_LOCKED: (
        "Account is temporarily locked. Please try again later or contact an administrator."
    ),
    ErrorKind.UNAUTHORIZED: "Authentication is required.",
    ErrorKind.TOKEN_MISSING: "Refresh token is missing.",
    ErrorKind.TOKEN_NOT_FOUND: "Refresh token not found.",
    ErrorKind.TOKEN_EXPIRED: _SESSION_ENDED,
    ErrorKind.TOKEN_INVALIDATED: _SESSION_ENDED,
    ErrorKind.TOKEN_REUSED: _SESSION_ENDED,
    ErrorKind.CHALLENGE_NOT_FOUND: "Two-factor challenge not found or expired.",
    ErrorKind.CHALLENGE_EXPIRED: "Two-factor challenge not found or expired.",
    ErrorKind.CHALLENGE_LOCKED: "Too many failed attempts. Please log in again.",
    ErrorKind.INVALID_CODE: "The two-factor code is invalid.",
    ErrorKind.PROVIDER_EXCHANGE_FAILED: "Could not complete sign-in with the external provider.",
    ErrorKind.NO_USABLE_EMAIL: "The external account has no verified email address.",
    ErrorKind.VALIDATION: "The request is invalid.",
    ErrorKind.PROVIDER_NOT_FOUND: "The external provider is not available.",
    ErrorKind.INVALID_STATE: "The sign-in request is invalid or was already used.",
    ErrorKind.STATE_EXPIRED: "The sign-in request has expired. Please try again.",
    ErrorKind.ALREADY_LINKED: "This external account is linked to another user.",
    ErrorKind.EMAIL_NOT_VERIFIED: (
        "An account with this email exists but the email is not verified."
    ),
    ErrorKind.TWO_FACTOR_NOT_ENABLED: "Two-factor authentication is not enabled.",
    ErrorKind.TWO_FACTOR_ALREADY_ENABLED: "Two-factor authentication is already enabled.",
}


@dataclass(frozen=True)
class Result(Generic[T]):
    """Tagged outcome: either ``value`` or an ``error`` kind with a message."""

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: Optional[str] = None) -> "Result[T]":
        return cls(error=kind, message=message or DEFAULT_MESSAGES[kind])

    def unwrap(self) -> T:
        if self.error is not None:
            raise ValueError(f"result is a failure: {self.error.value}")
        return self.value  # type: ignore[return-value]


__all__ = ["ErrorKind", "Result", "DEFAULT_MESSAGES"]
