from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for faults that escape the core and reach the HTTP boundary.

    Expected outcomes (wrong password, expired token, locked challenge) are
    returned as ``Result`` values instead; these exceptions are reserved for
    conditions the caller cannot recover from in-band. Each class carries an
    HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - bad_gateway (502)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Settings are missing or inconsistent; raised at startup, never per request."""
    error_code = "configuration_error"


class ProviderExchangeError(ServiceError):
    """An external identity provider answered with an error or unusable payload."""
    status_code = 502
    error_code = "provider_exchange_failed"

    def __init__(self, message: str, *, provider: str, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail={"provider": provider, **(detail or {})})
        self.provider = provider


class NoUsableEmailError(ProviderExchangeError):
    """The provider returned no primary or verified email address."""
    status_code = 422
    error_code = "no_usable_email"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ServerError",
    "ConfigurationError",
    "ProviderExchangeError",
    "NoUsableEmailError",
]
