from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import Request, Response

from sessionguard.api.schemas import TokenResponse
from sessionguard.config import Settings
from sessionguard.service.session import TokenPair


def _max_age(expires_at: datetime, now: datetime) -> int:
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(0, int((expires_at - now).total_seconds()))


class SessionTransport:
    """Moves token pairs between the session service and HTTP.

    Cookie mode keeps both values in HttpOnly cookies and out of the body;
    bearer mode returns them in the body and reads them from the
    ``Authorization`` header and request fields.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _cookie_kwargs(self) -> dict:
        return {
            "httponly": True,
            "secure": self.settings.cookie_secure,
            "samesite": self.settings.cookie_samesite,
            "path": "/",
        }

    def write_tokens(
        self,
        response: Response,
        pair: TokenPair,
        use_cookies: bool,
        *,
        now: Optional[datetime] = None,
    ) -> TokenResponse:
        if not use_cookies:
            return TokenResponse(
                user_id=pair.user_id,
                access_token=pair.access_token,
                refresh_token=pair.refresh_token,
                token_type=pair.token_type,
                access_token_expires_at=pair.access_token_expires_at,
                refresh_token_expires_at=pair.refresh_token_expires_at,
            )
        now = now or datetime.now(timezone.utc)
        response.set_cookie(
            self.settings.access_cookie_name,
            pair.access_token,
            max_age=_max_age(pair.access_token_expires_at, now),
            **self._cookie_kwargs(),
        )
        response.set_cookie(
            self.settings.refresh_cookie_name,
            pair.refresh_token,
            max_age=_max_age(pair.refresh_token_expires_at, now),
            **self._cookie_kwargs(),
        )
        return TokenResponse(
            user_id=pair.user_id,
            access_token_expires_at=pair.access_token_expires_at,
            refresh_token_expires_at=pair.refresh_token_expires_at,
        )

    def clear(self, response: Response) -> None:
        for name in (self.settings.access_cookie_name, self.settings.refresh_cookie_name):
            response.delete_cookie(
                name,
                path="/",
                secure=self.settings.cookie_secure,
                httponly=True,
                samesite=self.settings.cookie_samesite,
            )

    def read_access_token(self, request: Request) -> Optional[str]:
        authorization = request.headers.get("authorization") or ""
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
        return request.cookies.get(self.settings.access_cookie_name) or None

    def read_refresh_value(
        self, request: Request, body_value: Optional[str] = None
    ) -> tuple[Optional[str], bool]:
        """Return the presented refresh value and whether it came from a cookie."""
        if body_value:
            return body_value, False
        cookie_value = request.cookies.get(self.settings.refresh_cookie_name)
        return (cookie_value or None), bool(cookie_value)
