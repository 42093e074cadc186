from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sessionguard.clock import Clock
from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.storage.models import User

logger = get_logger(__name__)

# 32 random bytes -> 256 bits of entropy in the opaque refresh value
REFRESH_VALUE_BYTES = 32


def hash_token(value: str) -> str:
    """SHA-256 hex digest used as the lookup key for every opaque bearer value."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_security_stamp(stamp: str) -> str:
    return hashlib.sha256(stamp.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class AccessToken:
    value: str
    jti: str
    issued_at: datetime
    expires_at: datetime


class TokenCodec:
    """Signs and verifies HS256 access tokens and mints opaque refresh values."""

    def __init__(
        self,
        settings: Settings,
        clock: Clock,
        *,
        leeway: timedelta = timedelta(0),
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.leeway = leeway
        self._key = settings.jwt_secret.encode("utf-8")

    @property
    def access_token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_lifetime_minutes)

    def issue_access_token(self, user: User) -> AccessToken:
        issued_at = self.clock.now().replace(microsecond=0)
        expires_at = issued_at + self.access_token_lifetime
        jti = uuid.uuid4().hex
        payload: dict[str, Any] = {
            "sub": user.id,
            "email": user.email,
            "jti": jti,
            "iat": int(issued_at.timestamp()),
            "nbf": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            self.settings.security_stamp_claim: hash_security_stamp(user.security_stamp),
        }
        return AccessToken(
            value=self._encode_jwt(payload),
            jti=jti,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def new_opaque_value(self) -> str:
        return secrets.token_urlsafe(REFRESH_VALUE_BYTES)

    def new_refresh_value(self) -> str:
        return self.new_opaque_value()

    def stamp_claim(self, payload: dict[str, Any]) -> Optional[str]:
        value = payload.get(self.settings.security_stamp_claim)
        return value if isinstance(value, str) else None

    def expiry_of(self, payload: dict[str, Any]) -> Optional[datetime]:
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            return None
        return datetime.fromtimestamp(exp, tz=timezone.utc)

    def decode_access_token(
        self, token: str, *, verify_lifetime: bool = True
    ) -> Optional[dict[str, Any]]:
        """Return the verified claim set, or None for any invalid token.

        ``verify_lifetime=False`` still checks signature, issuer and audience;
        logout uses it to identify the caller of an expired session.
        """
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        if not isinstance(payload.get("sub"), str):
            return None
        if not verify_lifetime:
            return payload
        try:
            exp_ts = float(payload["exp"])
            nbf_ts = float(payload.get("nbf", payload.get("iat", 0)))
        except (KeyError, TypeError, ValueError):
            return None
        now_ts = self.clock.now().timestamp()
        skew = self.leeway.total_seconds()
        if exp_ts <= now_ts - skew:
            return None
        if nbf_ts > now_ts + skew:
            return None
        return payload

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        # Reject anything but HS256 so "none" or RS/HS confusion cannot slip through
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None
        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None
