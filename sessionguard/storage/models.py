from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def new_security_stamp() -> str:
    return uuid.uuid4().hex


@dataclass
class User:
    id: str
    email: str
    email_confirmed: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    security_stamp: str = field(default_factory=new_security_stamp)
    access_failed_count: int = 0
    lockout_end: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    meta: Dict | None = None


@dataclass
class RefreshToken:
    """Persisted refresh token; only the SHA-256 of the bearer value is kept."""

    id: str
    token_hash: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    is_used: bool = False
    is_invalidated: bool = False
    is_persistent: bool = False
    family_id: Optional[str] = None

    def is_redeemable(self, now: datetime) -> bool:
        return not self.is_used and not self.is_invalidated and now < self.expires_at


class RotationStatus(str, Enum):
    ROTATED = "rotated"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    INVALIDATED = "invalidated"
    REUSED = "reused"


@dataclass
class RotationOutcome:
    """What a store observed while redeeming one presented refresh value."""

    status: RotationStatus
    token: Optional[RefreshToken] = None
    successor: Optional[RefreshToken] = None
    revoked_count: int = 0


@dataclass
class TwoFactorChallenge:
    id: str
    token_hash: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    is_remember_me: bool = False
    failed_attempts: int = 0
    is_used: bool = False


@dataclass
class TwoFactorConfig:
    user_id: str
    secret: str
    enabled: bool = False
    recovery_code_hashes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    enabled_at: Optional[datetime] = None


@dataclass
class ExternalLogin:
    id: str
    user_id: str
    provider: str
    provider_key: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class ExternalAuthState:
    """Single-use CSRF state for an external sign-in round trip."""

    id: str
    token_hash: str
    provider: str
    redirect_uri: str
    created_at: datetime
    expires_at: datetime
    user_id: Optional[str] = None
    is_used: bool = False


@dataclass
class ExternalUserInfo:
    """Identity asserted by a provider after a successful code exchange."""

    provider_key: str
    email: str
    email_verified: bool
    first_name: Optional[str] = None
    last_name: Optional[str] = None


@dataclass
class AuditEvent:
    id: str
    action: str
    created_at: datetime
    user_id: Optional[str] = None
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    metadata: Dict | None = None
