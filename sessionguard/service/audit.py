from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Protocol

from sessionguard.clock import Clock, SystemClock
from sessionguard.logging import get_logger
from sessionguard.storage.models import AuditEvent, new_id

logger = get_logger(__name__)


class AuditAction(str, Enum):
    LOGIN_SUCCEEDED = "login_succeeded"
    LOGIN_FAILED = "login_failed"
    LOGIN_LOCKED_OUT = "login_locked_out"
    TWO_FACTOR_CHALLENGE_ISSUED = "two_factor_challenge_issued"
    TWO_FACTOR_VERIFIED = "two_factor_verified"
    TWO_FACTOR_FAILED = "two_factor_failed"
    TWO_FACTOR_LOCKED = "two_factor_locked"
    RECOVERY_CODE_USED = "recovery_code_used"
    TOKEN_REFRESHED = "token_refreshed"
    REFRESH_TOKEN_REUSE_DETECTED = "refresh_token_reuse_detected"
    LOGOUT = "logout"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_SET = "password_set"
    SESSIONS_REVOKED = "sessions_revoked"
    AUTHORIZATION_CHANGED = "authorization_changed"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    TWO_FACTOR_DISABLED = "two_factor_disabled"
    TWO_FACTOR_RECOVERY_CODES_REGENERATED = "two_factor_recovery_codes_regenerated"
    EXTERNAL_LOGIN = "external_login"
    EXTERNAL_ACCOUNT_LINKED = "external_account_linked"
    EXTERNAL_ACCOUNT_UNLINKED = "external_account_unlinked"
    EXTERNAL_ACCOUNT_CREATED = "external_account_created"


class AuditStore(Protocol):
    def record_audit_event(self, event: AuditEvent) -> None: ...


class AuditService:
    """Fire-and-forget audit sink.

    ``log`` never raises: a failing store is reported through structlog and
    the calling operation carries on.
    """

    def __init__(self, store: Optional[AuditStore] = None, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()

    def log(
        self,
        action: AuditAction | str,
        user_id: Optional[str] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        try:
            name = action.value if isinstance(action, AuditAction) else str(action)
            event = AuditEvent(
                id=new_id(),
                action=name,
                created_at=self.clock.now(),
                user_id=user_id,
                target_type=target_type,
                target_id=target_id,
                metadata=dict(metadata) if metadata else None,
            )
            logger.info(
                "audit_event",
                action=name,
                user_id=user_id,
                target_type=target_type,
                target_id=target_id,
                metadata=event.metadata,
            )
            if self.store is not None:
                self.store.record_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_log_failed",
                action=str(action),
                user_id=user_id,
                error=str(exc),
            )
