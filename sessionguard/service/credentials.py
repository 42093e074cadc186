from __future__ import annotations

from datetime import timedelta
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionguard.clock import Clock
from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.storage.common import ensure_utc
from sessionguard.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PrincipalStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def record_failed_login(self, user_id: str, *, max_failures: int, lockout_until) -> Optional[User]: ...

    def reset_failed_logins(self, user_id: str) -> None: ...

    def rotate_security_stamp(self, user_id: str) -> Optional[str]: ...


class CredentialVerifier:
    """Password checks and login lockout over a principal store."""

    def __init__(self, store: PrincipalStore, settings: Settings, clock: Clock) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def set_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def has_password(self, user_id: str) -> bool:
        return self.store.get_password_record(user_id) is not None

    def check_password(self, user: User, password: str) -> bool:
        """Constant-time verification of ``password`` against the stored hash."""
        record = self.store.get_password_record(user.id)
        if not record:
            logger.warning("password_record_missing", user_id=user.id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user.id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_verification_failed", user_id=user.id)
            return False

    def is_locked_out(self, user: User) -> bool:
        lockout_end = ensure_utc(user.lockout_end)
        return bool(lockout_end and lockout_end > self.clock.now())

    def register_failure(self, user: User) -> bool:
        """Count a wrong password; returns True when this failure locked the account."""
        lockout_until = self.clock.now() + timedelta(minutes=self.settings.lockout_minutes)
        updated = self.store.record_failed_login(
            user.id,
            max_failures=self.settings.max_failed_logins,
            lockout_until=lockout_until,
        )
        locked = bool(updated and self.is_locked_out(updated))
        if locked:
            logger.warning("login_lockout_triggered", user_id=user.id)
        return locked

    def register_success(self, user: User) -> None:
        if user.access_failed_count or user.lockout_end:
            self.store.reset_failed_logins(user.id)
