from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    normalize_email,
)
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import (
    AuditEvent,
    ExternalAuthState,
    ExternalLogin,
    RefreshToken,
    RotationOutcome,
    RotationStatus,
    TwoFactorChallenge,
    TwoFactorConfig,
    User,
    new_id,
    new_security_stamp,
)


class MemoryStore:
    """In-process store for tests and single-node development.

    Every operation runs under one re-entrant lock, which gives the rotation
    and attempt-counting paths the same all-or-nothing behaviour the postgres
    store gets from row locks.
    """

    def __init__(self, *, encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.two_factor: Dict[str, TwoFactorConfig] = {}
        self.external_logins: List[ExternalLogin] = []
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._refresh_by_hash: Dict[str, str] = {}
        self.challenges: Dict[str, TwoFactorChallenge] = {}
        self._challenge_by_hash: Dict[str, str] = {}
        self.external_states: Dict[str, ExternalAuthState] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can be called from inside locked sections
        self._data_lock = threading.RLock()
        self._cipher = build_secret_cipher(encryption_key)

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        email_confirmed: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(normalize_email(u.email) == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=email.strip(),
                email_confirmed=email_confirmed,
                first_name=first_name,
                last_name=last_name,
                meta=meta,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if normalize_email(user.email) == normalized:
                    return replace(user)
        return None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def record_failed_login(
        self, user_id: str, *, max_failures: int, lockout_until: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.access_failed_count += 1
            if user.access_failed_count >= max_failures:
                user.lockout_end = lockout_until
                user.access_failed_count = 0
            return replace(user)

    def reset_failed_logins(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.access_failed_count = 0
                user.lockout_end = None

    def rotate_security_stamp(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.security_stamp = new_security_stamp()
            return user.security_stamp

    # -- two-factor configuration -----------------------------------------

    def save_two_factor_config(self, config: TwoFactorConfig) -> TwoFactorConfig:
        with self._data_lock:
            if config.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for two-factor", {"user_id": config.user_id}
                )
            stored = replace(
                config,
                secret=encrypt_secret(self._cipher, config.secret),
                recovery_code_hashes=list(config.recovery_code_hashes),
            )
            self.two_factor[config.user_id] = stored
            return replace(config)

    def get_two_factor_config(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._data_lock:
            stored = self.two_factor.get(user_id)
            if not stored:
                return None
            return replace(
                stored,
                secret=decrypt_secret(self._cipher, stored.secret),
                recovery_code_hashes=list(stored.recovery_code_hashes),
            )

    def delete_two_factor_config(self, user_id: str) -> bool:
        with self._data_lock:
            return self.two_factor.pop(user_id, None) is not None

    def redeem_recovery_code(
        self, challenge_id: str, code_hash: str, *, max_attempts: int
    ) -> bool:
        """Spend a live challenge and one recovery code together, or neither."""
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.is_used or challenge.failed_attempts >= max_attempts:
                return False
            stored = self.two_factor.get(challenge.user_id)
            if not stored or code_hash not in stored.recovery_code_hashes:
                return False
            stored.recovery_code_hashes.remove(code_hash)
            challenge.is_used = True
            return True

    # -- external logins ---------------------------------------------------

    def link_external_login(
        self, user_id: str, provider: str, provider_key: str
    ) -> ExternalLogin:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            for link in self.external_logins:
                if link.provider == provider and link.provider_key == provider_key:
                    raise ConstraintViolation(
                        "external login already linked",
                        {"provider": provider, "user_id": link.user_id},
                    )
                if link.provider == provider and link.user_id == user_id:
                    raise ConstraintViolation(
                        "provider already linked for user",
                        {"provider": provider, "user_id": user_id},
                    )
            link = ExternalLogin(
                id=new_id(), user_id=user_id, provider=provider, provider_key=provider_key
            )
            self.external_logins.append(link)
            return replace(link)

    def get_user_by_external_login(self, provider: str, provider_key: str) -> Optional[User]:
        with self._data_lock:
            for link in self.external_logins:
                if link.provider == provider and link.provider_key == provider_key:
                    return self.get_user(link.user_id)
        return None

    def list_external_logins(self, user_id: str) -> List[ExternalLogin]:
        with self._data_lock:
            return [replace(link) for link in self.external_logins if link.user_id == user_id]

    def unlink_external_login(self, user_id: str, provider: str) -> bool:
        with self._data_lock:
            before = len(self.external_logins)
            self.external_logins = [
                link
                for link in self.external_logins
                if not (link.user_id == user_id and link.provider == provider)
            ]
            return len(self.external_logins) != before

    # -- refresh tokens ----------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token_hash in self._refresh_by_hash:
                raise ConstraintViolation("refresh token hash collision", {"token_id": token.id})
            self.refresh_tokens[token.id] = replace(token)
            self._refresh_by_hash[token.token_hash] = token.id
            return replace(token)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._refresh_by_hash.get(token_hash)
            token = self.refresh_tokens.get(token_id) if token_id else None
            return replace(token) if token else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            return [
                replace(token)
                for token in self.refresh_tokens.values()
                if token.user_id == user_id
            ]

    def rotate_refresh_token(
        self,
        token_hash: str,
        *,
        now: datetime,
        build_successor: Callable[[RefreshToken], RefreshToken],
    ) -> RotationOutcome:
        """Redeem a presented refresh value in one locked step.

        Check order is not-found, expired, invalidated, used. A used token
        revokes every active token of its owner before the lock is released.
        """
        with self._data_lock:
            token_id = self._refresh_by_hash.get(token_hash)
            token = self.refresh_tokens.get(token_id) if token_id else None
            if token is None:
                return RotationOutcome(status=RotationStatus.NOT_FOUND)
            if token.expires_at <= now:
                return RotationOutcome(status=RotationStatus.EXPIRED, token=replace(token))
            if token.is_invalidated:
                return RotationOutcome(status=RotationStatus.INVALIDATED, token=replace(token))
            if token.is_used:
                revoked = self._invalidate_user_tokens_locked(token.user_id, now)
                token.is_invalidated = True
                return RotationOutcome(
                    status=RotationStatus.REUSED, token=replace(token), revoked_count=revoked
                )
            successor = build_successor(replace(token))
            if successor.token_hash in self._refresh_by_hash:
                raise ConstraintViolation(
                    "refresh token hash collision", {"token_id": successor.id}
                )
            token.is_used = True
            self.refresh_tokens[successor.id] = replace(successor)
            self._refresh_by_hash[successor.token_hash] = successor.id
            return RotationOutcome(
                status=RotationStatus.ROTATED, token=replace(token), successor=replace(successor)
            )

    def _invalidate_user_tokens_locked(self, user_id: str, now: datetime) -> int:
        revoked = 0
        for token in self.refresh_tokens.values():
            if token.user_id != user_id or token.is_invalidated or token.expires_at <= now:
                continue
            token.is_invalidated = True
            revoked += 1
        return revoked

    def invalidate_user_refresh_tokens(self, user_id: str, *, now: datetime) -> int:
        with self._data_lock:
            return self._invalidate_user_tokens_locked(user_id, now)

    def invalidate_refresh_family(self, family_id: str, *, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.family_id != family_id or token.is_invalidated:
                    continue
                if token.expires_at <= now:
                    continue
                token.is_invalidated = True
                revoked += 1
            return revoked

    # -- two-factor challenges ---------------------------------------------

    def create_two_factor_challenge(self, challenge: TwoFactorChallenge) -> TwoFactorChallenge:
        with self._data_lock:
            self.challenges[challenge.id] = replace(challenge)
            self._challenge_by_hash[challenge.token_hash] = challenge.id
            return replace(challenge)

    def get_two_factor_challenge_by_hash(self, token_hash: str) -> Optional[TwoFactorChallenge]:
        with self._data_lock:
            challenge_id = self._challenge_by_hash.get(token_hash)
            challenge = self.challenges.get(challenge_id) if challenge_id else None
            return replace(challenge) if challenge else None

    def register_challenge_failure(
        self, challenge_id: str, *, max_attempts: int
    ) -> Optional[int]:
        """Increment the failure counter unless the challenge is spent.

        Returns the new count, or None when the challenge was already used or
        had reached ``max_attempts``.
        """
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.is_used or challenge.failed_attempts >= max_attempts:
                return None
            challenge.failed_attempts += 1
            return challenge.failed_attempts

    def consume_two_factor_challenge(self, challenge_id: str, *, max_attempts: int) -> bool:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.is_used or challenge.failed_attempts >= max_attempts:
                return False
            challenge.is_used = True
            return True

    # -- external sign-in state ----------------------------------------------

    def create_external_state(self, state: ExternalAuthState) -> ExternalAuthState:
        with self._data_lock:
            self.external_states[state.token_hash] = replace(state)
            return replace(state)

    def consume_external_state(self, token_hash: str) -> Optional[ExternalAuthState]:
        """Mark a state used and return it as it was before this call."""
        with self._data_lock:
            state = self.external_states.get(token_hash)
            if not state:
                return None
            snapshot = replace(state)
            state.is_used = True
            return snapshot

    # -- audit and retention -----------------------------------------------

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(event)

    def list_audit_events(self, user_id: Optional[str] = None) -> List[AuditEvent]:
        with self._data_lock:
            return [e for e in self.audit_events if user_id is None or e.user_id == user_id]

    def purge_expired(self, now: datetime) -> dict[str, int]:
        with self._data_lock:
            stale_tokens = [
                token
                for token in self.refresh_tokens.values()
                if token.expires_at <= now and (token.is_used or token.is_invalidated)
            ]
            for token in stale_tokens:
                self.refresh_tokens.pop(token.id, None)
                self._refresh_by_hash.pop(token.token_hash, None)
            stale_challenges = [
                c for c in self.challenges.values() if c.expires_at <= now or c.is_used
            ]
            for challenge in stale_challenges:
                self.challenges.pop(challenge.id, None)
                self._challenge_by_hash.pop(challenge.token_hash, None)
            stale_states = [
                key for key, state in self.external_states.items() if state.expires_at <= now
            ]
            for key in stale_states:
                self.external_states.pop(key, None)
        counts = {
            "refresh_tokens": len(stale_tokens),
            "two_factor_challenges": len(stale_challenges),
            "external_states": len(stale_states),
        }
        self.logger.info("retention_purge_completed", **counts)
        return counts
