from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol
from urllib.parse import quote

from sessionguard.clock import Clock
from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.audit import AuditAction, AuditService
from sessionguard.service.credentials import CredentialVerifier
from sessionguard.service.results import ErrorKind, Result
from sessionguard.service.tokens import hash_token
from sessionguard.storage.models import TwoFactorChallenge, TwoFactorConfig, User, new_id

logger = get_logger(__name__)

TOTP_INTERVAL_SECONDS = 30
TOTP_DIGITS = 6
# Accept the previous and next step to absorb phone clock drift
TOTP_WINDOW = 1

_RECOVERY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def new_totp_secret() -> str:
    return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")


def generate_totp(
    secret: str,
    timestamp: float,
    *,
    interval: int = TOTP_INTERVAL_SECONDS,
    digits: int = TOTP_DIGITS,
) -> str:
    """RFC 6238 code (HMAC-SHA1) for ``timestamp``; empty string for a bad secret."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    timestamp: float,
    *,
    window: int = TOTP_WINDOW,
    interval: int = TOTP_INTERVAL_SECONDS,
) -> bool:
    candidate = (code or "").strip().replace(" ", "")
    if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
        return False
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, candidate):
            return True
    return False


def normalize_recovery_code(code: str) -> str:
    return (code or "").strip().upper().replace("-", "").replace(" ", "")


def hash_recovery_code(code: str) -> str:
    return hash_token(normalize_recovery_code(code))


def generate_recovery_codes(count: int) -> List[str]:
    codes = []
    for _ in range(count):
        raw = "".join(secrets.choice(_RECOVERY_ALPHABET) for _ in range(10))
        codes.append(f"{raw[:5]}-{raw[5:]}")
    return codes


class TwoFactorStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def rotate_security_stamp(self, user_id: str) -> Optional[str]: ...

    def save_two_factor_config(self, config: TwoFactorConfig) -> TwoFactorConfig: ...

    def get_two_factor_config(self, user_id: str) -> Optional[TwoFactorConfig]: ...

    def delete_two_factor_config(self, user_id: str) -> bool: ...

    def redeem_recovery_code(
        self, challenge_id: str, code_hash: str, *, max_attempts: int
    ) -> bool: ...

    def create_two_factor_challenge(self, challenge: TwoFactorChallenge) -> TwoFactorChallenge: ...

    def get_two_factor_challenge_by_hash(self, token_hash: str) -> Optional[TwoFactorChallenge]: ...

    def register_challenge_failure(self, challenge_id: str, *, max_attempts: int) -> Optional[int]: ...

    def consume_two_factor_challenge(self, challenge_id: str, *, max_attempts: int) -> bool: ...


@dataclass(frozen=True)
class IssuedChallenge:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class VerifiedChallenge:
    user_id: str
    remember_me: bool


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    otpauth_uri: str


class TwoFactorService:
    """Short-lived login challenges plus enrolment of the second factor."""

    def __init__(
        self,
        store: TwoFactorStore,
        settings: Settings,
        clock: Clock,
        audit: AuditService,
        credentials: CredentialVerifier,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.audit = audit
        self.credentials = credentials

    @property
    def max_attempts(self) -> int:
        return self.settings.two_factor_max_failed_attempts

    def is_enabled(self, user_id: str) -> bool:
        config = self.store.get_two_factor_config(user_id)
        return bool(config and config.enabled)

    # -- login challenges ----------------------------------------------------

    def issue_challenge(self, user_id: str, remember_me: bool) -> IssuedChallenge:
        token = secrets.token_urlsafe(32)
        now = self.clock.now()
        expires_at = now + timedelta(minutes=self.settings.two_factor_challenge_lifetime_minutes)
        challenge = TwoFactorChallenge(
            id=new_id(),
            token_hash=hash_token(token),
            user_id=user_id,
            created_at=now,
            expires_at=expires_at,
            is_remember_me=remember_me,
        )
        self.store.create_two_factor_challenge(challenge)
        self.audit.log(
            AuditAction.TWO_FACTOR_CHALLENGE_ISSUED,
            user_id=user_id,
            target_type="two_factor_challenge",
            target_id=challenge.id,
        )
        return IssuedChallenge(token=token, expires_at=expires_at)

    def verify_code(self, challenge_token: str, code: str) -> Result[VerifiedChallenge]:
        def check(challenge: TwoFactorChallenge, config: TwoFactorConfig) -> bool:
            return verify_totp(config.secret, code, self.clock.now().timestamp())

        return self._verify(challenge_token, check, method="totp")

    def verify_recovery_code(
        self, challenge_token: str, recovery_code: str
    ) -> Result[VerifiedChallenge]:
        code_hash = hash_recovery_code(recovery_code)

        def check(challenge: TwoFactorChallenge, config: TwoFactorConfig) -> bool:
            if not normalize_recovery_code(recovery_code):
                return False
            return any(
                hmac.compare_digest(code_hash, stored) for stored in config.recovery_code_hashes
            )

        # The code is only spent together with the challenge
        def redeem(challenge: TwoFactorChallenge) -> bool:
            return self.store.redeem_recovery_code(
                challenge.id, code_hash, max_attempts=self.max_attempts
            )

        return self._verify(challenge_token, check, method="recovery_code", consume=redeem)

    def _verify(
        self,
        challenge_token: str,
        check: Callable[[TwoFactorChallenge, TwoFactorConfig], bool],
        *,
        method: str,
        consume: Optional[Callable[[TwoFactorChallenge], bool]] = None,
    ) -> Result[VerifiedChallenge]:
        if not challenge_token:
            return Result.failure(ErrorKind.CHALLENGE_NOT_FOUND)
        challenge = self.store.get_two_factor_challenge_by_hash(hash_token(challenge_token))
        # A consumed challenge is treated as gone
        if challenge is None or challenge.is_used:
            return Result.failure(ErrorKind.CHALLENGE_NOT_FOUND)
        if challenge.expires_at <= self.clock.now():
            return Result.failure(ErrorKind.CHALLENGE_EXPIRED)
        if challenge.failed_attempts >= self.max_attempts:
            return Result.failure(ErrorKind.CHALLENGE_LOCKED)
        config = self.store.get_two_factor_config(challenge.user_id)
        if not config or not config.enabled:
            logger.warning("two_factor_challenge_without_config", user_id=challenge.user_id)
            return Result.failure(ErrorKind.TWO_FACTOR_NOT_ENABLED)

        if not check(challenge, config):
            attempts = self.store.register_challenge_failure(
                challenge.id, max_attempts=self.max_attempts
            )
            if attempts is None:
                # Lost a race against a parallel guess or a successful verify
                return self._spent_challenge_result(challenge_token)
            self.audit.log(
                AuditAction.TWO_FACTOR_FAILED,
                user_id=challenge.user_id,
                target_type="two_factor_challenge",
                target_id=challenge.id,
                metadata={"attempts": attempts, "method": method},
            )
            if attempts >= self.max_attempts:
                logger.warning(
                    "two_factor_challenge_locked", user_id=challenge.user_id, attempts=attempts
                )
                self.audit.log(
                    AuditAction.TWO_FACTOR_LOCKED,
                    user_id=challenge.user_id,
                    target_type="two_factor_challenge",
                    target_id=challenge.id,
                )
            return Result.failure(ErrorKind.INVALID_CODE)

        if consume is not None:
            consumed = consume(challenge)
        else:
            consumed = self.store.consume_two_factor_challenge(
                challenge.id, max_attempts=self.max_attempts
            )
        if not consumed:
            return self._spent_challenge_result(challenge_token)
        self.audit.log(
            AuditAction.RECOVERY_CODE_USED if method == "recovery_code" else AuditAction.TWO_FACTOR_VERIFIED,
            user_id=challenge.user_id,
            target_type="two_factor_challenge",
            target_id=challenge.id,
        )
        return Result.success(
            VerifiedChallenge(user_id=challenge.user_id, remember_me=challenge.is_remember_me)
        )

    def _spent_challenge_result(self, challenge_token: str) -> Result[VerifiedChallenge]:
        current = self.store.get_two_factor_challenge_by_hash(hash_token(challenge_token))
        if current is None or current.is_used:
            return Result.failure(ErrorKind.CHALLENGE_NOT_FOUND)
        if current.failed_attempts >= self.max_attempts:
            return Result.failure(ErrorKind.CHALLENGE_LOCKED)
        # Still live: the recovery code was spent by a parallel request
        return Result.failure(ErrorKind.INVALID_CODE)

    # -- enrolment -----------------------------------------------------------

    def setup(self, user_id: str) -> Result[TwoFactorSetup]:
        user = self.store.get_user(user_id)
        if not user:
            return Result.failure(ErrorKind.UNAUTHORIZED)
        existing = self.store.get_two_factor_config(user_id)
        if existing and existing.enabled:
            return Result.failure(ErrorKind.TWO_FACTOR_ALREADY_ENABLED)
        secret = new_totp_secret()
        self.store.save_two_factor_config(
            TwoFactorConfig(user_id=user_id, secret=secret, enabled=False, created_at=self.clock.now())
        )
        return Result.success(TwoFactorSetup(secret=secret, otpauth_uri=self._otpauth_uri(user, secret)))

    def _otpauth_uri(self, user: User, secret: str) -> str:
        issuer = quote(self.settings.two_factor_issuer, safe="")
        account = quote(user.email, safe="@")
        return (
            f"otpauth://totp/{issuer}:{account}"
            f"?secret={secret}&issuer={issuer}&digits={TOTP_DIGITS}"
        )

    def verify_setup(self, user_id: str, code: str) -> Result[List[str]]:
        config = self.store.get_two_factor_config(user_id)
        if not config:
            return Result.failure(ErrorKind.TWO_FACTOR_NOT_ENABLED)
        if config.enabled:
            return Result.failure(ErrorKind.TWO_FACTOR_ALREADY_ENABLED)
        if not verify_totp(config.secret, code, self.clock.now().timestamp()):
            return Result.failure(ErrorKind.INVALID_CODE)
        codes = generate_recovery_codes(self.settings.recovery_code_count)
        config.enabled = True
        config.enabled_at = self.clock.now()
        config.recovery_code_hashes = [hash_recovery_code(c) for c in codes]
        self.store.save_two_factor_config(config)
        self.store.rotate_security_stamp(user_id)
        self.audit.log(AuditAction.TWO_FACTOR_ENABLED, user_id=user_id, target_type="user", target_id=user_id)
        return Result.success(codes)

    def disable(self, user_id: str, password: str) -> Result[None]:
        checked = self._recheck_password(user_id, password)
        if not checked.ok:
            return Result.failure(checked.error, checked.message)
        if not self.is_enabled(user_id):
            return Result.failure(ErrorKind.TWO_FACTOR_NOT_ENABLED)
        self.store.delete_two_factor_config(user_id)
        self.store.rotate_security_stamp(user_id)
        self.audit.log(AuditAction.TWO_FACTOR_DISABLED, user_id=user_id, target_type="user", target_id=user_id)
        return Result.success()

    def regenerate_recovery_codes(self, user_id: str, password: str) -> Result[List[str]]:
        checked = self._recheck_password(user_id, password)
        if not checked.ok:
            return Result.failure(checked.error, checked.message)
        config = self.store.get_two_factor_config(user_id)
        if not config or not config.enabled:
            return Result.failure(ErrorKind.TWO_FACTOR_NOT_ENABLED)
        codes = generate_recovery_codes(self.settings.recovery_code_count)
        config.recovery_code_hashes = [hash_recovery_code(c) for c in codes]
        self.store.save_two_factor_config(config)
        self.audit.log(
            AuditAction.TWO_FACTOR_RECOVERY_CODES_REGENERATED,
            user_id=user_id,
            target_type="user",
            target_id=user_id,
        )
        return Result.success(codes)

    def recovery_codes_remaining(self, user_id: str) -> int:
        config = self.store.get_two_factor_config(user_id)
        return len(config.recovery_code_hashes) if config and config.enabled else 0

    def _recheck_password(self, user_id: str, password: str) -> Result[User]:
        user = self.store.get_user(user_id)
        if not user:
            return Result.failure(ErrorKind.UNAUTHORIZED)
        if not self.credentials.check_password(user, password):
            return Result.failure(ErrorKind.INVALID_CREDENTIALS, "The password is incorrect.")
        return Result.success(user)
