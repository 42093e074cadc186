from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from sessionguard.clock import Clock, SystemClock
from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.audit import AuditAction, AuditService
from sessionguard.service.credentials import CredentialVerifier, PrincipalStore
from sessionguard.service.errors import NoUsableEmailError, ProviderExchangeError
from sessionguard.service.external import (
    AuthorizationRequest,
    ExternalAuthStateService,
    ExternalStateStore,
)
from sessionguard.service.providers import ProviderDescriptor, ProviderRegistry
from sessionguard.service.results import ErrorKind, Result
from sessionguard.service.tokens import TokenCodec, hash_security_stamp, hash_token
from sessionguard.service.two_factor import (
    IssuedChallenge,
    TwoFactorService,
    TwoFactorStore,
    VerifiedChallenge,
)
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import (
    ExternalLogin,
    ExternalUserInfo,
    RefreshToken,
    RotationOutcome,
    RotationStatus,
    User,
    new_id,
)

logger = get_logger(__name__)


class SessionStore(PrincipalStore, TwoFactorStore, ExternalStateStore, Protocol):
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self,
        token_hash: str,
        *,
        now: datetime,
        build_successor: Callable[[RefreshToken], RefreshToken],
    ) -> RotationOutcome: ...

    def invalidate_user_refresh_tokens(self, user_id: str, *, now: datetime) -> int: ...

    def create_user(self, email: str, **kwargs: Any) -> User: ...

    def link_external_login(self, user_id: str, provider: str, provider_key: str) -> ExternalLogin: ...

    def get_user_by_external_login(self, provider: str, provider_key: str) -> Optional[User]: ...

    def list_external_logins(self, user_id: str) -> List[ExternalLogin]: ...

    def unlink_external_login(self, user_id: str, provider: str) -> bool: ...

    def purge_expired(self, now: datetime) -> Dict[str, int]: ...


class PrincipalCache(Protocol):
    async def get_principal(self, user_id: str) -> Optional[Dict[str, Any]]: ...

    async def cache_principal(
        self, user_id: str, data: Dict[str, Any], ttl_seconds: Optional[int] = None
    ) -> None: ...

    async def invalidate_principal(self, user_id: str) -> None: ...


class AccountProvisioner(Protocol):
    def provision(self, info: ExternalUserInfo, provider: str) -> Optional[User]: ...


class StoreAccountProvisioner:
    """Creates a password-less local account for a first-time external sign-in."""

    def __init__(self, store: SessionStore) -> None:
        self.store = store

    def provision(self, info: ExternalUserInfo, provider: str) -> Optional[User]:
        return self.store.create_user(
            info.email,
            email_confirmed=info.email_verified,
            first_name=info.first_name,
            last_name=info.last_name,
        )


@dataclass(frozen=True)
class TokenPair:
    user_id: str
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class LoginOutcome:
    """Either a token pair or a pending two-factor challenge."""

    use_cookies: bool
    tokens: Optional[TokenPair] = None
    challenge: Optional[IssuedChallenge] = None

    @property
    def requires_two_factor(self) -> bool:
        return self.challenge is not None


@dataclass(frozen=True)
class ExternalLoginOutcome:
    provider: str
    use_cookies: bool
    user_id: Optional[str] = None
    tokens: Optional[TokenPair] = None
    challenge: Optional[IssuedChallenge] = None
    is_new_user: bool = False
    linked_only: bool = False
    new_account: Optional[ExternalUserInfo] = None

    @property
    def requires_registration(self) -> bool:
        return self.new_account is not None


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    email: str
    token_id: str
    expires_at: Optional[datetime] = None


class SessionService:
    """Login, refresh rotation, logout and credential-change propagation.

    Every expected failure comes back as a ``Result``; the HTTP layer decides
    how to render it. Store and configuration faults propagate.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        clock: Clock,
        codec: TokenCodec,
        credentials: CredentialVerifier,
        two_factor: TwoFactorService,
        providers: ProviderRegistry,
        external_states: ExternalAuthStateService,
        audit: AuditService,
        *,
        cache: Optional[PrincipalCache] = None,
        provisioner: Optional[AccountProvisioner] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.codec = codec
        self.credentials = credentials
        self.two_factor = two_factor
        self.providers = providers
        self.external_states = external_states
        self.audit = audit
        self.cache = cache
        self.provisioner = provisioner

    @classmethod
    def build(
        cls,
        store: SessionStore,
        settings: Settings,
        clock: Optional[Clock] = None,
        *,
        providers: Optional[ProviderRegistry] = None,
        cache: Optional[PrincipalCache] = None,
        provisioner: Optional[AccountProvisioner] = None,
        audit: Optional[AuditService] = None,
    ) -> "SessionService":
        clock = clock or SystemClock()
        providers = providers or ProviderRegistry()
        audit = audit or AuditService(store, clock)
        credentials = CredentialVerifier(store, settings, clock)
        return cls(
            store,
            settings,
            clock,
            TokenCodec(settings, clock),
            credentials,
            TwoFactorService(store, settings, clock, audit, credentials),
            providers,
            ExternalAuthStateService(store, providers, settings, clock),
            audit,
            cache=cache,
            provisioner=provisioner,
        )

    # -- token issuance ------------------------------------------------------

    def refresh_lifetime(self, persistent: bool) -> timedelta:
        if persistent:
            return timedelta(days=self.settings.refresh_persistent_lifetime_days)
        return timedelta(minutes=self.settings.refresh_session_lifetime_minutes)

    def _issue_token_pair(self, user: User, *, persistent: bool) -> TokenPair:
        now = self.clock.now()
        access = self.codec.issue_access_token(user)
        refresh_value = self.codec.new_refresh_value()
        record = RefreshToken(
            id=new_id(),
            token_hash=hash_token(refresh_value),
            user_id=user.id,
            created_at=now,
            expires_at=now + self.refresh_lifetime(persistent),
            is_persistent=persistent,
            family_id=new_id(),
        )
        self.store.create_refresh_token(record)
        return TokenPair(
            user_id=user.id,
            access_token=access.value,
            access_token_expires_at=access.expires_at,
            refresh_token=refresh_value,
            refresh_token_expires_at=record.expires_at,
        )

    # -- password login ------------------------------------------------------

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        remember_me: bool = False,
        use_cookies: bool = True,
    ) -> Result[LoginOutcome]:
        if not identifier or not password:
            return Result.failure(ErrorKind.VALIDATION, "Username and password are required.")
        user = self.store.get_user_by_email(identifier)
        if not user or not user.is_active:
            return Result.failure(ErrorKind.INVALID_CREDENTIALS)
        if self.credentials.is_locked_out(user):
            self.audit.log(AuditAction.LOGIN_LOCKED_OUT, user_id=user.id)
            return Result.failure(ErrorKind.ACCOUNT_LOCKED)
        if not self.credentials.check_password(user, password):
            locked = self.credentials.register_failure(user)
            self.audit.log(
                AuditAction.LOGIN_FAILED, user_id=user.id, metadata={"locked": locked}
            )
            if locked:
                return Result.failure(ErrorKind.ACCOUNT_LOCKED)
            return Result.failure(ErrorKind.INVALID_CREDENTIALS)
        self.credentials.register_success(user)

        if self.two_factor.is_enabled(user.id):
            challenge = self.two_factor.issue_challenge(user.id, remember_me)
            return Result.success(LoginOutcome(use_cookies=use_cookies, challenge=challenge))

        tokens = self._issue_token_pair(user, persistent=remember_me)
        self.audit.log(
            AuditAction.LOGIN_SUCCEEDED,
            user_id=user.id,
            metadata={"method": "password", "remember_me": remember_me},
        )
        return Result.success(LoginOutcome(use_cookies=use_cookies, tokens=tokens))

    async def complete_two_factor(
        self, challenge_token: str, code: str, *, use_cookies: bool = True
    ) -> Result[LoginOutcome]:
        verified = self.two_factor.verify_code(challenge_token, code)
        return self._finish_two_factor(verified, use_cookies=use_cookies, method="totp")

    async def complete_two_factor_with_recovery_code(
        self, challenge_token: str, recovery_code: str, *, use_cookies: bool = True
    ) -> Result[LoginOutcome]:
        verified = self.two_factor.verify_recovery_code(challenge_token, recovery_code)
        return self._finish_two_factor(verified, use_cookies=use_cookies, method="recovery_code")

    def _finish_two_factor(
        self, verified: Result[VerifiedChallenge], *, use_cookies: bool, method: str
    ) -> Result[LoginOutcome]:
        if not verified.ok:
            return Result.failure(verified.error, verified.message)
        challenge = verified.unwrap()
        user = self.store.get_user(challenge.user_id)
        if not user or not user.is_active:
            return Result.failure(ErrorKind.UNAUTHORIZED)
        tokens = self._issue_token_pair(user, persistent=challenge.remember_me)
        self.audit.log(
            AuditAction.LOGIN_SUCCEEDED,
            user_id=user.id,
            metadata={"method": method, "remember_me": challenge.remember_me},
        )
        return Result.success(LoginOutcome(use_cookies=use_cookies, tokens=tokens))

    # -- refresh rotation ----------------------------------------------------

    async def refresh(self, refresh_value: Optional[str]) -> Result[TokenPair]:
        if not refresh_value:
            return Result.failure(ErrorKind.TOKEN_MISSING)
        now = self.clock.now()
        issued: Dict[str, str] = {}

        def build_successor(current: RefreshToken) -> RefreshToken:
            value = self.codec.new_refresh_value()
            issued["value"] = value
            return RefreshToken(
                id=new_id(),
                token_hash=hash_token(value),
                user_id=current.user_id,
                created_at=now,
                expires_at=now + self.refresh_lifetime(current.is_persistent),
                is_persistent=current.is_persistent,
                family_id=current.family_id,
            )

        # Runs synchronously: no await between the check and the commit
        outcome = self.store.rotate_refresh_token(
            hash_token(refresh_value), now=now, build_successor=build_successor
        )
        if outcome.status is RotationStatus.NOT_FOUND:
            return Result.failure(ErrorKind.TOKEN_NOT_FOUND)
        if outcome.status is RotationStatus.EXPIRED:
            return Result.failure(ErrorKind.TOKEN_EXPIRED)
        if outcome.status is RotationStatus.INVALIDATED:
            return Result.failure(ErrorKind.TOKEN_INVALIDATED)
        if outcome.status is RotationStatus.REUSED:
            await self._handle_reuse(outcome)
            return Result.failure(ErrorKind.TOKEN_REUSED)

        successor = outcome.successor
        user = self.store.get_user(successor.user_id)
        if not user or not user.is_active:
            logger.warning("refresh_token_user_missing", user_id=successor.user_id)
            # The successor was committed with the rotation; it must not stay live
            self.store.invalidate_user_refresh_tokens(successor.user_id, now=now)
            return Result.failure(ErrorKind.UNAUTHORIZED)
        access = self.codec.issue_access_token(user)
        self.audit.log(
            AuditAction.TOKEN_REFRESHED,
            user_id=user.id,
            target_type="refresh_token",
            target_id=successor.id,
        )
        return Result.success(
            TokenPair(
                user_id=user.id,
                access_token=access.value,
                access_token_expires_at=access.expires_at,
                refresh_token=issued["value"],
                refresh_token_expires_at=successor.expires_at,
            )
        )

    async def _handle_reuse(self, outcome: RotationOutcome) -> None:
        token = outcome.token
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=token.user_id,
            token_id=token.id,
            revoked=outcome.revoked_count,
        )
        self.store.rotate_security_stamp(token.user_id)
        self.audit.log(
            AuditAction.REFRESH_TOKEN_REUSE_DETECTED,
            user_id=token.user_id,
            target_type="refresh_token",
            target_id=token.id,
            metadata={"revoked": outcome.revoked_count, "family_id": token.family_id},
        )
        await self._invalidate_cached_principal(token.user_id)

    # -- revocation ----------------------------------------------------------

    async def logout(
        self, *, access_token: Optional[str] = None, refresh_value: Optional[str] = None
    ) -> Result[None]:
        """End every session of the caller; succeeds even when the caller is unknown."""
        user_id: Optional[str] = None
        if access_token:
            payload = self.codec.decode_access_token(access_token, verify_lifetime=False)
            user_id = payload.get("sub") if payload else None
        if not user_id and refresh_value:
            record = self.store.get_refresh_token_by_hash(hash_token(refresh_value))
            user_id = record.user_id if record else None
        if user_id:
            await self.revoke_user_sessions(user_id, reason="logout")
            self.audit.log(AuditAction.LOGOUT, user_id=user_id)
        return Result.success()

    async def revoke_user_sessions(self, user_id: str, *, reason: str = "revoked") -> int:
        """Invalidate all refresh tokens, rotate the stamp and evict cached data."""
        revoked = self.store.invalidate_user_refresh_tokens(user_id, now=self.clock.now())
        self.store.rotate_security_stamp(user_id)
        await self._invalidate_cached_principal(user_id)
        self.audit.log(
            AuditAction.SESSIONS_REVOKED,
            user_id=user_id,
            metadata={"reason": reason, "revoked": revoked},
        )
        return revoked

    async def notify_authorization_changed(self, user_id: str) -> None:
        """Outstanding access tokens stop validating; refresh tokens stay usable."""
        self.store.rotate_security_stamp(user_id)
        await self._invalidate_cached_principal(user_id)
        self.audit.log(AuditAction.AUTHORIZATION_CHANGED, user_id=user_id)

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> Result[None]:
        user = self.store.get_user(user_id)
        if not user:
            return Result.failure(ErrorKind.UNAUTHORIZED)
        if not new_password:
            return Result.failure(ErrorKind.VALIDATION, "A new password is required.")
        if not self.credentials.check_password(user, current_password or ""):
            return Result.failure(
                ErrorKind.INVALID_CREDENTIALS, "Current password is incorrect."
            )
        if hmac.compare_digest(current_password.encode(), new_password.encode()):
            return Result.failure(
                ErrorKind.VALIDATION,
                "The new password must be different from the current password.",
            )
        self.credentials.set_password(user_id, new_password)
        await self.revoke_user_sessions(user_id, reason="password_changed")
        self.audit.log(AuditAction.PASSWORD_CHANGED, user_id=user_id)
        return Result.success()

    async def set_password(self, user_id: str, new_password: str) -> Result[None]:
        """First password for an account created through external sign-in."""
        if not self.store.get_user(user_id):
            return Result.failure(ErrorKind.UNAUTHORIZED)
        if not new_password:
            return Result.failure(ErrorKind.VALIDATION, "A new password is required.")
        if self.credentials.has_password(user_id):
            return Result.failure(
                ErrorKind.VALIDATION, "A password is already set for this account."
            )
        self.credentials.set_password(user_id, new_password)
        await self.revoke_user_sessions(user_id, reason="password_set")
        self.audit.log(AuditAction.PASSWORD_SET, user_id=user_id)
        return Result.success()

    async def enable_two_factor(self, user_id: str, code: str) -> Result[List[str]]:
        result = self.two_factor.verify_setup(user_id, code)
        if result.ok:
            await self._invalidate_cached_principal(user_id)
        return result

    async def disable_two_factor(self, user_id: str, password: str) -> Result[None]:
        result = self.two_factor.disable(user_id, password)
        if result.ok:
            await self._invalidate_cached_principal(user_id)
        return result

    async def _invalidate_cached_principal(self, user_id: str) -> None:
        if not self.cache:
            return
        try:
            await self.cache.invalidate_principal(user_id)
        except Exception as exc:
            logger.warning("principal_cache_invalidation_failed", user_id=user_id, error=str(exc))

    # -- access token validation ---------------------------------------------

    async def authenticate(self, access_token: Optional[str]) -> Result[AuthContext]:
        if not access_token:
            return Result.failure(ErrorKind.UNAUTHORIZED)
        payload = self.codec.decode_access_token(access_token)
        if not payload:
            return Result.failure(ErrorKind.UNAUTHORIZED)
        user = self.store.get_user(payload["sub"])
        if not user or not user.is_active:
            return Result.failure(ErrorKind.UNAUTHORIZED)
        presented = self.codec.stamp_claim(payload) or ""
        expected = hash_security_stamp(user.security_stamp)
        if not hmac.compare_digest(presented.encode(), expected.encode()):
            logger.info("access_token_stamp_mismatch", user_id=user.id)
            return Result.failure(ErrorKind.UNAUTHORIZED)
        return Result.success(
            AuthContext(
                user_id=user.id,
                email=user.email,
                token_id=str(payload.get("jti", "")),
                expires_at=self.codec.expiry_of(payload),
            )
        )

    async def get_principal_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        if self.cache:
            try:
                cached = await self.cache.get_principal(user_id)
            except Exception as exc:
                logger.warning("principal_cache_read_failed", user_id=user_id, error=str(exc))
                cached = None
            if cached:
                return cached
        user = self.store.get_user(user_id)
        if not user:
            return None
        profile = {
            "id": user.id,
            "email": user.email,
            "email_confirmed": user.email_confirmed,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "two_factor_enabled": self.two_factor.is_enabled(user.id),
            "providers": self.list_linked_providers(user.id),
        }
        if self.cache:
            try:
                await self.cache.cache_principal(user_id, profile)
            except Exception as exc:
                logger.warning("principal_cache_write_failed", user_id=user_id, error=str(exc))
        return profile

    # -- external providers --------------------------------------------------

    def list_providers(self) -> List[ProviderDescriptor]:
        return self.providers.describe()

    def list_linked_providers(self, user_id: str) -> List[str]:
        return [link.provider for link in self.store.list_external_logins(user_id)]

    def start_external_login(
        self,
        provider_name: str,
        redirect_uri: str,
        *,
        user_id: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> Result[AuthorizationRequest]:
        return self.external_states.start(provider_name, redirect_uri, user_id=user_id, nonce=nonce)

    async def handle_external_callback(
        self, state: str, code: str, *, use_cookies: bool = True
    ) -> Result[ExternalLoginOutcome]:
        resolved = self.external_states.resolve(state)
        if not resolved.ok:
            return Result.failure(resolved.error, resolved.message)
        stored = resolved.unwrap()
        return await self.login_with_external_provider(
            stored.provider,
            code,
            stored.redirect_uri,
            current_user_id=stored.user_id,
            use_cookies=use_cookies,
        )

    async def login_with_external_provider(
        self,
        provider_name: str,
        code: str,
        redirect_uri: str,
        *,
        current_user_id: Optional[str] = None,
        use_cookies: bool = True,
    ) -> Result[ExternalLoginOutcome]:
        provider = self.providers.get(provider_name)
        if provider is None:
            return Result.failure(ErrorKind.PROVIDER_NOT_FOUND)
        if not code or not redirect_uri:
            return Result.failure(ErrorKind.VALIDATION, "Code and redirect URI are required.")
        try:
            info = await provider.exchange_code(code, redirect_uri)
        except NoUsableEmailError:
            return Result.failure(ErrorKind.NO_USABLE_EMAIL)
        except ProviderExchangeError as exc:
            logger.warning("external_exchange_failed", provider=provider.name, error=exc.message)
            return Result.failure(ErrorKind.PROVIDER_EXCHANGE_FAILED)

        def outcome(**kwargs: Any) -> Result[ExternalLoginOutcome]:
            return Result.success(
                ExternalLoginOutcome(provider=provider.name, use_cookies=use_cookies, **kwargs)
            )

        linked_user = self.store.get_user_by_external_login(provider.name, info.provider_key)
        if linked_user is not None:
            if current_user_id is None:
                return self._external_sign_in(linked_user, provider.name, use_cookies)
            if linked_user.id == current_user_id:
                return outcome(user_id=current_user_id, linked_only=True)
            return Result.failure(ErrorKind.ALREADY_LINKED)

        if current_user_id is not None:
            if not self.store.get_user(current_user_id):
                return Result.failure(ErrorKind.UNAUTHORIZED)
            linked = self._link(current_user_id, provider.name, info)
            if not linked.ok:
                return Result.failure(linked.error, linked.message)
            return outcome(user_id=current_user_id, linked_only=True)

        existing = self.store.get_user_by_email(info.email)
        if existing is not None:
            if not (existing.email_confirmed and info.email_verified):
                return Result.failure(ErrorKind.EMAIL_NOT_VERIFIED)
            linked = self._link(existing.id, provider.name, info, automatic=True)
            if not linked.ok:
                return Result.failure(linked.error, linked.message)
            return self._external_sign_in(existing, provider.name, use_cookies)

        user = self.provisioner.provision(info, provider.name) if self.provisioner else None
        if user is None:
            return outcome(new_account=info)
        linked = self._link(user.id, provider.name, info)
        if not linked.ok:
            return Result.failure(linked.error, linked.message)
        self.audit.log(
            AuditAction.EXTERNAL_ACCOUNT_CREATED,
            user_id=user.id,
            metadata={"provider": provider.name},
        )
        return self._external_sign_in(user, provider.name, use_cookies, is_new_user=True)

    def _link(
        self, user_id: str, provider: str, info: ExternalUserInfo, *, automatic: bool = False
    ) -> Result[ExternalLogin]:
        try:
            link = self.store.link_external_login(user_id, provider, info.provider_key)
        except ConstraintViolation as exc:
            logger.warning("external_link_conflict", user_id=user_id, provider=provider, detail=exc.detail)
            return Result.failure(ErrorKind.ALREADY_LINKED)
        self.audit.log(
            AuditAction.EXTERNAL_ACCOUNT_LINKED,
            user_id=user_id,
            target_type="external_login",
            target_id=link.id,
            metadata={"provider": provider, "automatic": automatic},
        )
        return Result.success(link)

    def _external_sign_in(
        self, user: User, provider: str, use_cookies: bool, *, is_new_user: bool = False
    ) -> Result[ExternalLoginOutcome]:
        if not user.is_active:
            return Result.failure(ErrorKind.UNAUTHORIZED)
        if self.two_factor.is_enabled(user.id):
            challenge = self.two_factor.issue_challenge(user.id, False)
            return Result.success(
                ExternalLoginOutcome(
                    provider=provider,
                    use_cookies=use_cookies,
                    user_id=user.id,
                    challenge=challenge,
                    is_new_user=is_new_user,
                )
            )
        # External sign-ins never get the remember-me lifetime
        tokens = self._issue_token_pair(user, persistent=False)
        self.audit.log(
            AuditAction.EXTERNAL_LOGIN, user_id=user.id, metadata={"provider": provider}
        )
        return Result.success(
            ExternalLoginOutcome(
                provider=provider,
                use_cookies=use_cookies,
                user_id=user.id,
                tokens=tokens,
                is_new_user=is_new_user,
            )
        )

    async def unlink_external_provider(self, user_id: str, provider: str) -> Result[None]:
        if not self.store.get_user(user_id):
            return Result.failure(ErrorKind.UNAUTHORIZED)
        links = self.store.list_external_logins(user_id)
        if provider not in {link.provider for link in links}:
            return Result.failure(ErrorKind.VALIDATION, "This provider is not linked.")
        if len(links) == 1 and not self.credentials.has_password(user_id):
            return Result.failure(
                ErrorKind.VALIDATION, "Cannot remove the last sign-in method."
            )
        self.store.unlink_external_login(user_id, provider)
        await self._invalidate_cached_principal(user_id)
        self.audit.log(
            AuditAction.EXTERNAL_ACCOUNT_UNLINKED, user_id=user_id, metadata={"provider": provider}
        )
        return Result.success()

    # -- retention -------------------------------------------------------------

    def purge_expired(self) -> Dict[str, int]:
        return self.store.purge_expired(self.clock.now())
