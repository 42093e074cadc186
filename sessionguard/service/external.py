from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Protocol

from sessionguard.clock import Clock
from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.providers import ProviderRegistry
from sessionguard.service.results import ErrorKind, Result
from sessionguard.service.tokens import hash_token
from sessionguard.storage.models import ExternalAuthState, new_id

logger = get_logger(__name__)


class ExternalStateStore(Protocol):
    def create_external_state(self, state: ExternalAuthState) -> ExternalAuthState: ...

    def consume_external_state(self, token_hash: str) -> Optional[ExternalAuthState]: ...


@dataclass(frozen=True)
class AuthorizationRequest:
    provider: str
    authorization_url: str
    state: str


class ExternalAuthStateService:
    """Issues and redeems the single-use ``state`` of an external sign-in."""

    def __init__(
        self,
        store: ExternalStateStore,
        providers: ProviderRegistry,
        settings: Settings,
        clock: Clock,
    ) -> None:
        self.store = store
        self.providers = providers
        self.settings = settings
        self.clock = clock

    def is_allowed_redirect(self, redirect_uri: str) -> bool:
        # Exact match only; prefixes would let an attacker append a path
        return redirect_uri in self.settings.external_allowed_redirect_uris

    def start(
        self,
        provider_name: str,
        redirect_uri: str,
        *,
        user_id: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> Result[AuthorizationRequest]:
        provider = self.providers.get(provider_name)
        if provider is None:
            return Result.failure(ErrorKind.PROVIDER_NOT_FOUND)
        if not redirect_uri or not self.is_allowed_redirect(redirect_uri):
            logger.warning("external_redirect_rejected", provider=provider.name)
            return Result.failure(ErrorKind.VALIDATION, "The redirect URI is not allowed.")
        state_value = secrets.token_urlsafe(32)
        now = self.clock.now()
        self.store.create_external_state(
            ExternalAuthState(
                id=new_id(),
                token_hash=hash_token(state_value),
                provider=provider.name,
                redirect_uri=redirect_uri,
                created_at=now,
                expires_at=now + timedelta(minutes=self.settings.external_state_lifetime_minutes),
                user_id=user_id,
            )
        )
        return Result.success(
            AuthorizationRequest(
                provider=provider.name,
                authorization_url=provider.build_authorization_url(state_value, redirect_uri, nonce),
                state=state_value,
            )
        )

    def resolve(self, state_value: str) -> Result[ExternalAuthState]:
        if not state_value:
            return Result.failure(ErrorKind.INVALID_STATE)
        state = self.store.consume_external_state(hash_token(state_value))
        if state is None or state.is_used:
            logger.warning("external_state_invalid")
            return Result.failure(ErrorKind.INVALID_STATE)
        if state.expires_at <= self.clock.now():
            return Result.failure(ErrorKind.STATE_EXPIRED)
        return Result.success(state)
