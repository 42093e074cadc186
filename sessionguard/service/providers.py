from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol
from urllib.parse import urlencode

import httpx

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.errors import NoUsableEmailError, ProviderExchangeError
from sessionguard.storage.models import ExternalUserInfo

logger = get_logger(__name__)

GITHUB_USER_AGENT = "sessionguard"


class ExternalAuthProvider(Protocol):
    name: str
    display_name: str

    def build_authorization_url(
        self, state: str, redirect_uri: str, nonce: Optional[str] = None
    ) -> str: ...

    async def exchange_code(self, code: str, redirect_uri: str) -> ExternalUserInfo: ...


@dataclass(frozen=True)
class ProviderDescriptor:
    name: str
    display_name: str


def select_email(candidates: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Pick the best address: primary+verified, then primary, then verified.

    Returns None when no address is primary or verified.
    """
    emails = [c for c in candidates if isinstance(c, dict) and c.get("email")]
    for predicate in (
        lambda c: c.get("primary") is True and c.get("verified") is True,
        lambda c: c.get("primary") is True,
        lambda c: c.get("verified") is True,
    ):
        match = next((c for c in emails if predicate(c)), None)
        if match:
            return match
    return None


def _split_name(full_name: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    if not full_name or not full_name.strip():
        return None, None
    parts = full_name.strip().split(" ", 1)
    first = parts[0] or None
    last = parts[1].strip() if len(parts) > 1 and parts[1].strip() else None
    return first, last


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


class OAuth2Provider:
    """Authorization-code exchange shared by the concrete providers.

    Any non-2xx answer, timeout, transport failure or malformed body raises
    ``ProviderExchangeError``; nothing is retried here.
    """

    name = ""
    display_name = ""
    authorization_endpoint = ""
    token_endpoint = ""
    scope = ""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self.transport
        )

    def _authorization_params(
        self, state: str, redirect_uri: str, nonce: Optional[str]
    ) -> Dict[str, str]:
        return {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
        }

    def build_authorization_url(
        self, state: str, redirect_uri: str, nonce: Optional[str] = None
    ) -> str:
        params = self._authorization_params(state, redirect_uri, nonce)
        return f"{self.authorization_endpoint}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> ExternalUserInfo:
        try:
            async with self._client() as client:
                access_token = await self._request_access_token(client, code, redirect_uri)
                identity = await self._fetch_identity(client, access_token)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "provider_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
                url=str(exc.request.url),
            )
            raise ProviderExchangeError(
                f"{self.name} returned HTTP {exc.response.status_code}",
                provider=self.name,
                detail={"status_code": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("provider_transport_error", provider=self.name, error=str(exc))
            raise ProviderExchangeError(
                f"{self.name} request failed: {exc.__class__.__name__}", provider=self.name
            ) from exc
        logger.info("provider_exchange_success", provider=self.name, provider_key=identity.provider_key)
        return identity

    def _json(self, response: httpx.Response, what: str) -> Any:
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as exc:
            logger.error("provider_response_parse_error", provider=self.name, what=what)
            raise ProviderExchangeError(
                f"{self.name} {what} response is not JSON", provider=self.name
            ) from exc

    async def _request_access_token(
        self, client: httpx.AsyncClient, code: str, redirect_uri: str
    ) -> str:
        response = await client.post(
            self.token_endpoint,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            headers={"Accept": "application/json"},
        )
        payload = self._json(response, "token")
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            error = payload.get("error") if isinstance(payload, dict) else None
            logger.error("provider_no_access_token", provider=self.name, error_code=error)
            raise ProviderExchangeError(
                f"{self.name} did not return an access token",
                provider=self.name,
                detail={"error": error} if error else None,
            )
        return access_token

    async def _fetch_identity(
        self, client: httpx.AsyncClient, access_token: str
    ) -> ExternalUserInfo:
        raise NotImplementedError


class GoogleProvider(OAuth2Provider):
    """OpenID Connect provider verified through its userinfo endpoint."""

    name = "google"
    display_name = "Google"
    authorization_endpoint = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint = "https://oauth2.googleapis.com/token"
    userinfo_endpoint = "https://www.googleapis.com/oauth2/v3/userinfo"
    scope = "openid email profile"

    def _authorization_params(
        self, state: str, redirect_uri: str, nonce: Optional[str]
    ) -> Dict[str, str]:
        params = super()._authorization_params(state, redirect_uri, nonce)
        params["access_type"] = "online"
        if nonce:
            params["nonce"] = nonce
        return params

    async def _fetch_identity(
        self, client: httpx.AsyncClient, access_token: str
    ) -> ExternalUserInfo:
        response = await client.get(
            self.userinfo_endpoint,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        claims = self._json(response, "userinfo")
        if not isinstance(claims, dict):
            raise ProviderExchangeError("google userinfo has unexpected shape", provider=self.name)
        subject = claims.get("sub")
        email = claims.get("email")
        if not subject or not email:
            logger.error("provider_identity_incomplete", provider=self.name)
            raise ProviderExchangeError(
                "google userinfo is missing sub or email", provider=self.name
            )
        return ExternalUserInfo(
            provider_key=str(subject),
            email=email,
            email_verified=_as_bool(claims.get("email_verified")),
            first_name=claims.get("given_name"),
            last_name=claims.get("family_name"),
        )


class GitHubProvider(OAuth2Provider):
    """OAuth2 provider with separate profile and email endpoints."""

    name = "github"
    display_name = "GitHub"
    authorization_endpoint = "https://github.com/login/oauth/authorize"
    token_endpoint = "https://github.com/login/oauth/access_token"
    user_endpoint = "https://api.github.com/user"
    emails_endpoint = "https://api.github.com/user/emails"
    scope = "read:user user:email"

    def _api_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": GITHUB_USER_AGENT,
        }

    async def _fetch_identity(
        self, client: httpx.AsyncClient, access_token: str
    ) -> ExternalUserInfo:
        headers = self._api_headers(access_token)
        profile = self._json(await client.get(self.user_endpoint, headers=headers), "user")
        if not isinstance(profile, dict) or profile.get("id") is None:
            logger.error("provider_identity_incomplete", provider=self.name)
            raise ProviderExchangeError("github profile is missing id", provider=self.name)
        emails = self._json(await client.get(self.emails_endpoint, headers=headers), "emails")
        selected = select_email(emails if isinstance(emails, list) else [])
        if not selected:
            logger.warning("provider_no_usable_email", provider=self.name)
            raise NoUsableEmailError(
                "github account has no primary or verified email", provider=self.name
            )
        first_name, last_name = _split_name(profile.get("name"))
        return ExternalUserInfo(
            provider_key=str(profile["id"]),
            email=selected["email"],
            email_verified=selected.get("verified") is True,
            first_name=first_name,
            last_name=last_name,
        )


class ProviderRegistry:
    """Name -> provider lookup, constructed once and injected."""

    def __init__(self, providers: Iterable[ExternalAuthProvider] = ()) -> None:
        self._providers: Dict[str, ExternalAuthProvider] = {}
        for provider in providers:
            if provider.name in self._providers:
                raise ValueError(f"duplicate provider {provider.name}")
            self._providers[provider.name] = provider

    def get(self, name: str) -> Optional[ExternalAuthProvider]:
        return self._providers.get((name or "").lower())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._providers

    def names(self) -> List[str]:
        return list(self._providers)

    def describe(self) -> List[ProviderDescriptor]:
        return [
            ProviderDescriptor(name=p.name, display_name=p.display_name)
            for p in self._providers.values()
        ]


_PROVIDER_CLASSES = {
    "google": GoogleProvider,
    "github": GitHubProvider,
}


def build_provider_registry(
    settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> ProviderRegistry:
    providers = []
    for name in settings.enabled_providers():
        client_id, client_secret = settings.provider_credentials(name)
        providers.append(
            _PROVIDER_CLASSES[name](
                client_id,
                client_secret,
                timeout=settings.provider_timeout_seconds,
                transport=transport,
            )
        )
    return ProviderRegistry(providers)
