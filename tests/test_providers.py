from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from sessionguard.config import Settings
from sessionguard.service.errors import NoUsableEmailError, ProviderExchangeError
from sessionguard.service.providers import (
    GitHubProvider,
    GoogleProvider,
    ProviderRegistry,
    build_provider_registry,
    select_email,
)


def _transport(routes):
    """MockTransport answering from a ``(method, url) -> response`` table."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        key = (request.method, str(request.url).split("?")[0])
        answer = routes.get(key)
        if answer is None:
            return httpx.Response(404, json={"error": "not_found"})
        if isinstance(answer, Exception):
            raise answer
        return answer

    transport = httpx.MockTransport(handler)
    transport.seen = seen
    return transport


def _google(routes):
    transport = _transport(routes)
    return GoogleProvider("g-id", "g-secret", timeout=5, transport=transport), transport


def _github(routes):
    transport = _transport(routes)
    return GitHubProvider("gh-id", "gh-secret", timeout=5, transport=transport), transport


GOOGLE_TOKEN = ("POST", GoogleProvider.token_endpoint)
GOOGLE_USERINFO = ("GET", GoogleProvider.userinfo_endpoint)
GITHUB_TOKEN = ("POST", GitHubProvider.token_endpoint)
GITHUB_USER = ("GET", GitHubProvider.user_endpoint)
GITHUB_EMAILS = ("GET", GitHubProvider.emails_endpoint)


class TestSelectEmail:
    """Email preference order for providers that list several addresses."""

    def test_primary_and_verified_wins(self):
        """An address that is both primary and verified is preferred."""
        chosen = select_email(
            [
                {"email": "verified@example.com", "verified": True, "primary": False},
                {"email": "primary@example.com", "verified": False, "primary": True},
                {"email": "both@example.com", "verified": True, "primary": True},
            ]
        )
        assert chosen["email"] == "both@example.com"

    def test_primary_before_verified(self):
        """Without a primary+verified address the primary one is taken."""
        chosen = select_email(
            [
                {"email": "verified@example.com", "verified": True, "primary": False},
                {"email": "primary@example.com", "verified": False, "primary": True},
            ]
        )
        assert chosen["email"] == "primary@example.com"

    def test_verified_fallback(self):
        """A verified secondary address is used when nothing is primary."""
        chosen = select_email([{"email": "v@example.com", "verified": True, "primary": False}])
        assert chosen["email"] == "v@example.com"

    def test_nothing_usable(self):
        """Unverified secondary addresses and junk entries yield None."""
        assert select_email([{"email": "x@example.com", "verified": False, "primary": False}]) is None
        assert select_email([{"primary": True, "verified": True}, "junk"]) is None
        assert select_email([]) is None


class TestGoogleProvider:
    """Authorization URL and code exchange against Google endpoints."""

    def test_authorization_url(self):
        """The URL carries client, redirect, scope, state and nonce."""
        provider, _ = _google({})
        url = provider.build_authorization_url("st", "https://app.example.com/callback", "n1")
        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        assert url.startswith(GoogleProvider.authorization_endpoint)
        assert params["client_id"] == ["g-id"]
        assert params["state"] == ["st"]
        assert params["nonce"] == ["n1"]
        assert params["response_type"] == ["code"]
        assert params["scope"] == ["openid email profile"]

    async def test_exchange_success(self):
        """A good exchange returns the subject and the email flags."""
        provider, transport = _google(
            {
                GOOGLE_TOKEN: httpx.Response(200, json={"access_token": "at-1"}),
                GOOGLE_USERINFO: httpx.Response(
                    200,
                    json={
                        "sub": "1234",
                        "email": "alice@example.com",
                        "email_verified": True,
                        "given_name": "Alice",
                        "family_name": "Liddell",
                    },
                ),
            }
        )
        info = await provider.exchange_code("code-1", "https://app.example.com/callback")
        assert info.provider_key == "1234"
        assert info.email == "alice@example.com"
        assert info.email_verified is True
        assert info.first_name == "Alice"
        token_request, userinfo_request = transport.seen
        assert b"code=code-1" in token_request.content
        assert userinfo_request.headers["Authorization"] == "Bearer at-1"

    async def test_string_verified_flag(self):
        """Google sometimes sends email_verified as a string."""
        provider, _ = _google(
            {
                GOOGLE_TOKEN: httpx.Response(200, json={"access_token": "at"}),
                GOOGLE_USERINFO: httpx.Response(
                    200, json={"sub": "1", "email": "a@example.com", "email_verified": "false"}
                ),
            }
        )
        info = await provider.exchange_code("c", "https://app.example.com/callback")
        assert info.email_verified is False

    async def test_token_endpoint_error(self):
        """A non-2xx token response is an exchange failure."""
        provider, _ = _google({GOOGLE_TOKEN: httpx.Response(400, json={"error": "invalid_grant"})})
        with pytest.raises(ProviderExchangeError) as excinfo:
            await provider.exchange_code("bad", "https://app.example.com/callback")
        assert excinfo.value.provider == "google"

    async def test_missing_access_token(self):
        """A 200 without an access token is an exchange failure."""
        provider, _ = _google({GOOGLE_TOKEN: httpx.Response(200, json={"error": "nope"})})
        with pytest.raises(ProviderExchangeError):
            await provider.exchange_code("c", "https://app.example.com/callback")

    async def test_timeout(self):
        """Timeouts surface as exchange failures."""
        provider, _ = _google({GOOGLE_TOKEN: httpx.ReadTimeout("slow")})
        with pytest.raises(ProviderExchangeError):
            await provider.exchange_code("c", "https://app.example.com/callback")

    async def test_non_json_body(self):
        """A body that is not JSON is an exchange failure."""
        provider, _ = _google({GOOGLE_TOKEN: httpx.Response(200, text="<html>")})
        with pytest.raises(ProviderExchangeError):
            await provider.exchange_code("c", "https://app.example.com/callback")

    async def test_userinfo_without_email(self):
        """Identity without an email cannot be used."""
        provider, _ = _google(
            {
                GOOGLE_TOKEN: httpx.Response(200, json={"access_token": "at"}),
                GOOGLE_USERINFO: httpx.Response(200, json={"sub": "1"}),
            }
        )
        with pytest.raises(ProviderExchangeError):
            await provider.exchange_code("c", "https://app.example.com/callback")


class TestGitHubProvider:
    """Code exchange with GitHub's separate profile and email endpoints."""

    async def test_exchange_selects_primary_verified_email(self):
        """The emails endpoint decides which address is used."""
        provider, transport = _github(
            {
                GITHUB_TOKEN: httpx.Response(200, json={"access_token": "gh-at"}),
                GITHUB_USER: httpx.Response(200, json={"id": 42, "name": "Alice Liddell"}),
                GITHUB_EMAILS: httpx.Response(
                    200,
                    json=[
                        {"email": "old@example.com", "verified": True, "primary": False},
                        {"email": "alice@example.com", "verified": True, "primary": True},
                    ],
                ),
            }
        )
        info = await provider.exchange_code("c", "https://app.example.com/callback")
        assert info.provider_key == "42"
        assert info.email == "alice@example.com"
        assert info.email_verified is True
        assert (info.first_name, info.last_name) == ("Alice", "Liddell")
        assert all(r.headers["User-Agent"] == "sessionguard" for r in transport.seen[1:])

    async def test_no_usable_email(self):
        """Only unverified secondary addresses is a distinct failure."""
        provider, _ = _github(
            {
                GITHUB_TOKEN: httpx.Response(200, json={"access_token": "gh-at"}),
                GITHUB_USER: httpx.Response(200, json={"id": 42}),
                GITHUB_EMAILS: httpx.Response(
                    200, json=[{"email": "x@example.com", "verified": False, "primary": False}]
                ),
            }
        )
        with pytest.raises(NoUsableEmailError):
            await provider.exchange_code("c", "https://app.example.com/callback")

    async def test_emails_endpoint_failure(self):
        """A failing emails endpoint is an exchange failure."""
        provider, _ = _github(
            {
                GITHUB_TOKEN: httpx.Response(200, json={"access_token": "gh-at"}),
                GITHUB_USER: httpx.Response(200, json={"id": 42}),
                GITHUB_EMAILS: httpx.Response(503),
            }
        )
        with pytest.raises(ProviderExchangeError):
            await provider.exchange_code("c", "https://app.example.com/callback")

    async def test_connect_error(self):
        """Transport failures are exchange failures."""
        provider, _ = _github({GITHUB_TOKEN: httpx.ConnectError("refused")})
        with pytest.raises(ProviderExchangeError):
            await provider.exchange_code("c", "https://app.example.com/callback")


class TestProviderRegistry:
    """Construction from settings and lookup."""

    def test_lookup_is_case_insensitive(self):
        """Provider names are matched without regard to case."""
        registry = ProviderRegistry([GitHubProvider("id", "secret")])
        assert registry.get("GitHub").name == "github"
        assert "GITHUB" in registry
        assert registry.get("google") is None
        assert registry.get("") is None

    def test_duplicates_rejected(self):
        """Two providers may not share a name."""
        with pytest.raises(ValueError):
            ProviderRegistry([GitHubProvider("a", "b"), GitHubProvider("c", "d")])

    def test_build_from_settings(self):
        """Only enabled providers are constructed."""
        settings = Settings(
            jwt_secret="x" * 32,
            test_mode=True,
            oauth_google_enabled=True,
            oauth_google_client_id="g-id",
            oauth_google_client_secret="g-secret",
            external_allowed_redirect_uris=["https://app.example.com/callback"],
        )
        registry = build_provider_registry(settings)
        assert registry.names() == ["google"]
        assert [d.display_name for d in registry.describe()] == ["Google"]
