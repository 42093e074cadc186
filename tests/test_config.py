import pydantic
import pytest

from sessionguard.config import Settings, get_settings, reset_settings_cache
from sessionguard.service.errors import ConfigurationError

SECRET = "x" * 32


class TestSettingsValidation:
    """Startup validation of the settings model."""

    def test_defaults(self):
        """Default lifetimes and cookie policy."""
        settings = Settings(jwt_secret=SECRET, test_mode=True)
        assert settings.access_token_lifetime_minutes == 10
        assert settings.refresh_persistent_lifetime_days == 7
        assert settings.refresh_session_lifetime_minutes == 24 * 60
        assert settings.two_factor_max_failed_attempts == 5
        assert settings.cookie_secure is True
        assert settings.cookie_samesite == "lax"

    def test_missing_secret_rejected(self):
        """JWT_SECRET has no default."""
        with pytest.raises(pydantic.ValidationError):
            Settings(test_mode=True)

    def test_short_secret_rejected(self):
        """Secrets shorter than 32 bytes are refused."""
        with pytest.raises(pydantic.ValidationError):
            Settings(jwt_secret="too-short", test_mode=True)

    def test_stamp_claim_cannot_shadow_reserved_claim(self):
        """The security stamp claim may not reuse a claim the codec writes."""
        with pytest.raises(pydantic.ValidationError):
            Settings(jwt_secret=SECRET, test_mode=True, security_stamp_claim="sub")

    def test_session_lifetime_cannot_exceed_persistent(self):
        """A session refresh token may not outlive a remember-me one."""
        with pytest.raises(pydantic.ValidationError):
            Settings(
                jwt_secret=SECRET,
                test_mode=True,
                refresh_persistent_lifetime_days=1,
                refresh_session_lifetime_minutes=2 * 24 * 60,
            )

    def test_enabled_provider_requires_credentials(self):
        """Enabling a provider without a client secret fails."""
        with pytest.raises(pydantic.ValidationError):
            Settings(
                jwt_secret=SECRET,
                test_mode=True,
                oauth_google_enabled=True,
                oauth_google_client_id="client",
                external_allowed_redirect_uris=["https://app.example.com/cb"],
            )

    def test_enabled_provider_requires_redirect_uris(self):
        """At least one allowed redirect is needed once a provider is on."""
        with pytest.raises(pydantic.ValidationError):
            Settings(
                jwt_secret=SECRET,
                test_mode=True,
                oauth_github_enabled=True,
                oauth_github_client_id="client",
                oauth_github_client_secret="secret",
            )

    def test_insecure_redirect_rejected(self):
        """Plain http redirect URIs are only allowed for localhost."""
        with pytest.raises(pydantic.ValidationError):
            Settings(
                jwt_secret=SECRET,
                test_mode=True,
                external_allowed_redirect_uris=["http://evil.example.com/cb"],
            )
        settings = Settings(
            jwt_secret=SECRET,
            test_mode=True,
            external_allowed_redirect_uris="http://localhost:3000/cb, https://app.example.com/cb",
        )
        assert settings.external_allowed_redirect_uris == [
            "http://localhost:3000/cb",
            "https://app.example.com/cb",
        ]

    def test_database_url_required_outside_memory_mode(self):
        """Production settings must name a database."""
        with pytest.raises(pydantic.ValidationError):
            Settings(jwt_secret=SECRET)
        assert Settings(jwt_secret=SECRET, database_url="postgresql://db/auth").database_url

    def test_samesite_none_rejected(self):
        """SameSite=None would send auth cookies cross-site."""
        with pytest.raises(pydantic.ValidationError):
            Settings(jwt_secret=SECRET, test_mode=True, cookie_samesite="none")

    def test_enabled_providers_and_credentials(self):
        """Only enabled providers are reported."""
        settings = Settings(
            jwt_secret=SECRET,
            test_mode=True,
            oauth_github_enabled=True,
            oauth_github_client_id="gh-id",
            oauth_github_client_secret="gh-secret",
            external_allowed_redirect_uris=["https://app.example.com/cb"],
        )
        assert settings.enabled_providers() == ["github"]
        assert settings.provider_credentials("github") == ("gh-id", "gh-secret")
        with pytest.raises(ConfigurationError):
            settings.provider_credentials("google")


class TestSettingsFromEnv:
    """Environment loading."""

    def test_from_env_reads_environment(self, monkeypatch):
        """Environment variables map onto fields."""
        monkeypatch.setenv("ACCESS_TOKEN_LIFETIME_MINUTES", "15")
        monkeypatch.setenv("COOKIE_SAMESITE", "strict")
        settings = Settings.from_env()
        assert settings.access_token_lifetime_minutes == 15
        assert settings.cookie_samesite == "strict"

    def test_from_env_wraps_validation_errors(self, monkeypatch):
        """Invalid environment surfaces as ConfigurationError."""
        monkeypatch.setenv("ACCESS_TOKEN_LIFETIME_MINUTES", "0")
        with pytest.raises(ConfigurationError):
            Settings.from_env()

    def test_get_settings_is_cached(self, monkeypatch):
        """get_settings builds once until the cache is reset."""
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("LOCKOUT_MINUTES", "30")
        assert get_settings().lockout_minutes == first.lockout_minutes
        reset_settings_cache()
        assert get_settings().lockout_minutes == 30
        reset_settings_cache()
