import pytest

from sessionguard.service.audit import AuditAction, AuditService
from sessionguard.service.session import SessionService

EMAIL = "alice@example.com"


class ExplodingAuditStore:
    def record_audit_event(self, event):
        raise RuntimeError("audit table is gone")


class DictCache:
    """In-process stand-in for the redis principal cache."""

    def __init__(self):
        self.entries = {}
        self.invalidated = []

    async def get_principal(self, user_id):
        return self.entries.get(user_id)

    async def cache_principal(self, user_id, data, ttl_seconds=None):
        self.entries[user_id] = dict(data)

    async def invalidate_principal(self, user_id):
        self.invalidated.append(user_id)
        self.entries.pop(user_id, None)


class BrokenCache:
    async def get_principal(self, user_id):
        raise ConnectionError("redis down")

    async def cache_principal(self, user_id, data, ttl_seconds=None):
        raise ConnectionError("redis down")

    async def invalidate_principal(self, user_id):
        raise ConnectionError("redis down")


class TestAuditService:
    """The audit sink never interrupts the caller."""

    def test_records_event(self, memory_store, clock):
        """Events carry action, user and the injected time."""
        audit = AuditService(memory_store, clock)
        audit.log(AuditAction.LOGOUT, user_id="u1", metadata={"reason": "test"})
        event = memory_store.list_audit_events("u1")[0]
        assert event.action == "logout"
        assert event.created_at == clock.now()
        assert event.metadata == {"reason": "test"}

    def test_store_failure_swallowed(self, clock):
        """A failing store does not raise out of log()."""
        AuditService(ExplodingAuditStore(), clock).log(AuditAction.LOGIN_FAILED, user_id="u1")

    async def test_login_survives_broken_audit(self, memory_store, settings, clock, user, password):
        """Security operations complete when auditing fails."""
        service = SessionService.build(
            memory_store, settings, clock, audit=AuditService(ExplodingAuditStore(), clock)
        )
        tokens = (await service.login(EMAIL, password)).unwrap().tokens
        assert (await service.refresh(tokens.refresh_token)).ok
        assert (await service.logout(refresh_value=tokens.refresh_token)).ok


@pytest.fixture
def cache():
    return DictCache()


@pytest.fixture
def cached_service(memory_store, settings, clock, cache):
    return SessionService.build(memory_store, settings, clock, cache=cache)


class TestPrincipalCache:
    """Best-effort caching of derived principal data."""

    async def test_profile_is_cached(self, cached_service, cache, user):
        """The first lookup fills the cache and later lookups are served from it."""
        profile = await cached_service.get_principal_profile(user.id)
        assert cache.entries[user.id] == profile
        cache.entries[user.id]["first_name"] = "Cached"
        assert (await cached_service.get_principal_profile(user.id))["first_name"] == "Cached"

    async def test_unknown_user(self, cached_service):
        """No profile is cached for a missing user."""
        assert await cached_service.get_principal_profile("missing") is None

    async def test_revocation_evicts(self, cached_service, cache, user, password):
        """Password changes and logouts evict the cached principal."""
        await cached_service.get_principal_profile(user.id)
        await cached_service.change_password(user.id, password, "Another-Secret-42")
        assert user.id not in cache.entries
        assert user.id in cache.invalidated

    async def test_reuse_evicts(self, cached_service, cache, user, password):
        """Refresh-token reuse evicts the cached principal."""
        tokens = (await cached_service.login(EMAIL, password)).unwrap().tokens
        await cached_service.refresh(tokens.refresh_token)
        cache.invalidated.clear()
        await cached_service.refresh(tokens.refresh_token)
        assert cache.invalidated == [user.id]

    async def test_cache_never_decides_validity(self, cached_service, cache, user, password):
        """A stale cache entry cannot keep a revoked access token alive."""
        tokens = (await cached_service.login(EMAIL, password)).unwrap().tokens
        await cached_service.get_principal_profile(user.id)
        await cached_service.notify_authorization_changed(user.id)
        await cached_service.get_principal_profile(user.id)
        assert user.id in cache.entries
        assert not (await cached_service.authenticate(tokens.access_token)).ok

    async def test_broken_cache_is_ignored(self, memory_store, settings, clock, user, password):
        """Cache outages degrade to store reads and never fail the operation."""
        service = SessionService.build(memory_store, settings, clock, cache=BrokenCache())
        assert (await service.get_principal_profile(user.id))["email"] == EMAIL
        tokens = (await service.login(EMAIL, password)).unwrap().tokens
        assert (await service.logout(access_token=tokens.access_token)).ok
        assert (await service.change_password(user.id, password, "Another-Secret-42")).ok
