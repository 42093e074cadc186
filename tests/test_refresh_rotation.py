import threading
from datetime import timedelta

import pytest

from sessionguard.service.results import ErrorKind
from sessionguard.service.tokens import hash_token
from sessionguard.storage.models import RefreshToken, RotationStatus, new_id


def _token(user_id, now, *, value=None, lifetime=timedelta(days=1), **kwargs):
    value = value or new_id()
    return value, RefreshToken(
        id=new_id(),
        token_hash=hash_token(value),
        user_id=user_id,
        created_at=now,
        expires_at=now + lifetime,
        **kwargs,
    )


def _successor_builder(now):
    def build(current):
        _, successor = _token(
            current.user_id,
            now,
            is_persistent=current.is_persistent,
            family_id=current.family_id,
        )
        return successor

    return build


async def _login(service, *, remember_me=False, password="CorrectHorse-Battery-9"):
    result = await service.login("alice@example.com", password, remember_me=remember_me)
    assert result.ok, result.message
    return result.unwrap().tokens


class TestStoreRotation:
    """Check order and atomicity of MemoryStore.rotate_refresh_token."""

    def test_unknown_hash_not_found(self, memory_store, clock):
        """A value that was never issued is reported as not found."""
        outcome = memory_store.rotate_refresh_token(
            hash_token("nope"), now=clock.now(), build_successor=_successor_builder(clock.now())
        )
        assert outcome.status is RotationStatus.NOT_FOUND

    def test_rotation_marks_used_and_inserts_successor(self, memory_store, user, clock):
        """Redeeming a token marks it used and stores exactly one successor."""
        value, record = _token(user.id, clock.now(), family_id="fam")
        memory_store.create_refresh_token(record)
        outcome = memory_store.rotate_refresh_token(
            hash_token(value), now=clock.now(), build_successor=_successor_builder(clock.now())
        )
        assert outcome.status is RotationStatus.ROTATED
        assert outcome.token.is_used
        assert outcome.successor.family_id == "fam"
        tokens = {t.id: t for t in memory_store.list_refresh_tokens(user.id)}
        assert tokens[record.id].is_used
        assert not tokens[outcome.successor.id].is_used
        assert len(tokens) == 2

    def test_expiry_takes_precedence_over_reuse(self, memory_store, user, clock):
        """A used and expired token is reported as expired and revokes nothing."""
        value, record = _token(user.id, clock.now(), is_used=True, lifetime=timedelta(minutes=5))
        memory_store.create_refresh_token(record)
        _, sibling = _token(user.id, clock.now())
        memory_store.create_refresh_token(sibling)
        clock.advance(minutes=5)
        outcome = memory_store.rotate_refresh_token(
            hash_token(value), now=clock.now(), build_successor=_successor_builder(clock.now())
        )
        assert outcome.status is RotationStatus.EXPIRED
        stored = {t.id: t for t in memory_store.list_refresh_tokens(user.id)}
        assert not stored[sibling.id].is_invalidated

    def test_invalidated_takes_precedence_over_reuse(self, memory_store, user, clock):
        """A revoked token is invalidated even if it was also used."""
        value, record = _token(user.id, clock.now(), is_used=True, is_invalidated=True)
        memory_store.create_refresh_token(record)
        outcome = memory_store.rotate_refresh_token(
            hash_token(value), now=clock.now(), build_successor=_successor_builder(clock.now())
        )
        assert outcome.status is RotationStatus.INVALIDATED

    def test_reuse_revokes_every_active_token_of_the_user(self, memory_store, user, clock):
        """Presenting a used token invalidates all of the owner's live tokens."""
        value, used = _token(user.id, clock.now(), is_used=True, family_id="a")
        memory_store.create_refresh_token(used)
        _, other_family = _token(user.id, clock.now(), family_id="b")
        memory_store.create_refresh_token(other_family)
        stranger = memory_store.create_user("bob@example.com")
        _, bystander = _token(stranger.id, clock.now())
        memory_store.create_refresh_token(bystander)

        outcome = memory_store.rotate_refresh_token(
            hash_token(value), now=clock.now(), build_successor=_successor_builder(clock.now())
        )
        assert outcome.status is RotationStatus.REUSED
        assert outcome.revoked_count == 2
        assert all(t.is_invalidated for t in memory_store.list_refresh_tokens(user.id))
        assert not memory_store.list_refresh_tokens(stranger.id)[0].is_invalidated

    def test_family_invalidation_is_scoped(self, memory_store, user, clock):
        """invalidate_refresh_family leaves other families alone."""
        _, first = _token(user.id, clock.now(), family_id="a")
        _, second = _token(user.id, clock.now(), family_id="b")
        memory_store.create_refresh_token(first)
        memory_store.create_refresh_token(second)
        assert memory_store.invalidate_refresh_family("a", now=clock.now()) == 1
        stored = {t.id: t for t in memory_store.list_refresh_tokens(user.id)}
        assert stored[first.id].is_invalidated
        assert not stored[second.id].is_invalidated

    def test_concurrent_redeemers_exactly_one_wins(self, memory_store, user, clock):
        """Of N threads presenting the same value, one rotates and the rest see reuse."""
        value, record = _token(user.id, clock.now())
        memory_store.create_refresh_token(record)
        workers = 8
        barrier = threading.Barrier(workers)
        statuses = []
        statuses_lock = threading.Lock()

        def redeem():
            barrier.wait()
            outcome = memory_store.rotate_refresh_token(
                hash_token(value),
                now=clock.now(),
                build_successor=_successor_builder(clock.now()),
            )
            with statuses_lock:
                statuses.append(outcome.status)

        threads = [threading.Thread(target=redeem) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert statuses.count(RotationStatus.ROTATED) == 1
        assert statuses.count(RotationStatus.REUSED) + statuses.count(
            RotationStatus.INVALIDATED
        ) == workers - 1
        assert all(t.is_invalidated for t in memory_store.list_refresh_tokens(user.id))

    def test_failed_successor_leaves_token_unused(self, memory_store, user, clock):
        """If the successor cannot be built nothing is marked used."""
        value, record = _token(user.id, clock.now())
        memory_store.create_refresh_token(record)

        def explode(current):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            memory_store.rotate_refresh_token(
                hash_token(value), now=clock.now(), build_successor=explode
            )
        stored = memory_store.get_refresh_token_by_hash(hash_token(value))
        assert not stored.is_used
        assert len(memory_store.list_refresh_tokens(user.id)) == 1


class TestServiceRefresh:
    """SessionService.refresh over the memory store."""

    async def test_missing_value(self, service):
        """An absent refresh value is TokenMissing."""
        result = await service.refresh(None)
        assert result.error is ErrorKind.TOKEN_MISSING
        assert (await service.refresh("")).error is ErrorKind.TOKEN_MISSING

    async def test_unknown_value(self, service, user):
        """A value that was never issued is TokenNotFound."""
        result = await service.refresh("never-issued")
        assert result.error is ErrorKind.TOKEN_NOT_FOUND

    async def test_rotation_returns_new_pair(self, service, user, settings):
        """A refresh yields a new refresh value and a valid access token."""
        tokens = await _login(service)
        result = await service.refresh(tokens.refresh_token)
        assert result.ok
        pair = result.unwrap()
        assert pair.refresh_token != tokens.refresh_token
        assert service.codec.decode_access_token(pair.access_token)["sub"] == user.id

    async def test_remember_me_lifetime_carried_forward(self, service, user, clock):
        """Persistent tokens rotate into persistent tokens."""
        tokens = await _login(service, remember_me=True)
        assert tokens.refresh_token_expires_at == clock.now() + timedelta(days=7)
        clock.advance(days=1)
        pair = (await service.refresh(tokens.refresh_token)).unwrap()
        assert pair.refresh_token_expires_at == clock.now() + timedelta(days=7)

    async def test_session_lifetime_carried_forward(self, service, user, clock):
        """Non-persistent tokens keep the shorter session lifetime."""
        tokens = await _login(service)
        assert tokens.refresh_token_expires_at == clock.now() + timedelta(minutes=1440)
        clock.advance(hours=1)
        pair = (await service.refresh(tokens.refresh_token)).unwrap()
        assert pair.refresh_token_expires_at == clock.now() + timedelta(minutes=1440)

    async def test_expired_refresh(self, service, user, clock):
        """A token past its lifetime is TokenExpired."""
        tokens = await _login(service)
        clock.advance(minutes=1440)
        result = await service.refresh(tokens.refresh_token)
        assert result.error is ErrorKind.TOKEN_EXPIRED

    async def test_reuse_message_matches_expiry(self, service, user, clock):
        """Reuse is indistinguishable from expiry in the returned message."""
        tokens = await _login(service)
        await service.refresh(tokens.refresh_token)
        reused = await service.refresh(tokens.refresh_token)
        assert reused.error is ErrorKind.TOKEN_REUSED

        other = await _login(service)
        clock.advance(minutes=1440)
        expired = await service.refresh(other.refresh_token)
        assert reused.message == expired.message

    async def test_reuse_revokes_successor_and_rotates_stamp(self, service, user, memory_store):
        """After reuse the legitimate successor no longer refreshes and access tokens die."""
        tokens = await _login(service)
        successor = (await service.refresh(tokens.refresh_token)).unwrap()
        assert (await service.authenticate(successor.access_token)).ok

        assert (await service.refresh(tokens.refresh_token)).error is ErrorKind.TOKEN_REUSED
        assert (await service.refresh(successor.refresh_token)).error is ErrorKind.TOKEN_INVALIDATED
        assert (await service.authenticate(successor.access_token)).error is ErrorKind.UNAUTHORIZED
        actions = [e.action for e in memory_store.list_audit_events(user.id)]
        assert "refresh_token_reuse_detected" in actions
