import threading

import pytest

from sessionguard.service.results import ErrorKind
from sessionguard.service.two_factor import (
    generate_recovery_codes,
    generate_totp,
    hash_recovery_code,
    new_totp_secret,
    verify_totp,
)


def _enable(service, user, clock):
    setup = service.two_factor.setup(user.id).unwrap()
    code = generate_totp(setup.secret, clock.now().timestamp())
    codes = service.two_factor.verify_setup(user.id, code).unwrap()
    return setup.secret, codes


def _wrong_code(secret, clock):
    right = generate_totp(secret, clock.now().timestamp())
    return "000000" if right != "000000" else "111111"


class TestTotp:
    """RFC 6238 code generation."""

    def test_rfc6238_vector(self):
        """SHA-1 reference vector from RFC 6238 appendix B, truncated to 6 digits."""
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"  # b32 of "12345678901234567890"
        assert generate_totp(secret, 59) == "287082"
        assert generate_totp(secret, 1111111109) == "081804"

    def test_window_accepts_adjacent_steps(self):
        """Codes from the previous and next step verify; two steps away do not."""
        secret = new_totp_secret()
        now = 1_700_000_000
        assert verify_totp(secret, generate_totp(secret, now - 30), now)
        assert verify_totp(secret, generate_totp(secret, now + 30), now)
        assert not verify_totp(secret, generate_totp(secret, now - 90), now)

    @pytest.mark.parametrize("bad", ["", "12345", "1234567", "abcdef", None])
    def test_malformed_codes_rejected(self, bad):
        """Non-six-digit input never verifies."""
        assert not verify_totp(new_totp_secret(), bad, 1_700_000_000)

    def test_recovery_code_normalization(self):
        """Case, dashes and spaces do not matter for recovery codes."""
        code = generate_recovery_codes(1)[0]
        assert hash_recovery_code(code) == hash_recovery_code(code.lower().replace("-", " "))
        assert len(set(generate_recovery_codes(10))) == 10


class TestEnrolment:
    """Setup, enable, disable and regenerate."""

    def test_setup_returns_otpauth_uri(self, service, user):
        """The provisioning URI names issuer and account."""
        setup = service.two_factor.setup(user.id).unwrap()
        assert setup.otpauth_uri.startswith("otpauth://totp/SessionGuard:alice@example.com?")
        assert f"secret={setup.secret}" in setup.otpauth_uri
        assert not service.two_factor.is_enabled(user.id)

    def test_verify_setup_enables_and_issues_codes(self, service, user, clock, settings):
        """A valid code enables 2FA and returns the recovery codes once."""
        _, codes = _enable(service, user, clock)
        assert service.two_factor.is_enabled(user.id)
        assert len(codes) == settings.recovery_code_count
        assert service.two_factor.recovery_codes_remaining(user.id) == len(codes)

    def test_verify_setup_wrong_code(self, service, user, clock):
        """A wrong code leaves 2FA disabled."""
        setup = service.two_factor.setup(user.id).unwrap()
        result = service.two_factor.verify_setup(user.id, _wrong_code(setup.secret, clock))
        assert result.error is ErrorKind.INVALID_CODE
        assert not service.two_factor.is_enabled(user.id)

    def test_setup_when_enabled(self, service, user, clock):
        """Enrolling twice is refused."""
        _enable(service, user, clock)
        assert service.two_factor.setup(user.id).error is ErrorKind.TWO_FACTOR_ALREADY_ENABLED

    def test_secret_encrypted_at_rest(self, service, user, clock, memory_store):
        """The stored secret is not the plaintext secret."""
        secret, _ = _enable(service, user, clock)
        assert memory_store.two_factor[user.id].secret != secret
        assert memory_store.get_two_factor_config(user.id).secret == secret

    def test_disable_requires_password(self, service, user, clock, password):
        """Disabling needs the current password."""
        _enable(service, user, clock)
        wrong = service.two_factor.disable(user.id, "nope")
        assert wrong.error is ErrorKind.INVALID_CREDENTIALS
        assert service.two_factor.disable(user.id, password).ok
        assert not service.two_factor.is_enabled(user.id)

    def test_regenerate_replaces_codes(self, service, user, clock, password):
        """Old recovery codes stop working after regeneration."""
        _, old_codes = _enable(service, user, clock)
        new_codes = service.two_factor.regenerate_recovery_codes(user.id, password).unwrap()
        assert set(new_codes).isdisjoint(old_codes)
        challenge = service.two_factor.issue_challenge(user.id, False)
        result = service.two_factor.verify_recovery_code(challenge.token, old_codes[0])
        assert result.error is ErrorKind.INVALID_CODE


class TestChallenges:
    """Login challenge verification."""

    def test_valid_code_verifies_once(self, service, user, clock):
        """A challenge is single use."""
        secret, _ = _enable(service, user, clock)
        challenge = service.two_factor.issue_challenge(user.id, True)
        code = generate_totp(secret, clock.now().timestamp())
        verified = service.two_factor.verify_code(challenge.token, code)
        assert verified.ok
        assert verified.unwrap().remember_me is True
        again = service.two_factor.verify_code(challenge.token, code)
        assert again.error is ErrorKind.CHALLENGE_NOT_FOUND

    def test_unknown_challenge(self, service, user, clock):
        """A token that was never issued is not found."""
        _enable(service, user, clock)
        assert service.two_factor.verify_code("missing", "123456").error is ErrorKind.CHALLENGE_NOT_FOUND
        assert service.two_factor.verify_code("", "123456").error is ErrorKind.CHALLENGE_NOT_FOUND

    def test_expired_challenge(self, service, user, clock):
        """Challenges expire after the configured lifetime."""
        secret, _ = _enable(service, user, clock)
        challenge = service.two_factor.issue_challenge(user.id, False)
        clock.advance(minutes=5)
        code = generate_totp(secret, clock.now().timestamp())
        assert service.two_factor.verify_code(challenge.token, code).error is ErrorKind.CHALLENGE_EXPIRED

    def test_lockout_after_max_attempts(self, service, user, clock, settings):
        """After the maximum failures even the right code is refused."""
        secret, _ = _enable(service, user, clock)
        challenge = service.two_factor.issue_challenge(user.id, False)
        wrong = _wrong_code(secret, clock)
        for _ in range(settings.two_factor_max_failed_attempts):
            assert service.two_factor.verify_code(challenge.token, wrong).error is ErrorKind.INVALID_CODE
        right = generate_totp(secret, clock.now().timestamp())
        assert service.two_factor.verify_code(challenge.token, right).error is ErrorKind.CHALLENGE_LOCKED

    def test_parallel_guesses_cannot_exceed_limit(self, service, user, clock, memory_store, settings):
        """Concurrent wrong guesses never push the counter past the maximum."""
        secret, _ = _enable(service, user, clock)
        challenge = service.two_factor.issue_challenge(user.id, False)
        wrong = _wrong_code(secret, clock)
        workers = 12
        barrier = threading.Barrier(workers)

        def guess():
            barrier.wait()
            service.two_factor.verify_code(challenge.token, wrong)

        threads = [threading.Thread(target=guess) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        stored = next(iter(memory_store.challenges.values()))
        assert stored.failed_attempts == settings.two_factor_max_failed_attempts

    def test_recovery_code_is_single_use(self, service, user, clock):
        """A recovery code completes one login and is then spent."""
        _, codes = _enable(service, user, clock)
        first = service.two_factor.issue_challenge(user.id, False)
        assert service.two_factor.verify_recovery_code(first.token, codes[0]).ok
        second = service.two_factor.issue_challenge(user.id, False)
        result = service.two_factor.verify_recovery_code(second.token, codes[0])
        assert result.error is ErrorKind.INVALID_CODE
        assert service.two_factor.recovery_codes_remaining(user.id) == len(codes) - 1

    def test_refused_recovery_login_keeps_code(self, service, user, clock, memory_store, monkeypatch):
        """A challenge spent by a parallel verify leaves the recovery code in the pool."""
        _, codes = _enable(service, user, clock)
        challenge = service.two_factor.issue_challenge(user.id, False)
        read_config = memory_store.get_two_factor_config

        def config_then_parallel_verify(user_id):
            config = read_config(user_id)
            stored = next(iter(memory_store.challenges.values()))
            memory_store.consume_two_factor_challenge(stored.id, max_attempts=5)
            return config

        monkeypatch.setattr(memory_store, "get_two_factor_config", config_then_parallel_verify)
        result = service.two_factor.verify_recovery_code(challenge.token, codes[0])
        monkeypatch.undo()
        assert result.error is ErrorKind.CHALLENGE_NOT_FOUND
        assert service.two_factor.recovery_codes_remaining(user.id) == len(codes)
        retry = service.two_factor.issue_challenge(user.id, False)
        assert service.two_factor.verify_recovery_code(retry.token, codes[0]).ok

    def test_locked_challenge_keeps_recovery_code(self, service, user, clock, settings):
        """Recovery codes are not spent against a locked challenge."""
        secret, codes = _enable(service, user, clock)
        challenge = service.two_factor.issue_challenge(user.id, False)
        wrong = _wrong_code(secret, clock)
        for _ in range(settings.two_factor_max_failed_attempts):
            service.two_factor.verify_code(challenge.token, wrong)
        result = service.two_factor.verify_recovery_code(challenge.token, codes[0])
        assert result.error is ErrorKind.CHALLENGE_LOCKED
        assert service.two_factor.recovery_codes_remaining(user.id) == len(codes)

    def test_parallel_use_of_one_recovery_code(self, service, user, clock):
        """The same code presented to two challenges at once completes one login."""
        _, codes = _enable(service, user, clock)
        challenges = [service.two_factor.issue_challenge(user.id, False) for _ in range(2)]
        barrier = threading.Barrier(2)
        results = []

        def redeem(token):
            barrier.wait()
            results.append(service.two_factor.verify_recovery_code(token, codes[0]))

        threads = [threading.Thread(target=redeem, args=(c.token,)) for c in challenges]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert sorted(r.ok for r in results) == [False, True]
        assert next(r for r in results if not r.ok).error is ErrorKind.INVALID_CODE
        assert service.two_factor.recovery_codes_remaining(user.id) == len(codes) - 1

    def test_challenge_without_enabled_config(self, service, user):
        """A challenge for a user without 2FA cannot be satisfied."""
        challenge = service.two_factor.issue_challenge(user.id, False)
        result = service.two_factor.verify_code(challenge.token, "123456")
        assert result.error is ErrorKind.TWO_FACTOR_NOT_ENABLED

    def test_failures_audited(self, service, user, clock, memory_store):
        """Wrong codes and lockouts reach the audit trail."""
        secret, _ = _enable(service, user, clock)
        challenge = service.two_factor.issue_challenge(user.id, False)
        wrong = _wrong_code(secret, clock)
        for _ in range(5):
            service.two_factor.verify_code(challenge.token, wrong)
        actions = [e.action for e in memory_store.list_audit_events(user.id)]
        assert actions.count("two_factor_failed") == 5
        assert "two_factor_locked" in actions
        assert "two_factor_challenge_issued" in actions
