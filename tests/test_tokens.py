"""Unit tests for the token service.

Covers:
- Access token signing and verification
- Refresh rotation and single-use semantics
- Replay handling and family revocation
- Concurrent refresh of the same token
- Password reset credentials and expiry sweeping
"""

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from prismflow.config import Settings
from prismflow.service.errors import AuthenticationError, InvalidCredentialError
from prismflow.service.tokens import TokenService
from prismflow.storage.common import hash_token
from prismflow.storage.memory import MemoryStore

SECRET = "unit-test-secret-for-token-service-0123456789"


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET, refresh_reuse_grace_seconds=5)


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key=SECRET)


@pytest.fixture
def tokens(store, settings):
    return TokenService(store, settings)


@pytest.fixture
def account(store):
    return store.create_account("alice@example.com", "Alice", "x")


def _shift_clock(service: TokenService, delta: timedelta) -> None:
    frozen = datetime.now(timezone.utc) + delta
    service._now = lambda: frozen


class TestAccessTokens:
    def test_issued_token_verifies(self, tokens, account):
        token, expires_at = tokens.issue_access_token(account)
        claims = tokens.verify_access_token(token)

        assert claims.account_id == account.id
        assert claims.expires_at <= expires_at
        assert claims.jti

    def test_expired_token_rejected(self, tokens, account):
        token, _ = tokens.issue_access_token(account)
        _shift_clock(tokens, timedelta(minutes=16))

        with pytest.raises(AuthenticationError) as exc:
            tokens.verify_access_token(token)
        assert exc.value.error_code == "unauthorized"

    def test_tampered_signature_rejected(self, tokens, account):
        token, _ = tokens.issue_access_token(account)
        header, payload, signature = token.split(".")
        forged = f"{header}.{payload}.{signature[::-1]}"

        with pytest.raises(AuthenticationError):
            tokens.verify_access_token(forged)

    def test_token_from_other_secret_rejected(self, store, account):
        other = TokenService(store, Settings(jwt_secret="another-secret-that-is-long-enough-123456"))
        token, _ = other.issue_access_token(account)

        service = TokenService(store, Settings(jwt_secret=SECRET))
        with pytest.raises(AuthenticationError):
            service.verify_access_token(token)

    def test_wrong_audience_rejected(self, store, account):
        issuer = TokenService(store, Settings(jwt_secret=SECRET, jwt_audience="someone-else"))
        token, _ = issuer.issue_access_token(account)

        with pytest.raises(AuthenticationError):
            TokenService(store, Settings(jwt_secret=SECRET)).verify_access_token(token)

    def test_none_algorithm_rejected(self, tokens, account):
        token, _ = tokens.issue_access_token(account)
        _, payload, _ = token.split(".")
        header = tokens._encode_segment(b'{"alg":"none","typ":"JWT"}')

        with pytest.raises(AuthenticationError):
            tokens.verify_access_token(f"{header}.{payload}.")

    @pytest.mark.parametrize("value", [None, "", "not-a-jwt", "a.b.c", "ü.ü.ü"])
    def test_garbage_rejected(self, tokens, value):
        with pytest.raises(AuthenticationError):
            tokens.verify_access_token(value)


class TestRefreshRotation:
    @pytest.mark.asyncio
    async def test_refresh_rotates_and_revokes_old(self, tokens, store, account):
        pair = await tokens.issue_session(account)
        refreshed_account, new_pair = await tokens.refresh(pair.refresh_token)

        assert refreshed_account.id == account.id
        assert new_pair.refresh_token != pair.refresh_token
        old = store.get_credential_by_hash(hash_token(pair.refresh_token))
        new = store.get_credential_by_hash(hash_token(new_pair.refresh_token))
        assert old.revoked and old.revoked_at is not None
        assert not new.revoked
        assert new.family_id == old.family_id

    @pytest.mark.asyncio
    async def test_refresh_token_single_use(self, tokens, account):
        pair = await tokens.issue_session(account)
        await tokens.refresh(pair.refresh_token)

        with pytest.raises(InvalidCredentialError):
            await tokens.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_unknown_refresh_token(self, tokens):
        with pytest.raises(InvalidCredentialError) as exc:
            await tokens.refresh("does-not-exist")
        assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_expired_refresh_token(self, tokens, account):
        pair = await tokens.issue_session(account)
        _shift_clock(tokens, timedelta(days=8))

        with pytest.raises(InvalidCredentialError):
            await tokens.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_refresh_for_inactive_account(self, tokens, store, account):
        pair = await tokens.issue_session(account)
        store.set_account_active(account.id, False)

        with pytest.raises(InvalidCredentialError):
            await tokens.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_reset_token_cannot_refresh(self, tokens, account):
        reset = await tokens.issue_reset_token(account)

        with pytest.raises(InvalidCredentialError):
            await tokens.refresh(reset)


class TestReplay:
    @pytest.mark.asyncio
    async def test_replay_inside_grace_keeps_family(self, tokens, account):
        pair = await tokens.issue_session(account)
        _, successor = await tokens.refresh(pair.refresh_token)

        with pytest.raises(InvalidCredentialError):
            await tokens.refresh(pair.refresh_token)

        # The legitimate successor is still usable
        _, third = await tokens.refresh(successor.refresh_token)
        assert third.refresh_token

    @pytest.mark.asyncio
    async def test_replay_after_grace_revokes_family(self, tokens, store, account):
        pair = await tokens.issue_session(account)
        _, successor = await tokens.refresh(pair.refresh_token)
        _shift_clock(tokens, timedelta(seconds=30))

        with pytest.raises(InvalidCredentialError):
            await tokens.refresh(pair.refresh_token)

        assert store.get_credential_by_hash(hash_token(successor.refresh_token)).revoked
        with pytest.raises(InvalidCredentialError):
            await tokens.refresh(successor.refresh_token)

    @pytest.mark.asyncio
    async def test_family_revocation_spares_other_sessions(self, tokens, account):
        stolen = await tokens.issue_session(account)
        other = await tokens.issue_session(account)
        await tokens.refresh(stolen.refresh_token)
        _shift_clock(tokens, timedelta(seconds=30))

        with pytest.raises(InvalidCredentialError):
            await tokens.refresh(stolen.refresh_token)

        _, pair = await tokens.refresh(other.refresh_token)
        assert pair.access_token


class TestConcurrentRefresh:
    def test_exactly_one_concurrent_refresh_wins(self, tokens, account):
        pair = asyncio.run(tokens.issue_session(account))
        workers = 8
        barrier = threading.Barrier(workers)
        successes = []
        failures = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                result = asyncio.run(tokens.refresh(pair.refresh_token))
            except InvalidCredentialError as exc:
                with lock:
                    failures.append(exc)
            else:
                with lock:
                    successes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(successes) == 1
        assert len(failures) == workers - 1
        # Losing the race inside the grace window must not burn the winner's token
        _, winner = successes[0]
        _, follow_up = asyncio.run(tokens.refresh(winner.refresh_token))
        assert follow_up.refresh_token


class TestRevocation:
    @pytest.mark.asyncio
    async def test_revoke_single(self, tokens, account):
        pair = await tokens.issue_session(account)

        assert await tokens.revoke(pair.refresh_token) is True
        assert await tokens.revoke(pair.refresh_token) is False
        with pytest.raises(InvalidCredentialError):
            await tokens.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_revoke_ignores_foreign_account(self, tokens, store, account):
        other = store.create_account("bob@example.com", "Bob", "x")
        pair = await tokens.issue_session(account)

        assert await tokens.revoke(pair.refresh_token, account_id=other.id) is False
        await tokens.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_revoke_all(self, tokens, account):
        first = await tokens.issue_session(account)
        second = await tokens.issue_session(account)

        assert await tokens.revoke_all(account.id) == 2
        for pair in (first, second):
            with pytest.raises(InvalidCredentialError):
                await tokens.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_revoke_unknown_is_noop(self, tokens):
        assert await tokens.revoke("never-issued") is False


class TestResetTokens:
    @pytest.mark.asyncio
    async def test_reset_token_single_use(self, tokens, account):
        token = await tokens.issue_reset_token(account)

        assert await tokens.consume_reset_token(token) == account.id
        with pytest.raises(InvalidCredentialError):
            await tokens.consume_reset_token(token)

    @pytest.mark.asyncio
    async def test_new_reset_token_supersedes_old(self, tokens, account):
        first = await tokens.issue_reset_token(account)
        second = await tokens.issue_reset_token(account)

        with pytest.raises(InvalidCredentialError):
            await tokens.consume_reset_token(first)
        assert await tokens.consume_reset_token(second) == account.id

    @pytest.mark.asyncio
    async def test_reset_token_expires(self, tokens, account):
        token = await tokens.issue_reset_token(account)
        _shift_clock(tokens, timedelta(minutes=16))

        with pytest.raises(InvalidCredentialError):
            await tokens.consume_reset_token(token)

    @pytest.mark.asyncio
    async def test_refresh_token_cannot_reset(self, tokens, account):
        pair = await tokens.issue_session(account)

        with pytest.raises(InvalidCredentialError):
            await tokens.consume_reset_token(pair.refresh_token)


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired(self, tokens, store, account):
        live = await tokens.issue_session(account)
        await tokens.issue_reset_token(account)
        _shift_clock(tokens, timedelta(minutes=30))

        assert await tokens.sweep_expired() == 1
        assert store.get_credential_by_hash(hash_token(live.refresh_token)) is not None
