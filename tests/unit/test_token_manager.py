"""Unit tests for TokenManager issuance, verification and revocation."""

import asyncio
import time
from unittest.mock import AsyncMock, patch

import jwt
import pytest

from schooldesk.core.revocation_store import RevocationStoreError
from schooldesk.services.errors import TokenGenerationError
from schooldesk.services.tokens import (
    TokenManager,
    TokenType,
    VerificationFailure,
    blacklist_key,
    subject_index_key,
    whitelist_key,
)

pytestmark = pytest.mark.asyncio

SUBJECT = "7f1d9a52-3c1e-4c1b-9a57-1f0c3b0f2a11"


class TestIssue:
    """Tests for token issuance."""

    async def test_issue_pair_access_token_verifies(self, token_manager):
        pair = await token_manager.issue_pair(
            SUBJECT, email="a@school.example.com", role="teacher", permissions=["students:read"]
        )

        result = await token_manager.verify(pair.access_token)

        assert result.valid is True
        assert result.failure is None
        assert result.payload.subject == SUBJECT
        assert result.payload.type is TokenType.ACCESS
        assert result.payload.email == "a@school.example.com"
        assert result.payload.role == "teacher"
        assert result.payload.permissions == ("students:read",)
        assert pair.token_type == "bearer"
        assert pair.expires_in == 15 * 60

    async def test_refresh_token_carries_only_subject(self, token_manager):
        pair = await token_manager.issue_pair(SUBJECT, email="a@school.example.com", role="teacher")

        claims = token_manager.decode(pair.refresh_token)

        assert claims["sub"] == SUBJECT
        assert claims["type"] == "refresh"
        assert "email" not in claims
        assert "role" not in claims
        assert "permissions" not in claims

    async def test_access_token_is_not_whitelisted(self, token_manager, redis_client):
        token = await token_manager.issue(SUBJECT, TokenType.ACCESS)
        jti = token_manager.decode(token)["jti"]

        assert await redis_client.exists(f"test:{whitelist_key(jti, SUBJECT)}") == 0
        assert await redis_client.exists(f"test:{subject_index_key(SUBJECT)}") == 0

    async def test_refresh_token_is_whitelisted_with_lifetime_ttl(self, token_manager, redis_client):
        token = await token_manager.issue(SUBJECT, TokenType.REFRESH)
        jti = token_manager.decode(token)["jti"]

        key = f"test:{whitelist_key(jti, SUBJECT)}"
        assert await redis_client.get(key) == "1"
        ttl = await redis_client.ttl(key)
        assert 7 * 86400 - 5 <= ttl <= 7 * 86400
        assert jti in await redis_client.smembers(f"test:{subject_index_key(SUBJECT)}")

    async def test_decode_recovers_embedded_claims(self, token_manager):
        claims = {"email": "ünïcode@school.example.com", "role": "teacher", "school": "Lycée 12"}

        token = await token_manager.issue(SUBJECT, TokenType.ACCESS, claims)
        decoded = token_manager.decode(token)

        for key, value in claims.items():
            assert decoded[key] == value
        assert decoded["sub"] == SUBJECT
        assert decoded["type"] == "access"
        assert decoded["exp"] - decoded["iat"] == 15 * 60

    async def test_reserved_claims_cannot_be_overridden(self, token_manager):
        token = await token_manager.issue(
            SUBJECT, TokenType.ACCESS, {"type": "refresh", "sub": "someone-else", "jti": "x"}
        )
        decoded = token_manager.decode(token)

        assert decoded["type"] == "access"
        assert decoded["sub"] == SUBJECT
        assert decoded["jti"] != "x"

    async def test_each_issue_gets_a_fresh_jti(self, token_manager):
        first = token_manager.decode(await token_manager.issue(SUBJECT, TokenType.ACCESS))
        second = token_manager.decode(await token_manager.issue(SUBJECT, TokenType.ACCESS))

        assert first["jti"] != second["jti"]

    async def test_expires_in_accepts_duration_string(self, token_manager):
        token = await token_manager.issue(SUBJECT, TokenType.ACCESS, expires_in="2h")
        decoded = token_manager.decode(token)

        assert decoded["exp"] - decoded["iat"] == 7200

    async def test_invalid_expires_in_is_rejected(self, token_manager):
        with pytest.raises(ValueError):
            await token_manager.issue(SUBJECT, TokenType.ACCESS, expires_in="soon")

    async def test_whitelist_write_failure_raises(self, token_manager):
        with patch.object(
            token_manager.store, "set", AsyncMock(side_effect=RevocationStoreError("down"))
        ):
            with pytest.raises(TokenGenerationError):
                await token_manager.issue(SUBJECT, TokenType.REFRESH)

    async def test_access_issue_does_not_touch_store(self, token_manager):
        with patch.object(
            token_manager.store, "set", AsyncMock(side_effect=RevocationStoreError("down"))
        ):
            token = await token_manager.issue(SUBJECT, TokenType.ACCESS)

        assert token_manager.decode(token)["type"] == "access"

    async def test_signing_failure_raises(self, store):
        manager = TokenManager(store, secret_key="k" * 32, algorithm="XX999")

        with pytest.raises(TokenGenerationError):
            await manager.issue(SUBJECT, TokenType.ACCESS)


class TestSecureTokens:
    """Tests for password-reset and email-verification tokens."""

    async def test_generate_reset_token(self, token_manager):
        token = await token_manager.generate_secure_token(
            SUBJECT, "a@school.example.com", TokenType.RESET_PASSWORD
        )

        result = await token_manager.verify(token)

        assert result.valid is True
        assert result.payload.type is TokenType.RESET_PASSWORD
        assert result.payload.email == "a@school.example.com"
        assert result.payload.expires_at - result.payload.issued_at == 3600

    async def test_generate_secure_token_rejects_other_types(self, token_manager):
        with pytest.raises(ValueError):
            await token_manager.generate_secure_token(SUBJECT, "a@school.example.com", TokenType.ACCESS)
        with pytest.raises(ValueError):
            await token_manager.generate_secure_token(SUBJECT, "a@school.example.com", TokenType.REFRESH)

    async def test_reset_token_cannot_be_reused(self, token_manager):
        token = await token_manager.generate_secure_token(
            SUBJECT, "a@school.example.com", TokenType.RESET_PASSWORD, expires_in="30m"
        )

        first = await token_manager.consume(token, TokenType.RESET_PASSWORD)
        second = await token_manager.consume(token, TokenType.RESET_PASSWORD)

        assert first is not None
        assert first.subject == SUBJECT
        assert second is None
        assert (await token_manager.verify(token)).valid is False

    async def test_consume_rejects_wrong_type(self, token_manager):
        token = await token_manager.generate_secure_token(
            SUBJECT, "a@school.example.com", TokenType.EMAIL_VERIFICATION
        )

        assert await token_manager.consume(token, TokenType.RESET_PASSWORD) is None
        # Still usable for its own purpose
        assert await token_manager.consume(token, TokenType.EMAIL_VERIFICATION) is not None

    async def test_consume_refuses_access_type(self, token_manager):
        token = await token_manager.issue(SUBJECT, TokenType.ACCESS)

        with pytest.raises(ValueError):
            await token_manager.consume(token, TokenType.ACCESS)


class TestVerify:
    """Tests for verification failure reasons."""

    async def test_garbage_is_invalid(self, token_manager):
        result = await token_manager.verify("not-a-jwt")

        assert result.valid is False
        assert result.failure is VerificationFailure.INVALID
        assert result.error == "Invalid token"

    async def test_wrong_secret_is_invalid(self, token_manager, store):
        other = TokenManager(store, secret_key="another-secret-" + "1" * 32)
        token = await other.issue(SUBJECT, TokenType.ACCESS)

        result = await token_manager.verify(token)

        assert result.failure is VerificationFailure.INVALID

    async def test_missing_jti_is_invalid(self, token_manager, test_settings):
        now = int(time.time())
        token = jwt.encode(
            {"sub": SUBJECT, "type": "access", "iat": now, "exp": now + 60},
            test_settings.jwt_secret_key,
            algorithm="HS256",
        )

        result = await token_manager.verify(token)

        assert result.failure is VerificationFailure.INVALID

    async def test_unknown_type_is_invalid(self, token_manager, test_settings):
        now = int(time.time())
        token = jwt.encode(
            {"sub": SUBJECT, "type": "api_key", "jti": "j1", "iat": now, "exp": now + 60},
            test_settings.jwt_secret_key,
            algorithm="HS256",
        )

        result = await token_manager.verify(token)

        assert result.failure is VerificationFailure.INVALID

    async def test_one_second_token_expires(self, token_manager):
        token = await token_manager.issue(SUBJECT, TokenType.ACCESS, expires_in="1s")

        assert (await token_manager.verify(token)).valid is True

        await asyncio.sleep(2.1)
        result = await token_manager.verify(token)

        assert result.valid is False
        assert result.failure is VerificationFailure.EXPIRED
        assert result.error == "Token has expired"

    async def test_refresh_not_in_whitelist_is_not_valid(self, token_manager, redis_client):
        token = await token_manager.issue(SUBJECT, TokenType.REFRESH)
        jti = token_manager.decode(token)["jti"]
        await redis_client.delete(f"test:{whitelist_key(jti, SUBJECT)}")

        result = await token_manager.verify(token)

        assert result.failure is VerificationFailure.NOT_WHITELISTED
        assert result.error == "Token is not valid"

    async def test_whitelist_lookup_uses_exact_key(self, token_manager, redis_client):
        token = await token_manager.issue(SUBJECT, TokenType.REFRESH)
        jti = token_manager.decode(token)["jti"]
        await redis_client.delete(f"test:{whitelist_key(jti, SUBJECT)}")
        # An entry for the same jti under another subject must not satisfy the check
        await redis_client.set(f"test:{whitelist_key(jti, 'other-user')}", "1", ex=60)

        result = await token_manager.verify(token)

        assert result.failure is VerificationFailure.NOT_WHITELISTED

    async def test_blacklisted_is_revoked(self, token_manager, redis_client):
        token = await token_manager.issue(SUBJECT, TokenType.ACCESS)
        jti = token_manager.decode(token)["jti"]
        await redis_client.set(f"test:{blacklist_key(jti)}", "1", ex=60)

        result = await token_manager.verify(token)

        assert result.failure is VerificationFailure.REVOKED
        assert result.error == "Token has been revoked"

    async def test_store_failure_fails_closed(self, token_manager):
        token = await token_manager.issue(SUBJECT, TokenType.ACCESS)

        with patch.object(
            token_manager.store, "exists", AsyncMock(side_effect=RevocationStoreError("timeout"))
        ):
            result = await token_manager.verify(token)

        assert result.valid is False
        assert result.failure is VerificationFailure.UNAVAILABLE
        assert result.error == "Failed to verify token"

    async def test_store_timeout_fails_closed(self, token_manager, redis_client):
        token = await token_manager.issue(SUBJECT, TokenType.ACCESS)
        token_manager.store.operation_timeout = 0.05

        async def _slow_exists(*keys):
            await asyncio.sleep(1)
            return 0

        with patch.object(redis_client, "exists", _slow_exists):
            result = await token_manager.verify(token)

        assert result.failure is VerificationFailure.UNAVAILABLE


class TestRotation:
    """Tests for refresh token rotation."""

    async def test_rotate_returns_new_access_token(self, token_manager):
        pair = await token_manager.issue_pair(SUBJECT, email="a@school.example.com", role="teacher")

        access = await token_manager.rotate_access_token(pair.refresh_token)

        assert access is not None
        result = await token_manager.verify(access)
        assert result.valid is True
        assert result.payload.subject == SUBJECT
        assert result.payload.type is TokenType.ACCESS

    async def test_rotate_uses_supplied_claims(self, token_manager):
        pair = await token_manager.issue_pair(SUBJECT)

        access = await token_manager.rotate_access_token(
            pair.refresh_token, {"role": "principal", "permissions": ["*:*"]}
        )

        payload = (await token_manager.verify(access)).payload
        assert payload.role == "principal"
        assert payload.permissions == ("*:*",)

    async def test_refresh_token_valid_until_rotated(self, token_manager):
        pair = await token_manager.issue_pair(SUBJECT)

        assert (await token_manager.verify(pair.refresh_token)).valid is True
        assert (await token_manager.verify(pair.refresh_token)).valid is True

        await token_manager.rotate_access_token(pair.refresh_token)
        result = await token_manager.verify(pair.refresh_token)

        assert result.valid is False
        assert result.failure in (
            VerificationFailure.NOT_WHITELISTED,
            VerificationFailure.REVOKED,
        )

    async def test_second_rotation_fails(self, token_manager):
        pair = await token_manager.issue_pair(SUBJECT)

        assert await token_manager.rotate_access_token(pair.refresh_token) is not None
        assert await token_manager.rotate_access_token(pair.refresh_token) is None

    async def test_rotate_rejects_access_token(self, token_manager):
        pair = await token_manager.issue_pair(SUBJECT)

        assert await token_manager.rotate_access_token(pair.access_token) is None
        # The access token is untouched
        assert (await token_manager.verify(pair.access_token)).valid is True

    async def test_revoked_refresh_cannot_rotate_but_access_survives(self, token_manager):
        pair = await token_manager.issue_pair("u1")

        assert await token_manager.revoke(pair.refresh_token) is True

        assert await token_manager.rotate_access_token(pair.refresh_token) is None
        assert (await token_manager.verify(pair.access_token)).valid is True

    async def test_concurrent_rotation_succeeds_at_most_once(self, token_manager):
        pair = await token_manager.issue_pair(SUBJECT)

        results = await asyncio.gather(
            *(token_manager.rotate_access_token(pair.refresh_token) for _ in range(10))
        )

        successes = [r for r in results if r is not None]
        assert len(successes) == 1

    async def test_concurrent_consume_with_interleaved_verify(self, token_manager):
        """Both callers pass verify before either deletes; only one may win."""
        pair = await token_manager.issue_pair(SUBJECT)
        original_verify = token_manager.verify
        barrier = asyncio.Barrier(2)

        async def _verify_then_wait(token):
            result = await original_verify(token)
            await barrier.wait()
            return result

        with patch.object(token_manager, "verify", _verify_then_wait):
            results = await asyncio.gather(
                token_manager.consume(pair.refresh_token, TokenType.REFRESH),
                token_manager.consume(pair.refresh_token, TokenType.REFRESH),
            )

        assert sum(r is not None for r in results) == 1


class TestRevoke:
    """Tests for single and bulk revocation."""

    async def test_revoke_access_token(self, token_manager, redis_client):
        token = await token_manager.issue(SUBJECT, TokenType.ACCESS)
        jti = token_manager.decode(token)["jti"]

        assert await token_manager.revoke(token) is True

        assert (await token_manager.verify(token)).failure is VerificationFailure.REVOKED
        ttl = await redis_client.ttl(f"test:{blacklist_key(jti)}")
        assert 0 < ttl <= 15 * 60

    async def test_revoke_twice_never_raises(self, token_manager):
        token = await token_manager.issue(SUBJECT, TokenType.REFRESH)

        first = await token_manager.revoke(token)
        second = await token_manager.revoke(token)

        assert first is True
        assert second in (True, False)
        assert (await token_manager.verify(token)).valid is False

    async def test_revoke_refresh_removes_whitelist_and_index(self, token_manager, redis_client):
        token = await token_manager.issue(SUBJECT, TokenType.REFRESH)
        jti = token_manager.decode(token)["jti"]

        await token_manager.revoke(token)

        assert await redis_client.exists(f"test:{whitelist_key(jti, SUBJECT)}") == 0
        assert jti not in await redis_client.smembers(f"test:{subject_index_key(SUBJECT)}")

    async def test_revoke_invalid_token_returns_false(self, token_manager):
        assert await token_manager.revoke("garbage") is False

    async def test_revoke_returns_false_when_store_down(self, token_manager):
        token = await token_manager.issue(SUBJECT, TokenType.ACCESS)

        with patch.object(
            token_manager.store, "set", AsyncMock(side_effect=RevocationStoreError("down"))
        ):
            assert await token_manager.revoke(token) is False

    async def test_revoke_all_for_subject(self, token_manager, redis_client):
        pairs = [await token_manager.issue_pair(SUBJECT) for _ in range(3)]
        reset = await token_manager.generate_secure_token(
            SUBJECT, "a@school.example.com", TokenType.RESET_PASSWORD
        )
        other = await token_manager.issue_pair("other-user")

        assert await token_manager.revoke_all_for_subject(SUBJECT) is True

        for pair in pairs:
            assert (await token_manager.verify(pair.refresh_token)).failure is (
                VerificationFailure.REVOKED
            )
            # Access tokens are not whitelisted and stay valid until expiry
            assert (await token_manager.verify(pair.access_token)).valid is True
        assert (await token_manager.verify(reset)).valid is False
        assert (await token_manager.verify(other.refresh_token)).valid is True
        assert await redis_client.exists(f"test:{subject_index_key(SUBJECT)}") == 0

    async def test_revoke_all_with_no_tokens_is_noop(self, token_manager):
        assert await token_manager.revoke_all_for_subject("nobody") is True

    async def test_revoke_all_returns_false_when_store_down(self, token_manager):
        await token_manager.issue_pair(SUBJECT)

        with patch.object(
            token_manager.store,
            "set_members",
            AsyncMock(side_effect=RevocationStoreError("down")),
        ):
            assert await token_manager.revoke_all_for_subject(SUBJECT) is False

    async def test_revoked_token_stays_revoked_through_leeway(self, store):
        manager = TokenManager(store, secret_key="k" * 32, leeway=3)
        token = await manager.issue(SUBJECT, TokenType.ACCESS, expires_in=1)
        jti = manager.decode(token)["jti"]

        assert await manager.revoke(token) is True
        assert await store.ttl(blacklist_key(jti)) >= 2

        # Past exp but inside the leeway window, so the signature check still passes
        await asyncio.sleep(1.5)

        assert (await manager.verify(token)).failure is VerificationFailure.REVOKED

    async def test_revoke_all_blacklist_outlives_leeway(self, store):
        manager = TokenManager(store, secret_key="k" * 32, leeway=3)
        token = await manager.issue(SUBJECT, TokenType.REFRESH, expires_in=2)

        assert await manager.revoke_all_for_subject(SUBJECT) is True
        await asyncio.sleep(2.5)

        assert (await manager.verify(token)).failure is VerificationFailure.REVOKED

    async def test_revoke_all_keeps_tokens_issued_meanwhile(self, token_manager, store):
        await token_manager.issue_pair(SUBJECT)
        read_members = store.set_members
        late = {}

        async def members_then_issue(key):
            members = await read_members(key)
            # Another login lands between reading the index and clearing it
            late["token"] = await token_manager.issue(SUBJECT, TokenType.REFRESH)
            return members

        with patch.object(store, "set_members", members_then_issue):
            assert await token_manager.revoke_all_for_subject(SUBJECT) is True

        late_jti = token_manager.decode(late["token"])["jti"]
        assert await store.set_members(subject_index_key(SUBJECT)) == {late_jti}

        assert await token_manager.revoke_all_for_subject(SUBJECT) is True
        assert (await token_manager.verify(late["token"])).failure is VerificationFailure.REVOKED
