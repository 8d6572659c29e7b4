"""Tests for the TokenLedger against an in-memory SQLite token store."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from device_service.core.exceptions import (
    AccountLocked,
    ConflictException,
    InvalidCredentials,
    StoreFailure,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
    UserNotFound,
)
from device_service.features.auth.models import BlacklistReason, TokenType, UserRole
from device_service.features.auth.schemas import SubjectClaims, TokenPair
from device_service.features.auth.security import decode_unverified, encode_token

# ──────────────────────────────────────────────────────────────
# Issue and verify
# ──────────────────────────────────────────────────────────────


class TestIssueAndVerify:
    """Issuing tokens and verifying them."""

    @pytest.mark.asyncio
    async def test_access_token_round_trip(self, ledger, make_user):
        """A freshly issued access token verifies to the subject it was issued for."""
        user = await make_user()
        subject = SubjectClaims.from_user(user)

        token = ledger.issue_access_token(subject)
        claims = await ledger.verify(token, TokenType.ACCESS)

        assert claims.subject == subject
        assert claims.token_type is TokenType.ACCESS
        assert claims.expires_at > claims.issued_at

    @pytest.mark.asyncio
    async def test_every_token_has_distinct_id(self, ledger, make_user):
        user = await make_user()
        subject = SubjectClaims.from_user(user)

        first = decode_unverified(ledger.issue_access_token(subject))
        second = decode_unverified(ledger.issue_access_token(subject))

        assert first["jti"] != second["jti"]

    @pytest.mark.asyncio
    async def test_issue_session_persists_refresh_record(self, ledger, make_user):
        user = await make_user()

        pair = await ledger.issue_session(user, "pytest", "127.0.0.1")
        claims = await ledger.verify(pair.refresh_token, "refresh")

        assert claims.user_id == user.id
        assert pair.expires_in == ledger.settings.access_token_expire_minutes * 60

    @pytest.mark.asyncio
    async def test_unstored_refresh_token_is_invalid(self, ledger, make_user):
        """A refresh token without a record never verifies."""
        user = await make_user()
        token = ledger.issue_refresh_token(SubjectClaims.from_user(user))

        with pytest.raises(TokenInvalid):
            await ledger.verify(token, TokenType.REFRESH)

    @pytest.mark.asyncio
    async def test_wrong_kind_is_invalid(self, ledger, make_user):
        user = await make_user()
        pair = await ledger.issue_session(user)

        with pytest.raises(TokenInvalid):
            await ledger.verify(pair.access_token, TokenType.REFRESH)
        with pytest.raises(TokenInvalid):
            await ledger.verify(pair.refresh_token, TokenType.ACCESS)

    @pytest.mark.asyncio
    async def test_expired_token(self, ledger, make_user, auth_settings):
        user = await make_user()
        token, _ = encode_token(
            user_id=user.id,
            role=UserRole.USER.value,
            email=user.email,
            token_type=TokenType.ACCESS,
            lifetime=timedelta(minutes=1),
            settings=auth_settings,
            now=datetime.now(UTC) - timedelta(hours=1),
        )

        with pytest.raises(TokenExpired):
            await ledger.verify(token, TokenType.ACCESS)

    @pytest.mark.asyncio
    async def test_tampered_token_is_invalid(self, ledger, make_user):
        user = await make_user()
        token = ledger.issue_access_token(SubjectClaims.from_user(user))
        header, payload, signature = token.split(".")
        tampered = f"{header}.{payload}.{signature[::-1]}"

        with pytest.raises(TokenInvalid):
            await ledger.verify(tampered, TokenType.ACCESS)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("garbage", ["", "not-a-jwt", "a.b.c"])
    async def test_malformed_token_is_invalid(self, ledger, garbage):
        with pytest.raises(TokenInvalid):
            await ledger.verify(garbage, TokenType.ACCESS)


# ──────────────────────────────────────────────────────────────
# Blacklist
# ──────────────────────────────────────────────────────────────


class TestBlacklist:
    """Blacklisting individual tokens."""

    @pytest.mark.asyncio
    async def test_blacklisted_token_is_revoked(self, ledger, make_user):
        user = await make_user()
        token = ledger.issue_access_token(SubjectClaims.from_user(user))

        assert await ledger.blacklist(token, BlacklistReason.LOGOUT) is True

        with pytest.raises(TokenRevoked):
            await ledger.verify(token, TokenType.ACCESS)

    @pytest.mark.asyncio
    async def test_blacklist_is_idempotent(self, ledger, make_user):
        user = await make_user()
        token = ledger.issue_access_token(SubjectClaims.from_user(user))

        assert await ledger.blacklist(token) is True
        assert await ledger.blacklist(token) is True

        stats = await ledger.token_stats()
        assert stats.blacklisted_tokens == 1

    @pytest.mark.asyncio
    async def test_revoked_wins_over_expired(self, ledger, make_user, auth_settings):
        """An expired token that is also blacklisted reports revoked."""
        user = await make_user()
        token, _ = encode_token(
            user_id=user.id,
            role=UserRole.USER.value,
            email=user.email,
            token_type=TokenType.ACCESS,
            lifetime=timedelta(minutes=1),
            settings=auth_settings,
            now=datetime.now(UTC) - timedelta(hours=1),
        )

        assert await ledger.blacklist(token) is True

        with pytest.raises(TokenRevoked):
            await ledger.verify(token, TokenType.ACCESS)

    @pytest.mark.asyncio
    async def test_blacklisting_refresh_token_removes_record(self, ledger, make_user):
        user = await make_user()
        pair = await ledger.issue_session(user)

        await ledger.blacklist(pair.refresh_token, BlacklistReason.LOGOUT)

        stats = await ledger.token_stats()
        assert stats.active_refresh_tokens == 0
        with pytest.raises(TokenRevoked):
            await ledger.rotate(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_blacklist_rejects_garbage(self, ledger):
        with pytest.raises(TokenInvalid):
            await ledger.blacklist("garbage")

    @pytest.mark.asyncio
    async def test_blacklist_notifies_listeners_with_token_id(self, ledger, make_user):
        user = await make_user()
        token = ledger.issue_access_token(SubjectClaims.from_user(user))
        listener = MagicMock()
        ledger.add_revocation_listener(listener)

        await ledger.blacklist(token, BlacklistReason.SECURITY)

        listener.assert_called_once_with(user.id, decode_unverified(token)["jti"], "security")

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_blacklist(self, ledger, make_user):
        user = await make_user()
        token = ledger.issue_access_token(SubjectClaims.from_user(user))
        ledger.add_revocation_listener(AsyncMock(side_effect=RuntimeError("boom")))
        second = AsyncMock()
        ledger.add_revocation_listener(second)

        assert await ledger.blacklist(token) is True

        second.assert_awaited_once()
        with pytest.raises(TokenRevoked):
            await ledger.verify(token, TokenType.ACCESS)


# ──────────────────────────────────────────────────────────────
# Rotation
# ──────────────────────────────────────────────────────────────


class TestRotate:
    """Refresh token rotation."""

    @pytest.mark.asyncio
    async def test_rotate_returns_new_pair_and_revokes_old(self, ledger, make_user):
        user = await make_user()
        pair = await ledger.issue_session(user)

        new_pair = await ledger.rotate(pair.refresh_token)

        assert new_pair.refresh_token != pair.refresh_token
        assert (await ledger.verify(new_pair.access_token, TokenType.ACCESS)).user_id == user.id
        assert (await ledger.verify(new_pair.refresh_token, TokenType.REFRESH)).user_id == user.id
        with pytest.raises(TokenRevoked):
            await ledger.verify(pair.refresh_token, TokenType.REFRESH)

    @pytest.mark.asyncio
    async def test_rotate_twice_fails(self, ledger, make_user):
        user = await make_user()
        pair = await ledger.issue_session(user)

        await ledger.rotate(pair.refresh_token)

        with pytest.raises(TokenRevoked):
            await ledger.rotate(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_concurrent_rotation_succeeds_exactly_once(self, ledger, make_user):
        user = await make_user()
        pair = await ledger.issue_session(user)

        results = await asyncio.gather(
            ledger.rotate(pair.refresh_token),
            ledger.rotate(pair.refresh_token),
            return_exceptions=True,
        )

        pairs = [r for r in results if isinstance(r, TokenPair)]
        revoked = [r for r in results if isinstance(r, TokenRevoked)]
        assert len(pairs) == 1
        assert len(revoked) == 1

        stats = await ledger.token_stats()
        assert stats.active_refresh_tokens == 1

    @pytest.mark.asyncio
    async def test_rotate_with_access_token_fails(self, ledger, make_user):
        user = await make_user()
        pair = await ledger.issue_session(user)

        with pytest.raises(TokenInvalid):
            await ledger.rotate(pair.access_token)

    @pytest.mark.asyncio
    async def test_rotate_for_locked_user_fails_without_side_effects(self, ledger, make_user, session_factory):
        from device_service.features.auth.models import User

        user = await make_user()
        pair = await ledger.issue_session(user)
        async with session_factory() as session:
            row = await session.get(User, user.id)
            row.locked_until = datetime.now(UTC) + timedelta(minutes=30)
            await session.commit()

        with pytest.raises(AccountLocked):
            await ledger.rotate(pair.refresh_token)

        # Rolled back: the old token is neither blacklisted nor deleted
        stats = await ledger.token_stats()
        assert stats.blacklisted_tokens == 0
        assert stats.active_refresh_tokens == 1


# ──────────────────────────────────────────────────────────────
# Refresh token cap and bulk revocation
# ──────────────────────────────────────────────────────────────


class TestRefreshTokenSet:
    """Per-user refresh token cap and revoke_all."""

    @pytest.mark.asyncio
    async def test_oldest_refresh_token_evicted_beyond_cap(self, ledger, make_user):
        user = await make_user()
        cap = ledger.settings.max_refresh_tokens_per_user

        pairs = [await ledger.issue_session(user) for _ in range(cap + 1)]

        stats = await ledger.token_stats()
        assert stats.active_refresh_tokens == cap
        with pytest.raises(TokenInvalid):
            await ledger.verify(pairs[0].refresh_token, TokenType.REFRESH)
        for pair in pairs[1:]:
            assert (await ledger.verify(pair.refresh_token, TokenType.REFRESH)).user_id == user.id

    @pytest.mark.asyncio
    async def test_store_refresh_token_reports_evictions(self, ledger, make_user):
        user = await make_user()
        subject = SubjectClaims.from_user(user)
        cap = ledger.settings.max_refresh_tokens_per_user

        tokens = [ledger.issue_refresh_token(subject) for _ in range(cap + 1)]
        evicted: list[str] = []
        for token in tokens:
            evicted.extend(await ledger.store_refresh_token(user.id, token))

        assert evicted == [decode_unverified(tokens[0])["jti"]]

    @pytest.mark.asyncio
    async def test_store_refresh_token_for_other_user_is_rejected(self, ledger, make_user):
        alice = await make_user("alice@example.com")
        bob = await make_user("bob@example.com")
        token = ledger.issue_refresh_token(SubjectClaims.from_user(alice))

        with pytest.raises(TokenInvalid):
            await ledger.store_refresh_token(bob.id, token)

    @pytest.mark.asyncio
    async def test_revoke_all(self, ledger, make_user):
        user = await make_user()
        other = await make_user("other@example.com")
        pairs = [await ledger.issue_session(user) for _ in range(3)]
        other_pair = await ledger.issue_session(other)
        listener = MagicMock()
        ledger.add_revocation_listener(listener)

        count = await ledger.revoke_all(user.id)

        assert count == 3
        listener.assert_called_once_with(user.id, None, BlacklistReason.REVOKED.value)
        for pair in pairs:
            with pytest.raises(TokenRevoked):
                await ledger.verify(pair.refresh_token, TokenType.REFRESH)
        assert (await ledger.verify(other_pair.refresh_token, TokenType.REFRESH)).user_id == other.id

    @pytest.mark.asyncio
    async def test_revoke_all_without_tokens_returns_zero(self, ledger, make_user):
        user = await make_user()

        assert await ledger.revoke_all(user.id, BlacklistReason.SECURITY) == 0

    @pytest.mark.asyncio
    async def test_revoke_all_unknown_user(self, ledger):
        with pytest.raises(UserNotFound):
            await ledger.revoke_all("no-such-user")


# ──────────────────────────────────────────────────────────────
# Maintenance
# ──────────────────────────────────────────────────────────────


class TestMaintenance:
    """Sweeping and stats."""

    @pytest.mark.asyncio
    async def test_sweep_removes_expired_entries_only(self, ledger, make_user, auth_settings):
        user = await make_user()
        expired, _ = encode_token(
            user_id=user.id,
            role=UserRole.USER.value,
            email=user.email,
            token_type=TokenType.ACCESS,
            lifetime=timedelta(minutes=1),
            settings=auth_settings,
            now=datetime.now(UTC) - timedelta(hours=1),
        )
        live = ledger.issue_access_token(SubjectClaims.from_user(user))
        await ledger.blacklist(expired)
        await ledger.blacklist(live)

        removed = await ledger.sweep_expired()

        assert removed == 1
        stats = await ledger.token_stats()
        assert stats.blacklisted_tokens == 1
        # The live entry still rejects its token
        with pytest.raises(TokenRevoked):
            await ledger.verify(live, TokenType.ACCESS)

    @pytest.mark.asyncio
    async def test_sweep_on_empty_store(self, ledger):
        assert await ledger.sweep_expired() == 0

    @pytest.mark.asyncio
    async def test_store_failure_is_wrapped(self, auth_settings):
        from device_service.features.auth.service import TokenLedger

        class _BrokenSession:
            async def __aenter__(self):
                raise OperationalError("SELECT 1", {}, Exception("connection refused"))

            async def __aexit__(self, *exc_info):
                return False

        ledger = TokenLedger(lambda: _BrokenSession(), auth_settings)

        with pytest.raises(StoreFailure) as exc_info:
            await ledger.token_stats()
        assert exc_info.value.code == "STORE_FAILURE"


# ──────────────────────────────────────────────────────────────
# Users and lockout
# ──────────────────────────────────────────────────────────────


class TestUsersAndLockout:
    """Registration, login and the failed-login lockout policy."""

    @pytest.mark.asyncio
    async def test_register_duplicate_email(self, make_user):
        await make_user("dup@example.com")

        with pytest.raises(ConflictException):
            await make_user("DUP@example.com")

    @pytest.mark.asyncio
    async def test_login_returns_pair(self, ledger, make_user, password):
        user = await make_user()

        logged_in, pair = await ledger.login(user.email, password, "pytest", "10.0.0.1")

        assert logged_in.id == user.id
        assert logged_in.last_login_at is not None
        assert (await ledger.verify(pair.access_token, TokenType.ACCESS)).user_id == user.id

    @pytest.mark.asyncio
    async def test_unknown_email(self, ledger, password):
        with pytest.raises(InvalidCredentials):
            await ledger.authenticate("nobody@example.com", password)

    @pytest.mark.asyncio
    async def test_lockout_after_max_failures(self, ledger, make_user, password):
        user = await make_user()
        attempts = ledger.settings.max_failed_login_attempts

        for _ in range(attempts - 1):
            with pytest.raises(InvalidCredentials):
                await ledger.authenticate(user.email, "wrong-password")

        with pytest.raises(AccountLocked) as exc_info:
            await ledger.authenticate(user.email, "wrong-password")
        assert exc_info.value.extra["locked_until"]

        # Even the right password is refused while locked
        with pytest.raises(AccountLocked):
            await ledger.authenticate(user.email, password)

    @pytest.mark.asyncio
    async def test_success_resets_failure_counter(self, ledger, make_user, password):
        user = await make_user()
        attempts = ledger.settings.max_failed_login_attempts

        for _ in range(attempts - 1):
            with pytest.raises(InvalidCredentials):
                await ledger.authenticate(user.email, "wrong-password")
        authenticated = await ledger.authenticate(user.email, password)
        assert authenticated.failed_login_attempts == 0

        # The count starts over
        for _ in range(attempts - 1):
            with pytest.raises(InvalidCredentials):
                await ledger.authenticate(user.email, "wrong-password")

    @pytest.mark.asyncio
    async def test_get_user(self, ledger, make_user):
        user = await make_user(role=UserRole.ADMIN)

        loaded = await ledger.get_user(user.id)

        assert loaded.email == user.email
        assert loaded.role == UserRole.ADMIN.value
        with pytest.raises(UserNotFound):
            await ledger.get_user("missing")
