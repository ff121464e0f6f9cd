"""Tests for the authentication engine: login, refresh, logout and deactivation."""

import asyncio
import threading
import time
from datetime import timedelta

import pyotp
import pytest

from adminauth.service import notifications
from adminauth.service.engine import AuthEngine
from adminauth.service.errors import (
    AccountLocked,
    AlreadyEnabled,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCode,
    InvalidCredentials,
    InvalidMFA,
    InvalidToken,
    NotFoundError,
    PrincipalInactive,
    SessionExpired,
    StoreUnavailable,
    TokenReplayed,
    ValidationError,
    WeakPassword,
)
from adminauth.service.blacklist import TokenBlacklist
from adminauth.service.sessions import SessionRegistry
from adminauth.service.tokens import INVITE, TokenService
from adminauth.storage.errors import BackendUnavailable
from adminauth.storage.memory import MemoryCache
from adminauth.storage.models import ClientMeta, Role, utcnow

NEW_PASSWORD = "N3w!Depot#Schedule"


async def _enroll(engine, principal_id):
    enrollment = await engine.begin_mfa_enrollment(principal_id)
    codes = await engine.confirm_mfa_enrollment(
        principal_id, pyotp.TOTP(enrollment.secret).now()
    )
    return enrollment.secret, codes


def _engine_with_cache(settings, store, hasher, cache, **kwargs):
    return AuthEngine(
        settings,
        store,
        registry=SessionRegistry(cache),
        blacklist=TokenBlacklist(cache),
        hasher=hasher,
        **kwargs,
    )


class TestLogin:
    async def test_successful_login_issues_correlated_pair(
        self, engine, make_principal, password, audit_sink
    ):
        principal = make_principal()
        client = ClientMeta(ip_address="10.1.2.3", user_agent="pytest")

        result = await engine.login("ops@avigate.co", password, client=client)

        access = engine.tokens.verify_access(result.tokens.access_token)
        refresh = engine.tokens.verify_refresh(result.tokens.refresh_token)
        assert access.correlation_id == refresh.correlation_id == result.session.correlation_id
        assert access.principal_id == principal.id
        sessions = await engine.list_sessions(principal.id)
        assert [s.correlation_id for s in sessions] == [access.correlation_id]
        assert result.principal.last_login_at is not None
        assert result.principal.last_login_ip == "10.1.2.3"
        assert audit_sink.actions()[-1] == "login"

    async def test_unknown_key_and_wrong_password_look_identical(
        self, engine, make_principal, password
    ):
        make_principal()

        with pytest.raises(InvalidCredentials) as unknown:
            await engine.login("nobody@avigate.co", password)
        with pytest.raises(InvalidCredentials) as wrong:
            await engine.login("ops@avigate.co", "Wrong!Password9")

        assert unknown.value.message == wrong.value.message
        assert unknown.value.error_code == wrong.value.error_code

    async def test_inactive_principal_rejected_as_invalid_credentials(
        self, engine, make_principal, password
    ):
        make_principal(is_active=False)
        with pytest.raises(InvalidCredentials):
            await engine.login("ops@avigate.co", password)

    async def test_login_key_is_case_insensitive(self, engine, make_principal, password):
        make_principal()
        result = await engine.login("  OPS@Avigate.CO", password)
        assert result.principal.email == "ops@avigate.co"

    async def test_disallowed_domain_rejected(self, settings, store, cache, hasher, make_principal, password):
        restricted = _engine_with_cache(
            settings.model_copy(update={"allowed_email_domain": "avigate.ng"}),
            store,
            hasher,
            cache,
        )
        make_principal()
        with pytest.raises(InvalidCredentials):
            await restricted.login("ops@avigate.co", password)

    async def test_success_resets_failed_counter(self, engine, make_principal, password, store):
        principal = make_principal()
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                await engine.login("ops@avigate.co", "Wrong!Password9")
        assert store.find_by_id(principal.id).failed_login_attempts == 3

        await engine.login("ops@avigate.co", password)
        assert store.find_by_id(principal.id).failed_login_attempts == 0

    async def test_rehashes_outdated_digest(self, engine, make_principal, password, store, hasher):
        principal = make_principal()
        engine.hasher = type(hasher)()

        await engine.login("ops@avigate.co", password)

        new_digest = store.find_by_id(principal.id).password_hash
        assert new_digest != principal.password_hash
        assert engine.hasher.needs_rehash(new_digest) is False


class TestLockout:
    async def test_sixth_attempt_with_correct_password_is_locked(
        self, engine, make_principal, password, store, notifier, audit_sink
    ):
        principal = make_principal()
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await engine.login("ops@avigate.co", "Wrong!Password9")

        with pytest.raises(AccountLocked) as locked:
            await engine.login("ops@avigate.co", password)

        stored = store.find_by_id(principal.id)
        assert locked.value.unlock_at == stored.locked_until
        assert locked.value.detail["unlock_at"] == stored.locked_until.isoformat()
        assert stored.locked_until - utcnow() <= timedelta(seconds=900)
        assert "account_locked" in audit_sink.actions()
        assert [kind for kind, _, _ in notifier.sent] == [notifications.ACCOUNT_LOCKED]

    async def test_attempts_during_lockout_do_not_count(
        self, engine, make_principal, store
    ):
        principal = make_principal()
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await engine.login("ops@avigate.co", "Wrong!Password9")
        locked_until = store.find_by_id(principal.id).locked_until

        for _ in range(3):
            with pytest.raises(AccountLocked):
                await engine.login("ops@avigate.co", "Wrong!Password9")

        stored = store.find_by_id(principal.id)
        assert stored.failed_login_attempts == 0
        assert stored.locked_until == locked_until

    async def test_login_succeeds_after_lockout_elapses(
        self, engine, make_principal, password, store
    ):
        principal = make_principal()
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await engine.login("ops@avigate.co", "Wrong!Password9")

        store.update(principal.id, locked_until=utcnow() - timedelta(seconds=1))

        result = await engine.login("ops@avigate.co", password)
        assert result.principal.locked_until is None

    async def test_unlock_clears_lock(self, engine, make_principal, password, audit_sink):
        principal = make_principal()
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await engine.login("ops@avigate.co", "Wrong!Password9")

        await engine.unlock(principal.id, actor_id="root")

        assert (await engine.login("ops@avigate.co", password)).principal.id == principal.id
        assert "account_unlocked" in audit_sink.actions()

    async def test_unlock_unknown_principal(self, engine):
        with pytest.raises(NotFoundError):
            await engine.unlock("missing")

    async def test_concurrent_failures_cannot_skip_threshold(
        self, engine, make_principal, password, store
    ):
        principal = make_principal()

        def fail():
            with pytest.raises((InvalidCredentials, AccountLocked)):
                asyncio.run(engine.login("ops@avigate.co", "Wrong!Password9"))

        threads = [threading.Thread(target=fail) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.find_by_id(principal.id).is_locked()


class TestMFALogin:
    async def test_enrollment_then_login_flow(self, engine, make_principal, password, store):
        principal = make_principal()
        await engine.login("ops@avigate.co", password)
        assert len(await engine.list_sessions(principal.id)) == 1

        secret, codes = await _enroll(engine, principal.id)
        assert len(codes) == 10

        with pytest.raises(InvalidMFA) as missing:
            await engine.login("ops@avigate.co", password)
        assert missing.value.requires_totp is True
        assert missing.value.detail["requires_totp"] is True

        result = await engine.login("ops@avigate.co", password, backup_code=codes[0])
        assert result.used_backup_code is True
        remaining = store.find_by_id(principal.id).backup_code_digests
        assert len(remaining) == 9

        with pytest.raises(InvalidMFA):
            await engine.login("ops@avigate.co", password, backup_code=codes[0])

        totp_result = await engine.login(
            "ops@avigate.co", password, totp_code=pyotp.TOTP(secret).now()
        )
        assert totp_result.used_backup_code is False

    async def test_wrong_totp_rejected(self, engine, make_principal, password, audit_sink):
        principal = make_principal()
        await _enroll(engine, principal.id)

        with pytest.raises(InvalidMFA):
            await engine.login("ops@avigate.co", password, totp_code="000000")
        assert "login_mfa_failed" in audit_sink.actions()

    async def test_both_factors_rejected(self, engine, make_principal, password):
        principal = make_principal()
        secret, codes = await _enroll(engine, principal.id)

        with pytest.raises(InvalidMFA):
            await engine.login(
                "ops@avigate.co",
                password,
                totp_code=pyotp.TOTP(secret).now(),
                backup_code=codes[0],
            )

    async def test_backup_code_does_not_touch_lockout_state(
        self, engine, make_principal, password, store
    ):
        principal = make_principal()
        _, codes = await _enroll(engine, principal.id)

        with pytest.raises(InvalidMFA):
            await engine.login("ops@avigate.co", password, backup_code="WRONGONE")
        assert store.find_by_id(principal.id).failed_login_attempts == 0

        await engine.login("ops@avigate.co", password, backup_code=codes[1])
        assert store.find_by_id(principal.id).failed_login_attempts == 0

    async def test_enrollment_twice_rejected(self, engine, make_principal):
        principal = make_principal()
        await _enroll(engine, principal.id)
        with pytest.raises(AlreadyEnabled):
            await engine.begin_mfa_enrollment(principal.id)

    async def test_confirm_with_wrong_code(self, engine, make_principal):
        principal = make_principal()
        await engine.begin_mfa_enrollment(principal.id)
        with pytest.raises(InvalidCode):
            await engine.confirm_mfa_enrollment(principal.id, "000000")
        assert (await engine.mfa_status(principal.id)).setup_pending is True

    async def test_disable_requires_password_and_code(
        self, engine, make_principal, password, notifier
    ):
        principal = make_principal()
        secret, _ = await _enroll(engine, principal.id)

        with pytest.raises(InvalidCredentials):
            await engine.disable_mfa(principal.id, "Wrong!Password9", pyotp.TOTP(secret).now())
        with pytest.raises(InvalidMFA):
            await engine.disable_mfa(principal.id, password, "000000")

        await engine.disable_mfa(principal.id, password, pyotp.TOTP(secret).now())

        status = await engine.mfa_status(principal.id)
        assert status.enabled is False
        assert status.backup_codes_remaining == 0
        assert (await engine.login("ops@avigate.co", password)).tokens
        sent = [kind for kind, _, _ in notifier.sent]
        assert sent == [notifications.MFA_ENABLED, notifications.MFA_DISABLED]

    async def test_regenerate_backup_codes(self, engine, make_principal, password):
        principal = make_principal()
        secret, old_codes = await _enroll(engine, principal.id)

        new_codes = await engine.regenerate_backup_codes(
            principal.id, password, pyotp.TOTP(secret).now()
        )

        assert len(new_codes) == 10
        with pytest.raises(InvalidMFA):
            await engine.login("ops@avigate.co", password, backup_code=old_codes[0])
        assert (await engine.login("ops@avigate.co", password, backup_code=new_codes[0])).used_backup_code


class _RecordingBlacklist(TokenBlacklist):
    def __init__(self, cache):
        super().__init__(cache)
        self.ttls = {}

    async def revoke(self, correlation_id, ttl_seconds):
        self.ttls[correlation_id] = ttl_seconds
        return await super().revoke(correlation_id, ttl_seconds)


class TestRefresh:
    async def test_refresh_rotates_pair(self, engine, make_principal, password, audit_sink):
        principal = make_principal()
        first = (await engine.login("ops@avigate.co", password)).tokens

        second = await engine.refresh(first.refresh_token)

        assert second.correlation_id != first.correlation_id
        assert engine.tokens.verify_access(second.access_token).principal_id == principal.id
        sessions = await engine.list_sessions(principal.id)
        assert [s.correlation_id for s in sessions] == [second.correlation_id]
        assert await engine.blacklist.is_revoked(first.correlation_id)
        assert "token_refreshed" in audit_sink.actions()

    async def test_used_refresh_token_never_works_again(self, engine, make_principal, password):
        make_principal()
        first = (await engine.login("ops@avigate.co", password)).tokens
        await engine.refresh(first.refresh_token)

        for _ in range(3):
            with pytest.raises((TokenReplayed, SessionExpired)):
                await engine.refresh(first.refresh_token)

    async def test_old_access_token_revoked_after_refresh(self, engine, make_principal, password):
        make_principal()
        first = (await engine.login("ops@avigate.co", password)).tokens
        second = await engine.refresh(first.refresh_token)

        with pytest.raises(TokenReplayed):
            await engine.authenticate(first.access_token)
        assert (await engine.authenticate(second.access_token)).correlation_id == second.correlation_id

    async def test_access_token_cannot_refresh(self, engine, make_principal, password):
        make_principal()
        pair = (await engine.login("ops@avigate.co", password)).tokens
        with pytest.raises(InvalidToken):
            await engine.refresh(pair.access_token)

    async def test_blacklisted_token_with_live_session_is_replay(
        self, engine, make_principal, password
    ):
        make_principal()
        pair = (await engine.login("ops@avigate.co", password)).tokens
        await engine.blacklist.revoke(pair.correlation_id, 60)

        with pytest.raises(TokenReplayed):
            await engine.refresh(pair.refresh_token)

    async def test_spent_token_ttl_follows_token_clock(
        self, settings, store, cache, hasher, make_principal, password
    ):
        frozen = time.time() - 3 * 24 * 60 * 60
        blacklist = _RecordingBlacklist(cache)
        engine = AuthEngine(
            settings,
            store,
            registry=SessionRegistry(cache),
            blacklist=blacklist,
            tokens=TokenService(settings, clock=lambda: frozen),
            hasher=hasher,
        )
        make_principal()
        first = (await engine.login("ops@avigate.co", password)).tokens

        await engine.refresh(first.refresh_token)

        assert blacklist.ttls[first.correlation_id] == settings.refresh_token_ttl_seconds

    async def test_concurrent_refresh_in_one_loop(self, engine, make_principal, password):
        principal = make_principal()
        pair = (await engine.login("ops@avigate.co", password)).tokens

        results = await asyncio.gather(
            engine.refresh(pair.refresh_token),
            engine.refresh(pair.refresh_token),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, BaseException)]
        losers = [r for r in results if isinstance(r, BaseException)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], (TokenReplayed, SessionExpired))
        assert len(await engine.list_sessions(principal.id)) == 1

    def test_concurrent_refresh_across_threads(self, engine, make_principal, password):
        principal = make_principal()
        pair = asyncio.run(engine.login("ops@avigate.co", password)).tokens
        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                result = asyncio.run(engine.refresh(pair.refresh_token))
            except (TokenReplayed, SessionExpired) as exc:
                result = exc
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(outcomes) == 8
        assert len(winners) == 1
        sessions = asyncio.run(engine.list_sessions(principal.id))
        assert [s.correlation_id for s in sessions] == [winners[0].correlation_id]


class TestLogoutAndDeactivate:
    async def test_logout_revokes_both_tokens(self, engine, make_principal, password):
        principal = make_principal()
        pair = (await engine.login("ops@avigate.co", password)).tokens

        assert await engine.logout(principal.id, pair.correlation_id) is True

        with pytest.raises(TokenReplayed):
            await engine.authenticate(pair.access_token)
        with pytest.raises((SessionExpired, TokenReplayed)):
            await engine.refresh(pair.refresh_token)
        # idempotent
        assert await engine.logout(principal.id, pair.correlation_id) is False

    async def test_logout_leaves_other_devices(self, engine, make_principal, password):
        principal = make_principal()
        laptop = (await engine.login("ops@avigate.co", password)).tokens
        phone = (await engine.login("ops@avigate.co", password)).tokens

        await engine.logout(principal.id, laptop.correlation_id)

        assert (await engine.authenticate(phone.access_token)).principal_id == principal.id

    async def test_logout_of_foreign_session_revokes_nothing(
        self, engine, make_principal, password, audit_sink
    ):
        alice = make_principal("alice@avigate.co")
        make_principal("bob@avigate.co")
        bob = (await engine.login("bob@avigate.co", password)).tokens

        assert await engine.logout(alice.id, bob.correlation_id) is False

        assert not await engine.blacklist.is_revoked(bob.correlation_id)
        assert await engine.refresh(bob.refresh_token)
        assert "logout" not in audit_sink.actions()

    async def test_deactivate_terminates_every_session(
        self, engine, make_principal, password, audit_sink
    ):
        principal = make_principal()
        pairs = [(await engine.login("ops@avigate.co", password)).tokens for _ in range(3)]

        removed = await engine.deactivate(principal.id, actor_id="root")

        assert removed == 3
        assert await engine.list_sessions(principal.id) == []
        for pair in pairs:
            with pytest.raises((PrincipalInactive, SessionExpired)):
                await engine.refresh(pair.refresh_token)
            with pytest.raises(AuthenticationError):
                await engine.authenticate(pair.access_token)
        with pytest.raises(InvalidCredentials):
            await engine.login("ops@avigate.co", password)
        assert "principal_deactivated" in audit_sink.actions()

    async def test_cannot_deactivate_self(self, engine, make_principal):
        principal = make_principal()
        with pytest.raises(ForbiddenError):
            await engine.deactivate(principal.id, actor_id=principal.id)

    async def test_deactivate_unknown_principal(self, engine):
        with pytest.raises(NotFoundError):
            await engine.deactivate("missing", actor_id="root")


class TestAuthenticate:
    async def test_context_carries_role_permissions(self, engine, make_principal, password):
        make_principal(role=Role.SUPER_ADMIN)
        pair = (await engine.login("ops@avigate.co", password)).tokens

        ctx = await engine.authenticate(pair.access_token)

        assert ctx.role == "super_admin"
        assert "admins.manage" in ctx.permissions
        assert ctx.correlation_id == pair.correlation_id

    async def test_refresh_token_rejected(self, engine, make_principal, password):
        make_principal()
        pair = (await engine.login("ops@avigate.co", password)).tokens
        with pytest.raises(InvalidToken):
            await engine.authenticate(pair.refresh_token)

    async def test_locked_principal_rejected(self, engine, make_principal, password, store):
        principal = make_principal()
        pair = (await engine.login("ops@avigate.co", password)).tokens
        store.update(principal.id, locked_until=utcnow() + timedelta(minutes=5))

        with pytest.raises(AccountLocked):
            await engine.authenticate(pair.access_token)

    async def test_session_cap_revokes_evicted_tokens(self, engine, make_principal, password, settings):
        make_principal()
        pairs = [
            (await engine.login("ops@avigate.co", password)).tokens
            for _ in range(settings.max_sessions_per_principal + 1)
        ]

        with pytest.raises(TokenReplayed):
            await engine.authenticate(pairs[0].access_token)
        assert (await engine.authenticate(pairs[-1].access_token)).correlation_id == pairs[-1].correlation_id


class TestPasswordManagement:
    async def test_change_password_signs_out_other_sessions(
        self, engine, make_principal, password, notifier
    ):
        principal = make_principal()
        current = (await engine.login("ops@avigate.co", password)).tokens
        other = (await engine.login("ops@avigate.co", password)).tokens

        revoked = await engine.change_password(
            principal.id, password, NEW_PASSWORD, keep_correlation_id=current.correlation_id
        )

        assert revoked == 1
        assert (await engine.authenticate(current.access_token)).principal_id == principal.id
        with pytest.raises((TokenReplayed, SessionExpired)):
            await engine.refresh(other.refresh_token)
        with pytest.raises(InvalidCredentials):
            await engine.login("ops@avigate.co", password)
        assert await engine.login("ops@avigate.co", NEW_PASSWORD)
        assert notifier.sent[-1][0] == notifications.PASSWORD_CHANGED

    async def test_change_password_validations(self, engine, make_principal, password):
        principal = make_principal()
        with pytest.raises(InvalidCredentials):
            await engine.change_password(principal.id, "Wrong!Password9", NEW_PASSWORD)
        with pytest.raises(WeakPassword):
            await engine.change_password(principal.id, password, "short")
        with pytest.raises(WeakPassword):
            await engine.change_password(principal.id, password, password)

    async def test_create_principal(self, engine, store, audit_sink):
        principal = await engine.create_principal(
            "New.Admin@avigate.co", NEW_PASSWORD, role=Role.MODERATOR, actor_id="root"
        )

        assert store.find_by_key("new.admin@avigate.co").id == principal.id
        assert principal.role == Role.MODERATOR
        assert audit_sink.events[-1].action == "principal_created"

    async def test_create_principal_rejections(self, engine, settings, store, cache, hasher):
        await engine.create_principal("ops@avigate.co", NEW_PASSWORD)
        with pytest.raises(ConflictError):
            await engine.create_principal("OPS@avigate.co", NEW_PASSWORD)
        with pytest.raises(WeakPassword):
            await engine.create_principal("weak@avigate.co", "password")

        restricted = _engine_with_cache(
            settings.model_copy(update={"allowed_email_domain": "avigate.ng"}),
            store,
            hasher,
            cache,
        )
        with pytest.raises(ForbiddenError):
            await restricted.create_principal("ops@gmail.com", NEW_PASSWORD)


class _FailingSink:
    def record(self, event):
        raise RuntimeError("audit backend down")


class _FailingNotifier:
    def send(self, kind, recipient, payload):
        raise RuntimeError("smtp down")


class _CancellingCache(MemoryCache):
    """Cancels the caller right after the session record is written."""

    async def list_sessions(self, principal_id):
        raise asyncio.CancelledError()


class _BrokenCache(MemoryCache):
    async def get_session(self, principal_id, correlation_id):
        raise BackendUnavailable("redis get_session failed")


class TestFailureModes:
    async def test_audit_failure_does_not_abort_login(
        self, settings, store, cache, hasher, make_principal, password
    ):
        engine = _engine_with_cache(settings, store, hasher, cache, audit=_FailingSink())
        make_principal()
        assert (await engine.login("ops@avigate.co", password)).tokens

    async def test_notification_failure_does_not_change_outcome(
        self, settings, store, cache, hasher, make_principal
    ):
        engine = _engine_with_cache(settings, store, hasher, cache, notifier=_FailingNotifier())
        make_principal()
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await engine.login("ops@avigate.co", "Wrong!Password9")

    async def test_store_failure_maps_to_store_unavailable(
        self, engine, make_principal, password, store, monkeypatch
    ):
        make_principal()

        def broken(login_key):
            raise BackendUnavailable("disk full")

        monkeypatch.setattr(store, "find_by_key", broken)
        with pytest.raises(StoreUnavailable):
            await engine.login("ops@avigate.co", password)

    async def test_cache_failure_maps_to_store_unavailable(
        self, settings, store, hasher, make_principal, password
    ):
        healthy = MemoryCache()
        engine = _engine_with_cache(settings, store, hasher, healthy)
        make_principal()
        pair = (await engine.login("ops@avigate.co", password)).tokens

        broken = _engine_with_cache(settings, store, hasher, _BrokenCache())
        with pytest.raises(StoreUnavailable):
            await broken.refresh(pair.refresh_token)

    async def test_cancelled_login_leaves_no_usable_session(
        self, settings, store, hasher, make_principal, password
    ):
        cache = _CancellingCache()
        engine = _engine_with_cache(settings, store, hasher, cache)
        principal = make_principal()

        with pytest.raises(asyncio.CancelledError):
            await engine.login("ops@avigate.co", password)

        assert cache._sessions.get(principal.id) is None
        assert await cache.revoked_count() == 1

    async def test_failed_session_write_returns_backup_code(
        self, engine, cache, store, make_principal, password, monkeypatch
    ):
        principal = make_principal()
        _, codes = await _enroll(engine, principal.id)

        async def broken(session, ttl_seconds):
            raise BackendUnavailable("redis put_session failed")

        monkeypatch.setattr(cache, "put_session", broken)
        with pytest.raises(StoreUnavailable):
            await engine.login("ops@avigate.co", password, backup_code=codes[0])
        assert (await engine.mfa_status(principal.id)).backup_codes_remaining == 10

        monkeypatch.undo()
        result = await engine.login("ops@avigate.co", password, backup_code=codes[0])
        assert result.used_backup_code is True
        assert len(store.find_by_id(principal.id).backup_code_digests) == 9


def _last_token(notifier, kind):
    for sent_kind, _, payload in reversed(notifier.sent):
        if sent_kind == kind:
            return payload["token"]
    raise AssertionError(f"no {kind} notification sent")


class TestPasswordReset:
    async def test_reset_flow(self, engine, make_principal, password, notifier, audit_sink):
        principal = make_principal()
        await engine.login("ops@avigate.co", password)

        assert await engine.request_password_reset("OPS@avigate.co") is True
        kind, recipient, payload = notifier.sent[-1]
        assert (kind, recipient) == (notifications.PASSWORD_RESET, "ops@avigate.co")
        assert payload["expires_at"]

        revoked = await engine.reset_password(payload["token"], NEW_PASSWORD)

        assert revoked == 1
        assert await engine.list_sessions(principal.id) == []
        with pytest.raises(InvalidCredentials):
            await engine.login("ops@avigate.co", password)
        assert (await engine.login("ops@avigate.co", NEW_PASSWORD)).tokens
        assert notifier.sent[-1][0] == notifications.PASSWORD_CHANGED
        actions = audit_sink.actions()
        assert "password_reset_request" in actions
        assert "password_reset_complete" in actions

    async def test_reset_token_works_once(self, engine, make_principal, notifier):
        make_principal()
        await engine.request_password_reset("ops@avigate.co")
        token = _last_token(notifier, notifications.PASSWORD_RESET)
        await engine.reset_password(token, NEW_PASSWORD)

        with pytest.raises(TokenReplayed):
            await engine.reset_password(token, "An0ther!Route#Plan")

    async def test_unknown_or_inactive_key_sends_nothing(
        self, engine, make_principal, notifier
    ):
        make_principal("gone@avigate.co", is_active=False)

        assert await engine.request_password_reset("nobody@avigate.co") is False
        assert await engine.request_password_reset("gone@avigate.co") is False
        assert notifier.sent == []

    async def test_weak_password_leaves_token_usable(self, engine, make_principal, notifier):
        make_principal()
        await engine.request_password_reset("ops@avigate.co")
        token = _last_token(notifier, notifications.PASSWORD_RESET)

        with pytest.raises(WeakPassword):
            await engine.reset_password(token, "short")
        assert await engine.reset_password(token, NEW_PASSWORD) == 0

    async def test_store_failure_releases_token(
        self, engine, make_principal, notifier, store, monkeypatch
    ):
        make_principal()
        await engine.request_password_reset("ops@avigate.co")
        token = _last_token(notifier, notifications.PASSWORD_RESET)

        def broken(principal_id, **fields):
            raise BackendUnavailable("disk full")

        monkeypatch.setattr(store, "update", broken)
        with pytest.raises(StoreUnavailable):
            await engine.reset_password(token, NEW_PASSWORD)

        monkeypatch.undo()
        await engine.reset_password(token, NEW_PASSWORD)

    async def test_token_rejected_after_holder_deactivated(
        self, engine, make_principal, notifier, store
    ):
        principal = make_principal()
        await engine.request_password_reset("ops@avigate.co")
        token = _last_token(notifier, notifications.PASSWORD_RESET)
        store.update(principal.id, is_active=False)

        with pytest.raises(NotFoundError):
            await engine.reset_password(token, NEW_PASSWORD)

    async def test_tokens_are_bound_to_their_purpose(
        self, engine, make_principal, password, notifier
    ):
        make_principal()
        await engine.request_password_reset("ops@avigate.co")
        reset_token = _last_token(notifier, notifications.PASSWORD_RESET)
        access_token = (await engine.login("ops@avigate.co", password)).tokens.access_token

        with pytest.raises(InvalidToken):
            await engine.accept_invitation(reset_token, NEW_PASSWORD)
        with pytest.raises(InvalidToken):
            await engine.reset_password(access_token, NEW_PASSWORD)
        with pytest.raises(InvalidToken):
            await engine.authenticate(reset_token)


class TestInvitations:
    async def test_invite_then_accept(self, engine, make_principal, notifier, audit_sink):
        root = make_principal("root@avigate.co", role=Role.SUPER_ADMIN)

        invitation = await engine.invite_principal(
            "new.hire@avigate.co", role="moderator", first_name="Ada", actor_id=root.id
        )

        assert invitation.principal.role == Role.MODERATOR
        kind, recipient, payload = notifier.sent[-1]
        assert (kind, recipient) == (notifications.INVITATION, "new.hire@avigate.co")
        assert payload["token"] == invitation.token
        assert payload["role"] == "moderator"
        assert engine.tokens.verify_purpose(invitation.token, INVITE).issued_by == root.id

        accepted = await engine.accept_invitation(invitation.token, NEW_PASSWORD)

        assert accepted.id == invitation.principal.id
        result = await engine.login("new.hire@avigate.co", NEW_PASSWORD)
        assert result.principal.role == Role.MODERATOR
        actions = audit_sink.actions()
        assert "principal_invited" in actions
        assert "invitation_accepted" in actions

    async def test_invitation_works_once(self, engine):
        invitation = await engine.invite_principal("new.hire@avigate.co")
        await engine.accept_invitation(invitation.token, NEW_PASSWORD)

        with pytest.raises(TokenReplayed):
            await engine.accept_invitation(invitation.token, "An0ther!Route#Plan")

    async def test_invitee_cannot_log_in_before_accepting(self, engine, password):
        await engine.invite_principal("new.hire@avigate.co")

        with pytest.raises(InvalidCredentials):
            await engine.login("new.hire@avigate.co", password)

    async def test_invite_rejections(self, engine, settings, store, cache, hasher, make_principal):
        make_principal("taken@avigate.co")

        for role in ("super_admin", "janitor"):
            with pytest.raises(ValidationError):
                await engine.invite_principal("new.hire@avigate.co", role=role)
        with pytest.raises(ConflictError):
            await engine.invite_principal("taken@avigate.co")

        restricted = _engine_with_cache(
            settings.model_copy(update={"allowed_email_domain": "avigate.co"}),
            store,
            hasher,
            cache,
        )
        with pytest.raises(ForbiddenError):
            await restricted.invite_principal("new.hire@gmail.com")
        assert store.find_by_key("new.hire@avigate.co") is None
