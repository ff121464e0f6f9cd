from __future__ import annotations

import asyncio
import contextlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

from adminauth.config import AuthSettings
from adminauth.logging import get_logger
from adminauth.service import notifications
from adminauth.service.audit import AuditEvent, AuditSink, Severity, emit
from adminauth.service.blacklist import TokenBlacklist
from adminauth.service.errors import (
    AccountLocked,
    ConflictError,
    ForbiddenError,
    InvalidCode,
    InvalidCredentials,
    InvalidMFA,
    NotFoundError,
    PrincipalInactive,
    SessionExpired,
    StoreUnavailable,
    TokenReplayed,
    ValidationError,
    WeakPassword,
)
from adminauth.service.mfa import MFAEngine, MFAStatus
from adminauth.service.notifications import Notifier
from adminauth.service.passwords import PasswordHasher, validate_password_strength
from adminauth.service.sessions import SessionRegistry
from adminauth.service.tokens import (
    INVITE,
    PASSWORD_RESET,
    PurposeClaims,
    TokenPair,
    TokenService,
)
from adminauth.storage.errors import ConstraintViolation, StoreError
from adminauth.storage.models import ClientMeta, Principal, Role, Session, utcnow

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def find_by_key(self, login_key: str) -> Optional[Principal]: ...

    def find_by_id(self, principal_id: str) -> Optional[Principal]: ...

    def create_principal(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role | str = Role.ADMIN,
        first_name: str | None = None,
        last_name: str | None = None,
        is_active: bool = True,
    ) -> Principal: ...

    def update(self, principal_id: str, **fields: Any) -> Optional[Principal]: ...

    def increment_failed_attempts(
        self,
        principal_id: str,
        *,
        max_attempts: int,
        lockout_seconds: int,
        now: datetime | None = None,
    ) -> Tuple[int, Optional[datetime]]: ...

    def clear_failed_attempts(self, principal_id: str) -> None: ...

    def consume_backup_code(self, principal_id: str, digest: str) -> bool: ...

    def restore_backup_code(self, principal_id: str, digest: str) -> bool: ...


# roles an invitation may grant; super admins are provisioned out of band
INVITABLE_ROLES = (Role.ADMIN, Role.MODERATOR, Role.ANALYST)


@dataclass(frozen=True)
class LoginResult:
    principal: Principal
    tokens: TokenPair
    session: Session
    used_backup_code: bool = False


@dataclass(frozen=True)
class AuthContext:
    principal_id: str
    email: str
    role: str
    correlation_id: str
    permissions: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class MFAEnrollment:
    secret: str
    provisioning_uri: str
    issuer: str


@dataclass(frozen=True)
class Invitation:
    principal: Principal
    token: str
    expires_at: datetime


def _remaining_seconds(expires_at: datetime, now: datetime | None = None) -> int:
    return max(int((expires_at - (now or utcnow())).total_seconds()), 1)


class AuthEngine:
    """Administrator authentication: login, refresh, logout and deactivation.

    The engine owns no state of its own. Principals live in the credential
    store; sessions and revoked correlation ids live behind the registry and
    the blacklist. Audit and notification failures are logged and never abort
    an operation.
    """

    def __init__(
        self,
        settings: AuthSettings,
        store: CredentialStore,
        *,
        registry: SessionRegistry,
        blacklist: TokenBlacklist,
        tokens: TokenService | None = None,
        mfa: MFAEngine | None = None,
        hasher: PasswordHasher | None = None,
        audit: AuditSink | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.registry = registry
        self.blacklist = blacklist
        self.tokens = tokens or TokenService(settings)
        self.mfa = mfa or MFAEngine(store, settings)
        self.hasher = hasher or PasswordHasher()
        self.audit = audit
        self.notifier = notifier

    @contextlib.contextmanager
    def _backend(self, operation: str):
        try:
            yield
        except StoreError as exc:
            logger.error(
                "auth_backend_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=exc.message,
            )
            raise StoreUnavailable() from exc

    def _audit(
        self,
        action: str,
        principal_id: str | None,
        client: ClientMeta | None = None,
        *,
        severity: Severity = Severity.LOW,
        **metadata: Any,
    ) -> None:
        client = client or ClientMeta()
        emit(
            self.audit,
            AuditEvent(
                principal_id=principal_id,
                action=action,
                severity=severity,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                metadata=metadata,
            ),
        )

    async def _notify(self, kind: str, recipient: str, payload: Dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            await asyncio.to_thread(self.notifier.send, kind, recipient, payload)
        except Exception as exc:
            logger.error("notification_failed", kind=kind, error=str(exc))

    def _login_key_allowed(self, login_key: str) -> bool:
        domain = self.settings.allowed_email_domain
        if not domain:
            return True
        return login_key.strip().lower().endswith("@" + domain)

    def _require_principal(self, principal_id: str) -> Principal:
        principal = self.store.find_by_id(principal_id)
        if principal is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        return principal

    async def _open_session(
        self, principal: Principal, client: ClientMeta
    ) -> Tuple[TokenPair, Session]:
        """Mint a pair and record its session as one unit.

        If recording does not complete, including on cancellation, the minted
        correlation id is revoked so the tokens can never be used.
        """
        pair = self.tokens.mint(principal)
        try:
            session, evicted = await self.registry.create(
                principal.id,
                pair.correlation_id,
                client,
                ttl_seconds=self.settings.refresh_token_ttl_seconds,
                role=Role(principal.role).value,
            )
        except BaseException:
            await asyncio.shield(self._discard(principal.id, pair.correlation_id))
            raise
        for stale in evicted:
            await self.blacklist.revoke(stale.correlation_id, _remaining_seconds(stale.expires_at))
        return pair, session

    async def _discard(self, principal_id: str, correlation_id: str) -> None:
        try:
            await self.blacklist.revoke(
                correlation_id, self.settings.refresh_token_ttl_seconds
            )
            await self.registry.remove(principal_id, correlation_id)
        except Exception as exc:
            logger.error(
                "session_rollback_failed",
                principal_id=principal_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def _return_backup_code(self, principal: Principal, code: str) -> None:
        try:
            self.mfa.restore_backup_code(principal, code)
        except Exception as exc:
            logger.error(
                "backup_code_restore_failed",
                principal_id=principal.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def login(
        self,
        login_key: str,
        password: str,
        totp_code: str | None = None,
        backup_code: str | None = None,
        client: ClientMeta | None = None,
    ) -> LoginResult:
        client = client or ClientMeta()
        now = utcnow()
        with self._backend("login"):
            principal = None
            if self._login_key_allowed(login_key):
                principal = self.store.find_by_key(login_key)
            if principal is None or not principal.is_active:
                self.hasher.burn(password)
                logger.info("login_rejected_unknown_key")
                raise InvalidCredentials()

            if principal.is_locked(now):
                self._audit(
                    "login_blocked",
                    principal.id,
                    client,
                    severity=Severity.MEDIUM,
                    locked_until=principal.locked_until.isoformat(),
                )
                raise AccountLocked(principal.locked_until)

            if not self.hasher.verify(password, principal.password_hash):
                attempts, locked_until = self.store.increment_failed_attempts(
                    principal.id,
                    max_attempts=self.settings.max_failed_attempts,
                    lockout_seconds=self.settings.lockout_seconds,
                    now=now,
                )
                logger.warning("login_failed", principal_id=principal.id, attempts=attempts)
                self._audit(
                    "login_failed",
                    principal.id,
                    client,
                    severity=Severity.MEDIUM,
                    attempts=attempts,
                )
                if locked_until is not None:
                    self._audit(
                        "account_locked",
                        principal.id,
                        client,
                        severity=Severity.HIGH,
                        locked_until=locked_until.isoformat(),
                    )
                    await self._notify(
                        notifications.ACCOUNT_LOCKED,
                        principal.email,
                        {"unlock_at": locked_until.isoformat()},
                    )
                raise InvalidCredentials()

            self.store.clear_failed_attempts(principal.id)

            used_backup_code = False
            if principal.totp_enabled:
                if totp_code and backup_code:
                    raise InvalidMFA()
                if totp_code:
                    verified = self.mfa.verify_code(principal.totp_secret, totp_code)
                elif backup_code:
                    verified = self.mfa.consume_backup_code(principal, backup_code)
                    used_backup_code = verified
                else:
                    raise InvalidMFA("TOTP token or backup code required")
                if not verified:
                    self._audit(
                        "login_mfa_failed", principal.id, client, severity=Severity.MEDIUM
                    )
                    raise InvalidMFA()

            pair = None
            try:
                if self.hasher.needs_rehash(principal.password_hash):
                    self.store.update(
                        principal.id, password_hash=self.hasher.hash(password)
                    )
                pair, session = await self._open_session(principal, client)
                principal = self.store.update(
                    principal.id,
                    last_login_at=now,
                    last_login_ip=client.ip_address,
                    last_user_agent=client.user_agent,
                ) or principal
            except BaseException:
                # a failed login keeps neither its session nor the backup code
                if pair is not None:
                    await asyncio.shield(self._discard(principal.id, pair.correlation_id))
                if used_backup_code:
                    await asyncio.shield(self._return_backup_code(principal, backup_code))
                raise
            if used_backup_code:
                self._audit(
                    "backup_code_used",
                    principal.id,
                    client,
                    severity=Severity.HIGH,
                    remaining=len(principal.backup_code_digests),
                )
            self._audit(
                "login",
                principal.id,
                client,
                severity=Severity.MEDIUM,
                correlation_id=pair.correlation_id,
            )
            logger.info("login_succeeded", principal_id=principal.id)
            return LoginResult(
                principal=principal,
                tokens=pair,
                session=session,
                used_backup_code=used_backup_code,
            )

    async def refresh(
        self, refresh_token: str, client: ClientMeta | None = None
    ) -> TokenPair:
        client = client or ClientMeta()
        claims = self.tokens.verify_refresh(refresh_token)
        principal_id, correlation_id = claims.principal_id, claims.correlation_id
        with self._backend("refresh"):
            principal = self.store.find_by_id(principal_id)
            if principal is None or not principal.is_active:
                raise PrincipalInactive()
            if await self.registry.get(principal_id, correlation_id) is None:
                raise SessionExpired()
            if await self.blacklist.is_revoked(correlation_id):
                raise TokenReplayed()
            # linearization point: only the first concurrent caller inserts
            if not await self.blacklist.revoke(
                correlation_id, claims.remaining_seconds(self.tokens.now())
            ):
                logger.warning("refresh_replay_detected", principal_id=principal_id)
                self._audit(
                    "refresh_replayed", principal_id, client, severity=Severity.HIGH
                )
                raise TokenReplayed()
            await self.registry.remove(principal_id, correlation_id)
            pair, _ = await self._open_session(principal, client)
            self._audit(
                "token_refreshed",
                principal_id,
                client,
                correlation_id=pair.correlation_id,
            )
            return pair

    async def logout(
        self,
        principal_id: str,
        correlation_id: str,
        client: ClientMeta | None = None,
    ) -> bool:
        """End one session of ``principal_id``.

        Returns False, and revokes nothing, when the principal holds no live
        session under ``correlation_id``.
        """
        with self._backend("logout"):
            removed = await self.registry.remove(principal_id, correlation_id)
            if not removed:
                logger.info("logout_session_not_found", principal_id=principal_id)
                return False
            await self.blacklist.revoke(
                correlation_id, self.settings.refresh_token_ttl_seconds
            )
            self._audit("logout", principal_id, client, correlation_id=correlation_id)
            return removed

    async def _revoke_sessions(
        self, principal_id: str, *, keep_correlation_id: str | None = None
    ) -> int:
        now = utcnow()
        revoked = 0
        for session in await self.registry.list_for_principal(principal_id):
            if session.correlation_id == keep_correlation_id:
                continue
            await self.blacklist.revoke(
                session.correlation_id, _remaining_seconds(session.expires_at, now)
            )
            if await self.registry.remove(principal_id, session.correlation_id):
                revoked += 1
        return revoked

    async def deactivate(self, principal_id: str, actor_id: str | None = None) -> int:
        with self._backend("deactivate"):
            if actor_id is not None and actor_id == principal_id:
                raise ForbiddenError("cannot deactivate your own account")
            self._require_principal(principal_id)
            self.store.update(principal_id, is_active=False)
            removed = await self._revoke_sessions(principal_id)
            # sweeps sessions created after the listing above
            removed += await self.registry.remove_all_for_principal(principal_id)
            self._audit(
                "principal_deactivated",
                principal_id,
                severity=Severity.HIGH,
                actor_id=actor_id,
            )
            return removed

    async def authenticate(self, access_token: str) -> AuthContext:
        claims = self.tokens.verify_access(access_token)
        with self._backend("authenticate"):
            if await self.blacklist.is_revoked(claims.correlation_id):
                raise TokenReplayed()
            principal = self.store.find_by_id(claims.principal_id)
            if principal is None or not principal.is_active:
                raise PrincipalInactive()
            if principal.is_locked():
                raise AccountLocked(principal.locked_until)
            if await self.registry.get(principal.id, claims.correlation_id) is None:
                raise SessionExpired()
            await self.registry.touch(principal.id, claims.correlation_id)
            return AuthContext(
                principal_id=principal.id,
                email=principal.email,
                role=Role(principal.role).value,
                correlation_id=claims.correlation_id,
                permissions=principal.permissions,
            )

    async def list_sessions(self, principal_id: str) -> List[Session]:
        with self._backend("list_sessions"):
            return await self.registry.list_for_principal(principal_id)

    async def begin_mfa_enrollment(
        self, principal_id: str, client: ClientMeta | None = None
    ) -> MFAEnrollment:
        with self._backend("begin_mfa_enrollment"):
            principal = self._require_principal(principal_id)
            secret = self.mfa.generate_secret(principal)
            self._audit("totp_setup_start", principal_id, client, severity=Severity.MEDIUM)
            return MFAEnrollment(
                secret=secret,
                provisioning_uri=self.mfa.provisioning_uri(principal, secret),
                issuer=self.settings.totp_issuer,
            )

    async def confirm_mfa_enrollment(
        self, principal_id: str, code: str, client: ClientMeta | None = None
    ) -> List[str]:
        with self._backend("confirm_mfa_enrollment"):
            principal = self._require_principal(principal_id)
            codes = self.mfa.enable(principal, code)
            self._audit(
                "totp_enabled",
                principal_id,
                client,
                severity=Severity.HIGH,
                backup_codes_count=len(codes),
            )
            await self._notify(notifications.MFA_ENABLED, principal.email, {})
            return codes

    def _reverify(self, principal: Principal, password: str, totp_code: str | None) -> None:
        if not principal.totp_enabled:
            raise InvalidCode("TOTP is not enabled")
        if not self.hasher.verify(password, principal.password_hash):
            raise InvalidCredentials("Invalid password")
        if not self.mfa.verify_code(principal.totp_secret, totp_code):
            raise InvalidMFA("Invalid TOTP token")

    async def disable_mfa(
        self,
        principal_id: str,
        password: str,
        totp_code: str,
        client: ClientMeta | None = None,
    ) -> None:
        with self._backend("disable_mfa"):
            principal = self._require_principal(principal_id)
            self._reverify(principal, password, totp_code)
            self.mfa.disable(principal)
            self._audit("totp_disabled", principal_id, client, severity=Severity.HIGH)
            await self._notify(notifications.MFA_DISABLED, principal.email, {})

    async def regenerate_backup_codes(
        self,
        principal_id: str,
        password: str,
        totp_code: str,
        client: ClientMeta | None = None,
    ) -> List[str]:
        with self._backend("regenerate_backup_codes"):
            principal = self._require_principal(principal_id)
            self._reverify(principal, password, totp_code)
            codes = self.mfa.regenerate_backup_codes(principal)
            self._audit(
                "totp_backup_codes_regenerated",
                principal_id,
                client,
                severity=Severity.HIGH,
                backup_codes_count=len(codes),
            )
            await self._notify(
                notifications.BACKUP_CODES_REGENERATED, principal.email, {}
            )
            return codes

    async def mfa_status(self, principal_id: str) -> MFAStatus:
        with self._backend("mfa_status"):
            return self.mfa.status(self._require_principal(principal_id))

    async def change_password(
        self,
        principal_id: str,
        current_password: str,
        new_password: str,
        *,
        keep_correlation_id: str | None = None,
        client: ClientMeta | None = None,
    ) -> int:
        """Replace the password and sign out every other session.

        Returns the number of sessions revoked.
        """
        with self._backend("change_password"):
            principal = self._require_principal(principal_id)
            if not self.hasher.verify(current_password, principal.password_hash):
                raise InvalidCredentials("Invalid password")
            self._check_new_password(new_password)
            if self.hasher.verify(new_password, principal.password_hash):
                raise WeakPassword("New password must differ from the current one")
            self.store.update(
                principal_id,
                password_hash=self.hasher.hash(new_password),
                password_changed_at=utcnow(),
            )
            revoked = await self._revoke_sessions(
                principal_id, keep_correlation_id=keep_correlation_id
            )
            self._audit(
                "password_changed",
                principal_id,
                client,
                severity=Severity.HIGH,
                sessions_revoked=revoked,
            )
            await self._notify(notifications.PASSWORD_CHANGED, principal.email, {})
            return revoked

    async def unlock(self, principal_id: str, actor_id: str | None = None) -> None:
        with self._backend("unlock"):
            self._require_principal(principal_id)
            self.store.clear_failed_attempts(principal_id)
            self._audit(
                "account_unlocked",
                principal_id,
                severity=Severity.MEDIUM,
                actor_id=actor_id,
            )

    async def create_principal(
        self,
        email: str,
        password: str,
        *,
        role: Role | str = Role.ADMIN,
        first_name: str | None = None,
        last_name: str | None = None,
        actor_id: str | None = None,
    ) -> Principal:
        self._check_new_password(password)
        if not self._login_key_allowed(email):
            raise ForbiddenError(
                "email domain is not allowed for administrators",
                detail={"allowed_domain": self.settings.allowed_email_domain},
            )
        with self._backend("create_principal"):
            try:
                principal = self.store.create_principal(
                    email,
                    self.hasher.hash(password),
                    role=role,
                    first_name=first_name,
                    last_name=last_name,
                )
            except ConstraintViolation as exc:
                raise ConflictError(exc.message, detail=exc.detail) from exc
            self._audit(
                "principal_created",
                principal.id,
                severity=Severity.HIGH,
                actor_id=actor_id,
                role=Role(principal.role).value,
            )
            return principal

    def _check_new_password(self, password: str) -> None:
        failures = validate_password_strength(password)
        if failures:
            raise WeakPassword(
                "Password does not meet requirements", detail={"errors": failures}
            )

    def _token_holder(self, claims: PurposeClaims) -> Principal:
        principal = self.store.find_by_id(claims.principal_id)
        if (
            principal is None
            or not principal.is_active
            or principal.email.lower() != claims.email.lower()
        ):
            raise NotFoundError("account not found or inactive")
        return principal

    @contextlib.asynccontextmanager
    async def _redeeming(self, claims: PurposeClaims):
        """Mark a single-use token as spent for the duration of the block.

        The set-if-absent insert decides between concurrent redemptions. If
        the block fails the mark is released so the token can be retried.
        """
        key = claims.redemption_key
        if not await self.blacklist.revoke(key, claims.remaining_seconds(self.tokens.now())):
            logger.warning("single_use_token_replayed", purpose=claims.purpose)
            raise TokenReplayed()
        try:
            yield
        except BaseException:
            await asyncio.shield(self._release_redemption(key))
            raise

    async def _release_redemption(self, key: str) -> None:
        try:
            await self.blacklist.release(key)
        except Exception as exc:
            logger.error(
                "token_redemption_release_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def request_password_reset(
        self, login_key: str, client: ClientMeta | None = None
    ) -> bool:
        """Send a one-hour, single-use reset token to an active principal.

        Returns whether a token was issued. Callers should answer the same
        way in both cases so the response does not reveal which keys exist.
        """
        with self._backend("request_password_reset"):
            principal = None
            if self._login_key_allowed(login_key):
                principal = self.store.find_by_key(login_key)
            if principal is None or not principal.is_active:
                logger.info("password_reset_request_ignored")
                return False
            issued = self.tokens.mint_purpose(principal, PASSWORD_RESET)
            self._audit(
                "password_reset_request", principal.id, client, severity=Severity.MEDIUM
            )
        await self._notify(
            notifications.PASSWORD_RESET,
            principal.email,
            {"token": issued.token, "expires_at": issued.expires_at.isoformat()},
        )
        return True

    async def reset_password(
        self, token: str, new_password: str, client: ClientMeta | None = None
    ) -> int:
        """Set a new password with a reset token and sign out every session.

        Returns the number of sessions revoked.
        """
        claims = self.tokens.verify_purpose(token, PASSWORD_RESET)
        self._check_new_password(new_password)
        with self._backend("reset_password"):
            principal = self._token_holder(claims)
            async with self._redeeming(claims):
                self.store.update(
                    principal.id,
                    password_hash=self.hasher.hash(new_password),
                    password_changed_at=utcnow(),
                )
            revoked = await self._revoke_sessions(principal.id)
            self._audit(
                "password_reset_complete",
                principal.id,
                client,
                severity=Severity.MEDIUM,
                sessions_revoked=revoked,
            )
        await self._notify(notifications.PASSWORD_CHANGED, principal.email, {})
        return revoked

    async def invite_principal(
        self,
        email: str,
        *,
        role: Role | str = Role.ADMIN,
        first_name: str | None = None,
        last_name: str | None = None,
        actor_id: str | None = None,
        client: ClientMeta | None = None,
    ) -> Invitation:
        """Create a principal without a usable password and send an invitation.

        The invitee chooses a password through :meth:`accept_invitation`
        within ``invite_ttl_seconds``.
        """
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError(
                "Invalid role specified", detail={"role": str(role)}
            ) from None
        if role not in INVITABLE_ROLES:
            raise ValidationError("Invalid role specified", detail={"role": role.value})
        if not self._login_key_allowed(email):
            raise ForbiddenError(
                "email domain is not allowed for administrators",
                detail={"allowed_domain": self.settings.allowed_email_domain},
            )
        with self._backend("invite_principal"):
            try:
                principal = self.store.create_principal(
                    email,
                    # placeholder nobody knows until the invitation is accepted
                    self.hasher.hash(secrets.token_urlsafe(32)),
                    role=role,
                    first_name=first_name,
                    last_name=last_name,
                )
            except ConstraintViolation as exc:
                raise ConflictError(exc.message, detail=exc.detail) from exc
            issued = self.tokens.mint_purpose(principal, INVITE, issued_by=actor_id)
            self._audit(
                "principal_invited",
                principal.id,
                client,
                severity=Severity.HIGH,
                actor_id=actor_id,
                role=role.value,
            )
        await self._notify(
            notifications.INVITATION,
            principal.email,
            {
                "token": issued.token,
                "role": role.value,
                "expires_at": issued.expires_at.isoformat(),
            },
        )
        return Invitation(principal=principal, token=issued.token, expires_at=issued.expires_at)

    async def accept_invitation(
        self, token: str, new_password: str, client: ClientMeta | None = None
    ) -> Principal:
        claims = self.tokens.verify_purpose(token, INVITE)
        self._check_new_password(new_password)
        with self._backend("accept_invitation"):
            principal = self._token_holder(claims)
            async with self._redeeming(claims):
                principal = self.store.update(
                    principal.id,
                    password_hash=self.hasher.hash(new_password),
                    password_changed_at=utcnow(),
                ) or principal
            self._audit(
                "invitation_accepted", principal.id, client, severity=Severity.MEDIUM
            )
            logger.info("invitation_accepted", principal_id=principal.id)
            return principal
