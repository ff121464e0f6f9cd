from __future__ import annotations

import base64
import hashlib
import json
import os
import tempfile
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from adminauth.logging import get_logger
from adminauth.storage.errors import BackendUnavailable, ConstraintViolation
from adminauth.storage.models import Principal, Role, Session, utcnow

_PRINCIPAL_FIELDS = frozenset(Principal.__dataclass_fields__) - {"id", "created_at"}


def _normalize_key(login_key: str) -> str:
    return login_key.strip().lower()


class MemoryStore:
    """In-process credential store.

    Every read returns a snapshot; all mutation goes through the store methods,
    each of which runs under one lock so read-modify-write sequences such as the
    failed-attempt counter are atomic. When ``state_path`` is given the records
    are written to a JSON file after each change, with TOTP secrets encrypted.
    """

    def __init__(
        self, state_path: str | None = None, *, secret_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self._by_key: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        self._cipher = self._build_cipher(secret_key) if self.state_path else None
        if self.state_path:
            self._load_state()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY")
        if not material:
            raise RuntimeError(
                "a secret key is required to persist MFA secrets; set MFA_SECRET_KEY"
            )
        return Fernet(self._derive_cipher_key(material))

    def _snapshot(self, principal: Principal) -> Principal:
        return replace(principal, backup_code_digests=list(principal.backup_code_digests))

    def create_principal(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role | str = Role.ADMIN,
        first_name: str | None = None,
        last_name: str | None = None,
        is_active: bool = True,
    ) -> Principal:
        key = _normalize_key(email)
        with self._data_lock:
            if key in self._by_key:
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                id=str(uuid.uuid4()),
                email=key,
                password_hash=password_hash,
                role=Role(role),
                is_active=is_active,
                first_name=first_name,
                last_name=last_name,
                password_changed_at=utcnow(),
            )
            self.principals[principal.id] = principal
            self._by_key[key] = principal.id
            self._persist_state()
            return self._snapshot(principal)

    def find_by_key(self, login_key: str) -> Optional[Principal]:
        with self._data_lock:
            principal_id = self._by_key.get(_normalize_key(login_key))
            if not principal_id:
                return None
            return self._snapshot(self.principals[principal_id])

    def find_by_id(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return self._snapshot(principal) if principal else None

    def list_principals(self, limit: int = 100) -> List[Principal]:
        with self._data_lock:
            ordered = sorted(
                self.principals.values(), key=lambda p: p.created_at, reverse=True
            )
            return [self._snapshot(p) for p in ordered[:limit]]

    def update(self, principal_id: str, **fields) -> Optional[Principal]:
        unknown = set(fields) - _PRINCIPAL_FIELDS
        if unknown:
            raise ValueError(f"unknown principal fields: {sorted(unknown)}")
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            if "email" in fields:
                new_key = _normalize_key(fields["email"])
                owner = self._by_key.get(new_key)
                if owner and owner != principal_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                self._by_key.pop(_normalize_key(principal.email), None)
                self._by_key[new_key] = principal_id
                fields["email"] = new_key
            if "backup_code_digests" in fields:
                fields["backup_code_digests"] = list(fields["backup_code_digests"])
            for name, value in fields.items():
                setattr(principal, name, value)
            self._persist_state()
            return self._snapshot(principal)

    def increment_failed_attempts(
        self,
        principal_id: str,
        *,
        max_attempts: int,
        lockout_seconds: int,
        now: datetime | None = None,
    ) -> Tuple[int, Optional[datetime]]:
        """Count one failed password and lock the account at the threshold.

        Returns the attempt count including this failure and the new
        ``locked_until`` when this call engaged the lock. The counter restarts
        from zero once the lock is set.
        """
        now = now or utcnow()
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                raise ConstraintViolation("principal not found", {"principal_id": principal_id})
            attempts = principal.failed_login_attempts + 1
            locked_until = None
            if attempts >= max_attempts:
                locked_until = now + timedelta(seconds=lockout_seconds)
                principal.locked_until = locked_until
                principal.failed_login_attempts = 0
            else:
                principal.failed_login_attempts = attempts
            self._persist_state()
            return attempts, locked_until

    def clear_failed_attempts(self, principal_id: str) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return
            if principal.failed_login_attempts or principal.locked_until:
                principal.failed_login_attempts = 0
                principal.locked_until = None
                self._persist_state()

    def consume_backup_code(self, principal_id: str, digest: str) -> bool:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or digest not in principal.backup_code_digests:
                return False
            principal.backup_code_digests.remove(digest)
            self._persist_state()
            return True

    def restore_backup_code(self, principal_id: str, digest: str) -> bool:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or digest in principal.backup_code_digests:
                return False
            principal.backup_code_digests.append(digest)
            self._persist_state()
            return True

    def _persist_state(self) -> None:
        if not self.state_path:
            return
        state = {"principals": [self._serialize_principal(p) for p in self.principals.values()]}
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.state_path.parent), prefix=".state_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, self.state_path)
        except OSError as exc:
            raise BackendUnavailable(f"failed to persist credential store: {exc}") from exc

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            entry["id"]: self._deserialize_principal(entry)
            for entry in data.get("principals", [])
        }
        self._by_key = {_normalize_key(p.email): p.id for p in self.principals.values()}
        return True

    @staticmethod
    def _dt(value: datetime | None) -> str | None:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: str | None) -> datetime | None:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_principal(self, principal: Principal) -> dict:
        secret = principal.totp_secret
        if secret:
            secret = self._cipher.encrypt(secret.encode()).decode()
        return {
            "id": principal.id,
            "email": principal.email,
            "password_hash": principal.password_hash,
            "role": Role(principal.role).value,
            "is_active": principal.is_active,
            "first_name": principal.first_name,
            "last_name": principal.last_name,
            "failed_login_attempts": principal.failed_login_attempts,
            "locked_until": self._dt(principal.locked_until),
            "totp_secret": secret,
            "totp_enabled": principal.totp_enabled,
            "backup_code_digests": list(principal.backup_code_digests),
            "last_login_at": self._dt(principal.last_login_at),
            "last_login_ip": principal.last_login_ip,
            "last_user_agent": principal.last_user_agent,
            "password_changed_at": self._dt(principal.password_changed_at),
            "created_at": self._dt(principal.created_at),
        }

    def _deserialize_principal(self, data: dict) -> Principal:
        secret = data.get("totp_secret")
        if secret:
            try:
                secret = self._cipher.decrypt(secret.encode()).decode()
            except InvalidToken as exc:
                raise BackendUnavailable(
                    "stored MFA secret cannot be decrypted with the configured key",
                    {"principal_id": data.get("id")},
                ) from exc
        return Principal(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            role=Role(data.get("role", Role.ADMIN.value)),
            is_active=data.get("is_active", True),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            locked_until=self._parse_dt(data.get("locked_until")),
            totp_secret=secret,
            totp_enabled=data.get("totp_enabled", False),
            backup_code_digests=list(data.get("backup_code_digests", [])),
            last_login_at=self._parse_dt(data.get("last_login_at")),
            last_login_ip=data.get("last_login_ip"),
            last_user_agent=data.get("last_user_agent"),
            password_changed_at=self._parse_dt(data.get("password_changed_at")),
            created_at=self._parse_dt(data.get("created_at")) or utcnow(),
        )


class MemoryCache:
    """Expiring key-value state for sessions and revoked correlation ids.

    Mirrors the method set of :class:`adminauth.storage.redis_cache.RedisCache`
    for single-process deployments and tests.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        # principal_id -> correlation_id -> (session, expires_at)
        self._sessions: Dict[str, Dict[str, Tuple[Session, float]]] = {}
        self._revoked: Dict[str, float] = {}

    def _live_sessions(self, principal_id: str) -> Dict[str, Tuple[Session, float]]:
        now = self._clock()
        bucket = self._sessions.get(principal_id, {})
        for cid in [cid for cid, (_, exp) in bucket.items() if exp <= now]:
            bucket.pop(cid, None)
        if not bucket:
            self._sessions.pop(principal_id, None)
        return bucket

    async def put_session(self, session: Session, ttl_seconds: int) -> None:
        with self._lock:
            bucket = self._sessions.setdefault(session.principal_id, {})
            bucket[session.correlation_id] = (
                replace(session),
                self._clock() + max(int(ttl_seconds), 1),
            )

    async def get_session(self, principal_id: str, correlation_id: str) -> Optional[Session]:
        with self._lock:
            entry = self._live_sessions(principal_id).get(correlation_id)
            return replace(entry[0]) if entry else None

    async def touch_session(
        self, principal_id: str, correlation_id: str, at: datetime
    ) -> bool:
        with self._lock:
            entry = self._live_sessions(principal_id).get(correlation_id)
            if not entry:
                return False
            entry[0].last_activity_at = at
            return True

    async def delete_session(self, principal_id: str, correlation_id: str) -> bool:
        with self._lock:
            bucket = self._live_sessions(principal_id)
            removed = bucket.pop(correlation_id, None) is not None
            if not bucket:
                self._sessions.pop(principal_id, None)
            return removed

    async def list_sessions(self, principal_id: str) -> List[Session]:
        with self._lock:
            return [replace(s) for s, _ in self._live_sessions(principal_id).values()]

    async def delete_principal_sessions(self, principal_id: str) -> int:
        with self._lock:
            bucket = self._live_sessions(principal_id)
            self._sessions.pop(principal_id, None)
            return len(bucket)

    async def add_revocation(self, correlation_id: str, ttl_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            expires = self._revoked.get(correlation_id)
            if expires is not None and expires > now:
                return False
            self._revoked[correlation_id] = now + max(int(ttl_seconds), 1)
            # opportunistic sweep keeps the map bounded by live entries
            for cid in [c for c, exp in self._revoked.items() if exp <= now]:
                self._revoked.pop(cid, None)
            return True

    async def remove_revocation(self, correlation_id: str) -> bool:
        with self._lock:
            return self._revoked.pop(correlation_id, None) is not None

    async def is_revoked(self, correlation_id: str) -> bool:
        with self._lock:
            expires = self._revoked.get(correlation_id)
            return expires is not None and expires > self._clock()

    async def revoked_count(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for exp in self._revoked.values() if exp > now)

    async def close(self) -> None:
        return None
