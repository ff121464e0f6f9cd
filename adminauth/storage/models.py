from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MODERATOR = "moderator"
    ANALYST = "analyst"


ROLE_PERMISSIONS: Dict[Role, List[str]] = {
    Role.SUPER_ADMIN: [
        "admins.manage",
        "sessions.revoke",
        "locations.write",
        "fares.write",
        "reports.read",
    ],
    Role.ADMIN: ["sessions.revoke", "locations.write", "fares.write", "reports.read"],
    Role.MODERATOR: ["locations.write", "reports.read"],
    Role.ANALYST: ["reports.read"],
}


@dataclass
class Principal:
    id: str
    email: str
    password_hash: str
    role: Role = Role.ADMIN
    is_active: bool = True
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    totp_secret: Optional[str] = None
    totp_enabled: bool = False
    backup_code_digests: List[str] = field(default_factory=list)
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    last_user_agent: Optional[str] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime | None = None) -> bool:
        if self.locked_until is None:
            return False
        return (now or utcnow()) < self.locked_until

    @property
    def permissions(self) -> List[str]:
        return list(ROLE_PERMISSIONS.get(Role(self.role), []))

    def public_view(self) -> Dict:
        """Representation safe to hand to callers; omits hashes and MFA material."""
        return {
            "id": self.id,
            "email": self.email,
            "role": Role(self.role).value,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_active": self.is_active,
            "totp_enabled": self.totp_enabled,
            "permissions": self.permissions,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }


@dataclass
class Session:
    principal_id: str
    correlation_id: str
    created_at: datetime
    expires_at: datetime
    role: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    last_activity_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        principal_id: str,
        correlation_id: str,
        ttl_seconds: int,
        *,
        role: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            principal_id=principal_id,
            correlation_id=correlation_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            role=role,
            ip_address=ip_address,
            user_agent=user_agent,
            last_activity_at=now,
        )

    def to_dict(self) -> Dict:
        return {
            "principal_id": self.principal_id,
            "correlation_id": self.correlation_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "role": self.role,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "last_activity_at": (
                self.last_activity_at.isoformat() if self.last_activity_at else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Session":
        last_activity = data.get("last_activity_at")
        return cls(
            principal_id=data["principal_id"],
            correlation_id=data["correlation_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            role=data.get("role"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            last_activity_at=datetime.fromisoformat(last_activity) if last_activity else None,
        )


@dataclass(frozen=True)
class ClientMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
