from __future__ import annotations

from typing import List, Optional, Tuple

from adminauth.logging import get_logger
from adminauth.storage.models import ClientMeta, Session, utcnow

logger = get_logger(__name__)


class SessionRegistry:
    """Live sessions keyed by (principal id, correlation id).

    Backed by :class:`MemoryCache` or :class:`RedisCache`. A lookup miss means
    the session expired or was revoked; backend failures propagate.
    """

    def __init__(self, cache, *, max_sessions_per_principal: int = 5) -> None:
        self.cache = cache
        self.max_sessions_per_principal = max_sessions_per_principal

    async def create(
        self,
        principal_id: str,
        correlation_id: str,
        client: ClientMeta | None = None,
        *,
        ttl_seconds: int,
        role: str | None = None,
    ) -> Tuple[Session, List[Session]]:
        """Record a session and evict the oldest ones beyond the per-principal cap.

        Returns the new session and the evicted sessions so the caller can
        revoke their correlation ids.
        """
        client = client or ClientMeta()
        session = Session.new(
            principal_id,
            correlation_id,
            ttl_seconds,
            role=role,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
        await self.cache.put_session(session, ttl_seconds)
        evicted = await self._enforce_cap(principal_id, keep=correlation_id)
        return session, evicted

    async def _enforce_cap(self, principal_id: str, *, keep: str) -> List[Session]:
        existing = await self.cache.list_sessions(principal_id)
        overflow = len(existing) - self.max_sessions_per_principal
        if overflow <= 0:
            return []
        candidates = sorted(
            (s for s in existing if s.correlation_id != keep),
            key=lambda s: s.created_at,
        )
        evicted: List[Session] = []
        for stale in candidates[:overflow]:
            if await self.cache.delete_session(principal_id, stale.correlation_id):
                evicted.append(stale)
        if evicted:
            logger.info(
                "sessions_evicted",
                principal_id=principal_id,
                count=len(evicted),
                limit=self.max_sessions_per_principal,
            )
        return evicted

    async def get(self, principal_id: str, correlation_id: str) -> Optional[Session]:
        return await self.cache.get_session(principal_id, correlation_id)

    async def touch(self, principal_id: str, correlation_id: str) -> bool:
        return await self.cache.touch_session(principal_id, correlation_id, utcnow())

    async def remove(self, principal_id: str, correlation_id: str) -> bool:
        return await self.cache.delete_session(principal_id, correlation_id)

    async def remove_all_for_principal(self, principal_id: str) -> int:
        return await self.cache.delete_principal_sessions(principal_id)

    async def list_for_principal(self, principal_id: str) -> List[Session]:
        sessions = await self.cache.list_sessions(principal_id)
        return sorted(
            sessions,
            key=lambda s: s.last_activity_at or s.created_at,
            reverse=True,
        )
