from __future__ import annotations

from adminauth.logging import get_logger

logger = get_logger(__name__)


class TokenBlacklist:
    """Revoked correlation ids, each kept for the remaining refresh lifetime."""

    def __init__(self, cache) -> None:
        self.cache = cache

    async def is_revoked(self, correlation_id: str) -> bool:
        return await self.cache.is_revoked(correlation_id)

    async def revoke(self, correlation_id: str, ttl_seconds: int) -> bool:
        """Insert ``correlation_id`` unless present.

        Returns True only for the caller whose insert created the entry; a
        concurrent second caller gets False.
        """
        created = await self.cache.add_revocation(correlation_id, max(int(ttl_seconds), 1))
        if not created:
            logger.info("correlation_id_already_revoked")
        return created

    async def release(self, key: str) -> bool:
        """Drop an entry this caller created but whose operation did not complete."""
        released = await self.cache.remove_revocation(key)
        if released:
            logger.info("revocation_released")
        return released
