from __future__ import annotations

import functools
import json
from datetime import datetime
from typing import Any, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from adminauth.logging import get_logger
from adminauth.storage.errors import BackendUnavailable
from adminauth.storage.models import Session

logger = get_logger(__name__)


def _translate_errors(func):
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except RedisError as exc:
            logger.error("redis_operation_failed", operation=func.__name__, error=str(exc))
            raise BackendUnavailable(f"redis {func.__name__} failed") from exc

    return wrapper


class RedisCache:
    """Redis-backed session registry and revocation list storage.

    Session records live at ``admin_session:{principal}:{correlation}`` with a
    per-principal index set for bulk removal. Revoked correlation ids are plain
    keys written with ``SET NX EX`` so the first writer can be told apart.
    """

    # Rewrites the activity stamp in place without touching the key's TTL
    _TOUCH_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local data = cjson.decode(raw)
data['last_activity_at'] = ARGV[1]
redis.call('SET', KEYS[1], cjson.encode(data), 'KEEPTTL')
return 1
"""

    # Drops every session in the index and the index itself in one step
    _PURGE_SCRIPT = """
local members = redis.call('SMEMBERS', KEYS[1])
local removed = 0
for _, cid in ipairs(members) do
  removed = removed + redis.call('DEL', ARGV[1] .. cid)
end
redis.call('DEL', KEYS[1])
return removed
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Any | None = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _session_key(principal_id: str, correlation_id: str) -> str:
        return f"admin_session:{principal_id}:{correlation_id}"

    @staticmethod
    def _index_key(principal_id: str) -> str:
        return f"admin_sessions:{principal_id}"

    @staticmethod
    def _revocation_key(correlation_id: str) -> str:
        return f"blacklist:{correlation_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @_translate_errors
    async def put_session(self, session: Session, ttl_seconds: int) -> None:
        ttl = max(int(ttl_seconds), 1)
        index_key = self._index_key(session.principal_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.set(
            self._session_key(session.principal_id, session.correlation_id),
            json.dumps(session.to_dict()),
            ex=ttl,
        )
        pipe.sadd(index_key, session.correlation_id)
        # sessions share one lifetime, so the newest member sets the index expiry
        pipe.expire(index_key, ttl)
        await pipe.execute()

    @_translate_errors
    async def get_session(self, principal_id: str, correlation_id: str) -> Optional[Session]:
        raw = await self.client.get(self._session_key(principal_id, correlation_id))
        if not raw:
            return None
        return Session.from_dict(json.loads(raw))

    @_translate_errors
    async def touch_session(
        self, principal_id: str, correlation_id: str, at: datetime
    ) -> bool:
        result = await self.client.eval(
            self._TOUCH_SCRIPT,
            1,
            self._session_key(principal_id, correlation_id),
            at.isoformat(),
        )
        return bool(int(result))

    @_translate_errors
    async def delete_session(self, principal_id: str, correlation_id: str) -> bool:
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(self._session_key(principal_id, correlation_id))
        pipe.srem(self._index_key(principal_id), correlation_id)
        deleted, _ = await pipe.execute()
        return bool(deleted)

    @_translate_errors
    async def list_sessions(self, principal_id: str) -> List[Session]:
        index_key = self._index_key(principal_id)
        correlation_ids = sorted(await self.client.smembers(index_key))
        if not correlation_ids:
            return []
        raw_values = await self.client.mget(
            [self._session_key(principal_id, cid) for cid in correlation_ids]
        )
        sessions: List[Session] = []
        stale: List[str] = []
        for cid, raw in zip(correlation_ids, raw_values):
            if raw is None:
                stale.append(cid)
                continue
            sessions.append(Session.from_dict(json.loads(raw)))
        if stale:
            await self.client.srem(index_key, *stale)
        return sessions

    @_translate_errors
    async def delete_principal_sessions(self, principal_id: str) -> int:
        result = await self.client.eval(
            self._PURGE_SCRIPT,
            1,
            self._index_key(principal_id),
            f"admin_session:{principal_id}:",
        )
        return int(result)

    @_translate_errors
    async def add_revocation(self, correlation_id: str, ttl_seconds: int) -> bool:
        created = await self.client.set(
            self._revocation_key(correlation_id),
            "1",
            ex=max(int(ttl_seconds), 1),
            nx=True,
        )
        return bool(created)

    @_translate_errors
    async def remove_revocation(self, correlation_id: str) -> bool:
        return bool(await self.client.delete(self._revocation_key(correlation_id)))

    @_translate_errors
    async def is_revoked(self, correlation_id: str) -> bool:
        return bool(await self.client.exists(self._revocation_key(correlation_id)))

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
