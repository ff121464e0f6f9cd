from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlsplit

from redis.exceptions import RedisError

from adminauth.config import AuthSettings, get_settings, reset_settings_cache
from adminauth.logging import get_logger
from adminauth.service.audit import LoggingAuditSink
from adminauth.service.blacklist import TokenBlacklist
from adminauth.service.engine import AuthEngine
from adminauth.service.mfa import MFAEngine
from adminauth.service.notifications import EmailNotifier
from adminauth.service.passwords import PasswordHasher
from adminauth.service.sessions import SessionRegistry
from adminauth.service.tokens import TokenService
from adminauth.storage.memory import MemoryCache, MemoryStore
from adminauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

Cache = Union[MemoryCache, RedisCache]


def _redis_target(url: Optional[str]) -> str:
    """Host, port and db of a Redis URL with credentials left out."""
    if not url:
        return "unset"
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return "unparseable"
    target = parts.hostname or "localhost"
    if port:
        target = f"{target}:{port}"
    return f"{parts.scheme}://{target}{parts.path}"


def select_cache(settings: AuthSettings) -> Cache:
    """Pick the session cache backend for ``settings``.

    Redis is mandatory in production because sessions and revocations have
    to be shared between API instances. The in-process cache is used when
    explicitly requested, or as a fallback under TEST_MODE or
    ALLOW_REDIS_FALLBACK_DEV.
    """
    if settings.use_memory_cache:
        return MemoryCache()

    failure: Optional[BaseException] = None
    if settings.redis_url:
        cache = RedisCache(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
        try:
            cache.verify_connection()
        except (RedisError, OSError, ValueError) as exc:
            failure = exc
        else:
            return cache

    fallback_allowed = settings.test_mode or settings.allow_redis_fallback_dev
    if not fallback_allowed:
        raise RuntimeError(
            "Redis is unreachable and no fallback is permitted; set REDIS_URL to a live "
            "instance, or USE_MEMORY_CACHE/TEST_MODE/ALLOW_REDIS_FALLBACK_DEV for local runs"
        ) from failure

    logger.warning(
        "session_cache_fallback_to_memory",
        redis=_redis_target(settings.redis_url),
        reason=type(failure).__name__ if failure else "no_redis_url",
        test_mode=settings.test_mode,
    )
    return MemoryCache()


class Runtime:
    """Wires the authentication services once per process."""

    def __init__(self, settings: AuthSettings | None = None):
        self.settings = settings or get_settings()
        self.store = MemoryStore(
            self.settings.state_path, secret_key=self.settings.mfa_secret_key
        )
        self.cache = select_cache(self.settings)
        self.registry = SessionRegistry(
            self.cache,
            max_sessions_per_principal=self.settings.max_sessions_per_principal,
        )
        self.blacklist = TokenBlacklist(self.cache)
        self.tokens = TokenService(self.settings)
        self.mfa = MFAEngine(self.store, self.settings)
        self.audit = LoggingAuditSink()
        self.notifier = EmailNotifier(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.engine = AuthEngine(
            self.settings,
            self.store,
            registry=self.registry,
            blacklist=self.blacklist,
            tokens=self.tokens,
            mfa=self.mfa,
            hasher=PasswordHasher(),
            audit=self.audit,
            notifier=self.notifier,
        )
        logger.info(
            "runtime_ready",
            cache_backend=type(self.cache).__name__,
            persistent_store=bool(self.settings.state_path),
            email_configured=self.notifier.is_configured,
            test_mode=self.settings.test_mode,
        )

    async def close(self) -> None:
        await self.cache.close()


_instance: Runtime | None = None
_instance_lock = threading.Lock()


def get_runtime() -> Runtime:
    global _instance
    current = _instance
    if current is None:
        with _instance_lock:
            if _instance is None:
                _instance = Runtime()
            current = _instance
    return current


# the event loop only keeps weak references to tasks
_closing_tasks: set[asyncio.Task] = set()


def _closed(task: asyncio.Task) -> None:
    _closing_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "runtime_close_failed", error_type=type(exc).__name__, error=str(exc)
        )


def _close_detached(previous: Runtime) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(previous.close())
        return
    task = loop.create_task(previous.close())
    _closing_tasks.add(task)
    task.add_done_callback(_closed)


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the process runtime from a fresh read of the environment."""
    global _instance
    with _instance_lock:
        previous = _instance
        if previous is not None and isinstance(previous.cache, RedisCache):
            _close_detached(previous)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset requires TEST_MODE")
        _instance = Runtime(settings)
        return _instance
